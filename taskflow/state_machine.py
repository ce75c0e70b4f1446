"""Task state machine: role-gated status transitions.

The rules are data, not branches. Each rule names the status a task is in,
the status being requested, the relation the actor must have to the task,
and an optional guard. Admins bypass the table entirely.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List

from taskflow.db_models.enums import TaskStatus
from taskflow.errors import InvalidTransitionError, MissingReviewerError
from taskflow.models import Principal, Task


class ActorRelation(str, Enum):
    PRIMARY = "primary"
    REVIEWER = "reviewer"


class Guard(str, Enum):
    NONE = "none"
    REVIEWER_SET = "reviewer_set"
    LAST_IN_INSTANCE = "last_in_instance"


@dataclass(frozen=True)
class TransitionRule:
    current: TaskStatus
    requested: TaskStatus
    relation: ActorRelation
    guard: Guard = Guard.NONE


class TaskStateMachine:
    """Validates a single task's transition for an acting principal."""

    RULES: tuple = (
        TransitionRule(TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, ActorRelation.PRIMARY),
        TransitionRule(TaskStatus.CHANGES_REQUESTED, TaskStatus.IN_PROGRESS, ActorRelation.PRIMARY),
        TransitionRule(
            TaskStatus.IN_PROGRESS, TaskStatus.SUBMITTED_FOR_REVIEW, ActorRelation.PRIMARY, Guard.REVIEWER_SET
        ),
        TransitionRule(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, ActorRelation.PRIMARY, Guard.LAST_IN_INSTANCE),
        TransitionRule(TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.CHANGES_REQUESTED, ActorRelation.REVIEWER),
        # Resulting status may become Completed; see CascadeActivator.
        TransitionRule(TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.APPROVED, ActorRelation.REVIEWER),
    )

    _INDEX = {(rule.current, rule.requested, rule.relation): rule for rule in RULES}

    @staticmethod
    def relations(task: Task, principal: Principal) -> FrozenSet[ActorRelation]:
        relations = set()
        if principal.id == task.primary_assignee_id:
            relations.add(ActorRelation.PRIMARY)
        if task.reviewer_id is not None and principal.id == task.reviewer_id:
            relations.add(ActorRelation.REVIEWER)
        return frozenset(relations)

    @staticmethod
    def _guard_holds(guard: Guard, task: Task, is_last: bool) -> bool:
        if guard == Guard.REVIEWER_SET:
            return task.reviewer_id is not None
        if guard == Guard.LAST_IN_INSTANCE:
            return is_last
        return True

    @classmethod
    def resolve(cls, task: Task, requested: TaskStatus, principal: Principal, is_last: bool) -> TaskStatus:
        """
        Return the status the task moves to, or raise.

        Args:
            task: The task as currently stored
            requested: Status asked for by the principal
            principal: Acting user and role
            is_last: Whether the task holds the highest position in its instance

        Raises:
            InvalidTransitionError: No rule matches the status pair and the actor's relation
            MissingReviewerError: Submission requested on a task without a reviewer
        """
        if principal.is_admin:
            return requested

        for relation in cls.relations(task, principal):
            rule = cls._INDEX.get((task.status, requested, relation))
            if rule is None:
                continue
            if cls._guard_holds(rule.guard, task, is_last):
                return rule.requested
            if rule.guard == Guard.REVIEWER_SET:
                raise MissingReviewerError(
                    f"Task '{task.id}' has no reviewer and cannot be submitted for review.",
                    {"task_id": task.id},
                )
            raise InvalidTransitionError(
                task.status, requested, "Only the last task of a workflow can be completed directly."
            )

        raise InvalidTransitionError(task.status, requested)

    @classmethod
    def allowed_transitions(cls, task: Task, principal: Principal, is_last: bool) -> List[TaskStatus]:
        """Statuses the principal may request right now, in table order."""
        if principal.is_admin:
            return [status for status in TaskStatus if status != task.status]

        relations = cls.relations(task, principal)
        allowed = []
        for rule in cls.RULES:
            if (
                rule.current == task.status
                and rule.relation in relations
                and cls._guard_holds(rule.guard, task, is_last)
                and rule.requested not in allowed
            ):
                allowed.append(rule.requested)
        return allowed
