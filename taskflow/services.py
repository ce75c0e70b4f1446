# services.py
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from taskflow.audit import AuditRecorder
from taskflow.cascade import CascadeActivator, is_last
from taskflow.db_models.enums import ReviewerPolicy, TaskStatus
from taskflow.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailable,
    ValidationError,
)
from taskflow.instantiator import WorkflowInstantiator
from taskflow.models import (
    Comment,
    HistoryEntry,
    InstantiationResult,
    Principal,
    Task,
    Template,
    TemplateTaskSpec,
    TransitionResult,
    WorkflowInstanceView,
)
from taskflow.repository import CommentRepository, HistoryRepository, TaskRepository, TemplateRepository
from taskflow.state_machine import TaskStateMachine

logger = logging.getLogger(__name__)


def _require_admin(principal: Principal, action: str) -> None:
    if not principal.is_admin:
        raise PermissionDeniedError(f"Only admins can {action}.", {"user_id": principal.id})


def _validate_template_fields(name: str, tasks: List[TemplateTaskSpec]) -> None:
    if not name or not name.strip():
        raise ValidationError("Template name cannot be empty.")
    if not tasks:
        raise ValidationError("A template must have at least one task.")
    if any(not spec.name or not spec.name.strip() for spec in tasks):
        raise ValidationError("Template task names cannot be empty.")


class WorkflowService:
    def __init__(self, template_repo: TemplateRepository, task_repo: TaskRepository,
                 history_repo: HistoryRepository, comment_repo: CommentRepository,
                 store_timeout: Optional[float] = None):
        self.template_repo = template_repo
        self.task_repo = task_repo
        self.history_repo = history_repo
        self.comment_repo = comment_repo
        self.store_timeout = store_timeout
        self.instantiator = WorkflowInstantiator(template_repo, task_repo)
        self.cascade = CascadeActivator(task_repo)
        self.audit = AuditRecorder(history_repo, timeout=store_timeout)

    async def _store(self, awaitable):
        """Await a store call under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Store call timed out after %ss", self.store_timeout)
            raise StoreUnavailable("The task store did not respond in time.") from e

    async def _get_task_or_raise(self, task_id: str) -> Task:
        task = await self._store(self.task_repo.get_task(task_id))
        if not task:
            raise NotFoundError("Task", task_id)
        return task

    # --- Core operations ---

    async def instantiate_workflow(self, template_id: str, principal: Principal, reviewer_id: Optional[str] = None,
                                   assignee_id: Optional[str] = None) -> InstantiationResult:
        _require_admin(principal, "assign workflows")
        return await self._store(
            self.instantiator.instantiate(template_id, principal.id, reviewer_id=reviewer_id, assignee_id=assignee_id)
        )

    async def transition_task(self, task_id: str, requested_status: TaskStatus,
                              principal: Principal) -> TransitionResult:
        task = await self._get_task_or_raise(task_id)
        siblings = await self._store(self.task_repo.list_tasks_by_instance(task.workflow_instance_id))

        new_status = TaskStateMachine.resolve(task, requested_status, principal, is_last(task, siblings))
        if new_status == TaskStatus.APPROVED:
            new_status = self.cascade.resolve_approval(task, siblings)

        if new_status == task.status:
            # Admin rewrite of the current status: nothing to commit or log.
            return TransitionResult(task_id=task.id, previous_status=task.status, new_status=new_status)

        committed = True
        activated = None
        async with self.task_repo.atomic():
            updated = await self._store(
                self.task_repo.conditional_update_task(
                    task.id,
                    task.status,
                    {"status": new_status, "updated_at": datetime.now(timezone.utc)},
                )
            )
            if not updated:
                current = await self._store(self.task_repo.get_task(task.id))
                if current is None or current.status != new_status:
                    raise ConflictError(
                        f"Task '{task.id}' was changed by someone else. Refresh and try again.",
                        {"task_id": task.id, "expected_status": task.status.value},
                    )
                # An identical request won the race; report its outcome.
                committed = False
            if new_status == TaskStatus.APPROVED:
                activated = await self._store(self.cascade.activate_next(task, siblings))

        if committed:
            logger.info("Task %s moved %s -> %s by %s", task.id, task.status.value, new_status.value, principal.id)
            await self.audit.record(task.id, principal.id, task.status, new_status)
        if activated:
            await self.audit.record(activated.id, principal.id, TaskStatus.PENDING, TaskStatus.ASSIGNED)

        return TransitionResult(
            task_id=task.id,
            previous_status=task.status,
            new_status=new_status,
            activated_task_id=activated.id if activated else None,
        )

    async def list_audit_trail(self, task_id: str) -> List[HistoryEntry]:
        await self._get_task_or_raise(task_id)
        return await self._store(self.audit.trail(task_id))

    # --- Task queries ---

    async def get_task(self, task_id: str) -> Task:
        return await self._get_task_or_raise(task_id)

    async def get_workflow_instance(self, instance_id: str) -> WorkflowInstanceView:
        tasks = await self._store(self.task_repo.list_tasks_by_instance(instance_id))
        if not tasks:
            raise NotFoundError("Workflow instance", instance_id)
        return WorkflowInstanceView(workflow_instance_id=instance_id, tasks=tasks)

    async def list_tasks_for_holder(self, user_id: str) -> List[Task]:
        return await self._store(self.task_repo.list_tasks_for_holder(user_id))

    async def allowed_transitions(self, task_id: str, principal: Principal) -> List[TaskStatus]:
        task = await self._get_task_or_raise(task_id)
        siblings = await self._store(self.task_repo.list_tasks_by_instance(task.workflow_instance_id))
        return TaskStateMachine.allowed_transitions(task, principal, is_last(task, siblings))

    # --- Templates ---

    async def list_templates(self, name: Optional[str] = None) -> List[Template]:
        return await self._store(self.template_repo.list_templates(name=name))

    async def get_template(self, template_id: str) -> Template:
        template = await self._store(self.template_repo.get_template(template_id))
        if not template:
            raise NotFoundError("Template", template_id)
        return template

    async def create_template(self, principal: Principal, name: str, description: Optional[str],
                              tasks: List[TemplateTaskSpec],
                              reviewer_policy: ReviewerPolicy = ReviewerPolicy.INSTANCE) -> Template:
        _require_admin(principal, "create templates")
        _validate_template_fields(name, tasks)
        template = Template(name=name.strip(), description=description, reviewer_policy=reviewer_policy, tasks=tasks)
        created = await self._store(self.template_repo.create_template(template))
        logger.info("Template %s created by %s", created.id, principal.id)
        return created

    async def update_template(self, principal: Principal, template_id: str, name: str, description: Optional[str],
                              tasks: List[TemplateTaskSpec],
                              reviewer_policy: ReviewerPolicy = ReviewerPolicy.INSTANCE) -> Template:
        _require_admin(principal, "edit templates")
        _validate_template_fields(name, tasks)
        template = Template(
            id=template_id, name=name.strip(), description=description, reviewer_policy=reviewer_policy, tasks=tasks
        )
        updated = await self._store(self.template_repo.update_template(template))
        if not updated:
            raise NotFoundError("Template", template_id)
        return updated

    async def delete_template(self, principal: Principal, template_id: str) -> None:
        _require_admin(principal, "delete templates")
        deleted = await self._store(self.template_repo.delete_template(template_id))
        if not deleted:
            raise NotFoundError("Template", template_id)
        logger.info("Template %s deleted by %s", template_id, principal.id)

    # --- Comments ---

    async def add_comment(self, task_id: str, principal: Principal, content: str) -> Comment:
        if not content or not content.strip():
            raise ValidationError("Comment cannot be empty.")
        await self._get_task_or_raise(task_id)
        comment = Comment(task_id=task_id, user_id=principal.id, content=content.strip())
        return await self._store(self.comment_repo.add_comment(comment))

    async def list_comments(self, task_id: str) -> List[Comment]:
        await self._get_task_or_raise(task_id)
        return await self._store(self.comment_repo.list_comments(task_id))
