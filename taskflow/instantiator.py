import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from taskflow.db_models.enums import ReviewerPolicy, TaskStatus
from taskflow.errors import MissingReviewerError, NotFoundError, ValidationError
from taskflow.models import InstantiationResult, Task, Template
from taskflow.repository import TaskRepository, TemplateRepository

logger = logging.getLogger(__name__)


def new_workflow_instance_id() -> str:
    return "wf_" + uuid.uuid4().hex[:12]


class WorkflowInstantiator:
    """Expands a template into the ordered tasks of a new workflow instance."""

    def __init__(self, template_repo: TemplateRepository, task_repo: TaskRepository):
        self.template_repo = template_repo
        self.task_repo = task_repo

    @staticmethod
    def _reviewers(template: Template, assignees: List[str], reviewer_id: Optional[str],
                   assigned_by: str) -> List[Optional[str]]:
        # Reviewers are fixed here, once, and stored on each task.
        if template.reviewer_policy == ReviewerPolicy.NEXT_ASSIGNEE:
            return assignees[1:] + [reviewer_id or assigned_by]
        if not reviewer_id:
            raise MissingReviewerError(
                f"Template '{template.id}' requires a reviewer for the workflow instance.",
                {"template_id": template.id},
            )
        return [reviewer_id] * len(assignees)

    def build_tasks(self, template: Template, assigned_by: str, reviewer_id: Optional[str] = None,
                    assignee_id: Optional[str] = None) -> List[Task]:
        if not template.tasks:
            raise ValidationError(f"Template '{template.id}' has no tasks.", {"template_id": template.id})

        assignees = []
        for index, spec in enumerate(template.tasks):
            assignee = spec.assignee_id or assignee_id
            if not assignee:
                raise ValidationError(
                    f"Task '{spec.name}' at position {index} has no assignee.",
                    {"template_id": template.id, "position": index},
                )
            assignees.append(assignee)

        reviewers = self._reviewers(template, assignees, reviewer_id, assigned_by)
        instance_id = new_workflow_instance_id()
        now = datetime.now(timezone.utc)
        return [
            Task(
                workflow_instance_id=instance_id,
                position=index,
                name=spec.name,
                template_id=template.id,
                primary_assignee_id=assignees[index],
                reviewer_id=reviewers[index],
                assigned_by=assigned_by,
                status=TaskStatus.ASSIGNED if index == 0 else TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            for index, spec in enumerate(template.tasks)
        ]

    async def instantiate(self, template_id: str, assigned_by: str, reviewer_id: Optional[str] = None,
                          assignee_id: Optional[str] = None) -> InstantiationResult:
        template = await self.template_repo.get_template(template_id)
        if not template:
            raise NotFoundError("Template", template_id)

        tasks = self.build_tasks(template, assigned_by, reviewer_id=reviewer_id, assignee_id=assignee_id)
        await self.task_repo.insert_tasks(tasks)

        instance_id = tasks[0].workflow_instance_id
        logger.info("Instantiated workflow %s from template %s with %d tasks", instance_id, template_id, len(tasks))
        return InstantiationResult(workflow_instance_id=instance_id, task_ids=[t.id for t in tasks])
