import logging
from datetime import datetime, timezone
from typing import List, Optional

from taskflow.db_models.enums import TaskStatus
from taskflow.models import Task
from taskflow.repository import TaskRepository

logger = logging.getLogger(__name__)


def next_task(task: Task, siblings: List[Task]) -> Optional[Task]:
    """The task at ``position + 1`` in the same instance, if any."""
    return next((t for t in siblings if t.position == task.position + 1), None)


def is_last(task: Task, siblings: List[Task]) -> bool:
    return next_task(task, siblings) is None


class CascadeActivator:
    """Hands work from an approved task to the next one in its instance."""

    def __init__(self, task_repo: TaskRepository):
        self.task_repo = task_repo

    @staticmethod
    def resolve_approval(task: Task, siblings: List[Task]) -> TaskStatus:
        """Approving the terminal task completes the instance instead."""
        return TaskStatus.COMPLETED if is_last(task, siblings) else TaskStatus.APPROVED

    async def activate_next(self, task: Task, siblings: List[Task]) -> Optional[Task]:
        """Promote the next task from Pending to Assigned.

        Returns the promoted task, or None when there is no next task or it
        was no longer Pending. Losing the guard means another request already
        activated it; that is not an error.
        """
        candidate = next_task(task, siblings)
        if candidate is None:
            return None

        promoted = await self.task_repo.conditional_update_task(
            candidate.id,
            TaskStatus.PENDING,
            {"status": TaskStatus.ASSIGNED, "updated_at": datetime.now(timezone.utc)},
        )
        if not promoted:
            logger.info(
                "Next task %s already active; skipping promotion after approval of %s",
                candidate.id,
                task.id,
            )
            return None

        logger.info("Activated task %s (position %d) in instance %s", candidate.id, candidate.position,
                    candidate.workflow_instance_id)
        return candidate.model_copy(update={"status": TaskStatus.ASSIGNED})
