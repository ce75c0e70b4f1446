import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from taskflow.db_models.enums import TaskStatus
from taskflow.models import HistoryEntry
from taskflow.repository import HistoryRepository

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Appends history entries for committed status changes.

    The task row stays the source of truth; a failed append is logged and
    never undoes the transition it describes.
    """

    def __init__(self, history_repo: HistoryRepository, timeout: Optional[float] = None):
        self.history_repo = history_repo
        self.timeout = timeout

    async def record(self, task_id: str, actor_user_id: str, previous_status: TaskStatus,
                     new_status: TaskStatus) -> Optional[HistoryEntry]:
        if previous_status == new_status:
            return None
        entry = HistoryEntry(
            task_id=task_id,
            actor_user_id=actor_user_id,
            previous_status=previous_status,
            new_status=new_status,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            return await asyncio.wait_for(self.history_repo.append_history(entry), timeout=self.timeout)
        except Exception:
            logger.exception(
                "Failed to append history for task %s (%s -> %s) by %s",
                task_id,
                previous_status.value,
                new_status.value,
                actor_user_id,
            )
            return None

    async def trail(self, task_id: str) -> List[HistoryEntry]:
        return await self.history_repo.list_history(task_id)
