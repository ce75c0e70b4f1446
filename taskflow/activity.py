from typing import List

from taskflow.db_models.enums import ActivityType
from taskflow.models import ActivityItem, Comment, HistoryEntry


def build_activity_feed(history: List[HistoryEntry], comments: List[Comment]) -> List[ActivityItem]:
    """Merge status history and comments into one chronological feed.

    Ties keep history before comments, each in their original order.
    """
    items = [
        ActivityItem(
            type=ActivityType.HISTORY,
            actor_user_id=entry.actor_user_id,
            timestamp=entry.timestamp,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
        )
        for entry in history
    ]
    items.extend(
        ActivityItem(
            type=ActivityType.COMMENT,
            actor_user_id=comment.user_id,
            timestamp=comment.created_at,
            content=comment.content,
        )
        for comment in comments
    )
    return sorted(items, key=lambda item: item.timestamp)
