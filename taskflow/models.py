# models.py
import uuid
from datetime import datetime, timezone
from typing import Optional, List

from pydantic import BaseModel, Field, computed_field

from taskflow.db_models.enums import TaskStatus, Role, ReviewerPolicy, ActivityType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Principal(BaseModel):
    """The acting user, as resolved by the identity provider."""
    id: str
    role: Role = Role.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class TemplateTaskSpec(BaseModel):
    name: str
    role_label: Optional[str] = None
    assignee_id: Optional[str] = None

    class Config:
        from_attributes = True


class Template(BaseModel):
    id: str = Field(default_factory=lambda: "tpl_" + str(uuid.uuid4())[:8])
    name: str
    description: Optional[str] = ""
    reviewer_policy: ReviewerPolicy = ReviewerPolicy.INSTANCE
    tasks: List[TemplateTaskSpec] = Field(default_factory=list)

    class Config:
        from_attributes = True

    def to_dict(self):
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: dict):
        return cls(**data)


class Task(BaseModel):
    id: str = Field(default_factory=lambda: "task_" + str(uuid.uuid4())[:8])
    workflow_instance_id: str
    position: int
    name: str
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    template_id: Optional[str] = None
    primary_assignee_id: str
    reviewer_id: Optional[str] = None
    assigned_by: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    @computed_field
    @property
    def holder_id(self) -> Optional[str]:
        """Whoever must act next; derived from status instead of stored."""
        if self.status == TaskStatus.PENDING:
            return None
        if self.status == TaskStatus.SUBMITTED_FOR_REVIEW:
            return self.reviewer_id
        return self.primary_assignee_id

    def to_dict(self):
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: dict):
        data = {k: v for k, v in data.items() if k != "holder_id"}
        return cls(**data)


class HistoryEntry(BaseModel):
    task_id: str
    actor_user_id: str
    previous_status: TaskStatus
    new_status: TaskStatus
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True


class Comment(BaseModel):
    id: str = Field(default_factory=lambda: "cmt_" + str(uuid.uuid4())[:8])
    task_id: str
    user_id: str
    content: str
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True


class ActivityItem(BaseModel):
    type: ActivityType
    actor_user_id: str
    timestamp: datetime
    previous_status: Optional[TaskStatus] = None
    new_status: Optional[TaskStatus] = None
    content: Optional[str] = None


class TransitionResult(BaseModel):
    task_id: str
    previous_status: TaskStatus
    new_status: TaskStatus
    activated_task_id: Optional[str] = None  # next task promoted by this request, if any


class InstantiationResult(BaseModel):
    workflow_instance_id: str
    task_ids: List[str]


class WorkflowInstanceView(BaseModel):
    workflow_instance_id: str
    tasks: List[Task]

    @computed_field
    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and self.tasks[-1].status == TaskStatus.COMPLETED
