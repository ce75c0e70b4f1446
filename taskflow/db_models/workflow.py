import uuid

from sqlalchemy import Column, String, Text, Integer, DateTime, Enum as SQLAlchemyEnum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from taskflow.db_models.base import Base
from taskflow.db_models.enums import TaskStatus, ReviewerPolicy


class Template(Base):
    __tablename__ = "templates"

    id = Column(String, primary_key=True, index=True, default=lambda: "tpl_" + str(uuid.uuid4())[:8])
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True, default="")
    reviewer_policy = Column(SQLAlchemyEnum(ReviewerPolicy), nullable=False, default=ReviewerPolicy.INSTANCE)

    task_specs = relationship(
        "TemplateTask",
        back_populates="template",
        order_by="TemplateTask.order",
        cascade="all, delete-orphan",
    )


class TemplateTask(Base):
    __tablename__ = "template_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(String, ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True)
    order = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    role_label = Column(String, nullable=True)
    assignee_id = Column(String, nullable=True)

    template = relationship("Template", back_populates="task_specs")


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("workflow_instance_id", "position", name="uq_tasks_instance_position"),
    )

    id = Column(String, primary_key=True, index=True)
    workflow_instance_id = Column(String, nullable=False, index=True)
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=True)
    # Provenance only; templates may be deleted while instances live on.
    template_id = Column(String, nullable=True, index=True)
    primary_assignee_id = Column(String, nullable=False, index=True)
    reviewer_id = Column(String, nullable=True, index=True)
    assigned_by = Column(String, nullable=False)
    status = Column(SQLAlchemyEnum(TaskStatus), nullable=False, default=TaskStatus.PENDING, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class TaskHistory(Base):
    __tablename__ = "task_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_user_id = Column(String, nullable=False)
    previous_status = Column(SQLAlchemyEnum(TaskStatus), nullable=False)
    new_status = Column(SQLAlchemyEnum(TaskStatus), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
