from taskflow.db_models.base import Base
from taskflow.db_models.workflow import Template, TemplateTask, Task, TaskHistory, Comment

__all__ = ["Base", "Template", "TemplateTask", "Task", "TaskHistory", "Comment"]
