# repository.py
import asyncio
import contextvars
import functools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLAlchemyTimeoutError

from taskflow.db_models import Comment as CommentORM
from taskflow.db_models import Task as TaskORM
from taskflow.db_models import TaskHistory as TaskHistoryORM
from taskflow.db_models import Template as TemplateORM
from taskflow.db_models import TemplateTask as TemplateTaskORM
from taskflow.db_models.enums import TaskStatus
from taskflow.errors import ConflictError, StoreUnavailable
from taskflow.models import Comment, HistoryEntry, Task, Template, TemplateTaskSpec

logger = logging.getLogger(__name__)

# Statuses in which the primary assignee is the holder.
_PRIMARY_HELD_STATUSES = [
    TaskStatus.ASSIGNED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.CHANGES_REQUESTED,
    TaskStatus.APPROVED,
    TaskStatus.COMPLETED,
]


class TemplateRepository(ABC):
    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[Template]:
        pass

    @abstractmethod
    async def list_templates(self, name: Optional[str] = None) -> List[Template]:
        pass

    @abstractmethod
    async def create_template(self, template: Template) -> Template:
        pass

    @abstractmethod
    async def update_template(self, template: Template) -> Optional[Template]:
        pass

    @abstractmethod
    async def delete_template(self, template_id: str) -> bool:
        pass


class TaskRepository(ABC):
    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def insert_tasks(self, tasks: List[Task]) -> List[Task]:
        """Insert a whole batch or nothing."""
        pass

    @abstractmethod
    async def conditional_update_task(self, task_id: str, expected_status: TaskStatus, fields: Dict[str, Any]) -> bool:
        """Apply ``fields`` only if the task's status still equals ``expected_status``.

        Returns False when the guard fails (or the task no longer exists).
        """
        pass

    @abstractmethod
    async def list_tasks_by_instance(self, instance_id: str) -> List[Task]:
        """Tasks of one workflow instance ordered by position."""
        pass

    @abstractmethod
    async def list_tasks_for_holder(self, user_id: str) -> List[Task]:
        pass

    @abstractmethod
    def atomic(self):
        """Async context manager: writes inside the block commit together or not at all."""
        pass


class HistoryRepository(ABC):
    @abstractmethod
    async def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        pass

    @abstractmethod
    async def list_history(self, task_id: str) -> List[HistoryEntry]:
        pass


class CommentRepository(ABC):
    @abstractmethod
    async def add_comment(self, comment: Comment) -> Comment:
        pass

    @abstractmethod
    async def list_comments(self, task_id: str) -> List[Comment]:
        pass


def _in_store_thread(func):
    """Run a blocking session call in a worker thread.

    The event loop stays free while the database works, and callers can
    stop waiting with ``asyncio.wait_for``. Transport and timeout failures
    surface as StoreUnavailable.
    """

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        def call():
            # A session is not thread-safe; an abandoned call still holds it.
            with self._session_lock:
                try:
                    return func(self, *args, **kwargs)
                except (OperationalError, SQLAlchemyTimeoutError) as e:
                    self.db_session.rollback()
                    logger.warning("Store call %s failed: %s", func.__name__, e)
                    raise StoreUnavailable("The task store is unavailable.", {"operation": func.__name__}) from e

        return await asyncio.to_thread(call)

    return wrapper


class PostgreSQLWorkflowRepository(TemplateRepository, TaskRepository, HistoryRepository, CommentRepository):
    def __init__(self, db_session):
        self.db_session = db_session
        self._atomic_depth = 0
        self._session_lock = threading.Lock()

    def _commit(self):
        if self._atomic_depth == 0:
            self.db_session.commit()
        else:
            self.db_session.flush()

    @_in_store_thread
    def _rollback(self):
        self.db_session.rollback()

    @_in_store_thread
    def _commit_block(self):
        self.db_session.commit()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        self._atomic_depth += 1
        try:
            yield
        except BaseException:
            self._atomic_depth -= 1
            if self._atomic_depth == 0:
                await self._rollback()
            raise
        else:
            self._atomic_depth -= 1
            if self._atomic_depth == 0:
                await self._commit_block()

    @staticmethod
    def _to_template(defn: TemplateORM) -> Template:
        return Template(
            id=defn.id,
            name=defn.name,
            description=defn.description,
            reviewer_policy=defn.reviewer_policy,
            tasks=[TemplateTaskSpec.model_validate(spec) for spec in defn.task_specs],
        )

    @staticmethod
    def _to_spec_rows(template: Template) -> List[TemplateTaskORM]:
        return [
            TemplateTaskORM(order=i, name=spec.name, role_label=spec.role_label, assignee_id=spec.assignee_id)
            for i, spec in enumerate(template.tasks)
        ]

    # --- Templates ---

    @_in_store_thread
    def get_template(self, template_id: str) -> Optional[Template]:
        defn = self.db_session.query(TemplateORM).filter(TemplateORM.id == template_id).first()
        return self._to_template(defn) if defn else None

    @_in_store_thread
    def list_templates(self, name: Optional[str] = None) -> List[Template]:
        query = self.db_session.query(TemplateORM)
        if name:
            query = query.filter(TemplateORM.name.ilike(f"%{name}%"))
        return [self._to_template(defn) for defn in query.order_by(TemplateORM.name).all()]

    @_in_store_thread
    def create_template(self, template: Template) -> Template:
        defn = TemplateORM(
            id=template.id,
            name=template.name,
            description=template.description,
            reviewer_policy=template.reviewer_policy,
        )
        defn.task_specs = self._to_spec_rows(template)
        self.db_session.add(defn)
        self._commit()
        self.db_session.refresh(defn)
        return self._to_template(defn)

    @_in_store_thread
    def update_template(self, template: Template) -> Optional[Template]:
        defn = self.db_session.query(TemplateORM).filter(TemplateORM.id == template.id).first()
        if not defn:
            return None
        defn.name = template.name
        defn.description = template.description
        defn.reviewer_policy = template.reviewer_policy
        defn.task_specs = self._to_spec_rows(template)
        self._commit()
        self.db_session.refresh(defn)
        return self._to_template(defn)

    @_in_store_thread
    def delete_template(self, template_id: str) -> bool:
        defn = self.db_session.query(TemplateORM).filter(TemplateORM.id == template_id).first()
        if not defn:
            return False
        self.db_session.delete(defn)
        self._commit()
        return True

    # --- Tasks ---

    @_in_store_thread
    def get_task(self, task_id: str) -> Optional[Task]:
        # Another session may have committed since this row was first loaded.
        task = self.db_session.query(TaskORM).filter(TaskORM.id == task_id).populate_existing().first()
        return Task.model_validate(task) if task else None

    @_in_store_thread
    def insert_tasks(self, tasks: List[Task]) -> List[Task]:
        rows = [
            TaskORM(**task.model_dump(exclude={"holder_id"}))
            for task in tasks
        ]
        self.db_session.add_all(rows)
        try:
            self._commit()
        except IntegrityError as e:
            self.db_session.rollback()
            raise ConflictError("Task batch conflicts with existing tasks.") from e
        return [task.model_copy(deep=True) for task in tasks]

    @_in_store_thread
    def conditional_update_task(self, task_id: str, expected_status: TaskStatus, fields: Dict[str, Any]) -> bool:
        result = self.db_session.execute(
            update(TaskORM)
            .where(TaskORM.id == task_id, TaskORM.status == expected_status)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        self._commit()
        return result.rowcount == 1

    @_in_store_thread
    def list_tasks_by_instance(self, instance_id: str) -> List[Task]:
        tasks = (
            self.db_session.query(TaskORM)
            .filter(TaskORM.workflow_instance_id == instance_id)
            .order_by(TaskORM.position)
            .all()
        )
        return [Task.model_validate(task) for task in tasks]

    @_in_store_thread
    def list_tasks_for_holder(self, user_id: str) -> List[Task]:
        tasks = (
            self.db_session.query(TaskORM)
            .filter(
                or_(
                    and_(TaskORM.status == TaskStatus.SUBMITTED_FOR_REVIEW, TaskORM.reviewer_id == user_id),
                    and_(TaskORM.status.in_(_PRIMARY_HELD_STATUSES), TaskORM.primary_assignee_id == user_id),
                )
            )
            .order_by(TaskORM.workflow_instance_id, TaskORM.position)
            .all()
        )
        return [Task.model_validate(task) for task in tasks]

    # --- History ---

    @_in_store_thread
    def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        self.db_session.add(
            TaskHistoryORM(
                task_id=entry.task_id,
                actor_user_id=entry.actor_user_id,
                previous_status=entry.previous_status,
                new_status=entry.new_status,
                created_at=entry.timestamp,
            )
        )
        self._commit()
        return entry

    @_in_store_thread
    def list_history(self, task_id: str) -> List[HistoryEntry]:
        rows = (
            self.db_session.query(TaskHistoryORM)
            .filter(TaskHistoryORM.task_id == task_id)
            .order_by(TaskHistoryORM.created_at, TaskHistoryORM.id)
            .all()
        )
        return [
            HistoryEntry(
                task_id=row.task_id,
                actor_user_id=row.actor_user_id,
                previous_status=row.previous_status,
                new_status=row.new_status,
                timestamp=row.created_at,
            )
            for row in rows
        ]

    # --- Comments ---

    @_in_store_thread
    def add_comment(self, comment: Comment) -> Comment:
        self.db_session.add(CommentORM(**comment.model_dump()))
        self._commit()
        return comment

    @_in_store_thread
    def list_comments(self, task_id: str) -> List[Comment]:
        rows = (
            self.db_session.query(CommentORM)
            .filter(CommentORM.task_id == task_id)
            .order_by(CommentORM.created_at)
            .all()
        )
        return [Comment.model_validate(row) for row in rows]


# Writes buffered by the current atomic block: task id -> (committed version it replaces, new version).
_journal: contextvars.ContextVar[Optional[Dict[str, Tuple[Optional[Task], Task]]]] = contextvars.ContextVar(
    "taskflow_memory_journal", default=None
)


class InMemoryWorkflowRepository(TemplateRepository, TaskRepository, HistoryRepository, CommentRepository):
    """Dictionary-backed store for tests and local runs.

    Check-and-set happens without an await in between, so it is atomic
    with respect to other coroutines on the same loop. Writes inside an
    ``atomic()`` block stay private to the block until it exits cleanly;
    blocks run one at a time.
    """

    def __init__(self):
        self._templates: Dict[str, Template] = {}
        self._tasks: Dict[str, Task] = {}
        self._history: List[HistoryEntry] = []
        self._comments: List[Comment] = []
        self._atomic_lock = asyncio.Lock()

    def _visible_tasks(self) -> Dict[str, Task]:
        """Committed tasks overlaid with the current block's pending writes."""
        journal = _journal.get()
        if not journal:
            return self._tasks
        tasks = dict(self._tasks)
        tasks.update({task_id: after for task_id, (_, after) in journal.items()})
        return tasks

    def _write_task(self, task: Task) -> None:
        journal = _journal.get()
        if journal is None:
            self._tasks[task.id] = task
        elif task.id in journal:
            journal[task.id] = (journal[task.id][0], task)
        else:
            journal[task.id] = (self._tasks.get(task.id), task)

    def _apply(self, journal: Dict[str, Tuple[Optional[Task], Task]]) -> None:
        for task_id, (before, _) in journal.items():
            if self._tasks.get(task_id) is not before:
                raise ConflictError(
                    f"Task '{task_id}' was changed outside the transaction.", {"task_id": task_id}
                )
        for task_id, (_, after) in journal.items():
            self._tasks[task_id] = after

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if _journal.get() is not None:
            yield
            return
        async with self._atomic_lock:
            journal: Dict[str, Tuple[Optional[Task], Task]] = {}
            token = _journal.set(journal)
            try:
                yield
            finally:
                _journal.reset(token)
            self._apply(journal)

    # --- Templates ---

    async def get_template(self, template_id: str) -> Optional[Template]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self, name: Optional[str] = None) -> List[Template]:
        templates = [
            t.model_copy(deep=True) for t in self._templates.values()
            if not name or name.lower() in t.name.lower()
        ]
        return sorted(templates, key=lambda t: t.name)

    async def create_template(self, template: Template) -> Template:
        self._templates[template.id] = template.model_copy(deep=True)
        return template.model_copy(deep=True)

    async def update_template(self, template: Template) -> Optional[Template]:
        if template.id not in self._templates:
            return None
        self._templates[template.id] = template.model_copy(deep=True)
        return template.model_copy(deep=True)

    async def delete_template(self, template_id: str) -> bool:
        return self._templates.pop(template_id, None) is not None

    # --- Tasks ---

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._visible_tasks().get(task_id)
        return task.model_copy(deep=True) if task else None

    async def insert_tasks(self, tasks: List[Task]) -> List[Task]:
        visible = self._visible_tasks()
        taken = {(t.workflow_instance_id, t.position) for t in visible.values()}
        for task in tasks:
            if task.id in visible or (task.workflow_instance_id, task.position) in taken:
                raise ConflictError("Task batch conflicts with existing tasks.", {"task_id": task.id})
            taken.add((task.workflow_instance_id, task.position))
        for task in tasks:
            self._write_task(task.model_copy(deep=True))
        return [task.model_copy(deep=True) for task in tasks]

    async def conditional_update_task(self, task_id: str, expected_status: TaskStatus, fields: Dict[str, Any]) -> bool:
        current = self._visible_tasks().get(task_id)
        if current is None or current.status != expected_status:
            return False
        self._write_task(current.model_copy(update=fields, deep=True))
        return True

    async def list_tasks_by_instance(self, instance_id: str) -> List[Task]:
        tasks = [
            task.model_copy(deep=True) for task in self._visible_tasks().values()
            if task.workflow_instance_id == instance_id
        ]
        return sorted(tasks, key=lambda t: t.position)

    async def list_tasks_for_holder(self, user_id: str) -> List[Task]:
        tasks = [task.model_copy(deep=True) for task in self._visible_tasks().values() if task.holder_id == user_id]
        return sorted(tasks, key=lambda t: (t.workflow_instance_id, t.position))

    # --- History ---

    async def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        self._history.append(entry.model_copy(deep=True))
        return entry

    async def list_history(self, task_id: str) -> List[HistoryEntry]:
        entries = [e.model_copy(deep=True) for e in self._history if e.task_id == task_id]
        return sorted(entries, key=lambda e: e.timestamp)

    # --- Comments ---

    async def add_comment(self, comment: Comment) -> Comment:
        self._comments.append(comment.model_copy(deep=True))
        return comment

    async def list_comments(self, task_id: str) -> List[Comment]:
        comments = [c.model_copy(deep=True) for c in self._comments if c.task_id == task_id]
        return sorted(comments, key=lambda c: c.created_at)
