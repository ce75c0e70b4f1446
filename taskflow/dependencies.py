from functools import lru_cache

from fastapi import Depends

from taskflow.config import STORE_BACKEND, STORE_TIMEOUT_SECONDS
from taskflow.database import get_db
from taskflow.repository import InMemoryWorkflowRepository, PostgreSQLWorkflowRepository
from taskflow.services import WorkflowService


@lru_cache(maxsize=1)
def get_memory_repository() -> InMemoryWorkflowRepository:
    """Process-wide in-memory store used when STORE_BACKEND=memory."""
    return InMemoryWorkflowRepository()


def _postgres_repository():
    # Resolved lazily so the memory backend never opens a database session.
    db_gen = get_db()
    db = next(db_gen)
    try:
        yield PostgreSQLWorkflowRepository(db)
    finally:
        db_gen.close()


def get_workflow_repository():
    """Provides the store implementing all repository interfaces."""
    if STORE_BACKEND == "memory":
        yield get_memory_repository()
    else:
        yield from _postgres_repository()


def get_workflow_service(repo=Depends(get_workflow_repository)) -> WorkflowService:
    """Provides an instance of the WorkflowService, injecting the repositories."""
    return WorkflowService(
        template_repo=repo,
        task_repo=repo,
        history_repo=repo,
        comment_repo=repo,
        store_timeout=STORE_TIMEOUT_SECONDS,
    )
