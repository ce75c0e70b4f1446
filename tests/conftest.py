import pytest

from taskflow.repository import InMemoryWorkflowRepository
from taskflow.services import WorkflowService


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def service(repo):
    return WorkflowService(template_repo=repo, task_repo=repo, history_repo=repo, comment_repo=repo)
