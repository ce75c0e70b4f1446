from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from taskflow.activity import build_activity_feed
from taskflow.core.security import get_current_principal
from taskflow.db_models.enums import ReviewerPolicy, TaskStatus
from taskflow.dependencies import get_workflow_service
from taskflow.models import (
    ActivityItem,
    Comment,
    HistoryEntry,
    InstantiationResult,
    Principal,
    Task,
    Template,
    TemplateTaskSpec,
    TransitionResult,
    WorkflowInstanceView,
)
from taskflow.services import WorkflowService

router = APIRouter(prefix="/api", tags=["api"])


class TemplatePayload(BaseModel):
    name: str
    description: Optional[str] = ""
    reviewer_policy: ReviewerPolicy = ReviewerPolicy.INSTANCE
    tasks: List[TemplateTaskSpec] = Field(default_factory=list)


class InstantiatePayload(BaseModel):
    template_id: str
    reviewer_id: Optional[str] = None
    assignee_id: Optional[str] = None


class TransitionPayload(BaseModel):
    status: TaskStatus


class CommentPayload(BaseModel):
    content: str


@router.get("/healthz", status_code=status.HTTP_200_OK)
async def healthcheck():
    """API endpoint for health check."""
    return {"status": "ok"}


@router.get("/templates", response_model=List[Template])
async def list_templates(
        name: Optional[str] = None,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.list_templates(name=name)


@router.post("/templates", response_model=Template, status_code=status.HTTP_201_CREATED)
async def create_template(
        payload: TemplatePayload,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.create_template(
        principal, payload.name, payload.description, payload.tasks, reviewer_policy=payload.reviewer_policy
    )


@router.get("/templates/{template_id}", response_model=Template)
async def get_template(
        template_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.get_template(template_id)


@router.put("/templates/{template_id}", response_model=Template)
async def update_template(
        template_id: str,
        payload: TemplatePayload,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.update_template(
        principal, template_id, payload.name, payload.description, payload.tasks,
        reviewer_policy=payload.reviewer_policy,
    )


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
        template_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    await service.delete_template(principal, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/workflow-instances", response_model=InstantiationResult, status_code=status.HTTP_201_CREATED)
async def instantiate_workflow(
        payload: InstantiatePayload,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    """Expand a template into a new workflow instance."""
    return await service.instantiate_workflow(
        payload.template_id, principal, reviewer_id=payload.reviewer_id, assignee_id=payload.assignee_id
    )


@router.get("/workflow-instances/{instance_id}", response_model=WorkflowInstanceView)
async def get_workflow_instance(
        instance_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.get_workflow_instance(instance_id)


@router.get("/my-tasks", response_model=List[Task])
async def list_my_tasks(
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    """Tasks the current user must act on (or has finished)."""
    return await service.list_tasks_for_holder(principal.id)


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(
        task_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.get_task(task_id)


@router.post("/tasks/{task_id}/transitions", response_model=TransitionResult)
async def transition_task(
        task_id: str,
        payload: TransitionPayload,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.transition_task(task_id, payload.status, principal)


@router.get("/tasks/{task_id}/allowed-transitions", response_model=List[TaskStatus])
async def allowed_transitions(
        task_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.allowed_transitions(task_id, principal)


@router.get("/tasks/{task_id}/history", response_model=List[HistoryEntry])
async def list_audit_trail(
        task_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.list_audit_trail(task_id)


@router.get("/tasks/{task_id}/comments", response_model=List[Comment])
async def list_comments(
        task_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.list_comments(task_id)


@router.post("/tasks/{task_id}/comments", response_model=Comment, status_code=status.HTTP_201_CREATED)
async def add_comment(
        task_id: str,
        payload: CommentPayload,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    return await service.add_comment(task_id, principal, payload.content)


@router.get("/tasks/{task_id}/activity", response_model=List[ActivityItem])
async def task_activity(
        task_id: str,
        service: WorkflowService = Depends(get_workflow_service),
        principal: Principal = Depends(get_current_principal)
):
    """History and comments of a task as one chronological feed."""
    history = await service.list_audit_trail(task_id)
    comments = await service.list_comments(task_id)
    return build_activity_feed(history, comments)
