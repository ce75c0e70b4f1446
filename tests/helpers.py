from taskflow.db_models.enums import Role, TaskStatus
from taskflow.models import Principal, TemplateTaskSpec

ADMIN = Principal(id="admin_1", role=Role.ADMIN)
ALICE = Principal(id="alice", role=Role.MEMBER)
BOB = Principal(id="bob", role=Role.MEMBER)
CAROL = Principal(id="carol", role=Role.MEMBER)


async def create_instance(service, task_names, assignee_id="alice", reviewer_id="bob", **template_kwargs):
    """Create a template and instantiate it; returns the instance's tasks in order."""
    template = await service.create_template(
        ADMIN,
        name="Contract",
        description="",
        tasks=[TemplateTaskSpec(name=name) for name in task_names],
        **template_kwargs,
    )
    result = await service.instantiate_workflow(
        template.id, ADMIN, reviewer_id=reviewer_id, assignee_id=assignee_id
    )
    view = await service.get_workflow_instance(result.workflow_instance_id)
    return view.tasks


async def submit_for_review(service, task_id, assignee=ALICE):
    await service.transition_task(task_id, TaskStatus.IN_PROGRESS, assignee)
    await service.transition_task(task_id, TaskStatus.SUBMITTED_FOR_REVIEW, assignee)
