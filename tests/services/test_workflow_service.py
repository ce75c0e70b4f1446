import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, patch

from taskflow.db_models.enums import ReviewerPolicy, TaskStatus
from taskflow.errors import (
    ConflictError,
    InvalidTransitionError,
    MissingReviewerError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailable,
    ValidationError,
)
from taskflow.models import TemplateTaskSpec, TransitionResult
from taskflow.services import WorkflowService
from tests.helpers import ADMIN, ALICE, BOB, CAROL, create_instance, submit_for_review


async def statuses(service, tasks):
    view = await service.get_workflow_instance(tasks[0].workflow_instance_id)
    return [t.status for t in view.tasks]


async def history_pairs(service, task_id):
    return [(e.previous_status, e.new_status) for e in await service.list_audit_trail(task_id)]


# --- Instantiation ---

@pytest.mark.asyncio
async def test_instantiate_creates_assigned_head_and_pending_tail(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])

    assert draft.status == TaskStatus.ASSIGNED
    assert draft.holder_id == "alice"
    assert legal.status == TaskStatus.PENDING
    assert legal.holder_id is None
    assert draft.workflow_instance_id == legal.workflow_instance_id


@pytest.mark.asyncio
async def test_instantiate_requires_admin(service):
    template = await service.create_template(ADMIN, "Contract", "", [TemplateTaskSpec(name="Draft")])
    with pytest.raises(PermissionDeniedError):
        await service.instantiate_workflow(template.id, ALICE, reviewer_id="bob", assignee_id="alice")


@pytest.mark.asyncio
async def test_instantiate_unknown_template(service):
    with pytest.raises(NotFoundError):
        await service.instantiate_workflow("tpl_missing", ADMIN, reviewer_id="bob", assignee_id="alice")


@pytest.mark.asyncio
async def test_instantiate_without_reviewer_writes_nothing(service, repo):
    template = await service.create_template(ADMIN, "Contract", "", [TemplateTaskSpec(name="Draft")])
    with pytest.raises(MissingReviewerError):
        await service.instantiate_workflow(template.id, ADMIN, assignee_id="alice")
    assert await repo.list_tasks_for_holder("alice") == []


@pytest.mark.asyncio
async def test_instantiate_with_next_assignee_policy(service):
    template = await service.create_template(
        ADMIN,
        "Relay",
        "",
        [TemplateTaskSpec(name="Draft", assignee_id="alice"), TemplateTaskSpec(name="Check", assignee_id="carol")],
        reviewer_policy=ReviewerPolicy.NEXT_ASSIGNEE,
    )
    result = await service.instantiate_workflow(template.id, ADMIN)
    view = await service.get_workflow_instance(result.workflow_instance_id)

    assert [t.reviewer_id for t in view.tasks] == ["carol", "admin_1"]


# --- Transitions ---

@pytest.mark.asyncio
async def test_full_review_cycle_cascades_and_completes(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])

    result = await service.transition_task(draft.id, TaskStatus.IN_PROGRESS, ALICE)
    assert result.new_status == TaskStatus.IN_PROGRESS
    assert (await service.get_task(draft.id)).holder_id == "alice"

    await service.transition_task(draft.id, TaskStatus.SUBMITTED_FOR_REVIEW, ALICE)
    assert (await service.get_task(draft.id)).holder_id == "bob"

    result = await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)
    assert result.new_status == TaskStatus.APPROVED
    assert result.activated_task_id == legal.id
    assert await statuses(service, [draft]) == [TaskStatus.APPROVED, TaskStatus.ASSIGNED]
    assert (await service.get_task(draft.id)).holder_id == "alice"
    assert (await service.get_task(legal.id)).holder_id == "alice"

    await service.transition_task(legal.id, TaskStatus.IN_PROGRESS, ALICE)
    result = await service.transition_task(legal.id, TaskStatus.COMPLETED, ALICE)
    assert result.new_status == TaskStatus.COMPLETED

    view = await service.get_workflow_instance(draft.workflow_instance_id)
    assert view.is_complete is True

    assert await history_pairs(service, draft.id) == [
        (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.SUBMITTED_FOR_REVIEW),
        (TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.APPROVED),
    ]
    assert await history_pairs(service, legal.id) == [
        (TaskStatus.PENDING, TaskStatus.ASSIGNED),
        (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    ]
    promotion = (await service.list_audit_trail(legal.id))[0]
    assert promotion.actor_user_id == "bob"


@pytest.mark.asyncio
async def test_changes_requested_returns_task_and_leaves_next_pending(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)

    result = await service.transition_task(draft.id, TaskStatus.CHANGES_REQUESTED, BOB)

    assert result.new_status == TaskStatus.CHANGES_REQUESTED
    assert result.activated_task_id is None
    assert (await service.get_task(draft.id)).holder_id == "alice"
    assert await statuses(service, [draft]) == [TaskStatus.CHANGES_REQUESTED, TaskStatus.PENDING]
    assert await history_pairs(service, legal.id) == []

    # Rework loop back into review.
    await submit_for_review(service, draft.id)
    assert (await service.get_task(draft.id)).status == TaskStatus.SUBMITTED_FOR_REVIEW


@pytest.mark.asyncio
async def test_approving_last_task_completes_it(service):
    (only,) = await create_instance(service, ["Sign-off"])
    await submit_for_review(service, only.id)

    result = await service.transition_task(only.id, TaskStatus.APPROVED, BOB)

    assert result.new_status == TaskStatus.COMPLETED
    assert result.activated_task_id is None
    assert (await service.get_workflow_instance(only.workflow_instance_id)).is_complete is True


@pytest.mark.asyncio
async def test_direct_completion_rejected_before_last_position(service):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])
    await service.transition_task(draft.id, TaskStatus.IN_PROGRESS, ALICE)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.transition_task(draft.id, TaskStatus.COMPLETED, ALICE)

    assert exc_info.value.current_status == TaskStatus.IN_PROGRESS
    assert (await service.get_task(draft.id)).status == TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_stranger_cannot_move_task(service):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])
    with pytest.raises(InvalidTransitionError):
        await service.transition_task(draft.id, TaskStatus.IN_PROGRESS, CAROL)
    assert await history_pairs(service, draft.id) == []


@pytest.mark.asyncio
async def test_pending_task_cannot_be_started(service):
    _, legal = await create_instance(service, ["Draft", "Review-Legal"])
    with pytest.raises(InvalidTransitionError):
        await service.transition_task(legal.id, TaskStatus.IN_PROGRESS, ALICE)


@pytest.mark.asyncio
async def test_transition_unknown_task(service):
    with pytest.raises(NotFoundError):
        await service.transition_task("task_missing", TaskStatus.IN_PROGRESS, ALICE)


@pytest.mark.asyncio
async def test_repeated_approval_is_rejected_without_side_effects(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)
    await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    with pytest.raises(InvalidTransitionError):
        await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    assert await history_pairs(service, legal.id) == [(TaskStatus.PENDING, TaskStatus.ASSIGNED)]


# --- Concurrency ---

@pytest.mark.asyncio
async def test_approval_from_stale_read_reports_success_once(service, repo):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)
    stale = await repo.get_task(draft.id)

    await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)
    current = await repo.get_task(draft.id)

    with patch.object(repo, "get_task", AsyncMock(side_effect=[stale, current])):
        result = await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    assert result.new_status == TaskStatus.APPROVED
    assert result.activated_task_id is None
    assert await history_pairs(service, draft.id) == [
        (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.SUBMITTED_FOR_REVIEW),
        (TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.APPROVED),
    ]
    assert await history_pairs(service, legal.id) == [(TaskStatus.PENDING, TaskStatus.ASSIGNED)]


@pytest.mark.asyncio
async def test_stale_read_with_different_outcome_is_a_conflict(service, repo):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)
    stale = await repo.get_task(draft.id)

    await service.transition_task(draft.id, TaskStatus.CHANGES_REQUESTED, BOB)
    current = await repo.get_task(draft.id)

    with patch.object(repo, "get_task", AsyncMock(side_effect=[stale, current])):
        with pytest.raises(ConflictError):
            await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    assert (await service.get_task(draft.id)).status == TaskStatus.CHANGES_REQUESTED
    assert (await service.get_task(legal.id)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_concurrent_approvals_activate_next_task_once(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)

    results = await asyncio.gather(
        service.transition_task(draft.id, TaskStatus.APPROVED, BOB),
        service.transition_task(draft.id, TaskStatus.APPROVED, BOB),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, TransitionResult)]
    assert successes
    for result in results:
        assert isinstance(result, (TransitionResult, InvalidTransitionError))
    assert all(r.new_status == TaskStatus.APPROVED for r in successes)
    assert (await service.get_task(legal.id)).status == TaskStatus.ASSIGNED
    assert await history_pairs(service, legal.id) == [(TaskStatus.PENDING, TaskStatus.ASSIGNED)]
    approvals = [
        pair for pair in await history_pairs(service, draft.id)
        if pair == (TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.APPROVED)
    ]
    assert len(approvals) == 1


# --- Admin override ---

@pytest.mark.asyncio
async def test_admin_override_approval_triggers_cascade(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])

    result = await service.transition_task(draft.id, TaskStatus.APPROVED, ADMIN)

    assert result.previous_status == TaskStatus.ASSIGNED
    assert result.activated_task_id == legal.id
    assert await statuses(service, [draft]) == [TaskStatus.APPROVED, TaskStatus.ASSIGNED]
    assert (await service.list_audit_trail(draft.id))[0].actor_user_id == "admin_1"


@pytest.mark.asyncio
async def test_admin_override_sets_arbitrary_status(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])

    await service.transition_task(legal.id, TaskStatus.IN_PROGRESS, ADMIN)

    assert (await service.get_task(legal.id)).status == TaskStatus.IN_PROGRESS
    assert (await service.get_task(draft.id)).status == TaskStatus.ASSIGNED


@pytest.mark.asyncio
async def test_admin_noop_writes_no_history(service):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])

    result = await service.transition_task(draft.id, TaskStatus.ASSIGNED, ADMIN)

    assert result.previous_status == result.new_status == TaskStatus.ASSIGNED
    assert await history_pairs(service, draft.id) == []


# --- Audit and store failures ---

@pytest.mark.asyncio
async def test_history_failure_does_not_undo_transition(service, repo, caplog):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])

    with patch.object(repo, "append_history", AsyncMock(side_effect=RuntimeError("disk full"))):
        with caplog.at_level(logging.ERROR, logger="taskflow.audit"):
            result = await service.transition_task(draft.id, TaskStatus.IN_PROGRESS, ALICE)

    assert result.new_status == TaskStatus.IN_PROGRESS
    assert (await service.get_task(draft.id)).status == TaskStatus.IN_PROGRESS
    assert await history_pairs(service, draft.id) == []
    assert "Failed to append history" in caplog.text


@pytest.mark.asyncio
async def test_slow_store_raises_store_unavailable(repo):
    service = WorkflowService(repo, repo, repo, repo, store_timeout=0.01)

    async def slow_get_task(task_id):
        await asyncio.sleep(1)

    with patch.object(repo, "get_task", slow_get_task):
        with pytest.raises(StoreUnavailable):
            await service.transition_task("task_any", TaskStatus.IN_PROGRESS, ALICE)


@pytest.mark.asyncio
async def test_failed_cascade_rolls_back_approval(service, repo):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)

    with patch.object(service.cascade, "activate_next", AsyncMock(side_effect=StoreUnavailable("down"))):
        with pytest.raises(StoreUnavailable):
            await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    assert await statuses(service, [draft]) == [TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.PENDING]


# --- Isolation of in-flight transitions ---

async def failing_cascade(task, siblings):
    await asyncio.sleep(0.05)
    raise StoreUnavailable("The task store is unavailable.")


@pytest.mark.asyncio
async def test_uncommitted_approval_is_invisible_to_other_requests(service, repo):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])
    await submit_for_review(service, draft.id)

    async def read_while_approving():
        await asyncio.sleep(0.01)
        return await service.get_task(draft.id), await service.list_tasks_for_holder("alice")

    with patch.object(service.cascade, "activate_next", failing_cascade):
        approval, (seen, alice_tasks) = await asyncio.gather(
            service.transition_task(draft.id, TaskStatus.APPROVED, BOB),
            read_while_approving(),
            return_exceptions=True,
        )

    assert isinstance(approval, StoreUnavailable)
    assert seen.status == TaskStatus.SUBMITTED_FOR_REVIEW
    assert alice_tasks == []
    assert await statuses(service, [draft]) == [TaskStatus.SUBMITTED_FOR_REVIEW, TaskStatus.PENDING]


@pytest.mark.asyncio
async def test_approval_waiting_on_failed_one_still_succeeds(repo):
    failing = WorkflowService(repo, repo, repo, repo)
    healthy = WorkflowService(repo, repo, repo, repo)
    draft, legal = await create_instance(healthy, ["Draft", "Review-Legal"])
    await submit_for_review(healthy, draft.id)

    async def approve_shortly_after():
        await asyncio.sleep(0.01)
        return await healthy.transition_task(draft.id, TaskStatus.APPROVED, BOB)

    with patch.object(failing.cascade, "activate_next", failing_cascade):
        first, second = await asyncio.gather(
            failing.transition_task(draft.id, TaskStatus.APPROVED, BOB),
            approve_shortly_after(),
            return_exceptions=True,
        )

    assert isinstance(first, StoreUnavailable)
    assert second.new_status == TaskStatus.APPROVED
    assert second.activated_task_id == legal.id
    assert await statuses(healthy, [draft]) == [TaskStatus.APPROVED, TaskStatus.ASSIGNED]


# --- Queries ---

@pytest.mark.asyncio
async def test_holder_listing_follows_the_work(service):
    draft, legal = await create_instance(service, ["Draft", "Review-Legal"])

    assert [t.id for t in await service.list_tasks_for_holder("alice")] == [draft.id]
    assert await service.list_tasks_for_holder("bob") == []

    await submit_for_review(service, draft.id)
    assert await service.list_tasks_for_holder("alice") == []
    assert [t.id for t in await service.list_tasks_for_holder("bob")] == [draft.id]

    await service.transition_task(draft.id, TaskStatus.APPROVED, BOB)
    assert [t.id for t in await service.list_tasks_for_holder("alice")] == [draft.id, legal.id]


@pytest.mark.asyncio
async def test_allowed_transitions(service):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])

    assert await service.allowed_transitions(draft.id, ALICE) == [TaskStatus.IN_PROGRESS]
    assert await service.allowed_transitions(draft.id, BOB) == []


@pytest.mark.asyncio
async def test_unknown_instance_and_history(service):
    with pytest.raises(NotFoundError):
        await service.get_workflow_instance("wf_missing")
    with pytest.raises(NotFoundError):
        await service.list_audit_trail("task_missing")


# --- Templates ---

@pytest.mark.asyncio
async def test_template_crud(service):
    created = await service.create_template(
        ADMIN, "  Onboarding ", "New hires", [TemplateTaskSpec(name="Paperwork", role_label="HR")]
    )
    assert created.name == "Onboarding"
    assert await service.get_template(created.id) == created

    updated = await service.update_template(
        ADMIN, created.id, "Onboarding v2", "New hires",
        [TemplateTaskSpec(name="Paperwork"), TemplateTaskSpec(name="Laptop")],
    )
    assert [spec.name for spec in updated.tasks] == ["Paperwork", "Laptop"]
    assert [t.id for t in await service.list_templates(name="v2")] == [created.id]

    await service.delete_template(ADMIN, created.id)
    with pytest.raises(NotFoundError):
        await service.get_template(created.id)
    with pytest.raises(NotFoundError):
        await service.delete_template(ADMIN, created.id)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name, tasks",
    [
        ("", [TemplateTaskSpec(name="Draft")]),
        ("Contract", []),
        ("Contract", [TemplateTaskSpec(name="  ")]),
    ],
)
async def test_template_validation(service, name, tasks):
    with pytest.raises(ValidationError):
        await service.create_template(ADMIN, name, "", tasks)


@pytest.mark.asyncio
async def test_members_cannot_manage_templates(service):
    with pytest.raises(PermissionDeniedError):
        await service.create_template(ALICE, "Contract", "", [TemplateTaskSpec(name="Draft")])
    template = await service.create_template(ADMIN, "Contract", "", [TemplateTaskSpec(name="Draft")])
    with pytest.raises(PermissionDeniedError):
        await service.update_template(ALICE, template.id, "Mine", "", [TemplateTaskSpec(name="Draft")])
    with pytest.raises(PermissionDeniedError):
        await service.delete_template(ALICE, template.id)


@pytest.mark.asyncio
async def test_update_unknown_template(service):
    with pytest.raises(NotFoundError):
        await service.update_template(ADMIN, "tpl_missing", "Contract", "", [TemplateTaskSpec(name="Draft")])


# --- Comments ---

@pytest.mark.asyncio
async def test_comments(service):
    draft, _ = await create_instance(service, ["Draft", "Review-Legal"])

    await service.add_comment(draft.id, BOB, "  Please cite the clause. ")
    await service.add_comment(draft.id, ALICE, "Done")

    comments = await service.list_comments(draft.id)
    assert [(c.user_id, c.content) for c in comments] == [("bob", "Please cite the clause."), ("alice", "Done")]

    with pytest.raises(ValidationError):
        await service.add_comment(draft.id, BOB, "   ")
    with pytest.raises(NotFoundError):
        await service.add_comment("task_missing", BOB, "Hello")
