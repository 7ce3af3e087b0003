# test_decision.py
from viewforge.features import DEFAULT_DESCRIPTION
from viewforge.models import FrontViewApproval, WorkflowSession
from viewforge.workflow import drain_background_tasks


class TestApprove:
    async def test_approve_attaches_cached_features(self, workflow, phases, db, extractor):
        front = await phases.front()

        result = await workflow.handle_decision(front.approval_id, "approve")

        assert result.success
        assert result.action == "approved"
        assert result.extracted_features.description == "A navy canvas backpack with leather trim"
        # background extraction already cached them, so approval does not re-extract
        assert len(extractor.calls) == 1

        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.status == "approved"
        assert approval.approved_at is not None
        assert approval.extracted_features["materials"] == ["canvas", "leather"]

        session = await db.get(WorkflowSession, front.session_id, populate_existing=True)
        assert session.state == "front_approved"

    async def test_extraction_failure_falls_back_to_defaults(self, workflow, phases, extractor, db):
        extractor.fail = True
        front = await phases.front()

        result = await workflow.handle_decision(front.approval_id, "approve")

        assert result.success
        features = result.extracted_features
        assert features.colors == []
        assert features.materials == []
        assert features.key_elements == []
        assert features.estimated_dimensions.width == "unknown"
        assert features.description == DEFAULT_DESCRIPTION

        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.status == "approved"

    async def test_cannot_approve_twice(self, workflow, phases):
        front = await phases.approved()

        result = await workflow.handle_decision(front.approval_id, "approve")

        assert not result.success
        assert result.error == "Approval is already approved"

    async def test_other_users_approval_is_not_found(self, workflow, phases, make_workflow, other_user):
        front = await phases.front()

        result = await make_workflow(other_user).handle_decision(front.approval_id, "approve")

        assert not result.success
        assert result.error == "Approval record not found or access denied"

    async def test_unknown_action(self, workflow, phases):
        front = await phases.front()

        result = await workflow.handle_decision(front.approval_id, "archive")

        assert not result.success


class TestEdit:
    async def test_blank_feedback_rejected_before_reservation(self, workflow, phases, generator):
        front = await phases.front()
        calls_before = len(generator.calls)

        result = await workflow.handle_decision(front.approval_id, "edit", "   ")

        assert not result.success
        assert result.error == "Edit feedback is required"
        assert len(generator.calls) == calls_before
        assert await workflow.get_credit_balance() == 18

    async def test_edit_regenerates_from_previous_image(self, workflow, phases, generator, db):
        front = await phases.front()

        result = await workflow.handle_decision(front.approval_id, "edit", "make the zipper red")
        await drain_background_tasks()

        assert result.success
        assert result.action == "regenerate"
        assert result.new_approval_id != front.approval_id
        assert result.new_front_view_url != front.front_view_url
        assert await workflow.get_credit_balance() == 16

        call = generator.calls[-1]
        assert call["reference_image"] == front.front_view_url
        assert call["prompt"].endswith("User feedback: make the zipper red")

        old = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        new = await db.get(FrontViewApproval, result.new_approval_id, populate_existing=True)
        assert old.status == "rejected"
        assert old.user_feedback == "make the zipper red"
        assert new.status == "pending"
        assert new.iteration_number == old.iteration_number + 1
        assert new.session_id == old.session_id
        assert new.is_initial_generation is False
        assert new.front_view_prompt.startswith(old.front_view_prompt.rstrip())

        session = await db.get(WorkflowSession, front.session_id, populate_existing=True)
        assert session.state == "awaiting_approval"
        assert session.current_approval_id == result.new_approval_id

    async def test_failed_edit_refunds_and_keeps_row_rejected(self, workflow, phases, generator, db):
        front = await phases.front()
        generator.fail_views = {"front"}

        result = await workflow.handle_decision(front.approval_id, "edit", "add a side pocket")

        assert not result.success
        assert result.error == "Failed to generate front view"
        assert await workflow.get_credit_balance() == 18

        old = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert old.status == "rejected"
        session = await db.get(WorkflowSession, front.session_id, populate_existing=True)
        assert session.state == "error"

    async def test_cannot_edit_an_approved_front_view(self, workflow, phases):
        front = await phases.approved()

        result = await workflow.handle_decision(front.approval_id, "edit", "smaller straps")

        assert not result.success
        assert await workflow.get_credit_balance() == 18
