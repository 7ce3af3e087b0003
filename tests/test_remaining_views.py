# test_remaining_views.py
import uuid
from unittest.mock import AsyncMock, patch

from sqlalchemy.exc import OperationalError

from viewforge.approvals import ApprovalRepository
from viewforge.models import FrontViewApproval, RevisionView, WorkflowSession
from viewforge.revisions import RevisionRepository


async def seed_revision(db, product, user, revision_number):
    urls = {}
    batch_id = f"revision_{revision_number}_1700000000000"
    for view in ("front", "back", "side", "top", "bottom"):
        url = f"https://cdn.example.com/old/{view}.png"
        urls[view] = url
        db.add(RevisionView(
            id=uuid.uuid4(),
            product_id=product.id,
            user_id=user.id,
            revision_number=revision_number,
            batch_id=batch_id,
            view_type=view,
            image_url=url,
            is_active=True,
        ))
    await db.commit()
    return urls


class TestGenerateRemainingViews:
    async def test_back_first_then_the_rest(self, workflow, phases, generator, db):
        front = await phases.approved()
        generator.calls.clear()

        result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert result.success
        views = result.views
        assert all([views.back, views.side, views.top, views.bottom])
        assert await workflow.get_credit_balance() == 15

        assert generator.views_called()[0] == "back"
        assert sorted(generator.views_called()[1:]) == ["bottom", "side", "top"]
        for call in generator.calls:
            assert call["reference_image"] == front.front_view_url
            assert call["structural_reference"] is None
        for call in generator.calls[1:]:
            assert call["additional_reference_image"] == views.back

        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.back_view_url == views.back
        assert approval.bottom_view_url == views.bottom
        assert "BACK VIEW" in approval.back_view_prompt
        assert approval.credits_reserved == 5
        assert approval.credits_consumed == 5

        session = await db.get(WorkflowSession, front.session_id, populate_existing=True)
        assert session.state == "generating_remaining"

    async def test_one_failed_view_does_not_fail_the_batch(self, workflow, phases, generator, db):
        front = await phases.approved()
        generator.fail_views = {"top"}

        result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert result.success
        assert result.views.top == ""
        assert result.views.back and result.views.side and result.views.bottom
        # partial failures are still charged
        assert await workflow.get_credit_balance() == 15

        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.top_view_url is None
        assert approval.side_view_url == result.views.side

    async def test_failed_back_view_still_produces_the_others(self, workflow, phases, generator):
        front = await phases.approved()
        generator.fail_views = {"back"}
        generator.calls.clear()

        result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert result.success
        assert result.views.back == ""
        assert result.views.side and result.views.top and result.views.bottom
        for call in generator.calls[1:]:
            assert call["additional_reference_image"] is None

    async def test_requires_approved_front_view(self, workflow, phases, generator):
        front = await phases.front()
        calls_before = len(generator.calls)

        result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert not result.success
        assert len(generator.calls) == calls_before
        assert await workflow.get_credit_balance() == 18

    async def test_other_users_approval(self, workflow, phases, make_workflow, other_user):
        front = await phases.approved()

        result = await make_workflow(other_user).generate_remaining_views(front.approval_id, front.front_view_url)

        assert not result.success
        assert result.error == "Approval record not found or access denied"

    async def test_selected_revision_is_a_structural_reference(self, workflow, phases, generator, db, product, user):
        old = await seed_revision(db, product, user, revision_number=1)
        front = await phases.approved()
        generator.calls.clear()

        result = await workflow.generate_remaining_views(
            front.approval_id, front.front_view_url, selected_revision_number=1
        )

        assert result.success
        by_view = {c["view"]: c for c in generator.calls}
        for view in ("back", "side", "top", "bottom"):
            assert by_view[view]["structural_reference"] == old[view]
            assert "STRUCTURAL REFERENCE ONLY" in by_view[view]["prompt"]
            # color truth still comes from the new front view
            assert by_view[view]["reference_image"] == front.front_view_url

    async def test_unknown_revision_proceeds_without_structure(self, workflow, phases, generator):
        front = await phases.approved()
        generator.calls.clear()

        result = await workflow.generate_remaining_views(
            front.approval_id, front.front_view_url, selected_revision_number=7
        )

        assert result.success
        assert all(c["structural_reference"] is None for c in generator.calls)

    async def test_repeating_accumulates_credit_totals(self, workflow, phases, db):
        front = await phases.approved()

        first = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)
        second = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert first.success and second.success
        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.credits_reserved == 8
        assert approval.credits_consumed == 8
        assert approval.back_view_url == second.views.back
        assert await workflow.get_credit_balance() == 12

    async def test_unexpected_error_refunds(self, workflow, phases, db):
        front = await phases.approved()

        with patch.object(ApprovalRepository, "record_remaining_views", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        assert not result.success
        assert result.error == "Failed to generate remaining views"
        assert await workflow.get_credit_balance() == 18
        session = await db.get(WorkflowSession, front.session_id, populate_existing=True)
        assert session.state == "error"

    async def test_structural_lookup_failure_charges_nothing(self, workflow, phases, generator):
        front = await phases.approved()
        generator.calls.clear()
        lost = OperationalError("SELECT revision_views", {}, Exception("server closed the connection"))

        with patch.object(RevisionRepository, "views_for_revision", AsyncMock(side_effect=lost)):
            result = await workflow.generate_remaining_views(
                front.approval_id, front.front_view_url, selected_revision_number=1
            )

        assert not result.success
        assert result.error == "Failed to generate remaining views"
        assert generator.calls == []
        assert await workflow.get_credit_balance() == 18

    async def test_thumbnails_are_stored_per_view(self, workflow, phases, db):
        front = await phases.approved()

        result = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)

        approval = await db.get(FrontViewApproval, front.approval_id, populate_existing=True)
        assert approval.back_thumbnail_url == result.views.back + "?w=256"
        assert approval.top_thumbnail_url == result.views.top + "?w=256"
