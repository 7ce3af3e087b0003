# approvals.py
"""
Approval Repository: one FrontViewApproval row per front view attempt, plus
the WorkflowSession row that carries the generation state for a session.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from viewforge.errors import NotFoundError
from viewforge.models import FrontViewApproval, WorkflowSession, utcnow
from viewforge.state import GenerationState, parse_state

log = logging.getLogger(__name__)


class ApprovalRepository:
    """
    Queries and mutations for FrontViewApproval rows.

    Mutating methods only stage changes; callers commit through
    `persist_with_retry` so every write shares the same retry policy.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Reads ---

    async def get(self, approval_id: uuid.UUID) -> Optional[FrontViewApproval]:
        q = select(FrontViewApproval).where(FrontViewApproval.id == approval_id)
        return (await self.db.execute(q.execution_options(populate_existing=True))).scalar_one_or_none()

    async def get_owned(self, approval_id: uuid.UUID, user_id: uuid.UUID) -> FrontViewApproval:
        approval = await self.get(approval_id)
        if approval is None or approval.user_id != user_id:
            raise NotFoundError("Approval record not found or access denied")
        return approval

    async def find_recent_initial(
        self,
        product_id: uuid.UUID,
        user_id: uuid.UUID,
        since: datetime,
        session_id: Optional[uuid.UUID] = None,
    ) -> Optional[FrontViewApproval]:
        """Newest initial front view created after `since`, limited to `session_id` when given."""
        q = (
            select(FrontViewApproval)
            .where(
                FrontViewApproval.product_id == product_id,
                FrontViewApproval.user_id == user_id,
                FrontViewApproval.is_initial_generation.is_(True),
                FrontViewApproval.created_at >= since,
            )
            .order_by(FrontViewApproval.created_at.desc())
            .limit(1)
        )
        if session_id is not None:
            q = q.where(FrontViewApproval.session_id == session_id)
        return (await self.db.execute(q)).scalar_one_or_none()

    async def next_iteration_number(self, product_id: uuid.UUID, user_id: uuid.UUID) -> int:
        q = select(func.max(FrontViewApproval.iteration_number)).where(
            FrontViewApproval.product_id == product_id,
            FrontViewApproval.user_id == user_id,
        )
        current = (await self.db.execute(q)).scalar()
        return (current or 0) + 1

    async def latest_pending(self, product_id: uuid.UUID, user_id: uuid.UUID) -> Optional[FrontViewApproval]:
        q = (
            select(FrontViewApproval)
            .where(
                FrontViewApproval.product_id == product_id,
                FrontViewApproval.user_id == user_id,
                FrontViewApproval.status == "pending",
            )
            .order_by(FrontViewApproval.created_at.desc())
            .limit(1)
        )
        return (await self.db.execute(q)).scalar_one_or_none()

    async def list_versions(self, product_id: uuid.UUID, user_id: uuid.UUID) -> List[FrontViewApproval]:
        q = (
            select(FrontViewApproval)
            .where(
                FrontViewApproval.product_id == product_id,
                FrontViewApproval.user_id == user_id,
            )
            .order_by(FrontViewApproval.iteration_number.desc())
        )
        return list((await self.db.execute(q)).scalars().all())

    # --- Staged writes ---

    def add(self, values: Dict[str, Any]) -> FrontViewApproval:
        approval = FrontViewApproval(**values)
        self.db.add(approval)
        return approval

    async def supersede_pending(self, session_id: uuid.UUID, reason: str) -> None:
        """Rejects any pending row of the session so it never holds two pending rows."""
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.session_id == session_id, FrontViewApproval.status == "pending")
            .values(status="rejected", user_feedback=reason)
            .execution_options(synchronize_session=False)
        )

    async def mark_rejected(self, approval_id: uuid.UUID, feedback: str) -> None:
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .values(status="rejected", user_feedback=feedback)
            .execution_options(synchronize_session=False)
        )

    async def mark_approved(self, approval_id: uuid.UUID, features: Dict[str, Any]) -> None:
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .values(status="approved", extracted_features=features, approved_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def cache_features(self, approval_id: uuid.UUID, features: Dict[str, Any]) -> None:
        """Stores features only if none are cached yet."""
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id, FrontViewApproval.extracted_features.is_(None))
            .values(extracted_features=features)
            .execution_options(synchronize_session=False)
        )

    async def record_remaining_views(
        self,
        approval_id: uuid.UUID,
        views: Dict[str, Dict[str, str]],
        credits: int,
    ) -> None:
        """
        Writes the URL, thumbnail and prompt of every view that succeeded and adds `credits`
        to the running totals. Views missing from `views` keep their old values.
        """
        values: Dict[str, Any] = {
            "credits_reserved": FrontViewApproval.credits_reserved + credits,
            "credits_consumed": FrontViewApproval.credits_consumed + credits,
        }
        for view, data in views.items():
            values[f"{view}_view_url"] = data["url"]
            values[f"{view}_view_prompt"] = data["prompt"]
            values[f"{view}_thumbnail_url"] = data.get("thumbnail_url")
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def mark_completed(self, approval_id: uuid.UUID) -> None:
        await self.db.execute(
            update(FrontViewApproval)
            .where(FrontViewApproval.id == approval_id)
            .values(status="completed", completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )


class SessionRepository:
    """Loads and stores the generation state of a workflow session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, session_id: uuid.UUID) -> Optional[WorkflowSession]:
        q = select(WorkflowSession).where(WorkflowSession.id == session_id)
        return (await self.db.execute(q.execution_options(populate_existing=True))).scalar_one_or_none()

    async def get_owned(self, session_id: uuid.UUID, user_id: uuid.UUID) -> Optional[WorkflowSession]:
        session = await self.get(session_id)
        if session is not None and session.user_id != user_id:
            raise NotFoundError("Workflow session not found or access denied")
        return session

    async def current_state(self, session_id: Optional[uuid.UUID], user_id: uuid.UUID) -> GenerationState:
        if session_id is None:
            return GenerationState.IDLE
        session = await self.get_owned(session_id, user_id)
        return parse_state(session.state if session else None)

    def create(
        self,
        session_id: uuid.UUID,
        product_id: uuid.UUID,
        user_id: uuid.UUID,
        state: GenerationState,
        current_approval_id: Optional[uuid.UUID] = None,
    ) -> WorkflowSession:
        session = WorkflowSession(
            id=session_id,
            product_id=product_id,
            user_id=user_id,
            state=state.value,
            current_approval_id=current_approval_id,
        )
        self.db.add(session)
        return session

    async def compare_and_set(
        self,
        session_id: uuid.UUID,
        expected: GenerationState,
        target: GenerationState,
        current_approval_id: Optional[uuid.UUID] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        """
        Moves the session to `target` only if it is still in `expected`.
        Returns False when another request changed it first (or it does not exist).
        """
        values: Dict[str, Any] = {"state": target.value, "last_error": last_error, "updated_at": utcnow()}
        if current_approval_id is not None:
            values["current_approval_id"] = current_approval_id
        result = await self.db.execute(
            update(WorkflowSession)
            .where(WorkflowSession.id == session_id, WorkflowSession.state == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def duplicate_cutoff(window_seconds: float) -> datetime:
    return utcnow() - timedelta(seconds=window_seconds)
