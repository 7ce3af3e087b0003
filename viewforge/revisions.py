# revisions.py
"""
Revision Repository.

Per-view rows grouped into batches. A product has at most one active batch:
committing a new batch deactivates every active row of the product and then
inserts the new rows, inside a single transaction.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from viewforge.models import VIEW_TYPES, ImageUpload, RevisionView

log = logging.getLogger(__name__)


class BatchDraft(BaseModel):
    """Everything needed to write one batch, except the revision number."""
    product_id: uuid.UUID
    user_id: uuid.UUID
    approval_id: uuid.UUID
    is_initial: bool
    image_urls: Dict[str, str]
    thumbnail_urls: Dict[str, Optional[str]] = {}
    edit_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    ai_parameters: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}


class CommittedBatch(BaseModel):
    revision_number: int
    batch_id: str
    revision_ids: List[uuid.UUID]


def make_batch_id(product_id: uuid.UUID, revision_number: int, is_initial: bool) -> str:
    millis = int(time.time() * 1000)
    if is_initial:
        return f"initial_{product_id}_{millis}"
    return f"revision_{revision_number}_{millis}"


def advisory_lock_key(product_id: uuid.UUID) -> int:
    # pg_advisory_xact_lock takes a signed bigint
    return (product_id.int & 0x7FFFFFFFFFFFFFFF)


class RevisionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Reads ---

    async def max_revision_number(self, product_id: uuid.UUID) -> Optional[int]:
        q = select(func.max(RevisionView.revision_number)).where(RevisionView.product_id == product_id)
        return (await self.db.execute(q)).scalar()

    async def views_for_revision(self, product_id: uuid.UUID, revision_number: int) -> Dict[str, str]:
        """
        Per-view URLs of a revision. When the number was committed more than
        once, the most recent batch wins.
        """
        q = (
            select(RevisionView)
            .where(
                RevisionView.product_id == product_id,
                RevisionView.revision_number == revision_number,
            )
            .order_by(RevisionView.created_at.desc())
        )
        rows = (await self.db.execute(q)).scalars().all()
        if not rows:
            return {}
        batch_id = rows[0].batch_id
        return {row.view_type: row.image_url for row in rows if row.batch_id == batch_id}

    async def active_batch(self, product_id: uuid.UUID) -> List[RevisionView]:
        q = (
            select(RevisionView)
            .where(RevisionView.product_id == product_id, RevisionView.is_active.is_(True))
            .order_by(RevisionView.created_at.asc())
        )
        return list((await self.db.execute(q.execution_options(populate_existing=True))).scalars().all())

    async def active_batch_ids(self, product_id: uuid.UUID) -> List[str]:
        q = (
            select(RevisionView.batch_id)
            .where(RevisionView.product_id == product_id, RevisionView.is_active.is_(True))
            .distinct()
        )
        return list((await self.db.execute(q)).scalars().all())

    # --- Staged writes (callers commit) ---

    async def lock_product(self, product_id: uuid.UUID) -> None:
        """Serializes batch commits per product on PostgreSQL. SQLite already serializes writers."""
        if self.db.get_bind().dialect.name == "postgresql":
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(product_id)}
            )

    async def deactivate_all(self, product_id: uuid.UUID) -> None:
        await self.db.execute(
            update(RevisionView)
            .where(RevisionView.product_id == product_id, RevisionView.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )

    async def stage_batch(self, draft: BatchDraft) -> CommittedBatch:
        """Numbers the batch, deactivates the previous one and adds the new rows."""
        await self.lock_product(draft.product_id)

        if draft.is_initial:
            revision_number = 0
        else:
            current = await self.max_revision_number(draft.product_id)
            revision_number = (current + 1) if current is not None else 1

        batch_id = make_batch_id(draft.product_id, revision_number, draft.is_initial)
        await self.deactivate_all(draft.product_id)

        rows = []
        for view_type in VIEW_TYPES:
            image_url = draft.image_urls[view_type]
            row = RevisionView(
                id=uuid.uuid4(),
                product_id=draft.product_id,
                user_id=draft.user_id,
                revision_number=revision_number,
                batch_id=batch_id,
                view_type=view_type,
                image_url=image_url,
                thumbnail_url=draft.thumbnail_urls.get(view_type) or image_url,
                edit_prompt=draft.edit_prompt,
                edit_type="initial" if draft.is_initial else "ai_edit",
                ai_model=draft.ai_model,
                ai_parameters=draft.ai_parameters,
                is_active=True,
                front_view_approval_id=draft.approval_id,
                meta=draft.metadata,
            )
            self.db.add(row)
            rows.append(row)
        await self.db.flush()

        return CommittedBatch(
            revision_number=revision_number,
            batch_id=batch_id,
            revision_ids=[row.id for row in rows],
        )

    def stage_upload_history(self, draft: BatchDraft, batch: CommittedBatch) -> None:
        millis = int(time.time() * 1000)
        label = "initial" if draft.is_initial else f"revision_{batch.revision_number}"
        for view_type in VIEW_TYPES:
            image_url = draft.image_urls[view_type]
            self.db.add(ImageUpload(
                product_id=draft.product_id,
                user_id=draft.user_id,
                image_url=image_url,
                thumbnail_url=draft.thumbnail_urls.get(view_type) or image_url,
                upload_type="original" if draft.is_initial else "edited",
                view_type=view_type,
                file_name=f"{view_type}_{label}_{millis}.png",
                meta={
                    "batch_id": batch.batch_id,
                    "revision_number": batch.revision_number,
                    "is_initial": draft.is_initial,
                    "progressive_workflow": True,
                    "approval_id": str(draft.approval_id),
                },
            ))
