# workflow.py
"""
Progressive generation workflow.

Four phases, each a method on `ProgressiveWorkflowHandler`:

1. `generate_front_view`          reserve 2 credits, generate, upload, persist approval
2. `handle_decision`              approve (extract features) or edit (regenerate)
3. `generate_remaining_views`     reserve 3 credits, back first, then side/top/bottom
4. `create_revision_after_approval`  commit the five views as the active batch

Every phase returns a result model with `success`/`error` instead of raising,
after refunding whatever it reserved.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from viewforge.approvals import ApprovalRepository, SessionRepository, duplicate_cutoff
from viewforge.auth import CurrentUser
from viewforge.db import async_session_maker, persist_with_retry
from viewforge.errors import (
    GenerationError, IncompleteBatchError, InsufficientCreditsError, InvalidTransitionError,
    NotFoundError, UploadError, ValidationError, WorkflowError,
)
from viewforge.features import ExtractedFeatures, FeatureExtractor, default_features
from viewforge.generator import GenerationOptions, ImageGenerator
from viewforge.ledger import CreditLedger
from viewforge.models import (
    REMAINING_VIEW_TYPES, VIEW_TYPES, BrandProfile, FrontViewApproval, Product,
)
from viewforge.prompts import append_feedback, build_front_view_prompt, build_view_prompt
from viewforge.references import ResolvedReferences, clean, resolve_references
from viewforge.revisions import BatchDraft, RevisionRepository
from viewforge.settings import settings
from viewforge.state import GenerationState, ensure_transition, parse_state
from viewforge.storage import ObjectStore, UploadResult

log = logging.getLogger(__name__)

S = GenerationState

# Fallback when a session row is missing: derive the state from the approval status.
STATE_FOR_STATUS = {
    "pending": S.AWAITING_APPROVAL,
    "approved": S.FRONT_APPROVED,
    "rejected": S.IDLE,
    "completed": S.COMPLETED,
}

# Background feature extraction tasks, kept referenced until they finish.
_background_tasks: Set[asyncio.Task] = set()


async def drain_background_tasks() -> None:
    """Waits for every scheduled background task. Used at shutdown and in tests."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


# ===================================================================
# RESULT SCHEMAS
# ===================================================================

class FrontViewResult(BaseModel):
    success: bool
    front_view_url: Optional[str] = None
    approval_id: Optional[uuid.UUID] = None
    session_id: Optional[uuid.UUID] = None
    credits_reserved: Optional[int] = None
    error: Optional[str] = None


class DecisionResult(BaseModel):
    success: bool
    action: Optional[Literal["approved", "regenerate"]] = None
    extracted_features: Optional[ExtractedFeatures] = None
    new_front_view_url: Optional[str] = None
    new_approval_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


class RemainingViews(BaseModel):
    back: str = ""
    side: str = ""
    top: str = ""
    bottom: str = ""


class RemainingViewsResult(BaseModel):
    success: bool
    views: Optional[RemainingViews] = None
    error: Optional[str] = None


class AllViews(BaseModel):
    front: str = ""
    back: str = ""
    side: str = ""
    top: str = ""
    bottom: str = ""


class RevisionResult(BaseModel):
    success: bool
    revision_number: Optional[int] = None
    batch_id: Optional[str] = None
    revision_ids: List[uuid.UUID] = []
    error: Optional[str] = None


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None


class ApprovalOut(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    session_id: uuid.UUID
    front_view_url: str
    status: str
    iteration_number: int
    credits_reserved: int
    credits_consumed: int
    is_initial_generation: bool
    user_feedback: Optional[str] = None
    back_view_url: Optional[str] = None
    side_view_url: Optional[str] = None
    top_view_url: Optional[str] = None
    bottom_view_url: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FrontViewVersion(BaseModel):
    id: uuid.UUID
    front_view_url: str
    iteration_number: int
    created_at: Optional[datetime] = None
    status: str

    class Config:
        from_attributes = True


class RevisionViewOut(BaseModel):
    id: uuid.UUID
    revision_number: int
    batch_id: str
    view_type: str
    image_url: str
    thumbnail_url: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


# --- Per-view outcomes of the fan-out ---

class ViewSuccess(BaseModel):
    view: str
    url: str
    prompt: str
    thumbnail_url: Optional[str] = None
    ok: Literal[True] = True


class ViewFailure(BaseModel):
    view: str
    error: str
    ok: Literal[False] = False


ViewOutcome = Union[ViewSuccess, ViewFailure]


def as_uuid(value: Any, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required")
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid {field}")


# ===================================================================
# WORKFLOW HANDLER
# ===================================================================

class ProgressiveWorkflowHandler:
    """Orchestrates credits, generation, approvals and revisions for one caller."""

    def __init__(
        self,
        db: AsyncSession,
        user: CurrentUser,
        generator: ImageGenerator,
        store: ObjectStore,
        extractor: FeatureExtractor,
        ledger: Optional[CreditLedger] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.db = db
        self.user = user
        self.generator = generator
        self.store = store
        self.extractor = extractor
        self.ledger = ledger or CreditLedger(db, user.id)
        self.session_factory = session_factory or async_session_maker
        self.approvals = ApprovalRepository(db)
        self.sessions = SessionRepository(db)
        self.revisions = RevisionRepository(db)

    # ---------------------------------------------------------------
    # Shared helpers
    # ---------------------------------------------------------------

    def _generation_options(self) -> GenerationOptions:
        return GenerationOptions(
            retry_budget=settings.GENERATOR_RETRY_BUDGET,
            fallback_enabled=True,
            preferred_model=settings.IMAGE_MODEL,
        )

    async def _reserve(self, amount: int, reason: str) -> uuid.UUID:
        result = await self.ledger.reserve(amount, reason=reason)
        if not result.success:
            raise InsufficientCreditsError(result.message or f"Insufficient credits. Need {amount} credits.")
        return result.reservation_id

    async def _refund(self, amount: int, reservation_id: Optional[uuid.UUID]) -> None:
        if reservation_id is None:
            return
        result = await self.ledger.refund(amount, reservation_id)
        if result.success:
            log.info(f"Refunded {amount} credits for reservation {reservation_id}")
        else:
            log.error(f"Failed to refund {amount} credits for reservation {reservation_id}: {result.message}")

    async def _load_references(
        self, product_id: uuid.UUID, explicit_reference: Optional[str] = None
    ) -> ResolvedReferences:
        product = await self.db.get(Product, product_id)
        if product is not None and product.owner_id != self.user.id:
            raise NotFoundError("Product not found or access denied")
        brand_profile = None
        if product is not None and product.brand_profile_applied and product.brand_profile_id:
            brand_profile = await self.db.get(BrandProfile, product.brand_profile_id)
        return resolve_references(product, brand_profile, explicit_reference)

    async def _state_for(self, approval: FrontViewApproval) -> GenerationState:
        session = await self.sessions.get(approval.session_id)
        if session is not None:
            return parse_state(session.state)
        return STATE_FOR_STATUS.get(approval.status, S.IDLE)

    async def _set_state(
        self,
        session_id: uuid.UUID,
        product_id: uuid.UUID,
        expected: GenerationState,
        target: GenerationState,
        approval_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Staged compare-and-set of the session state. Creates the row for a new session."""
        ensure_transition(expected, target)
        if await self.sessions.compare_and_set(session_id, expected, target, current_approval_id=approval_id):
            return
        if await self.sessions.get(session_id) is None:
            self.sessions.create(session_id, product_id, self.user.id, target, current_approval_id=approval_id)
            return
        raise InvalidTransitionError("Workflow session changed concurrently. Please retry.")

    async def _fail_session(self, session_id: Optional[uuid.UUID], expected: GenerationState, message: str) -> None:
        """Best effort: records the failure on an existing session row."""
        if session_id is None:
            return
        try:
            ensure_transition(expected, S.ERROR)
            if await self.sessions.compare_and_set(session_id, expected, S.ERROR, last_error=message):
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.warning(f"Could not record error state on session {session_id}: {e}")

    async def _features_for(self, approval_id: uuid.UUID, cached: Optional[Dict[str, Any]], image_url: str) -> ExtractedFeatures:
        """Cached features, else a fresh extraction (cached on success), else defaults."""
        if cached:
            try:
                return ExtractedFeatures.model_validate(cached)
            except Exception as e:
                log.warning(f"Cached features for approval {approval_id} are unreadable, re-extracting: {e}")
        try:
            features = await self.extractor.analyze(image_url)
        except Exception as e:
            log.warning(f"Feature extraction failed for approval {approval_id} (non-critical): {e}")
            return default_features()
        try:
            await self.approvals.cache_features(approval_id, features.model_dump())
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.warning(f"Could not cache features for approval {approval_id}: {e}")
        return features

    def _schedule_feature_extraction(self, approval_id: uuid.UUID, image_url: str) -> None:
        task = asyncio.create_task(self._extract_in_background(approval_id, image_url))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)

    async def _extract_in_background(self, approval_id: uuid.UUID, image_url: str) -> None:
        try:
            features = await self.extractor.analyze(image_url)
            async with self.session_factory() as session:
                await ApprovalRepository(session).cache_features(approval_id, features.model_dump())
                await session.commit()
            log.info(f"Background feature extraction cached for approval {approval_id}")
        except Exception as e:
            log.warning(f"Background feature extraction failed for approval {approval_id} (non-critical): {e}")

    async def _generate_and_upload(
        self,
        prompt: str,
        view: str,
        product_id: uuid.UUID,
        reference_image: Optional[str] = None,
        additional_reference_image: Optional[str] = None,
        structural_reference: Optional[str] = None,
        logo_image: Optional[str] = None,
    ) -> UploadResult:
        generated = await self.generator.generate(
            prompt,
            view=view,
            reference_image=reference_image,
            additional_reference_image=additional_reference_image,
            structural_reference=structural_reference,
            logo_image=logo_image,
            style="photorealistic",
            options=self._generation_options(),
        )
        if not generated or not generated.url:
            raise GenerationError(f"Failed to generate {view} view", view=view)

        uploaded = await self.store.upload(
            generated.url,
            project_id=str(product_id),
            preset="original",
            preserve_original=True,
        )
        if not uploaded.success or not uploaded.url:
            log.error(f"Upload of {view} view failed: {uploaded.error}")
            raise UploadError(f"Failed to upload {view} view", view=view)
        return uploaded

    # ---------------------------------------------------------------
    # Phase 1: front view
    # ---------------------------------------------------------------

    async def generate_front_view(
        self,
        product_id: Any,
        user_prompt: Optional[str],
        is_edit: bool = False,
        previous_front_view_url: Optional[str] = None,
        session_id: Any = None,
    ) -> FrontViewResult:
        cost = settings.FRONT_VIEW_CREDITS
        try:
            if not clean(user_prompt) or not clean(str(product_id or "")):
                raise ValidationError("Product ID and user prompt are required")
            product_id = as_uuid(product_id, "Product ID")
            session_id = as_uuid(session_id, "Session ID") if session_id else None
            current = await self.sessions.current_state(session_id, self.user.id)
            ensure_transition(current, S.GENERATING_FRONT)
            session_existed = session_id is not None and await self.sessions.get(session_id) is not None
            refs = await self._load_references(product_id, previous_front_view_url)
        except WorkflowError as e:
            log.warning(f"Front view request rejected: {e.message}")
            return FrontViewResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Could not prepare front view generation: {e}", exc_info=True)
            await self.db.rollback()
            return FrontViewResult(success=False, error="Failed to generate front view")

        try:
            reservation_id = await self._reserve(cost, reason="front_view")
        except InsufficientCreditsError as e:
            return FrontViewResult(success=False, error=e.message)

        log.info(
            f"Starting {'edit' if is_edit else 'initial'} front view generation for product {product_id}, "
            f"reserved {cost} credits"
        )
        try:
            if session_existed:
                await self._set_state(session_id, product_id, current, S.GENERATING_FRONT)
                await self.db.commit()

            reference = refs.reference.url if refs.reference else None
            tool_type = refs.tool_type if refs.reference and refs.reference.source.startswith("chat_") else None
            prompt = build_front_view_prompt(
                user_prompt,
                reference_image=reference,
                logo_image=refs.logo.url if refs.logo else None,
                logo_position=refs.logo_position,
                note=refs.note,
                tool_type=tool_type,
                generation_mode=refs.generation_mode,
            )
            front = await self._generate_and_upload(
                prompt, "front", product_id,
                reference_image=reference,
                logo_image=refs.logo.url if refs.logo else None,
            )

            if not is_edit:
                recent = await self.approvals.find_recent_initial(
                    product_id,
                    self.user.id,
                    duplicate_cutoff(settings.DUPLICATE_WINDOW_SECONDS),
                    session_id=session_id if session_existed else None,
                )
                if recent is not None:
                    log.info(f"Found approval {recent.id} created moments ago, returning it instead of a duplicate")
                    await self._refund(cost, reservation_id)
                    if session_existed:
                        await self.sessions.compare_and_set(
                            session_id, S.GENERATING_FRONT, S.AWAITING_APPROVAL, current_approval_id=recent.id
                        )
                        await self.db.commit()
                    return FrontViewResult(
                        success=True,
                        front_view_url=recent.front_view_url,
                        approval_id=recent.id,
                        session_id=recent.session_id,
                        credits_reserved=recent.credits_reserved,
                    )

            session_id = session_id or uuid.uuid4()
            expected = S.GENERATING_FRONT

            async def write() -> FrontViewApproval:
                await self.approvals.supersede_pending(session_id, "Superseded by a new front view")
                iteration = await self.approvals.next_iteration_number(product_id, self.user.id)
                approval = self.approvals.add({
                    "id": uuid.uuid4(),
                    "user_id": self.user.id,
                    "product_id": product_id,
                    "session_id": session_id,
                    "front_view_url": front.url,
                    "front_thumbnail_url": front.thumbnail_url,
                    "front_view_prompt": prompt,
                    "status": "pending",
                    "iteration_number": iteration,
                    "credits_reserved": cost,
                    "credits_consumed": cost,
                    "is_initial_generation": not is_edit,
                })
                await self._set_state(session_id, product_id, expected, S.AWAITING_APPROVAL, approval_id=approval.id)
                return approval

            approval = await persist_with_retry(self.db, write, label="Front view approval insert")
            log.info(f"Approval {approval.id} created (iteration {approval.iteration_number})")

            self._schedule_feature_extraction(approval.id, front.url)
            return FrontViewResult(
                success=True,
                front_view_url=front.url,
                approval_id=approval.id,
                session_id=session_id,
                credits_reserved=cost,
            )
        except WorkflowError as e:
            log.error(f"Front view generation failed: {e.message}")
            await self._refund(cost, reservation_id)
            if session_existed:
                await self._fail_session(session_id, S.GENERATING_FRONT, e.message)
            return FrontViewResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Unexpected error during front view generation: {e}", exc_info=True)
            await self.db.rollback()
            await self._refund(cost, reservation_id)
            if session_existed:
                await self._fail_session(session_id, S.GENERATING_FRONT, str(e))
            return FrontViewResult(success=False, error="Failed to generate front view")

    # ---------------------------------------------------------------
    # Phase 2: approve or edit
    # ---------------------------------------------------------------

    async def handle_decision(
        self,
        approval_id: Any,
        action: str,
        edit_feedback: Optional[str] = None,
    ) -> DecisionResult:
        if action == "approve":
            return await self._approve(approval_id)
        if action == "edit":
            return await self._edit(approval_id, edit_feedback)
        return DecisionResult(success=False, error=f"Unknown action '{action}'")

    async def _load_pending(self, approval_id: Any) -> FrontViewApproval:
        approval = await self.approvals.get_owned(as_uuid(approval_id, "Approval ID"), self.user.id)
        if approval.status != "pending":
            raise InvalidTransitionError(f"Approval is already {approval.status}")
        return approval

    async def _approve(self, approval_id: Any) -> DecisionResult:
        try:
            approval = await self._load_pending(approval_id)
            current = await self._state_for(approval)
            ensure_transition(current, S.FRONT_APPROVED)
        except WorkflowError as e:
            return DecisionResult(success=False, error=e.message)

        approval_id = approval.id
        session_id = approval.session_id
        product_id = approval.product_id

        features = await self._features_for(approval_id, approval.extracted_features, approval.front_view_url)

        async def write() -> None:
            await self.approvals.mark_approved(approval_id, features.model_dump())
            await self._set_state(session_id, product_id, current, S.FRONT_APPROVED, approval_id=approval_id)

        try:
            await persist_with_retry(self.db, write, label="Front view approval")
        except WorkflowError as e:
            log.error(f"Could not approve front view {approval_id}: {e.message}")
            return DecisionResult(success=False, error=e.message)

        log.info(f"Front view {approval_id} approved")
        return DecisionResult(success=True, action="approved", extracted_features=features)

    async def _edit(self, approval_id: Any, edit_feedback: Optional[str]) -> DecisionResult:
        feedback = (edit_feedback or "").strip()
        cost = settings.FRONT_VIEW_CREDITS
        try:
            if not feedback:
                raise ValidationError("Edit feedback is required")
            approval = await self._load_pending(approval_id)
            current = await self._state_for(approval)
            ensure_transition(current, S.GENERATING_FRONT)
            refs = await self._load_references(approval.product_id)
        except WorkflowError as e:
            return DecisionResult(success=False, error=e.message)

        old_id = approval.id
        session_id = approval.session_id
        product_id = approval.product_id
        previous_url = approval.front_view_url
        previous_prompt = approval.front_view_prompt

        try:
            reservation_id = await self._reserve(cost, reason="front_view_edit")
        except InsufficientCreditsError as e:
            return DecisionResult(success=False, error=e.message)

        try:
            async def reject() -> None:
                await self.approvals.mark_rejected(old_id, feedback)
                await self._set_state(session_id, product_id, current, S.GENERATING_FRONT)

            await persist_with_retry(self.db, reject, label="Front view rejection")

            prompt = append_feedback(previous_prompt, feedback)
            edited = await self._generate_and_upload(
                prompt, "front", product_id,
                reference_image=previous_url,
                logo_image=refs.logo.url if refs.logo else None,
            )

            async def write() -> FrontViewApproval:
                iteration = await self.approvals.next_iteration_number(product_id, self.user.id)
                new_approval = self.approvals.add({
                    "id": uuid.uuid4(),
                    "user_id": self.user.id,
                    "product_id": product_id,
                    "session_id": session_id,
                    "front_view_url": edited.url,
                    "front_thumbnail_url": edited.thumbnail_url,
                    "front_view_prompt": prompt,
                    "status": "pending",
                    "iteration_number": iteration,
                    "credits_reserved": cost,
                    "credits_consumed": cost,
                    "is_initial_generation": False,
                })
                await self._set_state(
                    session_id, product_id, S.GENERATING_FRONT, S.AWAITING_APPROVAL, approval_id=new_approval.id
                )
                return new_approval

            new_approval = await persist_with_retry(self.db, write, label="Edited front view insert")
            log.info(f"Front view {old_id} rejected, regenerated as {new_approval.id} (iteration {new_approval.iteration_number})")

            self._schedule_feature_extraction(new_approval.id, edited.url)
            return DecisionResult(
                success=True,
                action="regenerate",
                new_front_view_url=edited.url,
                new_approval_id=new_approval.id,
            )
        except WorkflowError as e:
            log.error(f"Front view edit failed: {e.message}")
            await self._refund(cost, reservation_id)
            await self._fail_session(session_id, S.GENERATING_FRONT, e.message)
            return DecisionResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Unexpected error during front view edit: {e}", exc_info=True)
            await self.db.rollback()
            await self._refund(cost, reservation_id)
            await self._fail_session(session_id, S.GENERATING_FRONT, str(e))
            return DecisionResult(success=False, error="Failed to generate front view")

    # ---------------------------------------------------------------
    # Phase 3: back, then side/top/bottom
    # ---------------------------------------------------------------

    async def _generate_remaining_view(
        self,
        view: str,
        product_id: uuid.UUID,
        front_url: str,
        back_url: Optional[str],
        features: ExtractedFeatures,
        refs: ResolvedReferences,
        structural: Dict[str, str],
    ) -> ViewOutcome:
        structural_reference = structural.get(view)
        prompt = build_view_prompt(
            view,
            features=features,
            has_logo=refs.logo is not None,
            generation_mode=refs.generation_mode,
            has_structural_reference=bool(structural_reference),
        )
        try:
            uploaded = await self._generate_and_upload(
                prompt, view, product_id,
                reference_image=front_url,
                additional_reference_image=back_url if view != "back" else None,
                structural_reference=structural_reference,
                logo_image=refs.logo.url if refs.logo else None,
            )
        except WorkflowError as e:
            log.error(f"{view} view failed: {e.message}")
            return ViewFailure(view=view, error=e.message)
        except Exception as e:
            log.error(f"Unexpected error generating {view} view: {e}", exc_info=True)
            return ViewFailure(view=view, error=f"Failed to generate {view} view")
        return ViewSuccess(view=view, url=uploaded.url, thumbnail_url=uploaded.thumbnail_url, prompt=prompt)

    async def generate_remaining_views(
        self,
        approval_id: Any,
        front_view_url: Optional[str] = None,
        selected_revision_number: Optional[int] = None,
    ) -> RemainingViewsResult:
        cost = settings.REMAINING_VIEWS_CREDITS
        try:
            approval = await self.approvals.get_owned(as_uuid(approval_id, "Approval ID"), self.user.id)
            if approval.status != "approved":
                raise ValidationError("Front view must be approved before generating the remaining views")
            current = await self._state_for(approval)
            ensure_transition(current, S.GENERATING_REMAINING)
            refs = await self._load_references(approval.product_id)

            structural: Dict[str, str] = {}
            if selected_revision_number is not None:
                structural = await self.revisions.views_for_revision(approval.product_id, selected_revision_number)
                if structural:
                    log.info(f"Using revision {selected_revision_number} as structural reference")
                else:
                    log.info(f"No views found for revision {selected_revision_number}, continuing without structural reference")
        except WorkflowError as e:
            return RemainingViewsResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Could not prepare remaining views generation: {e}", exc_info=True)
            await self.db.rollback()
            return RemainingViewsResult(success=False, error="Failed to generate remaining views")

        approval_id = approval.id
        session_id = approval.session_id
        product_id = approval.product_id
        front_url = clean(front_view_url) or approval.front_view_url
        cached_features = approval.extracted_features

        features = await self._features_for(approval_id, cached_features, front_url)

        try:
            reservation_id = await self._reserve(cost, reason="remaining_views")
        except InsufficientCreditsError as e:
            return RemainingViewsResult(success=False, error=e.message)

        try:
            async def start() -> None:
                await self._set_state(session_id, product_id, current, S.GENERATING_REMAINING)

            await persist_with_retry(self.db, start, label="Remaining views start")

            # Back anchors the opposite angle, so it goes first and alone.
            back = await self._generate_remaining_view(
                "back", product_id, front_url, None, features, refs, structural
            )
            back_url = back.url if isinstance(back, ViewSuccess) else None
            if back_url is None:
                log.warning("Back view failed, side/top/bottom will reference the front view only")

            others = ("side", "top", "bottom")
            settled = await asyncio.gather(
                *(
                    self._generate_remaining_view(v, product_id, front_url, back_url, features, refs, structural)
                    for v in others
                ),
                return_exceptions=True,
            )
            outcomes: Dict[str, ViewOutcome] = {"back": back}
            for view, result in zip(others, settled):
                if isinstance(result, BaseException):
                    log.error(f"{view} view raised: {result}")
                    outcomes[view] = ViewFailure(view=view, error=f"Failed to generate {view} view")
                else:
                    outcomes[view] = result

            succeeded = {
                view: {"url": o.url, "thumbnail_url": o.thumbnail_url, "prompt": o.prompt}
                for view, o in outcomes.items() if isinstance(o, ViewSuccess)
            }

            async def write() -> None:
                await self.approvals.record_remaining_views(approval_id, succeeded, cost)

            await persist_with_retry(self.db, write, label="Remaining views update")

            views = RemainingViews(**{
                view: outcomes[view].url if isinstance(outcomes[view], ViewSuccess) else ""
                for view in REMAINING_VIEW_TYPES
            })
            log.info(
                f"Remaining views for approval {approval_id}: "
                f"{len(succeeded)}/{len(REMAINING_VIEW_TYPES)} generated"
            )
            return RemainingViewsResult(success=True, views=views)
        except WorkflowError as e:
            log.error(f"Remaining views generation failed: {e.message}")
            await self._refund(cost, reservation_id)
            await self._fail_session(session_id, S.GENERATING_REMAINING, e.message)
            return RemainingViewsResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Unexpected error during remaining views generation: {e}", exc_info=True)
            await self.db.rollback()
            await self._refund(cost, reservation_id)
            await self._fail_session(session_id, S.GENERATING_REMAINING, str(e))
            return RemainingViewsResult(success=False, error="Failed to generate remaining views")

    # ---------------------------------------------------------------
    # Phase 4: revision batch
    # ---------------------------------------------------------------

    async def create_revision_after_approval(
        self,
        product_id: Any,
        approval_id: Any,
        all_views: Union[AllViews, Dict[str, str]],
        is_initial: bool,
    ) -> RevisionResult:
        try:
            if isinstance(all_views, dict):
                all_views = AllViews(**{k: v or "" for k, v in all_views.items() if k in VIEW_TYPES})
            missing = [v for v in VIEW_TYPES if not clean(getattr(all_views, v))]
            if missing:
                raise IncompleteBatchError(
                    "All 5 views (front, back, side, top, bottom) are required. Missing: " + ", ".join(missing)
                )
            product_id = as_uuid(product_id, "Product ID")
            approval = await self.approvals.get_owned(as_uuid(approval_id, "Approval ID"), self.user.id)
            if approval.product_id != product_id:
                raise NotFoundError("Approval record not found or access denied")
            if approval.status != "approved":
                raise InvalidTransitionError(f"Approval is {approval.status}, expected approved")
            current = await self._state_for(approval)
            ensure_transition(current, S.CREATING_REVISION)
        except WorkflowError as e:
            log.warning(f"Revision request rejected: {e.message}")
            return RevisionResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Could not prepare revision creation: {e}", exc_info=True)
            await self.db.rollback()
            return RevisionResult(success=False, error="Failed to create revision")

        image_urls = {v: clean(getattr(all_views, v)) for v in VIEW_TYPES}
        # Stored thumbnails only apply to the exact image they were made for.
        thumbnail_urls = {
            v: getattr(approval, f"{v}_thumbnail_url")
            for v in VIEW_TYPES
            if getattr(approval, f"{v}_view_url") == image_urls[v]
        }
        approval_id = approval.id
        session_id = approval.session_id
        draft = BatchDraft(
            product_id=product_id,
            user_id=self.user.id,
            approval_id=approval_id,
            is_initial=is_initial,
            image_urls=image_urls,
            thumbnail_urls=thumbnail_urls,
            edit_prompt=approval.front_view_prompt,
            ai_model=settings.IMAGE_MODEL,
            ai_parameters={
                "approval_id": str(approval_id),
                "session_id": str(session_id),
                "iteration_number": approval.iteration_number,
                "progressive_workflow": True,
            },
            metadata={
                "progressive_workflow": True,
                "approval_id": str(approval_id),
                "iteration_count": approval.iteration_number,
                "credits_used": approval.credits_consumed,
            },
        )

        try:
            async def start() -> None:
                await self._set_state(session_id, product_id, current, S.CREATING_REVISION)

            await persist_with_retry(self.db, start, label="Revision start")

            async def commit_batch():
                await self.approvals.mark_completed(approval_id)
                batch = await self.revisions.stage_batch(draft)
                await self._set_state(session_id, product_id, S.CREATING_REVISION, S.COMPLETED)
                return batch

            batch = await persist_with_retry(self.db, commit_batch, label="Revision batch commit")
        except WorkflowError as e:
            log.error(f"Revision creation failed: {e.message}")
            await self._fail_session(session_id, S.CREATING_REVISION, e.message)
            return RevisionResult(success=False, error=e.message)
        except Exception as e:
            log.error(f"Unexpected error during revision creation: {e}", exc_info=True)
            await self.db.rollback()
            await self._fail_session(session_id, S.CREATING_REVISION, str(e))
            return RevisionResult(success=False, error="Failed to create revision")

        log.info(f"Created revision {batch.revision_number} ({batch.batch_id}) for product {product_id}")

        try:
            self.revisions.stage_upload_history(draft, batch)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.warning(f"Failed to mirror revision {batch.batch_id} into upload history: {e}")

        return RevisionResult(
            success=True,
            revision_number=batch.revision_number,
            batch_id=batch.batch_id,
            revision_ids=batch.revision_ids,
        )

    # ---------------------------------------------------------------
    # Queries and product settings
    # ---------------------------------------------------------------

    async def get_pending_front_view_approval(self, product_id: Any) -> Optional[ApprovalOut]:
        approval = await self.approvals.latest_pending(as_uuid(product_id, "Product ID"), self.user.id)
        return ApprovalOut.model_validate(approval) if approval else None

    async def get_all_front_view_versions(self, product_id: Any) -> List[FrontViewVersion]:
        rows = await self.approvals.list_versions(as_uuid(product_id, "Product ID"), self.user.id)
        return [FrontViewVersion.model_validate(row) for row in rows]

    async def get_active_revision(self, product_id: Any) -> List[RevisionViewOut]:
        rows = await self.revisions.active_batch(as_uuid(product_id, "Product ID"))
        return [RevisionViewOut.model_validate(row) for row in rows if row.user_id == self.user.id]

    async def convert_to_regular_mode(self, product_id: Any) -> ActionResult:
        try:
            product_id = as_uuid(product_id, "Product ID")
            q = select(Product).where(Product.id == product_id, Product.owner_id == self.user.id)
            product = (await self.db.execute(q)).scalar_one_or_none()
            if product is None:
                raise NotFoundError("Product not found or access denied")

            async def write() -> None:
                product.generation_mode = "regular"

            await persist_with_retry(self.db, write, label="Generation mode update")
        except WorkflowError as e:
            return ActionResult(success=False, error=e.message)
        log.info(f"Product {product_id} converted to regular generation mode")
        return ActionResult(success=True)

    async def get_credit_balance(self) -> int:
        return await self.ledger.balance()
