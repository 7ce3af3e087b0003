# routes.py
import logging
from functools import lru_cache
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from viewforge.auth import CurrentUser, get_current_user
from viewforge.db import get_db
from viewforge.errors import NotFoundError, WorkflowError
from viewforge.features import FeatureExtractor, GeminiFeatureExtractor
from viewforge.generator import GeminiImageGenerator, ImageGenerator
from viewforge.storage import CloudinaryObjectStore, ObjectStore
from viewforge.workflow import (
    ActionResult, AllViews, ApprovalOut, DecisionResult, FrontViewResult, FrontViewVersion,
    ProgressiveWorkflowHandler, RemainingViewsResult, RevisionResult, RevisionViewOut,
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow", tags=["Progressive Workflow"])
credits_router = APIRouter(prefix="/credits", tags=["Credits"])


# ===================================================================
# Service providers (overridden in tests)
# ===================================================================

@lru_cache
def get_image_generator() -> ImageGenerator:
    return GeminiImageGenerator()


@lru_cache
def get_object_store() -> ObjectStore:
    return CloudinaryObjectStore()


@lru_cache
def get_feature_extractor() -> FeatureExtractor:
    return GeminiFeatureExtractor()


def get_workflow(
    db: AsyncSession = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
    generator: ImageGenerator = Depends(get_image_generator),
    store: ObjectStore = Depends(get_object_store),
    extractor: FeatureExtractor = Depends(get_feature_extractor),
) -> ProgressiveWorkflowHandler:
    return ProgressiveWorkflowHandler(db=db, user=user, generator=generator, store=store, extractor=extractor)


# ===================================================================
# Request schemas
# ===================================================================

class FrontViewRequest(BaseModel):
    product_id: str
    user_prompt: str
    is_edit: bool = False
    previous_front_view_url: Optional[str] = None
    session_id: Optional[str] = None


class DecisionRequest(BaseModel):
    action: Literal["approve", "edit"]
    edit_feedback: Optional[str] = None


class RemainingViewsRequest(BaseModel):
    front_view_url: Optional[str] = None
    selected_revision_number: Optional[int] = Field(None, ge=0)


class RevisionRequest(BaseModel):
    product_id: str
    approval_id: str
    all_views: AllViews
    is_initial: bool = False


class CreditBalance(BaseModel):
    balance: int


def _raise_for_lookup(e: WorkflowError) -> None:
    log.info(f"Lookup rejected: {e.message}")
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


# ===================================================================
# PHASE ENDPOINTS
# Failures come back as `success: false` with a 200 status.
# ===================================================================

@router.post("/front-view", response_model=FrontViewResult)
async def generate_front_view(req: FrontViewRequest, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    """Phase 1: reserve credits and generate the front view for approval."""
    return await workflow.generate_front_view(
        product_id=req.product_id,
        user_prompt=req.user_prompt,
        is_edit=req.is_edit,
        previous_front_view_url=req.previous_front_view_url,
        session_id=req.session_id,
    )


@router.post("/approvals/{approval_id}/decision", response_model=DecisionResult)
async def decide_front_view(
    approval_id: str,
    req: DecisionRequest,
    workflow: ProgressiveWorkflowHandler = Depends(get_workflow),
):
    """Phase 2: approve the front view or send feedback for a new one."""
    return await workflow.handle_decision(approval_id, req.action, req.edit_feedback)


@router.post("/approvals/{approval_id}/remaining-views", response_model=RemainingViewsResult)
async def generate_remaining_views(
    approval_id: str,
    req: RemainingViewsRequest,
    workflow: ProgressiveWorkflowHandler = Depends(get_workflow),
):
    """Phase 3: back, side, top and bottom views from the approved front view."""
    return await workflow.generate_remaining_views(
        approval_id,
        front_view_url=req.front_view_url,
        selected_revision_number=req.selected_revision_number,
    )


@router.post("/revisions", response_model=RevisionResult)
async def create_revision(req: RevisionRequest, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    """Phase 4: store the five views as the product's active revision."""
    return await workflow.create_revision_after_approval(
        product_id=req.product_id,
        approval_id=req.approval_id,
        all_views=req.all_views,
        is_initial=req.is_initial,
    )


# ===================================================================
# QUERIES
# ===================================================================

@router.get("/products/{product_id}/pending-approval", response_model=Optional[ApprovalOut])
async def get_pending_approval(product_id: str, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    try:
        return await workflow.get_pending_front_view_approval(product_id)
    except WorkflowError as e:
        _raise_for_lookup(e)


@router.get("/products/{product_id}/front-view-versions", response_model=List[FrontViewVersion])
async def get_front_view_versions(product_id: str, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    try:
        return await workflow.get_all_front_view_versions(product_id)
    except WorkflowError as e:
        _raise_for_lookup(e)


@router.get("/products/{product_id}/active-revision", response_model=List[RevisionViewOut])
async def get_active_revision(product_id: str, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    try:
        return await workflow.get_active_revision(product_id)
    except WorkflowError as e:
        _raise_for_lookup(e)


@router.post("/products/{product_id}/regular-mode", response_model=ActionResult)
async def convert_to_regular_mode(product_id: str, workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    result = await workflow.convert_to_regular_mode(product_id)
    if not result.success and result.error and "not found" in result.error.lower():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    return result


@credits_router.get("/balance", response_model=CreditBalance)
async def get_credit_balance(workflow: ProgressiveWorkflowHandler = Depends(get_workflow)):
    return CreditBalance(balance=await workflow.get_credit_balance())
