# models.py
"""
Database models for ViewForge.

This file defines all SQLAlchemy models used by the application,
providing a single source of truth for the database schema.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Integer, JSON, ForeignKey,
    UniqueConstraint, Index, func
)
from sqlalchemy.types import Uuid as SA_UUID

from viewforge.db import Base


VIEW_TYPES = ("front", "back", "side", "top", "bottom")
REMAINING_VIEW_TYPES = ("back", "side", "top", "bottom")
GENERATION_MODES = ("regular", "black_and_white", "minimalist", "detailed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------
# Credits
# -----------------------

class CreditAccount(Base):
    __tablename__ = "credit_accounts"
    user_id = Column(SA_UUID(as_uuid=True), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CreditReservation(Base):
    __tablename__ = "credit_reservations"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    refunded_amount = Column(Integer, nullable=False, default=0)
    reason = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# -----------------------
# Products
# -----------------------

class BrandProfile(Base):
    __tablename__ = "brand_profiles"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    logo_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Product(Base):
    __tablename__ = "products"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="Untitled product")
    generation_mode = Column(String(32), nullable=False, default="regular")
    brand_profile_id = Column(SA_UUID(as_uuid=True), ForeignKey("brand_profiles.id", ondelete="SET NULL"), nullable=True)
    brand_profile_applied = Column(Boolean, nullable=False, default=False)

    # logo, design_file, chat_uploaded_image, chat_image_tool_type,
    # chat_image_logo_position, chat_image_note
    assets = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# -----------------------
# Progressive workflow
# -----------------------

class WorkflowSession(Base):
    __tablename__ = "workflow_sessions"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    state = Column(String(32), nullable=False, default="idle")
    current_approval_id = Column(SA_UUID(as_uuid=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class FrontViewApproval(Base):
    __tablename__ = "front_view_approvals"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    product_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    session_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)

    front_view_url = Column(String(2048), nullable=False)
    front_view_prompt = Column(Text, nullable=False)
    front_thumbnail_url = Column(String(2048), nullable=True)
    status = Column(String(32), nullable=False, default="pending", index=True)  # pending, approved, rejected, completed
    iteration_number = Column(Integer, nullable=False)
    credits_reserved = Column(Integer, nullable=False, default=0)
    credits_consumed = Column(Integer, nullable=False, default=0)
    is_initial_generation = Column(Boolean, nullable=False, default=True)
    user_feedback = Column(Text, nullable=True)
    extracted_features = Column(JSON(none_as_null=True), nullable=True)

    back_view_url = Column(String(2048), nullable=True)
    back_view_prompt = Column(Text, nullable=True)
    back_thumbnail_url = Column(String(2048), nullable=True)
    side_view_url = Column(String(2048), nullable=True)
    side_view_prompt = Column(Text, nullable=True)
    side_thumbnail_url = Column(String(2048), nullable=True)
    top_view_url = Column(String(2048), nullable=True)
    top_view_prompt = Column(Text, nullable=True)
    top_thumbnail_url = Column(String(2048), nullable=True)
    bottom_view_url = Column(String(2048), nullable=True)
    bottom_view_prompt = Column(Text, nullable=True)
    bottom_thumbnail_url = Column(String(2048), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_front_view_approvals_product_user_iteration", "product_id", "user_id", "iteration_number"),
    )


class RevisionView(Base):
    __tablename__ = "revision_views"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    revision_number = Column(Integer, nullable=False)
    batch_id = Column(String(160), nullable=False, index=True)
    view_type = Column(String(16), nullable=False)
    image_url = Column(String(2048), nullable=False)
    thumbnail_url = Column(String(2048), nullable=True)
    edit_prompt = Column(Text, nullable=True)
    edit_type = Column(String(32), nullable=False, default="initial")  # initial, ai_edit
    ai_model = Column(String(128), nullable=True)
    ai_parameters = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    front_view_approval_id = Column(SA_UUID(as_uuid=True), ForeignKey("front_view_approvals.id"), nullable=True)
    # `metadata` is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("batch_id", "view_type", name="uq_revision_views_batch_view"),
        Index("ix_revision_views_product_revision", "product_id", "revision_number"),
    )


class ImageUpload(Base):
    __tablename__ = "image_uploads"
    id = Column(SA_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(SA_UUID(as_uuid=True), nullable=False, index=True)
    image_url = Column(String(2048), nullable=False)
    thumbnail_url = Column(String(2048), nullable=True)
    upload_type = Column(String(32), nullable=False)  # original, edited
    view_type = Column(String(16), nullable=True)
    file_name = Column(String(255), nullable=False)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
