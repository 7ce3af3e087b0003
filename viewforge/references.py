# references.py
"""Resolves which reference and logo images a front view generation should use."""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from viewforge.models import BrandProfile, Product

log = logging.getLogger(__name__)

# Chat upload tool types that turn the uploaded image into the generation reference.
REFERENCE_TOOL_TYPES = ("sketch", "reference")


class ResolvedImage(BaseModel):
    url: str
    source: str


class ResolvedReferences(BaseModel):
    reference: Optional[ResolvedImage] = None
    logo: Optional[ResolvedImage] = None
    logo_position: Optional[str] = None
    note: Optional[str] = None
    tool_type: Optional[str] = None
    generation_mode: str = "regular"


def clean(value: Any) -> Optional[str]:
    """Only non-empty strings count as usable images; whitespace is trimmed."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def resolve_reference_image(
    explicit_reference: Optional[str],
    assets: Dict[str, Any],
) -> Optional[ResolvedImage]:
    """explicit (previous front view, then uploaded sketch/reference) > product design file > none."""
    tool_type = assets.get("chat_image_tool_type")
    uploaded = clean(assets.get("chat_uploaded_image"))

    explicit = clean(explicit_reference)
    if explicit:
        return ResolvedImage(url=explicit, source="explicit")
    if tool_type in REFERENCE_TOOL_TYPES and uploaded:
        return ResolvedImage(url=uploaded, source=f"chat_{tool_type}")
    design_file = clean(assets.get("design_file"))
    if design_file:
        return ResolvedImage(url=design_file, source="product_design_file")
    return None


def resolve_logo(
    assets: Dict[str, Any],
    brand_profile: Optional[BrandProfile] = None,
) -> Optional[ResolvedImage]:
    """chat-uploaded logo > product logo > brand profile logo > none."""
    tool_type = assets.get("chat_image_tool_type")
    if tool_type and tool_type != "logo":
        # The upload is a sketch/reference/texture, not a logo, and brand fallbacks do not apply.
        return None

    candidates = [
        ("chat_upload", assets.get("chat_uploaded_image") if tool_type == "logo" else None),
        ("product_metadata", assets.get("logo")),
        ("brand_profile", brand_profile.logo_url if brand_profile else None),
    ]
    for source, value in candidates:
        url = clean(value)
        if url:
            return ResolvedImage(url=url, source=source)
    return None


def resolve_references(
    product: Optional[Product],
    brand_profile: Optional[BrandProfile],
    explicit_reference: Optional[str],
) -> ResolvedReferences:
    assets = dict(product.assets or {}) if product else {}
    applied_brand = brand_profile if product is not None and product.brand_profile_applied else None

    resolved = ResolvedReferences(
        reference=resolve_reference_image(explicit_reference, assets),
        logo=resolve_logo(assets, applied_brand),
        logo_position=clean(assets.get("chat_image_logo_position")),
        note=clean(assets.get("chat_image_note")),
        tool_type=clean(assets.get("chat_image_tool_type")),
        generation_mode=(product.generation_mode if product and product.generation_mode else "regular"),
    )
    log.info(
        f"Resolved references: reference={resolved.reference.source if resolved.reference else 'none'}, "
        f"logo={resolved.logo.source if resolved.logo else 'none'}, mode={resolved.generation_mode}"
    )
    return resolved
