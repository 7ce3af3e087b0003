# features.py
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from google import genai
from google.genai import types as genai_types
from pydantic import BaseModel, Field

from viewforge.generator import load_image_bytes
from viewforge.settings import settings

log = logging.getLogger(__name__)

FEATURE_SYSTEM_PROMPT = """You are an expert at analyzing product images and extracting key features for manufacturing consistency.

Analyze the product image and extract:
1. All visible colors with hex codes
2. Materials and textures
3. Key design elements
4. Estimated dimensions/proportions
5. Detailed product description

Return a JSON object with the keys:
"colors" (list of {"hex", "name", "usage"}), "dimensions" ({"width", "height", "depth"}),
"materials" (list of strings), "keyElements" (list of strings), "description" (string)."""

DEFAULT_DESCRIPTION = "Product features could not be extracted"


class ColorFeature(BaseModel):
    hex: str = ""
    name: str = ""
    usage: str = ""


class Dimensions(BaseModel):
    width: str = "unknown"
    height: str = "unknown"
    depth: Optional[str] = None


class ExtractedFeatures(BaseModel):
    colors: List[ColorFeature] = Field(default_factory=list)
    estimated_dimensions: Dimensions = Field(default_factory=Dimensions)
    materials: List[str] = Field(default_factory=list)
    key_elements: List[str] = Field(default_factory=list)
    description: str = ""


class FeatureExtractor(Protocol):
    async def analyze(self, image_url: str) -> ExtractedFeatures:
        ...


def default_features() -> ExtractedFeatures:
    """Structurally valid stand-in used whenever extraction fails."""
    return ExtractedFeatures(description=DEFAULT_DESCRIPTION)


def parse_features(payload: Dict[str, Any]) -> ExtractedFeatures:
    """Normalizes the model's JSON (camelCase keys, loose types) into ExtractedFeatures."""
    colors = []
    for color in payload.get("colors") or []:
        if isinstance(color, dict):
            colors.append(ColorFeature(
                hex=str(color.get("hex", "")),
                name=str(color.get("name", "")),
                usage=str(color.get("usage", "")),
            ))
        elif isinstance(color, str):
            colors.append(ColorFeature(name=color))

    dims = payload.get("dimensions") or payload.get("estimatedDimensions") or {}
    if not isinstance(dims, dict):
        dims = {}
    dimensions = Dimensions(
        width=str(dims.get("width") or "unknown"),
        height=str(dims.get("height") or "unknown"),
        depth=str(dims["depth"]) if dims.get("depth") else None,
    )

    return ExtractedFeatures(
        colors=colors,
        estimated_dimensions=dimensions,
        materials=[str(m) for m in payload.get("materials") or []],
        key_elements=[str(k) for k in payload.get("keyElements") or payload.get("key_elements") or []],
        description=str(payload.get("description") or ""),
    )


class GeminiFeatureExtractor:
    """Asks a Gemini vision model to describe an approved front view."""

    def __init__(self, client: Optional[genai.Client] = None, model: Optional[str] = None):
        self.client = client or genai.Client(api_key=settings.GEMINI_API_KEY)
        self.model = model or settings.FEATURE_MODEL

    async def analyze(self, image_url: str) -> ExtractedFeatures:
        log.info("Extracting features from front view...")
        # Send the bytes inline so the model never has to download the CDN URL itself.
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
            data, mime_type = await load_image_bytes(image_url, http)

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=[
                "Extract all features from this product image for consistent view generation:",
                genai_types.Part.from_bytes(data=data, mime_type=mime_type),
            ],
            config=genai_types.GenerateContentConfig(
                system_instruction=FEATURE_SYSTEM_PROMPT,
                response_mime_type="application/json",
                max_output_tokens=1000,
            ),
        )
        if not response.text:
            raise ValueError("No response from feature extraction")

        payload = json.loads(response.text)
        if not isinstance(payload, dict):
            raise ValueError("Feature extraction returned a non-object JSON payload")
        log.info("Features extracted successfully")
        return parse_features(payload)
