# generator.py
"""
Image generation.

`ImageGenerator` is the interface the workflow consumes. `GeminiImageGenerator`
is the production implementation on top of the google-genai SDK: it retries
capacity errors with exponential backoff and switches to a lighter fallback
model once the primary model reports it is overloaded.
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Optional, Protocol, Tuple

import httpx
from google import genai
from google.genai import types as genai_types
from PIL import Image
from pydantic import BaseModel

from viewforge.errors import GenerationError
from viewforge.retry import exponential_backoff, retry_async
from viewforge.settings import settings

log = logging.getLogger(__name__)

RETRYABLE_HTTP_CODES = {429, 500, 503}
RETRYABLE_STATUSES = {"INTERNAL", "UNAVAILABLE", "RESOURCE_EXHAUSTED"}


# ===================================================================
# SCHEMAS
# ===================================================================

class GenerationOptions(BaseModel):
    retry_budget: int = 5
    fallback_enabled: bool = True
    preferred_model: Optional[str] = None


class GeneratedImage(BaseModel):
    url: str
    model: str


class ImageGenerator(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        view: str,
        reference_image: Optional[str] = None,
        additional_reference_image: Optional[str] = None,
        structural_reference: Optional[str] = None,
        logo_image: Optional[str] = None,
        style: str = "photorealistic",
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedImage:
        ...


# ===================================================================
# HELPERS
# ===================================================================

class NoImageReturned(Exception):
    """The model answered without an image part."""


def is_capacity_error(exc: BaseException) -> bool:
    """True for overload/quota errors worth retrying on another attempt or model."""
    code = getattr(exc, "code", None)
    if isinstance(code, int) and code in RETRYABLE_HTTP_CODES:
        return True
    status = getattr(exc, "status", None)
    if isinstance(status, str) and status.upper() in RETRYABLE_STATUSES:
        return True
    text = str(exc)
    return any(marker in text for marker in RETRYABLE_STATUSES)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, NoImageReturned) or is_capacity_error(exc)


def decode_data_url(url: str) -> Tuple[bytes, str]:
    """Splits a `data:<mime>;base64,<payload>` URL into bytes and mime type."""
    header, _, payload = url.partition(",")
    if not header.startswith("data:") or ";base64" not in header:
        raise ValueError("Not a base64 data URL")
    mime_type = header[len("data:"):].split(";")[0] or "image/png"
    try:
        return base64.b64decode(payload), mime_type
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}")


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


async def load_image_bytes(source: str, client: httpx.AsyncClient) -> Tuple[bytes, str]:
    """Reads an image from a data URL or downloads it over HTTP."""
    if source.startswith("data:"):
        return decode_data_url(source)
    response = await client.get(source)
    response.raise_for_status()
    mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
    return response.content, mime_type


def verify_image(data: bytes) -> None:
    try:
        img = Image.open(BytesIO(data))
        img.verify()
    except Exception as e:
        raise NoImageReturned(f"Model returned invalid image data: {e}")


# ===================================================================
# GEMINI IMPLEMENTATION
# ===================================================================

class GeminiImageGenerator:
    """Generates product views with Gemini image models."""

    def __init__(
        self,
        client: Optional[genai.Client] = None,
        primary_model: Optional[str] = None,
        fallback_model: Optional[str] = None,
        backoff_base: Optional[float] = None,
    ):
        self.client = client or genai.Client(api_key=settings.GEMINI_API_KEY)
        self.primary_model = primary_model or settings.IMAGE_MODEL
        self.fallback_model = fallback_model or settings.IMAGE_FALLBACK_MODEL
        self.backoff_base = settings.GENERATOR_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base

    async def _build_contents(
        self,
        prompt: str,
        reference_image: Optional[str],
        additional_reference_image: Optional[str],
        structural_reference: Optional[str],
        logo_image: Optional[str],
    ) -> list:
        contents: list = [prompt]
        sources = [
            ("reference", reference_image),
            ("additional reference", additional_reference_image),
            ("structural reference", structural_reference),
            ("logo", logo_image),
        ]
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
            for label, source in sources:
                if not source:
                    continue
                try:
                    data, mime_type = await load_image_bytes(source, http)
                except (httpx.HTTPError, ValueError) as e:
                    # A missing reference degrades quality but should not block generation.
                    log.warning(f"Could not load {label} image, generating without it: {e}")
                    continue
                contents.append(genai_types.Part.from_bytes(data=data, mime_type=mime_type))
        return contents

    async def _call_model(self, model: str, contents: list) -> str:
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=contents,
            config=genai_types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )
        for candidate in response.candidates or []:
            if not candidate.content:
                continue
            for part in candidate.content.parts or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    verify_image(inline.data)
                    return to_data_url(inline.data, inline.mime_type or "image/png")
        raise NoImageReturned(f"{model} returned no image")

    async def generate(
        self,
        prompt: str,
        *,
        view: str,
        reference_image: Optional[str] = None,
        additional_reference_image: Optional[str] = None,
        structural_reference: Optional[str] = None,
        logo_image: Optional[str] = None,
        style: str = "photorealistic",
        options: Optional[GenerationOptions] = None,
    ) -> GeneratedImage:
        options = options or GenerationOptions(retry_budget=settings.GENERATOR_RETRY_BUDGET)
        primary = options.preferred_model or self.primary_model
        contents = await self._build_contents(
            f"{prompt}\n\nStyle: {style}.", reference_image, additional_reference_image,
            structural_reference, logo_image,
        )

        current = {"model": primary}

        async def attempt(n: int) -> GeneratedImage:
            model = current["model"]
            try:
                url = await self._call_model(model, contents)
            except Exception as e:
                if options.fallback_enabled and model != self.fallback_model and is_capacity_error(e):
                    log.warning(f"{model} is at capacity ({e}). Falling back to {self.fallback_model}")
                    current["model"] = self.fallback_model
                raise
            log.info(f"Generated {view} view with {model} (attempt {n + 1})")
            return GeneratedImage(url=url, model=model)

        try:
            return await retry_async(
                attempt,
                max_attempts=max(1, options.retry_budget),
                delay=exponential_backoff(self.backoff_base),
                should_retry=is_retryable,
                label=f"Gemini {view} view generation",
            )
        except Exception as e:
            log.error(f"Image generation for {view} view failed: {e}", exc_info=True)
            raise GenerationError(f"Failed to generate {view} view", view=view) from e
