# storage.py
"""
Object storage for generated views.

All image storage is handled by Cloudinary. The SDK is synchronous, so
uploads run in a worker thread.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Protocol

import cloudinary
import cloudinary.uploader
import cloudinary.utils
from pydantic import BaseModel

from viewforge.settings import settings

log = logging.getLogger(__name__)

# Transformations applied when the caller does not ask to preserve the original.
PRESETS: Dict[str, Dict[str, Any]] = {
    "original": {},
    "web": {"width": 1024, "height": 1024, "crop": "limit", "quality": "auto"},
    "thumbnail": {"width": 256, "height": 256, "crop": "fill", "quality": "auto"},
}
THUMBNAIL_TRANSFORMATION = PRESETS["thumbnail"]


class UploadResult(BaseModel):
    success: bool
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


class ObjectStore(Protocol):
    async def upload(
        self,
        source_url: str,
        *,
        project_id: Optional[str] = None,
        preset: str = "original",
        preserve_original: bool = True,
    ) -> UploadResult:
        ...


class CloudinaryObjectStore:
    """Uploads data URLs or remote URLs to Cloudinary and returns CDN URLs."""

    def __init__(self, folder: Optional[str] = None, configure: bool = True):
        self.folder = folder or settings.CLOUDINARY_FOLDER
        if configure:
            cloudinary.config(
                cloud_name=settings.CLOUDINARY_CLOUD_NAME,
                api_key=settings.CLOUDINARY_API_KEY,
                api_secret=settings.CLOUDINARY_API_SECRET,
                secure=True,  # Always use HTTPS URLs
            )

    def _secure_url(self, upload_result: Dict[str, Any]) -> Optional[str]:
        secure_url = upload_result.get("secure_url")
        if secure_url:
            return secure_url

        public_id = upload_result.get("public_id")
        if not public_id:
            return None
        log.warning(f"Cloudinary response missing 'secure_url'. Building it from public_id {public_id}")
        # cloudinary_url returns (url, options)
        return cloudinary.utils.cloudinary_url(
            public_id,
            resource_type=upload_result.get("resource_type", "image"),
            version=upload_result.get("version"),
            secure=True,
        )[0]

    def _thumbnail_url(self, upload_result: Dict[str, Any]) -> Optional[str]:
        public_id = upload_result.get("public_id")
        if not public_id:
            return None
        return cloudinary.utils.cloudinary_url(
            public_id,
            version=upload_result.get("version"),
            secure=True,
            **THUMBNAIL_TRANSFORMATION,
        )[0]

    async def upload(
        self,
        source_url: str,
        *,
        project_id: Optional[str] = None,
        preset: str = "original",
        preserve_original: bool = True,
    ) -> UploadResult:
        if not source_url:
            return UploadResult(success=False, error="No image to upload")
        if preset not in PRESETS:
            return UploadResult(success=False, error=f"Unknown upload preset '{preset}'")

        folder = f"{self.folder}/{project_id}" if project_id else self.folder
        options: Dict[str, Any] = {
            "folder": folder,
            "public_id": str(uuid.uuid4()),
            "resource_type": "image",
            "overwrite": True,
            "unique_filename": False,  # We use UUIDs for uniqueness
        }
        if not preserve_original and PRESETS[preset]:
            options["transformation"] = PRESETS[preset]

        def sync_upload() -> Dict[str, Any]:
            return cloudinary.uploader.upload(source_url, **options)

        try:
            upload_result = await asyncio.to_thread(sync_upload)
        except Exception as e:
            log.error(f"Error uploading image to Cloudinary: {e}", exc_info=True)
            return UploadResult(success=False, error=str(e))

        url = self._secure_url(upload_result)
        if not url:
            log.error(f"Cloudinary upload returned no URL or public_id. Result: {upload_result}")
            return UploadResult(success=False, error="Upload returned no URL")

        log.info(f"Image uploaded to Cloudinary: {url}")
        return UploadResult(success=True, url=url, thumbnail_url=self._thumbnail_url(upload_result))
