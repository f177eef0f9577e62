"""
Media Store: hosted image storage and transformation.

Images are uploaded once and referenced by URL afterwards. Deleting is
best-effort and idempotent: URLs this store does not own are a no-op success.
"""
import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader

from config import CloudinaryConfig
from errors import ExternalServiceError

logger = logging.getLogger("mousepad.media")

_VERSION_SEGMENT = re.compile(r"^v\d+$")


def is_hosted_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def is_inline_image(value: Any) -> bool:
    """Anything that is not an http(s) URL is image data: a ``data:`` URL or bare base64."""
    return isinstance(value, str) and bool(value) and not is_hosted_url(value)


class MediaStore:
    def upload(self, image: str, folder: str, transformation: Optional[Dict[str, Any]] = None) -> str:
        raise NotImplementedError

    def delete(self, url: Optional[str]) -> bool:
        raise NotImplementedError

    def owns(self, url: Optional[str]) -> bool:
        raise NotImplementedError


class CloudinaryMediaStore(MediaStore):
    HOST = "res.cloudinary.com"

    def __init__(self, config: CloudinaryConfig):
        self.config = config
        if config.configured:
            cloudinary.config(
                cloud_name=config.cloud_name,
                api_key=config.api_key,
                api_secret=config.api_secret,
                secure=True,
            )
        else:
            logger.warning("Cloudinary credentials are not configured; uploads will fail")

    def upload(self, image: str, folder: str, transformation: Optional[Dict[str, Any]] = None) -> str:
        try:
            result = cloudinary.uploader.upload(
                image,
                folder=folder,
                transformation=transformation or None,
                resource_type="image",
                timeout=self.config.timeout,
            )
        except Exception as exc:
            raise ExternalServiceError(f"Image upload failed: {exc}") from exc
        url = result.get("secure_url")
        if not url:
            raise ExternalServiceError("Image upload returned no URL")
        logger.info("Image uploaded to Cloudinary: %s", url)
        return url

    def owns(self, url: Optional[str]) -> bool:
        if not is_hosted_url(url):
            return False
        parsed = urlparse(url)
        if parsed.netloc != self.HOST:
            return False
        if self.config.cloud_name:
            return parsed.path.startswith(f"/{self.config.cloud_name}/")
        return True

    def public_id(self, url: str) -> Optional[str]:
        """Extract the public id (folder/name, no extension) from a delivery URL."""
        parts = urlparse(url).path.strip("/").split("/")
        try:
            start = parts.index("upload") + 1
        except ValueError:
            return None
        rest = parts[start:]
        # Transformation segments precede the version; the version precedes the id
        for i, segment in enumerate(rest):
            if _VERSION_SEGMENT.match(segment):
                rest = rest[i + 1:]
                break
        if not rest:
            return None
        rest[-1] = rest[-1].rsplit(".", 1)[0]
        return "/".join(rest)

    def delete(self, url: Optional[str]) -> bool:
        if not self.owns(url):
            return True
        public_id = self.public_id(url)
        if not public_id:
            logger.warning("Could not extract public id from %s", url)
            return True
        try:
            result = cloudinary.uploader.destroy(public_id)
        except Exception as exc:
            logger.error("Error deleting image from Cloudinary: %s", exc)
            return False
        outcome = result.get("result")
        logger.info("Image deleted from Cloudinary: %s (%s)", public_id, outcome)
        return outcome in ("ok", "not found")
