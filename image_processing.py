"""
Image handling for cart items.

Two strategies are supported and one is picked per deployment:

* reject_inline: only http(s) URLs are accepted. Embedded images, either ``data:``
  URLs or bare base64, are refused so that stored image fields never hold pixel data.
* transform_on_write: embedded images are transcoded to a compressed, size-capped
  JPEG or WEBP and uploaded to the Media Store. When a field fails, the fallback
  policy decides whether the original is kept, the field is dropped, or the whole
  write is aborted.
"""
import base64
import binascii
import copy
import io
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from config import ImageConfig, ImageStrategy, ImageTypeConfig
from errors import ExternalServiceError, ValidationError
from media_store import MediaStore, is_hosted_url, is_inline_image

logger = logging.getLogger("mousepad.images")

DATA_URL = re.compile(r"^data:image/([a-zA-Z0-9.+-]+);base64,(.*)$", re.DOTALL)

TOP_LEVEL_FIELDS = (("image", "main"), ("finalImage", "final"), ("originalImageUrl", "configuration"))
CONFIGURATION_FIELDS = ("uploadedImage", "editedImage", "originalImage")
CONFIGURATION_LISTS = ("uploadedImages",)


class ImageTranscodeError(Exception):
    pass


def image_format(data_url: str) -> str:
    match = DATA_URL.match(data_url)
    return match.group(1).lower() if match else "unknown"


def decode_data_url(data_url: str) -> bytes:
    match = DATA_URL.match(data_url)
    payload = match.group(2) if match else data_url.split(",", 1)[-1]
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ImageTranscodeError(f"Invalid base64 image data: {exc}") from exc


def transcode(raw: bytes, image_type: ImageTypeConfig) -> Tuple[bytes, str]:
    """Fit the image inside the configured box (never enlarging) and re-encode it."""
    try:
        with Image.open(io.BytesIO(raw)) as source:
            img = ImageOps.exif_transpose(source)
            img.thumbnail((image_type.max_width, image_type.max_height))
            out = io.BytesIO()
            if image_type.target_format == "webp":
                img.save(out, "WEBP", quality=image_type.quality, method=6)
                return out.getvalue(), "image/webp"
            if img.mode != "RGB":
                img = img.convert("RGB")
            img.save(out, "JPEG", quality=image_type.quality, progressive=True, optimize=True)
            return out.getvalue(), "image/jpeg"
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageTranscodeError(f"Failed to convert image: {exc}") from exc


def to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def image_slots(doc: Dict[str, Any]) -> Iterator[Tuple[Any, Any, str, str]]:
    """Yield (container, key, image type, label) for every image-bearing field that is set."""
    for key, image_type in TOP_LEVEL_FIELDS:
        if doc.get(key):
            yield doc, key, image_type, key
    configuration = doc.get("configuration")
    if isinstance(configuration, dict):
        for key in CONFIGURATION_FIELDS:
            if configuration.get(key):
                yield configuration, key, "configuration", f"configuration.{key}"
        for key in CONFIGURATION_LISTS:
            images = configuration.get(key)
            if isinstance(images, list):
                for i, value in enumerate(images):
                    if value:
                        yield images, i, "configuration", f"configuration.{key}[{i}]"


def image_urls(doc: Optional[Dict[str, Any]]) -> List[str]:
    if not doc:
        return []
    urls = []
    for container, key, _, _ in image_slots(doc):
        value = container[key]
        if is_hosted_url(value) and value not in urls:
            urls.append(value)
    return urls


class ImageProcessor:
    def __init__(self, config: ImageConfig, media_store: MediaStore):
        self.config = config
        self.media_store = media_store

    @property
    def strategy(self) -> ImageStrategy:
        return self.config.strategy

    def prepare(self, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        """Return a copy of ``payload`` with its image fields made storable, plus the
        URLs uploaded while doing so."""
        prepared = copy.deepcopy(payload)
        self._check_sizes(prepared)
        if self.strategy == ImageStrategy.reject_inline:
            self._reject_inline(prepared)
            return prepared, []
        return prepared, self._transform_all(prepared)

    def _check_sizes(self, doc: Dict[str, Any]) -> None:
        limit = self.config.max_inline_bytes
        for container, key, _, label in image_slots(doc):
            value = container[key]
            if is_inline_image(value) and len(value) > limit:
                raise ValidationError(f"{label}: image too large (max {limit // (1024 * 1024)}MB)")

    def _reject_inline(self, doc: Dict[str, Any]) -> None:
        for container, key, _, label in image_slots(doc):
            value = container[key]
            if not isinstance(value, str):
                raise ValidationError(f"{label} must be a string URL")
            if is_inline_image(value):
                raise ValidationError(f"{label} must be uploaded before saving")

    def _transform_all(self, doc: Dict[str, Any]) -> List[str]:
        uploaded: List[str] = []
        fallback = self.config.fallback
        for container, key, image_type, label in list(image_slots(doc)):
            value = container[key]
            if not is_inline_image(value):
                continue
            try:
                url = self.transform_and_upload(value, image_type)
            except (ImageTranscodeError, ExternalServiceError) as exc:
                logger.warning("Error processing %s (%s): %s", label, image_format(value), exc)
                if fallback.use_original:
                    logger.info("Using original image for %s due to processing error", label)
                    continue
                if not fallback.continue_on_error:
                    self.discard(uploaded)
                    raise ExternalServiceError(f"Failed to process {label}: {exc}") from exc
                container[key] = None
                continue
            container[key] = url
            uploaded.append(url)
        self._compact_lists(doc)
        return uploaded

    def transform_and_upload(self, value: str, image_type: str) -> str:
        type_config = self.config.image_types[image_type]
        data, mime = transcode(decode_data_url(value), type_config)
        return self.media_store.upload(to_data_url(data, mime), type_config.folder, type_config.transformation)

    def discard(self, urls: List[str]) -> None:
        for url in urls:
            if not self.media_store.delete(url):
                logger.warning("Could not discard uploaded image %s", url)

    @staticmethod
    def _compact_lists(doc: Dict[str, Any]) -> None:
        configuration = doc.get("configuration")
        if isinstance(configuration, dict):
            for key in CONFIGURATION_LISTS:
                if isinstance(configuration.get(key), list):
                    configuration[key] = [v for v in configuration[key] if v]
