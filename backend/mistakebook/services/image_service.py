"""
MistakeBook Backend — Image Input Service
==========================================

What:  Decodes and validates question photos before any provider sees them.
How:   Images travel as ImagePayload (bytes + MIME type + filename). Base64
       bodies and data URLs are decoded here; uploads are wrapped directly.
       Validation is purely local: non-empty, size limit, then the real
       format read from the header bytes with python-magic.
Who:   Called by the recognize routes and by the batch queue (once per
       item, before the first attempt).
When:  Before the orchestrator is invoked. A ValidationError raised here
       never triggers provider fallback or a batch retry.

Declared vs detected type:
    The upload Content-Type or data URL prefix is only a hint. libmagic
    inspects the magic numbers (e.g. PNG starts with 89 50 4E 47) and the
    detected type replaces the declared one, so a PDF renamed to .png is
    rejected here instead of being sent to every provider of the chain.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Optional

import magic

from mistakebook.config import settings
from mistakebook.exceptions import ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
# image/jpg is not a registered type but browsers still send it
ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
}

DEFAULT_MIME_TYPE = "image/jpeg"

# libmagic only needs the header; every supported signature fits in it
SNIFF_BYTES = 2048

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ImagePayload:
    """
    One image on its way to a recognition backend.

    Attributes:
        data:      Raw image bytes
        mime_type: Declared MIME type until validate_image() replaces it
                   with the detected one, lower-case
        filename:  Original filename (for logs and batch item labels)
    """
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE
    filename: str = "image.jpg"

    @property
    def size(self) -> int:
        return len(self.data)


def decode_base64_image(value: str, filename: str = "image.jpg") -> ImagePayload:
    """
    Build an ImagePayload from a data URL or bare base64 string.

    A data URL carries its MIME type in the prefix; bare base64 is taken as
    JPEG, which is what phone cameras produce.

    Raises:
        ValidationError(invalid_encoding): Not decodable as base64
    """
    value = (value or "").strip()
    mime_type = DEFAULT_MIME_TYPE
    match = _DATA_URL_RE.match(value)
    if match:
        mime_type = match.group("mime").lower()
        value = match.group("data")

    encoded = _WHITESPACE_RE.sub("", value)
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(
            message="Image data is not valid base64.",
            reason=ValidationError.INVALID_ENCODING,
            field="image_base64",
        )

    return ImagePayload(data=data, mime_type=mime_type, filename=filename)


def detect_mime_type(data: bytes) -> str:
    """
    MIME type of `data` according to its header bytes.

    Raises:
        ValidationError(unsupported_format): libmagic could not read it
    """
    try:
        return magic.from_buffer(data[:SNIFF_BYTES], mime=True).lower()
    except magic.MagicException as e:
        logger.error("MIME type detection failed: %s", str(e))
        raise ValidationError(
            message="Could not verify the image format. Upload JPG, PNG, GIF or WebP.",
            reason=ValidationError.UNSUPPORTED_FORMAT,
            field="image",
            context={"error": str(e)},
        )


def validate_image(payload: ImagePayload, max_size: Optional[int] = None) -> None:
    """
    Check size and format constraints. No network.

    Size is checked before the content is sniffed, as on upload. On
    success payload.mime_type holds the detected type, which is what the
    providers are told.

    Raises:
        ValidationError(empty_image):        Zero bytes
        ValidationError(file_too_large):     Bigger than max_size
        ValidationError(unsupported_format): Detected MIME not in ALLOWED_MIME_TYPES
    """
    limit = max_size or settings.max_image_size

    if payload.size == 0:
        raise ValidationError(
            message="Image file is empty.",
            reason=ValidationError.EMPTY_IMAGE,
            field="image",
            context={"filename": payload.filename},
        )

    if payload.size > limit:
        max_mb = limit / (1024 * 1024)
        raise ValidationError(
            message=f"Image file is too large. Maximum size is {max_mb:.0f}MB.",
            reason=ValidationError.FILE_TOO_LARGE,
            field="image",
            context={"size": payload.size, "max_size": limit, "filename": payload.filename},
        )

    detected = detect_mime_type(payload.data)
    if detected not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            message="Unsupported image format. Upload JPG, PNG, GIF or WebP.",
            reason=ValidationError.UNSUPPORTED_FORMAT,
            field="image",
            context={
                "detected_mime": detected,
                "declared_mime": payload.mime_type,
                "filename": payload.filename,
            },
        )

    if detected != payload.mime_type:
        logger.info(
            "Image %s declared as %s, detected %s", payload.filename, payload.mime_type, detected
        )
    payload.mime_type = detected

    logger.debug(
        "Image validated: %s (%s, %d bytes)", payload.filename, payload.mime_type, payload.size
    )


def to_base64(payload: ImagePayload) -> str:
    return base64.b64encode(payload.data).decode("ascii")


def to_data_url(payload: ImagePayload) -> str:
    return f"data:{payload.mime_type};base64,{to_base64(payload)}"
