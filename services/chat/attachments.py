"""Attachment processing service.

Uploaded images are re-encoded with Pillow before they are attached to a
user message: PNGs and unknown formats become WEBP, JPEG and WEBP keep their
format, all at the same quality setting. The result is an immutable
`Attachment` whose `content_ref` is a base64 data URL.

Example:
    processor = AttachmentProcessor(quality=80)
    attachment = processor.from_base64("photo.png", b64_payload)
"""
from __future__ import annotations

import base64
import binascii
import io
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from models.chat_models import Attachment

_KEEP_FORMATS = {"JPEG": "image/jpeg", "WEBP": "image/webp"}


class AttachmentProcessor:
    """Validate and compress image attachments.

    Args:
        quality: Encoder quality (1-95) used for lossy output.
        max_size: Images larger than this are scaled down, preserving aspect ratio.
        max_bytes: Upper bound on the decoded upload size.
    """

    def __init__(self, quality: int = 80, max_size: Tuple[int, int] = (2048, 2048), max_bytes: int = 20 * 1024 * 1024):
        self.quality = quality
        self.max_size = max_size
        self.max_bytes = max_bytes

    def from_base64(self, name: str, data: str | bytes) -> Attachment:
        """Decode a base64 (or data URL) payload and return the processed attachment.

        Raises:
            ValueError: If the payload is not valid base64 or not a supported image.
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="strict")
        if data.startswith("data:"):
            _, _, data = data.partition(",")
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Invalid base64 data provided") from exc
        return self.from_bytes(name, raw)

    def from_bytes(self, name: str, raw: bytes) -> Attachment:
        if not raw:
            raise ValueError(f"Attachment {name!r} is empty.")
        if len(raw) > self.max_bytes:
            raise ValueError(f"Attachment {name!r} exceeds {self.max_bytes} bytes.")
        mime_type, encoded = self.compress(raw)
        content_ref = f"data:{mime_type};base64,{base64.b64encode(encoded).decode('utf-8')}"
        return Attachment(name=name or "attachment", content_ref=content_ref)

    def compress(self, raw: bytes) -> Tuple[str, bytes]:
        """Return `(mime_type, bytes)` for the re-encoded image."""
        try:
            src = Image.open(io.BytesIO(raw))
            src.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("Decoded bytes are not a supported image format") from exc

        source_format = (src.format or "").upper()
        src.thumbnail(self.max_size, Image.LANCZOS)

        target_format = source_format if source_format in _KEEP_FORMATS else "WEBP"
        if target_format == "JPEG" and src.mode not in ("RGB", "L"):
            src = src.convert("RGB")
        elif target_format == "WEBP" and src.mode not in ("RGB", "RGBA"):
            src = src.convert("RGBA")

        out_io = io.BytesIO()
        src.save(out_io, format=target_format, quality=self.quality)
        return _KEEP_FORMATS[target_format], out_io.getvalue()
