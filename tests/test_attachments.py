import base64
import io

import pytest
from PIL import Image

from services.chat.attachments import AttachmentProcessor


def _image_bytes(fmt, mode="RGB", size=(32, 16)):
    buf = io.BytesIO()
    Image.new(mode, size).save(buf, format=fmt)
    return buf.getvalue()


def _decode(content_ref):
    header, _, payload = content_ref.partition(",")
    return header, Image.open(io.BytesIO(base64.b64decode(payload)))


def test_png_is_reencoded_as_webp():
    attachment = AttachmentProcessor().from_bytes("shot.png", _image_bytes("PNG", mode="P"))

    header, image = _decode(attachment.content_ref)
    assert attachment.name == "shot.png"
    assert header == "data:image/webp;base64"
    assert image.format == "WEBP"


def test_jpeg_keeps_its_format_and_is_scaled_down():
    processor = AttachmentProcessor(max_size=(8, 8))
    payload = base64.b64encode(_image_bytes("JPEG", size=(64, 32))).decode()

    attachment = processor.from_base64("photo.jpg", f"data:image/jpeg;base64,{payload}")

    header, image = _decode(attachment.content_ref)
    assert header == "data:image/jpeg;base64"
    assert image.size == (8, 4)


def test_invalid_payloads_are_rejected():
    processor = AttachmentProcessor()

    with pytest.raises(ValueError):
        processor.from_base64("bad", "not base64!!")
    with pytest.raises(ValueError):
        processor.from_bytes("text.txt", b"plain text")
    with pytest.raises(ValueError):
        processor.from_bytes("empty", b"")
    with pytest.raises(ValueError):
        AttachmentProcessor(max_bytes=10).from_bytes("big.png", _image_bytes("PNG"))
