import base64
import hashlib
import io
from typing import Iterable, Tuple

from PIL import Image


def stable_content_hash(parts: Iterable[bytes], prefix: str = "") -> str:
    """Return a stable SHA256 hex digest for the provided byte chunks."""
    hasher = hashlib.sha256()
    if prefix:
        hasher.update(prefix.encode("utf-8"))
    for chunk in parts:
        hasher.update(chunk)
    return hasher.hexdigest()


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def to_data_uri(payload: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def image_to_data_uri(image: Image.Image) -> str:
    return to_data_uri(encode_png(image), "image/png")


def parse_data_uri(uri: str) -> Tuple[str, bytes]:
    """Split a base64 data URI into (mime, payload)."""
    if not uri.startswith("data:") or ";base64," not in uri:
        raise ValueError("Not a base64 data URI.")
    header, encoded = uri[5:].split(";base64,", 1)
    return header or "application/octet-stream", base64.b64decode(encoded)


def sniff_mime(payload: bytes) -> str:
    try:
        with Image.open(io.BytesIO(payload)) as image:
            fmt = image.format or ""
    except Exception:  # pylint: disable=broad-except
        return "application/octet-stream"
    if not fmt:
        return "application/octet-stream"
    return Image.MIME.get(fmt, f"image/{fmt.lower()}")
