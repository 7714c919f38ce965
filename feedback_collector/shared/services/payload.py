"""Decoding and validation of respondent attachments.

The browser sends each upload as ``{name, data, type, size}`` where
``data`` is base64, optionally wrapped in a ``data:<mime>;base64,`` URL.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from feedback_collector.engine.errors import PayloadError
from feedback_collector.engine.models import Attachment

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

SUPPORTED_EXTENSIONS = frozenset({"jpeg", "jpg", "png", "gif", "webp", "bmp", "tiff", "tif"})
SUPPORTED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
})

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[^,]*)?;base64,", re.IGNORECASE)

# Leading bytes per format; webp is checked separately (RIFF....WEBP).
_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
)


def sniff_mime_type(data: bytes) -> str | None:
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for signature, mime in _SIGNATURES:
        if data.startswith(signature):
            return mime
    return None


def strip_data_url(encoded: str) -> tuple[str, str | None]:
    """Return (bare base64, mime type from the data URL prefix or None)."""
    match = _DATA_URL_RE.match(encoded)
    if match is None:
        return encoded, None
    return encoded[match.end():], match.group("mime")


class PayloadProcessor:
    """Turns raw attachment dicts into validated Attachment objects."""

    def __init__(self, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
        self.max_file_size = max_file_size

    def process(self, raw: Mapping[str, Any]) -> Attachment:
        name = str(raw.get("name") or "attachment")
        encoded = raw.get("data")
        if not isinstance(encoded, str) or not encoded:
            raise PayloadError(name, "missing data")

        encoded, url_mime = strip_data_url(encoded)
        declared = str(raw.get("type") or raw.get("mimeType") or url_mime or "").lower()

        ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        if ext not in SUPPORTED_EXTENSIONS:
            raise PayloadError(name, f"unsupported file extension {ext or '(none)'!r}")
        if declared not in SUPPORTED_MIME_TYPES:
            raise PayloadError(name, f"unsupported type {declared or '(none)'!r}")

        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise PayloadError(name, f"invalid base64 data ({exc})") from exc

        size = len(data)
        if size == 0:
            raise PayloadError(name, "empty file")
        if size > self.max_file_size:
            raise PayloadError(
                name,
                f"file too large ({size / 1024 / 1024:.1f}MB > "
                f"{self.max_file_size / 1024 / 1024:.1f}MB)",
            )

        sniffed = sniff_mime_type(data)
        if sniffed is None:
            raise PayloadError(name, "content is not a recognised image")
        if sniffed != declared and not (declared == "image/jpg" and sniffed == "image/jpeg"):
            logger.debug("Attachment %s declared %s but looks like %s", name, declared, sniffed)

        return Attachment(name=name, data=data, mime_type=sniffed, size=size)

    def process_all(self, items: Iterable[Mapping[str, Any]]) -> tuple[Attachment, ...]:
        attachments = tuple(self.process(item) for item in items)
        if attachments:
            total = sum(a.size for a in attachments)
            logger.info(
                "Processed %d attachments, total size: %.2fMB",
                len(attachments), total / 1024 / 1024,
            )
        return attachments
