"""
file_service.py: Helper utilities for file type detection, validation and payload decoding.
"""
import base64
import binascii
import re
from typing import Optional, Tuple

import config
from errors import InvalidInput

# Extension → MIME type map (avoids python-magic cross-platform issues)
MIME_MAP = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "gif":  "image/gif",
    "webp": "image/webp",
    "svg":  "image/svg+xml",
    "bmp":  "image/bmp",
    "tif":  "image/tiff",
    "tiff": "image/tiff",
    "txt":  "text/plain",
    "md":   "text/markdown",
    "csv":  "text/csv",
    "json": "application/json",
    "xml":  "application/xml",
    "doc":  "application/msword",
    "xls":  "application/vnd.ms-excel",
    "ppt":  "application/vnd.ms-powerpoint",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "zip":  "application/zip",
    "rar":  "application/x-rar-compressed",
    "7z":   "application/x-7z-compressed",
    "tar":  "application/x-tar",
    "gz":   "application/gzip",
    "mp4":  "video/mp4",
    "mov":  "video/quicktime",
    "avi":  "video/x-msvideo",
    "mp3":  "audio/mpeg",
    "wav":  "audio/wav",
    "flac": "audio/flac",
    "ogg":  "audio/ogg",
}

DEFAULT_MIME = "application/octet-stream"
_FILE_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]*$")


def detect_mime(filename: str) -> str:
    """Detect MIME type from file extension."""
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        return MIME_MAP.get(ext, DEFAULT_MIME)
    return DEFAULT_MIME


def resolve_mime(filename: str, declared: Optional[str]) -> str:
    if declared and declared != DEFAULT_MIME:
        return declared
    return detect_mime(filename)


def validate_file_id(file_id: str) -> str:
    if not file_id or not _FILE_ID_RE.match(file_id):
        raise InvalidInput("fileId must be 1-128 characters of [A-Za-z0-9._-]")
    return file_id


def validate_file_size(size: int):
    if size is None or size <= 0:
        raise InvalidInput("File size must be greater than zero")
    if size > config.MAX_FILE_SIZE:
        raise InvalidInput(f"File too large (limit: {config.MAX_FILE_SIZE} bytes)")


def decode_base64_payload(payload: str, declared_type: Optional[str] = None) -> Tuple[bytes, Optional[str]]:
    """
    Accepts raw base64 or a data URI (``data:<mime>;base64,<data>``).
    Returns the decoded bytes and the content type carried by the URI, if any.
    """
    if not payload:
        raise InvalidInput("Empty base64 payload")

    content_type = declared_type
    data = payload
    if ";base64," in payload:
        header, data = payload.split(";base64,", 1)
        content_type = header.replace("data:", "") or content_type
    elif payload.startswith("data:") and "," in payload:
        header, data = payload.split(",", 1)
        content_type = header.replace("data:", "").replace(";", "") or content_type

    data = re.sub(r"\s", "", data)
    if not data or not _BASE64_RE.match(data):
        raise InvalidInput("Invalid base64 payload")
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput(f"Invalid base64 payload: {e}") from e
    return decoded, content_type
