"""Filesystem-safe names for folders and EML artifacts."""

import re
import unicodedata
from datetime import datetime
from typing import Optional

MAX_FILENAME_LENGTH = 100
MAX_FOLDER_SEGMENT_LENGTH = 50

_ILLEGAL_CHARS = re.compile(r'[?*:"<>|/\\]')


def sanitize_filename(name: Optional[str], max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Make a string safe to use as a single path component.

    Illegal characters become underscores, control characters are dropped,
    and leading/trailing dots and spaces are trimmed.
    """
    if not name:
        return "unnamed"

    value = unicodedata.normalize("NFC", name)
    value = _ILLEGAL_CHARS.sub("_", value)
    value = "".join(ch for ch in value if unicodedata.category(ch) != "Cc")
    value = value.strip(" .")

    if len(value) > max_length:
        value = value[:max_length].rstrip(" .")

    return value or "unnamed"


def sanitize_folder_path(folder_path: Optional[str]) -> str:
    """Sanitize every '/'-separated segment of a folder path."""
    if not folder_path:
        return "Unknown"

    segments = [
        sanitize_filename(part, MAX_FOLDER_SEGMENT_LENGTH)
        for part in folder_path.split("/")
        if part.strip()
    ]
    return "/".join(segments) or "Unknown"


def generate_eml_filename(
    subject: Optional[str],
    received_at: datetime,
    counter: Optional[int] = None,
) -> str:
    """Build '{subject}_{HHMM}.eml', with '_{counter}' before the extension on collisions."""
    base = sanitize_filename(subject or "No Subject")
    stamp = received_at.strftime("%H%M")
    if counter:
        return f"{base}_{stamp}_{counter}.eml"
    return f"{base}_{stamp}.eml"
