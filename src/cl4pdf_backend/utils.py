"""
Utility functions for file handling, number parsing and formatting.

This module provides helper functions for:
- Ensuring directory creation
- Recognizing PDF uploads by extension or declared MIME type
- Parsing user-supplied integers the lenient way the front-ends expect
- Formatting byte counts for display
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

LEADING_INT_PATTERN = re.compile(r"^\s*(\d+)")

PDF_CONTENT_TYPE = "application/pdf"

SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def allowed_pdf_extensions() -> Iterable[str]:
    return [".pdf"]


def is_pdf_upload(filename: Optional[str], content_type: Optional[str]) -> bool:
    """
    Accept an upload when either its extension or its declared type says PDF.

    Whether the bytes really are a PDF is decided later by the transform
    engine, which turns undecodable input into a processing failure.
    """
    suffix = Path(filename or "").suffix.lower()
    return suffix in allowed_pdf_extensions() or (content_type or "").lower() == PDF_CONTENT_TYPE


def parse_leading_int(value: Optional[str]) -> Optional[int]:
    """
    Parse the leading decimal digits of a string.

    Surrounding whitespace is ignored and anything after the digits is
    discarded, so ``" 3 "`` and ``"3abc"`` both give 3. Returns None when the
    string does not start with a digit.

    Example:
        >>> parse_leading_int("12-")
        12
        >>> parse_leading_int("x1")
        None
    """
    if value is None:
        return None
    match = LEADING_INT_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1))


def format_file_size(num_bytes: int) -> str:
    """
    Render a byte count with base-1024 units and at most two decimals.

    Example:
        >>> format_file_size(0)
        "0 Bytes"
        >>> format_file_size(1536)
        "1.5 KB"
    """
    if num_bytes <= 0:
        return "0 Bytes"
    unit = 0
    value = float(num_bytes)
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    rounded = round(value, 2)
    text = f"{rounded:.2f}".rstrip("0").rstrip(".")
    return f"{text} {SIZE_UNITS[unit]}"
