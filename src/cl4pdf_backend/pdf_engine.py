"""
Page-level PDF transforms on in-memory documents.

Two operations are provided:
- merge: concatenate whole documents in the order given
- split: cut one document into several, per page, per explicit page
  ranges, or in fixed-size intervals

Both work on complete byte buffers and return new byte buffers; nothing is
written to disk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Sequence, Tuple, Union

from pypdf import PdfReader, PdfWriter

from .errors import ProcessingError, ValidationError
from .models import SplitMode
from .utils import parse_leading_int

logger = logging.getLogger(__name__)


@dataclass
class MergeOutput:
    data: bytes
    page_count: int


@dataclass
class SplitPiece:
    """
    One document produced by a split.

    Attributes:
        data: The serialized PDF
        label: 1-based pages covered, "3" for a single page in ``all`` mode,
            otherwise "first-last"
        name_stem: Suggested file name stem, e.g. "page-3" or "part-2"
        page_indices: 0-based source page indices, in output order
    """

    data: bytes
    label: str
    name_stem: str
    page_indices: List[int] = field(default_factory=list)


@dataclass
class SplitOutput:
    pieces: List[SplitPiece]
    total_pages: int


def _read(data: bytes) -> PdfReader:
    reader = PdfReader(BytesIO(data))
    # Page tree is parsed lazily; force it so broken documents fail here.
    len(reader.pages)
    return reader


def _serialize(writer: PdfWriter) -> bytes:
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _extract(reader: PdfReader, indices: Sequence[int]) -> bytes:
    writer = PdfWriter()
    for index in indices:
        writer.add_page(reader.pages[index])
    return _serialize(writer)


def merge(documents: Sequence[Tuple[str, bytes]]) -> MergeOutput:
    """
    Concatenate documents page by page in list order.

    Args:
        documents: (name, data) pairs; the name is only used in errors

    Returns:
        MergeOutput with the combined document and its page count

    Raises:
        ValidationError: If fewer than two documents are given
        ProcessingError: If any document cannot be read. Nothing is
            returned for the documents that did read.
    """
    if len(documents) < 2:
        raise ValidationError(
            "At least 2 PDF files are required for merging",
            {"min_files": 2, "received": len(documents)},
        )

    writer = PdfWriter()
    for name, data in documents:
        try:
            reader = _read(data)
            for page in reader.pages:
                writer.add_page(page)
        except Exception as exc:
            logger.error(f"Error processing file {name}: {exc}")
            raise ProcessingError(f"Failed to process file: {name}") from exc

    page_count = len(writer.pages)
    try:
        data = _serialize(writer)
    except Exception as exc:
        raise ProcessingError(f"Failed to write merged PDF: {exc}") from exc
    return MergeOutput(data=data, page_count=page_count)


def parse_page_ranges(expression: str, total_pages: int) -> List[List[int]]:
    """
    Parse a range expression such as ``"1-3,5,8-10"`` into page groups.

    Each comma-separated token becomes one group of 0-based indices, in
    token order. ``"a-b"`` covers pages a..b inclusive and ``"n"`` covers
    page n. Tokens that are malformed, reversed or reach outside
    ``1..total_pages`` are dropped without error. Groups are neither merged
    nor deduplicated.

    Example:
        >>> parse_page_ranges("1-2,4,9", 5)
        [[0, 1], [3]]
    """
    groups: List[List[int]] = []
    for token in (part.strip() for part in expression.split(",")):
        if "-" in token:
            bounds = token.split("-")
            start = parse_leading_int(bounds[0])
            end = parse_leading_int(bounds[1])
            if start is None or end is None:
                continue
            first, last = start - 1, end - 1
            if 0 <= first <= last < total_pages:
                groups.append(list(range(first, last + 1)))
        else:
            page = parse_leading_int(token)
            if page is not None and 0 <= page - 1 < total_pages:
                groups.append([page - 1])
    return groups


def parse_split_mode(mode: Union[str, SplitMode]) -> SplitMode:
    try:
        return SplitMode(mode)
    except ValueError as exc:
        raise ValidationError(
            "Invalid split mode",
            {"split_mode": str(mode), "valid_modes": [m.value for m in SplitMode]},
        ) from exc


def _split_groups(
    mode: SplitMode,
    total_pages: int,
    page_ranges: Optional[str],
    interval_pages: Union[str, int, None],
) -> List[Tuple[List[int], str, str]]:
    if mode == SplitMode.ALL:
        return [([i], f"{i + 1}", f"page-{i + 1}") for i in range(total_pages)]

    if mode == SplitMode.RANGE:
        if not page_ranges:
            return []
        return [
            (group, f"{group[0] + 1}-{group[-1] + 1}", f"pages-{group[0] + 1}-{group[-1] + 1}")
            for group in parse_page_ranges(page_ranges, total_pages)
        ]

    interval = interval_pages if isinstance(interval_pages, int) else parse_leading_int(interval_pages)
    if not interval or interval < 1:
        return []
    groups = []
    for part, start in enumerate(range(0, total_pages, interval), start=1):
        end = min(start + interval, total_pages)
        groups.append((list(range(start, end)), f"{start + 1}-{end}", f"part-{part}"))
    return groups


def split(
    data: bytes,
    mode: Union[str, SplitMode],
    page_ranges: Optional[str] = None,
    interval_pages: Union[str, int, None] = None,
) -> SplitOutput:
    """
    Split one document into several.

    Args:
        data: The source PDF
        mode: ``all``, ``range`` or ``interval``
        page_ranges: Range expression, used by ``range`` mode
        interval_pages: Pages per output, used by ``interval`` mode

    Returns:
        SplitOutput with the pieces in order and the source page count.
        A mode whose parameter is missing or unusable yields no pieces.

    Raises:
        ValidationError: If ``mode`` is not a known split mode
        ProcessingError: If the source document cannot be read
    """
    split_mode = parse_split_mode(mode)
    try:
        reader = _read(data)
    except Exception as exc:
        logger.error(f"Error reading source PDF: {exc}")
        raise ProcessingError(f"Failed to read PDF: {exc}") from exc

    total_pages = len(reader.pages)
    pieces = []
    for indices, label, name_stem in _split_groups(split_mode, total_pages, page_ranges, interval_pages):
        try:
            piece_data = _extract(reader, indices)
        except Exception as exc:
            raise ProcessingError(f"Failed to extract pages {label}: {exc}") from exc
        pieces.append(SplitPiece(data=piece_data, label=label, name_stem=name_stem, page_indices=indices))
    return SplitOutput(pieces=pieces, total_pages=total_pages)
