"""Positioned OCR lines and the geometry shared by every parser.

Flat recognition output (pages of ``{text, boundingBox}``) is normalized
into one list of :class:`Line` objects sorted by vertical midpoint. Lines
are immutable; which rule consumed which line is recorded separately in a
:class:`Claims` ledger that each parser threads through its steps.
"""

import math
import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from docextract.utils.logger import get_logger

logger = get_logger(__name__)

_NUMERICAL_RE = re.compile(r"^[\d.]+$")
_BARCODE_LENGTHS = (8, 13, 14)

BoundingBox = tuple[float, float, float, float, float, float, float, float]


@dataclass(frozen=True)
class Line:
    """One recognized text span with its derived position."""

    index: int
    text: str
    upper_text: str
    bounding_box: BoundingBox
    center_x: float
    mid_y: float

    @property
    def compact(self) -> str:
        """Text with all whitespace removed."""
        return re.sub(r"\s", "", self.text)


def center_x(box: Sequence[float]) -> float:
    """Mean x of the four corners of an 8-value box."""
    return (box[0] + box[2] + box[4] + box[6]) / 4


def mid_y(box: Sequence[float]) -> float:
    """Mean y of the four corners of an 8-value box."""
    return (box[1] + box[3] + box[5] + box[7]) / 4


def distance(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Euclidean distance between two ``(x, y)`` points."""
    return math.hypot(a[0] - b[0], a[1] - b[1])


def boxes_overlap(box1: Sequence[float], box2: Sequence[float]) -> bool:
    """Axis-aligned overlap test on the extents of two boxes."""
    x1 = box1[0::2]
    y1 = box1[1::2]
    x2 = box2[0::2]
    y2 = box2[1::2]
    return not (
        max(x1) < min(x2)
        or max(x2) < min(x1)
        or max(y1) < min(y2)
        or max(y2) < min(y1)
    )


def is_numerical(text: str) -> bool:
    """True when ``text`` holds only digits and decimal points."""
    return bool(_NUMERICAL_RE.match(text))


def is_barcode(text: str) -> bool:
    """True for EAN-8, EAN-13 or GTIN-14 shaped digit runs."""
    return text.isdigit() and text.isascii() and len(text) in _BARCODE_LENGTHS


def coerce_box(raw: Any) -> BoundingBox | None:
    """Accept 8 flat numbers, 4 ``[x, y]`` pairs or 4 ``{x, y}`` points.

    Returns:
        The flat 8-tuple, or ``None`` when the shape is unusable.
    """
    if not isinstance(raw, (list, tuple)):
        return None
    try:
        if len(raw) == 8:
            flat = [float(v) for v in raw]
        elif len(raw) == 4 and all(isinstance(p, dict) for p in raw):
            flat = [float(c) for p in raw for c in (p["x"], p["y"])]
        elif len(raw) == 4:
            flat = [float(c) for p in raw for c in p]
        else:
            return None
    except (KeyError, TypeError, ValueError):
        return None
    if len(flat) != 8 or not all(math.isfinite(v) for v in flat):
        return None
    return tuple(flat)  # type: ignore[return-value]


def iter_raw_lines(pages: Any) -> Iterator[dict]:
    """Yield raw line dicts from pages in any of the accepted shapes.

    A page is either ``{"lines": [...]}`` or a bare list of line dicts.
    Anything else is skipped.
    """
    if not isinstance(pages, (list, tuple)):
        return
    for page in pages:
        if isinstance(page, dict):
            raw_lines = page.get("lines") or []
        elif isinstance(page, (list, tuple)):
            raw_lines = page
        else:
            continue
        if not isinstance(raw_lines, (list, tuple)):
            continue
        for raw in raw_lines:
            if isinstance(raw, dict):
                yield raw


def normalize_pages(pages: Any, min_length: int = 2) -> list[Line]:
    """Flatten OCR pages into one line list sorted by vertical midpoint.

    Args:
        pages: Recognition output. ``None`` or malformed input yields ``[]``.
        min_length: Lines whose stripped text is shorter are dropped.

    Returns:
        Lines indexed in their final sorted order.
    """
    staged: list[tuple[str, BoundingBox]] = []
    skipped = 0
    for raw in iter_raw_lines(pages):
        text = raw.get("text", raw.get("content"))
        box = coerce_box(
            raw.get("boundingBox", raw.get("bounding_box", raw.get("polygon")))
        )
        if not isinstance(text, str) or box is None:
            skipped += 1
            continue
        text = text.strip()
        if len(text) < min_length:
            continue
        staged.append((text, box))

    if skipped:
        logger.debug("Skipped %d malformed OCR lines", skipped)

    staged.sort(key=lambda item: mid_y(item[1]))
    return [
        Line(
            index=i,
            text=text,
            upper_text=text.upper(),
            bounding_box=box,
            center_x=center_x(box),
            mid_y=mid_y(box),
        )
        for i, (text, box) in enumerate(staged)
    ]


class Claims:
    """Ledger of which extraction rule consumed which line.

    A line can be claimed by exactly one field; later rules only ever see
    lines that are still free.
    """

    def __init__(self) -> None:
        self._owners: dict[int, str] = {}

    def claim(self, line: Line, field: str) -> bool:
        """Record ``field`` as the owner of ``line``.

        Returns:
            ``False`` if another field already owns the line.
        """
        owner = self._owners.get(line.index)
        if owner is not None:
            return owner == field
        self._owners[line.index] = field
        logger.debug("Line %d %r claimed by %s", line.index, line.text, field)
        return True

    def is_claimed(self, line: Line) -> bool:
        return line.index in self._owners

    def owner(self, line: Line) -> str | None:
        return self._owners.get(line.index)

    def free(self, lines: Iterable[Line]) -> list[Line]:
        """The subset of ``lines`` nobody has claimed yet, order preserved."""
        return [line for line in lines if line.index not in self._owners]

    def by_field(self) -> dict[str, list[int]]:
        """Claimed line indexes grouped by owning field."""
        grouped: dict[str, list[int]] = {}
        for index, field in sorted(self._owners.items()):
            grouped.setdefault(field, []).append(index)
        return grouped

    def __len__(self) -> int:
        return len(self._owners)
