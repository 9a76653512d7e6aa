"""Nearest-candidate selection around an anchor line.

A candidate's score rewards long cleaned text and penalizes distance:

    score = len(cleaned) * length_weight - (h_dist + v_dist)
            + (above_bonus if candidate is above the anchor)

Ties go to the longer cleaned text, then to the smaller total distance.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from docextract.ocr.lines import Line
from docextract.utils.config import SpatialConfig


@dataclass(frozen=True)
class Anchor:
    """A point to search around. Virtual anchors have no source line."""

    center_x: float
    mid_y: float
    line: Line | None = None

    @classmethod
    def from_line(cls, line: Line) -> "Anchor":
        return cls(line.center_x, line.mid_y, line)


@dataclass(frozen=True)
class Candidate:
    """A line provisionally matched to a field."""

    value: str
    score: float
    source_line: Line
    distance: float

    @property
    def length(self) -> int:
        return len(self.value)


def clean_text(text: str) -> str:
    return re.sub(r"\s", "", text)


class CandidateScorer:
    """Collects and ranks candidates within a search window.

    Args:
        config: Window sizes and scoring weights.
    """

    def __init__(self, config: SpatialConfig | None = None) -> None:
        self.config = config or SpatialConfig()

    def collect(
        self,
        anchor: Anchor,
        lines: Iterable[Line],
        predicate: Callable[[Line], bool],
    ) -> list[Candidate]:
        """Score every line inside the window that satisfies ``predicate``."""
        cfg = self.config
        candidates: list[Candidate] = []
        for line in lines:
            if anchor.line is not None and line.index == anchor.line.index:
                continue
            if not predicate(line):
                continue
            h_dist = abs(line.center_x - anchor.center_x)
            v_dist = abs(line.mid_y - anchor.mid_y)
            if h_dist >= cfg.max_horizontal_search or v_dist >= cfg.max_vertical_search:
                continue
            cleaned = clean_text(line.text)
            score = len(cleaned) * cfg.length_weight_factor - (h_dist + v_dist)
            if line.mid_y < anchor.mid_y:
                score += cfg.above_anchor_bonus
            candidates.append(Candidate(cleaned, score, line, h_dist + v_dist))
        return candidates

    @staticmethod
    def rank(candidates: Iterable[Candidate]) -> list[Candidate]:
        """Best first: score, then length, then proximity."""
        return sorted(candidates, key=lambda c: (-c.score, -c.length, c.distance))

    def best(
        self,
        anchor: Anchor,
        lines: Iterable[Line],
        predicate: Callable[[Line], bool],
    ) -> Candidate | None:
        ranked = self.rank(self.collect(anchor, lines, predicate))
        return ranked[0] if ranked else None
