"""Document type detection from recognized text.

Each document type has a keyword set in ``configs/templates.yaml``; the
type whose keywords cover the largest share of the text wins, provided it
clears that type's minimum confidence.
"""

import re
from dataclasses import dataclass
from pathlib import Path

import yaml

from docextract.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATES: dict[str, dict] = {
    "utility": {
        "identifiers": ["meter", "reading", "consumption", "kwh", "units", "utility"],
        "min_confidence": 0.3,
    },
    "receipt": {
        "identifiers": ["receipt", "total", "tax", "subtotal", "payment", "change"],
        "min_confidence": 0.3,
    },
    "invoice": {
        "identifiers": ["invoice", "bill", "amount due", "due date", "invoice number"],
        "min_confidence": 0.3,
    },
    "customer": {
        "identifiers": ["customer", "account", "name", "address", "phone"],
        "min_confidence": 0.3,
    },
}


@dataclass(frozen=True)
class DetectionResult:
    """Best matching document type."""

    document_type: str
    confidence: float
    matched: tuple[str, ...]


class DocumentTypeDetector:
    """Scores text against per-type keyword sets.

    Args:
        templates_path: YAML file of ``{type: {identifiers, min_confidence}}``.
            The built-in keyword sets are used when the file is missing.
    """

    def __init__(self, templates_path: Path | None = None) -> None:
        self.templates = self._load_templates(templates_path)

    def _load_templates(self, path: Path | None) -> dict[str, dict]:
        if path is not None and path.exists():
            with open(path) as f:
                data = yaml.safe_load(f)
            if data:
                return data
        logger.debug("No templates file at %s, using built-in keyword sets", path)
        return DEFAULT_TEMPLATES

    def _score(self, text: str, template: dict) -> tuple[float, tuple[str, ...]]:
        identifiers = template.get("identifiers") or []
        if not identifiers:
            return 0.0, ()
        matched = tuple(
            ident
            for ident in identifiers
            if re.search(rf"\b{re.escape(ident)}\b", text, re.IGNORECASE)
        )
        return len(matched) / len(identifiers), matched

    def detect(self, text: str) -> DetectionResult | None:
        """Return the best matching type, or ``None`` if nothing clears its threshold."""
        best: DetectionResult | None = None
        for name, template in self.templates.items():
            score, matched = self._score(text, template)
            if score > template.get("min_confidence", 0.5) and (
                best is None or score > best.confidence
            ):
                best = DetectionResult(name, score, matched)

        if best:
            logger.info(
                "Detected document type '%s' (confidence=%.2f, keywords=%s)",
                best.document_type,
                best.confidence,
                ", ".join(best.matched),
            )
        return best
