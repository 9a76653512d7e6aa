"""Logging setup for the extraction engine.

One stdout handler on the root logger, named module loggers, and an
adapter that stamps orchestrator messages with the analysis they belong to.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once.

    Args:
        level: Logging level name. Unknown names fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (usually the caller's ``__name__``)."""
    return logging.getLogger(name)


class AnalysisLogAdapter(logging.LoggerAdapter):
    """Prefix records with ``[seller=... analysis=...]``.

    Fields that are not known yet are omitted from the prefix.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        parts = [f"{key}={value}" for key, value in self.extra.items() if value]
        if not parts:
            return msg, kwargs
        return f"[{' '.join(parts)}] {msg}", kwargs


def analysis_logger(
    name: str, seller_id: str | None = None, analysis_id: str | None = None
) -> AnalysisLogAdapter:
    """Build an adapter bound to one seller/analysis pair."""
    return AnalysisLogAdapter(
        logging.getLogger(name), {"seller": seller_id, "analysis": analysis_id}
    )
