"""The seam to the OCR service and the serializer for what it returns.

Backends are black boxes that turn file bytes into either flat pages
(``[{lines: [{text, boundingBox}]}]``) or a layout result
(``{content, tables, keyValuePairs, documents}``). Nothing in this package
calls a real OCR service; deployments inject their own backend.
"""

import dataclasses
import datetime
import hashlib
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel

from docextract.errors import OCRBackendError
from docextract.routing.router import OcrRoute
from docextract.utils.logger import get_logger

logger = get_logger(__name__)


class OCRBackend(Protocol):
    """Anything that can analyze uploaded bytes with a given model."""

    def analyze_image(self, content: bytes) -> Any: ...

    def analyze_document(self, content: bytes, model: str) -> Any: ...


def run_backend(backend: OCRBackend, route: OcrRoute, content: bytes) -> Any:
    """Call the backend entry point that matches ``route``.

    Raises:
        OCRBackendError: Wrapping any failure raised by the backend.
    """
    logger.info("Running OCR via %s/%s on %d bytes", route.service, route.model, len(content))
    try:
        if route.service == "computer-vision":
            return backend.analyze_image(content)
        return backend.analyze_document(content, route.model)
    except OCRBackendError:
        raise
    except Exception as exc:
        raise OCRBackendError(f"OCR backend failed: {exc}") from exc


class StaticBackend:
    """Returns one fixed payload for every call. Counts calls.

    Args:
        payload: Result handed back for every analysis.
    """

    def __init__(self, payload: Any) -> None:
        self.payload = payload
        self.calls = 0
        self._lock = threading.Lock()

    def _record(self) -> Any:
        with self._lock:
            self.calls += 1
        return self.payload

    def analyze_image(self, content: bytes) -> Any:
        return self._record()

    def analyze_document(self, content: bytes, model: str) -> Any:
        return self._record()


class PrecomputedBackend:
    """Serves results recorded ahead of time, keyed by the sha256 of the file.

    Used by the batch CLI, where each upload ships with an OCR sidecar.
    """

    def __init__(self, results: Mapping[str, Any] | None = None) -> None:
        self.results: dict[str, Any] = dict(results or {})
        self.calls = 0

    def add(self, content: bytes, payload: Any) -> None:
        self.results[hashlib.sha256(content).hexdigest()] = payload

    def _lookup(self, content: bytes) -> Any:
        self.calls += 1
        digest = hashlib.sha256(content).hexdigest()
        if digest not in self.results:
            raise OCRBackendError(f"No OCR result recorded for content {digest[:12]}")
        return self.results[digest]

    def analyze_image(self, content: bytes) -> Any:
        return self._lookup(content)

    def analyze_document(self, content: bytes, model: str) -> Any:
        return self._lookup(content)


@dataclass(frozen=True)
class SerializationResult:
    """Outcome of :func:`safe_serialize`."""

    ok: bool
    value: Any
    error: str = ""


class _Cycle(Exception):
    def __init__(self, path: str) -> None:
        super().__init__(f"circular reference at {path or '<root>'}")


def _plain(obj: Any, path: str, ancestors: set[int]) -> Any:
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.isoformat()
    if isinstance(obj, (bytes, bytearray)):
        return f"<{len(obj)} bytes>"
    if isinstance(obj, BaseModel):
        obj = obj.model_dump()
    elif dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        obj = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}

    if isinstance(obj, (dict, list, tuple, set, frozenset)):
        if id(obj) in ancestors:
            raise _Cycle(path)
        ancestors.add(id(obj))
        try:
            if isinstance(obj, dict):
                return {
                    str(key): _plain(value, f"{path}.{key}", ancestors)
                    for key, value in obj.items()
                }
            return [
                _plain(value, f"{path}[{i}]", ancestors) for i, value in enumerate(obj)
            ]
        finally:
            ancestors.discard(id(obj))
    return str(obj)


def safe_serialize(obj: Any) -> SerializationResult:
    """Convert an OCR payload into plain JSON-compatible data.

    Shared references are fine; only true cycles fail. On failure ``value``
    is ``{"_serializationError": message}`` so it can be cached as-is.
    """
    try:
        return SerializationResult(True, _plain(obj, "", set()))
    except (_Cycle, RecursionError) as exc:
        message = str(exc) or type(exc).__name__
        logger.warning("OCR payload not serializable: %s", message)
        return SerializationResult(False, {"_serializationError": message}, message)
