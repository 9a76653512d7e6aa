"""Analysis events and usage counters.

The analysis store's only write that matters for correctness is
:meth:`InMemoryAnalysisStore.insert_if_absent`: under concurrent identical
uploads exactly one caller gets ``inserted=True``. Persistent stores must
implement it as one atomic conditional insert, never as read-then-write.
"""

import copy
import dataclasses
import datetime
import enum
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol

from docextract.utils.logger import get_logger

logger = get_logger(__name__)


class EventState(str, enum.Enum):
    NEW = "new"
    ANALYZING = "analyzing"
    CACHED = "cached"


@dataclass
class AnalysisEvent:
    """One analysis of one upload, used for billing and cached replays."""

    analysis_id: str
    seller_id: str
    uploader_id: str | None = None
    uploader_type: str = "seller"
    upload_id: str | None = None
    content_hash: str | None = None
    document_type: str = "receipt"
    state: EventState = EventState.NEW
    cached_ocr_data: dict[str, Any] | None = None
    record_id: str | None = None
    billed_to_seller: bool = False
    billed_to_customer: bool = False
    created_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def dedupe_keys(self) -> list[tuple[str, str, str]]:
        keys = []
        if self.upload_id:
            keys.append((self.seller_id, "upload", self.upload_id))
        if self.content_hash:
            keys.append((self.seller_id, "hash", self.content_hash))
        return keys


class AnalysisStore(Protocol):
    def insert_if_absent(self, event: AnalysisEvent) -> tuple[AnalysisEvent, bool]: ...

    def get(self, analysis_id: str) -> AnalysisEvent | None: ...

    def set_state(self, analysis_id: str, state: EventState) -> None: ...

    def set_cache(self, analysis_id: str, blob: dict[str, Any]) -> None: ...

    def mark_billed(self, analysis_id: str, seller: bool = True) -> None: ...

    def discard(self, analysis_id: str) -> None: ...


class UsageStore(Protocol):
    def increment(self, seller_id: str, counter: str) -> int: ...

    def get_tier(self, seller_id: str) -> str: ...


class InMemoryAnalysisStore:
    """Thread-safe analysis store keyed by seller plus upload id or content hash.

    Callers always receive copies; the stored events change only through
    the methods below.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, AnalysisEvent] = {}
        self._index: dict[tuple[str, str, str], str] = {}

    def insert_if_absent(self, event: AnalysisEvent) -> tuple[AnalysisEvent, bool]:
        """Insert ``event`` unless one already matches any of its dedupe keys.

        Returns:
            The stored event (the existing one on a match) and whether
            this call inserted it.
        """
        keys = event.dedupe_keys()
        with self._lock:
            for key in keys:
                existing_id = self._index.get(key)
                if existing_id is not None:
                    return copy.deepcopy(self._events[existing_id]), False
            self._events[event.analysis_id] = copy.deepcopy(event)
            for key in keys:
                self._index[key] = event.analysis_id
        return copy.deepcopy(event), True

    def get(self, analysis_id: str) -> AnalysisEvent | None:
        with self._lock:
            event = self._events.get(analysis_id)
            return copy.deepcopy(event) if event else None

    def _update(self, analysis_id: str, **changes: Any) -> None:
        with self._lock:
            event = self._events.get(analysis_id)
            if event is None:
                raise KeyError(analysis_id)
            self._events[analysis_id] = dataclasses.replace(event, **changes)

    def set_state(self, analysis_id: str, state: EventState) -> None:
        self._update(analysis_id, state=state)

    def set_cache(self, analysis_id: str, blob: dict[str, Any]) -> None:
        self._update(
            analysis_id, cached_ocr_data=copy.deepcopy(blob), state=EventState.CACHED
        )

    def mark_billed(self, analysis_id: str, seller: bool = True) -> None:
        if seller:
            self._update(analysis_id, billed_to_seller=True)
        else:
            self._update(analysis_id, billed_to_customer=True)

    def discard(self, analysis_id: str) -> None:
        """Drop a reserved event so the same upload can be analyzed again."""
        with self._lock:
            event = self._events.pop(analysis_id, None)
            if event is None:
                return
            for key in event.dedupe_keys():
                if self._index.get(key) == analysis_id:
                    del self._index[key]
        logger.info("Discarded analysis event %s", analysis_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class InMemoryUsageStore:
    """Per-seller usage counters and subscription tiers."""

    def __init__(self, tiers: dict[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[str, int]] = defaultdict(dict)
        self._tiers = dict(tiers or {})

    def increment(self, seller_id: str, counter: str) -> int:
        with self._lock:
            counters = self._counters[seller_id]
            counters[counter] = counters.get(counter, 0) + 1
            return counters[counter]

    def get(self, seller_id: str, counter: str) -> int:
        with self._lock:
            return self._counters.get(seller_id, {}).get(counter, 0)

    def get_tier(self, seller_id: str) -> str:
        return self._tiers.get(seller_id, "trial")

    def set_tier(self, seller_id: str, tier: str) -> None:
        self._tiers[seller_id] = tier
