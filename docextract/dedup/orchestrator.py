"""Analyze each upload at most once and bill it at most once.

Every request first reserves an :class:`AnalysisEvent` with one atomic
insert-if-absent keyed by seller and an OR-match on upload id and content
hash. Only the caller that inserted runs OCR, parses, caches and bills.
Every other caller replays the cached result, waiting a bounded time if
the winner is still analyzing.
"""

import datetime
import hashlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from docextract.errors import AnalysisInProgress, BillingContextError
from docextract.extraction.structured import build_parsed_fields
from docextract.ocr.backend import OCRBackend, run_backend, safe_serialize
from docextract.routing.router import (
    AUTO,
    DEFAULT_DOCUMENT_TYPE,
    ExtractionRouter,
    route,
    validate_upload,
)
from docextract.utils.config import AppConfig
from docextract.utils.logger import analysis_logger, get_logger

from .store import (
    AnalysisEvent,
    AnalysisStore,
    EventState,
    InMemoryAnalysisStore,
    InMemoryUsageStore,
    UsageStore,
)

logger = get_logger(__name__)

MISSING_SELLER = "Missing sellerId: customers must select which seller to send this upload to"
INVALID_SELLER = "Invalid sellerId provided"
UNAUTHORIZED = "Unauthorized: no authenticated user and no default seller configured"


class UserDirectory(Protocol):
    def get_role(self, user_id: str) -> str | None: ...


class RecordLinker(Protocol):
    def linked_record_id(self, analysis_id: str) -> str | None: ...


class StaticUserDirectory:
    """User roles from a plain mapping."""

    def __init__(self, roles: dict[str, str] | None = None) -> None:
        self.roles = dict(roles or {})

    def get_role(self, user_id: str) -> str | None:
        return self.roles.get(user_id)


@dataclass(frozen=True)
class AnalysisRequest:
    """One upload plus who sent it and who it is for."""

    content: bytes
    mime_type: str
    document_type: str | None = None
    upload_id: str | None = None
    uploader_id: str | None = None
    uploader_role: str | None = None
    seller_id: str | None = None


@dataclass(frozen=True)
class BillingContext:
    seller_id: str
    uploader_id: str | None
    uploader_type: str

    @property
    def usage_counter(self) -> str:
        return "customerOcrScans" if self.uploader_type == "customer" else "ocrScans"


@dataclass(frozen=True)
class AnalysisResult:
    analysis_id: str
    cached: bool
    document_type: str
    extracted_data: dict[str, Any]
    parsed_fields: dict[str, Any] | None = None
    record_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysisId": self.analysis_id,
            "cached": self.cached,
            "documentType": self.document_type,
            "extractedData": self.extracted_data,
            "parsedFields": self.parsed_fields,
            "recordId": self.record_id,
        }


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class AnalysisOrchestrator:
    """Deduplicating front door to OCR, parsing and usage billing.

    Args:
        backend: OCR service client.
        store: Analysis event store. Defaults to an in-memory store.
        usage: Usage counters and tiers. Defaults to an in-memory store.
        users: Role lookup used to validate the seller a customer picks.
        config: Application config.
        router: Parser dispatch; built from ``config`` when omitted.
        linker: Resolves the record created from a cached analysis.
    """

    def __init__(
        self,
        backend: OCRBackend,
        store: AnalysisStore | None = None,
        usage: UsageStore | None = None,
        users: UserDirectory | None = None,
        config: AppConfig | None = None,
        router: ExtractionRouter | None = None,
        linker: RecordLinker | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.store = store if store is not None else InMemoryAnalysisStore()
        self.usage = usage if usage is not None else InMemoryUsageStore()
        self.users = users if users is not None else StaticUserDirectory()
        self.config = config or AppConfig()
        self.router = router or ExtractionRouter(self.config)
        self.linker = linker
        self._sleep = sleep
        self._clock = clock

    def resolve_billing(self, request: AnalysisRequest) -> BillingContext:
        """Work out which seller pays for ``request``.

        Raises:
            BillingContextError: When no valid seller can be resolved.
        """
        if request.uploader_id and request.uploader_role == "customer":
            if not request.seller_id:
                raise BillingContextError(MISSING_SELLER)
            if self.users.get_role(request.seller_id) != "seller":
                raise BillingContextError(INVALID_SELLER)
            return BillingContext(request.seller_id, request.uploader_id, "customer")
        if request.uploader_id:
            return BillingContext(request.uploader_id, request.uploader_id, "seller")
        default_seller = self.config.dedup.default_seller_id
        if default_seller:
            return BillingContext(default_seller, None, "seller")
        raise BillingContextError(UNAUTHORIZED)

    def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        """Analyze ``request`` once, or replay the earlier analysis of the same upload.

        Raises:
            UnsupportedUpload: Bad MIME type, document type or size.
            BillingContextError: No seller to bill.
            OCRBackendError: The OCR call failed; nothing is cached or billed.
            AnalysisInProgress: A concurrent duplicate did not finish in time.
        """
        validate_upload(
            request.mime_type,
            request.document_type,
            len(request.content),
            self.config.upload.max_size_bytes,
        )
        billing = self.resolve_billing(request)
        digest = content_hash(request.content)

        while True:
            event = AnalysisEvent(
                analysis_id=uuid.uuid4().hex,
                seller_id=billing.seller_id,
                uploader_id=billing.uploader_id,
                uploader_type=billing.uploader_type,
                upload_id=request.upload_id,
                content_hash=digest,
                document_type=request.document_type or DEFAULT_DOCUMENT_TYPE,
            )
            stored, inserted = self.store.insert_if_absent(event)
            log = analysis_logger(__name__, billing.seller_id, stored.analysis_id)
            if inserted:
                log.info("New upload %s, analyzing", digest[:12])
                return self._analyze_new(stored, request, billing, log)

            log.info("Duplicate upload %s, serving cached analysis", digest[:12])
            cached = self._wait_for_cache(stored)
            if cached is not None:
                return self._replay(cached)
            log.info("Earlier analysis was discarded, retrying")

    def get_analysis(self, analysis_id: str) -> AnalysisEvent | None:
        return self.store.get(analysis_id)

    def _wait_for_cache(self, event: AnalysisEvent) -> AnalysisEvent | None:
        """Poll until ``event`` is cached; ``None`` if it was discarded."""
        deadline = self._clock() + self.config.dedup.cache_wait_timeout
        current: AnalysisEvent | None = event
        while current is not None and current.cached_ocr_data is None:
            if self._clock() >= deadline:
                raise AnalysisInProgress(
                    f"Analysis {event.analysis_id} is still in progress; retry later"
                )
            self._sleep(self.config.dedup.cache_poll_interval)
            current = self.store.get(event.analysis_id)
        return current

    def _replay(self, event: AnalysisEvent) -> AnalysisResult:
        blob = event.cached_ocr_data or {}
        record_id = event.record_id
        if self.linker is not None:
            record_id = self.linker.linked_record_id(event.analysis_id) or record_id
        return AnalysisResult(
            analysis_id=event.analysis_id,
            cached=True,
            document_type=blob.get("documentType") or event.document_type,
            extracted_data=blob.get("extractedData") or {},
            parsed_fields=blob.get("parsedFields"),
            record_id=record_id,
        )

    def _analyze_new(
        self,
        event: AnalysisEvent,
        request: AnalysisRequest,
        billing: BillingContext,
        log: Any,
    ) -> AnalysisResult:
        self.store.set_state(event.analysis_id, EventState.ANALYZING)
        try:
            blob = self._extract(request, billing)
            self.store.set_cache(event.analysis_id, blob)
        except Exception:
            log.warning("Analysis failed, releasing the reserved event")
            self.store.discard(event.analysis_id)
            raise

        self._bill(event, billing, log)
        return AnalysisResult(
            analysis_id=event.analysis_id,
            cached=False,
            document_type=blob["documentType"],
            extracted_data=blob["extractedData"],
            parsed_fields=blob["parsedFields"],
        )

    def _extract(self, request: AnalysisRequest, billing: BillingContext) -> dict[str, Any]:
        requested = request.document_type
        route_type = (
            self.router.resolve_type(requested)
            if requested and requested != AUTO
            else DEFAULT_DOCUMENT_TYPE
        )
        ocr_route = route(route_type, request.mime_type, self.usage.get_tier(billing.seller_id))
        payload = run_backend(self.backend, ocr_route, request.content)
        serialized = safe_serialize(payload)

        document_type = self.router.resolve_type(requested or DEFAULT_DOCUMENT_TYPE, payload)
        document = self.router.parse(document_type, payload, ocr_route.model)
        extracted = document.to_dict()
        parsed_fields = None
        if document_type in ("receipt", "invoice"):
            parsed_fields = build_parsed_fields(serialized.value, extracted)

        return {
            "extractedData": extracted,
            "parsedFields": parsed_fields,
            "driverRaw": serialized.value,
            "documentType": document_type,
            "mimeType": request.mime_type,
            "model": ocr_route.model,
            "cachedAt": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    def _bill(self, event: AnalysisEvent, billing: BillingContext, log: Any) -> None:
        try:
            count = self.usage.increment(billing.seller_id, billing.usage_counter)
            self.store.mark_billed(event.analysis_id, seller=True)
        except Exception:
            log.exception("Billing failed; analysis kept with billedToSeller=false")
            return
        log.info("Billed %s (now %d)", billing.usage_counter, count)
