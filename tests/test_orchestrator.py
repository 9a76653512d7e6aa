"""Tests for the deduplicating analysis orchestrator and its stores."""

import itertools
import threading
import time
from unittest.mock import MagicMock

import pytest

from docextract.dedup.orchestrator import (
    AnalysisOrchestrator,
    AnalysisRequest,
    StaticUserDirectory,
    content_hash,
)
from docextract.dedup.store import (
    AnalysisEvent,
    EventState,
    InMemoryAnalysisStore,
    InMemoryUsageStore,
)
from docextract.errors import (
    AnalysisInProgress,
    BillingContextError,
    OCRBackendError,
    UnsupportedUpload,
)
from docextract.ocr.backend import StaticBackend
from docextract.utils.config import AppConfig, DedupConfig

FAST = AppConfig(dedup=DedupConfig(cache_wait_timeout=2.0, cache_poll_interval=0.01))
CONTENT = b"receipt-bytes"


def _request(content: bytes = CONTENT, **overrides) -> AnalysisRequest:
    fields = {
        "content": content,
        "mime_type": "image/png",
        "document_type": "receipt",
        "uploader_id": "seller-1",
        "uploader_role": "seller",
    }
    fields.update(overrides)
    return AnalysisRequest(**fields)


class _SlowBackend(StaticBackend):
    def analyze_image(self, content: bytes):
        time.sleep(0.05)
        return super().analyze_image(content)


@pytest.fixture
def backend(barcode_receipt_pages) -> StaticBackend:
    return StaticBackend(barcode_receipt_pages)


@pytest.fixture
def store() -> InMemoryAnalysisStore:
    return InMemoryAnalysisStore()


@pytest.fixture
def usage() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def users() -> StaticUserDirectory:
    return StaticUserDirectory({"seller-1": "seller", "seller-2": "seller", "cust-1": "customer"})


@pytest.fixture
def orchestrator(backend, store, usage, users) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(backend, store=store, usage=usage, users=users, config=FAST)


class TestDeduplication:
    def test_same_content_different_upload_id(self, orchestrator, backend, usage) -> None:
        first = orchestrator.analyze(_request(upload_id="u1"))
        second = orchestrator.analyze(_request(upload_id="u2"))

        assert first.cached is False
        assert second.cached is True
        assert second.analysis_id == first.analysis_id
        assert second.extracted_data == first.extracted_data
        assert usage.get("seller-1", "ocrScans") == 1
        assert backend.calls == 1

    def test_caller_mutation_does_not_reach_cache(self, orchestrator) -> None:
        first = orchestrator.analyze(_request(upload_id="u1"))
        expected_items = list(first.extracted_data["items"])
        first.extracted_data["items"].clear()
        first.extracted_data["total"] = -1

        replay = orchestrator.analyze(_request(upload_id="u2"))

        assert replay.cached
        assert replay.extracted_data["items"] == expected_items
        assert replay.extracted_data["total"] == 3.0
        replay.extracted_data["total"] = -2
        event = orchestrator.get_analysis(first.analysis_id)
        assert event.cached_ocr_data["extractedData"]["total"] == 3.0

    def test_same_upload_id_different_content(self, orchestrator, usage) -> None:
        first = orchestrator.analyze(_request(upload_id="u1"))
        second = orchestrator.analyze(_request(b"re-encoded", upload_id="u1"))
        assert second.cached
        assert second.analysis_id == first.analysis_id
        assert usage.get("seller-1", "ocrScans") == 1

    def test_sellers_do_not_share_analyses(self, orchestrator, backend, usage) -> None:
        first = orchestrator.analyze(_request())
        second = orchestrator.analyze(_request(uploader_id="seller-2"))
        assert not second.cached
        assert second.analysis_id != first.analysis_id
        assert backend.calls == 2
        assert usage.get("seller-2", "ocrScans") == 1

    def test_cached_blob(self, orchestrator, store) -> None:
        result = orchestrator.analyze(_request())
        event = orchestrator.get_analysis(result.analysis_id)

        assert event.state is EventState.CACHED
        assert event.billed_to_seller
        assert event.content_hash == content_hash(CONTENT)
        blob = event.cached_ocr_data
        assert set(blob) == {
            "extractedData",
            "parsedFields",
            "driverRaw",
            "documentType",
            "mimeType",
            "model",
            "cachedAt",
        }
        assert blob["documentType"] == "receipt"
        assert blob["model"] == "read"
        assert blob["extractedData"]["items"][0]["sku"] == "5012345678900"
        assert blob["parsedFields"]["total"] == 3.0
        assert len(store) == 1

    def test_result_to_dict(self, orchestrator) -> None:
        data = orchestrator.analyze(_request()).to_dict()
        assert set(data) == {
            "analysisId",
            "cached",
            "documentType",
            "extractedData",
            "parsedFields",
            "recordId",
        }

    def test_utility_has_no_parsed_fields(self, store, usage, users, meter_pages) -> None:
        orchestrator = AnalysisOrchestrator(
            StaticBackend(meter_pages), store=store, usage=usage, users=users, config=FAST
        )
        result = orchestrator.analyze(_request(document_type="utility"))
        assert result.document_type == "utility"
        assert result.parsed_fields is None
        assert result.extracted_data["mainReading"] == "0012345"

    def test_auto_type_detected_after_ocr(self, store, usage, users, meter_pages) -> None:
        payload = {"content": "Water meter reading, consumption in units", "pages": meter_pages}
        orchestrator = AnalysisOrchestrator(
            StaticBackend(payload), store=store, usage=usage, users=users, config=FAST
        )
        result = orchestrator.analyze(_request(document_type="auto"))
        assert result.document_type == "utility"
        assert result.extracted_data["manufacturer"] == "SENSUS"

    def test_linked_record_on_replay(self, backend, store, usage, users) -> None:
        linker = MagicMock()
        linker.linked_record_id.return_value = "rec-1"
        orchestrator = AnalysisOrchestrator(
            backend, store=store, usage=usage, users=users, config=FAST, linker=linker
        )
        first = orchestrator.analyze(_request())
        second = orchestrator.analyze(_request())
        assert first.record_id is None
        assert second.record_id == "rec-1"
        linker.linked_record_id.assert_called_once_with(first.analysis_id)


class TestConcurrency:
    def test_concurrent_duplicates_analyze_once(self, barcode_receipt_pages, store, usage, users) -> None:
        backend = _SlowBackend(barcode_receipt_pages)
        orchestrator = AnalysisOrchestrator(
            backend, store=store, usage=usage, users=users, config=FAST
        )
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def upload(i: int) -> None:
            barrier.wait()
            try:
                results.append(orchestrator.analyze(_request(upload_id=f"u{i}")))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=upload, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(results) == 8
        assert len({r.analysis_id for r in results}) == 1
        assert sum(not r.cached for r in results) == 1
        assert backend.calls == 1
        assert usage.get("seller-1", "ocrScans") == 1
        assert len(store) == 1


class TestBillingContext:
    def test_customer_upload_billed_to_seller(self, orchestrator, usage) -> None:
        result = orchestrator.analyze(
            _request(uploader_id="cust-1", uploader_role="customer", seller_id="seller-1")
        )
        event = orchestrator.get_analysis(result.analysis_id)
        assert event.seller_id == "seller-1"
        assert event.uploader_type == "customer"
        assert usage.get("seller-1", "customerOcrScans") == 1
        assert usage.get("seller-1", "ocrScans") == 0

    def test_customer_without_seller(self, orchestrator, store) -> None:
        with pytest.raises(BillingContextError, match="Missing sellerId"):
            orchestrator.analyze(_request(uploader_id="cust-1", uploader_role="customer"))
        assert len(store) == 0

    @pytest.mark.parametrize("seller_id", ["cust-1", "ghost"])
    def test_customer_with_invalid_seller(self, orchestrator, seller_id: str) -> None:
        with pytest.raises(BillingContextError, match="Invalid sellerId provided"):
            orchestrator.analyze(
                _request(uploader_id="cust-1", uploader_role="customer", seller_id=seller_id)
            )

    def test_anonymous_without_default(self, orchestrator) -> None:
        with pytest.raises(BillingContextError, match="Unauthorized"):
            orchestrator.analyze(_request(uploader_id=None, uploader_role=None))

    def test_anonymous_billed_to_default_seller(self, backend, store, usage) -> None:
        config = AppConfig(dedup=DedupConfig(default_seller_id="house"))
        orchestrator = AnalysisOrchestrator(backend, store=store, usage=usage, config=config)
        orchestrator.analyze(_request(uploader_id=None, uploader_role=None))
        assert usage.get("house", "ocrScans") == 1

    def test_billing_failure_keeps_analysis(self, backend, store, users) -> None:
        usage = MagicMock()
        usage.get_tier.return_value = "trial"
        usage.increment.side_effect = RuntimeError("counter store down")
        orchestrator = AnalysisOrchestrator(
            backend, store=store, usage=usage, users=users, config=FAST
        )
        result = orchestrator.analyze(_request())
        event = orchestrator.get_analysis(result.analysis_id)
        assert event.state is EventState.CACHED
        assert event.billed_to_seller is False

    def test_enterprise_tier_uses_invoice_model(self, store, usage, users) -> None:
        usage.set_tier("seller-1", "enterprise")
        payload = {
            "content": "Shop\nTotal 50.00",
            "documents": [{"fields": {"InvoiceTotal": {"value": {"amount": 50.0}}}}],
        }
        orchestrator = AnalysisOrchestrator(
            StaticBackend(payload), store=store, usage=usage, users=users, config=FAST
        )
        result = orchestrator.analyze(_request())
        assert result.extracted_data["rawText"] == "Shop\nTotal 50.00"
        assert result.parsed_fields["total"] == 50.0
        assert orchestrator.get_analysis(result.analysis_id).cached_ocr_data["model"] == (
            "prebuilt-invoice"
        )


class TestFailures:
    def test_rejected_upload_reserves_nothing(self, orchestrator, store, backend) -> None:
        with pytest.raises(UnsupportedUpload):
            orchestrator.analyze(_request(mime_type="text/plain"))
        assert len(store) == 0
        assert backend.calls == 0

    def test_backend_failure_releases_event(self, backend, store, usage, users) -> None:
        failing = MagicMock()
        failing.analyze_image.side_effect = RuntimeError("service unavailable")
        orchestrator = AnalysisOrchestrator(
            failing, store=store, usage=usage, users=users, config=FAST
        )
        with pytest.raises(OCRBackendError):
            orchestrator.analyze(_request())
        assert len(store) == 0
        assert usage.get("seller-1", "ocrScans") == 0

        orchestrator.backend = backend
        result = orchestrator.analyze(_request())
        assert result.cached is False
        assert usage.get("seller-1", "ocrScans") == 1

    def test_wait_times_out(self, backend, store, usage, users) -> None:
        store.insert_if_absent(
            AnalysisEvent("stuck", "seller-1", content_hash=content_hash(CONTENT))
        )
        ticks = itertools.count(0, 10)
        sleeps = []
        orchestrator = AnalysisOrchestrator(
            backend,
            store=store,
            usage=usage,
            users=users,
            config=AppConfig(dedup=DedupConfig(cache_wait_timeout=30)),
            sleep=sleeps.append,
            clock=lambda: next(ticks),
        )
        with pytest.raises(AnalysisInProgress, match="stuck"):
            orchestrator.analyze(_request())
        assert len(sleeps) == 2
        assert backend.calls == 0

    def test_discarded_winner_is_retried(self, backend, store, usage, users) -> None:
        store.insert_if_absent(
            AnalysisEvent("abandoned", "seller-1", content_hash=content_hash(CONTENT))
        )
        orchestrator = AnalysisOrchestrator(
            backend,
            store=store,
            usage=usage,
            users=users,
            config=FAST,
            sleep=lambda _: store.discard("abandoned"),
        )
        result = orchestrator.analyze(_request())
        assert result.cached is False
        assert result.analysis_id != "abandoned"
        assert backend.calls == 1


class TestInMemoryAnalysisStore:
    def setup_method(self) -> None:
        self.store = InMemoryAnalysisStore()

    def test_insert_if_absent_matches_either_key(self) -> None:
        stored, inserted = self.store.insert_if_absent(
            AnalysisEvent("a", "s", upload_id="u1", content_hash="h1")
        )
        assert inserted and stored.analysis_id == "a"

        existing, inserted = self.store.insert_if_absent(
            AnalysisEvent("b", "s", upload_id="u2", content_hash="h1")
        )
        assert not inserted and existing.analysis_id == "a"

        existing, inserted = self.store.insert_if_absent(
            AnalysisEvent("c", "s", upload_id="u1", content_hash="h2")
        )
        assert not inserted and existing.analysis_id == "a"

    def test_returns_copies(self) -> None:
        self.store.insert_if_absent(AnalysisEvent("a", "s", content_hash="h"))
        event = self.store.get("a")
        event.billed_to_seller = True
        assert self.store.get("a").billed_to_seller is False

    def test_cached_blob_copied(self) -> None:
        self.store.insert_if_absent(AnalysisEvent("a", "s", content_hash="h"))
        blob = {"extractedData": {"items": [{"description": "Milk"}], "total": 3.0}}
        self.store.set_cache("a", blob)
        blob["extractedData"]["items"].clear()

        event = self.store.get("a")
        event.cached_ocr_data["extractedData"]["total"] = -1
        replayed, inserted = self.store.insert_if_absent(AnalysisEvent("b", "s", content_hash="h"))

        assert not inserted
        assert replayed.cached_ocr_data == {
            "extractedData": {"items": [{"description": "Milk"}], "total": 3.0}
        }

    def test_discard_frees_keys(self) -> None:
        self.store.insert_if_absent(AnalysisEvent("a", "s", content_hash="h"))
        self.store.discard("a")
        _, inserted = self.store.insert_if_absent(AnalysisEvent("b", "s", content_hash="h"))
        assert inserted
        assert self.store.get("a") is None

    def test_update_unknown_event(self) -> None:
        with pytest.raises(KeyError):
            self.store.set_state("missing", EventState.ANALYZING)


class TestInMemoryUsageStore:
    def test_counters_and_tiers(self) -> None:
        usage = InMemoryUsageStore({"vip": "enterprise"})
        assert usage.increment("s", "ocrScans") == 1
        assert usage.increment("s", "ocrScans") == 2
        assert usage.get("s", "customerOcrScans") == 0
        assert usage.get_tier("vip") == "enterprise"
        assert usage.get_tier("s") == "trial"
