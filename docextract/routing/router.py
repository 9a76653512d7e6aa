"""Upload validation, OCR model selection and parser dispatch."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from docextract.errors import UnsupportedUpload
from docextract.extraction.detection import DocumentTypeDetector
from docextract.extraction.generic_parser import GenericDocumentParser
from docextract.extraction.models import ExtractedDocument, Receipt
from docextract.extraction.receipt_parser import ReceiptParser
from docextract.extraction.utility_parser import UtilityMeterParser
from docextract.ocr.lines import normalize_pages
from docextract.utils.config import AppConfig
from docextract.utils.logger import get_logger

logger = get_logger(__name__)

DOCUMENT_INTELLIGENCE_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
        "text/html",
        "image/tiff",
        "image/bmp",
    }
)
IMAGE_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
    }
)
SUPPORTED_DOCUMENT_TYPES = (
    "receipt",
    "invoice",
    "utility",
    "utility-bill",
    "inventory",
    "customer",
    "customer-consumption",
    "generic",
)
AUTO = "auto"
DEFAULT_DOCUMENT_TYPE = "receipt"

_FOLDERS = {
    "receipt": "receipts",
    "invoice": "invoices",
    "utility": "utility-bills",
    "utility-bill": "utility-bills",
    "inventory": "inventory",
    "customer": "customer-records",
    "customer-consumption": "customer-consumption",
    "generic": "documents",
}
_LAYOUT_TYPES = frozenset({"inventory", "customer", "customer-consumption"})
_INVOICE_TYPES = frozenset({"receipt", "invoice"})

UNSUPPORTED_FILE_MESSAGE = (
    "Unsupported file type. Supported: Images (JPG, PNG), PDF, "
    "Word (.docx), Excel (.xlsx), PowerPoint (.pptx)"
)


@dataclass(frozen=True)
class OcrRoute:
    """Which OCR service and model analyze an upload."""

    service: str
    model: str


def validate_upload(
    mime_type: str | None,
    document_type: str | None,
    size: int,
    max_size: int = 50 * 1024 * 1024,
) -> None:
    """Reject uploads the OCR backends cannot handle.

    Raises:
        UnsupportedUpload: With the message shown to the uploader.
    """
    if mime_type not in DOCUMENT_INTELLIGENCE_TYPES and mime_type not in IMAGE_TYPES:
        raise UnsupportedUpload(UNSUPPORTED_FILE_MESSAGE)
    if (
        document_type
        and document_type != AUTO
        and document_type not in SUPPORTED_DOCUMENT_TYPES
    ):
        raise UnsupportedUpload(
            f"Invalid document type. Supported: {', '.join(SUPPORTED_DOCUMENT_TYPES)}"
        )
    if size > max_size:
        raise UnsupportedUpload(f"File size exceeds {max_size // (1024 * 1024)}MB limit")


def route(document_type: str, mime_type: str | None, tier: str = "trial") -> OcrRoute:
    """Pick the OCR service and model for one upload.

    Raises:
        UnsupportedUpload: When no backend accepts ``mime_type``.
    """
    if document_type in _INVOICE_TYPES and tier == "enterprise":
        return OcrRoute("document-intelligence", "prebuilt-invoice")
    if document_type in _LAYOUT_TYPES:
        return OcrRoute("document-intelligence", "prebuilt-layout")
    if mime_type in DOCUMENT_INTELLIGENCE_TYPES:
        return OcrRoute("document-intelligence", "prebuilt-read")
    if mime_type and mime_type.startswith("image/"):
        return OcrRoute("computer-vision", "read")
    raise UnsupportedUpload(UNSUPPORTED_FILE_MESSAGE)


def document_type_folder(document_type: str | None) -> str:
    """Storage folder for uploads of ``document_type``."""
    return _FOLDERS.get(document_type or "", "documents")


def flat_pages(payload: Any) -> Any:
    """The page list inside an OCR payload, whichever backend produced it."""
    if isinstance(payload, dict):
        return payload.get("pages") or []
    return payload


def payload_text(payload: Any) -> str:
    """Full text of an OCR payload, used for detection and raw text."""
    if isinstance(payload, dict) and isinstance(payload.get("content"), str):
        return payload["content"]
    return "\n".join(line.text for line in normalize_pages(flat_pages(payload), 1))


class ExtractionRouter:
    """Resolves document types and runs the matching parser.

    Args:
        config: Application config; each parser gets its own section.
        detector: Keyword detector used for ``auto`` document types.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        detector: DocumentTypeDetector | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.detector = detector or DocumentTypeDetector(Path(self.config.templates_path))
        self.utility_parser = UtilityMeterParser(self.config.utility)
        self.receipt_parser = ReceiptParser(self.config.receipt)
        self.generic_parser = GenericDocumentParser(self.config.generic)

    def resolve_type(self, document_type: str | None, payload: Any = None) -> str:
        """Canonical document type; ``auto`` is detected from the payload text."""
        if document_type == "utility-bill":
            return "utility"
        if document_type and document_type != AUTO:
            return document_type
        if document_type == AUTO and payload is not None:
            detected = self.detector.detect(payload_text(payload))
            if detected is not None:
                return detected.document_type
        return DEFAULT_DOCUMENT_TYPE

    def parse(
        self, document_type: str, payload: Any, model: str | None = None
    ) -> ExtractedDocument:
        """Run the parser registered for ``document_type`` over ``payload``."""
        document_type = self.resolve_type(document_type, payload)
        logger.debug("Dispatching %s payload (model=%s)", document_type, model)

        if document_type == "utility":
            return self.utility_parser.parse(flat_pages(payload))
        if document_type == "customer-consumption":
            return self.generic_parser.parse_customer_records(payload)
        if document_type in ("inventory", "customer", "generic"):
            return self.generic_parser.parse(payload)
        if document_type in _INVOICE_TYPES and model == "prebuilt-invoice":
            return Receipt(raw_text=payload_text(payload))
        return self.receipt_parser.parse(flat_pages(payload))
