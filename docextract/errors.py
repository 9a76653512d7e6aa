"""Exceptions raised by the I/O-facing layers.

Parsers never raise these; they degrade to empty documents instead.
"""


class UnsupportedUpload(ValueError):
    """The upload's MIME type, document type or size is not accepted."""


class BillingContextError(ValueError):
    """No valid seller could be resolved to bill for an upload."""


class OCRBackendError(RuntimeError):
    """The OCR backend failed to analyze a document."""


class AnalysisInProgress(RuntimeError):
    """A concurrent duplicate upload did not finish within the wait timeout."""
