"""FastAPI application for the document extraction service.

Provides endpoints for parsing recognition output directly, analyzing
uploads through the deduplicating orchestrator, and reading back stored
analyses. The orchestrator is attached to ``app.state.orchestrator`` by
the deployment, since it owns the OCR backend and the stores.
"""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docextract.dedup.orchestrator import AnalysisOrchestrator, AnalysisRequest
from docextract.errors import (
    AnalysisInProgress,
    BillingContextError,
    OCRBackendError,
    UnsupportedUpload,
)
from docextract.routing.router import SUPPORTED_DOCUMENT_TYPES, ExtractionRouter
from docextract.utils.config import load_config
from docextract.utils.logger import get_logger

from .schemas import (
    AnalysisEventResponse,
    AnalysisResponse,
    DocumentType,
    HealthResponse,
    ParseRequest,
    ParseResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Document Extraction API",
    description="Turn OCR output from meters, receipts and tables into structured data",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


app.add_exception_handler(UnsupportedUpload, _error(400))
app.add_exception_handler(BillingContextError, _error(400))
app.add_exception_handler(OCRBackendError, _error(502))
app.add_exception_handler(AnalysisInProgress, _error(409))


@lru_cache(maxsize=1)
def _default_router() -> ExtractionRouter:
    return ExtractionRouter(load_config())


def get_router(request: Request) -> ExtractionRouter:
    """The router on ``app.state``, else one built from the config file."""
    router = getattr(request.app.state, "router", None)
    return router if router is not None else _default_router()


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Upload analysis is not configured")
    return orchestrator


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Return service health status."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        supported_document_types=list(SUPPORTED_DOCUMENT_TYPES),
        analysis_enabled=getattr(request.app.state, "orchestrator", None) is not None,
    )


@app.post("/parse/{document_type}", response_model=ParseResponse)
async def parse_document(
    document_type: DocumentType,
    body: ParseRequest,
    router: Annotated[ExtractionRouter, Depends(get_router)],
) -> ParseResponse:
    """Run one parser over recognition output supplied by the caller.

    Args:
        document_type: Parser to use, or ``auto`` to detect from the text.
        body: The OCR payload and, optionally, the model that produced it.

    Returns:
        The resolved document type and the extracted document.
    """
    resolved = router.resolve_type(document_type.value, body.ocr_result)
    document = router.parse(resolved, body.ocr_result, body.model)
    return ParseResponse(document_type=resolved, data=document.to_dict())


@app.post("/analyze", response_model=AnalysisResponse)
async def analyze_upload(
    file: Annotated[UploadFile, File(...)],
    orchestrator: Annotated[AnalysisOrchestrator, Depends(get_orchestrator)],
    document_type: Annotated[DocumentType | None, Query()] = None,
    upload_id: Annotated[str | None, Query()] = None,
    seller_id: Annotated[str | None, Query()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> AnalysisResponse:
    """Analyze an uploaded file once; duplicates replay the cached result.

    The uploader is identified by the ``X-User-Id`` and ``X-User-Role``
    headers. Customers must pass the ``seller_id`` they upload for.
    """
    content = await file.read()
    request = AnalysisRequest(
        content=content,
        mime_type=file.content_type or "application/octet-stream",
        document_type=document_type.value if document_type else None,
        upload_id=upload_id,
        uploader_id=x_user_id,
        uploader_role=x_user_role,
        seller_id=seller_id,
    )
    result = await run_in_threadpool(orchestrator.analyze, request)
    return AnalysisResponse(
        analysis_id=result.analysis_id,
        cached=result.cached,
        document_type=result.document_type,
        extracted_data=result.extracted_data,
        parsed_fields=result.parsed_fields,
        record_id=result.record_id,
    )


@app.get("/analyses/{analysis_id}", response_model=AnalysisEventResponse)
async def get_analysis(
    analysis_id: str,
    orchestrator: Annotated[AnalysisOrchestrator, Depends(get_orchestrator)],
) -> AnalysisEventResponse:
    """Return the stored analysis event."""
    event = orchestrator.get_analysis(analysis_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Analysis {analysis_id} not found")
    return AnalysisEventResponse(
        analysis_id=event.analysis_id,
        seller_id=event.seller_id,
        uploader_type=event.uploader_type,
        upload_id=event.upload_id,
        content_hash=event.content_hash,
        document_type=event.document_type,
        state=event.state.value,
        billed_to_seller=event.billed_to_seller,
        billed_to_customer=event.billed_to_customer,
        created_at=event.created_at,
        cached_ocr_data=event.cached_ocr_data,
    )
