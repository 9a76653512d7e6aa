"""Pydantic request/response schemas for the FastAPI endpoints."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class DocumentType(StrEnum):
    """Document types accepted by the parsers."""

    RECEIPT = "receipt"
    INVOICE = "invoice"
    UTILITY = "utility"
    UTILITY_BILL = "utility-bill"
    INVENTORY = "inventory"
    CUSTOMER = "customer"
    CUSTOMER_CONSUMPTION = "customer-consumption"
    GENERIC = "generic"
    AUTO = "auto"


class ParseRequest(BaseModel):
    """Recognition output to run through a parser."""

    ocr_result: list[Any] | dict[str, Any] | None = None
    model: str | None = None


class ParseResponse(BaseModel):
    document_type: str
    data: dict[str, Any]


class AnalysisResponse(BaseModel):
    """Result of an upload analysis, fresh or replayed from cache."""

    analysis_id: str
    cached: bool
    document_type: str
    extracted_data: dict[str, Any]
    parsed_fields: dict[str, Any] | None = None
    record_id: str | None = None


class AnalysisEventResponse(BaseModel):
    """Stored state of one analysis event."""

    analysis_id: str
    seller_id: str
    uploader_type: str
    upload_id: str | None = None
    content_hash: str | None = None
    document_type: str
    state: str
    billed_to_seller: bool
    billed_to_customer: bool
    created_at: datetime
    cached_ocr_data: dict[str, Any] | None = None


class HealthResponse(BaseModel):
    status: str
    version: str
    supported_document_types: list[str]
    analysis_enabled: bool
