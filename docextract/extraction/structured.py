"""Field parsing for layout and prebuilt-invoice results.

Prebuilt models return ``documents[].fields`` where every field carries
some of ``value``, ``content`` and ``kind``. This module picks the useful
fields by known key names, classifies item lines into items, fees and
promotions, and derives the totals that get cached as ``parsedFields``.
"""

import datetime
import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from docextract.utils.logger import get_logger

logger = get_logger(__name__)

TOTAL_KEYS = (
    "InvoiceTotal", "InvoiceTotalAmount", "Total", "TotalAmount", "Amount",
    "AmountDue", "GrandTotal", "Grand_Total", "TotalDue",
)
BUSINESS_KEYS = (
    "MerchantName", "Merchant", "Vendor", "Seller", "Company", "BusinessName",
    "TradingName", "StoreName",
)
ADDRESS_KEYS = (
    "MerchantAddress", "VendorAddress", "BillingAddress", "BusinessAddress",
    "CompanyAddress", "Address", "StoreAddress",
)
CUSTOMER_KEYS = ("CustomerName", "Customer", "BillTo", "ShipTo", "RecipientName")
DATE_KEYS = ("InvoiceDate", "DocumentDate", "Date", "IssueDate", "TransactionDate")
TAX_KEYS = ("TotalTax", "Tax", "SalesTax", "VAT", "GST")
SUBTOTAL_KEYS = ("SubTotal", "Subtotal", "SubtotalAmount")
ID_KEYS = (
    "InvoiceId", "InvoiceNo", "InvoiceNumber", "InvoiceID", "TransactionId",
    "TransactionNo", "TransactionNumber", "Transaction",
)
TEXT_TOTAL_TOKENS = ("total", "subtotal", "total amount", "amount due", "amount")

_AMOUNT_RE = re.compile(r"\d{1,3}[\d,]*(?:\.\d{1,2})?")
_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d-%b-%Y", "%d %b %Y", "%B %d, %Y")
_PROMO_WORDS = ("promo", "discount")
_FEE_WORDS = ("delivery", "service fee")


@dataclass(frozen=True)
class TotalCandidate:
    """A total value and how it was found."""

    value: float | None
    confidence: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "confidence": self.confidence, "reason": self.reason}


@dataclass(frozen=True)
class StructuredLine:
    description: str
    quantity: float = 1
    amount: float | None = None

    def key(self) -> tuple[str, str, str]:
        amount = "" if self.amount is None else repr(self.amount)
        return self.description.strip().lower(), amount, repr(self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "amount": self.amount,
        }


@dataclass
class ParsedFields:
    """Normalized fields from a prebuilt-model response."""

    invoice_id: str = ""
    invoice_date: str = ""
    business_name: str = ""
    business_address: str = ""
    customer_name: str = ""
    payment_method: str = ""
    subtotal: float | None = None
    tax: float = 0.0
    total: float | None = None
    computed_total: float | None = None
    promo_sum: float = 0.0
    total_after_promotions: float | None = None
    confidence: str = "none"
    reason: str = ""
    items: list[StructuredLine] = field(default_factory=list)
    fees: list[StructuredLine] = field(default_factory=list)
    promotions: list[StructuredLine] = field(default_factory=list)
    ids: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoiceId": self.invoice_id,
            "invoiceDate": self.invoice_date,
            "businessName": self.business_name,
            "businessAddress": self.business_address,
            "detectedCustomerName": self.customer_name,
            "paymentMethod": self.payment_method,
            "items": [line.to_dict() for line in self.items],
            "fees": [line.to_dict() for line in self.fees],
            "promotions": [line.to_dict() for line in self.promotions],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "computedTotal": self.computed_total,
            "promoSum": self.promo_sum,
            "totalAfterPromotions": self.total_after_promotions,
            "confidence": self.confidence,
            "reason": self.reason,
            "ids": dict(self.ids),
        }


def find_amounts(text: str) -> list[float]:
    """All currency-looking numbers in ``text``, commas removed."""
    if not text:
        return []
    return [float(m.replace(",", "")) for m in _AMOUNT_RE.findall(text)]


def iter_documents(raw: Any) -> Iterator[dict]:
    """Yield the ``fields`` mapping of every document in a driver response.

    Accepts a bare document list, a layout result with ``documents``, or a
    cached wrapper with ``metadata.rawDriverResponse``.
    """
    if isinstance(raw, dict):
        if isinstance(raw.get("documents"), list):
            raw = raw["documents"]
        else:
            metadata = raw.get("metadata")
            raw = metadata.get("rawDriverResponse") if isinstance(metadata, dict) else None
    if not isinstance(raw, list):
        return
    for doc in raw:
        if not isinstance(doc, dict):
            continue
        fields = doc.get("fields")
        if isinstance(fields, dict):
            yield fields


def read_field(raw: Any) -> Any:
    """Best value of a field: currency amount, typed value, then content."""
    if not isinstance(raw, dict):
        return None
    value = raw.get("value")
    if isinstance(value, dict) and value.get("amount") is not None:
        return value["amount"]
    currency = raw.get("valueCurrency")
    if isinstance(currency, dict) and currency.get("amount") is not None:
        return currency["amount"]
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return value
    for key in ("valueString", "valueDate", "valueNumber"):
        if raw.get(key) is not None:
            return raw[key]
    return raw.get("content")


def pick_field(fields: dict, candidates: tuple[str, ...]) -> tuple[str, Any] | None:
    """First candidate key present in ``fields``, exact match before case-insensitive."""
    lowered = {key.lower(): key for key in fields}
    for name in candidates:
        key = name if name in fields else lowered.get(name.lower())
        if key is not None and fields[key]:
            value = read_field(fields[key])
            if value not in (None, ""):
                return key, value
    return None


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        amounts = find_amounts(value)
        return amounts[0] if amounts else None
    return None


def normalize_date(value: Any) -> str:
    """ISO ``YYYY-MM-DD`` when the value parses, else its stripped text."""
    text = str(value).strip()
    try:
        return datetime.date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return text


def _currency_walk(node: Any) -> float | None:
    if isinstance(node, dict):
        kind = node.get("kind")
        if isinstance(kind, str) and "currency" in kind.lower():
            amount = read_field(node)
            if isinstance(amount, (int, float)) and not isinstance(amount, bool):
                return float(amount)
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = _currency_walk(child)
        if found is not None:
            return found
    return None


def extract_structured_total(raw: Any) -> TotalCandidate | None:
    """Total from known total keys, else the first currency-kind value."""
    for fields in iter_documents(raw):
        for key in TOTAL_KEYS:
            entry = fields.get(key)
            if not isinstance(entry, dict):
                continue
            amount = read_field(entry)
            if isinstance(amount, (int, float)) and not isinstance(amount, bool):
                return TotalCandidate(float(amount), "high", f"found field {key}")
            content = entry.get("content")
            if isinstance(content, str) and find_amounts(content):
                return TotalCandidate(
                    find_amounts(content)[0], "medium", f"parsed {key} content"
                )
        walked = _currency_walk(fields)
        if walked is not None:
            return TotalCandidate(walked, "high", "found currency-kind value")
    return None


def extract_ids(raw: Any) -> dict[str, str]:
    """Invoice and transaction identifiers keyed by their canonical name."""
    ids: dict[str, str] = {}
    for fields in iter_documents(raw):
        lowered = {key.lower(): key for key in fields}
        used: set[str] = set()
        for name in ID_KEYS:
            key = lowered.get(name.lower())
            if key is None or key in used or name in ids:
                continue
            value = read_field(fields[key])
            if value not in (None, ""):
                ids[name] = str(value)
                used.add(key)
    return ids


def _classify(line: StructuredLine, parsed: ParsedFields) -> None:
    lowered = line.description.lower()
    if any(word in lowered for word in _PROMO_WORDS):
        parsed.promotions.append(line)
    elif any(word in lowered for word in _FEE_WORDS):
        parsed.fees.append(line)
    else:
        parsed.items.append(line)


def _structured_line(node: dict) -> StructuredLine:
    props = node.get("properties") or node.get("valueObject") or {}
    if not isinstance(props, dict):
        props = {}
    description = read_field(props.get("Description")) or node.get("content") or ""
    quantity = _to_float(read_field(props.get("Quantity"))) or 1
    amount = _to_float(read_field(props.get("Amount"))) if props.get("Amount") else None
    return StructuredLine(str(description).strip(), quantity, amount)


def _item_nodes(fields: dict) -> Iterator[dict]:
    items = fields.get("Items")
    if isinstance(items, dict):
        values = items.get("values") or items.get("valueArray") or []
        if not isinstance(values, list):
            return
        for node in values:
            if isinstance(node, dict):
                yield node


def _dedupe(lines: list[StructuredLine]) -> list[StructuredLine]:
    seen: set[tuple[str, str, str]] = set()
    unique: list[StructuredLine] = []
    for line in lines:
        if line.key() not in seen:
            seen.add(line.key())
            unique.append(line)
    return unique


def parse_driver_response(raw: Any) -> ParsedFields:
    """Normalize a prebuilt-model response into :class:`ParsedFields`.

    Returns a ``confidence="none"`` result when ``raw`` holds no documents.
    """
    parsed = ParsedFields()
    documents = list(iter_documents(raw))
    if not documents:
        parsed.reason = "no driver documents"
        return parsed

    parsed.confidence = "low"
    structured = extract_structured_total(raw)
    if structured is not None:
        parsed.total = structured.value
        parsed.confidence = structured.confidence
        parsed.reason = structured.reason

    text_fields = (
        ("business_name", BUSINESS_KEYS),
        ("business_address", ADDRESS_KEYS),
        ("customer_name", CUSTOMER_KEYS),
    )
    for fields in documents:
        for attr, keys in text_fields:
            picked = pick_field(fields, keys) if not getattr(parsed, attr) else None
            if picked:
                setattr(parsed, attr, str(picked[1]).strip())
        if not parsed.invoice_date:
            picked = pick_field(fields, DATE_KEYS)
            if picked:
                parsed.invoice_date = normalize_date(picked[1])
        if not parsed.tax:
            picked = pick_field(fields, TAX_KEYS)
            if picked and _to_float(picked[1]) is not None:
                parsed.tax = _to_float(picked[1])
        if parsed.subtotal is None:
            picked = pick_field(fields, SUBTOTAL_KEYS)
            if picked:
                parsed.subtotal = _to_float(picked[1])

        for node in _item_nodes(fields):
            _classify(_structured_line(node), parsed)

        for key, entry in fields.items():
            lowered = key.lower()
            if "payment" in lowered or "mpesa" in lowered:
                value = read_field(entry)
                if value:
                    parsed.payment_method = str(value)

    parsed.ids = extract_ids(raw)
    parsed.invoice_id = next(iter(parsed.ids.values()), "")
    parsed.items = _dedupe(parsed.items)
    parsed.fees = _dedupe(parsed.fees)
    parsed.promotions = _dedupe(parsed.promotions)

    item_sum = sum(line.amount or 0 for line in parsed.items)
    fee_sum = sum(line.amount or 0 for line in parsed.fees)
    promo_sum = sum(line.amount or 0 for line in parsed.promotions)
    if parsed.subtotal is None and item_sum:
        parsed.subtotal = item_sum
    parsed.promo_sum = promo_sum
    parsed.computed_total = (parsed.subtotal or 0) + fee_sum + parsed.tax - promo_sum
    if parsed.total is None and parsed.subtotal is not None:
        parsed.total = parsed.computed_total
        parsed.reason = parsed.reason or "computed from items/fees/promos"
    if parsed.total is not None:
        parsed.total_after_promotions = parsed.total - promo_sum
        if parsed.confidence == "low":
            parsed.confidence = "medium"
    else:
        parsed.total_after_promotions = parsed.computed_total

    logger.debug(
        "Driver response: total=%s items=%d fees=%d promotions=%d",
        parsed.total,
        len(parsed.items),
        len(parsed.fees),
        len(parsed.promotions),
    )
    return parsed


def find_total_candidate(
    extracted: dict | None, full_text: str, raw: Any = None
) -> TotalCandidate:
    """Best guess at a document total.

    Structured totals win. Otherwise an amount after (then before) a total
    keyword in ``full_text``, then the largest plausible number anywhere.
    """
    structured = extract_structured_total(raw) if raw is not None else None
    if structured is not None:
        return structured

    text = (full_text or "").lower()
    for token in TEXT_TOTAL_TOKENS:
        position = text.find(token)
        if position == -1:
            continue
        after = find_amounts(text[position : position + 200])
        if after:
            return TotalCandidate(after[0], "high", f"found {token}")
        before = find_amounts(text[max(0, position - 100) : position + len(token)])
        if before:
            return TotalCandidate(before[-1], "medium", f"found {token} before")

    numbers: list[float] = []
    extracted = extracted or {}
    for key in ("businessAddress", "businessName"):
        if isinstance(extracted.get(key), str):
            numbers.extend(find_amounts(extracted[key]))
    numbers.extend(find_amounts(full_text or ""))
    plausible = [n for n in numbers if math.isfinite(n) and abs(n) < 1_000_000]
    if plausible:
        return TotalCandidate(max(plausible), "low", "largest numeric candidate")
    return TotalCandidate(None, "none", "no numbers found")


def build_parsed_fields(raw: Any, extracted: dict | None) -> dict[str, Any]:
    """The ``parsedFields`` blob cached next to the extracted document."""
    parsed = parse_driver_response(raw)
    blob = parsed.to_dict()
    if parsed.total is None:
        full_text = (extracted or {}).get("rawText") or ""
        candidate = find_total_candidate(extracted, full_text)
        blob["total"] = candidate.value
        blob["confidence"] = candidate.confidence
        blob["reason"] = candidate.reason
    return blob
