"""Receipt and invoice parser for flat recognition output.

Steps run in a fixed order over one :class:`Claims` ledger:

1. header: business name, invoice number, date, address
2. delivery details, payment method, promotions and fees
3. line items, barcode-anchored first and then description-first
4. tax, printed subtotal and printed total
5. last-resort ``qty description price`` items when nothing else matched
6. reconciliation, where ``total`` is always ``subtotal + fees + tax``
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any

from docextract.ocr.lines import Claims, Line, is_barcode, is_numerical, normalize_pages
from docextract.utils.config import ReceiptParserConfig
from docextract.utils.logger import get_logger

from .models import Fee, LineItem, Receipt
from .rules import Rule, apply_rules

logger = get_logger(__name__)

_CONJUNCTION_RE = re.compile(r"^(In|At|On|For|The|A|An)\s", re.IGNORECASE)
_INVOICE_LABEL_RE = re.compile(r"\b(Invoice No|Invoice Number)\b", re.IGNORECASE)
_LONG_NUMBER_RE = re.compile(r"\d{7,}")
_ORDER_RE = re.compile(r"\b(?:order|invoice|transaction)\s?#?\s*:?\s*(\d+)", re.IGNORECASE)
_SHORT_DATE_RE = re.compile(r"\d{1,2}-\w{3}-\d{4}")
_DATE_LABEL_RE = re.compile(
    r"\b(date|invoice\s?date|receipt\s?date|transaction\s?date)\b", re.IGNORECASE
)
_MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*"
_DATE_FORMATS = (
    re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}"),
    re.compile(rf"\d{{1,2}}\s?-?\s?{_MONTHS}\s?-?\s?\d{{2,4}}", re.IGNORECASE),
    re.compile(r"\d{4}[/\-]\d{1,2}[/\-]\d{1,2}"),
)
_ITEM_LIKE_RE = re.compile(r"^\d{1,2}\s+[A-Za-z]")
_METADATA_RE = re.compile(
    r"\b(total|tax|sub\s?total|order|transaction|receipt|invoice|table|guests|dine"
    r"|server|station|cashier|register|date|time)\b",
    re.IGNORECASE,
)
_DELIVERY_LABELS = ("Apartment:", "Building:", "Delivery Area:")
_PAYMENT_RE = re.compile(r"\b(Payment|Paid By|Method)\b", re.IGNORECASE)
_PROMO_RE = re.compile(r"\b(PROMO|Discount)\b", re.IGNORECASE)
_PROMO_NAME_RE = re.compile(r"\((.+)\)")
_CURRENCY_RE = re.compile(r"^\d+\.\d{2}$")
_FEE_RE = re.compile(r"\b(Delivery|Service|Charge|Fee)\b", re.IGNORECASE)
_DELIVERY_WORD_RE = re.compile(r"\bDelivery\b", re.IGNORECASE)
_TRAILING_AMOUNT_RE = re.compile(r"(\d+(?:\.\d+)?)$")
_PRICING_RE = re.compile(r"(\d+(?:\.\d+)?)\s*[xX×]\s*(\d+(?:\.\d+)?)")
_TAX_RE = re.compile(r"\b(tax|vat|gst|sales tax|tax total|total tax)\b", re.IGNORECASE)
_SUBTOTAL_RE = re.compile(r"\b(sub\s?total|sub-total)\b", re.IGNORECASE)
_TOTAL_RE = re.compile(r"\b(total|grand\s?total|amount\s?due)\b", re.IGNORECASE)
_AMOUNT_RE = re.compile(r"\d[\d,]*(?:\.\d{1,2})?")
_PRICE_LINE_RE = re.compile(r"^[$£€]?([\d,]+(?:\.\d{1,2})?)$")
_SKIP_RE = re.compile(
    r"\b(total|tax|sub|payment|thank|street|avenue|road|hwy|blvd|cashier|server"
    r"|station|register|transaction|receipt|invoice|change|tendered|loyalty"
    r"|account|balance|hscodes|qt|price|item)\b",
    re.IGNORECASE,
)
_SIMPLE_ITEM_RE = re.compile(
    r"^(\d+)\s+([A-Za-z][A-Za-z\s\-'/]+)(?:\s+([\d,]+\.?\d{1,2}))?$"
)
_CAPS_PRODUCT_RE = re.compile(r"^[A-Z][A-Z\s/\-']{3,}$")


def _amount(text: str) -> float | None:
    try:
        return float(text.replace(",", ""))
    except ValueError:
        return None


def _last_amount(text: str) -> float | None:
    amounts = _AMOUNT_RE.findall(text)
    return _amount(amounts[-1]) if amounts else None


@dataclass(frozen=True)
class _Match:
    """Value produced by a main-loop rule and the lines it consumes."""

    value: Any
    lines: tuple[Line, ...]


@dataclass
class _Draft:
    business_name: str = ""
    business_address: str = ""
    invoice_no: str = ""
    invoice_date: str = ""
    payment_method: str = ""
    promotions: str = ""
    tax: float = 0.0
    printed_subtotal: float = 0.0
    printed_total: float = 0.0
    delivery_details: dict[str, str] = field(default_factory=dict)
    items: list[LineItem] = field(default_factory=list)
    fees: list[Fee] = field(default_factory=list)


class _Page:
    """Sorted lines, the claims ledger and the column layout of one receipt."""

    def __init__(self, lines: list[Line], config: ReceiptParserConfig) -> None:
        self.lines = lines
        self.config = config
        self.claims = Claims()
        # Narrow captures have no price column; every column test then passes.
        self.columns = any(line.center_x >= config.price_column_min_x for line in lines)
        self.ignored = {
            line.index
            for line in lines
            if len(line.text) < 3
            or any(keyword in line.text for keyword in config.ignore_keywords)
        }

    def free(self) -> list[Line]:
        return self.claims.free(self.lines)

    def is_free(self, line: Line) -> bool:
        return not self.claims.is_claimed(line)

    def is_ignored(self, line: Line) -> bool:
        return line.index in self.ignored

    def in_price_column(self, line: Line) -> bool:
        return not self.columns or line.center_x >= self.config.price_column_min_x

    def in_description_column(self, line: Line) -> bool:
        return not self.columns or line.center_x < self.config.description_column_max_x

    def next_line(self, line: Line) -> Line | None:
        position = line.index + 1
        return self.lines[position] if position < len(self.lines) else None

    def claim(self, name: str, *lines: Line) -> None:
        for line in lines:
            self.claims.claim(line, name)


class ReceiptParser:
    """Turns receipt or invoice lines into a reconciled :class:`Receipt`.

    Args:
        config: Column boundaries, search windows and keyword lists.
    """

    def __init__(self, config: ReceiptParserConfig | None = None) -> None:
        self.config = config or ReceiptParserConfig()

    def parse(self, pages: Any) -> Receipt:
        receipt, _ = self.parse_with_claims(pages)
        return receipt

    def parse_with_claims(self, pages: Any) -> tuple[Receipt, Claims]:
        """Parse and also return the ledger of consumed lines."""
        lines = normalize_pages(pages, min_length=self.config.min_line_length)
        page = _Page(lines, self.config)
        if not lines:
            return Receipt(), page.claims

        draft = _Draft()
        name_line = self._extract_business_name(page, draft)
        self._extract_invoice_number(page, draft)
        self._extract_date(page, draft)
        if name_line is not None:
            self._extract_address(page, draft, name_line)
        self._extract_details_and_fees(page, draft)
        self._extract_barcode_items(page, draft)
        self._extract_described_items(page, draft)
        self._reclassify_fee_items(draft)
        self._extract_tax(page, draft)
        self._extract_printed_totals(page, draft)
        if not draft.items:
            self._extract_fallback_items(page, draft)

        receipt = self._reconcile(draft, "\n".join(line.text for line in lines))
        logger.info(
            "Receipt parse: business=%r items=%d fees=%d total=%.2f (printed %.2f)",
            receipt.business_name,
            len(receipt.items),
            len(receipt.fees),
            receipt.total,
            receipt.printed_total,
        )
        return receipt, page.claims

    # -- header -----------------------------------------------------------

    def _extract_business_name(self, page: _Page, draft: _Draft) -> Line | None:
        first_barcode = next(
            (line.mid_y for line in page.lines if is_barcode(line.text)), None
        )
        for line in page.lines:
            if first_barcode is not None and line.mid_y >= first_barcode:
                break
            if page.is_ignored(line) or len(line.text) <= 5:
                continue
            if is_numerical(line.text) or is_barcode(line.text):
                continue
            if _PRICING_RE.search(line.text):
                continue
            draft.business_name = _CONJUNCTION_RE.sub("", line.text)
            page.claim("businessName", line)
            return line
        return None

    def _extract_invoice_number(self, page: _Page, draft: _Draft) -> None:
        for label in page.lines[: self.config.header_scan_lines]:
            if draft.invoice_no:
                break
            if not page.is_free(label) or not _INVOICE_LABEL_RE.search(label.text):
                continue
            same_line = _LONG_NUMBER_RE.search(label.text)
            if same_line:
                draft.invoice_no = same_line.group(0)
                page.claim("invoiceNo", label)
                continue
            value = next(
                (
                    line
                    for line in page.free()
                    if line.index != label.index
                    and is_numerical(line.text)
                    and len(line.text) >= 7
                    and abs(line.mid_y - label.mid_y) < self.config.label_window
                    and line.center_x > label.center_x
                ),
                None,
            )
            if value is not None:
                draft.invoice_no = value.text
                page.claim("invoiceNo", label, value)

        if draft.invoice_no:
            return
        for line in page.free():
            match = _ORDER_RE.search(line.text)
            if match:
                draft.invoice_no = match.group(1)
                page.claim("invoiceNo", line)
                return

    def _extract_date(self, page: _Page, draft: _Draft) -> None:
        for label in page.lines[: self.config.header_scan_lines]:
            if "Invoice Date" not in label.text:
                continue
            low = label.mid_y - 20
            high = label.mid_y + self.config.proximity_range
            for line in page.free():
                match = _SHORT_DATE_RE.search(line.text)
                if match and low < line.mid_y < high:
                    draft.invoice_date = match.group(0)
                    page.claim("invoiceDate", line)
                    return

        for line in page.lines[: self.config.date_scan_lines]:
            if not page.is_free(line) or not _DATE_LABEL_RE.search(line.text):
                continue
            for pattern in _DATE_FORMATS:
                match = pattern.search(line.text)
                if match:
                    draft.invoice_date = match.group(0).strip()
                    page.claim("invoiceDate", line)
                    return
            below = page.next_line(line)
            if below is None or not page.is_free(below):
                continue
            for pattern in _DATE_FORMATS[:2]:
                if pattern.fullmatch(below.text):
                    draft.invoice_date = below.text.strip()
                    page.claim("invoiceDate", line, below)
                    return

    def _extract_address(self, page: _Page, draft: _Draft, name_line: Line) -> None:
        end = next(
            (line.index for line in page.lines if "Delivery Note" in line.text),
            len(page.lines),
        )
        start = name_line.index + 1
        stop = min(end, start + self.config.address_max_lines)
        parts: list[Line] = []
        for line in page.lines[start:stop]:
            if _ITEM_LIKE_RE.match(line.text) or _METADATA_RE.search(line.text):
                break
            if is_barcode(line.text):
                break
            if not page.is_free(line) or page.is_ignored(line):
                continue
            if any(noise in line.text for noise in self.config.address_noise):
                continue
            if len(line.text) > 5:
                parts.append(line)
        if parts:
            draft.business_address = ", ".join(line.text for line in parts)
            page.claim("businessAddress", *parts)

    # -- payment, promotions, fees -----------------------------------------

    def _detail_rules(self, page: _Page) -> list[Rule[Line]]:
        window = self.config.label_window

        def delivery(line: Line) -> _Match:
            key, _, value = line.text.partition(":")
            return _Match((key.strip(), value.strip() or line.text), (line,))

        def payment(line: Line) -> _Match | None:
            value = next(
                (
                    other
                    for other in page.free()
                    if other.index != line.index
                    and not is_numerical(other.text)
                    and len(other.text) > 3
                    and abs(other.mid_y - line.mid_y) < window
                    and other.center_x > line.center_x
                ),
                None,
            )
            if value is None:
                below = page.next_line(line)
                if (
                    below is not None
                    and page.is_free(below)
                    and not is_numerical(below.text)
                    and len(below.text) > 3
                    and abs(below.mid_y - line.mid_y) < window
                ):
                    value = below
            if value is None:
                return None
            return _Match(value.text, (line, value))

        def promotion(line: Line) -> _Match:
            name_match = _PROMO_NAME_RE.search(line.text)
            name = name_match.group(1) if name_match else ""
            value = next(
                (
                    other
                    for other in page.free()
                    if other.index != line.index
                    and _CURRENCY_RE.match(other.text)
                    and abs(other.mid_y - line.mid_y) < window
                    and other.center_x > line.center_x
                ),
                None,
            )
            amount = float(value.text) if value is not None else 0.0
            if value is None or amount <= 0:
                return _Match((name, None), (line,))
            return _Match((name, Fee(f"Discount ({name})", -amount)), (line, value))

        def fee(line: Line) -> _Match | None:
            is_delivery = bool(_DELIVERY_WORD_RE.search(line.text))
            consumed: tuple[Line, ...] = (line,)
            amount: float | None = None
            same_line = _TRAILING_AMOUNT_RE.search(line.text)
            if same_line:
                amount = float(same_line.group(1))
            else:
                following = page.lines[line.index + 1 : line.index + 4]
                value = next(
                    (
                        other
                        for other in following
                        if page.is_free(other)
                        and page.in_price_column(other)
                        and is_numerical(other.text)
                    ),
                    None,
                )
                if value is not None and _amount(value.text) is not None:
                    amount = _amount(value.text)
                    consumed = (line, value)
            if "free" in line.text.lower():
                amount = 0.0
            if amount is None:
                return None
            return _Match(Fee(line.text, amount, is_delivery), consumed)

        return [
            Rule(
                "deliveryDetails",
                lambda line: any(label in line.text for label in _DELIVERY_LABELS),
                delivery,
            ),
            Rule(
                "paymentMethod",
                lambda line: bool(_PAYMENT_RE.search(line.text)) and len(line.text) < 15,
                payment,
            ),
            Rule("promotions", lambda line: bool(_PROMO_RE.search(line.text)), promotion),
            Rule("fees", lambda line: bool(_FEE_RE.search(line.text)), fee),
        ]

    def _extract_details_and_fees(self, page: _Page, draft: _Draft) -> None:
        rules = self._detail_rules(page)
        for line in page.lines:
            if not page.is_free(line):
                continue
            hits = apply_rules(rules, line)
            if not hits:
                continue
            hit = hits[0]
            match: _Match = hit.value
            if hit.name == "deliveryDetails":
                key, value = match.value
                draft.delivery_details[key] = value
            elif hit.name == "paymentMethod":
                draft.payment_method = match.value
            elif hit.name == "promotions":
                name, discount = match.value
                if name:
                    draft.promotions = name
                if discount is not None:
                    draft.fees.append(discount)
            else:
                draft.fees.append(match.value)
            page.claim(hit.name, *match.lines)

    # -- items -------------------------------------------------------------

    def _find_pricing(self, page: _Page, near: Line) -> tuple[Line, float, float] | None:
        for line in page.free():
            if line.index == near.index or not page.in_price_column(line):
                continue
            if abs(line.mid_y - near.mid_y) > self.config.item_window:
                continue
            match = _PRICING_RE.search(line.text)
            if match:
                return line, float(match.group(1)), float(match.group(2))
        return None

    def _find_item_total(
        self, page: _Page, pricing: Line, exclude: set[int]
    ) -> Line | None:
        for line in page.free():
            if line.index in exclude or line.index == pricing.index:
                continue
            if not is_numerical(line.text) or is_barcode(line.text):
                continue
            if not page.in_price_column(line):
                continue
            gap = abs(line.mid_y - pricing.mid_y)
            if 5 < gap <= self.config.item_window:
                return line
        return None

    def _build_item(
        self,
        page: _Page,
        description: Line,
        anchors: tuple[Line, ...],
        sku: str = "",
    ) -> LineItem | None:
        pricing = self._find_pricing(page, description)
        if pricing is None:
            return None
        pricing_line, quantity, unit_price = pricing
        exclude = {line.index for line in anchors} | {description.index}
        total_line = self._find_item_total(page, pricing_line, exclude)
        total = _amount(total_line.text) if total_line is not None else None
        if not total and quantity > 0 and unit_price > 0:
            total = round(quantity * unit_price, 2)

        consumed = [*anchors, description, pricing_line]
        if total_line is not None:
            consumed.append(total_line)
        page.claim("items", *consumed)
        return LineItem(
            description=description.text,
            quantity=quantity,
            unit_price=unit_price,
            total_price=total or 0.0,
            sku=sku,
        )

    def _extract_barcode_items(self, page: _Page, draft: _Draft) -> None:
        for barcode in [line for line in page.free() if is_barcode(line.text)]:
            if not page.is_free(barcode):
                continue
            description = next(
                (
                    line
                    for line in page.free()
                    if not is_numerical(line.text)
                    and not is_barcode(line.text)
                    and not _PRICING_RE.search(line.text)
                    and page.in_description_column(line)
                    and 0 < line.mid_y - barcode.mid_y <= self.config.item_window
                ),
                None,
            )
            if description is None:
                continue
            item = self._build_item(page, description, (barcode,), sku=barcode.text)
            if item is not None:
                draft.items.append(item)

    def _extract_described_items(self, page: _Page, draft: _Draft) -> None:
        for line in page.lines:
            if not page.is_free(line) or page.is_ignored(line):
                continue
            if is_numerical(line.text) or is_barcode(line.text):
                continue
            if _PRICING_RE.search(line.text) or not page.in_description_column(line):
                continue
            item = self._build_item(page, line, ())
            if item is not None:
                draft.items.append(item)

    def _reclassify_fee_items(self, draft: _Draft) -> None:
        kept: list[LineItem] = []
        for item in draft.items:
            if _FEE_RE.search(item.description):
                draft.fees.append(
                    Fee(
                        item.description,
                        item.total_price,
                        bool(_DELIVERY_WORD_RE.search(item.description)),
                    )
                )
            else:
                kept.append(item)
        draft.items = kept

    # -- totals ------------------------------------------------------------

    def _labelled_amount(
        self, page: _Page, line: Line, upper_bound: float
    ) -> tuple[float, tuple[Line, ...]] | None:
        value = _last_amount(line.text)
        consumed: tuple[Line, ...] = (line,)
        if not value or value < 0.01:
            below = page.next_line(line)
            if below is not None and page.is_free(below):
                match = _PRICE_LINE_RE.match(below.text)
                if match:
                    value = _amount(match.group(1))
                    consumed = (line, below)
        if value is None or not 0 < value < upper_bound:
            return None
        return value, consumed

    def _extract_tax(self, page: _Page, draft: _Draft) -> None:
        for line in page.lines:
            if not page.is_free(line) or not _TAX_RE.search(line.text):
                continue
            found = self._labelled_amount(page, line, 10000)
            if found is not None:
                draft.tax, consumed = found
                page.claim("tax", *consumed)
                return

    def _extract_printed_totals(self, page: _Page, draft: _Draft) -> None:
        for line in page.lines:
            if not page.is_free(line):
                continue
            if _SUBTOTAL_RE.search(line.text):
                if draft.printed_subtotal:
                    continue
                found = self._labelled_amount(page, line, 1_000_000)
                if found is not None:
                    draft.printed_subtotal, consumed = found
                    page.claim("subtotal", *consumed)
            elif _TOTAL_RE.search(line.text) and not draft.printed_total:
                found = self._labelled_amount(page, line, 1_000_000)
                if found is not None:
                    draft.printed_total, consumed = found
                    page.claim("total", *consumed)

    def _look_ahead(self, page: _Page, line: Line) -> list[Line]:
        following = page.lines[line.index + 1 : line.index + 6]
        return [
            other
            for other in following
            if page.is_free(other) and not _SKIP_RE.search(other.text)
        ]

    @staticmethod
    def _price(line: Line) -> float | None:
        match = _PRICE_LINE_RE.match(line.text)
        if not match:
            return None
        value = _amount(match.group(1))
        return value if value is not None and 0 < value < 100000 else None

    def _extract_fallback_items(self, page: _Page, draft: _Draft) -> None:
        for line in page.lines:
            if not page.is_free(line) or page.is_ignored(line):
                continue
            if _SKIP_RE.search(line.text):
                continue

            simple = _SIMPLE_ITEM_RE.match(line.text)
            if simple:
                quantity = int(simple.group(1)) or 1
                description = simple.group(2).strip()
                amount = _amount(simple.group(3)) if simple.group(3) else None
                consumed = [line]
                if not amount:
                    for other in self._look_ahead(page, line):
                        amount = self._price(other)
                        if amount:
                            consumed.append(other)
                            break
                if amount and len(description) > 2:
                    draft.items.append(
                        LineItem(description, quantity, round(amount / quantity, 2), amount)
                    )
                    page.claim("items", *consumed)
                continue

            if _CAPS_PRODUCT_RE.match(line.text) and 5 < len(line.text) < 40:
                quantity = 1
                amount = None
                consumed = [line]
                for other in self._look_ahead(page, line):
                    if re.fullmatch(r"\d", other.text):
                        quantity = int(other.text) or 1
                        consumed.append(other)
                        continue
                    price = self._price(other)
                    if price and amount is None:
                        amount = price
                        consumed.append(other)
                if amount:
                    draft.items.append(
                        LineItem(line.text, quantity, round(amount / quantity, 2), amount)
                    )
                    page.claim("items", *consumed)

    # -- reconciliation ----------------------------------------------------

    @staticmethod
    def _reconcile(draft: _Draft, raw_text: str) -> Receipt:
        items = tuple(
            replace(item, total_price=round(item.quantity * item.unit_price, 2))
            if item.quantity > 0 and item.unit_price > 0
            else item
            for item in draft.items
        )
        subtotal = round(sum(item.total_price for item in items), 2)
        fee_total = sum(fee.amount for fee in draft.fees)
        return Receipt(
            business_name=draft.business_name,
            business_address=draft.business_address,
            invoice_no=draft.invoice_no,
            invoice_date=draft.invoice_date,
            delivery_details=tuple(draft.delivery_details.items()),
            items=items,
            fees=tuple(draft.fees),
            subtotal=subtotal,
            tax=draft.tax,
            total=round(subtotal + fee_total + draft.tax, 2),
            printed_subtotal=draft.printed_subtotal,
            printed_total=draft.printed_total,
            payment_method=draft.payment_method,
            promotions=draft.promotions,
            raw_text=raw_text,
        )
