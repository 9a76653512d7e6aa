"""Generic document and customer-consumption parsers.

Layout-structured results (``content``, ``tables``, ``keyValuePairs``)
are mapped directly. Flat recognition output is turned into a table by
grouping lines into rows on their vertical midpoint. Customer name,
mobile number and statement dates are then pulled from the raw text.
"""

import datetime
import re
from collections.abc import Iterable
from typing import Any

from docextract.ocr.lines import Line, normalize_pages
from docextract.utils.config import GenericParserConfig
from docextract.utils.logger import get_logger

from .models import (
    CustomerReadings,
    CustomerRecords,
    GenericDocument,
    Reading,
    StatementPeriod,
    Table,
    TableCell,
)

logger = get_logger(__name__)

_NAME = r"([A-Z][A-Za-z \t.\-]{2,60})"
_NAME_PATTERNS = (
    re.compile(r"Customer\s*Name\s*[:\-]?\s*\n?\s*" + _NAME, re.IGNORECASE),
    re.compile(r"Customer\s*[:\-]?\s*\n?\s*" + _NAME, re.IGNORECASE),
    re.compile(r"Name\s*[:\-]\s*" + _NAME, re.IGNORECASE),
)
_PHONE = r"(\+?\d[\d\- \t()]{6,}\d)"
_PHONE_RE = re.compile(_PHONE)
_PHONE_LABEL_RE = re.compile(r"mobile|phone|tel", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobile\s*(?:Number)?\s*[:\-]?\s*" + _PHONE, re.IGNORECASE)
_DATE_TRIPLE_RE = re.compile(
    r"(\d{1,2})(?:st|nd|rd|th)?[\s,/\-]+(\d{1,2})[\s,/\-]+(\d{4})"
)
_STATEMENT_DATE_RE = re.compile(
    r"Date\s*of\s*Statement\s*[:\-]?\s*([\s\S]{0,60})", re.IGNORECASE
)
_STATEMENT_PERIOD_RE = re.compile(
    r"Statement\s*Period\s*[:\-]?\s*([\s\S]{0,200})", re.IGNORECASE
)
_LEADING_NUMBER_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")


def _content(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("content")
    return value.strip() if isinstance(value, str) else ""


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def parse_table(raw: Any, max_dimension: int = 1000) -> Table | None:
    """Build a :class:`Table` from a layout table dict.

    Declared counts are widened to cover every cell, so a cell with an
    out-of-range index never breaks :meth:`Table.grid`. Neither dimension
    grows past ``max_dimension``; cells beyond it are dropped.
    """
    if not isinstance(raw, dict):
        return None
    cells: list[TableCell] = []
    for cell in _as_list(raw.get("cells")):
        if not isinstance(cell, dict):
            continue
        row_index = _as_int(cell.get("rowIndex"))
        column_index = _as_int(cell.get("columnIndex"))
        if row_index >= max_dimension or column_index >= max_dimension:
            logger.debug("Skipping table cell at (%d, %d)", row_index, column_index)
            continue
        cells.append(
            TableCell(
                content=_content(cell.get("content")),
                row_index=row_index,
                column_index=column_index,
            )
        )
    row_count = max([_as_int(raw.get("rowCount"))] + [c.row_index + 1 for c in cells])
    column_count = max(
        [_as_int(raw.get("columnCount"))] + [c.column_index + 1 for c in cells]
    )
    return Table(
        row_count=min(row_count, max_dimension),
        column_count=min(column_count, max_dimension),
        cells=tuple(cells),
    )


def _row_texts(row: list[Line]) -> list[str]:
    return [line.text for line in sorted(row, key=lambda line: line.center_x)]


def group_rows(lines: Iterable[Line], threshold: float) -> list[list[str]]:
    """Group midY-sorted lines into rows, each ordered left to right.

    A new row starts whenever a line sits ``threshold`` or more below the
    line before it.
    """
    rows: list[list[str]] = []
    current: list[Line] = []
    for line in lines:
        if current and abs(line.mid_y - current[-1].mid_y) >= threshold:
            rows.append(_row_texts(current))
            current = []
        current.append(line)
    if current:
        rows.append(_row_texts(current))
    return rows


def rows_to_table(rows: list[list[str]]) -> Table:
    cells = tuple(
        TableCell(content=text, row_index=r, column_index=c)
        for r, row in enumerate(rows)
        for c, text in enumerate(row)
    )
    return Table(
        row_count=len(rows),
        column_count=max((len(row) for row in rows), default=0),
        cells=cells,
    )


def parse_reading(value: str) -> Reading:
    """Read a consumption cell as a number, keeping the text if it is not one."""
    cleaned = re.sub(r"[^\d.\-]", "", value)
    match = _LEADING_NUMBER_RE.match(cleaned)
    if not match:
        return value
    number = match.group(0)
    if "." in number:
        return float(number)
    return int(number)


def _iso_date(day: str, month: str, year: str) -> str | None:
    try:
        return datetime.date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def _date_triples(text: str, limit: int) -> list[str]:
    found: list[str] = []
    for match in _DATE_TRIPLE_RE.finditer(text):
        iso = _iso_date(match.group(1), match.group(2), match.group(3))
        if iso:
            found.append(iso)
        if len(found) >= limit:
            break
    return found


def extract_contact(raw_text: str) -> tuple[str, str]:
    """Return ``(customer_name, mobile_number)`` found in ``raw_text``.

    A name that OCR ran together with a phone label is split at the label,
    and any number on the right side becomes the mobile number.
    """
    name = ""
    mobile = ""
    for pattern in _NAME_PATTERNS:
        match = pattern.search(raw_text)
        if match:
            name = match.group(1).strip()
            break

    label = _PHONE_LABEL_RE.search(name)
    if label:
        left, right = name[: label.start()].strip(), name[label.start():]
        name = left or name
        number = _PHONE_RE.search(right)
        if number:
            mobile = re.sub(r"\s+", "", number.group(1))

    if not mobile:
        match = _MOBILE_RE.search(raw_text) or _PHONE_RE.search(raw_text)
        if match:
            mobile = re.sub(r"\s+", "", match.group(1))
    return name, mobile


def extract_statement_dates(raw_text: str) -> tuple[str, StatementPeriod | None]:
    """Return the statement date and period as ISO dates.

    Labelled values win. Otherwise the first unlabelled date triple is the
    statement date and the first two make the period.
    """
    statement_date = ""
    period: StatementPeriod | None = None

    labelled = _STATEMENT_DATE_RE.search(raw_text)
    if labelled:
        dates = _date_triples(labelled.group(1), 1)
        if dates:
            statement_date = dates[0]

    labelled = _STATEMENT_PERIOD_RE.search(raw_text)
    if labelled:
        dates = _date_triples(labelled.group(1), 2)
        if len(dates) == 2:
            period = StatementPeriod(dates[0], dates[1])

    if not statement_date or period is None:
        dates = _date_triples(raw_text, 3)
        if not statement_date and dates:
            statement_date = dates[0]
        if period is None and len(dates) >= 2:
            period = StatementPeriod(dates[0], dates[1])
    return statement_date, period


class GenericDocumentParser:
    """Parser for inventory lists, customer records and other tabular documents.

    Args:
        config: Row grouping threshold for flat input.
    """

    def __init__(self, config: GenericParserConfig | None = None) -> None:
        self.config = config or GenericParserConfig()

    def _flat_rows(self, pages: Any) -> list[list[str]]:
        return group_rows(normalize_pages(pages, min_length=1), self.config.row_threshold)

    def parse(self, result: Any) -> GenericDocument:
        """Parse a layout result or flat pages into a :class:`GenericDocument`."""
        tables: list[Table] = []
        pairs: list[tuple[str, str]] = []
        raw_text = ""

        if isinstance(result, dict):
            for raw in _as_list(result.get("tables")):
                table = parse_table(raw, self.config.max_table_dimension)
                if table is not None:
                    tables.append(table)
            for pair in _as_list(result.get("keyValuePairs")):
                if not isinstance(pair, dict) or not pair.get("key") or not pair.get("value"):
                    continue
                pairs.append((_content(pair["key"]), _content(pair["value"])))
            raw_text = result.get("content") or ""
            if not isinstance(raw_text, str):
                raw_text = ""
            if not raw_text and result.get("pages"):
                raw_text = "\n".join(
                    line.text for line in normalize_pages(result["pages"], min_length=1)
                )
        elif result:
            rows = self._flat_rows(result)
            if rows:
                tables.append(rows_to_table(rows))
            raw_text = "\n".join(" ".join(row) for row in rows)

        name, mobile = extract_contact(raw_text) if raw_text else ("", "")
        statement_date, period = (
            extract_statement_dates(raw_text) if raw_text else ("", None)
        )
        logger.info(
            "Generic parse: %d tables, %d key-value pairs, %d chars of text",
            len(tables),
            len(pairs),
            len(raw_text),
        )
        return GenericDocument(
            tables=tuple(tables),
            key_value_pairs=tuple(pairs),
            raw_text=raw_text,
            customer_name=name,
            mobile_number=mobile,
            statement_date=statement_date,
            statement_period=period,
        )

    def parse_customer_records(self, result: Any) -> CustomerRecords:
        """Parse a consumption sheet: header row of periods, one row per customer."""
        raw_table: Table | None = None
        if isinstance(result, dict) and _as_list(result.get("tables")):
            raw_table = parse_table(result["tables"][0], self.config.max_table_dimension)
            rows = raw_table.grid() if raw_table else []
        else:
            pages = result.get("pages") if isinstance(result, dict) else result
            rows = self._flat_rows(pages)
            raw_table = rows_to_table(rows) if rows else None

        if not rows:
            return CustomerRecords(raw_table=raw_table)

        headers = [cell.strip() for cell in rows[0]]
        customers: list[CustomerReadings] = []
        for row in rows[1:]:
            if not row or not row[0].strip():
                continue
            readings: dict[str, Reading] = {}
            for header, value in zip(headers[1:], row[1:]):
                value = value.strip()
                if header and value:
                    readings[header] = parse_reading(value)
            customers.append(CustomerReadings(name=row[0].strip(), readings=readings))

        logger.info(
            "Customer records: %d customers across %d columns",
            len(customers),
            len(headers),
        )
        return CustomerRecords(
            customers=tuple(customers), headers=tuple(headers), raw_table=raw_table
        )
