"""Result shapes returned by the parsers.

Every field has an empty default so a parser that finds nothing still
returns a fully populated document. ``to_dict`` renders the camelCase
wire format stored in the analysis cache and returned by the API.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ModelSpecs:
    """Nameplate specifications printed on a water meter."""

    q3: str = ""
    q3_q1_ratio: str = ""
    pn: str = ""
    meter_class: str = ""
    multipliers: tuple[str, ...] = ()
    max_temp: str = ""
    orientation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "q3": self.q3,
            "q3_q1_ratio": self.q3_q1_ratio,
            "pn": self.pn,
            "class": self.meter_class,
            "multipliers": list(self.multipliers),
            "maxTemp": self.max_temp,
            "orientation": self.orientation,
        }


@dataclass(frozen=True)
class UtilityBill:
    manufacturer: str = ""
    standard: str = ""
    model_specs: ModelSpecs = field(default_factory=ModelSpecs)
    serial_number: str = ""
    main_reading: str = ""

    kind = "utility"

    def to_dict(self) -> dict[str, Any]:
        return {
            "manufacturer": self.manufacturer,
            "serialNumber": self.serial_number,
            "standard": self.standard,
            "modelSpecs": self.model_specs.to_dict(),
            "mainReading": self.main_reading,
        }


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: float = 0
    unit_price: float = 0.0
    total_price: float = 0.0
    sku: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "description": self.description,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "totalPrice": self.total_price,
        }


@dataclass(frozen=True)
class Fee:
    description: str
    amount: float = 0.0
    is_delivery: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "amount": self.amount,
            "isDelivery": self.is_delivery,
        }


@dataclass(frozen=True)
class Receipt:
    business_name: str = ""
    business_address: str = ""
    invoice_no: str = ""
    invoice_date: str = ""
    delivery_details: tuple[tuple[str, str], ...] = ()
    items: tuple[LineItem, ...] = ()
    fees: tuple[Fee, ...] = ()
    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    printed_subtotal: float = 0.0
    printed_total: float = 0.0
    payment_method: str = ""
    promotions: str = ""
    raw_text: str = ""

    kind = "receipt"

    def to_dict(self) -> dict[str, Any]:
        return {
            "businessName": self.business_name,
            "businessAddress": self.business_address,
            "invoiceNo": self.invoice_no,
            "invoiceDate": self.invoice_date,
            "deliveryDetails": dict(self.delivery_details),
            "items": [item.to_dict() for item in self.items],
            "fees": [fee.to_dict() for fee in self.fees],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "printedSubtotal": self.printed_subtotal,
            "printedTotal": self.printed_total,
            "paymentMethod": self.payment_method,
            "promotions": self.promotions,
            "rawText": self.raw_text,
        }


@dataclass(frozen=True)
class TableCell:
    content: str
    row_index: int
    column_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "rowIndex": self.row_index,
            "columnIndex": self.column_index,
        }


@dataclass(frozen=True)
class Table:
    row_count: int = 0
    column_count: int = 0
    cells: tuple[TableCell, ...] = ()

    def grid(self) -> list[list[str]]:
        """Dense ``row_count x column_count`` matrix of cell contents."""
        rows = [[""] * self.column_count for _ in range(self.row_count)]
        for cell in self.cells:
            rows[cell.row_index][cell.column_index] = cell.content
        return rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowCount": self.row_count,
            "columnCount": self.column_count,
            "cells": [cell.to_dict() for cell in self.cells],
        }


@dataclass(frozen=True)
class StatementPeriod:
    start_date: str
    end_date: str

    def to_dict(self) -> dict[str, str]:
        return {"startDate": self.start_date, "endDate": self.end_date}


@dataclass(frozen=True)
class GenericDocument:
    tables: tuple[Table, ...] = ()
    key_value_pairs: tuple[tuple[str, str], ...] = ()
    raw_text: str = ""
    customer_name: str = ""
    mobile_number: str = ""
    statement_date: str = ""
    statement_period: StatementPeriod | None = None

    kind = "generic"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": [table.to_dict() for table in self.tables],
            "keyValuePairs": [
                {"key": key, "value": value} for key, value in self.key_value_pairs
            ],
            "rawText": self.raw_text,
            "customerName": self.customer_name,
            "mobileNumber": self.mobile_number,
            "statementDate": self.statement_date,
            "statementPeriod": (self.statement_period or StatementPeriod("", "")).to_dict(),
        }


Reading = float | int | str


@dataclass(frozen=True)
class CustomerReadings:
    name: str
    readings: dict[str, Reading] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "readings": dict(self.readings)}


@dataclass(frozen=True)
class CustomerRecords:
    customers: tuple[CustomerReadings, ...] = ()
    headers: tuple[str, ...] = ()
    raw_table: Table | None = None

    kind = "customer-consumption"

    def to_dict(self) -> dict[str, Any]:
        return {
            "customers": [customer.to_dict() for customer in self.customers],
            "headers": list(self.headers),
            "rawTable": (self.raw_table or Table()).to_dict(),
        }


ExtractedDocument = UtilityBill | Receipt | GenericDocument | CustomerRecords
