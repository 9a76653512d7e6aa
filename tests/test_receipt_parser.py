"""Tests for the receipt/invoice parser."""

import pytest

from docextract.extraction.models import Receipt
from docextract.extraction.receipt_parser import ReceiptParser
from docextract.utils.config import ReceiptParserConfig


def _reconciles(receipt: Receipt) -> bool:
    expected = round(
        round(sum(item.total_price for item in receipt.items), 2)
        + sum(fee.amount for fee in receipt.fees)
        + receipt.tax,
        2,
    )
    return receipt.total == expected


class TestBarcodeItems:
    def setup_method(self) -> None:
        self.parser = ReceiptParser()

    def test_barcode_item(self, barcode_receipt_pages) -> None:
        receipt = self.parser.parse(barcode_receipt_pages)
        assert len(receipt.items) == 1
        assert receipt.items[0].to_dict() == {
            "sku": "5012345678900",
            "description": "Milk 2L",
            "quantity": 2.0,
            "unitPrice": 1.5,
            "totalPrice": 3.0,
        }
        assert receipt.subtotal == 3.0
        assert receipt.total == 3.0

    def test_barcode_lines_all_claimed_by_items(self, barcode_receipt_pages) -> None:
        _, claims = self.parser.parse_with_claims(barcode_receipt_pages)
        assert claims.by_field() == {"items": [0, 1, 2, 3]}

    def test_single_column_capture(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("5012345678900", 200, 100),
                ("Milk 2L", 200, 180),
                ("2 x 1.50", 200, 260),
                ("3.00", 200, 340),
            )
        )
        assert [item.sku for item in receipt.items] == ["5012345678900"]
        assert receipt.items[0].total_price == 3.0


class TestHeader:
    def setup_method(self) -> None:
        self.parser = ReceiptParser()

    def test_number_right_of_label_and_date_below(self, make_pages) -> None:
        receipt, claims = self.parser.parse_with_claims(
            make_pages(
                ("Corner Shop Ltd", 300, 100),
                ("Invoice No", 300, 200),
                ("1234567", 900, 205),
                ("Date", 300, 300),
                ("12/03/2024", 300, 340),
            )
        )
        assert receipt.business_name == "Corner Shop Ltd"
        assert receipt.invoice_no == "1234567"
        assert receipt.invoice_date == "12/03/2024"
        assert claims.by_field()["invoiceNo"] == [1, 2]
        assert claims.by_field()["invoiceDate"] == [3, 4]

    def test_order_number_labelled_date_and_payment_below(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("Corner Shop Ltd", 300, 100),
                ("Order 98765", 300, 200),
                ("Invoice Date", 300, 300),
                ("05-Mar-2024", 300, 340),
                ("Payment Method", 300, 500),
                ("CASH", 300, 540),
            )
        )
        assert receipt.invoice_no == "98765"
        assert receipt.invoice_date == "05-Mar-2024"
        assert receipt.payment_method == "CASH"

    def test_address_stops_at_item_line(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("Corner Shop Ltd", 300, 100),
                ("Riverside Mall", 300, 180),
                ("Nairobi Kenya", 300, 240),
                ("2 Bread", 300, 320),
                ("Kisumu Road", 300, 400),
            )
        )
        assert receipt.business_address == "Riverside Mall, Nairobi Kenya"


class TestFullReceipt:
    def setup_method(self) -> None:
        self.parser = ReceiptParser()

    def test_header(self, full_receipt_pages) -> None:
        receipt = self.parser.parse(full_receipt_pages)
        assert receipt.business_name == "Green Grocers Ltd"
        assert receipt.business_address == "Market Street, Nairobi"
        assert receipt.invoice_no == "1234567"
        assert receipt.invoice_date == "12/03/2024"

    def test_items_fees_and_tax(self, full_receipt_pages) -> None:
        receipt = self.parser.parse(full_receipt_pages)
        assert [(i.description, i.quantity, i.unit_price, i.total_price) for i in receipt.items] == [
            ("Bread 600g", 1.0, 2.5, 2.5),
            ("Eggs Tray", 2.0, 4.0, 8.0),
        ]
        assert len(receipt.fees) == 1
        assert receipt.fees[0].amount == 1.5
        assert receipt.fees[0].is_delivery
        assert receipt.tax == 1.6
        assert receipt.payment_method == "M-PESA"

    def test_total_reconciled(self, full_receipt_pages) -> None:
        receipt = self.parser.parse(full_receipt_pages)
        assert receipt.subtotal == 10.5
        assert receipt.total == 13.6
        assert receipt.printed_total == 13.6
        assert _reconciles(receipt)

    def test_raw_text_keeps_every_line(self, full_receipt_pages) -> None:
        receipt = self.parser.parse(full_receipt_pages)
        assert len(receipt.raw_text.splitlines()) == 16
        assert receipt.raw_text.startswith("Green Grocers Ltd\n")

    def test_no_line_feeds_two_fields(self, full_receipt_pages) -> None:
        _, claims = self.parser.parse_with_claims(full_receipt_pages)
        owners = claims.by_field()
        claimed = [index for indexes in owners.values() for index in indexes]
        assert len(claimed) == len(set(claimed))
        assert owners["tax"] == [11, 12]
        assert owners["total"] == [13]

    def test_deterministic(self, full_receipt_pages) -> None:
        assert self.parser.parse(full_receipt_pages) == self.parser.parse(full_receipt_pages)


class TestDetails:
    def setup_method(self) -> None:
        self.parser = ReceiptParser()

    def test_promotion_becomes_negative_fee(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("Fresh Mart Ltd", 300, 50),
                ("PROMO (SAVE10)", 300, 200),
                ("1.00", 1600, 200),
            )
        )
        assert receipt.promotions == "SAVE10"
        assert [(fee.description, fee.amount) for fee in receipt.fees] == [
            ("Discount (SAVE10)", -1.0)
        ]
        assert receipt.total == -1.0

    def test_delivery_details(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("Fresh Mart Ltd", 300, 50),
                ("Order 555", 300, 100),
                ("Apartment: Block C", 300, 200),
                ("Delivery Area: Westlands", 300, 300),
            )
        )
        assert receipt.to_dict()["deliveryDetails"] == {
            "Apartment": "Block C",
            "Delivery Area": "Westlands",
        }

    def test_free_delivery(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(("Fresh Mart Ltd", 300, 50), ("Delivery Fee Free", 300, 200))
        )
        assert [(fee.amount, fee.is_delivery) for fee in receipt.fees] == [(0.0, True)]

    def test_fee_amount_in_price_column(self, make_pages) -> None:
        receipt = self.parser.parse(
            make_pages(
                ("Fresh Mart Ltd", 300, 50),
                ("Order 555", 300, 100),
                ("Service Charge", 300, 200),
                ("25.00", 1600, 210),
            )
        )
        assert [(fee.description, fee.amount) for fee in receipt.fees] == [
            ("Service Charge", 25.0)
        ]


class TestFallbackItems:
    def test_quantity_description_price(self, make_pages) -> None:
        receipt = ReceiptParser().parse(
            make_pages(
                ("Cafe Aroma", 300, 50),
                ("2 Coffee Latte 7.00", 300, 100),
                ("VELVEX LEMON", 300, 200),
                ("2", 300, 230),
                ("6.40", 300, 260),
            )
        )
        assert receipt.business_name == "Cafe Aroma"
        assert [(i.description, i.quantity, i.unit_price, i.total_price) for i in receipt.items] == [
            ("Coffee Latte", 2, 3.5, 7.0),
            ("VELVEX LEMON", 2, 3.2, 6.4),
        ]
        assert receipt.subtotal == 13.4
        assert _reconciles(receipt)


class TestEdgeCases:
    @pytest.mark.parametrize("pages", [None, [], [{"lines": []}], {"pages": 3}])
    def test_empty_input(self, pages) -> None:
        receipt = ReceiptParser().parse(pages)
        assert receipt == Receipt()
        assert receipt.to_dict()["items"] == []

    def test_column_boundary_from_config(self, make_pages) -> None:
        parser = ReceiptParser(ReceiptParserConfig(price_column_min_x=500, description_column_max_x=500))
        receipt = parser.parse(
            make_pages(
                ("5012345678900", 200, 100),
                ("Milk 2L", 200, 180),
                ("2 x 1.50", 600, 260),
                ("3.00", 600, 340),
            )
        )
        assert receipt.items[0].total_price == 3.0
