"""Tests for prebuilt-invoice field parsing and total detection."""

from docextract.extraction.structured import (
    build_parsed_fields,
    extract_ids,
    find_amounts,
    find_total_candidate,
    normalize_date,
    parse_driver_response,
    read_field,
)


def _item(description: str, amount: float, quantity: float | None = None) -> dict:
    props = {
        "Description": {"content": description},
        "Amount": {"value": {"amount": amount}},
    }
    if quantity is not None:
        props["Quantity"] = {"value": quantity}
    return {"properties": props}


INVOICE_RESPONSE = [
    {
        "fields": {
            "MerchantName": {"content": "Shop"},
            "InvoiceTotal": {"kind": "currency", "value": {"amount": 110.0}},
            "InvoiceDate": {"content": "2024-03-12"},
            "InvoiceId": {"content": "INV-9"},
            "TotalTax": {"value": {"amount": 10.0}},
            "PaymentMethod": {"content": "M-PESA"},
            "Items": {
                "values": [
                    _item("Widget", 100.0, 2),
                    _item("Delivery charge", 5.0),
                    _item("Promo SAVE", 5.0),
                    _item("Widget", 100.0, 2),
                ]
            },
        }
    }
]


class TestReadField:
    def test_value_precedence(self) -> None:
        assert read_field({"value": {"amount": 3.5}, "content": "3.50"}) == 3.5
        assert read_field({"valueCurrency": {"amount": 2}}) == 2
        assert read_field({"value": "x", "content": "y"}) == "x"
        assert read_field({"valueString": "s", "content": "y"}) == "s"
        assert read_field({"content": "y"}) == "y"
        assert read_field("not a field") is None


class TestParseDriverResponse:
    def setup_method(self) -> None:
        self.parsed = parse_driver_response(INVOICE_RESPONSE)

    def test_fields(self) -> None:
        assert self.parsed.business_name == "Shop"
        assert self.parsed.invoice_date == "2024-03-12"
        assert self.parsed.invoice_id == "INV-9"
        assert self.parsed.ids == {"InvoiceId": "INV-9"}
        assert self.parsed.payment_method == "M-PESA"
        assert self.parsed.tax == 10.0

    def test_total_from_structured_field(self) -> None:
        assert self.parsed.total == 110.0
        assert self.parsed.confidence == "high"
        assert self.parsed.reason == "found field InvoiceTotal"

    def test_items_classified_and_deduplicated(self) -> None:
        assert [line.description for line in self.parsed.items] == ["Widget"]
        assert self.parsed.items[0].quantity == 2.0
        assert [line.description for line in self.parsed.fees] == ["Delivery charge"]
        assert [line.description for line in self.parsed.promotions] == ["Promo SAVE"]

    def test_derived_totals(self) -> None:
        assert self.parsed.subtotal == 100.0
        assert self.parsed.promo_sum == 5.0
        assert self.parsed.computed_total == 110.0
        assert self.parsed.total_after_promotions == 105.0

    def test_wrapped_in_cached_metadata(self) -> None:
        wrapped = {"metadata": {"rawDriverResponse": INVOICE_RESPONSE}}
        assert parse_driver_response(wrapped).total == 110.0

    def test_no_documents(self) -> None:
        parsed = parse_driver_response(None)
        assert parsed.confidence == "none"
        assert parsed.total is None

    def test_total_computed_without_total_field(self) -> None:
        parsed = parse_driver_response(
            {"documents": [{"fields": {"Items": {"values": [_item("Tea", 4.0)]}}}]}
        )
        assert parsed.total == 4.0
        assert parsed.confidence == "medium"
        assert parsed.reason == "computed from items/fees/promos"


class TestExtractIds:
    def test_case_insensitive_keys(self) -> None:
        ids = extract_ids([{"fields": {"invoicenumber": {"content": "77"}}}])
        assert ids == {"InvoiceNumber": "77"}


class TestFindTotalCandidate:
    def test_structured_wins(self) -> None:
        raw = [{"fields": {"Other": {"kind": "currency", "value": {"amount": 42.5}}}}]
        candidate = find_total_candidate(None, "Total 1.00", raw)
        assert (candidate.value, candidate.reason) == (42.5, "found currency-kind value")

    def test_keyword_in_text(self) -> None:
        candidate = find_total_candidate(None, "Amount due: 45.00")
        assert (candidate.value, candidate.confidence) == (45.0, "high")

    def test_largest_number(self) -> None:
        candidate = find_total_candidate(None, "Ref 12 and 300")
        assert (candidate.value, candidate.confidence) == (300.0, "low")

    def test_nothing(self) -> None:
        candidate = find_total_candidate(None, "")
        assert candidate.to_dict() == {
            "value": None,
            "confidence": "none",
            "reason": "no numbers found",
        }


class TestBuildParsedFields:
    def test_falls_back_to_raw_text(self) -> None:
        blob = build_parsed_fields(None, {"rawText": "TOTAL 99.99"})
        assert blob["total"] == 99.99
        assert blob["confidence"] == "high"

    def test_structured_blob(self) -> None:
        blob = build_parsed_fields({"documents": INVOICE_RESPONSE}, {})
        assert blob["total"] == 110.0
        assert blob["invoiceId"] == "INV-9"
        assert blob["fees"] == [{"description": "Delivery charge", "quantity": 1, "amount": 5.0}]

    def test_item_properties_not_a_mapping(self) -> None:
        raw = {"documents": [{"fields": {"Items": {"values": [{"properties": ["Milk"]}]}}}]}
        blob = build_parsed_fields(raw, {})
        assert len(blob["items"]) == 1
        assert blob["items"][0]["description"] == ""

    def test_item_values_not_a_list(self) -> None:
        raw = {"documents": [{"fields": {"Items": {"values": 5}}}]}
        assert build_parsed_fields(raw, {})["items"] == []


class TestHelpers:
    def test_find_amounts(self) -> None:
        assert find_amounts("Paid 1,250.50 of 2000") == [1250.5, 2000.0]
        assert find_amounts("") == []

    def test_normalize_date(self) -> None:
        assert normalize_date("2024-03-12T00:00:00") == "2024-03-12"
        assert normalize_date("12/03/2024") == "2024-03-12"
        assert normalize_date("12-Mar-2024") == "2024-03-12"
        assert normalize_date("someday") == "someday"
