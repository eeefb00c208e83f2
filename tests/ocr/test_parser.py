"""Tests for the heuristic receipt parser."""

from __future__ import annotations

from datetime import date

from heybills.ocr.engine import Recognition
from heybills.ocr.parser import ReceiptParser, is_likely_merchant_name
from tests.helpers import make_recognition


def _plain(text: str, confidence: float = 0.8) -> Recognition:
    return Recognition(text=text, confidence=confidence)


def _parser(**kwargs) -> ReceiptParser:
    kwargs.setdefault("today", lambda: date(2025, 6, 1))
    return ReceiptParser(**kwargs)


def test_parser_extracts_merchant_date_totals_and_items():
    sample_text = """
FRESH MART
123 FOOD AVENUE
02/10/2025 18:45
Milk Whole 1L 3.99
Bananas 2 1.50
Eggs 12 ct 2.99
Subtotal 8.48
Tax 0.60
Total 9.08
""".strip()

    fields = _parser().parse(_plain(sample_text))

    assert fields.merchant.value == "FRESH MART"
    assert fields.purchase_date.value == date(2025, 2, 10)
    assert fields.total.value == 9.08
    assert fields.subtotal == 8.48
    assert fields.tax == 0.60
    assert [item.name for item in fields.items] == ["Milk Whole 1L", "Bananas", "Eggs"]

    bananas = fields.items[1]
    assert bananas.quantity == 2
    assert bananas.unit_price == 0.75
    assert bananas.total_price == 1.50

    eggs = fields.items[2]
    assert eggs.unit == "ct"
    assert eggs.quantity == 12


def test_fields_carry_line_confidence():
    fields = _parser().parse(make_recognition())

    assert fields.merchant.value == "Corner Coffee"
    assert fields.merchant.confidence == 0.95
    assert fields.purchase_date.confidence == 0.92
    assert fields.total.value == 8.37
    assert fields.total.confidence == 0.94
    assert fields.total.source_line == "Total $8.37"
    assert fields.currency == "USD"
    assert fields.category == "Food & Dining"


def test_known_merchants_are_fuzzy_matched():
    recognition = _plain("WALMRT SUPERCENTER\n01/02/2025\nTOTAL 12.00")

    fields = _parser(known_merchants=["Walmart Supercenter", "Target"], fuzzy_threshold=80).parse(recognition)

    assert fields.merchant.value == "Walmart Supercenter"
    assert fields.category == "Shopping"


def test_total_keyword_on_its_own_line_uses_next_line():
    fields = _parser().parse(_plain("Shop\nSubtotal 4.00\nTOTAL\n4.32"))

    assert fields.total.value == 4.32


def test_total_falls_back_to_largest_amount():
    fields = _parser().parse(_plain("Shop\nWidget 2.50\nGadget 11.25"))

    assert fields.total.value == 11.25


def test_future_dates_are_skipped():
    fields = _parser().parse(_plain("Shop\n12/31/2030\n05/20/2025\nTotal 1.00"))

    assert fields.purchase_date.value == date(2025, 5, 20)


def test_missing_fields_are_none_not_defaults():
    fields = _parser().parse(_plain("12.50"))

    assert fields.merchant is None
    assert fields.purchase_date is None
    assert fields.category is None
    assert fields.currency is None


def test_empty_recognition_yields_empty_fields():
    fields = _parser().parse(_plain("   "))

    assert fields.items == []
    assert fields.total is None


def test_merchant_heuristic_rejects_addresses_and_phone_numbers():
    assert is_likely_merchant_name("Blue Bottle")
    assert not is_likely_merchant_name("555-123-4567")
    assert not is_likely_merchant_name("42 Market St")
    assert not is_likely_merchant_name("RECEIPT")
