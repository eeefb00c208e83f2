"""Heuristic normalization of recognized receipt text into structured fields."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional, Sequence

from rapidfuzz import fuzz, process, utils

from heybills.models.receipt import ExtractedField, ReceiptFields, ReceiptLineItem
from heybills.ocr.engine import Recognition

logger = logging.getLogger(__name__)

_UNIT_TOKENS = {
    "lb",
    "lbs",
    "kg",
    "g",
    "oz",
    "ea",
    "each",
    "ct",
    "pk",
    "pc",
    "pcs",
    "l",
    "ml",
    "gal",
    "pack",
    "doz",
}
_CURRENCY_SIGNS = {"$": "USD", "£": "GBP", "€": "EUR", "¥": "JPY", "₹": "INR"}
_CURRENCY_CODES = ("USD", "CAD", "AUD", "GBP", "EUR", "JPY", "INR")

_AMOUNT_PATTERN = re.compile(r"(?<![\d.,])[$£€¥₹]?\s?(\d{1,3}(?:,\d{3})+|\d+)\.(\d{2})(?![\d])")
_TOTAL_KEYWORD = re.compile(r"\b(grand total|total|amount due|balance due)\b", re.IGNORECASE)
_NOT_TOTAL = re.compile(r"sub\s*-?\s*total|\btax\b|saving|discount|\bitems?\b", re.IGNORECASE)
_SUBTOTAL = re.compile(r"sub\s*-?\s*total", re.IGNORECASE)
_TAX = re.compile(r"\btax\b", re.IGNORECASE)

_PHONE = re.compile(r"\(?\d{3}\)?[-\s.]\d{3}[-\s.]\d{4}")
_ADDRESS = re.compile(r"\d+\s+[NSEW]?\.?\s*\w+\s+(st|ave|rd|blvd|dr|ln|way|hwy)\b", re.IGNORECASE)
_HEADER = re.compile(r"\b(receipt|invoice|bill|order)\b", re.IGNORECASE)
_HEADER_FOOTER = re.compile(
    r"\b(receipt|invoice|thank you|visit|welcome|total|subtotal|tax|discount|change|cash|tender|"
    r"visa|mastercard|amex|debit|credit|balance|approved)\b|www\.|\.com|@",
    re.IGNORECASE,
)

_DATE_CANDIDATES = (
    re.compile(r"\b\d{4}-\d{1,2}-\d{1,2}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
    re.compile(r"\b\d{1,2}-\d{1,2}-\d{2,4}\b"),
    re.compile(r"\b\d{1,2}\.\d{1,2}\.\d{4}\b"),
    re.compile(r"\b[A-Za-z]{3,9}\.? \d{1,2},? \d{4}\b"),
    re.compile(r"\b\d{1,2} [A-Za-z]{3,9}\.? \d{4}\b"),
)
DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%m-%d-%y",
    "%d.%m.%Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%B %d, %Y",
    "%B %d %Y",
    "%d %b %Y",
    "%d %B %Y",
)

# Ordered keyword rules; merchant rules are consulted before item rules.
_MERCHANT_CATEGORIES = (
    ("Food & Dining", re.compile(r"restaurant|cafe|coffee|pizza|burger|food|deli|bistro|grill|bakery")),
    ("Transportation", re.compile(r"\bgas\b|fuel|shell|chevron|exxon|\bbp\b|mobil|parking|uber|lyft")),
    ("Shopping", re.compile(r"grocery|market|store|walmart|target|costco|mart")),
    ("Healthcare", re.compile(r"pharmacy|cvs|walgreens|hospital|clinic|medical|dental")),
)
_ITEM_CATEGORIES = (("Food & Dining", re.compile(r"food|drink|meal|coffee|tea|soda|bread|milk|sandwich")),)


@dataclass(frozen=True)
class _Line:
    text: str
    confidence: Optional[float]


def _normalize_line(line: str) -> str:
    return re.sub(r"\s+", " ", line).strip()


def _amounts(text: str) -> List[float]:
    values: List[float] = []
    for match in _AMOUNT_PATTERN.finditer(text):
        whole = match.group(1).replace(",", "")
        values.append(float(f"{whole}.{match.group(2)}"))
    return values


def _trailing_amount(text: str) -> Optional[float]:
    amounts = _amounts(text)
    if not amounts or not re.search(r"\d\.\d{2}\s*[A-Z]?\s*$", text):
        return None
    return amounts[-1]


def is_likely_merchant_name(line: str) -> bool:
    if _PHONE.search(line) or _ADDRESS.search(line) or _HEADER.search(line):
        return False
    if len(line) < 3 or len(line) > 50:
        return False
    if _amounts(line):
        return False
    return bool(re.search(r"[A-Za-z]", line))


class ReceiptParser:
    """Turn a ``Recognition`` into ``ReceiptFields``.

    Every extracted field keeps the confidence the engine reported for the line it came from
    (or the page confidence when no line data exists). Nothing is defaulted: a field that
    cannot be found is ``None``.
    """

    def __init__(
        self,
        *,
        known_merchants: Iterable[str] = (),
        fuzzy_threshold: float = 85.0,
        today: Callable[[], date] = date.today,
        merchant_search_lines: int = 5,
    ) -> None:
        self._known_merchants = [name for name in known_merchants if name]
        self._fuzzy_threshold = fuzzy_threshold
        self._today = today
        self._merchant_search_lines = merchant_search_lines

    def parse(self, recognition: Recognition) -> ReceiptFields:
        lines = self._lines(recognition)
        if not lines:
            return ReceiptFields()

        merchant = self._extract_merchant(lines)
        items = self._extract_items(lines)
        return ReceiptFields(
            merchant=merchant,
            purchase_date=self._extract_date(lines),
            total=self._extract_total(lines),
            subtotal=self._extract_labelled(lines, _SUBTOTAL),
            tax=self._extract_labelled(lines, _TAX, exclude=_SUBTOTAL),
            currency=self._detect_currency(recognition.text),
            category=self._categorize(merchant.value if merchant else None, items),
            items=items,
        )

    @staticmethod
    def _lines(recognition: Recognition) -> List[_Line]:
        if recognition.lines:
            raw = [(line.text, line.confidence) for line in recognition.lines]
        else:
            raw = [(text, recognition.confidence) for text in recognition.text.splitlines()]
        lines: List[_Line] = []
        for text, confidence in raw:
            normalized = _normalize_line(text)
            if normalized:
                lines.append(
                    _Line(normalized, confidence if confidence is not None else recognition.confidence)
                )
        return lines

    def _extract_merchant(self, lines: Sequence[_Line]) -> Optional[ExtractedField[str]]:
        head = lines[: self._merchant_search_lines]
        if self._known_merchants:
            best: Optional[tuple[float, str, _Line]] = None
            for line in head:
                match = process.extractOne(
                    line.text,
                    self._known_merchants,
                    scorer=fuzz.WRatio,
                    processor=utils.default_process,
                    score_cutoff=self._fuzzy_threshold,
                )
                if match and (best is None or match[1] > best[0]):
                    best = (match[1], match[0], line)
            if best is not None:
                score, name, line = best
                logger.debug("Merchant matched %r -> %r score=%.1f", line.text, name, score)
                return ExtractedField[str](value=name, confidence=line.confidence, source_line=line.text)

        for line in head:
            if is_likely_merchant_name(line.text):
                return ExtractedField[str](
                    value=line.text.strip(" -*#:"), confidence=line.confidence, source_line=line.text
                )
        return None

    def _extract_date(self, lines: Sequence[_Line]) -> Optional[ExtractedField[date]]:
        today = self._today()
        for line in lines:
            for pattern in _DATE_CANDIDATES:
                for match in pattern.finditer(line.text):
                    parsed = self._parse_date(match.group().replace(".,", ",").replace(". ", " "))
                    if parsed is None:
                        continue
                    if parsed > today:
                        logger.debug("Skipping future date %s in %r", parsed, line.text)
                        continue
                    return ExtractedField[date](value=parsed, confidence=line.confidence, source_line=line.text)
        return None

    @staticmethod
    def _parse_date(token: str) -> Optional[date]:
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(token, fmt).date()
            except ValueError:
                continue
        return None

    def _extract_total(self, lines: Sequence[_Line]) -> Optional[ExtractedField[float]]:
        candidates: List[tuple[float, _Line]] = []
        for index, line in enumerate(lines):
            if not _TOTAL_KEYWORD.search(line.text) or _NOT_TOTAL.search(line.text):
                continue
            amounts = _amounts(line.text)
            source = line
            if not amounts and index + 1 < len(lines):
                source = lines[index + 1]
                amounts = _amounts(source.text)
            candidates.extend((amount, source) for amount in amounts)

        if not candidates:
            candidates = [(amount, line) for line in lines for amount in _amounts(line.text)]
        if not candidates:
            return None
        amount, line = max(candidates, key=lambda candidate: candidate[0])
        return ExtractedField[float](value=amount, confidence=line.confidence, source_line=line.text)

    @staticmethod
    def _extract_labelled(
        lines: Sequence[_Line], label: re.Pattern[str], *, exclude: Optional[re.Pattern[str]] = None
    ) -> Optional[float]:
        for line in lines:
            if label.search(line.text) and not (exclude and exclude.search(line.text)):
                amount = _trailing_amount(line.text)
                if amount is not None:
                    return amount
        return None

    @staticmethod
    def _detect_currency(text: str) -> Optional[str]:
        for sign, code in _CURRENCY_SIGNS.items():
            if sign in text:
                return code
        for code in _CURRENCY_CODES:
            if re.search(rf"\b{code}\b", text):
                return code
        return None

    def _extract_items(self, lines: Sequence[_Line]) -> List[ReceiptLineItem]:
        items: List[ReceiptLineItem] = []
        for line in lines:
            if _HEADER_FOOTER.search(line.text) or _PHONE.search(line.text):
                continue
            item = self._parse_line(line)
            if item is not None:
                items.append(item)
        return items

    def _parse_line(self, line: _Line) -> Optional[ReceiptLineItem]:
        amount_match = re.search(r"[$£€]?\s?(\d+\.\d{2})\s*[A-Z]?\s*$", line.text)
        if not amount_match:
            return None
        price = float(amount_match.group(1))
        head = line.text[: amount_match.start()].strip()
        if not head or not re.search(r"[A-Za-z]{2}", head):
            return None

        name, quantity, unit = self._extract_quantity_and_name(head)
        unit_price = None
        if quantity and quantity > 0:
            unit_price = round(price / quantity, 2)

        return ReceiptLineItem(
            raw_text=line.text,
            name=name or head,
            quantity=quantity,
            unit=unit,
            unit_price=unit_price,
            total_price=price,
            confidence=line.confidence,
        )

    @staticmethod
    def _extract_quantity_and_name(prefix: str) -> tuple[str, Optional[float], Optional[str]]:
        tokens = prefix.split()
        quantity: Optional[float] = None
        unit: Optional[str] = None

        if tokens and re.fullmatch(r"\d+(?:\.\d+)?[xX]?|[xX]\d+", tokens[0]):
            quantity = float(tokens.pop(0).strip("xX"))
            if tokens and tokens[0].lower() in _UNIT_TOKENS:
                unit = tokens.pop(0)

        if tokens and tokens[-1].lower() in _UNIT_TOKENS:
            unit = tokens.pop(-1)

        if quantity is None and len(tokens) > 1 and re.fullmatch(r"\d+(?:\.\d+)?", tokens[-1]):
            quantity = float(tokens.pop(-1))

        return " ".join(tokens).strip(), quantity, unit

    @staticmethod
    def _categorize(merchant: Optional[str], items: Sequence[ReceiptLineItem]) -> Optional[str]:
        if merchant:
            lowered = merchant.lower()
            for category, pattern in _MERCHANT_CATEGORIES:
                if pattern.search(lowered):
                    return category
        item_text = " ".join(item.name.lower() for item in items)
        for category, pattern in _ITEM_CATEGORIES:
            if item_text and pattern.search(item_text):
                return category
        return None


__all__ = ["DATE_FORMATS", "ReceiptParser", "is_likely_merchant_name"]
