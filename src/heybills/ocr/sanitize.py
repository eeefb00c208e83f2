"""Masking of payment identifiers in recognized receipt text."""

from __future__ import annotations

import re

from heybills.ocr.engine import Recognition, RecognizedLine

_CARD_PATTERN = re.compile(r"(?<!\d)\d(?:[ -]?\d){11,18}(?!\d)")


def mask_card_numbers(value: str) -> str:
    """Keep the first and last four digits of card-like digit runs."""

    def _mask(match: re.Match[str]) -> str:
        digits = re.sub(r"\D", "", match.group())
        if len(digits) < 12:
            return match.group()
        return digits[:4] + "*" * (len(digits) - 8) + digits[-4:]

    return _CARD_PATTERN.sub(_mask, value)


def sanitize_recognition(recognition: Recognition) -> Recognition:
    """Return a copy of ``recognition`` with card numbers masked in the text and every line."""

    return Recognition(
        text=mask_card_numbers(recognition.text),
        confidence=recognition.confidence,
        lines=tuple(
            RecognizedLine(text=mask_card_numbers(line.text), confidence=line.confidence)
            for line in recognition.lines
        ),
    )


__all__ = ["mask_card_numbers", "sanitize_recognition"]
