"""Fakes and builders shared across the test suite."""

from __future__ import annotations

import io
from typing import Callable, List, Optional

from PIL import Image
from sqlalchemy import func, select

from heybills.db.models import ReceiptRecord
from heybills.db.repository import session_scope
from heybills.ocr.engine import Recognition, RecognizedLine

RECEIPT_LINES = [
    ("Corner Coffee", 0.95),
    ("123 Main St", 0.9),
    ("03/15/2024", 0.92),
    ("Latte 4.50", 0.9),
    ("Bagel 3.25", 0.88),
    ("Subtotal 7.75", 0.9),
    ("Tax 0.62", 0.9),
    ("Total $8.37", 0.94),
    ("Visa 4111 1111 1111 1111", 0.8),
]


def make_recognition(lines=RECEIPT_LINES) -> Recognition:
    recognized = tuple(RecognizedLine(text=text, confidence=confidence) for text, confidence in lines)
    confidences = [confidence for _, confidence in lines]
    return Recognition(
        text="\n".join(text for text, _ in lines),
        confidence=sum(confidences) / len(confidences) if confidences else None,
        lines=recognized,
    )


def count_receipts(user_id: str) -> int:
    with session_scope() as session:
        return session.scalar(select(func.count(ReceiptRecord.id)).where(ReceiptRecord.user_id == user_id)) or 0


def png_bytes(size=(32, 32)) -> bytes:
    image = Image.new("RGB", size, color=(255, 255, 255))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeEngine:
    """Recognition stand-in returning a fixed result (or raising ``error``)."""

    def __init__(self, recognition: Optional[Recognition] = None, error: Optional[BaseException] = None):
        self.recognition = recognition or make_recognition()
        self.error = error
        self.calls = 0
        self.closed = False

    def recognize(self, image) -> Recognition:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.recognition

    def close(self) -> None:
        self.closed = True


class CountingFactory:
    """Engine factory that records how often construction ran."""

    def __init__(self, build: Optional[Callable[[], object]] = None) -> None:
        self.calls = 0
        self.engines: List[FakeEngine] = []
        self._build = build

    def __call__(self):
        self.calls += 1
        if self._build is not None:
            return self._build()
        engine = FakeEngine()
        self.engines.append(engine)
        return engine


class ScriptedGenerator:
    """Generator returning a canned reply and recording the prompts it saw."""

    def __init__(self, reply: str = "You spent $8.37 at Corner Coffee.", error: Optional[BaseException] = None):
        self.reply = reply
        self.error = error
        self.messages: List[list] = []

    def generate(self, messages, *, timeout: float) -> str:
        self.messages.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.reply


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
