"""OCR engine lifecycle and receipt extraction."""

from .engine import OcrEngine, Recognition, RecognizedLine, TesseractEngine, build_engine_factory
from .lifecycle import CooldownPolicy, EngineHandle, EngineLifecycleManager, EngineState
from .parser import ReceiptParser
from .pipeline import ExtractionPipeline
from .worker import ReprocessWorker

__all__ = [
    "CooldownPolicy",
    "EngineHandle",
    "EngineLifecycleManager",
    "EngineState",
    "ExtractionPipeline",
    "OcrEngine",
    "ReceiptParser",
    "Recognition",
    "RecognizedLine",
    "ReprocessWorker",
    "TesseractEngine",
    "build_engine_factory",
]
