"""Recognition capability adapter around Tesseract."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import pytesseract
from PIL import Image, ImageFilter, ImageOps
from pytesseract import Output

from heybills.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognizedLine:
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class Recognition:
    """Raw recognition output: page text, page confidence and per-line detail (0..1 scale)."""

    text: str
    confidence: Optional[float] = None
    lines: Tuple[RecognizedLine, ...] = field(default_factory=tuple)


class OcrEngine(Protocol):
    def recognize(self, image: Image.Image) -> Recognition:
        ...

    def close(self) -> None:
        ...


def _parse_rotation_from_osd(osd: str) -> int:
    match = re.search(r"Rotate: (\d+)", osd)
    if not match:
        return 0
    return int(match.group(1)) % 360


def _to_confidence(raw: object) -> Optional[float]:
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if value < 0:
        return None
    return min(value / 100.0, 1.0)


def _mean(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


class TesseractEngine:
    """Tesseract-backed engine; construction fails when the binary or language data is missing."""

    def __init__(
        self,
        *,
        lang: str = "eng",
        page_segmentation_mode: int = 11,
        recognition_timeout: float = 60.0,
    ) -> None:
        self._lang = lang
        self._config = f"--psm {page_segmentation_mode}"
        self._timeout = recognition_timeout
        version = pytesseract.get_tesseract_version()
        available = set(pytesseract.get_languages(config=""))
        missing = [code for code in lang.split("+") if code not in available]
        if missing:
            raise RuntimeError(f"Failed loading language {'+'.join(missing)}; installed: {sorted(available)}")
        logger.info("Tesseract %s ready lang=%s", version, lang)

    def recognize(self, image: Image.Image) -> Recognition:
        processed = self._preprocess(image)
        try:
            data = pytesseract.image_to_data(
                processed,
                lang=self._lang,
                config=self._config,
                output_type=Output.DICT,
                timeout=self._timeout,
            )
        except RuntimeError as exc:
            if "timeout" in str(exc).lower():
                raise TimeoutError(f"Tesseract recognition exceeded {self._timeout}s") from exc
            raise
        return self._group_lines(data)

    def close(self) -> None:
        # Tesseract runs as a subprocess per call; nothing is held between calls.
        logger.debug("Tesseract engine closed")

    def _preprocess(self, image: Image.Image) -> Image.Image:
        processed = ImageOps.grayscale(image)
        processed = ImageOps.autocontrast(processed)
        processed = processed.filter(ImageFilter.MedianFilter(size=3))
        try:
            osd = pytesseract.image_to_osd(processed, lang=self._lang, timeout=self._timeout)
        except pytesseract.TesseractError as exc:
            # Orientation detection fails on sparse images; recognition still works unrotated.
            logger.debug("OSD skipped: %s", exc)
            return processed
        rotation = _parse_rotation_from_osd(osd)
        if rotation:
            processed = processed.rotate(-rotation, expand=True, fillcolor=255)
        return processed

    @staticmethod
    def _group_lines(data: Dict[str, list]) -> Recognition:
        texts = data.get("text", [])
        confs = data.get("conf", [])
        keys = list(zip(data.get("block_num", []), data.get("par_num", []), data.get("line_num", [])))

        grouped: Dict[tuple, Tuple[List[str], List[float]]] = {}
        order: List[tuple] = []
        for idx, raw_text in enumerate(texts):
            word = (raw_text or "").strip()
            if not word:
                continue
            key = keys[idx] if idx < len(keys) else (0, 0, idx)
            if key not in grouped:
                grouped[key] = ([], [])
                order.append(key)
            words, line_confs = grouped[key]
            words.append(word)
            confidence = _to_confidence(confs[idx] if idx < len(confs) else None)
            if confidence is not None:
                line_confs.append(confidence)

        lines = tuple(
            RecognizedLine(text=" ".join(grouped[key][0]), confidence=_mean(grouped[key][1]))
            for key in order
        )
        all_confs = [conf for key in order for conf in grouped[key][1]]
        return Recognition(
            text="\n".join(line.text for line in lines),
            confidence=_mean(all_confs),
            lines=lines,
        )


def build_engine_factory(settings: Settings) -> Callable[[], OcrEngine]:
    """Return the zero-argument constructor the lifecycle manager calls."""

    def _factory() -> OcrEngine:
        return TesseractEngine(
            lang=settings.ocr_lang,
            page_segmentation_mode=settings.ocr_page_segmentation_mode,
            recognition_timeout=settings.ocr_recognition_timeout,
        )

    return _factory


__all__ = [
    "OcrEngine",
    "Recognition",
    "RecognizedLine",
    "TesseractEngine",
    "build_engine_factory",
]
