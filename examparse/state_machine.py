"""
Acquisition State Machine
=========================
Explicit state machine that escalates through text acquisition strategies
until one of them yields question tokens:

    TEXT_LAYER → FLAT_FALLBACK → LAYOUT_FALLBACK → OCR_QUICK → OCR_DEEP → DONE

Each stage runs only when every previous stage produced zero tokens.
OCR_DEEP is opt-in. Every stage feeds the same QuestionDetector rule set.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from PIL import Image

from .detector import QuestionDetector
from .lines import lines_from_text
from .models import AcquisitionStage, DetectionResult, GlyphRun, Line
from .ocr import DEFAULT_LANG, OcrEngine, OcrUnavailableError
from .token_graph import merge_results

logger = logging.getLogger(__name__)

# Text layers shorter than this are treated as scanned pages for the
# purpose of picking the course-metadata text.
MIN_TEXT_LAYER_CHARS = 50

STAGE_ORDER = [
    AcquisitionStage.TEXT_LAYER,
    AcquisitionStage.FLAT_FALLBACK,
    AcquisitionStage.LAYOUT_FALLBACK,
    AcquisitionStage.OCR_QUICK,
    AcquisitionStage.OCR_DEEP,
]


class Document(Protocol):
    page_count: int

    def glyph_runs(self, page: int) -> list[GlyphRun]: ...

    def word_runs(self, page: int) -> list[GlyphRun]: ...

    def page_text(self, page: int) -> str: ...

    def render(self, page: int, dpi: int = 150) -> Image.Image: ...


@dataclass
class AcquisitionOptions:
    """Per-parse acquisition settings."""
    deep_ocr: bool = False
    ocr_lang: str = DEFAULT_LANG
    quick_ocr_pages: int = 20
    deep_ocr_pages: int = 100
    quick_ocr_dpi: int = 150
    deep_ocr_dpi: int = 300
    layout_pages: int = 10
    layout_y_tolerance_factor: float = 2.0
    time_budget: Optional[float] = None


@dataclass
class AcquisitionResult:
    """Outcome of one acquisition run."""
    result: DetectionResult
    stage: Optional[AcquisitionStage] = None
    attempted: list[AcquisitionStage] = field(default_factory=list)
    full_text: str = ""
    debug: dict[str, Any] = field(default_factory=dict)


class AcquisitionStateMachine:
    """
    Drives one document through the acquisition stages.

    Args:
        document: Text-layer collaborator (``PdfDocument`` or compatible).
        options: Acquisition settings.
        detector: Shared QuestionDetector; a default one is built if omitted.
        ocr_factory: Callable(lang) returning an OCR engine with
            ``initialize()`` and ``recognize(image, lang)``.
        progress_callback: Optional callable(current_page, total_pages).
    """

    def __init__(
        self,
        document: Document,
        options: Optional[AcquisitionOptions] = None,
        detector: Optional[QuestionDetector] = None,
        ocr_factory: Optional[Callable[[str], Any]] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        self.document = document
        self.options = options or AcquisitionOptions()
        self.detector = detector or QuestionDetector()
        self.ocr_factory = ocr_factory or OcrEngine
        self.progress_callback = progress_callback

        self.state = AcquisitionStage.TEXT_LAYER
        self.attempted: list[AcquisitionStage] = []
        self.results: list[DetectionResult] = []
        self.stage_debug: dict[str, Any] = {}

        self._handlers = {
            AcquisitionStage.TEXT_LAYER: self._run_text_layer,
            AcquisitionStage.FLAT_FALLBACK: self._run_flat_fallback,
            AcquisitionStage.LAYOUT_FALLBACK: self._run_layout_fallback,
            AcquisitionStage.OCR_QUICK: self._run_ocr_quick,
            AcquisitionStage.OCR_DEEP: self._run_ocr_deep,
        }
        self._page_texts: Optional[dict[int, str]] = None
        self._ocr_texts: dict[int, str] = {}
        self._ocr = None
        self._ocr_unavailable = False
        self._deadline: Optional[float] = None

    # ─── Driver ───────────────────────────────────────────────────────────

    def run(self) -> AcquisitionResult:
        if self.options.time_budget is not None:
            self._deadline = time.monotonic() + self.options.time_budget

        produced: Optional[AcquisitionStage] = None
        self.state = AcquisitionStage.TEXT_LAYER
        try:
            while self.state != AcquisitionStage.DONE:
                if self._expired():
                    logger.warning(
                        f"Time budget exhausted before {self.state.value}; stopping"
                    )
                    break

                logger.info(f"Acquisition stage: {self.state.value}")
                self.attempted.append(self.state)
                result = self._handlers[self.state]()
                if result.debug is not None:
                    self.stage_debug[self.state.value] = result.debug

                if not result.is_empty:
                    logger.info(
                        f"Stage {self.state.value} produced {len(result.tokens)} tokens"
                    )
                    self.results.append(result)
                    produced = self.state
                    self.state = AcquisitionStage.DONE
                else:
                    self.state = self._next_stage(self.state)
        finally:
            self._close_ocr()

        merged = merge_results(self.results)
        return AcquisitionResult(
            result=merged,
            stage=produced,
            attempted=list(self.attempted),
            full_text=self._best_full_text(),
            debug={
                "attempted": [s.value for s in self.attempted],
                "stages": self.stage_debug,
            },
        )

    def _next_stage(self, stage: AcquisitionStage) -> AcquisitionStage:
        idx = STAGE_ORDER.index(stage)
        for candidate in STAGE_ORDER[idx + 1:]:
            if candidate == AcquisitionStage.OCR_DEEP and not self.options.deep_ocr:
                continue
            return candidate
        return AcquisitionStage.DONE

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _progress(self, current: int, total: int):
        if self.progress_callback:
            self.progress_callback(current, total)

    # ─── Text Layer Stages ────────────────────────────────────────────────

    def _page_range(self, limit: Optional[int] = None) -> range:
        count = self.document.page_count
        if limit is not None:
            count = min(count, limit)
        return range(1, count + 1)

    def _run_text_layer(self) -> DetectionResult:
        pages: dict[int, list[GlyphRun]] = {}
        texts: dict[int, str] = {}
        total = self.document.page_count
        for page in self._page_range():
            if self._expired():
                logger.warning(f"Time budget exhausted at page {page}")
                break
            try:
                pages[page] = self.document.glyph_runs(page)
                texts[page] = self.document.page_text(page)
            except Exception as e:
                logger.warning(f"Skipping unreadable page {page}: {e}")
                continue
            self._progress(page, total)

        self._page_texts = texts
        return self.detector.detect_pages(pages, page_count=total)

    def _run_flat_fallback(self) -> DetectionResult:
        texts = {p: t for p, t in (self._page_texts or {}).items() if t.strip()}
        if not texts:
            logger.info("No text layer content for flat fallback")
            return DetectionResult()
        return self.detector.detect_flat(texts)

    def _run_layout_fallback(self) -> DetectionResult:
        relaxed = dataclasses.replace(
            self.detector.config,
            y_tolerance=self.detector.config.y_tolerance
            * self.options.layout_y_tolerance_factor,
        )
        layout_detector = QuestionDetector(relaxed)

        pages: dict[int, list[GlyphRun]] = {}
        for page in self._page_range(self.options.layout_pages):
            if self._expired():
                break
            try:
                pages[page] = self.document.word_runs(page)
            except Exception as e:
                logger.warning(f"Skipping page {page} in layout fallback: {e}")
        if not any(pages.values()):
            return DetectionResult()
        return layout_detector.detect_pages(pages, page_count=len(pages))

    # ─── OCR Stages ───────────────────────────────────────────────────────

    def _ocr_engine(self):
        """Initialize the OCR engine once per parse; None when unavailable."""
        if self._ocr is not None or self._ocr_unavailable:
            return self._ocr
        try:
            engine = self.ocr_factory(self.options.ocr_lang)
            engine.initialize()
        except OcrUnavailableError as e:
            logger.warning(f"OCR unavailable, skipping OCR stages: {e}")
            self._ocr_unavailable = True
            return None
        self._ocr = engine
        return engine

    def _close_ocr(self):
        if self._ocr is not None and hasattr(self._ocr, "close"):
            self._ocr.close()
        self._ocr = None

    def _ocr_page(self, engine, page: int, dpi: int) -> Optional[str]:
        image = None
        try:
            image = self.document.render(page, dpi=dpi)
            return engine.recognize(image, self.options.ocr_lang)
        except Exception as e:
            logger.warning(f"OCR failed for page {page}: {e}")
            return None
        finally:
            if image is not None:
                image.close()

    def _run_ocr_quick(self) -> DetectionResult:
        engine = self._ocr_engine()
        if engine is None:
            return DetectionResult()

        pages = self._page_range(self.options.quick_ocr_pages)
        lines: list[Line] = []
        result = DetectionResult()
        for page in pages:
            if self._expired():
                logger.warning(f"Time budget exhausted during OCR at page {page}")
                break
            text = self._ocr_page(engine, page, self.options.quick_ocr_dpi)
            self._progress(page, len(pages))
            if not text:
                continue
            self._ocr_texts[page] = text
            lines.extend(lines_from_text(text, page))

            result = self.detector.detect_lines(lines, page_count=page)
            if not result.is_empty:
                logger.info(f"OCR quick found tokens after page {page}; stopping early")
                break
        return result

    def _run_ocr_deep(self) -> DetectionResult:
        engine = self._ocr_engine()
        if engine is None:
            return DetectionResult()

        pages = self._page_range(self.options.deep_ocr_pages)
        lines: list[Line] = []
        texts: dict[int, str] = {}
        for page in pages:
            if self._expired():
                logger.warning(f"Time budget exhausted during deep OCR at page {page}")
                break
            text = self._ocr_page(engine, page, self.options.deep_ocr_dpi)
            self._progress(page, len(pages))
            if not text:
                continue
            texts[page] = text
            lines.extend(lines_from_text(text, page))

        if texts:
            self._ocr_texts = texts
        return self.detector.detect_lines(lines, page_count=len(pages))

    # ─── Full Text ────────────────────────────────────────────────────────

    def _best_full_text(self) -> str:
        layer = "\n".join(
            self._page_texts[p] for p in sorted(self._page_texts or {})
        ).strip()
        if len(layer) >= MIN_TEXT_LAYER_CHARS or not self._ocr_texts:
            return layer
        return "\n".join(self._ocr_texts[p] for p in sorted(self._ocr_texts)).strip()
