"""
Exam Parser Engine
==================
Top-level entry point combining text acquisition, question detection, course
metadata detection, validation and output formatting.

Usage:
    engine = ParserEngine(config)
    outcome = engine.parse("path/to/exam.pdf")
    # outcome is an ExtractionOutcome ready for JSON serialization

Architecture:
    PDF → PdfDocument → AcquisitionStateMachine (text layer → fallbacks → OCR)
        → DetectionResult → ValidationEngine
        → CourseMetadataDetector → ExtractionOutcome (JSON)
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .course import detect_course_metadata, detect_exam_date, detect_year
from .detector import QuestionDetector
from .models import DetectorConfig, ExtractionOutcome, QuestionRecord
from .ocr import DEFAULT_LANG, OcrEngine
from .state_machine import AcquisitionOptions, AcquisitionStateMachine, Document
from .text_layer import PdfDocument
from .validator import ValidationEngine

logger = logging.getLogger(__name__)

ENV_VAR = "EXAMPARSE_ENV"
LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
FAILURE_PREFIX = "Failed to extract text:"


@dataclass
class ParserConfig:
    """Configuration for the parser engine."""

    # Detection thresholds
    detector: DetectorConfig = field(default_factory=DetectorConfig)

    # Acquisition
    deep_ocr: bool = False
    ocr_lang: str = DEFAULT_LANG
    tesseract_cmd: Optional[str] = None
    quick_ocr_pages: int = 20
    deep_ocr_pages: int = 100
    layout_pages: int = 10
    quick_ocr_dpi: int = 150
    deep_ocr_dpi: int = 300
    time_budget: Optional[float] = None

    # Output settings
    excerpt_chars: int = 2000
    output_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Debug trace (ignored when EXAMPARSE_ENV=production)
    debug: bool = False

    @property
    def debug_enabled(self) -> bool:
        return self.debug and os.environ.get(ENV_VAR, "").lower() != "production"

    def acquisition_options(self) -> AcquisitionOptions:
        return AcquisitionOptions(
            deep_ocr=self.deep_ocr,
            ocr_lang=self.ocr_lang,
            quick_ocr_pages=self.quick_ocr_pages,
            deep_ocr_pages=self.deep_ocr_pages,
            quick_ocr_dpi=self.quick_ocr_dpi,
            deep_ocr_dpi=self.deep_ocr_dpi,
            layout_pages=self.layout_pages,
            time_budget=self.time_budget,
        )


class ParserEngine:
    """
    Main exam parsing engine.

    Orchestrates the full pipeline:
        1. Text acquisition with escalation (text layer, fallbacks, OCR)
        2. Question structure detection
        3. Validation
        4. Course metadata detection
        5. Output formatting

    Each parse is independent; one engine may be used from several threads.
    """

    def __init__(
        self,
        config: Optional[ParserConfig] = None,
        ocr_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.config = config or ParserConfig()
        self.ocr_factory = ocr_factory or self._default_ocr_factory
        self._setup_logging()

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        # Configure the package logger
        pkg_logger = logging.getLogger("examparse")
        pkg_logger.setLevel(log_level)

        # Console handler
        if not pkg_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
            pkg_logger.addHandler(console)

        # File handler
        if self.config.log_file:
            log_dir = Path(self.config.log_file).parent
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.config.log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
            pkg_logger.addHandler(file_handler)

    def _default_ocr_factory(self, lang: str) -> OcrEngine:
        return OcrEngine(lang=lang, tesseract_cmd=self.config.tesseract_cmd)

    # ─── Entry Points ─────────────────────────────────────────────────────

    def parse(
        self,
        pdf_path: str,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> ExtractionOutcome:
        """
        Parse an exam PDF into its question structure and course metadata.

        Args:
            pdf_path: Path to the PDF file to parse.
            progress_callback: Callback(page_num, total_pages) called per page.

        Returns:
            ExtractionOutcome. Never raises: failures are reported in
            ``extracted_text`` with an empty question list.
        """
        file_name = os.path.basename(pdf_path)
        try:
            if not os.path.exists(pdf_path):
                raise FileNotFoundError(f"PDF not found: {pdf_path}")
            with PdfDocument(pdf_path) as document:
                outcome = self.parse_document(document, file_name, progress_callback)
        except Exception as e:
            logger.error(f"Parse of {file_name} failed: {e}")
            outcome = self._failed_outcome(file_name, e)

        if self.config.output_dir:
            self._save_json(outcome, Path(self.config.output_dir))
        return outcome

    def parse_document(
        self,
        document: Document,
        file_name: str,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> ExtractionOutcome:
        """Run the pipeline on an already-opened document."""
        start_time = time.time()
        debug = self.config.debug_enabled
        logger.info(f"Starting parse of: {file_name} ({document.page_count} pages)")

        # ── Step 1: Acquisition + detection ───────────────────────────
        detector_config = self.config.detector
        if debug != detector_config.debug:
            detector_config = dataclasses.replace(detector_config, debug=debug)
        machine = AcquisitionStateMachine(
            document,
            options=self.config.acquisition_options(),
            detector=QuestionDetector(detector_config),
            ocr_factory=self.ocr_factory,
            progress_callback=progress_callback,
        )
        acquisition = machine.run()
        result = acquisition.result

        # ── Step 2: Validation ────────────────────────────────────────
        validation = ValidationEngine().validate(result)

        # ── Step 3: Course metadata ───────────────────────────────────
        course = detect_course_metadata(acquisition.full_text, file_name)
        exam_date = detect_exam_date(file_name, acquisition.full_text)

        # ── Step 4: Build outcome ─────────────────────────────────────
        questions = [QuestionRecord.from_token(t) for t in result.tokens]
        outcome = ExtractionOutcome(
            file_name=file_name,
            exam_date=exam_date,
            course_code=course.code,
            course_name=course.name,
            year=detect_year(file_name, exam_date),
            total_points=sum(t.points or 0 for t in result.tokens),
            questions=questions,
            extracted_text=acquisition.full_text[: self.config.excerpt_chars],
            stage=acquisition.stage,
            validation=validation,
        )
        if debug:
            outcome.debug = {
                **acquisition.debug,
                "course_trace": [e.model_dump() for e in course.score_trace],
            }

        elapsed = time.time() - start_time
        logger.info(
            f"Parse complete in {elapsed:.2f}s: "
            f"{len(questions)} questions via "
            f"{acquisition.stage.value if acquisition.stage else 'no stage'}"
        )
        return outcome

    # ─── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _failed_outcome(file_name: str, error: Exception) -> ExtractionOutcome:
        return ExtractionOutcome(
            file_name=file_name,
            year=detect_year(file_name),
            exam_date=detect_exam_date(file_name),
            questions=[],
            extracted_text=f"{FAILURE_PREFIX} {error}",
        )

    @staticmethod
    def output_stem(file_name: str) -> str:
        """Filesystem-safe stem for output files."""
        name = Path(file_name).stem
        clean_name = "".join(c if c.isalnum() or c in "-_" else "_" for c in name)
        return clean_name[:50] or "exam"

    def _save_json(self, outcome: ExtractionOutcome, output_dir: Path):
        """Save the outcome as JSON; a write failure is logged, not raised."""
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            filepath = output_dir / f"{self.output_stem(outcome.file_name)}_parsed.json"
            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(
                    outcome.model_dump(mode="json"), f, indent=2, ensure_ascii=False
                )
            logger.info(f"Saved JSON output: {filepath}")
        except OSError as e:
            logger.error(f"Failed to save JSON: {e}")
