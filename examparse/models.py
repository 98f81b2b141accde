"""
Data Models
===========
Pydantic models for exam structure detection and the extraction outcome.
All output models are serializable to JSON for the record-creation workflow.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


# ─── Detector Configuration ───────────────────────────────────────────────────


@dataclass(frozen=True)
class DetectorConfig:
    """Tunable detection thresholds. Immutable for one detection run."""

    # Line reconstruction
    y_tolerance: float = 3.0
    gap_x_threshold: float = 4.0

    # Heading scoring
    left_margin_percentile: int = 25
    header_footer_percent: float = 7.0
    score_threshold: int = 2
    context_window: int = 120
    confidence_span: float = 8.0

    # Header/footer suppression
    header_footer_band_lines: int = 3
    header_footer_frequency: float = 0.6

    # Token graph
    max_tokens: int = 150

    debug: bool = False


# ─── Enums ────────────────────────────────────────────────────────────────────


class TokenKind(str, Enum):
    """Kind of question token."""
    MAIN = "main"
    SUB = "sub"


class AcquisitionStage(str, Enum):
    """Stages of the acquisition pipeline, in escalation order."""
    TEXT_LAYER = "text_layer"
    FLAT_FALLBACK = "flat_fallback"
    LAYOUT_FALLBACK = "layout_fallback"
    OCR_QUICK = "ocr_quick"
    OCR_DEEP = "ocr_deep"
    DONE = "done"


# ─── Geometry Models ──────────────────────────────────────────────────────────


class GlyphRun(BaseModel):
    """
    One renderer-reported run of text with its baseline origin.
    ``y`` grows upward: a larger y is higher on the page.
    """
    model_config = {"frozen": True}

    text: str
    page: int = Field(ge=1)
    x: float = 0.0
    y: float = 0.0
    width: Optional[float] = Field(
        default=None,
        description="Run width when known; gaps are then measured edge to edge",
    )


class Line(BaseModel):
    """A reading-order line. ``x`` is None for geometry-free text."""
    model_config = {"frozen": True}

    text: str
    page: int = Field(ge=1)
    x: Optional[float] = None
    y: float = 0.0

    @property
    def has_geometry(self) -> bool:
        return self.x is not None


# ─── Token Models ─────────────────────────────────────────────────────────────


class Position(BaseModel):
    """A place in the document where a token was seen."""
    page: int
    x: float
    y: float


class Token(BaseModel):
    """A recognized main or sub question identifier."""
    token: str = Field(description='Normalized key, e.g. "3" or "3a"')
    kind: TokenKind
    parent: Optional[str] = None
    page: int = Field(ge=1)
    x: float = 0.0
    y: float = 0.0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    points: Optional[int] = None
    duplicate_positions: list[Position] = Field(default_factory=list)

    @property
    def sort_key(self) -> tuple[int, float, float]:
        """Document order: page ascending, top to bottom, left to right."""
        return (self.page, -self.y, self.x)

    @property
    def letter(self) -> Optional[str]:
        if self.kind == TokenKind.SUB and self.parent:
            return self.token[len(self.parent):]
        return None


class DetectionResult(BaseModel):
    """
    Ordered detection output.

    ``tokens`` is the presentation sequence in document order. ``mains`` holds
    every accepted main token, including mains represented by their subs.
    """
    tokens: list[Token] = Field(default_factory=list)
    mains: list[Token] = Field(default_factory=list)
    debug: Optional[dict[str, Any]] = None

    @property
    def keys(self) -> list[str]:
        return [t.token for t in self.tokens]

    @property
    def is_empty(self) -> bool:
        return not self.tokens


# ─── Course Metadata ──────────────────────────────────────────────────────────


class ScoreTraceEntry(BaseModel):
    """One scored candidate considered by the course detector."""
    field: str
    value: str
    score: int
    reasons: list[str] = Field(default_factory=list)


class CourseMetadata(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    score_trace: list[ScoreTraceEntry] = Field(default_factory=list)


# ─── Validation Report ────────────────────────────────────────────────────────


class DetectionReport(BaseModel):
    """Post-detection validation report."""
    total_tokens: int = 0
    main_count: int = 0
    sub_count: int = 0
    missing_main_numbers: list[int] = Field(default_factory=list)
    tokens_without_points: list[str] = Field(default_factory=list)
    tokens_with_duplicates: list[str] = Field(default_factory=list)
    low_confidence_tokens: list[str] = Field(default_factory=list)
    total_points: int = 0

    @computed_field
    @property
    def points_coverage(self) -> float:
        if self.total_tokens == 0:
            return 0.0
        with_points = self.total_tokens - len(self.tokens_without_points)
        return round(with_points / self.total_tokens * 100, 2)


# ─── Extraction Outcome ───────────────────────────────────────────────────────


class QuestionRecord(BaseModel):
    """
    A question as handed to the record-creation workflow. Derived 1:1 from a
    Token; status, theme, tags and comments are managed by the caller.
    """
    id: str
    number: str
    points: int = 0
    page: Optional[int] = None
    confidence: Optional[int] = Field(
        default=None, ge=0, le=100,
        description="Detection confidence 0-100",
    )
    status: str = "not-started"
    theme: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    comments: list[dict] = Field(default_factory=list)

    @classmethod
    def from_token(cls, token: Token) -> "QuestionRecord":
        if token.kind == TokenKind.SUB and token.parent:
            record_id = f"q-{token.parent}-{token.letter}"
        else:
            record_id = f"q-{token.token}"
        return cls(
            id=record_id,
            number=token.token,
            points=token.points or 0,
            page=token.page,
            confidence=round(token.confidence * 100),
        )


class ExtractionOutcome(BaseModel):
    """
    Complete output of a parse run.
    This is the top-level JSON structure returned to the caller.
    """
    file_name: str
    exam_date: Optional[date] = None
    course_code: Optional[str] = None
    course_name: Optional[str] = None
    year: Optional[int] = None
    total_points: int = 0
    questions: list[QuestionRecord] = Field(default_factory=list)
    extracted_text: str = ""
    stage: Optional[AcquisitionStage] = None
    validation: Optional[DetectionReport] = None
    debug: Optional[dict[str, Any]] = None

    @computed_field
    @property
    def question_count(self) -> int:
        return len(self.questions)
