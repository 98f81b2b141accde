"""
Heading Scorer
==============
Decides whether a line (or an inline fragment) is a question heading.

Every detection strategy (text layer, flat text, layout fallback, OCR) runs
through the same ``HeadingScorer`` and the same rule set below. Each rule is a
named ``Signal`` with a documented weight, so individual signals can be
inspected and tested on their own.

All patterns run on text normalized by ``textnorm.normalize_line``
(diacritics folded, dashes unified): "fråga" is matched as "fraga".
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import DetectorConfig

logger = logging.getLogger(__name__)


# ─── Rule Set ─────────────────────────────────────────────────────────────────

HEADING_WORDS = r"(?:uppgift|problem|fraga|question|sektion|section|q)"

# "Uppgift 3", "3.", "Fraga 12:", "Q4)" at the start of a line
MAIN_HEAD_PATTERN = re.compile(
    rf"^\s*(?P<word>{HEADING_WORDS}\s*)?(?P<num>[1-9]\d?)(?!\d)"
    r"(?P<punct>\s*[.:)](?!\d))?",
    re.IGNORECASE,
)

# "2a)", "Uppgift 2 b.", "3c:"
INLINE_COMBINED_PATTERN = re.compile(
    rf"^\s*(?:{HEADING_WORDS}\s*)?(?P<num>[1-9]\d?)(?!\d)\s*(?P<letter>[a-z])\s*[.:)]",
    re.IGNORECASE,
)

# "a)", "(b)"
SUB_ONLY_PATTERN = re.compile(
    r"^\s*(?:\((?P<paren>[a-z])\)|(?P<bare>[a-z])\))",
    re.IGNORECASE,
)

# "Deluppgifter a-d", "parts a-c"
SUB_RANGE_PATTERN = re.compile(
    r"\b(?:deluppgift(?:er)?|parts?|subtasks?)[^a-z]{0,10}"
    r"(?P<start>[a-z])\s*-\s*(?P<end>[a-z])\b",
    re.IGNORECASE,
)

# "3p vardera", "2 points each"
EACH_POINTS_PATTERN = re.compile(
    r"(?P<n>\d{1,3})\s*p(?:oang|oints?)?\s*(?:vardera|var|each|per\s+del)",
    re.IGNORECASE,
)

FOLLOWED_BY_POINTS_PATTERN = re.compile(
    rf"^\s*(?:{HEADING_WORDS}\s*)?[1-9]\d?(?!\d)\s?p(?:oang|oints?)?\b",
    re.IGNORECASE,
)

CONTEXT_PATTERN = re.compile(
    r"\b(?:poang|points?|task|scenario|svara|beskriv|motivera|forklara|"
    r"berakna|bestam|explain|describe|calculate|derive|prove)\b",
    re.IGNORECASE,
)

DATE_TIME_PATTERN = re.compile(
    r"\b(?:\d{4}-\d{2}-\d{2}|\d{1,2}[./-]\d{1,2}[./-]\d{2,4}|\d{1,2}:\d{2})\b"
)
NUMERIC_RANGE_PATTERN = re.compile(r"\b\d+\s*-\s*\d+\b")
MULTI_NUMBERS_PATTERN = re.compile(r"(?:\b\d+(?:[.,]\d+)?\b[\s,;:]{1,3}){3,}\d+")
PAGE_INDICATOR_PATTERN = re.compile(
    r"\b(?:sida|page)\s*\d+(?:\s*(?:av|of|/)\s*\d+)?\b",
    re.IGNORECASE,
)
SCORE_SUMMARY_PATTERN = re.compile(
    r"\b(?:max(?:imal|imum)?\s*(?:antal\s*)?(?:poang|points)|"
    r"totalt?\s*(?:antal\s*)?(?:poang|points)|betyg\w*)\b",
    re.IGNORECASE,
)


# ─── Signals ──────────────────────────────────────────────────────────────────


class Signal(Enum):
    """
    Named heuristic signals. ``weight`` is added to the candidate score;
    ``excludes`` signals reject the candidate regardless of score.
    """

    HEADING_WORD = ("heading_word", 3)
    TRAILING_PUNCT = ("trailing_punct", 2)
    INLINE_COMBINED = ("inline_combined", 2)
    LEFT_MARGIN = ("left_margin", 2)
    CONTEXT_WORD = ("context_word", 1)
    SEQ_NEXT = ("seq_next", 2)
    SEQ_SAME = ("seq_same", 1)
    SEQ_BACKWARD = ("seq_backward", -2)
    DATE_TIME = ("date_time", -3)
    NUMERIC_RANGE = ("numeric_range", -3)
    MULTI_NUMBERS = ("multi_numbers", -2)
    MARGIN_BAND = ("margin_band", -2)
    EARLY_LARGE = ("early_large", -3)
    VERY_LARGE_FIRST = ("very_large_first", -2)
    FOLLOWED_BY_POINTS = ("followed_by_points", 0, True)
    PAGE_INDICATOR = ("page_indicator", 0, True)
    SCORE_SUMMARY = ("score_summary", 0, True)

    def __init__(self, label: str, weight: int, excludes: bool = False):
        self.label = label
        self.weight = weight
        self.excludes = excludes


# ─── Candidate & Sequence State ───────────────────────────────────────────────


@dataclass
class SequenceState:
    """Numbering context carried across lines of one detection run."""
    last_main: int = 0
    last_main_page: int = 0
    current_main: Optional[int] = None

    @property
    def any_main(self) -> bool:
        return self.current_main is not None

    def accept(self, number: int, page: int):
        self.last_main = max(self.last_main, number)
        self.last_main_page = page
        self.current_main = number


@dataclass
class HeadingCandidate:
    """Outcome of scoring one line."""
    text: str
    main_number: Optional[int] = None
    letter: Optional[str] = None
    sub_only: bool = False
    signals: list[Signal] = field(default_factory=list)
    match_end: int = 0

    @property
    def score(self) -> int:
        return sum(s.weight for s in self.signals)

    @property
    def excluded(self) -> bool:
        return any(s.excludes for s in self.signals)

    @property
    def reasons(self) -> list[str]:
        return [s.label for s in self.signals]

    def has(self, signal: Signal) -> bool:
        return signal in self.signals


# ─── Scorer ───────────────────────────────────────────────────────────────────


class HeadingScorer:
    """
    Scores heading candidates with the shared rule set.

    Geometry signals (left margin, margin band) only fire for lines that
    carry coordinates; geometry-free text relies on the textual signals.
    """

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def evaluate(
        self,
        text: str,
        page: int,
        state: SequenceState,
        next_text: str = "",
        at_left_margin: Optional[bool] = None,
        in_margin_band: bool = False,
    ) -> Optional[HeadingCandidate]:
        """
        Score one normalized line. Returns None when the line has neither a
        leading number nor a sub-letter marker.
        """
        candidate = HeadingCandidate(text=text)

        inline = INLINE_COMBINED_PATTERN.match(text)
        main = MAIN_HEAD_PATTERN.match(text)
        if inline:
            candidate.main_number = int(inline.group("num"))
            candidate.letter = inline.group("letter").lower()
            candidate.match_end = inline.end()
            candidate.signals.append(Signal.INLINE_COMBINED)
            if re.match(rf"^\s*{HEADING_WORDS}\s*\d", text, re.IGNORECASE):
                candidate.signals.append(Signal.HEADING_WORD)
        elif main:
            candidate.main_number = int(main.group("num"))
            candidate.match_end = main.end()
            if main.group("word"):
                candidate.signals.append(Signal.HEADING_WORD)
            if main.group("punct"):
                candidate.signals.append(Signal.TRAILING_PUNCT)
        else:
            sub = SUB_ONLY_PATTERN.match(text)
            if not sub:
                return None
            candidate.letter = (sub.group("paren") or sub.group("bare")).lower()
            candidate.sub_only = True
            candidate.match_end = sub.end()

        if candidate.main_number is not None and FOLLOWED_BY_POINTS_PATTERN.match(text):
            candidate.signals.append(Signal.FOLLOWED_BY_POINTS)

        if at_left_margin:
            candidate.signals.append(Signal.LEFT_MARGIN)

        nearby = f"{text} {next_text}"[: self.config.context_window]
        if CONTEXT_PATTERN.search(nearby):
            candidate.signals.append(Signal.CONTEXT_WORD)

        self._apply_exclusions(candidate, text, in_margin_band)

        if candidate.main_number is not None:
            self._apply_sequence(candidate, page, state)

        return candidate

    def _apply_exclusions(
        self, candidate: HeadingCandidate, text: str, in_margin_band: bool
    ):
        if DATE_TIME_PATTERN.search(text):
            candidate.signals.append(Signal.DATE_TIME)
        elif NUMERIC_RANGE_PATTERN.search(text):
            candidate.signals.append(Signal.NUMERIC_RANGE)
        if MULTI_NUMBERS_PATTERN.search(text):
            candidate.signals.append(Signal.MULTI_NUMBERS)
        if PAGE_INDICATOR_PATTERN.search(text):
            candidate.signals.append(Signal.PAGE_INDICATOR)
        if SCORE_SUMMARY_PATTERN.search(text):
            candidate.signals.append(Signal.SCORE_SUMMARY)
        if in_margin_band:
            candidate.signals.append(Signal.MARGIN_BAND)

    def _apply_sequence(
        self, candidate: HeadingCandidate, page: int, state: SequenceState
    ):
        number = candidate.main_number
        if state.last_main > 0:
            if number == state.last_main + 1:
                candidate.signals.append(Signal.SEQ_NEXT)
            elif number == state.last_main:
                candidate.signals.append(Signal.SEQ_SAME)
            elif number < state.last_main - 1 and page > state.last_main_page + 1:
                candidate.signals.append(Signal.SEQ_BACKWARD)
        else:
            if number > 5 and page <= 2:
                candidate.signals.append(Signal.EARLY_LARGE)
            if number >= 15:
                candidate.signals.append(Signal.VERY_LARGE_FIRST)

    # ── Acceptance ──────────────────────────────────────────────────────

    def accepts_main(self, candidate: HeadingCandidate) -> bool:
        return (
            candidate.main_number is not None
            and not candidate.excluded
            and candidate.score >= self.config.score_threshold
        )

    def main_confidence(self, candidate: HeadingCandidate) -> float:
        return self._rescale(candidate.score - (self.config.score_threshold - 1))

    def sub_confidence(self, candidate: HeadingCandidate) -> float:
        return self._rescale(candidate.score - (self.config.score_threshold - 2))

    def _rescale(self, value: float) -> float:
        return max(0.0, min(1.0, value / self.config.confidence_span))


def letter_range(start: str, end: str) -> list[str]:
    """Inclusive lowercase letter range, order-insensitive: ("d", "a") -> a..d."""
    lo, hi = sorted((ord(start.lower()), ord(end.lower())))
    lo = max(lo, ord("a"))
    hi = min(hi, ord("z"))
    return [chr(c) for c in range(lo, hi + 1)]
