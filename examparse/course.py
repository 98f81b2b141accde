"""
Course Metadata Detector
========================
Scores course code and course name candidates from the recovered text, with
fallbacks from the file name (course code, year, exam date).

Course code: labelled forms ("KURSKOD: TDA417") outweigh bare pattern
matches; scores are summed per distinct code and the maximum wins.

Course name: candidates from the top block of the document are scored
additively; metadata noise (dates, section headings, boilerplate) is kept in
the trace with a negative score. The best positive candidate wins, ties going
to the candidate with more letters.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from .models import CourseMetadata, ScoreTraceEntry
from .textnorm import collapse_whitespace, fold_diacritics, normalize_dashes, normalize_spaces

logger = logging.getLogger(__name__)

TOP_LINE_LIMIT = 120
TOP_CHAR_LIMIT = 1500

EXCLUDED_SCORE = -3

# ─── Course Code Patterns ─────────────────────────────────────────────────────

LABELLED_CODE_PATTERNS = [
    re.compile(r"(?:KURSKOD|COURSE\s*CODE|KURS\s*KOD)[^A-Z0-9]{0,10}([A-Z]{2,4})[ \-._]?(\d{2,4})\b"),
]
GENERIC_CODE_PATTERNS = [
    re.compile(r"\b([A-Z]{2})-?(\d{4})\b"),   # SF1624
    re.compile(r"\b([A-Z]{3})-?(\d{3})\b"),   # TDA417
    re.compile(r"\b([A-Z]{4})-?(\d{2})\b"),   # TATA42
]
FILENAME_CODE_PATTERNS = [
    re.compile(r"(?<![A-Z])([A-Z]{2})[\s\-_.]?(\d{4})(?!\d)"),
    re.compile(r"(?<![A-Z])([A-Z]{3})[\s\-_.]?(\d{3})(?!\d)"),
    re.compile(r"(?<![A-Z])([A-Z]{4})[\s\-_.]?(\d{2})(?!\d)"),
]
LABELLED_CODE_SCORE = 5
GENERIC_CODE_SCORE = 1

# "HT2023", "VT2024": Swedish term labels, not course codes
TERM_PREFIXES = {"HT", "VT", "ST"}

# ─── Course Name Patterns ─────────────────────────────────────────────────────

NAME_CHARS = r"[A-Za-zÅÄÖåäöÉéÜü0-9 ,.'&/\-]"

LABELLED_NAME_PATTERN = re.compile(
    rf"(?:KURSNAMN|COURSE\s*NAME|KURS\s*NAMN)[^A-Za-zÅÄÖåäö0-9]{{0,10}}({NAME_CHARS}{{3,120}})",
    re.IGNORECASE,
)
EXAM_IN_PATTERN = re.compile(
    rf"\b(?:TENTAMEN|TENTA|OMTENTAMEN|EXAMINATION|EXAM)\s+(?:i|in)\s+({NAME_CHARS}{{3,120}})",
    re.IGNORECASE,
)

META_PATTERN = re.compile(
    r"\b(?:sektion|section|uppgift|problem|fraga|question|max\s*poang|word\s*limit|"
    r"sida|examinator|examiner|jour|hjalpmedel|aids|linkopings|institutionen|"
    r"department|universitet|university|hogskola|wiseflow|datum|date|skrivtid|"
    r"telefon|phone|anonym|larare|teacher|betyg|grade|kurskod|course\s*code|"
    r"kursnamn|course\s*name)\b",
    re.IGNORECASE,
)
STARTS_DIGIT_PATTERN = re.compile(r"^\s*\d")
DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}[./-]\d{1,2}[./-]\d{2,4}\b")
TIME_PATTERN = re.compile(r"\b\d{1,2}[:.]\d{2}\b")
RANGE_PATTERN = re.compile(r"\b\d+\s*-\s*\d+\b")
MULTI_NUMBERS_PATTERN = re.compile(r"(?:\b\d+(?:[.,]\d+)?\b[\s,;:]{1,3}){3,}\d+")
HEADING_PATTERN = re.compile(
    r"^\s*(?:uppgift|problem|fraga|question|section|sektion|q)\s*\d{1,2}\b",
    re.IGNORECASE,
)
TRAILING_DATE_PATTERN = re.compile(
    r"[\s,:-]*(?:\d{4}-\d{2}-\d{2}|\d{1,2}[./]\d{1,2}[./]\d{2,4}|\d{1,2}[:.]\d{2}|(?:19|20)\d{2})\b.*$"
)
EXAM_WORD_ONLY_PATTERN = re.compile(
    r"^(?:skriftlig\s+)?(?:omtentamen|tentamen|tenta|exam|examination)$",
    re.IGNORECASE,
)

FILENAME_NOISE_PATTERN = re.compile(
    r"\b(?:omtentamen|tentamen|tenta|exam|examination|losningar|solutions?)\b",
    re.IGNORECASE,
)

# ─── File Name Metadata ───────────────────────────────────────────────────────

ISO_DATE_PATTERN = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")
YEAR_PATTERN = re.compile(r"(?<![A-Za-z\d])(20\d{2})(?!\d)")


def _letters(text: str) -> int:
    return sum(1 for ch in text if ch.isalpha())


def _digits(text: str) -> int:
    return sum(1 for ch in text if ch.isdigit())


def _is_term_label(prefix: str, digits: str) -> bool:
    return prefix in TERM_PREFIXES and len(digits) == 4 and digits[:2] in ("19", "20")


# ─── Course Code ──────────────────────────────────────────────────────────────


def detect_course_code(text: str) -> tuple[Optional[str], list[ScoreTraceEntry]]:
    """Best-scoring course code in ``text`` plus its score trace."""
    upper = fold_diacritics(text or "").upper()
    scores: dict[str, int] = {}
    reasons: dict[str, list[str]] = {}

    def bump(code: str, by: int, why: str):
        scores[code] = scores.get(code, 0) + by
        reasons.setdefault(code, []).append(why)

    for pattern in LABELLED_CODE_PATTERNS:
        for m in pattern.finditer(upper):
            bump(f"{m.group(1)}{m.group(2)}", LABELLED_CODE_SCORE, "labelled")
    for pattern in GENERIC_CODE_PATTERNS:
        for m in pattern.finditer(upper):
            if _is_term_label(m.group(1), m.group(2)):
                continue
            bump(f"{m.group(1)}{m.group(2)}", GENERIC_CODE_SCORE, "pattern")

    trace = [
        ScoreTraceEntry(field="course_code", value=code, score=score, reasons=reasons[code])
        for code, score in scores.items()
    ]
    if not scores:
        return None, trace
    best = max(scores, key=lambda c: scores[c])
    return best, trace


def detect_course_code_from_filename(name: str) -> Optional[str]:
    """Course code in a file name: "SF1624", "SF-1624", "tda_417", "TATA 42"."""
    upper = (name or "").upper()
    for pattern in FILENAME_CODE_PATTERNS:
        for m in pattern.finditer(upper):
            if not _is_term_label(m.group(1), m.group(2)):
                return f"{m.group(1)}{m.group(2)}"
    return None


# ─── Course Name ──────────────────────────────────────────────────────────────


def top_block(text: str) -> list[str]:
    """
    First lines of the document: at most TOP_LINE_LIMIT lines or
    TOP_CHAR_LIMIT characters, cut before the first question heading.
    """
    clean = normalize_dashes(normalize_spaces(text or ""))
    top: list[str] = []
    chars = 0
    for raw in clean.splitlines():
        line = collapse_whitespace(raw)
        if not line:
            continue
        if len(top) >= TOP_LINE_LIMIT:
            break
        if chars + len(line) > TOP_CHAR_LIMIT and top:
            break
        if HEADING_PATTERN.match(fold_diacritics(line)):
            break
        top.append(line)
        chars += len(line) + 1
    return top


def looks_title_like(line: str) -> bool:
    if len(line) < 6:
        return False
    first_alpha = next((ch for ch in line if ch.isalpha()), "")
    if not first_alpha:
        return False
    capitals = sum(1 for ch in line if ch.isupper())
    return first_alpha.isupper() or capitals >= 2


@dataclass
class NameCandidate:
    name: str
    score: int
    reasons: list[str] = field(default_factory=list)

    @property
    def letters(self) -> int:
        return _letters(self.name)


class CourseNameDetector:
    """Collects and scores course name candidates for one document."""

    def __init__(self, text: str, file_name: Optional[str] = None,
                 course_code: Optional[str] = None):
        self.lines = top_block(text)
        self.joined = "\n".join(self.lines)
        self.file_name = file_name
        self.course_code = course_code
        self.candidates: list[NameCandidate] = []

    def _clean(self, name: str) -> str:
        n = collapse_whitespace(name)
        if self.course_code and n.upper().startswith(self.course_code):
            n = n[len(self.course_code):].lstrip(" :-,")
        n = TRAILING_DATE_PATTERN.sub("", n)
        return n.strip(" ,.:-")

    def _is_excluded(self, name: str) -> bool:
        folded = fold_diacritics(name)
        return bool(
            META_PATTERN.search(folded)
            or STARTS_DIGIT_PATTERN.match(folded)
            or DATE_PATTERN.search(folded)
            or TIME_PATTERN.search(folded)
            or RANGE_PATTERN.search(folded)
            or MULTI_NUMBERS_PATTERN.search(folded)
        )

    def add(self, raw: str, score: int, why: str):
        name = self._clean(raw)
        if len(name) < 3 or len(name) > 120:
            return
        letters = _letters(name)
        if letters == 0 or _digits(name) > letters or EXAM_WORD_ONLY_PATTERN.match(name):
            return
        if self._is_excluded(name):
            self.candidates.append(NameCandidate(name, EXCLUDED_SCORE, [f"excluded:{why}"]))
            return
        self.candidates.append(NameCandidate(name, score, [why]))

    def collect(self):
        # Labelled field and "Tentamen i <name>": strongest signals
        for line in self.lines:
            m = LABELLED_NAME_PATTERN.search(line)
            if m:
                self.add(m.group(1), 3, "labelled")
                break
        for line in self.lines:
            m = EXAM_IN_PATTERN.search(line)
            if m:
                self.add(m.group(1), 3, "exam_in")
                break

        if self.course_code:
            self._collect_near_code()

        for i, line in enumerate(self.lines[:60]):
            if looks_title_like(line):
                near_top = i < 20
                self.add(line, 2 if near_top else 1,
                         "title_near_top" if near_top else "title")

    def _collect_near_code(self):
        code = re.escape(self.course_code)
        sep = re.compile(rf"{code}\s*[-:]\s*({NAME_CHARS}{{3,120}})")
        for line in self.lines:
            m = sep.search(line)
            if m:
                self.add(m.group(1), 2, "code_separator")
                break

        if self.file_name:
            base = re.sub(r"\.pdf$", "", self.file_name, flags=re.IGNORECASE)
            m = re.search(rf"{code}[\s\-:_]+(.{{3,120}})", base, re.IGNORECASE)
            if m:
                name = FILENAME_NOISE_PATTERN.sub(" ", m.group(1).replace("_", " "))
                self.add(name, 2, "filename")

        code_line = re.compile(code)
        for i, line in enumerate(self.lines[:40]):
            if not code_line.search(line):
                continue
            below = self.lines[i + 1:i + 3]
            if below:
                self.add(below[0], 2, "below_code")
            if len(below) == 2 and looks_title_like(below[0]) and looks_title_like(below[1]):
                self.add(f"{below[0]} {below[1]}", 2, "below_code_merged")
            break

    def best(self) -> Optional[NameCandidate]:
        positive = [c for c in self.candidates if c.score > 0]
        if not positive:
            return None
        # max() keeps the first of equal keys: earlier candidates win full ties
        return max(positive, key=lambda c: (c.score, c.letters))

    def trace(self) -> list[ScoreTraceEntry]:
        return [
            ScoreTraceEntry(field="course_name", value=c.name, score=c.score, reasons=c.reasons)
            for c in self.candidates
        ]


def detect_course_name(
    text: str,
    file_name: Optional[str] = None,
    course_code: Optional[str] = None,
) -> tuple[Optional[str], list[ScoreTraceEntry]]:
    detector = CourseNameDetector(text, file_name, course_code)
    detector.collect()
    best = detector.best()
    return (best.name if best else None), detector.trace()


# ─── Combined / File Name Metadata ────────────────────────────────────────────


def detect_course_metadata(text: str, file_name: Optional[str] = None) -> CourseMetadata:
    """
    Code and name are chosen independently; a resolved code (from the text,
    else from the file name) is passed to the name detector as a hint.
    """
    code, code_trace = detect_course_code(text)
    if code is None and file_name:
        code = detect_course_code_from_filename(file_name)
        if code:
            code_trace.append(ScoreTraceEntry(
                field="course_code", value=code, score=GENERIC_CODE_SCORE,
                reasons=["filename"],
            ))
    name, name_trace = detect_course_name(text, file_name, code)
    logger.info(f"Course metadata: code={code or '-'} name={name or '-'}")
    return CourseMetadata(code=code, name=name, score_trace=code_trace + name_trace)


def _parse_iso_date(match: re.Match) -> Optional[date]:
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def detect_exam_date(file_name: Optional[str], text: str = "") -> Optional[date]:
    """ISO date from the file name, else the first valid one in the top block."""
    sources = [file_name or "", "\n".join(top_block(text))]
    for source in sources:
        for m in ISO_DATE_PATTERN.finditer(source):
            parsed = _parse_iso_date(m)
            if parsed:
                return parsed
    return None


def detect_year(file_name: Optional[str], exam_date: Optional[date] = None) -> Optional[int]:
    if exam_date:
        return exam_date.year
    m = YEAR_PATTERN.search(file_name or "")
    return int(m.group(1)) if m else None
