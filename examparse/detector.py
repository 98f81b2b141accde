"""
Question Detector
=================
Runs the detection chain over one input source:

    lines → HeaderFooterSuppressor → HeadingScorer (+ sequence state)
          → TokenGraph → PointsExtractor → DetectionResult

Three entry points share that chain and its rule set:
    - detect_pages(): positioned glyph runs per page (text layer, layout)
    - detect_lines(): ready-made lines (OCR text, synthesized lines)
    - detect_flat():  whitespace-joined page text without geometry
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import Iterable, Mapping, Optional

from .header_footer import HeaderFooterSuppressor
from .lines import build_lines, percentile, sort_document_order
from .models import DetectionResult, DetectorConfig, GlyphRun, Line
from .points import PointsExtractor, PointsWindow
from .scoring import (
    EACH_POINTS_PATTERN,
    HEADING_WORDS,
    SUB_RANGE_PATTERN,
    HeadingCandidate,
    HeadingScorer,
    SequenceState,
    letter_range,
)
from .textnorm import collapse_whitespace, normalize_line
from .token_graph import TokenGraph, token_key

logger = logging.getLogger(__name__)

RANGE_SUB_CONFIDENCE = 0.6

# Split points for geometry-free text: before heading words, before
# "3." / "2a)" style markers followed by a capital or bracket, before "(a)".
FLAT_SPLIT_PATTERN = re.compile(
    rf"(?=(?<!\S)(?i:{HEADING_WORDS})\s*[1-9]\d?(?!\d))"
    r"|(?=(?<!\S)[1-9]\d?\s*[a-z]\)\s)"
    r"|(?=(?<!\S)[1-9]\d?[.)]\s+[A-Z(])"
    r"|(?=(?<!\S)\([a-z]\)\s)"
)
BARE_HEADING_WORD = re.compile(rf"^(?i:{HEADING_WORDS})$")


def split_flat_text(text: str) -> list[str]:
    """Cut whitespace-joined text into heading-sized fragments."""
    fragments: list[str] = []
    for piece in FLAT_SPLIT_PATTERN.split(text):
        piece = piece.strip()
        if not piece:
            continue
        if fragments and BARE_HEADING_WORD.match(fragments[-1]):
            fragments[-1] = f"{fragments[-1]} {piece}"
        else:
            fragments.append(piece)
    return fragments


class QuestionDetector:
    """Detects main/sub question tokens with the shared heading rule set."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()
        self.scorer = HeadingScorer(self.config)
        self.suppressor = HeaderFooterSuppressor(self.config)
        self.points = PointsExtractor(self.config)

    # ── Entry points ────────────────────────────────────────────────────

    def detect_pages(
        self,
        pages: Mapping[int, Iterable[GlyphRun]],
        page_count: Optional[int] = None,
    ) -> DetectionResult:
        """Build lines page by page from glyph runs, then detect."""
        lines: list[Line] = []
        for page in sorted(pages):
            lines.extend(build_lines(pages[page], page, self.config))
        return self.detect_lines(lines, page_count=page_count or len(pages))

    def detect_flat(self, page_texts: Mapping[int, str]) -> DetectionResult:
        """
        Geometry-free detection over whitespace-joined page text. The text is
        cut into fragments at heading-like markers and each fragment is
        scored as a line without coordinates.
        """
        lines: list[Line] = []
        for page in sorted(page_texts):
            flat = normalize_line(collapse_whitespace(page_texts[page]))
            for fragment in split_flat_text(flat):
                lines.append(
                    Line(text=fragment, page=page, x=None, y=-float(len(lines)))
                )
        return self.detect_lines(lines, page_count=len(page_texts))

    def detect_lines(
        self, lines: Iterable[Line], page_count: Optional[int] = None
    ) -> DetectionResult:
        ordered = sort_document_order(lines)
        kept, dropped = self.suppressor.suppress(ordered, page_count)

        debug: Optional[dict] = None
        if self.config.debug:
            debug = {
                "lines": len(ordered),
                "suppressed": [ln.text for ln in dropped],
                "candidates": [],
            }

        xs = [ln.x for ln in kept if ln.x is not None]
        left_threshold = (
            percentile(xs, self.config.left_margin_percentile) if xs else None
        )
        extents = self._page_extents(kept)
        normalized = [normalize_line(ln.text) for ln in kept]

        graph = TokenGraph(self.config.max_tokens)
        state = SequenceState()
        anchors: dict[str, tuple[int, int]] = {}

        for i, ln in enumerate(kept):
            text = normalized[i]
            next_text = (
                normalized[i + 1]
                if i + 1 < len(kept) and kept[i + 1].page == ln.page
                else ""
            )
            at_left = (
                ln.x <= left_threshold
                if ln.x is not None and left_threshold is not None
                else None
            )
            candidate = self.scorer.evaluate(
                text,
                ln.page,
                state,
                next_text=next_text,
                at_left_margin=at_left,
                in_margin_band=self._in_margin_band(ln, extents),
            )
            if candidate is None:
                continue

            accepted = self._accept(candidate, ln, i, graph, state, anchors)
            if debug is not None:
                debug["candidates"].append({
                    "page": ln.page,
                    "text": text[:140],
                    "main": candidate.main_number,
                    "letter": candidate.letter,
                    "score": candidate.score,
                    "reasons": candidate.reasons,
                    "accepted": accepted,
                })
            if accepted and candidate.main_number is not None and not candidate.sub_only:
                self._expand_sub_range(candidate, ln, text, next_text, graph)

        self.points.apply(graph, self._points_windows(normalized, anchors))
        result = graph.assemble(debug=debug)
        logger.debug(
            f"Detected {len(result.tokens)} tokens "
            f"({len(result.mains)} mains) from {len(kept)} lines"
        )
        return result

    # ── Acceptance ──────────────────────────────────────────────────────

    def _accept(
        self,
        candidate: HeadingCandidate,
        ln: Line,
        index: int,
        graph: TokenGraph,
        state: SequenceState,
        anchors: dict[str, tuple[int, int]],
    ) -> bool:
        x = ln.x if ln.x is not None else 0.0
        accepted_main = False

        if self.scorer.accepts_main(candidate):
            token = graph.add_main(
                candidate.main_number, ln.page, x, ln.y,
                self.scorer.main_confidence(candidate),
            )
            if token is not None:
                accepted_main = True
                state.accept(candidate.main_number, ln.page)
                anchors.setdefault(token.token, (index, candidate.match_end))

        if candidate.letter is None or candidate.excluded:
            return accepted_main

        if candidate.sub_only:
            parent = state.current_main
        else:
            parent = candidate.main_number if accepted_main else None
        if parent is None:
            return accepted_main

        sub = graph.add_sub(
            parent, candidate.letter, ln.page, x, ln.y,
            self.scorer.sub_confidence(candidate),
        )
        if sub is None:
            return accepted_main
        anchors.setdefault(sub.token, (index, candidate.match_end))
        return True

    def _expand_sub_range(
        self,
        candidate: HeadingCandidate,
        ln: Line,
        text: str,
        next_text: str,
        graph: TokenGraph,
    ):
        """'Deluppgifter a-d: 3p vardera' → subs a..d, each with 3 points."""
        near = f"{text} {next_text}"[: self.config.context_window + 40]
        match = SUB_RANGE_PATTERN.search(near)
        if not match:
            return

        each = EACH_POINTS_PATTERN.search(near, match.end())
        per_sub = int(each.group("n")) if each else None
        main_key = token_key(str(candidate.main_number))
        x = ln.x if ln.x is not None else 0.0
        for letter in letter_range(match.group("start"), match.group("end")):
            sub = graph.add_sub(
                main_key, letter, ln.page, x, ln.y, RANGE_SUB_CONFIDENCE
            )
            if sub is None:
                break
            if per_sub is not None and sub.points is None:
                sub.points = per_sub

    # ── Geometry helpers ────────────────────────────────────────────────

    @staticmethod
    def _page_extents(lines: list[Line]) -> dict[int, tuple[float, float]]:
        ys: dict[int, list[float]] = defaultdict(list)
        for ln in lines:
            if ln.x is not None:
                ys[ln.page].append(ln.y)
        return {page: (min(v), max(v)) for page, v in ys.items()}

    def _in_margin_band(
        self, ln: Line, extents: dict[int, tuple[float, float]]
    ) -> bool:
        """True when a positioned line sits in its page's header/footer band."""
        if ln.x is None or ln.page not in extents:
            return False
        min_y, max_y = extents[ln.page]
        if max_y <= min_y:
            return False
        band = self.config.header_footer_percent / 100.0 * (max_y - min_y)
        return ln.y >= max_y - band or ln.y <= min_y + band

    # ── Points windows ──────────────────────────────────────────────────

    def _points_windows(
        self, normalized: list[str], anchors: dict[str, tuple[int, int]]
    ) -> dict[str, PointsWindow]:
        """
        Following text runs from the end of the heading match up to the next
        anchored line, bounded by ``context_window``. Preceding text starts
        where the previous anchored line's following text ended, so no line
        is searched by two tokens.
        """
        anchor_lines = sorted({idx for idx, _ in anchors.values()})
        limit = self.config.context_window
        following: dict[str, str] = {}
        covered: dict[int, int] = {}

        for key, (idx, offset) in anchors.items():
            later = [a for a in anchor_lines if a > idx]
            stop = later[0] if later else len(normalized)

            parts = [normalized[idx][offset:]]
            length = len(parts[0])
            end = idx + 1
            while end < stop and length < limit:
                parts.append(normalized[end])
                length += len(normalized[end]) + 1
                end += 1

            following[key] = " ".join(parts)
            covered[idx] = max(covered.get(idx, end), end)

        windows: dict[str, PointsWindow] = {}
        for key, (idx, _) in anchors.items():
            earlier = [a for a in anchor_lines if a < idx]
            start = covered[earlier[-1]] if earlier else max(0, idx - 2)
            windows[key] = PointsWindow(
                following=following[key],
                preceding=" ".join(normalized[start:idx]),
            )
        return windows
