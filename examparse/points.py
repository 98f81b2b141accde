"""
Points Extractor
================
Finds point values near accepted question tokens and assigns them.

For each token the text following its heading is searched first, then the
text preceding it. A group distribution such as "(3+2+1)p" next to a main
heading is spread over its sub-questions, synthesizing subs a, b, c... when
the main has none. The first match wins and assigned points are final.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .models import DetectorConfig, Token, TokenKind
from .token_graph import TokenGraph

logger = logging.getLogger(__name__)

SYNTHESIZED_SUB_CONFIDENCE = 0.6

# "(5p)", "5 p", "5 poang", "5 points"
POINTS_PATTERN = re.compile(
    r"(?<![\d+])(?P<n>\d{1,3})\s*p(?:oang|oints?)?\b(?!\s*\()",
    re.IGNORECASE,
)

# "poang: 5", "points = 5"
LABELLED_POINTS_PATTERN = re.compile(
    r"\b(?:poang|points?)\s*[:=]\s*(?P<n>\d{1,3})\b",
    re.IGNORECASE,
)

# "(3+2+1)p", "(3+2+1 p)", "(2 + 2) poang"
GROUP_POINTS_PATTERN = re.compile(
    r"\(\s*(?P<parts>\d{1,3}(?:\s*\+\s*\d{1,3})+)\s*"
    r"(?:\)\s*p(?:oang|oints?)?\b|p(?:oang|oints?)?\s*\))",
    re.IGNORECASE,
)


@dataclass
class PointsWindow:
    """Text around one token's heading: after it (preferred) and before it."""
    following: str = ""
    preceding: str = ""


def _first(matches: list[re.Match], from_end: bool) -> Optional[re.Match]:
    if not matches:
        return None
    return max(matches, key=lambda m: m.start()) if from_end else min(
        matches, key=lambda m: m.start()
    )


class PointsExtractor:
    """Assigns points to the tokens of a TokenGraph."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    # ── Pattern search ──────────────────────────────────────────────────

    def find_points(self, text: str, from_end: bool = False) -> Optional[int]:
        """
        Point value in ``text``: the match closest to the heading, i.e. the
        earliest one in following text or the last one in preceding text.
        """
        matches = list(POINTS_PATTERN.finditer(text))
        matches.extend(LABELLED_POINTS_PATTERN.finditer(text))
        match = _first(matches, from_end)
        return int(match.group("n")) if match else None

    def find_distribution(self, text: str, from_end: bool = False) -> Optional[list[int]]:
        match = _first(list(GROUP_POINTS_PATTERN.finditer(text)), from_end)
        if not match:
            return None
        return [int(p) for p in re.split(r"\s*\+\s*", match.group("parts").strip())]

    # ── Assignment ──────────────────────────────────────────────────────

    def apply(self, graph: TokenGraph, windows: dict[str, PointsWindow]):
        """Assign points to every token that has a search window."""
        for token in list(graph.iter_tokens()):
            window = windows.get(token.token)
            if window is None:
                continue
            following = window.following[: self.config.context_window]
            preceding = window.preceding[-self.config.context_window:]

            if token.kind == TokenKind.MAIN:
                parts = self.find_distribution(following)
                if parts is None:
                    parts = self.find_distribution(preceding, from_end=True)
                if parts:
                    self._distribute(graph, token, parts)
                    continue

            if token.points is not None:
                continue
            points = self.find_points(following)
            if points is None:
                points = self.find_points(preceding, from_end=True)
            if points is not None:
                token.points = points

    def _distribute(self, graph: TokenGraph, main: Token, parts: list[int]):
        subs = graph.subs_of(main.token)
        if not subs:
            for idx in range(len(parts)):
                sub = graph.add_sub(
                    main.token, chr(ord("a") + idx), main.page, main.x, main.y,
                    SYNTHESIZED_SUB_CONFIDENCE,
                )
                if sub is None:
                    break
                subs.append(sub)
            logger.debug(
                f"Synthesized {len(subs)} subs for main {main.token} from {parts}"
            )

        for sub, value in zip(subs, parts):
            if sub.points is None:
                sub.points = value
        if main.points is None:
            main.points = sum(parts)
