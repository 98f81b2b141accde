"""
Header/Footer Suppressor
========================
Removes running headers and footers: line texts that recur in the top or
bottom band of most pages (course banners, institution names, page counters).

Best effort and fail-open: an unrecognized header stays in and is left to the
heading scorer. A line outside its page's top/bottom band is never removed.
"""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from typing import Optional

from .models import DetectorConfig, Line
from .textnorm import normalize_line

logger = logging.getLogger(__name__)


def _key(text: str) -> str:
    return normalize_line(text).lower()


class HeaderFooterSuppressor:
    """Drops lines whose text is common to the top/bottom band across pages."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def _bands(self, lines: list[Line]) -> dict[int, tuple[list[Line], list[Line]]]:
        per_page: dict[int, list[Line]] = defaultdict(list)
        for ln in lines:
            per_page[ln.page].append(ln)

        k = self.config.header_footer_band_lines
        bands = {}
        for page, page_lines in per_page.items():
            ordered = sorted(page_lines, key=lambda ln: (-ln.y, ln.x or 0.0))
            bands[page] = (ordered[:k], ordered[-k:] if k > 0 else [])
        return bands

    def common_texts(
        self, lines: list[Line], page_count: Optional[int] = None
    ) -> tuple[set[str], set[str]]:
        """Return (common top texts, common bottom texts)."""
        if self.config.header_footer_band_lines <= 0:
            return set(), set()

        bands = self._bands(lines)
        total_pages = page_count or len(bands)
        if total_pages < 2:
            return set(), set()

        top_counts: Counter[str] = Counter()
        bottom_counts: Counter[str] = Counter()
        for top, bottom in bands.values():
            top_counts.update({_key(ln.text) for ln in top})
            bottom_counts.update({_key(ln.text) for ln in bottom})

        threshold = max(
            2, math.ceil(self.config.header_footer_frequency * total_pages)
        )
        common_top = {t for t, n in top_counts.items() if n >= threshold}
        common_bottom = {t for t, n in bottom_counts.items() if n >= threshold}
        return common_top, common_bottom

    def suppress(
        self, lines: list[Line], page_count: Optional[int] = None
    ) -> tuple[list[Line], list[Line]]:
        """
        Split ``lines`` into (kept, dropped), preserving the input order of
        the kept lines.
        """
        common_top, common_bottom = self.common_texts(lines, page_count)
        if not common_top and not common_bottom:
            return list(lines), []

        droppable: set[int] = set()
        for top, bottom in self._bands(lines).values():
            for ln in top:
                if _key(ln.text) in common_top:
                    droppable.add(id(ln))
            for ln in bottom:
                if _key(ln.text) in common_bottom:
                    droppable.add(id(ln))

        kept = [ln for ln in lines if id(ln) not in droppable]
        dropped = [ln for ln in lines if id(ln) in droppable]
        if dropped:
            logger.debug(
                f"Suppressed {len(dropped)} header/footer lines "
                f"({len(common_top)} top, {len(common_bottom)} bottom texts)"
            )
        return kept, dropped
