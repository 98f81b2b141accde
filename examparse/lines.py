"""
Line Reconstructor
==================
Groups positioned glyph runs into reading-order lines, one page at a time.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .models import DetectorConfig, GlyphRun, Line
from .textnorm import collapse_whitespace


def build_lines(
    runs: Iterable[GlyphRun],
    page: int,
    config: Optional[DetectorConfig] = None,
) -> list[Line]:
    """
    Merge the glyph runs of one page into lines.

    Runs are visited top to bottom (y descending), left to right. A run joins
    the first open bucket whose y lies within ``y_tolerance``, otherwise it
    opens a new one. Inside a bucket runs are concatenated left to right with
    a single space wherever the horizontal gap exceeds ``gap_x_threshold``.
    """
    cfg = config or DetectorConfig()
    spans = sorted(
        (r for r in runs if r.text),
        key=lambda r: (-r.y, r.x),
    )

    buckets: list[tuple[float, list[GlyphRun]]] = []
    for run in spans:
        for bucket_y, parts in buckets:
            if abs(bucket_y - run.y) <= cfg.y_tolerance:
                parts.append(run)
                break
        else:
            buckets.append((run.y, [run]))

    lines: list[Line] = []
    for bucket_y, parts in buckets:
        parts.sort(key=lambda r: r.x)
        text = ""
        prev: Optional[GlyphRun] = None
        for run in parts:
            if prev is not None and text:
                prev_end = prev.x + prev.width if prev.width is not None else prev.x
                if run.x - prev_end > cfg.gap_x_threshold:
                    text += " "
            text += run.text
            prev = run
        clean = collapse_whitespace(text)
        if clean:
            lines.append(Line(text=clean, page=page, x=parts[0].x, y=bucket_y))
    return lines


def lines_from_text(text: str, page: int) -> list[Line]:
    """
    Build geometry-free lines from plain text (OCR output, page text).
    Each line gets a synthetic y that decreases with its index so the
    top-to-bottom order survives sorting.
    """
    lines: list[Line] = []
    for raw in (text or "").splitlines():
        clean = collapse_whitespace(raw)
        if clean:
            lines.append(Line(text=clean, page=page, x=None, y=-float(len(lines))))
    return lines


def sort_document_order(lines: Iterable[Line]) -> list[Line]:
    return sorted(lines, key=lambda ln: (ln.page, -ln.y, ln.x or 0.0))


def percentile(values: list[float], p: float) -> float:
    """Nearest-rank percentile (0-100); 0.0 for an empty list."""
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = int((p / 100.0) * len(ordered))
    idx = min(len(ordered) - 1, max(0, idx))
    return ordered[idx]
