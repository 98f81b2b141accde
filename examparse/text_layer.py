"""
Text Layer
==========
PyMuPDF (fitz) adapter for the acquisition pipeline.

Exposes a PDF as 1-indexed pages of:
    - span-level glyph runs ("dict" extraction) for the text-layer stage
    - word-level glyph runs ("words" extraction) for the layout fallback
    - plain page text for the flat fallback
    - rasterized PIL images for OCR

PyMuPDF coordinates grow downward; runs are converted so that ``y`` grows
upward (larger y = higher on the page).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import fitz  # PyMuPDF
from PIL import Image

from .models import GlyphRun

logger = logging.getLogger(__name__)


class DocumentOpenError(RuntimeError):
    """Raised when a PDF cannot be opened or is not a PDF."""


class PdfDocument:
    """
    One opened PDF. Use as a context manager or call ``close()``.

    Args:
        pdf_path: Path to the PDF file.
        stream: Raw PDF bytes, used instead of ``pdf_path`` when given.
    """

    def __init__(self, pdf_path: Optional[str] = None, stream: Optional[bytes] = None):
        if pdf_path is None and stream is None:
            raise DocumentOpenError("Either pdf_path or stream is required")

        self.name = os.path.basename(pdf_path) if pdf_path else "document.pdf"
        try:
            if stream is not None:
                self._doc = fitz.open(stream=stream, filetype="pdf")
            else:
                self._doc = fitz.open(pdf_path)
        except Exception as e:
            raise DocumentOpenError(f"Cannot open {self.name}: {e}") from e

        if not self._doc.is_pdf:
            self._doc.close()
            raise DocumentOpenError(f"{self.name} is not a PDF")

        logger.debug(f"Opened {self.name} ({self._doc.page_count} pages)")

    @property
    def page_count(self) -> int:
        return self._doc.page_count

    def _page(self, page: int) -> fitz.Page:
        return self._doc[page - 1]

    # ─── Text Extraction ──────────────────────────────────────────────────

    def glyph_runs(self, page: int) -> list[GlyphRun]:
        """Span-level runs with baseline origin and width."""
        pg = self._page(page)
        height = pg.rect.height
        page_dict = pg.get_text("dict", flags=fitz.TEXT_PRESERVE_WHITESPACE)

        runs: list[GlyphRun] = []
        for block in page_dict.get("blocks", []):
            if block.get("type") != 0:  # image block
                continue
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    if not text.strip():
                        continue
                    x0, _, x1, _ = span["bbox"]
                    ox, oy = span.get("origin", (x0, span["bbox"][3]))
                    runs.append(GlyphRun(
                        text=text,
                        page=page,
                        x=ox,
                        y=height - oy,
                        width=max(0.0, x1 - x0),
                    ))
        return runs

    def word_runs(self, page: int) -> list[GlyphRun]:
        """Word-level runs: (x0, y0, x1, y1, word, block, line, word_no)."""
        pg = self._page(page)
        height = pg.rect.height
        return [
            GlyphRun(
                text=w[4],
                page=page,
                x=w[0],
                y=height - w[3],
                width=max(0.0, w[2] - w[0]),
            )
            for w in pg.get_text("words")
            if w[4].strip()
        ]

    def page_text(self, page: int) -> str:
        return self._page(page).get_text("text")

    # ─── Rasterization ────────────────────────────────────────────────────

    def render(self, page: int, dpi: int = 150) -> Image.Image:
        """Rasterize one page to an RGB PIL image."""
        pix = self._page(page).get_pixmap(dpi=dpi, alpha=False)
        try:
            return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        finally:
            del pix

    # ─── Lifecycle ────────────────────────────────────────────────────────

    def close(self):
        if self._doc is not None:
            self._doc.close()
            self._doc = None

    def __enter__(self) -> "PdfDocument":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
