"""
OCR Engine
==========
pytesseract adapter used by the OCR stages of the acquisition pipeline.

The engine is initialized once per parse, on the first OCR stage that needs
it. A missing or broken tesseract binary raises ``OcrUnavailableError``, which the
pipeline treats as "OCR unavailable" rather than as a parse failure.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Optional

import pytesseract
from PIL import Image

logger = logging.getLogger(__name__)

DEFAULT_LANG = "swe+eng"
FALLBACK_LANG = "eng"
TESSERACT_CONFIG = "--oem 3 --psm 6 -c preserve_interword_spaces=1"


class OcrUnavailableError(RuntimeError):
    """Raised when the OCR engine cannot be initialized."""


class OcrEngine:
    """
    Recognizes text in page images with tesseract.

    Args:
        lang: Tesseract language hints, e.g. "swe+eng".
        tesseract_cmd: Explicit path to the tesseract binary.
    """

    def __init__(self, lang: str = DEFAULT_LANG, tesseract_cmd: Optional[str] = None):
        self.lang = lang
        self.tesseract_cmd = tesseract_cmd
        self._ready = False

    def initialize(self) -> "OcrEngine":
        if self._ready:
            return self
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
        try:
            version = pytesseract.get_tesseract_version()
        except (
            pytesseract.TesseractNotFoundError,
            pytesseract.TesseractError,
            subprocess.SubprocessError,
            OSError,
            SystemExit,
        ) as e:
            # pytesseract exits on an unparsable version string
            raise OcrUnavailableError(f"Tesseract not available: {e}") from e

        try:
            installed = set(pytesseract.get_languages(config=""))
        except Exception as e:
            logger.debug(f"Could not list tesseract languages: {e}")
            installed = set()

        if installed:
            wanted = [code for code in self.lang.split("+") if code in installed]
            if not wanted:
                logger.warning(
                    f"OCR languages '{self.lang}' not installed; using '{FALLBACK_LANG}'"
                )
                wanted = [FALLBACK_LANG]
            self.lang = "+".join(wanted)

        logger.info(f"OCR engine ready (tesseract {version}, lang={self.lang})")
        self._ready = True
        return self

    def recognize(self, image: Image.Image, lang: Optional[str] = None) -> str:
        if not self._ready:
            self.initialize()
        return pytesseract.image_to_string(
            image, lang=lang or self.lang, config=TESSERACT_CONFIG
        )

    def close(self):
        self._ready = False
