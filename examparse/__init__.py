"""
Exam Structure Parser
=====================
Recovers the logical structure of exam PDFs: ordered main/sub question
identifiers, their point values, and course metadata.

Architecture:
    - Text Layer: Reads positioned glyph runs from PDF pages (PyMuPDF)
    - Line Reconstructor: Groups glyph runs into reading-order lines
    - Header/Footer Suppressor: Drops running headers and footers
    - Heading Scorer: Weighted signals deciding what is a question heading
    - Token Graph: Ordered, deduplicated main → sub question tokens
    - Points Extractor: Assigns point values and point distributions
    - Course Detector: Scores course code / course name candidates
    - Acquisition State Machine: Escalates text layer → fallbacks → OCR

Version: 1.0.0
"""

__version__ = "1.0.0"
