"""
Validation Engine
=================
Post-detection validation and reporting.

After detecting the question structure of each PDF, generates a report:
    - Total Tokens Detected (mains / subs)
    - Missing Main Numbers (gaps in sequence)
    - Tokens Without Points
    - Tokens Seen More Than Once
    - Low-Confidence Tokens
    - Total Points

Reports; never alters the detection result.
"""

from __future__ import annotations

import logging

from .models import DetectionReport, DetectionResult, TokenKind

logger = logging.getLogger(__name__)

LOW_CONFIDENCE = 0.5


class ValidationEngine:
    """
    Validates a detection result and produces a report.
    """

    def __init__(self, low_confidence: float = LOW_CONFIDENCE):
        self.low_confidence = low_confidence

    def validate(self, result: DetectionResult) -> DetectionReport:
        """
        Run validation on a detection result.

        Args:
            result: Merged detection result of one parse.

        Returns:
            DetectionReport with all detected issues.
        """
        report = DetectionReport()

        if result.is_empty:
            logger.warning("No question tokens to validate")
            return report

        tokens = result.tokens
        report.total_tokens = len(tokens)
        report.main_count = len(result.mains)
        report.sub_count = sum(1 for t in tokens if t.kind == TokenKind.SUB)

        # Gaps in the main numbering
        numbers = sorted({int(t.token) for t in result.mains})
        if numbers:
            expected = set(range(numbers[0], numbers[-1] + 1))
            report.missing_main_numbers = sorted(expected - set(numbers))

        for t in tokens:
            if t.points is None:
                report.tokens_without_points.append(t.token)
            else:
                report.total_points += t.points
            if t.duplicate_positions:
                report.tokens_with_duplicates.append(t.token)
            if t.confidence < self.low_confidence:
                report.low_confidence_tokens.append(t.token)

        # Log summary
        logger.info("=" * 60)
        logger.info("DETECTION REPORT")
        logger.info("=" * 60)
        logger.info(
            f"Total Tokens Detected: {report.total_tokens} "
            f"({report.main_count} mains, {report.sub_count} subs)"
        )
        logger.info(
            f"Missing Main Numbers: {len(report.missing_main_numbers)}"
        )
        logger.info(
            f"Tokens Without Points: {len(report.tokens_without_points)} "
            f"(coverage {report.points_coverage}%)"
        )
        logger.info(
            f"Tokens Seen More Than Once: {len(report.tokens_with_duplicates)}"
        )
        logger.info(
            f"Low-Confidence Tokens: {len(report.low_confidence_tokens)}"
        )
        logger.info(f"Total Points: {report.total_points}")
        logger.info("=" * 60)

        return report
