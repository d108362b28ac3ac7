"""Format detection: pick the parser that best recognizes a file."""

from __future__ import annotations

import logging

from .config import MIN_DETECTION_CONFIDENCE
from .errors import UnrecognizedFormatError
from .parsers import (
    ChatGPTParser,
    ChatParser,
    ClaudeParser,
    GeminiParser,
    QwenParser,
    WhatsAppParser,
)
from .parsers.base import sniff_json
from .validation import ImportValidator, ValidationReport, raise_for_reject

logger = logging.getLogger(__name__)


class ParserRegistry:
    """Ordered collection of parsers with confidence-based selection.

    The highest detection score wins if it is strictly above
    ``min_confidence``. Two parsers sharing the top score is treated as
    unrecognized rather than resolved by registration order.
    """

    def __init__(
        self,
        parsers: list[ChatParser] | None = None,
        validator: ImportValidator | None = None,
        min_confidence: int = MIN_DETECTION_CONFIDENCE,
    ):
        self.validator = validator or ImportValidator()
        self.min_confidence = min_confidence
        self._parsers: dict[str, ChatParser] = {}
        if parsers is None:
            parsers = [
                ChatGPTParser(self.validator),
                ClaudeParser(self.validator),
                GeminiParser(self.validator),
                QwenParser(self.validator),
                WhatsAppParser(self.validator),
            ]
        for parser in parsers:
            self.register(parser)

    def register(self, parser: ChatParser) -> None:
        """Add a parser, replacing any existing one with the same name."""
        self._parsers[parser.name] = parser

    def get(self, name: str) -> ChatParser | None:
        return self._parsers.get(name)

    def available_formats(self) -> list[str]:
        return list(self._parsers)

    def scores(self, raw: bytes) -> dict[str, int]:
        scores: dict[str, int] = {}
        try:
            for name, parser in self._parsers.items():
                try:
                    scores[name] = int(parser.detect(raw))
                except Exception:
                    # A detector bug must not hide the other formats
                    logger.warning("Parser %s failed during detection", name, exc_info=True)
                    scores[name] = 0
        finally:
            # Detectors share one decoded copy; drop it once they are done
            sniff_json.cache_clear()
        return scores

    def select(self, raw: bytes, name: str | None = None) -> ChatParser:
        """Return the parser for ``raw``.

        The size cap is enforced before any detector decodes the file.
        """
        size_finding = self.validator.check_size(raw)
        if size_finding:
            raise_for_reject(ValidationReport(findings=[size_finding]), name)

        scores = self.scores(raw)
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        label = f"{name}: " if name else ""

        if not ranked or ranked[0][1] <= self.min_confidence:
            best = ranked[0][1] if ranked else 0
            raise UnrecognizedFormatError(
                f"{label}no parser recognized the file (best confidence {best}, "
                f"need more than {self.min_confidence})"
            )
        if len(ranked) > 1 and ranked[1][1] == ranked[0][1]:
            tied = sorted(fmt for fmt, score in ranked if score == ranked[0][1])
            raise UnrecognizedFormatError(
                f"{label}ambiguous format: {', '.join(tied)} all scored {ranked[0][1]}"
            )

        best_name, best_score = ranked[0]
        logger.debug("Detected format %s (confidence %d)", best_name, best_score)
        return self._parsers[best_name]
