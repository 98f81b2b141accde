"""
Token Graph Builder
===================
Accumulates accepted main/sub question tokens, deduplicates them by key and
assembles the final sequence in document order.

Insertion order (``main_order`` and each main's ``sub_letters``) drives
parent inference while building; the presented order is always document
order: page ascending, top to bottom, left to right.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .models import DetectionResult, Position, Token, TokenKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 150


def token_key(main: str, letter: Optional[str] = None) -> str:
    """Normalized key: "3" for a main, "3a" for a sub."""
    return f"{int(main)}{(letter or '').lower()}"


class TokenGraph:
    """Insertion-ordered main → sub-letter graph with a hard size cap."""

    def __init__(self, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.max_tokens = max_tokens
        self.main_order: list[str] = []
        self.sub_letters: dict[str, list[str]] = {}
        self._tokens: dict[str, Token] = {}
        self._cap_logged = False

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, key: str) -> bool:
        return key in self._tokens

    def get(self, key: str) -> Optional[Token]:
        return self._tokens.get(key)

    @property
    def is_full(self) -> bool:
        return len(self._tokens) >= self.max_tokens

    def _check_capacity(self) -> bool:
        if not self.is_full:
            return True
        if not self._cap_logged:
            logger.warning(
                f"Token cap of {self.max_tokens} reached; further tokens ignored"
            )
            self._cap_logged = True
        return False

    def _record_duplicate(self, token: Token, page: int, x: float, y: float):
        token.duplicate_positions.append(Position(page=page, x=x, y=y))

    def add_main(
        self,
        number: int | str,
        page: int,
        x: float,
        y: float,
        confidence: float,
    ) -> Optional[Token]:
        key = token_key(str(number))
        existing = self._tokens.get(key)
        if existing is not None:
            self._record_duplicate(existing, page, x, y)
            return existing
        if not self._check_capacity():
            return None

        token = Token(
            token=key, kind=TokenKind.MAIN, page=page, x=x, y=y,
            confidence=confidence,
        )
        self._tokens[key] = token
        self.main_order.append(key)
        self.sub_letters[key] = []
        return token

    def add_sub(
        self,
        parent: int | str,
        letter: str,
        page: int,
        x: float,
        y: float,
        confidence: float,
    ) -> Optional[Token]:
        parent_key = token_key(str(parent))
        if parent_key not in self.sub_letters:
            logger.debug(f"Sub '{letter}' dropped: main {parent_key} not accepted")
            return None

        key = token_key(parent_key, letter)
        existing = self._tokens.get(key)
        if existing is not None:
            self._record_duplicate(existing, page, x, y)
            return existing
        if not self._check_capacity():
            return None

        token = Token(
            token=key, kind=TokenKind.SUB, parent=parent_key, page=page,
            x=x, y=y, confidence=confidence,
        )
        self._tokens[key] = token
        self.sub_letters[parent_key].append(key[len(parent_key):])
        return token

    def subs_of(self, main_key: str) -> list[Token]:
        return [
            self._tokens[main_key + letter]
            for letter in self.sub_letters.get(main_key, [])
        ]

    def iter_tokens(self) -> Iterable[Token]:
        """All tokens in insertion order: each main followed by its subs."""
        for main_key in self.main_order:
            yield self._tokens[main_key]
            yield from self.subs_of(main_key)

    def assemble(self, debug: Optional[dict] = None) -> DetectionResult:
        """
        Walk ``main_order``; a main with subs is presented by its subs,
        otherwise by itself. The sequence is then sorted into document order.
        """
        sequence: list[Token] = []
        for main_key in self.main_order:
            subs = self.subs_of(main_key)
            sequence.extend(subs if subs else [self._tokens[main_key]])

        mains = [self._tokens[k] for k in self.main_order]
        return DetectionResult(
            tokens=sorted(sequence, key=lambda t: t.sort_key),
            mains=sorted(mains, key=lambda t: t.sort_key),
            debug=debug,
        )


def merge_results(results: Iterable[DetectionResult]) -> DetectionResult:
    """
    Final cross-stage deduplication. Tokens sharing a key collapse into the
    first one seen; later occurrences become duplicate position evidence.
    """
    mains: dict[str, Token] = {}
    subs: dict[str, Token] = {}

    def absorb(target: dict[str, Token], token: Token):
        existing = target.get(token.token)
        if existing is None:
            target[token.token] = token.model_copy(deep=True)
            return
        existing.duplicate_positions.append(
            Position(page=token.page, x=token.x, y=token.y)
        )
        existing.duplicate_positions.extend(
            p.model_copy() for p in token.duplicate_positions
        )
        if existing.points is None and token.points is not None:
            existing.points = token.points

    for result in results:
        main_keys = {t.token for t in result.mains}
        for token in result.mains:
            absorb(mains, token)
        for token in result.tokens:
            if token.kind == TokenKind.SUB:
                absorb(subs, token)
            elif token.token not in main_keys:
                absorb(mains, token)

    parents_with_subs = {t.parent for t in subs.values()}
    sequence = [t for k, t in mains.items() if k not in parents_with_subs]
    sequence.extend(subs.values())
    return DetectionResult(
        tokens=sorted(sequence, key=lambda t: t.sort_key),
        mains=sorted(mains.values(), key=lambda t: t.sort_key),
    )
