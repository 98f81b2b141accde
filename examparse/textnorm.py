"""
Text Normalization
==================
Normalization helpers shared by the heading rules and the course detector.

Heading and metadata patterns run on folded text: diacritics stripped,
dash variants unified to "-", special spaces and soft hyphens removed.
"""

import re
import unicodedata

_NBSP = "\u00a0"
_THIN = "\u2009"
_NNBSP = "\u202f"

_RE_SOFT_HYPHEN = re.compile("\u00ad")
_RE_SPECIAL_SPACES = re.compile("[{}]".format(re.escape(_NBSP + _THIN + _NNBSP)))
# figure dash, en dash, em dash, minus sign
_RE_DASHES = re.compile("[\u2012\u2013\u2014\u2212]")
_RE_MANY_SPACES = re.compile(r"[ \t]+")
_RE_SPACE_BEFORE_NL = re.compile(r"\s+\n")
_RE_ANY_SPACE = re.compile(r"\s+")


def fold_diacritics(text: str) -> str:
    """Strip combining marks: "fråga" -> "fraga", "poäng" -> "poang"."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_dashes(text: str) -> str:
    return _RE_DASHES.sub("-", text)


def normalize_spaces(text: str) -> str:
    s = _RE_SOFT_HYPHEN.sub("", text)
    return _RE_SPECIAL_SPACES.sub(" ", s)


def normalize_keep_lines(text: str) -> str:
    """Fold diacritics and dashes, collapse spaces but keep line breaks."""
    if not text:
        return ""
    s = normalize_dashes(fold_diacritics(normalize_spaces(text)))
    s = _RE_MANY_SPACES.sub(" ", s)
    return _RE_SPACE_BEFORE_NL.sub("\n", s)


def normalize_line(text: str) -> str:
    """Single-line normalization used for matching heading rules."""
    return normalize_keep_lines(text).strip()


def collapse_whitespace(text: str) -> str:
    return _RE_ANY_SPACE.sub(" ", normalize_spaces(text)).strip()
