"""
Tokenizer/normalizer for sticker captions, pack titles, keywords and emoji.

Text is NFKD-decomposed, stripped of combining marks and case-folded, then
split on anything that is not a letter or digit. Emoji are matched first and
kept as single atomic terms, including ZWJ sequences, skin-tone modifiers,
flags and keycaps, so a ZWJ sequence is one term rather than three.
"""

import re
import unicodedata
from typing import Any, Iterable, List, Tuple

# Separator used when the store joins lists into a single column
TERM_SEPARATOR = "\x1f"

# Emitted in place of undecodable bytes or lone surrogates
SENTINEL_TERM = "\N{REPLACEMENT CHARACTER}"

_VS15 = "\N{VARIATION SELECTOR-15}"
_VS16 = "\N{VARIATION SELECTOR-16}"
_ZWJ = "\N{ZERO WIDTH JOINER}"
_KEYCAP = "\N{COMBINING ENCLOSING KEYCAP}"

# Code point ranges that start an emoji
_EMOJI_BASE_RANGES = [
    (0x00A9, 0x00A9),
    (0x00AE, 0x00AE),
    (0x203C, 0x203C),
    (0x2049, 0x2049),
    (0x2122, 0x2122),
    (0x2139, 0x2139),
    (0x2194, 0x2199),
    (0x21A9, 0x21AA),
    (0x231A, 0x231B),
    (0x2328, 0x2328),
    (0x23CF, 0x23CF),
    (0x23E9, 0x23F3),
    (0x23F8, 0x23FA),
    (0x24C2, 0x24C2),
    (0x25AA, 0x25AB),
    (0x25B6, 0x25B6),
    (0x25C0, 0x25C0),
    (0x25FB, 0x25FE),
    (0x2600, 0x27BF),
    (0x2934, 0x2935),
    (0x2B05, 0x2B07),
    (0x2B1B, 0x2B1C),
    (0x2B50, 0x2B50),
    (0x2B55, 0x2B55),
    (0x3030, 0x3030),
    (0x303D, 0x303D),
    (0x3297, 0x3297),
    (0x3299, 0x3299),
    (0x1F000, 0x1F1E5),
    (0x1F200, 0x1FAFF),
]
_EMOJI_MODIFIER_RANGES = [
    (0xFE0E, 0xFE0F),
    (0x1F3FB, 0x1F3FF),  # skin tones
    (0xE0020, 0xE007F),  # subdivision flag tags
]
_REGIONAL_INDICATOR_RANGES = [(0x1F1E6, 0x1F1FF)]


def _char_class(ranges: Iterable[Tuple[int, int]]) -> str:
    parts = []
    for start, end in ranges:
        if start == end:
            parts.append(re.escape(chr(start)))
        else:
            parts.append(f"{re.escape(chr(start))}-{re.escape(chr(end))}")
    return "[" + "".join(parts) + "]"


_BASE = _char_class(_EMOJI_BASE_RANGES)
_MODIFIER = _char_class(_EMOJI_MODIFIER_RANGES)
_REGIONAL = _char_class(_REGIONAL_INDICATOR_RANGES)

_EMOJI_PATTERN = (
    # keycaps
    f"[0-9#*][{_VS15}{_VS16}]?{_KEYCAP}"
    # flags are pairs of regional indicators
    f"|{_REGIONAL}{{2}}"
    # base + modifiers, optionally joined with ZWJ
    f"|{_BASE}{_MODIFIER}*(?:{_ZWJ}{_BASE}{_MODIFIER}*)*"
    f"|{_REGIONAL}"
)

_TOKEN_RE = re.compile(
    f"(?P<emoji>{_EMOJI_PATTERN})"
    f"|(?P<invalid>{SENTINEL_TERM}+)"
    f"|(?P<text>(?:(?!{_EMOJI_PATTERN})[^{SENTINEL_TERM}])+)"
)

_WORD_RE = re.compile(r"[^\W_]+")


def _coerce_text(text: Any) -> str:
    if text is None:
        return ""

    if isinstance(text, (bytes, bytearray)):
        return bytes(text).decode("utf-8", errors="replace")

    if not isinstance(text, str):
        text = str(text)

    # Lone surrogates can't be encoded; the round-trip turns them into U+FFFD
    return text.encode("utf-16", "surrogatepass").decode("utf-16", "replace")


def _fold_emoji(token: str) -> str:
    for selector in (_VS15, _VS16):
        token = token.replace(selector, "")
    return token


def _fold_words(segment: str) -> List[str]:
    decomposed = unicodedata.normalize("NFKD", segment)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _WORD_RE.findall(stripped.casefold())


def normalize(text: Any) -> List[str]:
    """
    Turn raw text into an ordered list of index terms.

    Never raises. Duplicates and order are preserved so callers can weight by
    occurrence; use ``unique_terms`` for a de-duplicated view.

    Args:
        text: str, bytes, None or anything with a ``str()``

    Returns:
        List of non-empty terms
    """
    source = unicodedata.normalize("NFC", _coerce_text(text))
    terms: List[str] = []

    for match in _TOKEN_RE.finditer(source):
        kind = match.lastgroup
        if kind == "emoji":
            term = _fold_emoji(match.group())
            if term:
                terms.append(term)
        elif kind == "invalid":
            terms.append(SENTINEL_TERM)
        else:
            terms.extend(_fold_words(match.group()))

    return terms


def unique_terms(text: Any) -> List[str]:
    """Normalize and drop repeated terms, keeping first-seen order."""
    return list(dict.fromkeys(normalize(text)))


def is_emoji_term(term: str) -> bool:
    match = _TOKEN_RE.fullmatch(term)
    return bool(match) and match.lastgroup == "emoji"


def is_valid_term(term: Any) -> bool:
    """True if ``term`` could have been produced by ``normalize``."""
    if not isinstance(term, str) or not term:
        return False
    if TERM_SEPARATOR in term:
        return False
    return not any(c.isspace() or unicodedata.category(c) == "Cc" for c in term)
