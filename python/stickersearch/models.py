from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

# Field names used when weighting occurrences of a term
FIELD_CAPTION = "caption"
FIELD_TAG = "tag"
FIELD_TITLE = "title"


@dataclass(frozen=True)
class StickerRecord:
    """
    One sticker as stored in the index.

    ``keywords`` set to None on an incoming record means "keep whatever
    keywords are already stored"; stored records always carry a tuple.
    """

    sticker_id: str
    pack_id: str
    emoji: Tuple[str, ...] = ()
    caption: Optional[str] = None
    pack_title: Optional[str] = None
    keywords: Optional[Tuple[str, ...]] = None
    file_id: Optional[str] = None
    created_at: float = 0.0
    last_seen: float = 0.0
    popularity: int = 0

    def __post_init__(self):
        # Accept lists from callers but keep the record hashable; a bare
        # string is one emoji tag, not a sequence of codepoints
        emoji = (self.emoji,) if isinstance(self.emoji, str) else self.emoji
        object.__setattr__(self, "emoji", tuple(emoji or ()))
        if self.keywords is not None:
            object.__setattr__(self, "keywords", tuple(self.keywords))

    def with_changes(self, **changes) -> "StickerRecord":
        return replace(self, **changes)


@dataclass(frozen=True, order=True)
class Posting:
    """One entry of a posting list: a record and its weight under the term."""

    sticker_id: str
    weight: float


@dataclass(frozen=True)
class ScoredResult:
    """A ranked search hit as handed to the transport layer."""

    sticker_id: str
    score: float
    matched_terms: Tuple[str, ...] = field(default=())
    file_id: Optional[str] = None

    def as_pair(self) -> Tuple[str, float]:
        return self.sticker_id, self.score


@dataclass(frozen=True)
class Tagger:
    """A chat user who asked to tag stickers, and whether an admin approved."""

    user_id: int
    username: str
    allowed: bool = False
    registered_at: float = 0.0
