"""
Scoring policy shared by the indexer (field weights baked into postings)
and the query engine (popularity and recency boosts).
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping

from .models import FIELD_CAPTION, FIELD_TAG, FIELD_TITLE

SECONDS_PER_DAY = 86400.0

# Rounding applied to final scores so float noise can't break id tie-breaks
SCORE_PRECISION = 9


@dataclass(frozen=True)
class ScoringPolicy:
    caption_weight: float = 1.0
    tag_weight: float = 2.0
    title_weight: float = 3.0
    popularity_weight: float = 0.5
    recency_weight: float = 0.25
    recency_half_life_days: float = 30.0

    def __post_init__(self):
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Scoring weight {name} must be a number")
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"Scoring weight {name} must be >= 0")

        if self.recency_half_life_days <= 0:
            raise ValueError("recency_half_life_days must be > 0")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ScoringPolicy":
        """Build a policy from a settings section, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in (raw or {}).items() if k in known})

    def field_weight(self, field_name: str) -> float:
        weights = {
            FIELD_CAPTION: self.caption_weight,
            FIELD_TAG: self.tag_weight,
            FIELD_TITLE: self.title_weight,
        }
        return weights[field_name]

    def popularity_boost(self, popularity: int) -> float:
        # log1p keeps very popular stickers from drowning out term matches
        return self.popularity_weight * math.log1p(max(popularity, 0))

    def recency_boost(self, created_at: float, now: float) -> float:
        age_days = max(now - created_at, 0.0) / SECONDS_PER_DAY
        return self.recency_weight * 0.5 ** (age_days / self.recency_half_life_days)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)
