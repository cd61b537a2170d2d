import math
import unittest

from stickersearch.models import FIELD_CAPTION, FIELD_TAG, FIELD_TITLE
from stickersearch.scoring import SECONDS_PER_DAY, ScoringPolicy


class TestScoringPolicy(unittest.TestCase):
    """Test cases for ScoringPolicy."""

    def test_default_field_weights_are_ordered(self):
        """Caption < tag < title by default."""
        policy = ScoringPolicy()
        self.assertLess(policy.field_weight(FIELD_CAPTION), policy.field_weight(FIELD_TAG))
        self.assertLess(policy.field_weight(FIELD_TAG), policy.field_weight(FIELD_TITLE))

    def test_popularity_boost_is_log_scaled(self):
        policy = ScoringPolicy(popularity_weight=1.0)
        self.assertEqual(policy.popularity_boost(0), 0.0)
        self.assertAlmostEqual(policy.popularity_boost(9), math.log(10))

    def test_recency_boost_halves_each_half_life(self):
        """A sticker one half-life old should get half the fresh boost."""
        policy = ScoringPolicy(recency_weight=1.0, recency_half_life_days=10.0)
        now = 1000 * SECONDS_PER_DAY

        self.assertAlmostEqual(policy.recency_boost(now, now), 1.0)
        self.assertAlmostEqual(policy.recency_boost(now - 10 * SECONDS_PER_DAY, now), 0.5)

    def test_future_timestamps_get_full_boost(self):
        policy = ScoringPolicy(recency_weight=1.0)
        self.assertEqual(policy.recency_boost(200.0, 100.0), 1.0)

    def test_from_mapping_ignores_unknown_keys(self):
        policy = ScoringPolicy.from_mapping({"tag_weight": 5, "colour": "blue"})
        self.assertEqual(policy.tag_weight, 5)
        self.assertEqual(ScoringPolicy.from_mapping(None), ScoringPolicy())

    def test_invalid_weights_are_rejected(self):
        """Negative, non-numeric and non-finite weights should raise ValueError."""
        for bad in ({"caption_weight": -1}, {"tag_weight": "2"}, {"title_weight": True},
                    {"popularity_weight": float("nan")}, {"recency_half_life_days": 0}):
            with self.assertRaises(ValueError, msg=str(bad)):
                ScoringPolicy.from_mapping(bad)

    def test_as_dict_round_trips(self):
        policy = ScoringPolicy(caption_weight=1.5)
        self.assertEqual(ScoringPolicy.from_mapping(policy.as_dict()), policy)


if __name__ == "__main__":
    unittest.main()
