import math
import unittest
from unittest.mock import patch

from stickersearch.errors import QueryTimeoutError
from stickersearch.indexer import StickerIndexer
from stickersearch.query_engine import QueryEngine
from stickersearch.scoring import SECONDS_PER_DAY, ScoringPolicy

from .test_utils import FIXED_NOW, StoreTestCase, fixed_clock, make_record

GRINNING = "\N{GRINNING FACE}"


class QueryEngineTestCase(StoreTestCase):
    def setUp(self):
        super().setUp()
        self.indexer = StickerIndexer(self.store, clock=fixed_clock)
        self.engine = QueryEngine(self.store, clock=fixed_clock)

    def ids(self, results):
        return [result.sticker_id for result in results]


class TestQueryEngineBasics(QueryEngineTestCase):
    """Test cases for matching and ranking."""

    def setUp(self):
        super().setUp()
        self.indexer.ingest(make_record("1", emoji=(GRINNING,), caption="happy cat"))
        self.indexer.ingest(make_record("2", emoji=(GRINNING,), caption="sad dog"))

    def test_emoji_query_matches_both_stickers(self):
        """An emoji shared by two stickers should return both, tied scores by id."""
        results = self.engine.search(GRINNING, 10, 0)

        self.assertEqual(self.ids(results), ["1", "2"])
        self.assertEqual(results[0].score, results[1].score)

    def test_word_query_matches_only_captioned_sticker(self):
        """A caption word should only match the sticker that has it."""
        self.assertEqual(self.ids(self.engine.search("cat", 10, 0)), ["1"])

    def test_or_semantics(self):
        """A sticker matching any query term should be returned."""
        self.assertEqual(self.ids(self.engine.search("cat dog", 10, 0)), ["1", "2"])

    def test_more_matched_terms_rank_higher(self):
        """Matching more terms should add up to a higher score."""
        results = self.engine.search("sad dog cat", 10, 0)
        self.assertEqual(self.ids(results), ["2", "1"])
        self.assertGreater(results[0].score, results[1].score)

    def test_query_is_normalized_like_the_index(self):
        """Case and accents in the query should not matter."""
        self.assertEqual(self.ids(self.engine.search("  CÁT!  ", 10, 0)), ["1"])

    def test_empty_query_returns_empty(self):
        """Empty or whitespace-only queries should return nothing."""
        self.assertEqual(self.engine.search("", 10, 0), [])
        self.assertEqual(self.engine.search("   ", 10, 0), [])
        self.assertEqual(self.engine.search("?!", 10, 0), [])

    def test_unknown_term_returns_empty(self):
        self.assertEqual(self.engine.search("zebra", 10, 0), [])

    def test_zero_limit_returns_empty(self):
        self.assertEqual(self.engine.search("cat", 0, 0), [])

    def test_negative_limit_or_offset_raises(self):
        """Negative paging arguments are a caller bug."""
        with self.assertRaises(ValueError):
            self.engine.search("cat", -1, 0)
        with self.assertRaises(ValueError):
            self.engine.search("cat", 10, -1)

    def test_results_carry_matched_terms_and_file_id(self):
        """Results should say which terms matched and which file to send."""
        self.indexer.ingest(make_record("3", caption="cat", file_id="FILE3"))

        results = {r.sticker_id: r for r in self.engine.search("cat", 10, 0)}

        self.assertEqual(results["3"].matched_terms, ("cat",))
        self.assertEqual(results["3"].file_id, "FILE3")
        self.assertIsNone(results["1"].file_id)
        self.assertEqual(results["3"].as_pair(), ("3", results["3"].score))

    def test_candidates_returns_unranked_ids(self):
        self.assertEqual(self.engine.candidates("cat dog"), {"1", "2"})
        self.assertEqual(self.engine.candidates(""), set())

    def test_repeated_query_is_deterministic(self):
        """The same query on the same index should give identical results."""
        first = self.engine.search(GRINNING + " cat", 10, 0)
        second = self.engine.search(GRINNING + " cat", 10, 0)
        self.assertEqual(first, second)

    def test_removed_sticker_is_not_returned(self):
        self.indexer.remove("1")
        self.assertEqual(self.ids(self.engine.search(GRINNING, 10, 0)), ["2"])


class TestScoring(QueryEngineTestCase):
    """Test cases for field weights and boosts."""

    def test_title_outranks_tag_outranks_caption(self):
        """The same word should score by the field it appears in."""
        self.indexer.ingest(make_record("caption", pack_id="p1", caption="cat"))
        self.indexer.ingest(make_record("tag", pack_id="p2", keywords=("cat",)))
        self.indexer.ingest(make_record("title", pack_id="p3", pack_title="cat"))

        self.assertEqual(
            self.ids(self.engine.search("cat", 10, 0)), ["title", "tag", "caption"]
        )

    def test_popularity_breaks_equal_term_scores(self):
        """A more often chosen sticker should rank above an equal match."""
        self.indexer.ingest(make_record("a", caption="cat"))
        self.indexer.ingest(make_record("b", caption="cat"))
        self.indexer.record_selection("b")

        results = self.engine.search("cat", 10, 0)

        self.assertEqual(self.ids(results), ["b", "a"])
        self.assertAlmostEqual(
            results[0].score - results[1].score, 0.5 * math.log1p(1), places=7
        )

    def test_recent_sticker_ranks_above_old_one(self):
        """Recency boost should decay with age."""
        old = FIXED_NOW - 90 * SECONDS_PER_DAY
        self.indexer.ingest(make_record("a", caption="cat", created_at=old))
        self.indexer.ingest(make_record("b", caption="cat"))

        self.assertEqual(self.ids(self.engine.search("cat", 10, 0)), ["b", "a"])

    def test_score_formula(self):
        """Score should be term weight plus popularity and recency boosts."""
        policy = ScoringPolicy()
        self.indexer.ingest(make_record("a", caption="cat", popularity=3))

        result = self.engine.search("cat", 10, 0)[0]

        expected = 1.0 + policy.popularity_boost(3) + policy.recency_boost(FIXED_NOW, FIXED_NOW)
        self.assertAlmostEqual(result.score, expected, places=7)

    def test_ties_break_by_sticker_id(self):
        """Equal scores should be ordered by ascending sticker id."""
        for sticker_id in ["c", "a", "b"]:
            self.indexer.ingest(make_record(sticker_id, caption="cat"))

        self.assertEqual(self.ids(self.engine.search("cat", 10, 0)), ["a", "b", "c"])


class TestPagination(QueryEngineTestCase):
    """Test cases for limit/offset paging."""

    def setUp(self):
        super().setUp()
        for i in range(25):
            self.indexer.ingest(make_record(f"s{i:02d}", caption="cat", popularity=i % 4))

    def test_pages_cover_ranking_without_gap_or_overlap(self):
        """Consecutive pages should concatenate to the full ranking."""
        full = self.engine.search("cat", 100, 0)
        pages = []
        for offset in range(0, 25, 10):
            pages.extend(self.engine.search("cat", 10, offset))

        self.assertEqual(len(full), 25)
        self.assertEqual(self.ids(pages), self.ids(full))

    def test_offset_past_end_returns_empty(self):
        self.assertEqual(self.engine.search("cat", 10, 25), [])

    def test_limit_caps_results(self):
        self.assertEqual(len(self.engine.search("cat", 7, 0)), 7)


class TestQueryDeadline(QueryEngineTestCase):
    """Test cases for query timeouts."""

    def setUp(self):
        super().setUp()
        self.indexer.ingest(make_record("a", caption="cat"))

    def test_expired_deadline_raises_timeout(self):
        """A query past its deadline should raise QueryTimeoutError."""
        with self.assertRaises(QueryTimeoutError):
            self.engine.search("cat", 10, 0, timeout=-1.0)

    def test_deadline_checked_between_terms(self):
        """Time running out mid-query should abort the query."""
        calls = []

        def fake_monotonic():
            calls.append(1)
            return 0.0 if len(calls) <= 2 else 10.0

        with patch("stickersearch.query_engine.time.monotonic", side_effect=fake_monotonic):
            with self.assertRaises(QueryTimeoutError):
                self.engine.search("cat dog", 10, 0, timeout=1.0)

    def test_timeout_leaves_index_untouched(self):
        """A timed-out query should have no side effects."""
        before = self.store.stats()
        with self.assertRaises(QueryTimeoutError):
            self.engine.search("cat", 10, 0, timeout=-1.0)

        self.assertEqual(self.store.stats(), before)
        self.assertEqual(self.ids(self.engine.search("cat", 10, 0)), ["a"])

    def test_generous_deadline_succeeds(self):
        self.assertEqual(self.ids(self.engine.search("cat", 10, 0, timeout=30.0)), ["a"])


if __name__ == "__main__":
    unittest.main()
