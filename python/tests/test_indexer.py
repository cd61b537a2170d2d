import threading
import unittest

from stickersearch.errors import InvalidRecordError
from stickersearch.indexer import StickerIndexer, _clean_keywords
from stickersearch.models import Posting, StickerRecord
from stickersearch.scoring import ScoringPolicy

from .test_utils import FIXED_NOW, StoreTestCase, fixed_clock, make_record

GRINNING = "\N{GRINNING FACE}"


class TestIndexTerms(StoreTestCase):
    """Test cases for deriving weighted terms from a record."""

    def setUp(self):
        super().setUp()
        self.indexer = StickerIndexer(self.store, clock=fixed_clock)

    def test_fields_carry_their_weights(self):
        """Caption, tag and title terms should get caption < tag < title weights."""
        record = make_record(
            "s1", caption="happy", emoji=(GRINNING,), keywords=("cute",), pack_title="Animals"
        )

        terms = self.indexer.index_terms(record)

        self.assertEqual(
            terms, {"happy": 1.0, GRINNING: 2.0, "cute": 2.0, "animals": 3.0}
        )

    def test_bare_emoji_string_is_one_tag(self):
        """A string emoji field should stay one tag, skin tone included."""
        thumbs = "\N{THUMBS UP SIGN}\N{EMOJI MODIFIER FITZPATRICK TYPE-1-2}"
        record = make_record("s1", pack_title="Hands", emoji=thumbs)

        self.assertEqual(record.emoji, (thumbs,))
        self.assertEqual(self.indexer.index_terms(record), {thumbs: 2.0, "hands": 3.0})

    def test_repeated_term_accumulates_weight(self):
        """A term in several fields should sum their weights."""
        record = make_record("s1", caption="cat", keywords=("cat",), pack_title="Cat pack")

        terms = self.indexer.index_terms(record)

        self.assertEqual(terms["cat"], 1.0 + 2.0 + 3.0)
        self.assertEqual(terms["pack"], 3.0)

    def test_pack_id_is_used_without_title(self):
        """The pack id should be indexed as the title when no title is known."""
        terms = self.indexer.index_terms(make_record("s1", pack_id="cats_by_bot"))
        self.assertEqual(terms, {"cats": 3.0, "by": 3.0, "bot": 3.0})

    def test_custom_policy_changes_weights(self):
        """Field weights should come from the scoring policy."""
        indexer = StickerIndexer(self.store, ScoringPolicy(caption_weight=0.5))
        self.assertEqual(indexer.index_terms(make_record("s1", caption="cat"))["cat"], 0.5)


class TestStickerIndexer(StoreTestCase):
    """Test cases for StickerIndexer writes."""

    def setUp(self):
        super().setUp()
        self.indexer = StickerIndexer(self.store, clock=fixed_clock)

    def postings_for(self, term):
        return self.store.get_posting_list(term)

    def test_ingest_posts_every_term(self):
        """Each derived term should get a posting for the new record."""
        self.indexer.ingest(make_record("s1", caption="happy cat", emoji=(GRINNING,)))

        self.assertEqual(self.postings_for("happy"), [Posting("s1", 1.0)])
        self.assertEqual(self.postings_for("cat"), [Posting("s1", 1.0)])
        self.assertEqual(self.postings_for(GRINNING), [Posting("s1", 2.0)])

    def test_ingest_is_idempotent(self):
        """Ingesting the same record twice should leave the index unchanged."""
        record = make_record("s1", caption="happy cat", emoji=(GRINNING,))
        self.indexer.ingest(record)
        first = self.store.stats()
        first_postings = self.postings_for("cat")

        self.indexer.ingest(record)

        self.assertEqual(self.store.stats()["total_terms"], first["total_terms"])
        self.assertEqual(self.postings_for("cat"), first_postings)
        self.assertEqual(self.store.integrity_check()["issues_found"], [])

    def test_update_drops_stale_terms(self):
        """Terms no longer derived from the record should lose their posting."""
        self.indexer.ingest(make_record("s1", caption="happy cat"))
        self.indexer.ingest(make_record("s1", caption="sad dog"))

        self.assertEqual(self.postings_for("happy"), [])
        self.assertEqual(self.postings_for("cat"), [])
        self.assertEqual(self.postings_for("dog"), [Posting("s1", 1.0)])
        self.assertEqual(self.store.integrity_check()["issues_found"], [])

    def test_update_keeps_other_records_postings(self):
        """Updating one record should not touch other records' entries."""
        self.indexer.ingest(make_record("s1", caption="cat"))
        self.indexer.ingest(make_record("s2", caption="cat"))
        self.indexer.ingest(make_record("s1", caption="dog"))

        self.assertEqual(self.postings_for("cat"), [Posting("s2", 1.0)])

    def test_remove_deletes_record_and_postings(self):
        """After removal no posting should reference the record."""
        self.indexer.ingest(make_record("s1", caption="cat", emoji=(GRINNING,)))
        self.indexer.ingest(make_record("s2", caption="cat"))

        self.assertTrue(self.indexer.remove("s1"))

        self.assertIsNone(self.store.get_record("s1"))
        self.assertEqual(self.postings_for("cat"), [Posting("s2", 1.0)])
        self.assertEqual(self.postings_for(GRINNING), [])
        self.assertEqual(self.store.integrity_check()["dangling_postings"], 0)

    def test_remove_unknown_sticker_returns_false(self):
        """Removing an unknown id should be a no-op."""
        self.assertFalse(self.indexer.remove("missing"))
        self.assertEqual(self.indexer.get_stats()["records_removed"], 0)

    def test_remove_pack_removes_only_that_pack(self):
        """Pack removal should retract every sticker of the pack and nothing else."""
        self.indexer.ingest(make_record("a1", pack_id="alpha", caption="cat"))
        self.indexer.ingest(make_record("a2", pack_id="alpha", caption="dog"))
        self.indexer.ingest(make_record("b1", pack_id="beta", caption="cat"))

        self.assertEqual(self.indexer.remove_pack("alpha"), 2)

        self.assertEqual(self.postings_for("cat"), [Posting("b1", 1.0)])
        self.assertEqual(self.postings_for("dog"), [])
        self.assertEqual(self.postings_for("alpha"), [])
        self.assertEqual(self.store.stats()["total_records"], 1)

    def test_ingest_rejects_missing_ids(self):
        """Records without a sticker id or pack id should be rejected."""
        with self.assertRaises(InvalidRecordError):
            self.indexer.ingest(StickerRecord(sticker_id="", pack_id="p"))
        with self.assertRaises(InvalidRecordError):
            self.indexer.ingest(StickerRecord(sticker_id="s1", pack_id="  "))

        self.assertEqual(self.store.stats()["total_records"], 0)

    def test_new_record_gets_clock_timestamps(self):
        """Missing timestamps should be filled from the clock."""
        stored = self.indexer.ingest(StickerRecord(sticker_id="s1", pack_id="p"))

        self.assertEqual(stored.created_at, FIXED_NOW)
        self.assertEqual(stored.last_seen, FIXED_NOW)
        self.assertEqual(stored.keywords, ())

    def test_update_keeps_earliest_created_at(self):
        """Re-ingesting should never move created_at forward."""
        self.indexer.ingest(make_record("s1", created_at=100.0))
        stored = self.indexer.ingest(make_record("s1", created_at=500.0))

        self.assertEqual(stored.created_at, 100.0)

    def test_update_never_lowers_popularity(self):
        """Popularity from the feed should not reset recorded selections."""
        self.indexer.ingest(make_record("s1"))
        self.indexer.record_selection("s1")
        self.indexer.record_selection("s1")

        stored = self.indexer.ingest(make_record("s1", popularity=0))

        self.assertEqual(stored.popularity, 2)
        self.assertEqual(self.store.get_record("s1").popularity, 2)

    def test_update_keeps_file_id_when_feed_omits_it(self):
        """A feed without file ids should not erase a known file id."""
        self.indexer.ingest(make_record("s1", file_id="FILE1"))
        stored = self.indexer.ingest(make_record("s1"))

        self.assertEqual(stored.file_id, "FILE1")

    def test_update_keeps_pack_title_when_feed_omits_it(self):
        """A feed without pack titles should not swap title terms for the pack id."""
        self.indexer.ingest(make_record("s1", pack_id="p1", pack_title="Cats"))
        stored = self.indexer.ingest(make_record("s1", pack_id="p1"))

        self.assertEqual(stored.pack_title, "Cats")
        self.assertEqual(self.postings_for("cats"), [Posting("s1", 3.0)])
        self.assertEqual(self.postings_for("p1"), [])

    def test_record_selection_unknown_sticker(self):
        """Selecting an unknown sticker should return None and count nothing."""
        self.assertIsNone(self.indexer.record_selection("missing"))
        self.assertEqual(self.indexer.get_stats()["selections_recorded"], 0)

    def test_stats_track_operations(self):
        """Indexer statistics should count each kind of write."""
        self.indexer.ingest(make_record("s1"))
        self.indexer.ingest(make_record("s1"))
        self.indexer.record_selection("s1")
        self.indexer.remove("s1")

        self.assertEqual(
            self.indexer.get_stats(),
            {
                "records_indexed": 1,
                "records_updated": 1,
                "records_removed": 1,
                "selections_recorded": 1,
            },
        )

    def test_rebuild_applies_new_policy(self):
        """rebuild should re-derive every posting with the current weights."""
        self.indexer.ingest(make_record("s1", caption="cat"))
        self.indexer.ingest(make_record("s2", caption="cat dog"))

        reweighted = StickerIndexer(self.store, ScoringPolicy(caption_weight=4.0))
        result = reweighted.rebuild()

        self.assertEqual(result["records"], 2)
        self.assertEqual(
            self.postings_for("cat"), [Posting("s1", 4.0), Posting("s2", 4.0)]
        )
        self.assertEqual(self.store.integrity_check()["issues_found"], [])

    def test_stale_records_lists_stickers_indexed_with_other_weights(self):
        """Only stickers whose postings depend on a changed weight are stale."""
        self.indexer.ingest(make_record("s1", caption="cat"))
        self.indexer.ingest(make_record("s2", pack_title="Cats"))

        reweighted = StickerIndexer(self.store, ScoringPolicy(caption_weight=4.0))

        self.assertEqual(self.indexer.stale_records(), [])
        self.assertEqual(reweighted.stale_records(), ["s1"])

        reweighted.rebuild()
        self.assertEqual(reweighted.stale_records(), [])

    def test_rebuild_repairs_drifted_postings(self):
        """rebuild should clear postings that no record accounts for."""
        self.indexer.ingest(make_record("s1", caption="cat"))
        with self.store.transaction() as txn:
            txn.put_posting_list("ghost", [Posting("nobody", 1.0)])

        self.indexer.rebuild()

        self.assertEqual(self.postings_for("ghost"), [])
        self.assertEqual(self.store.integrity_check()["issues_found"], [])


class TestKeywordTagging(StoreTestCase):
    """Test cases for keyword tags attached by users."""

    def setUp(self):
        super().setUp()
        self.indexer = StickerIndexer(self.store, clock=fixed_clock)

    def test_clean_keywords_splits_and_deduplicates(self):
        """Keywords should be split on whitespace and de-duplicated case-insensitively."""
        self.assertEqual(_clean_keywords(["happy cat", "Cat", " dog "]), ["happy", "cat", "dog"])
        self.assertEqual(_clean_keywords("a b a"), ["a", "b"])

    def test_add_keywords_creates_unknown_sticker_from_template(self):
        """Tagging a sticker seen only in chat should index it."""
        template = StickerRecord(
            sticker_id="s1", pack_id="cats", emoji=(GRINNING,), file_id="FILE1"
        )

        stored = self.indexer.add_keywords(template, ["grumpy"])

        self.assertEqual(stored.keywords, ("grumpy",))
        self.assertEqual(self.store.get_posting_list("grumpy"), [Posting("s1", 2.0)])
        self.assertEqual(self.store.get_record("s1").file_id, "FILE1")

    def test_add_keywords_by_id_requires_known_sticker(self):
        """A bare id should only tag stickers that are already indexed."""
        self.assertIsNone(self.indexer.add_keywords("missing", ["cat"]))
        self.assertEqual(self.store.stats()["total_records"], 0)

    def test_add_keywords_appends_without_duplicates(self):
        """Existing keywords should be kept and repeats ignored."""
        self.indexer.ingest(make_record("s1", keywords=("cat",)))

        stored = self.indexer.add_keywords("s1", "CAT orange")

        self.assertEqual(stored.keywords, ("cat", "orange"))

    def test_keywords_survive_feed_updates(self):
        """A feed record without keywords should keep user tags."""
        self.indexer.add_keywords(make_record("s1", caption="cat"), ["grumpy"])
        self.indexer.ingest(make_record("s1", caption="cat"))

        self.assertEqual(self.indexer.keywords_for("s1"), ("grumpy",))
        self.assertEqual(self.store.get_posting_list("grumpy"), [Posting("s1", 2.0)])

    def test_remove_keywords_drops_postings(self):
        """Removing a keyword should remove its posting."""
        self.indexer.ingest(make_record("s1", keywords=("grumpy", "orange")))

        self.assertEqual(self.indexer.remove_keywords("s1", ["GRUMPY"]), 1)

        self.assertEqual(self.indexer.keywords_for("s1"), ("orange",))
        self.assertEqual(self.store.get_posting_list("grumpy"), [])

    def test_remove_keywords_unknown_sticker(self):
        """Untagging an unknown sticker should return None."""
        self.assertIsNone(self.indexer.remove_keywords("missing", ["cat"]))

    def test_keywords_for_unknown_sticker(self):
        self.assertIsNone(self.indexer.keywords_for("missing"))


class TestConcurrentIngest(StoreTestCase):
    """Concurrent writers must leave one consistent index."""

    def test_concurrent_updates_of_same_sticker(self):
        """Racing updates of one id should leave exactly one record's postings."""
        indexer = StickerIndexer(self.store, clock=fixed_clock)
        captions = ["cat", "dog", "bird", "fish"]

        def worker(caption):
            for _ in range(5):
                indexer.ingest(make_record("s1", caption=caption))

        threads = [threading.Thread(target=worker, args=(c,)) for c in captions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final_caption = self.store.get_record("s1").caption
        for caption in captions:
            expected = [Posting("s1", 1.0)] if caption == final_caption else []
            self.assertEqual(self.store.get_posting_list(caption), expected)
        self.assertEqual(self.store.integrity_check()["issues_found"], [])

    def test_concurrent_ingest_of_distinct_stickers_shares_postings(self):
        """Writers adding different ids to one term should not lose entries."""
        indexer = StickerIndexer(self.store, clock=fixed_clock)

        def worker(start):
            for i in range(start, start + 10):
                indexer.ingest(make_record(f"s{i:03d}", caption="cat"))

        threads = [threading.Thread(target=worker, args=(n * 10,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(self.store.get_posting_list("cat")), 40)


if __name__ == "__main__":
    unittest.main()
