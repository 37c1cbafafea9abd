import unittest

from divinenex.db import InMemoryMetadataStore, SqlMetadataStore, merge_guest_fields
from divinenex.errors import StoreError
from divinenex.models import Attachment, Post


def make_post(title: str, created_at: int, ttl_ms: int = 1000, **kwargs) -> Post:
    return Post(
        guest_id=kwargs.pop("guest_id", "a_b_com"),
        title=title,
        created_at=created_at,
        expires_at=created_at + ttl_ms,
        **kwargs,
    )


class MetadataStoreContract:
    """Behaviour shared by every MetadataStore implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_create_assigns_id_and_roundtrips(self):
        attachment = Attachment(blob_id="b1", url="https://example.test/blobs/b1", name="a.png")
        post_id = self.store.create_post(make_post("Hello", 10, text="World", attachment=attachment))
        self.assertTrue(post_id)
        loaded = self.store.get_post(post_id)
        self.assertEqual(loaded.id, post_id)
        self.assertEqual(loaded.text, "World")
        self.assertEqual(loaded.attachment, attachment)
        self.assertEqual(loaded.expires_at, 1010)

    def test_create_keeps_caller_id_and_rejects_duplicates(self):
        post = make_post("Hello", 10, id="a_b_com_10")
        self.assertEqual(self.store.create_post(post), "a_b_com_10")
        with self.assertRaises(StoreError) as ctx:
            self.store.create_post(make_post("Again", 10, id="a_b_com_10"))
        self.assertEqual(ctx.exception.reason, "duplicate_id")
        self.assertEqual(self.store.get_post("a_b_com_10").title, "Hello")

    def test_list_recent_posts_is_ordered_bounded_and_one_shot(self):
        for i in range(5):
            self.store.create_post(make_post(f"p{i}", created_at=i * 100))
        posts = self.store.list_recent_posts(3)
        self.assertEqual([p.title for p in posts], ["p4", "p3", "p2"])
        self.assertEqual(list(posts), [])

    def test_find_expired_uses_inclusive_threshold(self):
        self.store.create_post(make_post("old", 0, ttl_ms=100))
        self.store.create_post(make_post("edge", 0, ttl_ms=200))
        self.store.create_post(make_post("live", 0, ttl_ms=300))
        titles = sorted(p.title for p in self.store.find_expired(200))
        self.assertEqual(titles, ["edge", "old"])

    def test_delete_post_is_idempotent(self):
        post_id = self.store.create_post(make_post("bye", 0))
        self.store.delete_post(post_id)
        self.store.delete_post(post_id)
        self.assertIsNone(self.store.get_post(post_id))

    def test_record_delete_attempt_counts(self):
        post_id = self.store.create_post(make_post("stuck", 0))
        self.assertEqual(self.store.record_delete_attempt(post_id), 1)
        self.assertEqual(self.store.record_delete_attempt(post_id), 2)
        self.assertEqual(self.store.get_post(post_id).delete_attempts, 2)
        self.assertEqual(self.store.record_delete_attempt("missing"), 0)

    def test_referenced_blob_ids(self):
        self.store.create_post(
            make_post("a", 0, attachment=Attachment(blob_id="b1", url="u", name="n"))
        )
        self.store.create_post(make_post("b", 0))
        self.assertEqual(self.store.referenced_blob_ids(), {"b1"})

    def test_guest_upsert_merges_and_unions_friends(self):
        self.store.upsert_guest("a_b_com", {"name": "Ann", "email": "a@b.com", "friends": ["x"]})
        self.store.upsert_guest("a_b_com", {"phone": "123", "friends": ["y", "x"]})
        self.store.upsert_guest("a_b_com", {"name": "Annie"})
        guest = self.store.get_guest("a_b_com")
        self.assertEqual(guest.name, "Annie")
        self.assertEqual(guest.phone, "123")
        self.assertEqual(guest.friends, ["x", "y"])

    def test_guest_upsert_without_merge_replaces(self):
        self.store.upsert_guest("a_b_com", {"name": "Ann", "phone": "1", "friends": ["x"]})
        self.store.upsert_guest("a_b_com", {"name": "Bob"}, merge=False)
        guest = self.store.get_guest("a_b_com")
        self.assertEqual(guest.name, "Bob")
        self.assertIsNone(guest.phone)
        self.assertEqual(guest.friends, [])

    def test_search_guests_contains_case_insensitive(self):
        self.store.upsert_guest("ann_x_com", {"name": "Ann Lee", "email": "ann@x.com"})
        self.store.upsert_guest("bob_y_com", {"name": "Bob", "email": "bob@y.com"})
        self.assertEqual([g.guest_id for g in self.store.search_guests("LEE")], ["ann_x_com"])
        self.assertEqual([g.guest_id for g in self.store.search_guests("y.com")], ["bob_y_com"])
        self.assertEqual(self.store.search_guests("zzz"), [])


class InMemoryMetadataStoreTests(MetadataStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryMetadataStore()


class SqlMetadataStoreTests(MetadataStoreContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL client logic.
    """

    def make_store(self):
        return SqlMetadataStore("sqlite+pysqlite:///:memory:")

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            SqlMetadataStore("")


class MergeGuestFieldsTests(unittest.TestCase):
    def test_union_never_shrinks(self):
        merged = merge_guest_fields({"friends": ["a", "b"]}, {"friends": ["c"]})
        self.assertEqual(merged["friends"], ["a", "b", "c"])

    def test_scalar_last_writer_wins(self):
        merged = merge_guest_fields({"name": "A", "email": "e"}, {"name": "B"})
        self.assertEqual(merged, {"name": "B", "email": "e"})


if __name__ == "__main__":
    unittest.main()
