import unittest

from divinenex.db import InMemoryMetadataStore
from divinenex.errors import ValidationError
from divinenex.guests import GuestRegistry
from divinenex.models import normalize_guest_id


class NormalizeGuestIdTests(unittest.TestCase):
    def test_lowercases_and_replaces_symbols(self):
        self.assertEqual(normalize_guest_id("A@b.com"), "a_b_com")
        self.assertEqual(normalize_guest_id(" John.Doe+x@Mail.org "), "john_doe_x_mail_org")

    def test_is_deterministic(self):
        self.assertEqual(normalize_guest_id("a@b.com"), normalize_guest_id("A@B.COM"))


class GuestRegistryTests(unittest.TestCase):
    def setUp(self):
        self.metadata = InMemoryMetadataStore()
        self.registry = GuestRegistry(self.metadata)

    def test_submit_profile_upserts(self):
        guest_id = self.registry.submit_profile("Ann", "a@b.com", "555")
        self.registry.add_friend(guest_id, "c_d_com")
        self.registry.submit_profile("Ann Lee", "A@B.com", "556")
        guest = self.metadata.get_guest(guest_id)
        self.assertEqual(guest.name, "Ann Lee")
        self.assertEqual(guest.email, "A@B.com")
        self.assertEqual(guest.friends, ["c_d_com"])
        self.assertIsNotNone(guest.updated_at)

    def test_submit_profile_requires_all_fields(self):
        with self.assertRaises(ValidationError) as ctx:
            self.registry.submit_profile("Ann", "", "555")
        self.assertEqual(ctx.exception.reason, "missing_fields")
        self.assertEqual(self.metadata.guests, {})

    def test_add_friend_is_union(self):
        guest_id = self.registry.submit_profile("Ann", "a@b.com", "555")
        self.registry.add_friend(guest_id, "x")
        self.registry.add_friend(guest_id, "y")
        guest = self.registry.add_friend(guest_id, "x")
        self.assertEqual(guest.friends, ["x", "y"])

    def test_add_friend_to_unknown_guest_creates_nothing(self):
        self.assertIsNone(self.registry.add_friend("nobody_example_com", "x"))
        self.assertEqual(self.metadata.guests, {})

    def test_cannot_befriend_self(self):
        with self.assertRaises(ValidationError):
            self.registry.add_friend("a_b_com", "a_b_com")

    def test_search_requires_term(self):
        with self.assertRaises(ValidationError):
            self.registry.search("  ")


if __name__ == "__main__":
    unittest.main()
