import re
import unittest

from chiccanto.services.cards import (
    CardCorruptError,
    CardLockedError,
    SetupKeyRequiredError,
    apply_card_update,
    build_new_card,
    load_card,
    make_setup_key,
    make_token,
    mint_card,
    normalize_init,
    sanitize_card_for_client,
    setup_key_matches,
    update_card,
)
from chiccanto.services.kv_store import MemoryKVStore


class TestCardConstruction(unittest.TestCase):
    def test_token_and_setup_key_shapes(self):
        self.assertRegex(make_token(), r"^[0-9a-f]{8}-[0-9a-f]{4}$")
        key = make_setup_key()
        self.assertEqual(len(key), 22)
        self.assertTrue(re.fullmatch(r"[A-Za-z0-9_-]{22}", key))

    def test_normalize_init_defaults(self):
        self.assertEqual(
            normalize_init(None),
            {"product_id": None, "theme_id": None, "card_key": None, "fields": 9},
        )
        n = normalize_init({"product_id": "christmas", "card_key": "  men-novice1 ", "fields": 4, "theme_id": ""})
        self.assertEqual(n["card_key"], "men-novice1")
        self.assertEqual(n["fields"], 4)
        self.assertIsNone(n["theme_id"])
        self.assertEqual(normalize_init({"fields": 40})["fields"], 9)
        self.assertEqual(normalize_init({"fields": True})["fields"], 9)

    def test_new_card_starts_unconfigured(self):
        card = build_new_card({"card_key": "women-novice1"}, token="aaaaaaaa-bbbb")
        self.assertEqual(card["token"], "aaaaaaaa-bbbb")
        self.assertFalse(card["configured"])
        self.assertFalse(card["revealed"])
        self.assertIsNone(card["choice"])
        self.assertIsNone(card["reveal_amount"])
        self.assertIsNone(card["board"])
        self.assertEqual(card["card_key"], "women-novice1")
        self.assertTrue(card["setup_key"])

    def test_mint_card_persists(self):
        store = MemoryKVStore()
        card = mint_card(store, {})
        self.assertEqual(store.get_json(card["token"]), card)


class TestSanitize(unittest.TestCase):
    def test_setup_key_hidden_unless_proven(self):
        card = {"token": "stored", "setup_key": "secret", "choice": None}
        out = sanitize_card_for_client(card, "url-token")
        self.assertEqual(out["token"], "url-token")
        self.assertNotIn("setup_key", out)
        self.assertIn("setup_key", card)
        self.assertEqual(sanitize_card_for_client(card, "url-token", include_setup_key=True)["setup_key"], "secret")

    def test_setup_key_matches(self):
        card = {"setup_key": "abc"}
        self.assertTrue(setup_key_matches(card, "abc"))
        self.assertTrue(setup_key_matches(card, " abc "))
        self.assertFalse(setup_key_matches(card, "abd"))
        self.assertFalse(setup_key_matches(card, ""))
        self.assertFalse(setup_key_matches({}, "abc"))


class TestApplyCardUpdate(unittest.TestCase):
    def setUp(self):
        self.card = build_new_card({}, token="aaaaaaaa-bbbb", setup_key="setup")

    def test_sender_configures_with_setup_key(self):
        nxt = apply_card_update(self.card, {"configured": True, "choice": "gold", "reveal_amount": 50}, setup_ok=True)
        self.assertTrue(nxt["configured"])
        self.assertEqual(nxt["choice"], "gold")
        self.assertEqual(nxt["reveal_amount"], 50)
        self.assertFalse(self.card["configured"])

    def test_sender_fields_need_setup_key(self):
        with self.assertRaises(SetupKeyRequiredError):
            apply_card_update(self.card, {"choice": "gold"}, setup_ok=False)

    def test_unchanged_sender_fields_pass_without_setup_key(self):
        nxt = apply_card_update(self.card, {"configured": False, "choice": None, "fields": 9}, setup_ok=False)
        self.assertEqual(nxt, self.card)

    def test_configured_outcome_is_locked(self):
        configured = apply_card_update(self.card, {"configured": True, "choice": "gold", "reveal_amount": 50}, setup_ok=True)
        with self.assertRaises(CardLockedError):
            apply_card_update(configured, {"choice": "silver"}, setup_ok=True)
        with self.assertRaises(CardLockedError):
            apply_card_update(configured, {"reveal_amount": 75}, setup_ok=True)
        with self.assertRaises(CardLockedError):
            apply_card_update(configured, {"configured": False}, setup_ok=True)
        same = apply_card_update(configured, {"configured": True, "choice": "gold", "reveal_amount": 50.0}, setup_ok=True)
        self.assertEqual(same["choice"], "gold")

    def test_invalid_sender_values_ignored(self):
        nxt = apply_card_update(self.card, {"choice": "x" * 65, "reveal_amount": -1, "fields": 12}, setup_ok=False)
        self.assertEqual(nxt, self.card)

    def test_recipient_reveal(self):
        nxt = apply_card_update(
            self.card,
            {
                "revealed": True,
                "revealed_at": "2026-10-19T10:00:00Z",
                "board": ["gold", "silver", "gold"],
                "scratched_indices": [0, 2],
                "scratched_fields": {"0": True},
            },
            setup_ok=False,
        )
        self.assertTrue(nxt["revealed"])
        self.assertEqual(nxt["board"], ["gold", "silver", "gold"])
        self.assertEqual(nxt["scratched_indices"], [0, 2])
        self.assertEqual(nxt["scratched_fields"], {"0": True})

    def test_revealed_cannot_be_undone(self):
        revealed = dict(self.card, revealed=True)
        self.assertTrue(apply_card_update(revealed, {"revealed": False}, setup_ok=True)["revealed"])

    def test_invalid_recipient_values_keep_previous(self):
        card = dict(self.card, board=["a"], scratched_indices=[1])
        nxt = apply_card_update(card, {"board": ["x"] * 10, "scratched_indices": [100]}, setup_ok=False)
        self.assertEqual(nxt["board"], ["a"])
        self.assertEqual(nxt["scratched_indices"], [1])

    def test_server_owned_fields_ignored(self):
        nxt = apply_card_update(self.card, {"setup_key": "mine", "created_at": "x", "product_id": "other"}, setup_ok=False)
        self.assertEqual(nxt, self.card)


class TestUpdateCard(unittest.TestCase):
    def test_update_persists_and_forces_token(self):
        store = MemoryKVStore()
        card = mint_card(store, {})
        out = update_card(store, card["token"], {"choice": "gold"}, setup_key=card["setup_key"])
        self.assertEqual(out["choice"], "gold")
        self.assertEqual(store.get_json(card["token"])["choice"], "gold")

    def test_corrupt_record(self):
        store = MemoryKVStore()
        store.put("aaaaaaaa-bbbb", "[not, json")
        with self.assertRaises(CardCorruptError):
            load_card(store, "aaaaaaaa-bbbb")


if __name__ == "__main__":
    unittest.main()
