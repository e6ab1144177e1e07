import re
import unittest

from chiccanto.services import codes
from chiccanto.services.kv_store import MemoryKVStore


class TestCodeFormats(unittest.TestCase):
    def test_alphabet_excludes_ambiguous_characters(self):
        for ch in "01OI":
            self.assertNotIn(ch, codes.CODE_ALPHABET)
        self.assertEqual(len(set(codes.CODE_ALPHABET)), 32)

    def test_random_chars_stay_in_alphabet(self):
        sample = "".join(codes.random_chars(8) for _ in range(200))
        self.assertTrue(set(sample) <= set(codes.CODE_ALPHABET))

    def test_card_key_codes(self):
        prefix = codes.card_key_prefix("men-novice1")
        self.assertEqual(prefix, "CC-MEN-STD1")
        code = codes.card_key_code(prefix)
        self.assertRegex(code, r"^CC-MEN-STD1-[A-HJ-NP-Z2-9]{8}$")

    def test_unknown_card_key_uses_generic_prefix(self):
        self.assertEqual(codes.card_key_prefix("mystery-card"), "CC-CARD")
        self.assertEqual(codes.card_key_prefix(" women-advanced1 "), "CC-WOM-ADV1")

    def test_sku_codes(self):
        code = codes.sku_code("CC-F")
        self.assertRegex(code, r"^CC-F(-[A-HJ-NP-Z2-9]{4}){4}$")

    def test_normalize_code(self):
        self.assertEqual(codes.normalize_code("  cc-men-std1-abcd2345 "), "CC-MEN-STD1-ABCD2345")
        self.assertEqual(codes.normalize_code(None), "")


class TestReserveUniqueCode(unittest.TestCase):
    def setUp(self):
        self.store = MemoryKVStore()

    def test_skips_codes_already_in_store(self):
        self.store.put("ac:CC-CARD-TAKEN222", "{}")
        candidates = iter(["CC-CARD-TAKEN222", "CC-CARD-FRESH333"])
        code = codes.reserve_unique_code(self.store, lambda: next(candidates), {"status": "assigned"})
        self.assertEqual(code, "CC-CARD-FRESH333")
        self.assertEqual(self.store.get_json("ac:CC-CARD-FRESH333"), {"status": "assigned", "code": "CC-CARD-FRESH333"})
        self.assertEqual(self.store.get("ac:CC-CARD-TAKEN222"), "{}")

    def test_gives_up_after_bounded_attempts(self):
        self.store.put("ac:CC-CARD-TAKEN222", "{}")
        calls = []

        def always_taken():
            calls.append(1)
            return "CC-CARD-TAKEN222"

        with self.assertRaises(codes.CodeGenerationError) as ctx:
            codes.reserve_unique_code(self.store, always_taken, {}, attempts=5)
        self.assertEqual(len(calls), 5)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.error, "Could not generate a new code. Try again.")

    def test_generated_codes_do_not_collide(self):
        seen = set()
        for _ in range(50):
            code = codes.reserve_unique_code(self.store, lambda: codes.card_key_code("CC-CARD"), {})
            self.assertNotIn(code, seen)
            seen.add(code)
        self.assertEqual(len([k for k in self.store.keys("ac:")]), 50)
        for code in seen:
            self.assertTrue(re.fullmatch(r"CC-CARD-[A-HJ-NP-Z2-9]{8}", code))


if __name__ == "__main__":
    unittest.main()
