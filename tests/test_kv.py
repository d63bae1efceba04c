import os
import sys
import tempfile
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from tpsync.canonical_json import CanonicalJsonTypeError

from app.kv import FileKeyValueStore, KeyValueError, MemoryKeyValueStore


class TestMemoryKeyValueStore(unittest.TestCase):
    def test_get_returns_copy(self) -> None:
        kv = MemoryKeyValueStore()
        kv.set("draft:new", {"techpack": {"bom": []}})
        value = kv.get("draft:new")
        value["techpack"]["bom"].append({"id": "x"})
        self.assertEqual(kv.get("draft:new"), {"techpack": {"bom": []}})

    def test_rejects_unserializable(self) -> None:
        kv = MemoryKeyValueStore()
        with self.assertRaises(CanonicalJsonTypeError):
            kv.set("k", {"bad": object()})

    def test_delete_and_keys(self) -> None:
        kv = MemoryKeyValueStore()
        kv.set("draft:a", 1)
        kv.set("draft:b", 2)
        kv.set("list:techpacks", 3)
        self.assertEqual(kv.keys("draft:"), ["draft:a", "draft:b"])
        self.assertTrue(kv.delete("draft:a"))
        self.assertFalse(kv.delete("draft:a"))
        self.assertIsNone(kv.get("draft:a"))


class TestFileKeyValueStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.kv = FileKeyValueStore(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_round_trip_survives_new_instance(self) -> None:
        self.kv.set("draft:abc", {"version": 1, "techpack": {"id": "abc"}})
        again = FileKeyValueStore(self._tmp.name)
        self.assertEqual(again.get("draft:abc"), {"version": 1, "techpack": {"id": "abc"}})

    def test_key_with_separator_is_safe(self) -> None:
        self.kv.set("draft:a/b", {"x": 1})
        self.assertEqual(self.kv.keys(), ["draft:a/b"])
        self.assertEqual(os.listdir(self._tmp.name), ["draft%3Aa%2Fb.json"])

    def test_overwrite_leaves_no_temp_files(self) -> None:
        self.kv.set("k", {"n": 1})
        self.kv.set("k", {"n": 2})
        self.assertEqual(self.kv.get("k"), {"n": 2})
        self.assertEqual(len(os.listdir(self._tmp.name)), 1)

    def test_failed_serialization_keeps_previous_value(self) -> None:
        self.kv.set("k", {"n": 1})
        with self.assertRaises(ValueError):
            self.kv.set("k", {"n": float("nan")})
        self.assertEqual(self.kv.get("k"), {"n": 1})

    def test_unreadable_value_raises(self) -> None:
        with open(os.path.join(self._tmp.name, "broken.json"), "w", encoding="utf-8") as handle:
            handle.write("{not json")
        with self.assertRaises(KeyValueError):
            self.kv.get("broken")

    def test_missing_key(self) -> None:
        self.assertIsNone(self.kv.get("absent"))
        self.assertFalse(self.kv.delete("absent"))
        self.assertEqual(FileKeyValueStore(os.path.join(self._tmp.name, "nope")).keys(), [])


if __name__ == "__main__":
    unittest.main()
