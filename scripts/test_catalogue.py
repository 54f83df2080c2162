from __future__ import annotations

import io
import json
import sys
import tempfile
import unittest
from pathlib import Path

SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from catalogue import (
    STATUS_DOWNLOADED,
    STATUS_FAILED,
    CatalogueEntry,
    CheckpointWriter,
    ConfigurationError,
    EntryStore,
    TileAssignment,
    get_domain,
    icon_relative_path,
    load_entries,
    load_required_entries,
    merge_entry,
    parse_timestamp,
    resolve_favicon_url,
)


class DomainAndPathTests(unittest.TestCase):
    def test_domain_strips_leading_www_only(self) -> None:
        self.assertEqual(get_domain("https://www.example.com/path"), "example.com")
        self.assertEqual(get_domain("https://shop.www.example.com/"), "shop.www.example.com")
        self.assertEqual(get_domain("not a url"), "")

    def test_favicon_reference_is_joined_against_page(self) -> None:
        self.assertEqual(resolve_favicon_url("https://a.com/x/y", None), "https://a.com/favicon.ico")
        self.assertEqual(resolve_favicon_url("https://a.com/x/y", "img/i.png"), "https://a.com/x/img/i.png")
        self.assertEqual(resolve_favicon_url("https://a.com/", "//cdn.b.com/f.ico"), "https://cdn.b.com/f.ico")
        self.assertIsNone(resolve_favicon_url("", "/favicon.ico"))
        self.assertIsNone(resolve_favicon_url("https://a.com/", "data:image/png;base64,AAAA"))

    def test_icon_path_uses_two_hashed_levels(self) -> None:
        path = icon_relative_path("example.com")
        first, second, filename = path.split("/")
        self.assertEqual(filename, "example.com.png")
        self.assertEqual(len(first), 2)
        self.assertEqual(len(second), 2)
        int(first + second, 16)
        self.assertEqual(path, icon_relative_path("example.com"))
        self.assertNotEqual(path, icon_relative_path("example.org"))

    def test_timestamps_accept_z_suffix_and_millis(self) -> None:
        parsed = parse_timestamp("2024-05-01T10:00:00.123Z")
        self.assertIsNotNone(parsed)
        self.assertEqual(parsed.utcoffset().total_seconds(), 0)
        self.assertIsNone(parse_timestamp("yesterday"))


class RecordTests(unittest.TestCase):
    def test_round_trip_keeps_extra_columns_and_drops_legacy(self) -> None:
        record = {
            "url": "https://www.a.com",
            "rank": 3,
            "favicon": "/f.ico",
            "date": "2024-01-01",
            "localPath": "icons/a.png",
            "status": "downloaded",
            "etag": '"v1"',
            "tile": {"file": "tile_1.webp", "index": 4, "row": 0, "col": 4},
        }
        entry = CatalogueEntry.from_dict(record)
        self.assertEqual(entry.failure_count, 0)
        self.assertEqual(entry.tile, TileAssignment("tile_1.webp", 4, 0, 4))
        out = entry.to_dict()
        self.assertEqual(out["domain"], "a.com")
        self.assertEqual(out["date"], "2024-01-01")
        self.assertNotIn("localPath", out)
        self.assertEqual(out["failureCount"], 0)

    def test_bare_records_stay_bare(self) -> None:
        out = CatalogueEntry.from_dict({"url": "https://a.com", "rank": 1}).to_dict()
        self.assertNotIn("status", out)
        self.assertNotIn("failureCount", out)

    def test_merge_precedence(self) -> None:
        bare = CatalogueEntry(url="https://a.com", rank=5, favicon="/new.ico")
        prior = CatalogueEntry(
            url="https://a.com",
            rank=9,
            status=STATUS_FAILED,
            failure_count=2,
            tile=TileAssignment("tile_1.webp", 0, 0, 0),
            extra={"date": "old"},
        )
        fresh = CatalogueEntry(url="https://a.com", status=STATUS_DOWNLOADED, failure_count=0)

        merged = merge_entry(bare, prior, fresh)
        self.assertEqual(merged.rank, 5)
        self.assertEqual(merged.favicon, "/new.ico")
        self.assertEqual(merged.status, STATUS_DOWNLOADED)
        self.assertEqual(merged.failure_count, 0)
        self.assertEqual(merged.tile, TileAssignment("tile_1.webp", 0, 0, 0))
        self.assertEqual(merged.extra, {"date": "old"})

        without_fresh = merge_entry(bare, prior)
        self.assertEqual(without_fresh.status, STATUS_FAILED)
        self.assertEqual(without_fresh.failure_count, 2)
        self.assertIs(merge_entry(bare).status, None)


class EntryStoreTests(unittest.TestCase):
    def test_assign_tile_writes_through_by_domain(self) -> None:
        store = EntryStore([CatalogueEntry(url="https://www.a.com", rank=1), CatalogueEntry(url="https://b.com", rank=2)])
        store.assign_tile("a.com", TileAssignment("tile_1.webp", 0, 0, 0))
        self.assertEqual(store.entries()[0].tile.file, "tile_1.webp")
        self.assertIsNone(store.entries()[1].tile)
        with self.assertRaises(KeyError):
            store.assign_tile("missing.com", TileAssignment("tile_1.webp", 1, 0, 1))

    def test_duplicates_keep_their_rows(self) -> None:
        store = EntryStore([CatalogueEntry(url="https://a.com"), CatalogueEntry(url="https://www.a.com")])
        self.assertEqual(len(store), 2)
        self.assertEqual(store.duplicates, 1)
        self.assertEqual(store.get("a.com").url, "https://a.com")


class PersistenceTests(unittest.TestCase):
    def test_missing_required_input_is_configuration_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ConfigurationError):
                load_required_entries(Path(tmp) / "missing.json")
            bad = Path(tmp) / "bad.json"
            bad.write_text('{"url": "x"}', encoding="utf-8")
            with self.assertRaises(ConfigurationError):
                load_required_entries(bad)

    def test_unreadable_prior_state_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            state = Path(tmp) / "state.json"
            state.write_text("{not json", encoding="utf-8")
            stream = io.StringIO()
            self.assertEqual(load_entries(state, stream=stream), [])
            self.assertIn("warning", stream.getvalue())
            self.assertEqual(load_entries(Path(tmp) / "absent.json"), [])

    def test_checkpoint_writes_full_catalogue_with_three_tiers(self) -> None:
        inputs = [CatalogueEntry(url=f"https://site{i}.com", rank=i + 1) for i in range(5)]
        prior = EntryStore([CatalogueEntry(url="https://site3.com", rank=4, status=STATUS_FAILED, failure_count=1)])
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out.json"
            stream = io.StringIO()
            writer = CheckpointWriter(path=path, inputs=inputs, prior=prior, interval=2, stream=stream)

            self.assertFalse(writer.record(CatalogueEntry(url="https://site0.com", rank=1, status=STATUS_DOWNLOADED)))
            self.assertFalse(path.exists())
            self.assertTrue(writer.record(CatalogueEntry(url="https://site1.com", rank=2, status=STATUS_DOWNLOADED)))

            records = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(len(records), 5)
            self.assertEqual([record.get("status") for record in records], ["downloaded", "downloaded", None, "failed", None])
            self.assertEqual(records[3]["failureCount"], 1)
            self.assertIn("checkpoint: saved 5 entries (processed 2)", stream.getvalue())


if __name__ == "__main__":
    unittest.main()
