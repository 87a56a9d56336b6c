"""Tests for SqlStorage and JsonlStorage."""

import json
import os
import tempfile
import unittest
from unittest import mock

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from mediascout.db import create_db_engine, init_db
from mediascout.entities import Media, Page
from mediascout.exceptions import InvalidRequestError, PersistenceError
from mediascout.models import MediaRecord, MediaSet, MediaType, UrlResult
from mediascout.storage import JsonlStorage, SqlStorage


def _memory_storage() -> SqlStorage:
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    return SqlStorage(engine)


class TestSqlStorageWrites(unittest.TestCase):
    """Verify page upsert and idempotent media inserts."""

    def setUp(self):
        self.storage = _memory_storage()
        self.addCleanup(self.storage.close)

    def _count(self, model) -> int:
        with Session(self.storage.engine) as session:
            return session.scalar(select(func.count()).select_from(model))

    def test_upsert_page_is_idempotent(self):
        """The same URL maps to one page id."""
        first = self.storage.upsert_page("https://a.test")
        second = self.storage.upsert_page("https://a.test")
        other = self.storage.upsert_page("https://b.test")
        self.assertEqual(first, second)
        self.assertNotEqual(first, other)
        self.assertEqual(self._count(Page), 2)

    def test_media_batch_skips_duplicates(self):
        """Re-inserting the same media never creates duplicate rows."""
        page_id = self.storage.upsert_page("https://a.test")
        records = [
            MediaRecord(type=MediaType.IMAGE, url="https://a.test/1.jpg", page_id=page_id),
            MediaRecord(type=MediaType.VIDEO, url="https://a.test/v.mp4", page_id=page_id),
            MediaRecord(type=MediaType.IMAGE, url="https://a.test/1.jpg", page_id=page_id),
        ]
        self.storage.insert_media_batch(records)
        self.storage.insert_media_batch(records)
        self.assertEqual(self._count(Media), 2)

    def test_save_media_rescrape(self):
        """Saving the same page twice keeps one page and one row per media URL."""
        media = MediaSet(images=["https://a.test/1.jpg"], videos=["https://a.test/v.mp4"])
        first = self.storage.save_media("https://a.test", media)
        second = self.storage.save_media("https://a.test", media)
        self.assertEqual(first, second)
        self.assertEqual(self._count(Media), 2)

    def test_same_url_different_type_kept(self):
        """Uniqueness is per (page, url, type)."""
        page_id = self.storage.upsert_page("https://a.test")
        self.storage.insert_media_batch(
            [
                MediaRecord(type=MediaType.IMAGE, url="https://a.test/x", page_id=page_id),
                MediaRecord(type=MediaType.VIDEO, url="https://a.test/x", page_id=page_id),
            ]
        )
        self.assertEqual(self._count(Media), 2)

    def test_empty_batch_is_noop(self):
        """An empty batch does nothing."""
        self.storage.insert_media_batch([])
        self.assertEqual(self._count(Media), 0)

    def test_database_errors_become_persistence_error(self):
        """SQLAlchemy errors surface as PersistenceError."""
        failing = mock.patch.object(
            Session, "execute", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))
        )
        with failing, self.assertRaises(PersistenceError):
            self.storage.upsert_page("https://a.test")

    def test_ping(self):
        """ping() succeeds on a live engine."""
        self.assertTrue(self.storage.ping())


class TestSqlStorageListMedia(unittest.TestCase):
    """Verify paginated media listing."""

    def setUp(self):
        self.storage = _memory_storage()
        self.addCleanup(self.storage.close)
        self.storage.save_media(
            "https://news.test/article",
            MediaSet(images=["https://cdn.test/a.jpg", "https://cdn.test/b.jpg"], videos=["https://cdn.test/c.mp4"]),
        )
        self.storage.save_media("https://blog.test/post", MediaSet(images=["https://img.test/d.png"]))

    def test_newest_first_with_metadata(self):
        """Items are newest first and carry page metadata."""
        listing = self.storage.list_media(page=1, limit=3)
        self.assertEqual(listing["total"], 4)
        self.assertEqual(listing["totalPages"], 2)
        self.assertEqual(listing["items"][0]["url"], "https://img.test/d.png")
        self.assertEqual(listing["items"][0]["pageUrl"], "https://blog.test/post")
        self.assertEqual(len(listing["items"]), 3)

    def test_second_page(self):
        """Offset pagination returns the remainder."""
        listing = self.storage.list_media(page=2, limit=3)
        self.assertEqual([i["url"] for i in listing["items"]], ["https://cdn.test/a.jpg"])

    def test_type_filter(self):
        """Filtering by type returns only that type."""
        listing = self.storage.list_media(media_type="video")
        self.assertEqual([i["url"] for i in listing["items"]], ["https://cdn.test/c.mp4"])

    def test_search_matches_media_or_page_url_case_insensitively(self):
        """Search matches either the media URL or its page URL."""
        self.assertEqual(self.storage.list_media(search="NEWS")["total"], 3)
        self.assertEqual(self.storage.list_media(search="d.png")["total"], 1)

    def test_limit_clamped(self):
        """limit is clamped to 1..100."""
        self.assertEqual(self.storage.list_media(limit=500)["limit"], 100)
        self.assertEqual(self.storage.list_media(limit=0)["limit"], 1)

    def test_search_too_long(self):
        """Overlong search strings are rejected."""
        with self.assertRaises(InvalidRequestError):
            self.storage.list_media(search="x" * 501)


class TestJsonlStorage(unittest.TestCase):
    """Verify the JSONL result log."""

    def test_writes_one_line_per_result(self):
        """Each result becomes one JSON line, with media when given."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "results.jsonl")
            sink = JsonlStorage(path)
            sink.write(
                UrlResult(url="https://a.test", images=1, videos=0, success=True),
                MediaSet(images=["https://a.test/1.jpg"]),
            )
            sink.write(UrlResult(url="https://b.test", images=0, videos=0, success=False, error="Cannot load HTML"))
            sink.close()

            with open(path, encoding="utf-8") as f:
                lines = [json.loads(line) for line in f]

        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0]["media"], {"images": ["https://a.test/1.jpg"], "videos": []})
        self.assertFalse(lines[1]["success"])
        self.assertEqual(lines[1]["error"], "Cannot load HTML")
        self.assertNotIn("media", lines[1])


if __name__ == "__main__":
    unittest.main()
