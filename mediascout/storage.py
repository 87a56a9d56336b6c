from __future__ import annotations

import json
import logging
import math
import queue
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import Table, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .db import create_db_engine, init_db, make_session_factory
from .db import ping as db_ping
from .entities import Media, Page
from .exceptions import InvalidRequestError, PersistenceError
from .models import MediaRecord, MediaSet, MediaType, UrlResult

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_SEARCH_LENGTH = 500


def media_records(page_id: int, media: MediaSet) -> List[MediaRecord]:
    records = [MediaRecord(type=MediaType.IMAGE, url=u, page_id=page_id) for u in media.images]
    records.extend(MediaRecord(type=MediaType.VIDEO, url=u, page_id=page_id) for u in media.videos)
    return records


class StorageBase(ABC):
    """Abstract base class for page/media persistence backends.

    Pages are upserted by URL (insert-or-no-op) and media batches are
    inserted skipping duplicates, so re-scraping a page is idempotent.
    """

    @abstractmethod
    def upsert_page(self, url: str) -> int:
        """Create the page if absent and return its id."""

    @abstractmethod
    def insert_media_batch(self, records: Sequence[MediaRecord]) -> None:
        """Insert media records, silently skipping (page_id, url, type) duplicates."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the backend is reachable."""

    @abstractmethod
    def close(self) -> None:
        """Release resources."""

    def save_media(self, url: str, media: MediaSet) -> int:
        """Upsert the page for `url` and store its media; returns the page id."""
        page_id = self.upsert_page(url)
        self.insert_media_batch(media_records(page_id, media))
        return page_id


class SqlStorage(StorageBase):
    """Relational storage through SQLAlchemy.

    SQLite and PostgreSQL use native INSERT ... ON CONFLICT DO NOTHING; other
    dialects fall back to per-row savepoints that swallow IntegrityError.
    Every SQLAlchemyError surfaces as PersistenceError.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = make_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStorage":
        engine = create_db_engine(url)
        init_db(engine)
        return cls(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def upsert_page(self, url: str) -> int:
        with self._transaction("upsert_page") as session:
            stmt = self._insert_ignore(Page.__table__)
            if stmt is not None:
                session.execute(stmt.values(url=url))
            elif session.scalar(select(Page.id).where(Page.url == url)) is None:
                self._add_ignoring_duplicate(session, Page(url=url))
            return session.scalar(select(Page.id).where(Page.url == url))

    def insert_media_batch(self, records: Sequence[MediaRecord]) -> None:
        rows = list({(r.page_id, r.url, MediaType(r.type).value): None for r in records})
        if not rows:
            return
        with self._transaction("insert_media_batch") as session:
            stmt = self._insert_ignore(Media.__table__)
            if stmt is not None:
                session.execute(stmt, [{"page_id": p, "url": u, "type": t} for p, u, t in rows])
                return
            for page_id, url, media_type in rows:
                self._add_ignoring_duplicate(session, Media(page_id=page_id, url=url, type=media_type))

    def list_media(
        self,
        page: int = 1,
        limit: int = 20,
        media_type: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Newest-first media with their page URL, filtered and paginated."""
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        if search and len(search) > MAX_SEARCH_LENGTH:
            raise InvalidRequestError(f"search must be at most {MAX_SEARCH_LENGTH} characters")

        filters = []
        if media_type:
            filters.append(Media.type == MediaType(media_type).value)
        if search:
            pattern = f"%{search.lower()}%"
            filters.append(or_(func.lower(Media.url).like(pattern), func.lower(Page.url).like(pattern)))
        query = select(Media, Page.url).join(Page, Media.page_id == Page.id).where(*filters)
        count_query = select(func.count(Media.id)).join(Page, Media.page_id == Page.id).where(*filters)

        with self._transaction("list_media") as session:
            total = session.scalar(count_query) or 0
            rows: List[Tuple[Media, str]] = session.execute(
                query.order_by(Media.created_at.desc(), Media.id.desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            items = [
                {
                    "id": media.id,
                    "type": media.type,
                    "url": media.url,
                    "pageId": media.page_id,
                    "pageUrl": page_url,
                    "createdAt": media.created_at.isoformat(),
                }
                for media, page_url in rows
            ]

        return {
            "items": items,
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit),
        }

    def ping(self) -> bool:
        return db_ping(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{operation} failed: {exc}") from exc

    def _insert_ignore(self, table: Table):
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(table).on_conflict_do_nothing()
        if dialect == "postgresql":
            return pg_insert(table).on_conflict_do_nothing()
        return None

    @staticmethod
    def _add_ignoring_duplicate(session: Session, obj: Any) -> None:
        try:
            with session.begin_nested():
                session.add(obj)
        except IntegrityError:
            logger.debug("Skipped duplicate %s", type(obj).__name__)


class JsonlStorage:
    """Appends per-URL scrape results as JSON Lines using a background writer thread."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._queue: queue.Queue[Optional[Tuple[UrlResult, Optional[MediaSet]]]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, daemon=True)
        self._thread.start()

    def write(self, result: UrlResult, media: Optional[MediaSet] = None) -> None:
        """Enqueue a result (and the media URLs behind its counts) for background writing."""
        self._queue.put((result, media))

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                result, media = item
                record = {"timestamp": time.time(), **result.to_dict()}
                if media is not None:
                    record["media"] = {"images": media.images, "videos": media.videos}
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
                f.flush()
