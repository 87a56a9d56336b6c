"""
SQLAlchemy tables for scraped pages, their media and the durable job queue.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .models import MAX_URL_LENGTH


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Page(Base):
    """One row per distinct scraped page URL; never updated after insert."""

    __tablename__ = "pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String(MAX_URL_LENGTH), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    media: Mapped[List["Media"]] = relationship(back_populates="page", cascade="all, delete-orphan")


class Media(Base):
    """An image or video URL found on a page, unique per (page, url, type)."""

    __tablename__ = "media"
    __table_args__ = (UniqueConstraint("page_id", "url", "type", name="uq_media_page_url_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # image, video
    url: Mapped[str] = mapped_column(String(MAX_URL_LENGTH), nullable=False)
    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    page: Mapped[Page] = relationship(back_populates="media")


class ScrapeJobRecord(Base):
    """
    Durable state of one queued scrape job.

    Timestamps are epoch seconds so that lock expiry, retry scheduling and
    retention checks are plain float comparisons.
    """

    __tablename__ = "scrape_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="waiting", index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    options: Mapped[dict] = mapped_column(JSON, nullable=False)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    result: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    partial_result: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lock_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    locked_until: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    run_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, index=True)

    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    processed_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    finished_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
