"""
SQLAlchemy ORM models for DentLedger persistence.

Every engine document (ledgers, patient profiles, prospect records, clinic
directory, settings) is one row keyed by ``(collection, key)`` with a JSON
payload and an optimistic-concurrency version counter.
"""
from __future__ import annotations

from datetime import datetime, timezone as dt_timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase


def utcnow():
    return datetime.now(dt_timezone.utc)


class Base(DeclarativeBase):
    pass


class StoredDocument(Base):
    __tablename__ = "documents"

    collection = Column(String(64), primary_key=True)
    key = Column(String(300), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_documents_collection_key", "collection", "key"),
    )
