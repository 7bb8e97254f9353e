"""
FastAPI dependencies wiring the engine to its collaborators.

Tests override ``get_repository`` / ``get_event_source`` / ``get_config``
through ``app.dependency_overrides``.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from packages.db.repository import DocumentRepository
from packages.db.sql_repository import SqlDocumentRepository
from packages.shared.models import LedgerConfig
from apps.worker.calendar_source import EventSource, GoogleCalendarSource
from apps.worker.calendar_sync import CalendarMergeEngine
from apps.worker.identity import IdentityResolver
from apps.worker.ledger_state import LedgerStateMachine
from apps.worker.prospects import ProspectTracker


@lru_cache(maxsize=1)
def get_repository() -> DocumentRepository:
    return SqlDocumentRepository()


@lru_cache(maxsize=1)
def get_event_source() -> EventSource:
    return GoogleCalendarSource()


@lru_cache(maxsize=1)
def get_config() -> LedgerConfig:
    return LedgerConfig()


def get_resolver(
    repo: DocumentRepository = Depends(get_repository),
    config: LedgerConfig = Depends(get_config),
) -> IdentityResolver:
    return IdentityResolver(repo, config)


def get_prospects(
    repo: DocumentRepository = Depends(get_repository),
    config: LedgerConfig = Depends(get_config),
) -> ProspectTracker:
    return ProspectTracker(repo, config)


def get_ledger_machine(
    repo: DocumentRepository = Depends(get_repository),
    resolver: IdentityResolver = Depends(get_resolver),
    prospects: ProspectTracker = Depends(get_prospects),
    config: LedgerConfig = Depends(get_config),
) -> LedgerStateMachine:
    return LedgerStateMachine(repo, resolver, prospects, config)


def get_merge_engine(
    repo: DocumentRepository = Depends(get_repository),
    source: EventSource = Depends(get_event_source),
    resolver: IdentityResolver = Depends(get_resolver),
    config: LedgerConfig = Depends(get_config),
) -> CalendarMergeEngine:
    return CalendarMergeEngine(repo, source, resolver, config)
