"""
Appointment event sources.

The merge engine only needs ``list_events(calendar_id, start, end)``. The
production source reads Google Calendar ``events.list`` over HTTPS; tests
inject an in-process fake.
"""
from __future__ import annotations

import logging
import os
import threading
from datetime import date, datetime, time
from typing import Any, Optional, Protocol
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from packages.shared.errors import CalendarFetchError
from packages.shared.models import CalendarEvent

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE = os.getenv(
    "GOOGLE_CALENDAR_API_BASE", "https://www.googleapis.com/calendar/v3"
).rstrip("/")
GOOGLE_CALENDAR_TOKEN = os.getenv("GOOGLE_CALENDAR_TOKEN", "")
GOOGLE_CALENDAR_API_KEY = os.getenv("GOOGLE_CALENDAR_API_KEY", "")
CALENDAR_HTTP_TIMEOUT = float(os.getenv("CALENDAR_HTTP_TIMEOUT", "20"))
CALENDAR_RETRY_ATTEMPTS = int(os.getenv("CALENDAR_RETRY_ATTEMPTS", "3"))
CALENDAR_BACKOFF_FACTOR = float(os.getenv("CALENDAR_BACKOFF_FACTOR", "0.5"))

PAGE_SIZE = 250


class EventSource(Protocol):
    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Events overlapping ``[start, end)``."""
        ...


def _parse_when(value: Optional[dict]) -> tuple[Optional[datetime], bool]:
    """Return (moment, is_all_day) for a Google ``start``/``end`` object."""
    if not value:
        return None, False
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")), False
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min), True
    return None, False


def event_from_google(item: dict[str, Any]) -> CalendarEvent:
    start, all_day = _parse_when(item.get("start"))
    end, _ = _parse_when(item.get("end"))
    return CalendarEvent(
        id=str(item.get("id", "")),
        summary=item.get("summary") or "",
        start=start,
        end=end,
        all_day=all_day,
    )


class GoogleCalendarSource:
    """Read-only client for the Google Calendar v3 ``events.list`` endpoint."""

    def __init__(
        self,
        token: str = GOOGLE_CALENDAR_TOKEN,
        api_key: str = GOOGLE_CALENDAR_API_KEY,
        base_url: str = GOOGLE_CALENDAR_API_BASE,
        timeout: float = CALENDAR_HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.token = token
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._session_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            with self._session_lock:
                if self._session is None:
                    s = requests.Session()
                    adapter = HTTPAdapter(
                        max_retries=Retry(
                            total=CALENDAR_RETRY_ATTEMPTS,
                            backoff_factor=CALENDAR_BACKOFF_FACTOR,
                            status_forcelist=[408, 429, 500, 502, 503, 504],
                            allowed_methods=["GET"],
                            raise_on_status=False,
                        ),
                        pool_connections=10,
                        pool_maxsize=20,
                    )
                    s.mount("https://", adapter)
                    s.mount("http://", adapter)
                    s.headers.update({"Accept": "application/json"})
                    if self.token:
                        s.headers.update({"Authorization": f"Bearer {self.token}"})
                    self._session = s
        return self._session

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        url = f"{self.base_url}/calendars/{quote(calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": PAGE_SIZE,
        }
        if self.api_key and not self.token:
            params["key"] = self.api_key

        events: list[CalendarEvent] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            try:
                resp = self.session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                raise CalendarFetchError(calendar_id, str(exc)) from exc
            if resp.status_code != 200:
                snippet = (resp.text or "")[:200].replace("\n", " ")
                raise CalendarFetchError(calendar_id, f"HTTP {resp.status_code}: {snippet}")
            try:
                payload = resp.json()
            except ValueError as exc:
                raise CalendarFetchError(calendar_id, "invalid JSON response") from exc

            for item in payload.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                events.append(event_from_google(item))

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.debug("Fetched %d events from calendar %s", len(events), calendar_id)
        return events
