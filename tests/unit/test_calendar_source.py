"""
Unit tests for the Google Calendar event source (HTTP layer faked).
"""
from datetime import datetime, timedelta, timezone

import pytest
import requests

from apps.worker.calendar_source import GoogleCalendarSource, event_from_google
from packages.shared.errors import CalendarFetchError

TPE = timezone(timedelta(hours=8))
START = datetime(2024, 5, 1, tzinfo=TPE)
END = START + timedelta(days=1)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {}), timeout))
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _item(event_id, summary, start, **extra):
    return {"id": event_id, "summary": summary, "start": start, "end": start, **extra}


class TestEventParsing:

    def test_timed_event(self):
        event = event_from_google(_item("e1", "1234-王小明-洗牙", {"dateTime": "2024-05-01T09:30:00+08:00"}))
        assert event.start == datetime(2024, 5, 1, 9, 30, tzinfo=TPE)
        assert event.all_day is False

    def test_utc_suffix(self):
        event = event_from_google(_item("e1", "x", {"dateTime": "2024-05-01T01:30:00Z"}))
        assert event.start == datetime(2024, 5, 1, 1, 30, tzinfo=timezone.utc)

    def test_date_only_is_all_day(self):
        event = event_from_google(_item("e1", "員工旅遊", {"date": "2024-05-01"}))
        assert event.all_day is True

    def test_missing_summary(self):
        assert event_from_google({"id": "e1"}).summary == ""


class TestListEvents:

    def test_follows_pages_and_skips_cancelled(self):
        session = FakeSession([
            FakeResponse(payload={
                "items": [
                    _item("e1", "A-洗牙", {"dateTime": "2024-05-01T09:00:00+08:00"}),
                    _item("e2", "B-洗牙", {"dateTime": "2024-05-01T10:00:00+08:00"}, status="cancelled"),
                ],
                "nextPageToken": "p2",
            }),
            FakeResponse(payload={"items": [_item("e3", "C-洗牙", {"dateTime": "2024-05-01T11:00:00+08:00"})]}),
        ])
        source = GoogleCalendarSource(token="t", session=session, base_url="https://cal.test/v3")

        events = source.list_events("doc@clinic.test", START, END)

        assert [e.id for e in events] == ["e1", "e3"]
        url, params, _ = session.calls[0]
        assert url == "https://cal.test/v3/calendars/doc%40clinic.test/events"
        assert params["timeMin"] == "2024-05-01T00:00:00+08:00"
        assert params["singleEvents"] == "true"
        assert "key" not in params
        assert session.calls[1][1]["pageToken"] == "p2"

    def test_api_key_used_without_token(self):
        session = FakeSession([FakeResponse(payload={"items": []})])
        GoogleCalendarSource(token="", api_key="k", session=session).list_events("cal", START, END)
        assert session.calls[0][1]["key"] == "k"

    @pytest.mark.parametrize("response", [
        FakeResponse(status_code=403, text="forbidden"),
        FakeResponse(status_code=200, payload=None, text="<html>"),
        requests.ConnectionError("refused"),
    ])
    def test_failures_raise_fetch_error(self, response):
        source = GoogleCalendarSource(token="t", session=FakeSession([response]))
        with pytest.raises(CalendarFetchError) as exc:
            source.list_events("cal-1", START, END)
        assert exc.value.calendar_id == "cal-1"


def test_default_session_sends_bearer_token():
    source = GoogleCalendarSource(token="secret-token")
    assert source.session.headers["Authorization"] == "Bearer secret-token"
    assert source.session is source.session
