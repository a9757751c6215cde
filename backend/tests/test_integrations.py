"""
Tests for integrations.py - sample cards, feed layout and Google Calendar.
"""
import asyncio
import pytest
import sys
import os
from datetime import datetime, timedelta, timezone

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from board import column_for_id
from database import create_user_db, get_account_for_provider_db, upsert_account_db
from integrations import (
    GOOGLE_CALENDAR_EVENTS_URL,
    GOOGLE_TOKEN_URL,
    CalendarNotConnected,
    IntegrationError,
    build_feed,
    get_calendar_events,
    google_calendar_status,
    sample_cards,
)
from models import Todo

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_todo(todo_id, completed=False):
    return Todo(
        id=todo_id,
        title=f"Todo {todo_id}",
        completed=completed,
        user_id="u1",
        created_at="2026-03-01T00:00:00Z",
        updated_at="2026-03-01T00:00:00Z",
    )


@pytest.fixture
def google_api(monkeypatch):
    """Record requests to Google and answer from the responses dict keyed by URL."""
    responses = {}
    requests = []
    real_client = httpx.AsyncClient

    def handler(request):
        requests.append(request)
        return responses[str(request.url).split("?")[0]]

    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs)
    )
    return responses, requests


class TestSampleCards:
    """Tests for the sample integration cards."""

    def test_one_card_per_type(self):
        """Every card type appears exactly once with a unique id."""
        cards = sample_cards(NOW)
        assert len({c.id for c in cards}) == 7
        assert {c.type for c in cards} == {
            "github_issue", "github_pr", "slack_message", "google_calendar",
            "twitter_dm", "vercel_build", "posthog",
        }

    def test_timestamps_relative_to_now(self):
        """Card times are computed from the given clock."""
        cards = {c.id: c for c in sample_cards(NOW)}
        assert cards["slack-message-1"].data["timestamp"] == "2026-03-10T11:30:00Z"
        assert cards["google-calendar-1"].data["start_time"] == "2026-03-11T12:00:00Z"


class TestFeed:
    """Tests for spreading todos and cards over columns."""

    def test_completed_todos_excluded(self):
        """Only open todos appear in the feed."""
        columns = build_feed([make_todo("a"), make_todo("b", completed=True)], [], 3)
        items = [entry["item"]["id"] for column in columns for entry in column]
        assert items == ["a"]

    def test_placement_follows_id_hash(self):
        """Each item lands in the column its id hashes to."""
        cards = sample_cards(NOW)
        columns = build_feed([make_todo("todo-1")], cards, 4)
        assert len(columns) == 4
        for index, column in enumerate(columns):
            for entry in column:
                assert column_for_id(entry["item"]["id"], 4) == index

    def test_todos_before_cards_within_column(self):
        """Todos are listed ahead of cards in each column."""
        columns = build_feed([make_todo("x")], sample_cards(NOW), 1)
        kinds = [entry["kind"] for entry in columns[0]]
        assert kinds == ["todo"] + ["card"] * 7


class TestGoogleCalendar:
    """Tests for reading events from the primary Google Calendar."""

    def test_not_connected(self, test_db):
        """Without a Google account the calendar reports why."""
        user = create_user_db("Ada", "ada@example.com")
        assert google_calendar_status(user.id)["has_access"] is False

        with pytest.raises(CalendarNotConnected):
            asyncio.run(get_calendar_events(user.id, NOW, NOW + timedelta(days=7)))

    def test_missing_refresh_token(self, test_db):
        """An account without a refresh token can't be used for the calendar."""
        user = create_user_db("Ada", "ada@example.com")
        upsert_account_db(user.id, "google", "g-1", access_token="ya29")
        status = google_calendar_status(user.id)
        assert status["has_access"] is False
        assert status["details"]["has_refresh_token"] is False

    def test_lists_events(self, test_db, google_api):
        """Events are normalized from the Calendar API response."""
        responses, requests = google_api
        responses[GOOGLE_CALENDAR_EVENTS_URL] = httpx.Response(200, json={"items": [
            {
                "id": "ev1",
                "summary": "Standup",
                "start": {"dateTime": "2026-03-11T09:00:00Z"},
                "end": {"dateTime": "2026-03-11T09:15:00Z"},
                "status": "confirmed",
            },
            {"id": "ev2", "start": {"date": "2026-03-12"}, "end": {"date": "2026-03-13"}},
        ]})
        user = create_user_db("Ada", "ada@example.com")
        upsert_account_db(user.id, "google", "g-1", access_token="ya29", refresh_token="r",
                          access_token_expires_at="2099-01-01T00:00:00Z")

        events = asyncio.run(get_calendar_events(user.id, NOW, NOW + timedelta(days=7), max_results=5))

        assert [e.id for e in events] == ["ev1", "ev2"]
        assert events[0].summary == "Standup"
        assert events[1].start == "2026-03-12"
        assert events[1].summary == ""
        assert requests[0].headers["Authorization"] == "Bearer ya29"
        assert requests[0].url.params["maxResults"] == "5"
        assert requests[0].url.params["timeMin"] == "2026-03-10T12:00:00Z"

    def test_expired_token_refreshed(self, test_db, google_api):
        """An expired access token is refreshed and saved before the request."""
        responses, requests = google_api
        responses[GOOGLE_TOKEN_URL] = httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
        responses[GOOGLE_CALENDAR_EVENTS_URL] = httpx.Response(200, json={"items": []})
        user = create_user_db("Ada", "ada@example.com")
        upsert_account_db(user.id, "google", "g-1", access_token="stale", refresh_token="r",
                          access_token_expires_at="2000-01-01T00:00:00Z")

        assert asyncio.run(get_calendar_events(user.id, NOW, NOW + timedelta(days=1))) == []
        assert requests[1].headers["Authorization"] == "Bearer fresh"
        assert get_account_for_provider_db(user.id, "google").access_token == "fresh"

    def test_api_error(self, test_db, google_api):
        """Calendar API failures raise IntegrationError."""
        responses, _ = google_api
        responses[GOOGLE_CALENDAR_EVENTS_URL] = httpx.Response(401)
        user = create_user_db("Ada", "ada@example.com")
        upsert_account_db(user.id, "google", "g-1", access_token="ya29", refresh_token="r")

        with pytest.raises(IntegrationError):
            asyncio.run(get_calendar_events(user.id, NOW, NOW + timedelta(days=1)))
