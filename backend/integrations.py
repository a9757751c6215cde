"""
Third-party integration cards shown next to todos in the feed view.

Only Google Calendar is backed by a real API (through the user's linked Google
account); the other cards are sample data until their connectors exist.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

import config
from board import column_for_id, parse_datetime
from database import get_account_for_provider_db, to_timestamp, update_account_tokens_db
from models import CalendarEvent, IntegrationCard

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

HTTP_TIMEOUT = 10


class IntegrationError(Exception):
    """An outbound call to a third-party service failed."""


class CalendarNotConnected(IntegrationError):
    """The user has no Google account with calendar tokens."""


def sample_cards(now: Optional[datetime] = None) -> list[IntegrationCard]:
    now = now or datetime.now(timezone.utc)

    def ago(**kwargs) -> str:
        return to_timestamp(now - timedelta(**kwargs))

    def ahead(**kwargs) -> str:
        return to_timestamp(now + timedelta(**kwargs))

    return [
        IntegrationCard(id="github-issue-1", type="github_issue", data={
            "id": "sample-issue-1",
            "title": "Fix layout bug in mobile view",
            "number": 423,
            "state": "open",
            "repository": "agenda/web",
            "url": "https://github.com",
            "created_at": ago(days=3),
            "updated_at": ago(days=1),
            "author": {"login": "johnsmith", "avatar_url": "https://github.com/github.png"},
            "labels": [{"name": "bug", "color": "E11D48"}, {"name": "mobile", "color": "60A5FA"}],
            "comments": 3,
        }),
        IntegrationCard(id="vercel-build-1", type="vercel_build", data={
            "id": "build-1",
            "project_name": "agenda.dev",
            "branch": "main",
            "commit_message": "Add dark mode support and fix mobile responsiveness",
            "status": "building",
            "start_time": ago(minutes=5),
            "url": "https://vercel.com",
            "deployment_url": "https://agenda-git-main.vercel.app",
            "creator": {"name": "Sarah Dev", "avatar": "https://github.com/github.png"},
        }),
        IntegrationCard(id="posthog-stats-1", type="posthog", data={
            "id": "stats-1",
            "project_name": "Agenda Analytics",
            "url": "https://app.posthog.com",
            "metrics": {
                "active_users": 12500,
                "active_users_change": 15,
                "events": 250000,
                "events_change": 8,
                "conversions": 1250,
                "conversions_change": 12,
                "timeframe": "24h",
            },
        }),
        IntegrationCard(id="slack-message-1", type="slack_message", data={
            "id": "msg-1",
            "content": "Hey team! Just deployed the new analytics dashboard. Check it out and let me know what you think!",
            "sender": {"name": "Alex Chen", "avatar": "https://github.com/github.png"},
            "channel": {"name": "product-updates", "is_private": False},
            "timestamp": ago(minutes=30),
            "url": "https://slack.com",
            "thread_count": 5,
            "reactions": [{"emoji": "thumbsup", "count": 3}, {"emoji": "rocket", "count": 2}],
            "attachments": [{"type": "image", "name": "dashboard-preview.png", "url": "https://example.com/image"}],
        }),
        IntegrationCard(id="github-pr-1", type="github_pr", data={
            "id": "sample-pr-1",
            "title": "Add dark mode support to settings page",
            "number": 156,
            "state": "open",
            "repository": "agenda/web",
            "url": "https://github.com",
            "created_at": ago(days=2),
            "updated_at": ago(hours=3),
            "author": {"login": "sarahdev", "avatar_url": "https://github.com/github.png"},
            "labels": [{"name": "enhancement", "color": "8B5CF6"}, {"name": "UI", "color": "F59E0B"}],
            "comments": 5,
            "additions": 342,
            "deletions": 122,
        }),
        IntegrationCard(id="google-calendar-1", type="google_calendar", data={
            "id": "sample-event-1",
            "title": "Weekly Team Standup",
            "description": "Review progress and discuss roadblocks",
            "location": "Meeting Room 3 / Google Meet",
            "start_time": ahead(days=1),
            "end_time": ahead(days=1, hours=1),
            "organizer": "Alex Moreno",
            "attendees": [
                {"name": "Sarah Johnson", "email": "sarah@example.com", "response_status": "accepted"},
                {"name": "Michael Lee", "email": "michael@example.com", "response_status": "tentative"},
                {"name": "Jessica Taylor", "email": "jessica@example.com", "response_status": "declined"},
                {"name": "Omar Hassan", "email": "omar@example.com"},
            ],
            "url": "https://calendar.google.com",
            "is_recurring": True,
        }),
        IntegrationCard(id="twitter-dm-1", type="twitter_dm", data={
            "id": "sample-dm-1",
            "content": "Hey, I really like your new agenda app! Would love to collaborate on adding new features. "
                       "Are you available for a quick call next week?",
            "sender": {"id": "user123", "name": "Sarah Connor", "handle": "techsarah", "verified": True},
            "timestamp": ago(hours=2),
            "is_read": False,
            "url": "https://twitter.com",
            "attachments": [{"type": "image", "url": "https://picsum.photos/200", "preview_url": "https://picsum.photos/200"}],
        }),
    ]


def build_feed(todos: list, cards: list[IntegrationCard], column_count: int) -> list[list[dict]]:
    """
    Spread incomplete todos and integration cards over columns.
    Placement depends only on each item's id, so refreshing the feed doesn't reshuffle it.
    """
    columns: list[list[dict]] = [[] for _ in range(column_count)]
    for todo in todos:
        if todo.completed:
            continue
        columns[column_for_id(todo.id, column_count)].append({"kind": "todo", "item": todo.model_dump()})
    for card in cards:
        columns[column_for_id(card.id, column_count)].append({"kind": "card", "item": card.model_dump()})
    return columns


def google_calendar_status(user_id: str) -> dict:
    account = get_account_for_provider_db(user_id, "google")
    details = {
        "has_account": account is not None,
        "has_access_token": bool(account and account.access_token),
        "has_refresh_token": bool(account and account.refresh_token),
    }
    return {"has_access": details["has_account"] and details["has_access_token"] and details["has_refresh_token"], "details": details}


async def _refresh_google_token(http: httpx.AsyncClient, account) -> str:
    try:
        response = await http.post(GOOGLE_TOKEN_URL, data={
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "refresh_token": account.refresh_token,
            "grant_type": "refresh_token",
        })
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise IntegrationError(f"Google token refresh failed: {e}") from e

    payload = response.json()
    access_token = payload["access_token"]
    expires_at = None
    if payload.get("expires_in"):
        expires_at = to_timestamp(datetime.now(timezone.utc) + timedelta(seconds=int(payload["expires_in"])))
    update_account_tokens_db(account.id, access_token, expires_at)
    logger.info("Refreshed Google access token for user %s", account.user_id)
    return access_token


async def get_calendar_events(
    user_id: str,
    time_min: datetime,
    time_max: datetime,
    max_results: int = 10,
) -> list[CalendarEvent]:
    """List events from the user's primary Google Calendar, ordered by start time."""
    account = get_account_for_provider_db(user_id, "google")
    if not account or not account.access_token or not account.refresh_token:
        status = google_calendar_status(user_id)
        raise CalendarNotConnected(f"Google Calendar not connected. Details: {status['details']}")

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http:
        access_token = account.access_token
        expires_at = parse_datetime(account.access_token_expires_at)
        if expires_at and expires_at <= datetime.now(timezone.utc):
            access_token = await _refresh_google_token(http, account)

        try:
            response = await http.get(
                GOOGLE_CALENDAR_EVENTS_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                params={
                    "timeMin": to_timestamp(time_min),
                    "timeMax": to_timestamp(time_max),
                    "maxResults": max_results,
                    "singleEvents": "true",
                    "orderBy": "startTime",
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Error fetching calendar events for user %s: %s", user_id, e)
            raise IntegrationError(f"Google Calendar request failed: {e}") from e

    events = []
    for item in response.json().get("items", []):
        start = item.get("start") or {}
        end = item.get("end") or {}
        events.append(CalendarEvent(
            id=item["id"],
            summary=item.get("summary", ""),
            description=item.get("description"),
            start=start.get("dateTime") or start.get("date"),
            end=end.get("dateTime") or end.get("date"),
            status=item.get("status", "confirmed"),
        ))
    return events
