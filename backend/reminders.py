"""
Reminders for todos and the scheduled jobs that email them.

Reminder times are stored in UTC and shown to the user in the timezone from
their settings.
"""
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

import config
import llm
from board import load_timezone, parse_datetime
from database import (
    create_reminder_db,
    get_due_reminders_db,
    get_todos_db,
    get_weekly_review_users_db,
    mark_reminder_sent_db,
    to_timestamp,
)
from integrations import HTTP_TIMEOUT, IntegrationError
from models import Reminder, Todo, User, UserSettings
from todo_parser import validate_and_format_date
from prompts import REMINDER_PROMPT

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class ReminderError(ValueError):
    """The reminder request can't be turned into a reminder time."""


def format_local_time(timestamp: str, timezone_name: str) -> str:
    """Render a UTC timestamp in the user's timezone, e.g. "March 4, 2026 at 9:05 AM EST"."""
    moment = parse_datetime(timestamp)
    if moment is None:
        return timestamp
    local = moment.astimezone(load_timezone(timezone_name))
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local:%B} {local.day}, {local.year} at {hour}:{local:%M} {meridiem} {local.tzname()}"


async def send_email(to: str, subject: str, body_html: str) -> None:
    """Send one email through the Resend HTTP API."""
    if not config.RESEND_API_KEY:
        raise IntegrationError("Email is not configured")
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http:
            response = await http.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {config.RESEND_API_KEY}"},
                json={"from": config.EMAIL_FROM, "to": [to], "subject": subject, "html": body_html},
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise IntegrationError(f"Email to {to} failed: {e}") from e


async def create_reminder(
    todo: Todo,
    user: User,
    settings: UserSettings,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Reminder:
    """
    Schedule a reminder for a todo.

    With a message ("remind me tomorrow morning") Claude picks the time.
    Without one the reminder fires reminder_minutes before the due date.
    """
    now = now or datetime.now(timezone.utc)
    tz = load_timezone(settings.timezone)

    if message and message.strip():
        if not config.ai_configured():
            raise llm.LLMError("API key not configured")
        comments = "\n".join(f"- {c.text}" for c in todo.comments) or "none"
        system_prompt = REMINDER_PROMPT.format(
            title=todo.title,
            due=format_local_time(todo.due_date, settings.timezone) if todo.due_date else "no due date",
            comments=comments,
            now=now.astimezone(tz).strftime("%Y-%m-%d %H:%M (%A)"),
            timezone=settings.timezone,
        )
        parsed = await llm.complete_json(system_prompt, [{"role": "user", "content": message.strip()}], max_tokens=200)
        reminder_time = validate_and_format_date(parsed.get("reminder_time"), tz)
        if reminder_time is None:
            raise ReminderError(parsed.get("summary") or "Could not work out when to remind you")
        summary = parsed.get("summary") or f"Reminder set for {format_local_time(reminder_time, settings.timezone)}"
    else:
        due = parse_datetime(todo.due_date)
        if due is None:
            raise ReminderError("Todo has no due date; say when you want to be reminded")
        reminder_time = to_timestamp(due - timedelta(minutes=settings.reminder_minutes))
        summary = f"Reminder set for {format_local_time(reminder_time, settings.timezone)}"

    reminder = create_reminder_db(todo.id, user.id, todo.title, reminder_time, summary)
    logger.info("Reminder %s scheduled for %s", reminder.id, reminder_time)
    return reminder


def _reminder_email(title: str, due_text: str, user_name: Optional[str]) -> str:
    return (
        f"<p>Hi {html.escape(user_name or 'there')},</p>"
        f"<p>This is your reminder for <strong>{html.escape(title)}</strong>, scheduled for {html.escape(due_text)}.</p>"
        "<p>- agenda</p>"
    )


async def check_reminders(now: Optional[str] = None) -> dict:
    """
    Email every pending reminder that is due.
    Sent reminders are marked sent; failed ones stay pending for the next run.
    Reminders for users without an email address are skipped.
    """
    due = get_due_reminders_db(now)
    logger.info("Found %d reminders to send", len(due))

    sent = failed = skipped = 0
    for entry in due:
        reminder = entry["reminder"]
        if not entry["email"]:
            logger.warning("Skipping reminder %s: no email for user %s", reminder.id, reminder.user_id)
            skipped += 1
            continue

        local_time = format_local_time(reminder.reminder_time, entry["timezone"])
        try:
            await send_email(
                entry["email"],
                f"Reminder: {reminder.title}",
                _reminder_email(reminder.title, local_time, entry["name"]),
            )
        except IntegrationError as e:
            logger.error("Failed to send reminder %s: %s", reminder.id, e)
            failed += 1
            continue
        mark_reminder_sent_db(reminder.id)
        sent += 1

    logger.info("Reminders sent: %d, failed: %d, skipped: %d", sent, failed, skipped)
    return {"success": True, "sent": sent, "failed": failed, "skipped": skipped}


def weekly_summary(todos: list[Todo], now: datetime) -> tuple[list[Todo], list[Todo]]:
    """(completed in the last 7 days, still open)."""
    week_ago = now - timedelta(days=7)
    completed = [
        t for t in todos
        if t.completed and (parse_datetime(t.updated_at) or now) >= week_ago
    ]
    still_open = [t for t in todos if not t.completed]
    return completed, still_open


def _review_email(user: User, completed: list[Todo], still_open: list[Todo]) -> str:
    def items(todos: list[Todo]) -> str:
        if not todos:
            return "<p>Nothing here.</p>"
        return "<ul>" + "".join(f"<li>{html.escape(t.title)}</li>" for t in todos) + "</ul>"

    return (
        f"<p>Hi {html.escape(user.name or 'there')}, here is your week.</p>"
        f"<h3>Completed ({len(completed)})</h3>{items(completed)}"
        f"<h3>Still open ({len(still_open)})</h3>{items(still_open)}"
    )


async def send_weekly_reviews(now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    sent = failed = skipped = 0
    for user, _settings in get_weekly_review_users_db():
        if not user.email:
            skipped += 1
            continue
        completed, still_open = weekly_summary(get_todos_db(user_id=user.id), now)
        try:
            await send_email(user.email, "Your week in agenda", _review_email(user, completed, still_open))
        except IntegrationError as e:
            logger.error("Failed to send weekly review to user %s: %s", user.id, e)
            failed += 1
            continue
        sent += 1
    logger.info("Weekly reviews sent: %d, failed: %d, skipped: %d", sent, failed, skipped)
    return {"success": True, "sent": sent, "failed": failed, "skipped": skipped}
