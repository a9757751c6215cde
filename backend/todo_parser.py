"""
Natural-language todo parsing.

A todo is built over one or more turns. The client sends the text typed so far
together with the values already collected and the fields still pending; the
server answers with the merged values, what is still needed and a follow-up
question. Answers to a single pending field arrive with current_field set.
"""
import json
import logging
import math
from datetime import datetime, timezone, tzinfo
from typing import Optional

import config
import llm
from database import to_timestamp
from models import DetectedTask, ParseTodoRequest, ParseTodoResponse
from prompts import PARSE_DATE_PROMPT, PARSE_TODO_PROMPT

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "date", "urgency")

FIELD_PROMPTS = {
    "title": "What do you need to do?",
    "date": "When is it due?",
    "urgency": "How urgent is it, from 1 to 5?",
}

DEFAULT_SUGGESTIONS = {
    "title": [],
    "date": ["Today", "Tomorrow", "Next week"],
    "urgency": [],
}


def validate_and_format_date(value: Optional[str], tz: tzinfo = timezone.utc) -> Optional[str]:
    """
    Normalize a date or datetime string to a UTC ISO timestamp.
    Naive values are read in tz; a bare date means 09:00 that day. Returns None if unparseable.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if len(value) == 10:
        value += "T09:00"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return to_timestamp(parsed)


def parse_urgency(value) -> Optional[float]:
    """Urgency as a float clamped to 1.0-5.0 with one decimal, or None."""
    try:
        urgency = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(urgency):
        return None
    return round(min(max(urgency, 1.0), 5.0), 1)


def round_urgency(value) -> Optional[int]:
    """Round half up to a whole urgency level (2.5 -> 3)."""
    urgency = parse_urgency(value)
    if urgency is None:
        return None
    return int(math.floor(urgency + 0.5))


def missing_fields(values: dict[str, str]) -> list[str]:
    return [field for field in REQUIRED_FIELDS if not values.get(field)]


def _prompt_context(now: datetime) -> dict:
    return {
        "today": now.strftime("%Y-%m-%d"),
        "weekday": now.strftime("%A"),
        "time": now.strftime("%H:%M"),
    }


def _suggestions(raw, field: Optional[str]) -> list[str]:
    if isinstance(raw, list):
        cleaned = [str(s).strip() for s in raw if str(s).strip()]
        if cleaned:
            return cleaned[:3]
    return list(DEFAULT_SUGGESTIONS.get(field, [])) if field else []


def _response(values: dict[str, str], text: Optional[str] = None, suggestions=None) -> ParseTodoResponse:
    still_needed = missing_fields(values)
    next_field = still_needed[0] if still_needed else None
    if text is None:
        text = FIELD_PROMPTS[next_field] if next_field else f"Got it: {values.get('title', '')}"
    return ParseTodoResponse(
        text=text,
        values=values,
        still_needed=still_needed,
        is_complete=not still_needed,
        suggestions=_suggestions(suggestions, next_field),
    )


async def parse_todo(request: ParseTodoRequest, now: datetime, tz: tzinfo = timezone.utc) -> ParseTodoResponse:
    """
    Advance the todo-building conversation by one turn.
    now is the current time in the user's timezone tz.
    """
    if request.current_field:
        return await _parse_field(request, now, tz)
    return await _parse_message(request, now, tz)


async def _parse_message(request: ParseTodoRequest, now: datetime, tz: tzinfo) -> ParseTodoResponse:
    message = request.message.strip()
    values = {k: v for k, v in request.collected_values.items() if k in REQUIRED_FIELDS and v}

    if not message:
        return _response(values)

    if not config.ai_configured():
        values.setdefault("title", message)
        return _response(values, text="API key not configured")

    system_prompt = PARSE_TODO_PROMPT.format(
        collected=json.dumps(values) if values else "none",
        **_prompt_context(now)
    )
    try:
        parsed = await llm.complete_json(system_prompt, [{"role": "user", "content": message}])
    except llm.LLMError as e:
        logger.warning("Todo parsing failed for conversation %s: %s", request.conversation_id, e)
        return ParseTodoResponse(
            text="Something went wrong. Please try again.",
            values=values,
            still_needed=request.pending_fields or missing_fields(values),
        )

    tasks = [t for t in (parsed.get("tasks") or []) if isinstance(t, dict) and str(t.get("title") or "").strip()]

    if len(tasks) > 1:
        detected = [
            DetectedTask(
                title=str(t["title"]).strip(),
                suggested_date=validate_and_format_date(t.get("date"), tz),
                suggested_urgency=round_urgency(t.get("urgency")) or 3,
            )
            for t in tasks
        ]
        logger.info("Detected %d todos in one message", len(detected))
        return ParseTodoResponse(
            text=parsed.get("follow_up") or f"I found {len(detected)} todos. Add them all?",
            values=values,
            is_multiple_tasks=True,
            tasks=detected,
        )

    if tasks:
        task = tasks[0]
        values["title"] = str(task["title"]).strip()
        date = validate_and_format_date(task.get("date"), tz)
        if date:
            values["date"] = date
        urgency = parse_urgency(task.get("urgency"))
        if urgency is not None:
            values["urgency"] = f"{urgency:.1f}"

    follow_up = parsed.get("follow_up") if missing_fields(values) else None
    return _response(values, text=follow_up or None, suggestions=parsed.get("suggestions"))


async def _parse_field(request: ParseTodoRequest, now: datetime, tz: tzinfo) -> ParseTodoResponse:
    field = request.current_field
    if field not in REQUIRED_FIELDS:
        raise ValueError(f"Unknown field '{field}'")

    values = {k: v for k, v in request.collected_values.items() if k in REQUIRED_FIELDS and v}
    answer = (request.message or values.get(field) or "").strip()
    values.pop(field, None)

    if field == "title":
        if answer:
            values["title"] = answer
        return _response(values)

    if field == "urgency":
        urgency = parse_urgency(answer)
        if urgency is None:
            return _response(values, text="Urgency should be a number from 1 to 5.")
        values["urgency"] = f"{urgency:.1f}"
        return _response(values)

    date = validate_and_format_date(answer, tz)
    if date is None and answer and config.ai_configured():
        system_prompt = PARSE_DATE_PROMPT.format(**_prompt_context(now))
        try:
            parsed = await llm.complete_json(system_prompt, [{"role": "user", "content": answer}], max_tokens=64)
            date = validate_and_format_date(parsed.get("date"), tz)
        except llm.LLMError as e:
            logger.warning("Date parsing failed for %r: %s", answer, e)
    if date is None:
        return _response(values, text=f"I couldn't understand that date. {FIELD_PROMPTS['date']}")
    values["date"] = date
    return _response(values)
