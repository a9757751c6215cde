"""
Kanban board helpers: grouping todos into due-date columns, the due date a todo
gets when dropped on a column, and view filters.

Column ids follow the client's droppable ids:
    mobile-column                       single column on phones
    tablet-column-0, tablet-column-1    "Due Today & Overdue", "Upcoming"
    desktop-column-0..2                 "Today", "This Week", "Later"
"""
import math
import random
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

View = Literal["all", "today", "week", "month"]


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string into an aware datetime. Naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_timezone(name: Optional[str], strict: bool = False) -> tzinfo:
    """ZoneInfo for an IANA name. Unknown names fall back to UTC unless strict."""
    try:
        return ZoneInfo(name) if name else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        if strict:
            raise ValueError(f"Unknown timezone '{name}'")
        return timezone.utc


def _due_key(todo) -> float:
    due = parse_datetime(todo.due_date)
    return due.timestamp() if due else math.inf


def sort_by_due_date(todos: list) -> list:
    """Earliest due date first; todos without a due date go last."""
    return sorted(todos, key=_due_key)


def days_until_due(todo, today: date, tz: tzinfo = timezone.utc) -> float:
    """Whole days between today and the todo's due day, in tz. math.inf when undated."""
    due = parse_datetime(todo.due_date)
    if due is None:
        return math.inf
    return (due.astimezone(tz).date() - today).days


def get_column_todos(todos: list, column_index: int, column_count: int, today: date, tz: tzinfo = timezone.utc) -> list:
    """
    Todos for one board column.

    1 column:  everything, by due date
    2 columns: 0 = undated, today or overdue; 1 = the rest
    3 columns: 0 = undated, today or overdue; 1 = due in the next 7 days; 2 = the rest

    The first column lists undated todos (by title), then today's, then overdue ones.
    """
    if column_count <= 1:
        return sort_by_due_date(todos)

    enriched = []
    for todo in todos:
        diff_days = days_until_due(todo, today, tz)
        group = column_count - 1
        if diff_days == math.inf or diff_days <= 0:
            group = 0
        elif column_count == 3 and 1 <= diff_days <= 7:
            group = 1
        enriched.append((todo, diff_days, group))

    bucket = [(todo, diff_days) for todo, diff_days, group in enriched if group == column_index]

    if column_index == 0:
        no_date = sorted((t for t, d in bucket if d == math.inf), key=lambda t: t.title.casefold())
        due_today = sort_by_due_date([t for t, d in bucket if d == 0])
        overdue = sort_by_due_date([t for t, d in bucket if d < 0])
        return no_date + due_today + overdue

    return sort_by_due_date([t for t, _ in bucket])


def get_board(todos: list, column_count: int, today: date, tz: tzinfo = timezone.utc) -> list[list]:
    return [get_column_todos(todos, i, column_count, today, tz) for i in range(column_count)]


def _column_number(column_id: str) -> int:
    try:
        return int(column_id.split("-")[2])
    except (IndexError, ValueError):
        return 0


def due_date_for_column(
    column_id: str,
    current_due: Optional[str],
    now: datetime,
    rng: Optional[random.Random] = None,
) -> datetime:
    """
    Due date for a todo dropped on column_id.
    Later columns spread todos over a random window so they don't all land on the same instant.
    """
    rng = rng or random.Random()

    if column_id == "mobile-column":
        return parse_datetime(current_due) or now + timedelta(hours=1)

    if column_id.startswith("tablet"):
        if _column_number(column_id) == 0:
            return now + timedelta(hours=1)
        return now + timedelta(hours=24 + rng.randint(0, 71))

    if column_id.startswith("desktop"):
        column = _column_number(column_id)
        if column == 0:
            return now + timedelta(hours=1 + rng.random() * 4)
        if column == 1:
            return now + timedelta(days=rng.randint(1, 6))
        return now + timedelta(days=rng.randint(8, 21))

    return now + timedelta(hours=2)


def filter_for_view(todos: list, view: View, today: date, tz: tzinfo = timezone.utc) -> list:
    """
    all:   everything
    today: due today
    week:  due today through the next 7 days
    month: due today through the next 30 days
    Unknown views behave like "all".
    """
    horizon = {"today": 0, "week": 7, "month": 30}.get(view)
    if horizon is None:
        return list(todos)
    return [todo for todo in todos if 0 <= days_until_due(todo, today, tz) <= horizon]


def column_for_id(item_id: str, column_count: int) -> int:
    """
    Stable column assignment for a feed item.
    Same 32-bit string hash the web client uses, so both sides agree on placement.
    """
    h = 0
    data = item_id.encode("utf-16-le")
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + code) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % column_count
