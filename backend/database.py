import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from contextlib import contextmanager

import config
from models import (
    Account,
    Comment,
    Reminder,
    Session,
    Todo,
    User,
    UserSettings,
    Workspace,
    WorkspaceMember,
)

DATABASE_PATH = config.DATABASE_PATH

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def to_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC string so stored values sort and compare as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now() -> str:
    return to_timestamp(datetime.now(timezone.utc))


def new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()

def init_db():
    """Initialize database by running Alembic migrations."""
    import subprocess
    import os

    # Run alembic upgrade from the backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        check=True
    )


# Row conversion

def _row_to_user(row) -> User:
    return User(**dict(row))

def _row_to_account(row) -> Account:
    return Account(**dict(row))

def _row_to_workspace(row) -> Workspace:
    data = dict(row)
    data["is_personal"] = bool(data.get("is_personal"))
    return Workspace(**data)

def _row_to_comment(row) -> Comment:
    return Comment(**dict(row))

def _row_to_todo(row, comments: Optional[list[Comment]] = None) -> Todo:
    return Todo(
        id=row["id"],
        title=row["title"],
        completed=bool(row["completed"]),
        due_date=row["due_date"],
        urgency=row["urgency"] if row["urgency"] is not None else 1,
        user_id=row["user_id"],
        workspace_id=row["workspace_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        comments=comments or [],
    )

def _row_to_settings(row) -> UserSettings:
    return UserSettings(
        user_id=row["user_id"],
        reminder_minutes=row["reminder_minutes"],
        ai_suggested_reminders=bool(row["ai_suggested_reminders"]),
        weekly_review=bool(row["weekly_review"]),
        timezone=row["timezone"] or "UTC",
    )

def _row_to_reminder(row) -> Reminder:
    return Reminder(
        id=row["id"],
        todo_id=row["todo_id"],
        user_id=row["user_id"],
        title=row["title"],
        summary=row["summary"],
        reminder_time=row["reminder_time"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# User and account operations

def create_user_db(name: Optional[str], email: Optional[str], image: Optional[str] = None, user_id: Optional[str] = None) -> User:
    user_id = user_id or new_id()
    now = utc_now()
    with get_db() as conn:
        conn.execute(
            "INSERT INTO users (id, name, email, image, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, name, email.lower() if email else None, image, now, now)
        )
        conn.commit()
    return User(id=user_id, name=name, email=email.lower() if email else None, image=image, created_at=now, updated_at=now)

def get_user_db(user_id: str) -> Optional[User]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

def find_user_by_email_db(email: str) -> Optional[User]:
    """Find a user by email (case-insensitive)."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),)).fetchone()
        return _row_to_user(row) if row else None

def upsert_account_db(
    user_id: str,
    provider_id: str,
    account_id: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    access_token_expires_at: Optional[str] = None,
    scope: Optional[str] = None,
) -> Account:
    """
    Link a provider account to a user, or refresh the tokens of an existing link.
    A provider account belongs to exactly one user; relinking moves it.
    A refresh token is only replaced when the provider sends a new one.
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM accounts WHERE provider_id = ? AND account_id = ?",
            (provider_id, account_id)
        ).fetchone()
        if row:
            conn.execute(
                """UPDATE accounts
                   SET user_id = ?, access_token = ?, refresh_token = COALESCE(?, refresh_token),
                       access_token_expires_at = ?, scope = COALESCE(?, scope)
                   WHERE id = ?""",
                (user_id, access_token, refresh_token, access_token_expires_at, scope, row["id"])
            )
            account_pk = row["id"]
        else:
            account_pk = new_id()
            conn.execute(
                """INSERT INTO accounts
                   (id, user_id, provider_id, account_id, access_token, refresh_token, access_token_expires_at, scope, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (account_pk, user_id, provider_id, account_id, access_token, refresh_token,
                 access_token_expires_at, scope, utc_now())
            )
        conn.commit()
        updated = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_pk,)).fetchone()
        return _row_to_account(updated)

def find_account_db(provider_id: str, account_id: str) -> Optional[Account]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM accounts WHERE provider_id = ? AND account_id = ?",
            (provider_id, account_id)
        ).fetchone()
        return _row_to_account(row) if row else None

def get_accounts_db(user_id: str) -> list[Account]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY created_at", (user_id,)
        ).fetchall()
        return [_row_to_account(row) for row in rows]

def get_account_for_provider_db(user_id: str, provider_id: str) -> Optional[Account]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM accounts WHERE user_id = ? AND provider_id = ?",
            (user_id, provider_id)
        ).fetchone()
        return _row_to_account(row) if row else None

def update_account_tokens_db(account_pk: str, access_token: str, access_token_expires_at: Optional[str]) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE accounts SET access_token = ?, access_token_expires_at = ? WHERE id = ?",
            (access_token, access_token_expires_at, account_pk)
        )
        conn.commit()

def delete_account_db(user_id: str, provider_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM accounts WHERE user_id = ? AND provider_id = ?", (user_id, provider_id)
        )
        conn.commit()
        return cursor.rowcount > 0


# Session operations

def create_session_db(user_id: str, token: str, ttl_days: int) -> Session:
    now = datetime.now(timezone.utc)
    session = Session(
        id=new_id(),
        user_id=user_id,
        token=token,
        expires_at=to_timestamp(now + timedelta(days=ttl_days)),
        created_at=to_timestamp(now),
    )
    with get_db() as conn:
        conn.execute(
            "INSERT INTO sessions (id, user_id, token, expires_at, created_at) VALUES (?, ?, ?, ?, ?)",
            (session.id, session.user_id, session.token, session.expires_at, session.created_at)
        )
        conn.commit()
    return session

def get_session_by_token_db(token: str) -> Optional[Session]:
    """Find a live session by token. Expired sessions are treated as missing."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM sessions WHERE token = ? AND expires_at > ?", (token, utc_now())
        ).fetchone()
        return Session(**dict(row)) if row else None

def delete_session_db(token: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
        conn.commit()
        return cursor.rowcount > 0

def create_verification_db(identifier: str, value: str, ttl_minutes: int = 10) -> None:
    """Store a short-lived single-use value, such as an OAuth state."""
    now = datetime.now(timezone.utc)
    with get_db() as conn:
        conn.execute(
            "INSERT INTO verifications (id, identifier, value, expires_at, created_at) VALUES (?, ?, ?, ?, ?)",
            (new_id(), identifier, value, to_timestamp(now + timedelta(minutes=ttl_minutes)), to_timestamp(now))
        )
        conn.commit()

def consume_verification_db(identifier: str) -> Optional[str]:
    """Return and delete the value stored for identifier, or None if missing or expired."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT value, expires_at FROM verifications WHERE identifier = ?", (identifier,)
        ).fetchone()
        if not row:
            return None
        conn.execute("DELETE FROM verifications WHERE identifier = ?", (identifier,))
        conn.commit()
        if row["expires_at"] <= utc_now():
            return None
        return row["value"]


# Workspace operations

def create_workspace_db(name: str, owner_id: str, is_personal: bool = False) -> Workspace:
    """Create a workspace and add the owner as its first member."""
    workspace_id = new_id()
    now = utc_now()
    with get_db() as conn:
        conn.execute(
            "INSERT INTO workspaces (id, name, owner_id, is_personal, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (workspace_id, name, owner_id, int(is_personal), now, now)
        )
        conn.execute(
            "INSERT INTO workspace_members (id, workspace_id, user_id, role, created_at) VALUES (?, ?, ?, 'owner', ?)",
            (new_id(), workspace_id, owner_id, now)
        )
        conn.commit()
    return Workspace(
        id=workspace_id,
        name=name,
        owner_id=owner_id,
        is_personal=is_personal,
        role="owner",
        created_at=now,
        updated_at=now,
    )

def get_personal_workspace_db(user_id: str) -> Optional[Workspace]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM workspaces WHERE owner_id = ? AND is_personal = 1", (user_id,)
        ).fetchone()
        return _row_to_workspace(row) if row else None

def ensure_personal_workspace_db(user_id: str) -> Workspace:
    """Return the user's personal workspace, creating it on first use."""
    existing = get_personal_workspace_db(user_id)
    if existing:
        return existing.model_copy(update={"role": "owner"})
    return create_workspace_db("Personal", user_id, is_personal=True)

def get_workspace_db(workspace_id: str) -> Optional[Workspace]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
        return _row_to_workspace(row) if row else None

def get_workspaces_for_user_db(user_id: str) -> list[Workspace]:
    """All workspaces the user belongs to, personal first, with the user's role."""
    with get_db() as conn:
        rows = conn.execute(
            """SELECT w.*, m.role AS role FROM workspaces w
               INNER JOIN workspace_members m ON m.workspace_id = w.id
               WHERE m.user_id = ?
               ORDER BY w.is_personal DESC, w.created_at""",
            (user_id,)
        ).fetchall()
        return [_row_to_workspace(row) for row in rows]

def get_membership_db(workspace_id: str, user_id: str) -> Optional[WorkspaceMember]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM workspace_members WHERE workspace_id = ? AND user_id = ?",
            (workspace_id, user_id)
        ).fetchone()
        return WorkspaceMember(**dict(row)) if row else None

def add_member_db(workspace_id: str, user_id: str, role: str = "member") -> Optional[WorkspaceMember]:
    """Add a member. Returns None if the user already belongs to the workspace."""
    member = WorkspaceMember(
        id=new_id(), workspace_id=workspace_id, user_id=user_id, role=role, created_at=utc_now()
    )
    with get_db() as conn:
        try:
            conn.execute(
                "INSERT INTO workspace_members (id, workspace_id, user_id, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (member.id, member.workspace_id, member.user_id, member.role, member.created_at)
            )
            conn.commit()
        except sqlite3.IntegrityError:
            return None
    return member

def delete_workspace_db(workspace_id: str) -> bool:
    """Delete a workspace with its memberships, todos and their comments."""
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
        conn.commit()
        return cursor.rowcount > 0


# Todo operations

def _comments_for(conn, todo_ids: list[str]) -> dict[str, list[Comment]]:
    by_todo: dict[str, list[Comment]] = {todo_id: [] for todo_id in todo_ids}
    if not todo_ids:
        return by_todo
    placeholders = ", ".join("?" for _ in todo_ids)
    rows = conn.execute(
        f"SELECT * FROM comments WHERE todo_id IN ({placeholders}) ORDER BY created_at",
        todo_ids
    ).fetchall()
    for row in rows:
        by_todo[row["todo_id"]].append(_row_to_comment(row))
    return by_todo

def create_todo_db(
    title: str,
    user_id: str,
    workspace_id: Optional[str] = None,
    due_date: Optional[str] = None,
    urgency: int = 1,
    completed: bool = False,
    todo_id: Optional[str] = None,
) -> Todo:
    todo_id = todo_id or new_id()
    now = utc_now()
    with get_db() as conn:
        conn.execute(
            """INSERT INTO todos
               (id, title, completed, due_date, urgency, user_id, workspace_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (todo_id, title, int(completed), due_date, urgency, user_id, workspace_id, now, now)
        )
        conn.commit()
    return Todo(
        id=todo_id,
        title=title,
        completed=completed,
        due_date=due_date,
        urgency=urgency,
        user_id=user_id,
        workspace_id=workspace_id,
        created_at=now,
        updated_at=now,
    )

def get_todo_db(todo_id: str) -> Optional[Todo]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM todos WHERE id = ?", (todo_id,)).fetchone()
        if not row:
            return None
        comments = _comments_for(conn, [todo_id])[todo_id]
        return _row_to_todo(row, comments)

def get_todos_db(user_id: Optional[str] = None, workspace_id: Optional[str] = None) -> list[Todo]:
    """
    Get todos with their comments.
    With workspace_id, returns every todo in that workspace; otherwise the user's own todos.
    """
    if workspace_id:
        query, params = "SELECT * FROM todos WHERE workspace_id = ? ORDER BY created_at", (workspace_id,)
    else:
        query, params = "SELECT * FROM todos WHERE user_id = ? ORDER BY created_at", (user_id,)
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
        comments = _comments_for(conn, [row["id"] for row in rows])
        return [_row_to_todo(row, comments[row["id"]]) for row in rows]

def update_todo_db(todo_id: str, **updates) -> Optional[Todo]:
    """
    Update a todo with any fields provided.
    Only updates fields that differ from current values; updated_at moves only on a real change.

    Args:
        todo_id: Todo ID to update
        **updates: Field names and values to update (title, completed, due_date, urgency, workspace_id)
    """
    with get_db() as conn:
        row = conn.execute("SELECT * FROM todos WHERE id = ?", (todo_id,)).fetchone()
        if not row:
            return None

        keys = row.keys()

        changes = {}
        for field, new_value in updates.items():
            if field not in keys or field in ("id", "user_id", "created_at", "updated_at"):
                continue
            # Store bools as ints to match SQLite storage
            if isinstance(new_value, bool):
                new_value = int(new_value)
            if new_value != row[field]:
                changes[field] = new_value

        if changes:
            changes["updated_at"] = utc_now()
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            values = list(changes.values()) + [todo_id]
            conn.execute(f"UPDATE todos SET {set_clause} WHERE id = ?", values)
            conn.commit()

    return get_todo_db(todo_id)

def delete_todo_db(todo_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
        conn.commit()
        return cursor.rowcount > 0


# Comment operations

def add_comment_db(todo_id: str, user_id: str, text: str) -> Comment:
    comment = Comment(id=new_id(), todo_id=todo_id, user_id=user_id, text=text, created_at=utc_now())
    with get_db() as conn:
        conn.execute(
            "INSERT INTO comments (id, todo_id, user_id, text, created_at) VALUES (?, ?, ?, ?, ?)",
            (comment.id, comment.todo_id, comment.user_id, comment.text, comment.created_at)
        )
        conn.execute("UPDATE todos SET updated_at = ? WHERE id = ?", (comment.created_at, todo_id))
        conn.commit()
    return comment

def get_comment_db(comment_id: str) -> Optional[Comment]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        return _row_to_comment(row) if row else None

def delete_comment_db(todo_id: str, comment_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM comments WHERE id = ? AND todo_id = ?", (comment_id, todo_id)
        )
        conn.commit()
        return cursor.rowcount > 0


# Settings operations

def get_settings_db(user_id: str) -> Optional[UserSettings]:
    """Stored settings for a user, or None if the user never saved any."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_settings(row) if row else None

def save_settings_db(
    user_id: str,
    reminder_minutes: int,
    ai_suggested_reminders: bool,
    weekly_review: bool,
    timezone_name: str,
) -> UserSettings:
    now = utc_now()
    with get_db() as conn:
        conn.execute(
            """INSERT INTO user_settings
               (user_id, reminder_minutes, ai_suggested_reminders, weekly_review, timezone, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   reminder_minutes = excluded.reminder_minutes,
                   ai_suggested_reminders = excluded.ai_suggested_reminders,
                   weekly_review = excluded.weekly_review,
                   timezone = excluded.timezone,
                   updated_at = excluded.updated_at""",
            (user_id, reminder_minutes, int(ai_suggested_reminders), int(weekly_review), timezone_name, now, now)
        )
        conn.commit()
    return UserSettings(
        user_id=user_id,
        reminder_minutes=reminder_minutes,
        ai_suggested_reminders=ai_suggested_reminders,
        weekly_review=weekly_review,
        timezone=timezone_name,
    )

def get_weekly_review_users_db() -> list[tuple[User, UserSettings]]:
    """Users who opted into the weekly review email."""
    with get_db() as conn:
        rows = conn.execute(
            """SELECT u.*, s.user_id AS settings_user_id, s.reminder_minutes, s.ai_suggested_reminders,
                      s.weekly_review, s.timezone
               FROM user_settings s INNER JOIN users u ON u.id = s.user_id
               WHERE s.weekly_review = 1"""
        ).fetchall()
        result = []
        for row in rows:
            user = User(
                id=row["id"], name=row["name"], email=row["email"], image=row["image"],
                created_at=row["created_at"], updated_at=row["updated_at"]
            )
            settings = UserSettings(
                user_id=row["settings_user_id"],
                reminder_minutes=row["reminder_minutes"],
                ai_suggested_reminders=bool(row["ai_suggested_reminders"]),
                weekly_review=True,
                timezone=row["timezone"] or "UTC",
            )
            result.append((user, settings))
        return result


# Reminder operations

def create_reminder_db(
    todo_id: str,
    user_id: str,
    title: str,
    reminder_time: str,
    summary: Optional[str] = None,
) -> Reminder:
    now = utc_now()
    reminder = Reminder(
        id=new_id(),
        todo_id=todo_id,
        user_id=user_id,
        title=title,
        summary=summary,
        reminder_time=reminder_time,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    with get_db() as conn:
        conn.execute(
            """INSERT INTO reminders
               (id, todo_id, user_id, title, summary, reminder_time, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
            (reminder.id, todo_id, user_id, title, summary, reminder_time, now, now)
        )
        conn.commit()
    return reminder

def get_reminders_db(user_id: str) -> list[Reminder]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM reminders WHERE user_id = ? ORDER BY reminder_time", (user_id,)
        ).fetchall()
        return [_row_to_reminder(row) for row in rows]

def delete_reminder_db(reminder_id: str, user_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM reminders WHERE id = ? AND user_id = ?", (reminder_id, user_id)
        )
        conn.commit()
        return cursor.rowcount > 0

def get_due_reminders_db(now: Optional[str] = None) -> list[dict]:
    """
    Pending reminders whose time has passed, joined with the recipient.
    Returns dicts with "reminder", "email", "name" and "timezone" keys.
    """
    now = now or utc_now()
    with get_db() as conn:
        rows = conn.execute(
            """SELECT r.*, u.email AS user_email, u.name AS user_name, s.timezone AS user_timezone
               FROM reminders r
               LEFT JOIN users u ON u.id = r.user_id
               LEFT JOIN user_settings s ON s.user_id = r.user_id
               WHERE r.status = 'pending' AND r.reminder_time <= ?
               ORDER BY r.reminder_time""",
            (now,)
        ).fetchall()
        return [
            {
                "reminder": _row_to_reminder(row),
                "email": row["user_email"],
                "name": row["user_name"],
                "timezone": row["user_timezone"] or "UTC",
            }
            for row in rows
        ]

def mark_reminder_sent_db(reminder_id: str) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE reminders SET status = 'sent', updated_at = ? WHERE id = ?",
            (utc_now(), reminder_id)
        )
        conn.commit()
