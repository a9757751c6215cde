from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging
import random
import secrets
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
import database
import llm
from auth import authorization_url, complete_sign_in, get_current_user, read_session_token
from board import (
    View,
    due_date_for_column,
    filter_for_view,
    get_board,
    load_timezone,
    sort_by_due_date,
)
from database import (
    add_comment_db,
    add_member_db,
    create_todo_db,
    create_workspace_db,
    delete_account_db,
    delete_comment_db,
    delete_reminder_db,
    delete_session_db,
    delete_todo_db,
    delete_workspace_db,
    ensure_personal_workspace_db,
    find_user_by_email_db,
    get_accounts_db,
    get_comment_db,
    get_membership_db,
    get_reminders_db,
    get_session_by_token_db,
    get_settings_db,
    get_todo_db,
    get_todos_db,
    get_workspace_db,
    get_workspaces_for_user_db,
    save_settings_db,
    to_timestamp,
    update_todo_db,
)
from integrations import (
    CalendarNotConnected,
    IntegrationError,
    build_feed,
    get_calendar_events,
    sample_cards,
)
from models import (
    Account,
    CalendarEvent,
    Comment,
    CommentCreate,
    IntegrationCard,
    MemberAdd,
    ParseTodoRequest,
    ParseTodoResponse,
    Reminder,
    ReminderCreate,
    SettingsUpdate,
    SyncRequest,
    Todo,
    TodoBatchCreate,
    TodoCreate,
    TodoMove,
    TodoUpdate,
    User,
    UserSettings,
    Workspace,
    WorkspaceCreate,
    WorkspaceMember,
)
from reminders import ReminderError, check_reminders, create_reminder, send_weekly_reviews
from sync import dedupe, reconcile
from todo_parser import parse_todo as parse_todo_message, validate_and_format_date

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Spreads todos dropped on "later" board columns over a window of dates
_rng = random.Random()

@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    database.init_db()
    yield
    # Shutdown (nothing to do)

app = FastAPI(title="agenda", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntegrationError)
async def integration_error_handler(_request: Request, exc: IntegrationError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# Helpers

def get_user_settings(user: User) -> UserSettings:
    return get_settings_db(user.id) or UserSettings()


def user_timezone(user: User):
    return load_timezone(get_user_settings(user).timezone)


def require_membership(workspace_id: str, user: User) -> WorkspaceMember:
    if not get_workspace_db(workspace_id):
        raise HTTPException(status_code=404, detail="Workspace not found")
    membership = get_membership_db(workspace_id, user.id)
    if not membership:
        raise HTTPException(status_code=403, detail="Not a member of this workspace")
    return membership


def require_todo(todo_id: str, user: User) -> Todo:
    """The todo if the user owns it or belongs to its workspace."""
    todo = get_todo_db(todo_id)
    if not todo:
        raise HTTPException(status_code=404, detail="Todo not found")
    if todo.user_id != user.id and not (todo.workspace_id and get_membership_db(todo.workspace_id, user.id)):
        raise HTTPException(status_code=403, detail="You do not have access to this todo")
    return todo


def resolve_workspace(workspace_id: Optional[str], user: User) -> str:
    """Workspace for a new todo: the requested one (membership required) or the personal one."""
    if workspace_id:
        require_membership(workspace_id, user)
        return workspace_id
    return ensure_personal_workspace_db(user.id).id


def normalize_due_date(value: Optional[str], tz) -> Optional[str]:
    if value is None:
        return None
    due_date = validate_and_format_date(value, tz)
    if due_date is None:
        raise HTTPException(status_code=422, detail=f"Invalid due date '{value}'")
    return due_date


def visible_todos(user: User, workspace_id: Optional[str]) -> list[Todo]:
    if workspace_id:
        require_membership(workspace_id, user)
    return get_todos_db(user_id=user.id, workspace_id=workspace_id)


# App shell

@app.get("/manifest.webmanifest")
def manifest() -> dict:
    return {
        "name": "agenda",
        "short_name": "agenda",
        "description": "the simplest todo app ever",
        "start_url": "/",
        "display": "standalone",
        "background_color": "#f3f4f6",
        "theme_color": "#09090B",
        "icons": [
            {"src": "/icons/icon-192x192.png", "sizes": "192x192", "type": "image/png", "purpose": "any"},
            {"src": "/icons/icon-512x512.png", "sizes": "512x512", "type": "image/png", "purpose": "any"},
            {"src": "/icons/maskable-icon.png", "sizes": "512x512", "type": "image/png", "purpose": "maskable"},
        ],
        "orientation": "portrait",
        "display_override": ["standalone", "browser"],
        "categories": ["productivity"],
    }


@app.get("/api/development")
def development_status() -> dict:
    """Configuration status, only available in development."""
    if not config.is_development():
        raise HTTPException(status_code=403, detail="Not available in production")

    def state(value: Optional[str]) -> str:
        return "configured" if value else "missing"

    return {
        "status": "ok",
        "environment": config.ENVIRONMENT,
        "anthropic": state(config.ANTHROPIC_API_KEY),
        "google": {
            "client_id": state(config.GOOGLE_CLIENT_ID),
            "client_secret": state(config.GOOGLE_CLIENT_SECRET),
        },
        "github": {
            "client_id": state(config.GITHUB_CLIENT_ID),
            "client_secret": state(config.GITHUB_CLIENT_SECRET),
        },
        "email": state(config.RESEND_API_KEY),
        "cron": state(config.CRON_SECRET),
    }


# Auth

@app.get("/api/auth/sign-in/{provider}")
def sign_in(provider: str) -> dict:
    return {"url": authorization_url(provider)}


@app.get("/api/auth/callback/{provider}")
async def auth_callback(provider: str, code: str, state: str) -> JSONResponse:
    session, user = await complete_sign_in(provider, code, state)
    response = JSONResponse({"token": session.token, "expires_at": session.expires_at, "user": user.model_dump()})
    response.set_cookie(
        "session_token",
        session.token,
        httponly=True,
        secure=not config.is_development(),
        samesite="lax",
        max_age=config.SESSION_TTL_DAYS * 86400,
    )
    return response


@app.get("/api/auth/session")
def get_session(
    token: Optional[str] = Depends(read_session_token),
    user: User = Depends(get_current_user),
) -> dict:
    session = get_session_by_token_db(token)
    return {"user": user.model_dump(), "expires_at": session.expires_at if session else None}


@app.post("/api/auth/sign-out")
def sign_out(token: Optional[str] = Depends(read_session_token)) -> JSONResponse:
    if token:
        delete_session_db(token)
    response = JSONResponse({"status": "signed out"})
    response.delete_cookie("session_token")
    return response


@app.get("/api/user/accounts")
def list_accounts(user: User = Depends(get_current_user)) -> list[Account]:
    return get_accounts_db(user.id)


@app.delete("/api/user/accounts/{provider}")
def unlink_account(provider: str, user: User = Depends(get_current_user)) -> dict:
    accounts = get_accounts_db(user.id)
    if not any(a.provider_id == provider for a in accounts):
        raise HTTPException(status_code=404, detail="Account not linked")
    if len(accounts) <= 1:
        raise HTTPException(status_code=400, detail="Cannot unlink your only sign-in method")
    delete_account_db(user.id, provider)
    return {"status": "unlinked"}


# Settings

@app.get("/api/user/settings")
def get_settings(
    user: User = Depends(get_current_user),
    x_timezone: Optional[str] = Header(default=None),
) -> dict:
    """Stored settings, or defaults (without user_id) if the user never saved any."""
    stored = get_settings_db(user.id)
    if stored:
        return stored.model_dump()
    timezone_name = "UTC"
    if x_timezone:
        try:
            load_timezone(x_timezone, strict=True)
            timezone_name = x_timezone
        except ValueError:
            pass
    return UserSettings(timezone=timezone_name).model_dump(exclude={"user_id"})


@app.post("/api/user/settings")
def save_settings(settings_data: SettingsUpdate, user: User = Depends(get_current_user)) -> UserSettings:
    try:
        load_timezone(settings_data.timezone, strict=True)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return save_settings_db(
        user.id,
        settings_data.reminder_minutes,
        settings_data.ai_suggested_reminders,
        settings_data.weekly_review,
        settings_data.timezone,
    )


# Workspaces

@app.get("/api/workspaces")
def list_workspaces(user: User = Depends(get_current_user)) -> list[Workspace]:
    return get_workspaces_for_user_db(user.id)


@app.post("/api/workspaces")
def create_workspace(workspace_data: WorkspaceCreate, user: User = Depends(get_current_user)) -> Workspace:
    return create_workspace_db(workspace_data.name.strip(), user.id)


@app.post("/api/workspaces/personal")
def create_personal_workspace(user: User = Depends(get_current_user)) -> Workspace:
    return ensure_personal_workspace_db(user.id)


@app.delete("/api/workspaces/{workspace_id}")
def delete_workspace(workspace_id: str, user: User = Depends(get_current_user)) -> dict:
    workspace = get_workspace_db(workspace_id)
    if not workspace:
        raise HTTPException(status_code=404, detail="Workspace not found")
    membership = get_membership_db(workspace_id, user.id)
    if not membership or membership.role != "owner":
        raise HTTPException(status_code=403, detail="Only the owner can delete a workspace")
    if workspace.is_personal:
        raise HTTPException(status_code=400, detail="The personal workspace cannot be deleted")
    delete_workspace_db(workspace_id)
    return {"status": "deleted"}


@app.post("/api/workspaces/{workspace_id}/members")
def add_member(workspace_id: str, member_data: MemberAdd, user: User = Depends(get_current_user)) -> WorkspaceMember:
    membership = require_membership(workspace_id, user)
    if membership.role != "owner":
        raise HTTPException(status_code=403, detail="Only the owner can add members")
    invitee = find_user_by_email_db(member_data.email)
    if not invitee:
        raise HTTPException(status_code=404, detail="No user with that email")
    member = add_member_db(workspace_id, invitee.id, member_data.role)
    if not member:
        raise HTTPException(status_code=409, detail="User is already a member")
    return member


# Todos

@app.get("/api/todos")
def get_todos(
    workspace_id: Optional[str] = None,
    view: View = "all",
    user: User = Depends(get_current_user),
) -> list[Todo]:
    tz = user_timezone(user)
    todos = visible_todos(user, workspace_id)
    todos = filter_for_view(todos, view, datetime.now(tz).date(), tz)
    return sort_by_due_date(dedupe(todos))


@app.post("/api/todos")
def create_todo(todo_data: TodoCreate, user: User = Depends(get_current_user)) -> Todo:
    tz = user_timezone(user)
    return create_todo_db(
        todo_data.title.strip(),
        user.id,
        workspace_id=resolve_workspace(todo_data.workspace_id, user),
        due_date=normalize_due_date(todo_data.due_date, tz),
        urgency=todo_data.urgency,
        completed=todo_data.completed,
    )


@app.post("/api/todos/batch")
def create_todos(batch: TodoBatchCreate, user: User = Depends(get_current_user)) -> list[Todo]:
    """Add several todos at once, e.g. after confirming a multi-todo message. Undated ones are due now."""
    tz = user_timezone(user)
    now = to_timestamp(datetime.now(timezone.utc))
    created = []
    for todo_data in batch.todos:
        workspace_id = resolve_workspace(todo_data.workspace_id or batch.workspace_id, user)
        created.append(create_todo_db(
            todo_data.title.strip(),
            user.id,
            workspace_id=workspace_id,
            due_date=normalize_due_date(todo_data.due_date, tz) or now,
            urgency=todo_data.urgency,
            completed=todo_data.completed,
        ))
    return created


@app.post("/api/todos/sync")
def sync_todos(sync_request: SyncRequest, user: User = Depends(get_current_user)) -> list[Todo]:
    """Merge a client's local list into the server's and return the deduplicated result."""
    tz = user_timezone(user)
    # Compare in the stored form so dated todos match their server copy
    local_todos = []
    for local in sync_request.todos:
        if not local.title.strip():
            raise HTTPException(status_code=422, detail="Title cannot be empty")
        local_todos.append(local.model_copy(update={
            "title": local.title.strip(),
            "due_date": normalize_due_date(local.due_date, tz),
        }))
    remote = visible_todos(user, sync_request.workspace_id)
    to_create, to_update = reconcile(local_todos, remote)

    for todo_id, completed in to_update:
        update_todo_db(todo_id, completed=completed)
    workspace_id = resolve_workspace(sync_request.workspace_id, user) if to_create else None
    for local in to_create:
        create_todo_db(
            local.title,
            user.id,
            workspace_id=workspace_id,
            due_date=local.due_date,
            urgency=local.urgency or 1,
            completed=local.completed,
        )
    logger.info("Synced todos for user %s: %d created, %d updated", user.id, len(to_create), len(to_update))

    return sort_by_due_date(dedupe(visible_todos(user, sync_request.workspace_id)))


@app.get("/api/board")
def get_board_columns(
    columns: int = Query(default=3, ge=1, le=3),
    workspace_id: Optional[str] = None,
    user: User = Depends(get_current_user),
) -> dict:
    tz = user_timezone(user)
    todos = [t for t in visible_todos(user, workspace_id) if not t.completed]
    return {"columns": get_board(todos, columns, datetime.now(tz).date(), tz)}


@app.patch("/api/todos/{todo_id}")
def update_todo(todo_id: str, todo_data: TodoUpdate, user: User = Depends(get_current_user)) -> Todo:
    require_todo(todo_id, user)
    # An explicit null only clears the due date
    updates = {
        field: value for field, value in todo_data.model_dump(exclude_unset=True).items()
        if value is not None or field == "due_date"
    }
    if "title" in updates:
        if not updates["title"].strip():
            raise HTTPException(status_code=422, detail="Title cannot be empty")
        updates["title"] = updates["title"].strip()
    if "due_date" in updates:
        updates["due_date"] = normalize_due_date(updates["due_date"], user_timezone(user))
    if updates.get("workspace_id"):
        require_membership(updates["workspace_id"], user)
    elif "workspace_id" in updates:
        del updates["workspace_id"]
    result = update_todo_db(todo_id, **updates)
    if not result:
        raise HTTPException(status_code=404, detail="Todo not found")
    return result


@app.delete("/api/todos/{todo_id}")
def delete_todo(todo_id: str, user: User = Depends(get_current_user)) -> dict:
    require_todo(todo_id, user)
    if not delete_todo_db(todo_id):
        raise HTTPException(status_code=404, detail="Todo not found")
    return {"status": "deleted"}


@app.post("/api/todos/{todo_id}/move")
def move_todo(todo_id: str, move: TodoMove, user: User = Depends(get_current_user)) -> Todo:
    """Drop a todo on a board column; its due date follows the column."""
    todo = require_todo(todo_id, user)
    if move.source_column == move.destination_column and move.source_index == move.destination_index:
        return todo
    new_due = due_date_for_column(move.destination_column, todo.due_date, datetime.now(timezone.utc), _rng)
    logger.debug("Moving todo %s to %s, due %s -> %s", todo_id, move.destination_column, todo.due_date, new_due)
    return update_todo_db(todo_id, due_date=to_timestamp(new_due))


@app.post("/api/todos/{todo_id}/comments")
def add_comment(todo_id: str, comment_data: CommentCreate, user: User = Depends(get_current_user)) -> Comment:
    require_todo(todo_id, user)
    return add_comment_db(todo_id, user.id, comment_data.text.strip())


@app.delete("/api/todos/{todo_id}/comments/{comment_id}")
def delete_comment(todo_id: str, comment_id: str, user: User = Depends(get_current_user)) -> dict:
    todo = require_todo(todo_id, user)
    comment = get_comment_db(comment_id)
    if not comment or comment.todo_id != todo_id:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.user_id != user.id and todo.user_id != user.id:
        raise HTTPException(status_code=403, detail="You can only delete your own comments")
    delete_comment_db(todo_id, comment_id)
    return {"status": "deleted"}


# AI parsing

@app.post("/api/parse-todo")
async def parse_todo(parse_request: ParseTodoRequest, user: User = Depends(get_current_user)) -> ParseTodoResponse:
    """Turn a natural-language message into todo fields, one conversation turn at a time."""
    tz = user_timezone(user)
    try:
        return await parse_todo_message(parse_request, datetime.now(tz), tz)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# Reminders

@app.get("/api/reminders")
def list_reminders(user: User = Depends(get_current_user)) -> list[Reminder]:
    return get_reminders_db(user.id)


@app.post("/api/reminders")
async def add_reminder(reminder_data: ReminderCreate, user: User = Depends(get_current_user)) -> Reminder:
    todo = require_todo(reminder_data.todo_id, user)
    try:
        return await create_reminder(todo, user, get_user_settings(user), reminder_data.message)
    except ReminderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except llm.LLMError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.delete("/api/reminders/{reminder_id}")
def delete_reminder(reminder_id: str, user: User = Depends(get_current_user)) -> dict:
    if not delete_reminder_db(reminder_id, user.id):
        raise HTTPException(status_code=404, detail="Reminder not found")
    return {"status": "deleted"}


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    expected = f"Bearer {config.CRON_SECRET}"
    if not config.CRON_SECRET or not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.get("/api/cron/check-reminders", dependencies=[Depends(require_cron_secret)])
async def cron_check_reminders() -> dict:
    return await check_reminders()


@app.get("/api/cron/weekly-review", dependencies=[Depends(require_cron_secret)])
async def cron_weekly_review() -> dict:
    return await send_weekly_reviews()


# Integrations

@app.get("/api/integrations")
def list_integrations(user: User = Depends(get_current_user)) -> list[IntegrationCard]:
    return sample_cards()


@app.get("/api/integrations/google-calendar")
async def google_calendar_events(
    days: int = Query(default=7, ge=1, le=90),
    max_results: int = Query(default=10, ge=1, le=250),
    user: User = Depends(get_current_user),
) -> list[CalendarEvent]:
    now = datetime.now(timezone.utc)
    try:
        return await get_calendar_events(user.id, now, now + timedelta(days=days), max_results)
    except CalendarNotConnected as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/api/feed")
def get_feed(
    columns: int = Query(default=4, ge=1, le=6),
    view: View = "all",
    user: User = Depends(get_current_user),
) -> dict:
    """Incomplete todos and integration cards laid out over a fixed number of columns."""
    tz = user_timezone(user)
    todos = filter_for_view(get_todos_db(user_id=user.id), view, datetime.now(tz).date(), tz)
    return {"columns": build_feed(todos, sample_cards(), columns)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
