from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

class User(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None
    created_at: str
    updated_at: str

class Account(BaseModel):
    id: str
    user_id: str
    provider_id: str  # "google" or "github"
    account_id: str  # Provider-side user id
    access_token: Optional[str] = Field(default=None, exclude=True)
    refresh_token: Optional[str] = Field(default=None, exclude=True)
    access_token_expires_at: Optional[str] = None
    scope: Optional[str] = None
    created_at: str

class Session(BaseModel):
    id: str
    user_id: str
    token: str
    expires_at: str
    created_at: str

class Workspace(BaseModel):
    id: str
    name: str
    owner_id: str
    is_personal: bool = False
    role: Optional[str] = None  # Caller's role, filled in for listings
    created_at: str
    updated_at: str

class WorkspaceMember(BaseModel):
    id: str
    workspace_id: str
    user_id: str
    role: str  # "owner" or "member"
    created_at: str

class Comment(BaseModel):
    id: str
    todo_id: str
    user_id: str
    text: str
    created_at: str

class Todo(BaseModel):
    id: str
    title: str
    completed: bool = False
    due_date: Optional[str] = None  # ISO 8601 datetime
    urgency: int = 1  # 1 (low) to 5 (critical)
    user_id: str
    workspace_id: Optional[str] = None
    created_at: str
    updated_at: str
    comments: list[Comment] = []

class UserSettings(BaseModel):
    user_id: Optional[str] = None  # None when these are unsaved defaults
    reminder_minutes: int = 30
    ai_suggested_reminders: bool = False
    weekly_review: bool = False
    timezone: str = "UTC"

class Reminder(BaseModel):
    id: str
    todo_id: str
    user_id: str
    title: str
    summary: Optional[str] = None
    reminder_time: str  # ISO 8601, UTC
    status: Literal["pending", "sent"] = "pending"
    created_at: str
    updated_at: str

# Request bodies

class TodoCreate(BaseModel):
    title: str = Field(min_length=1)
    due_date: Optional[str] = None
    urgency: int = Field(default=1, ge=1, le=5)
    completed: bool = False
    workspace_id: Optional[str] = None

class TodoBatchCreate(BaseModel):
    todos: list[TodoCreate]
    workspace_id: Optional[str] = None

class TodoUpdate(BaseModel):
    title: Optional[str] = None
    completed: Optional[bool] = None
    due_date: Optional[str] = None
    urgency: Optional[int] = Field(default=None, ge=1, le=5)
    workspace_id: Optional[str] = None

class TodoMove(BaseModel):
    source_column: str
    source_index: int
    destination_column: str
    destination_index: int

class SyncTodo(BaseModel):
    title: str = Field(min_length=1)
    due_date: Optional[str] = None
    urgency: Optional[int] = Field(default=None, ge=1, le=5)
    completed: bool = False

class SyncRequest(BaseModel):
    todos: list[SyncTodo]
    workspace_id: Optional[str] = None

class CommentCreate(BaseModel):
    text: str = Field(min_length=1)

class WorkspaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)

class MemberAdd(BaseModel):
    email: str
    role: Literal["owner", "member"] = "member"

class SettingsUpdate(BaseModel):
    reminder_minutes: int = Field(default=30, ge=0, le=10080)
    ai_suggested_reminders: bool = False
    weekly_review: bool = False
    timezone: str = "UTC"

class ReminderCreate(BaseModel):
    todo_id: str
    message: Optional[str] = None  # Natural-language reminder request

class ParseTodoRequest(BaseModel):
    message: str = ""
    conversation_id: Optional[str] = None
    collected_values: dict[str, str] = {}
    pending_fields: list[str] = []
    current_field: Optional[str] = None

# Responses

class DetectedTask(BaseModel):
    title: str
    suggested_date: Optional[str] = None
    suggested_urgency: int = 3

class ParseTodoResponse(BaseModel):
    text: str = ""
    values: dict[str, str] = {}
    still_needed: list[str] = []
    is_complete: bool = False
    suggestions: list[str] = []
    is_multiple_tasks: bool = False
    tasks: list[DetectedTask] = []

class IntegrationCard(BaseModel):
    id: str
    type: Literal[
        "github_issue", "github_pr", "slack_message", "google_calendar",
        "twitter_dm", "vercel_build", "posthog"
    ]
    data: dict[str, Any]

class CalendarEvent(BaseModel):
    id: str
    summary: str = ""
    description: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    status: str = "confirmed"
