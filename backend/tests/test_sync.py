"""
Tests for sync.py - content hashing, reconciliation and deduplication.
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import SyncTodo, Todo
from sync import content_hash, dedupe, reconcile


def remote(todo_id, title, due_date=None, urgency=1, completed=False):
    return Todo(
        id=todo_id,
        title=title,
        due_date=due_date,
        urgency=urgency,
        completed=completed,
        user_id="u1",
        created_at="2026-03-01T00:00:00Z",
        updated_at="2026-03-01T00:00:00Z",
    )


class TestContentHash:
    """Tests for the content key used to match todos."""

    def test_title_normalized(self):
        """Title case and surrounding whitespace don't matter."""
        assert content_hash(SyncTodo(title="  Buy Milk ")) == content_hash(SyncTodo(title="buy milk"))

    def test_missing_urgency_is_one(self):
        """An unset urgency hashes like urgency 1."""
        assert content_hash(SyncTodo(title="a")) == "a__1"
        assert content_hash(remote("1", "a")) == "a__1"

    def test_due_date_and_urgency_distinguish(self):
        """Different due dates or urgency give different keys."""
        base = SyncTodo(title="a", due_date="2026-03-10T09:00:00Z", urgency=2)
        assert content_hash(base) == "a_2026-03-10T09:00:00Z_2"
        assert content_hash(base) != content_hash(SyncTodo(title="a", urgency=2))
        assert content_hash(base) != content_hash(SyncTodo(title="a", due_date=base.due_date, urgency=3))


class TestReconcile:
    """Tests for merging a local list into the server's."""

    def test_new_local_todos_created(self):
        """Local todos without a match are returned for creation."""
        local = [SyncTodo(title="New"), SyncTodo(title="Existing")]
        to_create, to_update = reconcile(local, [remote("r1", "existing")])

        assert [t.title for t in to_create] == ["New"]
        assert to_update == []

    def test_completion_state_propagates(self):
        """A matched todo whose completion differs is updated to the local state."""
        local = [SyncTodo(title="Done", completed=True), SyncTodo(title="Same", completed=False)]
        server = [remote("r1", "Done"), remote("r2", "Same")]

        to_create, to_update = reconcile(local, server)
        assert to_create == []
        assert to_update == [("r1", True)]

    def test_empty_lists(self):
        """Nothing to do when both sides are empty."""
        assert reconcile([], []) == ([], [])


class TestDedupe:
    """Tests for collapsing duplicate todos."""

    def test_later_duplicate_wins_first_position(self):
        """The last duplicate is kept, at the position of the first."""
        todos = [remote("1", "Milk"), remote("2", "Bread"), remote("3", "milk ")]
        result = dedupe(todos)
        assert [t.id for t in result] == ["3", "2"]

    def test_distinct_todos_untouched(self):
        """Todos with different content all survive in order."""
        todos = [remote("1", "Milk"), remote("2", "Milk", urgency=3)]
        assert [t.id for t in dedupe(todos)] == ["1", "2"]
