"""
Content-hash reconciliation between a client's local todo list and the server.

Todos created offline have no server id, so matching is done on content:
lowercased trimmed title, due date and urgency.
"""


def content_hash(todo) -> str:
    title = (todo.title or "").lower().strip()
    return f"{title}_{todo.due_date or ''}_{todo.urgency or 1}"


def reconcile(local: list, remote: list) -> tuple[list, list[tuple[str, bool]]]:
    """
    Compare local todos against the server's.

    Returns (to_create, to_update):
        to_create: local todos with no content match on the server
        to_update: (remote_id, completed) for matches whose completion state differs
    """
    remote_by_hash = {content_hash(todo): todo for todo in remote}

    to_create = []
    to_update = []
    for todo in local:
        match = remote_by_hash.get(content_hash(todo))
        if match is None:
            to_create.append(todo)
        elif match.completed != todo.completed:
            to_update.append((match.id, todo.completed))
    return to_create, to_update


def dedupe(todos: list) -> list:
    """
    Collapse todos with identical content.
    A later duplicate replaces an earlier one but keeps the earlier one's position.
    """
    by_hash = {}
    for todo in todos:
        by_hash[content_hash(todo)] = todo
    return list(by_hash.values())
