"""Conversation state: an append-only message log plus a todo list."""

import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .models import Message

TODO_STATUSES = ("pending", "in_progress", "completed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Todo:
    id: str
    content: str
    status: str = "pending"
    active_form: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


class Session:
    """One conversation with the agent.

    Messages are only ever appended. ``clear()`` starts a fresh session in
    place with a new id.
    """

    def __init__(self):
        self._reset()

    def _reset(self) -> None:
        self.id = str(uuid.uuid4())
        self.start_time = _now()
        self._messages: list[Message] = []
        self._todos: dict[str, Todo] = {}
        self._todo_ids = itertools.count(1)
        self.context: dict = {}

    # -- messages --

    def add_message(self, message: Message) -> Message:
        self._messages.append(message)
        return message

    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    # -- todos --

    def add_todo(
        self, content: str, status: str = "pending", active_form: str | None = None
    ) -> Todo:
        content = content.strip()
        if not content:
            raise ValueError("todo content must not be empty")
        self._check_status(status)
        todo = Todo(
            id=str(next(self._todo_ids)),
            content=content,
            status=status,
            active_form=active_form,
        )
        self._todos[todo.id] = todo
        return todo

    def update_todo(self, todo_id: str, **changes) -> Todo:
        todo = self._todos.get(str(todo_id))
        if todo is None:
            raise KeyError(f"no todo with id {todo_id}")
        unknown = set(changes) - {"content", "status", "active_form"}
        if unknown:
            raise ValueError(f"cannot update todo field(s): {', '.join(sorted(unknown))}")
        if "status" in changes:
            self._check_status(changes["status"])
        for key, value in changes.items():
            setattr(todo, key, value)
        todo.updated_at = _now()
        return todo

    def delete_todo(self, todo_id: str) -> None:
        if self._todos.pop(str(todo_id), None) is None:
            raise KeyError(f"no todo with id {todo_id}")

    def todos(self) -> list[Todo]:
        return list(self._todos.values())

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in TODO_STATUSES:
            raise ValueError(
                f"invalid todo status {status!r}, expected one of: {', '.join(TODO_STATUSES)}"
            )

    # -- context --

    def set_context(self, key: str, value) -> None:
        self.context[key] = value

    def get_context(self, key: str, default=None):
        return self.context.get(key, default)

    # -- lifecycle --

    def clear(self) -> None:
        self._reset()

    def summary(self) -> dict:
        by_status = {s: 0 for s in TODO_STATUSES}
        for todo in self._todos.values():
            by_status[todo.status] += 1
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "messages": len(self._messages),
            "todos": by_status,
        }
