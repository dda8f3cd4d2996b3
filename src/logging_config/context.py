"""Event Context Management.

contextvars-backed binding of the event being processed (event ID,
category) and the recipient currently being evaluated to every log entry.
Each asyncio task copies the context, so concurrent events never see each
other's fields.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

_event_id_var: ContextVar[str] = ContextVar("event_id", default="")
_category_var: ContextVar[str] = ContextVar("category", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def get_event_id() -> str:
    """Get the current event ID from context."""
    return _event_id_var.get()


def get_user_id() -> str:
    """Get the recipient currently bound to the context."""
    return _user_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    event_id = _event_id_var.get()
    if event_id:
        ctx["event_id"] = event_id
    category = _category_var.get()
    if category:
        ctx["category"] = category
    user_id = _user_id_var.get()
    if user_id:
        ctx["user_id"] = user_id
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@contextmanager
def bind_user(user_id: str) -> Iterator[None]:
    """Bind a recipient for the duration of a block, restoring the previous one."""
    token = _user_id_var.set(user_id)
    try:
        yield
    finally:
        _user_id_var.reset(token)


@dataclass
class EventContext:
    """Context manager binding one domain event to all log entries.

    Example:
        with EventContext(event_id=event.event_id, category="new_listing"):
            logger.info("resolving recipients")  # includes event_id, category
    """

    event_id: str
    category: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __enter__(self) -> "EventContext":
        self._tokens = [
            (_event_id_var, _event_id_var.set(self.event_id)),
            (_category_var, _category_var.set(self.category)),
            (_user_id_var, _user_id_var.set("")),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
