"""Request-scoped identifiers carried through ContextVars.

The middleware sets ``request_id``; handlers set ``user_id`` and
``location_id`` once the body is parsed so every log line of a request
carries them.
"""

from contextvars import ContextVar
from typing import Optional


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
location_id_var: ContextVar[Optional[str]] = ContextVar("location_id", default=None)


def bind_visit(user_id: Optional[str], location_id: Optional[str]) -> None:
    user_id_var.set(user_id)
    location_id_var.set(location_id)


def clear_context() -> None:
    """Reset context variables to defaults."""
    request_id_var.set(None)
    user_id_var.set(None)
    location_id_var.set(None)
