"""Session provider: auth state change notifications.

Routes call `emit()` when a principal signs in or out; anything that
cares (logging, cache warmers, tests) registers with
`on_auth_state_change()`.
"""

import enum
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)


class AuthEvent(str, enum.Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass
class AuthSession:
    user_id: str
    email: str | None = None
    organization_id: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[AuthEvent, AuthSession], Union[None, Awaitable[None]]]

_listeners: list[Listener] = []


def on_auth_state_change(callback: Listener) -> Callable[[], None]:
    """Register a listener. Returns a function that removes it again."""
    _listeners.append(callback)

    def unsubscribe() -> None:
        if callback in _listeners:
            _listeners.remove(callback)

    return unsubscribe


async def emit(event: AuthEvent, session: AuthSession) -> None:
    for listener in list(_listeners):
        try:
            result = listener(event, session)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Auth state listener failed for {event.value}")


def log_auth_event(event: AuthEvent, session: AuthSession) -> None:
    logger.info(
        f"Auth event {event.value} for user {session.user_id}",
        extra={"user_id": session.user_id, "organization_id": session.organization_id},
    )
