"""
Identity Source

Read-only access to the acting user id.
"""

from abc import ABC, abstractmethod
from contextvars import ContextVar, Token
from typing import Optional

_current_user_id: ContextVar[Optional[str]] = ContextVar("current_user_id", default=None)


class IdentityProvider(ABC):
    """Supplies the id of the user on whose behalf the engine acts."""

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """Return the acting user id, or None when unknown."""


class StaticIdentityProvider(IdentityProvider):
    """Always reports the same user."""

    def __init__(self, user_id: Optional[str] = None):
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id


class RequestIdentityProvider(IdentityProvider):
    """
    Reports the user bound to the current task by bind_user().

    The HTTP layer binds the ``X-User-Id`` header for each request.
    """

    def __init__(self, fallback_user_id: Optional[str] = None):
        self.fallback_user_id = fallback_user_id

    def current_user_id(self) -> Optional[str]:
        return _current_user_id.get() or self.fallback_user_id


def bind_user(user_id: Optional[str]) -> Token:
    return _current_user_id.set(user_id)


def reset_user(token: Token) -> None:
    _current_user_id.reset(token)
