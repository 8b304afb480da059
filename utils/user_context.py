"""Propagate the authenticated user's identity through the call stack."""

from contextvars import ContextVar
from uuid import UUID

_current_user_id: ContextVar[UUID | None] = ContextVar("current_user_id", default=None)


def get_current_user_id() -> UUID:
    """
    Get current user ID from context.

    Raises RuntimeError if no user context is set. Reaching user-scoped
    code without an authenticated request is a bug, not a fallback case.
    """
    user_id = _current_user_id.get()
    if user_id is None:
        raise RuntimeError(
            "No user context set. This usually means you're calling "
            "user-scoped code outside of an authenticated request."
        )
    return user_id


def set_current_user_id(user_id: UUID) -> None:
    """Set current user ID. Called by AuthMiddleware after verifying the access token."""
    _current_user_id.set(user_id)


def clear_current_user_id() -> None:
    """
    Clear user context.

    Called by AuthMiddleware after the request completes, in a finally
    block so context never leaks into the next request on this worker.
    """
    _current_user_id.set(None)

