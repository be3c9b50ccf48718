"""User-facing error taxonomy.

- ValidationFailure: rejected locally, before any network call.
- OperationRejected: the backend said no (success: false) or could not be reached.
- anything else: caught by run_user_action and shown as a generic notice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tradedesk.infrastructure.logging.logging import get_logger

T = TypeVar("T")

UNEXPECTED_ERROR = "An unexpected error occurred"

log = get_logger("user_action")


class TradeDeskError(Exception):
    """Base class for errors that carry a message fit for the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailure(TradeDeskError):
    pass


class OperationRejected(TradeDeskError):
    pass


@dataclass(frozen=True)
class Notice(Generic[T]):
    ok: bool
    message: str = ""
    kind: str = "success"     # "success" | "validation" | "rejected" | "error"
    value: Optional[T] = None


async def run_user_action(action: str, fn: Callable[[], Awaitable[T]], *, success_message: str = "") -> Notice[T]:
    """Top-of-handler guard: never lets an exception escape a user action."""
    try:
        value = await fn()
    except ValidationFailure as e:
        log.info("action_invalid", action=action, error=e.message)
        return Notice(ok=False, message=e.message, kind="validation")
    except OperationRejected as e:
        log.warning("action_rejected", action=action, error=e.message)
        return Notice(ok=False, message=e.message, kind="rejected")
    except Exception as e:
        log.exception("action_failed", action=action, error=str(e))
        return Notice(ok=False, message=UNEXPECTED_ERROR, kind="error")
    return Notice(ok=True, message=success_message, value=value)


def rejection_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        msg = payload.get("error") or payload.get("message")
        if msg:
            return str(msg)
    return fallback
