"""Transient fault classification and retry-with-budget for remote sessions."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from visreg.errors import SessionFault

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FaultKind(str, Enum):
    UNREACHABLE_NODE = "unreachable_node"
    TRANSIENT = "transient"
    FATAL = "fatal"


# Remote grids report session-level faults only as free-form messages.
UNREACHABLE_NODE_MESSAGES = (
    "Unable to communicate to node",
)

TRANSIENT_SESSION_MESSAGES = UNREACHABLE_NODE_MESSAGES + (
    "Session not started or terminated",
    "A session is either terminated or not started",
    "Could not start Mobile Browser",
    "Could not proxy command to remote server",
    "ESOCKETTIMEDOUT",
    "Target page, context or browser has been closed",
    "Browser has been closed",
)


def fault_message(exc: BaseException) -> str:
    if isinstance(exc, SessionFault):
        return exc.message
    return str(exc)


def classify_fault(exc: BaseException) -> FaultKind:
    message = fault_message(exc)
    if any(m in message for m in UNREACHABLE_NODE_MESSAGES):
        return FaultKind.UNREACHABLE_NODE
    if any(m in message for m in TRANSIENT_SESSION_MESSAGES):
        return FaultKind.TRANSIENT
    return FaultKind.FATAL


def is_transient_fault(exc: BaseException) -> bool:
    """Any known session fault; recoverable by re-acquiring the session."""
    return classify_fault(exc) != FaultKind.FATAL


def is_unreachable_node(exc: BaseException) -> bool:
    """The narrower fault class that justifies re-running a whole test."""
    return classify_fault(exc) == FaultKind.UNREACHABLE_NODE


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    should_retry: Callable[[BaseException], bool],
    on_retry: Optional[Callable[[BaseException], Awaitable[None]]] = None,
    description: str = "operation",
) -> T:
    """Run `operation`, re-running it up to `retries` more times.

    Only exceptions accepted by `should_retry` consume the budget; anything
    else, or a fault after the budget is spent, propagates unchanged.
    """
    remaining = retries
    while True:
        try:
            return await operation()
        except Exception as e:
            if remaining <= 0 or not should_retry(e):
                raise
            remaining -= 1
            logger.warning("%s failed (%s), retrying (%d retries left)",
                           description, fault_message(e), remaining)
            if on_retry is not None:
                await on_retry(e)
