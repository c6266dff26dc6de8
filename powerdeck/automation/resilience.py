"""Async helpers for calls that leave the process.

Provides:
- ``call_with_timeout``: await a remote call with a hard deadline
- ``supervised_task``: create_task wrapper with error logging

Remote calls are never retried here: a failed device command counts as a
trigger and the rule's cooldown decides when it may be attempted again.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

DEFAULT_TIMEOUT = 10.0


class CallTimeoutError(TimeoutError):
    """A remote call did not finish within its deadline."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:g}s")


async def call_with_timeout(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    timeout: float = DEFAULT_TIMEOUT,
    label: str = "call",
    **kwargs: Any,
) -> Any:
    """Await ``fn(*args, **kwargs)``, raising ``CallTimeoutError`` after *timeout* seconds.

    Exceptions raised by *fn* propagate unchanged.
    """
    try:
        async with asyncio.timeout(timeout) as cm:
            return await fn(*args, **kwargs)
    except TimeoutError as exc:
        if not cm.expired():
            raise
        logger.warning("[Resilience] {} timed out after {:g}s", label, timeout)
        raise CallTimeoutError(label, timeout) from exc


# ---------------------------------------------------------------------------
# Supervised task
# ---------------------------------------------------------------------------

def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    If the task raises an exception (other than ``CancelledError``),
    it is logged as an error instead of becoming an unhandled exception.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "[Resilience] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task
