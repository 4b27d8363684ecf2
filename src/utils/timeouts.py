"""
Bounded waits on upstream calls.

``race_with_timeout`` is the single primitive used wherever the engine waits
on a collaborator. The awaited call runs in its own task behind
``asyncio.shield``: a timeout stops the caller from waiting but never
cancels the underlying request, which may still complete later.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class RaceResult(Generic[T]):
    """Outcome of a timeout race."""
    value: Optional[T]
    timed_out: bool
    task: "asyncio.Task[T]"

    @property
    def completed(self) -> bool:
        return not self.timed_out


async def race_with_timeout(awaitable: Awaitable[T], timeout: float) -> RaceResult[T]:
    """
    Wait at most ``timeout`` seconds for ``awaitable``.

    Exceptions raised by the awaitable before the deadline propagate to the
    caller. After a timeout the task keeps running; ``RaceResult.task`` lets
    the caller attach a late-arrival callback.
    """
    task: asyncio.Task = asyncio.ensure_future(awaitable)
    try:
        value = await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        return RaceResult(value=None, timed_out=True, task=task)
    return RaceResult(value=value, timed_out=False, task=task)


def consume_result(task: "asyncio.Task[Any]") -> Optional[BaseException]:
    """Retrieve a finished task's exception so it is never reported as unhandled."""
    if task.cancelled():
        return None
    return task.exception()
