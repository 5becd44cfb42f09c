"""Cancellable delayed actions bound to the event loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

DelayedAction = Callable[[], Awaitable[None] | None]


class ScheduledTask:
    """Run ``action`` once after ``delay`` seconds unless cancelled first.

    Must be created from a running event loop. The action may be a plain
    callable or a coroutine function; exceptions it raises are logged.
    """

    def __init__(self, delay: float, action: DelayedAction, *, name: str) -> None:
        self.delay = delay
        self.name = name
        self._action = action
        self._fired = False
        self._task = asyncio.create_task(self._run(), name=name)

    @property
    def fired(self) -> bool:
        """Whether the delay elapsed and the action started."""
        return self._fired

    @property
    def pending(self) -> bool:
        """Whether the action is still waiting for its delay to elapse."""
        return not self._fired and not self._task.done()

    def cancel(self) -> None:
        """Cancel the action if it has not started yet."""
        if self.pending:
            self._task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        self._fired = True
        try:
            result = self._action()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Scheduled task %s failed", self.name)


__all__ = ["DelayedAction", "ScheduledTask"]
