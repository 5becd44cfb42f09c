"""Periodic liveness probe for silently dead connections."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..core.errors import ProbeError, TransportError

LOGGER = logging.getLogger(__name__)


class Watchdog:
    """Call ``probe`` every ``period`` seconds and report the first failure.

    The period is expected to be shorter than the server's idle ceiling so a
    probe always lands before the far end drops an inactive session. After
    reporting a failure the watchdog stops; the owner restarts it once the
    connection is usable again.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[None]],
        on_failure: Callable[[BaseException], None],
        *,
        period: float,
        name: str = "watchdog",
    ) -> None:
        self._probe = probe
        self._on_failure = on_failure
        self._period = period
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start probing; restarts the period if already running."""
        self.cancel()
        self._task = asyncio.create_task(self._loop(), name=self._name)

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._period)
            LOGGER.debug("%s probing connection", self._name)
            try:
                await self._probe()
            except (ProbeError, TransportError) as exc:
                LOGGER.warning("%s probe failed: %s", self._name, exc)
                self._report(exc)
                return
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error(
                    "%s probe raised unexpectedly: %s", self._name, exc, exc_info=True
                )
                self._report(exc)
                return

    def _report(self, exc: BaseException) -> None:
        self._task = None
        self._on_failure(exc)


__all__ = ["Watchdog"]
