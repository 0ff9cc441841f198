"""
Cancellable Countdown.

Drives the OTP resend cooldown.  The countdown owns a single asyncio
task that wakes once per tick, reports the whole seconds left, and
fires ``on_expire`` once the deadline is reached.

The remaining time is always recomputed from the deadline and the
injected clock rather than decremented, so a late tick never drifts the
cooldown and a restored deadline resumes at the right value.

``cancel()`` must be called by the owner on teardown: a countdown left
running after its flow is gone would keep mutating state nobody shows.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from authflow.logger import StructuredLogger

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def seconds_until(deadline: Optional[datetime], now: datetime) -> int:
    """Whole seconds from *now* to *deadline*, rounded up, never negative."""
    if deadline is None:
        return 0
    return max(0, math.ceil((deadline - now).total_seconds()))


class CountdownTimer:
    """Ticking countdown towards a deadline.

    Parameters
    ----------
    clock:
        Returns the current UTC time.
    tick_s:
        Seconds between ticks.
    on_tick:
        Called with the remaining whole seconds on every tick.
    on_expire:
        Called once when the deadline is reached.
    logger:
        Structured logger instance.
    """

    def __init__(
        self,
        clock: Clock,
        tick_s: float,
        on_tick: Callable[[int], None],
        on_expire: Callable[[], None],
        logger: StructuredLogger,
    ) -> None:
        self._clock = clock
        self._tick_s = tick_s
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._logger = logger
        self._deadline: Optional[datetime] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def deadline(self) -> Optional[datetime]:
        return self._deadline

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def remaining(self) -> int:
        return seconds_until(self._deadline, self._clock())

    def start(self, deadline: datetime) -> None:
        """(Re)start the countdown towards *deadline*.

        Without a running event loop no task is scheduled; ``remaining()``
        still answers from the clock.
        """
        self.cancel()
        self._deadline = deadline
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; countdown will not tick.")
            return
        self._task = loop.create_task(self._run())

    def cancel(self) -> None:
        """Stop ticking and forget the deadline.  Safe to call repeatedly."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._deadline = None

    async def _run(self) -> None:
        while True:
            left = self.remaining()
            if left <= 0:
                self._deadline = None
                self._task = None
                self._on_expire()
                return
            self._on_tick(left)
            await asyncio.sleep(self._tick_s)
