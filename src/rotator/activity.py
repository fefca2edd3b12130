"""Trading context shared with the control surface, and the activity drivers.

TradingContext holds the pause/resume/stop state that the lap engine and the control
surface share. Drivers are handed the context and must go quiet whenever it is
inactive; the engine only needs them to honor it.
"""

import asyncio
import logging
import random
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Protocol

from rotator.accounts import Account
from rotator.ledger import LedgerClient

log = logging.getLogger("rotator.activity")


class TradingContext:
    def __init__(self) -> None:
        self._active = asyncio.Event()
        self._window = asyncio.Event()
        self._stop = asyncio.Event()
        self.workers: list[Account] = []

    @property
    def active(self) -> bool:
        return self._active.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def window_open(self) -> bool:
        return self._window.is_set()

    def open_window(self) -> None:
        self._window.set()
        self._active.set()

    def close_window(self) -> None:
        self._window.clear()
        self._active.clear()

    # Control surface
    def pause(self) -> None:
        log.info("Pause requested")
        self._active.clear()

    def resume(self) -> None:
        log.info("Resume requested")
        self._active.set()

    def stop(self) -> None:
        log.info("Stop requested")
        self._stop.set()
        # A paused window has to wake up to notice the stop
        self._active.set()


class ActiveTimer:
    """Elapsed time with paused intervals taken out.

    The clock is injectable so pause accounting can be checked without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.started = clock()
        self.paused_total = 0.0
        self._paused_at: float | None = None

    @property
    def paused(self) -> bool:
        return self._paused_at is not None

    def pause(self) -> None:
        if self._paused_at is None:
            self._paused_at = self.clock()

    def resume(self) -> None:
        if self._paused_at is not None:
            self.paused_total += self.clock() - self._paused_at
            self._paused_at = None

    def elapsed(self) -> float:
        now = self.clock()
        ongoing = now - self._paused_at if self._paused_at is not None else 0.0
        return now - self.started - self.paused_total - ongoing


class ActivityDriver(Protocol):
    async def begin(self, context: TradingContext, workers: list[Account]) -> None: ...
    async def end(self) -> None: ...


class IdleActivityDriver:
    """Drives nothing. The lap still runs its window, collects and rotates."""

    async def begin(self, context: TradingContext, workers: list[Account]) -> None:
        log.info("Activity window open for %s workers (idle driver)", len(workers))

    async def end(self) -> None:
        pass


class PaymentChurnDriver:
    """Small XRP payments between the current workers while the window is open.

    One payment in flight per worker; each worker waits `interval` between its own
    payments. Paused workers idle; the loops end once the window closes.
    """

    def __init__(self, ledger: LedgerClient, *, amount: Decimal, interval: float, poll: float = 0.25) -> None:
        self.ledger = ledger
        self.amount = amount
        self.interval = interval
        self.poll = poll
        self._tasks: set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    async def begin(self, context: TradingContext, workers: list[Account]) -> None:
        if len(workers) < 2:
            log.warning("Payment churn needs at least 2 workers, got %s", len(workers))
            return
        for w in workers:
            t = asyncio.create_task(self._churn(context, w, workers), name=f"churn-{w.number}")
            self._tasks.add(t)
            t.add_done_callback(self._tasks.discard)
        log.info("Payment churn started for %s workers", len(workers))

    async def _churn(self, context: TradingContext, worker: Account, workers: list[Account]) -> None:
        peers = [p for p in workers if p.address != worker.address]
        # Spread first payments over one interval
        await asyncio.sleep(random.uniform(0, self.interval))
        while context.window_open and not context.stop_requested:
            if not context.active:
                await asyncio.sleep(self.poll)
                continue
            try:
                await self.ledger.transfer(worker, random.choice(peers).address, self.amount)
                self.sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                log.debug("Churn payment from %s failed: %s", worker, e)
            slept = 0.0
            while slept < self.interval and context.window_open:
                await asyncio.sleep(self.poll)
                slept += self.poll

    async def end(self) -> None:
        """Wait for in-flight churn payments to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
