"""Trading laps: activity window, collection, wallet rotation, redistribution.

A run keeps going lap after lap until something tells it to stop: a stop request, a lap
that collected nothing, a checkpoint that could not be written, or an admin that cannot
cover the token redistribution. Funds that cannot be placed on new workers stay on the
admin account.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

import rotator.constants as C
from rotator.accounts import Account, AccountFactory
from rotator.activity import ActiveTimer, ActivityDriver, IdleActivityDriver, TradingContext
from rotator.checkpoint import SessionCheckpoint
from rotator.lap_store import InMemoryLapStore, LapStore, TradingLap
from rotator.ledger import LedgerClient, LedgerError, Token
from rotator.transfers import (
    InsufficientFundsError,
    TransferSettings,
    collect_from_workers,
    distribute_native,
    distribute_token,
)

log = logging.getLogger("rotator.laps")

ZERO = Decimal(0)


@dataclass(frozen=True)
class LapSettings:
    duration_maker: float = 181.0
    duration_volume: float = 1200.0
    progress_interval: float = C.PROGRESS_INTERVAL
    phase_timeout: float = C.PHASE_TIMEOUT
    settle_delay: float = 5.0
    step_delay: float = 2.0
    pause_poll: float = C.PAUSE_POLL
    token_decimals: int = 6

    @classmethod
    def from_config(cls, cfg: dict) -> "LapSettings":
        laps = cfg["laps"]
        return cls(
            duration_maker=float(laps["duration_maker"]),
            duration_volume=float(laps["duration_volume"]),
            progress_interval=float(laps["progress_interval"]),
            phase_timeout=float(laps["phase_timeout"]),
            settle_delay=float(laps["settle_delay"]),
            step_delay=float(laps["step_delay"]),
            pause_poll=float(laps["pause_poll"]),
            token_decimals=int(cfg["token"]["decimals"]),
        )

    def duration(self, strategy: C.Strategy) -> float:
        return self.duration_maker if strategy == C.Strategy.MAKER else self.duration_volume


class Halt(Exception):
    """Ends the run after the current lap. The message is recorded as the reason."""

    def __init__(self, reason: str, status: C.LapStatus = C.LapStatus.FAILED):
        super().__init__(reason)
        self.reason = reason
        self.status = status


class LapRunner:
    def __init__(
        self,
        ledger: LedgerClient,
        admin: Account,
        token: Token,
        *,
        checkpoint: SessionCheckpoint,
        factory: AccountFactory,
        context: TradingContext | None = None,
        driver: ActivityDriver | None = None,
        strategy: C.Strategy = C.Strategy.MAKER,
        settings: LapSettings = LapSettings(),
        transfer_settings: TransferSettings = TransferSettings(),
        lap_store: LapStore | None = None,
        session_name: str = "session",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.admin = admin
        self.token = token
        self.checkpoint = checkpoint
        self.factory = factory
        self.context = context or TradingContext()
        self.driver = driver or IdleActivityDriver()
        self.strategy = C.Strategy(strategy)
        self.settings = settings
        self.transfer_settings = transfer_settings
        self.lap_store = lap_store or InMemoryLapStore()
        self.session_name = session_name
        self.clock = clock

        self.phase = C.LapPhase.IDLE
        self.lap_number = 0
        self.current: TradingLap | None = None
        self.halt_reason: str | None = None

    @property
    def workers(self) -> list[Account]:
        return self.context.workers

    def _enter(self, phase: C.LapPhase) -> None:
        self.phase = phase
        log.debug("Lap %s: %s", self.lap_number, phase)

    async def seed_and_run(self, workers: list[Account], native_total: Decimal, token_total: Decimal, *, start_lap: int = 1) -> list[TradingLap]:
        """Fund a freshly generated worker set from the admin, then run laps with it."""
        self._enter(C.LapPhase.REDISTRIBUTING)
        try:
            funded = await self._redistribute(workers, native_total, token_total)
        except Halt as h:
            log.error("Seeding failed: %s", h.reason)
            self.halt_reason = h.reason
            self._enter(C.LapPhase.HALTED)
            return []
        self.context.workers = list(funded)
        return await self.run(funded, start_lap=start_lap)

    async def run(self, workers: list[Account], *, start_lap: int = 1) -> list[TradingLap]:
        """Run laps until the run halts. Returns the laps that were run."""
        laps: list[TradingLap] = []
        number = start_lap
        log.info("Starting %s laps at lap %s with %s workers", self.strategy, number, len(workers))
        while True:
            if self.context.stop_requested:
                self.halt_reason = "stop requested"
                log.info("Stop requested before lap %s", number)
                break
            if not workers:
                self.halt_reason = "no funded workers"
                log.error("No funded workers left; halting before lap %s", number)
                break

            self.lap_number = number
            lap = TradingLap(number=number, session=self.session_name, workers=len(workers))
            self.current = lap
            laps.append(lap)
            try:
                workers = await self._lap(lap, workers)
            except Halt as h:
                lap.finish(h.status, h.reason)
                self.halt_reason = h.reason
                level = logging.INFO if h.status == C.LapStatus.COMPLETED else logging.ERROR
                log.log(level, "Lap %s %s, halting: %s", number, h.status, h.reason)
                await self.lap_store.record(lap)
                break
            except Exception as e:
                log.exception("Lap %s failed unexpectedly", number)
                lap.finish(C.LapStatus.FAILED, f"{type(e).__name__}: {e}")
                self.halt_reason = lap.reason
                await self.lap_store.record(lap)
                break
            finally:
                self.context.close_window()

            lap.finish(C.LapStatus.COMPLETED)
            await self.lap_store.record(lap)
            log.info(
                "Lap %s completed: collected %s XRP and %s %s, %s workers funded for the next lap",
                number, lap.native_collected, lap.token_collected, self.token.currency, len(workers),
            )
            number += 1

        self._enter(C.LapPhase.HALTED)
        return laps

    async def _lap(self, lap: TradingLap, workers: list[Account]) -> list[Account]:
        self._enter(C.LapPhase.STARTING)
        await self.lap_store.record(lap)
        try:
            log.info("Lap %s starting at ledger %s", lap.number, await self.ledger.network_reference())
        except LedgerError as e:
            log.warning("Lap %s: validated ledger unknown: %s", lap.number, e)
        self.context.workers = list(workers)
        self.context.open_window()
        await self.driver.begin(self.context, workers)

        self._enter(C.LapPhase.ACTIVITY)
        await self._activity_window()

        self._enter(C.LapPhase.COLLECTING)
        self.context.close_window()
        await self.driver.end()
        await asyncio.sleep(self.settings.settle_delay)
        native, token = await self._collect(workers)
        lap.native_collected, lap.token_collected = native, token

        if native <= 0 and token <= 0:
            raise Halt("nothing collected")
        if self.context.stop_requested:
            raise Halt("stop requested", status=C.LapStatus.COMPLETED)

        self._enter(C.LapPhase.ROTATING)
        fresh = self.factory.generate(len(workers))
        if not fresh:
            raise Halt("rotation produced no workers")
        if not await self.checkpoint.append(fresh):
            raise Halt("checkpoint not written; collected funds left on admin")
        log.info("Rotated to %s new workers", len(fresh))
        await asyncio.sleep(self.settings.step_delay)

        self._enter(C.LapPhase.REDISTRIBUTING)
        funded = await self._redistribute(fresh, native, token)
        self.context.workers = list(funded)
        return funded

    async def _activity_window(self) -> None:
        duration = self.settings.duration(self.strategy)
        timer = ActiveTimer(self.clock)
        next_progress = self.settings.progress_interval
        log.info("Lap %s activity window: %ss (%s)", self.lap_number, duration, self.strategy)
        while timer.elapsed() < duration:
            if self.context.stop_requested:
                log.info("Stop requested; closing the window after %.1fs", timer.elapsed())
                return
            if self.context.active:
                if timer.paused:
                    timer.resume()
                    log.info("Resumed at %.1fs of %ss", timer.elapsed(), duration)
            elif not timer.paused:
                timer.pause()
                log.info("Paused at %.1fs of %ss", timer.elapsed(), duration)
            await asyncio.sleep(self.settings.pause_poll)
            if timer.elapsed() >= next_progress:
                log.info("Lap %s: %.0fs of %ss elapsed", self.lap_number, timer.elapsed(), duration)
                next_progress += self.settings.progress_interval

    async def _admin_balances(self) -> tuple[Decimal, Decimal]:
        native = await self.ledger.get_balance(self.admin.address)
        token = await self.ledger.get_token_balance(self.admin.address, self.token)
        return native, token

    async def _collect(self, workers: list[Account]) -> tuple[Decimal, Decimal]:
        """Collected totals as admin balance deltas, or zeros if either pass fell short."""
        native_before, token_before = await self._admin_balances()
        try:
            result = await asyncio.wait_for(
                collect_from_workers(self.ledger, self.admin, workers, self.token, settings=self.transfer_settings),
                timeout=self.settings.phase_timeout,
            )
        except TimeoutError:
            log.error("Collection timed out after %ss", self.settings.phase_timeout)
            return ZERO, ZERO
        except Exception as e:
            log.error("Collection failed: %s", e)
            return ZERO, ZERO
        if not result.complete:
            log.error("Collection incomplete (token=%s, xrp=%s)", result.token_collected, result.native_collected)
            return ZERO, ZERO

        native_after, token_after = await self._admin_balances()
        native = max(native_after - native_before, ZERO)
        token = max(token_after - token_before, ZERO)
        log.info("Collected %s XRP and %s %s", native, token, self.token.currency)
        return native, token

    async def _redistribute(self, workers: list[Account], native_total: Decimal, token_total: Decimal) -> list[Account]:
        timeout = self.settings.phase_timeout
        try:
            await asyncio.wait_for(
                distribute_token(
                    self.ledger, self.admin, workers, self.token, token_total, self.settings.token_decimals,
                    settings=self.transfer_settings,
                ),
                timeout=timeout,
            )
        except InsufficientFundsError as e:
            raise Halt(f"insufficient funds: {e}") from e
        except TimeoutError:
            log.error("Token distribution timed out after %ss", timeout)
        except Exception as e:
            log.error("Token distribution failed: %s", e)

        await asyncio.sleep(self.settings.step_delay)

        try:
            native = await asyncio.wait_for(
                distribute_native(self.ledger, self.admin, workers, native_total, settings=self.transfer_settings),
                timeout=timeout,
            )
        except TimeoutError:
            log.error("XRP distribution timed out after %ss", timeout)
            return []
        except Exception as e:
            log.error("XRP distribution failed: %s", e)
            return []
        return native.succeeded


async def run_trading_laps(
    ledger: LedgerClient,
    admin: Account,
    workers: list[Account],
    token: Token,
    *,
    checkpoint: SessionCheckpoint,
    start_lap: int = 1,
    **kwargs,
) -> list[TradingLap]:
    """Run laps over an already funded worker set until the run halts."""
    factory = kwargs.pop("factory", None) or AccountFactory.after([admin, *checkpoint.load().workers])
    runner = LapRunner(ledger, admin, token, checkpoint=checkpoint, factory=factory, **kwargs)
    return await runner.run(workers, start_lap=start_lap)
