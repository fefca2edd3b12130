"""Moving XRP and the session token between the admin and the worker set.

Every primitive fans out one task per worker with staggered starts and waits for all of
them. A worker that fails is logged and left out; only distribute_token's up-front
balance check can fail a whole call.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_DOWN, Decimal

import rotator.constants as C
from rotator.accounts import Account
from rotator.fanout import fan_out
from rotator.ledger import LedgerClient, Token
from rotator.retry import retry

log = logging.getLogger("rotator.transfers")


class InsufficientFundsError(Exception):
    def __init__(self, required: Decimal, available: Decimal, asset: str):
        super().__init__(f"admin holds {available} {asset}, {required} required")
        self.required = required
        self.available = available
        self.asset = asset


class ResidualBalance(Exception):
    """A worker still holds more than it should after a collection attempt."""


@dataclass(frozen=True)
class TransferSettings:
    stagger: float = C.STAGGER
    max_retries: int = C.MAX_RETRIES
    retry_interval: float = C.RETRY_INTERVAL
    dust_threshold: Decimal = Decimal(0)
    reserved_fee: Decimal = Decimal("0.000012")
    rent_exempt_reserve: Decimal = Decimal("1.2")
    pass_lead_delay: float = 2.0
    pass_trail_delay: float = 5.0

    @classmethod
    def from_config(cls, cfg: dict) -> "TransferSettings":
        t = cfg["transfers"]
        return cls(
            stagger=float(t["stagger"]),
            max_retries=int(t["max_retries"]),
            retry_interval=float(t["retry_interval"]),
            dust_threshold=Decimal(t["dust_threshold"]),
            reserved_fee=Decimal(t["reserved_fee"]),
            rent_exempt_reserve=Decimal(t["rent_exempt_reserve"]),
            pass_lead_delay=float(t["pass_lead_delay"]),
            pass_trail_delay=float(t["pass_trail_delay"]),
        )


@dataclass
class NativeDistribution:
    succeeded: list[Account] = field(default_factory=list)
    per_worker: Decimal = Decimal(0)


@dataclass
class TokenDistribution:
    succeeded: list[Account] = field(default_factory=list)
    per_worker: Decimal = Decimal(0)


@dataclass(frozen=True)
class CollectionResult:
    token_collected: bool
    native_collected: bool

    @property
    def complete(self) -> bool:
        return self.token_collected and self.native_collected


def _floor(amount: Decimal, quantum: Decimal) -> Decimal:
    return amount.quantize(quantum, rounding=ROUND_DOWN)


async def distribute_native(
    ledger: LedgerClient,
    admin: Account,
    workers: list[Account],
    total_amount: Decimal,
    *,
    settings: TransferSettings = TransferSettings(),
) -> NativeDistribution:
    """Split total_amount XRP evenly over workers, one attempt each."""
    if not workers:
        log.warning("No workers to distribute %s XRP to", total_amount)
        return NativeDistribution()

    per_worker = _floor(Decimal(total_amount) / len(workers), C.DROP)
    if per_worker <= 0:
        log.warning("%s XRP over %s workers rounds to nothing; skipping", total_amount, len(workers))
        return NativeDistribution()

    log.info("Distributing %s XRP to %s workers (%s each)", total_amount, len(workers), per_worker)

    def send(worker: Account):
        return lambda: ledger.transfer(admin, worker.address, per_worker)

    outcomes = await fan_out([send(w) for w in workers], stagger=settings.stagger, label="distribute_native")

    succeeded = []
    for worker, outcome in zip(workers, outcomes):
        if outcome.ok:
            log.debug("Sent %s XRP to %s (%s)", per_worker, worker, outcome.value)
            succeeded.append(worker)
        else:
            log.warning("Failed to send %s XRP to %s: %s", per_worker, worker, outcome.error)

    log.info("XRP distribution: %s/%s workers funded", len(succeeded), len(workers))
    return NativeDistribution(succeeded=succeeded, per_worker=per_worker)


async def distribute_token(
    ledger: LedgerClient,
    admin: Account,
    workers: list[Account],
    token: Token,
    total_amount: Decimal,
    decimals: int,
    *,
    settings: TransferSettings = TransferSettings(),
) -> TokenDistribution:
    """Split total_amount of token evenly over workers, opening trust lines as needed.

    Raises:
        InsufficientFundsError: the admin holds less than total_amount; nothing is sent.
    """
    quantum = Decimal(1).scaleb(-decimals)
    required = _floor(Decimal(total_amount), quantum)
    if not workers or required <= 0:
        log.info("Nothing to distribute (%s %s over %s workers)", total_amount, token.currency, len(workers))
        return TokenDistribution()

    available = await ledger.get_token_balance(admin.address, token)
    if available < required:
        raise InsufficientFundsError(required=required, available=available, asset=token.currency)

    per_worker = _floor(required / len(workers), quantum)
    if per_worker <= 0:
        log.warning("%s %s over %s workers rounds to nothing; skipping", required, token.currency, len(workers))
        return TokenDistribution()

    log.info("Distributing %s %s to %s workers (%s each)", required, token.currency, len(workers), per_worker)

    def send(worker: Account):
        async def _send() -> str:
            await ledger.ensure_token_account(worker, token, payer=admin)
            return await ledger.transfer(admin, worker.address, per_worker, token=token)
        return _send

    outcomes = await fan_out([send(w) for w in workers], stagger=settings.stagger, label="distribute_token")

    succeeded = []
    for worker, outcome in zip(workers, outcomes):
        if outcome.ok:
            succeeded.append(worker)
        else:
            log.warning("Failed to send %s %s to %s: %s", per_worker, token.currency, worker, outcome.error)

    log.info("Token distribution: %s/%s workers funded", len(succeeded), len(workers))
    return TokenDistribution(succeeded=succeeded, per_worker=per_worker)


async def _drain_token(ledger: LedgerClient, admin: Account, worker: Account, token: Token, settings: TransferSettings) -> bool:
    threshold = settings.dust_threshold

    async def attempt() -> Decimal:
        balance = await ledger.get_token_balance(worker.address, token)
        if balance <= threshold:
            return balance
        amount = balance - threshold
        await ledger.transfer(worker, admin.address, amount, token=token)
        log.debug("Moved %s %s from %s to admin", amount, token.currency, worker)
        await asyncio.sleep(settings.retry_interval)
        balance = await ledger.get_token_balance(worker.address, token)
        if balance > threshold:
            raise ResidualBalance(f"{worker} still holds {balance} {token.currency}")
        return balance

    result = await retry(attempt, attempts=settings.max_retries, delay=settings.retry_interval, label=f"collect {token.currency} from {worker}")
    return result.ok


async def _drain_native(ledger: LedgerClient, admin: Account, worker: Account, settings: TransferSettings) -> bool:
    async def attempt() -> Decimal:
        balance = await ledger.get_balance(worker.address)
        # reserved_fee is a floor; the payment burns whatever the ledger charges now
        fee = max(settings.reserved_fee, await ledger.transfer_fee())
        sendable = _floor(balance - fee - settings.rent_exempt_reserve, C.DROP)
        if sendable <= 0:
            return Decimal(0)
        await ledger.transfer(worker, admin.address, sendable)
        log.debug("Moved %s XRP from %s to admin", sendable, worker)
        return sendable

    result = await retry(attempt, attempts=settings.max_retries, delay=settings.retry_interval, label=f"collect XRP from {worker}")
    return result.ok


async def collect_from_workers(
    ledger: LedgerClient,
    admin: Account,
    workers: list[Account],
    token: Token,
    *,
    settings: TransferSettings = TransferSettings(),
) -> CollectionResult:
    """Sweep token then XRP from every worker back to the admin.

    Each flag is True only if every worker was drained; a worker that used up its retries
    makes the whole pass report False.
    """
    log.info("Collecting %s from %s workers", token.currency, len(workers))
    await asyncio.sleep(settings.pass_lead_delay)
    token_outcomes = await fan_out(
        [lambda w=w: _drain_token(ledger, admin, w, token, settings) for w in workers],
        stagger=settings.stagger,
        label="collect_token",
    )
    await asyncio.sleep(settings.pass_trail_delay)
    token_collected = all(o.ok and o.value for o in token_outcomes)
    log.info("Token pass done: %s", "all drained" if token_collected else "some workers not drained")

    await asyncio.sleep(settings.pass_lead_delay)
    native_outcomes = await fan_out(
        [lambda w=w: _drain_native(ledger, admin, w, settings) for w in workers],
        stagger=settings.stagger,
        label="collect_native",
    )
    await asyncio.sleep(settings.pass_trail_delay)
    native_collected = all(o.ok and o.value for o in native_outcomes)
    log.info("XRP pass done: %s", "all drained" if native_collected else "some workers not drained")

    return CollectionResult(token_collected=token_collected, native_collected=native_collected)


async def sweep_workers(
    ledger: LedgerClient,
    admin: Account,
    workers: list[Account],
    token: Token,
    *,
    settings: TransferSettings = TransferSettings(),
) -> CollectionResult:
    """Reclaim everything from workers, dust included. Used to wind a session down."""
    log.info("Sweeping %s workers back to %s", len(workers), admin)
    return await collect_from_workers(ledger, admin, workers, token, settings=replace(settings, dust_threshold=Decimal(0)))
