"""Bounded retry with a fixed delay.

retry() never raises for a failed attempt: it hands back Ok with the value of the first
successful attempt, or Exhausted with the last error once the attempts run out.
Cancellation is not an attempt failure and always propagates.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

log = logging.getLogger("rotator.retry")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T
    attempts: int = 1

    ok = True


@dataclass(frozen=True, slots=True)
class Exhausted:
    attempts: int
    last_error: BaseException | None = None

    ok = False


async def retry(
    op: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    label: str = "operation",
) -> Ok[T] | Exhausted:
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    last: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return Ok(await op(), attempts=attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last = e
            log.warning("%s: attempt %s/%s failed: %s", label, attempt, attempts, e)
            if attempt < attempts:
                await asyncio.sleep(delay)
    log.error("%s: giving up after %s attempts", label, attempts)
    return Exhausted(attempts=attempts, last_error=last)
