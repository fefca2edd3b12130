"""Fixed-size fan-out with staggered starts and a fan-in barrier.

Task i starts i * stagger seconds after the batch. fan_out() returns one outcome per task,
in input order, once every task has settled; a failing task never fails the batch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from rotator.retry import Ok

log = logging.getLogger("rotator.fanout")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Failed:
    error: BaseException

    ok = False


async def _staggered(index: int, stagger: float, factory: Callable[[], Awaitable[T]], label: str) -> Ok[T] | Failed:
    if index and stagger:
        await asyncio.sleep(index * stagger)
    try:
        return Ok(await factory())
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.debug("%s[%s] failed: %r", label, index, e)
        return Failed(e)


async def fan_out(
    factories: Sequence[Callable[[], Awaitable[T]]],
    *,
    stagger: float = 0.0,
    label: str = "fan_out",
) -> list[Ok[T] | Failed]:
    if not factories:
        return []
    async with asyncio.TaskGroup() as tg:
        tasks = [
            tg.create_task(_staggered(i, stagger, f, label), name=f"{label}-{i}")
            for i, f in enumerate(factories)
        ]
    outcomes = [t.result() for t in tasks]
    failed = sum(1 for o in outcomes if not o.ok)
    log.debug("%s settled: %s ok, %s failed", label, len(outcomes) - failed, failed)
    return outcomes
