import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class PollStatus(str, enum.Enum):
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class PollOutcome(Generic[T]):
    status: PollStatus
    value: T
    waited: float


@dataclass
class PollPolicy:
    interval: float = 0.8
    max_wait: float = 120.0


async def poll_until(
    initial: T,
    fetch: Callable[[T], Awaitable[T]],
    is_ready: Callable[[T], bool],
    is_failed: Callable[[T], bool],
    policy: PollPolicy,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollOutcome[T]:
    """
    Re-fetch a value at a fixed interval until it is ready, reports a terminal failure, or the
    total wait passes policy.max_wait. The deadline is hard: a timeout is returned, never retried.
    """
    started = clock()
    value = initial
    while True:
        if is_failed(value):
            return PollOutcome(PollStatus.FAILED, value, clock() - started)
        if is_ready(value):
            return PollOutcome(PollStatus.READY, value, clock() - started)
        if clock() - started >= policy.max_wait:
            return PollOutcome(PollStatus.TIMED_OUT, value, clock() - started)
        await sleep(policy.interval)
        value = await fetch(value)
