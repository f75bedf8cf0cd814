"""
Bounded retry engine.

A ``RetryPolicy`` describes how many attempts are allowed and how long to wait
between them. ``poll_until`` runs a probe until a predicate accepts its value
or the policy is exhausted. Probe and predicate are kept separate so both can
be faked in tests, and ``sleep`` is injectable for fake clocks.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Delay schedule plus attempt budget."""

    max_attempts: int = Field(ge=1, description="Total number of probe calls allowed")
    delays: List[float] = Field(
        default_factory=list,
        description="Delays in seconds; the last one repeats if attempts outnumber it",
    )

    @model_validator(mode="after")
    def validate_delays(self):
        if any(delay < 0 for delay in self.delays):
            raise ValueError("Delays cannot be negative")
        return self

    @classmethod
    def fixed(cls, delay: float, attempts: int) -> "RetryPolicy":
        return cls(max_attempts=attempts, delays=[delay])

    @classmethod
    def custom(cls, delays: Sequence[float], max_attempts: Optional[int] = None) -> "RetryPolicy":
        """One attempt per delay plus the first one, unless capped explicitly."""
        return cls(max_attempts=max_attempts or len(delays) + 1, delays=list(delays))

    def delay_before(self, attempt: int) -> float:
        """Delay to wait before ``attempt`` (1-based, attempt 0 never waits)."""
        if attempt <= 0 or not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]

    @property
    def total_delay(self) -> float:
        return sum(self.delay_before(i) for i in range(self.max_attempts))


class RoundRobinPool(Generic[T]):
    """Hands out items in rotation, one per call."""

    def __init__(self, items: Sequence[T]):
        if not items:
            raise ValueError("A pool needs at least one item")
        self._items = list(items)
        self._index = 0

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def next(self) -> T:
        item = self._items[self._index % len(self._items)]
        self._index += 1
        return item


class RetryOutcome(BaseModel):
    """Result of a polling run."""

    succeeded: bool
    value: Optional[Any] = None
    attempts: int = 0
    last_error: Optional[str] = None


Probe = Callable[..., Awaitable[Any]]


async def poll_until(
    probe: Probe,
    predicate: Callable[[Any], bool],
    policy: RetryPolicy,
    pool: Optional[RoundRobinPool] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, Optional[str]], None]] = None,
) -> RetryOutcome:
    """Call ``probe`` until ``predicate(value)`` holds or the budget runs out.

    ``probe`` receives the next pool item when a pool is given. An exception
    raised by the probe counts as a failed attempt. No sleep happens after the
    last attempt.
    """
    last_error: Optional[str] = None

    for attempt in range(policy.max_attempts):
        if attempt > 0:
            await sleep(policy.delay_before(attempt))

        try:
            value = await (probe(pool.next()) if pool is not None else probe())
        except Exception as e:
            last_error = str(e) or type(e).__name__
            value = None
        else:
            if predicate(value):
                return RetryOutcome(succeeded=True, value=value, attempts=attempt + 1)
            last_error = f"Unexpected value: {value!r}"

        logger.debug(
            f"Attempt {attempt + 1}/{policy.max_attempts} failed: {last_error}"
        )
        if on_retry and attempt + 1 < policy.max_attempts:
            on_retry(attempt + 1, last_error)

    return RetryOutcome(
        succeeded=False, attempts=policy.max_attempts, last_error=last_error
    )
