"""
Optimistic update helpers.

Every write of this operator is a compare-and-swap against the object's
resource version. The helpers here re-read the latest object, apply a
mutation and write it back, retrying on conflicts with bounded exponential
backoff.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

from db import DatabaseManager
from errors import ConflictError, NotFoundError
from models import Infrastructure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Mutation applied to a fresh copy of the object. Returning False means
# "nothing to change" and skips the write.
Mutation = Callable[[Infrastructure], Optional[bool]]


@dataclass
class Backoff:
    """Bounded exponential backoff for conflicting writes."""

    steps: int = 4
    duration: float = 0.01  # seconds before the first retry
    factor: float = 5.0
    jitter: float = 0.1

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``steps - 1`` values)."""
        duration = self.duration
        for _ in range(max(self.steps - 1, 0)):
            if self.jitter > 0:
                yield duration + random.uniform(0, self.jitter * duration)
            else:
                yield duration
            duration *= self.factor


DEFAULT_BACKOFF = Backoff()


async def retry_on_conflict(backoff: Backoff, fn: Callable[[], Awaitable[T]]) -> T:
    """
    Run ``fn`` until it does not raise ConflictError.

    Raises the last ConflictError once the backoff is exhausted; any other
    exception propagates immediately.
    """
    delays = backoff.delays()
    while True:
        try:
            return await fn()
        except ConflictError as e:
            delay = next(delays, None)
            if delay is None:
                raise
            logger.debug(f"Write conflict on {e.key}, retrying in {delay:.3f}s")
            await asyncio.sleep(delay)


async def try_update(
    db: DatabaseManager,
    infra: Infrastructure,
    mutate: Mutation,
    backoff: Backoff = DEFAULT_BACKOFF,
) -> Infrastructure:
    """Apply ``mutate`` to the latest metadata of ``infra`` and write it back."""

    async def attempt() -> Infrastructure:
        fresh = await db.get_infrastructure(infra.namespace, infra.name)
        if mutate(fresh) is False:
            return fresh
        return await db.update_infrastructure(fresh)

    return await retry_on_conflict(backoff, attempt)


async def try_update_status(
    db: DatabaseManager,
    infra: Infrastructure,
    mutate: Mutation,
    backoff: Backoff = DEFAULT_BACKOFF,
) -> Infrastructure:
    """Apply ``mutate`` to the latest status of ``infra`` and write it back."""

    async def attempt() -> Infrastructure:
        fresh = await db.get_infrastructure(infra.namespace, infra.name)
        if mutate(fresh) is False:
            return fresh
        return await db.update_infrastructure_status(fresh)

    return await retry_on_conflict(backoff, attempt)


async def remove_annotation(
    db: DatabaseManager,
    infra: Infrastructure,
    key: str,
    backoff: Backoff = DEFAULT_BACKOFF,
) -> Infrastructure:
    """
    Remove an annotation from ``infra``.

    No-op if the annotation is already absent or the object is gone.
    """

    def drop(obj: Infrastructure) -> bool:
        if key not in obj.annotations:
            return False
        del obj.annotations[key]
        return True

    try:
        return await try_update(db, infra, drop, backoff)
    except NotFoundError:
        logger.debug(f"Infrastructure {infra.key} is gone, annotation {key} removed")
        return infra
