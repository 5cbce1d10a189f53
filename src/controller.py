"""
Operator Controller - drives reconciliation passes.

Similar to Kubernetes controllers: polls the store for Infrastructure objects
that need attention and runs one reconciliation pass per object, with at most
one pass in flight per object and a global concurrency limit. Failed passes
are requeued with exponential backoff.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from config import ControllerConfig
from db import DatabaseManager
from errors import ActuatorError, NotFoundError
from models import OPERATION_ANNOTATION, Infrastructure
from reconciler import InfrastructureReconciler

logger = logging.getLogger(__name__)


def compute_backoff_delay(
    retries: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the next attempt after ``retries`` failed ones.

    ``base_delay * 2**retries`` (exponent capped at 10), capped at
    ``max_delay``, with ±``jitter_factor`` jitter.
    """
    delay = min(base_delay * 2 ** min(retries, 10), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


def request_fingerprint(infra: Infrastructure) -> Tuple[int, bool, Optional[str]]:
    """
    What the user currently asks of an object: its spec generation, whether
    deletion was requested and the requested special operation.
    """
    return (
        infra.generation,
        infra.deletion_timestamp is not None,
        infra.annotations.get(OPERATION_ANNOTATION),
    )


@dataclass
class RetryState:
    """Requeue bookkeeping for one object key."""

    retries: int = 0
    not_before: float = 0.0  # time.monotonic() deadline
    # Set after a non-retryable failure; cleared once the request changes
    blocked_on: Optional[Tuple[int, bool, Optional[str]]] = None


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Watches for Infrastructure objects that need reconciliation and hands
    each one to the reconciler.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: InfrastructureReconciler,
        config: Optional[ControllerConfig] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._retry: Dict[str, RetryState] = {}

    async def start(self):
        """Run the reconciliation loop until stopped."""
        logger.info("Starting Infrastructure controller")
        self.running = True
        self._shutdown_event.clear()
        await self._reconciliation_loop()

    async def stop(self):
        """Stop the loop and cancel in-flight passes."""
        logger.info("Stopping Infrastructure controller")
        self.running = False
        self._shutdown_event.set()

        tasks = list(self._in_flight.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def _reconciliation_loop(self):
        """Poll the store every ``reconcile_interval`` seconds."""
        while self.running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.reconcile_interval
                )
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> List[asyncio.Task]:
        """Start passes for all due objects; returns the started tasks."""
        infras = await self.db.get_infrastructures_needing_reconciliation(
            limit=self.max_concurrent_reconciles * 2,
            resync_period=self.config.resync_period,
        )

        started = []
        for infra in infras:
            if self._is_due(infra):
                started.append(self._schedule(infra))

        if started:
            logger.info(f"Started {len(started)} reconciliation(s)")
        return started

    def _is_due(self, infra: Infrastructure) -> bool:
        key = infra.key
        if key in self._in_flight:
            return False

        state = self._retry.get(key)
        if state is None:
            return True

        if state.blocked_on is not None:
            if request_fingerprint(infra) == state.blocked_on:
                return False
            logger.info(f"Request for {key} changed, retrying reconciliation")
            del self._retry[key]
            return True

        return time.monotonic() >= state.not_before

    def _schedule(self, infra: Infrastructure) -> asyncio.Task:
        key = infra.key
        task = asyncio.create_task(
            self._reconcile(infra.namespace, infra.name, request_fingerprint(infra))
        )
        self._in_flight[key] = task
        task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        return task

    async def _reconcile(
        self, namespace: str, name: str, fingerprint: Tuple[int, bool, Optional[str]]
    ) -> None:
        """Run one pass and record its outcome for requeueing."""
        key = f"{namespace}/{name}"
        async with self.semaphore:
            try:
                result = await self.reconciler.reconcile(namespace, name)
            except ActuatorError as e:
                if e.retryable:
                    self._requeue(key, e)
                else:
                    self._retry[key] = RetryState(blocked_on=fingerprint)
                    logger.error(
                        f"Reconciliation of {key} failed permanently, "
                        f"waiting for a change of spec, deletion or operation: {e}"
                    )
                return
            except Exception as e:
                self._requeue(key, e)
                return

        if result.requeue_after is not None:
            self._retry[key] = RetryState(
                not_before=time.monotonic() + result.requeue_after
            )
        else:
            self._retry.pop(key, None)

    def _requeue(self, key: str, err: Exception) -> None:
        state = self._retry.get(key) or RetryState()
        delay = compute_backoff_delay(
            state.retries,
            self.config.backoff_base_delay,
            self.config.backoff_max_delay,
            self.config.backoff_jitter_factor,
        )
        state.retries += 1
        state.not_before = time.monotonic() + delay
        state.blocked_on = None
        self._retry[key] = state
        logger.warning(
            f"Reconciliation of {key} failed (attempt {state.retries}), "
            f"retrying in {delay:.1f}s: {err}"
        )

    async def trigger_reconciliation(
        self, namespace: str, name: str
    ) -> Optional[asyncio.Task]:
        """Manually trigger a pass for an object, bypassing any backoff."""
        key = f"{namespace}/{name}"
        logger.info(f"Manually triggering reconciliation for {key}")
        self._retry.pop(key, None)

        if key in self._in_flight:
            return self._in_flight[key]

        try:
            infra = await self.db.get_infrastructure(namespace, name)
        except NotFoundError:
            logger.warning(f"Cannot trigger reconciliation, {key} not found")
            return None
        return self._schedule(infra)
