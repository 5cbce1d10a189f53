"""
Finalizer management for Infrastructure objects.

The finalizer blocks removal of an object from the store until deletion (or
migration) work has completed. All operations are idempotent.
"""

import logging

from db import DatabaseManager
from errors import NotFoundError
from models import FINALIZER_NAME, Infrastructure
from updates import DEFAULT_BACKOFF, Backoff, try_update

logger = logging.getLogger(__name__)


class FinalizerManager:
    """Adds, removes and checks one named finalizer on Infrastructure objects."""

    def __init__(
        self,
        db: DatabaseManager,
        finalizer: str = FINALIZER_NAME,
        backoff: Backoff = DEFAULT_BACKOFF,
    ):
        self.db = db
        self.finalizer = finalizer
        self.backoff = backoff

    def has(self, infra: Infrastructure) -> bool:
        """Check whether ``infra`` carries the finalizer."""
        return self.finalizer in infra.finalizers

    async def ensure(self, infra: Infrastructure) -> Infrastructure:
        """Add the finalizer; no-op if already present."""
        if self.has(infra):
            return infra

        def add(obj: Infrastructure) -> bool:
            if self.finalizer in obj.finalizers:
                return False
            obj.finalizers.append(self.finalizer)
            return True

        updated = await try_update(self.db, infra, add, self.backoff)
        logger.debug(f"Ensured finalizer {self.finalizer} on {infra.key}")
        return updated

    async def remove(self, infra: Infrastructure) -> Infrastructure:
        """
        Remove the finalizer.

        No-op if it is already absent, including when a concurrent writer
        removed it or the object has already been garbage-collected.
        """

        def drop(obj: Infrastructure) -> bool:
            if self.finalizer not in obj.finalizers:
                return False
            obj.finalizers = [f for f in obj.finalizers if f != self.finalizer]
            return True

        try:
            updated = await try_update(self.db, infra, drop, self.backoff)
        except NotFoundError:
            logger.debug(f"Infrastructure {infra.key} already removed")
            infra.finalizers = [f for f in infra.finalizers if f != self.finalizer]
            return infra

        logger.debug(f"Removed finalizer {self.finalizer} from {infra.key}")
        return updated
