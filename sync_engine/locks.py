"""
Guard against rapid-fire duplicate commands.

A second checkout for the same user while the first one is still awaiting the
remote store is rejected instead of queued, so a double click never places
two orders. The guard is released on every exit path, exceptions included.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from shared.exceptions import CommandInProgressError

logger = logging.getLogger("locks")


class CommandGuard:
    """Per-key, non-blocking mutex for inbound commands."""

    def __init__(self):
        self._held: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._held

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """
        Hold the guard for key for the duration of the block.

        Raises:
            CommandInProgressError: If the key is already held
        """
        if key in self._held:
            logger.warning(f"Rejected duplicate command: {key}")
            raise CommandInProgressError(key)
        self._held.add(key)
        try:
            yield
        finally:
            self._held.discard(key)
