"""
One-shot asynchronous initialization.

Repositories that need slow or fallible setup (loading an embedding model,
opening an index, reading a graph file) share this state machine:

    UNINITIALIZED -> INITIALIZING -> READY
                                  -> FAILED   (terminal, never retried)

Concurrent first callers all await the same initialization instead of racing
duplicate setup.

KeyedLocks serializes async work per key (per context, per file).
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, Hashable, Optional

from .exceptions import SubsystemUnavailable

logger = logging.getLogger(__name__)


class InitState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class OneShotInitializer:
    """
    Runs an async init function at most once.

    Usage:
        init = OneShotInitializer("vector", self._initialize)
        if await init.ensure():
            ...  # backend is ready
    """

    def __init__(self, name: str, init_func: Callable[[], Awaitable[None]]):
        self.name = name
        self._init_func = init_func
        self._lock = asyncio.Lock()
        self.state = InitState.UNINITIALIZED
        self.error: Optional[SubsystemUnavailable] = None
        self.attempts = 0

    @property
    def ready(self) -> bool:
        return self.state is InitState.READY

    @property
    def failed(self) -> bool:
        return self.state is InitState.FAILED

    async def ensure(self) -> bool:
        """
        Initialize if needed and report readiness.

        Returns:
            True if READY, False if initialization failed.
        """
        # Fast path: already settled
        if self.state in (InitState.READY, InitState.FAILED):
            return self.ready

        async with self._lock:
            # Double-check after acquiring lock
            if self.state is InitState.UNINITIALIZED:
                self.state = InitState.INITIALIZING
                self.attempts += 1
                try:
                    await self._init_func()
                    self.state = InitState.READY
                    logger.info(f"{self.name} subsystem ready")
                except Exception as e:
                    self.error = SubsystemUnavailable(self.name, e)
                    self.state = InitState.FAILED
                    logger.warning(f"{self.name} subsystem failed to initialize, degrading: {e}")

        return self.ready


class KeyedLocks:
    """
    One asyncio.Lock per key, created on first use.

    Usage:
        locks = KeyedLocks()
        async with locks.lock(context_id):
            ...  # serialized per context_id
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def discard(self, key: Hashable) -> None:
        """Forget the lock for `key` unless someone holds it."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
