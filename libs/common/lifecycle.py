"""
Explicit process lifecycle.

One ``ProcessLifecycle`` is constructed at process start, initialised once,
and handed to whatever needs the shared services it owns.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LifecycleError(RuntimeError):
    """Raised when shared services are requested before ``init()``."""


class ProcessLifecycle(Generic[T]):
    """
    Owns process-wide services and their initialisation state.

    Features:
    - ``init()`` runs the initializer exactly once, even under concurrent callers
    - ``is_initialized()`` lets request handlers refuse work early
    - ``shutdown()`` runs the finalizer and resets state

    Usage:
        lifecycle = ProcessLifecycle(build_services, close_services)
        await lifecycle.init()
        services = lifecycle.services
    """

    def __init__(
        self,
        initializer: Callable[[], Awaitable[T]],
        finalizer: Optional[Callable[[T], Awaitable[Any]]] = None,
    ):
        self._initializer = initializer
        self._finalizer = finalizer
        self._services: Optional[T] = None
        self._lock = asyncio.Lock()

    def is_initialized(self) -> bool:
        return self._services is not None

    async def init(self) -> T:
        """Initialise shared services if not already done and return them."""
        async with self._lock:
            if self._services is None:
                start_time = time.time()
                self._services = await self._initializer()
                logger.info(
                    "Process lifecycle initialized",
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                )
            return self._services

    @property
    def services(self) -> T:
        if self._services is None:
            raise LifecycleError("Process lifecycle has not been initialized")
        return self._services

    async def shutdown(self) -> None:
        async with self._lock:
            if self._services is None:
                return
            services, self._services = self._services, None
            if self._finalizer is not None:
                try:
                    await self._finalizer(services)
                except Exception as e:
                    logger.warning("Process lifecycle shutdown failed", error=str(e))
            logger.info("Process lifecycle shut down")
