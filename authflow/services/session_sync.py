"""
Store Change Listener.

Cross-window pub/sub over the durable scoped store.  Every window of the
same user opens the same SQLite file; this listener polls the
``(value, version)`` snapshot of each watched key and, when it changes
because of a write made by *another* process, delivers the change to the
store's watchers and to the async subscribers registered here.

Writes made by this process are recognised (``ScopedStore.is_local_write``)
and not delivered a second time.

Follows a start / stop lifecycle: the caller invokes :meth:`start` and
:meth:`stop`; the poll runs as an asyncio task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional

from authflow.config import AppConfig
from authflow.logger import StructuredLogger
from authflow.services.base_service import BaseService
from authflow.services.scoped_store import ScopedStore, Snapshot

ChangeHandler = Callable[[str, Optional[str]], Awaitable[None]]


class StoreChangeListener(BaseService):
    """Polls watched keys for changes written by other processes.

    Parameters
    ----------
    store:
        The scoped store to watch.
    config:
        Supplies ``SESSION_POLL_INTERVAL_S``.
    logger:
        Structured logger instance.
    """

    def __init__(
        self,
        store: ScopedStore,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._store = store
        self._interval_s: float = config.SESSION_POLL_INTERVAL_S
        self._handlers: dict[str, list[ChangeHandler]] = {}
        self._seen: dict[str, Snapshot] = {}
        self._task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, key: str, handler: ChangeHandler) -> Callable[[], None]:
        """Await *handler* whenever another process changes *key*."""
        self._handlers.setdefault(key, []).append(handler)
        self._seen.setdefault(key, self._store.snapshot(key))

        def _unsubscribe() -> None:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling.  Idempotent; must be called from the event loop."""
        if self.is_running:
            self._logger.debug("Store change listener already running.")
            return
        for key in self._keys():
            self._seen.setdefault(key, self._store.snapshot(key))
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        self._logger.info("Store change listener started.")

    async def stop(self) -> None:
        """Cancel the poll task.  Safe to call when not running."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._logger.info("Store change listener stopped.")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    async def poll_once(self) -> list[str]:
        """Check every watched key once; return the keys changed externally."""
        changed: list[str] = []
        for key in self._keys():
            snapshot = self._store.snapshot(key)
            previous = self._seen.get(key)
            self._seen[key] = snapshot
            if previous is None or snapshot == previous:
                continue
            if self._store.is_local_write(key, snapshot):
                continue
            changed.append(key)
            await self._dispatch(key, snapshot[0])
        return changed

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.warning("Store poll cycle failed", exc_info=True)

    async def _dispatch(self, key: str, value: Optional[str]) -> None:
        self._store.notify(key, value)
        for handler in list(self._handlers.get(key, [])):
            try:
                await handler(key, value)
            except Exception:
                self._logger.error(
                    "Change handler for %s raised.", key, exc_info=True,
                )

    def _keys(self) -> list[str]:
        keys = [key for key, handlers in self._handlers.items() if handlers]
        for key in self._store.watched_keys():
            if key not in keys:
                keys.append(key)
        return keys
