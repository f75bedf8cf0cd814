"""
Progress notification channel.

Listeners are held through weak references and only ever receive progress
information. A listener that raises, or a coroutine listener that fails later,
is logged and skipped: publishing never fails the operation that emits it.
"""

import asyncio
import inspect
import logging
import weakref
from typing import Any, Callable, List, Optional, Set

from .models import Action, ProgressInfo, ProgressKind, ProgressLevel, ProgressScope

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressInfo], Any]


def _make_ref(listener: Listener):
    if inspect.ismethod(listener):
        return weakref.WeakMethod(listener)
    return weakref.ref(listener)


class ProgressBus:
    """Publish/subscribe channel for ``ProgressInfo`` events."""

    def __init__(self):
        self._refs: List[weakref.ReferenceType] = []
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, listener: Listener):
        """Register ``listener``. The caller keeps it alive."""
        self._refs.append(_make_ref(listener))

    def unsubscribe(self, listener: Listener) -> bool:
        for ref in list(self._refs):
            if ref() == listener:
                self._refs.remove(ref)
                return True
        return False

    def listeners(self) -> List[Listener]:
        alive = []
        for ref in list(self._refs):
            listener = ref()
            if listener is None:
                self._refs.remove(ref)
            else:
                alive.append(listener)
        return alive

    def __len__(self) -> int:
        return len(self.listeners())

    def publish(self, info: ProgressInfo):
        for listener in self.listeners():
            try:
                result = listener(info)
            except Exception:
                logger.exception(f"Progress listener {listener!r} failed")
                continue

            if inspect.isawaitable(result):
                self._schedule(listener, result)

    def _schedule(self, listener: Listener, awaitable):
        try:
            future = asyncio.ensure_future(awaitable)
        except RuntimeError:
            # No running loop, nothing can drive the coroutine
            logger.warning(f"Dropping async progress listener {listener!r}: no event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        def _log_failure(fut: asyncio.Future):
            if not fut.cancelled() and fut.exception() is not None:
                logger.error(
                    f"Async progress listener {listener!r} failed: {fut.exception()}"
                )

        self._pending.add(future)
        future.add_done_callback(self._pending.discard)
        future.add_done_callback(_log_failure)


class ProgressNotifier:
    """Binds a bus to a scope and an execution id."""

    def __init__(self, bus: ProgressBus, scope: ProgressScope, execution_id: str):
        self.bus = bus
        self.scope = scope
        self.execution_id = execution_id

    def send(
        self,
        message: Optional[str],
        level: ProgressLevel = ProgressLevel.INFO,
        kind: ProgressKind = ProgressKind.IN_PROGRESS,
        action: Optional[Action] = None,
    ):
        self.bus.publish(
            ProgressInfo(
                scope=self.scope,
                level=level,
                kind=kind,
                message=message,
                execution_id=self.execution_id,
                action=action,
            )
        )

    def info(self, message: str, action: Optional[Action] = None):
        self.send(message, ProgressLevel.INFO, action=action)

    def warn(self, message: str, action: Optional[Action] = None):
        self.send(message, ProgressLevel.WARN, action=action)

    def error(self, message: str, action: Optional[Action] = None):
        self.send(message, ProgressLevel.ERROR, action=action)
