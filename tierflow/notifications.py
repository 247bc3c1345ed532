"""Fire-and-forget side effects: member notifications and webhook events.

The engine commits its state change first, then hands side effects to an
``EffectDispatcher``. Each effect runs as its own asyncio task; a failure is
logged and never reaches the caller.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivery of templated messages to people."""

    async def notify_deliberation_members(
        self, deliberation_id: int, template_kind: str, data: dict[str, Any]
    ) -> None: ...

    async def notify_user(self, user_id: int, template_kind: str, data: dict[str, Any]) -> None: ...


class EventSink(Protocol):
    """Anything that accepts engine events (see ``webhooks.WebhookDispatcher``)."""

    async def fire_event(self, kind: str, payload: dict[str, Any]) -> Any: ...


class LoggingNotifier:
    """Default notifier: writes notifications to the log."""

    async def notify_deliberation_members(
        self, deliberation_id: int, template_kind: str, data: dict[str, Any]
    ) -> None:
        logger.info("Notify members of deliberation %s: %s %s", deliberation_id, template_kind, data)

    async def notify_user(self, user_id: int, template_kind: str, data: dict[str, Any]) -> None:
        logger.info("Notify user %s: %s %s", user_id, template_kind, data)


class EffectDispatcher:
    """Schedules notifications and events without blocking the engine."""

    def __init__(self, notifier: Notifier | None = None, events: EventSink | None = None):
        self.notifier = notifier or LoggingNotifier()
        self.events = events
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def notify_members(self, deliberation_id: int, template_kind: str, data: dict[str, Any]) -> None:
        self._spawn(
            self.notifier.notify_deliberation_members(deliberation_id, template_kind, data),
            f"notify:{template_kind}",
        )

    def notify_user(self, user_id: int, template_kind: str, data: dict[str, Any]) -> None:
        self._spawn(self.notifier.notify_user(user_id, template_kind, data), f"notify_user:{template_kind}")

    def fire_event(self, kind: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            logger.debug("No event sink configured, dropping %s", kind)
            return
        self._spawn(self.events.fire_event(kind, payload), f"event:{kind}")

    @property
    def pending(self) -> int:
        """Number of effects still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled effect, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, skipped side effect %s", label)
            return
        task = loop.create_task(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        try:
            await coro
        except Exception:
            self.failures += 1
            logger.exception("Side effect %s failed", label)


_effects = EffectDispatcher()


def get_effects() -> EffectDispatcher:
    """Get the process-wide dispatcher used when callers pass none."""
    return _effects


def set_effects(effects: EffectDispatcher) -> None:
    """Replace the process-wide dispatcher (host startup wiring)."""
    global _effects
    _effects = effects
