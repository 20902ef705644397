"""Fire-and-forget delivery of safety notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol

from platesafe.obs import metrics

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Push/e-mail transport collaborator."""

    async def notify(self, user_id: str, event: Mapping[str, Any]) -> None:
        ...


class NullNotifier(Notifier):
    async def notify(self, user_id: str, event: Mapping[str, Any]) -> None:  # noqa: ARG002 - interface parity
        return None


class NotificationDispatcher:
    """Schedules deliveries as background tasks; failures are logged only."""

    def __init__(self, notifier: Notifier, *, timeout_seconds: float = 10.0) -> None:
        self._notifier = notifier
        self._timeout = timeout_seconds
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, user_id: str | None, event: Mapping[str, Any]) -> asyncio.Task[None] | None:
        if not user_id:
            return None
        task = asyncio.get_running_loop().create_task(self._deliver(user_id, dict(event)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, user_id: str, event: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self._notifier.notify(user_id, event), timeout=self._timeout)
        except Exception:  # noqa: BLE001 - delivery is best effort
            metrics.NOTIFICATION_FAILURES.labels(event=str(event.get("type", "unknown"))).inc()
            logger.exception(
                "failed to deliver safety notification",
                extra={"recipient": user_id, "event_type": event.get("type")},
            )
