"""Connectivity change notifications.

One aggregate alert is raised per cycle that had transitions. Delivery is
best effort:
- every alert is logged
- SSE subscribers get it pushed onto their queue
- an optional webhook receives it as JSON

A failing sink is logged and otherwise ignored.
"""

import asyncio
import json
import os
import time
from collections import deque

import httpx
import structlog

from ..config import get_settings
from ..models import Alert, AlertSeverity, ConnectivityEvent, Direction

log = structlog.get_logger()

DOWN_TITLE = "Connectivity Change"
RESTORED_TITLE = "Connectivity Restored"


class SSESubscriber:
    """A Server-Sent Events subscriber."""

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.created_at: float = time.time()
        self.closed: bool = False

    async def get_message(self, timeout: float = 30.0) -> str | None:
        """Get next message from queue with timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def put_message(self, message: str) -> bool:
        """Add message to queue. Returns False if queue is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        self.closed = True


def build_alert(events: list[ConnectivityEvent]) -> Alert | None:
    """Aggregate one cycle's events into a single alert."""
    if not events:
        return None

    is_down = any(e.direction is Direction.DOWN for e in events)
    return Alert(
        id=f"alert_{int(time.time() * 1000)}_{os.urandom(4).hex()}",
        title=DOWN_TITLE if is_down else RESTORED_TITLE,
        message=", ".join(e.message for e in events),
        severity=AlertSeverity.DOWN if is_down else AlertSeverity.RESTORED,
        timestamp=events[-1].timestamp,
        events=list(events),
    )


class Notifier:
    """Fans aggregate alerts out to the configured sinks."""

    def __init__(
        self,
        enabled: bool | None = None,
        webhook_url: str | None = None,
        webhook_timeout_seconds: float | None = None,
        max_history: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings().notify
        self.enabled = settings.enabled if enabled is None else enabled
        self.webhook_url = webhook_url or settings.webhook_url
        self.webhook_timeout_seconds = webhook_timeout_seconds or settings.webhook_timeout_seconds
        self._transport = transport
        self._history: deque[Alert] = deque(maxlen=max_history or settings.max_alert_history)
        self._subscribers: list[SSESubscriber] = []
        self._pending: set[asyncio.Task] = set()

    async def notify(self, events: list[ConnectivityEvent]) -> Alert | None:
        """Raise the aggregate alert for ``events``. Never raises."""
        alert = build_alert(events)
        if alert is None:
            return None

        self._history.append(alert)
        if not self.enabled:
            log.info("notification_suppressed", alert_id=alert.id, message=alert.message)
            return alert

        log.warning(
            "connectivity_alert",
            alert_id=alert.id,
            severity=alert.severity.value,
            title=alert.title,
            message=alert.message,
        )
        try:
            self._push_to_subscribers(alert)
        except Exception as e:
            log.warning("notification_sink_failed", sink="sse", error=str(e))

        if self.webhook_url:
            task = asyncio.create_task(self._send_webhook(alert))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return alert

    def _push_to_subscribers(self, alert: Alert) -> None:
        message = f"data: {json.dumps(alert.model_dump(mode='json'), default=str)}\n\n"

        # Remove dead subscribers
        self._subscribers = [s for s in self._subscribers if not s.closed]

        for subscriber in self._subscribers:
            if not subscriber.put_message(message):
                log.debug("sse_subscriber_queue_full")

    async def _send_webhook(self, alert: Alert) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.webhook_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self.webhook_url, json=alert.model_dump(mode="json")
                )
                response.raise_for_status()
            log.debug("webhook_sent", alert_id=alert.id)
        except Exception as e:
            log.warning("notification_sink_failed", sink="webhook", error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight webhook deliveries."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def subscribe_sse(self) -> SSESubscriber:
        subscriber = SSESubscriber()
        self._subscribers.append(subscriber)
        log.debug("sse_subscriber_added", total=len(self._subscribers))
        return subscriber

    def unsubscribe_sse(self, subscriber: SSESubscriber) -> None:
        subscriber.close()
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
        log.debug("sse_subscriber_removed", total=len(self._subscribers))

    def get_history(self, limit: int = 100) -> list[Alert]:
        """Recent alerts, newest first."""
        return list(reversed(self._history))[:limit]

    def clear_history(self) -> None:
        self._history.clear()
