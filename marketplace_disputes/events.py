"""Domain event outbox and notifier subscribers.

Events are published only after a transition commits.  A subscriber that
cannot be reached does not undo the transition: its delivery stays queued
and is retried with backoff on every scheduler tick until the attempt cap,
after which an operator alert is raised.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from marketplace_disputes.alerts import AlertKind, AlertLog
from marketplace_disputes.errors import DownstreamUnavailable
from marketplace_disputes.retry import next_attempt_at
from marketplace_disputes.schemas import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass
class _Delivery:
    event: DomainEvent
    subscriber: str
    handler: EventHandler
    attempts: int = 0
    next_attempt_at: datetime | None = None


class EventPublisher:
    def __init__(
        self,
        alerts: AlertLog,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 900.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alerts = alerts
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subscribers: list[tuple[str, EventHandler]] = []
        self._published: list[DomainEvent] = []
        self._outbox: list[_Delivery] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, name: str | None = None) -> None:
        name = name or getattr(handler, "__name__", None) or type(handler).__name__
        with self._lock:
            self._subscribers.append((name, handler))

    def publish(self, events: Iterable[DomainEvent]) -> None:
        events = list(events)
        with self._lock:
            self._published.extend(events)
            subscribers = list(self._subscribers)
        for event in events:
            logger.info("Event %s for dispute %s", event.event_type.value, event.dispute_id)
            for name, handler in subscribers:
                self._attempt(_Delivery(event=event, subscriber=name, handler=handler))

    def redeliver_due(self, now: datetime | None = None) -> int:
        """Retry queued deliveries whose backoff has elapsed.  Returns how many were tried."""
        now = now or self._clock()
        with self._lock:
            due: list[_Delivery] = []
            waiting: list[_Delivery] = []
            for delivery in self._outbox:
                if delivery.next_attempt_at is None or delivery.next_attempt_at <= now:
                    due.append(delivery)
                else:
                    waiting.append(delivery)
            self._outbox = waiting
        for delivery in due:
            self._attempt(delivery)
        return len(due)

    def history(self, dispute_id: str | None = None) -> list[DomainEvent]:
        with self._lock:
            if dispute_id is None:
                return list(self._published)
            return [e for e in self._published if e.dispute_id == dispute_id]

    @property
    def queued(self) -> int:
        with self._lock:
            return len(self._outbox)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _attempt(self, delivery: _Delivery) -> None:
        delivery.attempts += 1
        try:
            delivery.handler(delivery.event)
            return
        except DownstreamUnavailable as exc:
            logger.warning(
                "Subscriber %s unreachable for %s (attempt %d/%d): %s",
                delivery.subscriber,
                delivery.event.event_type.value,
                delivery.attempts,
                self._max_attempts,
                exc,
            )
        except Exception:
            logger.exception(
                "Subscriber %s failed on %s (attempt %d/%d)",
                delivery.subscriber,
                delivery.event.event_type.value,
                delivery.attempts,
                self._max_attempts,
            )

        if delivery.attempts >= self._max_attempts:
            self._alerts.raise_alert(
                AlertKind.NOTIFICATION_UNDELIVERED,
                f"{delivery.event.event_type.value} could not be delivered to "
                f"{delivery.subscriber} after {delivery.attempts} attempts",
                dispute_id=delivery.event.dispute_id,
            )
            return

        delivery.next_attempt_at = next_attempt_at(
            self._clock(), delivery.attempts, self._backoff_base, self._backoff_max
        )
        with self._lock:
            self._outbox.append(delivery)


class WebhookNotifier:
    """Forwards every event as JSON to an external notification service."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def __call__(self, event: DomainEvent) -> None:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.url, json=event.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            raise DownstreamUnavailable(f"Notifier unreachable: {exc}") from exc
        if not resp.is_success:
            raise DownstreamUnavailable(f"Notifier returned {resp.status_code}")
