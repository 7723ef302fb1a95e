"""Operator-visible alerts.

Anything the engine gives up on retrying automatically ends up here so an
admin can intervene by hand instead of the failure being dropped.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from marketplace_disputes.schemas import new_id

logger = logging.getLogger(__name__)


class AlertKind(str, Enum):
    DISBURSEMENT_FAILED = "disbursement_failed"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    NOTIFICATION_UNDELIVERED = "notification_undelivered"


class OperatorAlert(BaseModel):
    alert_id: str = Field(default_factory=new_id)
    kind: AlertKind
    dispute_id: str | None = None
    message: str
    raised_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AlertLog:
    def __init__(self) -> None:
        self._alerts: list[OperatorAlert] = []
        self._lock = threading.Lock()

    def raise_alert(self, kind: AlertKind, message: str, dispute_id: str | None = None) -> OperatorAlert:
        alert = OperatorAlert(kind=kind, dispute_id=dispute_id, message=message)
        with self._lock:
            self._alerts.append(alert)
        logger.error("OPERATOR ALERT [%s] dispute=%s: %s", kind.value, dispute_id or "-", message)
        return alert

    def list_alerts(self, limit: int = 50, offset: int = 0) -> list[OperatorAlert]:
        with self._lock:
            newest_first = list(reversed(self._alerts))
        return newest_first[offset : offset + limit]

    def for_dispute(self, dispute_id: str) -> list[OperatorAlert]:
        with self._lock:
            return [a for a in self._alerts if a.dispute_id == dispute_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)
