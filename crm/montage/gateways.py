from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from crm.core.extensions import db
from crm.core.models import AuditLog, MontageAttachment, User

logger = logging.getLogger(__name__)

MEASUREMENT_SCHEDULED = "MEASUREMENT_SCHEDULED"
MONTAGE_SCHEDULED = "MONTAGE_SCHEDULED"
MEASURER_ASSIGNED = "MEASURER_ASSIGNED"


@dataclass(frozen=True)
class Rates:
    measurement_rate: Decimal | None = None
    commission_rate: Decimal | None = None


@dataclass(frozen=True)
class AttachmentRef:
    type: str
    url: str


class CalendarGateway:
    """Calendar sync; the default implementation only records the intent in the log."""

    def upsert_event(
        self,
        event_id: str | None,
        owner_id: int | None,
        title: str,
        start: datetime,
        end: datetime | None = None,
        location: str | None = None,
    ) -> str | None:
        new_id = event_id or f"local-{owner_id}-{int(start.timestamp())}"
        logger.info("Calendar upsert %s for user %s: %s at %s", new_id, owner_id, title, start.isoformat())
        return new_id

    def delete_event(self, event_id: str, owner_id: int | None) -> None:
        logger.info("Calendar delete %s for user %s", event_id, owner_id)


class NotificationGateway:
    def send(self, template_id: str, recipient: str | None, variables: dict[str, object]) -> None:
        logger.info("Notification %s to %s: %s", template_id, recipient, variables)


def db_rate_lookup(user_id: int | None) -> Rates:
    if not user_id:
        return Rates()
    user = db.session.get(User, user_id)
    if not user:
        return Rates()
    return Rates(measurement_rate=user.measurement_rate, commission_rate=user.commission_rate)


def db_attachment_lookup(montage_id: int) -> list[AttachmentRef]:
    rows = MontageAttachment.query.filter_by(montage_id=montage_id).order_by(MontageAttachment.id.asc()).all()
    return [AttachmentRef(type=row.type, url=row.url) for row in rows]


def log_audit(action: str, details: str, user_id: int | None = None, montage_id: int | None = None) -> AuditLog:
    entry = AuditLog(action=action, details=details, user_id=user_id, montage_id=montage_id)
    db.session.add(entry)
    return entry


@dataclass
class Gateways:
    calendar: CalendarGateway = field(default_factory=CalendarGateway)
    notifications: NotificationGateway = field(default_factory=NotificationGateway)
    rates: Callable[[int | None], Rates] = db_rate_lookup
    attachments: Callable[[int], list[AttachmentRef]] = db_attachment_lookup
    audit: Callable[..., AuditLog] = log_audit
