"""Assemble a patient's notification feed from their surgeries.

Each instruction item of a surgery's current plan becomes one notification
whose ``active`` flag and ``ts`` come from the item's window.  Every surgery
also contributes a reminder about the operation itself.
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from periop.db.models import Surgery, SurgeryGuideline
from periop.metrics import WINDOW_EVALUATIONS_TOTAL
from periop.plans import published_items
from periop.time_utils import MILLIS_PER_HOUR, ensure_utc, to_epoch_millis
from periop.windows import is_active, resolve_window, target_time


logger = structlog.get_logger(__name__)

# The surgery reminder is live from 24h before until 3h after the start.
REMINDER_LEAD_HOURS = 24
REMINDER_TAIL_HOURS = 3


def item_notification(
    surgery_id: int,
    item: Mapping[str, Any],
    scheduled_at: datetime,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    """Build the notification for one instruction item."""

    spec = resolve_window(item.get("window"), surgery_id=surgery_id, item_id=item.get("id"))
    active = is_active(spec, scheduled_at, now)
    target = target_time(spec, scheduled_at, tz)
    WINDOW_EVALUATIONS_TOTAL.labels("true" if active else "false").inc()
    return {
        "surgeryId": surgery_id,
        "message": str(item.get("title") or "Untitled"),
        "description": item.get("description"),
        "type": item.get("type") or "general",
        "ts": to_epoch_millis(target) if target is not None else to_epoch_millis(now),
        "active": active,
    }


def surgery_reminder(
    surgery_id: int,
    scheduled_at: datetime,
    now: datetime,
    doctor_name: Optional[str] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    """Build the reminder about the operation itself."""

    to_surgery = to_epoch_millis(scheduled_at) - to_epoch_millis(now)  # type: ignore[operator]
    local = ensure_utc(scheduled_at).astimezone(tz) if tz else ensure_utc(scheduled_at)
    message = f"Your surgery is scheduled for {local:%Y-%m-%d %H:%M %Z}".rstrip()
    if doctor_name:
        message += f" with Dr. {doctor_name}"
    return {
        "surgeryId": surgery_id,
        "message": message + ".",
        "description": None,
        "type": "surgery",
        "ts": to_epoch_millis(scheduled_at),
        "active": -REMINDER_TAIL_HOURS * MILLIS_PER_HOUR < to_surgery <= REMINDER_LEAD_HOURS * MILLIS_PER_HOUR,
    }


def build_notifications(
    surgeries: Iterable[Surgery],
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    """Return notifications for ``surgeries`` sorted by ``ts`` ascending."""

    notifications: List[Dict[str, Any]] = []
    for surgery in surgeries:
        if surgery.scheduled_at is None:
            continue
        scheduled = ensure_utc(surgery.scheduled_at)
        items = published_items(surgery)
        for item in items:
            notifications.append(item_notification(surgery.id, item, scheduled, now, tz))
        doctor_name = surgery.doctor.name if surgery.doctor is not None else None
        notifications.append(surgery_reminder(surgery.id, scheduled, now, doctor_name, tz))
        logger.debug("surgery_notifications_built", surgery_id=surgery.id, items=len(items))
    notifications.sort(key=lambda entry: entry["ts"])
    return notifications


def patient_surgeries(session: Session, patient_id: int) -> List[Surgery]:
    """Load a patient's surgeries with everything notifications need."""

    return list(
        session.execute(
            select(Surgery)
            .where(Surgery.patient_id == patient_id)
            .options(
                selectinload(Surgery.doctor),
                selectinload(Surgery.published_version),
                selectinload(Surgery.guideline).selectinload(SurgeryGuideline.items),
            )
            .order_by(Surgery.scheduled_at.asc(), Surgery.id.asc())
        ).scalars()
    )


def list_patient_notifications(
    session: Session,
    patient_id: int,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> List[Dict[str, Any]]:
    return build_notifications(patient_surgeries(session, patient_id), now, tz)


__all__ = [
    "item_notification",
    "surgery_reminder",
    "build_notifications",
    "patient_surgeries",
    "list_patient_notifications",
]
