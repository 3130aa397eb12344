"""Surgeries and their versioned instruction plans.

Every surgery owns a sequence of plan versions numbered from 1.  A version is
created as a ``DRAFT``; publishing it makes it the surgery's current plan and
supersedes the previously published version.  Patients only ever see the
currently published version.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from periop.db.models import (
    GuidelineItem,
    PlanStatus,
    Surgery,
    SurgeryGuideline,
    SurgeryPlanVersion,
    User,
    UserRole,
)
from periop.errors import ConflictError, InvalidRequestError, NotFoundError
from periop.time_utils import ensure_utc, isoformat_utc, parse_iso_datetime, utc_now


logger = structlog.get_logger(__name__)


def coerce_id(value: Any, field: str) -> int:
    """Parse an identifier supplied as an int or numeric string."""

    if isinstance(value, bool) or value is None:
        raise InvalidRequestError(f"Missing or invalid {field}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidRequestError(f"Missing or invalid {field}.")


def serialise_item(raw: Mapping[str, Any], index: int = 0) -> Dict[str, Any]:
    try:
        item_id = int(raw.get("id") or 0)
    except (TypeError, ValueError):
        item_id = 0
    return {
        "id": item_id or index + 1,
        "title": str(raw.get("title") or "Untitled"),
        "description": raw.get("description"),
        "itemKey": raw.get("itemKey"),
        "type": raw.get("type"),
        "window": raw.get("window"),
        "appliesIf": raw.get("appliesIf"),
    }


def extract_plan_items(instructions: Any) -> List[Dict[str, Any]]:
    """Return the normalised ``items`` list of a plan version's instructions."""

    if not isinstance(instructions, Mapping):
        return []
    items = instructions.get("items")
    if not isinstance(items, list):
        return []
    return [serialise_item(item, idx) for idx, item in enumerate(items) if isinstance(item, Mapping)]


def guideline_item_payload(item: GuidelineItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "description": item.description,
        "itemKey": item.item_key,
        "type": item.type,
        "window": item.window,
        "appliesIf": item.applies_if,
    }


def user_brief(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "role": user.role}


def serialise_version(version: SurgeryPlanVersion) -> Dict[str, Any]:
    return {
        "id": version.id,
        "surgeryId": version.surgery_id,
        "versionNo": version.version_no,
        "status": version.status,
        "isPublished": bool(version.is_published),
        "instructions": version.instructions or {},
        "basedOnGuidelineId": version.based_on_guideline_id,
        "createdAt": isoformat_utc(version.created_at),
        "publishedAt": isoformat_utc(version.published_at),
        "author": user_brief(version.author),
    }


def serialise_surgery(surgery: Surgery) -> Dict[str, Any]:
    guideline = surgery.guideline
    return {
        "id": surgery.id,
        "patientId": surgery.patient_id,
        "doctorId": surgery.doctor_id,
        "guidelineId": surgery.guideline_id,
        "scheduledAt": isoformat_utc(surgery.scheduled_at),
        "location": surgery.location,
        "status": surgery.status,
        "currentPublishedVersionId": surgery.current_published_version_id,
        "createdAt": isoformat_utc(surgery.created_at),
        "guideline": {"id": guideline.id, "name": guideline.name} if guideline else None,
    }


def _normalise_instructions(instructions: Any) -> Dict[str, Any]:
    if instructions is None:
        return {}
    if isinstance(instructions, list):
        return {"items": instructions}
    if isinstance(instructions, Mapping):
        return dict(instructions)
    raise InvalidRequestError("instructions must be an object.")


def get_surgery(session: Session, surgery_id: int) -> Surgery:
    surgery = session.get(Surgery, surgery_id)
    if surgery is None:
        raise NotFoundError("Surgery not found.")
    return surgery


def create_surgery(
    session: Session,
    *,
    doctor_id: int,
    patient_id: Any,
    guideline_id: Any = None,
    scheduled_at: Any = None,
    location: Optional[str] = None,
    instructions: Any = None,
) -> Surgery:
    """Create a surgery together with its draft plan version 1."""

    numeric_patient_id = coerce_id(patient_id, "patientId")
    patient = session.get(User, numeric_patient_id)
    if patient is None or patient.role != UserRole.PATIENT.value:
        raise NotFoundError(
            f"Patient with ID {numeric_patient_id} not found or is not a patient."
        )

    guideline: Optional[SurgeryGuideline] = None
    if guideline_id is not None:
        try:
            numeric_guideline_id = coerce_id(guideline_id, "guidelineId")
        except InvalidRequestError:
            raise InvalidRequestError("Invalid guidelineId format.") from None
        if numeric_guideline_id <= 0:
            raise InvalidRequestError("Invalid guidelineId format.")
        guideline = session.get(SurgeryGuideline, numeric_guideline_id)
        if guideline is None:
            raise InvalidRequestError("Guideline not found.")

    scheduled: Optional[datetime] = None
    if scheduled_at is not None:
        if isinstance(scheduled_at, datetime):
            scheduled = ensure_utc(scheduled_at)
        else:
            scheduled = parse_iso_datetime(str(scheduled_at))
        if scheduled is None:
            raise InvalidRequestError("Invalid scheduledAt date format.")

    plan = _normalise_instructions(instructions)
    if not plan and guideline is not None:
        plan = {"items": [guideline_item_payload(item) for item in guideline.items]}

    surgery = Surgery(
        patient_id=numeric_patient_id,
        doctor_id=doctor_id,
        guideline=guideline,
        scheduled_at=scheduled,
        location=location,
    )
    session.add(surgery)
    session.flush()
    version = SurgeryPlanVersion(
        surgery_id=surgery.id,
        version_no=1,
        author_id=doctor_id,
        instructions=plan,
        is_published=False,
        status=PlanStatus.DRAFT.value,
        based_on_guideline_id=guideline.id if guideline else None,
    )
    session.add(version)
    session.flush()
    logger.info(
        "surgery_created",
        surgery_id=surgery.id,
        patient_id=numeric_patient_id,
        doctor_id=doctor_id,
        guideline_id=surgery.guideline_id,
    )
    return surgery


def list_versions(session: Session, surgery_id: int) -> List[SurgeryPlanVersion]:
    """Return all plan versions of a surgery, newest first."""

    return list(
        session.execute(
            select(SurgeryPlanVersion)
            .where(SurgeryPlanVersion.surgery_id == surgery_id)
            .order_by(SurgeryPlanVersion.version_no.desc())
        ).scalars()
    )


def create_version(
    session: Session,
    surgery_id: int,
    *,
    author_id: int,
    instructions: Any = None,
) -> SurgeryPlanVersion:
    """Append a new draft version after the highest existing version number."""

    surgery = get_surgery(session, surgery_id)
    latest = session.execute(
        select(func.max(SurgeryPlanVersion.version_no)).where(
            SurgeryPlanVersion.surgery_id == surgery_id
        )
    ).scalar()
    version = SurgeryPlanVersion(
        surgery_id=surgery_id,
        version_no=(latest or 0) + 1,
        author_id=author_id,
        instructions=_normalise_instructions(instructions),
        is_published=False,
        status=PlanStatus.DRAFT.value,
        based_on_guideline_id=surgery.guideline_id,
    )
    session.add(version)
    surgery.created_at = utc_now()
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Plan version was created concurrently; retry.") from exc
    logger.info(
        "plan_version_created",
        surgery_id=surgery_id,
        version_no=version.version_no,
        author_id=author_id,
    )
    return version


def publish_version(session: Session, surgery_id: int, version_id: int) -> SurgeryPlanVersion:
    """Make ``version_id`` the surgery's current plan."""

    surgery = get_surgery(session, surgery_id)
    version = session.get(SurgeryPlanVersion, version_id)
    if version is None or version.surgery_id != surgery_id:
        raise NotFoundError("Plan version not found.")

    previous = surgery.published_version
    if previous is not None and previous.id != version.id:
        previous.is_published = False
        previous.status = PlanStatus.SUPERSEDED.value

    version.is_published = True
    version.status = PlanStatus.PUBLISHED.value
    version.published_at = utc_now()
    surgery.published_version = version
    session.flush()
    logger.info(
        "plan_version_published",
        surgery_id=surgery_id,
        version_id=version.id,
        version_no=version.version_no,
        superseded=previous.id if previous is not None and previous.id != version.id else None,
    )
    return version


def published_items(surgery: Surgery) -> List[Dict[str, Any]]:
    """Items of the surgery's current plan, or its guideline template."""

    version = surgery.published_version
    if version is not None:
        return extract_plan_items(version.instructions)
    if surgery.guideline is not None:
        return [guideline_item_payload(item) for item in surgery.guideline.items]
    return []


__all__ = [
    "coerce_id",
    "extract_plan_items",
    "guideline_item_payload",
    "user_brief",
    "serialise_version",
    "serialise_surgery",
    "get_surgery",
    "create_surgery",
    "list_versions",
    "create_version",
    "publish_version",
    "published_items",
]
