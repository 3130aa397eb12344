"""Patient-facing lookups and the doctor's patient overview."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from periop.db.models import PatientRecord, Surgery, SurgeryPlanVersion, User, UserRole
from periop.errors import ConflictError, NotFoundError
from periop.plans import extract_plan_items, serialise_version
from periop.time_utils import isoformat_utc


logger = structlog.get_logger(__name__)


class DobMismatchError(Exception):
    """Raised when a supplied date of birth does not match the record."""


def serialise_record(record: PatientRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "mrn": record.mrn,
        "name": record.name,
        "dob": record.dob.isoformat() if record.dob else None,
        "createdAt": isoformat_utc(record.created_at),
    }


def list_records(session: Session) -> List[PatientRecord]:
    return list(
        session.execute(
            select(PatientRecord).order_by(PatientRecord.created_at.desc(), PatientRecord.id.desc())
        ).scalars()
    )


def create_record(session: Session, mrn: str, name: str, dob: date) -> PatientRecord:
    record = PatientRecord(mrn=mrn.strip(), name=name.strip(), dob=dob)
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("MRN already exists") from exc
    logger.info("patient_record_created", record_id=record.id)
    return record


def lookup_record(session: Session, mrn: str, dob: Optional[date] = None) -> PatientRecord:
    """Find a record by MRN, optionally verifying the date of birth."""

    record = session.execute(
        select(PatientRecord).where(PatientRecord.mrn == mrn.strip())
    ).scalars().first()
    if record is None:
        raise NotFoundError("Patient not found")
    if dob is not None and record.dob != dob:
        logger.info("patient_dob_mismatch", record_id=record.id)
        raise DobMismatchError("DOB mismatch")
    return record


def doctor_overview(session: Session) -> List[Dict[str, Any]]:
    """Every patient with their surgeries, latest plan version and history."""

    patients = session.execute(
        select(User)
        .where(User.role == UserRole.PATIENT.value)
        .options(
            selectinload(User.patient_surgeries).selectinload(Surgery.guideline),
            selectinload(User.patient_surgeries)
            .selectinload(Surgery.versions)
            .selectinload(SurgeryPlanVersion.author),
        )
        .order_by(User.id.asc())
    ).scalars()

    data = []
    for patient in patients:
        surgeries = []
        for surgery in patient.patient_surgeries:
            history = [serialise_version(version) for version in surgery.versions]
            guideline = surgery.guideline
            surgeries.append(
                {
                    "id": surgery.id,
                    "status": surgery.status,
                    "scheduledAt": isoformat_utc(surgery.scheduled_at),
                    "guideline": (
                        {"name": guideline.name, "description": guideline.description}
                        if guideline
                        else None
                    ),
                    "latestVersion": history[-1] if history else None,
                    "history": history,
                }
            )
        data.append(
            {
                "id": patient.id,
                "name": patient.name,
                "dob": patient.dob.isoformat() if patient.dob else None,
                "surgeries": surgeries,
            }
        )
    return data


def patient_surgery_plans(session: Session, patient_id: int) -> List[Dict[str, Any]]:
    """A patient's surgeries with the items of each currently published plan."""

    surgeries = session.execute(
        select(Surgery)
        .where(Surgery.patient_id == patient_id)
        .options(selectinload(Surgery.doctor), selectinload(Surgery.published_version))
        .order_by(Surgery.scheduled_at.asc(), Surgery.id.asc())
    ).scalars()

    out = []
    for surgery in surgeries:
        version = surgery.published_version
        doctor = surgery.doctor
        out.append(
            {
                "id": surgery.id,
                "scheduledAt": isoformat_utc(surgery.scheduled_at),
                "location": surgery.location,
                "status": surgery.status,
                "doctor": {"id": doctor.id, "name": doctor.name} if doctor else None,
                "guideline": (
                    {
                        "id": version.id,
                        "name": f"Current Plan v{version.version_no}",
                        "items": extract_plan_items(version.instructions),
                    }
                    if version is not None
                    else None
                ),
            }
        )
    return out


def medication_list(session: Session, patient_id: int) -> Dict[str, Any]:
    """Medication items from the patient's currently published plans."""

    surgeries = session.execute(
        select(Surgery)
        .where(Surgery.patient_id == patient_id)
        .options(selectinload(Surgery.published_version))
    ).scalars()
    version_ids: List[int] = []
    medications: List[Dict[str, Any]] = []
    for surgery in surgeries:
        version = surgery.published_version
        if version is None:
            continue
        version_ids.append(version.id)
        for item in extract_plan_items(version.instructions):
            if str(item.get("type") or "").lower() == "medication":
                medications.append(item)
    return {"versionIds": version_ids, "medications": medications}


__all__ = [
    "DobMismatchError",
    "serialise_record",
    "list_records",
    "create_record",
    "lookup_record",
    "doctor_overview",
    "patient_surgery_plans",
    "medication_list",
]
