"""SQLAlchemy models for accounts, guidelines, surgeries and plan versions."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    """Account roles."""

    DOCTOR = "doctor"
    PATIENT = "patient"


class SurgeryStatus(str, enum.Enum):
    """Lifecycle of a scheduled operation."""

    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PlanStatus(str, enum.Enum):
    """Status values for surgery plan versions."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    SUPERSEDED = "SUPERSEDED"


class User(Base):
    __tablename__ = "users"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False)
    ssn_hash = sa.Column(String, nullable=False, index=True)
    dob = sa.Column(Date, nullable=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    patient_surgeries = relationship(
        "Surgery",
        foreign_keys="Surgery.patient_id",
        back_populates="patient",
        order_by="Surgery.id",
    )

    __table_args__ = (
        sa.Index("idx_users_role", "role"),
    )


class PatientRecord(Base):
    """Medical record number registry maintained by doctors."""

    __tablename__ = "patients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    mrn = sa.Column(String, nullable=False, unique=True, index=True)
    name = sa.Column(String, nullable=False)
    dob = sa.Column(Date, nullable=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class SurgeryGuideline(Base):
    __tablename__ = "surgery_guidelines"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    items = relationship(
        "GuidelineItem",
        back_populates="guideline",
        order_by="GuidelineItem.id",
        cascade="all, delete-orphan",
    )
    surgeries = relationship("Surgery", back_populates="guideline")


class GuidelineItem(Base):
    __tablename__ = "guideline_items"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    guideline_id = sa.Column(Integer, ForeignKey("surgery_guidelines.id"), nullable=False)
    title = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    item_key = sa.Column(String, nullable=True)
    type = sa.Column(String, nullable=True)
    # Either a JSON object or a JSON-encoded string; see periop.windows.
    window = sa.Column(sa.JSON, nullable=True)
    applies_if = sa.Column(sa.JSON, nullable=True)

    guideline = relationship(SurgeryGuideline, back_populates="items")

    __table_args__ = (
        sa.Index("idx_guideline_items_guideline", "guideline_id"),
    )


class Surgery(Base):
    __tablename__ = "surgeries"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    patient_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    guideline_id = sa.Column(Integer, ForeignKey("surgery_guidelines.id"), nullable=True)
    scheduled_at = sa.Column(DateTime(timezone=True), nullable=True, index=True)
    location = sa.Column(String, nullable=True)
    status = sa.Column(
        String,
        nullable=False,
        default=SurgeryStatus.SCHEDULED.value,
        server_default=sa.text("'SCHEDULED'"),
    )
    current_published_version_id = sa.Column(
        Integer,
        ForeignKey(
            "surgery_plan_versions.id",
            use_alter=True,
            name="fk_surgeries_published_version",
        ),
        nullable=True,
    )
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )

    patient = relationship(User, foreign_keys=[patient_id], back_populates="patient_surgeries")
    doctor = relationship(User, foreign_keys=[doctor_id])
    guideline = relationship(SurgeryGuideline, back_populates="surgeries")
    versions = relationship(
        "SurgeryPlanVersion",
        foreign_keys="SurgeryPlanVersion.surgery_id",
        back_populates="surgery",
        order_by="SurgeryPlanVersion.version_no",
    )
    published_version = relationship(
        "SurgeryPlanVersion",
        foreign_keys=[current_published_version_id],
        post_update=True,
    )

    __table_args__ = (
        sa.Index("idx_surgeries_patient", "patient_id"),
    )


class SurgeryPlanVersion(Base):
    __tablename__ = "surgery_plan_versions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    surgery_id = sa.Column(Integer, ForeignKey("surgeries.id"), nullable=False)
    version_no = sa.Column(Integer, nullable=False)
    author_id = sa.Column(Integer, ForeignKey("users.id"), nullable=False)
    instructions = sa.Column(sa.JSON, nullable=False, default=dict)
    is_published = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    status = sa.Column(
        String,
        nullable=False,
        default=PlanStatus.DRAFT.value,
        server_default=sa.text("'DRAFT'"),
    )
    based_on_guideline_id = sa.Column(Integer, ForeignKey("surgery_guidelines.id"), nullable=True)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )
    published_at = sa.Column(DateTime(timezone=True), nullable=True)

    surgery = relationship(Surgery, foreign_keys=[surgery_id], back_populates="versions")
    author = relationship(User)

    __table_args__ = (
        sa.UniqueConstraint("surgery_id", "version_no", name="uq_plan_versions_surgery_version"),
        sa.Index("idx_plan_versions_surgery", "surgery_id"),
    )


__all__ = [
    "Base",
    "UserRole",
    "SurgeryStatus",
    "PlanStatus",
    "User",
    "PatientRecord",
    "SurgeryGuideline",
    "GuidelineItem",
    "Surgery",
    "SurgeryPlanVersion",
]
