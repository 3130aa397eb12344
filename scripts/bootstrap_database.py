#!/usr/bin/env python3
"""Create the periop database schema and seed demo accounts and a guideline."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import date
from typing import Dict, List, Tuple

from sqlalchemy import select

from periop.auth import hash_identifier
from periop.db import get_database_settings, init_schema, session_scope
from periop.db.models import GuidelineItem, SurgeryGuideline, User, UserRole


DEFAULT_DOCTOR = {
    "name": "Attending Surgeon",
    "ssn": "111-11-1111",
    "dob": "1975-04-12",
    "role": UserRole.DOCTOR.value,
}

DEFAULT_PATIENT = {
    "name": "Demo Patient",
    "ssn": "222-22-2222",
    "dob": "1988-09-30",
    "role": UserRole.PATIENT.value,
}

USER_ENV_VARS = {
    "doctor": ("PERIOP_DOCTOR_SSN", "PERIOP_DOCTOR_DOB"),
    "patient": ("PERIOP_PATIENT_SSN", "PERIOP_PATIENT_DOB"),
}

DEMO_GUIDELINE = {
    "name": "General anaesthesia (adult)",
    "description": "Standard preparation for elective surgery under general anaesthesia.",
    "items": [
        {
            "title": "Stop blood thinners",
            "description": "Pause anticoagulants unless your surgeon says otherwise.",
            "item_key": "stop-anticoagulants",
            "type": "medication",
            "window": {"from": "D-5", "until": "postop-stable"},
        },
        {
            "title": "No solid food",
            "description": "Clear fluids are allowed until two hours before surgery.",
            "item_key": "fasting-solids",
            "type": "fasting",
            "window": {"when": "DOS+8h"},
        },
        {
            "title": "Take morning medications with a sip of water",
            "item_key": "morning-meds",
            "type": "medication",
            "window": {"when": "DOS-morning"},
        },
    ],
}


def _resolve_user_spec(role: str) -> Dict[str, str]:
    base = dict(DEFAULT_DOCTOR if role == "doctor" else DEFAULT_PATIENT)
    ssn_var, dob_var = USER_ENV_VARS[role]
    base["ssn"] = os.getenv(ssn_var) or base["ssn"]
    base["dob"] = os.getenv(dob_var) or base["dob"]
    return base


def seed_default_users(session) -> List[Tuple[str, str, str]]:
    created: List[Tuple[str, str, str]] = []
    for role in ("doctor", "patient"):
        spec = _resolve_user_spec(role)
        ssn_hash = hash_identifier(spec["ssn"])
        existing = session.execute(select(User).where(User.ssn_hash == ssn_hash)).scalars().first()
        if existing is not None:
            if existing.role != spec["role"]:
                existing.role = spec["role"]
            continue
        session.add(
            User(
                name=spec["name"],
                role=spec["role"],
                ssn_hash=ssn_hash,
                dob=date.fromisoformat(spec["dob"]),
            )
        )
        created.append((spec["name"], spec["ssn"], spec["dob"]))
    return created


def seed_demo_guideline(session) -> bool:
    existing = session.execute(
        select(SurgeryGuideline).where(SurgeryGuideline.name == DEMO_GUIDELINE["name"])
    ).scalars().first()
    if existing is not None:
        return False
    guideline = SurgeryGuideline(
        name=DEMO_GUIDELINE["name"],
        description=DEMO_GUIDELINE["description"],
    )
    guideline.items = [GuidelineItem(**item) for item in DEMO_GUIDELINE["items"]]
    session.add(guideline)
    return True


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the periop schema and seed demo accounts.",
    )
    parser.add_argument(
        "--database",
        "-d",
        help="Path to the SQLite database file (default: PERIOP_DB_PATH or the user data dir)",
    )
    parser.add_argument(
        "--skip-demo-data",
        action="store_true",
        help="Only create the schema.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.database:
        os.environ["PERIOP_DB_PATH"] = os.path.abspath(os.path.expanduser(args.database))
        get_database_settings.cache_clear()

    settings = get_database_settings()
    init_schema()
    print(f"Schema ensured at {settings.url}")

    if args.skip_demo_data:
        print("Demo data skipped.")
        return 0

    with session_scope() as session:
        created_users = seed_default_users(session)
        created_guideline = seed_demo_guideline(session)

    if created_users:
        print("Created the following demo accounts (log in with SSN and date of birth):")
        for name, ssn, dob in created_users:
            print(f"  - {name}: ssn={ssn} dob={dob}")
    else:
        print("Demo accounts already existed; nothing changed.")
    if created_guideline:
        print(f"Seeded guideline '{DEMO_GUIDELINE['name']}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
