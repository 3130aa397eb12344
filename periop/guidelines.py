"""Reusable surgery guideline templates and their instruction items."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from periop.db.models import GuidelineItem, Surgery, SurgeryGuideline
from periop.errors import InvalidRequestError, NotFoundError
from periop.plans import guideline_item_payload
from periop.time_utils import isoformat_utc
from periop.windows import resolve_window


logger = structlog.get_logger(__name__)

DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 50


def serialise_guideline(guideline: SurgeryGuideline) -> Dict[str, Any]:
    return {
        "id": guideline.id,
        "name": guideline.name,
        "description": guideline.description,
        "createdAt": isoformat_utc(guideline.created_at),
    }


def list_guidelines(session: Session) -> List[SurgeryGuideline]:
    return list(
        session.execute(
            select(SurgeryGuideline).order_by(
                SurgeryGuideline.created_at.desc(), SurgeryGuideline.id.desc()
            )
        ).scalars()
    )


def create_guideline(session: Session, name: Optional[str], description: Optional[str] = None) -> SurgeryGuideline:
    clean_name = (name or "").strip()
    if not clean_name:
        raise InvalidRequestError("Missing name")
    clean_description = (description or "").strip() or None
    guideline = SurgeryGuideline(name=clean_name, description=clean_description)
    session.add(guideline)
    session.flush()
    logger.info("guideline_created", guideline_id=guideline.id)
    return guideline


def add_item(
    session: Session,
    guideline_id: int,
    *,
    title: Optional[str],
    description: Optional[str] = None,
    item_key: Optional[str] = None,
    type: Optional[str] = None,
    window: Any = None,
    applies_if: Any = None,
) -> GuidelineItem:
    """Attach an instruction item to a guideline.

    Windows are stored as supplied; an uninterpretable window is accepted but
    logged, and it will simply never fire.
    """

    guideline = session.get(SurgeryGuideline, guideline_id)
    if guideline is None:
        raise NotFoundError("Guideline not found")
    clean_title = (title or "").strip()
    if not clean_title:
        raise InvalidRequestError("Missing title")
    if window is not None and resolve_window(window, guideline_id=guideline_id) is None:
        logger.warning("guideline_item_window_ignored", guideline_id=guideline_id, title=clean_title)
    item = GuidelineItem(
        guideline_id=guideline.id,
        title=clean_title,
        description=description,
        item_key=item_key,
        type=type,
        window=window,
        applies_if=applies_if,
    )
    session.add(item)
    session.flush()
    logger.info("guideline_item_added", guideline_id=guideline.id, item_id=item.id)
    return item


def search_guidelines(session: Session, q: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Search guidelines by name, description or item title."""

    take = DEFAULT_SEARCH_LIMIT if not limit or limit <= 0 else min(limit, MAX_SEARCH_LIMIT)
    query = (q or "").strip()

    items_count = (
        select(func.count(GuidelineItem.id))
        .where(GuidelineItem.guideline_id == SurgeryGuideline.id)
        .correlate(SurgeryGuideline)
        .scalar_subquery()
    )
    surgeries_count = (
        select(func.count(Surgery.id))
        .where(Surgery.guideline_id == SurgeryGuideline.id)
        .correlate(SurgeryGuideline)
        .scalar_subquery()
    )
    stmt = select(SurgeryGuideline, items_count, surgeries_count)
    if query:
        pattern = f"%{query.lower()}%"
        matching_items = select(GuidelineItem.guideline_id).where(
            func.lower(GuidelineItem.title).like(pattern)
        )
        stmt = stmt.where(
            or_(
                func.lower(SurgeryGuideline.name).like(pattern),
                func.lower(SurgeryGuideline.description).like(pattern),
                SurgeryGuideline.id.in_(matching_items),
            )
        )
    stmt = stmt.order_by(SurgeryGuideline.created_at.desc(), SurgeryGuideline.id.desc()).limit(take)

    results = []
    for guideline, n_items, n_surgeries in session.execute(stmt):
        payload = serialise_guideline(guideline)
        payload["itemsCount"] = int(n_items or 0)
        payload["surgeriesCount"] = int(n_surgeries or 0)
        results.append(payload)
    return results


__all__ = [
    "DEFAULT_SEARCH_LIMIT",
    "MAX_SEARCH_LIMIT",
    "serialise_guideline",
    "guideline_item_payload",
    "list_guidelines",
    "create_guideline",
    "add_item",
    "search_guidelines",
]
