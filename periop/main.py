"""FastAPI application serving perioperative instruction plans.

Doctors curate guideline templates, schedule surgeries and publish versioned
instruction plans; patients sign in to see time-windowed notifications and to
check a photographed pill against their prescribed medications.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date, tzinfo
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from periop import __version__
from periop import guidelines as guideline_service
from periop import notifications as notification_service
from periop import patients as patient_service
from periop import pill_check
from periop import plans as plan_service
from periop.auth import (
    authenticate_user,
    clear_session_cookie,
    get_session_store,
    read_session,
    require_auth,
    require_role,
    set_session_cookie,
    SESSION_COOKIE,
)
from periop.db import get_db, init_schema
from periop.db.models import User
from periop.errors import ServiceError
from periop.sessions import SessionData, SessionStore
from periop.time_utils import utc_now
from periop.ws_guidelines import GuidelineWebSocketManager


load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def _calendar_zone() -> tzinfo:
    """Zone used to place ``DOS-morning`` on the wall clock."""

    name = os.getenv("PERIOP_TIMEZONE", "UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("invalid_timezone", timezone=name)
        return ZoneInfo("UTC")


guideline_ws_manager = GuidelineWebSocketManager()
START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("lifespan_startup", version=__version__)
    init_schema()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=time.time() - START_TIME)


app = FastAPI(title="Periop Instructions API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        unbind_contextvars("trace_id", "path", "method")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    content: Dict[str, Any] = {"error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid body", "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "SERVER_ERROR"},
    )


def _parse_id(raw: str, message: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message) from None


def _public_user(user: User, *, include_dob: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": user.id, "name": user.name, "role": user.role}
    if include_dob:
        data["dob"] = user.dob.isoformat() if user.dob else None
    return data


class LoginModel(BaseModel):
    ssn: str
    dob: date


class PatientCreateModel(BaseModel):
    mrn: str
    name: str
    dob: date


class GuidelineCreateModel(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class GuidelineItemModel(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    itemKey: Optional[str] = None
    type: Optional[str] = None
    window: Any = None
    appliesIf: Any = None


class SurgeryCreateModel(BaseModel):
    patientId: Any = None
    guidelineId: Any = None
    scheduledAt: Any = None
    location: Optional[str] = None
    instructions: Any = None


class PlanCreateModel(BaseModel):
    instructions: Any = None


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "uptime": time.time() - START_TIME, "version": __version__}


@app.get("/metrics", response_model=None)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.post("/api/auth/login")
async def login(
    model: LoginModel,
    response: Response,
    db: Session = Depends(get_db),
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    user = authenticate_user(db, model.ssn, model.dob)
    if user is None:
        logger.info("login_failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="INVALID_CREDENTIALS")
    sid = store.create(SessionData(user_id=user.id, role=user.role))
    set_session_cookie(response, sid)
    logger.info("login_succeeded", user_id=user.id, role=user.role)
    return {"user": _public_user(user)}


@app.post("/api/auth/logout")
async def logout(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    store.delete(request.cookies.get(SESSION_COOKIE))
    clear_session_cookie(response)
    return {"ok": True}


@app.get("/api/auth/me")
async def me(
    session: SessionData = Depends(require_auth),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = db.get(User, session.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="UNAUTHORIZED")
    return {"user": _public_user(user)}


@app.get("/api/auth/whoami")
async def whoami(
    session: Optional[SessionData] = Depends(read_session),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    user = db.get(User, session.user_id) if session is not None else None
    return {"user": _public_user(user, include_dob=True) if user is not None else None}


# ---------------------------------------------------------------------------
# Doctor overview and patient registry
# ---------------------------------------------------------------------------


@app.get("/api/doctor")
async def doctor_overview(
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"data": patient_service.doctor_overview(db)}


@app.get("/api/patients")
async def list_patient_records(
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    records = patient_service.list_records(db)
    return {"patients": [patient_service.serialise_record(r) for r in records]}


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
async def create_patient_record(
    model: PatientCreateModel,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    record = patient_service.create_record(db, model.mrn, model.name, model.dob)
    db.commit()
    return {"patient": patient_service.serialise_record(record)}


# Declared before the ``{mrn}`` route so the literal path wins.
@app.get("/api/patients/surgeries")
async def my_surgeries(
    session: SessionData = Depends(require_role("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"surgeries": patient_service.patient_surgery_plans(db, session.user_id)}


@app.get("/api/patients/{mrn}")
async def lookup_patient_record(
    mrn: str,
    dob: Optional[str] = None,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    parsed_dob: Optional[date] = None
    if dob:
        try:
            parsed_dob = date.fromisoformat(dob)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid dob") from None
    try:
        record = patient_service.lookup_record(db, mrn, parsed_dob)
    except patient_service.DobMismatchError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="DOB mismatch") from None
    return {"patient": patient_service.serialise_record(record)}


# ---------------------------------------------------------------------------
# Guidelines
# ---------------------------------------------------------------------------


@app.get("/api/guidelines")
async def list_guidelines(
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {
        "guidelines": [
            guideline_service.serialise_guideline(g) for g in guideline_service.list_guidelines(db)
        ]
    }


@app.post("/api/guidelines", status_code=status.HTTP_201_CREATED)
async def create_guideline(
    model: GuidelineCreateModel,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    guideline = guideline_service.create_guideline(db, model.name, model.description)
    db.commit()
    payload = guideline_service.serialise_guideline(guideline)
    await guideline_ws_manager.broadcast(
        {"action": "created", "guidelineId": guideline.id, "updatedAt": payload["createdAt"]}
    )
    return {"guideline": payload}


@app.get("/api/guidelines/search")
async def search_guidelines(
    q: Optional[str] = None,
    limit: Optional[int] = None,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Any:
    return guideline_service.search_guidelines(db, q, limit)


@app.post("/api/guidelines/{guideline_id}/items", status_code=status.HTTP_201_CREATED)
async def add_guideline_item(
    guideline_id: str,
    model: GuidelineItemModel,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    numeric_id = _parse_id(guideline_id, "Invalid guideline ID format.")
    item = guideline_service.add_item(
        db,
        numeric_id,
        title=model.title,
        description=model.description,
        item_key=model.itemKey,
        type=model.type,
        window=model.window,
        applies_if=model.appliesIf,
    )
    db.commit()
    await guideline_ws_manager.broadcast(
        {
            "action": "items-added",
            "guidelineId": numeric_id,
            "itemId": item.id,
            "updatedAt": utc_now().isoformat(),
        }
    )
    return {"item": guideline_service.guideline_item_payload(item)}


# ---------------------------------------------------------------------------
# Surgeries and plan versions
# ---------------------------------------------------------------------------


@app.post("/api/surgery", status_code=status.HTTP_201_CREATED)
async def create_surgery(
    model: SurgeryCreateModel,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    surgery = plan_service.create_surgery(
        db,
        doctor_id=session.user_id,
        patient_id=model.patientId,
        guideline_id=model.guidelineId,
        scheduled_at=model.scheduledAt,
        location=model.location,
        instructions=model.instructions,
    )
    db.commit()
    return {
        "surgery": plan_service.serialise_surgery(surgery),
        "version": plan_service.serialise_version(surgery.versions[0]),
    }


@app.get("/api/surgery/{surgery_id}/plan")
async def list_plan_versions(
    surgery_id: str,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    numeric_id = _parse_id(surgery_id, "Invalid surgery ID format.")
    plan_service.get_surgery(db, numeric_id)
    versions = plan_service.list_versions(db, numeric_id)
    return {"versions": [plan_service.serialise_version(v) for v in versions]}


@app.post("/api/surgery/{surgery_id}/plan", status_code=status.HTTP_201_CREATED)
async def create_plan_version(
    surgery_id: str,
    model: PlanCreateModel,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    numeric_id = _parse_id(surgery_id, "Invalid surgery ID format.")
    version = plan_service.create_version(
        db, numeric_id, author_id=session.user_id, instructions=model.instructions
    )
    db.commit()
    return {"version": plan_service.serialise_version(version)}


@app.post("/api/surgery/{surgery_id}/plan/{version_id}/publish")
async def publish_plan_version(
    surgery_id: str,
    version_id: str,
    session: SessionData = Depends(require_role("doctor")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    numeric_surgery = _parse_id(surgery_id, "Invalid surgery ID format.")
    numeric_version = _parse_id(version_id, "Invalid version ID format.")
    version = plan_service.publish_version(db, numeric_surgery, numeric_version)
    db.commit()
    await guideline_ws_manager.broadcast(
        {
            "action": "plan-published",
            "surgeryId": numeric_surgery,
            "versionId": version.id,
            "updatedAt": utc_now().isoformat(),
        }
    )
    return {"version": plan_service.serialise_version(version)}


# ---------------------------------------------------------------------------
# Patient notifications and pill check
# ---------------------------------------------------------------------------


@app.get("/api/notifications")
async def list_notifications(
    session: SessionData = Depends(require_role("patient")),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    notifications = notification_service.list_patient_notifications(
        db, session.user_id, utc_now(), _calendar_zone()
    )
    return {"notifications": notifications}


async def _pill_check(request: Request, session: SessionData, db: Session) -> Any:
    content_type = request.headers.get("content-type", "")
    if not content_type.lower().startswith("multipart/form-data"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Expected multipart/form-data",
        )
    form = await request.form()
    image = form.get("image")
    if not isinstance(image, UploadFile):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing image file")
    data = await image.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing image file")

    def _field(name: str) -> str:
        value = form.get(name)
        return value.strip() if isinstance(value, str) else ""

    meds = patient_service.medication_list(db, session.user_id)
    try:
        return await asyncio.to_thread(
            pill_check.check_pill,
            data,
            declared_mime=image.content_type,
            medications=meds["medications"],
            version_ids=meds["versionIds"],
            imprint=_field("imprint"),
            color=_field("color"),
            shape=_field("shape"),
        )
    except pill_check.VisionResponseError as exc:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": str(exc), "raw": exc.raw},
        )
    except RuntimeError as exc:
        logger.warning("pill_check_upstream_failed", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "Vision model unavailable"},
        )


@app.post("/api/pill-check", response_model=None)
async def pill_check_endpoint(
    request: Request,
    session: SessionData = Depends(require_role("patient")),
    db: Session = Depends(get_db),
) -> Any:
    return await _pill_check(request, session, db)


@app.post("/api/openAI", response_model=None, include_in_schema=False)
async def pill_check_alias(
    request: Request,
    session: SessionData = Depends(require_role("patient")),
    db: Session = Depends(get_db),
) -> Any:
    return await _pill_check(request, session, db)


@app.websocket("/api/socket")
async def guidelines_socket(websocket: WebSocket) -> None:
    await guideline_ws_manager.handle(websocket)


__all__ = ["app", "guideline_ws_manager"]
