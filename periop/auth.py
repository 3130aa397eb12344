"""Authentication helpers: identifier hashing, login lookup and role checks."""

from __future__ import annotations

import hashlib
import os
from datetime import date
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from periop.db.models import User
from periop.sessions import InMemorySessionStore, SessionData, SessionStore


logger = structlog.get_logger(__name__)

SESSION_COOKIE = "sid"
DEFAULT_SESSION_TTL_SECONDS = 12 * 60 * 60


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def hash_identifier(value: str) -> str:
    """Return the salted SHA256 digest used to store government identifiers."""

    salt = os.getenv("PERIOP_IDENTIFIER_SALT", "periop")
    normalised = "".join(ch for ch in value if ch.isalnum())
    return hashlib.sha256(f"{salt}:{normalised}".encode("utf-8")).hexdigest()


def authenticate_user(session: Session, ssn: str, dob: date) -> Optional[User]:
    """Return the account matching ``ssn`` and ``dob`` or ``None``."""

    if not ssn:
        return None
    return session.execute(
        select(User).where(User.ssn_hash == hash_identifier(ssn), User.dob == dob)
    ).scalars().first()


_session_store: SessionStore = InMemorySessionStore(
    ttl_seconds=_env_float("PERIOP_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)
)


def get_session_store() -> SessionStore:
    """FastAPI dependency returning the active session store."""

    return _session_store


def set_session_store(store: SessionStore) -> None:
    """Replace the process-wide session store (used in tests)."""

    global _session_store
    _session_store = store


def set_session_cookie(response: Response, sid: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        sid,
        httponly=True,
        samesite="lax",
        secure=_env_flag("PERIOP_COOKIE_SECURE", True),
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        "",
        httponly=True,
        samesite="lax",
        secure=_env_flag("PERIOP_COOKIE_SECURE", True),
        path="/",
        max_age=0,
    )


def read_session(
    request: Request, store: SessionStore = Depends(get_session_store)
) -> Optional[SessionData]:
    """Return the session referenced by the request cookie, if any."""

    return store.get(request.cookies.get(SESSION_COOKIE))


def require_auth(data: Optional[SessionData] = Depends(read_session)) -> SessionData:
    if data is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="UNAUTHORIZED")
    return data


def require_role(*roles: str):
    """Dependency factory ensuring the session belongs to one of ``roles``."""

    allowed = set(roles)

    def checker(request: Request, data: SessionData = Depends(require_auth)) -> SessionData:
        if data.role not in allowed:
            logger.info(
                "role_denied",
                user_id=data.user_id,
                role=data.role,
                path=request.url.path,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="FORBIDDEN")
        return data

    return checker


__all__ = [
    "SESSION_COOKIE",
    "hash_identifier",
    "authenticate_user",
    "get_session_store",
    "set_session_store",
    "set_session_cookie",
    "clear_session_cookie",
    "read_session",
    "require_auth",
    "require_role",
]
