"""Server-side login sessions keyed by an opaque cookie token."""

from __future__ import annotations

import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Literal, Optional

import structlog


logger = structlog.get_logger(__name__)

Role = Literal["doctor", "patient"]
ROLES = ("doctor", "patient")


@dataclass(frozen=True)
class SessionData:
    """Identity bound to a session token."""

    user_id: int
    role: Role
    created_at: float = field(default_factory=time.time)


class SessionStore(ABC):
    """Interface for session storage backends."""

    @abstractmethod
    def create(self, data: SessionData) -> str:
        """Store ``data`` and return a new opaque token."""

    @abstractmethod
    def get(self, sid: Optional[str]) -> Optional[SessionData]:
        """Return the live session for ``sid`` or ``None``."""

    @abstractmethod
    def delete(self, sid: Optional[str]) -> None:
        """Forget ``sid``; unknown tokens are ignored."""


class InMemorySessionStore(SessionStore):
    """Process-local store; sessions vanish on restart.

    ``ttl_seconds`` of ``0`` or ``None`` keeps sessions until they are deleted.
    With a TTL, expired sessions are swept on ``create`` at most once per TTL
    period, so abandoned tokens do not accumulate.
    """

    def __init__(
        self,
        *,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: Dict[str, SessionData] = {}
        self._ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        self._clock = clock
        self._lock = Lock()
        self._last_sweep = clock()

    def create(self, data: SessionData) -> str:
        if data.role not in ROLES:
            raise ValueError(f"unknown role {data.role!r}")
        sid = secrets.token_hex(16)
        stamped = SessionData(user_id=data.user_id, role=data.role, created_at=self._clock())
        with self._lock:
            self._sweep_expired_locked(stamped.created_at)
            self._sessions[sid] = stamped
        logger.info("session_created", user_id=data.user_id, role=data.role)
        return sid

    def get(self, sid: Optional[str]) -> Optional[SessionData]:
        if not sid:
            return None
        with self._lock:
            data = self._sessions.get(sid)
            if data is None:
                return None
            if self._is_expired(data, self._clock()):
                self._sessions.pop(sid, None)
                logger.info("session_expired", user_id=data.user_id)
                return None
            return data

    def _is_expired(self, data: SessionData, now: float) -> bool:
        return self._ttl is not None and now - data.created_at > self._ttl

    def _sweep_expired_locked(self, now: float) -> None:
        if self._ttl is None or now - self._last_sweep < self._ttl:
            return
        self._last_sweep = now
        expired = [sid for sid, data in self._sessions.items() if self._is_expired(data, now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("sessions_swept", expired=len(expired))

    def delete(self, sid: Optional[str]) -> None:
        if not sid:
            return
        with self._lock:
            data = self._sessions.pop(sid, None)
        if data is not None:
            logger.info("session_deleted", user_id=data.user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = ["Role", "ROLES", "SessionData", "SessionStore", "InMemorySessionStore"]
