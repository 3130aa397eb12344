"""Exceptions raised by service modules and mapped to HTTP responses in main."""

from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors that carry an HTTP status."""

    status_code = 400

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequestError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


__all__ = ["ServiceError", "InvalidRequestError", "NotFoundError", "ConflictError"]
