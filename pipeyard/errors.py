"""Typed failures raised by the lifecycle engine.

Each error carries a stable ``code`` for API clients, the HTTP status the
web layer answers with, and a ``details`` dict holding the figures an
operator needs (required vs. available capacity, manifest vs. reported
quantity, current vs. expected status).
"""

from __future__ import annotations


class EngineError(Exception):
    code = 'ENGINE_ERROR'
    status_code = 400

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AccessDenied(EngineError):
    code = 'ACCESS_DENIED'
    status_code = 403


class NotFound(EngineError):
    code = 'NOT_FOUND'
    status_code = 404


class NotPending(EngineError):
    code = 'NOT_PENDING'
    status_code = 409


class WrongState(EngineError):
    code = 'WRONG_STATE'
    status_code = 409


class InvalidLocation(EngineError):
    code = 'INVALID_LOCATION'
    status_code = 400


class InsufficientCapacity(EngineError):
    code = 'INSUFFICIENT_CAPACITY'
    status_code = 409


class QuantityMismatch(EngineError):
    code = 'QUANTITY_MISMATCH'
    status_code = 422


class InvalidManifest(EngineError):
    code = 'INVALID_MANIFEST'
    status_code = 422


class BookingConflict(EngineError):
    code = 'BOOKING_CONFLICT'
    status_code = 409


class ValidationFailed(EngineError):
    code = 'VALIDATION_ERROR'
    status_code = 400
