from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class PointsEngineError(Exception):
    """Base class for failures raised by the point engine."""

    code = "POINTS_ENGINE_ERROR"
    status_code = 422

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PointsEngineError):
    """Malformed classification input; never partially applied."""

    code = "POINT_VALIDATION_FAILED"
    status_code = 422


class ConsistencyConflict(PointsEngineError):
    """Two points claim the same (employee, shift date, point type) slot."""

    code = "POINT_SLOT_CONFLICT"
    status_code = 409


class CascadeTransactionFailure(PointsEngineError):
    """Persistence failed while writing one employee's results; the work was rolled back."""

    code = "CASCADE_TRANSACTION_FAILED"
    status_code = 503


class PolicyAmbiguity(PointsEngineError):
    """An internal GBRO invariant does not hold for an employee's timeline."""

    code = "GBRO_POLICY_AMBIGUITY"
    status_code = 500


class EmployeeNotFound(PointsEngineError):
    code = "EMPLOYEE_NOT_FOUND"
    status_code = 404


class PointNotFound(PointsEngineError):
    code = "POINT_NOT_FOUND"
    status_code = 404


class PointNotEditable(PointsEngineError):
    code = "POINT_NOT_EDITABLE"
    status_code = 409


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
