# payroll_core/common/errors.py
from __future__ import annotations

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError


class PayrollError(Exception):
    """Base error for the payroll core. Carries what the API layer needs to answer."""
    code = "PAYROLL_ERROR"
    status_code = 400

    def __init__(self, message, code=None, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        err = {"message": self.message, "code": self.code}
        if self.payload:
            err["detail"] = self.payload
        return {"success": False, "error": err}


class ValidationError(PayrollError):
    """Malformed or out-of-range input, or a transition the current state forbids."""
    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(PayrollError):
    """Duplicate period, overlapping approved window, double approval, stale version."""
    code = "CONFLICT"
    status_code = 409


class AlreadyApprovedError(ConflictError, ValidationError):
    """Approving something twice: a conflicting request and an illegal transition at once."""
    code = "ALREADY_APPROVED"


class NotFoundError(PayrollError):
    code = "NOT_FOUND"
    status_code = 404


class PersistenceError(PayrollError):
    code = "PERSISTENCE_ERROR"
    status_code = 500


def translate_db_error(e: Exception, what: str = "record") -> PayrollError:
    """Map a SQLAlchemy failure onto the payroll taxonomy."""
    if isinstance(e, PayrollError):
        return e
    if isinstance(e, IntegrityError):
        detail = str(e.orig) if getattr(e, "orig", None) else str(e)
        return ConflictError(f"Duplicate or constraint violation on {what}", payload=detail)
    if isinstance(e, StaleDataError):
        return ConflictError(f"{what} was modified concurrently; reload and retry")
    if isinstance(e, SQLAlchemyError):
        return PersistenceError(f"Storage failure while writing {what}", payload=str(e))
    return PersistenceError(f"Unexpected failure while writing {what}", payload=str(e))
