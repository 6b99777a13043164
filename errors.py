"""
Domain errors raised by the triage workflow.

Each carries the HTTP status it maps to; main.py renders them as
``{"detail": ...}`` just like HTTPException.
"""


class CivicError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationFailed(CivicError):
    status_code = 400


class Forbidden(CivicError):
    status_code = 403


class NotFound(CivicError):
    status_code = 404


class Conflict(CivicError):
    status_code = 409
