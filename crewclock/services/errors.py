"""
Service-layer errors for the attendance pipeline.

Each error carries the HTTP status it maps to and a machine-readable code;
the app-level handler in main.py renders them as {"ok": false, "code", "error"}.
"""
from typing import Optional


class PipelineError(Exception):
    status_code = 500
    default_code = "UNEXPECTED_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict:
        body = {"ok": False, "code": self.code, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(PipelineError):
    status_code = 400
    default_code = "INVALID_PAYLOAD"

    def __init__(self, message: str, code: Optional[str] = None, field: Optional[str] = None, details: Optional[dict] = None):
        if field:
            details = {**(details or {}), "field": field}
        super().__init__(message, code, details)
        self.field = field


class Unauthorized(PipelineError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class Forbidden(PipelineError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFound(PipelineError):
    status_code = 404
    default_code = "NOT_FOUND"


class StorageFailure(PipelineError):
    """Storage read/write failed. Safe for the client to retry."""
    status_code = 503
    default_code = "STORAGE_FAILURE"


class ReportError(PipelineError):
    status_code = 400
    default_code = "REPORT_FAILED"
