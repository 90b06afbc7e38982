"""
Error taxonomy for the EduSync API.

Each error is an HTTPException so handlers can simply raise it and FastAPI
renders `{"detail": message}` with the matching status code.
"""

from typing import Optional

from fastapi import HTTPException


class ApiError(HTTPException):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class InvalidInput(ApiError):
    status_code = 400
    default_detail = "Invalid input"


class Unauthenticated(ApiError):
    status_code = 401
    default_detail = "Unauthorized access"


class Forbidden(ApiError):
    status_code = 403
    default_detail = "Access denied"


class NotFound(ApiError):
    status_code = 404
    default_detail = "Not found"


class Conflict(ApiError):
    status_code = 409
    default_detail = "Already exists"


class InternalError(ApiError):
    pass
