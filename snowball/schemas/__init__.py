"""Pydantic schemas for request/response validation."""

from snowball.schemas.common import ErrorResponse, HealthResponse, PaginatedResponse

__all__ = [
    "HealthResponse",
    "ErrorResponse",
    "PaginatedResponse",
]
