"""Common API response schemas."""

from typing import Generic, Literal, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Consistent JSON envelope for API responses."""

    data: T


class Notice(BaseModel):
    """User-facing notification attached to a result instead of failing the request."""

    level: Literal["info", "warning", "error"]
    title: str
    description: str
