"""
Response envelopes used by every router.

Successful calls answer ``{"data": ...}`` (lists add ``total``); failures
answer ``application/problem+json`` bodies shaped by :class:`ProblemDetail`.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorDetail(BaseModel):
    """One rejected field of a trigger config, workflow or alert rule."""

    code: str = Field(description="INVALID, MISSING, ...")
    message: str = Field(description="What is wrong with the field")
    field: str | None = Field(default=None, description="Dotted path, e.g. config.cron_expression")


class ProblemDetail(BaseModel):
    """Failure body (RFC 7807).

    ``status`` follows the ConduitError code: NOT_FOUND 404,
    VALIDATION_FAILED 400, UNAUTHORIZED 401, FORBIDDEN 403, CONFLICT and
    NOT_CANCELLABLE 409, QUOTA_EXCEEDED 429, UNAVAILABLE 503, anything
    else 500.
    """

    type: str = "about:blank"
    title: str
    status: int
    detail: str = ""
    instance: str = Field(default="", description="Request path that failed")
    errors: list[ErrorDetail] = Field(default_factory=list)


class SuccessResponse(BaseModel, Generic[T]):
    data: T
    warnings: list[str] = Field(default_factory=list)


class ListResponse(BaseModel, Generic[T]):
    data: list[T]
    total: int = Field(description="Items in this page")
