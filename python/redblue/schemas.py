"""Pydantic schemas for HTTP request bodies.

Amounts and colors are taken as sent and validated by the counter service,
so a bad value fails only its own increment with the service error shape.
"""

from typing import Any

from pydantic import BaseModel, Field


class IncrementRequest(BaseModel):
    """Body of ``POST /api/red`` and ``POST /api/blue`` (all fields optional)."""

    incrementBy: Any = Field(default=1, description="Amount to add (positive integer)")
    sessionId: str | None = Field(default=None, description="Client session identifier")


class BatchItem(BaseModel):
    color: Any = None
    incrementBy: Any = 1
    sessionId: str | None = None


class BatchIncrementRequest(BaseModel):
    increments: list[BatchItem] = Field(default_factory=list)
