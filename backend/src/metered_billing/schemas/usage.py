"""Pydantic schemas for unpaid usage totals."""
from uuid import UUID

from pydantic import BaseModel, Field


class UnpaidUsageSummary(BaseModel):
    """Schema for a user's unpaid usage."""

    user_id: UUID
    total_minutes: int = Field(..., ge=0, description="Sum of closed, unpaid interval durations")
    interval_count: int = Field(..., ge=0)
    amount: int = Field(..., ge=0, description="Amount the minutes would settle for, in cents")
    currency: str
