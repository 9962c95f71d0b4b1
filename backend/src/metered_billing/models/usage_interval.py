"""Usage interval model for time-metered billing."""
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Uuid
from sqlalchemy.orm import relationship

from metered_billing.exceptions import ConflictError, ValidationError
from metered_billing.models.base import Base, UpdatedAtMixin

_MINUTE_US = 60_000_000


def billable_minutes(start_time: datetime, end_time: datetime) -> int:
    """
    Whole billable minutes between two instants, rounded up.

    Partial minutes always count as a full minute: 1s -> 1, 90s -> 2,
    3600s -> 60. Integer microsecond arithmetic keeps the rounding exact.

    Raises:
        ValidationError: If end_time precedes start_time
    """
    elapsed_us = (end_time - start_time) // timedelta(microseconds=1)
    if elapsed_us < 0:
        raise ValidationError(
            "Interval end precedes its start",
            context={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )
    return -(-elapsed_us // _MINUTE_US)


class UsageInterval(UpdatedAtMixin, Base):
    """
    One billable activity session.

    Open while end_time is NULL. Closed exactly once, at which point
    duration_minutes is fixed. Marked paid by settlement only.
    """

    __tablename__ = "usage_intervals"

    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    activity_type = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)  # NULL while the activity is running
    duration_minutes = Column(Integer, nullable=True)  # Set once, on close
    paid = Column(Boolean, nullable=False, default=False, index=True)
    payment_ref = Column(Uuid, ForeignKey("transaction_ledger.id"), nullable=True, index=True)

    # Settlement attempt currently holding this interval
    settlement_claim = Column(Uuid, nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="usage_intervals")
    ledger_entry = relationship("TransactionLedgerEntry", foreign_keys=[payment_ref])

    __table_args__ = (
        # At most one open interval per (user, activity type)
        Index(
            "uq_usage_intervals_open",
            "user_id",
            "activity_type",
            unique=True,
            postgresql_where=end_time.is_(None),
            sqlite_where=end_time.is_(None),
        ),
        Index("ix_usage_intervals_unpaid", "user_id", "paid", "end_time"),
    )

    @property
    def is_open(self) -> bool:
        """Whether the activity is still running."""
        return self.end_time is None

    def close(self, ended_at: datetime) -> None:
        """
        Close the interval and fix its billable duration.

        Raises:
            ConflictError: If the interval was already closed
            ValidationError: If ended_at precedes the start time
        """
        if self.end_time is not None:
            raise ConflictError("Usage interval has already ended", existing=self)
        self.duration_minutes = billable_minutes(self.start_time, ended_at)
        self.end_time = ended_at

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<UsageInterval(id={self.id}, user_id={self.user_id}, activity_type={self.activity_type}, "
            f"duration_minutes={self.duration_minutes}, paid={self.paid})>"
        )
