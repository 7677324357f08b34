"""
Job model for background processing.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from relay.infra.database import Base, UTCDateTime


class JobStatus(str, Enum):
    """Job status enumeration."""

    CREATED = "created"
    STARTED = "started"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATUSES = (JobStatus.SUCCESS.value, JobStatus.FAILURE.value)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    A persisted unit of deferred work.

    ``name`` selects the handler. A job is due once ``scheduled_for`` has
    passed and stays runnable until ``valid_until``; after that it expires
    instead of starting.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler name"
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.CREATED.value,
        comment="Job status: created|started|success|failure",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    scheduled_for: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, comment="Earliest start time"
    )
    valid_until: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Latest start time"
    )
    input_data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Handler parameters"
    )
    output_data: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Handler result or error"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'started', 'success', 'failure')",
            name="jobs_status_check",
        ),
        CheckConstraint("scheduled_for <= valid_until", name="jobs_window_check"),
        Index("ix_jobs_status_scheduled_for", "status", "scheduled_for"),
    )

    @classmethod
    def create(
        cls,
        name: str,
        input_data: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
        valid_until: datetime | None = None,
        window: timedelta = timedelta(minutes=5),
    ) -> "Job":
        """Build a new job in the ``created`` state."""
        now = _utcnow()
        scheduled_for = scheduled_for or now
        valid_until = valid_until or scheduled_for + window
        if scheduled_for > valid_until:
            raise ValueError("scheduled_for must not be later than valid_until")

        return cls(
            name=name,
            status=JobStatus.CREATED.value,
            created_at=now,
            scheduled_for=scheduled_for,
            valid_until=valid_until,
            input_data=input_data or {},
            output_data={},
        )

    def is_terminal(self) -> bool:
        """Check if job reached success or failure."""
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Check if a created job may start at ``now``."""
        return (
            self.status == JobStatus.CREATED.value
            and self.scheduled_for <= now <= self.valid_until
        )

    def is_expired(self, now: datetime) -> bool:
        """Check if a created job missed its window."""
        return self.status == JobStatus.CREATED.value and self.valid_until < now

    def mark_failed(self, error_type: str, message: str, **details: Any) -> None:
        """Set failure status with structured error details."""
        self.status = JobStatus.FAILURE.value
        self.output_data = {
            "error": {"type": error_type, "message": message, **details}
        }

    def mark_succeeded(self, output: dict[str, Any] | None = None) -> None:
        """Set success status with the handler output."""
        self.status = JobStatus.SUCCESS.value
        self.output_data = output or {}

    def __repr__(self) -> str:
        return f"<Job #{self.id} {self.name} {self.status}>"
