"""
Schemas for notifications submitted by clients.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from relay.v1.notifications.models import Notification


class NotificationRequest(BaseModel):
    """Payload of a client ``notification`` event."""

    text: str = Field(..., min_length=1)
    title: str | None = None
    icon: str | None = None
    variables: dict[str, Any] = Field(..., description="Substitution variables")
    user_id: int | None = None
    role_id: int | None = None
    scheduled_for: int | None = Field(
        default=None, description="Delivery time as a unix timestamp"
    )

    @field_validator("user_id", "role_id", "scheduled_for", mode="before")
    @classmethod
    def blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_notification(self) -> Notification:
        return Notification(
            text=self.text,
            title=self.title,
            icon=self.icon,
            variables=self.variables,
            user_id=self.user_id,
            role_id=self.role_id,
        )

    def delivery_time(self) -> datetime | None:
        if self.scheduled_for is None:
            return None
        return datetime.fromtimestamp(self.scheduled_for, UTC)
