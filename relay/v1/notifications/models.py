from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class Notification(BaseModel):
    """
    Transient notification envelope.

    Targets ``user_id`` if set, else every member of ``role_id``, else all
    connected sessions.
    """

    id: str | None = None
    text: str = Field(..., min_length=1, description="Message text")
    title: str | None = Field(default=None, description="Optional title")
    icon: str | None = Field(default=None, description="Optional icon CSS class")
    variables: dict[str, Any] = Field(
        default_factory=dict, description="Substitution variables"
    )
    user_id: int | None = Field(default=None, description="Single recipient")
    role_id: int | None = Field(default=None, description="Recipient role")

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("text must not be blank")
        return value

    @field_validator("title", "icon")
    @classmethod
    def empty_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def single_target(self) -> "Notification":
        if self.user_id is not None and self.role_id is not None:
            raise ValueError("user_id and role_id are mutually exclusive")
        return self

    @property
    def is_broadcast(self) -> bool:
        return self.user_id is None and self.role_id is None

    def payload(self) -> dict[str, Any]:
        """Body of the ``notification`` event sent to clients."""
        params: dict[str, Any] = {"text": self.text, "variables": self.variables}
        if self.title:
            params["title"] = self.title
        if self.icon:
            params["icon"] = self.icon
        return params
