"""Pydantic DTOs for stored ServiceNow credentials."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _check_instance_url(value: str) -> str:
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError("instance_url must start with http:// or https://")
    return value


class CredentialInput(BaseModel):
    """A new named connection to one ServiceNow instance."""

    name: str = Field(min_length=1)
    instance_url: str
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("instance_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return _check_instance_url(value)


class CredentialUpdate(BaseModel):
    """Partial update. Unset or None fields keep their stored value.

    An empty password is rejected rather than stored.
    """

    name: str | None = Field(None, min_length=1)
    instance_url: str | None = None
    username: str | None = Field(None, min_length=1)
    password: str | None = Field(None, min_length=1)

    @field_validator("instance_url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        return None if value is None else _check_instance_url(value)

    def changes(self) -> dict[str, str]:
        """Column values to write: explicitly provided and not None."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class CredentialDetail(BaseModel):
    """A stored credential row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    name: str
    instance_url: str
    username: str
    password: str
    created_at: datetime

    def public(self) -> dict:
        """JSON-safe view without the password."""
        return self.model_dump(mode="json", exclude={"password"})
