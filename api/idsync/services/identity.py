"""Identity shapes exchanged with the external provider and the merge rules
that fold them into a canonical user record."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

Role = Literal["standard", "admin", "content_admin", "editor", "writer"]

ROLES: tuple[str, ...] = ("standard", "admin", "content_admin", "editor", "writer")
DEFAULT_ROLE = "standard"
CONTENT_ROLES = frozenset({"admin", "content_admin", "editor", "writer"})

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_ID_LENGTH = 255
MAX_EMAIL_LENGTH = 255
MAX_NAME_LENGTH = 255
MAX_AVATAR_URL_LENGTH = 2048


class IdentityValidationError(ValueError):
    """Raised when an asserted identity cannot be accepted."""


@dataclass(slots=True)
class ProviderIdentity:
    """Identity as asserted by the provider, before validation."""

    external_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False
    username: str | None = None


class ExternalIdentity(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    external_id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    email: str = Field(min_length=3, max_length=MAX_EMAIL_LENGTH)
    display_name: str | None = Field(default=None, max_length=MAX_NAME_LENGTH)
    avatar_url: str | None = Field(default=None, max_length=MAX_AVATAR_URL_LENGTH)
    email_verified: bool = False
    username: str | None = Field(default=None, max_length=MAX_NAME_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_RE.match(value):
            raise ValueError("invalid email format")
        return value.lower()

    @field_validator("display_name", "username", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("avatar_url", mode="before")
    @classmethod
    def _check_avatar_url(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("avatar url must be a string")
        stripped = value.strip()
        if not stripped:
            return None
        parsed = urlparse(stripped)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("avatar url must be an absolute http(s) url")
        return stripped


@dataclass(slots=True)
class CanonicalUserRecord:
    id: int
    external_id: str | None
    email: str
    first_name: str | None
    last_name: str | None
    username: str | None
    avatar_url: str | None
    role: str
    is_active: bool
    failed_attempts: int
    locked_until: datetime | None
    preferences: dict[str, Any] | None
    content_identity_id: str | None
    created_at: datetime
    updated_at: datetime


def validate_identity(identity: ProviderIdentity) -> ExternalIdentity:
    try:
        return ExternalIdentity(
            external_id=identity.external_id or "",
            email=identity.email or "",
            display_name=identity.display_name,
            avatar_url=identity.avatar_url,
            email_verified=bool(identity.email_verified),
            username=identity.username,
        )
    except ValidationError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        raise IdentityValidationError(f"invalid identity fields: {', '.join(fields)}") from exc


def split_display_name(display_name: str | None) -> tuple[str | None, str | None]:
    if not display_name:
        return None, None
    parts = display_name.split()
    if not parts:
        return None, None
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def requires_content_identity(role: str | None) -> bool:
    return role in CONTENT_ROLES


def normalize_role(role: str | None) -> str | None:
    if role is None:
        return None
    if role not in ROLES:
        raise IdentityValidationError(f"unknown role: {role}")
    return role


def build_new_user(
    identity: ExternalIdentity,
    *,
    first_name: str | None,
    last_name: str | None,
    role: str | None,
) -> dict[str, Any]:
    if not identity.email:
        raise IdentityValidationError("email is required for user creation")
    return {
        "external_id": identity.external_id,
        "email": identity.email,
        "first_name": first_name,
        "last_name": last_name,
        "username": identity.username,
        "avatar_url": identity.avatar_url,
        "role": role or DEFAULT_ROLE,
        "is_active": True,
        "failed_attempts": 0,
        "locked_until": None,
        "preferences": None,
        "content_identity_id": None,
    }


def build_user_update(
    existing: CanonicalUserRecord,
    identity: ExternalIdentity,
    *,
    first_name: str | None,
    last_name: str | None,
    role: str | None,
) -> dict[str, Any]:
    """Return only the columns whose value changes.

    Known profile fields are never replaced by empty values, and the role only
    moves when the caller supplies one explicitly.
    """
    target: dict[str, Any] = {
        "external_id": identity.external_id,
        "email": identity.email,
        "first_name": first_name or existing.first_name,
        "last_name": last_name or existing.last_name,
        "avatar_url": identity.avatar_url or existing.avatar_url,
        "username": identity.username or existing.username,
        "role": role if role is not None else (existing.role or DEFAULT_ROLE),
        "is_active": existing.is_active if existing.is_active is not None else True,
    }
    return {column: value for column, value in target.items() if getattr(existing, column) != value}
