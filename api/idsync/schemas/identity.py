from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["standard", "admin", "content_admin", "editor", "writer"]
SyncStatus = Literal["synced", "invalid", "not_found", "failed"]


class AuthIdentityEvent(BaseModel):
    """Sign-up and sign-in callback body as delivered by the provider."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: str = Field(alias="externalId")
    email: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")
    avatar_url: str | None = Field(default=None, alias="avatarUrl")
    email_verified: bool = Field(default=False, alias="emailVerified")
    username: str | None = None
    provider: str | None = Field(default=None, max_length=50)
    request_path: str | None = Field(default=None, alias="requestPath")
    client_ip: str | None = Field(default=None, alias="clientIp")


class AuthIdentityRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_id: str = Field(alias="externalId", min_length=1)


class CanonicalUserOut(BaseModel):
    id: int
    external_id: str | None
    email: str
    first_name: str | None
    last_name: str | None
    username: str | None
    avatar_url: str | None
    role: Role
    is_active: bool
    failed_attempts: int
    locked_until: datetime | None
    preferences: dict[str, Any] | None
    content_identity_id: str | None
    created_at: datetime
    updated_at: datetime


class RoleSyncOut(BaseModel):
    status: Literal["provisioned", "updated", "not_required", "failed"]
    content_identity_id: str | None = None
    container_id: str | None = None
    reason: str | None = None


class SyncOutcomeOut(BaseModel):
    status: SyncStatus
    user_id: int | None = None
    created: bool = False
    reason: str | None = None
    role_sync: RoleSyncOut | None = None


class LockoutStateOut(BaseModel):
    known: bool
    failed_attempts: int = 0
    locked_until: datetime | None = None


class PreSignInOut(BaseModel):
    allowed: bool
    reason: Literal["inactive", "locked"] | None = None
    locked_until: datetime | None = None


class AdminUserPatchRequest(BaseModel):
    role: Role | None = None
    is_active: bool | None = None
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)


class AdminUserPatchOut(BaseModel):
    user: CanonicalUserOut
    role_changed: bool
    role_sync: RoleSyncOut | None = None


class UserSyncRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
