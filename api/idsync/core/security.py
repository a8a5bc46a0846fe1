import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, Request, status

from idsync.core.auth import Principal, PrincipalType, parse_scope_header
from idsync.core.config import Settings, get_settings
from idsync.services.ledger import get_error_ledger
from idsync.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    get_repository,
)

logger = logging.getLogger(__name__)

ROLE_SCOPES: dict[str, set[str]] = {
    "standard": {"profile:read"},
    "writer": {"profile:read", "content:write"},
    "editor": {"profile:read", "content:write"},
    "content_admin": {"profile:read", "content:write"},
    "admin": {"profile:read", "content:write", "admin:write"},
}


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    key_hash: str
    scopes: set[str]


def load_machine_credentials(raw: str | None) -> dict[str, MachineCredentialRecord]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("IDSYNC_MACHINE_CREDENTIALS_JSON is not valid JSON; machine auth disabled")
        return {}
    if not isinstance(decoded, dict):
        return {}

    credentials: dict[str, MachineCredentialRecord] = {}
    for module_id, entry in decoded.items():
        if not isinstance(entry, dict):
            continue
        key_hash = entry.get("key_hash")
        if not isinstance(key_hash, str) or not key_hash:
            continue
        raw_scopes = entry.get("scopes")
        if isinstance(raw_scopes, str):
            scopes = parse_scope_header(raw_scopes)
        elif isinstance(raw_scopes, list):
            scopes = {scope for scope in raw_scopes if isinstance(scope, str) and scope}
        else:
            scopes = set()
        credentials[module_id] = MachineCredentialRecord(
            module_id=module_id,
            key_hash=key_hash.lower(),
            scopes=scopes,
        )
    return credentials


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    matched = load_machine_credentials(settings.machine_credentials_json).get(x_module_id)
    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not matched or not hmac.compare_digest(matched.key_hash, key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=matched.module_id,
        scopes=set(matched.scopes),
        actor_id=matched.module_id,
    )


async def get_human_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    ledger=Depends(get_error_ledger),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    external_id = user.get("id")
    if not isinstance(external_id, str) or not external_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    email = user.get("email") if isinstance(user.get("email"), str) else None

    try:
        canonical = await repository.find_user_by_external_id(external_id)
        if canonical is None and email:
            canonical = await repository.find_user_by_email(email)
            if canonical is not None:
                canonical = await repository.link_external_id(user_id=canonical.id, external_id=external_id)
                logger.info("Linked external identity to canonical user user_id=%s", canonical.id)
    except RepositoryConflictError as exc:
        await _record_missing_mapping(ledger, request, external_id, email, str(exc))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="identity is not linked") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if canonical is None:
        await _record_missing_mapping(ledger, request, external_id, email, "no canonical user for external identity")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="identity is not provisioned")

    if not canonical.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="account is inactive")

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=external_id,
        role=canonical.role,
        scopes=set(ROLE_SCOPES.get(canonical.role, ROLE_SCOPES["standard"])),
        actor_id=external_id,
        user_id=canonical.id,
    )


async def _record_missing_mapping(
    ledger,
    request: Request,
    external_id: str,
    email: str | None,
    error: str,
) -> None:
    try:
        await ledger.record(
            "missing_mapping",
            error=error,
            provider="supabase",
            external_id=external_id,
            email=email,
            request_path=request.url.path,
            client_ip=request.client.host if request.client else None,
            payload={"external_id": external_id},
        )
    except Exception:
        logger.exception("Failed to record missing mapping external_id=%s", external_id)


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()
