"""User authentication helpers for Clerk and local-token auth modes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

import httpx
from clerk_backend_api import Clerk
from clerk_backend_api.models.clerkerrors import ClerkErrors
from clerk_backend_api.models.sdkerror import SDKError
from clerk_backend_api.security.types import AuthenticateRequestOptions, AuthStatus, RequestState
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError
from sqlmodel import col
from starlette.concurrency import run_in_threadpool

from portal.core.auth_mode import AuthMode
from portal.core.config import settings
from portal.core.logging import get_logger
from portal.core.user_tokens import hash_user_token
from portal.db import crud
from portal.db.session import get_session
from portal.models.users import User

if TYPE_CHECKING:
    from clerk_backend_api.models.user import User as ClerkUser
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
SESSION_DEP = Depends(get_session)


class ClerkTokenPayload(BaseModel):
    """JWT claims payload shape required from Clerk tokens."""

    sub: str


@dataclass
class AuthContext:
    """Authenticated user context resolved from inbound auth headers."""

    actor_type: Literal["user"]
    user: User | None = None


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    value = authorization.strip()
    if not value:
        return None
    if not value.lower().startswith("bearer "):
        return None
    token = value.split(" ", maxsplit=1)[1].strip()
    return token or None


def _non_empty_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _normalize_email(value: object) -> str | None:
    text = _non_empty_str(value)
    if text is None:
        return None
    return text.lower()


def _extract_claim_email(claims: dict[str, object]) -> str | None:
    for key in ("email", "email_address", "primary_email_address"):
        email = _normalize_email(claims.get(key))
        if email:
            return email
    return None


def _extract_claim_name(claims: dict[str, object]) -> str | None:
    for key in ("name", "full_name"):
        text = _non_empty_str(claims.get(key))
        if text:
            return text

    first = _non_empty_str(claims.get("given_name")) or _non_empty_str(claims.get("first_name"))
    last = _non_empty_str(claims.get("family_name")) or _non_empty_str(claims.get("last_name"))
    parts = [part for part in (first, last) if part]
    if not parts:
        return None
    return " ".join(parts)


def _extract_clerk_profile(profile: ClerkUser | None) -> tuple[str | None, str | None]:
    if profile is None:
        return None, None

    primary_email_id = _non_empty_str(getattr(profile, "primary_email_address_id", None))
    profile_email: str | None = None
    fallback_email: str | None = None
    for item in getattr(profile, "email_addresses", None) or []:
        candidate = _normalize_email(getattr(item, "email_address", None))
        if not candidate:
            continue
        if primary_email_id and _non_empty_str(getattr(item, "id", None)) == primary_email_id:
            profile_email = candidate
            break
        if fallback_email is None:
            fallback_email = candidate
    profile_email = profile_email or fallback_email

    first = _non_empty_str(getattr(profile, "first_name", None))
    last = _non_empty_str(getattr(profile, "last_name", None))
    parts = [part for part in (first, last) if part]
    profile_name = " ".join(parts) if parts else _non_empty_str(getattr(profile, "username", None))
    return profile_email, profile_name


def _normalize_clerk_server_url(raw: str) -> str | None:
    server_url = raw.strip().rstrip("/")
    if not server_url:
        return None
    if not server_url.endswith("/v1"):
        server_url = f"{server_url}/v1"
    return server_url


def _make_authenticate_request_options() -> AuthenticateRequestOptions:
    return AuthenticateRequestOptions(
        secret_key=settings.clerk_secret_key.strip(),
        clock_skew_in_ms=int(settings.clerk_leeway * 1000),
        accepts_token=["session_token"],
    )


async def _authenticate_clerk_request(request: Request) -> RequestState:
    # The SDK expects an httpx.Request; rebuild one from the ASGI request.
    httpx_request = httpx.Request(
        request.method,
        str(request.url),
        headers=dict(request.headers),
    )
    options = _make_authenticate_request_options()
    sdk = Clerk(bearer_auth=options.secret_key or "")
    return await run_in_threadpool(sdk.authenticate_request, httpx_request, options)


async def _fetch_clerk_profile(clerk_user_id: str) -> tuple[str | None, str | None]:
    server_url = _normalize_clerk_server_url(settings.clerk_api_url or "")
    clerk_user_id_log = clerk_user_id[-6:] if clerk_user_id else ""

    try:
        async with Clerk(
            bearer_auth=settings.clerk_secret_key.strip(),
            server_url=server_url,
            timeout_ms=5000,
        ) as clerk:
            profile = await clerk.users.get_async(user_id=clerk_user_id)
        return _extract_clerk_profile(profile)
    except ClerkErrors as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s reason=clerk_errors error_type=%s",
            clerk_user_id_log,
            exc.__class__.__name__,
        )
    except SDKError as exc:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s status=%s reason=sdk_error",
            clerk_user_id_log,
            exc.status_code,
        )
    except httpx.TimeoutException:
        logger.warning(
            "auth.clerk.profile.fetch_failed clerk_user_id=%s reason=timeout server_url=%s",
            clerk_user_id_log,
            server_url,
        )
    return None, None


async def _get_or_sync_user(
    session: AsyncSession,
    *,
    clerk_user_id: str,
    claims: dict[str, object],
) -> User:
    clerk_user_id_log = clerk_user_id[-6:] if clerk_user_id else ""
    existing = await User.objects.filter_by(clerk_user_id=clerk_user_id).first(session)
    email = _extract_claim_email(claims)
    name = _extract_claim_name(claims)
    if existing is None or not existing.name:
        profile_email, profile_name = await _fetch_clerk_profile(clerk_user_id)
        email = profile_email or email
        name = profile_name or name

    if existing is None:
        if not email:
            logger.warning("auth.user.sync.missing_email clerk_user_id=%s", clerk_user_id_log)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        # Users invited before their first sign-in are matched by email.
        user, _created = await crud.get_or_create(
            session,
            User,
            email=email,
            defaults={"name": name},
        )
        if user.clerk_user_id != clerk_user_id:
            user.clerk_user_id = clerk_user_id
            session.add(user)
            await session.commit()
            await session.refresh(user)
        logger.info("auth.user.sync clerk_user_id=%s linked=true", clerk_user_id_log)
        return user

    changed = False
    if email and existing.email != email:
        existing.email = email
        changed = True
    if not existing.name and name:
        existing.name = name
        changed = True
    if changed:
        session.add(existing)
        await session.commit()
        await session.refresh(existing)
    logger.debug(
        "auth.user.sync clerk_user_id=%s updated=%s",
        clerk_user_id_log,
        changed,
    )
    return existing


async def _resolve_local_auth_context(
    *,
    request: Request,
    session: AsyncSession,
    required: bool,
) -> AuthContext | None:
    token = _extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return None
    user = (
        await User.objects.filter_by(api_token_hash=hash_user_token(token))
        .filter(col(User.is_active).is_(True))
        .first(session)
    )
    if user is None:
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return None
    return AuthContext(actor_type="user", user=user)


def _parse_subject(claims: dict[str, object]) -> str | None:
    payload = ClerkTokenPayload.model_validate(claims)
    return payload.sub


async def _resolve_clerk_auth_context(
    *,
    request: Request,
    session: AsyncSession,
    required: bool,
) -> AuthContext | None:
    request_state = await _authenticate_clerk_request(request)
    if request_state.status != AuthStatus.SIGNED_IN or not isinstance(request_state.payload, dict):
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return None
    claims: dict[str, object] = {str(k): v for k, v in request_state.payload.items()}
    try:
        clerk_user_id = _parse_subject(claims)
    except ValidationError as exc:
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED) from exc
        return None
    if not clerk_user_id:
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return None
    user = await _get_or_sync_user(session, clerk_user_id=clerk_user_id, claims=claims)
    if not user.is_active:
        if required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        return None
    return AuthContext(actor_type="user", user=user)


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
    session: AsyncSession = SESSION_DEP,
) -> AuthContext:
    """Resolve required authenticated user context for the configured auth mode."""
    if settings.auth_mode == AuthMode.LOCAL:
        auth = await _resolve_local_auth_context(request=request, session=session, required=True)
    else:
        auth = await _resolve_clerk_auth_context(request=request, session=session, required=True)
    if auth is None:  # pragma: no cover
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    return auth

