from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from sessionward.api.schemas import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    DeviceInfoResponse,
    Envelope,
    IntrospectResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    PrincipalResponse,
    RenewRequest,
    RenewResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
)
from sessionward.service.introspect import IntrospectionResult
from sessionward.service.runtime import get_runtime
from sessionward.storage.models import USER_AGENT_MAX_LENGTH, DeviceInfo

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _device_from_request(
    request: Request, device_id: Optional[str] = None, device_type: Optional[str] = None
) -> DeviceInfo:
    return DeviceInfo.new(
        device_id=device_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        device_type=device_type,
    )


def _renewal_device(request: Request, body: RenewRequest) -> DeviceInfo:
    # Blank id and type defer to what the session recorded at login
    user_agent = request.headers.get("User-Agent")
    return DeviceInfo(
        device_id=body.device_id or "",
        ip_address=_client_ip(request),
        user_agent=user_agent[:USER_AGENT_MAX_LENGTH] if user_agent else None,
        device_type=body.device_type or "",
    )


def _bearer_value(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


async def get_principal(
    authorization: Optional[str] = Header(None),
) -> IntrospectionResult:
    runtime = get_runtime()
    return await runtime.introspector.introspect(authorization)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns an access token and a renewal token bound to a new session
    family for this device.
    """
    runtime = get_runtime()
    device = _device_from_request(request, body.device_id, body.device_type)
    result = await runtime.issuer.login(body.email, body.password, device)
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            access_token_ttl_seconds=result.access_token_ttl_seconds,
            renewal_token=result.renewal_token,
            renewal_ttl_seconds=result.renewal_ttl_seconds,
            token_type=result.token_type,
            session_id=result.session_id,
            device_info=DeviceInfoResponse.from_device(result.device_info),
            principal=PrincipalResponse.from_principal(result.principal),
        ),
    )


@router.post("/auth/renew", response_model=Envelope, tags=["auth"])
async def renew(body: RenewRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.renewer.renew(body.renewal_token, _renewal_device(request, body))
    return Envelope(
        status="ok",
        data=RenewResponse(
            access_token=result.access_token,
            access_token_ttl_seconds=result.access_token_ttl_seconds,
            renewal_token=result.renewal_token,
            rotated=result.rotated,
            token_type=result.token_type,
            session_id=result.session_id,
        ),
    )


@router.post("/auth/introspect", response_model=Envelope, tags=["auth"])
async def introspect(result: IntrospectionResult = Depends(get_principal)):
    """Validate the bearer access token against the current principal record."""
    return Envelope(
        status="ok",
        data=IntrospectResponse(
            principal=PrincipalResponse.from_principal(result.principal),
            validated_at=result.validated_at,
            expires_at=result.expires_at,
            seconds_remaining=result.seconds_remaining,
            renew_recommended=result.renew_recommended,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(result: IntrospectionResult = Depends(get_principal)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(result.principal))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    """Invalidate the presented renewal token; always succeeds.

    The body is optional and parsed by hand so that a missing, non-JSON or
    oddly typed body still logs out instead of failing validation.
    """
    runtime = get_runtime()
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    body = LogoutRequest.from_payload(payload)
    result = await runtime.revoker.logout(
        _bearer_value(authorization),
        body.renewal_token,
        invalidate_all=body.invalidate_all,
    )
    return Envelope(status="ok", data=LogoutResponse(invalidated_count=result.invalidated_count))


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    current_session: Optional[str] = None,
    auth: IntrospectionResult = Depends(get_principal),
):
    runtime = get_runtime()
    views = await runtime.revoker.list_sessions(auth.principal.identifier)
    sessions = [
        SessionResponse.from_view(view, current=view.session_id == current_session)
        for view in views
    ]
    return Envelope(
        status="ok", data=SessionListResponse(sessions=sessions, count=len(sessions))
    )


@router.get("/auth/sessions/stats", response_model=Envelope, tags=["sessions"])
async def session_stats(auth: IntrospectionResult = Depends(get_principal)):
    runtime = get_runtime()
    stats = runtime.store.renewal_stats(auth.principal.identifier)
    return Envelope(
        status="ok",
        data=SessionStatsResponse(
            total=stats.total,
            active=stats.active,
            expired=stats.expired,
            by_device=stats.by_device,
            by_family=stats.by_family,
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def close_session(
    session_id: str, auth: IntrospectionResult = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.revoker.close_session(auth.principal.identifier, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "closed": True})


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(auth: IntrospectionResult = Depends(get_principal)):
    """Sign out everywhere: invalidate every renewal token of the caller."""
    runtime = get_runtime()
    count = await runtime.revoker.revoke_all(auth.principal.identifier)
    return Envelope(status="ok", data=LogoutResponse(invalidated_count=count))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, auth: IntrospectionResult = Depends(get_principal)
):
    """Change the caller's password.

    Requires the current password. Every renewal family except the one
    named by ``renewal_token`` is revoked.
    """
    runtime = get_runtime()
    revoked = await runtime.passwords.change_password(
        auth.principal.identifier,
        body.current_password,
        body.new_password,
        keep_renewal_token=body.renewal_token,
    )
    return Envelope(status="ok", data=ChangePasswordResponse(revoked_count=revoked))
