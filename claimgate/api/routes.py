from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from claimgate.api.schemas import (
    AccountOut,
    AccountPage,
    AuthResponse,
    ClaimPreview,
    ClaimRequest,
    ClaimResponse,
    ClaimTokenResponse,
    ContinueRequest,
    Envelope,
    InvitationResponse,
    InviteRequest,
    LoginGrantRequest,
    LoginRequest,
    RegisterRequest,
    RoleUpdateRequest,
    SessionStatusResponse,
    SessionUser,
    TempSessionResponse,
)
from claimgate.logging import get_logger
from claimgate.service.errors import InvalidClaimError, ValidationError
from claimgate.service.resolver import ResolvedSession
from claimgate.service.runtime import get_runtime
from claimgate.storage.models import CredentialSession, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
TEMP_SESSION_COOKIE = "temp_session_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _seconds_until(expires_at: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _set_cookie(response: Response, name: str, value: str, expires_at: datetime) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
        max_age=_seconds_until(expires_at),
        path="/",
    )


def _clear_cookie(response: Response, name: str) -> None:
    response.set_cookie(
        name,
        "",
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
        max_age=0,
        path="/",
    )


def _credential_session_id(request: Request, header_value: Optional[str]) -> Optional[str]:
    return header_value or request.cookies.get(SESSION_COOKIE)


async def get_session(
    request: Request,
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> ResolvedSession:
    """Resolve the caller from the credential session and temp session cookies."""
    runtime = get_runtime()
    return runtime.resolver.resolve(
        credential_session_id=_credential_session_id(request, session_id),
        temp_session_token=request.cookies.get(TEMP_SESSION_COOKIE),
    )


async def require_authenticated(
    resolved: ResolvedSession = Depends(get_session),
) -> ResolvedSession:
    if not resolved.can_access_authenticated_area:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return resolved


async def require_admin(
    resolved: ResolvedSession = Depends(get_session),
) -> ResolvedSession:
    if not resolved.is_authenticated:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    if not resolved.can_access_admin_area:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return resolved


async def require_temporary(
    resolved: ResolvedSession = Depends(get_session),
) -> ResolvedSession:
    if not resolved.is_authenticated:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    if not resolved.can_initiate_claim:
        raise _http_error(
            "forbidden", "only temporary sessions can request a claim token", status_code=403
        )
    return resolved


def _auth_response(account, session: CredentialSession) -> AuthResponse:
    return AuthResponse(
        user=AccountOut.from_account(account), session_expires_at=session.expires_at
    )


def _session_status(resolved: ResolvedSession) -> SessionStatusResponse:
    user = None
    if resolved.is_authenticated:
        user = SessionUser(
            id=resolved.account_id,
            email=resolved.email,
            name=resolved.name,
            role=resolved.role,
        )
    return SessionStatusResponse(
        user=user,
        auth_type=resolved.auth_type.value,
        status=resolved.status.value,
        is_temporary=resolved.is_temporary,
        expires_at=resolved.expires_at,
        permissions=resolved.permissions(),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Create a claimed account with a password and sign it in.

    Raises:
        403: If self-service registration is disabled
        409: If the email is already taken, invited or not
    """
    runtime = get_runtime()
    account, session = await runtime.auth.register(
        body.email,
        body.name,
        body.password,
        phone=body.phone,
        user_agent=user_agent,
    )
    _set_cookie(response, SESSION_COOKIE, session.id, session.expires_at)
    return Envelope(status="ok", data=_auth_response(account, session))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Invited accounts that have not claimed yet have no password and always
    fail here with the same 401 as a wrong password.
    """
    runtime = get_runtime()
    account, session = await runtime.auth.login(
        body.email, body.password, user_agent=user_agent
    )
    _set_cookie(response, SESSION_COOKIE, session.id, session.expires_at)
    return Envelope(status="ok", data=_auth_response(account, session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    runtime.auth.logout(_credential_session_id(request, session_id))
    runtime.temp_sessions.revoke(request.cookies.get(TEMP_SESSION_COOKIE))
    _clear_cookie(response, SESSION_COOKIE)
    _clear_cookie(response, TEMP_SESSION_COOKIE)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/claim", response_model=Envelope, tags=["claim"])
async def preview_claim(token: str = Query(..., min_length=1, max_length=256)):
    """Show who an invitation is for before the invitee sets a password."""
    runtime = get_runtime()
    account = runtime.claims.validate_claim(token)
    return Envelope(
        status="ok",
        data=ClaimPreview(
            email=account.email,
            name=account.name,
            role=account.role,
            expires_at=account.claim_token_expires,
        ),
    )


@router.post("/auth/claim", response_model=Envelope, tags=["claim"])
async def claim(body: ClaimRequest, response: Response):
    """Set the account password and burn the claim token.

    The response carries a single-use login grant; exchange it at
    ``/v1/auth/grant`` for a credential session.
    """
    runtime = get_runtime()
    result = await runtime.claims.consume_claim(body.token, body.password)
    if result.revoked_temp_sessions:
        _clear_cookie(response, TEMP_SESSION_COOKIE)
    return Envelope(
        status="ok",
        data=ClaimResponse(
            user=AccountOut.from_account(result.account),
            login_grant=result.login_grant.token,
            login_grant_expires_at=result.login_grant.expires_at,
        ),
    )


@router.post("/auth/grant", response_model=Envelope, tags=["claim"])
async def redeem_grant(
    body: LoginGrantRequest,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    account, session = runtime.auth.redeem_login_grant(body.grant, user_agent=user_agent)
    _set_cookie(response, SESSION_COOKIE, session.id, session.expires_at)
    _clear_cookie(response, TEMP_SESSION_COOKIE)
    return Envelope(status="ok", data=_auth_response(account, session))


@router.post("/auth/continue", response_model=Envelope, tags=["claim"])
async def continue_without_claiming(body: ContinueRequest, response: Response):
    """Open a temporary session from a claim link; the claim token stays valid.

    Raises:
        401: If the claim token is unknown, expired or already used
        403: If the invited account is an admin
    """
    runtime = get_runtime()
    session = runtime.temp_sessions.create_from_claim(body.token)
    account = runtime.auth.get_account(session.account_id)
    _set_cookie(response, TEMP_SESSION_COOKIE, session.token, session.expires_at)
    user = AccountOut.from_account(account).model_copy(update={"role": Role.USER})
    return Envelope(
        status="ok", data=TempSessionResponse(user=user, expires_at=session.expires_at)
    )


@router.post("/auth/logout-temp", response_model=Envelope, tags=["claim"])
async def logout_temporary(request: Request, response: Response):
    runtime = get_runtime()
    runtime.temp_sessions.revoke(request.cookies.get(TEMP_SESSION_COOKIE))
    _clear_cookie(response, TEMP_SESSION_COOKIE)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_status(resolved: ResolvedSession = Depends(get_session)):
    return Envelope(status="ok", data=_session_status(resolved))


@router.get("/auth/claim-token", response_model=Envelope, tags=["claim"])
async def current_claim_token(resolved: ResolvedSession = Depends(require_temporary)):
    """Hand a temporary session the claim link for its own account."""
    runtime = get_runtime()
    invitation = runtime.claims.open_invitation_for(resolved.account_id)
    return Envelope(
        status="ok",
        data=ClaimTokenResponse(
            claim_token=invitation.claim_token,
            claim_url=invitation.claim_url,
            expires_at=invitation.expires_at,
        ),
    )


@router.get("/auth/link-login", tags=["claim"])
async def link_login(token: str = Query("", max_length=256)):
    runtime = get_runtime()
    base_url = runtime.settings.app_base_url.rstrip("/")
    try:
        runtime.claims.validate_claim(token)
    except InvalidClaimError:
        return RedirectResponse(f"{base_url}/auth/signin?error=invalid-token", status_code=302)
    return RedirectResponse(runtime.settings.claim_url(token), status_code=302)


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(resolved: ResolvedSession = Depends(require_authenticated)):
    runtime = get_runtime()
    account = runtime.auth.get_account(resolved.account_id)
    user = AccountOut.from_account(account).model_copy(update={"role": resolved.role})
    return Envelope(
        status="ok",
        data={"user": user, "session": _session_status(resolved)},
    )


@router.post("/admin/invites", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_invite(body: InviteRequest, principal: ResolvedSession = Depends(require_admin)):
    runtime = get_runtime()
    invitation = runtime.claims.issue_claim(
        body.email,
        body.name,
        role=body.role,
        phone=body.phone,
        ttl=timedelta(hours=body.expires_in_hours),
    )
    logger.info(
        "admin_invite_sent",
        admin_id=principal.account_id,
        account_id=invitation.account.id,
        reissued=invitation.reissued,
    )
    return Envelope(
        status="ok",
        data=InvitationResponse(
            user=AccountOut.from_account(invitation.account),
            claim_token=invitation.claim_token,
            claim_url=invitation.claim_url,
            expires_at=invitation.expires_at,
            reissued=invitation.reissued,
        ),
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[Role] = None,
    email: Optional[str] = Query(None, max_length=254),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: ResolvedSession = Depends(require_admin),
):
    runtime = get_runtime()
    accounts, total = runtime.auth.list_accounts(role=role, email=email, page=page, limit=limit)
    return Envelope(
        status="ok",
        data=AccountPage(
            users=[AccountOut.from_account(a) for a in accounts],
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: RoleUpdateRequest,
    principal: ResolvedSession = Depends(require_admin),
):
    if user_id == principal.account_id and body.role != Role.ADMIN:
        raise ValidationError("cannot remove your own admin role")
    runtime = get_runtime()
    account = runtime.auth.set_role(user_id, body.role)
    return Envelope(status="ok", data=AccountOut.from_account(account))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, principal: ResolvedSession = Depends(require_admin)
):
    if user_id == principal.account_id:
        raise ValidationError("cannot delete your own account")
    runtime = get_runtime()
    runtime.auth.delete_account(user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})
