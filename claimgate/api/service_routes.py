from __future__ import annotations

import math
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from claimgate.api.schemas import (
    AccountOut,
    AccountPage,
    Envelope,
    InvitationResponse,
    InvitationStatusResponse,
    ServiceCreateUserRequest,
    ServiceInviteRequest,
    ServiceSessionOut,
    ServiceSessionRequest,
    ServiceTokenRequest,
    ServiceTokenResponse,
)
from claimgate.logging import get_logger
from claimgate.service.enhanced_auth import EnhancedAuthHeaders, ServicePrincipal
from claimgate.service.errors import ConflictError, NotFoundError, ValidationError
from claimgate.service.runtime import get_runtime
from claimgate.service.service_tokens import (
    SCOPE_INVITE_SEND,
    SCOPE_SESSION_CREATE,
    SCOPE_USER_CREATE,
    SCOPE_USER_READ,
    ServiceTokenAuthority,
)
from claimgate.service.temp_sessions import TemporarySessionManager
from claimgate.storage.models import Role, TempSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/service", tags=["service"])


def require_scope(scope: str):
    """Dependency factory: a valid bearer service token carrying ``scope``."""

    async def dependency(authorization: Optional[str] = Header(None)) -> ServicePrincipal:
        runtime = get_runtime()
        claims = runtime.tokens.authorize(
            ServiceTokenAuthority.extract_bearer(authorization), scope
        )
        return ServicePrincipal(issuer=claims.issuer, scopes=claims.scopes)

    return dependency


def require_enhanced_scope(scope: str):
    """Dependency factory: bearer token plus the request-bound client proof."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> ServicePrincipal:
        runtime = get_runtime()
        return await runtime.enhanced_auth.authorize(
            ServiceTokenAuthority.extract_bearer(authorization),
            EnhancedAuthHeaders.from_mapping(request.headers),
            method=request.method,
            path=request.url.path,
            required_scope=scope,
            client_ip=request.client.host if request.client else None,
        )

    return dependency


def _auth_meta(principal: ServicePrincipal) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"auth_method": principal.auth_method, "issuer": principal.issuer}
    if principal.client_id:
        meta["client_id"] = principal.client_id
    return meta


def _session_out(manager: TemporarySessionManager, session: TempSession) -> ServiceSessionOut:
    expired = manager.is_expired(session)
    return ServiceSessionOut(
        token=session.token,
        user_id=session.account_id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        is_expired=expired,
        is_valid=not expired,
    )


def _list_users(
    role: Optional[Role], email: Optional[str], page: int, limit: int
) -> Dict[str, Any]:
    runtime = get_runtime()
    accounts, total = runtime.auth.list_accounts(role=role, email=email, page=page, limit=limit)
    return AccountPage(
        users=[AccountOut.from_account(a) for a in accounts],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if total else 0,
    ).model_dump(mode="json")


def _create_user(body: ServiceCreateUserRequest, principal: ServicePrincipal) -> Dict[str, Any]:
    runtime = get_runtime()
    if runtime.store.get_account_by_email(body.email):
        raise ConflictError("account already exists", detail={"field": "email"})
    invitation = runtime.claims.issue_claim(
        body.email, body.name, role=body.role, phone=body.phone
    )
    logger.info(
        "service_user_created",
        issuer=principal.issuer,
        account_id=invitation.account.id,
        auth_method=principal.auth_method,
    )
    return InvitationResponse(
        user=AccountOut.from_account(invitation.account),
        claim_token=invitation.claim_token,
        claim_url=invitation.claim_url,
        expires_at=invitation.expires_at,
    ).model_dump(mode="json")


@router.post("/token", response_model=Envelope)
async def exchange_token(body: ServiceTokenRequest):
    """Trade client credentials for a short-lived bearer service token.

    Raises:
        400: If a requested scope is unknown or outside the client's allowance
        401: If the client is unknown, inactive or the secret does not match
    """
    runtime = get_runtime()
    exchange = runtime.service_clients.exchange_credentials(
        body.client_id, body.client_secret, body.scopes, body.expires_in
    )
    logger.info(
        "service_token_exchanged",
        client_id=body.client_id,
        scopes=list(exchange.scopes),
        expires_in=exchange.expires_in,
    )
    return Envelope(
        status="ok",
        data=ServiceTokenResponse(
            access_token=exchange.access_token,
            token_type=exchange.token_type,
            expires_in=exchange.expires_in,
            scopes=list(exchange.scopes),
        ),
    )


@router.get("/users", response_model=Envelope)
async def list_users(
    role: Optional[Role] = None,
    email: Optional[str] = Query(None, max_length=254),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: ServicePrincipal = Depends(require_scope(SCOPE_USER_READ)),
):
    return Envelope(
        status="ok", data={**_list_users(role, email, page, limit), **_auth_meta(principal)}
    )


@router.post("/users", response_model=Envelope, status_code=201)
async def create_user(
    body: ServiceCreateUserRequest,
    principal: ServicePrincipal = Depends(require_scope(SCOPE_USER_CREATE)),
):
    """Create an invited account; the response carries its claim link."""
    return Envelope(status="ok", data={**_create_user(body, principal), **_auth_meta(principal)})


@router.get("/invites", response_model=Envelope)
async def invitation_status(
    email: Optional[str] = Query(None, max_length=254),
    token: Optional[str] = Query(None, max_length=256),
    principal: ServicePrincipal = Depends(require_scope(SCOPE_INVITE_SEND)),
):
    runtime = get_runtime()
    account, status = runtime.claims.invitation_status(
        email=email.strip().lower() if email else None, token=token
    )
    return Envelope(
        status="ok",
        data=InvitationStatusResponse(
            user=AccountOut.from_account(account),
            status=status.value,
            expires_at=account.claim_token_expires,
        ),
    )


@router.post("/invites", response_model=Envelope, status_code=201)
async def send_invite(
    body: ServiceInviteRequest,
    principal: ServicePrincipal = Depends(require_scope(SCOPE_INVITE_SEND)),
):
    """Invite a new account or re-open the invitation of an unclaimed one."""
    runtime = get_runtime()
    invitation = runtime.claims.issue_claim(
        body.email,
        body.name,
        role=body.role,
        phone=body.phone,
        ttl=timedelta(hours=body.expires_in_hours),
    )
    logger.info(
        "service_invite_sent",
        issuer=principal.issuer,
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


@router.get("/sessions", response_model=Envelope)
async def inspect_sessions(
    token: Optional[str] = Query(None, max_length=256),
    user_id: Optional[str] = Query(None, max_length=128),
    principal: ServicePrincipal = Depends(require_scope(SCOPE_SESSION_CREATE)),
):
    runtime = get_runtime()
    manager = runtime.temp_sessions
    if token:
        session = manager.lookup(token)
        if not session:
            raise NotFoundError("session not found")
        return Envelope(status="ok", data=_session_out(manager, session))
    if user_id:
        sessions = manager.list_for_account(user_id)
        return Envelope(
            status="ok",
            data={"sessions": [_session_out(manager, s) for s in sessions], "user_id": user_id},
        )
    raise ValidationError("token or user_id is required")


@router.post("/sessions", response_model=Envelope, status_code=201)
async def create_session(
    body: ServiceSessionRequest,
    principal: ServicePrincipal = Depends(require_scope(SCOPE_SESSION_CREATE)),
):
    """Open a temporary session for an unclaimed account; admin and claimed accounts get 403."""
    runtime = get_runtime()
    session = runtime.temp_sessions.create_for_account(body.user_id)
    logger.info("service_session_created", issuer=principal.issuer, account_id=body.user_id)
    return Envelope(status="ok", data=_session_out(runtime.temp_sessions, session))


@router.get("/secure/users", response_model=Envelope)
async def secure_list_users(
    role: Optional[Role] = None,
    email: Optional[str] = Query(None, max_length=254),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: ServicePrincipal = Depends(require_enhanced_scope(SCOPE_USER_READ)),
):
    return Envelope(
        status="ok", data={**_list_users(role, email, page, limit), **_auth_meta(principal)}
    )


@router.post("/secure/users", response_model=Envelope, status_code=201)
async def secure_create_user(
    body: ServiceCreateUserRequest,
    principal: ServicePrincipal = Depends(require_enhanced_scope(SCOPE_USER_CREATE)),
):
    return Envelope(status="ok", data={**_create_user(body, principal), **_auth_meta(principal)})
