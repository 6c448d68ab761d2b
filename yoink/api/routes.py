from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from yoink.api.schemas import (
    CreatedTokenResponse,
    CreateTokenRequest,
    Envelope,
    LeaveOrganizationResponse,
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationSummaryResponse,
    SessionInfoResponse,
    SwitchOrganizationRequest,
    TokenListResponse,
    TokenResponse,
    UserResponse,
)
from yoink.logging import bind_auth_context, get_logger
from yoink.service.auth import AuthContext, RequestCredentials, Unauthorized
from yoink.service.errors import ValidationError
from yoink.service.runtime import Runtime, get_runtime
from yoink.storage.models import ApiToken

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _session_cookie(request: Request, runtime: Runtime) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name)


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    credentials = RequestCredentials.from_request(
        _session_cookie(request, runtime), authorization
    )
    result = await runtime.auth.authenticate(credentials)
    if isinstance(result, Unauthorized):
        raise _http_error("unauthorized", result.reason, status_code=401)
    bind_auth_context(result.user_id, result.organization_id)
    return result


def _token_response(token: ApiToken) -> TokenResponse:
    return TokenResponse(
        id=token.id,
        name=token.name,
        organization_id=token.organization_id,
        created_at=token.created_at,
        last_used_at=token.last_used_at,
    )


# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_session_info(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.users.get_user(principal.user_id)
    org = await runtime.memberships.get_organization(principal.organization_id)
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            user=UserResponse(id=user.id, email=user.email, organization_id=user.organization_id),
            organization=OrganizationResponse(id=org.id, name=org.name),
            auth_method="session" if principal.session_id else "token",
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.sessions.revoke_session(principal.session_id)
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        httponly=True,
    )
    return Envelope(status="ok", data={"message": "session revoked"})


# ----------------------------------------------------------------------------
# Organizations
# ----------------------------------------------------------------------------


@router.get("/organizations", response_model=Envelope, tags=["organizations"])
async def list_organizations(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    summaries = await runtime.memberships.list_organizations(principal.user_id)
    return Envelope(
        status="ok",
        data=OrganizationListResponse(
            organizations=[
                OrganizationSummaryResponse(
                    id=s.organization.id,
                    name=s.organization.name,
                    role=s.role,
                    is_personal_org=s.is_personal_org,
                    is_current=s.organization.id == principal.organization_id,
                )
                for s in summaries
            ],
            current_organization_id=principal.organization_id,
        ),
    )


@router.post("/organizations/switch", response_model=Envelope, tags=["organizations"])
async def switch_organization(
    body: SwitchOrganizationRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    if not principal.session_id:
        raise ValidationError(
            "Organization switching requires a session", error_code="session_required"
        )
    runtime = get_runtime()
    ctx = await runtime.memberships.switch_organization(
        principal.session_id, principal.user_id, body.organization_id
    )
    org = await runtime.memberships.get_organization(ctx.organization_id)
    return Envelope(
        status="ok",
        data={"current_organization": OrganizationResponse(id=org.id, name=org.name)},
    )


@router.post(
    "/organizations/{organization_id}/leave",
    response_model=Envelope,
    tags=["organizations"],
)
async def leave_organization(
    organization_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.memberships.leave_organization(principal.user_id, organization_id)
    return Envelope(
        status="ok", data=LeaveOrganizationResponse(organization_id=organization_id)
    )


@router.delete(
    "/organizations/{organization_id}/members/{user_id}",
    response_model=Envelope,
    tags=["organizations"],
)
async def remove_member(
    organization_id: str = Path(..., min_length=1, max_length=64),
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.memberships.remove_member(principal.user_id, user_id, organization_id)
    return Envelope(status="ok", data={"organization_id": organization_id, "user_id": user_id})


# ----------------------------------------------------------------------------
# API tokens
# ----------------------------------------------------------------------------


@router.get("/tokens", response_model=Envelope, tags=["tokens"])
async def list_tokens(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    tokens = await runtime.tokens.list_tokens(principal.user_id)
    return Envelope(
        status="ok",
        data=TokenListResponse(tokens=[_token_response(t) for t in tokens]),
    )


@router.post("/tokens", response_model=Envelope, status_code=201, tags=["tokens"])
async def create_token(
    body: CreateTokenRequest,
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    issued = await runtime.tokens.create_token(
        principal.user_id, body.name, organization_id=body.organization_id
    )
    return Envelope(
        status="ok",
        data=CreatedTokenResponse(
            token=_token_response(issued.token), raw_token=issued.raw_token
        ),
    )


@router.delete("/tokens/{token_id}", response_model=Envelope, tags=["tokens"])
async def revoke_token(
    token_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.tokens.revoke_token(principal.user_id, token_id)
    return Envelope(status="ok", data={"token_id": token_id, "revoked": True})
