from __future__ import annotations

import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from sessionauth.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    Pagination,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    ResetTokenStatusResponse,
    RoleUpdateRequest,
    RotateResponse,
    SessionListResponse,
    SessionResponse,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
    VerifyEmailRequest,
)
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthContext
from sessionauth.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    NotFoundError,
)
from sessionauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_EXPIRY_HEADER = "X-Session-Expires-At"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _require_bearer(authorization: Optional[str]) -> str:
    token = get_runtime().auth._extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required")
    return token


async def _authenticate(
    response: Response,
    authorization: Optional[str],
    required_role: Optional[str] = None,
) -> AuthContext:
    runtime = get_runtime()
    ctx, token = await runtime.auth.authenticate(
        authorization, required_role=required_role
    )
    refreshed = await runtime.sessions.maybe_refresh(token, ctx.expires_at)
    if refreshed is not None:
        ctx.expires_at = refreshed
        response.headers[SESSION_EXPIRY_HEADER] = refreshed.isoformat()
    return ctx


async def get_auth_context(
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return await _authenticate(response, authorization)


async def get_admin_context(
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return await _authenticate(response, authorization, required_role="admin")


# -- registration and verification ---------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account.

    Raises:
        400: email or password fails validation
        409: the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.password, body.confirm_password)
    return Envelope(
        status="ok",
        data={
            "message": result.message,
            "user": UserResponse.from_user(result.user).model_dump(mode="json"),
        },
    )


async def _consume_verification(token: str) -> Envelope:
    runtime = get_runtime()
    result = await runtime.verification.consume(token)
    if result.success:
        return Envelope(status="ok", data=MessageResponse(message=result.message))
    if result.reason == "already_verified":
        raise InvalidTokenError(result.message, error_code="already_verified")
    raise InvalidTokenError(result.message)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    return await _consume_verification(body.token)


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email_link(token: str = Query(..., min_length=1, max_length=512)):
    """Target of the link in the verification mail."""
    return await _consume_verification(token)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    ack = await runtime.verification.resend(body.email)
    return Envelope(status="ok", data=MessageResponse(**ack))


# -- login and sessions ---------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and open a session.

    The bearer token in the response is the only copy the server hands out.

    Raises:
        401: unknown email or wrong password
        403: email not verified
        429: too many failed attempts for this email and address
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_user(result.user),
            session_id=result.session.session_id,
            token=result.session.token,
            expires_at=result.session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    token = _require_bearer(authorization)
    runtime = get_runtime()
    await runtime.auth.logout(token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal)
    return Envelope(
        status="ok",
        data={"message": "Logged out of all other sessions", "sessions_revoked": revoked},
    )


@router.post("/auth/session/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(response: Response, authorization: Optional[str] = Header(None)):
    token = _require_bearer(authorization)
    runtime = get_runtime()
    result = await runtime.sessions.refresh(token)
    if not result.success:
        raise AuthenticationError("Invalid or expired session")
    response.headers[SESSION_EXPIRY_HEADER] = result.expires_at.isoformat()
    return Envelope(status="ok", data={"expires_at": result.expires_at})


@router.post("/auth/session/rotate", response_model=Envelope, tags=["auth"])
async def rotate_session(authorization: Optional[str] = Header(None)):
    """Swap the presented session token for a new one; the old token stops working."""
    token = _require_bearer(authorization)
    runtime = get_runtime()
    result = await runtime.sessions.rotate(token)
    if not result.success:
        raise AuthenticationError("Invalid or expired session")
    return Envelope(
        status="ok",
        data=RotateResponse(token=result.token, expires_at=result.expires_at),
    )


# -- password reset -------------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    ack = await runtime.password_reset.request_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(**ack))


@router.get("/auth/reset-password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(
    token: str = Query(..., min_length=1, max_length=512, description="Reset token from the email link"),
):
    runtime = get_runtime()
    check = await runtime.password_reset.validate_token(token)
    if not check.valid:
        return Envelope(
            status="ok",
            data=ResetTokenStatusResponse(valid=False, message="Invalid or expired reset token"),
        )
    return Envelope(status="ok", data=ResetTokenStatusResponse(valid=True, email=check.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await runtime.password_reset.reset_password(
        body.token, body.password, body.confirm_password
    )
    if not result.success:
        raise InvalidTokenError(result.message)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


# -- profile --------------------------------------------------------------


@router.get("/me", response_model=Envelope, tags=["profile"])
async def get_me(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/me", response_model=Envelope, tags=["profile"])
async def update_me(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(principal, body.email)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/me", response_model=Envelope, tags=["profile"])
async def delete_me(
    body: DeleteAccountRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal, body.password)
    return Envelope(status="ok", data=MessageResponse(message="Account deleted"))


@router.post("/me/change-password", response_model=Envelope, tags=["profile"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password, body.confirm_password
    )
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully", "sessions_revoked": revoked},
    )


@router.get("/me/sessions", response_model=Envelope, tags=["profile"])
async def list_my_sessions(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_active(principal.user_id)
    items = [
        SessionResponse(
            id=sess.id,
            ip_address=sess.ip_address,
            user_agent=sess.user_agent,
            last_activity_at=sess.last_activity_at,
            created_at=sess.created_at,
            expires_at=sess.expires_at,
            current=sess.id == principal.session_id,
        )
        for sess in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(sessions=items))


@router.delete("/me/sessions/{session_id}", response_model=Envelope, tags=["profile"])
async def revoke_my_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    revoked = await runtime.sessions.revoke(session_id, principal.user_id)
    if not revoked:
        raise NotFoundError("Session not found")
    return Envelope(status="ok", data=MessageResponse(message="Session revoked"))


# -- administration -------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    users, total = await runtime.auth.list_users(page, limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[UserResponse.from_user(user) for user in users],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
        ),
    )


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_update_role(
    body: RoleUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_role(principal, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_context),
):
    runtime = get_runtime()
    await runtime.auth.delete_user(principal, user_id)
    return Envelope(status="ok", data=MessageResponse(message="User deleted"))
