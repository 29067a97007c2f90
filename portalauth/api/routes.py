from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel

from portalauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetQuestion,
    ResetStatusRequest,
    ResetStatusResponse,
    SecurityAnswerUpdateRequest,
    SecurityQuestionResponse,
    SecurityQuestionsSetupRequest,
    SecurityQuestionStatusResponse,
    SessionResponse,
    SweepResponse,
    TokenResponse,
    UserResponse,
    VerifyResponse,
    VerifySecurityQuestionRequest,
    VerifySecurityQuestionResponse,
)
from portalauth.logging import get_logger
from portalauth.service.auth import AuthContext
from portalauth.service.errors import AuthenticationError, InvalidTokenError
from portalauth.service.rotation import TokenPair
from portalauth.service.runtime import get_runtime
from portalauth.storage.models import SecurityQuestion, User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE_PATH = "/auth"


def _ok(data: BaseModel | None = None) -> Envelope:
    payload = data.model_dump(by_alias=True, mode="json") if data is not None else None
    return Envelope(status="ok", data=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


async def get_admin_user(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
    get_runtime().auth.require_role(principal, "admin")
    return principal


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        full_name=user.full_name,
        role=user.role,
        organizational_unit_id=user.organizational_unit_id,
        is_active=user.is_active,
        last_login=user.last_login,
    )


def _question_response(question: SecurityQuestion) -> SecurityQuestionResponse:
    return SecurityQuestionResponse(
        id=question.id, question_text=question.question_text, category=question.category
    )


def _set_refresh_cookie(response: Response, pair: TokenPair) -> None:
    runtime = get_runtime()
    response.set_cookie(
        runtime.settings.refresh_cookie_name,
        pair.refresh.token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.rotator.refresh_ttl,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(
        runtime.settings.refresh_cookie_name,
        path=REFRESH_COOKIE_PATH,
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


# ----------------------------------------------------------------------
# sign-in lifecycle
# ----------------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        organizational_unit_id=body.organizational_unit_id,
        role=body.role,
        security_questions=[(q.question_id, q.answer) for q in body.security_questions or []],
        ip_address=_client_ip(request),
    )
    return _ok(_user_response(user))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(response, result.tokens)
    return _ok(
        LoginResponse(
            access_token=result.tokens.access.token,
            refresh_token=result.tokens.refresh.token,
            expires_in=result.tokens.expires_in,
            user=_user_response(result.user),
        )
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    pair = await runtime.auth.refresh(presented, ip_address=_client_ip(request))
    _set_refresh_cookie(response, pair)
    return _ok(
        TokenResponse(
            access_token=pair.access.token,
            refresh_token=pair.refresh.token,
            expires_in=pair.expires_in,
        )
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("authentication required")
    try:
        principal = await runtime.auth.authenticate(token)
    except InvalidTokenError:
        # Already revoked or expired: nothing left to end
        principal = None
    ended = 0
    if principal is not None:
        ended = await runtime.auth.logout(principal, logout_all=bool(body and body.logout_all))
    _clear_refresh_cookie(response)
    return _ok(MessageResponse(message=f"logged out of {ended} session(s)"))


@router.get("/verify", response_model=Envelope)
async def verify(principal: AuthContext = Depends(get_current_user)):
    return _ok(
        VerifyResponse(
            user=_user_response(principal.user),
            session_id=principal.session_id,
            expires_at=principal.claims.expires_at,
        )
    )


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_current_user)):
    return _ok(_user_response(get_runtime().auth.get_profile(principal.user_id)))


@router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: AuthContext = Depends(get_current_user)):
    sessions = await get_runtime().auth.list_sessions(principal)
    items = [
        SessionResponse(
            session_id=s.session_id,
            created_at=s.created_at,
            last_activity=s.last_activity,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            current=s.session_id == principal.session_id,
        ).model_dump(by_alias=True, mode="json")
        for s in sessions
    ]
    return Envelope(status="ok", data={"sessions": items})


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_current_user),
):
    await get_runtime().auth.change_password(principal, body.current_password, body.new_password)
    _clear_refresh_cookie(response)
    return _ok(MessageResponse(message="password changed; all sessions were signed out"))


# ----------------------------------------------------------------------
# password recovery
# ----------------------------------------------------------------------


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    message = await get_runtime().recovery.request(
        body.email,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _ok(MessageResponse(message=message))


@router.post("/verify-security-question", response_model=Envelope)
async def verify_security_question(body: VerifySecurityQuestionRequest):
    result = await get_runtime().recovery.verify_security_question(
        body.token, body.question_id, body.answer
    )
    return _ok(
        VerifySecurityQuestionResponse(
            verified=result.verified, attempts_remaining=result.attempts_remaining
        )
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, response: Response):
    await get_runtime().recovery.confirm(body.token, body.new_password)
    _clear_refresh_cookie(response)
    return _ok(MessageResponse(message="password has been reset; sign in with the new password"))


@router.post("/reset-status", response_model=Envelope)
async def reset_status(body: ResetStatusRequest):
    status = get_runtime().recovery.status(body.token)
    question = None
    if status.question_id is not None:
        question = ResetQuestion(
            question_id=status.question_id,
            question_text=status.question_text,
            attempts=status.attempts,
            max_attempts=status.max_attempts,
        )
    return _ok(
        ResetStatusResponse(
            state=status.state.value,
            requires_security_question=status.requires_security_question,
            question=question,
            attempts_remaining=status.attempts_remaining,
            expires_at=status.expires_at,
        )
    )


# ----------------------------------------------------------------------
# security questions
# ----------------------------------------------------------------------


@router.get("/security-questions", response_model=Envelope)
async def list_security_questions():
    questions = get_runtime().questions.list_questions()
    return Envelope(
        status="ok",
        data={
            "questions": [
                _question_response(q).model_dump(by_alias=True, mode="json") for q in questions
            ]
        },
    )


def _status_response(status) -> SecurityQuestionStatusResponse:
    return SecurityQuestionStatusResponse(
        configured_count=status.configured_count,
        max_questions=status.max_questions,
        has_questions=status.has_questions,
        configured=[_question_response(q) for q in status.configured],
        available=[_question_response(q) for q in status.available],
    )


@router.get("/security-questions/me", response_model=Envelope)
async def my_security_questions(principal: AuthContext = Depends(get_current_user)):
    return _ok(_status_response(get_runtime().questions.status(principal.user_id)))


@router.post("/security-questions", response_model=Envelope, status_code=201)
async def setup_security_questions(
    body: SecurityQuestionsSetupRequest,
    principal: AuthContext = Depends(get_current_user),
):
    status = await get_runtime().questions.setup(
        principal.user_id, [(q.question_id, q.answer) for q in body.questions]
    )
    return _ok(_status_response(status))


@router.put("/security-questions/{question_id}", response_model=Envelope)
async def update_security_answer(
    question_id: int,
    body: SecurityAnswerUpdateRequest,
    principal: AuthContext = Depends(get_current_user),
):
    await get_runtime().questions.update_answer(principal.user_id, question_id, body.answer)
    return _ok(MessageResponse(message="security answer updated"))


@router.delete("/security-questions/{question_id}", response_model=Envelope)
async def remove_security_question(
    question_id: int, principal: AuthContext = Depends(get_current_user)
):
    get_runtime().questions.remove(principal.user_id, question_id)
    return _ok(MessageResponse(message="security question removed"))


# ----------------------------------------------------------------------
# maintenance
# ----------------------------------------------------------------------


@router.post("/maintenance/sweep", response_model=Envelope)
async def maintenance_sweep(principal: AuthContext = Depends(get_admin_user)):
    counts = await get_runtime().sweep()
    logger.info("maintenance_sweep_requested", user_id=principal.user_id, **counts)
    return _ok(SweepResponse(**counts))
