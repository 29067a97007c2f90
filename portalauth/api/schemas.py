from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from portalauth.logging import get_correlation_id
from portalauth.service.errors import ERROR_CODES


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of the stable error codes."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_ZERO_WIDTH = "​‌‍﻿"
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned.strip().lower())
    if not 3 <= len(normalized) <= 254:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


# ----------------------------------------------------------------------
# requests
# ----------------------------------------------------------------------


class SecurityAnswerInput(CamelModel):
    question_id: int
    answer: str = Field(..., max_length=200)


class RegisterRequest(CamelModel):
    email: str
    password: str = Field(..., max_length=256)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    organizational_unit_id: int
    role: Optional[str] = Field(default=None, max_length=16)
    security_questions: Optional[List[SecurityAnswerInput]] = Field(default=None, max_length=3)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(CamelModel):
    logout_all: bool = False


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifySecurityQuestionRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)
    question_id: int
    answer: str = Field(..., max_length=200)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)
    new_password: str = Field(..., max_length=256)


class ResetStatusRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)


class SecurityQuestionsSetupRequest(CamelModel):
    questions: List[SecurityAnswerInput] = Field(..., min_length=1, max_length=3)


class SecurityAnswerUpdateRequest(CamelModel):
    answer: str = Field(..., max_length=200)


# ----------------------------------------------------------------------
# responses
# ----------------------------------------------------------------------


class UserResponse(CamelModel):
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    organizational_unit_id: Optional[int] = None
    is_active: bool = True
    last_login: Optional[datetime] = None


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    user: UserResponse


class VerifyResponse(CamelModel):
    user: UserResponse
    session_id: str
    expires_at: int


class SessionResponse(CamelModel):
    session_id: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SecurityQuestionResponse(CamelModel):
    id: int
    question_text: str
    category: str


class SecurityQuestionStatusResponse(CamelModel):
    configured_count: int
    max_questions: int
    has_questions: bool
    configured: List[SecurityQuestionResponse]
    available: List[SecurityQuestionResponse]


class VerifySecurityQuestionResponse(CamelModel):
    verified: bool
    attempts_remaining: int


class ResetQuestion(CamelModel):
    question_id: int
    question_text: Optional[str] = None
    attempts: int
    max_attempts: int


class ResetStatusResponse(CamelModel):
    state: str
    requires_security_question: bool
    question: Optional[ResetQuestion] = None
    attempts_remaining: int
    expires_at: datetime


class MessageResponse(CamelModel):
    message: str


class SweepResponse(CamelModel):
    revocations: int
    reset_tokens: int
