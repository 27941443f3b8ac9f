from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepguard.service.channels import normalize_email, normalize_phone

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_credentials",
    "invalid_code",
    "invalid_token",
    "session_not_found",
    "session_expired",
    "session_already_terminal",
    "conflict",
    "not_found",
    "resend_not_allowed",
    "too_many_attempts",
    "account_locked",
    "delivery_rejected",
    "channel_unavailable",
    "entropy_unavailable",
    "signing_key_unavailable",
    "federation_failed",
    "unauthorized",
    "forbidden",
    "rate_limited",
    "server_error",
})

ChannelName = Literal["email", "messaging"]


class ErrorBody(BaseModel):
    """Error envelope body with a stable, client-branchable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 256:
        raise ValueError("password must be at most 256 characters")
    return value


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str
    phone: Optional[str] = Field(default=None, max_length=32)
    name: Optional[str] = Field(default=None, max_length=128)
    channels: List[ChannelName] = Field(default_factory=lambda: ["email"], min_length=1, max_length=2)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return normalize_phone(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("channels")
    @classmethod
    def _unique_channels(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("each channel may be requested once")
        return value


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=3, max_length=254, description="Email or phone")
    password: str = Field(..., min_length=1, max_length=256)
    channels: Optional[List[ChannelName]] = Field(default=None, max_length=2)


# Format checks on these fields belong to the orchestrator so that a
# malformed attempt is still recorded as a security event.
class VerifyRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=32)
    channel: str = Field(..., max_length=32)


class ResendRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    channel: str = Field(..., max_length=32)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    scope: str
    issued_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime


class ChannelStatusResponse(BaseModel):
    channel: ChannelName
    destination: str = Field(..., description="Masked destination")
    delivered: bool
    resend_available_at: Optional[datetime] = None


class StepUpResponse(BaseModel):
    session_id: str
    flow: str
    expires_at: datetime
    channels: List[ChannelStatusResponse]
    step_up_required: bool = True


class LoginResponse(BaseModel):
    subject_id: str
    step_up_required: bool
    tokens: Optional[TokenResponse] = None
    step_up: Optional[StepUpResponse] = None


class VerifyResponse(BaseModel):
    subject_id: str
    session_id: str
    flow: str
    channel: ChannelName
    tokens: TokenResponse


class ResendResponse(BaseModel):
    session_id: str
    channel: ChannelName
    destination: str
    expires_at: datetime
    resend_available_at: datetime


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str
    expires_at: datetime


class HealthResponse(BaseModel):
    status: str
    redis: str
    audit_queue_depth: int
    audit_events_dropped: int
    version: str
