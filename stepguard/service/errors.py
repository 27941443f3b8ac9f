from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on. Messages are safe to return verbatim: they never
    contain a passcode, a raw destination or a credential.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


# Input errors: rejected before any state is touched


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Primary credential check failed (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class IdentityExists(ServiceError):
    """Registration for an email or phone that already has an identity (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidToken(ServiceError):
    """Bearer or refresh token failed validation (401)."""
    status_code = 401
    error_code = "invalid_token"


# Policy errors: terminal for the current attempt


class InvalidCode(ServiceError):
    """Submitted passcode did not match; the session is still pending (401)."""
    status_code = 401
    error_code = "invalid_code"


class SessionNotFound(ServiceError):
    """Unknown verification session; the caller must restart the flow (404)."""
    status_code = 404
    error_code = "session_not_found"


class SessionExpired(ServiceError):
    """Verification session lifetime elapsed (410)."""
    status_code = 410
    error_code = "session_expired"


class SessionAlreadyTerminal(ServiceError):
    """Session already reached VERIFIED, EXPIRED or LOCKED (409)."""
    status_code = 409
    error_code = "session_already_terminal"


class TooManyAttempts(ServiceError):
    """Session locked after repeated wrong passcodes (429)."""
    status_code = 429
    error_code = "too_many_attempts"


class AccountLocked(ServiceError):
    """Login temporarily suspended for this identity (423)."""
    status_code = 423
    error_code = "account_locked"


class ResendNotAllowed(ServiceError):
    """Resend requested before the channel cooldown elapsed (429)."""
    status_code = 429
    error_code = "resend_not_allowed"


# Collaborator errors


class DeliveryRejected(ServiceError):
    """Transport reachable but declined the message (422)."""
    status_code = 422
    error_code = "delivery_rejected"


class ChannelUnavailable(ServiceError):
    """Transport could not be reached or timed out (503)."""
    status_code = 503
    error_code = "channel_unavailable"


class EntropySourceUnavailable(ServiceError):
    """Secure random source could not be read (503)."""
    status_code = 503
    error_code = "entropy_unavailable"


class SigningKeyUnavailable(ServiceError):
    """Token signing key is not configured (503)."""
    status_code = 503
    error_code = "signing_key_unavailable"


class FederationError(ServiceError):
    """Identity-provider handshake failed (401)."""
    status_code = 401
    error_code = "federation_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "IdentityExists",
    "InvalidToken",
    "InvalidCode",
    "SessionNotFound",
    "SessionExpired",
    "SessionAlreadyTerminal",
    "TooManyAttempts",
    "AccountLocked",
    "ResendNotAllowed",
    "DeliveryRejected",
    "ChannelUnavailable",
    "EntropySourceUnavailable",
    "SigningKeyUnavailable",
    "FederationError",
]
