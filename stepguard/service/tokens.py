from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from stepguard.config import Settings
from stepguard.logging import get_logger
from stepguard.service.errors import InvalidToken, SigningKeyUnavailable
from stepguard.service.masking import mask_identifier
from stepguard.storage.models import utc_now
from stepguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class TokenIssuer:
    """Mints HS256 access/refresh token pairs bound to a verified subject.

    Tokens carry ``iss``, ``aud``, ``sub``, ``iat``, ``exp``, a ``jti`` and the
    granted ``scope``. A missing signing key is the only failure mode of
    ``issue`` and is never retried.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._state_lock = threading.Lock()
        self.revoked_refresh_tokens: set[str] = set()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    def _signing_key(self) -> bytes:
        secret = self.settings.jwt_secret
        if not secret:
            logger.error("jwt_signing_key_missing")
            raise SigningKeyUnavailable("token signing key unavailable")
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        key = self._signing_key()
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def decode(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Validate signature and claims; returns None for any invalid token."""
        key = self._signing_key()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if expected_type and payload.get("token_type") != expected_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue(
        self,
        subject_id: str,
        *,
        scopes: Optional[Iterable[str]] = None,
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        # Fail before building anything if the key is absent
        self._signing_key()
        now = self._clock()
        scope = " ".join(scopes if scopes is not None else self.settings.default_scopes)
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "iat": int(now.timestamp()),
            "scope": scope,
        }
        if session_id:
            base["sid"] = session_id
        access_payload = {
            **base,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            **base,
            "token_type": "refresh",
            "jti": str(uuid.uuid4()),
            "exp": int(refresh_exp.timestamp()),
        }
        return {
            "access_token": self._encode_jwt(access_payload),
            "refresh_token": self._encode_jwt(refresh_payload),
            "token_type": "bearer",
            "scope": scope,
            "issued_at": now.isoformat(),
            "expires_at": access_exp.isoformat(),
            "refresh_expires_at": refresh_exp.isoformat(),
        }

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        """Rotate a refresh token: the presented one is revoked, a new pair issued."""
        payload = self.decode(refresh_token, expected_type="refresh")
        if not payload:
            raise InvalidToken("invalid refresh token")
        jti = payload.get("jti")
        if not jti or await self._is_refresh_revoked(jti):
            logger.warning("refresh_token_reuse", jti=mask_identifier(jti))
            raise InvalidToken("invalid refresh token")
        scopes = str(payload.get("scope") or "").split()
        tokens = self.issue(payload["sub"], scopes=scopes, session_id=payload.get("sid"))
        await self._revoke_refresh_token(jti, payload.get("exp"))
        return tokens

    async def _revoke_refresh_token(self, jti: str, exp: Any = None) -> None:
        with self._state_lock:
            self.revoked_refresh_tokens.add(jti)
        if not self.cache:
            return
        ttl = self.settings.refresh_token_ttl_minutes * 60
        if isinstance(exp, (int, float)):
            ttl = max(int(exp - self._clock().timestamp()), 1)
        try:
            await self.cache.mark_refresh_revoked(jti, ttl)
        except Exception as exc:
            logger.warning(
                "cache_revoked_refresh_token_failed", jti=mask_identifier(jti), error=str(exc)
            )

    async def _is_refresh_revoked(self, jti: str) -> bool:
        with self._state_lock:
            if jti in self.revoked_refresh_tokens:
                return True
        if self.cache:
            try:
                return await self.cache.is_refresh_revoked(jti)
            except Exception as exc:
                # SECURITY: treat as revoked while the cache is unreachable
                logger.warning(
                    "check_revoked_refresh_token_failed_defaulting_to_revoked",
                    jti=mask_identifier(jti),
                    error=str(exc),
                )
                return True
        return False
