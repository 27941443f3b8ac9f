from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from stepguard.logging import get_logger
from stepguard.service.errors import EntropySourceUnavailable
from stepguard.storage.models import ChannelKind

logger = get_logger(__name__)

CODE_LENGTH = 6
_CODE_FLOOR = 10 ** (CODE_LENGTH - 1)
_CODE_SPAN = 10**CODE_LENGTH - _CODE_FLOOR


def is_well_formed(code: Optional[str]) -> bool:
    return isinstance(code, str) and len(code) == CODE_LENGTH and code.isdigit()


class OTPGenerator:
    """Six-digit passcodes drawn from the operating system CSPRNG.

    Codes are uniform over [100000, 999999]. There is no fallback source: if
    the CSPRNG cannot be read the calling operation fails.
    """

    def generate(self) -> str:
        try:
            value = _CODE_FLOOR + secrets.randbelow(_CODE_SPAN)
        except (OSError, NotImplementedError) as exc:
            logger.error("otp_entropy_unavailable", error_type=type(exc).__name__)
            raise EntropySourceUnavailable("secure random source unavailable") from exc
        return str(value)


class CodeHasher:
    """Keyed hashing of passcodes bound to a session and channel.

    Binding the digest to ``session_id`` and ``channel`` means the same
    six digits issued to two sessions never produce correlatable hashes.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        if secret:
            self._key = secret.encode()
        else:
            # Process-local key; codes do not outlive a restart anyway
            self._key = secrets.token_bytes(32)

    def hash(self, code: str, session_id: str, channel: ChannelKind) -> str:
        message = f"{session_id}:{channel.value}:{code}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def matches(
        self, code: str, session_id: str, channel: ChannelKind, stored_hash: Optional[str]
    ) -> bool:
        if not stored_hash:
            return False
        candidate = self.hash(code, session_id, channel)
        # SECURITY: constant-time comparison to avoid timing side channels
        return hmac.compare_digest(candidate, stored_hash)
