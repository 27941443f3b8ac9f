from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


class ChannelKind(str, Enum):
    """Out-of-band delivery paths for a passcode."""

    EMAIL = "email"
    MESSAGING = "messaging"


class SessionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    LOCKED = "locked"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.PENDING


class FlowKind(str, Enum):
    """Which primary step opened the verification session."""

    REGISTRATION = "registration"
    LOGIN = "login"
    FEDERATED = "federated"


@dataclass(frozen=True)
class ChannelSpec:
    kind: ChannelKind
    destination: str


@dataclass
class ChannelEntry:
    """One channel of a verification session.

    ``code_hash`` is the only trace of the passcode that is ever stored; it is
    replaced on resend so at most one code is live per channel.
    """

    kind: ChannelKind
    destination: str
    code_hash: Optional[str] = None
    delivered_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    resend_available_at: Optional[datetime] = None
    receipt_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.code_hash is not None and self.consumed_at is None


@dataclass
class VerificationSession:
    id: str
    subject_id: str
    flow: FlowKind
    created_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.PENDING
    channels: Dict[ChannelKind, ChannelEntry] = field(default_factory=dict)
    verified_channel: Optional[ChannelKind] = None
    verified_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        subject_id: str,
        channel_specs: Iterable[ChannelSpec],
        *,
        flow: FlowKind,
        ttl_minutes: int,
        now: datetime,
        meta: Dict | None = None,
    ) -> "VerificationSession":
        channels: Dict[ChannelKind, ChannelEntry] = {}
        for spec in channel_specs:
            # Undelivered channels may be (re)sent immediately
            channels[spec.kind] = ChannelEntry(
                kind=spec.kind, destination=spec.destination, resend_available_at=now
            )
        return cls(
            id=secrets.token_hex(32),
            subject_id=subject_id,
            flow=flow,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            channels=channels,
            meta=meta,
        )

    def channel(self, kind: ChannelKind) -> Optional[ChannelEntry]:
        return self.channels.get(kind)

    def channel_kinds(self) -> List[ChannelKind]:
        return list(self.channels.keys())

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class Identity:
    id: str
    email: Optional[str]
    phone: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    is_active: bool = True
    two_factor_enabled: bool = True
    meta: Dict | None = None

    @staticmethod
    def new_id() -> str:
        return secrets.token_hex(16)


@dataclass
class IdentityProviderLink:
    identity_id: str
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=utc_now)
