from __future__ import annotations

import asyncio
import base64
import contextlib
import math
import os
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from stepguard.config import Settings
from stepguard.logging import get_logger
from stepguard.service.attempts import AttemptTracker
from stepguard.service.audit import SecurityEventLog, SecurityEventType, Severity
from stepguard.service.channels import (
    ChannelDispatcher,
    DeliveryContext,
    DeliveryReceipt,
    normalize_email,
    normalize_phone,
)
from stepguard.service.errors import (
    AccountLocked,
    ChannelUnavailable,
    DeliveryRejected,
    FederationError,
    IdentityExists,
    InvalidCode,
    InvalidCredentials,
    ResendNotAllowed,
    ServiceError,
    SessionAlreadyTerminal,
    SessionExpired,
    SessionNotFound,
    TooManyAttempts,
    ValidationError,
)
from stepguard.service.federation import GoogleIdentityProvider
from stepguard.service.masking import (
    mask_destination,
    mask_email,
    mask_identifier,
    mask_login_identifier,
)
from stepguard.service.otp import CodeHasher, OTPGenerator, is_well_formed
from stepguard.service.tokens import TokenIssuer
from stepguard.storage.errors import ConstraintViolation
from stepguard.storage.models import (
    ChannelKind,
    ChannelSpec,
    FlowKind,
    Identity,
    SessionStatus,
    VerificationSession,
    utc_now,
)
from stepguard.storage.redis_cache import RedisCache
from stepguard.storage.sessions import SessionStore

logger = get_logger(__name__)

_MIN_PASSWORD_LENGTH = 8
_MAX_PASSWORD_LENGTH = 256
_OAUTH_STATE_TTL = timedelta(minutes=10)
_UNUSABLE_PASSWORD_ALGO = "oauth"


class IdentityStore(Protocol):
    def find_identity(
        self, *, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[Identity]: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def create_identity(
        self,
        email: Optional[str],
        *,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        is_active: bool = True,
        two_factor_enabled: bool = True,
        meta: Optional[dict] = None,
    ) -> Identity: ...

    def activate_identity(self, identity_id: str) -> Identity: ...

    def delete_identity(self, identity_id: str) -> bool: ...

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]: ...

    def link_identity_provider(
        self, identity_id: str, provider: str, provider_uid: str
    ) -> None: ...

    def get_identity_by_provider(
        self, provider: str, provider_uid: str
    ) -> Optional[Identity]: ...


@dataclass(frozen=True)
class ChannelStatus:
    channel: ChannelKind
    destination: str
    delivered: bool
    resend_available_at: Optional[datetime]


@dataclass(frozen=True)
class StepUpHandle:
    """What the caller needs to drive the passcode step: never the code itself."""

    session_id: str
    flow: FlowKind
    expires_at: datetime
    channels: List[ChannelStatus] = field(default_factory=list)


@dataclass(frozen=True)
class LoginResult:
    subject_id: str
    tokens: Optional[Dict[str, Any]] = None
    step_up: Optional[StepUpHandle] = None

    @property
    def step_up_required(self) -> bool:
        return self.step_up is not None


@dataclass(frozen=True)
class VerifyResult:
    subject_id: str
    session_id: str
    flow: FlowKind
    channel: ChannelKind
    tokens: Dict[str, Any]


@dataclass(frozen=True)
class ResendResult:
    session_id: str
    channel: ChannelKind
    destination: str
    expires_at: datetime
    resend_available_at: datetime


class AuthOrchestrator:
    """Drives registration, login, federated login and passcode step-up.

    Every public operation emits exactly one security event, success or
    failure, with masked identifiers only. Mutations of one verification
    session are serialized through ``SessionStore.lock``; delivery I/O for a
    resend happens outside that lock so a slow transport never holds it.
    """

    def __init__(
        self,
        store: IdentityStore,
        sessions: SessionStore,
        attempts: AttemptTracker,
        dispatcher: ChannelDispatcher,
        tokens: TokenIssuer,
        audit: SecurityEventLog,
        settings: Settings,
        *,
        generator: Optional[OTPGenerator] = None,
        hasher: Optional[CodeHasher] = None,
        providers: Optional[Mapping[str, GoogleIdentityProvider]] = None,
        cache: Optional[RedisCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store: IdentityStore = store
        self.sessions = sessions
        self.attempts = attempts
        self.dispatcher = dispatcher
        self.tokens = tokens
        self.audit = audit
        self.settings = settings
        self.generator = generator or OTPGenerator()
        self.hasher = hasher or CodeHasher(settings.otp_hash_secret)
        self.providers: Dict[str, GoogleIdentityProvider] = dict(providers or {})
        self.cache = cache
        self._clock = clock
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._last_cleanup = clock()
        self.logger = logger

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def start_registration(
        self,
        email: str,
        password: str,
        *,
        phone: Optional[str] = None,
        name: Optional[str] = None,
        channels: Iterable[ChannelKind | str] = (ChannelKind.EMAIL,),
    ) -> StepUpHandle:
        """Create a pending identity and open a step-up session for it.

        The identity stays inactive until a passcode from any requested
        channel is verified.
        """
        self.maybe_cleanup()
        masked = mask_email(email) if isinstance(email, str) else "***"
        try:
            handle = await self._register(email, password, phone, name, channels)
        except Exception as exc:
            self._emit_failure(
                SecurityEventType.REGISTRATION_FAILED, exc, destination=masked
            )
            raise
        self.audit.emit(
            SecurityEventType.REGISTRATION_STARTED,
            {
                "session": mask_identifier(handle.session_id),
                "destinations": [c.destination for c in handle.channels],
                "delivered": [c.channel.value for c in handle.channels if c.delivered],
            },
        )
        return handle

    async def _register(
        self,
        email: str,
        password: str,
        phone: Optional[str],
        name: Optional[str],
        channels: Iterable[ChannelKind | str],
    ) -> StepUpHandle:
        kinds = self._parse_channels(channels)
        email = self.dispatcher.validate_destination(ChannelKind.EMAIL, email)
        if phone:
            phone = self.dispatcher.validate_destination(ChannelKind.MESSAGING, phone)
        if ChannelKind.MESSAGING in kinds and not phone:
            raise ValidationError(
                "a phone number is required for the messaging channel",
                detail={"channel": ChannelKind.MESSAGING.value},
            )
        self._check_password(password)

        for existing in (
            self.store.find_identity(email=email),
            self.store.find_identity(phone=phone) if phone else None,
        ):
            if existing is None:
                continue
            if existing.is_active or not (existing.meta or {}).get("pending_registration"):
                raise IdentityExists("an account already exists for these details")
            # An abandoned registration never verified; the new one replaces it
            self.store.delete_identity(existing.id)
            self.logger.info(
                "pending_registration_replaced", identity=mask_identifier(existing.id)
            )

        try:
            identity = self.store.create_identity(
                email,
                phone=phone,
                name=name,
                is_active=False,
                meta={"pending_registration": True},
            )
        except ConstraintViolation as exc:
            raise IdentityExists("an account already exists for these details") from exc
        self.save_password(identity.id, password)

        destinations = {ChannelKind.EMAIL: email, ChannelKind.MESSAGING: phone}
        specs = [ChannelSpec(kind, destinations[kind]) for kind in kinds]
        return await self._open_step_up(identity.id, specs, FlowKind.REGISTRATION)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def start_login(
        self,
        identifier: str,
        password: str,
        *,
        channels: Optional[Iterable[ChannelKind | str]] = None,
    ) -> LoginResult:
        """Check the primary credential, then either issue tokens or step up.

        A locked identity is rejected before the password is looked at.
        """
        self.maybe_cleanup()
        masked = mask_login_identifier(identifier if isinstance(identifier, str) else "")
        try:
            result = await self._login(identifier, password, channels)
        except Exception as exc:
            self._emit_failure(SecurityEventType.LOGIN_FAILED, exc, identifier=masked)
            raise
        if result.step_up is not None:
            self.audit.emit(
                SecurityEventType.LOGIN_STEP_UP_STARTED,
                {
                    "identifier": masked,
                    "subject": mask_identifier(result.subject_id),
                    "session": mask_identifier(result.step_up.session_id),
                    "destinations": [c.destination for c in result.step_up.channels],
                },
            )
        else:
            self.audit.emit(
                SecurityEventType.LOGIN_SUCCEEDED,
                {"identifier": masked, "subject": mask_identifier(result.subject_id)},
            )
        return result

    async def _login(
        self,
        identifier: str,
        password: str,
        channels: Optional[Iterable[ChannelKind | str]],
    ) -> LoginResult:
        login_id = self._normalize_login_identifier(identifier)
        if await self.attempts.is_login_locked(login_id):
            raise AccountLocked("too many failed logins; try again later")

        if "@" in login_id:
            identity = self.store.find_identity(email=login_id)
        else:
            identity = self.store.find_identity(phone=login_id)

        if identity is None:
            # Same hashing cost whether or not the identity exists
            self._burn_password_check(password)
            valid = False
        else:
            valid = identity.is_active and self.verify_password(identity.id, password)
        if not valid:
            locked = await self.attempts.record_login_failure(login_id)
            raise InvalidCredentials(
                "invalid credentials", detail={"locked": True} if locked else None
            )

        if not identity.two_factor_enabled:
            tokens = self.tokens.issue(identity.id)
            await self.attempts.reset_login(login_id)
            return LoginResult(subject_id=identity.id, tokens=tokens)

        available = {
            ChannelKind.EMAIL: identity.email,
            ChannelKind.MESSAGING: identity.phone,
        }
        requested = (
            self._parse_channels(channels)
            if channels is not None
            else [kind for kind, dest in available.items() if dest]
        )
        specs = []
        for kind in requested:
            if not available.get(kind):
                raise ValidationError(
                    f"no {kind.value} destination on file", detail={"channel": kind.value}
                )
            specs.append(ChannelSpec(kind, available[kind]))
        handle = await self._open_step_up(
            identity.id, specs, FlowKind.LOGIN, meta={"login_identifier": login_id}
        )
        return LoginResult(subject_id=identity.id, step_up=handle)

    # ------------------------------------------------------------------
    # Step-up verification
    # ------------------------------------------------------------------

    async def verify(
        self, session_id: str, code: str, channel: ChannelKind | str
    ) -> VerifyResult:
        """Check ``code`` for one channel of the session and mint tokens on match.

        The first matching verify wins; every later call on the same session
        fails with ``SessionAlreadyTerminal``.
        """
        try:
            result = await self._verify(session_id, code, channel)
        except Exception as exc:
            self._emit_failure(
                SecurityEventType.OTP_VERIFICATION_FAILED,
                exc,
                session=mask_identifier(session_id),
                channel=str(getattr(channel, "value", channel)),
            )
            raise
        event_type = (
            SecurityEventType.REGISTRATION_COMPLETED
            if result.flow is FlowKind.REGISTRATION
            else SecurityEventType.OTP_VERIFIED
        )
        self.audit.emit(
            event_type,
            {
                "session": mask_identifier(result.session_id),
                "subject": mask_identifier(result.subject_id),
                "channel": result.channel.value,
                "flow": result.flow.value,
            },
        )
        return result

    async def _verify(
        self, session_id: str, code: str, channel: ChannelKind | str
    ) -> VerifyResult:
        kind = self._parse_channel(channel)
        if not is_well_formed(code):
            raise ValidationError("code must be 6 digits")

        async with self.sessions.lock(session_id):
            session = self.sessions.get(session_id)
            if session.status is SessionStatus.LOCKED:
                raise TooManyAttempts("too many incorrect codes; start again")
            if session.status is SessionStatus.VERIFIED:
                raise SessionAlreadyTerminal("verification session already completed")
            if await self.attempts.is_otp_blocked(session.id):
                self.sessions.update(session.id, _mark_locked)
                raise TooManyAttempts("too many incorrect codes; start again")

            entry = session.channel(kind)
            if entry is None or not entry.is_live:
                raise ValidationError(
                    f"no active code for the {kind.value} channel",
                    detail={"channel": kind.value},
                )

            if not self.hasher.matches(code, session.id, kind, entry.code_hash):
                failure = await self.attempts.record_otp_failure(session.id)
                if failure.blocked:
                    self.sessions.update(session.id, _mark_locked)
                    self.logger.warning(
                        "otp_session_locked", session=mask_identifier(session.id)
                    )
                    raise TooManyAttempts(
                        "too many incorrect codes; start again", detail={"locked": True}
                    )
                raise InvalidCode(
                    "incorrect code",
                    detail={"remaining_attempts": failure.remaining},
                )

            identity = self.store.get_identity(session.subject_id)
            if identity is None or (
                session.flow is FlowKind.LOGIN and not identity.is_active
            ):
                raise SessionNotFound("identity for this session is no longer available")

            # Mint first: a missing signing key leaves the session pending
            tokens = self.tokens.issue(session.subject_id, session_id=session.id)
            if session.flow is not FlowKind.LOGIN:
                self._complete_identity(identity, session)

            verified_at = self._clock()

            def _mark_verified(target: VerificationSession) -> None:
                target.status = SessionStatus.VERIFIED
                target.verified_channel = kind
                target.verified_at = verified_at
                for other in target.channels.values():
                    if other.kind is kind:
                        other.consumed_at = verified_at
                    else:
                        other.code_hash = None

            session = self.sessions.update(session.id, _mark_verified)

        await self.attempts.reset_otp(session.id)
        login_id = (session.meta or {}).get("login_identifier")
        if login_id:
            await self.attempts.reset_login(login_id)
        return VerifyResult(
            subject_id=session.subject_id,
            session_id=session.id,
            flow=session.flow,
            channel=kind,
            tokens=tokens,
        )

    def _complete_identity(self, identity: Identity, session: VerificationSession) -> None:
        meta = session.meta or {}
        if session.flow is FlowKind.FEDERATED and meta.get("provider_uid"):
            self.store.link_identity_provider(
                identity.id, meta["provider"], meta["provider_uid"]
            )
        if not identity.is_active:
            self.store.activate_identity(identity.id)

    # ------------------------------------------------------------------
    # Resend
    # ------------------------------------------------------------------

    async def resend(self, session_id: str, channel: ChannelKind | str) -> ResendResult:
        """Deliver a fresh code on one channel, voiding that channel's old code.

        The session lifetime is not extended.
        """
        try:
            result = await self._resend(session_id, channel)
        except Exception as exc:
            self._emit_failure(
                SecurityEventType.OTP_RESEND_FAILED,
                exc,
                session=mask_identifier(session_id),
                channel=str(getattr(channel, "value", channel)),
            )
            raise
        self.audit.emit(
            SecurityEventType.OTP_RESENT,
            {
                "session": mask_identifier(result.session_id),
                "channel": result.channel.value,
                "destination": result.destination,
            },
        )
        return result

    async def _resend(self, session_id: str, channel: ChannelKind | str) -> ResendResult:
        kind = self._parse_channel(channel)

        async with self.sessions.lock(session_id):
            session = self.sessions.get(session_id)
            if session.status is SessionStatus.LOCKED:
                raise TooManyAttempts("too many incorrect codes; start again")
            if session.status is SessionStatus.VERIFIED:
                raise SessionAlreadyTerminal("verification session already completed")
            entry = session.channel(kind)
            if entry is None:
                raise ValidationError(
                    f"{kind.value} is not a channel of this session",
                    detail={"channel": kind.value},
                )
            now = self._clock()
            if entry.resend_available_at and now < entry.resend_available_at:
                wait = math.ceil((entry.resend_available_at - now).total_seconds())
                raise ResendNotAllowed(
                    "a new code cannot be requested yet",
                    detail={
                        "retry_after_seconds": wait,
                        "resend_available_at": entry.resend_available_at.isoformat(),
                    },
                )
            previous = entry.resend_available_at
            reserved = self._resend_available_at(now, session.expires_at)

            def _reserve(target: VerificationSession) -> None:
                target.channels[kind].resend_available_at = reserved

            # Holding the slot keeps a concurrent resend out while we deliver
            self.sessions.update(session.id, _reserve)
            destination = entry.destination
            flow = session.flow

        try:
            code = self.generator.generate()
            code_hash = self.hasher.hash(code, session_id, kind)
            receipt = await self.dispatcher.deliver(
                kind,
                destination,
                code,
                DeliveryContext(session_id, flow, self.settings.otp_ttl_minutes),
            )
        except BaseException:
            await self._release_resend_slot(session_id, kind, reserved, previous)
            raise

        async with self.sessions.lock(session_id):

            def _commit(target: VerificationSession) -> None:
                slot = target.channels[kind]
                slot.code_hash = code_hash
                slot.delivered_at = receipt.delivered_at
                slot.receipt_id = receipt.message_id
                slot.resend_available_at = self._resend_available_at(
                    receipt.delivered_at, target.expires_at
                )

            session = self.sessions.update(session_id, _commit)

        committed = session.channels[kind]
        return ResendResult(
            session_id=session.id,
            channel=kind,
            destination=mask_destination(kind, destination),
            expires_at=session.expires_at,
            resend_available_at=committed.resend_available_at or session.expires_at,
        )

    async def _release_resend_slot(
        self,
        session_id: str,
        kind: ChannelKind,
        reserved: datetime,
        previous: Optional[datetime],
    ) -> None:
        def _restore(target: VerificationSession) -> None:
            slot = target.channels[kind]
            if slot.resend_available_at == reserved:
                slot.resend_available_at = previous

        # A session that finished meanwhile has nothing to restore
        with contextlib.suppress(SessionNotFound, SessionExpired, SessionAlreadyTerminal):
            async with self.sessions.lock(session_id):
                self.sessions.update(session_id, _restore)

    # ------------------------------------------------------------------
    # Federated login
    # ------------------------------------------------------------------

    async def start_federated(self, provider: str) -> dict:
        self.maybe_cleanup()
        try:
            result = await self._start_federated(provider)
        except Exception as exc:
            self._emit_failure(
                SecurityEventType.FEDERATED_LOGIN_FAILED, exc, provider=str(provider)
            )
            raise
        self.audit.emit(
            SecurityEventType.FEDERATED_LOGIN_STARTED,
            {"provider": provider, "state": mask_identifier(result["state"])},
        )
        return result

    async def _start_federated(self, provider: str) -> dict:
        idp = self._provider(provider)
        state = secrets.token_urlsafe(32)
        expires_at = self._clock() + _OAUTH_STATE_TTL
        authorization_url = idp.authorization_url(state)
        with self._state_lock:
            self._oauth_states[state] = (provider, expires_at)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        return {
            "authorization_url": authorization_url,
            "state": state,
            "provider": provider,
            "expires_at": expires_at,
        }

    async def handle_federated_callback(
        self, provider: str, code: str, state: str
    ) -> StepUpHandle:
        """Turn an identity-provider callback into a passcode step-up.

        Tokens are never issued here; the provider's verified email becomes
        the step-up channel.
        """
        try:
            handle = await self._federated_callback(provider, code, state)
        except Exception as exc:
            self._emit_failure(
                SecurityEventType.FEDERATED_CALLBACK_FAILED, exc, provider=str(provider)
            )
            raise
        self.audit.emit(
            SecurityEventType.FEDERATED_CALLBACK_COMPLETED,
            {
                "provider": provider,
                "session": mask_identifier(handle.session_id),
                "destinations": [c.destination for c in handle.channels],
            },
        )
        return handle

    async def _federated_callback(
        self, provider: str, code: str, state: str
    ) -> StepUpHandle:
        idp = self._provider(provider)
        stored = await self._pop_oauth_state(state)
        if not stored or stored[1] < self._clock() or stored[0] != provider:
            raise FederationError("invalid or expired federation state")

        profile = await idp.authenticate(code)
        try:
            email = normalize_email(profile.email)
        except ValueError as exc:
            raise FederationError("identity provider returned an unusable email") from exc

        identity = self.store.get_identity_by_provider(provider, profile.provider_uid)
        if identity is None:
            identity = self.store.find_identity(email=email)
        if identity is None:
            identity = self.store.create_identity(
                email,
                name=profile.name,
                is_active=False,
                meta={"federated_provider": provider},
            )
            # Unusable password marker so password login cannot succeed
            unusable_secret = base64.urlsafe_b64encode(os.urandom(24)).decode()
            self.store.save_password(identity.id, unusable_secret, _UNUSABLE_PASSWORD_ALGO)

        return await self._open_step_up(
            identity.id,
            [ChannelSpec(ChannelKind.EMAIL, email)],
            FlowKind.FEDERATED,
            meta={"provider": provider, "provider_uid": profile.provider_uid},
        )

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        stored = None
        if self.cache:
            try:
                stored = await self.cache.pop_oauth_state(state)
            except Exception as exc:
                # Fail closed rather than risk reusing a state
                self.logger.error("pop_oauth_state_failed", error=str(exc))
                raise FederationError(
                    "federation state unavailable", status_code=503
                ) from exc
        with self._state_lock:
            local = self._oauth_states.pop(state, None)
        return stored or local

    def _provider(self, provider: str) -> GoogleIdentityProvider:
        idp = self.providers.get(provider)
        if idp is None:
            raise ValidationError(
                f"unsupported identity provider: {provider}", detail={"provider": provider}
            )
        return idp

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        tokens = await self.tokens.refresh(refresh_token)
        self.logger.info("tokens_refreshed")
        return tokens

    # ------------------------------------------------------------------
    # Shared step-up machinery
    # ------------------------------------------------------------------

    async def _open_step_up(
        self,
        subject_id: str,
        specs: List[ChannelSpec],
        flow: FlowKind,
        *,
        meta: Optional[dict] = None,
    ) -> StepUpHandle:
        """Create a session and deliver one code per channel.

        Channels whose delivery fails stay undelivered and may be resent at
        once. If no channel could be reached the session is expired and the
        first delivery error is raised.
        """
        session = self.sessions.create(subject_id, specs, flow=flow, meta=meta)
        try:
            codes = {spec.kind: self.generator.generate() for spec in specs}
        except ServiceError:
            self.sessions.expire(session.id)
            raise
        context = DeliveryContext(session.id, flow, self.settings.otp_ttl_minutes)
        outcomes = await asyncio.gather(
            *(
                self.dispatcher.deliver(spec.kind, spec.destination, codes[spec.kind], context)
                for spec in specs
            ),
            return_exceptions=True,
        )

        delivered: Dict[ChannelKind, Tuple[str, DeliveryReceipt]] = {}
        failures: List[ServiceError] = []
        for spec, outcome in zip(specs, outcomes):
            if isinstance(outcome, (ChannelUnavailable, DeliveryRejected, ValidationError)):
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                self.sessions.expire(session.id)
                raise outcome
            else:
                code_hash = self.hasher.hash(codes[spec.kind], session.id, spec.kind)
                delivered[spec.kind] = (code_hash, outcome)
        codes.clear()

        if not delivered:
            self.sessions.expire(session.id)
            raise failures[0]

        def _commit(target: VerificationSession) -> None:
            for kind, (code_hash, receipt) in delivered.items():
                slot = target.channels[kind]
                slot.code_hash = code_hash
                slot.delivered_at = receipt.delivered_at
                slot.receipt_id = receipt.message_id
                slot.resend_available_at = self._resend_available_at(
                    receipt.delivered_at, target.expires_at
                )

        async with self.sessions.lock(session.id):
            session = self.sessions.update(session.id, _commit)
        if failures:
            self.logger.warning(
                "step_up_partial_delivery",
                session=mask_identifier(session.id),
                failed=[f.detail.get("channel") for f in failures],
            )
        return self._handle(session)

    def _resend_available_at(self, delivered_at: datetime, expires_at: datetime) -> datetime:
        cooldown = timedelta(seconds=self.settings.otp_resend_cooldown_seconds)
        return min(delivered_at + cooldown, expires_at)

    @staticmethod
    def _handle(session: VerificationSession) -> StepUpHandle:
        return StepUpHandle(
            session_id=session.id,
            flow=session.flow,
            expires_at=session.expires_at,
            channels=[
                ChannelStatus(
                    channel=entry.kind,
                    destination=mask_destination(entry.kind, entry.destination),
                    delivered=entry.code_hash is not None,
                    resend_available_at=entry.resend_available_at,
                )
                for entry in session.channels.values()
            ],
        )

    @staticmethod
    def _parse_channel(value: ChannelKind | str) -> ChannelKind:
        if isinstance(value, ChannelKind):
            return value
        try:
            return ChannelKind(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(
                f"unsupported channel: {value}", detail={"channel": str(value)}
            ) from exc

    def _parse_channels(self, values: Iterable[ChannelKind | str]) -> List[ChannelKind]:
        kinds = [self._parse_channel(value) for value in values]
        if not kinds:
            raise ValidationError("at least one channel is required")
        if len(set(kinds)) != len(kinds):
            raise ValidationError("each channel may be requested once")
        return kinds

    @staticmethod
    def _normalize_login_identifier(identifier: str) -> str:
        try:
            if isinstance(identifier, str) and "@" in identifier:
                return normalize_email(identifier)
            return normalize_phone(identifier)
        except ValueError as exc:
            raise ValidationError("identifier must be an email or phone number") from exc

    def _emit_failure(
        self, event_type: SecurityEventType, exc: BaseException, **payload: Any
    ) -> None:
        detail = getattr(exc, "detail", None) or {}
        severity = Severity.CRITICAL if detail.get("locked") else Severity.WARNING
        payload["error_code"] = getattr(exc, "error_code", "server_error")
        if "remaining_attempts" in detail:
            payload["remaining_attempts"] = detail["remaining_attempts"]
        self.audit.emit(event_type, payload, severity=severity)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @staticmethod
    def _check_password(password: str) -> None:
        if not isinstance(password, str) or not (
            _MIN_PASSWORD_LENGTH <= len(password) <= _MAX_PASSWORD_LENGTH
        ):
            raise ValidationError(
                f"password must be {_MIN_PASSWORD_LENGTH}-{_MAX_PASSWORD_LENGTH} characters"
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, identity_id: str, password: str) -> bool:
        """Verify an identity's password against its stored hash."""
        record = self.store.get_password_record(identity_id)
        if not record:
            self.logger.warning("password_record_missing", identity=mask_identifier(identity_id))
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", identity=mask_identifier(identity_id), algo=algo
            )
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning(
                "password_verification_failed", identity=mask_identifier(identity_id)
            )
            return False

    def save_password(self, identity_id: str, password: str) -> None:
        """Hash and save a new password for an identity."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(identity_id, pwd_hash, algo)

    def _burn_password_check(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        with contextlib.suppress(VerificationError, InvalidHash):
            self._pwd_hasher.verify(self._dummy_hash, password or "")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_expired_states(self) -> int:
        """Reclaim expired sessions, stale attempt records and OAuth states."""
        now = self._clock()
        with self._state_lock:
            expired_oauth = [
                state for state, (_, expires_at) in self._oauth_states.items()
                if expires_at <= now
            ]
            for state in expired_oauth:
                self._oauth_states.pop(state, None)
        sessions = self.sessions.cleanup_expired()
        attempts = self.attempts.cleanup_expired()
        cleaned = len(expired_oauth) + sessions + attempts
        if cleaned > 0:
            self.logger.debug(
                "auth_state_cleanup",
                cleaned=cleaned,
                oauth=len(expired_oauth),
                sessions=sessions,
                attempts=attempts,
            )
        self._last_cleanup = now
        return cleaned

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Run cleanup if ``interval_minutes`` elapsed since the last one."""
        now = self._clock()
        if (now - self._last_cleanup).total_seconds() >= interval_minutes * 60:
            return self.cleanup_expired_states()
        return 0


def _mark_locked(target: VerificationSession) -> None:
    target.status = SessionStatus.LOCKED
