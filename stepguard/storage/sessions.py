from __future__ import annotations

import asyncio
import copy
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, Optional

from stepguard.logging import get_logger
from stepguard.service.errors import (
    SessionAlreadyTerminal,
    SessionExpired,
    SessionNotFound,
    ValidationError,
)
from stepguard.service.masking import mask_identifier
from stepguard.storage.models import (
    ChannelSpec,
    FlowKind,
    SessionStatus,
    VerificationSession,
    utc_now,
)

logger = get_logger(__name__)

Mutation = Callable[[VerificationSession], None]


class SessionStore:
    """Sole owner of verification sessions and their lifecycle.

    Reads hand out copies. ``update`` applies a mutation to a copy, checks the
    lifecycle rules and only then swaps it in, so a mutation that raises
    leaves the stored session untouched. Callers serialize read-modify-write
    sequences on one session with ``lock(session_id)``.
    """

    def __init__(
        self,
        *,
        ttl_minutes: int = 10,
        retention: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ttl_minutes = ttl_minutes
        self.retention = retention
        self._clock = clock
        self._sessions: Dict[str, VerificationSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._data_lock = threading.RLock()

    def create(
        self,
        subject_id: str,
        channel_specs: Iterable[ChannelSpec],
        *,
        flow: FlowKind,
        meta: Optional[dict] = None,
    ) -> VerificationSession:
        specs = list(channel_specs)
        if not specs:
            raise ValidationError("at least one channel is required")
        kinds = [spec.kind for spec in specs]
        if len(set(kinds)) != len(kinds):
            raise ValidationError("each channel may be requested once")
        session = VerificationSession.new(
            subject_id,
            specs,
            flow=flow,
            ttl_minutes=self.ttl_minutes,
            now=self._clock(),
            meta=meta,
        )
        with self._data_lock:
            self._sessions[session.id] = session
        logger.info(
            "verification_session_created",
            session=mask_identifier(session.id),
            flow=flow.value,
            channels=[kind.value for kind in kinds],
        )
        return copy.deepcopy(session)

    def _load(self, session_id: str) -> VerificationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("verification session not found")
        if session.status is SessionStatus.PENDING and session.is_expired(self._clock()):
            session.status = SessionStatus.EXPIRED
            logger.info("verification_session_expired", session=mask_identifier(session_id))
        if session.status is SessionStatus.EXPIRED:
            raise SessionExpired("verification session expired")
        return session

    def get(self, session_id: str) -> VerificationSession:
        """Return a copy; expired sessions raise ``SessionExpired``.

        VERIFIED and LOCKED sessions are returned so the caller can report
        the specific terminal state.
        """
        with self._data_lock:
            return copy.deepcopy(self._load(session_id))

    def update(self, session_id: str, mutation: Mutation) -> VerificationSession:
        with self._data_lock:
            current = self._load(session_id)
            if current.status.is_terminal:
                raise SessionAlreadyTerminal("verification session already completed")
            updated = copy.deepcopy(current)
            mutation(updated)
            self._check_transition(current, updated)
            self._sessions[session_id] = updated
            return copy.deepcopy(updated)

    @staticmethod
    def _check_transition(
        current: VerificationSession, updated: VerificationSession
    ) -> None:
        if (
            updated.id != current.id
            or updated.subject_id != current.subject_id
            or updated.created_at != current.created_at
            or updated.expires_at != current.expires_at
        ):
            raise ValueError("session identity and lifetime are immutable")
        if set(updated.channels) != set(current.channels):
            raise ValueError("session channels are fixed at creation")
        if updated.status is SessionStatus.VERIFIED:
            consumed = [e for e in updated.channels.values() if e.consumed_at is not None]
            if (
                updated.verified_channel is None
                or len(consumed) != 1
                or consumed[0].kind is not updated.verified_channel
            ):
                raise ValueError("a session is verified through exactly one channel")
            for entry in updated.channels.values():
                if entry.kind is not updated.verified_channel and entry.code_hash is not None:
                    raise ValueError("codes on other channels must be void once verified")

    def expire(self, session_id: str) -> None:
        with self._data_lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound("verification session not found")
            if session.status is SessionStatus.PENDING:
                session.status = SessionStatus.EXPIRED

    def delete(self, session_id: str) -> None:
        with self._data_lock:
            self._sessions.pop(session_id, None)
            lock = self._locks.get(session_id)
            if lock is not None and not lock.locked():
                self._locks.pop(session_id, None)

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Per-session mutual exclusion; no cross-session locking.

        Only stored sessions get a lock, so unknown ids raise
        ``SessionNotFound`` without leaving an entry behind.
        """
        with self._data_lock:
            if session_id not in self._sessions:
                raise SessionNotFound("verification session not found")
            lock = self._locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[session_id] = lock
        try:
            async with lock:
                yield
        finally:
            with self._data_lock:
                if session_id not in self._sessions and not lock.locked():
                    self._locks.pop(session_id, None)

    def cleanup_expired(self) -> int:
        """Remove sessions past ``expires_at + retention`` regardless of status."""
        now = self._clock()
        cleaned = 0
        with self._data_lock:
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if now > session.expires_at + self.retention
            ]
            for session_id in stale:
                self._sessions.pop(session_id, None)
                cleaned += 1
            orphaned = [
                session_id
                for session_id, lock in self._locks.items()
                if session_id not in self._sessions and not lock.locked()
            ]
            for session_id in orphaned:
                self._locks.pop(session_id, None)
        if cleaned:
            logger.debug("verification_session_cleanup", cleaned=cleaned)
        return cleaned

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._sessions)
