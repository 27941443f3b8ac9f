from __future__ import annotations

import hashlib
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Optional

from stepguard.logging import get_logger
from stepguard.service.masking import mask_identifier
from stepguard.storage.models import utc_now
from stepguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class AttemptRecord:
    failed_count: int
    last_failure_at: datetime
    blocked: bool = False


@dataclass
class LockoutRecord:
    failures: Deque[datetime] = field(default_factory=deque)
    locked_until: Optional[datetime] = None

    def prune(self, cutoff: datetime) -> None:
        """Forget failures at or before ``cutoff``."""
        while self.failures and self.failures[0] <= cutoff:
            self.failures.popleft()


@dataclass(frozen=True)
class OtpFailure:
    blocked: bool
    failed_count: int
    remaining: int


class AttemptTracker:
    """Failure counters for passcodes (per session) and logins (per identity).

    The two are keyed independently: a guessed session never locks the
    account's login path, and credential stuffing never locks a session.
    With a Redis cache every increment is a single Lua script; without one,
    a process-local lock serializes the in-memory records.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        max_attempts: int = 5,
        otp_record_ttl: timedelta = timedelta(minutes=10),
        login_threshold: int = 5,
        login_window: timedelta = timedelta(minutes=15),
        login_lockout: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.otp_record_ttl = otp_record_ttl
        self.login_threshold = login_threshold
        self.login_window = login_window
        self.login_lockout = login_lockout
        self._clock = clock
        self._state_lock = threading.Lock()
        self._otp_records: Dict[str, AttemptRecord] = {}
        self._login_records: Dict[str, LockoutRecord] = {}

    @staticmethod
    def identity_key(identifier: str) -> str:
        """Stable, non-reversible key for a login identifier."""
        normalized = (identifier or "").strip().lower()
        return hashlib.sha256(normalized.encode()).hexdigest()

    # ------------------------------------------------------------------
    # Passcode failures
    # ------------------------------------------------------------------

    async def record_otp_failure(self, session_id: str) -> OtpFailure:
        if self.cache:
            blocked, count = await self.cache.atomic_otp_failure(
                session_id,
                max_attempts=self.max_attempts,
                ttl_seconds=int(self.otp_record_ttl.total_seconds()),
            )
        else:
            now = self._clock()
            with self._state_lock:
                record = self._otp_records.get(session_id)
                if record is None:
                    record = AttemptRecord(failed_count=0, last_failure_at=now)
                    self._otp_records[session_id] = record
                if not record.blocked:
                    record.failed_count += 1
                    record.last_failure_at = now
                    record.blocked = record.failed_count >= self.max_attempts
                blocked, count = record.blocked, record.failed_count
        if blocked:
            logger.warning(
                "otp_attempts_exhausted",
                session=mask_identifier(session_id),
                failed_count=count,
            )
        return OtpFailure(
            blocked=blocked,
            failed_count=count,
            remaining=max(0, self.max_attempts - count),
        )

    async def is_otp_blocked(self, session_id: str) -> bool:
        if self.cache:
            return await self.cache.check_otp_lock(session_id)
        with self._state_lock:
            record = self._otp_records.get(session_id)
            return bool(record and record.blocked)

    async def otp_failures(self, session_id: str) -> int:
        if self.cache:
            return await self.cache.otp_failure_count(session_id)
        with self._state_lock:
            record = self._otp_records.get(session_id)
            return record.failed_count if record else 0

    async def reset_otp(self, session_id: str) -> None:
        if self.cache:
            await self.cache.clear_otp_attempts(session_id)
            return
        with self._state_lock:
            self._otp_records.pop(session_id, None)

    # ------------------------------------------------------------------
    # Login lockout
    # ------------------------------------------------------------------

    async def record_login_failure(self, identifier: str) -> bool:
        """Count a failed login; returns True when the identity is now locked."""
        key = self.identity_key(identifier)
        if self.cache:
            locked, attempts = await self.cache.atomic_login_failure(
                key,
                threshold=self.login_threshold,
                window_seconds=int(self.login_window.total_seconds()),
                lockout_seconds=int(self.login_lockout.total_seconds()),
                now=self._clock(),
            )
            tripped = locked and attempts >= 0
        else:
            now = self._clock()
            with self._state_lock:
                record = self._login_records.get(key)
                if record and record.locked_until and record.locked_until > now:
                    return True
                if record is None or record.locked_until is not None:
                    record = LockoutRecord()
                    self._login_records[key] = record
                # Rolling window: only failures newer than now - window count
                record.failures.append(now)
                record.prune(now - self.login_window)
                tripped = len(record.failures) >= self.login_threshold
                if tripped:
                    record.locked_until = now + self.login_lockout
                    record.failures.clear()
                locked = tripped
        if tripped:
            logger.warning("login_lockout_triggered", identity=mask_identifier(key))
        return locked

    async def is_login_locked(self, identifier: str) -> bool:
        key = self.identity_key(identifier)
        if self.cache:
            return await self.cache.check_login_lockout(key)
        now = self._clock()
        with self._state_lock:
            record = self._login_records.get(key)
            return bool(record and record.locked_until and now < record.locked_until)

    async def reset_login(self, identifier: str) -> None:
        key = self.identity_key(identifier)
        if self.cache:
            await self.cache.clear_login_failures(key)
            return
        with self._state_lock:
            self._login_records.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop in-memory records whose window or lockout has elapsed."""
        if self.cache:
            # Redis keys carry their own TTLs
            return 0
        now = self._clock()
        cleaned = 0
        with self._state_lock:
            stale_otp = [
                session_id
                for session_id, record in self._otp_records.items()
                if now - record.last_failure_at >= self.otp_record_ttl
            ]
            for session_id in stale_otp:
                self._otp_records.pop(session_id, None)
                cleaned += 1

            stale_login = []
            for key, record in self._login_records.items():
                if record.locked_until is not None:
                    if record.locked_until <= now:
                        stale_login.append(key)
                    continue
                record.prune(now - self.login_window)
                if not record.failures:
                    stale_login.append(key)
            for key in stale_login:
                self._login_records.pop(key, None)
                cleaned += 1
        return cleaned
