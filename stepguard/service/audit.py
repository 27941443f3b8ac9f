"""Security event log.

Events are pushed onto a bounded queue without awaiting and written to the
configured sinks by a background consumer. A full queue drops the event and
counts it; a failing sink is logged and skipped. Neither ever reaches the
authentication path.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from stepguard.logging import get_correlation_id, get_logger
from stepguard.service.email import EmailService
from stepguard.storage.models import utc_now

logger = get_logger(__name__)

# Never accepted in a payload, whatever the caller passes
_FORBIDDEN_PAYLOAD_KEYS = frozenset({"code", "otp", "password", "secret", "token"})


class SecurityEventType(str, Enum):
    REGISTRATION_STARTED = "REGISTRATION_STARTED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    REGISTRATION_COMPLETED = "REGISTRATION_COMPLETED"
    LOGIN_SUCCEEDED = "LOGIN_SUCCEEDED"
    LOGIN_STEP_UP_STARTED = "LOGIN_STEP_UP_STARTED"
    LOGIN_FAILED = "LOGIN_FAILED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_VERIFICATION_FAILED = "OTP_VERIFICATION_FAILED"
    OTP_RESENT = "OTP_RESENT"
    OTP_RESEND_FAILED = "OTP_RESEND_FAILED"
    FEDERATED_LOGIN_STARTED = "FEDERATED_LOGIN_STARTED"
    FEDERATED_LOGIN_FAILED = "FEDERATED_LOGIN_FAILED"
    FEDERATED_CALLBACK_COMPLETED = "FEDERATED_CALLBACK_COMPLETED"
    FEDERATED_CALLBACK_FAILED = "FEDERATED_CALLBACK_FAILED"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityEvent:
    event_type: SecurityEventType
    severity: Severity
    occurred_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
            "payload": dict(self.payload),
        }


class SecuritySink(Protocol):
    async def write(self, event: SecurityEvent) -> None: ...


class LogSink:
    """Writes every event as a structured log line."""

    def __init__(self, name: str = "stepguard.security") -> None:
        self.logger = get_logger(name)

    async def write(self, event: SecurityEvent) -> None:
        log_fn = self.logger.warning if event.severity is not Severity.INFO else self.logger.info
        log_fn(
            "security_event",
            event_type=event.event_type.value,
            severity=event.severity.value,
            occurred_at=event.occurred_at.isoformat(),
            event_correlation_id=event.correlation_id,
            **dict(event.payload),
        )


class MemorySink:
    """Keeps events in a list; used for inspection in tests and local runs."""

    def __init__(self) -> None:
        self.events: List[SecurityEvent] = []

    async def write(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: SecurityEventType) -> List[SecurityEvent]:
        return [event for event in self.events if event.event_type is event_type]


class AlertEmailSink:
    """Emails critical events (lockouts) to an operator address."""

    def __init__(self, email: EmailService, recipient: str) -> None:
        self.email = email
        self.recipient = recipient

    async def write(self, event: SecurityEvent) -> None:
        if event.severity is not Severity.CRITICAL:
            return
        await self.email.send_security_alert(
            self.recipient,
            event.event_type.value,
            {"occurred_at": event.occurred_at.isoformat(), **dict(event.payload)},
        )


class SecurityEventLog:
    def __init__(
        self,
        sinks: Iterable[SecuritySink],
        *,
        maxsize: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sinks = list(sinks)
        self._queue: asyncio.Queue[SecurityEvent] = asyncio.Queue(maxsize=maxsize)
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._running

    def emit(
        self,
        event_type: SecurityEventType,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        severity: Severity = Severity.INFO,
    ) -> bool:
        """Queue an event without waiting; returns False if it was dropped."""
        clean: Dict[str, Any] = {}
        for key, value in (payload or {}).items():
            if key.lower() in _FORBIDDEN_PAYLOAD_KEYS:
                logger.error("security_event_payload_key_rejected", key=key)
                continue
            clean[key] = value
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            occurred_at=self._clock(),
            payload=clean,
            correlation_id=get_correlation_id(),
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "security_event_dropped",
                event_type=event_type.value,
                dropped_total=self.dropped,
            )
            return False
        return True

    async def start(self) -> None:
        """Start the background consumer."""
        if self._running:
            logger.warning("security_event_log_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("security_event_log_started", sinks=len(self.sinks))

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Flush what is queued (bounded by ``drain_timeout``) and stop."""
        if self._task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("security_event_log_drain_timeout", pending=self.depth)
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("security_event_log_stopped", dropped=self.dropped)

    async def drain(self) -> None:
        """Write every queued event now; used when no consumer task is running."""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _run_loop(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: SecurityEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.write(event)
            except Exception as exc:
                logger.error(
                    "security_sink_failed",
                    sink=type(sink).__name__,
                    event_type=event.event_type.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
