from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from stepguard.config import Settings, get_settings
from stepguard.logging import get_logger
from stepguard.service.attempts import AttemptTracker
from stepguard.service.audit import AlertEmailSink, LogSink, MemorySink, SecurityEventLog
from stepguard.service.auth import AuthOrchestrator
from stepguard.service.channels import ChannelDispatcher, ChannelTransport
from stepguard.service.email import EmailService
from stepguard.service.federation import GoogleIdentityProvider
from stepguard.service.messaging import WhatsAppService
from stepguard.service.tokens import TokenIssuer
from stepguard.storage.memory import MemoryStore
from stepguard.storage.models import ChannelKind, utc_now
from stepguard.storage.redis_cache import RedisCache
from stepguard.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a URL with ``***`` for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Explicitly constructed set of collaborators for one process.

    The process entry point builds one and hands it to the app; nothing
    here is global. ``transports`` and ``federation_transport`` replace the
    real SMTP/WhatsApp/OAuth wiring, which tests use to capture deliveries.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transports: Optional[Mapping[ChannelKind, ChannelTransport]] = None,
        federation_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore()

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if not self.cache and not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is configured but unreachable; attempt counters and lockouts "
                    "would not be shared. Start Redis or unset REDIS_URL."
                ) from redis_error
        if not self.cache:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Attempt counters, lockouts and OAuth state are in-memory only.",
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.messaging = WhatsAppService(
            api_base_url=self.settings.whatsapp_api_base_url,
            phone_number_id=self.settings.whatsapp_phone_number_id,
            access_token=self.settings.whatsapp_access_token,
            brand_name=self.settings.email_from_name,
            timeout_seconds=self.settings.delivery_timeout_seconds,
        )
        if transports is None:
            transports = {ChannelKind.EMAIL: self.email, ChannelKind.MESSAGING: self.messaging}
        self.dispatcher = ChannelDispatcher(
            transports,
            timeout_seconds=self.settings.delivery_timeout_seconds,
            max_retries=self.settings.delivery_max_retries,
            clock=clock,
        )

        self.attempts = AttemptTracker(
            self.cache,
            max_attempts=self.settings.otp_max_attempts,
            otp_record_ttl=timedelta(minutes=self.settings.otp_ttl_minutes),
            login_threshold=self.settings.login_lockout_threshold,
            login_window=timedelta(minutes=self.settings.login_lockout_window_minutes),
            login_lockout=timedelta(minutes=self.settings.login_lockout_minutes),
            clock=clock,
        )
        self.sessions = SessionStore(ttl_minutes=self.settings.otp_ttl_minutes, clock=clock)
        self.tokens = TokenIssuer(self.settings, self.cache, clock=clock)

        self.security_events = MemorySink() if self.settings.test_mode else None
        sinks = [LogSink()]
        if self.security_events is not None:
            sinks.append(self.security_events)
        if self.settings.security_alert_email:
            sinks.append(AlertEmailSink(self.email, self.settings.security_alert_email))
        self.audit = SecurityEventLog(
            sinks, maxsize=self.settings.audit_queue_size, clock=clock
        )

        self.providers = {
            "google": GoogleIdentityProvider(
                self.settings.oauth_google_client_id,
                self.settings.oauth_google_client_secret,
                self.settings.oauth_redirect_uri,
                timeout_seconds=self.settings.delivery_timeout_seconds,
                transport=federation_transport,
            )
        }

        self.auth = AuthOrchestrator(
            self.store,
            self.sessions,
            self.attempts,
            self.dispatcher,
            self.tokens,
            self.audit,
            self.settings,
            providers=self.providers,
            cache=self.cache,
            clock=clock,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            messaging_configured=self.messaging.is_configured,
            federation_configured=[
                name for name, idp in self.providers.items() if idp.is_configured
            ],
            signing_key_configured=bool(self.settings.jwt_secret),
            alert_sink=bool(self.settings.security_alert_email),
        )

    async def start(self) -> None:
        await self.audit.start()

    async def close(self) -> None:
        await self.audit.stop()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        logger.info("runtime_closed")
