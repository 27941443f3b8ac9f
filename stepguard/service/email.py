from __future__ import annotations

import asyncio
import secrets
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from html import escape
from typing import Optional

from stepguard.logging import get_logger
from stepguard.service.channels import OTPMessage
from stepguard.service.errors import ChannelUnavailable, DeliveryRejected
from stepguard.service.masking import mask_email

logger = get_logger(__name__)


class EmailService:
    """SMTP transport for passcode and security-alert emails.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - One-time passcode emails
    - Security alert emails for operators
    - Fallback to logging when not configured (dev mode); the passcode itself
      is never logged
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StepGuard",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    async def send(self, destination: str, message: OTPMessage) -> str:
        """Channel transport entry point: deliver a passcode email."""
        subject, html_body, text_body = self.render_otp(message)
        return await asyncio.to_thread(
            self._send_email, destination, subject, html_body, text_body
        )

    async def send_security_alert(self, to_email: str, event_type: str, payload: dict) -> str:
        subject, html_body, text_body = self.render_security_alert(event_type, payload)
        return await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )

    def _message_id(self) -> str:
        domain = (self.from_email or "localhost").rsplit("@", 1)[-1]
        return make_msgid(domain=domain)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> str:
        """Send an email via SMTP and return its Message-ID.

        Raises ``DeliveryRejected`` when the server refuses the recipient or
        the message, ``ChannelUnavailable`` for connection, TLS, auth and
        timeout failures.
        """
        masked_to = mask_email(to_email)
        if not self.is_configured:
            message_id = f"<dev-{secrets.token_hex(8)}@localhost>"
            logger.info(
                "email_dev_mode",
                to=masked_to,
                subject=subject,
                message_id=message_id,
            )
            return message_id

        message_id = self._message_id()
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg["Message-ID"] = message_id

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=masked_to,
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=masked_to, subject=subject)
            return message_id

        except smtplib.SMTPRecipientsRefused as e:
            logger.warning("email_recipient_refused", to=masked_to, error_type=type(e).__name__)
            raise DeliveryRejected("email recipient refused", detail={"channel": "email"}) from e
        except smtplib.SMTPSenderRefused as e:
            logger.error(
                "email_sender_refused",
                sender=self.from_email,
                smtp_code=e.smtp_code,
            )
            raise ChannelUnavailable("email sender refused", detail={"channel": "email"}) from e
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                user=self.smtp_user,
                smtp_code=e.smtp_code,
            )
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e
        except smtplib.SMTPDataError as e:
            if 500 <= e.smtp_code < 600:
                logger.warning("email_message_rejected", to=masked_to, smtp_code=e.smtp_code)
                raise DeliveryRejected("email message rejected", detail={"channel": "email"}) from e
            logger.error("email_data_error", to=masked_to, smtp_code=e.smtp_code)
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                host=self.smtp_host,
                port=self.smtp_port,
            )
            raise ChannelUnavailable("email delivery timed out", detail={"channel": "email"}) from e
        except OSError as e:
            logger.error(
                "email_send_failed",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ChannelUnavailable("email transport unavailable", detail={"channel": "email"}) from e

    def render_otp(self, message: OTPMessage) -> tuple[str, str, str]:
        subject = f"{self.from_name} verification code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; padding: 16px 24px; background: #f1f5f9; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Your verification code</h1>
        <p>Enter this code to continue signing in:</p>
        <p style="margin: 30px 0;"><span class="code">{message.code}</span></p>
        <p>This code will expire in {message.expires_in_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email. Never share this code with anyone.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Your {self.from_name} verification code is: {message.code}

This code will expire in {message.expires_in_minutes} minutes.

If you didn't request this, you can safely ignore this email. Never share this code with anyone.

---
{self.from_name}
"""
        return subject, html_body, text_body

    def render_security_alert(self, event_type: str, payload: dict) -> tuple[str, str, str]:
        """Operator alert; ``payload`` must already be masked."""
        subject = f"[{self.from_name}] Security alert: {event_type}"
        rows = "\n".join(
            f"        <tr><td>{escape(str(key))}</td><td>{escape(str(value))}</td></tr>"
            for key, value in sorted(payload.items())
        )
        lines = "\n".join(f"{key}: {value}" for key, value in sorted(payload.items()))

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        td {{ padding: 4px 12px; border-bottom: 1px solid #e2e8f0; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Security alert: {escape(event_type)}</h1>
        <table>
{rows}
        </table>
    </div>
</body>
</html>
"""

        text_body = f"""Security alert: {event_type}

{lines}
"""
        return subject, html_body, text_body
