from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service.errors import TransportError

logger = get_logger(__name__)

OTP_EMAIL_SUBJECT = "Your Login OTP - Task Management System"
SEND_FAILED_MESSAGE = "Failed to send OTP email. Please try again later."


class EmailService:
    """Delivers one-time login codes.

    Transport is picked from configuration:
    - Brevo transactional API over HTTPS when an API key is set
    - SMTP with STARTTLS or implicit TLS when a host is set
    - a log line without the code in dev mode

    Every failure is logged and raised as ``TransportError``; there is no
    silent success.
    """

    def __init__(
        self,
        *,
        brevo_api_key: Optional[str] = None,
        brevo_api_url: str = "https://api.brevo.com/v3/smtp/email",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Task Management System",
        timeout: float = 10.0,
        otp_ttl_minutes: int = 10,
        dev_mode: bool = False,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.brevo_api_key = brevo_api_key
        self.brevo_api_url = brevo_api_url
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout
        self.otp_ttl_minutes = otp_ttl_minutes
        self.dev_mode = dev_mode
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            brevo_api_key=settings.brevo_api_key,
            brevo_api_url=settings.brevo_api_url,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_timeout_seconds,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            dev_mode=settings.test_mode,
        )

    @property
    def transport(self) -> str:
        if self.brevo_api_key:
            return "brevo"
        if self.smtp_host and self.from_email:
            return "smtp"
        if self.dev_mode:
            return "dev"
        return "none"

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render_otp_email(self, code: str) -> tuple[str, str, str]:
        ttl = self.otp_ttl_minutes
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; background: #f0f4f8; padding: 16px 24px; border-radius: 8px; display: inline-block; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Your login code</h1>
        <p>Use the code below to sign in to {self.from_name}:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {ttl} minutes.</p>
        <p>Do not share this code with anyone. If you didn't request it, you can safely ignore this email.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = (
            f"Your OTP for Task Management System is: {code}. "
            f"This OTP will expire in {ttl} minutes. Do not share this with anyone."
        )
        return OTP_EMAIL_SUBJECT, html_body, text_body

    def send_otp(self, to_email: str, code: str) -> None:
        subject, html_body, text_body = self.render_otp_email(code)
        transport = self.transport
        if transport == "brevo":
            self._send_brevo(to_email, subject, html_body, text_body)
        elif transport == "smtp":
            self._send_smtp(to_email, subject, html_body, text_body)
        elif transport == "dev":
            # the code itself stays out of the log
            logger.info(
                "email_dev_mode", to=self._redact_email(to_email), subject=subject
            )
        else:
            logger.error("email_not_configured", to=self._redact_email(to_email))
            raise TransportError(SEND_FAILED_MESSAGE, detail={"reason": "not_configured"})

    def _send_brevo(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> None:
        if not self.from_email:
            logger.error("email_sender_missing", transport="brevo")
            raise TransportError(SEND_FAILED_MESSAGE, detail={"reason": "sender_missing"})
        payload = {
            "sender": {"name": self.from_name, "email": self.from_email},
            "to": [{"email": to_email}],
            "subject": subject,
            "htmlContent": html_body,
            "textContent": text_body,
        }
        headers = {
            "accept": "application/json",
            "api-key": self.brevo_api_key or "",
            "content-type": "application/json",
        }
        client = self._http_client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(self.brevo_api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("email_timeout", to=self._redact_email(to_email), error=str(e))
            raise TransportError(SEND_FAILED_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e
        finally:
            if self._http_client is None:
                client.close()

        if response.status_code >= 400:
            logger.error(
                "email_provider_rejected",
                to=self._redact_email(to_email),
                status=response.status_code,
                body=response.text[:200],
            )
            raise TransportError(
                SEND_FAILED_MESSAGE, detail={"provider_status": response.status_code}
            )

        message_id = None
        try:
            message_id = response.json().get("messageId")
        except ValueError:
            pass
        logger.info(
            "email_sent",
            to=self._redact_email(to_email),
            transport="brevo",
            message_ref=message_id,
        )

    def _send_smtp(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise TransportError(SEND_FAILED_MESSAGE) from e

        logger.info("email_sent", to=self._redact_email(to_email), transport="smtp")
