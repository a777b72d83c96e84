from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from sessionguard.logging import get_logger, redact_email
from sessionguard.service.errors import ConfigurationError, TransientFailureError

logger = get_logger(__name__)

_HTML_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _render_html(title: str, intro: str, link: str, button: str, expiry: str, footer: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_HTML_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">{button}</a>
        </p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{footer}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % (24 * 60) == 0:
        days = minutes // (24 * 60)
        return f"{days} day" if days == 1 else f"{days} days"
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


class EmailService:
    """Delivers password-reset and email-verification links over SMTP.

    Delivery fails closed: when host, port, sender identity or from address is
    missing, every send raises ConfigurationError instead of dropping the
    message. Transport failures raise TransientFailureError.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Sessionguard",
        app_base_url: str = "http://localhost:3000",
        api_base_url: str = "http://localhost:8000/v1",
        reset_ttl_minutes: int = 15,
        verify_ttl_minutes: int = 48 * 60,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.app_base_url = app_base_url.rstrip("/")
        self.api_base_url = api_base_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verify_ttl_minutes = verify_ttl_minutes
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            app_base_url=settings.app_base_url,
            api_base_url=settings.api_base_url,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
            verify_ttl_minutes=settings.verify_token_ttl_minutes,
            timeout=settings.request_timeout_seconds * 6,
        )

    def missing_settings(self) -> list[str]:
        missing = []
        if not self.smtp_host:
            missing.append("SMTP_HOST")
        if not self.smtp_port:
            missing.append("SMTP_PORT")
        if not self.smtp_user:
            missing.append("SMTP_USER")
        if not self.from_email:
            missing.append("EMAIL_FROM_ADDRESS")
        return missing

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return not self.missing_settings()

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        missing = self.missing_settings()
        if missing:
            logger.error(
                "email_not_configured", to=redact_email(to_email), missing=missing
            )
            raise ConfigurationError(
                "mail delivery is not configured", detail={"missing": missing}
            )

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                user=self.smtp_user,
                error_code=getattr(e, "smtp_code", None),
            )
            raise TransientFailureError("mail delivery failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            raise TransientFailureError("mail delivery failed") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TransientFailureError("mail delivery failed") from e
        except (ssl.SSLError, OSError) as e:
            # TimeoutError and ConnectionRefusedError are OSError subclasses
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TransientFailureError("mail delivery failed") from e

        logger.info("email_sent", to=redact_email(to_email), subject=subject)

    def reset_link(self, token_id: str, raw_secret: str) -> str:
        return f"{self.app_base_url}/reset-password?{urlencode({'tid': token_id, 't': raw_secret})}"

    def verify_link(self, token_id: str, raw_secret: str) -> str:
        return f"{self.api_base_url}/verify-email?{urlencode({'tid': token_id, 't': raw_secret})}"

    def send_password_reset(self, to_email: str, token_id: str, raw_secret: str) -> None:
        """Send password reset email with reset link."""
        link = self.reset_link(token_id, raw_secret)
        expiry = f"This link will expire in {_describe_minutes(self.reset_ttl_minutes)}."
        subject = f"Reset your {self.from_name} password"
        html_body = _render_html(
            "Reset your password",
            "We received a request to reset your password. Click the button below to choose a new password:",
            link,
            "Reset Password",
            expiry + " If you didn't request this, you can safely ignore this email.",
            self.from_name,
        )
        text_body = f"""{subject}

We received a request to reset your password. Visit the link below to choose a new password:

{link}

{expiry}

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token_id: str, raw_secret: str) -> None:
        """Send email verification link."""
        link = self.verify_link(token_id, raw_secret)
        expiry = f"This link will expire in {_describe_minutes(self.verify_ttl_minutes)}."
        subject = f"Verify your {self.from_name} email"
        html_body = _render_html(
            "Verify your email",
            "Thanks for signing up! Please verify your email address by clicking the button below:",
            link,
            "Verify Email",
            expiry,
            self.from_name,
        )
        text_body = f"""{subject}

Thanks for signing up! Please verify your email address by visiting the link below:

{link}

{expiry}

---
{self.from_name}
"""
        self._send_email(to_email, subject, html_body, text_body)
