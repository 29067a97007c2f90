from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from portalauth.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Outbound mail for the recovery flow.

    When no SMTP host is configured the message is logged instead of sent
    (development mode).
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
        from_name: str = "Portal",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(self, to_email: str, subject: str, text_body: str, html_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        """Deliver one message. Returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = self._build_message(to_email, subject, text_body, html_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={token}"

    def send_password_reset(
        self, to_email: str, token: str, *, requires_security_question: bool = False
    ) -> bool:
        url = self.reset_url(token)
        subject = "Reset your Portal password"
        extra = (
            "You will be asked to answer one of your security questions before "
            "choosing a new password.\n\n"
            if requires_security_question
            else ""
        )
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Open the link below to continue:\n\n{url}\n\n"
            f"{extra}"
            f"This link expires in {self.reset_ttl_minutes} minutes and can be used once.\n"
            "If you did not request this, you can ignore this message.\n"
        )
        html_extra = f"<p>{extra.strip()}</p>" if extra else ""
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
            "<h1>Reset your password</h1>"
            "<p>We received a request to reset your password.</p>"
            f"<p><a href=\"{url}\">Reset password</a></p>"
            f"{html_extra}"
            f"<p>This link expires in {self.reset_ttl_minutes} minutes and can be used once.</p>"
            "<p>If you did not request this, you can ignore this message.</p>"
            "</body></html>"
        )
        return self._send_email(to_email, subject, text_body, html_body)

    def send_password_changed(self, to_email: str) -> bool:
        subject = "Your Portal password was changed"
        text_body = (
            "The password on your account was just changed and all sessions were "
            "signed out.\n\nIf this was not you, contact your administrator immediately.\n"
        )
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
            "<h1>Password changed</h1>"
            "<p>The password on your account was just changed and all sessions were signed out.</p>"
            "<p>If this was not you, contact your administrator immediately.</p>"
            "</body></html>"
        )
        return self._send_email(to_email, subject, text_body, html_body)
