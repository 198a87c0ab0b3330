from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence, Tuple

from studybuddy.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #4f46e5; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional email for the account lifecycle.

    Delivery is best-effort: every ``send_*`` method returns ``False`` on
    failure after logging it, and never raises. Without SMTP configuration
    messages are logged (subject and recipient only) instead of sent.
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
        from_name: str = "StudyBuddy",
        frontend_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 15,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:5173").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _greeting(name: Optional[str]) -> str:
        return f"Hi {name}," if name else "Hi there,"

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        paragraphs: Sequence[str],
        *,
        button: Optional[Tuple[str, str]] = None,
    ) -> Tuple[str, str]:
        """Build (html, text) bodies; paragraphs are plain text and get escaped."""

        html_parts = [f"<h1>{html.escape(heading)}</h1>"]
        text_parts = [heading, ""]
        for index, paragraph in enumerate(paragraphs):
            html_parts.append(f"<p>{html.escape(paragraph)}</p>")
            text_parts.extend([paragraph, ""])
            if button and index == 0:
                label, url = button
                safe_url = html.escape(url, quote=True)
                html_parts.append(
                    f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                    f"{html.escape(label)}</a></p>"
                )
                text_parts.extend([url, ""])
        footer = f"<p>{html.escape(self.from_name)}</p>"
        if button:
            footer += (
                "<p>If the button doesn't work, copy and paste this URL: "
                f"{html.escape(button[1])}</p>"
            )
        html_body = (
            "<!DOCTYPE html>\n<html>\n<head>\n    <meta charset=\"utf-8\">\n"
            f"    <style>{_STYLE}    </style>\n</head>\n<body>\n"
            '    <div class="container">\n        '
            + "\n        ".join(html_parts)
            + f'\n        <div class="footer">{footer}</div>\n    </div>\n</body>\n</html>\n'
        )
        text_body = "\n".join(text_parts + ["---", self.from_name, ""])
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # bodies carry live links, so only the envelope is logged
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connection_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.frontend_url}/verify-email/{token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up for StudyBuddy! Please confirm your email address:",
                f"This link will expire in {self.verification_ttl_hours} hours.",
            ],
            button=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, "Verify your StudyBuddy email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.frontend_url}/reset-password/{token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Choose a new one here:",
                f"This link will expire in {self.reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            button=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, "Reset your StudyBuddy password", html_body, text_body
        )

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password on your StudyBuddy account was just changed and all other sessions were signed out.",
                "If you didn't make this change, reset your password immediately.",
            ],
        )
        return self._send_email(
            to_email, "Your StudyBuddy password was changed", html_body, text_body
        )

    def send_account_deactivated(self, to_email: str, name: Optional[str] = None) -> bool:
        html_body, text_body = self._render(
            "Your account is deactivated",
            [
                self._greeting(name),
                "Your StudyBuddy account has been deactivated and you have been signed out everywhere.",
                "Your data is kept. Sign in again at any time to reactivate the account.",
            ],
        )
        return self._send_email(
            to_email, "Your StudyBuddy account was deactivated", html_body, text_body
        )

    def send_account_deleted(self, to_email: str, name: Optional[str] = None) -> bool:
        html_body, text_body = self._render(
            "Your account has been deleted",
            [
                self._greeting(name),
                "Your StudyBuddy account and all of its subjects, notes, flashcards and study sessions were permanently deleted.",
                "This cannot be undone. You are welcome to sign up again at any time.",
            ],
        )
        return self._send_email(
            to_email, "Your StudyBuddy account was deleted", html_body, text_body
        )

    def send_login_alert(
        self,
        to_email: str,
        *,
        name: Optional[str] = None,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        at: datetime,
    ) -> bool:
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                self._greeting(name),
                "We noticed a sign-in to your StudyBuddy account from a new location.",
                f"IP address: {ip_addr or 'unknown'}",
                f"Device: {user_agent or 'unknown'}",
                f"Time: {at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
                "If this wasn't you, reset your password right away.",
            ],
        )
        return self._send_email(
            to_email, "New sign-in to your StudyBuddy account", html_body, text_body
        )
