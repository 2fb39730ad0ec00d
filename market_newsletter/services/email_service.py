import logging
import os
import smtplib
from contextlib import contextmanager
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterator, Optional

from market_newsletter.utils.error_monitoring import ConfigurationError


@dataclass
class EmailConfig:
    """Email service configuration"""
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    from_email: str
    to_email: str
    reply_to: Optional[str] = None
    use_tls: bool = True

    @property
    def has_credentials(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    @classmethod
    def from_env(cls) -> "EmailConfig":
        """Load email configuration from environment variables"""
        smtp_user = os.getenv("SMTP_USER", "")
        raw_port = os.getenv("SMTP_PORT", "587")
        try:
            smtp_port = int(raw_port)
        except ValueError as e:
            raise ConfigurationError(f"SMTP_PORT must be an integer, got {raw_port!r}") from e
        return cls(
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=smtp_port,
            smtp_user=smtp_user,
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("FROM_EMAIL", smtp_user),
            to_email=os.getenv("TO_EMAIL", smtp_user),
            reply_to=os.getenv("REPLY_TO_EMAIL"),
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
        )


class EmailService:
    """
    Newsletter delivery over SMTP. A final sink: no retry, no delivery guarantee.
    """

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config or EmailConfig.from_env()
        self.logger = logging.getLogger(__name__)

        if not self.config.smtp_password:
            raise ValueError("SMTP password required. Set SMTP_PASSWORD environment variable.")

    @contextmanager
    def _authenticated_server(self) -> Iterator[smtplib.SMTP]:
        """Connected, TLS-upgraded and logged-in SMTP session; always closed on exit."""
        server = smtplib.SMTP(self.config.smtp_host, self.config.smtp_port)
        try:
            if self.config.use_tls:
                server.starttls()
            server.login(self.config.smtp_user, self.config.smtp_password)
            yield server
        finally:
            try:
                server.quit()
            except smtplib.SMTPException as exc:
                self.logger.debug("SMTP quit failed: %s", exc)

    async def test_connection(self) -> bool:
        self.logger.info("Checking SMTP login at %s:%s", self.config.smtp_host, self.config.smtp_port)
        try:
            with self._authenticated_server():
                self.logger.info("SMTP login OK")
                return True
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP login check failed: %s", exc)
            return False

    def build_message(self, subject: str, html_body: str, text_body: str,
                      recipient: Optional[str] = None) -> MIMEMultipart:
        message = MIMEMultipart('alternative')
        message['Subject'] = subject
        message['From'] = self.config.from_email or self.config.smtp_user
        message['To'] = recipient or self.config.to_email or self.config.smtp_user
        if self.config.reply_to:
            message['Reply-To'] = self.config.reply_to

        message.attach(MIMEText(text_body, 'plain', 'utf-8'))
        message.attach(MIMEText(html_body, 'html', 'utf-8'))
        return message

    async def send(self, subject: str, html_body: str, text_body: str,
                   recipient: Optional[str] = None) -> bool:
        """Send one newsletter as a multipart/alternative message."""
        message = self.build_message(subject, html_body, text_body, recipient)
        self._send_via_smtp(message)
        self.logger.info("Newsletter '%s' sent to %s", subject, message['To'])
        return True

    def _send_via_smtp(self, message: MIMEMultipart) -> None:
        try:
            with self._authenticated_server() as server:
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP send to %s failed: %s", message['To'], exc)
            raise EmailServiceError(f"SMTP send failed: {exc}") from exc


class EmailServiceError(Exception):
    """Delivery failed; the newsletter files are still on disk."""
    pass
