"""Tests for SMTP delivery."""

import asyncio
import smtplib

import pytest

from market_newsletter.services import email_service
from market_newsletter.services.email_service import EmailConfig, EmailService, EmailServiceError
from market_newsletter.utils.error_monitoring import ConfigurationError


class FakeSMTP:
    instances = []

    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.calls = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))

    def send_message(self, message):
        self.sent.append(message)

    def quit(self):
        self.calls.append("quit")


class RefusingSMTP(FakeSMTP):
    def send_message(self, message):
        raise smtplib.SMTPRecipientsRefused({"reader@example.com": (550, b"no such user")})


def make_config(**overrides):
    values = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="sender@example.com",
        smtp_password="app-password",
        from_email="sender@example.com",
        to_email="reader@example.com",
    )
    values.update(overrides)
    return EmailConfig(**values)


@pytest.fixture(autouse=True)
def reset_instances():
    FakeSMTP.instances = []


def test_send_builds_multipart_alternative(monkeypatch):
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)
    service = EmailService(make_config(reply_to="desk@example.com"))

    assert asyncio.run(service.send("Subject line", "<p>Hello</p>", "Hello")) is True

    server = FakeSMTP.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.calls == ["starttls", ("login", "sender@example.com", "app-password"), "quit"]

    message = server.sent[0]
    assert message["Subject"] == "Subject line"
    assert message["To"] == "reader@example.com"
    assert message["Reply-To"] == "desk@example.com"
    assert message.get_content_subtype() == "alternative"
    assert [part.get_content_type() for part in message.get_payload()] == ["text/plain", "text/html"]


def test_send_without_tls(monkeypatch):
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)
    asyncio.run(EmailService(make_config(use_tls=False)).send("s", "<p>h</p>", "h"))
    assert "starttls" not in FakeSMTP.instances[0].calls


def test_smtp_failure_raises_email_service_error(monkeypatch):
    monkeypatch.setattr(email_service.smtplib, "SMTP", RefusingSMTP)
    with pytest.raises(EmailServiceError):
        asyncio.run(EmailService(make_config()).send("s", "<p>h</p>", "h"))
    assert "quit" in FakeSMTP.instances[0].calls


def test_missing_password_rejected():
    with pytest.raises(ValueError):
        EmailService(make_config(smtp_password=""))


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SMTP_USER", "me@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    monkeypatch.setenv("SMTP_PORT", "2525")
    monkeypatch.delenv("TO_EMAIL", raising=False)
    monkeypatch.delenv("FROM_EMAIL", raising=False)

    config = EmailConfig.from_env()

    assert config.smtp_port == 2525
    assert config.to_email == "me@example.com"
    assert config.has_credentials


def test_connection_check_reports_failure(monkeypatch):
    class UnreachableSMTP(FakeSMTP):
        def __init__(self, host, port):
            raise OSError("connection refused")

    monkeypatch.setattr(email_service.smtplib, "SMTP", UnreachableSMTP)
    assert asyncio.run(EmailService(make_config()).test_connection()) is False


def test_non_numeric_port_is_a_configuration_error(monkeypatch):
    monkeypatch.setenv("SMTP_PORT", "smtp")
    with pytest.raises(ConfigurationError, match="SMTP_PORT"):
        EmailConfig.from_env()
