from __future__ import annotations

import smtplib
from datetime import datetime, timezone

import pytest

from watchtower_monitor import mailer as mailer_mod
from watchtower_monitor.mailer import MailDeliveryError, SmtpMailer, render_down_alert
from watchtower_monitor.models import ServerRecord
from watchtower_monitor.settings import MailSettings


SERVER = ServerRecord(
    id="s1",
    user_email="owner@example.com",
    url="https://example.com/health",
    consecutive_failures=3,
    response_time=1500,
    last_check=datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc),
)


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []
    fail_with: Exception | None = None

    def __init__(self, host: str, port: int, timeout: float | None = None, **kwargs) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.kwargs = kwargs
        self.started_tls = False
        self.logged_in: tuple[str, str] | None = None
        self.messages = []
        type(self).instances.append(self)

    def __enter__(self) -> "_FakeSMTP":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self, context=None) -> None:
        self.started_tls = True

    def login(self, user: str, password: str) -> None:
        self.logged_in = (user, password)

    def send_message(self, msg) -> None:
        if type(self).fail_with is not None:
            raise type(self).fail_with
        self.messages.append(msg)


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch: pytest.MonkeyPatch):
    _FakeSMTP.instances = []
    _FakeSMTP.fail_with = None
    monkeypatch.setattr(mailer_mod.smtplib, "SMTP", _FakeSMTP)
    monkeypatch.setattr(mailer_mod.smtplib, "SMTP_SSL", _FakeSMTP)
    return _FakeSMTP


def _settings(**overrides) -> MailSettings:
    base = {
        "host": "smtp.example.com",
        "port": 587,
        "username": "mailer",
        "password": "s3cret",
        "from_address": "alerts@example.com",
    }
    base.update(overrides)
    return MailSettings(**base)


def test_render_down_alert_includes_server_details() -> None:
    html = render_down_alert(SERVER, "Request timeout")
    assert "https://example.com/health" in html
    assert "Request timeout" in html
    assert "3" in html
    assert "2026-03-04 05:06:07" in html


def test_render_down_alert_escapes_error_text() -> None:
    html = render_down_alert(SERVER, "<script>alert(1)</script>")
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html


def test_render_down_alert_handles_missing_error() -> None:
    html = render_down_alert(SERVER, None)
    assert "Unknown error" in html


@pytest.mark.asyncio
async def test_send_starttls_with_login(fake_smtp) -> None:
    mailer = SmtpMailer(_settings())
    await mailer.send("owner@example.com", "Subject line", "<p>down</p>")

    assert len(fake_smtp.instances) == 1
    smtp = fake_smtp.instances[0]
    assert smtp.host == "smtp.example.com"
    assert smtp.started_tls is True
    assert smtp.logged_in == ("mailer", "s3cret")
    msg = smtp.messages[0]
    assert msg["To"] == "owner@example.com"
    assert msg["From"] == "alerts@example.com"
    assert msg["Subject"] == "Subject line"
    html_part = msg.get_body(preferencelist=("html",))
    assert "<p>down</p>" in html_part.get_content()


@pytest.mark.asyncio
async def test_send_ssl_uses_smtp_ssl_without_starttls(fake_smtp, monkeypatch: pytest.MonkeyPatch) -> None:
    class _FakeSMTPSSL(_FakeSMTP):
        pass

    monkeypatch.setattr(mailer_mod.smtplib, "SMTP_SSL", _FakeSMTPSSL)
    mailer = SmtpMailer(_settings(security="ssl", port=465))
    await mailer.send("owner@example.com", "s", "<p>x</p>")

    assert len(fake_smtp.instances) == 1
    smtp = fake_smtp.instances[0]
    assert isinstance(smtp, _FakeSMTPSSL)
    assert smtp.port == 465
    assert smtp.kwargs.get("context") is not None
    assert smtp.started_tls is False
    assert smtp.logged_in == ("mailer", "s3cret")
    assert len(smtp.messages) == 1


@pytest.mark.asyncio
async def test_send_without_tls_or_login(fake_smtp) -> None:
    mailer = SmtpMailer(_settings(security="none", username=""))
    await mailer.send("owner@example.com", "s", "<p>x</p>")
    smtp = fake_smtp.instances[0]
    assert smtp.started_tls is False
    assert smtp.logged_in is None


@pytest.mark.asyncio
async def test_send_failure_raises_delivery_error(fake_smtp) -> None:
    fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"owner@example.com": (550, b"no such user")})
    mailer = SmtpMailer(_settings())
    with pytest.raises(MailDeliveryError):
        await mailer.send("owner@example.com", "s", "<p>x</p>")


@pytest.mark.asyncio
async def test_unconfigured_mailer_raises(fake_smtp) -> None:
    mailer = SmtpMailer(MailSettings())
    with pytest.raises(MailDeliveryError):
        await mailer.send("owner@example.com", "s", "<p>x</p>")
    assert fake_smtp.instances == []
