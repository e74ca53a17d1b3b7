from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from watchtower_monitor.models import ServerRecord
from watchtower_monitor.settings import MailSettings


LOGGER = logging.getLogger("watchtower.mailer")

TEMPLATE_DIR = Path(__file__).parent / "templates"


class MailDeliveryError(RuntimeError):
    pass


_jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


def _format_ts(value) -> str:
    if value is None:
        return "never"
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def render_down_alert(server: ServerRecord, error_message: str | None) -> str:
    template = _jinja_env.get_template("down_alert.html")
    return template.render(
        url=server.url,
        user_email=server.user_email,
        consecutive_failures=server.consecutive_failures,
        response_time=server.response_time,
        last_check=_format_ts(server.last_check),
        error_message=(error_message or "Unknown error")[:500],
    )


def _html_to_text_fallback(subject: str) -> str:
    return f"{subject}\n\nThis alert is best viewed in an HTML-capable mail client."


class SmtpMailer:
    """Delivers HTML emails over SMTP. Blocking smtplib calls run in a worker thread."""

    def __init__(self, settings: MailSettings):
        self.settings = settings
        if not settings.configured:
            LOGGER.warning("SMTP not configured; alert emails will fail until SMTP_HOST/SMTP_FROM are set")

    def render_down_alert(self, server: ServerRecord, error_message: str | None) -> str:
        return render_down_alert(server, error_message)

    def _build_message(self, to_address: str, subject: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.from_address
        msg["To"] = to_address
        msg.set_content(_html_to_text_fallback(subject))
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        cfg = self.settings
        if cfg.security == "ssl":
            client = smtplib.SMTP_SSL(
                cfg.host, cfg.port, timeout=cfg.timeout_seconds, context=ssl.create_default_context()
            )
        else:
            client = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        with client as smtp:
            if cfg.security == "starttls":
                smtp.starttls(context=ssl.create_default_context())
            if cfg.username:
                smtp.login(cfg.username, cfg.password)
            smtp.send_message(msg)

    async def send(self, to_address: str, subject: str, html_body: str) -> None:
        if not self.settings.configured:
            raise MailDeliveryError("SMTP not configured")
        if not to_address:
            raise MailDeliveryError("Missing recipient address")

        msg = self._build_message(to_address, subject, html_body)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"{type(e).__name__}: {e}") from e
        LOGGER.info("Email sent to=%s subject=%s", to_address, subject)
