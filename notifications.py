from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from pathlib import Path
from typing import Optional, Union

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings
from errors import NotificationError
from schemas import BudgetAlertPayload, MonthlyReportPayload

logger = logging.getLogger(__name__)

Payload = Union[BudgetAlertPayload, MonthlyReportPayload]

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_TEMPLATE_FOR_KIND = {
    "budget-alert": "emails/budget_alert.html",
    "monthly-report": "emails/monthly_report.html",
}


def _money(value) -> str:
    return f"${value:,.2f}"


def make_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["money"] = _money
    return env


def render_payload(env: Environment, payload: Payload) -> str:
    template = env.get_template(_TEMPLATE_FOR_KIND[payload.kind])
    return template.render(data=payload)


class Notifier:
    def send(self, recipient: str, subject: str, payload: Payload) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notifications to the log instead of delivering them."""

    def send(self, recipient: str, subject: str, payload: Payload) -> None:
        logger.info(
            f"notification: to={recipient} subject={subject!r} "
            f"payload={payload.model_dump(mode='json')}"
        )


class EmailNotifier(Notifier):
    def __init__(
        self,
        settings: Optional[Settings] = None,
        env: Optional[Environment] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.env = env or make_environment()

    def build_message(self, recipient: str, subject: str, payload: Payload) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.mail_from
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(f"{subject}\n\nView this message in an HTML-capable client.")
        msg.add_alternative(render_payload(self.env, payload), subtype="html")
        return msg

    def send(self, recipient: str, subject: str, payload: Payload) -> None:
        settings = self.settings
        if not settings.smtp_host or not settings.smtp_port or not settings.mail_from:
            raise NotificationError("SMTP is not configured")
        msg = self.build_message(recipient, subject, payload)
        try:
            asyncio.run(
                aiosmtplib.send(
                    msg,
                    hostname=settings.smtp_host,
                    port=settings.smtp_port,
                    username=settings.smtp_user,
                    password=settings.smtp_pass,
                    start_tls=bool(settings.smtp_user and settings.smtp_pass),
                    timeout=30,
                )
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send email to {recipient}") from exc
        logger.info(f"notification_sent: to={recipient} subject={subject!r}")


def default_notifier(settings: Optional[Settings] = None) -> Notifier:
    settings = settings or get_settings()
    if settings.smtp_host and settings.smtp_port and settings.mail_from:
        return EmailNotifier(settings)
    logger.warning("SMTP not configured; notifications will only be logged")
    return LogNotifier()
