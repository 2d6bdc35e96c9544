"""Outbound email: template rendering and SMTP delivery."""

import html
import re
from email.message import EmailMessage
from functools import lru_cache
from pathlib import Path
from typing import Any

import aiosmtplib
import structlog

from project_auth.config import Settings
from project_auth.errors import EmailDeliveryError

logger = structlog.get_logger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "email"

_PLACEHOLDER = re.compile(r"{{\s*(\w+)\s*}}")


@lru_cache
def _read_template(file_name: str) -> str:
    return (TEMPLATES_DIR / file_name).read_text(encoding="utf-8")


def _inject(template: str, variables: dict[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: variables.get(m.group(1), ""), template)


def render_email_template(name: str, variables: dict[str, Any]) -> str:
    """Render ``<name>.html`` inside ``base.html``.

    Placeholders look like ``{{ key }}``; values are HTML-escaped and
    unknown placeholders render empty.
    """
    escaped = {
        key: html.escape("" if value is None else str(value))
        for key, value in variables.items()
    }
    content = _inject(_read_template(f"{name}.html"), escaped)
    return _inject(_read_template("base.html"), {**escaped, "content": content})


class EmailService:
    """Sends transactional mail over SMTP."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def send_mail(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        """Send a multipart (text + HTML) message.

        Raises:
            EmailDeliveryError: If the SMTP server cannot be reached or
                rejects the message
        """
        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_username or None,
                password=self.settings.smtp_password or None,
                use_tls=self.settings.smtp_use_tls,
                timeout=self.settings.smtp_timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", to=to, error=str(e))
            raise EmailDeliveryError() from e

        logger.info("email_sent", to=to)
