from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from . import config

_log = logging.getLogger("kitchen.mail")


class MailError(Exception):
    pass


class Mailer:
    """Delivers one-time codes. ``delivers`` is False for log-only mailers."""

    delivers = True

    def send_code(self, to: str, code: str, purpose: str, name: Optional[str] = None) -> None:
        raise NotImplementedError


def _render(code: str, purpose: str, name: Optional[str]) -> EmailMessage:
    minutes = max(1, config.OTP_TTL_SECS // 60)
    msg = EmailMessage()
    msg["Subject"] = f"Your {purpose} code"
    greeting = f"Hi {name},\n\n" if name else ""
    msg.set_content(
        f"{greeting}Your {config.BRAND_NAME} {purpose} code is: {code}\n"
        f"It expires in {minutes} minutes. If you did not request it, ignore this email.\n"
    )
    msg.add_alternative(
        f"<p>{greeting.strip()}</p>"
        f"<p>Your {config.BRAND_NAME} {purpose} code is:</p>"
        f"<h1 style=\"letter-spacing:5px\">{code}</h1>"
        f"<p>It expires in {minutes} minutes.</p>",
        subtype="html",
    )
    return msg


class SmtpMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    def send_code(self, to: str, code: str, purpose: str, name: Optional[str] = None) -> None:
        msg = _render(code, purpose, name)
        msg["From"] = self.sender
        msg["To"] = to
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            _log.warning("smtp delivery to %s failed: %s", to, e)
            raise MailError("mail delivery failed") from e
        _log.info("sent %s code", purpose, extra={"to": to})


class ConsoleMailer(Mailer):
    """Development fallback when SMTP is not configured: the code is logged."""

    delivers = False

    def send_code(self, to: str, code: str, purpose: str, name: Optional[str] = None) -> None:
        _log.warning("SMTP not configured; %s code for %s is %s", purpose, to, code)


_MAILER: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _MAILER
    if _MAILER is None:
        if config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASS:
            _MAILER = SmtpMailer(
                config.SMTP_HOST,
                config.SMTP_PORT,
                config.SMTP_USER,
                config.SMTP_PASS,
                config.SMTP_FROM,
                config.SMTP_TIMEOUT_SECS,
            )
        else:
            _MAILER = ConsoleMailer()
    return _MAILER
