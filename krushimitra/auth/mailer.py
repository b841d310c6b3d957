"""
OTP mail delivery.

SmtpMailer runs the blocking smtplib conversation in a worker thread so
the event loop is never held up by a slow mail server.
"""
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Protocol

from krushimitra.core.errors import DeliveryError

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    @property
    def configured(self) -> bool:
        ...

    async def send(self, to_address: str, subject: str, body: str) -> None:
        ...


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "",
        use_tls: bool = True,
        timeout_seconds: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.host and self.sender)

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(self, to_address: str, subject: str, body: str) -> None:
        if not self.configured:
            raise DeliveryError("Mailer not configured", key=to_address)

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to_address
        message["Subject"] = subject
        message.set_content(body)

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP send failed: {type(e).__name__}", key=to_address) from e
        logger.info(f"Mail sent: to={to_address} subject={subject!r}")
