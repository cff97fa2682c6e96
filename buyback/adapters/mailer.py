# buyback/adapters/mailer.py
from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional

logger = logging.getLogger("buyback.adapters.mailer")


@dataclass
class SentMail:
    recipient: str
    subject: str
    html_body: str
    text_body: Optional[str] = None


class LoggingMailer:
    """Dev / sandbox transport: logs the message and keeps it in memory."""

    name = "log"

    def __init__(self) -> None:
        self.sent: List[SentMail] = []

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        self.sent.append(SentMail(recipient, subject, html_body, text_body))
        logger.info("mail[log] to=%s subject=%s", recipient, subject)


class SmtpMailer:
    """SMTP transport; the blocking smtplib session runs in a worker thread."""

    name = "smtp"

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender: str,
        timeout: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def _build(self, recipient: str, subject: str, html_body: str, text_body: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(text_body or "This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.ehlo()
            if self.use_tls:
                server.starttls()
                server.ehlo()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        msg = self._build(recipient, subject, html_body, text_body)
        await asyncio.to_thread(self._send_sync, msg)
        logger.info("mail[smtp] to=%s subject=%s", recipient, subject)
