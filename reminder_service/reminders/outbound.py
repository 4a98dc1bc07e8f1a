"""
Outbound delivery queue.

Email leaves the engine through an ``OutboundQueue``. With a broker configured
the message is published to Celery and delivered by a worker with its own
retry policy; otherwise it is delivered synchronously in the scanning process.
The backend is chosen once, when the engine is assembled.
"""
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional
import logging
import smtplib
import ssl

from .config import ReminderSettings
from .errors import ChannelConfigurationError

logger = logging.getLogger(__name__)

DELIVER_EMAIL_TASK = "reminders.deliver_email"

# Worth another try from the delivery worker; anything else fails the delivery for good
TRANSIENT_SMTP_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    ConnectionError,
    TimeoutError,
)


class SmtpTransport:
    """Thin SMTP client; raises smtplib errors for the caller to classify."""

    def __init__(
        self,
        server: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_email: Optional[str],
        timeout: float = 20.0,
    ):
        self.smtp_server = server
        self.smtp_port = int(port)
        self.smtp_username = username
        self.smtp_password = password
        self.from_email = from_email or username
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: ReminderSettings) -> "SmtpTransport":
        return cls(
            server=settings.SMTP_SERVER,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            from_email=settings.FROM_EMAIL,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    def deliver(self, message: Dict[str, Any]) -> None:
        if not self.smtp_server:
            raise ChannelConfigurationError("SMTP_SERVER is required but not configured")
        if not self.from_email:
            raise ChannelConfigurationError("FROM_EMAIL is required but not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message["subject"]
        msg["From"] = self.from_email
        msg["To"] = message["to"]
        msg.attach(MIMEText(message["text"], "plain"))
        if message.get("html"):
            msg.attach(MIMEText(message["html"], "html"))

        context = ssl.create_default_context()
        if self.smtp_port == 465:
            # SSL connection for port 465
            with smtplib.SMTP_SSL(self.smtp_server, self.smtp_port, context=context, timeout=self.timeout) as server:
                self._login(server)
                server.send_message(msg)
        else:
            # STARTTLS for port 587
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                self._login(server)
                server.send_message(msg)
        logger.info(f"✅ [SMTP] Email sent to {message['to']}")

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_username and self.smtp_password:
            server.login(self.smtp_username, self.smtp_password)


class OutboundQueue(ABC):
    """Capability for handing a rendered email to its transport"""

    name: str = "outbound"

    @abstractmethod
    def submit_email(self, message: Dict[str, Any]) -> None:
        """Accept the message or raise; acceptance counts as delivery for the scanner."""


class InlineOutboundQueue(OutboundQueue):
    """Delivers immediately in the calling thread."""

    name = "inline"

    def __init__(self, transport: SmtpTransport):
        self.transport = transport

    def submit_email(self, message: Dict[str, Any]) -> None:
        self.transport.deliver(message)


class CeleryOutboundQueue(OutboundQueue):
    """Publishes the message to the broker for a delivery worker."""

    name = "celery"

    def __init__(self, celery_app, queue: str, routing_key: str):
        self.celery_app = celery_app
        self.queue = queue
        self.routing_key = routing_key

    def submit_email(self, message: Dict[str, Any]) -> None:
        self.celery_app.send_task(
            DELIVER_EMAIL_TASK,
            args=[message],
            queue=self.queue,
            routing_key=self.routing_key,
        )
        logger.info(f"📨 [Outbound] Email to {message['to']} enqueued on {self.queue}")


def build_outbound_queue(settings: ReminderSettings) -> OutboundQueue:
    if settings.OUTBOUND_BACKEND == "celery":
        from .celery_app import celery_app

        logger.info("🔴 [Outbound] Using Celery outbound queue")
        return CeleryOutboundQueue(
            celery_app,
            queue=settings.RABBITMQ_OUTPUT_QUEUE,
            routing_key=settings.RABBITMQ_OUTPUT_ROUTING_KEY,
        )
    logger.info("🚫 [Outbound] Broker disabled - delivering email inline")
    return InlineOutboundQueue(SmtpTransport.from_settings(settings))
