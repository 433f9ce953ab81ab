import asyncio
import re
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

import aiosmtplib
import httpx

from email_queue.config import Settings
from email_queue.exceptions import DeliveryRejected, TransportUnavailable
from email_queue.schemas import EmailRecord
from email_queue.services.circuit_breaker import CircuitBreaker
from email_queue.utils.logger import get_logger

logger = get_logger("transport")

TAG_REGEX = re.compile(r"<[^>]*>")


def strip_tags(html: str) -> str:
    return TAG_REGEX.sub("", html)


def format_address(address: str, name: Optional[str] = None) -> str:
    return formataddr((name, address)) if name else address


@dataclass(frozen=True)
class OutboundMessage:
    """A fully formed email, ready to hand to a transport."""

    to: str
    sender: str
    subject: str
    html: str
    text: str
    reply_to: Optional[str] = None

    @classmethod
    def from_record(cls, record: EmailRecord) -> "OutboundMessage":
        return cls(
            to=format_address(record.to_email, record.to_name),
            sender=format_address(record.from_email, record.from_name),
            subject=record.subject,
            html=record.html_content,
            text=record.text_content or strip_tags(record.html_content),
            reply_to=record.reply_to,
        )


@dataclass(frozen=True)
class SendResult:
    delivered: bool
    provider_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, provider_id: str) -> "SendResult":
        return cls(delivered=True, provider_id=provider_id)

    @classmethod
    def rejected(cls, reason: str) -> "SendResult":
        return cls(delivered=False, reason=reason)


class Transport:
    """One send attempt per call against an external provider.

    Subclasses implement ``_deliver``, returning the provider's message id
    or raising ``DeliveryRejected``. A provider refusing the credentials
    raises ``TransportUnavailable`` instead, which is not a delivery attempt.
    """

    name = "transport"

    def __init__(self, credential: str, circuit: Optional[CircuitBreaker] = None):
        self.credential = credential
        self.circuit = circuit or CircuitBreaker()

    @property
    def credential_length(self) -> int:
        return len(self.credential or "")

    def ensure_available(self):
        if not self.credential:
            raise TransportUnavailable(f"{self.name} credentials are not configured")
        if not self.circuit.allow_request():
            raise TransportUnavailable(f"{self.name} circuit breaker is open")

    async def send(self, message: OutboundMessage) -> SendResult:
        self.ensure_available()
        try:
            provider_id = await self._deliver(message)
        except DeliveryRejected as e:
            if e.transient:
                self.circuit.record_failure()
            logger.warning(
                "send_rejected",
                extra={"transport": self.name, "to_email": message.to, "error": e.reason, "transient": e.transient},
            )
            return SendResult.rejected(e.reason)

        self.circuit.record_success()
        logger.info("send_accepted", extra={"transport": self.name, "to_email": message.to, "provider_id": provider_id})
        return SendResult.ok(provider_id)

    async def _deliver(self, message: OutboundMessage) -> str:
        raise NotImplementedError

    async def aclose(self):
        pass


class ResendTransport(Transport):
    name = "resend"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        circuit: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(api_key, circuit)
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _deliver(self, message: OutboundMessage) -> str:
        payload = {
            "from": message.sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to

        try:
            response = await self.client.post(
                "/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self.credential}"},
            )
        except httpx.TimeoutException:
            raise DeliveryRejected("timeout", transient=True)
        except httpx.HTTPError as e:
            raise DeliveryRejected(f"Resend request failed: {e}", transient=True)

        if response.is_success:
            return response.json().get("id", "")

        if response.status_code in (401, 403):
            raise TransportUnavailable(f"Resend rejected the API key ({response.status_code})")

        raise DeliveryRejected(
            f"Resend API error {response.status_code}: {response.text}",
            transient=response.status_code >= 500 or response.status_code == 429,
        )

    async def aclose(self):
        await self.client.aclose()


class SmtpTransport(Transport):
    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        start_tls: bool = True,
        timeout: float = 10.0,
        circuit: Optional[CircuitBreaker] = None,
    ):
        super().__init__(password if username else "", circuit)
        self.host = host
        self.port = port
        self.username = username
        self.start_tls = start_tls
        self.timeout = timeout

    def build_mime(self, message: OutboundMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = message.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid(domain=message.sender.rpartition("@")[2].rstrip(">") or None)
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))
        return msg

    async def _deliver(self, message: OutboundMessage) -> str:
        msg = self.build_mime(message)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.credential,
                start_tls=self.start_tls,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError):
            raise DeliveryRejected("timeout", transient=True)
        except aiosmtplib.SMTPAuthenticationError as e:
            raise TransportUnavailable(f"SMTP login refused: {e.code} {e.message}")
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise DeliveryRejected(f"Recipient refused: {e}")
        except aiosmtplib.SMTPResponseException as e:
            raise DeliveryRejected(f"SMTP error {e.code}: {e.message}", transient=e.code < 500)
        except (aiosmtplib.SMTPException, OSError) as e:
            raise DeliveryRejected(f"SMTP connection failed: {e}", transient=True)
        return msg["Message-ID"]


def build_transport(config: Settings) -> Optional[Transport]:
    """Resolve the configured transport once; ``None`` when it has no credentials."""
    if not config.has_transport:
        logger.warning("transport_not_configured", extra={"transport": config.email_transport})
        return None

    circuit = CircuitBreaker(
        failure_threshold=config.circuit_failure_threshold,
        recovery_time=config.circuit_recovery_seconds,
    )
    if config.email_transport == "smtp":
        return SmtpTransport(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            start_tls=config.smtp_start_tls,
            timeout=config.transport_timeout,
            circuit=circuit,
        )
    if config.email_transport == "resend":
        return ResendTransport(
            api_key=config.resend_api_key,
            base_url=config.resend_api_url,
            timeout=config.transport_timeout,
            circuit=circuit,
        )
    raise ValueError(f"Unknown EMAIL_TRANSPORT {config.email_transport!r}")
