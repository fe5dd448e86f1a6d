"""
Outbound email providers.

Resend is the primary provider (send, scheduled send, cancel). SMTP is
kept as an immediate-send fallback.
"""

import os
import smtplib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Dict, Any, List

import httpx

from ..core.config import get_settings
from ..core.logging import get_logger
from ..core.exceptions import ProviderError, ProviderUnavailableError, ProviderTimeoutError

logger = get_logger(__name__)


@dataclass
class OutboundEmail:
    """A fully rendered message ready for a provider."""
    to: str
    subject: str
    html: Optional[str]
    text: Optional[str] = None
    from_email: Optional[str] = None
    idempotency_key: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderResult:
    provider: str
    message_id: Optional[str]
    scheduled: bool = False


class EmailProvider(ABC):
    """Abstract base class for email providers."""

    supports_scheduling = False

    @abstractmethod
    async def send(self, message: OutboundEmail, scheduled_at: Optional[datetime] = None) -> ProviderResult:
        """Send now, or hand off for later delivery when ``scheduled_at`` is given."""

    async def cancel(self, message_id: str) -> None:
        raise ProviderError(f"{self.get_name()} cannot cancel scheduled sends", provider=self.get_name())

    @abstractmethod
    def get_name(self) -> str:
        """Return provider name."""


class ResendProvider(EmailProvider):
    """Resend REST API provider."""

    supports_scheduling = True

    def __init__(self, api_key: str = None, base_url: str = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = get_settings()
        self.api_key = api_key or settings.resend_api_key
        self.base_url = (base_url or settings.resend_base_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def get_name(self) -> str:
        return "resend"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key[:256]
        return headers

    async def send(self, message: OutboundEmail, scheduled_at: Optional[datetime] = None) -> ProviderResult:
        """Send via the Resend API."""
        if not self.api_key:
            raise ProviderUnavailableError("Resend API key not configured", provider="resend")

        data: Dict[str, Any] = {
            "from": message.from_email or get_settings().resend_from_email,
            "to": [message.to],
            "subject": message.subject,
        }
        if message.html:
            data["html"] = message.html
        if message.text:
            data["text"] = message.text
        if message.headers:
            data["headers"] = message.headers
        if message.tags:
            data["tags"] = [{"name": k, "value": str(v)} for k, v in message.tags.items()]
        if scheduled_at is not None:
            data["scheduled_at"] = scheduled_at.isoformat() + "Z"

        try:
            async with self._client() as client:
                response = await client.post("/emails", json=data, headers=self._headers(message.idempotency_key))
        except httpx.ConnectError as e:
            logger.error(f"Resend connection failed: {e}")
            raise ProviderError(f"Resend connection failed: {e}", provider="resend", cause=e)
        except httpx.RequestError as e:
            # Request may have reached Resend
            logger.error(f"Resend request failed: {e}")
            raise ProviderTimeoutError(f"Resend request failed: {e}", provider="resend", cause=e)

        if response.status_code not in (200, 201, 202):
            raise ProviderError(
                f"Resend API error: {response.status_code} - {response.text}",
                provider="resend",
                status_code=response.status_code,
            )

        message_id = response.json().get("id")
        return ProviderResult(provider="resend", message_id=message_id, scheduled=scheduled_at is not None)

    async def cancel(self, message_id: str) -> None:
        """Cancel a scheduled send."""
        if not self.api_key:
            raise ProviderUnavailableError("Resend API key not configured", provider="resend")
        try:
            async with self._client() as client:
                response = await client.post(f"/emails/{message_id}/cancel", headers=self._headers())
        except httpx.RequestError as e:
            raise ProviderError(f"Resend cancel request failed: {e}", provider="resend", cause=e)

        if response.status_code not in (200, 202):
            raise ProviderError(
                f"Resend cancel error: {response.status_code} - {response.text}",
                provider="resend",
                status_code=response.status_code,
            )


class SMTPProvider(EmailProvider):
    """SMTP email provider for standard email sending."""

    def __init__(
        self,
        host: str = None,
        port: int = None,
        username: str = None,
        password: str = None,
        use_tls: bool = True,
    ):
        self.host = host or os.getenv("SMTP_HOST", "localhost")
        self.port = port or int(os.getenv("SMTP_PORT", "587"))
        self.username = username or os.getenv("SMTP_USERNAME", "")
        self.password = password or os.getenv("SMTP_PASSWORD", "")
        self.use_tls = use_tls

    def get_name(self) -> str:
        return "smtp"

    async def send(self, message: OutboundEmail, scheduled_at: Optional[datetime] = None) -> ProviderResult:
        """Send email via SMTP."""
        if scheduled_at is not None:
            raise ProviderError("SMTP does not support scheduled sends", provider="smtp")

        from_email = message.from_email or get_settings().resend_from_email
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = from_email
        msg["To"] = message.to
        msg["Message-ID"] = f"<{uuid.uuid4()}@mailflow>"
        for name, value in message.headers.items():
            msg[name] = value

        if message.text:
            msg.attach(MIMEText(message.text, "plain"))
        if message.html:
            msg.attach(MIMEText(message.html, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(from_email, [message.to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {e}")
            raise ProviderError(f"SMTP send failed: {e}", provider="smtp", cause=e)

        return ProviderResult(provider="smtp", message_id=msg["Message-ID"])


class EmailService:
    """
    Email service that manages providers and handles email sending.

    Supports multiple providers with automatic fallback for immediate sends.
    Scheduled hand-off and cancellation go to the primary provider only.
    """

    def __init__(self, providers: Optional[List[EmailProvider]] = None, primary_provider: str = None):
        self.providers: Dict[str, EmailProvider] = {}
        for provider in providers or []:
            self.providers[provider.get_name()] = provider
        self.primary_provider = primary_provider or (providers[0].get_name() if providers else "resend")

    @classmethod
    def from_settings(cls) -> "EmailService":
        settings = get_settings()
        providers: List[EmailProvider] = []
        if settings.resend_api_key:
            providers.append(ResendProvider())
        if os.getenv("SMTP_HOST"):
            providers.append(SMTPProvider())
        if not providers:
            logger.warning("No email providers configured; dispatch will record failures")
        return cls(providers, primary_provider=settings.email_provider)

    def get_provider(self, name: Optional[str] = None) -> EmailProvider:
        """Get email provider by name or return primary."""
        provider_name = name or self.primary_provider
        if provider_name not in self.providers:
            raise ProviderUnavailableError(f"Provider '{provider_name}' not available", provider=provider_name)
        return self.providers[provider_name]

    def _ordered(self) -> List[str]:
        names = []
        if self.primary_provider in self.providers:
            names.append(self.primary_provider)
        names.extend(name for name in self.providers if name not in names)
        return names

    async def send(self, message: OutboundEmail) -> ProviderResult:
        """Send now, falling back to other providers if the primary fails.

        A provider that may already have accepted the message stops the
        fallback; the caller retries later under the same idempotency key.
        """
        names = self._ordered()
        if not names:
            raise ProviderUnavailableError("No email providers available")

        last_error = None
        for name in names:
            try:
                result = await self.providers[name].send(message)
                logger.info(
                    f"Email delivered to provider {name}",
                    extra={"provider": name, "message_id": result.message_id},
                )
                return result
            except ProviderError as e:
                if e.delivery_unknown:
                    logger.warning(f"Provider {name} outcome unknown: {e.message}, not falling back")
                    raise
                last_error = e
                logger.warning(f"Provider {name} failed: {e.message}, trying next...")

        raise ProviderError(
            f"All providers failed. Last error: {last_error.message}",
            provider=last_error.provider,
            status_code=last_error.provider_status_code,
            cause=last_error,
        )

    @property
    def can_schedule(self) -> bool:
        provider = self.providers.get(self.primary_provider)
        return bool(provider and provider.supports_scheduling)

    async def schedule(self, message: OutboundEmail, scheduled_at: datetime) -> ProviderResult:
        provider = self.get_provider()
        if not provider.supports_scheduling:
            raise ProviderError(f"{provider.get_name()} cannot schedule sends", provider=provider.get_name())
        return await provider.send(message, scheduled_at=scheduled_at)

    async def cancel(self, message_id: str) -> None:
        await self.get_provider().cancel(message_id)


# Global email service instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get or create the global email service instance."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService.from_settings()
    return _email_service


def set_email_service(service: Optional[EmailService]) -> None:
    """Replace the global instance. ``None`` resets to settings-based construction."""
    global _email_service
    _email_service = service
