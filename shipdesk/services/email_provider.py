"""
Email Provider (SendGrid)

Transactional sends for the tracking notification. Templates are out of
scope: build_tracking_email produces a plain subject/text/html triple.
"""
import html
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

import httpx

from shipdesk.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailSender(Protocol):
    async def send(self, to_email: str, subject: str, text: str, html_body: str) -> SendResult:
        ...


class SendGridEmailSender:
    """SendGrid v3 mail/send."""

    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, s: Settings) -> "SendGridEmailSender":
        return cls(s.SENDGRID_API_KEY, s.SENDGRID_FROM_EMAIL, s.SENDGRID_FROM_NAME)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=30.0,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Explicit cleanup method."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, to_email: str, subject: str, text: str, html_body: str) -> SendResult:
        if not self.api_key:
            logger.warning("SendGrid API key not configured")
            return SendResult(success=False, error="Email not configured")

        payload = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body},
            ],
        }

        http = await self._get_http_client()
        try:
            resp = await http.post(f"{self.BASE_URL}/mail/send", json=payload)
        except httpx.RequestError as e:
            logger.error(f"SendGrid request failed: {e}")
            return SendResult(success=False, error=str(e))

        if resp.status_code in (200, 202):
            return SendResult(success=True, message_id=resp.headers.get("X-Message-Id"))

        logger.error(f"SendGrid send failed: {resp.status_code} - {resp.text[:500]}")
        return SendResult(success=False, error=f"SendGrid returned {resp.status_code}")


class MockEmailSender:
    """Logs instead of sending. Used in development and tests."""

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.sent: List[Tuple[str, str, str]] = []

    async def send(self, to_email: str, subject: str, text: str, html_body: str) -> SendResult:
        if self.fail_with:
            logger.info(f"[MOCK EMAIL] failing send to {to_email}: {self.fail_with}")
            return SendResult(success=False, error=self.fail_with)
        self.sent.append((to_email, subject, text))
        logger.info(f"[MOCK EMAIL] To: {to_email} | Subject: {subject}")
        return SendResult(success=True, message_id=f"mock-{len(self.sent)}")


def get_email_sender(s: Settings) -> EmailSender:
    if s.SENDGRID_API_KEY:
        return SendGridEmailSender.from_settings(s)
    return MockEmailSender()


@dataclass
class RenderedEmail:
    subject: str
    text: str
    html_body: str = field(repr=False, default="")


def build_tracking_email(context, site_url: Optional[str] = None) -> RenderedEmail:
    """Subject and bodies for a TrackingEmailContext."""
    carrier_service = " - ".join(part for part in (context.carrier, context.service) if part)
    greeting = f"Hi {context.customer_name}," if context.customer_name else "Hi,"
    lines = [
        greeting,
        "",
        "Your order is on its way.",
        "",
        f"Order: {context.order_label}",
        f"Tracking number: {context.tracking_number}",
    ]
    if carrier_service:
        lines.append(f"Carrier/Service: {carrier_service}")
    if context.items:
        lines.append("")
        lines.append("Items:")
        lines.extend(
            f"- {item.name}" + (f" x{item.quantity}" if item.quantity > 1 else "")
            for item in context.items
        )
    if site_url:
        lines.extend(["", f"Store: {site_url.rstrip('/')}"])
    text = "\n".join(lines)

    html_body = "".join(f"<p>{html.escape(line)}</p>" if line else "<br>" for line in lines)
    return RenderedEmail(
        subject=f"Your order {context.order_label} has shipped",
        text=text,
        html_body=html_body,
    )
