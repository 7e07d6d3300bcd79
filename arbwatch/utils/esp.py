"""Email sending helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
SEND_TIMEOUT = 15.0


@dataclass(slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str


class EmailProvider:
    """Outbound email transport. ``send`` reports success rather than raising."""

    def __init__(
        self,
        provider: str | None = None,
        *,
        from_email: str = "alerts@arbwatch.local",
        from_name: str = "Arbitrage Alerts",
        session: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider = provider or os.environ.get("ESP_PROVIDER", "log")
        self.resend_api_key = os.environ.get("RESEND_API_KEY")
        self.sendgrid_api_key = os.environ.get("SENDGRID_API_KEY")
        self.sender = f"{from_name} <{from_email}>"
        self.from_email = from_email
        self.from_name = from_name
        self._session = session

    async def send(self, message: EmailMessage) -> bool:
        try:
            if self.provider == "resend" and self.resend_api_key:
                await self._send_resend(message)
            elif self.provider == "sendgrid" and self.sendgrid_api_key:
                await self._send_sendgrid(message)
            else:
                logger.info("Email (log) → %s: %s", message.to, message.subject)
        except httpx.HTTPError as exc:
            logger.warning("Email to %s failed: %s", message.to, exc)
            return False
        return True

    async def _send_resend(self, message: EmailMessage) -> None:
        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        headers = {"Authorization": f"Bearer {self.resend_api_key}"}
        await self._post(RESEND_URL, payload, headers)

    async def _send_sendgrid(self, message: EmailMessage) -> None:
        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject,
            "content": [{"type": "text/html", "value": message.html}],
        }
        headers = {"Authorization": f"Bearer {self.sendgrid_api_key}"}
        await self._post(SENDGRID_URL, payload, headers)

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> None:
        if self._session is not None:
            response = await self._session.post(url, json=payload, headers=headers, timeout=SEND_TIMEOUT)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=SEND_TIMEOUT) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
