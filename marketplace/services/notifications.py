"""
Correos transaccionales vía Resend.

Best effort: ningún método público lanza. Sin RESEND_API_KEY se registra un
aviso y se omite el envío.
"""
import html
import logging
from typing import Any, Dict, Optional

import httpx

from ..repositories.directory import DirectoryRepository

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class EmailSender:
    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self._timeout = timeout
        self._transport = transport

    async def send(self, to: str, subject: str, html_body: str, text: Optional[str] = None) -> bool:
        if not self.api_key:
            logger.warning("Resend not configured. Skipping email to %s", to)
            return False

        payload: Dict[str, Any] = {"from": self.sender, "to": [to], "subject": subject, "html": html_body}
        if text:
            payload["text"] = text
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(RESEND_URL, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Resend request failed for %s: %s", to, exc)
            return False

        if resp.status_code >= 400:
            logger.error("Resend API error %s for %s: %s", resp.status_code, to, resp.text)
            return False
        logger.info("Email sent to %s: %s", to, subject)
        return True


class NotificationDispatcher:
    def __init__(self, sender: EmailSender, directory: DirectoryRepository, app_url: str):
        self.sender = sender
        self.directory = directory
        self.app_url = app_url.rstrip("/")

    async def _parties(self, booking: Dict[str, Any]):
        client = await self.directory.get_user(booking.get("client_id"))
        provider = await self.directory.get_user(booking.get("provider_id"))
        service = await self.directory.get_service(booking.get("service_id"))
        title = html.escape((service or {}).get("title") or "Service")
        return client, provider, title

    async def _send(self, user: Optional[Dict[str, Any]], subject: str, body: str, text: str) -> bool:
        email = (user or {}).get("email")
        if not email:
            return False
        try:
            return await self.sender.send(email, subject, body, text)
        except Exception:
            logger.exception("Email to %s failed", email)
            return False

    async def booking_created(self, booking: Dict[str, Any]) -> None:
        try:
            client, provider, title = await self._parties(booking)
        except Exception:
            logger.exception("Could not load parties for booking %s", booking.get("_id"))
            return

        booking_id = str(booking.get("_id"))
        date = html.escape(str(booking.get("booking_date", "")))
        client_name = html.escape((client or {}).get("name") or "Client")
        booking_url = f"{self.app_url}/client/bookings/{booking_id}"
        provider_url = f"{self.app_url}/provider/booking/{booking_id}"

        await self._send(
            client,
            "Booking received - awaiting provider confirmation",
            f"<p>Your booking is successful and is waiting for the provider to accept.</p>"
            f"<p>Service: {title}</p><p>Date: {date}</p>"
            f'<p><a href="{booking_url}">View booking</a></p>',
            f"Your booking is confirmed and awaiting provider acceptance. View: {booking_url}",
        )
        await self._send(
            provider,
            "New booking request",
            f"<p>You have a new booking request.</p><p>Service: {title}</p>"
            f"<p>Client: {client_name}</p><p>Date: {date}</p>"
            f"<p>Please accept within 24 hours or it will be auto-rejected.</p>"
            f'<p><a href="{provider_url}">View request</a></p>',
            f"You have a new booking request. Please accept within 24 hours. View: {provider_url}",
        )

    async def booking_auto_rejected(self, booking: Dict[str, Any], refunded: Optional[bool] = None) -> None:
        try:
            client, provider, title = await self._parties(booking)
        except Exception:
            logger.exception("Could not load parties for booking %s", booking.get("_id"))
            return

        refund_message = _refund_message(refunded)
        await self._send(
            client,
            "Booking auto-rejected",
            f"<p>Your booking was auto-rejected because the provider did not respond within 24 hours.</p>"
            f"<p>Service: {title}</p>" + (f"<p><strong>{refund_message}</strong></p>" if refund_message else ""),
            f"Your booking was auto-rejected because the provider did not respond within 24 hours. {refund_message}".strip(),
        )
        await self._send(
            provider,
            "Booking request expired",
            f"<p>A booking request was auto-rejected after 24 hours.</p><p>Service: {title}</p>",
            "A booking request was auto-rejected after 24 hours.",
        )

    async def booking_rejected(self, booking: Dict[str, Any], refunded: Optional[bool] = None) -> None:
        try:
            client, _, title = await self._parties(booking)
        except Exception:
            logger.exception("Could not load parties for booking %s", booking.get("_id"))
            return

        refund_message = _refund_message(refunded)
        await self._send(
            client,
            "Booking rejected",
            f"<p>Unfortunately, the provider was unable to accept your booking.</p><p>Service: {title}</p>"
            + (f"<p><strong>{refund_message}</strong></p>" if refund_message else "")
            + "<p>We apologize for the inconvenience. Please try booking with another provider.</p>",
            f"Unfortunately, the provider was unable to accept your booking. {refund_message}".strip(),
        )


def _refund_message(refunded: Optional[bool]) -> str:
    if refunded is None:
        return ""
    if refunded:
        return "Your payment has been refunded automatically."
    return "Please contact support for your refund."
