"""
Notification fanout.

``notify`` schedules delivery and returns immediately. Each channel is delivered
independently; a failing channel is logged and never raised, so the state change
that triggered the notification is never affected.
"""
import asyncio
import logging
from typing import Iterable, Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

RESEND_URL = "https://api.resend.com/emails"
TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

SUBJECTS: dict[str, str] = {
    "confirmation": "Your transfer is confirmed",
    "admin_notification": "New paid booking",
    "new_assignment": "New trip assignment",
    "cancellation": "Booking cancelled",
    "no_show": "Customer no-show",
}

# Strong references so scheduled deliveries are not garbage collected mid-flight
_pending: set[asyncio.Task] = set()


def notify(
    recipient_kind: str,
    channels: Iterable[str],
    *,
    booking_id: str,
    notification_type: str,
    payload: dict,
) -> None:
    """Fire-and-forget: schedule one logical notification on the running loop."""
    request = {
        "recipient_kind": recipient_kind,
        "booking_id": booking_id,
        "notification_type": notification_type,
        "payload": payload,
    }
    task = asyncio.create_task(deliver(request, tuple(channels)))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def deliver(request: dict, channels: tuple[str, ...]) -> dict[str, bool]:
    """Attempt every channel; returns per-channel success for logging/tests."""
    results: dict[str, bool] = {}
    payload = request["payload"]
    text = _render_text(request)

    async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
        for channel in channels:
            try:
                if channel == "email":
                    to = _email_recipient(request)
                    results[channel] = await _send_email(client, to, SUBJECTS.get(request["notification_type"], "Booking update"), text)
                elif channel == "sms":
                    results[channel] = await _send_sms(client, payload.get("phone"), text)
                else:
                    logger.warning("Unknown notification channel %s", channel)
                    results[channel] = False
            except httpx.HTTPError as exc:
                logger.error(
                    "Notification %s via %s failed for booking=%s: %s",
                    request["notification_type"], channel, request["booking_id"], exc,
                )
                results[channel] = False

    logger.info(
        "Notification %s → %s booking=%s results=%s",
        request["notification_type"], request["recipient_kind"], request["booking_id"], results,
    )
    return results


def _email_recipient(request: dict) -> Optional[str]:
    if request["recipient_kind"] == "admin":
        return settings.admin_notification_email
    return request["payload"].get("email")


def _render_text(request: dict) -> str:
    p = request["payload"]
    ref = p.get("reference") or request["booking_id"]
    kind = request["notification_type"]
    if kind == "new_assignment":
        return f"New trip {ref}: pickup {p.get('pickup_location')} at {p.get('pickup_datetime')}."
    if kind == "cancellation":
        return f"Booking {ref} has been cancelled."
    if kind == "no_show":
        return f"Booking {ref}: customer did not show for the {p.get('pickup_datetime')} pickup at {p.get('pickup_location')}."
    if kind == "admin_notification":
        return f"Booking {ref} paid: {p.get('pickup_location')} → {p.get('dropoff_location')}, {p.get('total_price')}."
    return f"Booking {ref} confirmed: {p.get('pickup_location')} → {p.get('dropoff_location')} at {p.get('pickup_datetime')}."


async def _send_email(client: httpx.AsyncClient, to: Optional[str], subject: str, text: str) -> bool:
    if not settings.resend_api_key or not to:
        logger.debug("Email channel not configured or no recipient, skipping")
        return False
    resp = await client.post(
        RESEND_URL,
        headers={"Authorization": f"Bearer {settings.resend_api_key}"},
        json={"from": settings.notification_from_email, "to": [to], "subject": subject, "text": text},
    )
    resp.raise_for_status()
    return True


async def _send_sms(client: httpx.AsyncClient, to: Optional[str], text: str) -> bool:
    if not settings.twilio_account_sid or not to:
        logger.debug("SMS channel not configured or no recipient, skipping")
        return False
    resp = await client.post(
        TWILIO_URL.format(sid=settings.twilio_account_sid),
        auth=(settings.twilio_account_sid, settings.twilio_auth_token),
        data={"To": to, "From": settings.twilio_from_number, "Body": text},
    )
    resp.raise_for_status()
    return True
