"""Best-effort booking notifications (SMS + e-mail).

Notifications are scheduled as background tasks after the booking outcome is
persisted. Nothing here may raise into the booking path: every failure and
timeout is logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set

from app import config
from app.services.email import send_email
from app.services.sms.provider import SMSProvider, get_sms_provider

logger = logging.getLogger("notifications")

_background_tasks: Set[asyncio.Task] = set()


def _booking_sms_text(transaction: Dict[str, Any], confirmation: Dict[str, Any]) -> str:
    hotel = (transaction.get("hotel_snapshot") or {}).get("name") or "your hotel"
    search = transaction.get("search_snapshot") or {}
    ref = confirmation.get("booking_reference") or transaction["_id"]
    return (
        f"Booking confirmed at {hotel} ({search.get('check_in_date')} to {search.get('check_out_date')}). "
        f"Ref: {ref}"
    )


def _booking_email_html(transaction: Dict[str, Any], confirmation: Dict[str, Any]) -> str:
    hotel = (transaction.get("hotel_snapshot") or {}).get("name") or "your hotel"
    pricing = transaction.get("pricing") or {}
    ref = confirmation.get("booking_reference") or transaction["_id"]
    return (
        f"<p>Your booking at <b>{hotel}</b> is confirmed.</p>"
        f"<p>Reference: {ref}<br/>Amount: {pricing.get('total_chargeable_amount')} {pricing.get('currency') or ''}</p>"
    )


class BookingNotifier:
    def __init__(self, sms_provider: Optional[SMSProvider] = None, *, timeout_seconds: Optional[float] = None) -> None:
        self.sms = sms_provider or get_sms_provider()
        self.timeout = timeout_seconds if timeout_seconds is not None else config.NOTIFICATION_TIMEOUT_SECONDS

    async def _guarded(self, label: str, aw: Awaitable[Any]) -> None:
        try:
            await asyncio.wait_for(aw, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("notification %s timed out after %ss", label, self.timeout)
        except Exception as exc:
            logger.warning("notification %s failed: %s", label, exc)

    async def send_booking_confirmed(self, transaction: Dict[str, Any], confirmation: Dict[str, Any]) -> None:
        contact = transaction.get("contact_detail") or {}
        sms_text = _booking_sms_text(transaction, confirmation)
        jobs: List[Awaitable[None]] = []

        recipients = [m for m in (contact.get("mobile"), config.ADMIN_NOTIFY_MOBILE) if m]
        for mobile in recipients:
            jobs.append(self._guarded(f"sms:{mobile}", self.sms.send_sms(mobile, sms_text, config.SMS_SENDER_ID)))

        html = _booking_email_html(transaction, confirmation)
        for address in [a for a in (contact.get("email"), config.ADMIN_NOTIFY_EMAIL) if a]:
            jobs.append(
                self._guarded(
                    f"email:{address}",
                    send_email(to_address=address, subject="Hotel booking confirmed", html_body=html, text_body=sms_text),
                )
            )

        if jobs:
            await asyncio.gather(*jobs)

    def schedule_booking_confirmed(self, transaction: Dict[str, Any], confirmation: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Fire-and-forget; returns the task so callers (tests) may await it."""

        if not config.ENABLE_BOOKING_NOTIFICATIONS:
            return None
        task = asyncio.create_task(self.send_booking_confirmed(transaction, confirmation))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task
