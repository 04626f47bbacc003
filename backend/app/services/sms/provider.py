"""SMS provider abstraction.

ABC interface + MockSMSProvider (development / tests) + HttpSMSProvider
(textlocal-style form POST). The mock is selected by environment, never by
business code.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from app import config

logger = logging.getLogger("sms")


class SMSSendError(Exception):
    """Raised when the SMS provider refuses or cannot be reached."""


class SMSProvider(ABC):
    """Abstract SMS provider interface."""

    name: str = "abstract"

    @abstractmethod
    async def send_sms(self, to: str, message: str, sender_id: str = "") -> Dict[str, Any]:
        """Send single SMS. Returns {message_id, status}."""
        ...


class MockSMSProvider(SMSProvider):
    """Keeps messages in memory instead of sending real SMS."""

    name = "mock"

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send_sms(self, to: str, message: str, sender_id: str = "") -> Dict[str, Any]:
        entry = {
            "message_id": f"sms_{uuid.uuid4().hex[:12]}",
            "to": to,
            "message": message,
            "sender_id": sender_id,
            "status": "delivered",
            "provider": self.name,
        }
        self.sent.append(entry)
        logger.info("mock sms to=%s sender=%s", to, sender_id)
        return entry


class HttpSMSProvider(SMSProvider):
    name = "http"

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout_seconds
        self._transport = transport

    async def send_sms(self, to: str, message: str, sender_id: str = "") -> Dict[str, Any]:
        form = {"apikey": self.api_key, "numbers": to, "message": message, "sender": sender_id}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.api_url, data=form)
        except httpx.HTTPError as exc:
            raise SMSSendError(str(exc)) from exc

        if resp.status_code >= 400:
            raise SMSSendError(f"SMS provider returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("status") not in (None, "success"):
            raise SMSSendError(f"SMS provider refused message: {data.get('errors') or data.get('status')}")
        return {"message_id": (data or {}).get("batch_id"), "to": to, "status": "sent", "provider": self.name}


_providers: Dict[str, SMSProvider] = {}


def get_sms_provider() -> SMSProvider:
    """Real provider only in production with an API key; mock otherwise."""

    name = "http" if (config.is_production() and config.SMS_API_KEY) else "mock"
    if name not in _providers:
        if name == "http":
            _providers[name] = HttpSMSProvider(
                api_url=config.SMS_API_URL,
                api_key=config.SMS_API_KEY,
                timeout_seconds=config.NOTIFICATION_TIMEOUT_SECONDS,
            )
        else:
            _providers[name] = MockSMSProvider()
    return _providers[name]
