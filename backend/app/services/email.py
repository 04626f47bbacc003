from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import anyio
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app import config

logger = logging.getLogger("email")


class EmailSendError(Exception):
    """SES refused the message or could not be reached."""


@dataclass(frozen=True)
class OutgoingEmail:
    to_address: str
    subject: str
    html_body: str
    text_body: Optional[str] = None

    def to_ses_message(self) -> dict[str, Any]:
        body: dict[str, Any] = {"Html": {"Data": self.html_body, "Charset": "UTF-8"}}
        if self.text_body:
            body["Text"] = {"Data": self.text_body, "Charset": "UTF-8"}
        return {"Subject": {"Data": self.subject, "Charset": "UTF-8"}, "Body": body}


def ses_configured() -> bool:
    return all(
        (config.AWS_REGION, config.AWS_ACCESS_KEY_ID, config.AWS_SECRET_ACCESS_KEY, config.AWS_SES_FROM_EMAIL)
    )


def send_email_ses(email: OutgoingEmail) -> dict[str, Any]:
    """Blocking boto3 call; run it off the event loop."""

    client = boto3.client(
        "ses",
        region_name=config.AWS_REGION,
        aws_access_key_id=config.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
    )
    reply_to = [config.ADMIN_NOTIFY_EMAIL] if config.ADMIN_NOTIFY_EMAIL else []
    try:
        resp = client.send_email(
            Source=config.AWS_SES_FROM_EMAIL,
            Destination={"ToAddresses": [email.to_address]},
            Message=email.to_ses_message(),
            ReplyToAddresses=reply_to,
        )
    except (ClientError, BotoCoreError) as exc:
        logger.error("SES send to %s failed: %s", email.to_address, exc, exc_info=True)
        raise EmailSendError(str(exc)) from exc

    logger.info("SES send ok to=%s MessageId=%s", email.to_address, resp.get("MessageId"))
    return resp


async def send_email(*, to_address: str, subject: str, html_body: str, text_body: Optional[str] = None) -> dict[str, Any]:
    """Send through SES when configured; otherwise only log the message."""

    email = OutgoingEmail(to_address=to_address, subject=subject, html_body=html_body, text_body=text_body)
    if not ses_configured():
        logger.info("email (log only) to=%s subject=%s", to_address, subject)
        return {"status": "logged", "to": to_address}
    return await anyio.to_thread.run_sync(send_email_ses, email)
