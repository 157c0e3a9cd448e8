"""Notification channels: email, push webhook and in-app."""
import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
import httpx

from pnr_tracker.config import config
from pnr_tracker.errors import ChannelDeliveryFailure
from pnr_tracker.models import (
    ChangeCategory,
    ChannelOutcome,
    NotificationSettings,
    TrackedRecord,
    Transition,
    TransitionKind,
)
from pnr_tracker.store.state import StateDB

logger = logging.getLogger(__name__)

CATEGORY_MESSAGES = {
    ChangeCategory.CONFIRMATION: "Congratulations! Your ticket has been confirmed.",
    ChangeCategory.CANCELLATION: "Your ticket has been cancelled. Please check with the operator for refund details.",
    ChangeCategory.CHART_PREPARED: "The chart has been prepared for your journey. Please check your seat/berth details.",
    ChangeCategory.WAITLIST_MOVEMENT: "Your waitlist position has changed. Keep checking for further updates.",
    ChangeCategory.EXPIRED: "This PNR is no longer available for status checks and will not be tracked further.",
}


def render_message(record: TrackedRecord, transition: Transition) -> tuple[str, str]:
    """Title and body text for a transition."""
    pnr = record.pnr
    if transition.kind is TransitionKind.FINALIZED:
        title = f"PNR {pnr} Tracking Finished"
    else:
        title = f"PNR {pnr} Status Updated"

    if transition.old_status is None:
        body = f"Your PNR {pnr} status is \"{transition.new_status}\""
    else:
        body = f"Your PNR {pnr} status changed from \"{transition.old_status}\" to \"{transition.new_status}\""

    snapshot = transition.snapshot
    origin = snapshot.origin or record.origin
    destination = snapshot.destination or record.destination
    travel_date = snapshot.travel_date or record.travel_date
    if origin and destination and travel_date:
        body += f" for journey from {origin} to {destination} on {travel_date}"
    body += "."

    if transition.category is not None:
        body += f"\n\n{CATEGORY_MESSAGES[transition.category]}"
    return title, body


class NotificationChannel:
    """Base channel. Subclasses implement `is_enabled` and `send`."""

    name = "channel"

    def is_enabled(self, settings: NotificationSettings) -> bool:
        raise NotImplementedError

    async def send(
        self,
        record: TrackedRecord,
        transition: Transition,
        settings: NotificationSettings,
    ) -> ChannelOutcome:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class EmailChannel(NotificationChannel):
    """SMTP email, sent from a worker thread since smtplib blocks."""

    name = "email"

    def __init__(
        self,
        smtp_server: str = config.SMTP_SERVER,
        smtp_port: int = config.SMTP_PORT,
        sender_email: Optional[str] = config.SENDER_EMAIL,
        sender_password: Optional[str] = config.SENDER_PASSWORD,
    ):
        self.smtp_server = smtp_server
        self.smtp_port = smtp_port
        self.sender_email = sender_email
        self.sender_password = sender_password

    def is_enabled(self, settings: NotificationSettings) -> bool:
        return settings.email_enabled and bool(settings.email)

    async def send(self, record, transition, settings) -> ChannelOutcome:
        if not self.sender_email or not self.sender_password:
            raise ChannelDeliveryFailure(self.name, "SENDER_EMAIL and SENDER_PASSWORD are not configured")

        title, body = render_message(record, transition)
        message = MIMEMultipart()
        message["From"] = self.sender_email
        message["To"] = settings.email
        message["Subject"] = f"{title} - {transition.new_status}"
        message.attach(MIMEText(body + "\n\n---\nThis is an automated notification.", "plain"))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, message)
        except smtplib.SMTPException as e:
            raise ChannelDeliveryFailure(self.name, f"SMTP error: {e}") from e
        except OSError as e:
            raise ChannelDeliveryFailure(self.name, f"SMTP connection error: {e}") from e

        logger.info(f"Email notification sent to {settings.email} for PNR {record.pnr}")
        return ChannelOutcome.DELIVERED

    def _send_sync(self, message: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(self.sender_email, self.sender_password)
            server.send_message(message)


class PushChannel(NotificationChannel):
    """Push delivery through the owner's webhook endpoint."""

    name = "push"

    def __init__(self, timeout: float = config.PUSH_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def is_enabled(self, settings: NotificationSettings) -> bool:
        return settings.push_enabled and bool(settings.push_endpoint)

    async def send(self, record, transition, settings) -> ChannelOutcome:
        title, body = render_message(record, transition)
        payload = {
            "title": title,
            "body": body,
            "data": {
                "pnr": record.pnr,
                "kind": transition.kind.value,
                "old_status": transition.old_status,
                "new_status": transition.new_status,
                "category": transition.category.value if transition.category else None,
            },
        }
        try:
            response = await self.client.post(settings.push_endpoint, json=payload)
        except httpx.HTTPError as e:
            raise ChannelDeliveryFailure(self.name, f"request failed: {e}") from e
        if response.status_code >= 400:
            raise ChannelDeliveryFailure(self.name, f"HTTP {response.status_code}")
        return ChannelOutcome.DELIVERED

    async def aclose(self) -> None:
        await self.client.aclose()


class InAppChannel(NotificationChannel):
    """Stores the notification for the owner's inbox."""

    name = "in_app"

    def __init__(self, store: StateDB):
        self.store = store

    def is_enabled(self, settings: NotificationSettings) -> bool:
        return settings.in_app_enabled

    async def send(self, record, transition, settings) -> ChannelOutcome:
        title, body = render_message(record, transition)
        await self.store.add_in_app_notification(
            owner_id=record.owner_id,
            pnr=record.pnr,
            title=title,
            content=body,
            category=transition.category,
        )
        return ChannelOutcome.DELIVERED
