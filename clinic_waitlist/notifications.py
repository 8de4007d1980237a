"""
Notification gateway — tells a waitlisted patient that a slot has opened
and is held for them until the offer expires.

Delivery is best effort from the engine's point of view: a failed send
raises GatewayError, which the engine logs without undoing the offer.

HIPAA note: SMS is not inherently encrypted. Offers only carry the provider,
service, date and time; never put clinical details in them.
"""

from __future__ import annotations

import asyncio
import logging
import zoneinfo
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

import resend
from twilio.rest import Client

from clinic_waitlist.config import Settings, settings
from clinic_waitlist.errors import GatewayError
from clinic_waitlist.models import WaitlistEntry

logger = logging.getLogger(__name__)


class NotificationGateway(ABC):
    @abstractmethod
    async def notify(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        """Deliver a slot offer. Raises GatewayError if delivery failed."""


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


def _local(ts: datetime, cfg: Settings) -> datetime:
    return ts.astimezone(zoneinfo.ZoneInfo(cfg.office_timezone))


def format_deadline(expires_at: datetime, cfg: Settings = settings) -> str:
    return _local(expires_at, cfg).strftime("%b %d, %I:%M %p").replace(" 0", " ")


def booking_link(entry: WaitlistEntry, cfg: Settings = settings) -> str:
    return (
        f"{cfg.app_url.rstrip('/')}/booking/datetime"
        f"?serviceId={entry.service_id}"
        f"&providerId={entry.provider_id}"
        f"&date={entry.preferred_date.isoformat()}"
    )


def offer_subject(entry: WaitlistEntry) -> str:
    return f"Appointment Slot Available - {entry.service_name or 'your appointment'}"


def render_offer_sms(
    entry: WaitlistEntry,
    offered_time: str,
    expires_at: datetime,
    cfg: Settings = settings,
) -> str:
    body = (
        f"{cfg.business_name}\n"
        f"Good news, {entry.user_name}! An appointment has opened up:\n"
    )
    if entry.service_name:
        body += f"  {entry.service_name}\n"
    if entry.provider_name:
        body += f"  {entry.provider_name}\n"
    body += (
        f"  {entry.preferred_date.strftime('%A, %B %d, %Y')} at {offered_time}\n\n"
        f"It is held for you until {format_deadline(expires_at, cfg)}. "
        f"Book now: {booking_link(entry, cfg)}\n"
        f"After that it will be offered to the next person on the waitlist."
    )
    if cfg.business_phone:
        body += f"\nQuestions? Call {cfg.business_phone}."
    return body


def render_offer_email(
    entry: WaitlistEntry,
    offered_time: str,
    expires_at: datetime,
    cfg: Settings = settings,
) -> str:
    long_date = entry.preferred_date.strftime("%A, %B %d, %Y")
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
      <h2 style="color: #2563eb;">Appointment Slot Available!</h2>
      <p>Hi {entry.user_name}, good news! A slot has opened up for your preferred appointment.</p>

      <div style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <h3 style="margin-top: 0;">Appointment Details</h3>
        <p><strong>Service:</strong> {entry.service_name or entry.service_id}</p>
        <p><strong>Provider:</strong> {entry.provider_name or entry.provider_id}</p>
        <p><strong>Date:</strong> {long_date}</p>
        <p><strong>Time:</strong> {offered_time}</p>
      </div>

      <div style="background-color: #fef3c7; padding: 15px; border-radius: 8px; border-left: 4px solid #f59e0b; margin: 20px 0;">
        <p style="margin: 0;"><strong>Act Fast!</strong></p>
        <p style="margin: 5px 0 0 0;">This slot is reserved for you until {format_deadline(expires_at, cfg)}.
        After that, it will be offered to the next person on the waitlist.</p>
      </div>

      <div style="text-align: center; margin: 30px 0;">
        <a href="{booking_link(entry, cfg)}"
           style="background-color: #2563eb; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; display: inline-block;">
          Book Now
        </a>
      </div>

      <p style="color: #6b7280; font-size: 14px;">
        If you no longer need this appointment, please cancel your waitlist entry so we can notify the next person.
      </p>
    </div>
    """


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class SmsGateway(NotificationGateway):
    """Twilio SMS offers."""

    def __init__(self, cfg: Settings = settings, client: Optional[Client] = None):
        self._cfg = cfg
        self._client = client

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = Client(self._cfg.twilio_account_sid, self._cfg.twilio_auth_token)
        return self._client

    def _send(self, to: str, body: str) -> str:
        msg = self._get_client().messages.create(
            to=to,
            from_=self._cfg.twilio_phone_number,
            body=body,
        )
        return msg.sid

    async def notify(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        to = entry.user_phone
        if not to:
            logger.info("No phone on waitlist entry %s — skipping SMS offer", entry.id)
            return
        if not to.startswith("+"):
            raise GatewayError(f"Invalid phone number for SMS: {to}")

        body = render_offer_sms(entry, offered_time, expires_at, self._cfg)
        try:
            sid = await asyncio.to_thread(self._send, to, body)
        except Exception as exc:
            raise GatewayError(f"SMS failed to {to}: {exc}") from exc
        logger.info("Waitlist offer SMS sent to %s — SID %s", to, sid)


class EmailGateway(NotificationGateway):
    """Resend email offers."""

    def __init__(self, cfg: Settings = settings):
        self._cfg = cfg
        resend.api_key = cfg.resend_api_key

    def _send(self, params: dict) -> dict:
        return resend.Emails.send(params)

    async def notify(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        params = {
            "from": self._cfg.email_from,
            "to": [entry.user_email],
            "subject": offer_subject(entry),
            "html": render_offer_email(entry, offered_time, expires_at, self._cfg),
        }
        try:
            response = await asyncio.to_thread(self._send, params)
        except Exception as exc:
            raise GatewayError(f"Email failed to {entry.user_email}: {exc}") from exc
        logger.info("Waitlist offer email sent to %s: %s", entry.user_email, response)


class LoggingGateway(NotificationGateway):
    """Dry-run gateway: records offers in the log and in memory only."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def notify(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        self.sent.append(
            {
                "entry_id": entry.id,
                "user_email": entry.user_email,
                "offered_time": offered_time,
                "expires_at": expires_at,
            }
        )
        logger.info(
            "[dry run] Waitlist offer for %s (%s) at %s, held until %s",
            entry.user_email,
            entry.slot_key,
            offered_time,
            expires_at.isoformat(),
        )


class FanOutGateway(NotificationGateway):
    """Send through every channel; succeeds if at least one channel delivered."""

    def __init__(self, gateways: Sequence[NotificationGateway]):
        if not gateways:
            raise ValueError("FanOutGateway needs at least one gateway")
        self._gateways = list(gateways)

    async def notify(self, entry: WaitlistEntry, offered_time: str, expires_at: datetime) -> None:
        results = await asyncio.gather(
            *(g.notify(entry, offered_time, expires_at) for g in self._gateways),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            logger.warning("Waitlist offer channel failed for entry %s: %s", entry.id, failure)
        if len(failures) == len(results):
            raise GatewayError(f"All notification channels failed for entry {entry.id}")


def build_gateway(cfg: Settings = settings) -> NotificationGateway:
    """Pick delivery channels from configuration."""
    if cfg.dry_run:
        return LoggingGateway()

    channels: list[NotificationGateway] = []
    if cfg.twilio_account_sid and cfg.twilio_auth_token and cfg.twilio_phone_number:
        channels.append(SmsGateway(cfg))
    if cfg.resend_api_key:
        channels.append(EmailGateway(cfg))

    if not channels:
        logger.warning("No notification channel configured — waitlist offers will only be logged")
        return LoggingGateway()
    return channels[0] if len(channels) == 1 else FanOutGateway(channels)
