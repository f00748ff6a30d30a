# followup_engine/channels/router.py
from __future__ import annotations
import logging
from typing import Any, Dict, Mapping, Optional

from followup_engine.channels.senders import Sender, StubSender, WebhookSender
from followup_engine.common.errors import InvalidDestination
from followup_engine.config import Settings
from followup_engine.domain.models import SendResult, Student

log = logging.getLogger("followups.channels")


def destination_for(channel: str, student: Student) -> str:
    """email goes to the student's address; sms/whatsapp/call go to their phone."""
    dest = student.email if channel == "email" else student.phone
    if not dest:
        raise InvalidDestination(f"student {student.id} has no destination for {channel}")
    return dest


class ChannelRouter:
    """Maps each channel to a sender; channels without an explicit sender use the default."""

    def __init__(self, default: Sender, overrides: Optional[Mapping[str, Sender]] = None):
        self.default = default
        self.overrides: Dict[str, Sender] = dict(overrides or {})

    def sender_for(self, channel: str) -> Sender:
        return self.overrides.get(channel, self.default)

    async def send(
        self,
        channel: str,
        student: Student,
        content: str,
        *,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        destination = destination_for(channel, student)
        return await self.sender_for(channel).send(
            channel, destination, content, subject=subject, metadata=metadata
        )


def build_router(settings: Settings) -> ChannelRouter:
    """Stub mode unless LIVE_CHANNELS is on and a webhook url is configured."""
    if settings.LIVE_CHANNELS and settings.FOLLOWUP_WEBHOOK_URL:
        log.info("📡 Using live automation webhook for outbound follow-ups")
        return ChannelRouter(WebhookSender(settings.FOLLOWUP_WEBHOOK_URL, timeout=settings.SEND_TIMEOUT_SECONDS))
    if settings.LIVE_CHANNELS:
        log.warning("LIVE_CHANNELS is on but FOLLOWUP_WEBHOOK_URL is empty; using stub sender")
    return ChannelRouter(StubSender())
