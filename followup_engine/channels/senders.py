# followup_engine/channels/senders.py
from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, Optional, Protocol

import httpx

from followup_engine.common.errors import (
    ProviderRejected,
    ProviderThrottled,
    ProviderTimeout,
    ProviderUnavailable,
)
from followup_engine.common.tracing import get_trace_id
from followup_engine.domain.models import SendResult

__all__ = ["Sender", "StubSender", "WebhookSender"]

log = logging.getLogger("followups.senders")


class Sender(Protocol):
    async def send(
        self,
        channel: str,
        destination: str,
        content: str,
        *,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult: ...


class StubSender:
    """
    Default sender when LIVE_CHANNELS is off: nothing leaves the process.
    Keeps a record of what would have been sent.
    """

    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, channel, destination, content, *, subject=None, metadata=None) -> SendResult:
        provider_id = f"stub-{channel}-{uuid.uuid4()}"
        self.sent.append({
            "channel": channel,
            "to": destination,
            "subject": subject,
            "body": content,
            "provider_id": provider_id,
            "metadata": metadata or {},
        })
        log.info("[stub] %s → %s (%d chars)", channel, destination, len(content))
        return SendResult(channel=channel, provider_id=provider_id, status="queued")


# HTTP statuses from the automation webhook, mapped onto the error taxonomy
_STATUS_MAP = {
    408: ProviderTimeout,
    429: ProviderThrottled,
    500: ProviderUnavailable,
    502: ProviderUnavailable,
    503: ProviderUnavailable,
    504: ProviderTimeout,
}


class WebhookSender:
    """
    Hands the rendered message to an automation webhook (Make.com scenario)
    which owns the actual email/SMS/WhatsApp provider integrations.
    The scenario answers with {"provider_id": ...} (or "id"/"message_id").
    """

    def __init__(self, url: str, *, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        if not url:
            raise ValueError("WebhookSender needs a webhook url")
        self.url = url
        self.timeout = timeout
        self._client = client

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def send(self, channel, destination, content, *, subject=None, metadata=None) -> SendResult:
        meta = dict(metadata or {})
        tid = get_trace_id()
        if tid and "trace_id" not in meta:
            meta["trace_id"] = tid

        payload = {
            "channel": channel,
            "to": destination,
            "subject": subject,
            "body": content,
            "metadata": meta,
        }
        try:
            response = await self._post(payload)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{channel} webhook timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"{channel} webhook unreachable: {e}") from e

        status = response.status_code
        if status >= 400:
            err_cls = _STATUS_MAP.get(status, ProviderUnavailable if status >= 500 else ProviderRejected)
            raise err_cls(f"{channel} webhook answered HTTP {status}", provider_status=status)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        provider_id = (
            data.get("provider_id")
            or data.get("message_id")
            or data.get("id")
            or f"webhook-{channel}-{uuid.uuid4()}"
        )
        return SendResult(channel=channel, provider_id=str(provider_id), status="sent", raw=data)
