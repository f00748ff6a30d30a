# followup_engine/web/schemas.py
from __future__ import annotations
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from followup_engine.common.clock import as_utc
from followup_engine.domain.models import (
    AutomationRun,
    Channel,
    Direction,
    Step,
    Touchpoint,
)


# --------------------------------------------------------------------
# Automation runs
# --------------------------------------------------------------------
class ActivateRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    sequence_id: Optional[str] = None
    sequence_backend_name: Optional[str] = None

    @model_validator(mode="after")
    def _needs_sequence_ref(self) -> "ActivateRequest":
        if not (self.sequence_id or self.sequence_backend_name):
            raise ValueError("sequence_id or sequence_backend_name is required")
        return self


class StopStudentRequest(BaseModel):
    student_id: str = Field(..., min_length=1)


class EngagementSweepRequest(BaseModel):
    hours_back: float = Field(1, gt=0, le=24 * 30)


class RunOut(BaseModel):
    id: str
    student_id: str
    sequence_id: str
    sequence_version: int
    status: str
    current_step_index: int
    total_steps: int
    steps: List[Step]
    started_at: datetime
    last_message_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    needs_attention: bool = False
    last_error: Optional[str] = None

    @classmethod
    def of(cls, run: AutomationRun) -> "RunOut":
        return cls(total_steps=run.total_steps, **run.model_dump(exclude={"version", "created_at", "updated_at"}))


# --------------------------------------------------------------------
# Sequences
# --------------------------------------------------------------------
class SequenceCreateRequest(BaseModel):
    backend_name: str
    display_name: str
    subject: str = ""
    steps: List[Dict[str, Any]]


class SequenceUpdateRequest(BaseModel):
    backend_name: Optional[str] = None
    display_name: Optional[str] = None
    subject: Optional[str] = None
    steps: Optional[List[Dict[str, Any]]] = None


# --------------------------------------------------------------------
# Touchpoints
# --------------------------------------------------------------------
class TouchpointOut(BaseModel):
    """Wire shape: direction is exposed as `type` (inbound|outbound)."""
    id: str
    student_id: str
    channel: Channel
    type: Direction
    source: str
    message: str
    occurred_at: datetime
    automated_follow_up_id: Optional[str] = None
    external_id: Optional[str] = None
    external_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def of(cls, tp: Touchpoint) -> "TouchpointOut":
        data = tp.model_dump(exclude={"direction", "dispatch_key", "updated_at"})
        return cls(type=tp.direction, **data)


class TouchpointCreateRequest(BaseModel):
    """Manual staff log entry."""
    student_id: str = Field(..., min_length=1)
    channel: Channel
    type: Direction
    message: str = Field(..., min_length=1)
    occurred_at: Optional[datetime] = None
    automated_follow_up_id: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class TouchpointPatchRequest(BaseModel):
    message: Optional[str] = Field(None, min_length=1)
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


# --------------------------------------------------------------------
# Inbound provider events
# --------------------------------------------------------------------
class InboundMessage(BaseModel):
    """
    Canonical shape every provider webhook is normalized into before it
    reaches the ledger. A student is identified directly (student_id) or via
    the sender's phone/email (contact_ref).
    """
    student_id: Optional[str] = None
    contact_ref: Optional[str] = None
    channel: Channel
    content: str = ""
    external_id: str = Field(..., min_length=1)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    direction: Direction = "inbound"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        v = dict(v)
        for alias in ("message", "body", "text"):
            if "content" not in v and alias in v:
                v["content"] = v[alias]
        for alias in ("message_id", "provider_ref", "id"):
            if "external_id" not in v and alias in v:
                v["external_id"] = v[alias]
        if "occurred_at" not in v and "timestamp" in v:
            v["occurred_at"] = v["timestamp"]
        if "contact_ref" not in v and "from" in v:
            v["contact_ref"] = v["from"]
        if isinstance(v.get("channel"), str):
            v["channel"] = v["channel"].strip().lower()
        return v

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _epoch_or_iso(cls, value: Any) -> Any:
        # providers send unix seconds/millis as numbers or numeric strings
        if isinstance(value, str) and value.isdigit():
            value = int(value)
        elif isinstance(value, str) and "," in value:
            # RFC 2822 mail Date header
            return parsedate_to_datetime(value)
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > 10**11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        return value

    @field_validator("occurred_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _needs_identity(self) -> "InboundMessage":
        if not (self.student_id or self.contact_ref):
            raise ValueError("student_id or contact_ref is required")
        return self


def normalize_openphone(payload: Dict[str, Any]) -> List[InboundMessage]:
    """
    OpenPhone events: {"type": "message.received" | "call.completed" | ...,
    "data": {"object": {"id", "from", "to", "direction", "body"|"text", "createdAt"}}}
    """
    event_type = str(payload.get("type") or "")
    obj = (payload.get("data") or {}).get("object") or {}
    channel = "call" if event_type.startswith("call.") or obj.get("object") == "call" else "sms"
    direction = "outbound" if obj.get("direction") in ("outgoing", "outbound") else "inbound"
    # for outbound events the student is the recipient
    to = obj.get("to")
    contact = obj.get("from") if direction == "inbound" else (to[0] if isinstance(to, list) and to else to)
    content = obj.get("body") or obj.get("text") or ""
    if channel == "call" and not content:
        content = f"[call {obj.get('status') or event_type.split('.', 1)[-1]}]"
    return [InboundMessage(
        contact_ref=contact,
        channel=channel,
        content=content,
        external_id=obj.get("id"),
        occurred_at=obj.get("createdAt") or obj.get("completedAt") or datetime.now(timezone.utc),
        direction=direction,
        metadata={"event": event_type},
    )]


def normalize_gmail(payload: Dict[str, Any]) -> List[InboundMessage]:
    """Gmail relay: {"message_id", "from", "subject", "snippet"|"body", "date"|"internalDate"}."""
    subject = payload.get("subject") or ""
    body = payload.get("body") or payload.get("snippet") or ""
    return [InboundMessage(
        student_id=payload.get("student_id"),
        contact_ref=payload.get("from"),
        channel="email",
        content=f"{subject}\n\n{body}".strip() if subject else body,
        external_id=payload.get("message_id") or payload.get("id"),
        occurred_at=payload.get("internalDate") or payload.get("date") or datetime.now(timezone.utc),
        metadata={"subject": subject, "thread_id": payload.get("thread_id") or payload.get("threadId")},
    )]


def normalize_whatsapp(payload: Dict[str, Any]) -> List[InboundMessage]:
    """
    WhatsApp Business Cloud API: entry[].changes[].value.messages[]; a flat
    {"from", "message_id", "text"} body is accepted as well.
    """
    messages: List[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            for m in (change.get("value") or {}).get("messages") or []:
                text = m.get("text")
                content = text.get("body", "") if isinstance(text, dict) else (text or "")
                messages.append(InboundMessage(
                    contact_ref=f"+{m['from'].lstrip('+')}" if m.get("from") else None,
                    channel="whatsapp",
                    content=content or f"[{m.get('type', 'message')}]",
                    external_id=m.get("id"),
                    occurred_at=m.get("timestamp") or datetime.now(timezone.utc),
                    metadata={"type": m.get("type")},
                ))
    if not messages and "entry" not in payload:
        messages.append(InboundMessage.model_validate({**payload, "channel": "whatsapp"}))
    return messages


def normalize_generic(payload: Dict[str, Any]) -> List[InboundMessage]:
    items = payload.get("messages") if isinstance(payload.get("messages"), list) else [payload]
    return [InboundMessage.model_validate(item) for item in items]
