# followup_engine/domain/models.py
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, Field, field_validator, model_validator

from followup_engine.common.clock import as_utc

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------
Channel = Literal["sms", "call", "whatsapp", "email"]
Direction = Literal["inbound", "outbound"]
Source = Literal["manual", "automated", "openphone", "gmail", "whatsapp_business", "webhook"]
RunStatus = Literal["activated", "ongoing", "answer_received", "disabled", "completed"]
DueStatus = Literal["pending", "claimed", "done", "cancelled", "failed"]

CHANNELS: tuple[str, ...] = get_args(Channel)
SOURCES: tuple[str, ...] = get_args(Source)
ACTIVE_STATUSES: tuple[str, ...] = ("activated", "ongoing")
TERMINAL_STATUSES: tuple[str, ...] = ("answer_received", "disabled", "completed")


def new_id() -> str:
    return str(uuid.uuid4())


def dispatch_key(run_id: str, step_index: int) -> str:
    """Dedup key stamped on the automated touchpoint of one (run, step)."""
    return f"{run_id}:{step_index}"


# ---------------------------------------------------------------------------
# Sequence templates
# ---------------------------------------------------------------------------
class Step(BaseModel):
    order: int = Field(..., ge=0)
    channel: Channel
    delay_minutes: int = Field(0, ge=0, description="minutes after the previous step (first step: after activation)")
    content_template: str = Field(..., min_length=1)

    model_config = {"frozen": True}


class SequenceTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    backend_name: str = Field(..., min_length=1, max_length=120, pattern=r"^[a-z0-9][a-z0-9_\-]*$")
    display_name: str = Field(..., min_length=1)
    subject: str = ""
    steps: List[Step]
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: List[Step]) -> List[Step]:
        if not steps:
            raise ValueError("a sequence needs at least one step")
        orders = [s.order for s in steps]
        if len(set(orders)) != len(orders):
            raise ValueError("step order must be unique within a sequence")
        return sorted(steps, key=lambda s: s.order)


# ---------------------------------------------------------------------------
# Automation runs
# ---------------------------------------------------------------------------
class AutomationRun(BaseModel):
    id: str = Field(default_factory=new_id)
    student_id: str
    sequence_id: str
    sequence_version: int = 1
    # Steps snapshotted at activation so template edits never reach a running instance
    steps: List[Step]
    status: RunStatus = "activated"
    current_step_index: int = 0
    started_at: datetime
    last_message_sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    needs_attention: bool = False
    last_error: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def channels(self) -> set[str]:
        return {s.channel for s in self.steps}


# ---------------------------------------------------------------------------
# Touchpoints
# ---------------------------------------------------------------------------
class Touchpoint(BaseModel):
    id: str = Field(default_factory=new_id)
    student_id: str
    channel: Channel
    direction: Direction
    source: Source = "manual"
    message: str
    occurred_at: datetime
    automated_follow_up_id: Optional[str] = None
    external_id: Optional[str] = None
    external_metadata: Dict[str, Any] = Field(default_factory=dict)
    dispatch_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        # naive values would not compare with the aware ones already stored
        return as_utc(value)

    @model_validator(mode="after")
    def _automated_is_outbound(self) -> "Touchpoint":
        if self.source == "automated" and self.direction != "outbound":
            raise ValueError("automated touchpoints are always outbound")
        return self


class TouchpointFilters(BaseModel):
    student_id: Optional[str] = None
    channel: Optional[Channel] = None
    direction: Optional[Direction] = None
    source: Optional[Source] = None
    automated_follow_up_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @field_validator("since", "until")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    def matches(self, tp: Touchpoint) -> bool:
        if self.student_id and tp.student_id != self.student_id:
            return False
        if self.channel and tp.channel != self.channel:
            return False
        if self.direction and tp.direction != self.direction:
            return False
        if self.source and tp.source != self.source:
            return False
        if self.automated_follow_up_id and tp.automated_follow_up_id != self.automated_follow_up_id:
            return False
        if self.since and tp.occurred_at < self.since:
            return False
        if self.until and tp.occurred_at > self.until:
            return False
        return True


class TouchpointPage(BaseModel):
    items: List[Touchpoint]
    page: int
    page_size: int
    total: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def touchpoint_sort_key(tp: Touchpoint):
    """Reverse-chronological, stable: newest first, ties broken by insert time then id."""
    return (tp.occurred_at, tp.created_at or tp.occurred_at, tp.id)


# ---------------------------------------------------------------------------
# Scheduler queue
# ---------------------------------------------------------------------------
class DueItem(BaseModel):
    id: str = Field(default_factory=new_id)
    run_id: str
    step_index: int
    due_at: datetime
    status: DueStatus = "pending"
    attempts: int = 0
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    resumed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RunFilters(BaseModel):
    student_id: Optional[str] = None
    sequence_id: Optional[str] = None
    status: Optional[RunStatus] = None
    needs_attention: Optional[bool] = None

    def matches(self, run: AutomationRun) -> bool:
        if self.student_id and run.student_id != self.student_id:
            return False
        if self.sequence_id and run.sequence_id != self.sequence_id:
            return False
        if self.status and run.status != self.status:
            return False
        if self.needs_attention is not None and run.needs_attention != self.needs_attention:
            return False
        return True


# ---------------------------------------------------------------------------
# Students (read-only view owned by the admin app)
# ---------------------------------------------------------------------------
class Student(BaseModel):
    id: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None  # E.164
    enrollment_statuses: List[str] = Field(default_factory=list)

    @property
    def first_name(self) -> str:
        return self.full_name.split(" ", 1)[0] if self.full_name else ""


# ---------------------------------------------------------------------------
# Dispatch results
# ---------------------------------------------------------------------------
class SendResult(BaseModel):
    channel: Channel
    provider_id: str
    status: Literal["queued", "sent"] = "sent"
    raw: Dict[str, Any] = Field(default_factory=dict)


class DispatchReport(BaseModel):
    claimed: int = 0
    sent: int = 0
    recovered: int = 0
    skipped: int = 0
    failed: int = 0
    # left claimed after an unexpected error; re-claimed once the lease expires
    deferred: int = 0
    completed_runs: List[str] = Field(default_factory=list)
    failed_runs: List[str] = Field(default_factory=list)
