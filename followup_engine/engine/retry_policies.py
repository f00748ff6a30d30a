# followup_engine/engine/retry_policies.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from followup_engine.common.errors import is_retryable

# -----------------------------------------------------------------------------
# Channel defaults (central source of truth)
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelRetry:
    initial: float
    max_interval: float
    max_attempts: int


_DEFAULTS: Dict[str, ChannelRetry] = {
    "sms":      ChannelRetry(initial=1.0, max_interval=15.0, max_attempts=4),
    "whatsapp": ChannelRetry(initial=1.0, max_interval=15.0, max_attempts=4),
    "email":    ChannelRetry(initial=2.0, max_interval=30.0, max_attempts=3),
    "call":     ChannelRetry(initial=2.0, max_interval=20.0, max_attempts=3),
}


def policy_for(channel: str) -> ChannelRetry:
    return _DEFAULTS.get((channel or "").lower(), _DEFAULTS["sms"])


def retrying_for(
    channel: str, *, backoff_scale: float = 1.0, max_attempts: Optional[int] = None
) -> AsyncRetrying:
    """
    Bounded exponential backoff for one send; only retryable errors are retried.

        async for attempt in retrying_for("sms"):
            with attempt:
                await sender.send(...)
    """
    cfg = policy_for(channel)
    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, max_attempts or cfg.max_attempts)),
        wait=wait_exponential(
            multiplier=cfg.initial * backoff_scale,
            min=0,
            max=cfg.max_interval * backoff_scale,
        ),
        retry=retry_if_exception(is_retryable),
    )
