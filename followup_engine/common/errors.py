# followup_engine/common/errors.py
from __future__ import annotations
from typing import Any, Optional, Tuple

# ---- Canonical error classes ------------------------------------------------

class FollowUpError(Exception):
    code: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)


# ---- Data-integrity violations (rejected synchronously) ---------------------

class DuplicateActiveRun(FollowUpError):
    """An activated/ongoing run already exists for (student, sequence)."""
    code = "duplicate_active_run"

    def __init__(self, run: Any):
        super().__init__(f"active follow-up {run.id} already exists for this student and sequence")
        self.run = run

class UnknownSequence(FollowUpError):
    code = "unknown_sequence"

class UnknownStudent(FollowUpError):
    code = "unknown_student"

class StudentNotEligible(FollowUpError):
    code = "student_not_eligible"

class InvalidSequence(FollowUpError):
    code = "invalid_sequence"

class UnknownRun(FollowUpError):
    code = "unknown_run"

class UnknownTouchpoint(FollowUpError):
    code = "unknown_touchpoint"

class ConcurrentModification(FollowUpError):
    """Optimistic version check lost against another writer."""
    code, retryable = "concurrent_modification", True


# ---- Dispatch failures ------------------------------------------------------

class SendFailed(FollowUpError):
    code, retryable = "send_failed", True

    def __init__(self, message: str = "", *, provider_status: Optional[int] = None):
        super().__init__(message)
        self.provider_status = provider_status

class ProviderTimeout(SendFailed):
    code, retryable = "timeout", True

class ProviderThrottled(SendFailed):
    code, retryable = "throttled", True

class ProviderUnavailable(SendFailed):
    code, retryable = "provider_unavailable", True

class ProviderRejected(SendFailed):
    code, retryable = "provider_rejected", False

class InvalidDestination(SendFailed):
    code, retryable = "invalid_destination", False

class TemplateRenderError(FollowUpError):
    code, retryable = "template_render_error", False


# ---- Helpers used by the dispatcher -----------------------------------------

def classify_exception(exc: BaseException) -> Tuple[str, bool]:
    """
    Return (code, retryable) for any exception.
    FollowUpError subclasses carry their own metadata; anything else is
    classified by name/message heuristics.
    """
    if isinstance(exc, FollowUpError):
        return exc.code, exc.retryable

    name = exc.__class__.__name__.lower()
    msg = str(exc).lower()

    if "timeout" in name or "timed out" in msg:
        return "timeout", True
    if "too many requests" in msg or "429" in msg or "rate limit" in msg:
        return "throttled", True
    if any(k in msg for k in ["connection reset", "connection refused", "dns", "ssl", "tls", "socket"]):
        return "network_glitch", True
    if "connect" in name or "network" in name:
        return "network_glitch", True

    return "permanent_failure", False


def is_retryable(exc: BaseException) -> bool:
    _, retry = classify_exception(exc)
    return retry
