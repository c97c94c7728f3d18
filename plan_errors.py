"""
Plan Generation Errors
======================

Exception hierarchy for the generation pipeline. Every error carries a
``retryable`` flag: the attempt runner moves on to the next (smaller, cooler)
attempt for retryable errors and gives up on the day for the rest.

Day-level errors never escape generate_plan(); they are recorded as plan
diagnostics. Only TotalFailureError reaches the caller.
"""

from typing import Any, Dict, List, Optional


class PlanGenerationError(RuntimeError):
    """Base class for generation pipeline failures."""

    retryable = False


class BlockedContentError(PlanGenerationError):
    """The prompt was refused outright (promptFeedback.blockReason)."""

    def __init__(self, block_reason: str):
        super().__init__(f"Prompt blocked by the generation service: {block_reason}")
        self.block_reason = block_reason


class UnsafeContentError(PlanGenerationError):
    """The candidate was stopped for SAFETY or RECITATION."""

    def __init__(self, finish_reason: str):
        super().__init__(f"Response stopped by content filter: {finish_reason}")
        self.finish_reason = finish_reason


class TruncatedResponseError(PlanGenerationError):
    """The candidate hit the output token ceiling (finishReason MAX_TOKENS)."""

    retryable = True

    def __init__(self, usage: Optional[Dict[str, Any]] = None):
        super().__init__("Response truncated at MAX_TOKENS")
        self.usage = usage or {}


class TransportError(PlanGenerationError):
    """Non-2xx status, network failure or undecodable body."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        # Network errors (no status) and server errors are worth another attempt
        return self.status is None or self.status >= 500

    @property
    def is_auth_error(self) -> bool:
        return self.status in (400, 401, 403, 404)


class RateLimitError(TransportError):
    """HTTP 429. Suspends the whole run: the caller should wait and retry later."""

    def __init__(self, body: str = ""):
        super().__init__("Generation service rate limit reached (429)", status=429, body=body)

    @property
    def retryable(self) -> bool:
        return False


class DayGenerationFailed(PlanGenerationError):
    """One day could not be produced. Recorded as a diagnostic, never raised to callers."""

    def __init__(self, day_label: str, reasons: Optional[List[str]] = None):
        self.day_label = day_label
        self.reasons = list(reasons or [])
        detail = "; ".join(self.reasons) if self.reasons else "no usable output"
        super().__init__(f"{day_label}: {detail}")


class TotalFailureError(PlanGenerationError):
    """
    Zero days were produced.

    Attributes:
        diagnosis: 'rate_limited', 'auth_or_config', 'service_unreachable'
            or 'content_or_complexity'
        diagnostics: per-day failure descriptions
    """

    DIAGNOSIS_MESSAGES = {
        "rate_limited": "The generation service is rate limiting requests. Wait a minute and try again.",
        "auth_or_config": "The generation service rejected the request. Check the API key and model name.",
        "service_unreachable": "The generation service could not be reached. Check your connection and try again.",
        "content_or_complexity": (
            "The generation service is reachable but could not produce a plan for this profile. "
            "Try simplifying the request (fewer exclusions or conditions) and generate again."
        ),
    }

    def __init__(self, diagnosis: str, diagnostics: Optional[List[str]] = None):
        self.diagnosis = diagnosis
        self.diagnostics = list(diagnostics or [])
        super().__init__(self.DIAGNOSIS_MESSAGES.get(diagnosis, f"Plan generation failed ({diagnosis})"))
