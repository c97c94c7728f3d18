"""
Token Budget
============

Character-based token estimation for prompts sent to the generation service,
and the output budget adjustment applied before every call.

The model's context limit (default 8192 tokens) covers prompt AND output.
Calls are planned against SAFE_UTILIZATION (75%) of it, with prompts
estimated at ceil(chars / 4) tokens.

Usage:
    from token_budget import TokenEstimator

    estimate = TokenEstimator.estimate(prompt, requested_max_output=2200)
    if not estimate.within_limit:
        ...
    max_output = TokenEstimator.adjust(prompt, 2200)
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class TokenEstimate:
    estimated_prompt_tokens: int
    estimated_total: int
    utilization_percent: float
    within_limit: bool
    # Tokens left under the safe limit (negative when over)
    safety_buffer: int


class TokenEstimator:
    """Pure helpers for prompt/output token budgeting. Never raise."""

    CHARS_PER_TOKEN = 4
    DEFAULT_MODEL_LIMIT = 8192
    SAFE_UTILIZATION = 0.75
    MIN_OUTPUT_TOKENS = 300

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Estimate token count for text: ceil(chars / 4)."""
        return math.ceil(len(text or "") / TokenEstimator.CHARS_PER_TOKEN)

    @staticmethod
    def safe_limit(model_limit: int = DEFAULT_MODEL_LIMIT) -> int:
        return int(model_limit * TokenEstimator.SAFE_UTILIZATION)

    @staticmethod
    def estimate(prompt: str, requested_max_output: int,
                 model_limit: int = DEFAULT_MODEL_LIMIT) -> TokenEstimate:
        """
        Estimate total usage of a call.

        Returns:
            TokenEstimate; within_limit means prompt + output stays at or
            under 75% of model_limit
        """
        prompt_tokens = TokenEstimator.estimate_tokens(prompt)
        total = prompt_tokens + max(0, int(requested_max_output))
        safe_limit = TokenEstimator.safe_limit(model_limit)
        return TokenEstimate(
            estimated_prompt_tokens=prompt_tokens,
            estimated_total=total,
            utilization_percent=(total / model_limit) * 100 if model_limit > 0 else float("inf"),
            within_limit=total <= safe_limit,
            safety_buffer=safe_limit - total,
        )

    @staticmethod
    def adjust(prompt: str, requested_max_output: int,
               model_limit: int = DEFAULT_MODEL_LIMIT,
               floor: int = MIN_OUTPUT_TOKENS) -> int:
        """
        Shrink the requested output budget so prompt + output fits the safe
        limit, but never below ``floor``.

        When the prompt alone leaves less than ``floor`` tokens, ``floor`` is
        returned; whether such a prompt is sent at all is the caller's
        utilization check.
        """
        available = TokenEstimator.safe_limit(model_limit) - TokenEstimator.estimate_tokens(prompt)
        return max(min(int(requested_max_output), available), floor)
