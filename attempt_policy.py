"""
Attempt Policies
================

A policy is an ordered table of generation attempts, each asking for no
more output and running no hotter than the one before it. The same runner
drives day generation, batch generation, single-meal regeneration and
repair; only the table differs.

Usage:
    policy = AttemptPolicy.from_config("day", generation_config["day_policy"])
    outcome = await run_attempts(policy, make_call, label="Monday")
    if outcome.value is None:
        ...  # every attempt came back empty or retryable-failed
"""

from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from plan_errors import PlanGenerationError
from tools.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Attempt:
    max_output_tokens: int
    temperature: float
    top_p: float = 0.9
    top_k: int = 40
    # Send the structured response schema along with the prompt
    use_schema: bool = False

    def with_max_output_tokens(self, max_output_tokens: int) -> "Attempt":
        return replace(self, max_output_tokens=max_output_tokens)


@dataclass(frozen=True)
class AttemptPolicy:
    name: str
    attempts: Tuple[Attempt, ...]

    def __post_init__(self):
        if not self.attempts:
            raise ValueError(f"Attempt policy '{self.name}' has no attempts")
        for previous, current in zip(self.attempts, self.attempts[1:]):
            larger = current.max_output_tokens > previous.max_output_tokens
            hotter = current.temperature > previous.temperature
            unchanged = (current.max_output_tokens == previous.max_output_tokens
                         and current.temperature == previous.temperature)
            if larger or hotter or unchanged:
                raise ValueError(
                    f"Attempt policy '{self.name}': each attempt must shrink output or cool "
                    f"temperature (got {previous} -> {current})"
                )

    @classmethod
    def from_config(cls, name: str, rows: Sequence[Dict[str, Any]]) -> "AttemptPolicy":
        """Build from config rows like {"max_output_tokens": 2200, "temperature": 0.7}."""
        return cls(name=name, attempts=tuple(Attempt(**row) for row in rows))

    def __len__(self) -> int:
        return len(self.attempts)


@dataclass
class AttemptOutcome(Generic[T]):
    value: Optional[T]
    calls: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.value is not None


async def run_attempts(policy: AttemptPolicy,
                       operation: Callable[[Attempt], Awaitable[Optional[T]]],
                       label: str = "") -> AttemptOutcome[T]:
    """
    Run ``operation`` once per attempt until it returns a non-None value.

    An empty (None) result or a retryable PlanGenerationError moves on to the
    next attempt. Non-retryable errors propagate immediately, including
    RateLimitError.

    Returns:
        AttemptOutcome with the first value (or None), the number of calls
        made and a description of each failed attempt
    """
    outcome: AttemptOutcome[T] = AttemptOutcome(value=None)
    for index, attempt in enumerate(policy.attempts, start=1):
        outcome.calls += 1
        try:
            value = await operation(attempt)
        except PlanGenerationError as e:
            if not e.retryable:
                raise
            outcome.failures.append(f"attempt {index}: {e}")
            logger.warning(f"🔄 {label} [{policy.name}] attempt {index}/{len(policy)} failed: {e}")
            continue

        if value is not None:
            outcome.value = value
            return outcome

        outcome.failures.append(f"attempt {index}: no usable output")
        logger.warning(f"🔄 {label} [{policy.name}] attempt {index}/{len(policy)} returned no usable output")

    return outcome
