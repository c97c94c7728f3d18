"""
Repair Service
==============

Best-effort patching of incomplete plan (or item) JSON: a meal with no
items, an item with no ingredients or steps. One bounded call; whatever
goes wrong, the original object comes back unchanged, so a repair can
never turn a usable partial result into a failure. The one exception is a
429: RateLimitError propagates so the run stops.
"""

from typing import Any, Dict, Optional

from attempt_policy import Attempt, AttemptPolicy, run_attempts
from plan_errors import PlanGenerationError, RateLimitError
from plan_models import UserProfile
from prompts import build_repair_prompt
from response_parser import classify_response, coerce_to_item_shape, coerce_to_plan_shape, extract_json
from token_budget import TokenEstimator
from tools.logging_utils import get_logger

logger = get_logger(__name__)


class RepairService:
    """Repairs incomplete plans/items through the generation client."""

    def __init__(self, client, policy: AttemptPolicy,
                 model_limit: int = TokenEstimator.DEFAULT_MODEL_LIMIT,
                 min_output_tokens: int = TokenEstimator.MIN_OUTPUT_TOKENS):
        self.client = client
        self.policy = policy
        self.model_limit = model_limit
        self.min_output_tokens = min_output_tokens
        self.invocations = 0
        self.calls = 0

    async def repair(self, partial: Dict[str, Any], profile: UserProfile) -> Dict[str, Any]:
        """
        Ask the model to patch ``partial``.

        Args:
            partial: Plan-shaped dict (with "days") or a single item dict
            profile: Profile the plan is for

        Returns:
            The patched object, or ``partial`` itself on any failure
        """
        self.invocations += 1
        is_plan = "days" in partial
        prompt = build_repair_prompt(profile, partial)

        async def attempt_repair(attempt: Attempt) -> Optional[Dict[str, Any]]:
            budget = TokenEstimator.adjust(prompt, attempt.max_output_tokens,
                                           self.model_limit, self.min_output_tokens)
            self.calls += 1
            response = await self.client.generate(prompt, attempt.with_max_output_tokens(budget))
            text = classify_response(response)
            if not text:
                return None
            parsed = extract_json(text)
            return coerce_to_plan_shape(parsed) if is_plan else coerce_to_item_shape(parsed)

        try:
            outcome = await run_attempts(self.policy, attempt_repair, label="repair")
        except RateLimitError:
            raise
        except PlanGenerationError as e:
            logger.warning(f"⚠️ Repair failed, keeping original: {e}")
            return partial

        if outcome.value is None:
            logger.warning(f"⚠️ Repair produced nothing usable, keeping original ({'; '.join(outcome.failures)})")
            return partial

        logger.info("✅ Repair call returned patched JSON")
        return outcome.value
