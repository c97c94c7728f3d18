"""
Response Parser
===============

Turns raw generateContent responses into plan JSON:

1. classify_response() - inspect block reasons / finish reasons, return text
2. extract_json()      - strip markdown fences, parse, or scan for the first
                         complete top-level {...} when the model added prose
3. coerce_to_plan_shape() / coerce_to_item_shape() - accept the handful of
   wrappers models like to invent ({"plan": {...}}, {"weekPlan": {...}},
   a bare array of days, ...)

Failures that should stop or reshape the next attempt raise typed errors from
plan_errors; everything else degrades to "" / None so the caller can move on
to its next attempt.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import TOKEN_USAGE_THRESHOLDS
from plan_errors import BlockedContentError, TruncatedResponseError, UnsafeContentError
from tools.logging_utils import get_logger

logger = get_logger(__name__)

UNSAFE_FINISH_REASONS = ("SAFETY", "RECITATION")

_FENCE = re.compile(r"```(?:json|JSON)?")


def strip_markdown_json(response: str) -> str:
    """
    Strip markdown code fences from JSON responses.

    Some models wrap JSON in ```json ... ``` blocks, sometimes with prose
    around them, which breaks json.loads(). All fence markers are removed.
    """
    return _FENCE.sub("", response or "").strip()


class JsonObjectScanner:
    """
    Finds the first complete top-level JSON object in free text.

    Tracks string/escape state so braces inside string values ("{" in a
    step description) don't count toward nesting depth.
    """

    def __init__(self, text: str):
        self.text = text or ""

    def find_first_object(self) -> Optional[str]:
        start = self.text.find("{")
        if start < 0:
            return None

        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(self.text)):
            char = self.text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return self.text[start:index + 1]
        # Unbalanced: truncated output
        return None


def extract_json(raw: str) -> Optional[Any]:
    """
    Parse model text into a JSON object or array.

    Returns:
        dict or list, or None when nothing parseable is found
    """
    cleaned = strip_markdown_json(raw)
    if not cleaned:
        return None

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, (dict, list)):
            return parsed
    except json.JSONDecodeError:
        pass

    candidate = JsonObjectScanner(cleaned).find_first_object()
    if candidate is None:
        logger.debug("🔍 No complete JSON object found in response text")
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.debug(f"🔍 First JSON object failed to parse: {e}")
        return None


# =============================================================================
# SHAPE ADAPTERS
# =============================================================================

def _has_days(obj: Any) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get("days"), list)


def _wrapped_days(key: str) -> Tuple[str, Callable[[Any], bool], Callable[[Any], Dict[str, Any]]]:
    return (
        f"{key}.days",
        lambda obj: isinstance(obj, dict) and _has_days(obj.get(key)),
        lambda obj: obj[key],
    )


# (name, predicate, extractor), first match wins
PLAN_SHAPE_ADAPTERS: List[Tuple[str, Callable[[Any], bool], Callable[[Any], Dict[str, Any]]]] = [
    ("days", _has_days, lambda obj: obj),
    _wrapped_days("plan"),
    _wrapped_days("weekPlan"),
    _wrapped_days("week"),
    ("bare array", lambda obj: isinstance(obj, list),
     lambda obj: {"planTitle": "7-Day Plan", "days": obj, "notes": ""}),
]


def coerce_to_plan_shape(obj: Any) -> Optional[Dict[str, Any]]:
    """Return a dict with a "days" list, or None if no adapter matches."""
    if obj is None:
        return None
    for name, matches, extract in PLAN_SHAPE_ADAPTERS:
        if matches(obj):
            if name != "days":
                logger.debug(f"🔍 Coerced response via '{name}' adapter")
            return extract(obj)
    return None


def _first_item_of_meals(obj: Dict[str, Any]) -> Dict[str, Any]:
    for meal in obj["meals"]:
        if isinstance(meal, dict) and isinstance(meal.get("items"), list) and meal["items"]:
            return meal["items"][0]
    return {}


ITEM_SHAPE_ADAPTERS: List[Tuple[str, Callable[[Any], bool], Callable[[Any], Dict[str, Any]]]] = [
    ("item", lambda obj: isinstance(obj, dict) and bool(obj.get("title")), lambda obj: obj),
    ("item wrapper", lambda obj: isinstance(obj, dict) and isinstance(obj.get("item"), dict),
     lambda obj: obj["item"]),
    ("items[0]", lambda obj: isinstance(obj, dict) and isinstance(obj.get("items"), list) and bool(obj["items"]),
     lambda obj: obj["items"][0]),
    ("meals[0].items[0]", lambda obj: isinstance(obj, dict) and isinstance(obj.get("meals"), list),
     _first_item_of_meals),
    ("bare array", lambda obj: isinstance(obj, list) and bool(obj), lambda obj: obj[0]),
]


def coerce_to_item_shape(obj: Any) -> Optional[Dict[str, Any]]:
    """Return a single item dict (with a title) from a single-meal response."""
    if obj is None:
        return None
    for _name, matches, extract in ITEM_SHAPE_ADAPTERS:
        if matches(obj):
            item = extract(obj)
            if isinstance(item, dict) and item.get("title"):
                return item
    return None


def needs_repair(plan: Dict[str, Any]) -> bool:
    """True if any meal has no items or any item lacks ingredients or steps."""
    for day in plan.get("days") or []:
        if not isinstance(day, dict):
            return True
        for meal in day.get("meals") or []:
            items = meal.get("items") if isinstance(meal, dict) else None
            if not isinstance(items, list) or not items:
                return True
            for item in items:
                if not isinstance(item, dict):
                    return True
                if not isinstance(item.get("ingredients"), list) or not item["ingredients"]:
                    return True
                if not isinstance(item.get("steps"), list) or not item["steps"]:
                    return True
    return False


# =============================================================================
# RESPONSE CLASSIFICATION
# =============================================================================

@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    candidate_tokens: int
    total_tokens: int
    thoughts_tokens: int = 0


def read_token_usage(api_response: Dict[str, Any]) -> Optional[TokenUsage]:
    usage = api_response.get("usageMetadata") if isinstance(api_response, dict) else None
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        prompt_tokens=int(usage.get("promptTokenCount") or 0),
        candidate_tokens=int(usage.get("candidatesTokenCount") or 0),
        total_tokens=int(usage.get("totalTokenCount") or 0),
        thoughts_tokens=int(usage.get("thoughtsTokenCount") or 0),
    )


def _log_token_usage(usage: Optional[TokenUsage]) -> None:
    if usage is None:
        return
    message = (f"📊 Token usage: prompt={usage.prompt_tokens} "
               f"output={usage.candidate_tokens} thoughts={usage.thoughts_tokens} total={usage.total_tokens}")
    if usage.total_tokens > TOKEN_USAGE_THRESHOLDS["high"]:
        logger.warning(f"⚠️ HIGH {message}")
    elif usage.total_tokens > TOKEN_USAGE_THRESHOLDS["elevated"]:
        logger.info(f"⚠️ Elevated {message}")
    else:
        logger.debug(message)


def first_part_text(api_response: Dict[str, Any]) -> str:
    """Text of the first non-empty part of the first candidate, or ""."""
    candidates = api_response.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            return text
    return ""


def classify_response(api_response: Dict[str, Any]) -> str:
    """
    Classify a raw generateContent response.

    Returns:
        The text of the first non-empty part, or "" when the response carries
        candidates/parts but no text (caller retries)

    Raises:
        BlockedContentError: promptFeedback.blockReason is present
        TruncatedResponseError: finishReason is MAX_TOKENS
        UnsafeContentError: finishReason is SAFETY or RECITATION
    """
    if not isinstance(api_response, dict):
        return ""

    usage = read_token_usage(api_response)
    _log_token_usage(usage)

    block_reason = (api_response.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        logger.warning(f"❌ Prompt blocked: {block_reason}")
        raise BlockedContentError(block_reason)

    candidates = api_response.get("candidates") or []
    finish_reason = candidates[0].get("finishReason") if candidates and isinstance(candidates[0], dict) else None

    if finish_reason == "MAX_TOKENS":
        logger.warning("⚠️ Response hit MAX_TOKENS")
        raise TruncatedResponseError(api_response.get("usageMetadata"))
    if finish_reason in UNSAFE_FINISH_REASONS:
        logger.warning(f"❌ Response stopped: {finish_reason}")
        raise UnsafeContentError(finish_reason)

    text = first_part_text(api_response)
    if not text and candidates:
        logger.warning("⚠️ Response had candidates but no text")
    return text
