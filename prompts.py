"""
Meal Plan Prompts
=================

This module contains all prompts sent to the generation service.
Separating prompts from code makes it easier to tune wording without
touching the pipeline.

Prompts describe the expected JSON by example. Profile context is
compressed to one line and avoid-lists are bounded.

PROFILE CONTEXT:
get_profile_context() builds the one-line profile summary shared by every
prompt, the same way for day, single-meal and repair prompts.
"""

import json
from typing import Any, Dict, Iterable, List, Sequence

from config import GENERATION_DEFAULTS, MEAL_NAMES
from plan_models import UserProfile


# Compact shape-by-example for one day; the model copies the structure.
DAY_SHAPE_EXAMPLE = (
    '{"day":"Monday","summary":"1-2 sentences tied to the profile",'
    '"totals":{"calories":1800,"protein":120,"carbs":180,"fat":60},'
    '"meals":[{"name":"Breakfast","items":[ITEM]},{"name":"Lunch","items":[ITEM]},{"name":"Dinner","items":[ITEM]}]}'
)

ITEM_SHAPE_EXAMPLE = (
    '{"title":"Oatmeal with Berries","calories":350,"protein":20,"carbs":55,"fat":9,'
    '"rationale":"Why this fits the profile","tags":["High-fiber"],"allergens":[],"substitutions":[],'
    '"prepTime":5,"cookTime":5,'
    '"ingredients":[{"item":"Rolled oats","qty":0.75,"unit":"cup","category":"Grains"}],'
    '"steps":["Simmer oats in milk.","Top with berries."]}'
)

PLAN_SHAPE_EXAMPLE = '{"planTitle":"string","notes":"string","days":[DAY]}'

INGREDIENT_CATEGORIES = ["Produce", "Protein", "Grains", "Dairy", "Pantry", "Frozen", "Other"]


def _item_schema() -> Dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING"},
            "calories": {"type": "NUMBER"},
            "protein": {"type": "NUMBER"},
            "carbs": {"type": "NUMBER"},
            "fat": {"type": "NUMBER"},
            "rationale": {"type": "STRING"},
            "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
            "allergens": {"type": "ARRAY", "items": {"type": "STRING"}},
            "substitutions": {"type": "ARRAY", "items": {"type": "STRING"}},
            "prepTime": {"type": "NUMBER"},
            "cookTime": {"type": "NUMBER"},
            "ingredients": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "item": {"type": "STRING"},
                        "qty": {"type": "NUMBER"},
                        "unit": {"type": "STRING"},
                        "category": {"type": "STRING"},
                    },
                    "required": ["item"],
                },
            },
            "steps": {"type": "ARRAY", "items": {"type": "STRING"}},
        },
        "required": ["title", "ingredients", "steps"],
    }


def build_plan_response_schema() -> Dict[str, Any]:
    """Structured response schema for day/batch requests (generationConfig.response_schema)."""
    return {
        "type": "OBJECT",
        "properties": {
            "planTitle": {"type": "STRING"},
            "notes": {"type": "STRING"},
            "days": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "day": {"type": "STRING"},
                        "summary": {"type": "STRING"},
                        "totals": {
                            "type": "OBJECT",
                            "properties": {k: {"type": "NUMBER"} for k in ("calories", "protein", "carbs", "fat")},
                        },
                        "meals": {
                            "type": "ARRAY",
                            "items": {
                                "type": "OBJECT",
                                "properties": {
                                    "name": {"type": "STRING"},
                                    "items": {"type": "ARRAY", "items": _item_schema()},
                                },
                                "required": ["name", "items"],
                            },
                        },
                    },
                    "required": ["day", "meals"],
                },
            },
        },
        "required": ["days"],
    }


def get_profile_context(profile: UserProfile) -> str:
    """
    Build the compressed one-line profile summary used in every prompt.

    Empty fields are left out entirely rather than rendered as "None".
    """
    parts = []
    if profile.age:
        parts.append(f"age {profile.age}")
    if profile.gender:
        parts.append(f"gender {profile.gender}")
    if profile.ethnicity:
        parts.append(f"cultural background {profile.ethnicity}")
    if profile.fitness_goal:
        parts.append(f"goal {profile.fitness_goal}")
    if profile.dietary_prefs:
        parts.append(f"diet {', '.join(profile.dietary_prefs)}")
    if profile.medical_conditions:
        parts.append(f"medical conditions {profile.medical_conditions}")
    if profile.exclusions:
        parts.append(f"exclude {profile.exclusions}")
    return "; ".join(parts) if parts else "general healthy adult"


def bounded_avoid_list(values: Iterable[str], limit: int) -> List[str]:
    """
    De-duplicate (case-insensitively) and keep the most recent ``limit`` entries.

    ``values`` is in insertion order, oldest first.
    """
    seen = set()
    unique = []
    for value in values:
        text = str(value or "").strip()
        key = text.lower()
        if text and key not in seen:
            seen.add(key)
            unique.append(text)
    if limit <= 0:
        return []
    return unique[-limit:]


def _avoid_clause(avoid_titles: Sequence[str], avoid_tokens: Sequence[str],
                  title_limit: int, token_limit: int) -> str:
    titles = bounded_avoid_list(avoid_titles, title_limit)
    tokens = bounded_avoid_list(avoid_tokens, token_limit)
    lines = []
    if titles:
        lines.append(f"Avoid these titles (already used): {', '.join(titles)}.")
    if tokens:
        lines.append(f"Avoid these core ingredients/themes: {', '.join(tokens)}.")
    return "\n".join(lines)


# =============================================================================
# DAY / BATCH PROMPT
# =============================================================================

def build_day_prompt(
    profile: UserProfile,
    days: Sequence[str],
    avoid_titles: Sequence[str] = (),
    avoid_tokens: Sequence[str] = (),
    title_limit: int = GENERATION_DEFAULTS["avoid_title_limit"],
    token_limit: int = GENERATION_DEFAULTS["avoid_token_limit"],
) -> str:
    """
    Build the generation prompt for one day or a batch of consecutive days.

    Args:
        profile: User profile
        days: Day labels to generate, in order
        avoid_titles: Titles already used in this plan (oldest first)
        avoid_tokens: Title keywords already used in this plan
        title_limit / token_limit: avoid-list bounds

    Returns:
        Formatted prompt string
    """
    day_shape = DAY_SHAPE_EXAMPLE.replace("ITEM", ITEM_SHAPE_EXAMPLE)
    shape = PLAN_SHAPE_EXAMPLE.replace("DAY", day_shape)
    avoid = _avoid_clause(avoid_titles, avoid_tokens, title_limit, token_limit)
    avoid_section = f"\n{avoid}\n" if avoid else ""

    return f"""Return STRICT JSON ONLY (no markdown) shaped like this example:
{shape}

Output ONLY these days, in order: {', '.join(days)}.

Rules:
- Every day has exactly three meals: {', '.join(MEAL_NAMES)}. Each meal has exactly 1 item.
- Every item has non-empty ingredients[] and steps[].
- Breakfast, Lunch and Dinner are different recipes; no title or near-duplicate idea repeats across days.
- Integers for calories, protein, carbs, fat, prepTime, cookTime.
- Ingredient category is one of: {', '.join(INGREDIENT_CATEGORIES)}.
- Common grocery items; titles under 60 characters.
{avoid_section}
Profile: {get_profile_context(profile)}"""


# =============================================================================
# SINGLE MEAL PROMPT (slot regeneration)
# =============================================================================

RETRY_UNIQUENESS_HINT = (
    "IMPORTANT: Previous attempt was too similar to existing recipes. "
    "Make this COMPLETELY DIFFERENT in ingredients, cooking style, and overall concept."
)


def build_single_meal_prompt(
    profile: UserProfile,
    day_label: str,
    meal_name: str,
    avoid_titles: Sequence[str] = (),
    avoid_tokens: Sequence[str] = (),
    retry_hint: bool = False,
    title_limit: int = GENERATION_DEFAULTS["avoid_title_limit"],
    token_limit: int = GENERATION_DEFAULTS["avoid_token_limit"],
) -> str:
    """
    Build the prompt for ONE replacement recipe for a single meal slot.

    Args:
        retry_hint: Add the "previous attempt was too similar" instruction

    Returns:
        Formatted prompt string
    """
    avoid = _avoid_clause(avoid_titles, avoid_tokens, title_limit, token_limit)
    avoid_section = f"\n{avoid}\n" if avoid else ""
    hint_section = f"\n{RETRY_UNIQUENESS_HINT}\n" if retry_hint else ""

    return f"""Generate ONE replacement recipe for {meal_name} on {day_label}.
It must be a completely different dish from every other recipe in the plan:
different main ingredient, cooking method and flavor profile.
{avoid_section}{hint_section}
Return STRICT JSON ONLY shaped like this example:
{ITEM_SHAPE_EXAMPLE}

Profile: {get_profile_context(profile)}"""


# =============================================================================
# REPAIR PROMPT
# =============================================================================

def build_repair_prompt(profile: UserProfile, broken: Dict[str, Any]) -> str:
    """
    Build the prompt asking the model to patch incomplete plan (or item) JSON.

    The broken JSON is embedded compactly; the model must keep days and
    meal names and only fill what is missing.
    """
    is_plan = isinstance(broken, dict) and "days" in broken
    target = (
        f"EVERY meal has exactly 1 item and each item has {{title, calories, protein, carbs, fat}} (integers), "
        f"non-empty ingredients[] and non-empty steps[]. Keep the same days and meal names ({', '.join(MEAL_NAMES)})."
        if is_plan else
        "the item has {title, calories, protein, carbs, fat} (integers), non-empty ingredients[] and non-empty steps[]. "
        "Keep the same title."
    )

    return f"""Fix this JSON so {target}
Respect the profile's medical conditions, exclusions, culture and goal.
Return JSON ONLY in the same shape.

Profile: {get_profile_context(profile)}

Current JSON:
{json.dumps(broken, separators=(',', ':'), ensure_ascii=False)}"""


# =============================================================================
# HEALTH CHECK PROMPT
# =============================================================================

# Minimal call used to tell "service down / misconfigured" apart from
# "service fine, this profile is the problem" after a total failure.
HEALTH_CHECK_PROMPT = 'Reply with exactly this JSON: {"status":"ok"}'
