"""
Meal Plan Data Model
====================

Dataclasses for the generated plan and the profile it was generated for,
plus the normalization helpers that turn loosely-shaped model output into
a canonical plan:

- parse_quantity(): "1 1/2", "½", "0.5", 2 -> float (or None)
- Ingredient.from_raw(): dict or free-text ingredient -> Ingredient
- normalize_meal_candidates(): raw day -> candidate items per canonical slot
- Day.from_dict(): raw day -> Day with exactly Breakfast/Lunch/Dinner
- explain_plan(): the "why this plan" summary shown with a finished plan

Wire format keys (camelCase: planTitle, prepTime, cookTime) are kept in
to_dict() so a plan can be written back out exactly as the model shapes it.
"""

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import MEAL_NAMES


DEFAULT_PLAN_TITLE = "Your 7-Day Plan"
DEFAULT_CATEGORY = "Other"

UNICODE_FRACTIONS = {
    "½": "1/2",
    "¼": "1/4",
    "¾": "3/4",
    "⅓": "1/3",
    "⅔": "2/3",
}

# Units recognised when splitting free-text ingredients ("2 tbsp oil")
KNOWN_UNITS = {
    "tsp", "teaspoon", "teaspoons", "tbsp", "tablespoon", "tablespoons",
    "cup", "cups", "oz", "ounce", "ounces", "lb", "lbs", "pound", "pounds",
    "g", "gram", "grams", "kg", "ml", "l", "liter", "liters", "litre", "litres",
    "pinch", "dash", "clove", "cloves", "slice", "slices", "can", "cans",
    "handful", "bunch", "piece", "pieces", "scoop", "scoops",
}

_MIXED_FRACTION = re.compile(r"^(\d+(?:\.\d+)?)\s+(\d+)/(\d+)$")
_SIMPLE_FRACTION = re.compile(r"^(\d+)/(\d+)$")
_DECIMAL = re.compile(r"^(\d+(?:\.\d+)?)$")
_LEADING_QUANTITY = re.compile(r"^(\d+(?:\.\d+)?\s+\d+/\d+|\d+/\d+|\d+(?:\.\d+)?)\s*(.*)$")


def _replace_unicode_fractions(text: str) -> str:
    # "1½" becomes "1 1/2"
    for glyph, ascii_fraction in UNICODE_FRACTIONS.items():
        text = text.replace(glyph, " " + ascii_fraction)
    return re.sub(r"\s+", " ", text).strip()


def parse_quantity(q: Any) -> Optional[float]:
    """
    Parse an arbitrary quantity representation to a float.

    Accepts numbers, decimal strings, simple fractions ("3/4"), mixed
    fractions ("1 1/2") and unicode fractions ("½", "1 ½").

    Returns:
        float, or None for empty, non-finite or unparseable input
    """
    if q is None or isinstance(q, bool):
        return None
    if isinstance(q, (int, float)):
        return float(q) if math.isfinite(q) else None
    if not isinstance(q, str):
        return None

    s = _replace_unicode_fractions(q.strip())
    if not s:
        return None

    m = _MIXED_FRACTION.match(s)
    if m:
        denominator = int(m.group(3))
        return float(m.group(1)) + int(m.group(2)) / denominator if denominator else None

    m = _SIMPLE_FRACTION.match(s)
    if m:
        denominator = int(m.group(2))
        return int(m.group(1)) / denominator if denominator else None

    m = _DECIMAL.match(s)
    if m:
        return float(m.group(1))

    return None


def _to_int(value: Any) -> int:
    """Round a loosely typed macro/time value to int; junk becomes 0."""
    number = parse_quantity(value)
    return int(round(number)) if number is not None else 0


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


# =============================================================================
# PROFILE
# =============================================================================

@dataclass(frozen=True)
class UserProfile:
    """Who the plan is for. Immutable for the duration of a run."""
    age: str = ""
    gender: str = ""
    ethnicity: str = ""
    medical_conditions: str = ""
    fitness_goal: str = ""
    exclusions: str = ""
    dietary_prefs: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        """Build from form-style (camelCase) or snake_case keys."""
        def pick(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if value not in (None, ""):
                    return str(value).strip()
            return ""

        prefs = data.get("dietary_prefs", data.get("dietaryPrefs", ()))
        if isinstance(prefs, str):
            prefs = [p for p in (s.strip() for s in prefs.split(",")) if p]

        return cls(
            age=pick("age"),
            gender=pick("gender"),
            ethnicity=pick("ethnicity"),
            medical_conditions=pick("medical_conditions", "medicalConditions"),
            fitness_goal=pick("fitness_goal", "fitnessGoal", "goal"),
            exclusions=pick("exclusions"),
            dietary_prefs=tuple(str(p).strip() for p in prefs if str(p).strip()),
        )


# =============================================================================
# PLAN STRUCTURE
# =============================================================================

@dataclass
class Ingredient:
    item: str
    qty: Optional[float] = None
    unit: str = ""
    category: str = DEFAULT_CATEGORY

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Ingredient"]:
        """
        Normalize an ingredient that may be a dict or a free-text string.

        "1 1/2 cup oats" -> Ingredient("oats", 1.5, "cup")
        {"item": "oats", "qty": "½"} -> Ingredient("oats", 0.5)

        Returns None when there is no usable item name.
        """
        if isinstance(raw, dict):
            name = str(raw.get("item") or raw.get("name") or "").strip()
            if not name:
                return None
            return cls(
                item=name,
                qty=parse_quantity(raw.get("qty", raw.get("quantity"))),
                unit=str(raw.get("unit") or "").strip(),
                category=str(raw.get("category") or "").strip() or DEFAULT_CATEGORY,
            )

        if not isinstance(raw, str) or not raw.strip():
            return None

        s = re.sub(r"\s+", " ", _replace_unicode_fractions(raw.strip()))
        m = _LEADING_QUANTITY.match(s)
        if not m:
            return cls(item=s)

        qty = parse_quantity(m.group(1))
        rest = m.group(2).strip()
        unit = ""
        words = rest.split(" ", 1)
        if words[0].lower().rstrip(".") in KNOWN_UNITS:
            unit = words[0].rstrip(".")
            rest = words[1].strip() if len(words) > 1 else ""
        if rest.lower().startswith("of "):
            rest = rest[3:]

        return cls(item=rest or unit or s, qty=qty, unit=unit)

    def to_dict(self) -> Dict[str, Any]:
        return {"item": self.item, "qty": self.qty, "unit": self.unit, "category": self.category}


@dataclass
class Item:
    """One recipe: title, macros, rationale, ingredients and steps."""
    title: str
    calories: int = 0
    protein: int = 0
    carbs: int = 0
    fat: int = 0
    rationale: str = ""
    tags: List[str] = field(default_factory=list)
    allergens: List[str] = field(default_factory=list)
    substitutions: List[str] = field(default_factory=list)
    prep_time: int = 0
    cook_time: int = 0
    ingredients: List[Ingredient] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """Complete means at least one ingredient and at least one step."""
        return bool(self.ingredients) and bool(self.steps)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Item"]:
        """Build from model output; returns None when there is no title."""
        if not isinstance(data, dict):
            return None
        title = str(data.get("title") or data.get("name") or "").strip()
        if not title:
            return None

        raw_ingredients = data.get("ingredients")
        ingredients = []
        if isinstance(raw_ingredients, list):
            for raw in raw_ingredients:
                ingredient = Ingredient.from_raw(raw)
                if ingredient:
                    ingredients.append(ingredient)

        return cls(
            title=title,
            calories=_to_int(data.get("calories")),
            protein=_to_int(data.get("protein")),
            carbs=_to_int(data.get("carbs")),
            fat=_to_int(data.get("fat")),
            rationale=str(data.get("rationale") or "").strip(),
            tags=_string_list(data.get("tags")),
            allergens=_string_list(data.get("allergens")),
            substitutions=_string_list(data.get("substitutions")),
            prep_time=_to_int(data.get("prepTime", data.get("prep_time"))),
            cook_time=_to_int(data.get("cookTime", data.get("cook_time"))),
            ingredients=ingredients,
            steps=_string_list(data.get("steps")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "calories": self.calories,
            "protein": self.protein,
            "carbs": self.carbs,
            "fat": self.fat,
            "rationale": self.rationale,
            "tags": list(self.tags),
            "allergens": list(self.allergens),
            "substitutions": list(self.substitutions),
            "prepTime": self.prep_time,
            "cookTime": self.cook_time,
            "ingredients": [i.to_dict() for i in self.ingredients],
            "steps": list(self.steps),
        }


@dataclass
class Meal:
    name: str
    items: List[Item] = field(default_factory=list)

    @property
    def item(self) -> Optional[Item]:
        return self.items[0] if self.items else None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "items": [i.to_dict() for i in self.items]}


@dataclass
class Totals:
    calories: int = 0
    protein: int = 0
    carbs: int = 0
    fat: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Totals"]:
        if not isinstance(data, dict):
            return None
        return cls(
            calories=_to_int(data.get("calories")),
            protein=_to_int(data.get("protein")),
            carbs=_to_int(data.get("carbs")),
            fat=_to_int(data.get("fat")),
        )

    def to_dict(self) -> Dict[str, int]:
        return {"calories": self.calories, "protein": self.protein, "carbs": self.carbs, "fat": self.fat}


@dataclass
class Day:
    day: str
    meals: List[Meal] = field(default_factory=list)
    summary: str = ""
    totals: Optional[Totals] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], label: Optional[str] = None) -> "Day":
        """Canonical day: exactly three meals, first candidate per slot."""
        candidates = normalize_meal_candidates(raw)
        day = cls(
            day=label or str(raw.get("day") or "").strip(),
            meals=[Meal(name, candidates[name][:1]) for name in MEAL_NAMES],
            summary=str(raw.get("summary") or "").strip(),
            totals=Totals.from_dict(raw.get("totals")),
        )
        day.ensure_totals()
        return day

    def items(self) -> List[Item]:
        return [meal.item for meal in self.meals if meal.item]

    def meal(self, name: str) -> Optional[Meal]:
        for meal in self.meals:
            if meal.name.lower() == name.lower():
                return meal
        return None

    def compute_totals(self) -> Totals:
        items = self.items()
        return Totals(
            calories=sum(i.calories for i in items),
            protein=sum(i.protein for i in items),
            carbs=sum(i.carbs for i in items),
            fat=sum(i.fat for i in items),
        )

    def ensure_totals(self) -> None:
        """Fill totals from item macros when the model omitted them."""
        if self.totals is None:
            self.totals = self.compute_totals()

    @property
    def is_complete(self) -> bool:
        return len(self.meals) == len(MEAL_NAMES) and all(
            meal.item is not None and meal.item.is_complete for meal in self.meals
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "summary": self.summary,
            "totals": self.totals.to_dict() if self.totals else None,
            "meals": [m.to_dict() for m in self.meals],
        }


@dataclass
class MealPlan:
    title: str = DEFAULT_PLAN_TITLE
    notes: str = ""
    days: List[Day] = field(default_factory=list)
    requested_days: List[str] = field(default_factory=list)
    # Per-day failure descriptions and other non-fatal findings
    diagnostics: List[str] = field(default_factory=list)

    def add_day(self, day: Day) -> None:
        """Append a day, replacing any existing day with the same label."""
        for index, existing in enumerate(self.days):
            if existing.day.lower() == day.day.lower():
                self.days[index] = day
                return
        self.days.append(day)

    def day_labels(self) -> List[str]:
        return [d.day for d in self.days]

    @property
    def is_complete(self) -> bool:
        requested = self.requested_days or self.day_labels()
        return len(self.days) >= len(requested)

    def partial_notice(self) -> Optional[str]:
        """User-facing notice for a partial plan, None when complete."""
        if self.is_complete:
            return None
        return (
            f"{len(self.days)} of {len(self.requested_days)} days generated. "
            f"Regenerate to fill in the rest."
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "planTitle": self.title,
            "notes": self.notes,
            "days": [d.to_dict() for d in self.days],
        }
        notice = self.partial_notice()
        if notice:
            result["partialNotice"] = notice
        if self.diagnostics:
            result["diagnostics"] = list(self.diagnostics)
        return result


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_meal_candidates(raw_day: Dict[str, Any]) -> Dict[str, List[Item]]:
    """
    Map a raw day's meals onto the canonical Breakfast/Lunch/Dinner slots.

    Meal names match case- and whitespace-insensitively, first occurrence
    wins. Meals with other names ("Brunch", "Snack") fill empty slots in
    order; whatever is left over is dropped. Slots with nothing usable get
    an empty candidate list.

    Returns:
        {meal_name: [candidate items, in model order]} for every slot
    """
    raw_meals = raw_day.get("meals") if isinstance(raw_day, dict) else None
    if not isinstance(raw_meals, list):
        raw_meals = []

    def items_of(raw_meal: Dict[str, Any]) -> List[Item]:
        raw_items = raw_meal.get("items")
        if isinstance(raw_items, dict):
            raw_items = [raw_items]
        if not isinstance(raw_items, list):
            # Some responses put the item fields directly on the meal
            raw_items = [raw_meal] if raw_meal.get("title") else []
        return [item for item in (Item.from_dict(r) for r in raw_items) if item]

    wanted = {name.lower(): name for name in MEAL_NAMES}
    slots: Dict[str, List[Item]] = {}
    leftovers: List[List[Item]] = []

    for raw_meal in raw_meals:
        if not isinstance(raw_meal, dict):
            continue
        key = str(raw_meal.get("name") or "").strip().lower()
        items = items_of(raw_meal)
        if key in wanted and wanted[key] not in slots:
            slots[wanted[key]] = items
        elif items:
            leftovers.append(items)

    for name in MEAL_NAMES:
        if not slots.get(name) and leftovers:
            slots[name] = leftovers.pop(0)
        slots.setdefault(name, [])

    return {name: slots[name] for name in MEAL_NAMES}


def explain_plan(plan: MealPlan, profile: UserProfile) -> Tuple[str, List[str]]:
    """
    Build the "why this plan" summary.

    Returns:
        (summary sentence, up to six most common item rationales)
    """
    counts = Counter(
        item.rationale
        for day in plan.days
        for item in day.items()
        if item.rationale
    )
    bullets = [text for text, _ in counts.most_common(6)]

    bits = []
    if profile.fitness_goal:
        bits.append(f"goal of {profile.fitness_goal}")
    if profile.dietary_prefs:
        bits.append(f"diet: {', '.join(profile.dietary_prefs)}")
    if profile.exclusions:
        bits.append(f"exclusions: {profile.exclusions}")
    if profile.medical_conditions:
        bits.append(f"conditions: {profile.medical_conditions}")
    if profile.ethnicity:
        bits.append(f"cultural cues: {profile.ethnicity}")

    built_for = f"Built for your {' • '.join(bits)}. " if bits else ""
    summary = f"{built_for}Portions and macros are balanced across the day to support your profile."
    return summary, bullets
