"""
Grocery List

Aggregates every ingredient of a generated plan into a shopping list grouped
by store category. Quantities of the same item in the same unit are summed;
items in different units stay separate lines (no unit conversion).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from plan_models import DEFAULT_CATEGORY, MealPlan
from tools.logging_utils import get_logger

logger = get_logger(__name__)


# Store-walk order; unknown categories follow alphabetically
CATEGORY_ORDER = ["Produce", "Protein", "Grains", "Dairy", "Pantry", "Frozen", "Other"]

# (target fraction, tolerance, label)
_FRACTIONS = [
    (0.25, 0.02, "1/4"),
    (1 / 3, 0.03, "1/3"),
    (0.5, 0.02, "1/2"),
    (2 / 3, 0.03, "2/3"),
    (0.75, 0.02, "3/4"),
]


# ============================================================================
# QUANTITY FORMATTING
# ============================================================================

def _as_fraction(frac: float) -> Optional[str]:
    for target, tolerance, label in _FRACTIONS:
        if abs(frac - target) < tolerance:
            return label
    return None


def _trim_decimal(value: float) -> str:
    text = f"{value:.2f}"
    return text[:-3] if text.endswith(".00") else text


def format_qty(n: Optional[float]) -> str:
    """
    Format a quantity the way a recipe card would.

    Examples:
        format_qty(1.5)  -> "1 1/2"
        format_qty(0.25) -> "1/4"
        format_qty(2)    -> "2"
        format_qty(1.1)  -> "1.10"
    """
    if n is None:
        return ""
    value = float(n)
    whole = int(value)
    label = _as_fraction(abs(value - whole))
    if whole == 0:
        return label if label else _trim_decimal(value)
    if label:
        return f"{whole} {label}"
    return str(whole) if value == whole else _trim_decimal(value)


# ============================================================================
# GROUPING
# ============================================================================

@dataclass
class GroceryItem:
    item: str
    qty: Optional[float] = None
    unit: str = ""
    category: str = DEFAULT_CATEGORY

    @property
    def label(self) -> str:
        if self.qty is not None and self.qty > 0:
            return f"{self.item} — {format_qty(self.qty)} {self.unit}".rstrip()
        return self.item


@dataclass
class GroceryGroup:
    category: str
    items: List[GroceryItem] = field(default_factory=list)


def _category_sort_key(category: str) -> Tuple[int, str]:
    if category in CATEGORY_ORDER:
        return CATEGORY_ORDER.index(category), ""
    return len(CATEGORY_ORDER), category.lower()


def build_grocery_groups(plan: MealPlan) -> List[GroceryGroup]:
    """
    Build the grouped shopping list for ``plan``.

    When no item in the plan has ingredients, each recipe title becomes a
    single "Other" line so the list is never empty for a non-empty plan.
    """
    merged: Dict[Tuple[str, str, str], GroceryItem] = {}

    def add(name: str, qty: Optional[float], unit: str, category: str) -> None:
        category = (category or "").strip() or DEFAULT_CATEGORY
        key = (category, name.lower(), (unit or "").lower())
        entry = merged.setdefault(key, GroceryItem(item=name, unit=unit or "", category=category))
        if qty is not None:
            entry.qty = qty if entry.qty is None else entry.qty + qty

    items = [item for day in plan.days for item in day.items()]
    for item in items:
        for ingredient in item.ingredients:
            if ingredient.item:
                add(ingredient.item, ingredient.qty, ingredient.unit, ingredient.category)

    if not merged:
        for item in items:
            if item.title.strip():
                add(item.title.strip(), 1, "", DEFAULT_CATEGORY)

    groups: Dict[str, GroceryGroup] = {}
    for entry in merged.values():
        groups.setdefault(entry.category, GroceryGroup(entry.category)).items.append(entry)

    ordered = [groups[c] for c in sorted(groups, key=_category_sort_key)]
    for group in ordered:
        group.items.sort(key=lambda e: e.item.lower())

    logger.debug(f"🔍 Grocery list: {len(merged)} lines in {len(ordered)} categories")
    return ordered
