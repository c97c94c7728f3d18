"""
Meal Similarity
===============

Decides whether two generated meals are "the same dish" for deduplication.

Two signals, both Jaccard overlaps:
- title similarity over title tokens minus cooking/serving filler words
  ("grilled", "bowl", "healthy", ...)
- ingredient similarity over the normalized names of the first five
  ingredients

combined_similarity() is the larger of the two. Scores below the unique
threshold (0.3) are clearly different dishes; scores above the duplicate
threshold (0.5) are treated as repeats.
"""

import re
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

from config import GENERATION_DEFAULTS
from plan_models import Item


UNIQUE_THRESHOLD = GENERATION_DEFAULTS["unique_threshold"]
DUPLICATE_THRESHOLD = GENERATION_DEFAULTS["duplicate_threshold"]

# Ingredient similarity looks at the leading ingredients only
MAIN_INGREDIENT_COUNT = 5

STOPWORDS = frozenset({
    "and", "with", "of", "the", "a", "an", "in", "on", "to", "for",
    "served", "style", "bowl", "salad", "soup", "wrap", "toast", "sandwich",
    "roasted", "grilled", "baked", "pan", "stir", "fried", "fresh", "mixed",
    "classic", "quick", "easy", "healthy",
})


class SimilarityVerdict(Enum):
    UNIQUE = "unique"
    ACCEPTABLE = "acceptable"
    DUPLICATE = "duplicate"


def normalize_title(title: str) -> str:
    """Lowercase, non-alphanumerics to spaces, whitespace collapsed."""
    s = re.sub(r"[^a-z0-9]+", " ", (title or "").lower())
    return re.sub(r"\s+", " ", s).strip()


def extract_tokens(title: str) -> List[str]:
    """Title tokens with STOPWORDS removed, in title order."""
    return [t for t in normalize_title(title).split(" ") if t and t not in STOPWORDS]


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def title_similarity(title_a: str, title_b: str) -> float:
    """Jaccard overlap of filtered title tokens; 0.0 when either side is empty."""
    return _jaccard(set(extract_tokens(title_a)), set(extract_tokens(title_b)))


def main_ingredients(item: Item) -> Set[str]:
    names = (normalize_title(i.item) for i in item.ingredients[:MAIN_INGREDIENT_COUNT])
    return {name for name in names if name}


def ingredient_similarity(item_a: Item, item_b: Item) -> float:
    """Jaccard overlap of the first five ingredient names."""
    return _jaccard(main_ingredients(item_a), main_ingredients(item_b))


def combined_similarity(item_a: Item, item_b: Item) -> float:
    """
    max(title similarity, ingredient similarity), in [0, 1].

    Identical normalized titles always score 1.0, even when every word is a
    stopword ("Grilled Salad").
    """
    norm_a, norm_b = normalize_title(item_a.title), normalize_title(item_b.title)
    if norm_a and norm_a == norm_b:
        return 1.0
    return max(title_similarity(item_a.title, item_b.title), ingredient_similarity(item_a, item_b))


def max_similarity(item: Item, others: Iterable[Item]) -> Tuple[float, Optional[Item]]:
    """
    Highest combined similarity of ``item`` against ``others``.

    Returns:
        (score, most similar item); (0.0, None) when others is empty
    """
    best_score, best_item = 0.0, None
    for other in others:
        if other is item:
            continue
        score = combined_similarity(item, other)
        if score > best_score:
            best_score, best_item = score, other
    return best_score, best_item


def classify(score: float,
             unique_threshold: float = UNIQUE_THRESHOLD,
             duplicate_threshold: float = DUPLICATE_THRESHOLD) -> SimilarityVerdict:
    if score < unique_threshold:
        return SimilarityVerdict.UNIQUE
    if score <= duplicate_threshold:
        return SimilarityVerdict.ACCEPTABLE
    return SimilarityVerdict.DUPLICATE
