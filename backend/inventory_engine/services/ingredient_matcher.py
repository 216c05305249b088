"""Ingredient Matcher - resolves recipe template ingredients to inventory rows.

Templates are store-independent, so their ingredient names have to be matched
against whatever each store calls its stock items. The cascade, first match
wins:

1. Exact name (case-insensitive, whitespace-trimmed)
2. Curated synonym / variant table ("oreo crushed" ≈ "crushed oreo")
3. Substring containment in either direction
4. Token overlap: shared words ÷ larger word count, accepted above threshold

Anything resolved by steps 2-4 is a heuristic and is logged so it can be
reviewed and turned into an explicit mapping.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from inventory_engine.services.repository import InventoryRow

logger = logging.getLogger(__name__)

# Template pattern -> inventory name variations, tried in order
DEFAULT_SYNONYMS: Dict[str, List[str]] = {
    "oreo crushed": ["crushed oreo", "oreo crushed"],
    "crushed oreo": ["oreo crushed", "crushed oreo"],
    "biscoff crushed": ["crushed biscoff", "biscoff crushed"],
    "crushed biscoff": ["biscoff crushed", "crushed biscoff"],
    "graham crushed": ["crushed grahams", "graham crushed"],
    "crushed grahams": ["graham crushed", "crushed grahams"],
    "chocolate sauce": ["choco sauce", "chocolate sauce", "dark chocolate sauce"],
    "caramel sauce": ["caramel syrup", "caramel sauce"],
    "strawberry toppings": ["strawberry jam", "strawberry topping"],
    "nutella topping": ["nutella", "nutella sauce"],
}

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", (name or "").strip().lower())


class MatchStrategy(str, Enum):
    EXACT = "exact"
    SYNONYM = "synonym"
    PARTIAL = "partial"
    TOKEN_OVERLAP = "token_overlap"


@dataclass(frozen=True)
class IngredientMatch:
    item: InventoryRow
    strategy: MatchStrategy
    score: float = 1.0
    matched_via: Optional[str] = None

    @property
    def is_fuzzy(self) -> bool:
        return self.strategy is not MatchStrategy.EXACT

    def describe(self, ingredient_name: str) -> str:
        detail = ""
        if self.strategy is MatchStrategy.SYNONYM:
            detail = f" via '{self.matched_via}'"
        elif self.strategy is MatchStrategy.TOKEN_OVERLAP:
            detail = f" (score {self.score:.2f})"
        return (
            f"Ingredient '{ingredient_name}' matched to inventory item "
            f"'{self.item.item}' by {self.strategy.value}{detail}"
        )


class IngredientMatcher:
    """Matches ingredient names against a store's active inventory rows.

    When several synonym patterns apply to a name, the longest (most specific)
    pattern is tried first. Partial matches prefer the candidate with the
    longest overlapping text. Ties keep inventory order.
    """

    def __init__(
        self,
        synonyms: Optional[Dict[str, Sequence[str]]] = None,
        threshold: float = 0.5,
    ):
        source = DEFAULT_SYNONYMS if synonyms is None else synonyms
        self.synonyms: Dict[str, List[str]] = {
            normalize_name(pattern): [normalize_name(v) for v in variations]
            for pattern, variations in source.items()
        }
        self.threshold = threshold

    def match(self, ingredient_name: str, items: Sequence[InventoryRow]) -> Optional[IngredientMatch]:
        name = normalize_name(ingredient_name)
        if not name:
            return None
        candidates = [(normalize_name(item.item), item) for item in items if item.is_active]
        if not candidates:
            return None

        for strategy in (self._exact, self._synonym, self._partial, self._token_overlap):
            result = strategy(name, candidates)
            if result is not None:
                if result.is_fuzzy:
                    logger.info(result.describe(ingredient_name))
                return result

        logger.info(f"No inventory match for ingredient '{ingredient_name}'")
        return None

    def _exact(self, name, candidates) -> Optional[IngredientMatch]:
        for candidate_name, item in candidates:
            if candidate_name == name:
                return IngredientMatch(item=item, strategy=MatchStrategy.EXACT)
        return None

    def _synonym(self, name, candidates) -> Optional[IngredientMatch]:
        patterns = [p for p in self.synonyms if p in name or name in p]
        for pattern in sorted(patterns, key=len, reverse=True):
            for variation in self.synonyms[pattern]:
                for candidate_name, item in candidates:
                    if variation in candidate_name:
                        return IngredientMatch(
                            item=item, strategy=MatchStrategy.SYNONYM, matched_via=variation
                        )
        return None

    def _partial(self, name, candidates) -> Optional[IngredientMatch]:
        best = None
        best_overlap = 0
        for candidate_name, item in candidates:
            if candidate_name in name or name in candidate_name:
                overlap = min(len(candidate_name), len(name))
                if overlap > best_overlap:
                    best, best_overlap = item, overlap
        if best is None:
            return None
        return IngredientMatch(item=best, strategy=MatchStrategy.PARTIAL)

    def _token_overlap(self, name, candidates) -> Optional[IngredientMatch]:
        words = name.split(" ")
        best = None
        best_score = 0.0
        for candidate_name, item in candidates:
            score = token_overlap_score(words, candidate_name.split(" "))
            if score > self.threshold and score > best_score:
                best, best_score = item, score
        if best is None:
            return None
        return IngredientMatch(item=best, strategy=MatchStrategy.TOKEN_OVERLAP, score=best_score)


def token_overlap_score(words: Sequence[str], other_words: Sequence[str]) -> float:
    """Shared words ÷ larger word count. Words are shared when one contains the other."""
    if not words or not other_words:
        return 0.0
    common = [w for w in words if any(o in w or w in o for o in other_words)]
    return len(common) / max(len(words), len(other_words))
