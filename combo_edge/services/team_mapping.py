"""
Entity alias resolution.

History rows and candidates name the same entity in different ways
("Man Utd", "Manchester United", "MUN").  The entity residual correction in
the calibration pipeline is keyed by canonical name, so every name passes
through :class:`EntityResolver` first.

Resolution order:

1. exact alias hit (case-insensitive, whitespace-trimmed);
2. fuzzy match against canonical names and aliases (rapidfuzz
   ``token_set_ratio``, cutoff 88), with a substring guard;
3. otherwise the trimmed input itself is the canonical name.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Iterable, Optional, Tuple

from rapidfuzz import fuzz, process

from combo_edge.schemas import EntityProfile

logger = logging.getLogger(__name__)

#: Minimum rapidfuzz score accepted for a fuzzy alias match.
FUZZY_CUTOFF = 88

#: Below this character-level ratio a substring hit is treated as a false
#: positive ("United" must not resolve to "Newcastle United").
_SUBSTRING_RATIO_FLOOR = 75

#: Distinct raw names remembered per resolver.
RESOLVE_CACHE_SIZE = 2048


def normalize_key(name: Optional[str]) -> str:
    """Lowercased, trimmed lookup key; ``None`` maps to ``""``."""
    return " ".join(str(name or "").split()).lower()


def _is_dangerous_substring_match(query: str, matched: str) -> bool:
    q = normalize_key(query)
    m = normalize_key(matched)
    if m in q or q in m:
        return fuzz.ratio(q, m) < _SUBSTRING_RATIO_FLOOR
    return False


class EntityResolver:
    """Map raw entity names onto canonical profile names."""

    def __init__(self, profiles: Iterable[EntityProfile] = ()):
        self._alias_map: Dict[str, str] = {}
        for profile in profiles:
            for alias in [profile.name, *profile.aliases]:
                key = normalize_key(alias)
                if not key:
                    continue
                existing = self._alias_map.get(key)
                if existing and existing != profile.name:
                    logger.warning(
                        "Alias '%s' claimed by both '%s' and '%s'; keeping '%s'",
                        alias, existing, profile.name, existing,
                    )
                    continue
                self._alias_map[key] = profile.name
        self._choices: Tuple[str, ...] = tuple(sorted(self._alias_map))
        self._canonical_for = lru_cache(maxsize=RESOLVE_CACHE_SIZE)(self._lookup)

    def __len__(self) -> int:
        return len(self._alias_map)

    def _lookup(self, key: str) -> Optional[str]:
        canonical = self._alias_map.get(key)
        if canonical is not None or not self._choices:
            return canonical
        result = process.extractOne(
            key, self._choices, scorer=fuzz.token_set_ratio, score_cutoff=FUZZY_CUTOFF
        )
        if result and _is_dangerous_substring_match(key, result[0]):
            logger.debug("Substring guard blocked fuzzy match '%s' -> '%s'", key, result[0])
            return None
        if result:
            canonical = self._alias_map[result[0]]
            logger.debug("Fuzzy matched '%s' to '%s' (score %.0f)", key, canonical, result[1])
        return canonical

    def resolve(self, name: Optional[str]) -> str:
        """Canonical name for ``name`` (the trimmed input when unknown)."""
        raw = " ".join(str(name or "").split())
        if not raw:
            return ""
        return self._canonical_for(raw.lower()) or raw

    def cache_info(self):
        """``functools`` cache statistics for the alias lookup."""
        return self._canonical_for.cache_info()

    def key(self, name: Optional[str]) -> str:
        """Residual-table key for ``name``."""
        return normalize_key(self.resolve(name))
