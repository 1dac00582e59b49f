"""
Road name normalization and alias matching.

Government traffic-count records label roads by route number and by
adjacent-intersection descriptions ("SR-61/THOMASVILLE RD", "CR-158"),
while addresses and OpenStreetMap use the local name ("Thomasville Rd").
This module reduces both to comparable keys and decides whether two
labels describe the same road.

Normalized keys are for matching only.  Callers always display the
original source string.
"""

import math
import re
from typing import Dict, FrozenSet, Optional, Set, Tuple

from site_config import ROAD_ALIASES, SITE_CONFIG, MatchThresholds

# =============================================================================
# TOKEN TABLES
# =============================================================================

DIRECTIONS = frozenset({
    "n", "s", "e", "w", "ne", "nw", "se", "sw",
    "north", "south", "east", "west",
    "northeast", "northwest", "southeast", "southwest",
})

STREET_SUFFIXES = frozenset({
    "rd", "road", "st", "street", "ave", "av", "avenue", "blvd", "boulevard",
    "dr", "drive", "ln", "lane", "hwy", "highway", "pkwy", "parkway",
    "ct", "court", "cir", "circle", "way", "pl", "place", "ter", "terrace",
    "trl", "trail", "expy", "expressway", "fwy", "freeway", "loop", "pike",
    "sq", "square", "xing", "crossing",
})

# Long-form route designations collapse to the short prefixes DOT data uses.
_ROUTE_SYNONYMS = (
    (re.compile(r"\bstate\s+(?:road|route|highway|hwy)\b"), "sr"),
    (re.compile(r"\bcounty\s+(?:road|route|highway|hwy)\b"), "cr"),
    (re.compile(r"\bu\.?s\.?\s+(?:highway|hwy|route)\b"), "us"),
    (re.compile(r"\binterstate\b"), "i"),
)

# "SR-61/THOMASVILLE RD" -> "THOMASVILLE RD"
_LEADING_ROUTE = re.compile(r"^\s*[a-z]{1,3}[\s-]*\d+[a-z]?\s*/\s*(?=[a-z0-9])")

_TOKEN = re.compile(r"[a-z0-9]+")

_HOUSE_NUMBER = re.compile(r"^\s*\d+[a-z]?(?:-\d+)?\s+(.*)$", re.IGNORECASE)
_UNIT_SUFFIX = re.compile(r"\s+(?:suite|ste|unit|apt|#)\s*\S+$", re.IGNORECASE)


def _is_blank(raw: Optional[str]) -> bool:
    return not raw or not raw.strip() or raw.strip().upper() == "N/A"


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_tokens(raw: Optional[str]) -> Tuple[str, ...]:
    """Lowercased alphanumeric tokens with route prefix, direction and
    street-type suffix removed.  Never raises."""
    if not raw:
        return ()
    text = raw.lower()
    for pattern, short in _ROUTE_SYNONYMS:
        text = pattern.sub(short, text)
    text = _LEADING_ROUTE.sub("", text, count=1)

    tokens = _TOKEN.findall(text)
    if len(tokens) > 1 and tokens[0] in DIRECTIONS:
        tokens = tokens[1:]
    if len(tokens) > 1 and tokens[-1] in DIRECTIONS:
        tokens = tokens[:-1]
    if len(tokens) > 1 and tokens[-1] in STREET_SUFFIXES:
        tokens = tokens[:-1]
    return tuple(tokens)


def normalize(raw: Optional[str]) -> str:
    return "".join(normalize_tokens(raw))


def _build_alias_index(table: Dict[str, Tuple[str, ...]]) -> Dict[str, FrozenSet[str]]:
    """local name <-> route variants, in both directions.

    Variants are not linked to each other: "US-319" covers more than one
    local road, so it must not pull in every sibling route number.
    """
    index: Dict[str, Set[str]] = {}
    for local, variants in table.items():
        local_key = normalize(local)
        for variant in variants:
            variant_key = normalize(variant)
            if not local_key or not variant_key:
                continue
            index.setdefault(local_key, set()).add(variant_key)
            index.setdefault(variant_key, set()).add(local_key)
    return {k: frozenset(v) for k, v in index.items()}


_ALIAS_INDEX = _build_alias_index(ROAD_ALIASES)


def expand_aliases(raw: Optional[str]) -> Set[str]:
    """Normalized form of ``raw`` plus every known alias of it."""
    key = normalize(raw)
    expanded = {key}
    expanded.update(_ALIAS_INDEX.get(key, ()))
    return expanded


# =============================================================================
# MATCHING
# =============================================================================

def _match_keys(raw: str) -> Set[Tuple[str, ...]]:
    """Token keys for the whole label and each '/'-separated part,
    alias-expanded."""
    parts = [raw]
    if "/" in raw:
        parts.extend(p for p in raw.split("/") if p.strip())

    keys: Set[Tuple[str, ...]] = set()
    for part in parts:
        tokens = normalize_tokens(part)
        if not tokens:
            continue
        keys.add(tokens)
        for alias in _ALIAS_INDEX.get("".join(tokens), ()):
            keys.add((alias,))
    return keys


def _token_run_contains(tokens: Tuple[str, ...], target: str) -> bool:
    """True if some run of consecutive tokens concatenates to ``target``."""
    for start in range(len(tokens)):
        joined = ""
        for token in tokens[start:]:
            joined += token
            if joined == target:
                return True
            if len(joined) >= len(target):
                break
    return False


def _keys_match(a: Tuple[str, ...], b: Tuple[str, ...], thresholds: MatchThresholds) -> bool:
    joined_a, joined_b = "".join(a), "".join(b)
    if not joined_a or not joined_b:
        return False
    if joined_a == joined_b:
        return True

    if len(joined_a) <= len(joined_b):
        shorter, longer_tokens = joined_a, b
    else:
        shorter, longer_tokens = joined_b, a

    required = max(
        thresholds.min_match_length,
        math.floor(thresholds.containment_ratio * len(shorter)),
    )
    if len(shorter) < required:
        return False
    return _token_run_contains(longer_tokens, shorter)


def names_match(
    a: Optional[str],
    b: Optional[str],
    thresholds: MatchThresholds = SITE_CONFIG.matching,
) -> bool:
    """Decide whether two road labels describe the same road.

    Exact key equality, or containment of the shorter key in the longer
    one on token boundaries (so "Main" never matches inside "Maine").
    "N/A" and blank labels never match anything.
    """
    if _is_blank(a) or _is_blank(b):
        return False
    keys_a = _match_keys(a)
    keys_b = _match_keys(b)
    for key_a in keys_a:
        for key_b in keys_b:
            if _keys_match(key_a, key_b, thresholds):
                return True
    return False


def is_matchable(raw: Optional[str], thresholds: MatchThresholds = SITE_CONFIG.matching) -> bool:
    """Whether ``raw`` is usable as a match target at all."""
    if _is_blank(raw):
        return False
    return len(normalize(raw)) >= thresholds.min_match_length


def street_from_address(address: Optional[str]) -> Optional[str]:
    """Street name from a one-line address.

    "1234 Thomasville Rd, Tallahassee, FL 32308" -> "Thomasville Rd"
    """
    if not address or not address.strip():
        return None
    first = address.split(",")[0].strip()
    first = _UNIT_SUFFIX.sub("", first)
    m = _HOUSE_NUMBER.match(first)
    street = (m.group(1) if m else first).strip()
    return street or None
