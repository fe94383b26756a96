"""
Property extraction and matching strategies for trait item names.

Item display names carry the information that matching and exclusion rules
key on: a color word ("Navy Jacket"), a shared prefix ("pirate-hat",
"pirate_coat") or a word that follows a keyword ("eyes style laser").

Two color notions exist on purpose:
- extract_property(name, "color") checks the literal palette only and falls
  back to the first token; exclusion rules compare these values.
- color_family_from_name(name) maps synonyms to canonical families and is the
  one used by matching-rule candidate search and head/body coherence.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from settings import COLOR_FAMILY_SYNONYMS, COLOR_PALETTE

_SPLIT_RE = re.compile(r"[\s\-_]+")
_PREFIX_SPLIT_RE = re.compile(r"[-_]")
# Anything that is not a letter, digit, hyphen, underscore or whitespace
_NON_TOKEN_RE = re.compile(r"[^\w\s\-]", re.UNICODE)

_PALETTE = frozenset(COLOR_PALETTE)

ALIAS_TO_FAMILY: Dict[str, str] = {
    alias: family
    for family, aliases in COLOR_FAMILY_SYNONYMS.items()
    for alias in aliases
}


def split_words(name: str) -> List[str]:
    """Lowercase words of a name split on whitespace, hyphens and underscores."""
    return [w for w in _SPLIT_RE.split(str(name or "").lower()) if w]


def color_tokens(name: str) -> List[str]:
    """Tokenize for color-family lookup; punctuation is stripped first."""
    cleaned = _NON_TOKEN_RE.sub(" ", str(name or "").lower())
    return [t for t in _SPLIT_RE.split(cleaned) if t]


def extract_property(item_name: str, prop: str) -> str:
    """Derive the comparable property value of an item name.

    Args:
        item_name: Item display name
        prop: "color" or any keyword

    Returns:
        The derived value; the first token when nothing more specific matches,
        or an empty string for a name without words.
    """
    words = split_words(item_name)
    if not words:
        return ""
    key = str(prop or "").lower()
    if key == "color":
        for word in words:
            if word in _PALETTE:
                return word
        return words[0]
    for idx, word in enumerate(words):
        if key in word:
            if idx < len(words) - 1:
                return words[idx + 1]
            break
    return words[0]


def properties_equal(a: str, b: str) -> bool:
    return str(a).lower() == str(b).lower()


def color_family_from_name(name: str) -> Optional[str]:
    """Return the canonical color family named by ``name``, if any.

    Exact token matches win; otherwise the first token that contains (or is
    contained in) a synonym decides, e.g. "silvered" -> "gray".
    """
    tokens = color_tokens(name)
    for token in tokens:
        family = ALIAS_TO_FAMILY.get(token)
        if family:
            return family
    for token in tokens:
        for alias, family in ALIAS_TO_FAMILY.items():
            if alias in token or token in alias:
                return family
    return None


def name_prefix(name: str) -> str:
    """Text before the first hyphen/underscore, lowercased and stripped."""
    return _PREFIX_SPLIT_RE.split(str(name or ""), maxsplit=1)[0].lower().strip()


# ----------------------------------------------------------------------------------
# Matching strategies (tagged variants)
# ----------------------------------------------------------------------------------

@dataclass(frozen=True)
class ColorMatch:
    """Target items share the source item's color family."""


@dataclass(frozen=True)
class NamePrefixMatch:
    """Target items share the source item's name prefix."""


@dataclass(frozen=True)
class KeywordMatch:
    """Target items share the word that follows ``keyword``."""
    keyword: str


MatchStrategy = Union[ColorMatch, NamePrefixMatch, KeywordMatch]


def match_strategy_for(prop: str) -> MatchStrategy:
    raw = str(prop or "")
    if raw.lower() == "color":
        return ColorMatch()
    if raw == "name":
        return NamePrefixMatch()
    return KeywordMatch(raw.lower())


def strategy_label(strategy: MatchStrategy) -> str:
    if isinstance(strategy, ColorMatch):
        return "color"
    if isinstance(strategy, NamePrefixMatch):
        return "name"
    if isinstance(strategy, KeywordMatch):
        return strategy.keyword
    raise TypeError(f"Unknown match strategy: {strategy!r}")


def candidates_for(strategy: MatchStrategy, source_name: str, targets: Iterable) -> List:
    """Return the items of ``targets`` that match ``source_name`` under ``strategy``.

    ``targets`` are objects with a ``name`` attribute (catalog Items).
    """
    targets = list(targets)
    if isinstance(strategy, ColorMatch):
        family = color_family_from_name(source_name)
        if not family:
            return []
        return [t for t in targets if color_family_from_name(t.name) == family]
    if isinstance(strategy, NamePrefixMatch):
        prefix = name_prefix(source_name)
        return [t for t in targets if name_prefix(t.name) == prefix]
    if isinstance(strategy, KeywordMatch):
        value = extract_property(source_name, strategy.keyword)
        return [t for t in targets if extract_property(t.name, strategy.keyword) == value]
    raise TypeError(f"Unknown match strategy: {strategy!r}")
