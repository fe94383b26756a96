from __future__ import annotations

# Standard library imports
import os
from typing import Dict, List, Tuple

# ----------------------------------------------------------------------------------
# COLOR CONSTANTS
# ----------------------------------------------------------------------------------
# COLOR_PALETTE is the literal palette used by extract_property(name, "color").
# COLOR_FAMILY_SYNONYMS is the looser family table used for matching-rule
# candidate search and head/body coherence. The two are intentionally different.

COLOR_PALETTE: List[str] = [
    'red', 'blue', 'green', 'yellow', 'purple', 'orange',
    'black', 'white', 'brown', 'pink', 'cyan', 'magenta',
    'gray', 'grey', 'charcoal', 'silver', 'gold', 'violet',
    'indigo', 'turquoise', 'lime', 'navy', 'maroon', 'olive',
]

COLOR_FAMILY_SYNONYMS: Dict[str, List[str]] = {
    'black': ['black'],
    'white': ['white'],
    'gray': ['gray', 'grey', 'charcoal', 'silver', 'ash', 'slate'],
    'brown': ['brown', 'beige', 'tan', 'chocolate', 'umber', 'sepia', 'khaki', 'camel', 'sand'],
    'red': ['red', 'maroon', 'crimson', 'burgundy', 'scarlet', 'ruby'],
    'orange': ['orange', 'amber', 'tangerine', 'apricot', 'carrot'],
    'yellow': ['yellow', 'gold', 'golden', 'mustard', 'lemon'],
    'green': ['green', 'olive', 'lime', 'chartreuse', 'emerald', 'jade', 'mint'],
    'teal': ['teal', 'turquoise', 'aqua', 'cyan', 'aquamarine'],
    'blue': ['blue', 'navy', 'azure', 'cobalt', 'cerulean', 'sapphire', 'indigo'],
    'purple': ['purple', 'violet', 'lavender', 'plum', 'lilac'],
    'pink': ['pink', 'magenta', 'fuchsia', 'rose', 'salmon'],
}

# ----------------------------------------------------------------------------------
# BUILT-IN HEURISTIC RULES
# ----------------------------------------------------------------------------------
# Defaults used when config/builtin_rules.yml is absent or unreadable.
HEAD_LAYER_PATTERN: str = r'head|face|skull'
BODY_LAYER_PATTERN: str = r'body|torso'
BUILTIN_RULE_ID: int = -1

# ----------------------------------------------------------------------------------
# RARITY
# ----------------------------------------------------------------------------------
RARITY_MODES: Tuple[str, ...] = ('equal', 'weighted')

RARITY_PRESETS: Dict[str, List[float]] = {
    'Equal Distribution': [],
    'Common/Rare (80/20)': [80, 20],
    'Common/Uncommon/Rare (70/25/5)': [70, 25, 5],
    'Pyramid (50/30/15/5)': [50, 30, 15, 5],
    'Ultra Rare (90/8/2)': [90, 8, 2],
}

# Upper bounds (exclusive) for rarity tiers, checked in order
RARITY_TIERS: List[Tuple[str, float]] = [
    ('Ultra Rare', 5.0),
    ('Rare', 15.0),
    ('Uncommon', 30.0),
]
RARITY_DEFAULT_TIER: str = 'Common'
RARITY_BALANCE_TOLERANCE: float = 0.1

# ----------------------------------------------------------------------------------
# BALANCING
# ----------------------------------------------------------------------------------
UNUSED_ITEM_MULTIPLIER: float = 10.0
BELOW_AVERAGE_SCALE: float = 2.0
CANDIDATE_BELOW_AVERAGE_SCALE: float = 1.5
CANDIDATE_UNUSED_BOOST: float = 2.0
MIN_QUOTA_SCORE: float = 0.001
MIN_CANDIDATE_SCORE: float = 0.0001

# ----------------------------------------------------------------------------------
# GENERATION LIMITS
# ----------------------------------------------------------------------------------
SINGLE_MAX_ATTEMPTS: int = 400
BATCH_ATTEMPT_FACTOR: int = 30
MATCHING_MAX_PASSES: int = 3
YIELD_EVERY: int = 25
UNIQUENESS_SAMPLE_CAP: int = 10000
UNIQUENESS_ATTEMPT_FACTOR: int = 3

# ----------------------------------------------------------------------------------
# SESSION
# ----------------------------------------------------------------------------------
SESSION_KEY: str = 'nft-export-session'
SESSION_TTL_SECONDS: int = 24 * 60 * 60
SESSION_STATUSES: Tuple[str, ...] = ('generating', 'ready', 'downloading', 'completed', 'paused')

# ----------------------------------------------------------------------------------
# EXPORT
# ----------------------------------------------------------------------------------
DEFAULT_IMAGE_SIZE: int = 1000
METADATA_IMAGE_URI: str = 'ipfs://[CID]/images/{number}.png'


# Env-driven knobs are read at call time so tests can patch the environment.

def session_ttl_seconds() -> int:
    raw = os.getenv('SESSION_TTL_SECONDS')
    if not raw:
        return SESSION_TTL_SECONDS
    try:
        value = int(raw)
    except ValueError:
        return SESSION_TTL_SECONDS
    return value if value > 0 else SESSION_TTL_SECONDS


def builtin_rules_enabled() -> bool:
    return os.getenv('BUILTIN_RULES_ENABLED', '1').strip().lower() not in ('0', 'false', 'no', 'off')


def yield_every() -> int:
    raw = os.getenv('GENERATION_YIELD_EVERY')
    if raw is None:
        return YIELD_EVERY
    try:
        return max(0, int(raw))
    except ValueError:
        return YIELD_EVERY
