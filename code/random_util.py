from __future__ import annotations

import hashlib
import random
import secrets
from typing import Sequence, TypeVar, Union

"""
Seeded RNG and weighted-draw utilities for the generation engine.

Contract (minimal):
- derive_seed(s): stable, platform-independent non-negative int seed from a string or int.
- get_random(seed=None): new random.Random instance, seeded when provided.
- generate_seed(): high-entropy non-negative int suitable for seeding.
- cumulative_pick(rng, items, weights): cumulative-threshold draw; the last item is the
  fallback for floating-point leftovers.

No globals/state: every generation context owns its own Random instance.
"""


SeedLike = Union[int, str]
T = TypeVar("T")

_SEED_MASK = (1 << 63) - 1


def derive_seed(seed: SeedLike) -> int:
    """Derive a stable positive integer seed from a string or int.

    - int inputs are normalized to a non-negative 63-bit value.
    - str inputs use SHA-256 to produce a deterministic 63-bit value.
    """
    if isinstance(seed, int):
        return abs(int(seed)) & _SEED_MASK
    digest = hashlib.sha256(str(seed).encode("utf-8", errors="ignore")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=False) & _SEED_MASK


def get_random(seed: SeedLike | None = None) -> random.Random:
    """Return a new Random instance; seed when provided."""
    if seed is None:
        return random.Random()
    return random.Random(derive_seed(seed))


def generate_seed() -> int:
    """Return a high-entropy positive 63-bit integer suitable for seeding."""
    return secrets.randbits(63)


def cumulative_pick(rng: random.Random, items: Sequence[T], weights: Sequence[float]) -> T | None:
    """Draw r in [0, total) and subtract each weight until r <= 0.

    Returns None for an empty sequence. Callers handle the all-zero case
    themselves (the threshold draw would always land on the first item).
    """
    if not items:
        return None
    total = float(sum(weights))
    r = rng.random() * total
    for item, weight in zip(items, weights):
        r -= weight
        if r <= 0:
            return item
    return items[-1]


def uniform_pick(rng: random.Random, items: Sequence[T]) -> T | None:
    if not items:
        return None
    return items[int(rng.random() * len(items)) % len(items)]
