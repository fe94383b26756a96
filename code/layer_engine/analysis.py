"""Collection reports: uniqueness estimate, rarity tiers and trait usage."""

from __future__ import annotations

from typing import Any, Dict, Set, Tuple

import pandas as pd

from logging_util import get_logger
from settings import (
    RARITY_BALANCE_TOLERANCE,
    RARITY_DEFAULT_TIER,
    RARITY_TIERS,
    UNIQUENESS_ATTEMPT_FACTOR,
    UNIQUENESS_SAMPLE_CAP,
)
from type_definitions import UniquenessEstimate

from .catalog import TraitCatalog
from .context import GenerationContext, TraitUsageStats
from .generator import create_combination_hash
from .resolver import ConstraintResolver
from .rules import RuleStore
from .selector import select_weighted_random

logger = get_logger(__name__)

RARITY_COLUMNS = ["layer", "item", "rarity", "tier", "expected_in_1000", "expected_in_10000"]
USAGE_COLUMNS = ["layer", "item", "usage", "percentage", "relative_usage", "unused", "underused"]


def estimate_uniqueness(
    catalog: TraitCatalog,
    rules: RuleStore,
    ctx: GenerationContext,
    sample_cap: int = UNIQUENESS_SAMPLE_CAP,
) -> UniquenessEstimate:
    """Estimate how many rule-valid combinations exist by sampling.

    Sampling uses plain weighted picks, one non-quota resolver pass and the
    exclusion check. Pair usage recorded while sampling stays out of ``ctx``.
    """
    layers = catalog.layers_with_items()
    theoretical = 1
    for layer in layers:
        theoretical *= len(layer.items)

    sample_size = min(int(sample_cap), theoretical)
    max_attempts = sample_size * UNIQUENESS_ATTEMPT_FACTOR
    scratch = GenerationContext(rng=ctx.rng, usage_stats=ctx.usage_stats)
    resolver = ConstraintResolver(catalog, rules, scratch)

    found: Set[str] = set()
    attempts = 0
    while len(found) < sample_size and attempts < max_attempts:
        attempts += 1
        combination: Dict[int, int] = {}
        for layer in layers:
            item = select_weighted_random(layer.items, layer.id, False, scratch, catalog.rarity_mode)
            if item is not None:
                combination[layer.id] = item.id
        resolver.apply_all_matching(combination, False)
        if not resolver.violates_exclusions(combination):
            found.add(create_combination_hash(combination))

    if len(found) == sample_size and attempts < max_attempts:
        estimated = theoretical
    else:
        estimated = round(theoretical * (len(found) / max(1, attempts)))
    pct = min(100.0, estimated / max(1, theoretical) * 100)
    logger.info(f"Found {len(found)} unique combinations in sample of {min(sample_size, attempts)}")
    return {
        "total_theoretical": theoretical,
        "valid_found": len(found),
        "attempts": attempts,
        "estimated_valid": estimated,
        "uniqueness_percentage": pct,
    }


def rarity_tier(rarity: float) -> str:
    for name, bound in RARITY_TIERS:
        if rarity < bound:
            return name
    return RARITY_DEFAULT_TIER


def rarity_analysis(catalog: TraitCatalog) -> Tuple[pd.DataFrame, Dict[str, Dict[str, Any]]]:
    """Per-item rarity tiers plus a per-layer summary.

    Returns:
        (items DataFrame sorted by layer z-order then ascending rarity,
         {layer name: {total_rarity, is_balanced, tiers: {tier: count}}})
    """
    rows = []
    summary: Dict[str, Dict[str, Any]] = {}
    for layer in catalog.layers_by_z():
        total = 0.0
        tiers = {name: 0 for name, _ in RARITY_TIERS}
        tiers[RARITY_DEFAULT_TIER] = 0
        for item in layer.items:
            r = float(item.rarity or 0)
            total += r
            tier = rarity_tier(r)
            tiers[tier] += 1
            rows.append({
                "layer": layer.name,
                "z_index": layer.z_index,
                "item": item.name,
                "rarity": r,
                "tier": tier,
                "expected_in_1000": round(r * 10),
                "expected_in_10000": round(r * 100),
            })
        summary[layer.name] = {
            "total_rarity": total,
            "is_balanced": abs(total - 100) < RARITY_BALANCE_TOLERANCE,
            "tiers": tiers,
        }

    if not rows:
        return pd.DataFrame(columns=RARITY_COLUMNS), summary
    df = pd.DataFrame(rows).sort_values(["z_index", "rarity"], kind="stable")
    return df[RARITY_COLUMNS].reset_index(drop=True), summary


def usage_report(catalog: TraitCatalog, stats: TraitUsageStats) -> pd.DataFrame:
    """Usage per item for layers that have been used at least once."""
    rows = []
    for layer in catalog.layers_by_z():
        layer_stats = stats.layer(layer.id)
        total = sum(layer_stats.values())
        if total == 0 or not layer.items:
            continue
        max_usage = max(max(layer_stats.values()), 1)
        avg = total / len(layer.items)
        for item in layer.items:
            usage = layer_stats.get(item.id, 0)
            rows.append({
                "layer": layer.name,
                "item": item.name,
                "usage": usage,
                "percentage": usage / total * 100,
                "relative_usage": usage / max_usage * 100,
                "unused": usage == 0,
                "underused": 0 < usage < avg * 0.5,
            })
    if not rows:
        return pd.DataFrame(columns=USAGE_COLUMNS)
    return pd.DataFrame(rows, columns=USAGE_COLUMNS)
