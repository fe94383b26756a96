"""Weighted, balanced and quota-aware item selection.

Every draw goes through ``ctx.rng`` so a seeded context reproduces its picks.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from random_util import cumulative_pick, uniform_pick
from settings import BELOW_AVERAGE_SCALE, UNUSED_ITEM_MULTIPLIER

from .catalog import Item, Layer
from .context import GenerationContext


def usage_multiplier(usage: int, average: float) -> float:
    if usage == 0:
        return UNUSED_ITEM_MULTIPLIER
    if average > 0 and usage < average:
        return 1 + ((average - usage) / average) * BELOW_AVERAGE_SCALE
    return 1.0


def balanced_scores(items: Sequence[Item], layer_id: int, ctx: GenerationContext, rarity_mode: str) -> List[float]:
    """Base weight times usage multiplier for each item of a layer."""
    layer_stats = ctx.usage_stats.layer(layer_id)
    total_usage = sum(layer_stats.values())
    average = total_usage / len(items) if total_usage > 0 else 0.0
    scores: List[float] = []
    for item in items:
        base = (item.rarity or 1) if rarity_mode == "weighted" else 1
        scores.append(base * usage_multiplier(layer_stats.get(item.id, 0), average))
    return scores


def select_weighted_random(
    items: Sequence[Item],
    layer_id: int,
    force_balance: bool,
    ctx: GenerationContext,
    rarity_mode: str = "equal",
) -> Optional[Item]:
    if not items:
        return None
    items = list(items)

    if not force_balance:
        if rarity_mode == "equal" or all(not it.rarity for it in items):
            return uniform_pick(ctx.rng, items)
        return cumulative_pick(ctx.rng, items, [it.rarity or 0 for it in items])

    scores = balanced_scores(items, layer_id, ctx, rarity_mode)
    if sum(scores) == 0:
        return uniform_pick(ctx.rng, items)
    return cumulative_pick(ctx.rng, items, scores)


def select_with_quota(layer: Layer, ctx: GenerationContext) -> Optional[Item]:
    """Pick among items with remaining quota, weighted by what is left."""
    candidates = [it for it in layer.items if ctx.quota_remaining(layer.id, it.id) > 0]
    if not candidates:
        return None
    weights = [ctx.quota_remaining(layer.id, it.id) for it in candidates]
    return cumulative_pick(ctx.rng, candidates, weights)


def select_for_layer(
    layer: Layer,
    ctx: GenerationContext,
    rarity_mode: str,
    use_balancing: bool,
    respect_quotas: bool,
) -> Optional[Item]:
    if layer.exact_count_mode and respect_quotas:
        return select_with_quota(layer, ctx)
    return select_weighted_random(layer.items, layer.id, use_balancing, ctx, rarity_mode)
