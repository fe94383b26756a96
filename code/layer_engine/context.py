from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from logging_util import get_logger
from random_util import get_random
from type_definitions import PairUsageSnapshot, QuotaSnapshot, UsageStatsSnapshot

from .catalog import TraitCatalog

logger = get_logger(__name__)

QuotaKey = Tuple[int, int]


def quota_key(layer_id: int, item_id: int) -> str:
    return f"{layer_id}:{item_id}"


def rule_pair_key(rule_id: int, source_item_id: int, target_layer_id: int, target_item_id: int) -> str:
    return f"R|{rule_id}|{source_item_id}|{target_layer_id}|{target_item_id}"


def map_pair_key(source_item_id: int, target_layer_id: int, target_item_id: int) -> str:
    return f"M|{source_item_id}|{target_layer_id}|{target_item_id}"


def _parse_quota_key(key: str) -> Optional[QuotaKey]:
    try:
        layer_part, item_part = str(key).split(":", 1)
        return int(layer_part), int(item_part)
    except (ValueError, TypeError):
        return None


class TraitUsageStats:
    """Per-layer item usage counters used by balanced selection."""

    def __init__(self, data: Optional[Dict[int, Dict[int, int]]] = None):
        self._data: Dict[int, Dict[int, int]] = data if data is not None else {}

    def layer(self, layer_id: int) -> Dict[int, int]:
        return self._data.get(layer_id, {})

    def usage(self, layer_id: int, item_id: int) -> int:
        return self._data.get(layer_id, {}).get(item_id, 0)

    def layer_total(self, layer_id: int) -> int:
        return sum(self._data.get(layer_id, {}).values())

    def record(self, combination: Mapping[int, int]) -> None:
        for layer_id, item_id in combination.items():
            per_layer = self._data.setdefault(int(layer_id), {})
            per_layer[int(item_id)] = per_layer.get(int(item_id), 0) + 1

    def reset(self) -> None:
        self._data.clear()

    def drop_layer(self, layer_id: int) -> None:
        self._data.pop(layer_id, None)

    def snapshot(self) -> UsageStatsSnapshot:
        return {str(lid): {str(iid): n for iid, n in items.items()} for lid, items in self._data.items()}

    @classmethod
    def from_snapshot(cls, raw: Optional[Mapping]) -> "TraitUsageStats":
        data: Dict[int, Dict[int, int]] = {}
        for lid, items in (raw or {}).items():
            try:
                per_layer = {int(iid): int(n) for iid, n in (items or {}).items()}
                data[int(lid)] = per_layer
            except (TypeError, ValueError, AttributeError):
                logger.warning(f"Skipping malformed usage stats for layer {lid!r}")
        return cls(data)

    def __bool__(self) -> bool:
        return any(self._data.values())


@dataclass
class GenerationContext:
    """Mutable state threaded through a generation run.

    Owned by the batch/session manager. Quotas and usage stats are only
    mutated after a combination has been fully validated, so a cancelled run
    leaves them consistent with the last accepted combination. Pair usage is
    bumped whenever the resolver accepts a rule or mapping assignment.
    """
    rng: random.Random = field(default_factory=get_random)
    quotas: Dict[QuotaKey, int] = field(default_factory=dict)
    pair_usage: Dict[str, int] = field(default_factory=dict)
    usage_stats: TraitUsageStats = field(default_factory=TraitUsageStats)
    generated_hashes: Set[str] = field(default_factory=set)

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------
    def quota_remaining(self, layer_id: int, item_id: int) -> int:
        return self.quotas.get((layer_id, item_id), 0)

    def decrement_quota(self, layer_id: int, item_id: int) -> None:
        key = (layer_id, item_id)
        self.quotas[key] = max(0, self.quotas.get(key, 0) - 1)

    def reset_quotas(self, quotas: Optional[Dict[QuotaKey, int]] = None) -> None:
        self.quotas = dict(quotas or {})

    def quota_snapshot(self) -> QuotaSnapshot:
        return {quota_key(lid, iid): n for (lid, iid), n in self.quotas.items()}

    def load_quotas(self, raw: Optional[Mapping[str, int]]) -> None:
        quotas: Dict[QuotaKey, int] = {}
        for key, value in (raw or {}).items():
            parsed = _parse_quota_key(key)
            if parsed is None:
                logger.warning(f"Ignoring malformed quota key {key!r}")
                continue
            try:
                quotas[parsed] = max(0, int(value))
            except (TypeError, ValueError):
                quotas[parsed] = 0
        self.quotas = quotas

    # ------------------------------------------------------------------
    # Pair usage
    # ------------------------------------------------------------------
    def bump_pair(self, key: str) -> None:
        self.pair_usage[key] = self.pair_usage.get(key, 0) + 1

    def pair_used(self, key: str) -> int:
        return self.pair_usage.get(key, 0)

    def reset_pair_usage(self) -> None:
        self.pair_usage = {}

    def pair_usage_snapshot(self) -> PairUsageSnapshot:
        return dict(self.pair_usage)

    def load_pair_usage(self, raw: Optional[Mapping[str, int]]) -> None:
        usage: Dict[str, int] = {}
        for key, value in (raw or {}).items():
            try:
                usage[str(key)] = int(value)
            except (TypeError, ValueError):
                continue
        self.pair_usage = usage


def scale_counts_to_total(counts: List[int], total: int) -> List[int]:
    """Rescale non-negative counts to sum to ``total`` by largest remainder.

    A zero sum yields all zeros. Ties in the fractional part keep item order.
    """
    s = sum(counts)
    if s == 0 or not counts:
        return [0 for _ in counts]
    raw = [c / s * total for c in counts]
    floored = [int(x) for x in raw]
    remainder = total - sum(floored)
    order = sorted(range(len(raw)), key=lambda i: raw[i] - floored[i], reverse=True)
    idx = 0
    while remainder > 0:
        floored[order[idx % len(order)]] += 1
        remainder -= 1
        idx += 1
    return floored


def compute_initial_quotas(catalog: TraitCatalog, total: int) -> Dict[QuotaKey, int]:
    """Starting quotas for every exact-count layer, rescaled to ``total`` when needed."""
    result: Dict[QuotaKey, int] = {}
    for layer in catalog.layers:
        if not layer.exact_count_mode:
            continue
        counts = [max(0, int(it.count or 0)) for it in layer.items]
        final = counts
        before = sum(counts)
        if before != total:
            final = scale_counts_to_total(counts, total)
            logger.warning(
                f"Layer '{layer.name}' counts ({before}) auto-scaled to match export size ({sum(final)})"
            )
        for item, n in zip(layer.items, final):
            result[(layer.id, item.id)] = n
    return result

