"""
Combination generation.

A combination maps layer id -> item id. ``MonteCarloSolver`` is a bounded
retry loop: it samples candidate combinations, lets the resolver fill
dependent layers, and returns the first one that passes validation. An empty
dict signals that no valid combination was found within ``max_attempts``.

``CombinationGenerator.generate_batch`` accepts unique, quota-respecting
combinations and commits usage stats and quotas immediately, so later picks
in the same batch see the updated state.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from exceptions import GenerationCancelled
from logging_util import get_logger
from settings import BATCH_ATTEMPT_FACTOR, SINGLE_MAX_ATTEMPTS, yield_every
from type_definitions import Combination

from .catalog import TraitCatalog
from .context import GenerationContext
from .resolver import ConstraintResolver
from .rules import RuleStore
from .selector import select_for_layer, select_weighted_random

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, int], None]


def create_combination_hash(combination: Mapping[int, int]) -> str:
    """Canonical signature: ``layerId:itemId`` pairs sorted by numeric layer id, joined by ``|``."""
    return "|".join(f"{lid}:{combination[lid]}" for lid in sorted(combination, key=int))


def _emit(payload: Dict[str, Any]) -> None:
    try:
        logger.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=False))
    except (TypeError, ValueError):
        logger.debug("Could not serialize generation event", exc_info=True)


def _cooperative_yield() -> None:
    time.sleep(0)


@dataclass
class YieldPolicy:
    """Hand control back to the host every ``every`` attempts (0 disables)."""
    every: int = field(default_factory=yield_every)
    hook: Callable[[], None] = _cooperative_yield

    def maybe_yield(self, attempts: int) -> None:
        if self.every > 0 and attempts % self.every == 0:
            self.hook()


@dataclass
class BatchResult:
    combinations: List[Combination]
    attempts: int
    requested: int

    @property
    def shortfall(self) -> bool:
        return len(self.combinations) < self.requested

    def __len__(self) -> int:
        return len(self.combinations)


class CombinationSolver:
    """Produces one valid combination or ``{}``."""

    def solve(self, use_balancing: bool, respect_quotas: bool) -> Combination:
        raise NotImplementedError


class MonteCarloSolver(CombinationSolver):
    def __init__(
        self,
        catalog: TraitCatalog,
        rules: RuleStore,
        ctx: GenerationContext,
        resolver: Optional[ConstraintResolver] = None,
        max_attempts: int = SINGLE_MAX_ATTEMPTS,
    ):
        self.catalog = catalog
        self.rules = rules
        self.ctx = ctx
        self.resolver = resolver or ConstraintResolver(catalog, rules, ctx)
        self.max_attempts = max_attempts

    def _pick(self, layer, use_balancing: bool, respect_quotas: bool):
        return select_for_layer(layer, self.ctx, self.catalog.rarity_mode, use_balancing, respect_quotas)

    def _is_valid(self, combination: Combination, respect_quotas: bool) -> bool:
        if self.resolver.violates_exclusions(combination):
            return False
        if respect_quotas and not self.resolver.combination_respects_quotas(combination):
            return False
        if not self.resolver.try_fix_body_to_match_head(combination, respect_quotas):
            return False
        return self.resolver.is_head_body_coherent(combination)

    def solve(self, use_balancing: bool, respect_quotas: bool) -> Combination:
        source_ids = self.rules.source_layer_ids(self.catalog)
        # fewer options first
        source_layers = sorted(
            (l for l in self.catalog.layers if l.id in source_ids),
            key=lambda l: len(l.items),
        )

        for _ in range(self.max_attempts):
            combination: Combination = {}

            for layer in source_layers:
                # an earlier source may already have filled this layer
                if layer.id in combination:
                    continue
                item = self._pick(layer, use_balancing, respect_quotas)
                if item is None:
                    continue
                combination[layer.id] = item.id
                self.resolver.apply_all_matching(combination, respect_quotas)

            for layer in self.catalog.layers:
                if layer.id in combination:
                    continue
                item = self._pick(layer, use_balancing, respect_quotas)
                if item is not None:
                    combination[layer.id] = item.id

            self.resolver.apply_all_matching(combination, respect_quotas)

            if self._is_valid(combination, respect_quotas):
                return combination
        return {}


class CombinationGenerator:
    def __init__(
        self,
        catalog: TraitCatalog,
        rules: RuleStore,
        ctx: GenerationContext,
        solver: Optional[CombinationSolver] = None,
        yield_policy: Optional[YieldPolicy] = None,
    ):
        self.catalog = catalog
        self.rules = rules
        self.ctx = ctx
        self.resolver = ConstraintResolver(catalog, rules, ctx)
        self.solver = solver or MonteCarloSolver(catalog, rules, ctx, resolver=self.resolver)
        self.yield_policy = yield_policy or YieldPolicy()

    # ------------------------------------------------------------------
    # Single combinations (preview)
    # ------------------------------------------------------------------
    def generate_random_combination(self, use_balancing: bool = True) -> Combination:
        """One weighted pick per layer with items; no rules applied."""
        combination: Combination = {}
        for layer in self.catalog.layers_with_items():
            item = select_weighted_random(layer.items, layer.id, use_balancing, self.ctx, self.catalog.rarity_mode)
            if item is not None:
                combination[layer.id] = item.id
        return combination

    def generate_combination(self, use_rules: bool = True, respect_quotas: bool = False) -> Combination:
        """Generate one combination and record its usage. ``{}`` means none was found."""
        if use_rules:
            combination = self.solver.solve(True, respect_quotas)
        else:
            combination = self.generate_random_combination(True)
        if combination:
            self.ctx.usage_stats.record(combination)
        else:
            logger.warning("Could not find a valid combination with current rules/quotas")
        return combination

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def _unruled_candidate(self) -> Combination:
        combination: Combination = {}
        for layer in self.catalog.layers:
            item = select_for_layer(layer, self.ctx, self.catalog.rarity_mode, True, True)
            if item is not None:
                combination[layer.id] = item.id
        self.resolver.apply_all_matching(combination, True)
        return combination

    def _accept(self, combination: Combination) -> None:
        self.ctx.usage_stats.record(combination)
        self.resolver.decrement_quotas(combination)

    def generate_batch(
        self,
        size: int,
        use_rules: bool = True,
        cancel_signal: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Collect up to ``size`` new combinations within ``size * 30`` attempts.

        Raises:
            GenerationCancelled: when ``cancel_signal`` is set. Combinations
                accepted before that point keep their usage and quota effects.
        """
        size = max(0, int(size))
        combinations: List[Combination] = []
        batch_hashes: Set[str] = set()
        max_attempts = size * BATCH_ATTEMPT_FACTOR
        attempts = 0

        while len(combinations) < size and attempts < max_attempts:
            if cancel_signal is not None and cancel_signal.is_set():
                raise GenerationCancelled()
            attempts += 1

            if use_rules:
                combination = self.solver.solve(True, True)
            else:
                combination = self._unruled_candidate()

            if combination:
                h = create_combination_hash(combination)
                if (
                    h not in batch_hashes
                    and h not in self.ctx.generated_hashes
                    and self.resolver.combination_respects_quotas(combination)
                ):
                    combinations.append(combination)
                    batch_hashes.add(h)
                    self._accept(combination)
                    if progress is not None:
                        progress(len(combinations), size, attempts)

            self.yield_policy.maybe_yield(attempts)

        self.ctx.generated_hashes.update(batch_hashes)
        result = BatchResult(combinations=combinations, attempts=attempts, requested=size)
        if result.shortfall:
            logger.warning(
                f"Only generated {len(combinations)} of {size} requested combinations after {attempts} attempts"
            )
        _emit({
            "event": "layer_engine.batch_generated",
            "requested": size,
            "produced": len(combinations),
            "attempts": attempts,
            "use_rules": bool(use_rules),
            "shortfall": result.shortfall,
        })
        return result
