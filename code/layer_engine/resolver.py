"""
Constraint resolver: fills dependent layers from manual mappings and matching
rules, checks exclusions and quotas, and keeps head/body color families
coherent.

The resolver mutates the combination dict it is given. Pair usage is recorded
when an assignment is accepted during resolution.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from settings import (
    CANDIDATE_BELOW_AVERAGE_SCALE,
    CANDIDATE_UNUSED_BOOST,
    MATCHING_MAX_PASSES,
    MIN_CANDIDATE_SCORE,
    MIN_QUOTA_SCORE,
)
from random_util import cumulative_pick, uniform_pick
from type_definitions import Combination

from .catalog import Item, Layer, TraitCatalog
from .context import GenerationContext, map_pair_key, rule_pair_key
from .properties import ColorMatch, candidates_for, color_family_from_name
from .rules import MatchingRule, RuleStore


class ConstraintResolver:
    def __init__(self, catalog: TraitCatalog, rules: RuleStore, ctx: GenerationContext):
        self.catalog = catalog
        self.rules = rules
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------
    def _quota_allows(self, layer: Optional[Layer], item_id: int, respect_quotas: bool) -> bool:
        if not respect_quotas or layer is None or not layer.exact_count_mode:
            return True
        return self.ctx.quota_remaining(layer.id, item_id) > 0

    def combination_respects_quotas(self, combination: Combination) -> bool:
        """Every exact-count layer is assigned an item with quota left."""
        for layer in self.catalog.layers:
            if not layer.exact_count_mode:
                continue
            item_id = combination.get(layer.id)
            if item_id is None:
                return False
            if self.ctx.quota_remaining(layer.id, item_id) <= 0:
                return False
        return True

    def decrement_quotas(self, combination: Combination) -> None:
        for layer in self.catalog.layers:
            if not layer.exact_count_mode:
                continue
            item_id = combination.get(layer.id)
            if item_id is not None:
                self.ctx.decrement_quota(layer.id, item_id)

    def violates_exclusions(self, combination: Combination) -> bool:
        return self.rules.violates_exclusions(combination, self.catalog)

    # ------------------------------------------------------------------
    # Candidate choice
    # ------------------------------------------------------------------
    def choose_candidate_balanced(
        self,
        candidates: Sequence[Item],
        target_layer: Layer,
        respect_quotas: bool,
        rule: Optional[MatchingRule] = None,
        source_item_id: Optional[int] = None,
    ) -> Optional[Item]:
        """Weighted pick spreading rule-driven assignments over all valid targets."""
        if not candidates:
            return None
        layer_stats = self.ctx.usage_stats.layer(target_layer.id)
        avg = sum(layer_stats.values()) / max(1, len(target_layer.items))

        weights: List[float] = []
        for cand in candidates:
            if respect_quotas and target_layer.exact_count_mode:
                quota_rem = max(0, self.ctx.quota_remaining(target_layer.id, cand.id))
            else:
                quota_rem = 1
            pair_used = 0
            if rule is not None and source_item_id is not None:
                pair_used = self.ctx.pair_used(rule_pair_key(rule.id, source_item_id, target_layer.id, cand.id))
            usage = layer_stats.get(cand.id, 0)
            if avg > 0 and usage < avg:
                boost = 1 + ((avg - usage) / avg) * CANDIDATE_BELOW_AVERAGE_SCALE
            elif usage == 0:
                boost = CANDIDATE_UNUSED_BOOST
            else:
                boost = 1.0
            score = max(MIN_QUOTA_SCORE, quota_rem) * boost / (1 + pair_used)
            weights.append(max(MIN_CANDIDATE_SCORE, score))
        return cumulative_pick(self.ctx.rng, list(candidates), weights)

    # ------------------------------------------------------------------
    # Fixpoint
    # ------------------------------------------------------------------
    def _apply_manual_mappings(self, combination: Combination, respect_quotas: bool) -> bool:
        changed = False
        for mapping in self.rules.manual_mappings:
            if combination.get(mapping.source_layer_id) != mapping.source_item_id:
                continue
            if mapping.target_layer_id in combination:
                continue
            target_layer = self.catalog.find_layer(mapping.target_layer_id)
            if target_layer is None or target_layer.find_item(mapping.target_item_id) is None:
                continue
            if not self._quota_allows(target_layer, mapping.target_item_id, respect_quotas):
                continue
            proposal = dict(combination)
            proposal[mapping.target_layer_id] = mapping.target_item_id
            if self.violates_exclusions(proposal):
                continue
            combination[mapping.target_layer_id] = mapping.target_item_id
            self.ctx.bump_pair(map_pair_key(mapping.source_item_id, mapping.target_layer_id, mapping.target_item_id))
            changed = True
        return changed

    def _apply_rules(self, combination: Combination, rules: Sequence[MatchingRule], respect_quotas: bool) -> bool:
        changed = False
        for rule in rules:
            source_item_id = combination.get(rule.source_layer_id)
            if source_item_id is None or rule.target_layer_id in combination:
                continue
            source_layer = self.catalog.find_layer(rule.source_layer_id)
            target_layer = self.catalog.find_layer(rule.target_layer_id)
            if source_layer is None or target_layer is None:
                continue
            source_item = source_layer.find_item(source_item_id)
            if source_item is None:
                continue

            candidates = [
                c
                for c in candidates_for(rule.strategy, source_item.name, target_layer.items)
                if self._quota_allows(target_layer, c.id, respect_quotas)
            ]
            chosen = self.choose_candidate_balanced(
                candidates, target_layer, respect_quotas, rule=rule, source_item_id=source_item.id
            )
            if chosen is None:
                continue
            proposal = dict(combination)
            proposal[target_layer.id] = chosen.id
            if self.violates_exclusions(proposal):
                continue
            combination[target_layer.id] = chosen.id
            self.ctx.bump_pair(rule_pair_key(rule.id, source_item.id, target_layer.id, chosen.id))
            changed = True
        return changed

    def apply_all_matching(self, combination: Combination, respect_quotas: bool) -> bool:
        """Fill unassigned target layers until nothing changes (bounded passes).

        Returns True when any assignment was made.
        """
        rules = self.rules.effective_matching_rules(self.catalog)
        changed = False
        for _ in range(MATCHING_MAX_PASSES):
            pass_changed = self._apply_manual_mappings(combination, respect_quotas)
            pass_changed = self._apply_rules(combination, rules, respect_quotas) or pass_changed
            if not pass_changed:
                break
            changed = True
        return changed

    # ------------------------------------------------------------------
    # Head/body coherence
    # ------------------------------------------------------------------
    def _coherence_items(self, combination: Combination, head: Layer, body: Layer):
        return head.find_item(combination.get(head.id)), body.find_item(combination.get(body.id))

    def is_head_body_coherent(self, combination: Combination) -> bool:
        for head, body in self.rules.coherence_pairs(self.catalog):
            head_item, body_item = self._coherence_items(combination, head, body)
            if head_item is None or body_item is None:
                continue
            hf = color_family_from_name(head_item.name)
            bf = color_family_from_name(body_item.name)
            if hf and bf and hf != bf:
                return False
        return True

    def try_fix_body_to_match_head(self, combination: Combination, respect_quotas: bool) -> bool:
        """Swap the body item for one in the head's color family when they disagree.

        Returns False when an incoherent pair cannot be repaired within quotas
        and exclusions; the combination is left untouched in that case.
        """
        for head, body in self.rules.coherence_pairs(self.catalog):
            head_item, body_item = self._coherence_items(combination, head, body)
            if head_item is None or body_item is None:
                continue
            hf = color_family_from_name(head_item.name)
            bf = color_family_from_name(body_item.name)
            if not hf or not bf or hf == bf:
                continue
            matches = candidates_for(ColorMatch(), head_item.name, body.items)
            if not matches:
                return False
            match = uniform_pick(self.ctx.rng, matches)
            if not self._quota_allows(body, match.id, respect_quotas):
                return False
            proposal: Dict[int, int] = dict(combination)
            proposal[body.id] = match.id
            if self.violates_exclusions(proposal):
                return False
            combination[body.id] = match.id
        return True
