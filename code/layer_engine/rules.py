"""
Rule store: matching rules, exclusion rules and manual mappings.

Matching rules derive a target-layer item from a source-layer item through a
shared property. Exclusion rules forbid co-occurrences. Manual mappings are
hard source-item -> target-item overrides.

The *effective* matching rule list is the stored rules followed by built-in
heuristic rules (see config/builtin_rules.yml). Built-ins are produced by a
pure function of the catalog and the loaded specs, so tests can enumerate or
disable them.
"""

from __future__ import annotations

import builtins
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from exceptions import RuleValidationError
from logging_util import get_logger
from path_util import get_builtin_rules_path
from settings import (
    BODY_LAYER_PATTERN,
    BUILTIN_RULE_ID,
    HEAD_LAYER_PATTERN,
    builtin_rules_enabled,
)

from .catalog import Layer, TraitCatalog
from .properties import (
    MatchStrategy,
    extract_property,
    match_strategy_for,
    properties_equal,
)

logger = get_logger(__name__)


@dataclass
class MatchingRule:
    id: int
    source_layer_id: int
    target_layer_id: int
    property: str

    @builtins.property
    def strategy(self) -> MatchStrategy:
        return match_strategy_for(self.property)

    @builtins.property
    def is_builtin(self) -> bool:
        return self.id < 0


@dataclass
class ExclusionRule:
    id: int
    source_layer_id: int
    target_layer_id: int
    property: Optional[str] = None
    source_item_id: Optional[int] = None
    target_item_id: Optional[int] = None

    @builtins.property
    def is_specific_pair(self) -> bool:
        return self.source_item_id is not None and self.target_item_id is not None

    def forbids(self, source_item_name: str, target_item_name: str, source_item_id: int, target_item_id: int) -> bool:
        if self.is_specific_pair:
            return source_item_id == self.source_item_id and target_item_id == self.target_item_id
        if self.property:
            return properties_equal(
                extract_property(source_item_name, self.property),
                extract_property(target_item_name, self.property),
            )
        return False


@dataclass
class ManualMapping:
    id: int
    source_layer_id: int
    source_item_id: int
    target_layer_id: int
    target_item_id: int


# ----------------------------------------------------------------------------------
# Built-in heuristic rules
# ----------------------------------------------------------------------------------

@dataclass(frozen=True)
class BuiltinRuleSpec:
    name: str
    source_pattern: str
    target_pattern: str
    property: str = "color"
    coherence: bool = False
    enabled: bool = True
    summary: str = ""


DEFAULT_BUILTIN_SPECS: Tuple[BuiltinRuleSpec, ...] = (
    BuiltinRuleSpec(
        name="head_body_color",
        source_pattern=HEAD_LAYER_PATTERN,
        target_pattern=BODY_LAYER_PATTERN,
        property="color",
        coherence=True,
    ),
)

_SPEC_CACHE: Dict[str, Any] = {"path": None, "mtime": None, "specs": None}


def _spec_from_entry(entry: Mapping[str, Any]) -> Optional[BuiltinRuleSpec]:
    source = str(entry.get("source_pattern") or "").strip()
    target = str(entry.get("target_pattern") or "").strip()
    if not source or not target:
        return None
    try:
        re.compile(source)
        re.compile(target)
    except re.error as exc:
        logger.warning(f"Ignoring built-in rule with bad pattern: {exc}")
        return None
    return BuiltinRuleSpec(
        name=str(entry.get("name") or f"{source}->{target}"),
        source_pattern=source,
        target_pattern=target,
        property=str(entry.get("property") or "color"),
        coherence=bool(entry.get("coherence", False)),
        enabled=bool(entry.get("enabled", True)),
        summary=str(entry.get("summary") or ""),
    )


def load_builtin_rule_specs(path: str | Path | None = None, refresh: bool = False) -> List[BuiltinRuleSpec]:
    """Load built-in rule specs from YAML, falling back to code defaults.

    A missing or malformed file yields DEFAULT_BUILTIN_SPECS. Results are cached
    per path and file mtime.
    """
    p = Path(path or get_builtin_rules_path())
    if not p.exists():
        return list(DEFAULT_BUILTIN_SPECS)
    try:
        mtime = p.stat().st_mtime
    except OSError:
        mtime = None
    if (
        not refresh
        and _SPEC_CACHE["specs"] is not None
        and _SPEC_CACHE["path"] == str(p)
        and _SPEC_CACHE["mtime"] == mtime
    ):
        return list(_SPEC_CACHE["specs"])

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning(f"Could not read built-in rules from {p}: {exc}")
        return list(DEFAULT_BUILTIN_SPECS)

    entries: List[Any] = []
    if isinstance(raw, dict):
        listed = raw.get("builtin_rules")
        if isinstance(listed, list):
            entries = listed
    elif isinstance(raw, list):
        entries = raw
    else:
        return list(DEFAULT_BUILTIN_SPECS)

    specs = [s for s in (_spec_from_entry(e) for e in entries if isinstance(e, dict)) if s is not None]
    _SPEC_CACHE.update({"path": str(p), "mtime": mtime, "specs": specs})
    return list(specs)


def builtin_rules(catalog: TraitCatalog, specs: Optional[List[BuiltinRuleSpec]] = None) -> List[MatchingRule]:
    """Synthesize built-in matching rules for the layers present in ``catalog``."""
    if not builtin_rules_enabled():
        return []
    specs = load_builtin_rule_specs() if specs is None else specs
    out: List[MatchingRule] = []
    for idx, spec in enumerate(specs):
        if not spec.enabled:
            continue
        source = catalog.first_layer_matching(spec.source_pattern)
        target = catalog.first_layer_matching(spec.target_pattern, exclude_id=source.id if source else None)
        if source is None or target is None:
            continue
        out.append(
            MatchingRule(
                id=BUILTIN_RULE_ID - idx,
                source_layer_id=source.id,
                target_layer_id=target.id,
                property=spec.property,
            )
        )
    return out


def coherence_pairs(
    catalog: TraitCatalog, specs: Optional[List[BuiltinRuleSpec]] = None
) -> List[Tuple[Layer, Layer]]:
    """Layer pairs whose color families must agree (head/body by default)."""
    if not builtin_rules_enabled():
        return []
    specs = load_builtin_rule_specs() if specs is None else specs
    pairs: List[Tuple[Layer, Layer]] = []
    for spec in specs:
        if not (spec.enabled and spec.coherence):
            continue
        source = catalog.first_layer_matching(spec.source_pattern)
        target = catalog.first_layer_matching(spec.target_pattern, exclude_id=source.id if source else None)
        if source is not None and target is not None:
            pairs.append((source, target))
    return pairs


# ----------------------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------------------

@dataclass
class RuleStore:
    matching_rules: List[MatchingRule] = field(default_factory=list)
    exclusion_rules: List[ExclusionRule] = field(default_factory=list)
    manual_mappings: List[ManualMapping] = field(default_factory=list)
    builtin_specs: Optional[List[BuiltinRuleSpec]] = None

    def _check_layers(self, catalog: TraitCatalog, source_layer_id: int, target_layer_id: int) -> None:
        if catalog.find_layer(source_layer_id) is None or catalog.find_layer(target_layer_id) is None:
            raise RuleValidationError(
                "Rule references an unknown layer",
                details={"source_layer_id": source_layer_id, "target_layer_id": target_layer_id},
            )
        if source_layer_id == target_layer_id:
            raise RuleValidationError("Source and target layer must differ", details={"layer_id": source_layer_id})

    def add_matching_rule(self, catalog: TraitCatalog, source_layer_id: int, target_layer_id: int, prop: str) -> MatchingRule:
        self._check_layers(catalog, source_layer_id, target_layer_id)
        if not str(prop or "").strip():
            raise RuleValidationError("Matching rule needs a property")
        rule = MatchingRule(
            id=catalog.counters.take("next_rule_id"),
            source_layer_id=source_layer_id,
            target_layer_id=target_layer_id,
            property=str(prop).strip(),
        )
        self.matching_rules.append(rule)
        logger.info(f"Added matching rule {rule.id}: {source_layer_id} -> {target_layer_id} ({rule.property})")
        return rule

    def add_exclusion_rule(
        self,
        catalog: TraitCatalog,
        source_layer_id: int,
        target_layer_id: int,
        prop: Optional[str] = None,
        source_item_id: Optional[int] = None,
        target_item_id: Optional[int] = None,
    ) -> ExclusionRule:
        self._check_layers(catalog, source_layer_id, target_layer_id)
        has_property = bool(str(prop or "").strip())
        has_pair = source_item_id is not None and target_item_id is not None
        if has_property == has_pair:
            raise RuleValidationError(
                "Exclusion rule must be either property-based or a specific item pair",
                details={"property": prop, "source_item_id": source_item_id, "target_item_id": target_item_id},
            )
        if has_pair:
            if catalog.find_item(source_layer_id, source_item_id) is None or catalog.find_item(target_layer_id, target_item_id) is None:
                raise RuleValidationError("Exclusion rule references an unknown item")
        rule = ExclusionRule(
            id=catalog.counters.take("next_exclusion_id"),
            source_layer_id=source_layer_id,
            target_layer_id=target_layer_id,
            property=str(prop).strip() if has_property else None,
            source_item_id=source_item_id if has_pair else None,
            target_item_id=target_item_id if has_pair else None,
        )
        self.exclusion_rules.append(rule)
        return rule

    def add_manual_mapping(
        self,
        catalog: TraitCatalog,
        source_layer_id: int,
        source_item_id: int,
        target_layer_id: int,
        target_item_id: int,
    ) -> ManualMapping:
        self._check_layers(catalog, source_layer_id, target_layer_id)
        if catalog.find_item(source_layer_id, source_item_id) is None or catalog.find_item(target_layer_id, target_item_id) is None:
            raise RuleValidationError("Manual mapping references an unknown item")
        mapping = ManualMapping(
            id=catalog.counters.take("next_mapping_id"),
            source_layer_id=source_layer_id,
            source_item_id=source_item_id,
            target_layer_id=target_layer_id,
            target_item_id=target_item_id,
        )
        self.manual_mappings.append(mapping)
        return mapping

    def remove_matching_rule(self, rule_id: int) -> bool:
        before = len(self.matching_rules)
        self.matching_rules = [r for r in self.matching_rules if r.id != rule_id]
        return len(self.matching_rules) != before

    def remove_exclusion_rule(self, rule_id: int) -> bool:
        before = len(self.exclusion_rules)
        self.exclusion_rules = [r for r in self.exclusion_rules if r.id != rule_id]
        return len(self.exclusion_rules) != before

    def remove_manual_mapping(self, mapping_id: int) -> bool:
        before = len(self.manual_mappings)
        self.manual_mappings = [m for m in self.manual_mappings if m.id != mapping_id]
        return len(self.manual_mappings) != before

    def drop_layer(self, layer_id: int) -> None:
        """Forget every rule and mapping touching ``layer_id``."""
        self.matching_rules = [
            r for r in self.matching_rules if layer_id not in (r.source_layer_id, r.target_layer_id)
        ]
        self.exclusion_rules = [
            r for r in self.exclusion_rules if layer_id not in (r.source_layer_id, r.target_layer_id)
        ]
        self.manual_mappings = [
            m for m in self.manual_mappings if layer_id not in (m.source_layer_id, m.target_layer_id)
        ]

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------
    def effective_matching_rules(self, catalog: TraitCatalog) -> List[MatchingRule]:
        """Stored rules first, then built-ins not already covered by an explicit rule."""
        rules = list(self.matching_rules)
        for builtin in builtin_rules(catalog, self.builtin_specs):
            covered = any(
                r.source_layer_id == builtin.source_layer_id
                and r.target_layer_id == builtin.target_layer_id
                and r.property.lower() == builtin.property.lower()
                for r in self.matching_rules
            )
            if not covered:
                rules.append(builtin)
        return rules

    def coherence_pairs(self, catalog: TraitCatalog) -> List[Tuple[Layer, Layer]]:
        return coherence_pairs(catalog, self.builtin_specs)

    def source_layer_ids(self, catalog: TraitCatalog) -> set[int]:
        ids = {r.source_layer_id for r in self.effective_matching_rules(catalog)}
        ids.update(m.source_layer_id for m in self.manual_mappings)
        return ids

    def violates_exclusions(self, combination: Mapping[int, int], catalog: TraitCatalog) -> bool:
        """True when any stored exclusion rule's condition holds for ``combination``."""
        for rule in self.exclusion_rules:
            source_id = combination.get(rule.source_layer_id)
            target_id = combination.get(rule.target_layer_id)
            if source_id is None or target_id is None:
                continue
            if rule.is_specific_pair:
                if rule.forbids("", "", source_id, target_id):
                    return True
                continue
            source_item = catalog.find_item(rule.source_layer_id, source_id)
            target_item = catalog.find_item(rule.target_layer_id, target_id)
            if source_item is None or target_item is None:
                continue
            if rule.forbids(source_item.name, target_item.name, source_id, target_id):
                return True
        return False
