"""Project documents: the full, re-importable state of a layer project.

The JSON document carries layers, rules, mappings, rarity mode, usage stats,
the generated-hash history and the id counters. Re-importing it and
generating again never repeats a previously generated combination.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exceptions import ProjectExportError, ProjectImportError
from logging_util import get_logger
from path_util import project_dir
from type_definitions import RarityMode

from .catalog import IdCounters, Item, Layer, TraitCatalog
from .context import GenerationContext, TraitUsageStats
from .generator import CombinationGenerator
from .rules import ExclusionRule, ManualMapping, MatchingRule, RuleStore

logger = get_logger(__name__)

PROJECT_FILE_NAME = "nft-art-engine-project.json"


class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')


class ItemDoc(_Doc):
    id: int
    name: str
    uri: str = Field("", alias="dataUrl", description="Opaque image reference")
    rarity: Optional[float] = None
    count: Optional[int] = Field(None, ge=0)


class LayerDoc(_Doc):
    id: int
    name: str
    items: List[ItemDoc] = Field(default_factory=list)
    z_index: int = Field(0, alias="zIndex")
    exact_count_mode: bool = Field(False, alias="exactCountMode")


class MatchingRuleDoc(_Doc):
    id: int
    source_layer_id: int = Field(..., alias="sourceLayerId")
    target_layer_id: int = Field(..., alias="targetLayerId")
    source_layer_name: str = Field("", alias="sourceLayerName")
    target_layer_name: str = Field("", alias="targetLayerName")
    property: str


class ExclusionRuleDoc(_Doc):
    id: int
    source_layer_id: int = Field(..., alias="sourceLayerId")
    target_layer_id: int = Field(..., alias="targetLayerId")
    source_layer_name: str = Field("", alias="sourceLayerName")
    target_layer_name: str = Field("", alias="targetLayerName")
    source_item_id: Optional[int] = Field(None, alias="sourceItemId")
    target_item_id: Optional[int] = Field(None, alias="targetItemId")
    source_item_name: Optional[str] = Field(None, alias="sourceItemName")
    target_item_name: Optional[str] = Field(None, alias="targetItemName")
    property: Optional[str] = None


class ManualMappingDoc(_Doc):
    id: int
    source_layer_id: int = Field(..., alias="sourceLayerId")
    source_item_id: int = Field(..., alias="sourceItemId")
    target_layer_id: int = Field(..., alias="targetLayerId")
    target_item_id: int = Field(..., alias="targetItemId")
    source_layer_name: str = Field("", alias="sourceLayerName")
    target_layer_name: str = Field("", alias="targetLayerName")
    source_item_name: str = Field("", alias="sourceItemName")
    target_item_name: str = Field("", alias="targetItemName")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProjectDocument(_Doc):
    layers: List[LayerDoc]
    trait_matching_rules: List[MatchingRuleDoc] = Field(..., alias="traitMatchingRules")
    trait_exclusion_rules: List[ExclusionRuleDoc] = Field(..., alias="traitExclusionRules")
    manual_mappings: List[ManualMappingDoc] = Field(..., alias="manualMappings")
    rarity_mode: RarityMode = Field("equal", alias="rarityMode")
    trait_usage_stats: Dict[str, Dict[str, int]] = Field(default_factory=dict, alias="traitUsageStats")
    generated_combinations: List[str] = Field(default_factory=list, alias="generatedCombinations")
    next_id: int = Field(default_factory=_now_ms, alias="nextId")
    next_rule_id: int = Field(default_factory=_now_ms, alias="nextRuleId")
    next_exclusion_id: int = Field(default_factory=_now_ms, alias="nextExclusionId")
    next_mapping_id: int = Field(default_factory=_now_ms, alias="nextMappingId")


@dataclass
class Project:
    """Catalog, rules and generation state bundled for editing and export."""
    catalog: TraitCatalog = field(default_factory=TraitCatalog)
    rules: RuleStore = field(default_factory=RuleStore)
    ctx: GenerationContext = field(default_factory=GenerationContext)

    def remove_layer(self, layer_id: int) -> Layer:
        layer = self.catalog.remove_layer(layer_id)
        self.rules.drop_layer(layer_id)
        self.ctx.usage_stats.drop_layer(layer_id)
        return layer

    def generator(self, **kwargs: Any) -> CombinationGenerator:
        return CombinationGenerator(self.catalog, self.rules, self.ctx, **kwargs)

    def session_manager(self, store=None, **kwargs: Any):
        from .session import BatchSessionManager

        return BatchSessionManager(self.catalog, self.rules, self.ctx, store=store, **kwargs)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def _layer_name(self, layer_id: int) -> str:
        layer = self.catalog.find_layer(layer_id)
        return layer.name if layer else ""

    def _item_name(self, layer_id: int, item_id: Optional[int]) -> Optional[str]:
        item = self.catalog.find_item(layer_id, item_id)
        return item.name if item else None

    def to_document(self) -> ProjectDocument:
        counters = self.catalog.counters
        return ProjectDocument(
            layers=[
                LayerDoc(
                    id=l.id,
                    name=l.name,
                    z_index=l.z_index,
                    exact_count_mode=l.exact_count_mode,
                    items=[ItemDoc(id=i.id, name=i.name, uri=i.uri, rarity=i.rarity, count=i.count) for i in l.items],
                )
                for l in self.catalog.layers
            ],
            trait_matching_rules=[
                MatchingRuleDoc(
                    id=r.id,
                    source_layer_id=r.source_layer_id,
                    target_layer_id=r.target_layer_id,
                    source_layer_name=self._layer_name(r.source_layer_id),
                    target_layer_name=self._layer_name(r.target_layer_id),
                    property=r.property,
                )
                for r in self.rules.matching_rules
            ],
            trait_exclusion_rules=[
                ExclusionRuleDoc(
                    id=r.id,
                    source_layer_id=r.source_layer_id,
                    target_layer_id=r.target_layer_id,
                    source_layer_name=self._layer_name(r.source_layer_id),
                    target_layer_name=self._layer_name(r.target_layer_id),
                    source_item_id=r.source_item_id,
                    target_item_id=r.target_item_id,
                    source_item_name=self._item_name(r.source_layer_id, r.source_item_id),
                    target_item_name=self._item_name(r.target_layer_id, r.target_item_id),
                    property=r.property,
                )
                for r in self.rules.exclusion_rules
            ],
            manual_mappings=[
                ManualMappingDoc(
                    id=m.id,
                    source_layer_id=m.source_layer_id,
                    source_item_id=m.source_item_id,
                    target_layer_id=m.target_layer_id,
                    target_item_id=m.target_item_id,
                    source_layer_name=self._layer_name(m.source_layer_id),
                    target_layer_name=self._layer_name(m.target_layer_id),
                    source_item_name=self._item_name(m.source_layer_id, m.source_item_id) or "",
                    target_item_name=self._item_name(m.target_layer_id, m.target_item_id) or "",
                )
                for m in self.rules.manual_mappings
            ],
            rarity_mode=self.catalog.rarity_mode,
            trait_usage_stats=self.ctx.usage_stats.snapshot(),
            generated_combinations=sorted(self.ctx.generated_hashes),
            next_id=counters.next_id,
            next_rule_id=counters.next_rule_id,
            next_exclusion_id=counters.next_exclusion_id,
            next_mapping_id=counters.next_mapping_id,
        )

    @classmethod
    def from_document(cls, doc: ProjectDocument, ctx: Optional[GenerationContext] = None) -> "Project":
        catalog = TraitCatalog(
            layers=[
                Layer(
                    id=l.id,
                    name=l.name,
                    z_index=l.z_index,
                    exact_count_mode=l.exact_count_mode,
                    items=[Item(id=i.id, name=i.name, uri=i.uri, rarity=i.rarity, count=i.count or 0) for i in l.items],
                )
                for l in doc.layers
            ],
            rarity_mode=doc.rarity_mode,
            counters=IdCounters(
                next_id=doc.next_id,
                next_rule_id=doc.next_rule_id,
                next_exclusion_id=doc.next_exclusion_id,
                next_mapping_id=doc.next_mapping_id,
            ),
        )
        rules = RuleStore(
            matching_rules=[
                MatchingRule(id=r.id, source_layer_id=r.source_layer_id, target_layer_id=r.target_layer_id, property=r.property)
                for r in doc.trait_matching_rules
            ],
            exclusion_rules=[
                ExclusionRule(
                    id=r.id,
                    source_layer_id=r.source_layer_id,
                    target_layer_id=r.target_layer_id,
                    property=r.property or None,
                    source_item_id=r.source_item_id,
                    target_item_id=r.target_item_id,
                )
                for r in doc.trait_exclusion_rules
            ],
            manual_mappings=[
                ManualMapping(
                    id=m.id,
                    source_layer_id=m.source_layer_id,
                    source_item_id=m.source_item_id,
                    target_layer_id=m.target_layer_id,
                    target_item_id=m.target_item_id,
                )
                for m in doc.manual_mappings
            ],
        )
        ctx = ctx or GenerationContext()
        ctx.usage_stats = TraitUsageStats.from_snapshot(doc.trait_usage_stats)
        ctx.generated_hashes = set(doc.generated_combinations)
        ctx.reset_quotas()
        ctx.reset_pair_usage()
        return cls(catalog=catalog, rules=rules, ctx=ctx)

    def dumps(self) -> str:
        if not self.catalog.layers:
            raise ProjectExportError()
        return json.dumps(self.to_document().model_dump(by_alias=True), indent=2, ensure_ascii=False)

    @classmethod
    def loads(cls, text: str | bytes, ctx: Optional[GenerationContext] = None) -> "Project":
        """Parse a project document. Raises ProjectImportError on any malformed input."""
        try:
            raw = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ProjectImportError(details={"error": str(exc)}) from exc
        if not isinstance(raw, dict):
            raise ProjectImportError(details={"error": "document is not an object"})
        try:
            doc = ProjectDocument.model_validate(raw)
        except ValidationError as exc:
            raise ProjectImportError(details={"errors": exc.errors(include_url=False)}) from exc
        return cls.from_document(doc, ctx=ctx)

    def export_project(self, path: str | Path | None = None) -> Path:
        p = Path(path) if path else Path(project_dir()) / PROJECT_FILE_NAME
        text = self.dumps()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        logger.info(f"Project exported to {p}")
        return p

    @classmethod
    def import_project(cls, path: str | Path, ctx: Optional[GenerationContext] = None) -> "Project":
        p = Path(path)
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProjectImportError("Failed to read file.", details={"path": str(p)}) from exc
        project = cls.loads(text, ctx=ctx)
        logger.info(f"Project imported from {p} ({len(project.catalog.layers)} layers)")
        return project
