"""
Trait catalog: layers, items, rarity weights, exact-count quotas and stacking order.

The catalog is treated as immutable for the duration of a generation run;
edits happen between runs through the methods below. Stacking order is kept
as a contiguous z-index range [0, n-1] at all times.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from exceptions import CatalogValidationError, ItemNotFoundError, LayerNotFoundError
from logging_util import get_logger
from settings import (
    BODY_LAYER_PATTERN,
    HEAD_LAYER_PATTERN,
    RARITY_MODES,
    RARITY_PRESETS,
)

logger = get_logger(__name__)


@dataclass
class Item:
    id: int
    name: str
    rarity: Optional[float] = None
    count: int = 0
    uri: str = ""


@dataclass
class Layer:
    id: int
    name: str
    items: List[Item] = field(default_factory=list)
    z_index: int = 0
    exact_count_mode: bool = False

    def find_item(self, item_id: Optional[int]) -> Optional[Item]:
        if item_id is None:
            return None
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def count_sum(self) -> int:
        return sum(max(0, int(it.count or 0)) for it in self.items)


@dataclass
class IdCounters:
    """Monotonic id sources; exported with the project so ids stay unique after import."""
    next_id: int = 1
    next_rule_id: int = 1
    next_exclusion_id: int = 1
    next_mapping_id: int = 1

    def take(self, kind: str = "next_id") -> int:
        value = int(getattr(self, kind))
        setattr(self, kind, value + 1)
        return value


ItemSpec = Union[str, Mapping[str, Any]]


@dataclass
class TraitCatalog:
    layers: List[Layer] = field(default_factory=list)
    rarity_mode: str = "equal"
    counters: IdCounters = field(default_factory=IdCounters)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def find_layer(self, layer_id: Optional[int]) -> Optional[Layer]:
        for layer in self.layers:
            if layer.id == layer_id:
                return layer
        return None

    def require_layer(self, layer_id: int) -> Layer:
        layer = self.find_layer(layer_id)
        if layer is None:
            raise LayerNotFoundError(layer_id)
        return layer

    def find_item(self, layer_id: int, item_id: Optional[int]) -> Optional[Item]:
        layer = self.find_layer(layer_id)
        return layer.find_item(item_id) if layer else None

    def require_item(self, layer_id: int, item_id: int) -> Item:
        item = self.require_layer(layer_id).find_item(item_id)
        if item is None:
            raise ItemNotFoundError(layer_id, item_id)
        return item

    def layers_by_z(self) -> List[Layer]:
        return sorted(self.layers, key=lambda l: l.z_index)

    def layers_with_items(self) -> List[Layer]:
        return [l for l in self.layers if l.items]

    def any_exact_count(self) -> bool:
        return any(l.exact_count_mode for l in self.layers)

    def first_layer_matching(self, pattern: str, exclude_id: Optional[int] = None) -> Optional[Layer]:
        """First layer (catalog order) whose name matches ``pattern``, case-insensitive."""
        rx = re.compile(pattern, re.IGNORECASE)
        for layer in self.layers:
            if layer.id != exclude_id and rx.search(layer.name):
                return layer
        return None

    def head_body_layers(
        self,
        head_pattern: str = HEAD_LAYER_PATTERN,
        body_pattern: str = BODY_LAYER_PATTERN,
    ) -> Tuple[Optional[Layer], Optional[Layer]]:
        """First head-like layer and the first body-like layer other than it."""
        head = self.first_layer_matching(head_pattern)
        body = self.first_layer_matching(body_pattern, exclude_id=head.id if head else None)
        return head, body

    def theoretical_max(self) -> int:
        """Number of distinct combinations ignoring rules (empty layers count as 1)."""
        total = 1
        for layer in self.layers:
            total *= max(1, len(layer.items))
        return total

    # ------------------------------------------------------------------
    # Layer edits
    # ------------------------------------------------------------------
    def add_layer(self, name: str, items: Iterable[ItemSpec]) -> Layer:
        """Add a layer built from item names or item dicts.

        Item dicts accept ``name`` (required), ``uri``, ``rarity`` and ``count``.
        Items without a rarity share 100% evenly.
        """
        if not str(name or "").strip():
            raise CatalogValidationError("Please enter a layer name", code="EMPTY_LAYER_NAME")
        specs: List[Mapping[str, Any]] = []
        for spec in items or []:
            if isinstance(spec, str):
                spec = {"name": spec}
            if not str(spec.get("name") or "").strip():
                continue
            specs.append(spec)
        if not specs:
            raise CatalogValidationError(
                "Please select at least one item for the layer",
                code="NO_ITEMS",
                details={"layer": name},
            )

        layer = Layer(
            id=self.counters.take(),
            name=str(name).strip(),
            z_index=len(self.layers),
        )
        even_share = 100.0 / len(specs)
        for spec in specs:
            rarity = spec.get("rarity")
            layer.items.append(
                Item(
                    id=self.counters.take(),
                    name=str(spec["name"]).strip(),
                    rarity=float(rarity) if rarity is not None else even_share,
                    count=max(0, int(spec.get("count") or 0)),
                    uri=str(spec.get("uri") or ""),
                )
            )
        self.layers.append(layer)
        logger.info(f"Added layer '{layer.name}' with {len(layer.items)} items (id={layer.id})")
        return layer

    def remove_layer(self, layer_id: int) -> Layer:
        """Remove a layer and compact z-indices. Rules are dropped by the RuleStore."""
        layer = self.require_layer(layer_id)
        self.layers = [l for l in self.layers if l.id != layer_id]
        self._compact_z()
        logger.info(f"Removed layer '{layer.name}' (id={layer.id})")
        return layer

    def move_layer(self, layer_id: int, direction: str) -> bool:
        """Swap a layer with its z-neighbour. Returns False when already at the edge."""
        if direction not in ("up", "down"):
            raise CatalogValidationError(f"Unknown direction: {direction}", code="BAD_DIRECTION")
        layer = self.require_layer(layer_id)
        target_z = layer.z_index + 1 if direction == "up" else layer.z_index - 1
        neighbour = next((l for l in self.layers if l.z_index == target_z), None)
        if neighbour is None:
            return False
        neighbour.z_index, layer.z_index = layer.z_index, target_z
        return True

    def _compact_z(self) -> None:
        for idx, layer in enumerate(self.layers_by_z()):
            layer.z_index = idx

    # ------------------------------------------------------------------
    # Item edits
    # ------------------------------------------------------------------
    def set_item_rarity(self, layer_id: int, item_id: int, rarity: float) -> None:
        item = self.require_item(layer_id, item_id)
        item.rarity = min(100.0, max(0.0, float(rarity)))

    def set_item_count(self, layer_id: int, item_id: int, count: Any) -> None:
        item = self.require_item(layer_id, item_id)
        try:
            safe = int(float(count))
        except (TypeError, ValueError):
            safe = 0
        item.count = max(0, safe)

    def set_exact_count_mode(self, layer_id: int, enabled: bool) -> None:
        self.require_layer(layer_id).exact_count_mode = bool(enabled)

    def set_rarity_mode(self, mode: str) -> None:
        if mode not in RARITY_MODES:
            raise CatalogValidationError(f"Unknown rarity mode: {mode}", code="BAD_RARITY_MODE")
        self.rarity_mode = mode

    def apply_rarity_preset(self, layer_id: int, preset_name: str) -> bool:
        """Assign preset weights cyclically by item position; unknown/empty presets are no-ops."""
        weights = RARITY_PRESETS.get(preset_name)
        if not weights:
            return False
        layer = self.require_layer(layer_id)
        for idx, item in enumerate(layer.items):
            item.rarity = float(weights[idx % len(weights)] or 1)
        return True

    def normalize_rarities(self, layer_id: int) -> bool:
        layer = self.require_layer(layer_id)
        total = sum(it.rarity or 0 for it in layer.items)
        if total == 0:
            return False
        for item in layer.items:
            item.rarity = ((item.rarity or 0) / total) * 100
        return True

    def item_names(self, combination: Mapping[int, int]) -> Dict[str, str]:
        """Layer name -> item name for a combination, in stacking order."""
        out: Dict[str, str] = {}
        for layer in self.layers_by_z():
            item = layer.find_item(combination.get(layer.id))
            if item is not None:
                out[layer.name] = item.name
        return out
