"""
Batch export: metadata documents plus render/archive orchestration.

Pixels are never touched here. A ``Renderer`` turns the ordered (layer, item)
stack of one combination into image bytes; an ``Archiver`` packs named
buffers into one downloadable blob. A render failure drops that single NFT
from the archive and the batch carries on.
"""

from __future__ import annotations

import io
import json
import re
import threading
import zipfile
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from exceptions import GenerationCancelled
from logging_util import get_logger
from settings import METADATA_IMAGE_URI
from type_definitions import NFTMetadata

from .catalog import Item, Layer, TraitCatalog
from .session import BatchData

logger = get_logger(__name__)

LayerStack = List[Tuple[Layer, Item]]


def layer_stack(catalog: TraitCatalog, combination: Mapping[int, int]) -> LayerStack:
    """Assigned (layer, item) pairs in ascending z order."""
    stack: LayerStack = []
    for layer in catalog.layers_by_z():
        item = layer.find_item(combination.get(layer.id))
        if item is not None:
            stack.append((layer, item))
    return stack


def build_metadata(
    catalog: TraitCatalog, combination: Mapping[int, int], collection_name: str, number: int
) -> NFTMetadata:
    return {
        "name": f"{collection_name} #{number}",
        "description": f"A unique NFT from the {collection_name} collection",
        "created_by": "",
        "image": METADATA_IMAGE_URI.format(number=number),
        "attributes": [
            {"trait_type": layer.name, "value": item.name} for layer, item in layer_stack(catalog, combination)
        ],
    }


class Renderer:
    """Produce raster bytes for a stacked combination at ``size`` x ``size``."""

    def render(self, stack: LayerStack, size: int) -> bytes:
        raise NotImplementedError


class Archiver:
    """Pack named file buffers into a single archive."""

    def archive(self, files: Mapping[str, bytes]) -> bytes:
        raise NotImplementedError


class ZipArchiver(Archiver):
    def __init__(self, compression: int = zipfile.ZIP_STORED):
        self.compression = compression

    def archive(self, files: Mapping[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, 'w', self.compression) as zf:
            for name, data in files.items():
                zf.writestr(name, data)
        return buf.getvalue()


def archive_name(batch: BatchData) -> str:
    slug = re.sub(r"\s+", "-", batch.collection_name.lower())
    return f"{slug}-batch-{batch.batch_number}-nfts-{batch.starting_number}-{batch.ending_number}.zip"


@dataclass
class ExportResult:
    name: str
    archive: bytes
    exported: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


def export_batch(
    batch: BatchData,
    catalog: TraitCatalog,
    renderer: Renderer,
    archiver: Archiver,
    cancel_signal: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> ExportResult:
    """Render every combination of ``batch`` and archive images plus metadata.

    Files are ``images/{n}.png`` and ``metadata/{n}.json`` where ``n`` counts
    from ``batch.starting_number``.

    Raises:
        GenerationCancelled: when ``cancel_signal`` trips between assets.
    """
    files: Dict[str, bytes] = {}
    exported: List[int] = []
    failed: List[int] = []
    total = len(batch.combinations)

    for idx, combination in enumerate(batch.combinations):
        if cancel_signal is not None and cancel_signal.is_set():
            raise GenerationCancelled("Download cancelled")
        number = batch.starting_number + idx
        try:
            image = renderer.render(layer_stack(catalog, combination), batch.image_size)
        except Exception as exc:
            # one broken asset must not sink the batch
            logger.error(f"Error generating NFT {number}: {exc}")
            failed.append(number)
            continue
        metadata = build_metadata(catalog, combination, batch.collection_name, number)
        files[f"images/{number}.png"] = image
        files[f"metadata/{number}.json"] = json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8")
        exported.append(number)
        if progress is not None:
            progress(idx + 1, total)

    if failed:
        logger.warning(f"Batch {batch.batch_number}: {len(failed)} of {total} NFTs failed to render and were skipped")
    return ExportResult(name=archive_name(batch), archive=archiver.archive(files), exported=exported, failed=failed)
