from __future__ import annotations

from typing import Dict, List, Literal, Optional, TypedDict

# Combination: layer id -> chosen item id
Combination = Dict[int, int]

# Quota / pair-usage snapshots as persisted in JSON ("layerId:itemId" keys)
QuotaSnapshot = Dict[str, int]
PairUsageSnapshot = Dict[str, int]

# layer id (as str in JSON) -> item id -> usage count
UsageStatsSnapshot = Dict[str, Dict[str, int]]

ExportStatus = Literal["generating", "ready", "downloading", "completed", "paused"]
RarityMode = Literal["equal", "weighted"]


class BatchDataDict(TypedDict):
    """JSON shape of one generated batch awaiting rendering."""
    combinations: List[Dict[str, int]]
    batchNumber: int
    collectionName: str
    imageSize: int
    startingNumber: int


class ExportSessionDict(TypedDict, total=False):
    """JSON shape of a persisted export session.

    Field names must stay stable so previously saved sessions keep resuming.
    """
    id: str
    totalCount: int
    batchSize: int
    collectionName: str
    imageSize: int
    useRules: bool
    currentBatch: int
    totalBatches: int
    completedBatches: List[int]
    generatedCombinations: List[str]
    generatedHashes: List[str]
    timestamp: float
    status: ExportStatus
    currentBatchData: Optional[BatchDataDict]
    autoDownload: bool
    quotas: QuotaSnapshot
    pairUsage: PairUsageSnapshot


class MetadataAttribute(TypedDict):
    trait_type: str
    value: str


class NFTMetadata(TypedDict):
    name: str
    description: str
    created_by: str
    image: str
    attributes: List[MetadataAttribute]


class UniquenessEstimate(TypedDict):
    total_theoretical: int
    valid_found: int
    attempts: int
    estimated_valid: int
    uniqueness_percentage: float
