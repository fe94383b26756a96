"""
Batch export sessions.

A session splits a large export into batches of ``batchSize`` combinations.
Each batch is generated, handed to the renderer/archiver, and marked complete
before the next one is produced. The session snapshot (quotas, pair usage and
the generated-hash history included) is persisted after every state change so
an interrupted export can be resumed at batch granularity.

Status table::

    generating -> ready          batch generated
    ready      -> downloading    render/archive started
    downloading-> completed      archive produced
    downloading-> ready          archive failed (retry allowed)
    completed  -> generating     next batch requested
    paused     -> ready          resumed with batch data already computed
    paused     -> generating     resumed without batch data

``generating`` and ``downloading`` snapshots reload as ``paused``.
"""

from __future__ import annotations

import json
import math
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from exceptions import (
    ExportValidationError,
    GenerationCancelled,
    InvalidSessionTransition,
    NoSessionError,
    SessionBusyError,
)
from logging_util import get_logger
from path_util import get_session_path
from settings import DEFAULT_IMAGE_SIZE, SESSION_KEY, SESSION_STATUSES, session_ttl_seconds
from type_definitions import BatchDataDict, Combination, ExportSessionDict

from .catalog import TraitCatalog
from .context import GenerationContext, compute_initial_quotas
from .generator import CombinationGenerator, ProgressCallback, YieldPolicy
from .rules import RuleStore

logger = get_logger(__name__)

_TRANSITIONS: Dict[str, tuple] = {
    "generating": ("ready",),
    "ready": ("downloading",),
    "downloading": ("completed", "ready"),
    "completed": ("generating",),
    "paused": ("generating", "ready"),
}
_IN_PROGRESS = ("generating", "downloading")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _combo_to_json(combination: Mapping[int, int]) -> Dict[str, int]:
    return {str(k): int(v) for k, v in combination.items()}


def _combo_from_json(raw: Mapping[str, Any]) -> Combination:
    return {int(k): int(v) for k, v in raw.items()}


@dataclass
class BatchData:
    combinations: List[Combination]
    batch_number: int
    collection_name: str
    image_size: int
    starting_number: int

    @property
    def ending_number(self) -> int:
        return self.starting_number + len(self.combinations) - 1

    def to_dict(self) -> BatchDataDict:
        return {
            "combinations": [_combo_to_json(c) for c in self.combinations],
            "batchNumber": self.batch_number,
            "collectionName": self.collection_name,
            "imageSize": self.image_size,
            "startingNumber": self.starting_number,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BatchData":
        return cls(
            combinations=[_combo_from_json(c) for c in raw.get("combinations") or []],
            batch_number=int(raw["batchNumber"]),
            collection_name=str(raw.get("collectionName") or ""),
            image_size=int(raw.get("imageSize") or DEFAULT_IMAGE_SIZE),
            starting_number=int(raw.get("startingNumber") or 1),
        )


@dataclass
class ExportSession:
    id: str
    total_count: int
    batch_size: int
    collection_name: str
    image_size: int
    use_rules: bool
    current_batch: int = 1
    total_batches: int = 1
    completed_batches: List[int] = field(default_factory=list)
    generated_combinations: List[str] = field(default_factory=list)
    status: str = "generating"
    current_batch_data: Optional[BatchData] = None
    quotas: Dict[str, int] = field(default_factory=dict)
    pair_usage: Dict[str, int] = field(default_factory=dict)
    timestamp: int = field(default_factory=_now_ms)
    auto_download: bool = False

    @property
    def is_finished(self) -> bool:
        return self.current_batch >= self.total_batches and self.current_batch in self.completed_batches

    def to_dict(self) -> ExportSessionDict:
        return {
            "id": self.id,
            "totalCount": self.total_count,
            "batchSize": self.batch_size,
            "collectionName": self.collection_name,
            "imageSize": self.image_size,
            "useRules": self.use_rules,
            "currentBatch": self.current_batch,
            "totalBatches": self.total_batches,
            "completedBatches": list(self.completed_batches),
            "generatedCombinations": list(self.generated_combinations),
            "generatedHashes": list(self.generated_combinations),
            "timestamp": self.timestamp,
            "status": self.status,
            "currentBatchData": self.current_batch_data.to_dict() if self.current_batch_data else None,
            "autoDownload": self.auto_download,
            "quotas": dict(self.quotas),
            "pairUsage": dict(self.pair_usage),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ExportSession":
        hashes = raw.get("generatedCombinations")
        if hashes is None:
            hashes = raw.get("generatedHashes") or []
        batch_raw = raw.get("currentBatchData")
        status = str(raw.get("status") or "paused")
        if status not in SESSION_STATUSES:
            status = "paused"
        return cls(
            id=str(raw["id"]),
            total_count=int(raw["totalCount"]),
            batch_size=int(raw["batchSize"]),
            collection_name=str(raw.get("collectionName") or ""),
            image_size=int(raw.get("imageSize") or DEFAULT_IMAGE_SIZE),
            use_rules=bool(raw.get("useRules", True)),
            current_batch=int(raw.get("currentBatch") or 1),
            total_batches=int(raw.get("totalBatches") or 1),
            completed_batches=[int(b) for b in raw.get("completedBatches") or []],
            generated_combinations=[str(h) for h in hashes],
            status=status,
            current_batch_data=BatchData.from_dict(batch_raw) if batch_raw else None,
            quotas={str(k): int(v) for k, v in (raw.get("quotas") or {}).items()},
            pair_usage={str(k): int(v) for k, v in (raw.get("pairUsage") or {}).items()},
            timestamp=int(raw.get("timestamp") or 0),
            auto_download=bool(raw.get("autoDownload", False)),
        )


# ----------------------------------------------------------------------------------
# Stores
# ----------------------------------------------------------------------------------

class SessionStore:
    """Key/value blob store. ``load`` returns None for missing, stale or corrupt blobs."""

    def save(self, key: str, blob: Mapping[str, Any]) -> None:
        raise NotImplementedError

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


def _is_stale(blob: Mapping[str, Any], now_ms: int) -> bool:
    try:
        stamp = int(blob.get("timestamp") or 0)
    except (TypeError, ValueError):
        return True
    return now_ms - stamp >= session_ttl_seconds() * 1000


class InMemorySessionStore(SessionStore):
    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._blobs: Dict[str, str] = {}
        self._clock = clock

    def save(self, key: str, blob: Mapping[str, Any]) -> None:
        self._blobs[key] = json.dumps(blob, ensure_ascii=False)

    def raw(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    def put_raw(self, key: str, text: str) -> None:
        self._blobs[key] = text

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        text = self._blobs.get(key)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning(f"Failed to load export session '{key}': {exc}")
            self.clear(key)
            return None
        if not isinstance(data, dict) or _is_stale(data, self._clock()):
            self.clear(key)
            return None
        return data

    def clear(self, key: str) -> None:
        self._blobs.pop(key, None)


class JsonFileSessionStore(SessionStore):
    """One JSON file per key under ``directory`` (default: SESSION_DIR)."""

    def __init__(self, directory: str | Path | None = None, clock: Callable[[], int] = _now_ms):
        self.directory = Path(directory) if directory else None
        self._clock = clock

    def path_for(self, key: str) -> Path:
        default = Path(get_session_path(key))
        if self.directory is None:
            return default
        return self.directory / default.name

    def save(self, key: str, blob: Mapping[str, Any]) -> None:
        p = self.path_for(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_suffix(p.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(blob, f, ensure_ascii=False, indent=2)
            os.replace(tmp, p)
        except OSError as exc:
            logger.error(f"Failed to save export session '{key}': {exc}")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        p = self.path_for(key)
        if not p.exists():
            return None
        try:
            with p.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(f"Failed to load export session '{key}': {exc}")
            self.clear(key)
            return None
        if not isinstance(data, dict) or _is_stale(data, self._clock()):
            self.clear(key)
            return None
        return data

    def clear(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Failed to clear export session '{key}': {exc}")


# ----------------------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------------------

class BatchSessionManager:
    """Drives a batched export and owns the generation context it mutates."""

    def __init__(
        self,
        catalog: TraitCatalog,
        rules: RuleStore,
        ctx: GenerationContext,
        store: Optional[SessionStore] = None,
        key: str = SESSION_KEY,
        yield_policy: Optional[YieldPolicy] = None,
    ):
        self.catalog = catalog
        self.rules = rules
        self.ctx = ctx
        self.store = store or JsonFileSessionStore()
        self.key = key
        self.generator = CombinationGenerator(catalog, rules, ctx, yield_policy=yield_policy)
        self.session: Optional[ExportSession] = None
        self._busy: Optional[str] = None
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def busy(self) -> bool:
        return self._busy is not None

    def _require_session(self) -> ExportSession:
        if self.session is None:
            raise NoSessionError()
        return self.session

    def _transition(self, target: str) -> None:
        session = self._require_session()
        if target not in _TRANSITIONS.get(session.status, ()):
            raise InvalidSessionTransition(session.status, target)
        session.status = target

    def _acquire(self, operation: str) -> None:
        if self._busy is not None:
            raise SessionBusyError(operation)
        self._busy = operation

    def _persist(self) -> None:
        session = self.session
        if session is None:
            return
        session.quotas = self.ctx.quota_snapshot()
        session.pair_usage = self.ctx.pair_usage_snapshot()
        session.generated_combinations = sorted(self.ctx.generated_hashes)
        session.timestamp = _now_ms()
        self.store.save(self.key, session.to_dict())

    def _end_session(self, reason: str) -> None:
        logger.warning(f"Ending export session: {reason}")
        self.store.clear(self.key)
        self.session = None

    def _generate(self, batch_number: int, progress: Optional[ProgressCallback]) -> Optional[BatchData]:
        session = self._require_session()
        self._acquire("generate")
        self._cancel = threading.Event()
        try:
            session.current_batch = batch_number
            session.current_batch_data = None
            if session.status != "generating":
                self._transition("generating")
            self._persist()

            done = (batch_number - 1) * session.batch_size
            requested = min(session.batch_size, session.total_count - done)
            try:
                result = self.generator.generate_batch(
                    requested, session.use_rules, cancel_signal=self._cancel, progress=progress
                )
            except GenerationCancelled:
                logger.info(f"Generation of batch {batch_number} cancelled")
                return None
            if self.session is not session:
                return None

            if result.shortfall:
                logger.warning(
                    "Could not generate the full batch with current rules/quotas. "
                    "Consider adjusting counts or rules."
                )
            if not result.combinations:
                self._end_session(f"batch {batch_number} produced no combinations")
                return None

            batch = BatchData(
                combinations=result.combinations,
                batch_number=batch_number,
                collection_name=session.collection_name,
                image_size=session.image_size,
                starting_number=done + 1,
            )
            session.current_batch_data = batch
            self._transition("ready")
            self._persist()
            logger.info(
                f"Batch {batch_number} ready with {len(batch.combinations)} combinations "
                f"(#{batch.starting_number}-{batch.ending_number})"
            )
            return batch
        finally:
            self._busy = None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def start_export(
        self,
        total_count: int,
        batch_size: int,
        collection_name: str,
        image_size: int = DEFAULT_IMAGE_SIZE,
        use_rules: bool = True,
        auto_download: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> Optional[BatchData]:
        """Create a session and generate its first batch."""
        if self.busy:
            raise SessionBusyError("generate")
        if not self.catalog.layers:
            raise ExportValidationError("No layers added yet")
        if int(total_count) < 1 or int(batch_size) < 1:
            raise ExportValidationError(
                "Export count and batch size must be positive",
                details={"total_count": total_count, "batch_size": batch_size},
            )

        total = int(total_count)
        possible = self.catalog.theoretical_max()
        if total > possible:
            logger.warning(
                f"Requested {total} NFTs but only {possible} unique combinations possible. Reducing to maximum possible."
            )
            total = possible

        self.ctx.reset_quotas(compute_initial_quotas(self.catalog, total) if self.catalog.any_exact_count() else {})
        self.ctx.reset_pair_usage()

        self.session = ExportSession(
            id=f"export-{_now_ms()}-{uuid.uuid4().hex[:7]}",
            total_count=total,
            batch_size=int(batch_size),
            collection_name=str(collection_name),
            image_size=int(image_size),
            use_rules=bool(use_rules),
            current_batch=1,
            total_batches=math.ceil(total / int(batch_size)),
            status="generating",
            auto_download=bool(auto_download),
        )
        return self._generate(1, progress)

    def generate_next_batch(self, progress: Optional[ProgressCallback] = None) -> Optional[BatchData]:
        """Generate the batch after the last completed one; None when the export is done."""
        session = self._require_session()
        if session.is_finished:
            logger.info(f"Export session {session.id} already completed all {session.total_batches} batches")
            return None
        if session.status != "completed":
            raise InvalidSessionTransition(session.status, "generating")
        return self._generate(session.current_batch + 1, progress)

    def begin_download(self) -> BatchData:
        session = self._require_session()
        if session.current_batch_data is None:
            raise InvalidSessionTransition(session.status, "downloading")
        self._acquire("download")
        self._cancel = threading.Event()
        try:
            self._transition("downloading")
        except InvalidSessionTransition:
            self._busy = None
            raise
        self._persist()
        return session.current_batch_data

    def complete_download(self, ok: bool) -> None:
        session = self._require_session()
        try:
            if ok:
                self._transition("completed")
                batch = session.current_batch_data
                if batch is not None and batch.batch_number not in session.completed_batches:
                    session.completed_batches.append(batch.batch_number)
                session.current_batch_data = None
            else:
                self._transition("ready")
                logger.warning(f"Download of batch {session.current_batch} failed; batch kept for retry")
            self._persist()
        finally:
            self._busy = None

    def download_current_batch(self, renderer, archiver=None):
        """Render and archive the ready batch; marks it completed or back to ready."""
        from .export import ZipArchiver, export_batch

        batch = self.begin_download()
        try:
            result = export_batch(
                batch, self.catalog, renderer, archiver or ZipArchiver(), cancel_signal=self._cancel
            )
        except GenerationCancelled:
            self._busy = None
            raise
        except Exception:
            self.complete_download(False)
            raise
        self.complete_download(True)
        return result

    def restore(self) -> Optional[ExportSession]:
        """Load a persisted session into this manager and its context."""
        if not self.catalog.layers:
            return None
        raw = self.store.load(self.key)
        if raw is None:
            return None
        try:
            session = ExportSession.from_dict(raw)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Discarding unreadable export session: {exc}")
            self.store.clear(self.key)
            return None

        if session.status in _IN_PROGRESS:
            session.status = "paused"
        self.ctx.generated_hashes.update(session.generated_combinations)
        self.ctx.load_quotas(session.quotas)
        self.ctx.load_pair_usage(session.pair_usage)
        self.session = session
        self._busy = None
        logger.info(
            f"Session restored: {session.collection_name} (Batch {session.current_batch}/{session.total_batches})"
        )
        return session

    def resume(self, progress: Optional[ProgressCallback] = None) -> Optional[BatchData]:
        session = self._require_session()
        if session.status != "paused":
            raise InvalidSessionTransition(session.status, "generating")
        if session.current_batch_data is not None:
            self._transition("ready")
            self._persist()
            return session.current_batch_data
        return self._generate(session.current_batch, progress)

    def set_auto_download(self, enabled: bool) -> None:
        session = self._require_session()
        session.auto_download = bool(enabled)
        self._persist()

    def cancel(self) -> None:
        """Abort in-flight work and drop the session; generated-hash history is kept."""
        self._cancel.set()
        self._busy = None
        self.store.clear(self.key)
        self.session = None
        self.ctx.reset_quotas()
        self.ctx.reset_pair_usage()
        logger.info("Export cancelled")

    def clear_generated_history(self) -> None:
        self.ctx.generated_hashes.clear()
        if self.session is not None:
            self._persist()

    def clear_usage_stats(self) -> None:
        self.ctx.usage_stats.reset()
