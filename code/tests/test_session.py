from __future__ import annotations

import json
import os

import pytest

from exceptions import (
    ExportValidationError,
    InvalidSessionTransition,
    NoSessionError,
    SessionBusyError,
)
from layer_engine.catalog import TraitCatalog
from layer_engine.context import GenerationContext
from layer_engine.generator import create_combination_hash
from layer_engine.rules import RuleStore
from layer_engine.session import (
    BatchData,
    BatchSessionManager,
    ExportSession,
    InMemorySessionStore,
    JsonFileSessionStore,
)
from random_util import get_random
from settings import SESSION_KEY


class Crash(Exception):
    pass


def _catalog(exact=False):
    c = TraitCatalog()
    eyes = c.add_layer('Eyes', [{'name': 'A', 'count': 6}, {'name': 'B', 'count': 14}])
    if exact:
        c.set_exact_count_mode(eyes.id, True)
    for n in range(3):
        c.add_layer(f'Extra{n}', [f'x{n}-{i}' for i in range(10)])
    return c


def _manager(catalog, store, seed='session-tests'):
    ctx = GenerationContext(rng=get_random(seed))
    return BatchSessionManager(catalog, RuleStore(), ctx, store=store)


def test_start_export_validation():
    store = InMemorySessionStore()
    mgr = _manager(TraitCatalog(), store)
    with pytest.raises(ExportValidationError):
        mgr.start_export(10, 5, 'Empty')
    mgr = _manager(_catalog(), store)
    with pytest.raises(ExportValidationError):
        mgr.start_export(0, 5, 'Zero')
    with pytest.raises(ExportValidationError):
        mgr.start_export(10, 0, 'Zero')
    assert mgr.session is None
    assert store.raw(SESSION_KEY) is None


def test_start_export_generates_first_batch():
    store = InMemorySessionStore()
    mgr = _manager(_catalog(), store)
    batch = mgr.start_export(25, 10, 'Collection')
    assert isinstance(batch, BatchData)
    assert len(batch.combinations) == 10
    assert (batch.starting_number, batch.ending_number) == (1, 10)
    session = mgr.session
    assert session.status == 'ready'
    assert session.total_batches == 3
    assert session.id.startswith('export-')
    assert not mgr.busy

    saved = json.loads(store.raw(SESSION_KEY))
    assert saved['status'] == 'ready'
    assert saved['currentBatchData']['batchNumber'] == 1
    assert len(saved['generatedCombinations']) == 10


def test_total_clamped_to_theoretical_max():
    c = TraitCatalog()
    c.add_layer('Background', ['a', 'b'])
    c.add_layer('Eyes', ['c', 'd', 'e'])
    mgr = _manager(c, InMemorySessionStore())
    mgr.start_export(50, 100, 'Small')
    assert mgr.session.total_count == 6
    assert mgr.session.total_batches == 1


def test_full_export_walks_every_batch():
    mgr = _manager(_catalog(exact=True), InMemorySessionStore())
    batch = mgr.start_export(20, 8, 'Walk')
    sizes = []
    seen = set()
    while batch is not None:
        sizes.append(len(batch.combinations))
        seen.update(create_combination_hash(x) for x in batch.combinations)
        mgr.begin_download()
        mgr.complete_download(True)
        batch = mgr.generate_next_batch()
    assert sizes == [8, 8, 4]
    assert len(seen) == 20
    assert mgr.session.completed_batches == [1, 2, 3]
    assert mgr.session.is_finished
    assert all(n == 0 for n in mgr.ctx.quotas.values())


def test_transitions_are_enforced():
    mgr = _manager(_catalog(), InMemorySessionStore())
    with pytest.raises(NoSessionError):
        mgr.generate_next_batch()
    mgr.start_export(20, 10, 'Rules')
    with pytest.raises(InvalidSessionTransition):
        mgr.generate_next_batch()
    with pytest.raises(InvalidSessionTransition):
        mgr.complete_download(True)
    mgr.begin_download()
    with pytest.raises(SessionBusyError):
        mgr.begin_download()
    mgr.complete_download(False)
    assert mgr.session.status == 'ready'
    assert mgr.session.current_batch_data is not None
    assert not mgr.busy


def test_generation_rejected_while_busy():
    mgr = _manager(_catalog(), InMemorySessionStore())

    def reenter(produced, size, attempts):
        mgr.start_export(10, 5, 'Again')

    with pytest.raises(SessionBusyError):
        mgr.start_export(10, 5, 'First', progress=reenter)
    assert not mgr.busy


def test_cancel_drops_session_but_keeps_hashes():
    store = InMemorySessionStore()
    mgr = _manager(_catalog(exact=True), store)
    batch = mgr.start_export(20, 10, 'Cancel')
    hashes = {create_combination_hash(x) for x in batch.combinations}
    mgr.cancel()
    assert mgr.session is None
    assert store.raw(SESSION_KEY) is None
    assert hashes <= mgr.ctx.generated_hashes
    assert mgr.ctx.quotas == {}


def test_cancel_during_generation_returns_none():
    store = InMemorySessionStore()
    mgr = _manager(_catalog(), store)

    def stop(produced, size, attempts):
        if produced == 2:
            mgr.cancel()

    assert mgr.start_export(20, 10, 'Stop', progress=stop) is None
    assert mgr.session is None
    assert not mgr.busy


def test_crash_then_restore_and_resume():
    store = InMemorySessionStore()
    catalog = _catalog(exact=True)
    mgr = _manager(catalog, store)
    first = mgr.start_export(20, 10, 'Crashy')
    mgr.begin_download()
    mgr.complete_download(True)
    quotas_after_first = mgr.ctx.quota_snapshot()
    first_hashes = {create_combination_hash(x) for x in first.combinations}

    def boom(produced, size, attempts):
        raise Crash()

    with pytest.raises(Crash):
        mgr.generate_next_batch(progress=boom)
    assert not mgr.busy

    fresh = _manager(catalog, store, seed='after-crash')
    session = fresh.restore()
    assert session is not None
    assert session.status == 'paused'
    assert session.completed_batches == [1]
    assert session.current_batch == 2
    assert fresh.ctx.quota_snapshot() == quotas_after_first
    assert fresh.ctx.generated_hashes == first_hashes

    batch = fresh.resume()
    assert batch.batch_number == 2
    assert len(batch.combinations) == 10
    assert batch.starting_number == 11
    second_hashes = {create_combination_hash(x) for x in batch.combinations}
    assert not second_hashes & first_hashes
    assert fresh.session.status == 'ready'


def test_restore_ready_batch_resumes_without_regenerating():
    store = InMemorySessionStore()
    catalog = _catalog()
    mgr = _manager(catalog, store)
    first = mgr.start_export(20, 10, 'Ready')
    mgr.begin_download()

    fresh = _manager(catalog, store)
    session = fresh.restore()
    assert session.status == 'paused'
    batch = fresh.resume()
    assert [create_combination_hash(x) for x in batch.combinations] == [
        create_combination_hash(x) for x in first.combinations
    ]
    assert fresh.session.status == 'ready'


def test_restore_requires_layers():
    store = InMemorySessionStore()
    mgr = _manager(_catalog(), store)
    mgr.start_export(20, 10, 'NoLayers')
    assert _manager(TraitCatalog(), store).restore() is None


def test_stale_session_is_discarded():
    os.environ['SESSION_TTL_SECONDS'] = '60'
    now = [0]
    store = InMemorySessionStore(clock=lambda: now[0])
    catalog = _catalog()
    mgr = _manager(catalog, store)
    mgr.start_export(20, 10, 'Stale')
    stamp = json.loads(store.raw(SESSION_KEY))['timestamp']

    now[0] = stamp + 59_000
    assert _manager(catalog, store).restore() is not None
    now[0] = stamp + 60_000
    assert _manager(catalog, store).restore() is None
    assert store.raw(SESSION_KEY) is None


def test_corrupt_blob_is_cleared():
    store = InMemorySessionStore()
    store.put_raw(SESSION_KEY, '{not json')
    assert _manager(_catalog(), store).restore() is None
    assert store.raw(SESSION_KEY) is None


@pytest.mark.parametrize(
    "extra",
    [
        {'currentBatchData': {'batchNumber': 1, 'combinations': [1]}},
        {'quotas': [1, 2]},
        {'pairUsage': 'R|1|2|3|4'},
    ],
)
def test_wrong_shape_blob_is_cleared(extra):
    store = InMemorySessionStore(clock=lambda: 0)
    blob = {
        'id': 'export-1-abc',
        'totalCount': 10,
        'batchSize': 5,
        'timestamp': 0,
        'status': 'ready',
        **extra,
    }
    store.put_raw(SESSION_KEY, json.dumps(blob))
    mgr = _manager(_catalog(), store)
    assert mgr.restore() is None
    assert mgr.session is None
    assert store.raw(SESSION_KEY) is None


def test_legacy_hash_key_is_accepted():
    session = ExportSession.from_dict({
        'id': 'export-1-abc',
        'totalCount': 10,
        'batchSize': 5,
        'generatedHashes': ['1:2|3:4'],
        'status': 'ready',
    })
    assert session.generated_combinations == ['1:2|3:4']
    assert session.current_batch == 1
    saved = session.to_dict()
    assert saved['generatedCombinations'] == ['1:2|3:4']
    assert saved['generatedHashes'] == ['1:2|3:4']


def test_zero_batch_ends_session():
    c = TraitCatalog()
    eyes = c.add_layer('Eyes', [{'name': 'A', 'count': 0}, {'name': 'B', 'count': 0}])
    c.set_exact_count_mode(eyes.id, True)
    store = InMemorySessionStore()
    mgr = _manager(c, store)
    assert mgr.start_export(2, 2, 'Nothing') is None
    assert mgr.session is None
    assert store.raw(SESSION_KEY) is None


def test_json_file_store_round_trip(tmp_path):
    store = JsonFileSessionStore(tmp_path / 'blobs')
    catalog = _catalog()
    mgr = _manager(catalog, store)
    mgr.start_export(20, 10, 'Files')
    path = store.path_for(SESSION_KEY)
    assert path.exists()
    assert path.parent == tmp_path / 'blobs'

    restored = _manager(catalog, store).restore()
    assert restored.collection_name == 'Files'
    assert restored.current_batch_data is not None

    path.write_text('garbage', encoding='utf-8')
    assert store.load(SESSION_KEY) is None
    assert not path.exists()


def test_json_file_store_clears_undecodable_bytes(tmp_path):
    store = JsonFileSessionStore(tmp_path / 'blobs')
    path = store.path_for(SESSION_KEY)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'{"id": "\xff\xfe"}')
    assert _manager(_catalog(), store).restore() is None
    assert not path.exists()


def test_json_file_store_defaults_to_session_dir(tmp_path):
    store = JsonFileSessionStore()
    store.save('k', {'timestamp': 1})
    assert store.path_for('k').parent == tmp_path / 'sessions'


def test_auto_download_and_history_helpers():
    store = InMemorySessionStore()
    mgr = _manager(_catalog(), store)
    mgr.start_export(20, 10, 'Helpers')
    mgr.set_auto_download(True)
    assert json.loads(store.raw(SESSION_KEY))['autoDownload'] is True
    mgr.clear_generated_history()
    assert mgr.ctx.generated_hashes == set()
    assert json.loads(store.raw(SESSION_KEY))['generatedCombinations'] == []
    mgr.clear_usage_stats()
    assert not mgr.ctx.usage_stats
