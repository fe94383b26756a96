from __future__ import annotations

import json

import pytest

from exceptions import ProjectExportError, ProjectImportError
from layer_engine.context import GenerationContext
from layer_engine.generator import create_combination_hash
from layer_engine.project import PROJECT_FILE_NAME, Project
from random_util import get_random


def _project(exact=False):
    p = Project(ctx=GenerationContext(rng=get_random('project-tests')))
    hats = p.catalog.add_layer('Hats', [{'name': 'Pirate Hat', 'uri': 'data:image/png;base64,AAAA'}, 'Red Cap'])
    outfits = p.catalog.add_layer('Outfits', ['Pirate Coat', 'Red Suit', 'Blue Robe'])
    bg = p.catalog.add_layer('Background', ['Sky', 'Sea', 'Dusk', 'Dawn', 'Night'])
    p.catalog.set_item_count(bg.id, bg.items[0].id, 3)
    if exact:
        p.catalog.set_exact_count_mode(bg.id, True)
    p.catalog.set_rarity_mode('weighted')
    p.rules.add_matching_rule(p.catalog, hats.id, outfits.id, 'color')
    p.rules.add_exclusion_rule(p.catalog, hats.id, bg.id, source_item_id=hats.items[1].id, target_item_id=bg.items[1].id)
    p.rules.add_manual_mapping(p.catalog, hats.id, hats.items[0].id, outfits.id, outfits.items[0].id)
    return p


def test_document_uses_camel_case_keys():
    p = _project(exact=True)
    doc = json.loads(p.dumps())
    assert set(doc) >= {
        'layers', 'traitMatchingRules', 'traitExclusionRules', 'manualMappings', 'rarityMode',
        'traitUsageStats', 'generatedCombinations', 'nextId', 'nextRuleId', 'nextExclusionId', 'nextMappingId',
    }
    layer = doc['layers'][2]
    assert layer['exactCountMode'] is True
    assert layer['zIndex'] == 2
    assert doc['layers'][0]['items'][0]['dataUrl'] == 'data:image/png;base64,AAAA'
    rule = doc['traitMatchingRules'][0]
    assert (rule['sourceLayerName'], rule['targetLayerName']) == ('Hats', 'Outfits')
    mapping = doc['manualMappings'][0]
    assert (mapping['sourceItemName'], mapping['targetItemName']) == ('Pirate Hat', 'Pirate Coat')
    exclusion = doc['traitExclusionRules'][0]
    assert exclusion['property'] is None
    assert exclusion['targetItemName'] == 'Sea'


def test_round_trip_preserves_state():
    p = _project()
    p.generator().generate_batch(4)
    p.catalog.set_exact_count_mode(p.catalog.layers[2].id, True)
    text = p.dumps()

    restored = Project.loads(text)
    assert restored.catalog.rarity_mode == 'weighted'
    assert [l.name for l in restored.catalog.layers] == ['Hats', 'Outfits', 'Background']
    assert restored.catalog.layers[2].exact_count_mode
    assert restored.catalog.layers[2].items[0].count == 3
    assert restored.ctx.generated_hashes == p.ctx.generated_hashes
    assert restored.ctx.usage_stats.snapshot() == p.ctx.usage_stats.snapshot()
    assert len(restored.rules.matching_rules) == 1
    assert restored.rules.exclusion_rules[0].is_specific_pair
    assert restored.rules.manual_mappings[0].target_item_id == p.rules.manual_mappings[0].target_item_id
    assert restored.catalog.counters == p.catalog.counters
    assert json.loads(restored.dumps()) == json.loads(text)


def test_reimported_project_never_repeats_combinations():
    p = _project()
    first = {create_combination_hash(x) for x in p.generator().generate_batch(5).combinations}

    restored = Project.loads(p.dumps(), ctx=GenerationContext(rng=get_random('project-tests')))
    second = {create_combination_hash(x) for x in restored.generator().generate_batch(5).combinations}
    assert not first & second


def test_new_ids_continue_after_import():
    p = _project()
    restored = Project.loads(p.dumps())
    layer = restored.catalog.add_layer('Eyes', ['Round'])
    existing = {l.id for l in p.catalog.layers} | {i.id for l in p.catalog.layers for i in l.items}
    assert layer.id not in existing
    assert layer.items[0].id not in existing


def test_missing_optional_fields_get_defaults():
    doc = {
        'layers': [{'id': 1, 'name': 'Hats', 'items': [{'id': 2, 'name': 'Cap'}]}],
        'traitMatchingRules': [],
        'traitExclusionRules': [],
        'manualMappings': [],
    }
    p = Project.loads(json.dumps(doc))
    assert p.catalog.rarity_mode == 'equal'
    assert p.ctx.generated_hashes == set()
    assert not p.ctx.usage_stats
    assert p.catalog.counters.next_id > 2
    assert p.catalog.layers[0].items[0].count == 0


@pytest.mark.parametrize(
    "text",
    [
        'not json at all',
        '[]',
        json.dumps({'layers': []}),
        json.dumps({'layers': 'nope', 'traitMatchingRules': [], 'traitExclusionRules': [], 'manualMappings': []}),
        json.dumps({
            'layers': [], 'traitMatchingRules': [], 'traitExclusionRules': [], 'manualMappings': [],
            'rarityMode': 'chaotic',
        }),
    ],
)
def test_malformed_documents_raise_import_error(text):
    with pytest.raises(ProjectImportError) as exc:
        Project.loads(text)
    assert exc.value.code == 'PROJECT_IMPORT'


def test_empty_project_cannot_be_exported():
    with pytest.raises(ProjectExportError):
        Project().dumps()


def test_export_and_import_files(tmp_path):
    p = _project()
    path = p.export_project()
    assert path == tmp_path / 'projects' / PROJECT_FILE_NAME
    restored = Project.import_project(path)
    assert len(restored.catalog.layers) == 3

    with pytest.raises(ProjectImportError):
        Project.import_project(tmp_path / 'missing.json')


def test_remove_layer_drops_rules_and_stats():
    p = _project()
    p.generator().generate_batch(3)
    hats = p.catalog.layers[0]
    p.remove_layer(hats.id)
    assert p.rules.matching_rules == []
    assert p.rules.exclusion_rules == []
    assert p.rules.manual_mappings == []
    assert p.ctx.usage_stats.layer(hats.id) == {}
