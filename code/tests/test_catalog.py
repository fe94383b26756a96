from __future__ import annotations

import pytest

from exceptions import CatalogValidationError, ItemNotFoundError, LayerNotFoundError
from layer_engine.catalog import TraitCatalog


def _catalog():
    c = TraitCatalog()
    c.add_layer('Background', ['Sky', 'Sea'])
    c.add_layer('Head', [{'name': 'Red Head', 'rarity': 70}, {'name': 'Blue Head', 'rarity': 30, 'count': 4}])
    c.add_layer('Hat', ['Cap', 'Crown', 'None'])
    return c


def test_add_layer_defaults_and_ids():
    c = _catalog()
    bg = c.layers[0]
    assert [l.z_index for l in c.layers] == [0, 1, 2]
    assert all(it.rarity == pytest.approx(50.0) for it in bg.items)
    assert all(it.count == 0 for it in bg.items)
    ids = [l.id for l in c.layers] + [it.id for l in c.layers for it in l.items]
    assert len(ids) == len(set(ids))
    head = c.layers[1]
    assert head.items[1].count == 4
    assert head.count_sum() == 4


def test_add_layer_validation():
    c = TraitCatalog()
    with pytest.raises(CatalogValidationError) as e1:
        c.add_layer('  ', ['a'])
    assert e1.value.code == 'EMPTY_LAYER_NAME'
    with pytest.raises(CatalogValidationError) as e2:
        c.add_layer('Eyes', [])
    assert e2.value.code == 'NO_ITEMS'
    assert c.layers == []


def test_theoretical_max_and_lookup():
    c = _catalog()
    assert c.theoretical_max() == 2 * 2 * 3
    head = c.layers[1]
    assert c.require_item(head.id, head.items[0].id).name == 'Red Head'
    with pytest.raises(LayerNotFoundError):
        c.require_layer(9999)
    with pytest.raises(ItemNotFoundError):
        c.require_item(head.id, 9999)


def test_remove_layer_compacts_z():
    c = _catalog()
    c.remove_layer(c.layers[0].id)
    assert sorted(l.z_index for l in c.layers) == [0, 1]
    assert [l.name for l in c.layers_by_z()] == ['Head', 'Hat']


def test_move_layer_swaps_and_stops_at_edges():
    c = _catalog()
    bg, head, hat = c.layers
    assert c.move_layer(bg.id, 'up') is True
    assert (bg.z_index, head.z_index) == (1, 0)
    assert c.move_layer(hat.id, 'up') is False
    assert c.move_layer(head.id, 'down') is False
    assert sorted(l.z_index for l in c.layers) == [0, 1, 2]


def test_item_edits_clamp():
    c = _catalog()
    head = c.layers[1]
    item = head.items[0]
    c.set_item_rarity(head.id, item.id, 150)
    assert item.rarity == 100
    c.set_item_count(head.id, item.id, '7.9')
    assert item.count == 7
    c.set_item_count(head.id, item.id, -3)
    assert item.count == 0
    c.set_item_count(head.id, item.id, 'abc')
    assert item.count == 0


def test_rarity_presets_and_normalize():
    c = _catalog()
    hat = c.layers[2]
    assert c.apply_rarity_preset(hat.id, 'Common/Rare (80/20)') is True
    assert [it.rarity for it in hat.items] == [80, 20, 80]
    assert c.apply_rarity_preset(hat.id, 'Equal Distribution') is False
    assert c.normalize_rarities(hat.id) is True
    assert sum(it.rarity for it in hat.items) == pytest.approx(100.0)


def test_rarity_mode_validation():
    c = TraitCatalog()
    c.set_rarity_mode('weighted')
    assert c.rarity_mode == 'weighted'
    with pytest.raises(CatalogValidationError):
        c.set_rarity_mode('bogus')


def test_head_body_layers():
    c = TraitCatalog()
    c.add_layer('Skull', ['White Skull'])
    c.add_layer('Torso', ['White Torso'])
    head, body = c.head_body_layers()
    assert head.name == 'Skull'
    assert body.name == 'Torso'


def test_head_body_layers_never_pick_the_same_layer():
    c = TraitCatalog()
    head_body = c.add_layer('Head Body', ['Red Head Body'])
    torso = c.add_layer('Torso', ['Red Torso'])
    head, body = c.head_body_layers()
    assert head is head_body
    assert body is torso
    assert c.first_layer_matching('body') is head_body
    assert c.first_layer_matching('body', exclude_id=head_body.id) is None


def test_head_body_layers_without_body():
    c = TraitCatalog()
    c.add_layer('Head', ['Red Head'])
    head, body = c.head_body_layers()
    assert head.name == 'Head'
    assert body is None
