"""Pytest configuration and sys.path adjustments for local runs."""

# Ensure package imports resolve when running tests directly
import os
import sys
import pytest

# The 'code' directory (one level up from this file)
CODE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
ROOT = os.path.dirname(CODE_DIR)

for p in (ROOT, CODE_DIR):
    if p not in sys.path:
        sys.path.insert(0, p)

from layer_engine.catalog import TraitCatalog  # noqa: E402
from layer_engine.context import GenerationContext  # noqa: E402
from layer_engine.rules import RuleStore  # noqa: E402
from random_util import get_random  # noqa: E402


@pytest.fixture(autouse=True)
def ensure_test_environment(tmp_path):
    """Point persistence at a temp dir and reset engine env knobs for every test."""
    original_env = os.environ.copy()

    os.environ['SESSION_DIR'] = str(tmp_path / 'sessions')
    os.environ['PROJECT_DIR'] = str(tmp_path / 'projects')
    for var in ('BUILTIN_RULES_ENABLED', 'SESSION_TTL_SECONDS', 'GENERATION_YIELD_EVERY', 'CONFIG_DIR'):
        os.environ.pop(var, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def ctx():
    return GenerationContext(rng=get_random('layer-engine-tests'))


@pytest.fixture
def rules():
    return RuleStore()


@pytest.fixture
def head_body_catalog():
    catalog = TraitCatalog()
    catalog.add_layer('Head', [{'name': 'Red Head', 'rarity': 50}, {'name': 'Blue Head', 'rarity': 50}])
    catalog.add_layer('Body', ['Red Body', 'Blue Body'])
    return catalog
