__all__ = [
    'BatchSessionManager',
    'CombinationGenerator',
    'GenerationContext',
    'Project',
    'RuleStore',
    'TraitCatalog',
    'create_combination_hash',
]


def __getattr__(name):
    # Lazy-load entry points so submodule imports stay side-effect free
    if name == 'BatchSessionManager':
        from .session import BatchSessionManager
        return BatchSessionManager
    if name in ('CombinationGenerator', 'create_combination_hash'):
        from . import generator
        return getattr(generator, name)
    if name == 'GenerationContext':
        from .context import GenerationContext
        return GenerationContext
    if name == 'Project':
        from .project import Project
        return Project
    if name == 'RuleStore':
        from .rules import RuleStore
        return RuleStore
    if name == 'TraitCatalog':
        from .catalog import TraitCatalog
        return TraitCatalog
    raise AttributeError(name)
