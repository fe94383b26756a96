from __future__ import annotations

import os
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _env_dir(var: str, default: str) -> str:
    try:
        base = os.getenv(var)
        base = base.strip() if isinstance(base, str) else None
        return base or default
    except Exception:
        return default


def config_dir() -> str:
    """Return the directory holding engine YAML configuration.

    Defaults to <repo>/config. Override with CONFIG_DIR for tests or advanced setups.
    """
    return _env_dir("CONFIG_DIR", str(_PROJECT_ROOT / "config"))


def session_dir() -> str:
    """Return the directory where export session blobs are persisted.

    Defaults to 'sessions'. Override with SESSION_DIR.
    """
    return _env_dir("SESSION_DIR", "sessions")


def project_dir() -> str:
    """Return the directory used for project export/import documents.

    Defaults to 'projects'. Override with PROJECT_DIR.
    """
    return _env_dir("PROJECT_DIR", "projects")


def get_builtin_rules_path() -> str:
    """Get the path to the built-in heuristic rules file.

    Returns:
        Path to config/builtin_rules.yml
    """
    return os.path.join(config_dir(), "builtin_rules.yml")


def get_session_path(key: str) -> str:
    """Get the path of a persisted session blob.

    Args:
        key: Session store key (e.g., 'nft-export-session')

    Returns:
        Path to sessions/<key>.json
    """
    safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
    return os.path.join(session_dir(), f"{safe}.json")
