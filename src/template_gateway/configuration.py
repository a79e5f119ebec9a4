from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

REQUIRED_PLATFORM_KEYS = ("hostname", "domain", "username", "app_name", "app_secret")


def _config_path() -> Path:
    override = os.environ.get("GATEWAY_CONFIG")
    if override:
        return Path(override)
    path = next((candidate for candidate in _CANDIDATE_CONFIG_PATHS if candidate.exists()), None)
    if path is None:  # pragma: no cover - fail fast in misconfigured environments
        raise FileNotFoundError("Default config.yaml could not be located; set GATEWAY_CONFIG or run from a source checkout.")
    return path


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    path = _config_path()
    if not path.exists():
        raise FileNotFoundError(f"Gateway config not found at {path}")
    return OmegaConf.load(path)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime settings by merging overrides over the YAML defaults.

    Environment interpolations are resolved here, so values exported after
    import (or loaded from .env) are picked up on every call.

    Args:
        overrides: Nested mapping with the same shape as config.yaml

    Returns:
        A resolved, struct-mode DictConfig
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=True))
    OmegaConf.set_struct(base, True)
    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    return DictConfig(merged)


def require_platform_settings(platform: DictConfig) -> None:
    missing = [key for key in REQUIRED_PLATFORM_KEYS if not platform.get(key)]
    if missing:
        raise ConfigurationError(f"Missing required Template Platform settings: {', '.join(missing)}")
