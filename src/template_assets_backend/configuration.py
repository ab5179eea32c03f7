"""
Configuration loading for the template assets backend.

Defaults live in ``config/config.yaml`` next to this module. Environment
variables reach the config through ``${oc.env:...}`` interpolations, and a
``.env`` file is loaded first so local development needs no exported shell
variables.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; ensure the package data was installed.")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Dict[str, Any] | None = None) -> DictConfig:
    """
    Merge overrides onto the defaults.

    The base is put in struct mode first, so an override naming a key that
    does not exist in ``config.yaml`` raises instead of being silently kept.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    return merged


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    """Process-wide resolved configuration."""
    return make_runtime_config()
