"""Load profile, settings and env configuration."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from jobby.log import get_logger
from jobby.models import PreferenceProfile, Weights

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
PROFILE_PATH: Path = CONFIG_DIR / "profile.yaml"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.yaml"
DATA_DIR: Path = ROOT_DIR / "data"

DEFAULT_API_BASE = "https://api.openwebninja.com/jsearch"


def _read_yaml(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must contain a mapping, got {type(data).__name__}")
    return data


def load_profile(path: Path | None = None) -> PreferenceProfile:
    data = _read_yaml(path or PROFILE_PATH)
    if data is None:
        log.warning("No profile at %s — using an empty profile", path or PROFILE_PATH)
    return PreferenceProfile.from_dict(data)


def load_weights(path: Path | None = None) -> Weights:
    """Settings are optional: every weight has a default."""
    data = _read_yaml(path or SETTINGS_PATH)
    if data is None:
        log.info("No settings file — using default weights")
        return Weights()
    return Weights.from_dict(data)


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def get_api_keys() -> list[str]:
    """JSearch credential pool: JSEARCH_API_KEYS (comma-separated) or JSEARCH_API_KEY."""
    raw = get_env("JSEARCH_API_KEYS") or get_env("JSEARCH_API_KEY")
    return [k.strip() for k in raw.split(",") if k.strip()]


def get_api_base() -> str:
    return get_env("JSEARCH_API_BASE", DEFAULT_API_BASE).rstrip("/")


def get_db_path() -> Path:
    override = get_env("JOBBY_DB_PATH")
    return Path(override) if override else DATA_DIR / "jobby.sqlite3"


def ensure_dirs() -> None:
    for d in (CONFIG_DIR, DATA_DIR):
        d.mkdir(parents=True, exist_ok=True)
