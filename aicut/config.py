"""Configuration loading, defaults and credential checks."""

from __future__ import annotations

import copy
import os
import re
from pathlib import Path
from typing import Any

import yaml

from aicut.errors import ConfigurationError

_DEFAULT_CONFIG = "config.yaml"

ARK_BASE_URL = "https://ark.cn-beijing.volces.com/api/v3"

DEFAULTS: dict[str, Any] = {
    "llm": {
        "api_key": "",
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o",
        "max_retries": 2,
    },
    "image": {
        "api_key": "",
        "base_url": ARK_BASE_URL,
        "model": "doubao-seedream-4-5-251128",
        "watermark": True,
        "max_retries": 2,
    },
    "video": {
        "api_key": "",
        "base_url": ARK_BASE_URL,
        "model": "doubao-seedance-1-5-pro-250106",
        "min_duration": 4,
        "max_duration": 12,
        "clamp_duration": True,
    },
    "tts": {
        "app_id": "",
        "token": "",
        "cluster": "volcano_tts",
        "url": "https://openspeech.bytedance.com/api/v1/tts",
        "default_voice": "BV001_streaming",
    },
    "polling": {
        "interval_seconds": 5,
        "max_attempts": 60,
    },
    "generation": {
        "video_concurrency": 3,
        "audio_delay_seconds": 1.0,
        "default_duration": 3,
        "aspect_ratio": "16:9",
        "image_submit_delay": 0,
    },
    "storage": {
        "db_path": "output/aicut.db",
        "media_cache_dir": "output/media_cache",
        "output_dir": "output",
    },
}

# (section, key) -> environment variable consulted when the config value is empty
ENV_OVERRIDES = {
    ("llm", "api_key"): "LLM_API_KEY",
    ("image", "api_key"): "ARK_API_KEY",
    ("video", "api_key"): "ARK_API_KEY",
    ("tts", "app_id"): "VOLC_TTS_APP_ID",
    ("tts", "token"): "VOLC_TTS_TOKEN",
}

_PLACEHOLDER = re.compile(r"^YOUR_[A-Z0-9_]*$")


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str | Path | None = None, env: dict | None = None) -> dict:
    """Load config.yaml and merge it over the defaults.

    Args:
        config_path: Path to config.yaml. Defaults to ./config.yaml.
        env: Environment mapping used for credential overrides. Defaults to ``os.environ``.

    Returns:
        Parsed config dict with every section present.

    Raises:
        FileNotFoundError: If config file doesn't exist.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    config = _merge(DEFAULTS, raw)
    apply_env_overrides(config, os.environ if env is None else env)
    config["_path"] = str(path.resolve())
    return config


def get_section(config: dict | None, name: str) -> dict:
    """One config section with defaults filled in for missing keys."""
    return {**DEFAULTS.get(name, {}), **((config or {}).get(name) or {})}


def apply_env_overrides(config: dict, env: dict) -> dict:
    """Fill empty credential values from the environment, in place."""
    for (section, key), var in ENV_OVERRIDES.items():
        current = config.get(section, {}).get(key)
        if not current and env.get(var):
            config.setdefault(section, {})[key] = env[var]
    return config


def is_placeholder(value: Any) -> bool:
    """True for empty values and ``YOUR_..._KEY`` style placeholders."""
    if not value:
        return True
    return isinstance(value, str) and bool(_PLACEHOLDER.match(value.strip()))


_REQUIRED = {
    "llm": ("api_key",),
    "image": ("api_key",),
    "video": ("api_key",),
    "tts": ("app_id", "token"),
}


def require_credentials(config: dict, *capabilities: str) -> None:
    """Check credentials for the capabilities about to be used.

    Args:
        config: Parsed config dict.
        capabilities: Any of "llm", "image", "video", "tts".

    Raises:
        ConfigurationError: If a required value is missing or still a placeholder.
    """
    missing = []
    for capability in capabilities:
        for key in _REQUIRED[capability]:
            if is_placeholder(config.get(capability, {}).get(key)):
                missing.append(f"{capability}.{key}")
    if missing:
        raise ConfigurationError(
            "Credentials not configured: " + ", ".join(missing)
            + ". Set them in config.yaml or via environment variables."
        )


def get_project_root(config: dict) -> Path:
    """Directory containing the loaded config file (cwd when unknown)."""
    path = config.get("_path")
    return Path(path).parent if path else Path.cwd()


def resolve_path(config: dict, key_path: str) -> Path:
    """Resolve a dotted config key (e.g. 'storage.db_path') relative to the project root."""
    value: Any = config
    for key in key_path.split("."):
        value = value[key]
    p = Path(value)
    if not p.is_absolute():
        p = get_project_root(config) / p
    return p
