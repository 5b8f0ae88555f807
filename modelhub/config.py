"""
Typed configuration model, precedence-based loader, and the settings store.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile overlay < env vars < CLI flags

The ``SettingsStore`` holds the live configuration for a running
application and notifies subscribers whenever it changes.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable

import yaml

from modelhub.events import Observable, Subscription
from modelhub.llm.errors import ApplicationShutdown

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class OllamaSettings:
    api_url: str = "http://localhost:11434"
    low_speed_timeout_seconds: float | None = None
    # Seconds as an int (-1 keeps the model loaded), or a duration such as "5m".
    keep_alive: int | str = -1
    max_concurrent_requests: int = 4


@dataclass
class OpenAISettings:
    api_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    available_models: list[dict] = field(default_factory=lambda: [
        {"name": "gpt-4o", "max_tokens": 128_000},
        {"name": "gpt-4o-mini", "max_tokens": 128_000},
    ])
    low_speed_timeout_seconds: float | None = None
    max_concurrent_requests: int = 4


@dataclass
class LoggingConfig:
    level: str = "WARNING"


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ModelhubConfig:
    ollama: OllamaSettings = field(default_factory=OllamaSettings)
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

def parse_keep_alive(text: str) -> int | str:
    """Numbers become seconds; anything else is passed on as a duration."""
    try:
        return int(text)
    except ValueError:
        return text


# Variable name -> (setting path, parser for the string value).
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "MODELHUB_OLLAMA_API_URL": ("ollama.api_url", str),
    "MODELHUB_OLLAMA_LOW_SPEED_TIMEOUT": ("ollama.low_speed_timeout_seconds", float),
    "MODELHUB_OLLAMA_KEEP_ALIVE": ("ollama.keep_alive", parse_keep_alive),
    "MODELHUB_OLLAMA_MAX_CONCURRENT": ("ollama.max_concurrent_requests", int),
    "MODELHUB_OPENAI_API_URL": ("openai.api_url", str),
    "MODELHUB_OPENAI_API_KEY_ENV": ("openai.api_key_env", str),
    "MODELHUB_OPENAI_LOW_SPEED_TIMEOUT": ("openai.low_speed_timeout_seconds", float),
    "MODELHUB_OPENAI_MAX_CONCURRENT": ("openai.max_concurrent_requests", int),
    "MODELHUB_LOG_LEVEL": ("logging.level", str),
}


def set_setting(config: ModelhubConfig, path: str, value: Any) -> None:
    """
    Assign *value* to the setting named by a dotted *path*
    (``"ollama.api_url"``).  Raises ``AttributeError`` for unknown names.
    """
    *sections, name = path.split(".")
    target: Any = config
    for section in sections:
        target = getattr(target, section)
    if not hasattr(target, name):
        raise AttributeError(f"Unknown setting: {path}")
    setattr(target, name, value)


def _merged(lower: dict, upper: dict) -> dict:
    # Nested dicts merge key by key; anything else in *upper* wins.
    result = dict(lower)
    for key, value in upper.items():
        below = result.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            value = _merged(below, value)
        result[key] = value
    return result


def _section(cls: type, raw: dict) -> Any:
    known = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in raw.items() if key in known})


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ModelhubConfig:
    """
    Build the effective configuration.

    Parameters
    ----------
    config_path:
        YAML file to read.  A missing file is treated as empty.
    profile:
        Name of an entry under ``profiles:`` in the file whose contents are
        merged over the top-level values.  Unknown names are ignored.
    cli_overrides:
        Dotted setting path -> value, applied last.

    Unknown keys in the file are ignored.
    """
    raw = _read_yaml(Path(config_path).expanduser()) if config_path is not None else {}
    profiles = raw.get("profiles") or {}
    if profile and profiles.get(profile):
        raw = _merged(raw, profiles[profile])

    config = ModelhubConfig(
        ollama=_section(OllamaSettings, raw.get("ollama") or {}),
        openai=_section(OpenAISettings, raw.get("openai") or {}),
        logging=_section(LoggingConfig, raw.get("logging") or {}),
        profiles=profiles,
    )

    for variable, (path, kind) in ENV_OVERRIDES.items():
        text = os.environ.get(variable)
        if text is not None:
            set_setting(config, path, kind(text))

    for path, value in (cli_overrides or {}).items():
        set_setting(config, path, value)

    return config


# ---------------------------------------------------------------------------
# Live settings
# ---------------------------------------------------------------------------

class SettingsStore:
    """
    The application's current configuration plus change notification.

    Every change swaps in a new ``ModelhubConfig`` object; a config that
    a reader already holds is never mutated.  Subscribers are called with
    ``(old, new)`` after the swap.
    """

    def __init__(self, config: ModelhubConfig | None = None) -> None:
        self._config = config or ModelhubConfig()
        self._changes = Observable()
        self._closed = False

    @property
    def config(self) -> ModelhubConfig:
        """
        Return the current configuration.

        Raises ``ApplicationShutdown`` once the store has been closed.
        """
        if self._closed:
            raise ApplicationShutdown("Settings are no longer available")
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    def update(self, dotpath: str, value: Any) -> None:
        """Change one setting using dot notation (e.g. ``'ollama.api_url'``)."""
        new = copy.deepcopy(self.config)
        set_setting(new, dotpath, value)
        self.replace(new)

    def replace(self, config: ModelhubConfig) -> None:
        old = self.config
        self._config = config
        logger.debug("Settings changed")
        self._changes.notify(old, config)

    def subscribe(
        self,
        callback: Callable[[ModelhubConfig, ModelhubConfig], Any],
    ) -> Subscription:
        return self._changes.subscribe(callback)

    def close(self) -> None:
        """Mark the application as shutting down."""
        self._closed = True
