"""YAML configuration loader for merge targets.

Lets a target be declared in a YAML file instead of Python code.

Example YAML (tags.yaml):
    engine:
      target: movielens.tags
      key_attributes: [user_id, movie_id, tag]
      tracked_attributes: [tagged_at]
      deletion_policy: close
      scope_predicate:
        lookback: 30d

    store:
      type: duckdb
      path: ./warehouse/tags.duckdb

Usage:
    # Command line
    historian run ./tags.yaml --batch ./extracts/tags.csv --kind full

    # Python API
    from historian.lib.config_loader import load_engine_config
    loaded = load_engine_config("./tags.yaml")
    store = loaded.build_store()
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from historian.lib.config import DeletionPolicy, EngineConfig, ScopePredicate
from historian.lib.env import expand_options, load_env_file
from historian.lib.errors import ConfigurationError
from historian.lib.resilience import RetryConfig
from historian.lib.storage import MergeStore, get_store

logger = logging.getLogger(__name__)

__all__ = [
    "LoadedConfig",
    "YAMLConfigError",
    "load_engine_config",
    "parse_lookback",
    "validate_yaml_config",
]


class YAMLConfigError(ConfigurationError):
    """Error in YAML target configuration."""

    pass


# Mapping from YAML string values to enum types
DELETION_POLICY_MAP = {
    "none": DeletionPolicy.NONE,
    "ignore": DeletionPolicy.NONE,
    "close": DeletionPolicy.CLOSE,
    "hard_delete": DeletionPolicy.CLOSE,
    "tombstone": DeletionPolicy.TOMBSTONE,
    "soft_delete": DeletionPolicy.TOMBSTONE,
}

STORE_TYPES = ("memory", "duckdb")

_LOOKBACK_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$", re.IGNORECASE)
_LOOKBACK_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


@dataclass
class LoadedConfig:
    """Everything a YAML file declares for one target."""

    engine: EngineConfig
    store_type: str = "memory"
    store_path: Optional[str] = None
    store_options: Dict[str, Any] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig.default)
    lock_timeout: float = 0.0
    config_path: Optional[Path] = None

    def build_store(self) -> MergeStore:
        """Open the store this configuration points at."""
        return get_store(self.store_type, path=self.store_path, **self.store_options)


def _resolve_path(path: str, config_dir: Path) -> str:
    """Resolve relative paths based on config file location.

    Paths starting with "./" or "../" are resolved relative to the YAML file.
    Absolute paths and bare names are unchanged.
    """
    if not path or os.path.isabs(path):
        return path

    if path.startswith("./") or path.startswith("../"):
        return str(config_dir / path)

    return path


def parse_lookback(value: Any) -> timedelta:
    """Parse a lookback window: seconds as a number, or "30d", "12h", "90m", "2w".

    Raises:
        YAMLConfigError: If the value is not a recognizable duration
    """
    if isinstance(value, bool):
        raise YAMLConfigError(
            f"Invalid lookback {value!r}", field="scope_predicate.lookback", value=value
        )
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    match = _LOOKBACK_PATTERN.match(str(value))
    if not match:
        raise YAMLConfigError(
            f"Invalid lookback '{value}'",
            field="scope_predicate.lookback",
            value=value,
            suggestion="Use seconds or a number with a unit: 45s, 90m, 12h, 30d, 2w",
        )
    amount, unit = match.groups()
    return timedelta(**{_LOOKBACK_UNITS[unit.lower()]: float(amount)})


def _as_list(config: Dict[str, Any], name: str) -> List[str]:
    value = config.get(name) or []
    if isinstance(value, str):
        value = [value]
    return [str(v) for v in value]


def _load_scope(config: Any) -> Optional[ScopePredicate]:
    if config is None:
        return None
    if isinstance(config, str):
        return ScopePredicate(expression=config)
    if not isinstance(config, dict):
        raise YAMLConfigError(
            "engine.scope_predicate must be an expression string or a mapping",
            field="scope_predicate",
            value=config,
        )

    lookback = config.get("lookback")
    return ScopePredicate(
        expression=config.get("expression"),
        lookback=parse_lookback(lookback) if lookback is not None else None,
    )


def load_engine_from_yaml(config: Dict[str, Any]) -> EngineConfig:
    """Create an EngineConfig from the 'engine' section.

    Raises:
        YAMLConfigError: If a value can't be mapped
        ConfigurationError: If the resulting configuration is invalid
    """
    if "key_attributes" not in config:
        raise YAMLConfigError("engine.key_attributes is required", field="key_attributes")
    if "tracked_attributes" not in config:
        raise YAMLConfigError("engine.tracked_attributes is required", field="tracked_attributes")

    deletion_policy = DeletionPolicy.NONE
    if "deletion_policy" in config:
        policy_str = str(config["deletion_policy"]).lower()
        if policy_str not in DELETION_POLICY_MAP:
            valid = ", ".join(sorted(DELETION_POLICY_MAP.keys()))
            raise YAMLConfigError(
                f"Invalid deletion_policy '{config['deletion_policy']}'. "
                f"Valid options: {valid}",
                field="deletion_policy",
                value=config["deletion_policy"],
            )
        deletion_policy = DELETION_POLICY_MAP[policy_str]

    return EngineConfig(
        key_attributes=_as_list(config, "key_attributes"),
        tracked_attributes=_as_list(config, "tracked_attributes"),
        passthrough_attributes=_as_list(config, "passthrough_attributes"),
        deletion_policy=deletion_policy,
        scope_predicate=_load_scope(config.get("scope_predicate")),
        strict=bool(config.get("strict", False)),
        allow_key_overlap=bool(config.get("allow_key_overlap", False)),
        target=str(config.get("target", "default")),
        history_table=str(config.get("history_table", "history")),
        current_table=str(config.get("current_table", "current_state")),
        workers=int(config.get("workers", 1)),
    )


def load_engine_config(
    config_path: Union[str, Path],
    *,
    env_file: Optional[Union[str, Path]] = None,
) -> LoadedConfig:
    """Load a target definition from a YAML configuration file.

    ``${VAR}`` references are expanded from the environment after loading
    an optional .env file.

    Args:
        config_path: Path to the YAML configuration file
        env_file: Optional .env file to load first

    Returns:
        LoadedConfig with the engine config and store settings

    Raises:
        YAMLConfigError: If the YAML is malformed or a value can't be mapped
        ConfigurationError: If the engine configuration is invalid
        FileNotFoundError: If the config file doesn't exist
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    if env_file is not None:
        load_env_file(env_file)

    config_dir = config_path.parent.resolve()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise YAMLConfigError(f"Invalid YAML syntax: {e}") from e

    if not raw:
        raise YAMLConfigError("Empty configuration file")
    if not isinstance(raw, dict) or "engine" not in raw:
        raise YAMLConfigError("Configuration must have an 'engine' section")

    raw = expand_options(raw)
    engine = load_engine_from_yaml(raw["engine"] or {})

    store_cfg = dict(raw.get("store") or {})
    store_type = str(store_cfg.pop("type", "memory")).lower()
    if store_type not in STORE_TYPES:
        raise YAMLConfigError(
            f"Invalid store.type '{store_type}'. Valid options: {', '.join(STORE_TYPES)}",
            field="store.type",
            value=store_type,
        )
    store_path = store_cfg.pop("path", None)
    if store_path:
        store_path = _resolve_path(str(store_path), config_dir)

    retry_cfg = raw.get("retry") or {}
    retry = RetryConfig(
        max_attempts=int(retry_cfg.get("max_attempts", 3)),
        backoff_seconds=float(retry_cfg.get("backoff_seconds", 1.0)),
        exponential=bool(retry_cfg.get("exponential", True)),
        jitter=bool(retry_cfg.get("jitter", True)),
    )

    lock_timeout = float((raw.get("locks") or {}).get("timeout", 0.0))

    logger.debug("Loaded target %s from %s", engine.target, config_path)
    return LoadedConfig(
        engine=engine,
        store_type=store_type,
        store_path=store_path,
        store_options=store_cfg,
        retry=retry,
        lock_timeout=lock_timeout,
        config_path=config_path,
    )


def validate_yaml_config(config_path: Union[str, Path]) -> List[str]:
    """Validate a YAML configuration file without opening the store.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: List[str] = []

    try:
        load_engine_config(config_path)
    except ConfigurationError as e:
        errors.extend(e.issues or [e.message])
    except FileNotFoundError as e:
        errors.append(str(e))
    except ValueError as e:
        errors.append(str(e))

    return errors
