"""
Configuration management and loading.

Handles application settings for storage, generation, the resilience layer
and subscription plans.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from letter_guard.core.circuit_breaker import CircuitBreakerConfig
from letter_guard.core.orchestrator import GenerationSettings
from letter_guard.core.retry import RetryPolicy
from letter_guard.storage.db import DEFAULT_DB_PATH

DEFAULT_PLANS = {
    "one_time": 1,
    "standard_4_month": 4,
    "premium_8_month": 8,
}


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite database."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.path or not str(self.path).strip():
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class RecoveryConfig:
    """Settings for the stale generation sweep."""
    stale_after_seconds: float = 600.0

    def __post_init__(self):
        if self.stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    plans: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PLANS))
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)


_SECTION_KEYS = {
    "database": {"path"},
    "generation": {"model", "temperature", "max_tokens", "system_prompt"},
    "retry": {"max_retries", "base_delay_ms", "max_delay_ms", "backoff_multiplier", "jitter"},
    "circuit_breaker": {
        "failure_threshold", "reset_timeout_ms", "monitoring_window_ms",
        "failure_rate_threshold", "minimum_calls"
    },
    "recovery": {"stale_after_seconds"},
}


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys are
    rejected and every value is type-checked. Missing sections fall back to
    defaults.

    Args:
        path: Path to YAML configuration file (defaults only if None)

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return AppConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = set(_SECTION_KEYS) | {"plans"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    database = sections["database"]
    generation = sections["generation"]
    retry = sections["retry"]
    breaker = sections["circuit_breaker"]
    recovery = sections["recovery"]

    return AppConfig(
        database=DatabaseConfig(
            path=_get(database, "path", str, DEFAULT_DB_PATH, "database")
        ),
        generation=GenerationSettings(**_typed(generation, "generation", {
            "model": str,
            "temperature": float,
            "max_tokens": int,
            "system_prompt": str,
        })),
        retry=RetryPolicy(**_typed(retry, "retry", {
            "max_retries": int,
            "base_delay_ms": int,
            "max_delay_ms": int,
            "backoff_multiplier": float,
            "jitter": bool,
        })),
        circuit_breaker=CircuitBreakerConfig(**_typed(breaker, "circuit_breaker", {
            "failure_threshold": int,
            "reset_timeout_ms": int,
            "monitoring_window_ms": int,
            "failure_rate_threshold": float,
            "minimum_calls": int,
        })),
        plans=_parse_plans(raw_config.get("plans")),
        recovery=RecoveryConfig(**_typed(recovery, "recovery", {
            "stale_after_seconds": float,
        }))
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _coerce(value: Any, kind: Callable, key: str, path: str) -> Any:
    # bool is an int subclass; only accept real booleans for bool fields
    if kind is bool:
        if not isinstance(value, bool):
            raise ValueError(f"'{key}' in {path} must be true or false")
        return value
    if kind is str:
        if not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if kind is int and value != int(value):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return kind(value)


def _get(data: Dict, key: str, kind: Callable, default: Any, path: str) -> Any:
    if key not in data:
        return default
    return _coerce(data[key], kind, key, path)


def _typed(data: Dict, path: str, schema: Dict[str, Callable]) -> Dict[str, Any]:
    return {key: _coerce(data[key], kind, key, path) for key, kind in schema.items() if key in data}


def _parse_plans(data: Any) -> Dict[str, int]:
    """Parse and validate plan name to credit mappings.

    Args:
        data: Raw 'plans' section (None for defaults)

    Returns:
        Mapping of plan name to credits granted

    Raises:
        ValueError: If a plan name or credit count is invalid
    """
    if data is None:
        return dict(DEFAULT_PLANS)
    if not isinstance(data, dict) or not data:
        raise ValueError("'plans' must be a non-empty dictionary")

    plans = {}
    for name, credits in data.items():
        if not isinstance(name, str) or not name.strip():
            raise ValueError("plan names must be non-empty strings")
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise ValueError(f"credits for plan '{name}' must be a positive integer")
        plans[name] = credits
    return plans
