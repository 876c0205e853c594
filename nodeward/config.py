"""TOML-based controller and provider configuration.

Loads ~/.nodeward/defaults.toml (global) and nodeward.toml (project),
merges them, and builds an immutable Settings object.

Example nodeward.toml:

    [controller]
    interval = 30
    call_timeout = 60

    [retry]
    max_retries = 5
    initial_backoff = 1.0

    [circuit_breaker]
    max_failures = 5
    reset_timeout = 60

    [logging]
    level = "DEBUG"

    [metrics]
    port = 8080

    [providers.hetzner]
    request_timeout = 20

    [providers.ovhcloud]
    endpoint = "ovh-eu"
    project_id = "..."
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from nodeward.core.exceptions import ConfigurationError
from nodeward.observability.logging import LogConfig
from nodeward.providers.registry import ProviderConfig
from nodeward.reliability import CircuitBreakerConfig, RetryConfig

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".nodeward" / "defaults.toml"
PROJECT_CONFIG_NAME = "nodeward.toml"


@dataclass(frozen=True, slots=True)
class ControllerSettings:
    """Reconcile loop settings.

    Attributes:
        interval: Seconds between passes for one pool.
        call_timeout: Deadline for one provider call, retries included.
        dead_letter_capacity: Maximum failed operations kept for operators.
        kubeconfig: Kubeconfig path. None tries in-cluster config first.
    """

    interval: float = 30.0
    call_timeout: float = 60.0
    dead_letter_capacity: int = 1000
    kubeconfig: str | None = None


@dataclass(frozen=True, slots=True)
class Settings:
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    logging: LogConfig = field(default_factory=LogConfig)
    metrics_port: int | None = None
    providers: Mapping[str, ProviderConfig] = field(default_factory=lambda: MappingProxyType({}))


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("providers", {})
    return merged


def _get_provider_map() -> dict[str, type]:
    from nodeward.providers.hetzner.config import Hetzner
    from nodeward.providers.ovhcloud.config import OVHcloud

    return {
        "hetzner": Hetzner,
        "ovhcloud": OVHcloud,
    }


def _build[T](cls: type[T], section: str, raw: RawConfig) -> T:
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{section}] section: {e}") from e


def _build_provider(name: str, raw: RawConfig) -> tuple[str, ProviderConfig]:
    raw = dict(raw)
    provider_type = raw.pop("type", name)

    provider_map = _get_provider_map()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    return provider_type, _build(cls, f"providers.{name}", raw)


def load_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    """Merged configuration as Settings.

    Providers absent from the files are still usable: their configs fall
    back to environment credentials when the pool first needs them.

    Raises:
        ConfigurationError: Unknown section keys or provider type.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    providers = dict(
        _build_provider(name, raw) for name, raw in config["providers"].items()
    )
    for name, cls in _get_provider_map().items():
        providers.setdefault(name, cls())

    retry_raw = config.get("retry", {})
    if "retryable" in retry_raw:
        raise ConfigurationError("Invalid [retry] section: retryable cannot be set from configuration")
    metrics_port = config.get("metrics", {}).get("port")
    return Settings(
        controller=_build(ControllerSettings, "controller", config.get("controller", {})),
        retry=_build(RetryConfig, "retry", retry_raw),
        circuit_breaker=_build(CircuitBreakerConfig, "circuit_breaker", config.get("circuit_breaker", {})),
        logging=_build(LogConfig, "logging", config.get("logging", {})),
        metrics_port=int(metrics_port) if metrics_port is not None else None,
        providers=MappingProxyType(providers),
    )
