from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

VERSION_SOURCES = frozenset({"resourceVersion", "data"})
BATCH_STRATEGIES = frozenset({"global", "per-owner"})


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace whose ConfigMaps are watched. Empty watches the
            whole cluster.
        config_map_selector: Optional label selector narrowing watched ConfigMaps.
        version_source: ``resourceVersion`` tracks the API server version
            token; ``data`` tracks a hash of the ConfigMap payload.
        batch_strategy: ``global`` halves the whole eligible set, ``per-owner``
            halves each owning controller's pods independently.
        settle_seconds: Pause after batch one before health polling starts.
        poll_interval_seconds: Delay between health polls.
        ready_timeout_seconds: Health deadline measured from the first poll.
        max_concurrent_campaigns: Worker pool size for reconciliations.
    """

    namespace: str = ""
    config_map_selector: str = ""
    version_source: str = "resourceVersion"
    batch_strategy: str = "global"
    settle_seconds: float = 5.0
    poll_interval_seconds: float = 2.0
    ready_timeout_seconds: float = 60.0
    max_concurrent_campaigns: int = 4
    policy_group: str = "autoapply.io"
    policy_version: str = "v1alpha1"
    policy_plural: str = "autoapplyconfigs"
    health_port: int = 8080
    api_request_timeout_seconds: int = 30

    @property
    def batch_by_owner(self) -> bool:
        return self.batch_strategy == "per-owner"


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_seconds(
    name: str,
    default: float,
    *,
    positive: bool = False,
    env: Mapping[str, str] | None = None,
) -> float:
    """Parse a duration in seconds; fractional values are allowed.

    Zero is accepted unless *positive* is set.
    """
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number of seconds") from exc
    if positive and value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Unset variables fall back to the :class:`ControllerConfig` defaults.
    Raises :class:`ConfigError` for malformed or out-of-range values so the
    process fails fast instead of running with a half-valid setup.
    """
    values = env if env is not None else os.environ

    version_source = values.get("VERSION_SOURCE", "resourceVersion").strip()
    if version_source not in VERSION_SOURCES:
        raise ConfigError(
            f"VERSION_SOURCE must be one of {sorted(VERSION_SOURCES)}, got: {version_source!r}"
        )

    batch_strategy = values.get("BATCH_STRATEGY", "global").strip().lower()
    if batch_strategy not in BATCH_STRATEGIES:
        raise ConfigError(
            f"BATCH_STRATEGY must be one of {sorted(BATCH_STRATEGIES)}, got: {batch_strategy!r}"
        )

    policy_group = values.get("POLICY_GROUP", "autoapply.io").strip()
    policy_version = values.get("POLICY_VERSION", "v1alpha1").strip()
    policy_plural = values.get("POLICY_PLURAL", "autoapplyconfigs").strip()
    if not (policy_group and policy_version and policy_plural):
        raise ConfigError("POLICY_GROUP, POLICY_VERSION and POLICY_PLURAL must be non-empty")

    return ControllerConfig(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        config_map_selector=values.get("CONFIGMAP_SELECTOR", "").strip(),
        version_source=version_source,
        batch_strategy=batch_strategy,
        settle_seconds=env_seconds("SETTLE_SECONDS", 5.0, env=values),
        poll_interval_seconds=env_seconds(
            "POLL_INTERVAL_SECONDS", 2.0, positive=True, env=values
        ),
        ready_timeout_seconds=env_seconds("READY_TIMEOUT_SECONDS", 60.0, env=values),
        max_concurrent_campaigns=env_int(
            "MAX_CONCURRENT_CAMPAIGNS", 4, minimum=1, maximum=256, env=values
        ),
        policy_group=policy_group,
        policy_version=policy_version,
        policy_plural=policy_plural,
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        api_request_timeout_seconds=env_int(
            "API_REQUEST_TIMEOUT_SECONDS", 30, minimum=1, env=values
        ),
    )
