from __future__ import annotations

import enum
import json
import logging
import threading
from hashlib import sha256
from typing import Any, NamedTuple

LOGGER = logging.getLogger(__name__)


class SourceKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class Observation(enum.Enum):
    FIRST_SEEN = "first_seen"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


class VersionStore:
    """Thread-safe map of ConfigMap identity to the last observed version token.

    Reconciliations for different ConfigMaps run on different worker threads,
    so every read-modify-write goes through :meth:`swap` under one lock.
    """

    def __init__(self) -> None:
        self._versions: dict[SourceKey, str] = {}
        self._lock = threading.Lock()

    def get(self, key: SourceKey) -> str | None:
        with self._lock:
            return self._versions.get(key)

    def set(self, key: SourceKey, version: str) -> None:
        with self._lock:
            self._versions[key] = version

    def delete(self, key: SourceKey) -> bool:
        with self._lock:
            return self._versions.pop(key, None) is not None

    def swap(self, key: SourceKey, version: str) -> str | None:
        """Store *version* and return whatever was stored before, atomically."""
        with self._lock:
            previous = self._versions.get(key)
            self._versions[key] = version
            return previous

    def keys(self) -> list[SourceKey]:
        with self._lock:
            return list(self._versions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._versions)


class ChangeDetector:
    """Decides whether a ConfigMap observation should launch a restart campaign.

    The first observation of a key only records a baseline. Restarting on it
    would restart every consumer of every ConfigMap whenever the process
    starts, because all of them look new to an empty store.

    On a change the new version is stored *before* the caller launches the
    campaign, so an event arriving mid-campaign is compared against the new
    baseline.
    """

    def __init__(self, store: VersionStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or LOGGER

    def observe(self, key: SourceKey, version: str) -> Observation:
        previous = self.store.swap(key, version)
        if previous is None:
            self.logger.debug("Tracking ConfigMap %s at version %s", key, version)
            return Observation.FIRST_SEEN
        if previous == version:
            return Observation.UNCHANGED
        self.logger.info(
            "ConfigMap %s changed (version %s -> %s)", key, previous, version
        )
        return Observation.CHANGED

    def forget(self, key: SourceKey) -> None:
        if self.store.delete(key):
            self.logger.info("Stopped tracking deleted ConfigMap %s", key)


def _normalize_data(raw_data: Any) -> dict[str, str]:
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def data_hash(config_map: Any) -> str:
    """Return a SHA-256 hex digest of a ConfigMap's ``data`` and ``binaryData``.

    Unlike ``resourceVersion`` this ignores label and annotation edits that do
    not reach the consuming pods.
    """
    payload = {
        "data": _normalize_data(getattr(config_map, "data", None)),
        "binaryData": _normalize_data(getattr(config_map, "binary_data", None)),
    }
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def version_token(config_map: Any, version_source: str = "resourceVersion") -> str:
    """Return the opaque version token tracked for *config_map*."""
    if version_source == "data":
        return data_hash(config_map)
    metadata = getattr(config_map, "metadata", None)
    return str(getattr(metadata, "resource_version", None) or "")
