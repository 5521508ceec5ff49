from __future__ import annotations

import enum
from collections.abc import Iterator
from typing import Any, NamedTuple


class ReferenceKind(enum.Enum):
    """The closed set of places a pod spec can pull a ConfigMap from."""

    VOLUME = "volume"
    PROJECTED_VOLUME = "projected"
    ENV_FROM = "envFrom"
    ENV_KEY = "env"


class ConfigMapReference(NamedTuple):
    kind: ReferenceKind
    name: str
    # Container name for env references; volumes are pod-level.
    container: str | None = None


def _name(obj: Any) -> str | None:
    name = getattr(obj, "name", None)
    if isinstance(name, str) and name:
        return name
    return None


def _containers(spec: Any) -> Iterator[Any]:
    yield from getattr(spec, "containers", None) or []
    yield from getattr(spec, "init_containers", None) or []


def iter_config_map_references(pod: Any) -> Iterator[ConfigMapReference]:
    """Yield every ConfigMap reference declared by *pod*.

    Walks ``spec.volumes[].configMap``, ``spec.volumes[].projected.sources[].configMap``,
    and for both regular and init containers ``envFrom[].configMapRef`` and
    ``env[].valueFrom.configMapKeyRef``. Missing fields at any level are skipped.
    """
    spec = getattr(pod, "spec", None)
    if spec is None:
        return

    for volume in getattr(spec, "volumes", None) or []:
        name = _name(getattr(volume, "config_map", None))
        if name:
            yield ConfigMapReference(ReferenceKind.VOLUME, name)

        projected = getattr(volume, "projected", None)
        for source in getattr(projected, "sources", None) or []:
            name = _name(getattr(source, "config_map", None))
            if name:
                yield ConfigMapReference(ReferenceKind.PROJECTED_VOLUME, name)

    for container in _containers(spec):
        container_name = _name(container)

        for env_from in getattr(container, "env_from", None) or []:
            name = _name(getattr(env_from, "config_map_ref", None))
            if name:
                yield ConfigMapReference(ReferenceKind.ENV_FROM, name, container_name)

        for env in getattr(container, "env", None) or []:
            value_from = getattr(env, "value_from", None)
            name = _name(getattr(value_from, "config_map_key_ref", None))
            if name:
                yield ConfigMapReference(ReferenceKind.ENV_KEY, name, container_name)


def referenced_config_maps(pod: Any) -> frozenset[str]:
    return frozenset(ref.name for ref in iter_config_map_references(pod))


def uses_config_map(pod: Any, config_map_name: str) -> bool:
    """Return True if *pod* consumes the ConfigMap named *config_map_name*."""
    if not config_map_name:
        return False
    return any(ref.name == config_map_name for ref in iter_config_map_references(pod))
