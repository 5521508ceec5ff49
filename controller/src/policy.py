from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from kubernetes.client import ApiException, CustomObjectsApi

if TYPE_CHECKING:
    from controller.src.workload import WorkloadUnit

LOGGER = logging.getLogger(__name__)

POLICY_GROUP = "autoapply.io"
POLICY_VERSION = "v1alpha1"
POLICY_PLURAL = "autoapplyconfigs"


@dataclass(frozen=True)
class EffectivePolicy:
    """Union of every cluster-scoped ``AutoApplyConfig`` object.

    Built fresh for every campaign so an edited policy takes effect on the
    next ConfigMap change without a restart of the controller.
    """

    exclude_patterns: tuple[re.Pattern[str], ...] = ()
    exclude_namespaces: tuple[str, ...] = ()
    unsafe_mode: bool = False

    def excludes_namespace(self, namespace: str) -> bool:
        return namespace in self.exclude_namespaces


EMPTY_POLICY = EffectivePolicy()


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def merge_policies(
    objects: Iterable[Mapping[str, Any]],
    logger: logging.Logger | None = None,
) -> EffectivePolicy:
    """Merge policy objects into one :class:`EffectivePolicy`.

    Pattern and namespace lists are concatenated in object order without
    de-duplication, and ``yoloMode`` is OR-ed across objects. A pattern that
    does not compile is dropped on its own; the remaining entries still load.
    """
    log = logger or LOGGER
    patterns: list[re.Pattern[str]] = []
    namespaces: list[str] = []
    unsafe_mode = False

    for obj in objects:
        spec = obj.get("spec") if isinstance(obj, Mapping) else None
        if not isinstance(spec, Mapping):
            continue
        for raw_pattern in _string_list(spec.get("excludePods")):
            try:
                patterns.append(re.compile(raw_pattern))
            except re.error as exc:
                name = (obj.get("metadata") or {}).get("name", "<unknown>")
                log.warning(
                    "Dropping invalid excludePods pattern %r from %s: %s",
                    raw_pattern,
                    name,
                    exc,
                )
        namespaces.extend(_string_list(spec.get("excludeNamespaces")))
        if spec.get("yoloMode") is True:
            unsafe_mode = True

    return EffectivePolicy(
        exclude_patterns=tuple(patterns),
        exclude_namespaces=tuple(namespaces),
        unsafe_mode=unsafe_mode,
    )


def load_policy(
    custom_api: CustomObjectsApi,
    *,
    group: str = POLICY_GROUP,
    version: str = POLICY_VERSION,
    plural: str = POLICY_PLURAL,
    request_timeout: int | None = None,
    logger: logging.Logger | None = None,
) -> EffectivePolicy:
    """List every policy object cluster-wide and merge them.

    A failed list yields :data:`EMPTY_POLICY`: nothing excluded and safe
    batching active.
    """
    log = logger or LOGGER
    kwargs: dict[str, Any] = {}
    if request_timeout is not None:
        kwargs["_request_timeout"] = request_timeout
    try:
        response = custom_api.list_cluster_custom_object(
            group=group, version=version, plural=plural, **kwargs
        )
    except ApiException as exc:
        if exc.status == 404:
            log.debug("Policy resource %s.%s/%s is not installed", plural, group, version)
        else:
            log.exception("Failed to list %s.%s policy objects; using empty policy", plural, group)
        return EMPTY_POLICY

    items = response.get("items") if isinstance(response, Mapping) else None
    return merge_policies(items or [], logger=log)


def is_excluded(unit: WorkloadUnit, policy: EffectivePolicy) -> bool:
    """Return True if *unit*'s namespace or name is excluded by *policy*.

    Patterns are searched, not matched: ``web`` excludes ``my-web-0``. Anchor
    with ``^`` or ``$`` to restrict.
    """
    if policy.excludes_namespace(unit.namespace):
        return True
    return any(pattern.search(unit.name) for pattern in policy.exclude_patterns)
