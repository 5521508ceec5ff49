from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from controller.src.workload import WorkloadUnit

LOGGER = logging.getLogger(__name__)

_SELECTOR_OPERATORS = frozenset({"In", "NotIn", "Exists", "DoesNotExist"})


@dataclass(frozen=True)
class SelectorRequirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        if self.operator == "NotIn":
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == "Exists":
            return self.key in labels
        return self.key not in labels


@dataclass(frozen=True)
class LabelSelector:
    """``metav1.LabelSelector`` semantics: every clause must hold; empty matches all."""

    match_labels: tuple[tuple[str, str], ...] = ()
    match_expressions: tuple[SelectorRequirement, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if any(labels.get(key) != value for key, value in self.match_labels):
            return False
        return all(expr.matches(labels) for expr in self.match_expressions)

    @classmethod
    def from_model(cls, selector: Any) -> LabelSelector:
        """Build from a ``V1LabelSelector``; raises ``ValueError`` on unknown operators."""
        match_labels = getattr(selector, "match_labels", None) or {}
        expressions = []
        for expr in getattr(selector, "match_expressions", None) or []:
            operator = getattr(expr, "operator", None)
            if operator not in _SELECTOR_OPERATORS:
                raise ValueError(f"unsupported selector operator {operator!r}")
            values = tuple(getattr(expr, "values", None) or ())
            if operator in {"In", "NotIn"} and not values:
                raise ValueError(f"selector operator {operator} requires values")
            expressions.append(SelectorRequirement(str(expr.key), operator, values))
        return cls(
            match_labels=tuple(sorted((str(k), str(v)) for k, v in match_labels.items())),
            match_expressions=tuple(expressions),
        )


@dataclass(frozen=True)
class DisruptionBudget:
    """Read-only snapshot of a PodDisruptionBudget.

    ``selector`` is ``None`` when the budget selects nothing: either no
    selector was declared or it could not be parsed.
    """

    name: str
    selector: LabelSelector | None
    allowed_disruptions: int = 0
    min_available: int | str | None = None
    current_healthy: int = 0
    expected_pods: int = 0

    def applies_to(self, unit: WorkloadUnit) -> bool:
        return self.selector is not None and self.selector.matches(unit.labels)

    @classmethod
    def from_pdb(cls, pdb: Any, logger: logging.Logger | None = None) -> DisruptionBudget:
        metadata = getattr(pdb, "metadata", None)
        spec = getattr(pdb, "spec", None)
        status = getattr(pdb, "status", None)
        name = getattr(metadata, "name", None) or "<unknown>"

        selector: LabelSelector | None = None
        raw_selector = getattr(spec, "selector", None)
        if raw_selector is not None:
            try:
                selector = LabelSelector.from_model(raw_selector)
            except ValueError as exc:
                (logger or LOGGER).warning("Ignoring PodDisruptionBudget %s: %s", name, exc)

        return cls(
            name=name,
            selector=selector,
            allowed_disruptions=int(getattr(status, "disruptions_allowed", None) or 0),
            min_available=getattr(spec, "min_available", None),
            current_healthy=int(getattr(status, "current_healthy", None) or 0),
            expected_pods=int(getattr(status, "expected_pods", None) or 0),
        )


def budgets_from_list(pdb_list: Any, logger: logging.Logger | None = None) -> list[DisruptionBudget]:
    items = getattr(pdb_list, "items", None) or []
    return [DisruptionBudget.from_pdb(pdb, logger=logger) for pdb in items]


def resolve_int_or_percent(value: int | str, total: int) -> int:
    """Resolve an IntOrString threshold against *total*.

    Integers pass through. ``"N%"`` resolves to ``ceil(N * total / 100)``,
    matching the Kubernetes round-up convention for ``minAvailable``.
    Any other string raises ``ValueError``.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid int-or-percent value {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.endswith("%"):
        raise ValueError(f"invalid int-or-percent value {value!r}: string is not a percentage")
    try:
        percent = int(text[:-1])
    except ValueError as exc:
        raise ValueError(f"invalid int-or-percent value {value!r}") from exc
    return math.ceil(percent * total / 100)


def can_remove(
    unit: WorkloadUnit,
    budgets: Iterable[DisruptionBudget],
    logger: logging.Logger | None = None,
) -> bool:
    """Return True if deleting *unit* violates none of the budgets selecting it.

    Every matching budget must admit the deletion. A budget denies when it has
    no disruptions left, or when it sets ``minAvailable`` and one fewer healthy
    pod would drop below it. Units matched by no budget are always removable.
    """
    log = logger or LOGGER
    for budget in budgets:
        if not budget.applies_to(unit):
            continue

        if budget.allowed_disruptions <= 0:
            log.debug(
                "PodDisruptionBudget %s would be violated by deleting %s "
                "(disruptionsAllowed=%d)",
                budget.name,
                unit.key,
                budget.allowed_disruptions,
            )
            return False

        if budget.min_available is None:
            continue
        try:
            min_available = resolve_int_or_percent(budget.min_available, budget.expected_pods)
        except ValueError:
            log.warning(
                "PodDisruptionBudget %s has unparseable minAvailable %r; treating as 0",
                budget.name,
                budget.min_available,
            )
            min_available = 0
        if budget.current_healthy - 1 < min_available:
            log.debug(
                "PodDisruptionBudget %s minAvailable would be violated by deleting %s "
                "(currentHealthy=%d, minAvailable=%d)",
                budget.name,
                unit.key,
                budget.current_healthy,
                min_available,
            )
            return False

    return True
