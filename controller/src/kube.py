from __future__ import annotations

import logging
from typing import Any, NamedTuple

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi, PolicyV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


class KubeClients(NamedTuple):
    core: CoreV1Api
    policy: PolicyV1Api
    custom: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the controller needs using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        policy=client.PolicyV1Api(),
        custom=client.CustomObjectsApi(),
    )


def _timeout_kwargs(request_timeout: int | None) -> dict[str, Any]:
    if request_timeout is None:
        return {}
    return {"_request_timeout": request_timeout}


def read_config_map(
    core_api: CoreV1Api, namespace: str, name: str, request_timeout: int | None = None
) -> Any:
    return core_api.read_namespaced_config_map(
        name=name, namespace=namespace, **_timeout_kwargs(request_timeout)
    )


def list_pods(core_api: CoreV1Api, namespace: str, request_timeout: int | None = None) -> Any:
    return core_api.list_namespaced_pod(namespace=namespace, **_timeout_kwargs(request_timeout))


def list_pod_disruption_budgets(
    policy_api: PolicyV1Api, namespace: str, request_timeout: int | None = None
) -> Any:
    return policy_api.list_namespaced_pod_disruption_budget(
        namespace=namespace, **_timeout_kwargs(request_timeout)
    )


def delete_pod(
    core_api: CoreV1Api, namespace: str, name: str, request_timeout: int | None = None
) -> None:
    """Delete a pod so its owning controller schedules a replacement.

    Same effect as ``kubectl delete pod``: the pod's default grace period
    applies and the ReplicaSet/StatefulSet controller recreates it.
    """
    core_api.delete_namespaced_pod(
        name=name, namespace=namespace, **_timeout_kwargs(request_timeout)
    )
