from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from controller.src.kube import (
    KubeClients,
    build_clients,
    delete_pod,
    list_pod_disruption_budgets,
    list_pods,
    load_kube_configuration,
    read_config_map,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_named_clients() -> None:
    with patch("controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.PolicyV1Api.return_value = SimpleNamespace(name="policy")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        clients = build_clients()

    assert isinstance(clients, KubeClients)
    assert clients.core.name == "core"
    assert clients.policy.name == "policy"
    assert clients.custom.name == "custom"


def test_delete_pod_uses_default_grace_period() -> None:
    core_api = MagicMock()

    delete_pod(core_api, "shop", "web-0", request_timeout=10)

    core_api.delete_namespaced_pod.assert_called_once_with(
        name="web-0", namespace="shop", _request_timeout=10
    )


def test_wrappers_omit_timeout_when_unset() -> None:
    core_api = MagicMock()
    policy_api = MagicMock()

    read_config_map(core_api, "shop", "app-config")
    list_pods(core_api, "shop")
    list_pod_disruption_budgets(policy_api, "shop")

    core_api.read_namespaced_config_map.assert_called_once_with(name="app-config", namespace="shop")
    core_api.list_namespaced_pod.assert_called_once_with(namespace="shop")
    policy_api.list_namespaced_pod_disruption_budget.assert_called_once_with(namespace="shop")


def test_wrappers_forward_request_timeout() -> None:
    core_api = MagicMock()
    policy_api = MagicMock()

    list_pods(core_api, "shop", request_timeout=5)
    list_pod_disruption_budgets(policy_api, "shop", request_timeout=5)

    assert core_api.list_namespaced_pod.call_args.kwargs["_request_timeout"] == 5
    assert policy_api.list_namespaced_pod_disruption_budget.call_args.kwargs["_request_timeout"] == 5
