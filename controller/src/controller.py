from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi, PolicyV1Api

from controller.src.campaign import BatchScheduler, CampaignResult
from controller.src.config import ControllerConfig
from controller.src.disruption import DisruptionBudget, budgets_from_list
from controller.src.kube import (
    KubeClients,
    list_pod_disruption_budgets,
    list_pods,
    read_config_map,
)
from controller.src.metrics import METRICS
from controller.src.policy import load_policy
from controller.src.readiness import ReadinessOracle
from controller.src.versions import (
    ChangeDetector,
    Observation,
    SourceKey,
    VersionStore,
    version_token,
)
from controller.src.workload import select_candidates, units_from_pod_list


class ConfigMapRestartController:
    """Watches ConfigMaps and restarts the pods that consume them when they change.

    Every ADDED/MODIFIED watch event becomes a reconciliation on a worker
    thread: the ConfigMap is re-read, its version token is compared with the
    last one seen, and a change launches a :class:`BatchScheduler` campaign
    against the pods in the same namespace that reference it. Reconciliations
    of different ConfigMaps run concurrently, bounded by the worker pool; one
    ConfigMap is reconciled by at most one worker at a time.

    The initial list seeds the :class:`ChangeDetector` without restarting
    anything, so a controller restart never triggers a restart wave.

    Key internal state:
        ``detector``
            Owns the per-ConfigMap version store shared by all workers.
        ``_campaign_stop``
            Set on shutdown; every campaign wait and deletion checks it.
        ``_futures``
            Reconciliations submitted to the pool and not yet finished, so
            queued work can be dropped on shutdown.
        ``_in_flight`` / ``_dirty``
            Keys queued or running, and keys that changed again meanwhile and
            get one more reconciliation when the current one finishes.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        policy_api: PolicyV1Api,
        custom_api: CustomObjectsApi,
        config: ControllerConfig,
        *,
        detector: ChangeDetector | None = None,
        scheduler: BatchScheduler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.policy_api = policy_api
        self.custom_api = custom_api
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.request_timeout = config.api_request_timeout_seconds

        self.detector = detector or ChangeDetector(VersionStore())
        self.scheduler = scheduler or BatchScheduler(
            core_api=core_api,
            oracle=ReadinessOracle(core_api, request_timeout=self.request_timeout),
            settle_seconds=config.settle_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            ready_timeout_seconds=config.ready_timeout_seconds,
            batch_by_owner=config.batch_by_owner,
            request_timeout=self.request_timeout,
        )

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._campaign_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

        self._executor: ThreadPoolExecutor | None = None
        self._futures: set[Future[CampaignResult | None]] = set()
        self._in_flight: set[SourceKey] = set()
        self._dirty: set[SourceKey] = set()
        self._pool_lock = threading.Lock()
        self._active_campaigns = 0

    @property
    def active_campaigns(self) -> int:
        with self._pool_lock:
            return self._active_campaigns

    def request_stop(self) -> None:
        """Request a cooperative stop, interrupting the watch stream and running campaigns."""
        self._external_stop.set()
        self._campaign_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _track_metrics(self) -> None:
        METRICS.tracked_sources.set(len(self.detector.store))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> CampaignResult | None:
        """Reconcile one ConfigMap by identity.

        Returns the :class:`CampaignResult` when a campaign ran, or ``None``
        when the ConfigMap was new, unchanged, deleted, excluded, or consumed
        by no eligible pod. Nothing is retried: a failure here is recovered by
        the next change to the ConfigMap.
        """
        key = SourceKey(namespace, name)
        try:
            config_map = read_config_map(self.core_api, namespace, name, self.request_timeout)
        except ApiException as exc:
            if exc.status == 404:
                self.detector.forget(key)
                self._track_metrics()
                return None
            self.logger.exception("Failed to fetch ConfigMap %s", key)
            METRICS.reconcile_errors_total.inc()
            return None

        observation = self.detector.observe(
            key, version_token(config_map, self.config.version_source)
        )
        METRICS.config_changes_total.labels(outcome=observation.value).inc()
        self._track_metrics()
        if observation is not Observation.CHANGED:
            return None

        return self._run_campaign(key)

    def _load_budgets(self, namespace: str) -> list[DisruptionBudget]:
        try:
            pdb_list = list_pod_disruption_budgets(self.policy_api, namespace, self.request_timeout)
        except ApiException:
            self.logger.exception(
                "Failed to list PodDisruptionBudgets in %s; proceeding without budget checks",
                namespace,
            )
            return []
        return budgets_from_list(pdb_list, logger=self.logger)

    def _run_campaign(self, key: SourceKey) -> CampaignResult | None:
        policy = load_policy(
            self.custom_api,
            group=self.config.policy_group,
            version=self.config.policy_version,
            plural=self.config.policy_plural,
            request_timeout=self.request_timeout,
            logger=self.logger,
        )
        if policy.excludes_namespace(key.namespace):
            self.logger.info("Namespace %s is excluded; not restarting pods for %s", key.namespace, key)
            return None

        try:
            pod_list = list_pods(self.core_api, key.namespace, self.request_timeout)
        except ApiException:
            self.logger.exception("Failed to list pods in %s for %s", key.namespace, key)
            METRICS.reconcile_errors_total.inc()
            return None

        candidates = select_candidates(
            units_from_pod_list(pod_list), key.name, policy, logger=self.logger
        )
        if not candidates:
            self.logger.info("ConfigMap %s changed, but no eligible pods consume it", key)
            return None

        budgets = self._load_budgets(key.namespace)

        with self._pool_lock:
            self._active_campaigns += 1
        METRICS.active_campaigns.inc()
        started = time.monotonic()
        try:
            result = self.scheduler.run(
                str(key),
                candidates,
                budgets,
                unsafe_mode=policy.unsafe_mode,
                stop_event=self._campaign_stop,
            )
        finally:
            METRICS.campaign_duration_seconds.observe(time.monotonic() - started)
            METRICS.active_campaigns.dec()
            with self._pool_lock:
                self._active_campaigns -= 1

        METRICS.campaigns_total.labels(outcome=result.phase.value).inc()
        self.logger.info(
            "Restart campaign for %s finished: outcome=%s removed=%d denied=%d failed=%d",
            key,
            result.phase.value,
            len(result.removed),
            len(result.denied),
            len(result.failed),
        )
        return result

    def _reconcile_safely(self, namespace: str, name: str) -> CampaignResult | None:
        try:
            return self.reconcile(namespace, name)
        except Exception:
            # One broken reconciliation must not take down the worker pool.
            self.logger.exception("Unexpected error reconciling ConfigMap %s/%s", namespace, name)
            METRICS.reconcile_errors_total.inc()
            return None

    def _reconcile_key(self, key: SourceKey) -> CampaignResult | None:
        try:
            return self._reconcile_safely(key.namespace, key.name)
        finally:
            with self._pool_lock:
                self._in_flight.discard(key)
                requeue = key in self._dirty
                self._dirty.discard(key)
            if requeue:
                self.logger.info("Reconciling %s again for changes seen during its campaign", key)
                self.submit_reconcile(key.namespace, key.name)

    def submit_reconcile(
        self, namespace: str, name: str
    ) -> Future[CampaignResult | None] | None:
        """Queue a reconciliation on the worker pool and return its future.

        A ConfigMap is never reconciled on two workers at once. A request for
        a key that is already queued or running marks it dirty and returns
        ``None``; the key is reconciled once more after the current run ends,
        however many requests arrived meanwhile. Nothing is queued after
        shutdown has begun.
        """
        key = SourceKey(namespace, name)
        with self._pool_lock:
            if self._campaign_stop.is_set():
                return None
            if key in self._in_flight:
                self._dirty.add(key)
                return None
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.max_concurrent_campaigns,
                    thread_name_prefix="campaign",
                )
            self._in_flight.add(key)
            future = self._executor.submit(self._reconcile_key, key)
            self._futures.add(future)
        future.add_done_callback(self._forget_future)
        return future

    def _forget_future(self, future: Future[CampaignResult | None]) -> None:
        with self._pool_lock:
            self._futures.discard(future)

    def _shutdown_workers(self) -> None:
        """Cancel campaigns in flight, drop queued reconciliations, and join the pool."""
        self._campaign_stop.set()
        with self._pool_lock:
            executor = self._executor
            self._executor = None
            pending = list(self._futures)
            dirty = len(self._dirty)
            self._dirty.clear()

        dropped = sum(1 for future in pending if future.cancel()) + dirty
        if dropped:
            self.logger.warning("Dropped %d queued reconciliation(s) on shutdown", dropped)
            METRICS.dropped_reconciles_total.inc(dropped)
        if executor is not None:
            executor.shutdown(wait=True)
        with self._pool_lock:
            self._in_flight.clear()


    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    def handle_configmap_event(
        self, event_type: str, config_map: Any
    ) -> Future[CampaignResult | None] | None:
        """Process a single ConfigMap watch event.

        DELETED events drop the tracked version inline. ADDED/MODIFIED events
        whose version token already matches the tracked one are ignored
        without an API call; anything else is queued for :meth:`reconcile`.
        """
        metadata = getattr(config_map, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None

        key = SourceKey(namespace, name)
        if event_type == "DELETED":
            self.detector.forget(key)
            self._track_metrics()
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        token = version_token(config_map, self.config.version_source)
        if token and self.detector.store.get(key) == token:
            return None
        return self.submit_reconcile(namespace, name)

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if self.config.config_map_selector:
            kwargs["label_selector"] = self.config.config_map_selector
        if self.config.namespace:
            kwargs["namespace"] = self.config.namespace
            return self.core_api.list_namespaced_config_map, kwargs
        return self.core_api.list_config_map_for_all_namespaces, kwargs

    def _list_config_maps(self) -> Any:
        list_fn, kwargs = self._list_call()
        return list_fn(_request_timeout=self.request_timeout, **kwargs)

    def _seed_from_list(self, config_maps: Any) -> None:
        """Record a baseline for every listed ConfigMap without restarting anything."""
        for config_map in getattr(config_maps, "items", None) or []:
            metadata = getattr(config_map, "metadata", None)
            namespace = getattr(metadata, "namespace", None)
            name = getattr(metadata, "name", None)
            if not namespace or not name:
                continue
            self.detector.observe(
                SourceKey(namespace, name),
                version_token(config_map, self.config.version_source),
            )
        self._track_metrics()
        self.logger.info("Tracking %d ConfigMap(s)", len(self.detector.store))

    def _resync_from_list(self, config_maps: Any) -> None:
        """Catch up after a ``410 Gone`` re-list.

        ConfigMaps that vanished while the watch was down are forgotten; every
        listed one is reconciled, which restarts consumers of those that
        changed and only records a baseline for those created meanwhile.
        """
        listed: set[SourceKey] = set()
        for config_map in getattr(config_maps, "items", None) or []:
            metadata = getattr(config_map, "metadata", None)
            namespace = getattr(metadata, "namespace", None)
            name = getattr(metadata, "name", None)
            if namespace and name:
                listed.add(SourceKey(namespace, name))
                self.handle_configmap_event("MODIFIED", config_map)

        for key in self.detector.store.keys():
            if key not in listed:
                self.detector.forget(key)
        self._track_metrics()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch ConfigMaps until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Seeds the change detector from that list (no restarts).
        3. Opens a streaming watch from the list's ``resourceVersion`` and
           dispatches each event to :meth:`handle_configmap_event`.
        4. On ``410 Gone`` (etcd compaction), re-lists, catches up, resumes.
        5. On transient errors, backs off exponentially with jitter (30 s cap).
        6. On shutdown, cancels running campaigns and drops queued work.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration and
        end the loop immediately with a clear log message.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._campaign_stop.clear()

        try:
            self._watch_until_stopped(stop)
        finally:
            self._shutdown_workers()
            self.ready.clear()

    def _watch_until_stopped(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_config_maps()
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._seed_from_list(initial)
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes ConfigMap list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMap list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        # Reset to 1 on every clean watch iteration; doubled on error up to
        # a 30 s cap. Jitter is applied at sleep time.
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_fn, kwargs = self._list_call()
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_configmap_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        fresh = self._list_config_maps()
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._resync_from_list(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def build_controller(clients: KubeClients, config: ControllerConfig) -> ConfigMapRestartController:
    """Construct a :class:`ConfigMapRestartController` from API clients and loaded config."""
    return ConfigMapRestartController(
        core_api=clients.core,
        policy_api=clients.policy,
        custom_api=clients.custom,
        config=config,
    )
