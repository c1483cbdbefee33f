from __future__ import annotations

import enum
import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime

from kubernetes import watch
from kubernetes.client import ApiException

from controller.src.config import ArgoosConfig
from controller.src.errors import ClusterUnavailable
from controller.src.kube import ClusterClient, connect, workload_from_deployment
from controller.src.metrics import METRICS
from controller.src.models import PushEvent, RolloutRequest, WorkloadSnapshot

IMAGE_ANNOTATION_KEY = "argoos.io/image"


class ControllerState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class TriggerOutcome(enum.Enum):
    ACCEPTED = "accepted"
    COALESCED = "coalesced"
    REJECTED = "rejected"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the rollout annotation value so Kubernetes sees a template change
    and triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RolloutController:
    """Owns the live workload snapshot and issues rolling updates.

    Lifecycle: ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``.

    ``start()`` connects to the cluster, lists Deployments into the first
    snapshot and starts a background list-then-watch thread that keeps the
    snapshot current.  Every watch event produces a *new*
    :class:`WorkloadSnapshot` that replaces the previous one with a single
    reference assignment, so ``current_snapshot()`` readers never need a lock
    and never observe a half-applied refresh.  The watch thread is the only
    writer once running.

    ``trigger()`` hands a :class:`RolloutRequest` to a bounded worker pool.
    A workload id stays in ``_in_flight`` from submission until its patch
    call (including retries) has returned; further triggers for that id are
    coalesced instead of issuing a concurrent patch.

    ``stop()`` interrupts the watch, cancels queued requests and waits a
    bounded grace period for in-flight patch calls before closing the
    cluster connection.
    """

    def __init__(
        self,
        config: ArgoosConfig,
        connect_fn: Callable[[ArgoosConfig], ClusterClient] = connect,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        retry_base_seconds: float = 1.0,
    ) -> None:
        self.config = config
        self.connect_fn = connect_fn
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.retry_base_seconds = retry_base_seconds

        self.ready = threading.Event()
        self._state = ControllerState.STOPPED
        self._state_lock = threading.Lock()
        self._snapshot = WorkloadSnapshot()
        self._cluster: ClusterClient | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._drained = threading.Condition(self._in_flight_lock)

        self._stop_event = threading.Event()
        self._watch_thread: threading.Thread | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def state(self) -> ControllerState:
        return self._state

    def current_snapshot(self) -> WorkloadSnapshot:
        return self._snapshot

    def in_flight(self) -> frozenset[str]:
        with self._in_flight_lock:
            return frozenset(self._in_flight)

    def _swap_snapshot(self, snapshot: WorkloadSnapshot) -> None:
        self._snapshot = snapshot
        METRICS.snapshot_version.set(snapshot.version)
        METRICS.snapshot_workloads.set(len(snapshot))

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Connect, build the first snapshot and start the watch thread.

        Raises :class:`ClusterUnavailable` when the cluster cannot be reached
        or listed; the controller is left ``STOPPED``.
        """
        with self._state_lock:
            if self._state is not ControllerState.STOPPED:
                raise RuntimeError(f"cannot start controller in state {self._state.value}")
            self._state = ControllerState.STARTING

        cluster: ClusterClient | None = None
        try:
            cluster = self.connect_fn(self.config)
            workloads, resource_version = cluster.list_workloads()
        except Exception as exc:
            if cluster is not None:
                cluster.close()
            with self._state_lock:
                self._state = ControllerState.STOPPED
            raise ClusterUnavailable(f"initial Kubernetes connection failed: {exc}") from exc

        self._cluster = cluster
        self._swap_snapshot(WorkloadSnapshot.build(workloads, version=self._snapshot.version + 1))
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_in_flight,
            thread_name_prefix="argoos-rollout",
        )
        self._watch_thread = threading.Thread(
            target=self._run_watch,
            args=(resource_version,),
            name="argoos-watch",
            daemon=True,
        )
        self._watch_thread.start()

        with self._state_lock:
            self._state = ControllerState.RUNNING
        self.ready.set()
        self.logger.info(
            "Rollout controller running with %d workload(s) (resourceVersion %s)",
            len(self._snapshot),
            resource_version,
        )

    def stop(self, grace_seconds: float | None = None) -> None:
        """Stop the controller; safe to call repeatedly and in any state.

        Waits at most *grace_seconds* (default ``config.stop_grace_seconds``)
        for in-flight patch calls, then tears the connection down regardless.
        """
        with self._state_lock:
            if self._state is not ControllerState.RUNNING:
                return
            self._state = ControllerState.STOPPING

        grace = self.config.stop_grace_seconds if grace_seconds is None else grace_seconds
        deadline = time.monotonic() + max(0.0, grace)
        self.logger.info("Stopping rollout controller (grace %.1fs)", grace)

        self.ready.clear()
        self._stop_event.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

        with self._drained:
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._drained.wait(timeout=remaining)
            abandoned = sorted(self._in_flight)
        if abandoned:
            self.logger.warning(
                "Abandoning %d in-flight rollout(s) after grace period: %s",
                len(abandoned),
                ", ".join(abandoned),
            )

        if self._watch_thread is not None:
            self._watch_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if self._watch_thread.is_alive():
                self.logger.warning("Watch thread did not exit within the grace period")
            self._watch_thread = None

        if self._cluster is not None:
            try:
                self._cluster.close()
            except Exception:
                self.logger.exception("Failed to close Kubernetes connection")
            self._cluster = None
        self._executor = None

        with self._state_lock:
            self._state = ControllerState.STOPPED
        self.logger.info("Rollout controller stopped")

    # -- triggers ----------------------------------------------------------

    def trigger(self, workload_id: str, reason: PushEvent) -> TriggerOutcome:
        """Request a rolling update of *workload_id* because of *reason*.

        Returns immediately; the patch runs on the worker pool.
        """
        with self._state_lock:
            running = self._state is ControllerState.RUNNING
            executor = self._executor
        if not running or executor is None:
            self.logger.warning(
                "Rejecting rollout of %s for %s: controller is %s",
                workload_id,
                reason.reference,
                self._state.value,
            )
            METRICS.triggers_total.labels(outcome=TriggerOutcome.REJECTED.value).inc()
            return TriggerOutcome.REJECTED

        with self._in_flight_lock:
            if workload_id in self._in_flight:
                self.logger.info(
                    "Rollout of %s already in flight; coalescing trigger for %s",
                    workload_id,
                    reason.reference,
                )
                METRICS.triggers_total.labels(outcome=TriggerOutcome.COALESCED.value).inc()
                return TriggerOutcome.COALESCED
            self._in_flight.add(workload_id)
            METRICS.in_flight_rollouts.set(len(self._in_flight))

        request = RolloutRequest(workload_id=workload_id, reason=reason)
        try:
            future = executor.submit(self._execute, request)
        except RuntimeError:
            # Executor shut down between the state check and submit.
            self._release(workload_id)
            METRICS.triggers_total.labels(outcome=TriggerOutcome.REJECTED.value).inc()
            return TriggerOutcome.REJECTED

        future.add_done_callback(lambda _: self._release(workload_id))
        METRICS.triggers_total.labels(outcome=TriggerOutcome.ACCEPTED.value).inc()
        self.logger.info("Triggered rollout of %s for %s", workload_id, reason.reference)
        return TriggerOutcome.ACCEPTED

    def _release(self, workload_id: str) -> None:
        with self._drained:
            self._in_flight.discard(workload_id)
            METRICS.in_flight_rollouts.set(len(self._in_flight))
            self._drained.notify_all()

    def _retry_delay(self, attempt: int) -> float:
        delay = min(30.0, self.retry_base_seconds * float(2 ** (attempt - 1)))
        return delay * (0.5 + random.random())  # noqa: S311

    def _execute(self, request: RolloutRequest) -> bool:
        """Patch one workload, retrying transient failures with backoff.

        The workload spec is re-read from the current snapshot before every
        attempt, so a request picks up the latest observed state and is
        dropped if the workload disappeared meanwhile.
        """
        cluster = self._cluster
        attempts = 1 + self.config.patch_retries
        workload_id = request.workload_id
        if cluster is None:
            self.logger.warning("Controller stopped; abandoning rollout of %s", workload_id)
            METRICS.patches_total.labels(result="abandoned").inc()
            return False

        for attempt in range(1, attempts + 1):
            workload = self._snapshot.get(workload_id)
            if workload is None:
                self.logger.warning(
                    "Workload %s no longer exists; dropping rollout for %s",
                    workload_id,
                    request.reason.reference,
                )
                METRICS.patches_total.labels(result="abandoned").inc()
                return False

            annotations = {
                self.config.rollout_annotation_key: self.now_fn(),
                IMAGE_ANNOTATION_KEY: request.reason.reference,
            }
            try:
                cluster.patch_workload(workload_id, annotations)
            except ApiException as exc:
                if exc.status == 404:
                    self.logger.warning(
                        "Deployment %s not found while rolling it out; dropping request",
                        workload_id,
                    )
                    METRICS.patches_total.labels(result="abandoned").inc()
                    return False
                self.logger.warning(
                    "Patch of %s failed on attempt %d/%d (status=%s)",
                    workload_id,
                    attempt,
                    attempts,
                    exc.status,
                )
            except Exception:
                self.logger.exception(
                    "Patch of %s failed on attempt %d/%d", workload_id, attempt, attempts
                )
            else:
                METRICS.patches_total.labels(result="success").inc()
                self.logger.info(
                    "Rolled out deployment %s (revision %s) for %s",
                    workload_id,
                    workload.revision,
                    request.reason.reference,
                )
                return True

            if attempt == attempts:
                break
            delay = self._retry_delay(attempt)
            METRICS.patch_retries_total.inc()
            self.logger.info("Retrying patch of %s in %.1fs", workload_id, delay)
            if self._stop_event.wait(timeout=delay):
                self.logger.warning("Controller stopping; abandoning rollout of %s", workload_id)
                METRICS.patches_total.labels(result="abandoned").inc()
                return False

        self.logger.error(
            "Giving up rollout of %s for %s after %d attempt(s)",
            workload_id,
            request.reason.reference,
            attempts,
        )
        METRICS.patches_total.labels(result="failed").inc()
        return False

    # -- snapshot refresh --------------------------------------------------

    def apply_watch_event(self, event_type: str, deployment: object) -> None:
        """Swap in a snapshot reflecting one Deployment watch event."""
        workload = workload_from_deployment(deployment)
        if workload is None:
            return

        current = self._snapshot
        if event_type in {"ADDED", "MODIFIED"}:
            if current.get(workload.id) == workload:
                return
            self._swap_snapshot(current.with_workload(workload))
            self.logger.debug(
                "Workload %s updated (images: %s)",
                workload.id,
                ", ".join(sorted(workload.image_references)),
            )
        elif event_type == "DELETED":
            self._swap_snapshot(current.without_workload(workload.id))
            self.logger.debug("Workload %s removed", workload.id)

    def _relist(self, cluster: ClusterClient) -> str | None:
        workloads, resource_version = cluster.list_workloads()
        self._swap_snapshot(WorkloadSnapshot.build(workloads, version=self._snapshot.version + 1))
        self.logger.info(
            "Re-listed %d workload(s) at resourceVersion %s", len(workloads), resource_version
        )
        return resource_version

    def _run_watch(self, resource_version: str | None) -> None:
        """Watch Deployments until stopped, keeping the snapshot current.

        1. Streams from the initial list's ``resourceVersion``.
        2. On ``410 Gone`` re-lists and rebuilds the snapshot wholesale; a
           failed re-list is retried with backoff before watching again.
        3. On transient errors backs off exponentially with jitter (30 s cap).
        4. ``401`` / ``403`` are RBAC misconfiguration: the loop ends, ``ready``
           is cleared and the last snapshot keeps serving.
        """
        cluster = self._cluster
        if cluster is None:
            return
        stop = self._stop_event
        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False

        def back_off() -> None:
            nonlocal backoff_seconds
            METRICS.watch_errors_total.inc()
            stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
            backoff_seconds = min(backoff_seconds * 2, 30)

        while not stop.is_set():
            if needs_relist:
                try:
                    resource_version = self._relist(cluster)
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied during re-list (status=%s). "
                            "Check argoos RBAC and service account permissions.",
                            exc.status,
                        )
                        METRICS.watch_errors_total.inc()
                        self.ready.clear()
                        return
                    self.logger.exception("Failed to re-list Deployments (status=%s)", exc.status)
                    back_off()
                    continue
                except Exception:
                    if stop.is_set():
                        break
                    self.logger.exception("Failed to re-list Deployments")
                    back_off()
                    continue
                needs_relist = False
                backoff_seconds = 1

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                list_fn, kwargs = cluster.stream_target()
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.config.watch_timeout_seconds,
                    **kwargs,
                )
                for event in stream:
                    if stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.apply_watch_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    needs_relist = True
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check argoos RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                back_off()
            except Exception:
                if stop.is_set():
                    break
                self.logger.exception("Unexpected watch error")
                back_off()
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
