from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, AppsV1Api
from kubernetes.config.config_exception import ConfigException

from controller.src.config import ArgoosConfig
from controller.src.models import WorkloadSpec

LOGGER = logging.getLogger(__name__)


def build_client_configuration(settings: ArgoosConfig) -> client.Configuration:
    """Build a Kubernetes client configuration from the process settings.

    In-cluster mode uses the pod service account and falls back to the local
    kubeconfig for development.  Otherwise an explicit master URL (with
    optional client certificates) wins over the kubeconfig.
    """
    configuration = client.Configuration()
    if settings.in_cluster:
        try:
            config.load_incluster_config(client_configuration=configuration)
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config(client_configuration=configuration)
            LOGGER.info("Not running in a cluster; loaded local kubeconfig")
    elif settings.kube_master_url:
        configuration.host = settings.kube_master_url
        if settings.ca_file:
            configuration.ssl_ca_cert = settings.ca_file
        if settings.cert_file:
            configuration.cert_file = settings.cert_file
        if settings.key_file:
            configuration.key_file = settings.key_file
        LOGGER.info("Using Kubernetes master %s", settings.kube_master_url)
    else:
        config.load_kube_config(client_configuration=configuration)
        LOGGER.info("Loaded local kubeconfig")

    if settings.skip_ssl_verification:
        configuration.verify_ssl = False
        LOGGER.warning("TLS verification of the Kubernetes API is disabled")
    return configuration


def _string_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def workload_from_deployment(deployment: Any) -> WorkloadSpec | None:
    """Convert a Deployment object into a :class:`WorkloadSpec`.

    Reads ``spec.template.spec`` containers and init containers.  Returns
    ``None`` for objects without a namespace or name.
    """
    metadata = getattr(deployment, "metadata", None)
    namespace = _string_or_none(getattr(metadata, "namespace", None))
    name = _string_or_none(getattr(metadata, "name", None))
    if namespace is None or name is None:
        return None

    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    pod_spec = getattr(template, "spec", None)

    images: set[str] = set()
    for field_name in ("containers", "init_containers"):
        containers = getattr(pod_spec, field_name, None) or []
        for container in containers:
            image = _string_or_none(getattr(container, "image", None))
            if image is not None:
                images.add(image)

    return WorkloadSpec(
        id=f"{namespace}/{name}",
        image_references=frozenset(images),
        revision=_string_or_none(getattr(metadata, "resource_version", None)),
    )


def build_restart_patch(annotations: dict[str, str]) -> dict[str, Any]:
    """Return a merge patch that sets pod template annotations.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the ReplicaSet controller to roll new pods.
    """
    return {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": dict(annotations)
                }
            }
        }
    }


class ClusterClient:
    """Thin handle on the Deployments API used by the rollout controller."""

    def __init__(
        self, api_client: ApiClient, namespace: str = "", request_timeout: float | None = None
    ) -> None:
        self.api_client = api_client
        self.apps_api = AppsV1Api(api_client)
        self.namespace = namespace
        self.request_timeout = request_timeout

    def stream_target(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and kwargs to list or watch Deployments."""
        if self.namespace:
            return self.apps_api.list_namespaced_deployment, {"namespace": self.namespace}
        return self.apps_api.list_deployment_for_all_namespaces, {}

    def list_workloads(self) -> tuple[list[WorkloadSpec], str | None]:
        """List every Deployment and return the workloads plus the list resourceVersion."""
        list_fn, kwargs = self.stream_target()
        deployments = list_fn(_request_timeout=self.request_timeout, **kwargs)
        items = getattr(deployments, "items", None) or []
        workloads = [
            workload
            for workload in (workload_from_deployment(item) for item in items)
            if workload is not None
        ]
        resource_version = getattr(getattr(deployments, "metadata", None), "resource_version", None)
        return workloads, resource_version

    def patch_workload(self, workload_id: str, annotations: dict[str, str]) -> None:
        """Patch the Deployment's pod template annotations to trigger a rolling update."""
        namespace, _, name = workload_id.partition("/")
        self.apps_api.patch_namespaced_deployment(
            name=name,
            namespace=namespace,
            body=build_restart_patch(annotations),
            _request_timeout=self.request_timeout,
        )

    def close(self) -> None:
        self.api_client.close()


def connect(settings: ArgoosConfig) -> ClusterClient:
    """Open a client for the cluster described by *settings*."""
    configuration = build_client_configuration(settings)
    return ClusterClient(
        ApiClient(configuration),
        namespace=settings.watch_namespace,
        request_timeout=settings.request_timeout_seconds,
    )
