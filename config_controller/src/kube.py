from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, V1Secret
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from config_controller.src.errors import ClusterReadError, ClusterWriteError

LOGGER = logging.getLogger(__name__)


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


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def _status(exc: Exception) -> int | None:
    return getattr(exc, "status", None)


def read_secret(core_api: CoreV1Api, name: str, namespace: str) -> V1Secret:
    try:
        return core_api.read_namespaced_secret(name=name, namespace=namespace)
    except (ApiException, HTTPError) as exc:
        raise ClusterReadError("read", namespace, name, status=_status(exc)) from exc


def create_secret(core_api: CoreV1Api, namespace: str, body: V1Secret) -> V1Secret:
    try:
        return core_api.create_namespaced_secret(namespace=namespace, body=body)
    except (ApiException, HTTPError) as exc:
        raise ClusterWriteError("create", namespace, body.metadata.name, status=_status(exc)) from exc


def replace_secret(core_api: CoreV1Api, name: str, namespace: str, body: V1Secret) -> V1Secret:
    """Replace an existing Secret wholesale; labels and data are not merged."""
    try:
        return core_api.replace_namespaced_secret(name=name, namespace=namespace, body=body)
    except (ApiException, HTTPError) as exc:
        raise ClusterWriteError("replace", namespace, name, status=_status(exc)) from exc


def delete_secret(core_api: CoreV1Api, name: str, namespace: str) -> bool:
    """Delete a Secret.

    Returns ``False`` when the Secret was already gone (``404``), which the
    reconciler treats the same as a successful delete.
    """
    try:
        core_api.delete_namespaced_secret(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            return False
        raise ClusterWriteError("delete", namespace, name, status=exc.status) from exc
    except HTTPError as exc:
        raise ClusterWriteError("delete", namespace, name) from exc
    return True


def list_function(core_api: Any, kind: str, namespace: str | None = None) -> Any:
    """Return the CoreV1 list call used to list and watch ``kind`` objects.

    Cluster-wide variants are used unless ``namespace`` restricts the watch.
    """
    if kind == "ConfigMap":
        if namespace:
            return core_api.list_namespaced_config_map
        return core_api.list_config_map_for_all_namespaces
    if kind == "Secret":
        if namespace:
            return core_api.list_namespaced_secret
        return core_api.list_secret_for_all_namespaces
    raise ValueError(f"Unsupported resource kind: {kind}")
