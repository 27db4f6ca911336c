from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.client import (
    AppsV1Api,
    BatchV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    """The API groups a rollout controller talks to.

    Shared read-only between controller instances; nothing mutates the
    underlying client configuration after construction.
    """

    core: CoreV1Api
    apps: AppsV1Api
    batch: BatchV1Api
    rbac: RbacAuthorizationV1Api
    custom: CustomObjectsApi


def load_kube_configuration(context: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.  ``context`` selects a
    kubeconfig context and only applies to the fallback.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config(context=context)
        LOGGER.info("Loaded local kubeconfig (context=%s)", context or "<current>")


def build_clients() -> KubeClients:
    """Return API clients for every group the controller needs, using the active configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        batch=client.BatchV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        custom=client.CustomObjectsApi(),
    )
