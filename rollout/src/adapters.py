from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from rollout.src import resources as kinds
from rollout.src.errors import BadParameterError
from rollout.src.kube import KubeClients
from rollout.src.resources import ReplicaInfo, Resource, field_of


def no_selector(resource: Resource) -> dict[str, str]:
    return {}


def no_replica_info(live: Any) -> ReplicaInfo | None:
    return None


def match_labels_selector(resource: Resource) -> dict[str, str]:
    """Selector stored as ``spec.selector.matchLabels`` (apps and batch kinds)."""
    selector = resource.spec.get("selector")
    if not isinstance(selector, dict):
        return {}
    match_labels = selector.get("matchLabels")
    if not isinstance(match_labels, dict):
        return {}
    return {str(k): str(v) for k, v in match_labels.items()}


def plain_selector(resource: Resource) -> dict[str, str]:
    """Selector stored as a flat label map in ``spec.selector`` (ReplicationController)."""
    selector = resource.spec.get("selector")
    if not isinstance(selector, dict):
        return {}
    return {str(k): str(v) for k, v in selector.items() if not isinstance(v, (dict, list))}


def _desired_replicas(live: Any) -> int:
    replicas = field_of(live, "spec", "replicas")
    return 1 if replicas is None else int(replicas)


def deployment_replica_info(live: Any) -> ReplicaInfo:
    return ReplicaInfo(
        desired=_desired_replicas(live),
        observed=int(field_of(live, "status", "updated_replicas") or 0),
    )


def replication_controller_replica_info(live: Any) -> ReplicaInfo:
    return ReplicaInfo(
        desired=_desired_replicas(live),
        observed=int(field_of(live, "status", "replicas") or 0),
        observed_label="current",
    )


def daemon_set_replica_info(live: Any) -> ReplicaInfo:
    return ReplicaInfo(
        desired=int(field_of(live, "status", "desired_number_scheduled") or 0),
        observed=int(field_of(live, "status", "updated_number_scheduled") or 0),
        observed_label="updated scheduled",
    )


def job_replica_info(live: Any) -> ReplicaInfo:
    completions = field_of(live, "spec", "completions")
    return ReplicaInfo(
        desired=1 if completions is None else int(completions),
        observed=int(field_of(live, "status", "succeeded") or 0),
        observed_label="succeeded",
    )


@dataclass(frozen=True)
class KindAdapter:
    """Capability set the generic controller needs for one resource kind.

    Remote calls are resolved from ``api`` (an attribute of
    :class:`KubeClients`) and ``resource`` (the snake_case suffix used by
    the generated client, e.g. ``daemon_set``).  ``options`` are forwarded
    verbatim to the client call (``_request_timeout``).
    """

    kind: str
    api: str
    resource: str
    cluster_scoped: bool = False
    owns_pods: bool = False
    require_running_pods: bool = False
    selector_of: Callable[[Resource], dict[str, str]] = no_selector
    replica_info_of: Callable[[Any], ReplicaInfo | None] = no_replica_info

    def _method(self, clients: KubeClients, verb: str) -> Callable[..., Any]:
        scope = "" if self.cluster_scoped else "namespaced_"
        return getattr(getattr(clients, self.api), f"{verb}_{scope}{self.resource}")

    def _scope(self, namespace: str) -> dict[str, str]:
        return {} if self.cluster_scoped else {"namespace": namespace}

    def get(self, clients: KubeClients, namespace: str, name: str, **options: Any) -> Any:
        return self._method(clients, "read")(name=name, **self._scope(namespace), **options)

    def create(
        self, clients: KubeClients, namespace: str, body: dict[str, Any], **options: Any
    ) -> Any:
        return self._method(clients, "create")(body=body, **self._scope(namespace), **options)

    def update(
        self,
        clients: KubeClients,
        namespace: str,
        name: str,
        body: dict[str, Any],
        **options: Any,
    ) -> Any:
        return self._method(clients, "replace")(
            name=name, body=body, **self._scope(namespace), **options
        )

    def delete(self, clients: KubeClients, namespace: str, name: str, **options: Any) -> Any:
        return self._method(clients, "delete")(name=name, **self._scope(namespace), **options)


@dataclass(frozen=True)
class ClusterCustomObjectAdapter(KindAdapter):
    """Adapter for cluster-scoped kinds without a typed client API.

    Goes through ``CustomObjectsApi``, which addresses any API group by
    ``group``/``version``/``plural`` and returns plain dicts.
    """

    group: str = ""
    version: str = ""

    def _path(self) -> dict[str, str]:
        return {"group": self.group, "version": self.version, "plural": self.resource}

    def get(self, clients: KubeClients, namespace: str, name: str, **options: Any) -> Any:
        return clients.custom.get_cluster_custom_object(name=name, **self._path(), **options)

    def create(
        self, clients: KubeClients, namespace: str, body: dict[str, Any], **options: Any
    ) -> Any:
        return clients.custom.create_cluster_custom_object(body=body, **self._path(), **options)

    def update(
        self,
        clients: KubeClients,
        namespace: str,
        name: str,
        body: dict[str, Any],
        **options: Any,
    ) -> Any:
        return clients.custom.replace_cluster_custom_object(
            name=name, body=body, **self._path(), **options
        )

    def delete(self, clients: KubeClients, namespace: str, name: str, **options: Any) -> Any:
        return clients.custom.delete_cluster_custom_object(name=name, **self._path(), **options)


ADAPTERS: dict[str, KindAdapter] = {
    adapter.kind: adapter
    for adapter in (
        KindAdapter(
            kind=kinds.KIND_DEPLOYMENT,
            api="apps",
            resource="deployment",
            owns_pods=True,
            require_running_pods=True,
            selector_of=match_labels_selector,
            replica_info_of=deployment_replica_info,
        ),
        KindAdapter(
            kind=kinds.KIND_DAEMON_SET,
            api="apps",
            resource="daemon_set",
            owns_pods=True,
            require_running_pods=True,
            selector_of=match_labels_selector,
            replica_info_of=daemon_set_replica_info,
        ),
        KindAdapter(
            kind=kinds.KIND_REPLICATION_CONTROLLER,
            api="core",
            resource="replication_controller",
            owns_pods=True,
            require_running_pods=True,
            selector_of=plain_selector,
            replica_info_of=replication_controller_replica_info,
        ),
        # Job pods terminate on success, so they are deleted with the job
        # but never required to be Running.
        KindAdapter(
            kind=kinds.KIND_JOB,
            api="batch",
            resource="job",
            owns_pods=True,
            selector_of=match_labels_selector,
            replica_info_of=job_replica_info,
        ),
        KindAdapter(kind=kinds.KIND_CONFIG_MAP, api="core", resource="config_map"),
        KindAdapter(kind=kinds.KIND_SECRET, api="core", resource="secret"),
        KindAdapter(kind=kinds.KIND_SERVICE_ACCOUNT, api="core", resource="service_account"),
        KindAdapter(kind=kinds.KIND_SERVICE, api="core", resource="service"),
        KindAdapter(kind=kinds.KIND_ROLE, api="rbac", resource="role"),
        KindAdapter(kind=kinds.KIND_ROLE_BINDING, api="rbac", resource="role_binding"),
        KindAdapter(
            kind=kinds.KIND_CLUSTER_ROLE,
            api="rbac",
            resource="cluster_role",
            cluster_scoped=True,
        ),
        KindAdapter(
            kind=kinds.KIND_CLUSTER_ROLE_BINDING,
            api="rbac",
            resource="cluster_role_binding",
            cluster_scoped=True,
        ),
        ClusterCustomObjectAdapter(
            kind=kinds.KIND_POD_SECURITY_POLICY,
            api="custom",
            resource="podsecuritypolicies",
            cluster_scoped=True,
            group="policy",
            version="v1beta1",
        ),
    )
}


def adapter_for(kind: str) -> KindAdapter:
    try:
        return ADAPTERS[kind]
    except KeyError:
        raise BadParameterError(f"unsupported resource kind {kind!r}") from None
