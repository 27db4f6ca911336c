from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from rollout.src.config import DEFAULT_NAMESPACE

KIND_DEPLOYMENT = "Deployment"
KIND_DAEMON_SET = "DaemonSet"
KIND_REPLICATION_CONTROLLER = "ReplicationController"
KIND_JOB = "Job"
KIND_CONFIG_MAP = "ConfigMap"
KIND_SECRET = "Secret"
KIND_SERVICE_ACCOUNT = "ServiceAccount"
KIND_ROLE = "Role"
KIND_CLUSTER_ROLE = "ClusterRole"
KIND_ROLE_BINDING = "RoleBinding"
KIND_CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
KIND_POD_SECURITY_POLICY = "PodSecurityPolicy"
KIND_SERVICE = "Service"

ALL_KINDS: tuple[str, ...] = (
    KIND_DEPLOYMENT,
    KIND_DAEMON_SET,
    KIND_REPLICATION_CONTROLLER,
    KIND_JOB,
    KIND_CONFIG_MAP,
    KIND_SECRET,
    KIND_SERVICE_ACCOUNT,
    KIND_ROLE,
    KIND_CLUSTER_ROLE,
    KIND_ROLE_BINDING,
    KIND_CLUSTER_ROLE_BINDING,
    KIND_POD_SECURITY_POLICY,
    KIND_SERVICE,
)

CLUSTER_SCOPED_KINDS = frozenset(
    {KIND_CLUSTER_ROLE, KIND_CLUSTER_ROLE_BINDING, KIND_POD_SECURITY_POLICY}
)

# Annotation the control plane stamps on pods with a serialized reference
# to the controller that created them.
ANNOTATION_CREATED_BY = "kubernetes.io/created-by"

POD_RUNNING = "Running"

# Fields assigned by the control plane that must never be re-submitted.
_IDENTITY_FIELDS = ("uid", "selfLink", "resourceVersion")


def field_of(obj: Any, *path: str) -> Any:
    """Walk *path* through a client model object or a plain dict.

    Typed client models expose snake_case attributes while dicts returned by
    the custom-objects API use the wire names; callers pass the name that
    matches the object they hold.  Missing links yield ``None``.
    """
    current = obj
    for name in path:
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(name)
        else:
            current = getattr(current, name, None)
    return current


@dataclass
class Resource:
    """In-memory desired-state document plus its identity.

    ``document`` holds the wire representation (camelCase keys) exactly as
    it will be submitted.  Identity accessors read through it so there is a
    single source of truth.
    """

    kind: str
    document: dict[str, Any] = field(default_factory=dict)
    default_namespace: str = DEFAULT_NAMESPACE

    @property
    def metadata(self) -> dict[str, Any]:
        metadata = self.document.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or self.default_namespace)

    @property
    def uid(self) -> str:
        return str(self.metadata.get("uid") or "")

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    @property
    def spec(self) -> dict[str, Any]:
        spec = self.document.get("spec")
        return spec if isinstance(spec, dict) else {}

    @property
    def replicas(self) -> int | None:
        value = self.spec.get("replicas")
        return int(value) if value is not None else None

    def describe(self) -> str:
        if self.cluster_scoped:
            return f"{self.kind} {self.name}"
        return f"{self.kind} {self.namespace}/{self.name}"

    def clear_identity(self) -> None:
        """Drop server-assigned identity so a submission never carries a stale one."""
        metadata = self.metadata
        for key in _IDENTITY_FIELDS:
            metadata.pop(key, None)

    def body(self) -> dict[str, Any]:
        """Return a copy of the document ready for submission."""
        body = copy.deepcopy(self.document)
        body.setdefault("kind", self.kind)
        if not self.cluster_scoped:
            body.setdefault("metadata", {}).setdefault("namespace", self.namespace)
        return body


@dataclass(frozen=True)
class PodSnapshot:
    """Point-in-time view of a pod, re-fetched on every resolution."""

    name: str
    namespace: str
    phase: str
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_pod(cls, pod: Any) -> PodSnapshot:
        annotations = field_of(pod, "metadata", "annotations")
        return cls(
            name=str(field_of(pod, "metadata", "name") or ""),
            namespace=str(field_of(pod, "metadata", "namespace") or ""),
            phase=str(field_of(pod, "status", "phase") or "Unknown"),
            annotations=dict(annotations) if isinstance(annotations, dict) else {},
        )


@dataclass(frozen=True)
class OwnerReference:
    """Kind and UID of the controller recorded in a pod's created-by annotation."""

    kind: str
    uid: str
    name: str = ""
    namespace: str = ""

    def matches(self, kind: str, uid: str) -> bool:
        return bool(uid) and self.kind == kind and self.uid == uid


@dataclass(frozen=True)
class ReplicaInfo:
    """Desired versus observed counters used by the convergence check."""

    desired: int
    observed: int
    observed_label: str = "updated"

    @property
    def converged(self) -> bool:
        return self.desired == self.observed

    def mismatch(self) -> str:
        return f"expected replicas: {self.desired}, {self.observed_label}: {self.observed}"
