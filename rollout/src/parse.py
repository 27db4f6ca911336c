from __future__ import annotations

import copy
import io
import json
from dataclasses import dataclass, field
from typing import IO, Any

import yaml
from kubernetes.client import ApiClient

from rollout.src import resources as kinds
from rollout.src.config import DEFAULT_BUFFER_SIZE, DEFAULT_NAMESPACE
from rollout.src.errors import BadParameterError, DecodeError
from rollout.src.resources import OwnerReference, Resource

Stream = IO[str] | IO[bytes]


@dataclass(frozen=True)
class ResourceHeader:
    """Type and object metadata of a document, decoded without committing to a kind."""

    kind: str
    api_version: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _read_text(stream: Stream | str | bytes) -> str:
    if isinstance(stream, (str, bytes)):
        raw: str | bytes = stream
    else:
        raw = stream.read()
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"document is not valid UTF-8: {exc}") from exc
    return raw


def _looks_like_json(text: str) -> bool:
    prefix = text[:DEFAULT_BUFFER_SIZE].lstrip()
    return prefix.startswith("{")


def decode_document(stream: Stream | str | bytes | None) -> dict[str, Any]:
    """Decode a YAML or JSON document into a dict.

    The format is sniffed from the first ``DEFAULT_BUFFER_SIZE`` characters:
    a leading ``{`` selects JSON, anything else goes through YAML.
    """
    if stream is None:
        raise BadParameterError("missing reader")

    text = _read_text(stream)
    if not text.strip():
        raise DecodeError("empty document")

    try:
        if _looks_like_json(text):
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise DecodeError(f"failed to decode document: {exc}") from exc

    if not isinstance(document, dict):
        raise DecodeError(
            f"expected a mapping at the document root, got {type(document).__name__}"
        )
    return document


def decode(
    stream: Stream | str | bytes | None,
    kind: str,
    default_namespace: str = DEFAULT_NAMESPACE,
) -> Resource:
    """Decode *stream* as a resource of *kind*.

    A document without ``kind`` gets *kind* stamped on it; a document that
    names a different kind is rejected.
    """
    if kind not in kinds.ALL_KINDS:
        raise BadParameterError(f"unsupported resource kind {kind!r}")

    document = decode_document(stream)
    declared = document.get("kind")
    if declared and declared != kind:
        raise DecodeError(f"expected a {kind} document, got {declared}")
    document["kind"] = kind
    return Resource(kind=kind, document=document, default_namespace=default_namespace)


def from_object(
    obj: Any,
    kind: str,
    default_namespace: str = DEFAULT_NAMESPACE,
) -> Resource:
    """Wrap a copy of an already parsed document or client model (e.g. ``V1Deployment``)."""
    if obj is None:
        raise BadParameterError("missing resource")
    if isinstance(obj, dict):
        document = copy.deepcopy(obj)
    else:
        document = ApiClient().sanitize_for_serialization(obj)
        if not isinstance(document, dict):
            raise BadParameterError(f"cannot serialize {type(obj).__name__} as a resource")
    declared = document.get("kind")
    if declared and declared != kind:
        raise BadParameterError(f"expected a {kind} resource, got {declared}")
    document["kind"] = kind
    return Resource(kind=kind, document=document, default_namespace=default_namespace)


def parse_resource_header(stream: Stream | str | bytes | None) -> ResourceHeader:
    document = decode_document(stream)
    metadata = document.get("metadata")
    return ResourceHeader(
        kind=str(document.get("kind") or ""),
        api_version=str(document.get("apiVersion") or ""),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def parse_serialized_reference(text: str) -> OwnerReference:
    """Decode the serialized reference stored in a pod's created-by annotation.

    The annotation is a ``SerializedReference`` object whose ``reference``
    field carries the controller's kind and UID.
    """
    document = decode_document(io.StringIO(text))
    reference = document.get("reference")
    if not isinstance(reference, dict):
        raise DecodeError("serialized reference has no reference field")
    kind = reference.get("kind")
    uid = reference.get("uid")
    if not kind or not uid:
        raise DecodeError("serialized reference is missing kind or uid")
    return OwnerReference(
        kind=str(kind),
        uid=str(uid),
        name=str(reference.get("name") or ""),
        namespace=str(reference.get("namespace") or ""),
    )


def parse_deployment(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_DEPLOYMENT)


def parse_daemon_set(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_DAEMON_SET)


def parse_job(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_JOB)


def parse_replication_controller(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_REPLICATION_CONTROLLER)


def parse_service(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_SERVICE)


def parse_config_map(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_CONFIG_MAP)


def parse_secret(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_SECRET)


def parse_service_account(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_SERVICE_ACCOUNT)


def parse_role(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_ROLE)


def parse_cluster_role(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_CLUSTER_ROLE)


def parse_role_binding(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_ROLE_BINDING)


def parse_cluster_role_binding(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_CLUSTER_ROLE_BINDING)


def parse_pod_security_policy(stream: Stream | None) -> Resource:
    return decode(stream, kinds.KIND_POD_SECURITY_POLICY)
