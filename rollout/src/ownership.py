from __future__ import annotations

import logging
from typing import Any

from rollout.src.errors import REMOTE_ERRORS, DecodeError, convert_remote_error
from rollout.src.parse import parse_serialized_reference
from rollout.src.resources import ANNOTATION_CREATED_BY, OwnerReference, PodSnapshot

LOGGER = logging.getLogger(__name__)


def format_selector(selector: dict[str, str]) -> str:
    """Render a label map as a ``k=v,k2=v2`` selector string (empty stays empty)."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def owner_of(pod: PodSnapshot) -> OwnerReference | None:
    """Return the controller recorded in the pod's created-by annotation, if readable."""
    created_by = pod.annotations.get(ANNOTATION_CREATED_BY)
    if not created_by:
        return None
    try:
        return parse_serialized_reference(created_by)
    except DecodeError as exc:
        LOGGER.warning(
            "Ignoring pod %s/%s with unreadable %s annotation: %s",
            pod.namespace,
            pod.name,
            ANNOTATION_CREATED_BY,
            exc,
        )
        return None


def resolve_owned_pods(
    core_api: Any,
    kind: str,
    namespace: str,
    uid: str,
    selector: dict[str, str],
    **options: Any,
) -> list[PodSnapshot]:
    """Return the pods in *namespace* created by the controller ``(kind, uid)``.

    Two-stage filter: the label *selector* narrows the single list call
    (an empty selector lists every pod in the namespace), then each
    candidate's created-by reference must match both *kind* and *uid*.
    Pods without a readable reference are skipped.  The list order is kept.
    """
    label_selector = format_selector(selector)
    try:
        pod_list = core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=label_selector,
            **options,
        )
    except REMOTE_ERRORS as exc:
        raise convert_remote_error(
            exc, f"list pods in {namespace} (selector={label_selector!r})"
        ) from exc

    candidates = [PodSnapshot.from_pod(pod) for pod in getattr(pod_list, "items", None) or []]
    LOGGER.info(
        "Listed %d candidate pod(s) in %s for selector %r",
        len(candidates),
        namespace,
        label_selector,
    )

    owned: list[PodSnapshot] = []
    for pod in candidates:
        reference = owner_of(pod)
        if reference is None:
            continue
        if reference.matches(kind, uid):
            LOGGER.debug("Pod %s/%s belongs to %s %s", pod.namespace, pod.name, kind, uid)
            owned.append(pod)
    return owned
