from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from prometheus_client import REGISTRY
from urllib3.exceptions import MaxRetryError

from rollout.src import resources as kinds
from rollout.src.adapters import ADAPTERS
from rollout.src.config import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_PERIOD_SECONDS, RetryPolicy
from rollout.src.context import OperationContext
from rollout.src.controller import RolloutConfig, RolloutController, new_controller
from rollout.src.errors import (
    BadParameterError,
    CancelledError,
    ConvergenceMismatchError,
    NotFoundError,
    RemoteError,
)
from rollout.src.resources import Resource
from rollout.tests.fakes import (
    FakeCoreApi,
    FakeResourceApi,
    make_clients,
    make_live,
    make_pod,
)

DEPLOYMENT_YAML = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
  namespace: default
  uid: stale-uid
  resourceVersion: "41"
  selfLink: /apis/apps/v1/namespaces/default/deployments/web
spec:
  replicas: 3
  selector:
    matchLabels:
      app: web
  template:
    metadata:
      labels:
        app: web
"""


def _deployment_controller(
    objects: dict[tuple[str, str], Any] | None = None,
    pods: list[Any] | None = None,
    calls: list[tuple[str, str]] | None = None,
) -> tuple[RolloutController, FakeResourceApi, FakeCoreApi]:
    apps = FakeResourceApi("deployment", objects=objects, calls=calls)
    core = FakeCoreApi(pods=pods, calls=calls)
    controller = new_controller(
        kinds.KIND_DEPLOYMENT,
        make_clients(core=core, apps=apps),
        reader=DEPLOYMENT_YAML,
    )
    return controller, apps, core


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_requires_reader_or_resource() -> None:
    with pytest.raises(BadParameterError, match="reader or resource"):
        RolloutController(RolloutConfig(kind=kinds.KIND_DEPLOYMENT, clients=make_clients()))


def test_requires_clients() -> None:
    with pytest.raises(BadParameterError, match="clients"):
        RolloutController(RolloutConfig(kind=kinds.KIND_DEPLOYMENT, reader=DEPLOYMENT_YAML))


def test_rejects_unknown_kind() -> None:
    with pytest.raises(BadParameterError, match="unsupported"):
        new_controller("CronTab", make_clients(), resource={"metadata": {"name": "x"}})


def test_rejects_document_without_name() -> None:
    with pytest.raises(BadParameterError, match="metadata.name"):
        new_controller(kinds.KIND_CONFIG_MAP, make_clients(), resource={"data": {}})


def test_accepts_pre_parsed_resource_and_defaults_namespace() -> None:
    controller = new_controller(
        kinds.KIND_CONFIG_MAP,
        make_clients(),
        resource={"metadata": {"name": "settings"}, "data": {"a": "b"}},
    )

    assert controller.resource.namespace == "default"
    assert controller.describe() == "ConfigMap default/settings"


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------


def test_upsert_creates_when_absent_and_clears_identity() -> None:
    controller, apps, _ = _deployment_controller()

    controller.upsert()

    assert [call[0] for call in apps.calls] == ["read", "create"]
    metadata = apps.created[0]["metadata"]
    assert metadata["name"] == "web"
    assert "uid" not in metadata
    assert "resourceVersion" not in metadata
    assert "selfLink" not in metadata
    assert controller.resource.uid == ""


def test_upsert_replaces_when_present_and_clears_identity() -> None:
    controller, apps, _ = _deployment_controller(objects={("default", "web"): make_live()})

    controller.upsert()

    assert [call[0] for call in apps.calls] == ["read", "replace"]
    body = apps.replaced[0]
    assert body["spec"]["replicas"] == 3
    assert body["kind"] == "Deployment"
    assert not {"uid", "resourceVersion", "selfLink"} & set(body["metadata"])


def test_upsert_propagates_non_404_read_errors() -> None:
    controller, apps, _ = _deployment_controller()
    apps.read_error = ApiException(status=403, reason="Forbidden")

    with pytest.raises(RemoteError, match="403") as excinfo:
        controller.upsert()

    assert excinfo.value.status == 403
    assert apps.created == []
    assert apps.replaced == []


def test_upsert_wraps_create_failures() -> None:
    controller, apps, _ = _deployment_controller()
    apps.write_error = ApiException(status=422, reason="Unprocessable Entity")

    with pytest.raises(RemoteError, match="create Deployment default/web"):
        controller.upsert()


def test_upsert_records_success_metric() -> None:
    labels = {"operation": "upsert", "kind": "Deployment", "outcome": "success"}
    before = _sample("rollout_operations_total", labels)
    controller, _, _ = _deployment_controller()

    controller.upsert()

    assert _sample("rollout_operations_total", labels) == before + 1


def test_upsert_forwards_deadline_as_request_timeout() -> None:
    controller, apps, _ = _deployment_controller()

    controller.upsert(OperationContext(timeout_seconds=30))

    timeout = apps.request_options[0]["_request_timeout"]
    assert 0 < timeout <= 30


_TYPED_KINDS = [kind for kind in kinds.ALL_KINDS if kind != kinds.KIND_POD_SECURITY_POLICY]


@pytest.mark.parametrize("kind", _TYPED_KINDS)
@pytest.mark.parametrize("exists", [False, True])
def test_upsert_dispatch_for_every_kind(kind: str, exists: bool) -> None:
    adapter = ADAPTERS[kind]
    namespace = "" if adapter.cluster_scoped else "default"
    objects = {(namespace, "thing"): SimpleNamespace()} if exists else {}
    api = FakeResourceApi(adapter.resource, objects=objects, cluster_scoped=adapter.cluster_scoped)
    controller = new_controller(
        kind,
        make_clients(**{adapter.api: api}),
        resource={
            "metadata": {"name": "thing", "uid": "u-1", "resourceVersion": "9"},
        },
    )

    controller.upsert()

    submitted = api.replaced if exists else api.created
    assert len(submitted) == 1
    assert [call[0] for call in api.calls] == ["read", "replace" if exists else "create"]
    assert submitted[0]["kind"] == kind
    assert "uid" not in submitted[0]["metadata"]
    assert "resourceVersion" not in submitted[0]["metadata"]


@pytest.mark.parametrize("exists", [False, True])
def test_upsert_pod_security_policy_uses_custom_objects_api(exists: bool) -> None:
    custom = MagicMock()
    if not exists:
        custom.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    controller = new_controller(
        kinds.KIND_POD_SECURITY_POLICY,
        make_clients(custom=custom),
        resource={"apiVersion": "policy/v1beta1", "metadata": {"name": "restricted"}},
    )

    controller.upsert()

    expected_path = {"group": "policy", "version": "v1beta1", "plural": "podsecuritypolicies"}
    if exists:
        call = custom.replace_cluster_custom_object.call_args
        assert call.kwargs["name"] == "restricted"
        custom.create_cluster_custom_object.assert_not_called()
    else:
        call = custom.create_cluster_custom_object.call_args
        custom.replace_cluster_custom_object.assert_not_called()
    for key, value in expected_path.items():
        assert call.kwargs[key] == value
    assert "namespace" not in call.kwargs["body"]["metadata"]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def test_status_converges_on_first_attempt() -> None:
    live = make_live(uid="uid-1", replicas=3, updated_replicas=3)
    pods = [make_pod(f"web-{i}", owner=("Deployment", "uid-1")) for i in range(3)]
    controller, apps, core = _deployment_controller(
        objects={("default", "web"): live}, pods=pods
    )

    controller.status(attempts=5, period_seconds=0.001)

    assert [call[0] for call in apps.calls] == ["read"]
    assert core.selectors == ["app=web"]


def test_status_exhausts_on_replica_mismatch_and_reports_counts() -> None:
    live = make_live(uid="uid-1", replicas=3, updated_replicas=2)
    controller, apps, _ = _deployment_controller(objects={("default", "web"): live})

    with pytest.raises(ConvergenceMismatchError) as excinfo:
        controller.status(attempts=3, period_seconds=0.001)

    message = str(excinfo.value)
    assert "expected replicas: 3" in message
    assert "updated: 2" in message
    assert len(apps.calls) == 3


def test_status_defaults_missing_replicas_to_one() -> None:
    live = make_live(uid="uid-1", replicas=None, updated_replicas=1)
    controller, _, _ = _deployment_controller(
        objects={("default", "web"): live},
        pods=[make_pod("web-0", owner=("Deployment", "uid-1"))],
    )

    controller.status(attempts=1, period_seconds=0.001)


def test_status_waits_for_pods_to_run() -> None:
    live = make_live(uid="uid-1", replicas=2, updated_replicas=2)
    pods = [
        make_pod("web-0", owner=("Deployment", "uid-1")),
        make_pod("web-1", phase="Pending", owner=("Deployment", "uid-1")),
    ]
    controller, _, core = _deployment_controller(objects={("default", "web"): live}, pods=pods)

    def promote() -> None:
        if len(core.selectors) == 2:
            core.pods[1] = make_pod("web-1", owner=("Deployment", "uid-1"))

    core.on_list = promote

    controller.status(attempts=5, period_seconds=0.001)

    assert len(core.selectors) == 2


def test_status_reports_last_pending_pod() -> None:
    live = make_live(uid="uid-1", replicas=1, updated_replicas=1)
    pods = [make_pod("web-0", phase="Pending", owner=("Deployment", "uid-1"))]
    controller, _, _ = _deployment_controller(objects={("default", "web"): live}, pods=pods)

    with pytest.raises(ConvergenceMismatchError, match="pod web-0 is not running yet: Pending"):
        controller.status(attempts=2, period_seconds=0.001)


def test_status_ignores_pods_from_previous_instance() -> None:
    live = make_live(uid="uid-new", replicas=1, updated_replicas=1)
    pods = [
        make_pod("web-old", phase="Failed", owner=("Deployment", "uid-old")),
        make_pod("web-new", owner=("Deployment", "uid-new")),
    ]
    controller, _, _ = _deployment_controller(objects={("default", "web"): live}, pods=pods)

    controller.status(attempts=1, period_seconds=0.001)


def test_status_not_found_is_fatal() -> None:
    controller, apps, _ = _deployment_controller()

    with pytest.raises(NotFoundError, match="status Deployment default/web"):
        controller.status(attempts=5, period_seconds=0.001)

    assert len(apps.calls) == 1


def test_status_zero_parameters_match_defaults() -> None:
    controller, _, _ = _deployment_controller()

    with patch("rollout.src.controller.retry") as mock_retry:
        controller.status(attempts=0, period_seconds=0)
        controller.status(
            attempts=DEFAULT_RETRY_ATTEMPTS, period_seconds=DEFAULT_RETRY_PERIOD_SECONDS
        )

    first, second = mock_retry.call_args_list
    assert first.args[1:3] == second.args[1:3]
    assert first.args[1:3] == (DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_PERIOD_SECONDS)


def test_status_zero_parameters_use_configured_policy() -> None:
    controller = new_controller(
        kinds.KIND_DEPLOYMENT,
        make_clients(apps=FakeResourceApi("deployment")),
        reader=DEPLOYMENT_YAML,
        retry_policy=RetryPolicy(attempts=7, period_seconds=0.5),
    )

    with patch("rollout.src.controller.retry") as mock_retry:
        controller.status()

    assert mock_retry.call_args.args[1:3] == (7, 0.5)


def test_status_honours_cancellation() -> None:
    live = make_live(uid="uid-1", replicas=3, updated_replicas=0)
    controller, apps, _ = _deployment_controller(objects={("default", "web"): live})
    stop = threading.Event()
    stop.set()

    with pytest.raises(CancelledError):
        controller.status(OperationContext(stop_event=stop), attempts=10, period_seconds=30)

    assert len(apps.calls) == 1


def test_job_converges_on_succeeded_completions_without_pod_checks() -> None:
    batch = FakeResourceApi(
        "job",
        objects={
            ("default", "migrate"): SimpleNamespace(
                metadata=SimpleNamespace(uid="job-uid"),
                spec=SimpleNamespace(completions=2),
                status=SimpleNamespace(succeeded=2),
            )
        },
    )
    core = FakeCoreApi(pods=[make_pod("migrate-x", phase="Succeeded", owner=("Job", "job-uid"))])
    controller = new_controller(
        kinds.KIND_JOB,
        make_clients(core=core, batch=batch),
        resource={"metadata": {"name": "migrate"}},
    )

    controller.status(attempts=1, period_seconds=0.001)

    assert core.selectors == []


def test_job_mismatch_mentions_succeeded_count() -> None:
    batch = FakeResourceApi(
        "job",
        objects={
            ("default", "migrate"): SimpleNamespace(
                metadata=SimpleNamespace(uid="job-uid"),
                spec=SimpleNamespace(completions=None),
                status=SimpleNamespace(succeeded=None),
            )
        },
    )
    controller = new_controller(
        kinds.KIND_JOB,
        make_clients(batch=batch),
        resource={"metadata": {"name": "migrate"}},
    )

    with pytest.raises(ConvergenceMismatchError, match="expected replicas: 1, succeeded: 0"):
        controller.status(attempts=1, period_seconds=0.001)


def test_daemon_set_uses_scheduled_counters() -> None:
    apps = FakeResourceApi(
        "daemon_set",
        objects={
            ("kube-system", "agent"): SimpleNamespace(
                metadata=SimpleNamespace(uid="ds-uid"),
                spec=SimpleNamespace(),
                status=SimpleNamespace(desired_number_scheduled=4, updated_number_scheduled=3),
            )
        },
    )
    controller = new_controller(
        kinds.KIND_DAEMON_SET,
        make_clients(apps=apps),
        resource={
            "metadata": {"name": "agent", "namespace": "kube-system"},
            "spec": {"selector": {"matchLabels": {"app": "agent"}}},
        },
    )

    with pytest.raises(ConvergenceMismatchError, match="expected replicas: 4, updated scheduled: 3"):
        controller.status(attempts=1, period_seconds=0.001)


def test_replication_controller_uses_plain_selector() -> None:
    core = FakeCoreApi(pods=[make_pod("rc-1", owner=("ReplicationController", "rc-uid"))])
    rc_api = FakeResourceApi(
        "replication_controller",
        objects={
            ("default", "legacy"): SimpleNamespace(
                metadata=SimpleNamespace(uid="rc-uid"),
                spec=SimpleNamespace(replicas=1),
                status=SimpleNamespace(replicas=1),
            )
        },
    )
    # The core API serves both pods and replication controllers.
    core.read_namespaced_replication_controller = rc_api.read_namespaced_replication_controller
    controller = new_controller(
        kinds.KIND_REPLICATION_CONTROLLER,
        make_clients(core=core),
        resource={"metadata": {"name": "legacy"}, "spec": {"selector": {"app": "legacy"}}},
    )

    controller.status(attempts=1, period_seconds=0.001)

    assert core.selectors == ["app=legacy"]


def test_config_kinds_converge_once_present() -> None:
    core = FakeCoreApi()
    secrets = FakeResourceApi("secret", objects={("default", "creds"): SimpleNamespace()})
    core.read_namespaced_secret = secrets.read_namespaced_secret
    controller = new_controller(
        kinds.KIND_SECRET,
        make_clients(core=core),
        resource={"metadata": {"name": "creds"}},
    )

    controller.status(attempts=1, period_seconds=0.001)

    assert core.selectors == []


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


def test_delete_resolves_pods_before_deleting_resource() -> None:
    calls: list[tuple[str, str]] = []
    live = make_live(uid="uid-1")
    pods = [
        make_pod("web-0", owner=("Deployment", "uid-1")),
        make_pod("web-other", owner=("Deployment", "uid-0")),
        make_pod("web-1", owner=("Deployment", "uid-1")),
    ]
    controller, apps, core = _deployment_controller(
        objects={("default", "web"): live}, pods=pods, calls=calls
    )

    def resource_still_present() -> None:
        assert apps.objects[("default", "web")].metadata.uid == "uid-1"

    core.on_list = resource_still_present

    controller.delete()

    assert calls == [
        ("read", "web"),
        ("list_pods", "app=web"),
        ("delete", "web"),
        ("delete_pod", "web-0"),
        ("delete_pod", "web-1"),
    ]
    assert apps.objects == {}


def test_delete_stops_at_first_pod_failure() -> None:
    pods = [make_pod(f"web-{i}", owner=("Deployment", "uid-1")) for i in range(3)]
    controller, apps, core = _deployment_controller(
        objects={("default", "web"): make_live(uid="uid-1")}, pods=pods
    )
    core.fail_delete["web-1"] = ApiException(status=500, reason="boom")

    with pytest.raises(RemoteError, match="delete pod default/web-1"):
        controller.delete()

    assert apps.objects == {}
    assert core.deleted_pods == ["web-0"]


def test_delete_without_cascade_still_deletes_pods(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level("INFO")
    pods = [make_pod("web-0", owner=("Deployment", "uid-1"))]
    controller, _, core = _deployment_controller(
        objects={("default", "web"): make_live(uid="uid-1")}, pods=pods
    )

    controller.delete(cascade=False)

    assert core.deleted_pods == ["web-0"]
    assert "cascade not set" in caplog.text


def test_delete_missing_resource_is_fatal() -> None:
    controller, _, core = _deployment_controller()

    with pytest.raises(NotFoundError):
        controller.delete()

    assert core.selectors == []


def test_delete_config_kind_skips_pod_resolution() -> None:
    core = FakeCoreApi()
    maps = FakeResourceApi("config_map", objects={("default", "settings"): SimpleNamespace()})
    core.read_namespaced_config_map = maps.read_namespaced_config_map
    core.delete_namespaced_config_map = maps.delete_namespaced_config_map
    controller = new_controller(
        kinds.KIND_CONFIG_MAP,
        make_clients(core=core),
        resource={"metadata": {"name": "settings"}},
    )

    controller.delete()

    assert maps.objects == {}
    assert core.selectors == []


def test_delete_cluster_scoped_kind_omits_namespace() -> None:
    rbac = MagicMock()
    controller = new_controller(
        kinds.KIND_CLUSTER_ROLE,
        make_clients(rbac=rbac),
        resource={"metadata": {"name": "reader"}},
    )

    controller.delete()

    rbac.read_cluster_role.assert_called_once_with(name="reader")
    rbac.delete_cluster_role.assert_called_once_with(name="reader")


def test_delete_records_pod_metric() -> None:
    labels = {"kind": "Deployment"}
    before = _sample("rollout_pods_deleted_total", labels)
    pods = [make_pod(f"web-{i}", owner=("Deployment", "uid-1")) for i in range(2)]
    controller, _, _ = _deployment_controller(
        objects={("default", "web"): make_live(uid="uid-1")}, pods=pods
    )

    controller.delete()

    assert _sample("rollout_pods_deleted_total", labels) == before + 2


# ---------------------------------------------------------------------------
# Descriptor ownership
# ---------------------------------------------------------------------------


def test_upsert_leaves_caller_document_untouched() -> None:
    document = {"metadata": {"name": "web", "uid": "u1", "resourceVersion": "7"}}
    apps = FakeResourceApi("deployment")
    first = new_controller(kinds.KIND_DEPLOYMENT, make_clients(apps=apps), resource=document)
    second = new_controller(kinds.KIND_DEPLOYMENT, make_clients(apps=apps), resource=document)

    first.upsert()

    assert document == {"metadata": {"name": "web", "uid": "u1", "resourceVersion": "7"}}
    assert first.resource.document is not second.resource.document
    assert second.resource.uid == "u1"


def test_controllers_built_from_one_resource_do_not_share_it() -> None:
    shared = Resource(kind=kinds.KIND_CONFIG_MAP, document={"metadata": {"name": "settings"}})

    first = new_controller(kinds.KIND_CONFIG_MAP, make_clients(), resource=shared)
    second = new_controller(kinds.KIND_CONFIG_MAP, make_clients(), resource=shared)

    assert first.resource is not shared
    assert first.resource.document is not second.resource.document


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------


def _unreachable() -> MaxRetryError:
    return MaxRetryError(None, "/apis/apps/v1/namespaces/default/deployments/web")


def test_status_does_not_retry_unreachable_api_server() -> None:
    controller, apps, _ = _deployment_controller(objects={("default", "web"): make_live()})
    apps.read_error = _unreachable()

    with pytest.raises(RemoteError, match="status Deployment default/web") as excinfo:
        controller.status(attempts=4, period_seconds=0.001)

    assert apps.calls == [("read", "web")]
    assert excinfo.value.status is None
    assert isinstance(excinfo.value.__cause__, MaxRetryError)


def test_upsert_wraps_transport_failures() -> None:
    controller, apps, _ = _deployment_controller()
    apps.read_error = _unreachable()

    with pytest.raises(RemoteError, match="get Deployment default/web"):
        controller.upsert()

    assert apps.created == []


def test_upsert_wraps_socket_errors_on_write() -> None:
    controller, apps, _ = _deployment_controller()
    apps.write_error = ConnectionResetError("connection reset by peer")

    with pytest.raises(RemoteError, match="create Deployment default/web: connection reset"):
        controller.upsert()


def test_delete_wraps_transport_failure_listing_pods() -> None:
    controller, apps, core = _deployment_controller(
        objects={("default", "web"): make_live(uid="uid-1")}
    )
    core.fail_list = _unreachable()

    with pytest.raises(RemoteError, match="list pods in default"):
        controller.delete()

    assert ("default", "web") in apps.objects


def test_delete_wraps_transport_failure_deleting_pod() -> None:
    pods = [make_pod("web-1", owner=("Deployment", "uid-1"))]
    controller, _, core = _deployment_controller(
        objects={("default", "web"): make_live(uid="uid-1")}, pods=pods
    )
    core.fail_delete["web-1"] = TimeoutError("timed out")

    with pytest.raises(RemoteError, match="delete pod default/web-1 of Deployment default/web"):
        controller.delete()


def test_transport_failure_records_error_outcome() -> None:
    labels = {"operation": "upsert", "kind": "Deployment", "outcome": "error"}
    before = _sample("rollout_operations_total", labels)
    controller, apps, _ = _deployment_controller()
    apps.read_error = _unreachable()

    with pytest.raises(RemoteError):
        controller.upsert()

    assert _sample("rollout_operations_total", labels) == before + 1
