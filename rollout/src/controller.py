from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from rollout.src.adapters import KindAdapter, adapter_for
from rollout.src.config import DEFAULT_NAMESPACE, RetryPolicy
from rollout.src.context import OperationContext, background
from rollout.src.errors import (
    REMOTE_ERRORS,
    BadParameterError,
    CancelledError,
    ConvergenceMismatchError,
    NotFoundError,
    convert_remote_error,
)
from rollout.src.kube import KubeClients
from rollout.src.metrics import METRICS
from rollout.src.ownership import resolve_owned_pods
from rollout.src.parse import Stream, decode, from_object
from rollout.src.resources import POD_RUNNING, PodSnapshot, Resource, field_of
from rollout.src.retry import retry


@dataclass
class RolloutConfig:
    """Inputs for a :class:`RolloutController`.

    Exactly one of ``reader`` (a YAML or JSON document) or ``resource``
    (a dict, a client model such as ``V1Deployment``, or a
    :class:`Resource`) is needed; ``resource`` wins when both are given.
    The controller works on its own copy, never on the caller's object.
    """

    kind: str
    clients: KubeClients | None = None
    reader: Stream | str | bytes | None = None
    resource: Any = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    namespace: str = DEFAULT_NAMESPACE

    def check_and_set_defaults(self) -> None:
        if self.reader is None and self.resource is None:
            raise BadParameterError("missing parameter reader or resource")
        if self.clients is None:
            raise BadParameterError("missing parameter clients")
        if not self.namespace:
            self.namespace = DEFAULT_NAMESPACE
        self.retry = self.retry.resolved()


class RolloutController:
    """Upsert, delete and track the rollout of one resource instance.

    The controller is generic: everything kind-specific (which client
    methods to call, where the selector lives, which counters signal
    convergence) comes from the :class:`KindAdapter` registered for the
    resource kind.

    State is never cached between calls.  Each operation re-reads the live
    object, so the in-memory :attr:`resource` is only the desired state.
    One controller should run at most one operation at a time; separate
    controllers may share a :class:`KubeClients` across threads.
    """

    def __init__(self, config: RolloutConfig, logger: logging.Logger | None = None) -> None:
        config.check_and_set_defaults()
        self.adapter: KindAdapter = adapter_for(config.kind)
        self.clients: KubeClients = config.clients  # type: ignore[assignment]
        self.retry_defaults = config.retry
        self.logger = logger or logging.getLogger(__name__)

        if isinstance(config.resource, Resource):
            if config.resource.kind != config.kind:
                raise BadParameterError(
                    f"expected a {config.kind} resource, got {config.resource.kind}"
                )
            self.resource = copy.deepcopy(config.resource)
        elif config.resource is not None:
            self.resource = from_object(config.resource, config.kind, config.namespace)
        else:
            self.resource = decode(config.reader, config.kind, config.namespace)

        if not self.resource.name:
            raise BadParameterError(f"{config.kind} document has no metadata.name")

    @property
    def kind(self) -> str:
        return self.adapter.kind

    def describe(self) -> str:
        return self.resource.describe()

    def _run(self, operation: str, fn: Callable[..., None], *args: Any) -> None:
        """Execute an operation and record its outcome."""
        try:
            fn(*args)
        except Exception as exc:
            if isinstance(exc, CancelledError):
                outcome = "cancelled"
            elif isinstance(exc, ConvergenceMismatchError):
                outcome = "not_converged"
            else:
                outcome = "error"
            METRICS.operations_total.labels(
                operation=operation, kind=self.kind, outcome=outcome
            ).inc()
            raise
        METRICS.operations_total.labels(operation=operation, kind=self.kind, outcome="success").inc()

    def _log_context(self, operation: str) -> dict[str, str]:
        return {"operation": operation, "resource": self.describe()}

    def _get_live(self, ctx: OperationContext, operation: str) -> Any:
        try:
            return self.adapter.get(
                self.clients,
                self.resource.namespace,
                self.resource.name,
                **ctx.request_options(),
            )
        except REMOTE_ERRORS as exc:
            raise convert_remote_error(exc, f"{operation} {self.describe()}") from exc

    def _collect_pods(self, live: Any, ctx: OperationContext) -> list[PodSnapshot]:
        """Resolve the pods created by the live instance (matched on its current UID)."""
        uid = str(field_of(live, "metadata", "uid") or "")
        selector = self.adapter.selector_of(self.resource)
        pods = resolve_owned_pods(
            self.clients.core,
            self.kind,
            self.resource.namespace,
            uid,
            selector,
            **ctx.request_options(),
        )
        self.logger.info("%s owns %d pod(s) (uid=%s)", self.describe(), len(pods), uid)
        return pods

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def upsert(self, ctx: OperationContext | None = None) -> None:
        """Create the resource if it is absent, otherwise replace it wholesale.

        Server-assigned identity (``uid``, ``selfLink``, ``resourceVersion``)
        is dropped first, so the submission is either a fresh create or an
        unconditional replace of the current live version.  Concurrent
        upserts of the same name are last-writer-wins.
        """
        self._run("upsert", self._upsert, ctx or background())

    def _upsert(self, ctx: OperationContext) -> None:
        self.logger.info("Upserting %s", self.describe(), extra=self._log_context("upsert"))
        self.resource.clear_identity()
        options = ctx.request_options()
        namespace = self.resource.namespace
        name = self.resource.name

        try:
            self.adapter.get(self.clients, namespace, name, **options)
        except REMOTE_ERRORS as exc:
            error = convert_remote_error(exc, f"get {self.describe()}")
            if not isinstance(error, NotFoundError):
                raise error from exc
            self.logger.info("%s not found, creating", self.describe())
            try:
                self.adapter.create(self.clients, namespace, self.resource.body(), **options)
            except REMOTE_ERRORS as create_exc:
                raise convert_remote_error(
                    create_exc, f"create {self.describe()}"
                ) from create_exc
            return

        self.logger.info("%s exists, replacing", self.describe())
        try:
            self.adapter.update(self.clients, namespace, name, self.resource.body(), **options)
        except REMOTE_ERRORS as exc:
            raise convert_remote_error(exc, f"update {self.describe()}") from exc

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(
        self,
        ctx: OperationContext | None = None,
        attempts: int = 0,
        period_seconds: float = 0,
    ) -> None:
        """Poll until the rollout converges.

        Zero ``attempts`` / ``period_seconds`` fall back to the controller's
        retry defaults.  Raises :class:`NotFoundError` if the resource is
        gone, and the last :class:`ConvergenceMismatchError` when the attempt
        budget runs out.
        """
        self._run("status", self._status, ctx or background(), attempts, period_seconds)

    def _status(self, ctx: OperationContext, attempts: int, period_seconds: float) -> None:
        policy = RetryPolicy(attempts=attempts, period_seconds=period_seconds).resolved(
            self.retry_defaults
        )
        self.logger.info(
            "Checking status of %s (attempts=%d, period=%.2fs)",
            self.describe(),
            policy.attempts,
            policy.period_seconds,
            extra=self._log_context("status"),
        )
        attempts_counter = METRICS.status_attempts_total.labels(kind=self.kind)

        def on_attempt(attempt: int) -> None:
            attempts_counter.inc()
            self.logger.debug(
                "Convergence check %d of %s",
                attempt,
                self.describe(),
                extra={**self._log_context("status"), "attempt": attempt},
            )

        started = time.monotonic()
        try:
            retry(
                ctx,
                policy.attempts,
                policy.period_seconds,
                lambda: self.check_converged(ctx),
                on_attempt=on_attempt,
            )
        finally:
            METRICS.status_duration_seconds.labels(kind=self.kind).observe(
                time.monotonic() - started
            )
        self.logger.info("%s has converged", self.describe())

    def check_converged(self, ctx: OperationContext | None = None) -> None:
        """Run one convergence check against the live state.

        Raises :class:`ConvergenceMismatchError` while the rollout is still
        in progress; returns ``None`` once it is done.
        """
        ctx = ctx or background()
        live = self._get_live(ctx, "status")

        replica_info = self.adapter.replica_info_of(live)
        if replica_info is not None and not replica_info.converged:
            raise ConvergenceMismatchError(f"{self.describe()}: {replica_info.mismatch()}")

        if not self.adapter.require_running_pods:
            return
        for pod in self._collect_pods(live, ctx):
            if pod.phase != POD_RUNNING:
                raise ConvergenceMismatchError(
                    f"{self.describe()}: pod {pod.name} is not running yet: {pod.phase}"
                )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, ctx: OperationContext | None = None, cascade: bool = True) -> None:
        """Delete the resource and then every pod it created.

        Owned pods are resolved while the resource still exists, because
        the match uses the live UID.  ``cascade`` is only logged: pods are
        deleted either way.  The first pod deletion failure is raised and
        the remaining pods are left for a later call.
        """
        self._run("delete", self._delete, ctx or background(), cascade)

    def _delete(self, ctx: OperationContext, cascade: bool) -> None:
        self.logger.info(
            "Deleting %s (cascade=%s)",
            self.describe(),
            cascade,
            extra=self._log_context("delete"),
        )
        live = self._get_live(ctx, "delete")
        pods = self._collect_pods(live, ctx) if self.adapter.owns_pods else []

        options = ctx.request_options()
        try:
            self.adapter.delete(
                self.clients, self.resource.namespace, self.resource.name, **options
            )
        except REMOTE_ERRORS as exc:
            raise convert_remote_error(exc, f"delete {self.describe()}") from exc

        if not cascade:
            self.logger.info("cascade not set for %s", self.describe())

        self.logger.info("Deleting %d pod(s) of %s", len(pods), self.describe())
        pods_deleted = METRICS.pods_deleted_total.labels(kind=self.kind)
        for pod in pods:
            namespace = pod.namespace or self.resource.namespace
            self.logger.info("Deleting pod %s/%s", namespace, pod.name)
            try:
                self.clients.core.delete_namespaced_pod(
                    name=pod.name, namespace=namespace, **options
                )
            except REMOTE_ERRORS as exc:
                raise convert_remote_error(
                    exc, f"delete pod {namespace}/{pod.name} of {self.describe()}"
                ) from exc
            pods_deleted.inc()


def new_controller(
    kind: str,
    clients: KubeClients | None,
    *,
    reader: Stream | str | bytes | None = None,
    resource: Any = None,
    retry_policy: RetryPolicy | None = None,
    namespace: str = DEFAULT_NAMESPACE,
    logger: logging.Logger | None = None,
) -> RolloutController:
    """Build a controller for *kind* from a document stream or a parsed resource."""
    return RolloutController(
        RolloutConfig(
            kind=kind,
            clients=clients,
            reader=reader,
            resource=resource,
            retry=retry_policy or RetryPolicy(),
            namespace=namespace,
        ),
        logger=logger,
    )
