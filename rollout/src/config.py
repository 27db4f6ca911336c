from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_NAMESPACE = "default"
DEFAULT_RETRY_ATTEMPTS = 60
DEFAULT_RETRY_PERIOD_SECONDS = 1.0
# Prefix sniffed to tell JSON documents from YAML ones.
DEFAULT_BUFFER_SIZE = 1024


class ConfigError(ValueError):
    """Raised when the runtime configuration is invalid."""


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and fixed period for status polling.

    A zero value means "use the default"; :meth:`resolved` makes that
    substitution explicit so callers never pass zeros further down.
    """

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    period_seconds: float = DEFAULT_RETRY_PERIOD_SECONDS

    def resolved(self, defaults: RetryPolicy | None = None) -> RetryPolicy:
        base = defaults or RetryPolicy()
        attempts = self.attempts or base.attempts
        period = self.period_seconds or base.period_seconds
        if attempts < 1:
            raise ConfigError(f"retry attempts must be >= 1, got: {attempts}")
        if period < 0:
            raise ConfigError(f"retry period must be >= 0, got: {period}")
        return RetryPolicy(attempts=attempts, period_seconds=period)


@dataclass(frozen=True)
class RolloutSettings:
    """Immutable process configuration loaded at startup.

    Attributes:
        retry:          Default Status polling policy.
        namespace:      Namespace used when a document does not name one.
        kube_context:   kubeconfig context for out-of-cluster runs.
        log_level:      Root logger level name.
    """

    retry: RetryPolicy
    namespace: str = DEFAULT_NAMESPACE
    kube_context: str | None = None
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> RolloutSettings:
    """Load settings from the environment.

    Environment variables (with defaults):
        ``ROLLOUT_RETRY_ATTEMPTS``       -- Status attempt budget (``60``).
        ``ROLLOUT_RETRY_PERIOD_SECONDS`` -- Seconds between attempts (``1.0``).
        ``ROLLOUT_NAMESPACE``            -- Fallback namespace (``default``).
        ``KUBE_CONTEXT``                 -- kubeconfig context (unset).
        ``LOG_LEVEL``                    -- Log level (``INFO``).
    """
    values = env if env is not None else os.environ

    attempts = env_int(values, "ROLLOUT_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS, minimum=1)
    period = env_float(
        values, "ROLLOUT_RETRY_PERIOD_SECONDS", DEFAULT_RETRY_PERIOD_SECONDS, minimum=0.001
    )

    namespace = values.get("ROLLOUT_NAMESPACE", DEFAULT_NAMESPACE).strip()
    if not namespace:
        raise ConfigError("ROLLOUT_NAMESPACE must be a non-empty string")

    kube_context = (values.get("KUBE_CONTEXT") or "").strip() or None
    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return RolloutSettings(
        retry=RetryPolicy(attempts=attempts, period_seconds=period),
        namespace=namespace,
        kube_context=kube_context,
        log_level=log_level,
    )
