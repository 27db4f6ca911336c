from __future__ import annotations

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError


class RolloutError(Exception):
    """Base class for every error raised by the rollout controller.

    ``retryable`` tells the retry engine whether another attempt may succeed.
    Only convergence mismatches are retryable; everything else ends the loop.
    """

    retryable = False


class NotFoundError(RolloutError):
    """The resource or pod does not exist on the control plane."""


class BadParameterError(RolloutError, ValueError):
    """The caller supplied an incomplete or inconsistent configuration."""


class ConvergenceMismatchError(RolloutError):
    """The live state does not (yet) match what a finished rollout implies."""

    retryable = True


class RemoteError(RolloutError):
    """Any non-404 API failure, or a transport failure reaching the API server.

    ``status`` is the HTTP status when the server answered, else ``None``.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class CancelledError(RolloutError):
    """The operation context was cancelled or its deadline passed."""


class DecodeError(RolloutError):
    """A resource document could not be decoded."""


# Raised by the client when the API server cannot be reached at all
# (connection refused, TLS failure, read timeout, retries exhausted).
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (HTTPError, OSError)
REMOTE_ERRORS: tuple[type[Exception], ...] = (ApiException, *TRANSPORT_ERRORS)


def convert_remote_error(exc: Exception, context: str) -> RolloutError:
    """Map a client failure onto the rollout error taxonomy.

    ``context`` names the operation and resource, e.g.
    ``"get Deployment default/web"``.
    """
    if not isinstance(exc, ApiException):
        return RemoteError(f"{context}: {exc}")
    if exc.status == 404:
        return NotFoundError(f"{context}: not found")
    return RemoteError(f"{context}: {exc.status} {exc.reason}", status=exc.status)
