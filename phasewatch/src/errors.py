from __future__ import annotations

from kubernetes.client import ApiException

AUTH_FAILURE_STATUSES = frozenset({401, 403})
HTTP_GONE = 410


class PhaseWatchError(Exception):
    """Base class for every error the watch loop distinguishes."""

    fatal = False


class MalformedEvent(PhaseWatchError):
    """A watch event payload lacks a field needed to detect a phase change.

    ``resource_version`` carries the event's version when it was readable so
    the resume token can still advance past the skipped event.
    """

    def __init__(self, message: str, resource_version: str | None = None) -> None:
        super().__init__(message)
        self.resource_version = resource_version


class TransientStreamError(PhaseWatchError):
    """The API call or stream failed in a way that may succeed on retry."""


class ResumeTokenExpired(PhaseWatchError):
    """The resume resourceVersion is older than the server's watch window (410 Gone)."""


class AuthError(PhaseWatchError):
    """The API rejected our credentials or RBAC permissions (401/403)."""

    fatal = True


class ConfigError(PhaseWatchError, ValueError):
    """Raised when the watcher configuration is invalid or cannot be loaded."""

    fatal = True


def classify_status(status: int | None, reason: str = "") -> PhaseWatchError:
    """Map an HTTP status code from the Kubernetes API onto the error taxonomy."""
    detail = f"status={status} reason={reason}" if reason else f"status={status}"
    if status == HTTP_GONE:
        return ResumeTokenExpired(detail)
    if status in AUTH_FAILURE_STATUSES:
        return AuthError(detail)
    return TransientStreamError(detail)


def classify_api_exception(exc: ApiException) -> PhaseWatchError:
    return classify_status(exc.status, str(exc.reason or ""))
