"""Error types raised by App Link.

Three families matter to the session:

* transport failures (:class:`TransportError`): the remote could not be
  reached at all;
* remote answers (:class:`RemoteError` and subclasses): the remote replied
  with an error payload, some of which (``initial_link_required``,
  ``build_in_progress``) are recoverable protocol conditions;
* fatal setup failures, meaning everything else that aborts the session.
"""

from __future__ import annotations

from typing import Any

INITIAL_LINK_REQUIRED = "initial_link_required"
BUILD_IN_PROGRESS = "build_in_progress"
ROUTING_ERROR = "routing_error"
LINK_ON_PRODUCTION = "link_on_production"


class LinkError(Exception):
    """Base class for every App Link error."""


class CommandError(LinkError):
    """A user-facing failure with an actionable message."""


class ConfigError(LinkError):
    """Configuration is missing or invalid."""


class ManifestError(LinkError):
    """The app manifest is missing or malformed."""


class TransportError(LinkError):
    """The remote service could not be reached."""


class RemoteError(LinkError):
    """The remote service answered with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        data: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.data = data or {}


class InitialLinkRequired(RemoteError):
    """The remote holds no state for the app; a full link must be redone."""


class BuildInProgress(RemoteError):
    """A build for the app is already running remotely."""


class BuilderVersionError(LinkError):
    """The builder accepted the request with an unexpected code."""


class WatcherError(LinkError):
    """The filesystem watcher could not be started."""


class EventStreamError(LinkError):
    """The build event stream failed or was dropped."""


_REMOTE_ERRORS: dict[str, type[RemoteError]] = {
    INITIAL_LINK_REQUIRED: InitialLinkRequired,
    BUILD_IN_PROGRESS: BuildInProgress,
}


def remote_error_for(
    status_code: int | None, data: dict[str, Any] | None, fallback: str = ""
) -> RemoteError:
    """Build the most specific :class:`RemoteError` for an error payload."""
    data = data or {}
    code = data.get("code")
    message = data.get("message") or fallback or f"Remote error {status_code}"
    cls = _REMOTE_ERRORS.get(code or "", RemoteError)
    return cls(message, status_code=status_code, code=code, data=data)
