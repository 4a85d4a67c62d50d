"""HTTP client for the remote build service.

Wraps the builder operations App Link needs, plus the availability probe
used to pick a sticky backend before each full link.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app_link import __version__
from app_link.errors import LinkError, TransportError, remote_error_for
from app_link.files import FileEntry
from app_link.queue import Change

logger = logging.getLogger(__name__)

BUILD_ACCEPTED = "build.accepted"
STICKY_HEADER = "X-Sticky-Host"
BUILDER_PATH = "/_v/builder/0"


def format_nano(nanoseconds: int) -> str:
    """Render a server-side duration, e.g. ``2s 345ms``."""
    seconds, rest = divmod(int(nanoseconds), 1_000_000_000)
    return f"{seconds}s {rest // 1_000_000}ms"


class BuilderClient:
    """Client for the builder's link endpoints.

    Parameters
    ----------
    base_url : str
        Root URL of the build service.
    token : str
        Bearer token for the authenticated channel.
    timeout : float
        Default read timeout in seconds.
    max_retries : int
        Connection retries for idempotent GETs.  Link and relink requests
        are never retried automatically.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 60.0,
        max_retries: int = 3,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.sticky_host: str | None = None

        self.session = session or requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers["User-Agent"] = f"app-link/{__version__}"
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        self.session.close()

    # ---- transport ----

    def _url(self, action: str, app_id: str) -> str:
        return f"{self.base_url}{BUILDER_PATH}/{action}/{app_id}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        hdrs = dict(headers or {})
        if self.sticky_host and STICKY_HEADER not in hdrs:
            hdrs[STICKY_HEADER] = self.sticky_host
        try:
            response = self.session.request(
                method,
                url,
                headers=hdrs,
                timeout=(10, timeout or self.timeout),
                **kwargs,
            )
        except requests.exceptions.Timeout as exc:
            raise TransportError(f"Request to {url} timed out: {exc}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransportError(f"Could not connect to {url}: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Network error on {url}: {exc}") from exc

        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                data = {}
            raise remote_error_for(
                response.status_code,
                data,
                f"{method} {url} failed with status {response.status_code}: "
                f"{response.text[:200]}",
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ---- builder operations ----

    def link_app(
        self,
        app_id: str,
        files: Iterable[FileEntry],
        sticky: bool = True,
        sticky_hint: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Upload the full file set of *app_id*.

        When *sticky* is set, the backend that handled the link is pinned
        for the following requests through the sticky-host header.
        """
        headers = {}
        if sticky:
            self.sticky_host = None
            if sticky_hint:
                headers[STICKY_HEADER] = sticky_hint
        payload = {"files": [f.to_payload() for f in files]}
        response = self._request(
            "POST", self._url("link", app_id), json=payload, headers=headers, timeout=timeout
        )
        if sticky:
            self.sticky_host = response.headers.get(STICKY_HEADER) or sticky_hint
        return self._json(response)

    def relink_app(self, app_id: str, changes: Iterable[Change]) -> dict[str, Any]:
        """Send an incremental batch of changes for *app_id*."""
        payload = [c.to_payload() for c in changes]
        response = self._request("PUT", self._url("relink", app_id), json=payload)
        return self._json(response)

    def clean(self, app_id: str) -> dict[str, Any]:
        """Ask the builder to drop its cache for *app_id*."""
        response = self._request("POST", self._url("clean", app_id))
        return self._json(response)

    # ---- sticky host selection ----

    def availability(
        self, app_id: str, hint: str, timeout: float = 1.0
    ) -> dict[str, Any]:
        """Probe the backend the load balancer routes *hint* to."""
        response = self._request(
            "GET",
            self._url("availability", app_id),
            headers={STICKY_HEADER: hint},
            timeout=timeout,
        )
        data = self._json(response)
        data.setdefault("host", response.headers.get(STICKY_HEADER) or hint)
        return data

    def most_available_host(
        self, app_id: str, n_hosts: int = 3, timeout: float = 1.0
    ) -> str | None:
        """Return the sticky hint of the best-scoring of *n_hosts* backends.

        Returns None when no backend answered in time; the builder then
        picks one itself.
        """
        hints = [f"request:{app_id}:{i}" for i in range(n_hosts)]

        def _probe(hint: str) -> tuple[float, str] | None:
            try:
                data = self.availability(app_id, hint, timeout=timeout)
            except LinkError as exc:
                logger.debug("Availability probe %s failed: %s", hint, exc)
                return None
            try:
                score = float(data.get("score", 0))
            except (TypeError, ValueError):
                score = 0.0
            return score, str(data.get("host") or hint)

        with ThreadPoolExecutor(max_workers=max(1, n_hosts)) as pool:
            results = [r for r in pool.map(_probe, hints) if r is not None]
        if not results:
            logger.debug("No builder answered the availability probe.")
            return None
        score, host = max(results, key=lambda r: r[0])
        logger.debug("Most available builder: %s (score=%s)", host, score)
        return host
