"""
HTTP transport with bounded timeouts and exponential backoff.

Connection failures, timeouts and 5xx responses are retried; 4xx
responses are mapped straight to kivrafs errors. Nothing here knows
about sessions; callers pass their own headers.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests

from .config import RetryConfig
from .errors import NotFound, RemoteError, TransientTransport, Unauthenticated

logger = logging.getLogger("kivrafs.transport")

USER_AGENT = "kivrafs"

_TRANSIENT_EXCEPTIONS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def _describe(resp: requests.Response) -> str:
    return f"{resp.status_code} {resp.reason or ''}".strip()


class HttpTransport:
    """Thin wrapper around a :class:`requests.Session`.

    Args:
        timeout: Per-request timeout in seconds.
        retry: Backoff policy for transient failures.
        session: Pre-built requests session (tests inject a mock).
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        retry: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.retry = retry or RetryConfig()
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)
        self._sleep = sleep

    def close(self) -> None:
        self._session.close()

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP method.
            url: Absolute URL.
            **kwargs: Passed through to ``requests.Session.request``.

        Returns:
            The successful (2xx/3xx) response.

        Raises:
            Unauthenticated: On 401.
            NotFound: On 404 or 410.
            RemoteError: On any other 4xx.
            TransientTransport: When every attempt failed transiently.
        """
        kwargs.setdefault("timeout", self.timeout)
        attempts = self.retry.max_attempts
        last_error = ""

        for attempt in range(attempts):
            try:
                resp = self._session.request(method, url, **kwargs)
            except _TRANSIENT_EXCEPTIONS as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                status = resp.status_code
                if status < 400:
                    return resp
                if status >= 500:
                    last_error = _describe(resp)
                    resp.close()
                elif status == 401:
                    raise Unauthenticated(f"{method} {url}: {_describe(resp)}")
                elif status in (404, 410):
                    raise NotFound(f"{method} {url}: {status}")
                else:
                    raise RemoteError(f"{method} {url}: {_describe(resp)}", status_code=status)

            if attempt < attempts - 1:
                delay = self.retry.delay(attempt)
                logger.debug(
                    "%s %s failed (%s), retry %d/%d in %.1fs",
                    method, url, last_error, attempt + 1, attempts - 1, delay,
                )
                self._sleep(delay)

        logger.warning("%s %s gave up after %d attempts: %s", method, url, attempts, last_error)
        raise TransientTransport(f"{method} {url}: {last_error}")
