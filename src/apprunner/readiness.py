"""Wait for a freshly started instance to answer HTTP requests."""
from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from types import TracebackType

ALIVE_STATUS_LIMIT = 500

_log = logging.getLogger(__name__)


class ReadinessError(RuntimeError):
    """Raised when an instance does not become ready."""


class ReadinessWaiter:
    """Poll ``http://<host>:<port>/<app_name>`` until the instance responds.

    Use it as a context manager: the HTTP opener is built on entry and
    released on exit, whatever the outcome of the start attempt. Any response
    with a status below 500 counts as ready, since an application that returns
    404 for its root is still up and serving.
    """

    def __init__(
        self,
        app_name: str,
        port: int,
        *,
        host: str = "localhost",
        timeout: float = 60.0,
        interval: float = 0.5,
        request_timeout: float = 2.0,
    ) -> None:
        """Bind the waiter to an application name and port."""
        self.app_name = app_name
        self.port = port
        self.host = host
        self.timeout = timeout
        self.interval = interval
        self.request_timeout = request_timeout
        self._opener: urllib.request.OpenerDirector | None = None
        self._closed = False

    @property
    def url(self) -> str:
        """The URL being polled."""
        return f"http://{self.host}:{self.port}/{self.app_name}"

    @property
    def closed(self) -> bool:
        """Whether the waiter has been released."""
        return self._closed

    def __enter__(self) -> ReadinessWaiter:
        if self._closed:
            raise ReadinessError(f"Readiness waiter for {self.url} was already closed.")
        self._opener = urllib.request.build_opener()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release the opener; the waiter cannot be used afterwards."""
        if self._opener is not None:
            self._opener.close()
            self._opener = None
        self._closed = True

    def wait_until_ready(self, is_alive: Callable[[], bool] | None = None) -> None:
        """Block until the instance answers, the deadline passes, or it dies."""
        if self._closed:
            raise ReadinessError(f"Readiness waiter for {self.url} was already closed.")
        if self._opener is None:
            self._opener = urllib.request.build_opener()

        deadline = time.monotonic() + self.timeout
        attempts = 0
        while True:
            if is_alive is not None and not is_alive():
                raise ReadinessError(
                    f"{self.app_name} exited before answering on port {self.port}."
                )
            attempts += 1
            if self._probe():
                _log.info("%s ready at %s after %d attempt(s)", self.app_name, self.url, attempts)
                return
            if time.monotonic() >= deadline:
                raise ReadinessError(
                    f"{self.app_name} did not answer at {self.url} within {self.timeout:.1f}s."
                )
            time.sleep(self.interval)

    def _probe(self) -> bool:
        assert self._opener is not None
        try:
            with self._opener.open(self.url, timeout=self.request_timeout) as response:
                return int(response.status) < ALIVE_STATUS_LIMIT
        except urllib.error.HTTPError as exc:
            exc.close()
            return exc.code < ALIVE_STATUS_LIMIT
        except (urllib.error.URLError, OSError):
            return False


def waiter_factory(
    *,
    host: str = "localhost",
    timeout: float = 60.0,
    interval: float = 0.5,
) -> Callable[[str, int], ReadinessWaiter]:
    """Return a callable producing configured waiters for ``(app_name, port)``."""

    def _make(app_name: str, port: int) -> ReadinessWaiter:
        return ReadinessWaiter(app_name, port, host=host, timeout=timeout, interval=interval)

    return _make


__all__ = ["ReadinessError", "ReadinessWaiter", "waiter_factory"]
