"""Token-bucket rate limiting of POST requests per client address."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_MINUTE = 5
DEFAULT_CLEANUP_INTERVAL = 60.0
DEFAULT_EXPIRY = 600.0

_TOO_MANY = b"Too Many Requests\n"

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


@dataclass
class _Bucket:
    tokens: float
    updated: float
    last_seen: float


def _client_ip(remote_addr: str) -> str:
    if remote_addr.startswith("["):
        end = remote_addr.find("]")
        if end > 0 and remote_addr[end + 1 : end + 2] == ":":
            return remote_addr[1:end]
        return remote_addr
    if remote_addr.count(":") == 1:
        return remote_addr.partition(":")[0]
    return remote_addr


class PostLimiter:
    """Allows each client a fixed number of POST requests per minute.

    Each client address gets a bucket holding up to ``requests_per_minute``
    tokens that refills continuously. Buckets not seen for ``expiry``
    seconds are dropped by ``cleanup``, which ``start_cleanup`` runs every
    ``cleanup_interval`` seconds in a background thread.
    """

    def __init__(
        self,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        expiry: float = DEFAULT_EXPIRY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.cleanup_interval = cleanup_interval
        self.expiry = expiry
        self._clock = clock
        self._visitors: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._visitors

    def __len__(self) -> int:
        with self._lock:
            return len(self._visitors)

    def allow(self, ip: str) -> bool:
        """Take a token from the client's bucket; False when it is empty."""
        with self._lock:
            now = self._clock()
            bucket = self._visitors.get(ip)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.requests_per_minute), updated=now, last_seen=now)
                self._visitors[ip] = bucket
            bucket.last_seen = now
            elapsed = max(0.0, now - bucket.updated)
            refill = elapsed * self.requests_per_minute / 60.0
            bucket.tokens = min(float(self.requests_per_minute), bucket.tokens + refill)
            bucket.updated = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def cleanup(self) -> None:
        """Drop buckets last seen at least ``expiry`` seconds ago."""
        with self._lock:
            now = self._clock()
            stale = [ip for ip, b in self._visitors.items() if now - b.last_seen >= self.expiry]
            for ip in stale:
                del self._visitors[ip]

    def limit(self, app: WSGIApp) -> WSGIApp:
        """Wrap a WSGI application, answering 429 to POSTs over the limit."""

        def middleware(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
            client_ip = _client_ip(environ.get("REMOTE_ADDR", ""))
            if environ.get("REQUEST_METHOD") == "POST" and not self.allow(client_ip):
                logger.error("rate limit exceeded for %s", client_ip)
                start_response(
                    "429 Too Many Requests",
                    [
                        ("Content-Type", "text/plain; charset=utf-8"),
                        ("X-Content-Type-Options", "nosniff"),
                        ("Content-Length", str(len(_TOO_MANY))),
                    ],
                )
                return [_TOO_MANY]
            return app(environ, start_response)

        return middleware

    def start_cleanup(self) -> None:
        """Run ``cleanup`` periodically in a daemon thread until ``close``."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll, name="post-limiter-cleanup", daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop the background cleanup thread, if running."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _poll(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            self.cleanup()

    def __enter__(self) -> PostLimiter:
        self.start_cleanup()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()