"""
HTTPX client with retries and exponential backoff + jitter.

Shared by the Source and Ledger gateways. Transient failures (HTTP 429,
5xx, transport errors and 2xx bodies that are not a JSON object) are
retried up to ``max_attempts`` times; every attempt that will be retried is
appended to an advisory retry audit log. Requests sent with ``retry=False``
go out exactly once.
"""

import json
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type

import httpx
import structlog

from .errors import ErrorKind, SyncError
from .log_config import log_api_call

logger = structlog.get_logger(__name__)

# Retryable status codes (rate limiting and 5xx server errors)
RETRYABLE_STATUS_CODES = frozenset({429} | set(range(500, 600)))

# Retryable exceptions (connection, timeout and protocol errors)
RETRYABLE_EXCEPTIONS = (httpx.TransportError,)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_jitter: float = 0.3,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: The attempt that just failed (1-based)
        base_delay: Delay after the first failure in seconds
        max_jitter: Upper bound of the uniform random jitter in seconds

    Returns:
        ``base_delay * 2 ** (attempt - 1)`` plus up to ``max_jitter`` seconds

    Example:
        >>> 1.0 <= calculate_backoff_delay(1) <= 1.3
        True
        >>> 2.0 <= calculate_backoff_delay(2) <= 2.3
        True
    """
    delay = base_delay * (2 ** (attempt - 1))
    jitter = (rng or random).uniform(0, max_jitter) if max_jitter > 0 else 0.0
    return delay + jitter


class RetryAuditLog:
    """
    Append-only record of retried HTTP attempts.

    Entries are kept in memory and, when a path is configured, appended to a
    JSON-lines file for operational diagnosis. The log is advisory: failures
    to write it are logged and otherwise ignored.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.path = Path(path) if path else None
        self.clock = clock
        self.entries: List[Dict[str, Any]] = []

    def record(
        self,
        target: str,
        attempt: int,
        status: Optional[int] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry = {
            "ts": self.clock().isoformat(),
            "target": target,
            "status": status,
            "attempt": attempt,
        }
        if error:
            entry["error"] = error
        self.entries.append(entry)

        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry) + "\n")
            except OSError as exc:
                logger.warning("Could not write retry audit log", path=str(self.path), error=str(exc))

        return entry

    def __len__(self) -> int:
        return len(self.entries)


class RetryingHTTPClient:
    """
    HTTP client with automatic retries and exponential backoff.

    Features:
    - Retries on 429/5xx, transport errors and unparsable 2xx bodies
    - Exponential backoff (base, doubling) with bounded random jitter
    - Retry audit log entry per failed attempt
    - Non-retryable 4xx fail immediately with status and body attached
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_jitter: float = 0.3,
        timeout: float = 30.0,
        audit_log: Optional[RetryAuditLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        error_cls: Type[SyncError] = SyncError,
        **client_kwargs
    ):
        """
        Initialize HTTP client.

        Args:
            max_attempts: Maximum attempts per call, first try included
            base_delay: Base delay for exponential backoff (seconds)
            max_jitter: Maximum random jitter added to each delay (seconds)
            timeout: Request timeout in seconds
            audit_log: Where failed attempts are recorded
            sleep: Sleep function (injected in tests)
            error_cls: SyncError subclass raised on failure
            **client_kwargs: Additional arguments for httpx.Client
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_jitter = max_jitter
        self.audit_log = audit_log if audit_log is not None else RetryAuditLog()
        self.sleep = sleep
        self.rng = rng
        self.error_cls = error_cls

        client_kwargs.setdefault("timeout", timeout)
        self._client = httpx.Client(**client_kwargs)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def _backoff(self, method: str, url: str, attempt: int, **context) -> None:
        delay = calculate_backoff_delay(attempt, self.base_delay, self.max_jitter, self.rng)
        logger.warning(
            "HTTP request failed, retrying",
            method=method,
            url=url,
            attempt=attempt,
            max_attempts=self.max_attempts,
            retry_after=round(delay, 3),
            **context
        )
        self.sleep(delay)

    def request_json(self, method: str, url: str, retry: bool = True, **kwargs) -> Dict[str, Any]:
        """
        Make an HTTP request with retry logic and return the decoded JSON object.

        Args:
            method: HTTP method
            url: Target URL
            retry: False sends the request exactly once; use it for calls that
                create something, where a lost response may hide a success

        Raises:
            SyncError (kind=UPSTREAM): non-retryable HTTP error, with
                ``status_code`` and ``body`` set
            SyncError (kind=TRANSIENT): retries exhausted, or the single
                attempt failed when ``retry`` is False
        """
        last_error = "no attempt made"
        last_status: Optional[int] = None
        attempts = self.max_attempts if retry else 1

        for attempt in range(1, attempts + 1):
            logger.debug(
                "Making HTTP request",
                method=method,
                url=url,
                attempt=attempt,
                max_attempts=attempts
            )

            started = time.monotonic()
            try:
                response = self._client.request(method, url, **kwargs)
            except RETRYABLE_EXCEPTIONS as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
                if attempt < attempts:
                    self.audit_log.record(url, attempt, status=None, error=last_error)
                    self._backoff(method, url, attempt, exception=last_error)
                continue

            status = response.status_code
            log_api_call(
                logger,
                method=method,
                url=url,
                status_code=status,
                duration_ms=(time.monotonic() - started) * 1000,
                attempt=attempt,
            )

            if status in RETRYABLE_STATUS_CODES:
                last_status = status
                last_error = f"HTTP {status}: {response.text[:500]}"
                if attempt < attempts:
                    self.audit_log.record(url, attempt, status=status)
                    self._backoff(method, url, attempt, status_code=status)
                continue

            if status >= 400:
                logger.error(
                    "HTTP request failed",
                    method=method,
                    url=url,
                    status_code=status,
                    response_text=response.text[:500]
                )
                raise self.error_cls(
                    f"HTTP {status}: {response.text}",
                    kind=ErrorKind.UPSTREAM,
                    status_code=status,
                    body=response.text,
                )

            try:
                payload = response.json()
            except ValueError:
                payload = None

            if isinstance(payload, dict):
                return payload

            # A 2xx that is not a JSON object is unexpected; treat as transient
            last_status = status
            last_error = f"Invalid JSON object in HTTP {status} response: {response.text[:500]}"
            if attempt < attempts:
                self.audit_log.record(url, attempt, status=status, error="invalid json")
                self._backoff(method, url, attempt, status_code=status, reason="invalid json")

        logger.error(
            "Max attempts exceeded",
            method=method,
            url=url,
            max_attempts=attempts,
            last_error=last_error
        )
        raise self.error_cls(
            f"Max attempts exceeded ({attempts}): {last_error}",
            kind=ErrorKind.TRANSIENT,
            retryable=retry,
            status_code=last_status,
        )

    def get_json(self, url: str, **kwargs) -> Dict[str, Any]:
        """Make GET request and return JSON response."""
        return self.request_json("GET", url, **kwargs)

    def post_json(self, url: str, **kwargs) -> Dict[str, Any]:
        """Make POST request and return JSON response."""
        return self.request_json("POST", url, **kwargs)
