"""
HTTP client for the giving platform (Source) API.

JSON:API over HTTPS with HTTP Basic auth (application id / secret).
Pagination follows ``links.next``; retries, backoff and the retry audit log
come from ``RetryingHTTPClient``.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import structlog

from .errors import ErrorKind, SourceAPIError, SyncError
from .http_client import RetryAuditLog, RetryingHTTPClient
from .models import Window
from .settings import GivingSyncSettings

logger = structlog.get_logger(__name__)

Resource = Dict[str, Any]

# Safety stop for a server that keeps returning links.next
MAX_PAGES = 1000


def _window_query(field: str, window: Window) -> Dict[str, str]:
    return {
        f"where[{field}][gte]": window.start.isoformat(),
        f"where[{field}][lt]": window.end.isoformat(),
    }


class SourceClient:
    """Paginated, retrying client for the giving and registrations APIs."""

    def __init__(
        self,
        config: GivingSyncSettings,
        http: Optional[RetryingHTTPClient] = None,
        audit_log: Optional[RetryAuditLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            config: Service settings (base URL, credentials, page size)
            http: Pre-built HTTP client (tests inject one with a mock transport)
            audit_log: Retry audit log shared with other clients
            sleep: Sleep function used between retries
        """
        self.base_url = config.source_base_url.rstrip("/")
        self.page_size = config.source_page_size

        if http is None:
            config.require_source_credentials()
            http = RetryingHTTPClient(
                max_attempts=config.http_max_attempts,
                base_delay=config.backoff_base_delay,
                max_jitter=config.backoff_max_jitter,
                timeout=config.http_timeout,
                audit_log=audit_log or RetryAuditLog(config.retry_log_path),
                sleep=sleep,
                error_cls=SourceAPIError,
                auth=(config.source_app_id, config.source_secret),
                headers={
                    "Accept": "application/json",
                    "User-Agent": f"{config.service_name}/1.0",
                },
            )
        self.http = http

    def close(self) -> None:
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _url(self, path: str) -> str:
        # links.next is an absolute URL and is requested as-is
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def get_document(self, path: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET one JSON:API document."""
        params = query if query and not path.startswith(("http://", "https://")) else None
        return self.http.get_json(self._url(path), params=params)

    def fetch_page(
        self,
        path: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Resource], Optional[str]]:
        """
        Fetch a single page.

        Args:
            path: API path (e.g. "/giving/v2/donations") or a ``links.next`` URL
            query: Query parameters; ignored for absolute URLs, which already
                carry their query string

        Returns:
            (records, next page URL or None)

        Example:
            >>> records, next_url = client.fetch_page("/giving/v2/funds", {"per_page": 100})
        """
        document = self.get_document(path, query)
        records, _, next_url = self._split(document)
        return records, next_url

    @staticmethod
    def _split(document: Dict[str, Any]) -> Tuple[List[Resource], List[Resource], Optional[str]]:
        data = document.get("data")
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise SourceAPIError("Response has no 'data' list", kind=ErrorKind.DATA)
        included = document.get("included") or []
        next_url = (document.get("links") or {}).get("next") or None
        return data, included, next_url

    def fetch_all_with_included(
        self,
        path: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[Resource], List[Resource]]:
        """Drain pagination, accumulating both ``data`` and ``included`` resources."""
        records: List[Resource] = []
        included: List[Resource] = []
        next_path: Optional[str] = path
        pages = 0

        while next_path is not None:
            document = self.get_document(next_path, query)
            page_records, page_included, next_path = self._split(document)
            records.extend(page_records)
            included.extend(page_included)
            pages += 1
            if pages >= MAX_PAGES and next_path is not None:
                raise SourceAPIError(f"Pagination did not terminate after {MAX_PAGES} pages: {path}")

        logger.info("Fetched all pages", path=path, pages=pages, records=len(records))
        return records, included

    def fetch_all(self, path: str, query: Optional[Dict[str, Any]] = None) -> List[Resource]:
        """Drain pagination and return every record."""
        records, _ = self.fetch_all_with_included(path, query)
        return records

    # Domain calls

    def list_funds(self) -> List[Resource]:
        return self.fetch_all("/giving/v2/funds", {"per_page": self.page_size})

    def list_donations(self, window: Window) -> Tuple[List[Resource], List[Resource]]:
        """Donations completed within the window, with their designations included."""
        query = {
            "per_page": self.page_size,
            "order": "completed_at",
            "include": "designations",
            **_window_query("completed_at", window),
        }
        return self.fetch_all_with_included("/giving/v2/donations", query)

    def list_committed_batches(self, window: Window) -> List[Resource]:
        query = {
            "per_page": self.page_size,
            "order": "committed_at",
            **_window_query("committed_at", window),
        }
        return self.fetch_all("/giving/v2/batches", query)

    def list_batch_donations(self, batch_id: str) -> List[Resource]:
        path = f"/giving/v2/batches/{quote(str(batch_id), safe='')}/donations"
        return self.fetch_all(path, {"per_page": self.page_size})

    def list_donation_designations(self, donation_id: str) -> List[Resource]:
        path = f"/giving/v2/donations/{quote(str(donation_id), safe='')}/designations"
        return self.fetch_all(path, {"per_page": self.page_size})

    def list_registration_payments(self, window: Window) -> Tuple[List[Resource], List[Resource]]:
        query = {
            "per_page": self.page_size,
            "order": "created_at",
            "include": "event,registration",
            **_window_query("created_at", window),
        }
        return self.fetch_all_with_included("/registrations/v2/payments", query)

    def list_registrations(self, updated_since) -> List[Resource]:
        """Registrations updated at or after ``updated_since``."""
        query = {
            "per_page": self.page_size,
            "order": "updated_at",
            "where[updated_at][gte]": updated_since.isoformat(),
        }
        return self.fetch_all("/registrations/v2/registrations", query)

    def get_registration(self, registration_id: str) -> Resource:
        path = f"/registrations/v2/registrations/{quote(str(registration_id), safe='')}"
        records, _ = self.fetch_page(path)
        if not records:
            raise SourceAPIError(f"Registration {registration_id} not found", status_code=404)
        return records[0]

    def test_connection(self) -> bool:
        """
        Test connection to the Source API.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            records, _ = self.fetch_page("/giving/v2/funds", {"per_page": 1})
            logger.info("Connection test successful", has_data=bool(records))
            return True
        except SyncError as e:
            logger.error("Connection test failed", error=str(e), error_kind=e.kind.value)
            return False
