"""
HTTP client for the ledger (accounting) API.

OAuth2 bearer auth with refresh-token exchange, a SQL-like query endpoint for
name lookups, and JSON POSTs for transaction creation. Name lookups are cached
for the lifetime of the client, which is one orchestrator run.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog
from sqlalchemy import Engine, select

from .clock import Clock, as_utc, utcnow
from .db.connector import upsert
from .db.schema import ledger_tokens_table
from .errors import ConfigurationError, ErrorKind, LedgerAPIError, TokenRefreshError
from .http_client import RetryAuditLog, RetryingHTTPClient
from .settings import GivingSyncSettings

logger = structlog.get_logger(__name__)

MATCH_NAME = "name"
MATCH_FULLY_QUALIFIED = "fully_qualified"

_MATCH_FIELDS = {
    MATCH_NAME: "Name",
    MATCH_FULLY_QUALIFIED: "FullyQualifiedName",
}

# Ledger resource name per transaction kind
TRANSACTION_RESOURCES = {
    "deposit": "Deposit",
    "purchase": "Purchase",
}


@dataclass
class LedgerToken:
    """OAuth2 credentials for one ledger realm (company)."""

    realm_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = "bearer"
    expires_at: Optional[datetime] = None

    def expires_within(self, margin_seconds: int, now: datetime) -> bool:
        """True when the token is expired, expiring within the margin, or has no expiry."""
        if self.expires_at is None:
            return True
        return as_utc(self.expires_at) <= now + timedelta(seconds=margin_seconds)


@dataclass
class CommittedTransaction:
    """A transaction accepted by the ledger."""

    kind: str
    id: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id}


class TokenStore:
    """Persists ledger tokens in ``ledger_tokens``, one row per realm."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def load(self, realm_id: Optional[str] = None) -> LedgerToken:
        """
        Load the token for ``realm_id`` (or the most recently updated one).

        Raises:
            ConfigurationError: no token row exists yet
        """
        table = ledger_tokens_table
        stmt = select(table)
        if realm_id is not None:
            stmt = stmt.where(table.c.realm_id == realm_id)
        stmt = stmt.order_by(table.c.updated_at.desc()).limit(1)

        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()

        if row is None:
            raise ConfigurationError("No ledger tokens found. Connect the ledger first.")

        return LedgerToken(
            realm_id=row["realm_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_type=row["token_type"],
            expires_at=as_utc(row["expires_at"]),
        )

    def save(self, token: LedgerToken) -> None:
        stmt = upsert(
            ledger_tokens_table,
            "realm_id",
            {
                "realm_id": token.realm_id,
                "access_token": token.access_token,
                "refresh_token": token.refresh_token,
                "token_type": token.token_type,
                "expires_at": token.expires_at,
                "updated_at": self.clock(),
            },
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)


def escape_query_value(value: str) -> str:
    """
    Escape a literal for the ledger query language.

    Example:
        >>> escape_query_value("St. Mary's")
        "St. Mary''s"
    """
    return value.replace("'", "''")


def build_name_query(resource_type: str, name: str, match_mode: str = MATCH_NAME) -> str:
    """
    Build the lookup query for one resource by name.

    Example:
        >>> build_name_query("Account", "Fees:Card", "fully_qualified")
        "select * from Account where FullyQualifiedName = 'Fees:Card'"
    """
    if match_mode not in _MATCH_FIELDS:
        raise ValueError(f"Unknown match mode: {match_mode}")
    return f"select * from {resource_type} where {_MATCH_FIELDS[match_mode]} = '{escape_query_value(name)}'"


class LedgerClient:
    """
    Token-bearing ledger client.

    Features:
    - Access token refreshed before expiry (configurable margin)
    - Exactly one refresh-and-retry on HTTP 401
    - Name lookup cache keyed by (resource type, match mode, name), negative
      results included
    - Transient HTTP failures retried by ``RetryingHTTPClient``
    """

    def __init__(
        self,
        config: GivingSyncSettings,
        token_store: TokenStore,
        http: Optional[RetryingHTTPClient] = None,
        token_http: Optional[httpx.Client] = None,
        audit_log: Optional[RetryAuditLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utcnow,
        realm_id: Optional[str] = None,
    ):
        self.config = config
        self.base_url = config.ledger_base_url.rstrip("/")
        self.token_store = token_store
        self.clock = clock
        self.token = token_store.load(realm_id)
        self._cache: Dict[Tuple[str, str, str], Optional[Dict[str, Any]]] = {}

        if http is None:
            http = RetryingHTTPClient(
                max_attempts=config.http_max_attempts,
                base_delay=config.backoff_base_delay,
                max_jitter=config.backoff_max_jitter,
                timeout=config.http_timeout,
                audit_log=audit_log or RetryAuditLog(config.retry_log_path),
                sleep=sleep,
                error_cls=LedgerAPIError,
                headers={"Accept": "application/json"},
            )
        self.http = http
        # Token refresh is never retried with backoff, so it uses a plain client
        self.token_http = token_http or httpx.Client(timeout=config.http_timeout)

    def close(self) -> None:
        self.http.close()
        self.token_http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def realm_id(self) -> str:
        return self.token.realm_id

    def ensure_access_token(self) -> None:
        """Refresh the access token if it expires within the safety margin."""
        if self.token.expires_within(self.config.token_refresh_margin_seconds, self.clock()):
            self.refresh_access_token()

    def refresh_access_token(self) -> None:
        """
        Exchange the refresh token for a new access/refresh pair and persist it.

        Raises:
            TokenRefreshError: on any failure; never retried
        """
        stored = self.token_store.load(self.token.realm_id)
        if not stored.refresh_token:
            raise TokenRefreshError("Cannot refresh ledger token: missing refresh token")

        if not self.config.ledger_client_id or not self.config.ledger_client_secret:
            raise TokenRefreshError("Ledger client id or client secret not configured")

        logger.info("Refreshing ledger access token", realm_id=stored.realm_id)

        try:
            response = self.token_http.post(
                self.config.ledger_token_url,
                data={"grant_type": "refresh_token", "refresh_token": stored.refresh_token},
                auth=(self.config.ledger_client_id, self.config.ledger_client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Error calling token endpoint: {e}") from e

        if response.status_code >= 400:
            raise TokenRefreshError(
                f"Token endpoint returned HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenRefreshError(f"Could not parse token response: {e}") from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TokenRefreshError("Missing access_token in refresh response")

        expires_in = int(payload.get("expires_in") or 3600)
        self.token = LedgerToken(
            realm_id=stored.realm_id,
            access_token=access_token,
            # The provider does not always rotate the refresh token
            refresh_token=payload.get("refresh_token") or stored.refresh_token,
            token_type=payload.get("token_type") or stored.token_type,
            expires_at=self.clock() + timedelta(seconds=expires_in),
        )
        self.token_store.save(self.token)
        logger.info("Ledger access token refreshed", realm_id=stored.realm_id, expires_in=expires_in)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Dict[str, Any]:
        """Authorized API call; a 401 gets one token refresh and a single resend."""
        self.ensure_access_token()
        url = f"{self.base_url}/v3/company/{quote(self.realm_id, safe='')}{path}"
        query = {"minorversion": self.config.ledger_minor_version, **(params or {})}

        for attempt in (1, 2):
            headers = {"Authorization": f"Bearer {self.token.access_token}"}
            try:
                return self.http.request_json(
                    method, url, retry=retry, params=query, json=json, headers=headers
                )
            except LedgerAPIError as e:
                if e.status_code != 401:
                    raise
                if attempt == 2:
                    raise LedgerAPIError(
                        "Ledger rejected the access token after refresh",
                        kind=ErrorKind.AUTHENTICATION,
                        status_code=401,
                        body=e.body,
                    ) from e
                logger.warning("Ledger returned 401, refreshing token", path=path)
                self.refresh_access_token()

        raise AssertionError("unreachable")

    def query(self, sql: str) -> Dict[str, Any]:
        return self._request("GET", "/query", params={"query": sql})

    def query_by_name(
        self,
        resource_type: str,
        name: str,
        match_mode: str = MATCH_NAME,
    ) -> Optional[Dict[str, Any]]:
        """
        Look up one resource by exact name.

        Args:
            resource_type: Ledger resource (Account, Class, Department, PaymentMethod)
            name: Name to match
            match_mode: "name" or "fully_qualified"

        Returns:
            The first matching resource, or None (cached either way)
        """
        cache_key = (resource_type, match_mode, name)
        if cache_key in self._cache:
            return self._cache[cache_key]

        response = self.query(build_name_query(resource_type, name, match_mode))
        matches = (response.get("QueryResponse") or {}).get(resource_type) or []
        found = matches[0] if matches else None

        self._cache[cache_key] = found
        logger.debug("Ledger lookup", resource_type=resource_type, name=name, found=found is not None)
        return found

    def get_account(self, name: str, fully_qualified: bool = False) -> Optional[Dict[str, Any]]:
        mode = MATCH_FULLY_QUALIFIED if fully_qualified else MATCH_NAME
        return self.query_by_name("Account", name, mode)

    def get_class(self, name: str) -> Optional[Dict[str, Any]]:
        return self.query_by_name("Class", name)

    def get_department(self, name: str) -> Optional[Dict[str, Any]]:
        return self.query_by_name("Department", name)

    def get_payment_method(self, name: str) -> Optional[Dict[str, Any]]:
        return self.query_by_name("PaymentMethod", name)

    def create_transaction(self, kind: str, payload: Dict[str, Any]) -> CommittedTransaction:
        """
        Create a ``deposit`` or ``purchase`` transaction.

        The POST is sent once. A timeout or unreadable response may hide a
        booked transaction, so it is reported instead of resent.

        Raises:
            ValueError: unknown kind
            LedgerAPIError: the ledger rejected the transaction
        """
        resource = TRANSACTION_RESOURCES.get(kind)
        if resource is None:
            raise ValueError(f"Unknown transaction kind: {kind}")

        response = self._request("POST", f"/{kind}", json=payload, retry=False)
        body = response.get(resource) or response
        committed = CommittedTransaction(kind=kind, id=body.get("Id"), raw=body)
        logger.info("Ledger transaction created", kind=kind, transaction_id=committed.id)
        return committed

    def test_connection(self) -> bool:
        """Query the company record; True when the ledger answers."""
        try:
            self.query("select * from CompanyInfo")
            logger.info("Ledger connection test successful", realm_id=self.realm_id)
            return True
        except (LedgerAPIError, TokenRefreshError) as e:
            logger.error("Ledger connection test failed", error=str(e), error_kind=e.kind.value)
            return False


def make_ledger_factory(
    config: GivingSyncSettings,
    engine: Engine,
    audit_log: Optional[RetryAuditLog] = None,
    clock: Clock = utcnow,
) -> Callable[[], LedgerClient]:
    """
    Factory returning a fresh ``LedgerClient`` per run.

    Each client gets its own lookup cache and reloads the stored token, while
    the underlying HTTP connection pools are shared between runs.
    """
    shared: Dict[str, Any] = {}

    def factory() -> LedgerClient:
        if not shared:
            shared["http"] = RetryingHTTPClient(
                max_attempts=config.http_max_attempts,
                base_delay=config.backoff_base_delay,
                max_jitter=config.backoff_max_jitter,
                timeout=config.http_timeout,
                audit_log=audit_log or RetryAuditLog(config.retry_log_path, clock=clock),
                error_cls=LedgerAPIError,
                headers={"Accept": "application/json"},
            )
            shared["token_http"] = httpx.Client(timeout=config.http_timeout)
        return LedgerClient(
            config,
            TokenStore(engine, clock=clock),
            http=shared["http"],
            token_http=shared["token_http"],
            clock=clock,
        )

    return factory
