"""
HTTP surface: trigger endpoints, preview, summaries, run logs and the inbound
webhook from the giving platform.

Trigger endpoints accept either a pre-shared ``webhook_secret`` query
parameter or the operator bearer token. Runs execute synchronously in the
request (FastAPI runs plain ``def`` handlers in its threadpool).
"""

import hashlib
import hmac
import json
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import Engine

from . import __version__
from .clock import Clock, utcnow
from .db.connector import get_engine
from .errors import ConfigurationError, SyncError
from .http_client import RetryAuditLog
from .ledger_client import make_ledger_factory
from .models import SyncType
from .notify import Notifier, build_notifier
from .orchestrator import RunOptions, RunStatus, build_orchestrator
from .run_log import RunLogger
from .settings import GivingSyncSettings, get_settings
from .source_client import SourceClient
from .watermark import SettingsStore

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-PCO-Webhooks-Authenticity"

Dispatch = Callable[[SyncType], None]


def secret_matches(provided: Optional[str], secrets) -> bool:
    """
    Constant-time check of ``provided`` against every configured secret.

    All secrets are compared so timing does not reveal which one matched.
    """
    if not provided:
        return False
    matched = False
    for secret in secrets:
        if hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
            matched = True
    return matched


def bearer_matches(authorization: Optional[str], token: Optional[str]) -> bool:
    if not authorization or not token:
        return False
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(value.strip().encode("utf-8"), token.encode("utf-8"))


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of a raw webhook body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def event_name(payload: Dict[str, Any]) -> str:
    """Event name from ``data[0].attributes.name`` (empty when absent)."""
    data = payload.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return str((data[0].get("attributes") or {}).get("name") or "")
    return ""


def route_event(name: str) -> Optional[SyncType]:
    """
    Sync type triggered by a webhook event.

    Examples:
        >>> route_event("giving.v2.events.donation.created")
        <SyncType.STRIPE: 'stripe'>
        >>> route_event("giving.v2.events.batch.committed")
        <SyncType.BATCH: 'batch'>
        >>> route_event("people.v2.events.person.created") is None
        True
    """
    lowered = name.lower()
    if "donation" in lowered:
        return SyncType.STRIPE
    if "batch" in lowered:
        return SyncType.BATCH
    return None


def http_dispatch(config: GivingSyncSettings) -> Dispatch:
    """Fire-and-forget POST to the local trigger endpoint; the outcome is only logged."""

    def dispatch(sync_type: SyncType) -> None:
        if not config.trigger_secrets:
            logger.error("Cannot dispatch webhook sync: no trigger secret configured", sync_type=sync_type.value)
            return
        url = f"{config.app_base_url.rstrip('/')}/sync/{sync_type.value}"
        try:
            response = httpx.post(
                url,
                params={"webhook_secret": config.trigger_secrets[0]},
                timeout=config.http_timeout,
            )
            logger.info("Webhook sync dispatched", sync_type=sync_type.value, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Webhook sync dispatch failed", sync_type=sync_type.value, error=str(e))

    return dispatch


def create_app(
    config: Optional[GivingSyncSettings] = None,
    engine: Optional[Engine] = None,
    source: Any = None,
    ledger_factory: Optional[Callable[[], Any]] = None,
    notifier: Optional[Notifier] = None,
    dispatch: Optional[Dispatch] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Settings (defaults to the cached environment settings)
        engine: Database engine (defaults to one built from ``database_url``)
        source: Source client; built lazily from settings when omitted
        ledger_factory: Returns a ledger client per run
        notifier: Notification channel for partial/error runs
        dispatch: Webhook dispatcher (defaults to an HTTP call to ``/sync``)
        clock: Current UTC time

    Example:
        >>> app = create_app(config, engine, source=fake_source, ledger_factory=lambda: fake_ledger)
        >>> TestClient(app).post("/sync/stripe?webhook_secret=s3cret").json()["status"]
        'success'
    """
    config = config or get_settings()
    if engine is None:
        if not config.database_url:
            raise ConfigurationError("DATABASE_URL is not configured")
        engine = get_engine(config.database_url)

    audit_log = RetryAuditLog(config.retry_log_path, clock=clock)
    notifier = notifier or build_notifier(config)
    dispatch = dispatch or http_dispatch(config)
    settings_store = SettingsStore(engine, clock=clock)
    run_logger = RunLogger(engine, clock=clock)
    shared: Dict[str, Any] = {"source": source}

    def get_source():
        if shared["source"] is None:
            shared["source"] = SourceClient(config, audit_log=audit_log)
        return shared["source"]

    ledger_factory = ledger_factory or make_ledger_factory(config, engine, audit_log=audit_log, clock=clock)

    app = FastAPI(title="Giving Sync", version=__version__)
    app.state.config = config
    app.state.engine = engine
    app.state.audit_log = audit_log

    @app.exception_handler(SyncError)
    async def sync_error_handler(_: Request, exc: SyncError) -> JSONResponse:
        logger.error("Request failed", error=exc.message, error_kind=exc.kind.value)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": exc.message, "kind": exc.kind.value},
        )

    def require_auth(webhook_secret: Optional[str], authorization: Optional[str]) -> None:
        if secret_matches(webhook_secret, config.trigger_secrets):
            return
        if bearer_matches(authorization, config.operator_token):
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    def parse_sync_type(value: str) -> SyncType:
        try:
            return SyncType(value)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown sync type: {value}")

    def orchestrator_for(sync_type: SyncType):
        return build_orchestrator(
            sync_type,
            config,
            engine,
            get_source(),
            ledger_factory,
            notifier=notifier,
            clock=clock,
        )

    def options_from(days, backfill_days, reset_window, force_refunds) -> RunOptions:
        return RunOptions.coerce(
            days if days not in (None, "") else backfill_days,
            reset_window,
            force_refunds,
            default_days=config.default_backfill_days,
        )

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.api_route("/sync/{sync_type}", methods=["GET", "POST"])
    def trigger_sync(
        sync_type: str,
        days: Optional[str] = None,
        backfill_days: Optional[str] = None,
        reset_window: Optional[str] = None,
        force_refunds: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        authorization: Optional[str] = Header(default=None),
    ) -> JSONResponse:
        kind = parse_sync_type(sync_type)
        require_auth(webhook_secret, authorization)

        result = orchestrator_for(kind).run(options_from(days, backfill_days, reset_window, force_refunds))

        if result.status == RunStatus.BUSY:
            code = status.HTTP_429_TOO_MANY_REQUESTS
        elif result.status == RunStatus.ERROR:
            code = status.HTTP_500_INTERNAL_SERVER_ERROR
        else:
            code = status.HTTP_200_OK
        return JSONResponse(status_code=code, content=result.to_dict())

    @app.get("/sync/{sync_type}/preview")
    def preview_sync(
        sync_type: str,
        days: Optional[str] = None,
        backfill_days: Optional[str] = None,
        reset_window: Optional[str] = None,
        force_refunds: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        authorization: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        kind = parse_sync_type(sync_type)
        require_auth(webhook_secret, authorization)
        result = orchestrator_for(kind).preview(options_from(days, backfill_days, reset_window, force_refunds))
        return result.to_dict()

    @app.get("/sync-summary")
    def sync_summary(
        webhook_secret: Optional[str] = None,
        authorization: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        require_auth(webhook_secret, authorization)
        summaries: Dict[str, Any] = {}
        for sync_type in SyncType:
            raw = settings_store.get(f"last_{sync_type.value}_sync_summary")
            summaries[sync_type.value] = json.loads(raw) if raw else None
        return summaries

    @app.get("/logs")
    def logs(
        limit: int = 20,
        sync_type: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        authorization: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        require_auth(webhook_secret, authorization)
        if sync_type is not None:
            sync_type = parse_sync_type(sync_type).value
        limit = max(1, min(limit, 200))
        return {"entries": run_logger.recent(limit=limit, sync_type=sync_type)}

    @app.post("/webhooks/source")
    async def source_webhook(request: Request, background_tasks: BackgroundTasks):
        if not config.webhook_secrets:
            return PlainTextResponse("Webhook secret not configured.", status_code=500)

        raw = await request.body()
        try:
            payload = json.loads(raw)
        except ValueError:
            return PlainTextResponse("Invalid JSON", status_code=400)
        if not isinstance(payload, dict):
            return PlainTextResponse("Invalid JSON", status_code=400)

        name = event_name(payload)
        target = route_event(name)
        secret = config.webhook_secrets.get(name)

        if secret is None:
            if target is None:
                return PlainTextResponse("Event ignored.", status_code=202)
            logger.error("No webhook secret configured for event", event=name)
            return PlainTextResponse("Webhook secret not configured.", status_code=500)

        provided = (request.headers.get(SIGNATURE_HEADER) or "").strip().lower()
        if not hmac.compare_digest(sign_payload(secret, raw), provided):
            logger.warning("Webhook signature mismatch", event=name)
            return PlainTextResponse("Invalid signature.", status_code=403)

        if target is None:
            logger.info("Webhook event ignored", event=name)
            return PlainTextResponse("Event ignored.", status_code=202)

        background_tasks.add_task(dispatch, target)
        logger.info("Webhook accepted", event=name, sync_type=target.value)
        return PlainTextResponse("Sync triggered.", status_code=202)

    return app
