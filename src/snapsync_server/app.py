"""Webhook server triggering snapshot sync runs.

The CMS calls the webhook endpoint on every content change. Each accepted
call requests a sync run on the debounce scheduler and is acknowledged right
away; the run's outcome only shows up in the logs and on ``/health``.

Environment Variables (see snapsync.config_loader for the full list):
- SNAPSYNC_WEBHOOK_TOKEN: Bearer token expected in the Authorization header
- SNAPSYNC_WEBHOOK_ENDPOINT: Path of the webhook endpoint (default: /)
- SNAPSYNC_WEBHOOK_IGNORED_MODELS: Comma-separated CMS models to ignore
- SNAPSYNC_DEBOUNCE_DELAY: Quiet period before a run starts (default: 60s)
"""

from __future__ import annotations

import hmac
import json
import sys
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request

from snapsync import __version__
from snapsync.config_schema import SnapsyncConfig
from snapsync.errors import AuthorizationError
from snapsync.observability import log_action, log_info, log_warning
from snapsync.pipeline import SyncPipeline
from snapsync.scheduler import DebounceScheduler

SYNC_JOB_KEY = "sync"


def _raw_header(value: str) -> bytes:
    """Bytes of a header value; Starlette decodes header bytes as latin-1."""
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value.encode("utf-8", "surrogateescape")


def verify_bearer_token(authorization: Optional[str], expected: str) -> None:
    """Check the Authorization header against the configured token.

    No check is made when no token is configured.

    Raises:
        AuthorizationError: Header missing or not ``Bearer <token>``
    """
    if not expected:
        return
    if not authorization:
        raise AuthorizationError("Invalid auth token")
    wanted = f"Bearer {expected}".encode("utf-8", "surrogateescape")
    if not hmac.compare_digest(_raw_header(authorization), wanted):
        raise AuthorizationError("Invalid auth token")


async def _read_payload(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def create_app(
    config: SnapsyncConfig,
    *,
    scheduler: Optional[DebounceScheduler] = None,
    pipeline: Optional[SyncPipeline] = None,
) -> FastAPI:
    """Build the webhook application."""
    app = FastAPI(title="snapsync webhook")

    scheduler = scheduler or DebounceScheduler(
        config.scheduler.delay,
        arm_while_running=config.scheduler.arm_while_running,
    )
    pipeline = pipeline or SyncPipeline(config)
    ignored = set(config.webhook.ignored_models)

    app.state.scheduler = scheduler
    app.state.pipeline = pipeline

    @app.on_event("shutdown")
    async def close_scheduler():
        await scheduler.close()

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "snapsync-webhook",
            "version": __version__,
            "python": sys.version.split()[0],
            "scheduler": scheduler.status(),
        }

    @app.post(config.webhook.endpoint)
    async def webhook(request: Request, authorization: Optional[str] = Header(default=None)):
        try:
            verify_bearer_token(authorization, config.webhook.token)
        except AuthorizationError as e:
            log_warning("Invalid auth token.", client=request.client.host if request.client else None)
            raise HTTPException(status_code=403, detail=str(e))

        payload = await _read_payload(request)
        model = payload.get("model")
        event = payload.get("event")

        if isinstance(model, str) and model in ignored:
            log_info(f"Ignored: {event} in {model}")
            log_action("webhook.receive", outcome="ignored", model=model, cms_event=event)
            return {"status": "ignored"}

        # Not awaited: the CMS only needs the acknowledgement
        scheduler.request(SYNC_JOB_KEY, pipeline.run_async)
        log_action("webhook.receive", outcome="scheduled", model=model, cms_event=event)
        return {"status": "scheduled"}

    return app


def serve(config: SnapsyncConfig, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the webhook server with uvicorn."""
    app = create_app(config)

    import uvicorn

    host = host or config.webhook.host
    port = port or config.webhook.port
    log_info(f"Webhook server listening on {host}:{port}", endpoint=config.webhook.endpoint)
    uvicorn.run(app, host=host, port=port, log_level="info")
