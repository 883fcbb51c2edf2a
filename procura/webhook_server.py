"""
FastAPI Server for Campaign Runs and Provider Webhooks

Accepts new runs, streams run events to observers, and receives the voice
and mail providers' webhooks. Voice webhooks may carry an HMAC signature.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import traceback
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from procura import __version__
from procura.adapters.mail.confirmation_mailer import MailReply
from procura.application.webhook_processor import CompletionSignal, WebhookProcessor
from procura.domain.records import CounterpartyCandidate, ParsedSpec, RunSnapshot
from procura.logging import log_crash, log_event
from procura.orchestration.engine import OrchestrationEngine

MAX_BODY_BYTES = 1024 * 1024
SIGNATURE_TOLERANCE_SECONDS = 30 * 60
SSE_KEEPALIVE_SECONDS = 15.0


class SlidingWindowRateLimiter:
    """Simple per-process sliding-window limiter."""

    def __init__(self, limit: int, window_seconds: int = 60):
        self.limit = max(1, int(limit))
        self.window_seconds = window_seconds
        self._events: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def allow(self) -> bool:
        now = time.monotonic()
        cutoff = now - self.window_seconds
        async with self._lock:
            while self._events and self._events[0] < cutoff:
                self._events.popleft()
            if len(self._events) >= self.limit:
                return False
            self._events.append(now)
            return True


def validate_signature(
    secret: bytes,
    payload: bytes,
    header: str,
    *,
    now: Optional[float] = None,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """
    Validate a `t=<unix>,v0=<hex>` header where v0 is HMAC-SHA256 over "<t>.<body>".

    Args:
        secret: Shared webhook secret
        payload: Raw request body bytes
        header: Signature header value

    Returns:
        True if the signature matches and the timestamp is within tolerance
    """
    parts: Dict[str, str] = {}
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key] = value
    timestamp = parts.get("t")
    signature = parts.get("v0")
    if not timestamp or not signature:
        return False
    try:
        issued = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - issued) > tolerance_seconds:
        return False
    expected = hmac.new(secret, f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


class CreateRunRequest(BaseModel):
    item: str = ""
    quantity: str = ""
    deadline: str = Field(default="", validation_alias=AliasChoices("deadline", "leadTime", "lead_time"))
    quality: str = ""
    location: str = ""
    raw_query: Optional[str] = None
    counterparties: List[CounterpartyCandidate] = Field(default_factory=list)
    autostart: bool = True


async def _read_capped_body(request: Request) -> bytes:
    body = await request.body()
    if len(body) > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")
    return body


def _parse_json(body: bytes, source: str) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log_event("webhook", {"message": f"Failed to parse {source} webhook payload: {exc}", "level": "error"})
        raise HTTPException(status_code=400, detail=f"Invalid payload: {exc}")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload: expected a JSON object")
    return payload


def create_webhook_app(
    engine: Optional[OrchestrationEngine] = None,
    processor: Optional[WebhookProcessor] = None,
    *,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> FastAPI:
    if engine is None:
        from procura.runtime.composition import create_runtime

        runtime = create_runtime()
        engine = runtime.engine
        processor = processor or runtime.processor
    if processor is None:
        processor = WebhookProcessor(
            engine.repository,
            engine,
            lookup_retry_delay_seconds=engine.settings.lookup_retry_delay_seconds,
            workspace=engine.workspace,
        )

    settings = engine.settings
    webhook_secret = settings.voice_webhook_secret.encode() if settings.voice_webhook_secret.strip() else b""
    limiter = rate_limiter or SlidingWindowRateLimiter(settings.rate_limit_per_minute, window_seconds=60)
    workspace = engine.workspace

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        log_event(
            "webhook_security_posture",
            {"voice_signature_required": bool(webhook_secret), "rate_limit_per_minute": limiter.limit},
            workspace,
        )
        try:
            yield
        finally:
            await engine.close()

    app = FastAPI(
        title="Procura Campaign Server",
        description="Runs outbound sourcing campaigns and receives provider webhooks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.processor = processor

    async def _run_in_background(operation: str, func, *args) -> None:
        try:
            await func(*args)
        except Exception as exc:
            log_event("background_task_failed", {"operation": operation, "error": str(exc), "level": "error"}, workspace)
            log_crash(exc, traceback.format_exc(), workspace)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"service": "Procura Campaign Server", "status": "running", "version": __version__}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.post("/runs")
    async def create_run(req: CreateRunRequest, background_tasks: BackgroundTasks):
        spec = ParsedSpec(
            item=req.item,
            quantity=req.quantity,
            deadline=req.deadline,
            quality=req.quality,
            location=req.location,
        )
        run = await engine.create_run(req.raw_query or req.item, spec)
        if req.counterparties:
            await engine.register_counterparties(run.id, req.counterparties)
        if req.autostart:
            background_tasks.add_task(_run_in_background, "start_run", engine.start_run, run.id)
        return {"run_id": run.id, "status": run.status.value}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        repository = engine.repository
        run = await repository.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        counterparties, calls, offers = await asyncio.gather(
            repository.list_counterparties(run_id),
            repository.list_calls(run_id),
            repository.list_offers(run_id),
        )
        snapshot = RunSnapshot(run=run, counterparties=counterparties, calls=calls, offers=offers)
        return snapshot.model_dump(mode="json")

    @app.get("/runs/{run_id}/events")
    async def stream_events(run_id: str, request: Request):
        if await engine.repository.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        queue = await engine.bus.subscribe(run_id)

        async def _events():
            try:
                yield ": connected\n\n"
                while True:
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield event.to_sse()
            finally:
                await engine.bus.unsubscribe(run_id, queue)

        return StreamingResponse(
            _events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
        )

    @app.post("/webhooks/voice")
    async def voice_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        voice_signature: str = Header(None, alias="elevenlabs-signature"),
    ):
        if not await limiter.allow():
            raise HTTPException(status_code=429, detail="Webhook rate limit exceeded", headers={"Retry-After": "60"})

        body = await _read_capped_body(request)
        if webhook_secret:
            if not voice_signature:
                log_event("webhook", {"message": "Missing voice webhook signature", "level": "error"}, workspace)
                raise HTTPException(status_code=401, detail="Missing signature")
            if not validate_signature(webhook_secret, body, voice_signature):
                log_event("webhook", {"message": "Invalid voice webhook signature", "level": "error"}, workspace)
                raise HTTPException(status_code=401, detail="Invalid signature")

        payload = _parse_json(body, "voice")
        try:
            signal = CompletionSignal.from_provider_payload(payload)
        except ValidationError as exc:
            log_event("webhook", {"message": f"Unusable voice webhook payload: {exc}", "level": "warning"}, workspace)
            return {"received": True, "handled": False}

        log_event(
            "webhook",
            {"message": f"Received voice webhook: {payload.get('type')}", "handle": signal.handle if signal else None},
            workspace,
        )
        if signal is None:
            return {"received": True, "handled": False}
        background_tasks.add_task(_run_in_background, "process_signal", processor.process_signal, signal)
        return {"received": True, "handled": True}

    @app.post("/webhooks/mail")
    async def mail_webhook(request: Request, background_tasks: BackgroundTasks):
        if not await limiter.allow():
            raise HTTPException(status_code=429, detail="Webhook rate limit exceeded", headers={"Retry-After": "60"})

        payload = _parse_json(await _read_capped_body(request), "mail")
        event_type = payload.get("type") or payload.get("event_type")
        if event_type != "message.received":
            log_event("webhook", {"message": f"Ignored mail webhook: {event_type}"}, workspace)
            return {"received": True, "handled": False}

        data = payload.get("data") or payload.get("message") or {}
        try:
            reply = MailReply.model_validate(data)
        except ValidationError as exc:
            log_event("webhook", {"message": f"Unusable mail webhook payload: {exc}", "level": "warning"}, workspace)
            return {"received": True, "handled": False}
        background_tasks.add_task(_run_in_background, "handle_mail_reply", engine.handle_mail_reply, reply)
        return {"received": True, "handled": True}

    return app


def start_server(host: str = "0.0.0.0", port: int = 8080):
    """
    Start the campaign server.

    Args:
        host: Host to bind to (default: 0.0.0.0 for all interfaces)
        port: Port to bind to (default: 8080)
    """
    log_event("webhook_server", {"message": f"Starting campaign server on {host}:{port}", "level": "info"})
    uvicorn.run(create_webhook_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_server()
