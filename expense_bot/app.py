# expense_bot/app.py
import threading
import time
from typing import Optional

# Load .env BEFORE any expense_bot imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request, Path
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from slack_bolt.adapter.fastapi import SlackRequestHandler

from expense_bot import monitoring
from expense_bot import auth as authmod
from expense_bot.engine import LedgerReconciliationEngine
from expense_bot.errors import E_NOT_FOUND, ExpenseBotError
from expense_bot.runtime import Runtime, build_runtime

app = FastAPI(title="Expense Ledger Bot")

API_KEY_HEADER = "x-api-key"

_runtime: Optional[Runtime] = None
_slack_handler: Optional[SlackRequestHandler] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Built on first use so /health and /metrics work before configuration is valid."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime()
        return _runtime


def get_engine() -> LedgerReconciliationEngine:
    return get_runtime().engine


def get_slack_handler() -> SlackRequestHandler:
    global _slack_handler
    runtime = get_runtime()
    with _runtime_lock:
        if _slack_handler is None:
            _slack_handler = SlackRequestHandler(runtime.bolt_app)
        return _slack_handler


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (admin API only)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    allowed, _remaining = authmod.check_rate_limit(api_key or "")
    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content={"status": "error", "error_code": "E_RATE_LIMIT", "message": "Rate limit exceeded"},
        )
        resp.headers["Retry-After"] = "60"
        return resp

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        # request ids would explode label cardinality
        label = "/api/requests/{request_id}" if endpoint.startswith("/api/requests/") else endpoint
        monitoring.observe_request(start, label, request.method, status)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/slack/events")
async def slack_events(request: Request):
    """Slack Events API, interactivity and slash commands (HTTP mode)."""
    return await get_slack_handler().handle(request)


@app.get("/api/requests/{request_id}")
def get_request(request_id: str = Path(..., description="Request id, e.g. EXP-20250912-AB12")):
    try:
        record = get_engine().get_request_by_id(request_id)
    except ExpenseBotError as e:
        monitoring.logger.exception("Ledger lookup failed", extra={"request_id": request_id})
        return JSONResponse(
            status_code=502,
            content={"request_id": request_id, "status": "error", "error_code": e.code, "message": str(e)},
        )
    if record is None:
        return JSONResponse(
            status_code=404,
            content={
                "request_id": request_id,
                "status": "error",
                "error_code": E_NOT_FOUND,
                "message": "Request not found",
            },
        )
    return JSONResponse(
        status_code=200,
        content={"request_id": request_id, "status": "success", "record": record.model_dump(mode="json")},
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
