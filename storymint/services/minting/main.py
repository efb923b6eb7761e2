"""HTTP surface for mint requests plus the background mint worker.

Authentication happens upstream; the authenticated wallet arrives in the
`x-wallet-address` header.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storymint.common.config import settings
from storymint.common.db import SessionLocal
from storymint.common.errors import MintValidationError
from storymint.common.hashing import normalize_address, story_content_hash
from storymint.common.logging import configure_logging, logger, trace_id_ctx
from storymint.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    mint_request_latency_seconds,
    rate_limited_total,
)
from storymint.common.startup import log_startup_config
from storymint.common.tracing import current_trace_id, instrument_app, setup_tracing
from storymint.services.minting.chain import make_chain_client
from storymint.services.minting.ledger import MintLedger
from storymint.services.minting.ratelimit import TokenBucketRateLimiter
from storymint.services.minting.saga import MintSaga
from storymint.services.minting.schemas import (
    MintCheckBody,
    MintIntentView,
    MintRequestBody,
    MintStatusView,
    StoryHashBody,
)
from storymint.services.minting.worker import MintWorker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)
ledger = MintLedger(SessionLocal, settings.service_name)
saga = MintSaga(SessionLocal, make_chain_client(), settings.service_name)
worker = MintWorker(SessionLocal, saga, service_name=settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
rate_limiter = TokenBucketRateLimiter(rdb, settings.rate_limit_per_minute)


def get_ledger() -> MintLedger:
    return ledger


def get_saga() -> MintSaga:
    return saga


def get_rate_limiter() -> TokenBucketRateLimiter:
    return rate_limiter


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox worker loop with the app lifecycle."""

    worker_task = None
    if settings.mint_worker_enabled:
        worker_task = asyncio.create_task(worker.run_forever())
    yield
    if worker_task is not None:
        worker_task.cancel()


app = FastAPI(title="StoryMint", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request body"})


def enforce_rate_limit(limiter: TokenBucketRateLimiter, wallet_address: str) -> None:
    try:
        allowed = limiter.allow(wallet_address)
    except redis.RedisError as exc:
        # Limiter outage should not block minting.
        logger.warning("rate_limiter_unavailable error=%s", exc)
        return
    if not allowed:
        rate_limited_total.labels(service=settings.service_name).inc()
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again later.")


@app.post("/mints")
def request_mint(
    req: MintRequestBody,
    x_wallet_address: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
    mint_ledger: MintLedger = Depends(get_ledger),
    limiter: TokenBucketRateLimiter = Depends(get_rate_limiter),
):
    """Admit a mint (200), report a duplicate (409) or fail (400/500)."""

    if not x_wallet_address or not x_wallet_address.strip():
        raise HTTPException(status_code=401, detail="Unauthorized: Wallet not connected")
    trace_id_ctx.set(x_correlation_id or current_trace_id() or str(uuid4()))
    enforce_rate_limit(limiter, x_wallet_address)

    with mint_request_latency_seconds.labels(service=settings.service_name).time():
        try:
            decision = mint_ledger.request_mint(
                req.story_hash,
                x_wallet_address,
                req.title,
                story_id=req.story_id,
                metadata_uri=req.metadata_uri,
            )
        except MintValidationError as exc:
            return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
        except Exception as exc:
            logger.exception("mint_request_failed error=%s", exc)
            return JSONResponse(
                status_code=500, content={"success": False, "error": "An error occurred during minting"}
            )

    body = {"success": decision.accepted, **decision.model_dump(mode="json")}
    return JSONResponse(status_code=200 if decision.accepted else 409, content=body)


@app.post("/mints/check", response_model=MintStatusView)
def check_mint(
    req: MintCheckBody,
    x_wallet_address: str | None = Header(default=None),
    mint_ledger: MintLedger = Depends(get_ledger),
    limiter: TokenBucketRateLimiter = Depends(get_rate_limiter),
):
    """Author-scoped mint status; the wallet comes from body or header."""

    wallet = req.author_address or x_wallet_address
    if not wallet or not wallet.strip():
        raise HTTPException(status_code=400, detail="Wallet address required for mint status check")
    enforce_rate_limit(limiter, wallet)
    try:
        return mint_ledger.check_status(req.story_hash, wallet)
    except MintValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/stories/hash")
def hash_story(req: StoryHashBody):
    """Compute the idempotency key a client should send with `POST /mints`."""

    return {
        "storyHash": story_content_hash(req.title, req.body, req.author_address),
        "authorAddress": normalize_address(req.author_address),
    }


@app.get("/mints/intents/{story_id}", response_model=MintIntentView)
def get_intent(story_id: str, mint_saga: MintSaga = Depends(get_saga)):
    """Saga progress for one story."""

    intent = mint_saga.get_intent(story_id)
    if intent is None:
        raise HTTPException(status_code=404, detail="mint intent not found")
    return intent


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
