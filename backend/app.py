from __future__ import annotations
import json
import logging
import os
import time
from typing import Callable, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from admin import AdminAuthenticator, create_admin_router
from analytics import AnalyticsIngestor
from feature_requests import FeatureRequestBoard
from kv_store import KVStore, KVStoreError, MemoryKV, UpstashKV
from models import (
    FeatureRequestIn,
    GlobalStatsOut,
    HeartbeatIn,
    OkOut,
    PageviewIn,
    ReclaimIn,
    SocialClickIn,
    WalletStatsOut,
)
from rate_limit import Cooldown, RateLimiter, admin_limiter, general_limiter
from rpc_proxy import RpcBodyError, RpcProxy, UpstreamError, disallowed_method, parse_rpc_body
from stats import StatsAggregator, is_valid_wallet

# Load environment variables from .env file
load_dotenv()

# ---------------------------
# Config
# ---------------------------
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

HELIUS_API_KEY = os.getenv("HELIUS_API_KEY", "")
RPC_UPSTREAM_URL = os.getenv("RPC_UPSTREAM_URL") or f"https://mainnet.helius-rpc.com/?api-key={HELIUS_API_KEY}"
RPC_TIMEOUT_SEC = float(os.getenv("RPC_TIMEOUT_SEC", "10"))   # upstream is external; bound the wait

# Upstash Redis REST; without it the store lives in process memory (dev only)
UPSTASH_URL = os.getenv("UPSTASH_REDIS_REST_URL", "")
UPSTASH_TOKEN = os.getenv("UPSTASH_REDIS_REST_TOKEN", "")

ALLOWED_ORIGINS = [
    o.strip()
    for o in os.getenv("ALLOWED_ORIGINS", "https://soltools.net,https://www.soltools.net").split(",")
    if o.strip()
]
ALLOW_LOCALHOST_ORIGINS = os.getenv("ALLOW_LOCALHOST_ORIGINS", "1") == "1"

# Edge proxy headers (Cloudflare by default)
CLIENT_IP_HEADER = os.getenv("CLIENT_IP_HEADER", "CF-Connecting-IP")
COUNTRY_HEADER = os.getenv("COUNTRY_HEADER", "CF-IPCountry")

TOTP_ISSUER = os.getenv("TOTP_ISSUER", "SolReclaimer")

FEATURE_REQUEST_COOLDOWN_SEC = int(os.getenv("FEATURE_REQUEST_COOLDOWN_SEC", "60"))

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def make_store() -> KVStore:
    if UPSTASH_URL and UPSTASH_TOKEN:
        return UpstashKV(UPSTASH_URL, UPSTASH_TOKEN)
    logger.warning("[kv] UPSTASH_REDIS_REST_URL/TOKEN not set; using in-process memory store")
    return MemoryKV()


def get_client_ip(req: Request) -> str:
    # Only trust CLIENT_IP_HEADER when the edge proxy overwrites it.
    ip = (req.headers.get(CLIENT_IP_HEADER) or "").strip()
    if ip:
        return ip
    return req.client.host if req.client else "unknown"


async def read_json_body(req: Request):
    raw = await req.body()
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the decoder can follow
        raise HTTPException(status_code=400, detail="Invalid JSON")


def cors_headers(origin: str, allowed_origins: List[str]) -> dict:
    allowed = origin in allowed_origins or (
        ALLOW_LOCALHOST_ORIGINS and origin.startswith("http://localhost:")
    )
    fallback = allowed_origins[0] if allowed_origins else "*"
    return {
        "Access-Control-Allow-Origin": origin if allowed else fallback,
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, solana-client, Authorization",
        "Access-Control-Max-Age": "86400",
    }


# ---------------------------
# App
# ---------------------------
def create_app(
    store: Optional[KVStore] = None,
    admin_token: str = ADMIN_TOKEN,
    rpc_upstream_url: str = RPC_UPSTREAM_URL,
    rpc_timeout: float = RPC_TIMEOUT_SEC,
    general: Optional[RateLimiter] = None,
    admin_attempts: Optional[RateLimiter] = None,
    feature_cooldown: Optional[Cooldown] = None,
    now_func: Callable[[], float] = time.time,
    allowed_origins: Optional[List[str]] = None,
) -> FastAPI:
    store = store if store is not None else make_store()
    general = general or general_limiter(now_func)
    admin_attempts = admin_attempts or admin_limiter(now_func)
    feature_cooldown = feature_cooldown or Cooldown(FEATURE_REQUEST_COOLDOWN_SEC, now_func)
    origins = list(allowed_origins) if allowed_origins is not None else ALLOWED_ORIGINS

    stats = StatsAggregator(store, now_func)
    analytics = AnalyticsIngestor(store, now_func)
    features = FeatureRequestBoard(store, now_func)
    auth = AdminAuthenticator(store, admin_token, admin_attempts, now_func)
    proxy = RpcProxy(rpc_upstream_url, timeout=rpc_timeout)

    if not admin_token:
        logger.warning("[admin] ADMIN_TOKEN not set; admin endpoints will reject every request")

    app = FastAPI(title="SolTools edge API")

    @app.middleware("http")
    async def cors(request: Request, call_next):
        headers = cors_headers(request.headers.get("origin", ""), origins)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        response = await call_next(request)
        response.headers.update(headers)
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        # unknown route or wrong method on a known one
        if exc.status_code == 405 or (exc.status_code == 404 and exc.detail == "Not Found"):
            return JSONResponse({"error": "Not found"}, status_code=404)
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors and errors[0].get("type") == "json_invalid":
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        return JSONResponse({"error": "Invalid body"}, status_code=400)

    @app.exception_handler(KVStoreError)
    async def _store_error(request: Request, exc: KVStoreError):
        # Parallel writes are not transactional: some may have landed.
        logger.error("[kv] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": "Storage unavailable"}, status_code=500)

    def rate_limited(req: Request) -> None:
        if general.check(get_client_ip(req)):
            raise HTTPException(status_code=429, detail="Rate limited")

    def feature_cooldown_check(req: Request) -> None:
        if feature_cooldown.blocked(get_client_ip(req)):
            raise HTTPException(status_code=429, detail="Please wait a minute before submitting another request")

    # ---------------------------
    # RPC proxy
    # ---------------------------
    @app.post("/api/rpc", dependencies=[Depends(rate_limited)])
    async def rpc(req: Request):
        payload = await read_json_body(req)
        raw = await req.body()
        try:
            call = parse_rpc_body(payload)
        except RpcBodyError as e:
            raise HTTPException(status_code=400, detail=str(e))

        bad = disallowed_method(call)
        if bad is not None:
            raise HTTPException(status_code=403, detail=f"Method not allowed: {bad}")

        try:
            status, text = await proxy.forward(raw)
        except UpstreamError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return Response(content=text, status_code=status, media_type="application/json")

    # ---------------------------
    # Public stats
    # ---------------------------
    @app.get("/api/stats", response_model=GlobalStatsOut)
    async def get_stats():
        return await stats.global_stats()

    @app.post("/api/stats", response_model=OkOut, dependencies=[Depends(rate_limited)])
    async def post_stats(req: Request):
        # parsed by hand so the rate limit runs before any body checks
        try:
            data = ReclaimIn.model_validate(await read_json_body(req))
        except ValidationError:
            raise HTTPException(status_code=400, detail="Invalid body")
        await stats.record_reclaim(data.wallet, data.solReclaimed, data.accountsClosed, data.signatures)
        return OkOut()

    @app.get("/api/stats/recent")
    async def get_recent():
        return await stats.recent()

    @app.get("/api/stats/wallet", response_model=WalletStatsOut)
    async def get_wallet_stats(wallet: Optional[str] = None):
        if not is_valid_wallet(wallet):
            raise HTTPException(status_code=400, detail="Invalid wallet")
        return await stats.wallet_stats(wallet)

    # ---------------------------
    # Analytics (anonymous)
    # ---------------------------
    @app.post("/api/analytics/heartbeat", response_model=OkOut)
    async def heartbeat(data: HeartbeatIn):
        await analytics.heartbeat(data.sessionId)
        return OkOut()

    @app.post("/api/analytics/pageview", response_model=OkOut)
    async def pageview(data: PageviewIn, req: Request):
        await analytics.pageview(data.page, req.headers.get(COUNTRY_HEADER))
        return OkOut()

    @app.post("/api/analytics/social", response_model=OkOut)
    async def social_click(data: SocialClickIn):
        try:
            await analytics.social_click(data.button)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid button")
        return OkOut()

    @app.get("/api/analytics/active")
    async def active_users():
        return {"active": await analytics.cached_active_visitors()}

    # ---------------------------
    # Feature requests
    # ---------------------------
    @app.post("/api/feature-request", response_model=OkOut, dependencies=[Depends(feature_cooldown_check)])
    async def feature_request(data: FeatureRequestIn, req: Request):
        await features.submit(data.title, data.description, data.contact)
        feature_cooldown.touch(get_client_ip(req))
        return OkOut()

    app.include_router(
        create_admin_router(
            auth=auth,
            stats=stats,
            analytics=analytics,
            features=features,
            client_ip_func=get_client_ip,
            now_func=now_func,
            totp_issuer=TOTP_ISSUER,
        ),
        prefix="/api/admin",
    )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
