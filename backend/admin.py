# admin.py
import asyncio
import enum
import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from analytics import AnalyticsIngestor
from feature_requests import VALID_STATUSES, FeatureRequestBoard
from kv_store import KVStore, get_json, put_json
from models import (
    ChartPointOut,
    DashboardOut,
    MessageOut,
    OkOut,
    ReclaimPageOut,
    TotpSetupOut,
    TotpStatusOut,
)
from rate_limit import RateLimiter
from stats import StatsAggregator, day_key, days_ago_key, empty_reclaims, month_key
from totp_utils import build_totp_uri, format_secret, generate_secret, is_code_format, verify_totp

logger = logging.getLogger(__name__)

LOCKOUT_PREFIX = "admin:blocked:"
LOCKOUT_TTL_SEC = 3600
LOCKOUT_THRESHOLD = 10

TOTP_SECRET_KEY = "admin:totp:secret"
TOTP_PENDING_KEY = "admin:totp:pending"
TOTP_ENABLED_KEY = "admin:totp:enabled"
TOTP_PENDING_TTL_SEC = 600

DASHBOARD_HISTORY = 50
CHART_MAX_DAYS = 90


async def read_json(req: Request) -> Any:
    """Request body as JSON, or None when it is empty or malformed."""
    raw = await req.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class AuthOutcome(enum.Enum):
    OK = "ok"
    UNAUTHORIZED = "unauthorized"
    TOTP_REQUIRED = "totp-required"
    BLOCKED = "blocked"


@dataclass
class AuthResult:
    outcome: AuthOutcome
    error: str = ""


class AdminAuthenticator:
    """
    Admin gate: bearer token, durable per-IP lockout, in-memory attempt limit
    and an optional TOTP second factor.

    Only the verify handshake goes through `authenticate`. Every other admin
    endpoint checks the bearer token alone (`require`).
    """

    def __init__(
        self,
        store: KVStore,
        admin_token: str,
        limiter: RateLimiter,
        now_func: Callable[[], float] = time.time,
    ):
        self.store = store
        self._token_digest = hashlib.sha256(admin_token.encode()).digest() if admin_token else None
        self.limiter = limiter
        self._now = now_func

    def check_token(self, authorization: Optional[str]) -> bool:
        if self._token_digest is None:
            return False
        auth = authorization or ""
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
        # Both sides hashed to fixed width so neither length nor prefix leaks.
        presented = hashlib.sha256(token.encode()).digest()
        return hmac.compare_digest(presented, self._token_digest)

    def require(self, req: Request) -> None:
        if not self.check_token(req.headers.get("authorization")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    async def is_blocked(self, ip: str) -> bool:
        data = await get_json(self.store, f"{LOCKOUT_PREFIX}{ip}")
        if not isinstance(data, dict):
            return False
        return int(data.get("count", 0) or 0) >= LOCKOUT_THRESHOLD

    async def record_failure(self, ip: str) -> int:
        key = f"{LOCKOUT_PREFIX}{ip}"
        data = await get_json(self.store, key)
        count = int(data.get("count", 0) or 0) if isinstance(data, dict) else 0
        count += 1
        await put_json(self.store, key, {"count": count}, ttl=LOCKOUT_TTL_SEC)
        logger.warning("[admin] failed auth ip=%s strikes=%d", ip, count)
        return count

    async def totp_enabled(self) -> bool:
        return (await self.store.get(TOTP_ENABLED_KEY)) == "true"

    async def authenticate(self, ip: str, authorization: Optional[str], totp: Any = None) -> AuthResult:
        if await self.is_blocked(ip):
            logger.warning("[admin] locked out ip=%s", ip)
            return AuthResult(AuthOutcome.BLOCKED, "Too many failed attempts. Try again later.")

        if self.limiter.check(ip):
            return AuthResult(AuthOutcome.BLOCKED, "Too many attempts. Slow down.")

        if not self.check_token(authorization):
            await self.record_failure(ip)
            return AuthResult(AuthOutcome.UNAUTHORIZED, "Unauthorized")

        if not await self.totp_enabled():
            return AuthResult(AuthOutcome.OK)

        if not totp:
            # a prompt, not a failed attempt
            return AuthResult(AuthOutcome.TOTP_REQUIRED)

        secret = await self.store.get(TOTP_SECRET_KEY)
        if not secret:
            logger.error("[totp] enabled but no secret stored")
            raise HTTPException(status_code=500, detail="TOTP misconfigured")

        if not verify_totp(secret, totp if isinstance(totp, str) else "", now=self._now()):
            await self.record_failure(ip)
            return AuthResult(AuthOutcome.UNAUTHORIZED, "Invalid authenticator code")

        return AuthResult(AuthOutcome.OK)


def _int_param(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


def _parse_day(s: str) -> datetime:
    return datetime.strptime(s, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def chart_days(start: Optional[str], end: Optional[str], days: Optional[str], now: float) -> List[str]:
    """Day keys for the chart, oldest first, never more than CHART_MAX_DAYS."""
    if start and end:
        try:
            d0 = _parse_day(start)
            d1 = _parse_day(end)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format")
        # count offsets from d0 so stepping never passes d1 (or datetime.max)
        span = min((d1 - d0).days + 1, CHART_MAX_DAYS)
        return [(d0 + timedelta(days=i)).strftime("%Y-%m-%d") for i in range(span)]

    n = min(CHART_MAX_DAYS, max(1, _int_param(days, 30)))
    return [days_ago_key(i, now) for i in range(n - 1, -1, -1)]


def create_admin_router(
    auth: AdminAuthenticator,
    stats: StatsAggregator,
    analytics: AnalyticsIngestor,
    features: FeatureRequestBoard,
    client_ip_func: Callable[[Request], str],
    now_func: Callable[[], float] = time.time,
    totp_issuer: str = "SolReclaimer",
) -> APIRouter:
    router = APIRouter()
    store = auth.store

    @router.post("/verify", response_model=OkOut)
    async def admin_verify(req: Request):
        ip = client_ip_func(req)
        body = await read_json(req)
        code = body.get("totp") if isinstance(body, dict) else None

        result = await auth.authenticate(ip, req.headers.get("authorization"), code)
        if result.outcome is AuthOutcome.BLOCKED:
            raise HTTPException(status_code=429, detail=result.error)
        if result.outcome is AuthOutcome.UNAUTHORIZED:
            raise HTTPException(status_code=401, detail=result.error)
        if result.outcome is AuthOutcome.TOTP_REQUIRED:
            return JSONResponse({"totpRequired": True}, status_code=403)
        return OkOut()

    @router.get("/dashboard", response_model=DashboardOut)
    async def admin_dashboard(req: Request):
        auth.require(req)
        now = now_func()
        today = day_key(now)
        week_days = [days_ago_key(i, now) for i in range(7)]

        (
            active,
            global_stats,
            today_views,
            today_reclaims,
            month_reclaims,
            history,
            social,
            week,
        ) = await asyncio.gather(
            analytics.count_active_visitors(),
            stats.global_stats(),
            analytics.daily_views(today),
            stats.daily_reclaims(today),
            stats.monthly_reclaims(month_key(now)),
            stats.history(),
            analytics.social_counts(),
            asyncio.gather(*(stats.daily_reclaims(d) for d in week_days)),
        )

        week_reclaims = empty_reclaims()
        for day in week:
            for field in ("count", "sol", "accounts"):
                week_reclaims[field] += day[field]

        return DashboardOut(
            activeVisitors=active,
            globalStats=global_stats,
            todayViews=today_views,
            todayReclaims=today_reclaims,
            weekReclaims=week_reclaims,
            monthReclaims=month_reclaims,
            socialClicks=social,
            recentReclaims=history[:DASHBOARD_HISTORY],
        )

    @router.get("/reclaims", response_model=ReclaimPageOut)
    async def admin_reclaims(req: Request, page: Optional[str] = None, limit: Optional[str] = None):
        auth.require(req)
        page_n = max(1, _int_param(page, 1))
        limit_n = min(100, max(1, _int_param(limit, 50)))

        history = await stats.history()
        start = (page_n - 1) * limit_n
        return ReclaimPageOut(
            items=history[start:start + limit_n],
            total=len(history),
            page=page_n,
            limit=limit_n,
            totalPages=math.ceil(len(history) / limit_n),
        )

    @router.get("/visitors")
    async def admin_visitors(req: Request):
        auth.require(req)
        return {"activeVisitors": await analytics.count_active_visitors()}

    @router.get("/chart", response_model=List[ChartPointOut])
    async def admin_chart(
        req: Request,
        start: Optional[str] = None,
        end: Optional[str] = None,
        days: Optional[str] = None,
    ):
        auth.require(req)
        day_keys = chart_days(start, end, days, now_func())

        reclaims, views = await asyncio.gather(
            asyncio.gather(*(stats.daily_reclaims(d) for d in day_keys)),
            asyncio.gather(*(analytics.daily_views(d) for d in day_keys)),
        )
        return [
            ChartPointOut(
                date=d,
                reclaims=r["count"],
                sol=r["sol"],
                accounts=r["accounts"],
                views=v["total"],
            )
            for d, r, v in zip(day_keys, reclaims, views)
        ]

    # ---------------------------
    # TOTP management
    # ---------------------------
    @router.get("/totp/status", response_model=TotpStatusOut)
    async def totp_status(req: Request):
        auth.require(req)
        return TotpStatusOut(enabled=await auth.totp_enabled())

    @router.post("/totp/setup", response_model=TotpSetupOut)
    async def totp_setup(req: Request):
        auth.require(req)
        secret = generate_secret()
        # pending until a code from the authenticator app confirms it
        await store.put(TOTP_PENDING_KEY, secret, ttl=TOTP_PENDING_TTL_SEC)
        return TotpSetupOut(
            secret=format_secret(secret),
            uri=build_totp_uri(secret, issuer=totp_issuer),
            raw=secret,
        )

    async def _read_code(req: Request, message: str) -> str:
        body = await read_json(req)
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        code = body.get("code")
        if not is_code_format(code):
            raise HTTPException(status_code=400, detail=message)
        return code

    @router.post("/totp/confirm", response_model=MessageOut)
    async def totp_confirm(req: Request):
        auth.require(req)
        code = await _read_code(req, "Provide a 6-digit code")

        pending = await store.get(TOTP_PENDING_KEY)
        if not pending:
            raise HTTPException(status_code=400, detail="No pending TOTP setup. Start setup first.")

        if not verify_totp(pending, code, now=now_func()):
            await auth.record_failure(client_ip_func(req))
            raise HTTPException(status_code=400, detail="Invalid code. Check your authenticator app and try again.")

        await asyncio.gather(
            store.put(TOTP_SECRET_KEY, pending),
            store.put(TOTP_ENABLED_KEY, "true"),
            store.delete(TOTP_PENDING_KEY),
        )
        logger.info("[totp] enabled")
        return MessageOut(message="TOTP enabled successfully")

    @router.delete("/totp/disable", response_model=MessageOut)
    async def totp_disable(req: Request):
        auth.require(req)
        code = await _read_code(req, "Provide your current 6-digit code to disable TOTP")

        secret = await store.get(TOTP_SECRET_KEY)
        if not secret:
            raise HTTPException(status_code=400, detail="TOTP is not enabled")

        if not verify_totp(secret, code, now=now_func()):
            await auth.record_failure(client_ip_func(req))
            raise HTTPException(status_code=401, detail="Invalid code")

        await asyncio.gather(
            store.delete(TOTP_SECRET_KEY),
            store.delete(TOTP_ENABLED_KEY),
        )
        logger.info("[totp] disabled")
        return MessageOut(message="TOTP disabled")

    # ---------------------------
    # Feature requests
    # ---------------------------
    @router.get("/feature-requests")
    async def admin_feature_requests(req: Request) -> Dict[str, Any]:
        auth.require(req)
        return {"requests": await features.list_all()}

    @router.post("/feature-requests/update", response_model=OkOut)
    async def admin_feature_request_update(req: Request):
        auth.require(req)
        body = await read_json(req)
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")
        req_id = body.get("id")
        status = body.get("status")
        if not isinstance(req_id, str) or not req_id:
            raise HTTPException(status_code=400, detail="Invalid id")
        if status not in VALID_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status")
        if not await features.set_status(req_id, status):
            raise HTTPException(status_code=404, detail="Request not found")
        return OkOut()

    return router
