# stats.py
import asyncio
import logging
import math
import re
import time
from typing import Any, Callable, Dict, List, Optional

from kv_store import KVStore, get_json, put_json

logger = logging.getLogger(__name__)

MAX_RECENT = 10
MAX_HISTORY = 200

GLOBAL_KEY = "stats:global"
RECENT_KEY = "stats:recent"
HISTORY_KEY = "stats:history"

_WALLET_RE = re.compile(r"[1-9A-HJ-NP-Za-km-z]{32,44}")


def day_key(ts: Optional[float] = None) -> str:
    # simple UTC day key YYYY-MM-DD
    ts = time.time() if ts is None else ts
    return time.strftime("%Y-%m-%d", time.gmtime(ts))


def month_key(ts: Optional[float] = None) -> str:
    ts = time.time() if ts is None else ts
    return time.strftime("%Y-%m", time.gmtime(ts))


def days_ago_key(days: int, ts: Optional[float] = None) -> str:
    ts = time.time() if ts is None else ts
    return day_key(ts - days * 86400)


def wallet_key(wallet: str) -> str:
    return f"wallet:{wallet}"


def daily_reclaims_key(day: str) -> str:
    return f"analytics:reclaims:daily:{day}"


def monthly_reclaims_key(month: str) -> str:
    return f"analytics:reclaims:monthly:{month}"


def is_valid_wallet(addr: Any) -> bool:
    """Base58 alphabet, 32-44 characters (Solana account address shape)."""
    return isinstance(addr, str) and _WALLET_RE.fullmatch(addr) is not None


def is_amount(v: Any) -> bool:
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        return False
    try:
        return math.isfinite(v) and v >= 0
    except OverflowError:
        # int beyond float range
        return False


def empty_global() -> Dict[str, Any]:
    return {"totalSolReclaimed": 0, "totalAccountsClosed": 0, "totalWallets": 0}


def empty_wallet() -> Dict[str, Any]:
    return {"totalSolReclaimed": 0, "totalAccountsClosed": 0, "uses": 0}


def empty_reclaims() -> Dict[str, Any]:
    return {"count": 0, "sol": 0, "accounts": 0}


def _merged(default: Dict[str, Any], stored: Any) -> Dict[str, Any]:
    out = dict(default)
    if isinstance(stored, dict):
        out.update(stored)
    return out


class RingBuffer:
    """Newest-first list capped at `limit` entries, stored as a flat JSON array."""

    def __init__(self, limit: int):
        self.limit = limit

    def load(self, stored: Any) -> List[Any]:
        return list(stored) if isinstance(stored, list) else []

    def push(self, items: List[Any], entry: Any) -> List[Any]:
        # insert first, truncate after
        items = [entry] + list(items)
        del items[self.limit:]
        return items


class StatsAggregator:
    """
    Reclaim counters: global, per-wallet, daily, monthly, and two feeds.

    record_reclaim reads six keys, merges in memory and writes all six back.
    Nothing here is atomic: two concurrent reclaims touching the same key can
    lose one increment (last writer wins). The store offers no compare-and-swap.
    """

    def __init__(self, store: KVStore, now_func: Callable[[], float] = time.time):
        self.store = store
        self._now = now_func
        self.recent_feed = RingBuffer(MAX_RECENT)
        self.history_feed = RingBuffer(MAX_HISTORY)

    async def record_reclaim(
        self,
        wallet: str,
        sol_reclaimed: float,
        accounts_closed: float,
        signatures: Optional[List[Any]] = None,
    ) -> None:
        if not is_valid_wallet(wallet):
            raise ValueError("invalid wallet")
        if not is_amount(sol_reclaimed) or not is_amount(accounts_closed):
            raise ValueError("amounts must be non-negative numbers")
        sigs = [s for s in (signatures or []) if isinstance(s, str) and s]

        ts = self._now()
        today = day_key(ts)
        month = month_key(ts)
        wkey = wallet_key(wallet)
        dkey = daily_reclaims_key(today)
        mkey = monthly_reclaims_key(month)

        raw_global, raw_wallet, raw_recent, raw_history, raw_daily, raw_monthly = await asyncio.gather(
            get_json(self.store, GLOBAL_KEY),
            get_json(self.store, wkey),
            get_json(self.store, RECENT_KEY),
            get_json(self.store, HISTORY_KEY),
            get_json(self.store, dkey),
            get_json(self.store, mkey),
        )

        glob = _merged(empty_global(), raw_global)
        wstats = _merged(empty_wallet(), raw_wallet)

        is_new_wallet = wstats["uses"] == 0

        wstats["totalSolReclaimed"] += sol_reclaimed
        wstats["totalAccountsClosed"] += accounts_closed
        wstats["uses"] += 1

        glob["totalSolReclaimed"] += sol_reclaimed
        glob["totalAccountsClosed"] += accounts_closed
        if is_new_wallet:
            glob["totalWallets"] += 1

        ts_ms = int(ts * 1000)
        public_entry: Dict[str, Any] = {
            "wallet": wallet,
            "solReclaimed": sol_reclaimed,
            "accountsClosed": accounts_closed,
            "timestamp": ts_ms,
        }
        if sigs:
            public_entry["signatures"] = sigs
        recent = self.recent_feed.push(self.recent_feed.load(raw_recent), public_entry)

        history = self.history_feed.push(self.history_feed.load(raw_history), {
            "wallet": wallet,
            "solReclaimed": sol_reclaimed,
            "accountsClosed": accounts_closed,
            "signatures": sigs,
            "timestamp": ts_ms,
        })

        daily = _merged(empty_reclaims(), raw_daily)
        monthly = _merged(empty_reclaims(), raw_monthly)
        for agg in (daily, monthly):
            agg["count"] += 1
            agg["sol"] += sol_reclaimed
            agg["accounts"] += accounts_closed

        await asyncio.gather(
            put_json(self.store, GLOBAL_KEY, glob),
            put_json(self.store, wkey, wstats),
            put_json(self.store, RECENT_KEY, recent),
            put_json(self.store, HISTORY_KEY, history),
            put_json(self.store, dkey, daily),
            put_json(self.store, mkey, monthly),
        )
        logger.info(
            "[stats] reclaim wallet=%s sol=%s accounts=%s new_wallet=%s",
            wallet, sol_reclaimed, accounts_closed, is_new_wallet,
        )

    async def global_stats(self) -> Dict[str, Any]:
        return _merged(empty_global(), await get_json(self.store, GLOBAL_KEY))

    async def wallet_stats(self, wallet: str) -> Dict[str, Any]:
        return _merged(empty_wallet(), await get_json(self.store, wallet_key(wallet)))

    async def recent(self) -> List[Any]:
        return self.recent_feed.load(await get_json(self.store, RECENT_KEY))

    async def history(self) -> List[Any]:
        return self.history_feed.load(await get_json(self.store, HISTORY_KEY))

    async def daily_reclaims(self, day: str) -> Dict[str, Any]:
        return _merged(empty_reclaims(), await get_json(self.store, daily_reclaims_key(day)))

    async def monthly_reclaims(self, month: str) -> Dict[str, Any]:
        return _merged(empty_reclaims(), await get_json(self.store, monthly_reclaims_key(month)))
