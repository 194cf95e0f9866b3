# analytics.py
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from kv_store import KVStore, get_int, get_json, put_json
from stats import day_key, month_key

logger = logging.getLogger(__name__)

VISITOR_PREFIX = "visitor:"
VISITOR_TTL_SEC = 120
ACTIVE_VISITORS_KEY = "stats:activeVisitors"

MAX_SESSION_ID_LEN = 64
MAX_PAGE_LEN = 100
UNKNOWN_COUNTRY = "XX"

ALLOWED_SOCIAL_BUTTONS = ("github", "x", "share-x", "share-burn", "built-by")


def daily_views_key(day: str) -> str:
    return f"analytics:views:daily:{day}"


def monthly_views_key(month: str) -> str:
    return f"analytics:views:monthly:{month}"


def social_key(button: str) -> str:
    return f"analytics:social:{button}"


def empty_views() -> Dict[str, Any]:
    return {"total": 0, "pages": {}, "countries": {}}


def _views(stored: Any) -> Dict[str, Any]:
    out = empty_views()
    if isinstance(stored, dict):
        out["total"] = stored.get("total", 0) or 0
        out["pages"] = dict(stored.get("pages") or {})
        out["countries"] = dict(stored.get("countries") or {})
    return out


class AnalyticsIngestor:
    """Anonymous presence, pageview and social-click counters."""

    def __init__(self, store: KVStore, now_func: Callable[[], float] = time.time):
        self.store = store
        self._now = now_func

    async def heartbeat(self, session_id: str) -> None:
        if not isinstance(session_id, str) or not session_id or len(session_id) > MAX_SESSION_ID_LEN:
            raise ValueError("invalid sessionId")
        await self.store.put(f"{VISITOR_PREFIX}{session_id}", "1", ttl=VISITOR_TTL_SEC)

    async def pageview(self, page: Any, country: Optional[str] = None) -> None:
        page = page[:MAX_PAGE_LEN] if isinstance(page, str) else "/"
        country = country or UNKNOWN_COUNTRY
        ts = self._now()
        dkey = daily_views_key(day_key(ts))
        mkey = monthly_views_key(month_key(ts))

        raw_daily, raw_monthly = await asyncio.gather(
            get_json(self.store, dkey),
            get_json(self.store, mkey),
        )
        daily = _views(raw_daily)
        daily["total"] += 1
        daily["pages"][page] = daily["pages"].get(page, 0) + 1
        daily["countries"][country] = daily["countries"].get(country, 0) + 1

        monthly = {"total": 0}
        if isinstance(raw_monthly, dict):
            monthly["total"] = raw_monthly.get("total", 0) or 0
        monthly["total"] += 1

        await asyncio.gather(
            put_json(self.store, dkey, daily),
            put_json(self.store, mkey, monthly),
        )

    async def social_click(self, button: str) -> int:
        if button not in ALLOWED_SOCIAL_BUTTONS:
            raise ValueError("invalid button")
        key = social_key(button)
        count = await get_int(self.store, key) + 1
        await self.store.put(key, str(count))
        return count

    async def social_counts(self) -> Dict[str, int]:
        counts = await asyncio.gather(*(get_int(self.store, social_key(b)) for b in ALLOWED_SOCIAL_BUTTONS))
        return dict(zip(ALLOWED_SOCIAL_BUTTONS, counts))

    async def daily_views(self, day: str) -> Dict[str, Any]:
        return _views(await get_json(self.store, daily_views_key(day)))

    async def count_active_visitors(self) -> int:
        """Walk every page of the `visitor:` listing; each live key is one session."""
        total = 0
        cursor = None
        while True:
            keys, cursor = await self.store.list_keys(VISITOR_PREFIX, cursor=cursor)
            total += len(keys)
            if cursor is None:
                return total

    async def refresh_active_visitors(self) -> int:
        total = await self.count_active_visitors()
        await self.store.put(ACTIVE_VISITORS_KEY, str(total))
        logger.info("[analytics] active visitors=%d", total)
        return total

    async def cached_active_visitors(self) -> int:
        return await get_int(self.store, ACTIVE_VISITORS_KEY)
