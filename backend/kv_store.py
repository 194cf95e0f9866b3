# kv_store.py
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)


class KVStoreError(RuntimeError):
    """A read or write against the key-value store failed."""


class KVStore:
    """
    Minimal async key-value interface: string keys, string values, optional TTL.

    There are no transactions and no conditional writes. Callers that need to
    update an aggregate do read -> merge -> write and accept last-writer-wins.
    """

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def list_keys(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = 1000,
    ) -> Tuple[List[str], Optional[str]]:
        """Return one page of keys starting with `prefix` and the cursor for the next page (None when done)."""
        raise NotImplementedError


async def get_json(store: KVStore, key: str, default: Any = None) -> Any:
    raw = await store.get(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("[kv] unparseable JSON under %s, using default", key)
        return default


async def put_json(store: KVStore, key: str, value: Any, ttl: Optional[int] = None) -> None:
    await store.put(key, json.dumps(value), ttl=ttl)


async def get_int(store: KVStore, key: str) -> int:
    raw = await store.get(key)
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        return 0


# ---------------------------
# In-process store
# (OK for 1 process and tests; use Upstash for multi-worker)
# ---------------------------
class MemoryKV(KVStore):
    def __init__(self, now_func: Callable[[], float] = time.time):
        self._now = now_func
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _alive(self, key: str) -> bool:
        item = self._data.get(key)
        if item is None:
            return False
        _, expires_at = item
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[str]:
        if not self._alive(key):
            return None
        return self._data[key][0]

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._now() + ttl if ttl else None
        self._data[key] = (str(value), expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = 1000,
    ) -> Tuple[List[str], Optional[str]]:
        keys = sorted(k for k in list(self._data) if k.startswith(prefix) and self._alive(k))
        start = int(cursor) if cursor else 0
        page = keys[start:start + limit]
        end = start + len(page)
        return page, (str(end) if end < len(keys) else None)


# ---------------------------
# Upstash Redis REST store
# ---------------------------
def _rz_result(payload: Any) -> Any:
    if isinstance(payload, dict) and "error" in payload:
        raise KVStoreError(str(payload["error"]))
    if isinstance(payload, dict) and "result" in payload:
        return payload["result"]
    return payload


class UpstashKV(KVStore):
    """
    Store backed by the Upstash Redis REST API.

    Each command is POSTed as a JSON array to the base URL. requests is
    blocking, so calls run in a worker thread to keep the event loop free.
    """

    def __init__(self, url: str, token: str, timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })

    def _command_sync(self, cmd: List[Any]) -> Any:
        try:
            r = self.session.post(self.url, data=json.dumps(cmd), timeout=self.timeout)
            r.raise_for_status()
            return _rz_result(r.json())
        except (requests.RequestException, ValueError) as e:
            logger.error("[kv] Upstash %s failed: %s", cmd[0], e)
            raise KVStoreError(f"{cmd[0]} failed: {e}") from e

    async def _command(self, *cmd: Any) -> Any:
        return await asyncio.to_thread(self._command_sync, [str(c) for c in cmd])

    async def get(self, key: str) -> Optional[str]:
        val = await self._command("GET", key)
        if val is None:
            return None
        return str(val)

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self._command("SET", key, value, "EX", int(ttl))
        else:
            await self._command("SET", key, value)

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

    async def list_keys(
        self,
        prefix: str,
        cursor: Optional[str] = None,
        limit: int = 1000,
    ) -> Tuple[List[str], Optional[str]]:
        res = await self._command("SCAN", cursor or "0", "MATCH", f"{prefix}*", "COUNT", limit)
        if not isinstance(res, list) or len(res) < 2:
            raise KVStoreError(f"unexpected SCAN payload: {res!r}")
        next_cursor = str(res[0])
        keys = [str(k) for k in (res[1] or [])]
        return keys, (None if next_cursor == "0" else next_cursor)
