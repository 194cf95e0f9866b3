# feature_requests.py
import asyncio
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional

from kv_store import KVStore, get_json, put_json
from stats import RingBuffer

logger = logging.getLogger(__name__)

ID_PREFIX = "feature-request:"
LIST_KEY = "feature-requests:list"
MAX_LISTED = 200
FETCH_BATCH = 25
VALID_STATUSES = ("noted", "planned", "done", "dismissed")


class FeatureRequestBoard:
    """User-submitted feature requests with an admin-managed status."""

    def __init__(self, store: KVStore, now_func: Callable[[], float] = time.time):
        self.store = store
        self._now = now_func
        self.index = RingBuffer(MAX_LISTED)

    async def submit(self, title: str, description: str, contact: Optional[str] = None) -> str:
        ts_ms = int(self._now() * 1000)
        req_id = f"{ID_PREFIX}{ts_ms}:{secrets.token_hex(3)}"
        contact = contact.strip() if isinstance(contact, str) else ""
        entry: Dict[str, Any] = {
            "id": req_id,
            "title": title.strip(),
            "description": description.strip(),
            "submittedAt": ts_ms,
            "status": "pending",
        }
        if contact:
            entry["contact"] = contact
        await put_json(self.store, req_id, entry)

        ids = self.index.load(await get_json(self.store, LIST_KEY))
        await put_json(self.store, LIST_KEY, self.index.push(ids, req_id))
        return req_id

    async def list_all(self) -> List[Dict[str, Any]]:
        ids = self.index.load(await get_json(self.store, LIST_KEY))
        out: List[Dict[str, Any]] = []
        for i in range(0, len(ids), FETCH_BATCH):
            batch = ids[i:i + FETCH_BATCH]
            rows = await asyncio.gather(*(get_json(self.store, rid) for rid in batch))
            out.extend(r for r in rows if isinstance(r, dict))
        return out

    async def set_status(self, req_id: str, status: str) -> bool:
        """Returns False when the request id does not exist."""
        if status not in VALID_STATUSES:
            raise ValueError("invalid status")
        if not req_id.startswith(ID_PREFIX):
            return False
        entry = await get_json(self.store, req_id)
        if not isinstance(entry, dict):
            return False
        entry["status"] = status
        await put_json(self.store, req_id, entry)
        logger.info("[features] %s -> %s", req_id, status)
        return True
