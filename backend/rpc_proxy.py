# rpc_proxy.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# Read-only queries plus transaction submission/simulation.
ALLOWED_METHODS = frozenset({
    "getBalance",
    "getAccountInfo",
    "getParsedTokenAccountsByOwner",
    "getTokenAccountsByOwner",
    "getLatestBlockhash",
    "sendTransaction",
    "simulateTransaction",
    "getSignatureStatuses",
    "getTransaction",
    "getSlot",
    "getBlockHeight",
    "getMinimumBalanceForRentExemption",
    "getMultipleAccounts",
    "getFeeForMessage",
    "isBlockhashValid",
    "getRecentPrioritizationFees",
    "getAddressLookupTable",
    "getAssetBatch",
})


class RpcBodyError(ValueError):
    pass


class UpstreamError(RuntimeError):
    pass


@dataclass
class RpcCall:
    """A JSON-RPC body resolved once: `batch` tells whether it arrived as an array."""
    batch: bool
    requests: List[Any]


def parse_rpc_body(payload: Any) -> RpcCall:
    if isinstance(payload, list):
        if not payload:
            raise RpcBodyError("Empty batch")
        return RpcCall(batch=True, requests=payload)
    if isinstance(payload, dict):
        return RpcCall(batch=False, requests=[payload])
    raise RpcBodyError("Invalid JSON-RPC body")


def method_name(rpc_req: Any) -> Optional[str]:
    if not isinstance(rpc_req, dict):
        return None
    m = rpc_req.get("method")
    return m if isinstance(m, str) and m else None


def disallowed_method(call: RpcCall) -> Optional[str]:
    """First method outside the allow-list ('unknown' when missing), or None if all pass."""
    for rpc_req in call.requests:
        m = method_name(rpc_req)
        if m is None:
            return "unknown"
        if m not in ALLOWED_METHODS:
            return m
    return None


class RpcProxy:
    """Forwards an already-validated JSON-RPC body to the upstream provider, once."""

    def __init__(self, upstream_url: str, timeout: float = 10.0):
        self.upstream_url = upstream_url
        self.timeout = timeout

    def _post(self, raw_body: bytes) -> Tuple[int, str]:
        try:
            r = requests.post(
                self.upstream_url,
                data=raw_body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("[rpc] upstream request failed: %s", type(e).__name__)
            raise UpstreamError("Upstream RPC unavailable") from e
        if r.status_code >= 400:
            logger.warning("[rpc] upstream returned %s", r.status_code)
        return r.status_code, r.text

    async def forward(self, raw_body: bytes) -> Tuple[int, str]:
        # no retries: a repeated sendTransaction could submit twice
        return await asyncio.to_thread(self._post, raw_body)
