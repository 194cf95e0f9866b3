import asyncio
import json

import pytest
import requests

from kv_store import KVStoreError, MemoryKV, UpstashKV, get_int, get_json, put_json


def test_memory_ttl_expiry(store, clock):
    async def go():
        await store.put("visitor:a", "1", ttl=120)
        await store.put("forever", "x")
        assert await store.get("visitor:a") == "1"
        clock.advance(119)
        assert await store.get("visitor:a") == "1"
        clock.advance(1)
        assert await store.get("visitor:a") is None
        assert await store.get("forever") == "x"

    asyncio.run(go())


def test_memory_list_keys_paginates_with_cursor(store):
    async def go():
        for i in range(7):
            await store.put(f"visitor:{i}", "1")
        await store.put("other:1", "1")
        seen = []
        cursor = None
        pages = 0
        while True:
            keys, cursor = await store.list_keys("visitor:", cursor=cursor, limit=3)
            seen.extend(keys)
            pages += 1
            if cursor is None:
                break
        return seen, pages

    seen, pages = asyncio.run(go())
    assert sorted(seen) == [f"visitor:{i}" for i in range(7)]
    assert pages == 3


def test_json_helpers_default_on_missing_or_garbage(store):
    async def go():
        assert await get_json(store, "nope", {"a": 1}) == {"a": 1}
        await store.put("bad", "{not json")
        assert await get_json(store, "bad", []) == []
        await put_json(store, "good", {"x": [1, 2]})
        assert await get_json(store, "good") == {"x": [1, 2]}
        assert await get_int(store, "nope") == 0

    asyncio.run(go())


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.sent = []
        self.headers = {}

    def post(self, url, data=None, timeout=None):
        self.sent.append(json.loads(data))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_upstash(responses):
    kv = UpstashKV("https://kv.example.com/", "tok")
    kv.session = FakeSession(responses)
    return kv


def test_upstash_commands():
    kv = make_upstash([
        FakeResponse({"result": "OK"}),
        FakeResponse({"result": "1"}),
        FakeResponse({"result": None}),
        FakeResponse({"result": ["17", ["visitor:a", "visitor:b"]]}),
        FakeResponse({"result": ["0", ["visitor:c"]]}),
    ])

    async def go():
        await kv.put("visitor:a", "1", ttl=120)
        assert await kv.get("visitor:a") == "1"
        assert await kv.get("missing") is None
        first = await kv.list_keys("visitor:")
        second = await kv.list_keys("visitor:", cursor=first[1])
        return first, second

    first, second = asyncio.run(go())
    assert first == (["visitor:a", "visitor:b"], "17")
    assert second == (["visitor:c"], None)
    sent = kv.session.sent
    assert sent[0] == ["SET", "visitor:a", "1", "EX", "120"]
    assert sent[1] == ["GET", "visitor:a"]
    assert sent[3] == ["SCAN", "0", "MATCH", "visitor:*", "COUNT", "1000"]
    assert sent[4][1] == "17"


def test_upstash_failures_raise_store_error():
    kv = make_upstash([
        requests.ConnectionError("down"),
        FakeResponse({"error": "WRONGTYPE"}),
        FakeResponse({}, status=500),
    ])

    async def go(coro):
        await coro

    for _ in range(3):
        with pytest.raises(KVStoreError):
            asyncio.run(go(kv.get("k")))


def test_memory_store_is_isolated_per_instance():
    a, b = MemoryKV(), MemoryKV()
    asyncio.run(a.put("k", "v"))
    assert asyncio.run(b.get("k")) is None
