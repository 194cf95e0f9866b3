import pytest
from fastapi.testclient import TestClient

from app import create_app
from kv_store import MemoryKV

ADMIN_TOKEN = "s3cret-admin-token"
UPSTREAM = "http://upstream.test/rpc"
WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
OTHER_WALLET = "So11111111111111111111111111111111111111112"


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryKV(now_func=clock)


@pytest.fixture
def client(store, clock):
    app = create_app(
        store=store,
        admin_token=ADMIN_TOKEN,
        rpc_upstream_url=UPSTREAM,
        now_func=clock,
        allowed_origins=["https://soltools.net", "https://www.soltools.net"],
    )
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
