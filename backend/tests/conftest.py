"""
Shared fixtures: a fake Robinhood API behind httpx.MockTransport, a
controllable clock and a sleep that records delays instead of waiting.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest

from modules.robinhood import InMemorySessionStore, RobinhoodClient, SessionManager
from modules.robinhood_tools import RobinhoodTools

API = "https://api.robinhood.com"
NUMMUS = "https://nummus.robinhood.com"
PHOENIX = "https://phoenix.robinhood.com"

FakeResponse = Union[Dict[str, Any], Tuple[int, Any], Callable[[httpx.Request], Any]]


class FakeRobinhood:
    """
    Route table keyed by (method, scheme://host/path); query strings are ignored

    Each route holds a queue of responses. Responses are consumed in order
    and the last one repeats. A response is a JSON dict (200), a
    (status, json) tuple, or a callable taking the request; an async
    callable is awaited by the transport, which lets a test pause mid-request.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[FakeResponse]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *responses: FakeResponse) -> None:
        self.routes[(method, url)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"detail": "Not found."})

        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            return item(request)
        if isinstance(item, tuple):
            status, body = item
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=item)

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and f"{r.url.scheme}://{r.url.host}{r.url.path}" == url
        ]


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_api():
    return FakeRobinhood()


@pytest.fixture
def client(fake_api):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler))
    return RobinhoodClient(http_client=http_client)


@pytest.fixture
def clock():
    # 15:00 UTC = 11:00 in New York
    return FakeClock(datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def sessions(store, clock):
    return SessionManager(store, clock=clock)


@pytest.fixture
def tools(client, store, clock, sleep):
    return RobinhoodTools(client, store, clock=clock, sleep=sleep)
