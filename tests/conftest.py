"""
Shared test fixtures.

Network access goes through an httpx.MockTransport serving the `routes`
dict; time goes through a FakeClock the tests can move forward.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from iptv_catalog.utils.file_operations import HttpFetcher


NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock for stores and the registry."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def xmltv_time(dt: datetime) -> str:
    return dt.strftime("%Y%m%d%H%M%S +0000")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def routes() -> dict:
    """url -> body (str / bytes) or HTTP status code"""
    return {}


@pytest.fixture
def requested_urls() -> list:
    return []


@pytest.fixture
def fetcher(routes, requested_urls) -> HttpFetcher:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested_urls.append(url)
        body = routes.get(url)
        if body is None:
            return httpx.Response(404)
        if isinstance(body, int):
            return httpx.Response(body)
        if isinstance(body, str):
            body = body.encode("utf-8")
        return httpx.Response(200, content=body)

    return HttpFetcher(transport=httpx.MockTransport(handler), max_retries=1, backoff_factor=0.01)


@pytest.fixture
def remap_file(tmp_path):
    """Empty remap file so tests never depend on the bundled rules"""
    path = tmp_path / "remap.txt"
    path.write_text("# no rules\n", encoding="utf-8")
    return path
