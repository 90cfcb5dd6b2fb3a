import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from email.utils import format_datetime
from time import monotonic
from typing import Dict, List, Optional, Tuple

import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from config import config
from models import DatabaseQueue


class FakeOrigin:
    """Local HTTP origin serving canned responses per path.

    Every request is recorded with its headers and arrival time. A route can
    be a single response or a sequence (the last entry repeats). When a route
    has an ETag, a matching If-None-Match gets a 304.
    """

    def __init__(self):
        self.routes: Dict[str, List[Tuple[int, bytes, Dict[str, str]]]] = {}
        self.etags: Dict[str, str] = {}
        self.requests: List[Tuple[str, Dict[str, str], float]] = []
        self.server: Optional[TestServer] = None

    def set(self, path: str, body=b"", status: int = 200, headers: Optional[Dict[str, str]] = None,
            etag: Optional[str] = None) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[path] = [(status, body, headers or {})]
        if etag:
            self.etags[path] = etag
        else:
            self.etags.pop(path, None)

    def set_sequence(self, path: str, responses) -> None:
        self.routes[path] = [
            (status, body.encode("utf-8") if isinstance(body, str) else body, headers or {})
            for status, body, headers in responses
        ]

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append((request.path, dict(request.headers), monotonic()))
        responses = self.routes.get(request.path)
        if not responses:
            return web.Response(status=404, text="not found")
        etag = self.etags.get(request.path)
        if etag and request.headers.get("If-None-Match") == f'"{etag}"':
            return web.Response(status=304)
        status, body, headers = responses[0] if len(responses) == 1 else responses.pop(0)
        headers = dict(headers)
        if etag:
            headers["ETag"] = f'"{etag}"'
        return web.Response(status=status, body=body, headers=headers)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    def hits(self, path: Optional[str] = None) -> int:
        return sum(1 for p, _, _ in self.requests if path is None or p == path)


def build_rss(items) -> str:
    """RSS 2.0 document from (title, link, published datetime or None) tuples."""
    entries = []
    for title, link, published in items:
        pub = f"<pubDate>{format_datetime(published)}</pubDate>" if published else ""
        entries.append(
            f"<item><title>{title}</title><link>{link}</link><guid>{link}</guid>{pub}"
            f"<description>Summary for {title}</description></item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Test feed</title><link>https://news.example.com/</link>'
        '<description>Test</description>' + "".join(entries) + '</channel></rss>'
    )


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / "test.db"))
    queue = DatabaseQueue(config.DATABASE_PATH)
    await queue.start()
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def origin():
    fake = FakeOrigin()
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.server = server
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def session():
    async with ClientSession() as client_session:
        yield client_session
