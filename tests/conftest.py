"""Pytest configuration and shared fixtures."""

from typing import List, Optional

import pytest
import pytest_asyncio
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricewatch.models import Base


@pytest_asyncio.fixture
async def redis_client():
    """In-process Redis with the same client API as redis.asyncio."""
    client = aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def session_factory():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


# ============================================================================
# FAKE PLAYWRIGHT OBJECTS
# ============================================================================

class FakeResponse:
    def __init__(self, status: int = 200):
        self.status = status


class FakeMouse:
    def __init__(self):
        self.moves = []

    async def move(self, x, y, steps=1):
        self.moves.append((x, y, steps))


class FakePage:
    """Enough of playwright's Page for the scrapers and the pool."""

    def __init__(self, html: str = "", status: int = 200):
        self.html = html
        self.status = status
        self.url = "about:blank"
        self.viewport_size = {"width": 1280, "height": 720}
        self.mouse = FakeMouse()
        self.visited: List[str] = []
        self.evaluated: List[str] = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.url = url
        self.visited.append(url)
        return FakeResponse(self.status)

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def content(self) -> str:
        return self.html

    async def evaluate(self, script):
        self.evaluated.append(script)


class FakeContext:
    def __init__(self, page: FakePage, options: dict):
        self.page = page
        self.options = options
        self.init_scripts: List[str] = []
        self.routes = []
        self.cookies_cleared = 0
        self.closed = False

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def new_page(self):
        return self.page

    async def clear_cookies(self):
        self.cookies_cleared += 1

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, launcher: "FakeLauncher"):
        self._launcher = launcher
        self.contexts: List[FakeContext] = []
        self.closed = False

    async def new_context(self, **options):
        context = FakeContext(FakePage(self._launcher.html, self._launcher.status), options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class FakeLauncher:
    """Stands in for PlaywrightLauncher; fails the first ``fail_times`` launches."""

    def __init__(self, html: str = "", status: int = 200, fail_times: int = 0):
        self.html = html
        self.status = status
        self.fail_times = fail_times
        self.launched_proxies: List[Optional[dict]] = []
        self.browsers: List[FakeBrowser] = []
        self.stopped = 0

    async def launch(self, proxy=None):
        self.launched_proxies.append(proxy)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("browser crashed on startup")
        browser = FakeBrowser(self)
        self.browsers.append(browser)
        return browser

    async def stop(self):
        self.stopped += 1


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def make_launcher():
    """Factory for launchers serving a given page or failing on startup."""
    return FakeLauncher


@pytest.fixture
def make_page():
    return FakePage


class RecordingSink:
    """Result sink that keeps everything in memory."""

    def __init__(self):
        self.saved = []
        self.errors = []

    async def save_scraped_product(self, product_id, scraped):
        self.saved.append((product_id, scraped))

    async def record_scrape_error(self, product_id, kind, message):
        self.errors.append((product_id, kind, message))


@pytest.fixture
def sink():
    return RecordingSink()
