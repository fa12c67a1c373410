"""Rotating proxy pool with health tracking and free-proxy harvesting."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

# A candidate is healthy while fail_count stays below this
UNHEALTHY_FAIL_COUNT = 3

PROXYSCRAPE_URL = (
    "https://api.proxyscrape.com/v2/?request=displayproxies&protocol=http"
    "&timeout=10000&country=all&ssl=all&anonymity=all"
)
PROXY_LIST_DOWNLOAD_URL = "https://www.proxy-list.download/api/v1/get?type=http"


@dataclass
class ProxyCandidate:
    """Proxy egress point with health tracking."""

    host: str
    port: int
    protocol: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None
    success_count: int = 0
    fail_count: int = 0
    last_used_at: Optional[datetime] = None

    @property
    def healthy(self) -> bool:
        return self.fail_count < UNHEALTHY_FAIL_COUNT

    @property
    def server(self) -> str:
        """Server URL in the form Playwright expects (no credentials)."""
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    def mark_success(self) -> None:
        self.success_count += 1
        self.fail_count = max(0, self.fail_count - 1)

    def mark_failed(self) -> None:
        self.fail_count += 1

    def playwright_proxy(self) -> Dict[str, str]:
        """Proxy settings for ``browser.new_context(proxy=...)``."""
        config = {"server": self.server}
        if self.has_credentials:
            config["username"] = self.username or ""
            config["password"] = self.password or ""
        return config


class ProxyRotator:
    """Round-robin proxy rotation over the healthy subset of a candidate pool.

    The pool is filled by ``initialize()`` from, in order of precedence:

    1. a single explicitly configured proxy (fixed for the process lifetime),
    2. free proxies harvested from public lists (refreshed periodically),
    3. nothing, in which case the rotator runs proxy-less and
       ``get_next()`` returns None.

    Candidates are never evicted. When every candidate is unhealthy all fail
    counts are reset, so once the pool holds at least one candidate
    ``get_next()`` never returns None.
    """

    def __init__(
        self,
        explicit_proxy: Optional[ProxyCandidate] = None,
        use_free_proxies: bool = False,
        refresh_interval_minutes: int = 30,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize proxy rotator.

        Args:
            explicit_proxy: Configured proxy that takes precedence over harvesting
            use_free_proxies: Harvest proxies from public sources when no explicit proxy is set
            refresh_interval_minutes: Minimum age of the harvested list before re-harvesting
            http_client: Client used for harvesting (one is created per harvest if omitted)
            clock: Monotonic clock, injectable for tests
        """
        self._explicit_proxy = explicit_proxy
        self._use_free_proxies = use_free_proxies
        self._refresh_interval = refresh_interval_minutes * 60
        self._http_client = http_client
        self._clock = clock
        self._proxies: List[ProxyCandidate] = []
        self._index = 0
        self._last_refresh: Optional[float] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "ProxyRotator":
        explicit = None
        if settings.has_explicit_proxy():
            credentials = settings.get_explicit_proxy_credentials() or {}
            explicit = ProxyCandidate(
                host=settings.PROXY_HOST,
                port=settings.PROXY_PORT,
                protocol=settings.PROXY_PROTOCOL,
                username=credentials.get("username"),
                password=credentials.get("password"),
            )
        return cls(
            explicit_proxy=explicit,
            use_free_proxies=settings.USE_FREE_PROXIES,
            refresh_interval_minutes=settings.PROXY_REFRESH_MINUTES,
            http_client=http_client,
        )

    @property
    def proxies(self) -> List[ProxyCandidate]:
        return list(self._proxies)

    @property
    def is_proxyless(self) -> bool:
        return not self._proxies

    async def initialize(self) -> None:
        """Load the explicit proxy or harvest free proxies."""
        if self._explicit_proxy is not None:
            self._proxies = [self._explicit_proxy]
            logger.info("proxy_explicit_configured", proxy=self._explicit_proxy.key)
            return

        if self._use_free_proxies:
            await self.refresh()
        else:
            logger.info("proxy_disabled")

    async def refresh(self, force: bool = False) -> int:
        """Re-harvest free proxies if the current list is older than the refresh interval.

        Args:
            force: Harvest even if the list is still fresh

        Returns:
            Number of candidates in the pool after refreshing
        """
        if self._explicit_proxy is not None or not self._use_free_proxies:
            return len(self._proxies)

        async with self._lock:
            now = self._clock()
            fresh = (
                self._last_refresh is not None
                and now - self._last_refresh < self._refresh_interval
            )
            if fresh and not force:
                return len(self._proxies)

            harvested = await self.harvest()
            self._last_refresh = now
            if harvested:
                self._proxies = harvested
                self._index = 0
                logger.info("proxy_pool_refreshed", count=len(harvested))
            elif not self._proxies:
                logger.warning("proxy_harvest_empty_running_proxyless")
            return len(self._proxies)

    async def harvest(self) -> List[ProxyCandidate]:
        """Fetch proxies from public lists, tolerating failure of any source.

        Returns:
            De-duplicated candidates (first 20 from ProxyScrape, first 10 from
            proxy-list.download)
        """
        sources = [(PROXYSCRAPE_URL, 20), (PROXY_LIST_DOWNLOAD_URL, 10)]
        client = self._http_client or httpx.AsyncClient(timeout=10)
        candidates: List[ProxyCandidate] = []
        seen = set()

        try:
            for url, limit in sources:
                try:
                    resp = await client.get(url)
                    resp.raise_for_status()
                except (httpx.HTTPError, OSError) as e:
                    logger.warning("proxy_source_failed", source=url, error=str(e))
                    continue

                for candidate in self._parse_proxy_list(resp.text)[:limit]:
                    if candidate.host in seen:
                        continue
                    seen.add(candidate.host)
                    candidates.append(candidate)
        finally:
            if self._http_client is None:
                await client.aclose()

        logger.info("proxies_harvested", count=len(candidates))
        return candidates

    @staticmethod
    def _parse_proxy_list(text: str) -> List[ProxyCandidate]:
        """Parse ``host:port`` lines, skipping anything malformed."""
        result = []
        for line in text.splitlines():
            line = line.strip()
            if not line or ":" not in line:
                continue
            host, _, port = line.rpartition(":")
            if not host or not port.isdigit():
                continue
            result.append(ProxyCandidate(host=host, port=int(port)))
        return result

    def get_next(self) -> Optional[ProxyCandidate]:
        """Get the next healthy proxy in round-robin order.

        Returns:
            ProxyCandidate, or None only when the pool is empty (proxy-less mode)
        """
        if not self._proxies:
            return None

        healthy = [p for p in self._proxies if p.healthy]
        if not healthy:
            # Every candidate exhausted: reset rather than run dry
            logger.warning("proxy_pool_exhausted_resetting", count=len(self._proxies))
            self.reset_all()
            healthy = list(self._proxies)

        proxy = healthy[self._index % len(healthy)]
        self._index = (self._index + 1) % len(healthy)
        proxy.last_used_at = datetime.now(timezone.utc)
        return proxy

    def _find(self, proxy) -> Optional[ProxyCandidate]:
        if proxy is None:
            return None
        key = proxy.key if isinstance(proxy, ProxyCandidate) else str(proxy)
        for p in self._proxies:
            if p.key == key:
                return p
        return None

    def mark_success(self, proxy) -> None:
        """Record a successful request through ``proxy`` (candidate or "host:port")."""
        candidate = self._find(proxy)
        if candidate:
            candidate.mark_success()

    def mark_failed(self, proxy) -> None:
        """Record a failed request through ``proxy`` (candidate or "host:port")."""
        candidate = self._find(proxy)
        if candidate:
            candidate.mark_failed()
            if not candidate.healthy:
                logger.info("proxy_marked_unhealthy", proxy=candidate.key, fail_count=candidate.fail_count)

    def reset_all(self) -> None:
        for p in self._proxies:
            p.fail_count = 0

    def get_stats(self) -> dict:
        """Get statistics about proxy pool health.

        Returns:
            Dictionary with proxy pool statistics
        """
        total = len(self._proxies)
        healthy = sum(1 for p in self._proxies if p.healthy)
        total_requests = sum(p.success_count + p.fail_count for p in self._proxies)
        success_rate = 0.0
        if total_requests > 0:
            total_success = sum(p.success_count for p in self._proxies)
            success_rate = (total_success / total_requests) * 100

        return {
            "mode": "explicit" if self._explicit_proxy else ("harvested" if total else "proxyless"),
            "total_proxies": total,
            "healthy_proxies": healthy,
            "unhealthy_proxies": total - healthy,
            "total_requests": total_requests,
            "success_rate_percent": round(success_rate, 2),
        }
