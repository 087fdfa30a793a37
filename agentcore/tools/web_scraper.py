"""Web content fetcher for live-data augmentation.

- Async httpx client with per-fetch timeouts.
- Parse pages with BeautifulSoup(lxml): title plus visible text.
- Bounded fan-out: URLs are fetched in small concurrent batches with a
  courtesy delay between batches.

Failures never raise; each URL yields a ``ScrapeResult`` with ``success``
and ``error`` set.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx
import structlog
from bs4 import BeautifulSoup

logger = structlog.get_logger(__name__)

UA = "GroundGateFetcher/1.0"
MAX_TEXT_CHARS = 5000
STRIP_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "aside", "form", "svg")


@dataclass
class ScrapeResult:
    url: str
    success: bool
    title: str = ""
    text: str = ""
    error: Optional[str] = None
    status_code: Optional[int] = None
    fetched_at: float = field(default_factory=time.time)


def extract_content(html: str, max_chars: int = MAX_TEXT_CHARS) -> Tuple[str, str]:
    """Title and whitespace-normalised visible text of an HTML page."""
    soup = BeautifulSoup(html, "lxml")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(STRIP_TAGS):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    text = " ".join(root.get_text(separator=" ").split())
    return title, text[:max_chars]


class WebScraper:
    """
    Fetches and extracts a handful of pages concurrently.

    Usage:
        scraper = WebScraper(timeout=15.0, concurrency=3)
        results = await scraper.scrape_many(["https://news.ycombinator.com/"])
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        concurrency: int = 3,
        batch_delay: float = 1.0,
        max_chars: int = MAX_TEXT_CHARS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the scraper.

        Args:
            client: Shared httpx client; one is created per call when omitted
            timeout: Per-fetch timeout in seconds
            concurrency: URLs fetched at once per batch
            batch_delay: Seconds to wait between batches
            max_chars: Cap on extracted text per page
            sleep: Awaitable sleep (injected in tests)
        """
        self.client = client
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.batch_delay = batch_delay
        self.max_chars = max_chars
        self._sleep = sleep

    async def fetch(self, url: str, client: Optional[httpx.AsyncClient] = None) -> ScrapeResult:
        client = client or self.client
        if client is None:
            async with httpx.AsyncClient(headers={"User-Agent": UA}) as owned:
                return await self.fetch(url, owned)

        start_time = time.time()
        try:
            response = await client.get(url, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
            title, text = extract_content(response.text, self.max_chars)
        except httpx.HTTPStatusError as e:
            logger.warning("Web fetch returned error status", url=url, status_code=e.response.status_code)
            return ScrapeResult(url=url, success=False, error="http_status", status_code=e.response.status_code)
        except Exception as e:
            logger.warning("Web fetch failed", url=url, error=str(e), error_type=type(e).__name__)
            return ScrapeResult(url=url, success=False, error=type(e).__name__)

        if not text:
            return ScrapeResult(url=url, success=False, title=title, error="empty_content",
                                status_code=response.status_code)

        logger.debug(
            "Web fetch completed",
            url=url,
            text_length=len(text),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return ScrapeResult(url=url, success=True, title=title, text=text, status_code=response.status_code)

    async def scrape_many(self, urls: List[str]) -> List[ScrapeResult]:
        """Fetch ``urls`` in batches of ``concurrency``; results keep input order."""
        if not urls:
            return []
        if self.client is None:
            async with httpx.AsyncClient(headers={"User-Agent": UA}) as owned:
                return await self._scrape_batches(urls, owned)
        return await self._scrape_batches(urls, self.client)

    async def _scrape_batches(self, urls: List[str], client: httpx.AsyncClient) -> List[ScrapeResult]:
        results: List[ScrapeResult] = []
        for i in range(0, len(urls), self.concurrency):
            if i > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            batch = urls[i:i + self.concurrency]
            results.extend(await asyncio.gather(*(self.fetch(url, client) for url in batch)))

        logger.info(
            "Web scrape finished",
            requested=len(urls),
            succeeded=sum(1 for r in results if r.success),
        )
        return results
