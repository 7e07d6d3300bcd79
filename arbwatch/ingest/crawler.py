"""Find listings of a catalogue product on other retail sites."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import parse_qs, quote_plus, urljoin, urldefrag, urlparse

import httpx
from bs4 import BeautifulSoup

from arbwatch.config import CrawlerSettings
from arbwatch.ingest.extract import extract, looks_like_product_page, match_site, parse_html, resolve_profile
from arbwatch.ingest.models import ListingFacts, Product
from arbwatch.utils.rate_limit import RateLimiter
from arbwatch.utils.retry import RETRY_EXCEPTIONS, RETRY_STATUS_CODES, TransientFetchError, retry_async

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({"the", "a", "an", "and", "or", "for", "with", "by", "in", "on", "at"})
SHORT_TITLE_WORDS = 6
PUNCTUATION_RE = re.compile(r"[^\w\s]")

PRODUCT_PATH_HINTS = ("/ip/", "/p/", "/dp/", "/product", "/itm/", "/site/", "/pdp/", "/sku/", "skuid=")
MAX_FOLLOW_LINKS_PER_PAGE = 5


@dataclass(slots=True)
class CrawlStats:
    searches: int = 0
    pages_fetched: int = 0
    failures: int = 0
    extracted: int = 0
    discarded: int = 0


def short_title(title: str) -> str:
    words = [word for word in PUNCTUATION_RE.sub(" ", title).split() if word.lower() not in STOPWORDS]
    return " ".join(words[:SHORT_TITLE_WORDS])


def build_search_queries(product: Product) -> list[str]:
    """Most specific first: UPC, UPC + short title, marketplace ID, full title."""
    queries: list[str] = []
    if product.universal_code:
        queries.append(product.universal_code)
        queries.append(f"{product.universal_code} {short_title(product.title)}".strip())
    queries.append(f"{product.marketplace_id} amazon product")
    if product.title:
        queries.append(f"{product.title} buy online")
    return list(dict.fromkeys(queries))


def extract_links(page: str | BeautifulSoup, base_url: str) -> list[str]:
    """Absolute http(s) links in document order, with search-engine redirects unwrapped."""
    soup = parse_html(page)
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = urljoin(base_url, anchor["href"])
        parsed = urlparse(href)
        if parsed.path == "/url":
            target = parse_qs(parsed.query).get("q") or parse_qs(parsed.query).get("url")
            if target:
                href = target[0]
                parsed = urlparse(href)
        if parsed.scheme not in {"http", "https"}:
            continue
        links.append(urldefrag(href)[0])
    return list(dict.fromkeys(links))


def _looks_like_product_link(url: str) -> bool:
    lowered = url.lower()
    return any(hint in lowered for hint in PRODUCT_PATH_HINTS)


class PageFetcher:
    """Bounded, polite, retrying HTTP GET for HTML pages."""

    def __init__(
        self,
        settings: CrawlerSettings,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self._session = session or httpx.AsyncClient(
            timeout=settings.request_timeout,
            headers=dict(settings.headers),
            follow_redirects=True,
        )
        self._semaphore = asyncio.Semaphore(settings.concurrency)
        self._rate_limiter = rate_limiter or RateLimiter(rate=settings.host_rate)

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch(self, url: str) -> str | None:
        """Page body, or ``None`` once retries are exhausted or the page is gone."""
        try:
            async with self._semaphore:
                response = await retry_async(self._attempt, self.settings.retry)(url)
        except RETRY_EXCEPTIONS as exc:
            logger.warning("Giving up on %s: %s", url, exc)
            return None
        except httpx.HTTPError as exc:
            logger.warning("Request to %s failed: %s", url, exc)
            return None
        if response.status_code >= 400:
            logger.warning("Skipping %s (HTTP %s)", url, response.status_code)
            return None
        return response.text

    async def _attempt(self, url: str) -> httpx.Response:
        await self._rate_limiter.wait_for_host(urlparse(url).netloc)
        response = await self._session.get(url, timeout=self.settings.request_timeout)
        if response.status_code in RETRY_STATUS_CODES:
            raise TransientFetchError(response.status_code, url)
        return response


class MatchingCrawler:
    """One crawl session per call; returns facts and leaves persistence to the caller."""

    def __init__(self, settings: CrawlerSettings, fetcher: PageFetcher | None = None) -> None:
        self.settings = settings
        self.fetcher = fetcher or PageFetcher(settings)
        self.last_stats = CrawlStats()

    async def close(self) -> None:
        await self.fetcher.close()

    async def find_listings(self, product: Product) -> list[ListingFacts]:
        stats = CrawlStats()
        self.last_stats = stats
        budget = self.settings.max_requests_per_crawl
        seen: set[str] = set()

        search_urls = [
            engine.url_template.format(query=quote_plus(query))
            for query in build_search_queries(product)
            for engine in self.settings.search_engines
        ][:budget]
        budget -= len(search_urls)
        stats.searches = len(search_urls)
        logger.info("Searching %s queries for %s", len(search_urls), product.marketplace_id)

        candidates: list[str] = []
        for search_url, body in await self._fetch_all(search_urls, stats):
            if body is None:
                continue
            for link in extract_links(body, search_url):
                if link not in seen and match_site(link, self.settings.target_sites):
                    seen.add(link)
                    candidates.append(link)

        facts: list[ListingFacts] = []
        follow: list[str] = []
        batch = candidates[: max(budget, 0)]
        budget -= len(batch)
        for url, body in await self._fetch_all(batch, stats):
            if body is None:
                continue
            found = self._examine(url, body)
            if found is not None:
                facts.append(found)
                continue
            for link in self._product_links(url, body):
                if link not in seen:
                    seen.add(link)
                    follow.append(link)

        for url, body in await self._fetch_all(follow[: max(budget, 0)], stats):
            if body is None:
                continue
            found = self._examine(url, body)
            if found is not None:
                facts.append(found)

        results = self._finalise(facts, stats)
        logger.info(
            "Crawl for %s: %s listings (%s pages, %s failures, %s without price)",
            product.marketplace_id,
            len(results),
            stats.pages_fetched,
            stats.failures,
            stats.discarded,
        )
        return results

    async def fetch_facts(self, url: str) -> ListingFacts | None:
        """Re-read a single known listing page."""
        body = await self.fetcher.fetch(url)
        if body is None:
            return None
        site, profile = resolve_profile(url, self.settings)
        return extract(body, profile, url=url, site=site)

    async def _fetch_all(self, urls: list[str], stats: CrawlStats) -> list[tuple[str, str | None]]:
        bodies = await asyncio.gather(*(self.fetcher.fetch(url) for url in urls))
        for body in bodies:
            if body is None:
                stats.failures += 1
            else:
                stats.pages_fetched += 1
        return list(zip(urls, bodies))

    def _examine(self, url: str, body: str) -> ListingFacts | None:
        site, profile = resolve_profile(url, self.settings)
        soup = parse_html(body)
        if not looks_like_product_page(soup, profile):
            return None
        return extract(soup, profile, url=url, site=site)

    def _product_links(self, url: str, body: str) -> Iterable[str]:
        site = match_site(url, self.settings.target_sites)
        links = [
            link
            for link in extract_links(body, url)
            if link != url and match_site(link, self.settings.target_sites) == site and _looks_like_product_link(link)
        ]
        return links[:MAX_FOLLOW_LINKS_PER_PAGE]

    def _finalise(self, facts: list[ListingFacts], stats: CrawlStats) -> list[ListingFacts]:
        results: dict[tuple[str, str], ListingFacts] = {}
        for item in facts:
            if item.price is None:
                stats.discarded += 1
                continue
            results.setdefault((item.site, item.listing_url), item)
        stats.extracted = len(results)
        return list(results.values())
