"""
SearXNG search transport

Bundled implementation of the orchestrator's SearchExecutor protocol on top
of a self-hosted SearXNG metasearch instance. Results are rendered as
numbered ``## N.`` sections (which the progressive-search quality score
counts) and the top pages can be scraped for extra context.

Usage:
    executor = SearXNGSearchExecutor("http://localhost:8888")
    text = await executor.search_parameterized("rust async runtimes", max_results=4, scrape_count=3)
    await executor.close()
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup

from core.exceptions import ErrorCode, ExternalServiceError, SearchError

from .events import ProgressCallback, SearchProgressEvent, emit_progress

logger = logging.getLogger("adaptive_search.transports")

MAX_PAGE_CHARS = 1500
WIDE_QUERY_VARIANTS = ("{query}", "{query} latest", "{query} in depth")
WHITESPACE = re.compile(r"\s+")


@dataclass
class WebResult:
    title: str
    url: str
    snippet: str
    page_text: Optional[str] = None


def render_results(results: Sequence[WebResult]) -> str:
    """Render results as numbered markdown sections."""
    sections = []
    for i, item in enumerate(results, start=1):
        section = f"## {i}. {item.title}\n{item.url}\n{item.snippet}".rstrip()
        if item.page_text:
            section += f"\n\n{item.page_text}"
        sections.append(section)
    return "\n\n".join(sections)


def extract_page_text(html: str, max_chars: int = MAX_PAGE_CHARS) -> str:
    """Visible text of an HTML page, whitespace-collapsed and truncated."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "noscript"]):
        tag.decompose()
    text = WHITESPACE.sub(" ", soup.get_text(" ", strip=True)).strip()
    return text[:max_chars]


class SearXNGSearchExecutor:
    """
    SearXNG-backed search execution with optional page scraping.

    Args:
        base_url: SearXNG server URL
        timeout: Request timeout in seconds
        client: Shared httpx client (created lazily when omitted)
        scrape: Fetch and extract the top result pages
        engines: Engines passed to SearXNG (None = instance defaults)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
        scrape: bool = True,
        engines: Optional[List[str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.scrape = scrape
        self.engines = engines
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def _search_single(self, query: str, max_results: int) -> List[WebResult]:
        client = await self._get_client()
        params = {"q": query, "format": "json", "language": "en-US"}
        if self.engines:
            params["engines"] = ",".join(self.engines)

        try:
            response = await client.get(f"{self.base_url}/search", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"SearXNG search failed for '{query[:30]}...': {e}")
            raise ExternalServiceError("searxng", f"SearXNG request failed: {e}", query=query) from e

        results = [
            WebResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                snippet=item.get("content", ""),
            )
            for item in data.get("results", [])[:max_results]
        ]
        logger.debug(f"SearXNG query '{query[:30]}...': {len(results)} results")
        return results

    async def _scrape_page(self, url: str) -> Optional[str]:
        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(f"Scrape failed for {url}: {e}")
            return None
        return extract_page_text(response.text) or None

    async def _scrape(self, results: List[WebResult], scrape_count: int) -> int:
        targets = results[:scrape_count] if self.scrape else []
        if not targets:
            return 0
        pages = await asyncio.gather(
            *(self._scrape_page(item.url) for item in targets),
            return_exceptions=True,
        )
        scraped = 0
        for item, page in zip(targets, pages):
            if isinstance(page, Exception):
                logger.debug(f"Scrape error for {item.url}: {page}")
                continue
            if page:
                item.page_text = page
                scraped += 1
        return scraped

    async def _run(
        self,
        queries: Sequence[str],
        max_results: int,
        scrape_count: int,
        progress_callback: Optional[ProgressCallback],
    ) -> str:
        batches = await asyncio.gather(
            *(self._search_single(q, max_results) for q in queries),
            return_exceptions=True,
        )

        results: List[WebResult] = []
        seen_urls = set()
        errors = []
        for batch in batches:
            if isinstance(batch, Exception):
                errors.append(batch)
                continue
            for item in batch:
                if item.url not in seen_urls:
                    seen_urls.add(item.url)
                    results.append(item)

        if not results:
            if errors:
                raise errors[0]
            raise SearchError(f"No results for '{queries[0][:50]}'", code=ErrorCode.NO_RESULTS)

        results = results[:max_results]
        await emit_progress(progress_callback, SearchProgressEvent(
            content=f"Found {len(results)} sources",
            sources_found=len(results),
        ))

        scraped = await self._scrape(results, scrape_count)
        if scraped:
            await emit_progress(progress_callback, SearchProgressEvent(
                content=f"Read {scraped} pages",
                sources_found=len(results),
                pages_scraped=scraped,
            ))

        return render_results(results)

    async def search_minimal(self, query: str, progress_callback: Optional[ProgressCallback] = None) -> str:
        return await self._run([query], 2, 2, progress_callback)

    async def search_parameterized(
        self,
        query: str,
        max_results: int,
        scrape_count: int,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        return await self._run([query], max_results, scrape_count, progress_callback)

    async def search_wide(self, query: str, progress_callback: Optional[ProgressCallback] = None) -> str:
        """Parallel fan-out over query variants, 8 sources and 5 scraped pages."""
        queries = [variant.format(query=query) for variant in WIDE_QUERY_VARIANTS]
        return await self._run(queries, 8, 5, progress_callback)

    async def close(self):
        """Close the HTTP client"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
