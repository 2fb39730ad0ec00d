import asyncio
import calendar
import logging
import time
from datetime import timezone
from typing import Callable, Iterable, List, Optional, Set

import aiohttp
import feedparser
from dateutil import parser as dateutil_parser

from market_newsletter.models.content import FetchResult, Item, Source, SourceError, now_millis
from market_newsletter.utils.error_monitoring import ConfigurationError, ErrorHandler, ErrorKind


ProgressCallback = Callable[[int, int, int], None]

# Abbreviations dateutil does not resolve on its own, as UTC offsets in seconds
FEED_TIMEZONES = {
    "JST": 9 * 3600, "KST": 9 * 3600, "HKT": 8 * 3600, "SGT": 8 * 3600,
    "IST": 5 * 3600 + 1800, "CET": 3600, "CEST": 2 * 3600, "BST": 3600,
    "AEST": 10 * 3600, "AEDT": 11 * 3600,
    "EST": -5 * 3600, "EDT": -4 * 3600, "CST": -6 * 3600, "CDT": -5 * 3600,
    "MST": -7 * 3600, "MDT": -6 * 3600, "PST": -8 * 3600, "PDT": -7 * 3600,
}


class RSSService:
    """
    Concurrent RSS/Atom fetch engine.

    Sources are fetched in consecutive groups of ``concurrency_limit``; every member of
    a group runs concurrently and the whole group finishes before the next one starts.
    A failing or slow source only costs its own timeout and contributes no items.
    """

    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36"
    )

    def __init__(self, feed_timeout: float = 10.0, error_handler: Optional[ErrorHandler] = None):
        """Initialize RSS service."""
        self.feed_timeout = feed_timeout
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def select_sources(sources: Iterable[Source], categories: Optional[Iterable[str]] = None) -> List[Source]:
        """Enabled sources, restricted to ``categories`` when a non-empty filter is given."""
        wanted: Optional[Set[str]] = set(categories) if categories else None
        return [
            source for source in sources
            if source.enabled and (wanted is None or source.category in wanted)
        ]

    async def fetch_all(
        self,
        sources: Iterable[Source],
        time_window_hours: float,
        concurrency_limit: int = 10,
        categories: Optional[Iterable[str]] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> FetchResult:
        """
        Fetch every selected source with bounded concurrency.

        Returns the union of all parsed items, not yet filtered by time. Ordering is
        group-completion order and is finalized by the merge stage.
        """
        if concurrency_limit < 1:
            raise ConfigurationError(f"concurrency_limit must be >= 1, got {concurrency_limit}")
        if time_window_hours <= 0:
            raise ConfigurationError(f"time_window_hours must be > 0, got {time_window_hours}")

        target_sources = self.select_sources(sources, categories)
        result = FetchResult(sources_total=len(target_sources))

        if categories:
            self.logger.info(f"Filtering by categories: {', '.join(sorted(set(categories)))}")
        self.logger.info(
            f"Fetching {len(target_sources)} feeds "
            f"(concurrency: {concurrency_limit}, window: {time_window_hours}h, timeout: {self.feed_timeout}s)"
        )
        if not target_sources:
            return result

        start_time = time.time()
        async with self._create_session() as session:
            for i in range(0, len(target_sources), concurrency_limit):
                batch = target_sources[i:i + concurrency_limit]

                batch_tasks = [self._fetch_with_timeout(source, session) for source in batch]
                batch_results = await asyncio.gather(*batch_tasks, return_exceptions=True)

                # Only this coroutine touches the accumulator
                for source, outcome in zip(batch, batch_results):
                    result.sources_completed += 1
                    if isinstance(outcome, BaseException):
                        self._record_failure(result, source, outcome)
                    else:
                        result.items.extend(outcome)
                        self.logger.debug(f"Got {len(outcome)} items from {source.title}")

                self.logger.info(
                    f"Progress: {result.sources_completed}/{result.sources_total} feeds "
                    f"({result.error_count} errors)"
                )
                if progress is not None:
                    progress(result.sources_completed, result.sources_total, result.error_count)

        elapsed = time.time() - start_time
        self.logger.info(
            f"Fetch complete: {len(result.items)} items from "
            f"{result.sources_succeeded}/{result.sources_total} feeds in {elapsed:.2f}s"
        )
        return result

    def _record_failure(self, result: FetchResult, source: Source, error: BaseException) -> None:
        if isinstance(error, asyncio.TimeoutError):
            reason = f"timeout after {self.feed_timeout}s"
        else:
            reason = str(error) or type(error).__name__
        result.errors.append(SourceError(source_id=source.id, source_title=source.title, reason=reason))
        if isinstance(error, Exception):
            self.error_handler.handle_error(
                error,
                ErrorKind.SOURCE_FETCH,
                service="rss",
                operation="fetch_feed",
                context={"source": source.title, "url": source.url, "reason": reason},
            )
        else:
            self.logger.warning(f"Error fetching {source.title}: {reason}")

    async def _fetch_with_timeout(self, source: Source, session: aiohttp.ClientSession) -> List[Item]:
        return await asyncio.wait_for(self.fetch_feed(source, session), timeout=self.feed_timeout)

    async def fetch_feed(self, source: Source, session: aiohttp.ClientSession) -> List[Item]:
        """Fetch and parse a single source."""
        content = await self._fetch_content(source.url, session)
        return self._parse_feed(content, source)

    def _create_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.feed_timeout)
        headers = {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/rss+xml,application/atom+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9,ja;q=0.8",
        }
        return aiohttp.ClientSession(timeout=timeout, headers=headers)

    async def _fetch_content(self, url: str, session: aiohttp.ClientSession) -> str:
        """Single attempt fetch; no retry within or across runs."""
        async with session.get(url) as resp:
            if resp.status != 200:
                raise RSSServiceError(f"HTTP {resp.status} for {url}")
            return await resp.text()

    def _parse_feed(self, content: str, source: Source) -> List[Item]:
        """Parse RSS/Atom feed content into items stamped with the source's metadata."""
        parsed = feedparser.parse(content)
        if parsed.bozo and not parsed.entries:
            raise RSSServiceError(f"Unparsable feed from {source.url}: {parsed.get('bozo_exception')}")

        items: List[Item] = []
        for entry in parsed.entries:
            link = (entry.get("link") or "").strip()
            title = (entry.get("title") or "").strip()
            guid = entry.get("id") or entry.get("guid") or link

            body = entry.get("summary") or ""
            if not body and entry.get("content"):
                body = entry.content[0].get("value", "")

            published_raw = entry.get("published") or entry.get("updated") or ""
            published_parsed = entry.get("published_parsed") or entry.get("updated_parsed")
            items.append(
                Item(
                    id=str(guid),
                    title=title,
                    url=link,
                    body=body,
                    published=self._parse_date(published_raw, published_parsed),
                    source_title=source.title,
                    source_id=source.id,
                    categories=[source.category],
                )
            )
        return items

    def _parse_date(self, date_str: str, parsed: Optional[time.struct_time] = None) -> int:
        """
        Parse a feed date into epoch millis, defaulting to now.

        ``parsed`` is feedparser's UTC ``*_parsed`` tuple, used when the raw string
        cannot be read. Named zones come from FEED_TIMEZONES; naive dates are UTC.
        """
        if date_str and date_str.strip():
            try:
                dt = dateutil_parser.parse(date_str, tzinfos=FEED_TIMEZONES)
            except (ValueError, TypeError, OverflowError) as e:
                self.logger.debug(f"Failed to parse feed date '{date_str}': {e}")
            else:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp() * 1000)

        if parsed is not None:
            return calendar.timegm(parsed) * 1000
        return now_millis()


class RSSServiceError(Exception):
    """Custom exception for RSS service failures"""
    pass
