#!/usr/bin/env python3
"""
RSS/Atom feed ingest stage.

This module fetches every configured feed, normalizes its items into article
records and inserts them into the record store. Duplicate links are ignored
at insert time. A failure in one feed (timeout, HTTP error, parse error) is
logged and does not stop the remaining feeds.
"""

from calendar import timegm
from asyncio import TimeoutError, CancelledError, Semaphore, gather, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError, FeedTimeoutError, StorageError
from models import DatabaseQueue
from telemetry import get_tracer, init_telemetry, trace_span
from utils import extract_domain, html_to_text, now_ts, validate_url

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-commentary-ingest")
_tracer = get_tracer("fetcher")

HTTP_OK = 200
MAX_TITLE_LENGTH = 500
MAX_URL_LENGTH = 2048

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"

# Entry fields that may carry a publication date, in priority order
DATE_FIELDS = ('published', 'updated', 'created', 'issued', 'date', 'pubDate', 'pubdate')


class FeedFetcher:
    """Ingest stage: fetch, normalize and store feed items."""

    def __init__(self, db: Optional[DatabaseQueue] = None) -> None:
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.db = db
        self._owns_db = db is None

    async def initialize(self) -> None:
        """Initialize the database connection."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
        await self.db.start()
        logger.info("FeedFetcher initialized")

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()
        self.executor.shutdown(wait=False, cancel_futures=True)
        logger.info("FeedFetcher closed")

    async def run_in_executor(self, func, *args) -> Any:
        return await get_running_loop().run_in_executor(self.executor, func, *args)

    @trace_span(
        "fetch_feed_content",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, session: {"feed.slug": source.get('slug', ''), "feed.url": source.get('url', '')},
    )
    async def fetch_feed_content(self, source: Dict[str, str], session: ClientSession) -> bytes:
        """Download a feed body, bounded by FEED_TIMEOUT_SECONDS.

        Raises:
            FeedTimeoutError: the request did not complete in time
            FeedFetchError: any other HTTP or network failure
        """
        url = source['url']
        timeout = ClientTimeout(total=config.FEED_TIMEOUT_SECONDS)
        headers = {'User-Agent': config.USER_AGENT, 'Accept': ACCEPT_HEADER}
        try:
            async with session.get(url, headers=headers, timeout=timeout) as response:
                if response.status != HTTP_OK:
                    raise FeedFetchError(f"HTTP {response.status}", status=response.status)
                return await response.read()
        except TimeoutError as e:
            # aiohttp surfaces request timeouts as asyncio.TimeoutError
            raise FeedTimeoutError(f"timed out after {config.FEED_TIMEOUT_SECONDS}s") from e
        except ClientError as e:
            raise FeedFetchError(f"network error: {type(e).__name__}: {e}") from e

    def parse_feed(self, content: bytes):
        """Parse feed bytes with feedparser (blocking; run in the executor)."""
        return feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None
        if value is not None:
            return value
        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a UTC Unix timestamp."""
        if value in (None, ''):
            return None
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return int(value) if value > 0 else None
        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())
        if isinstance(value, (list, tuple)):
            # feedparser *_parsed fields are UTC struct_time values
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, TypeError):
                return None
        if isinstance(value, str):
            return self._parse_date_string(value.strip())
        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        if not date_str:
            return None
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError):
            dt = None
        if dt is None:
            try:
                dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
            except ValueError:
                return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        try:
            return int(dt.timestamp())
        except (OverflowError, OSError, ValueError):
            return None

    def parse_published(self, entry) -> Optional[int]:
        """Best-effort publication timestamp; None when nothing parses."""
        for field in DATE_FIELDS:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp
        return None

    def entry_to_article(self, entry, source: Dict[str, str], created_date: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Normalize one feed entry; None when it lacks a title or a usable link."""
        title = html_to_text(self._get_entry_value(entry, 'title') or "")[:MAX_TITLE_LENGTH].strip()
        link = str(self._get_entry_value(entry, 'link') or "").strip()
        if not title or not link or len(link) > MAX_URL_LENGTH or not validate_url(link):
            return None

        domain = extract_domain(link) or extract_domain(source.get('url')) or source.get('name') or ""
        return {
            'url': link,
            'title': title,
            'source_name': source.get('name'),
            'source_domain': domain,
            'source_url': source.get('url'),
            'category': source.get('category') or config.DEFAULT_CATEGORY,
            'published_date': self.parse_published(entry),
            'created_date': created_date or now_ts(),
        }

    async def store_entries(self, source: Dict[str, str], entries: List[Any]) -> int:
        """Normalize and insert up to MAX_ITEMS_PER_FEED entries; returns the inserted count."""
        created_date = now_ts()
        articles = []
        skipped = 0
        for entry in entries[:config.MAX_ITEMS_PER_FEED]:
            article = self.entry_to_article(entry, source, created_date)
            if article is None:
                skipped += 1
                continue
            articles.append(article)
        if skipped:
            logger.debug(f"Skipped {skipped} entries without title/link in {source.get('slug')}")
        if not articles:
            return 0
        return await self.db.execute('insert_articles', articles=articles)

    @trace_span(
        "ingest_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, session: {"feed.slug": source.get('slug', ''), "feed.url": source.get('url', '')},
    )
    async def ingest_feed(self, source: Dict[str, str], session: ClientSession) -> int:
        """Fetch, parse and store one feed. Transient failures are logged and count as 0."""
        name = source.get('name') or source.get('slug')
        try:
            content = await self.fetch_feed_content(source, session)
            feed = await self.run_in_executor(self.parse_feed, content)
        except FeedTimeoutError as e:
            logger.warning(f"Feed timed out: {name} ({e})")
            return 0
        except FeedFetchError as e:
            logger.error(f"Feed failed: {name} -> {e}")
            return 0

        if getattr(feed, 'bozo', False) and not feed.entries:
            logger.error(f"Feed failed: {name} -> unparseable ({getattr(feed, 'bozo_exception', 'unknown error')})")
            return 0
        if getattr(feed, 'bozo', False):
            logger.warning(f"Feed parsing warning for {name}: {getattr(feed, 'bozo_exception', '')}")

        inserted = await self.store_entries(source, list(feed.entries or []))
        logger.info(f"Feed {name}: {len(feed.entries or [])} entries, {inserted} new")
        return inserted

    @trace_span("ingest_all", tracer_name="fetcher")
    async def ingest_all(self, sources: Optional[List[Dict[str, str]]] = None) -> int:
        """Ingest every configured feed concurrently. Returns the total inserted count."""
        sources = list(sources if sources is not None else config.FEED_SOURCES.values())
        if not sources:
            logger.warning("No feed sources configured")
            return 0
        logger.info(f"Starting ingest of {len(sources)} feeds")

        async with ClientSession() as session:
            semaphore = Semaphore(config.FEED_CONCURRENCY)

            async def ingest_with_semaphore(source):
                async with semaphore:
                    return await self.ingest_feed(source, session)

            results = await gather(*(ingest_with_semaphore(s) for s in sources), return_exceptions=True)

        total = 0
        for source, result in zip(sources, results):
            if isinstance(result, CancelledError):
                raise result
            if isinstance(result, StorageError):
                # The record store is unusable; fail the whole stage
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Feed failed: {source.get('name')} -> {type(result).__name__}: {result}")
                continue
            total += result

        logger.info(f"Ingest done. Inserted {total} new items.")
        return total


@trace_span("ingest.single_run", tracer_name="fetcher")
async def main_async_single_run() -> int:
    """Run the ingest stage once and return the inserted count."""
    fetcher = FeedFetcher()
    try:
        await fetcher.initialize()
        return await fetcher.ingest_all()
    finally:
        await fetcher.close()
