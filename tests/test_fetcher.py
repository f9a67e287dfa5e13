import time
from datetime import datetime, timezone

import feedparser
import pytest

from config import config
from errors import FeedFetchError, FeedTimeoutError, StorageError
from fetcher import FeedFetcher
from models import DatabaseQueue


def rss(*items):
    body = "".join(
        f"<item><title>{title}</title><link>{link}</link>"
        f"<pubDate>Sat, 15 Nov 2025 16:00:00 +0000</pubDate></item>"
        for title, link in items
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Test</title>'
        f"<link>https://example.com</link>{body}</channel></rss>"
    ).encode("utf-8")


SOURCES = [
    {'slug': 'fast', 'name': 'Fast News', 'url': 'https://fast.example.com/rss', 'category': 'world'},
    {'slug': 'slow', 'name': 'Slow News', 'url': 'https://slow.example.com/rss', 'category': 'world'},
    {'slug': 'down', 'name': 'Down News', 'url': 'https://down.example.com/rss', 'category': 'tech'},
    {'slug': 'also', 'name': 'Also News', 'url': 'https://also.example.com/rss', 'category': 'tech'},
]

BODIES = {
    'fast': rss(("Rates rise", "https://www.fast.example.com/a"), ("Storm warning", "https://www.fast.example.com/b")),
    'also': rss(("Team wins", "https://also.example.com/c")),
}


async def fake_fetch(self, source, session):
    if source['slug'] == 'slow':
        raise FeedTimeoutError("timed out after 20s")
    if source['slug'] == 'down':
        raise FeedFetchError("HTTP 503", status=503)
    return BODIES[source['slug']]


@pytest.mark.asyncio
async def test_failing_feeds_do_not_stop_the_rest(monkeypatch, tmp_path):
    monkeypatch.setattr(FeedFetcher, "fetch_feed_content", fake_fetch)
    db = DatabaseQueue(str(tmp_path / "test.db"))
    fetcher = FeedFetcher(db=db)
    await fetcher.initialize()
    try:
        inserted = await fetcher.ingest_all(SOURCES)

        assert inserted == 3
        assert await db.execute('count_articles') == 3
        rows = db.conn.execute("SELECT source_domain, category, published_date FROM articles ORDER BY url").fetchall()
        assert {r['source_domain'] for r in rows} == {"fast.example.com", "also.example.com"}
        expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
        assert all(r['published_date'] == expected for r in rows)
    finally:
        await fetcher.close()
        await db.stop()


@pytest.mark.asyncio
async def test_ingest_twice_inserts_nothing_new(monkeypatch, tmp_path):
    monkeypatch.setattr(FeedFetcher, "fetch_feed_content", fake_fetch)
    db = DatabaseQueue(str(tmp_path / "test.db"))
    fetcher = FeedFetcher(db=db)
    await fetcher.initialize()
    try:
        assert await fetcher.ingest_all(SOURCES) == 3
        assert await fetcher.ingest_all(SOURCES) == 0
        assert await db.execute('count_articles') == 3
    finally:
        await fetcher.close()
        await db.stop()


@pytest.mark.asyncio
async def test_storage_failure_fails_the_stage(monkeypatch, tmp_path):
    monkeypatch.setattr(FeedFetcher, "fetch_feed_content", fake_fetch)
    # Worker never started: every insert raises StorageError
    fetcher = FeedFetcher(db=DatabaseQueue(str(tmp_path / "test.db")))
    try:
        with pytest.raises(StorageError):
            await fetcher.ingest_all(SOURCES[:1])
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_store_entries_respects_item_limit(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'MAX_ITEMS_PER_FEED', 2)
    db = DatabaseQueue(str(tmp_path / "test.db"))
    fetcher = FeedFetcher(db=db)
    await fetcher.initialize()
    try:
        entries = [
            feedparser.FeedParserDict({'title': f"Story {n}", 'link': f"https://example.com/{n}"})
            for n in range(5)
        ]
        assert await fetcher.store_entries(SOURCES[0], entries) == 2
    finally:
        await fetcher.close()
        await db.stop()


def test_entry_to_article_normalizes_fields():
    fetcher = FeedFetcher()
    entry = feedparser.FeedParserDict({
        'title': '  <b>Markets</b> &amp; rates ',
        'link': 'https://www.Example.com/story?id=1',
    })
    before = int(time.time())
    article = fetcher.entry_to_article(entry, {'name': 'Example', 'url': 'https://example.com/rss'})

    assert article['title'] == "Markets & rates"
    assert article['source_domain'] == "example.com"
    assert article['category'] == config.DEFAULT_CATEGORY
    assert article['published_date'] is None
    assert article['created_date'] >= before


@pytest.mark.parametrize("entry", [
    {'title': '', 'link': 'https://example.com/a'},
    {'title': 'No link'},
    {'title': 'Bad link', 'link': 'not a url'},
])
def test_entries_without_title_or_link_are_skipped(entry):
    fetcher = FeedFetcher()
    assert fetcher.entry_to_article(feedparser.FeedParserDict(entry), {'name': 'X', 'url': 'https://x.com'}) is None


def test_parse_date_without_weekday():
    fetcher = FeedFetcher()
    entry = feedparser.FeedParserDict({'pubDate': "17 Nov 2025 00:00:00 +0000"})
    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_published(entry) == expected


def test_parse_iso_date():
    fetcher = FeedFetcher()
    entry = feedparser.FeedParserDict({'updated': "2025-11-15T16:00:00Z"})
    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert fetcher.parse_published(entry) == expected


def test_parsed_struct_time_is_utc():
    fetcher = FeedFetcher()
    parsed = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timetuple()
    entry = feedparser.FeedParserDict({'published_parsed': parsed})
    assert fetcher.parse_published(entry) == int(datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timestamp())


def test_unparseable_date_is_left_unset():
    fetcher = FeedFetcher()
    assert fetcher.parse_published(feedparser.FeedParserDict({'published': "sometime last week"})) is None
