import json

import pytest

import summarizer
from errors import CommentaryError, ContentFilterError, QuotaStorageError
from models import DatabaseQueue
from quota import QuotaTracker
from summarizer import CommentaryClient, CommentaryProcessor, strip_source_links


class FakeGenerator:
    """Stands in for the text-generation collaborator."""

    def __init__(self, failures=()):
        self.failures = set(failures)
        self.calls = []

    async def generate(self, title, url):
        self.calls.append((title, url))
        if title in self.failures:
            raise CommentaryError(f"no output for {title}")
        return f"Take on {title}.\nSource: example.com"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def seeded_db(tmp_path, count):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    articles = [
        {
            'url': f"https://example.com/{n}",
            'title': f"Story {n}",
            'source_name': "Example",
            'source_domain': "example.com",
            'source_url': "https://example.com/feed",
            'category': "news",
            'published_date': None,
            'created_date': 1000 + n,
        }
        for n in range(1, count + 1)
    ]
    await db.execute('insert_articles', articles=articles)
    return db


def make_quota(tmp_path, count=0):
    path = tmp_path / "rate_state.json"
    path.write_text(json.dumps({"day": "2025-03-01", "count": count}), encoding="utf-8")
    return QuotaTracker(str(path), today=lambda: "2025-03-01")


@pytest.mark.asyncio
async def test_daily_cap_stops_batch(tmp_path):
    db = await seeded_db(tmp_path, 3)
    quota = make_quota(tmp_path)
    generator = FakeGenerator()
    processor = CommentaryProcessor(db=db, quota=quota, generator=generator, sleep_func=RecordingSleep())
    try:
        processed = await processor.process_batch(batch_limit=10, daily_cap=2)

        assert processed == 2
        assert quota.get_state()["count"] == 2
        remaining = await db.execute('select_unsummarized', limit=10)
        # Newest first: stories 3 and 2 were summarized, story 1 still waits
        assert [r['title'] for r in remaining] == ["Story 1"]
        assert [title for title, _ in generator.calls] == ["Story 3", "Story 2"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_exhausted_quota_touches_nothing(tmp_path):
    db = await seeded_db(tmp_path, 2)
    generator = FakeGenerator()
    processor = CommentaryProcessor(db=db, quota=make_quota(tmp_path, count=5), generator=generator)
    try:
        assert await processor.process_batch(batch_limit=10, daily_cap=5) == 0
        assert generator.calls == []
        assert len(await db.execute('select_unsummarized', limit=10)) == 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failures_do_not_consume_quota(tmp_path):
    db = await seeded_db(tmp_path, 3)
    quota = make_quota(tmp_path)
    generator = FakeGenerator(failures={"Story 3"})
    processor = CommentaryProcessor(db=db, quota=quota, generator=generator, sleep_func=RecordingSleep())
    try:
        assert await processor.process_batch(batch_limit=10, daily_cap=10) == 2
        assert quota.get_state()["count"] == 2
        remaining = await db.execute('select_unsummarized', limit=10)
        assert [r['title'] for r in remaining] == ["Story 3"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_content_filter_is_skipped(tmp_path):
    class FilteredGenerator(FakeGenerator):
        async def generate(self, title, url):
            if title == "Story 2":
                raise ContentFilterError("blocked")
            return await super().generate(title, url)

    db = await seeded_db(tmp_path, 2)
    quota = make_quota(tmp_path)
    processor = CommentaryProcessor(db=db, quota=quota, generator=FilteredGenerator(), sleep_func=RecordingSleep())
    try:
        assert await processor.process_batch(batch_limit=10, daily_cap=10) == 1
        assert quota.get_state()["count"] == 1
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_records_are_never_summarized_twice(tmp_path):
    db = await seeded_db(tmp_path, 2)
    generator = FakeGenerator()
    processor = CommentaryProcessor(db=db, quota=make_quota(tmp_path), generator=generator, sleep_func=RecordingSleep())
    try:
        assert await processor.process_batch(batch_limit=10, daily_cap=10) == 2
        assert await processor.process_batch(batch_limit=10, daily_cap=10) == 0
        assert len(generator.calls) == 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_cooldown_between_attempts(tmp_path):
    db = await seeded_db(tmp_path, 3)
    sleeper = RecordingSleep()
    processor = CommentaryProcessor(
        db=db,
        quota=make_quota(tmp_path),
        generator=FakeGenerator(failures={"Story 2"}),
        sleep_func=sleeper,
    )
    try:
        await processor.process_batch(batch_limit=10, daily_cap=10, cooldown=0.5)
        # One pause between each pair of attempts, successful or not
        assert sleeper.delays == [0.5, 0.5]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_broken_quota_state_is_fatal(tmp_path):
    db = await seeded_db(tmp_path, 1)
    path = tmp_path / "broken.json"
    path.write_text("garbage", encoding="utf-8")
    generator = FakeGenerator()
    processor = CommentaryProcessor(db=db, quota=QuotaTracker(str(path)), generator=generator)
    try:
        with pytest.raises(QuotaStorageError):
            await processor.process_batch(batch_limit=10, daily_cap=10)
        assert generator.calls == []
    finally:
        await db.stop()


def test_strip_source_links_keeps_only_domains():
    text = "Wow.\nSource: https://www.bbc.co.uk/news/1"
    assert strip_source_links(text) == "Wow.\nSource: bbc.co.uk"

    mixed = "See [the story](https://example.com/a) and https://other.org/x"
    assert strip_source_links(mixed) == "See the story and other.org"


@pytest.mark.asyncio
async def test_generate_retries_when_source_line_missing(monkeypatch):
    prompts = []
    replies = ["Nice take.", "Better take.\nSource: https://example.com/a"]

    async def fake_completion(messages, *, purpose, postprocess=None, client_override=None, **params):
        prompts.append(messages[0]["content"])
        raw = replies.pop(0)
        return postprocess(raw) if postprocess else raw

    monkeypatch.setattr(summarizer, "ai_chat_completion", fake_completion)
    client = CommentaryClient(prompts={
        "commentary": "Headline: {title}\nLink: {url}",
        "source_reminder": "KEEP THE SOURCE LINE.",
    })

    text = await client.generate("Rates rise", "https://example.com/a")

    assert text == "Better take.\nSource: example.com"
    assert prompts[0] == "Headline: Rates rise\nLink: https://example.com/a"
    assert prompts[1].endswith("KEEP THE SOURCE LINE.")


@pytest.mark.asyncio
async def test_generate_raises_when_nothing_comes_back(monkeypatch):
    async def fake_completion(messages, **kwargs):
        return None

    monkeypatch.setattr(summarizer, "ai_chat_completion", fake_completion)
    with pytest.raises(CommentaryError):
        await CommentaryClient(prompts={}).generate("Rates rise", "https://example.com/a")


@pytest.mark.asyncio
async def test_zero_daily_cap_denies_everything(tmp_path):
    db = await seeded_db(tmp_path, 3)
    quota = make_quota(tmp_path)
    generator = FakeGenerator()
    processor = CommentaryProcessor(db=db, quota=quota, generator=generator, sleep_func=RecordingSleep())
    try:
        assert await processor.process_batch(batch_limit=5, daily_cap=0) == 0
        assert generator.calls == []
        assert quota.get_state()["count"] == 0
        assert len(await db.execute('select_unsummarized', limit=10)) == 3
    finally:
        await db.stop()
