import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import test_utils

from config import config
from models import DatabaseQueue
from pipeline import PipelineRunner, stage_outcome
from quota import QuotaTracker
from server import create_app, parse_pagination


class GatedStage:
    def __init__(self, step, gate):
        self.step = step
        self.gate = gate
        self.alive = False
        self.pid = None

    async def run(self):
        self.alive = True
        try:
            await self.gate.wait()
            return stage_outcome(self.step, True, exit_code=0)
        finally:
            self.alive = False


def gated_runner(gate):
    return PipelineRunner(stages={
        'ingest': lambda: GatedStage('ingest', gate),
        'summarize': lambda: GatedStage('summarize', gate),
    })


def article(n, domain, created):
    return {
        'url': f"https://{domain}/{n}",
        'title': f"Headline number {n}",
        'source_name': domain,
        'source_domain': domain,
        'source_url': f"https://{domain}/feed",
        'category': "news",
        'published_date': None,
        'created_date': created,
    }


@asynccontextmanager
async def api(tmp_path, commented=(), pending=(), runner=None, start_db=True):
    """Serve the app over a temp database.

    ``commented`` holds (domain, commentary_date) pairs; ids follow list order.
    """
    db = DatabaseQueue(str(tmp_path / "test.db"))
    if start_db:
        await db.start()
        rows = [article(n, domain, 100 + n) for n, (domain, _) in enumerate(commented, start=1)]
        rows += [article(len(commented) + n, domain, 100) for n, domain in enumerate(pending, start=1)]
        if rows:
            await db.execute('insert_articles', articles=rows)
        for n, (_, when) in enumerate(commented, start=1):
            await db.execute('save_commentary', article_id=n, commentary=f"Take {n}", commentary_date=when)

    app = create_app(
        db=db,
        runner=runner or gated_runner(asyncio.Event()),
        quota=QuotaTracker(str(tmp_path / "quota.json")),
    )
    try:
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            yield client
    finally:
        await db.stop()


def ids(body):
    return [item['id'] for item in body['items']]


@pytest.mark.asyncio
async def test_healthz(tmp_path):
    async with api(tmp_path) as client:
        resp = await client.get("/healthz")
        assert resp.status == 200
        assert (await resp.json()) == {'status': 'ok'}


@pytest.mark.asyncio
async def test_list_is_shaped_and_only_commented(tmp_path):
    commented = [("a.com", 300), ("a.com", 200), ("b.com", 100)]
    async with api(tmp_path, commented=commented, pending=["c.com"]) as client:
        resp = await client.get("/api/articles")
        assert resp.status == 200
        body = await resp.json()

    assert ids(body) == [1, 3, 2]
    assert body['total'] == 3
    assert body['page'] == 1
    assert body['offset'] == 0
    assert body['total_pages'] == 1
    assert body['items'][0]['commentary'] == "Take 1"
    assert body['items'][0]['commentary_at'] == "1970-01-01T00:05:00Z"


@pytest.mark.asyncio
async def test_page_and_offset_styles(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'API_MAX_LIMIT', 3)
    commented = [("a.com", 500 - n) for n in range(5)]
    async with api(tmp_path, commented=commented) as client:
        page_two = await (await client.get("/api/articles", params={'page': 2, 'limit': 2})).json()
        by_offset = await (await client.get("/api/articles", params={'offset': 3, 'limit': 2})).json()
        clamped = await (await client.get("/api/articles", params={'limit': 500})).json()
        beyond = await (await client.get("/api/articles", params={'page': 9, 'limit': 2})).json()

    assert ids(page_two) == [3, 4]
    assert page_two['offset'] == 2
    assert page_two['total_pages'] == 3
    assert ids(by_offset) == [4, 5]
    assert by_offset['page'] == 2
    assert clamped['limit'] == 3
    assert len(clamped['items']) == 3
    assert beyond['items'] == []
    assert beyond['total'] == 5


@pytest.mark.asyncio
async def test_pages_past_the_shaping_pool(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'SHAPER_POOL_SIZE', 3)
    commented = [("a.com", 500 - n) for n in range(5)]
    async with api(tmp_path, commented=commented) as client:
        pages = [
            await (await client.get("/api/articles", params={'page': page, 'limit': 2})).json()
            for page in (1, 2, 3)
        ]

    seen = [i for body in pages for i in ids(body)]
    assert seen == [1, 2, 3, 4, 5]


def test_parse_pagination_defaults_and_garbage(monkeypatch):
    monkeypatch.setattr(config, 'API_DEFAULT_LIMIT', 20)
    monkeypatch.setattr(config, 'API_MAX_LIMIT', 50)
    assert parse_pagination({}) == (1, 20, 0)
    assert parse_pagination({'limit': 'abc', 'page': '-4'}) == (1, 20, 0)
    assert parse_pagination({'limit': '0'}) == (1, 1, 0)
    assert parse_pagination({'limit': '10', 'offset': '25'}) == (3, 10, 25)
    assert parse_pagination({'limit': '10', 'offset': '25', 'page': '2'}) == (2, 10, 10)


@pytest.mark.asyncio
async def test_single_article(tmp_path):
    async with api(tmp_path, commented=[("a.com", 300)], pending=["b.com"]) as client:
        found = await client.get("/api/articles/1")
        pending = await client.get("/api/articles/2")
        missing = await client.get("/api/articles/99")
        garbage = await client.get("/api/articles/abc")

        assert found.status == 200
        assert (await found.json())['source_domain'] == "a.com"
        assert pending.status == 404
        assert missing.status == 404
        assert garbage.status == 404
        assert (await garbage.json()) == {'error': 'not found'}


@pytest.mark.asyncio
async def test_admin_disabled_without_token(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'ADMIN_TOKEN', None)
    async with api(tmp_path) as client:
        resp = await client.post("/admin/pipeline/run", headers={'X-Admin-Token': 'anything'})
        assert resp.status == 403


@pytest.mark.asyncio
async def test_admin_rejects_bad_token(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'ADMIN_TOKEN', "s3cret")
    async with api(tmp_path) as client:
        assert (await client.post("/admin/pipeline/run")).status == 401
        assert (await client.post("/admin/pipeline/run", headers={'X-Admin-Token': 's3cre'})).status == 401
        assert (await client.get("/admin/pipeline/status", params={'token': 'nope'})).status == 401


@pytest.mark.asyncio
async def test_trigger_conflict_status_and_reset(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'ADMIN_TOKEN', "s3cret")
    gate = asyncio.Event()
    runner = gated_runner(gate)
    async with api(tmp_path, runner=runner) as client:
        first = await client.post("/admin/pipeline/run", headers={'X-Admin-Token': 's3cret'})
        assert first.status == 202
        assert (await first.json())['accepted'] is True

        second = await client.post("/admin/pipeline/run", headers={'Authorization': 'Bearer s3cret'})
        assert second.status == 409
        assert (await second.json())['error'] == "already running"

        status = await client.get("/admin/pipeline/status", params={'token': 's3cret'})
        assert status.status == 200
        body = await status.json()
        assert body['pipeline']['running'] is True
        assert body['pipeline']['reason'] == "admin"
        assert body['scheduler'] is None
        assert body['quota']['count'] == 0
        assert body['quota']['cap'] == config.SUMMARY_DAILY_CAP

        # Reads are not blocked by a running pipeline
        assert (await client.get("/api/articles")).status == 200

        reset = await client.post("/admin/pipeline/reset", headers={'X-Admin-Token': 's3cret'})
        assert reset.status == 200
        assert (await reset.json())['was_running'] is True
        assert runner.running is False

        gate.set()


@pytest.mark.asyncio
async def test_storage_failure_maps_to_503(tmp_path):
    async with api(tmp_path, start_db=False) as client:
        resp = await client.get("/api/articles")
        assert resp.status == 503
        assert (await resp.json()) == {'error': 'storage unavailable'}


@pytest.mark.asyncio
async def test_oversized_id_is_not_found_and_reads_keep_working(tmp_path):
    async with api(tmp_path, commented=[("a.com", 300)]) as client:
        huge = await client.get("/api/articles/9999999999999999999999999")
        negative = await client.get("/api/articles/-1")
        assert huge.status == 404
        assert negative.status == 404

        listing = await asyncio.wait_for(client.get("/api/articles"), timeout=5)
        assert listing.status == 200
        assert ids(await listing.json()) == [1]


@pytest.mark.asyncio
async def test_admin_token_is_trimmed_on_every_path(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'ADMIN_TOKEN', "s3cret")
    async with api(tmp_path) as client:
        by_header = await client.get("/admin/pipeline/status", headers={'X-Admin-Token': ' s3cret '})
        by_query = await client.get("/admin/pipeline/status", params={'token': 's3cret '})
        by_bearer = await client.get("/admin/pipeline/status", headers={'Authorization': 'Bearer  s3cret'})

        assert by_header.status == 200
        assert by_query.status == 200
        assert by_bearer.status == 200
        body = await by_header.json()
        assert body['quota']['remaining'] == config.SUMMARY_DAILY_CAP
