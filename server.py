#!/usr/bin/env python3
"""
HTTP API (aiohttp.web).

Public read path:
  GET  /api/articles             shaped, paginated list of commented records
  GET  /api/articles/{id}        one commented record
  GET  /healthz                  liveness

Admin (shared-secret token):
  POST /admin/pipeline/run       start a run in the background (202 / 409)
  GET  /admin/pipeline/status    runner, scheduler and quota state
  POST /admin/pipeline/reset     force-clear the running flag

The read path only queries the record store; it never waits on the
pipeline, which runs its stages in separate processes.
"""

import hmac
import json
from functools import wraps
from math import ceil
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web

from config import config, get_logger
from errors import QuotaStorageError, StorageError
from models import SQLITE_MAX_INTEGER, DatabaseQueue
from pipeline import PipelineRunner
from quota import QuotaTracker
from shaper import shape_feed
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("server")
init_telemetry("feed-commentary-api")

DB_KEY = web.AppKey("db", DatabaseQueue)
RUNNER_KEY = web.AppKey("runner", PipelineRunner)
SCHEDULER_KEY = web.AppKey("scheduler", object)
QUOTA_KEY = web.AppKey("quota", QuotaTracker)


def _json_error(exc_class, message: str, **extra):
    body = {'error': message}
    body.update(extra)
    return exc_class(text=json.dumps(body), content_type='application/json')


def _int_param(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_pagination(query) -> Tuple[int, int, int]:
    """Return ``(page, limit, offset)`` from page/limit or limit/offset parameters.

    ``limit`` is clamped to ``[1, API_MAX_LIMIT]``; ``page`` wins when both
    ``page`` and ``offset`` are given.
    """
    limit = _int_param(query.get('limit'), config.API_DEFAULT_LIMIT)
    limit = max(1, min(limit, config.API_MAX_LIMIT))
    if 'offset' in query and 'page' not in query:
        offset = max(0, _int_param(query.get('offset'), 0))
        page = offset // limit + 1
    else:
        page = max(1, _int_param(query.get('page'), 1))
        offset = (page - 1) * limit
    return page, limit, offset


async def load_shaped_page(db: DatabaseQueue, limit: int, offset: int, pool_size: Optional[int] = None) -> List[Dict[str, Any]]:
    """Fetch one page of the shaped feed.

    The newest ``pool_size`` records are shaped together and paged by
    slicing, so page boundaries inside the pool are stable. Anything past the
    pool is shaped on its own.
    """
    pool_size = config.SHAPER_POOL_SIZE if pool_size is None else max(1, int(pool_size))
    if offset >= pool_size:
        return shape_feed(await db.execute('list_published', limit=limit, offset=offset))

    pool = shape_feed(await db.execute('list_published', limit=pool_size, offset=0))
    items = pool[offset:offset + limit]
    missing = limit - len(items)
    if missing > 0 and len(pool) == pool_size:
        items.extend(shape_feed(await db.execute('list_published', limit=missing, offset=pool_size)))
    return items


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except StorageError as e:
        logger.error(f"Storage error serving {request.method} {request.path}: {e}")
        return web.json_response({'error': 'storage unavailable'}, status=503)


def _request_token(request: web.Request) -> Optional[str]:
    """Token from X-Admin-Token, a Bearer header or ?token=, trimmed like ADMIN_TOKEN."""
    token = (request.headers.get('X-Admin-Token') or '').strip()
    if token:
        return token
    auth = request.headers.get('Authorization', '')
    if auth.lower().startswith('bearer '):
        return auth[7:].strip()
    return (request.query.get('token') or '').strip() or None


def require_admin(handler):
    """Reject the request unless it carries ADMIN_TOKEN (403 when none is configured)."""
    @wraps(handler)
    async def _wrapped(request: web.Request):
        expected = config.ADMIN_TOKEN
        if not expected:
            raise _json_error(web.HTTPForbidden, 'admin endpoints disabled: ADMIN_TOKEN not configured')
        supplied = _request_token(request) or ""
        if not hmac.compare_digest(supplied.encode('utf-8'), expected.encode('utf-8')):
            logger.warning(f"Rejected admin request to {request.path} from {request.remote}")
            raise _json_error(web.HTTPUnauthorized, 'invalid admin token')
        return await handler(request)
    return _wrapped


@trace_span("api.list_articles", tracer_name="server")
async def list_articles(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    page, limit, offset = parse_pagination(request.query)
    total = await db.execute('count_published')
    items = await load_shaped_page(db, limit, offset) if offset < total else []
    return web.json_response({
        'items': items,
        'page': page,
        'limit': limit,
        'offset': offset,
        'total': total,
        'total_pages': max(1, ceil(total / limit)),
    })


async def get_article(request: web.Request) -> web.Response:
    try:
        article_id = int(request.match_info['article_id'])
    except ValueError:
        raise _json_error(web.HTTPNotFound, 'not found')
    if not 0 < article_id <= SQLITE_MAX_INTEGER:
        raise _json_error(web.HTTPNotFound, 'not found')
    article = await request.app[DB_KEY].execute('get_published', article_id=article_id)
    if article is None:
        raise _json_error(web.HTTPNotFound, 'not found')
    return web.json_response(article)


async def healthz(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


@require_admin
async def trigger_pipeline(request: web.Request) -> web.Response:
    runner = request.app[RUNNER_KEY]
    if not runner.trigger("admin"):
        status = runner.status()
        return web.json_response(
            {'accepted': False, 'error': 'already running', 'started_at': status['started_at']},
            status=409,
        )
    logger.info("Pipeline run triggered via admin endpoint")
    return web.json_response({'accepted': True, 'status': runner.status()}, status=202)


@require_admin
async def pipeline_status(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER_KEY]
    quota = request.app[QUOTA_KEY]
    try:
        state = quota.get_state()
        quota_status = {
            'day': state['day'],
            'count': state['count'],
            'cap': config.SUMMARY_DAILY_CAP,
            'remaining': quota.remaining(config.SUMMARY_DAILY_CAP),
        }
    except QuotaStorageError as e:
        quota_status = {'error': str(e)}
    return web.json_response({
        'pipeline': request.app[RUNNER_KEY].status(),
        'scheduler': scheduler.status() if scheduler is not None else None,
        'quota': quota_status,
    })


@require_admin
async def reset_pipeline(request: web.Request) -> web.Response:
    return web.json_response(request.app[RUNNER_KEY].reset())


def create_app(db: Optional[DatabaseQueue] = None, runner: Optional[PipelineRunner] = None,
               scheduler=None, quota: Optional[QuotaTracker] = None) -> web.Application:
    """Build the application.

    A database passed in is used as-is (the caller owns its lifecycle);
    otherwise one is opened on startup and closed on cleanup. A scheduler,
    when given, is started and stopped with the application.
    """
    app = web.Application(middlewares=[error_middleware])
    owns_db = db is None
    app[DB_KEY] = db or DatabaseQueue(config.DATABASE_PATH)
    app[RUNNER_KEY] = runner or PipelineRunner()
    app[SCHEDULER_KEY] = scheduler
    app[QUOTA_KEY] = quota or QuotaTracker()

    async def on_startup(app: web.Application) -> None:
        if owns_db:
            await app[DB_KEY].start()
        if app[SCHEDULER_KEY] is not None:
            app[SCHEDULER_KEY].start()
        logger.info("API ready")

    async def on_cleanup(app: web.Application) -> None:
        if app[SCHEDULER_KEY] is not None:
            await app[SCHEDULER_KEY].stop()
        await app[RUNNER_KEY].cancel()
        if owns_db:
            await app[DB_KEY].stop()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)

    app.router.add_get('/api/articles', list_articles)
    app.router.add_get('/api/articles/{article_id}', get_article)
    app.router.add_get('/healthz', healthz)
    app.router.add_post('/admin/pipeline/run', trigger_pipeline)
    app.router.add_get('/admin/pipeline/status', pipeline_status)
    app.router.add_post('/admin/pipeline/reset', reset_pipeline)
    return app
