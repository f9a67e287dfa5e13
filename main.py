#!/usr/bin/env python3
"""
Feed Commentary entry point.

Modes:
  serve       HTTP API plus the interval scheduler (long-running)
  run         one pipeline run (ingest then summarize), exit 0 on success
  ingest      ingest stage only (used by the pipeline as a child process)
  summarize   summarize stage only (used by the pipeline as a child process)
  status      record counts and today's quota usage
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from config import config, get_logger

# Module-specific logger
logger = get_logger("main")


def run_stage(step: str) -> int:
    """Run one stage in this process and return the exit status."""
    if step == 'ingest':
        from fetcher import main_async_single_run
    else:
        from summarizer import main_async_single_run
    try:
        processed = asyncio.run(main_async_single_run())
    except Exception as e:
        logger.error(f"💥 Stage {step} failed: {type(e).__name__}: {e}")
        return 1
    logger.info(f"✅ Stage {step} finished ({processed} records)")
    return 0


def run_pipeline_once(in_process: bool = False) -> int:
    from pipeline import PipelineRunner, in_process_stage_factories, subprocess_stage_factories

    stages = in_process_stage_factories() if in_process else subprocess_stage_factories()
    result = asyncio.run(PipelineRunner(stages=stages).run("cli"))
    for step, outcome in result['stages'].items():
        print(f"{step}: {'ok' if outcome['ok'] else 'FAILED'} "
              f"(exit={outcome['exit_code']}, timed_out={outcome['timed_out']}, {outcome['duration']:.1f}s)")
        if not outcome['ok'] and outcome['output']:
            print(outcome['output'])
    return 0 if result['ok'] else 1


def serve() -> None:
    from aiohttp import web

    from pipeline import PipelineRunner
    from scheduler import PipelineScheduler
    from server import create_app

    runner = PipelineRunner()
    app = create_app(runner=runner, scheduler=PipelineScheduler(runner))
    logger.info(f"🌐 Serving on {config.HOST}:{config.PORT}")
    web.run_app(app, host=config.HOST, port=config.PORT, print=None)


async def collect_status() -> Dict[str, Any]:
    from errors import QuotaStorageError, StorageError
    from models import DatabaseQueue
    from quota import QuotaTracker

    status: Dict[str, Any] = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'checks': {},
    }
    db = DatabaseQueue(config.DATABASE_PATH)
    try:
        await db.start()
        status['checks']['database'] = {'status': 'ok', **await db.execute('get_stats')}
    except StorageError as e:
        status['checks']['database'] = {'status': 'error', 'message': str(e)}
    finally:
        await db.stop()

    try:
        state = QuotaTracker().get_state()
        status['checks']['quota'] = {
            'status': 'ok',
            'day': state['day'],
            'count': state['count'],
            'cap': config.SUMMARY_DAILY_CAP,
        }
    except QuotaStorageError as e:
        status['checks']['quota'] = {'status': 'error', 'message': str(e)}

    all_ok = all(check.get('status') == 'ok' for check in status['checks'].values())
    status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
    return status


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    print(f"\n📊 Feed Commentary Status")
    print(f"⏰ {status['timestamp']}")
    print(f"🏥 Overall: {status['overall_status'].upper()}")

    db = status['checks']['database']
    if db['status'] == 'ok':
        print(f"\n💾 Database:")
        print(f"   📰 Articles: {db['total_articles']}")
        print(f"   📝 With commentary: {db['commented_articles']}")
        print(f"   ⏳ Pending: {db['pending_articles']}")
        print(f"   🕑 Last ingested: {db['last_ingested_at'] or 'never'}")
    else:
        print(f"\n💾 Database: ERROR - {db.get('message', 'Unknown error')}")

    quota = status['checks']['quota']
    if quota['status'] == 'ok':
        print(f"\n🎟️ Quota ({quota['day']}): {quota['count']}/{quota['cap']}")
    else:
        print(f"\n🎟️ Quota: ERROR - {quota.get('message', 'Unknown error')}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed Commentary pipeline and API')
    parser.add_argument('mode', choices=['serve', 'run', 'ingest', 'summarize', 'status'],
                        help='Operation mode')
    parser.add_argument('--in-process', action='store_true',
                        help='Run pipeline stages inside this process instead of child processes')
    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            serve()
        elif args.mode == 'run':
            sys.exit(run_pipeline_once(in_process=args.in_process))
        elif args.mode in ('ingest', 'summarize'):
            sys.exit(run_stage(args.mode))
        elif args.mode == 'status':
            status = asyncio.run(collect_status())
            print_status(status)
            sys.exit(0 if status['overall_status'] == 'healthy' else 1)
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")


if __name__ == "__main__":
    main()
