#!/usr/bin/env python3
"""
Feed Ingestion Command Line

Entry point used by operators and external timers to drive the ingestion
engine:

    subscribe     add a feed for a user (RSS/Atom, Google News or Reddit)
    refresh       refresh one feed
    refresh-all   refresh every feed of a user (rate limited)
    auto-refresh  refresh a user's stale feeds
    sweep         multi-tenant stale-feed sweep (requires the cron secret)
    expire        mark articles past their retention window as expired
    settings      show or change a user's refresh settings
    status        show database counters

Results are printed as JSON; the exit status is non-zero on failure.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from config import config, get_logger
from errors import FeedReaderError
from ingestion import FeedIngestor
from telemetry import init_telemetry, trace_span

logger = get_logger("cli")
init_telemetry("feedreader-ingest")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _parse_toggle(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("on", "true", "yes", "1"):
        return True
    if lowered in ("off", "false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {value!r}")


class IngestionCommands:
    """Runs one CLI command against a freshly initialized ``FeedIngestor``."""

    def __init__(self, ingestor: Optional[FeedIngestor] = None) -> None:
        self.ingestor = ingestor or FeedIngestor()

    async def __aenter__(self) -> "IngestionCommands":
        await self.ingestor.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.ingestor.close()

    @trace_span("cli.subscribe", tracer_name="cli")
    async def subscribe(self, user_id: str, url: str) -> dict:
        feed = await self.ingestor.create_feed(user_id, url)
        logger.info(f"✅ Subscribed {user_id} to '{feed['title']}' ({feed['article_count']} articles)")
        return feed

    async def refresh(self, user_id: str, feed_id: int) -> dict:
        result = await self.ingestor.refresh_feed(user_id, feed_id)
        logger.info(f"✅ Feed {feed_id} refreshed: {result['new_articles']} new articles")
        return result

    async def refresh_all(self, user_id: str) -> dict:
        outcome = await self.ingestor.refresh_all_feeds(user_id)
        return outcome.to_dict()

    async def auto_refresh(self, user_id: str) -> dict:
        outcome = await self.ingestor.auto_refresh_stale_feeds(user_id)
        return outcome.to_dict()

    async def sweep(self, secret: Optional[str]) -> dict:
        outcome = await self.ingestor.cron_sweep(secret)
        return outcome.to_dict()

    async def expire(self) -> dict:
        expired = await self.ingestor.expire_old_articles()
        logger.info(f"🧹 Expired {expired} articles")
        return {"expired": expired}

    async def settings(
        self,
        user_id: str,
        auto_refresh: Optional[bool] = None,
        interval_hours: Optional[int] = None,
        retention_days: Optional[int] = None,
    ) -> dict:
        db = self.ingestor.db
        if auto_refresh is None and interval_hours is None and retention_days is None:
            return await db.execute('get_user_settings', user_id=user_id)
        return await db.execute(
            'save_user_settings',
            user_id=user_id,
            auto_refresh_enabled=auto_refresh,
            refresh_interval_hours=interval_hours,
            article_retention_days=retention_days,
        )

    async def status(self) -> dict:
        db = self.ingestor.db
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database_path": config.DATABASE_PATH,
            "articles": {
                "total": await db.execute('count_articles'),
                "published": await db.execute('count_articles', status='published'),
                "expired": await db.execute('count_articles', status='expired'),
                "deleted": await db.execute('count_articles', status='deleted'),
            },
            "auto_refresh_users": len(await db.execute('list_auto_refresh_users')),
            "config": config.get_config_summary(),
        }


async def run_command(args: argparse.Namespace) -> Any:
    """Dispatch parsed arguments to the matching command."""
    async with IngestionCommands() as commands:
        if args.mode == 'subscribe':
            return await commands.subscribe(args.user, args.url)
        if args.mode == 'refresh':
            return await commands.refresh(args.user, args.feed_id)
        if args.mode == 'refresh-all':
            return await commands.refresh_all(args.user)
        if args.mode == 'auto-refresh':
            return await commands.auto_refresh(args.user)
        if args.mode == 'sweep':
            return await commands.sweep(args.secret or config.CRON_SECRET)
        if args.mode == 'expire':
            return await commands.expire()
        if args.mode == 'settings':
            return await commands.settings(
                args.user,
                auto_refresh=args.auto_refresh,
                interval_hours=args.interval_hours,
                retention_days=args.retention_days,
            )
        if args.mode == 'status':
            return await commands.status()
    raise ValueError(f"Unknown mode: {args.mode}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Ingestion & Refresh Engine')
    sub = parser.add_subparsers(dest='mode', required=True, help='Operation mode')

    p = sub.add_parser('subscribe', help='Subscribe a user to a feed URL')
    p.add_argument('user', help='User id')
    p.add_argument('url', help='Feed, Google News or subreddit URL')

    p = sub.add_parser('refresh', help='Refresh a single feed')
    p.add_argument('user', help='User id')
    p.add_argument('feed_id', type=int, help='Feed id')

    p = sub.add_parser('refresh-all', help="Refresh all of a user's feeds")
    p.add_argument('user', help='User id')

    p = sub.add_parser('auto-refresh', help="Refresh a user's stale feeds")
    p.add_argument('user', help='User id')

    p = sub.add_parser('sweep', help='Refresh stale feeds of every user with auto refresh enabled')
    p.add_argument('--secret', type=str, help='Cron secret (defaults to CRON_SECRET)')

    sub.add_parser('expire', help='Expire articles past their retention window')

    p = sub.add_parser('settings', help="Show or change a user's refresh settings")
    p.add_argument('user', help='User id')
    p.add_argument('--auto-refresh', type=_parse_toggle, metavar='on|off', help='Enable or disable auto refresh')
    p.add_argument('--interval-hours', type=int, help='Refresh interval in hours')
    p.add_argument('--retention-days', type=int, help='Article retention in days')

    sub.add_parser('status', help='Show database counters')
    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        result = asyncio.run(run_command(args))
        _print_json(result)
        sys.exit(0)
    except FeedReaderError as e:
        logger.error(f"❌ {e.code}: {e.message}")
        _print_json({"error": e.code, "message": e.message})
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
