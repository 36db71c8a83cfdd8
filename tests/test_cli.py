import argparse

import pytest

from conftest import rss_document
from main import IngestionCommands, _parse_toggle, build_parser


def test_parser_commands():
    parser = build_parser()

    args = parser.parse_args(["subscribe", "u1", "https://example.com/feed.xml"])
    assert (args.mode, args.user, args.url) == ("subscribe", "u1", "https://example.com/feed.xml")

    args = parser.parse_args(["refresh", "u1", "7"])
    assert args.feed_id == 7

    args = parser.parse_args(["settings", "u1", "--auto-refresh", "off", "--interval-hours", "6"])
    assert args.auto_refresh is False
    assert args.interval_hours == 6
    assert args.retention_days is None

    assert parser.parse_args(["sweep"]).secret is None


def test_parse_toggle():
    assert _parse_toggle("ON") is True
    assert _parse_toggle("no") is False
    assert _parse_toggle(None) is None
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_toggle("maybe")


@pytest.mark.asyncio
async def test_commands_against_ingestor(ingestor, fetcher):
    fetcher.feeds["https://example.com/feed.xml"] = rss_document("Example", [("A", "https://example.com/a")])

    async with IngestionCommands(ingestor) as commands:
        feed = await commands.subscribe("u1", "https://example.com/feed.xml")
        assert feed["article_count"] == 1
        assert await commands.refresh("u1", feed["id"]) == {"new_articles": 0}

        settings = await commands.settings("u1", interval_hours=12)
        assert settings["refresh_interval_hours"] == 12
        assert (await commands.settings("u1"))["refresh_interval_hours"] == 12

        status = await commands.status()
        assert status["articles"]["total"] == 1
        assert status["auto_refresh_users"] == 1

        assert await commands.expire() == {"expired": 0}
