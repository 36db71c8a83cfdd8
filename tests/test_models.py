import pytest

from config import config
from errors import DuplicateFeedError, StorageError, ValidationError

DAY = 86400
T0 = 1_700_000_000


def article(title, link, **extra):
    item = {
        "title": title,
        "link": link,
        "description": f"About {title}",
        "content": f"<p>{title}</p>",
        "image_url": None,
        "pub_date": T0,
        "source": "Feed",
    }
    item.update(extra)
    return item


async def create(db, user_id="u1", url="https://example.com/feed.xml", title="Tech News", articles=None, now=T0):
    return await db.execute(
        'create_feed_with_articles',
        user_id=user_id,
        url=url,
        feed_type='rss',
        title=title,
        description="desc",
        image_url=None,
        articles=articles if articles is not None else [article("One", "https://example.com/1")],
        now=now,
    )


@pytest.mark.asyncio
async def test_create_feed_with_articles(db):
    feed = await create(db, articles=[
        article("Same", "https://example.com/1"),
        article("Same", "https://example.com/2"),
        article("Dup link", "https://example.com/1"),
    ])

    assert feed["slug"] == "tech-news"
    assert feed["article_count"] == 2
    assert feed["last_refreshed_at"] == T0
    stored = await db.execute('list_articles', feed_id=feed["id"])
    assert [a["slug"] for a in stored] == ["same", "same-2"]
    assert {a["user_id"] for a in stored} == {"u1"}


@pytest.mark.asyncio
async def test_duplicate_url_per_user(db):
    await create(db)
    with pytest.raises(DuplicateFeedError):
        await create(db)
    # Another user may subscribe to the same URL
    other = await create(db, user_id="u2")
    assert other["user_id"] == "u2"


@pytest.mark.asyncio
async def test_feed_slugs_unique_per_user(db):
    first = await create(db, url="https://a.example/rss")
    second = await create(db, url="https://b.example/rss")
    assert (first["slug"], second["slug"]) == ("tech-news", "tech-news-2")


@pytest.mark.asyncio
async def test_insert_articles_skips_known_identities(db):
    feed = await create(db)

    inserted = await db.execute('insert_articles', feed_id=feed["id"], user_id="u1", articles=[
        article("One again", "https://example.com/1"),
        article("One", "https://example.com/new"),
    ])

    assert inserted == 1
    slugs = [a["slug"] for a in await db.execute('list_articles', feed_id=feed["id"])]
    assert slugs == ["one", "one-2"]


@pytest.mark.asyncio
async def test_reddit_identity_uses_post_id(db):
    feed = await create(db, url="https://www.reddit.com/r/python", title="r/python", articles=[
        article("Post", "https://example.com/shared", reddit_post_id="p1"),
    ])

    keys = await db.execute('get_existing_identity_keys', feed_id=feed["id"])
    assert keys == {("reddit", "p1")}

    inserted = await db.execute('insert_articles', feed_id=feed["id"], user_id="u1", articles=[
        article("Other post same link", "https://example.com/shared", reddit_post_id="p2"),
        article("Post edited", "https://example.com/changed", reddit_post_id="p1"),
    ])
    assert inserted == 1


@pytest.mark.asyncio
async def test_soft_delete_cascades_and_frees_url(db):
    feed = await create(db)
    tag_id = await db.execute('create_tag', user_id="u1", name="tech")
    await db.execute('replace_feed_tags', feed_id=feed["id"], tag_ids=[tag_id])

    assert await db.execute('soft_delete_feed', user_id="u1", feed_id=feed["id"]) is True
    assert await db.execute('soft_delete_feed', user_id="u1", feed_id=feed["id"]) is False

    assert await db.execute('get_feed', user_id="u1", feed_id=feed["id"]) is None
    assert await db.execute('count_articles', feed_id=feed["id"], status='deleted') == 1
    assert await db.execute('get_feed_tag_ids', feed_id=feed["id"]) == []

    again = await create(db)
    assert again["id"] != feed["id"]
    assert again["slug"] == "tech-news"


@pytest.mark.asyncio
async def test_soft_delete_requires_ownership(db):
    feed = await create(db)
    assert await db.execute('soft_delete_feed', user_id="intruder", feed_id=feed["id"]) is False
    assert await db.execute('get_feed', user_id="u1", feed_id=feed["id"]) is not None


@pytest.mark.asyncio
async def test_update_feed_metadata(db):
    feed = await create(db)
    assert await db.execute('update_feed_metadata', user_id="u1", feed_id=feed["id"], title="Renamed")
    assert (await db.execute('get_feed', user_id="u1", feed_id=feed["id"]))["title"] == "Renamed"
    assert not await db.execute('update_feed_metadata', user_id="u2", feed_id=feed["id"], title="Nope")


@pytest.mark.asyncio
async def test_user_settings_defaults_and_upsert(db):
    defaults = await db.execute('get_user_settings', user_id="u1")
    assert defaults["auto_refresh_enabled"] is True
    assert defaults["refresh_interval_hours"] == config.DEFAULT_REFRESH_INTERVAL_HOURS
    assert defaults["article_retention_days"] == config.DEFAULT_RETENTION_DAYS

    await db.execute('save_user_settings', user_id="u1", refresh_interval_hours=6)
    saved = await db.execute('save_user_settings', user_id="u1", auto_refresh_enabled=False)

    assert saved["refresh_interval_hours"] == 6
    assert saved["auto_refresh_enabled"] is False
    assert await db.execute('get_user_settings', user_id="u1") == saved


@pytest.mark.asyncio
async def test_invalid_settings_are_rejected_as_bad_request(db):
    with pytest.raises(ValidationError) as excinfo:
        await db.execute('save_user_settings', user_id="u1", refresh_interval_hours=0)
    assert excinfo.value.code == "bad_request"

    with pytest.raises(ValidationError):
        await db.execute('save_user_settings', user_id="u1", article_retention_days=0)
    # Nothing was saved
    settings = await db.execute('get_user_settings', user_id="u1")
    assert settings["refresh_interval_hours"] == config.DEFAULT_REFRESH_INTERVAL_HOURS
    assert settings["article_retention_days"] == config.DEFAULT_RETENTION_DAYS


@pytest.mark.asyncio
async def test_list_auto_refresh_users(db):
    await create(db, user_id="alice")
    await create(db, user_id="bob")
    await create(db, user_id="carol")
    await db.execute('save_user_settings', user_id="bob", auto_refresh_enabled=False)
    await db.execute('save_user_settings', user_id="carol", refresh_interval_hours=2)
    # Settings without live feeds do not make a user eligible
    await db.execute('save_user_settings', user_id="dave", refresh_interval_hours=1)

    users = await db.execute('list_auto_refresh_users')

    assert users == [
        {"user_id": "alice", "refresh_interval_hours": config.DEFAULT_REFRESH_INTERVAL_HOURS},
        {"user_id": "carol", "refresh_interval_hours": 2},
    ]


@pytest.mark.asyncio
async def test_expire_old_articles_respects_retention(db):
    old = await create(db, user_id="u1", now=T0)
    await create(db, user_id="u2", now=T0)
    await db.execute('save_user_settings', user_id="u1", article_retention_days=1)

    expired = await db.execute('expire_old_articles', now=T0 + 2 * DAY)

    assert expired == 1
    assert await db.execute('count_articles', feed_id=old["id"], status='expired') == 1
    # Expired articles still block re-ingestion
    keys = await db.execute('get_existing_identity_keys', feed_id=old["id"])
    assert ("link", "https://example.com/1") in keys

    assert await db.execute('expire_old_articles', now=T0 + 31 * DAY) == 1


@pytest.mark.asyncio
async def test_feed_statistics(db):
    feed = await create(db, articles=[article("A", "https://x/a"), article("B", "https://x/b")])

    stats = await db.execute('feed_statistics', user_id="u1")

    assert stats == [{"feed_id": feed["id"], "title": "Tech News", "total": 2, "unread": 2, "starred": 0, "read_later": 0}]


@pytest.mark.asyncio
async def test_tags(db):
    feed = await create(db)
    mine = await db.execute('create_tag', user_id="u1", name="mine")
    theirs = await db.execute('create_tag', user_id="u2", name="theirs")

    assert await db.execute('count_owned_tags', user_id="u1", tag_ids=[mine, mine, theirs]) == 1

    await db.execute('replace_feed_tags', feed_id=feed["id"], tag_ids=[mine])
    feeds = await db.execute('list_user_feeds', user_id="u1")
    assert feeds[0]["tag_ids"] == [mine]

    assert await db.execute('remove_feed_tag', feed_id=feed["id"], tag_id=mine) is True
    assert await db.execute('remove_feed_tag', feed_id=feed["id"], tag_id=mine) is False


@pytest.mark.asyncio
async def test_unknown_operation(db):
    with pytest.raises(StorageError):
        await db.execute('drop_everything')
    with pytest.raises(StorageError):
        await db.execute('_identity_keys', cursor=None, feed_id=1)


@pytest.mark.asyncio
async def test_execute_after_stop(db):
    await db.stop()
    with pytest.raises(StorageError):
        await db.execute('count_articles')
