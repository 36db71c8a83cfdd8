import pytest

from classifier import FEED_TYPE_GOOGLE_NEWS, FEED_TYPE_REDDIT, FEED_TYPE_RSS
from conftest import reddit_listing, reddit_post, rss_document
from errors import EmptySubredditError, InvalidFeedError, MissingTitleError, NoArticlesError
from feed_parser import parse_feed, parse_reddit_listing, parse_xml_feed

ATOM_DOCUMENT = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Blog</title>
  <subtitle>Notes and &lt;em&gt;essays&lt;/em&gt;</subtitle>
  <icon>https://blog.example/icon.png</icon>
  <id>urn:example:blog</id>
  <updated>2025-01-06T10:00:00Z</updated>
  <entry>
    <title>First Post</title>
    <link href="https://blog.example/first"/>
    <id>urn:example:1</id>
    <updated>2025-01-06T10:00:00Z</updated>
    <summary>A short summary</summary>
    <content type="html">&lt;p&gt;Full &lt;script&gt;evil()&lt;/script&gt;text&lt;/p&gt;</content>
  </entry>
  <entry>
    <id>urn:example:2</id>
    <link href="https://blog.example/untitled"/>
    <updated>2025-01-06T11:00:00Z</updated>
  </entry>
</feed>
"""


def test_rss_feed_fields():
    parsed = parse_xml_feed(rss_document("My Feed", [("One", "https://example.com/1")], description="About"))

    assert parsed["title"] == "My Feed"
    assert parsed["description"] == "About"
    assert parsed["skipped"] == 0
    article = parsed["articles"][0]
    assert article["title"] == "One"
    assert article["link"] == "https://example.com/1"
    assert article["description"] == "Body of One"
    assert article["content"] == "Body of One"
    assert article["pub_date"] == 1736157600
    assert article["source"] == "My Feed"


def test_rss_channel_image():
    document = (
        b'<?xml version="1.0"?><rss version="2.0"><channel><title>Pics</title>'
        b"<link>https://example.com/</link><description>d</description>"
        b"<image><url>https://example.com/logo.png</url><title>Pics</title><link>https://example.com/</link></image>"
        b"<item><title>A</title><link>https://example.com/a</link></item>"
        b"</channel></rss>"
    )
    assert parse_xml_feed(document)["image_url"] == "https://example.com/logo.png"


def test_rss_item_images():
    document = rss_document("Images", [
        {
            "title": "Enclosure",
            "link": "https://example.com/enc",
            "extra": '<enclosure url="https://example.com/a.jpg" type="image/jpeg" length="100"/>',
        },
        {
            "title": "Inline",
            "link": "https://example.com/inline",
            "description": '&lt;p&gt;Look &lt;img src="https://example.com/b.png"&gt;&lt;/p&gt;',
            "extra": '<enclosure url="https://example.com/a.mp3" type="audio/mpeg" length="100"/>',
        },
        {"title": "Plain", "link": "https://example.com/plain"},
    ])

    images = [a["image_url"] for a in parse_xml_feed(document)["articles"]]

    assert images == ["https://example.com/a.jpg", "https://example.com/b.png", None]


def test_rss_description_is_plain_text_and_truncated():
    long_body = "word " * 100
    document = rss_document("Long", [{"title": "L", "link": "https://example.com/l", "description": long_body}])

    description = parse_xml_feed(document, max_length=50)["articles"][0]["description"]

    assert description.endswith("…")
    assert len(description) <= 51


def test_rss_entries_without_title_or_link_are_skipped():
    document = rss_document("Mixed", [
        {"title": "Good", "link": "https://example.com/good"},
        {"title": None, "link": "https://example.com/no-title"},
        {"title": "No link", "link": None},
    ])

    parsed = parse_xml_feed(document)

    assert [a["title"] for a in parsed["articles"]] == ["Good"]
    assert parsed["skipped"] == 2


def test_rss_with_only_invalid_entries_fails():
    document = rss_document("Broken", [{"title": None, "link": "https://example.com/x"}])
    with pytest.raises(NoArticlesError):
        parse_xml_feed(document)


def test_rss_without_items_fails():
    with pytest.raises(NoArticlesError):
        parse_xml_feed(rss_document("Empty", []))


def test_rss_without_title_fails():
    with pytest.raises(MissingTitleError):
        parse_xml_feed(rss_document("", [("One", "https://example.com/1")]))


def test_html_page_is_not_a_feed():
    with pytest.raises(InvalidFeedError) as excinfo:
        parse_xml_feed(b"<html><head><title>Hi</title></head><body><p>not a feed</p></body></html>")
    assert excinfo.value.code == "invalid_feed"


def test_atom_feed():
    parsed = parse_xml_feed(ATOM_DOCUMENT)

    assert parsed["title"] == "Atom Blog"
    assert parsed["description"] == "Notes and essays"
    assert parsed["image_url"] == "https://blog.example/icon.png"
    assert parsed["skipped"] == 1
    article = parsed["articles"][0]
    assert article["link"] == "https://blog.example/first"
    assert article["description"] == "A short summary"
    assert "Full" in article["content"]
    assert "script" not in article["content"]
    assert article["pub_date"] == 1736157600


def test_reddit_listing():
    listing = reddit_listing(
        reddit_post("a1", "Self &amp; text", selftext="Hello\n\nWorld <b>"),
        reddit_post("b2", "Link post", is_self=False, url="https://example.com/story",
                    thumbnail="https://thumbs.example/b2.jpg"),
        reddit_post("c3", "Empty self post"),
        reddit_post("d4", "", selftext="no title"),
    )

    parsed = parse_reddit_listing(listing, "python")

    assert parsed["title"] == "r/python"
    assert parsed["description"] == "Posts from the python subreddit"
    assert parsed["skipped"] == 1

    self_post, link_post, empty_post = parsed["articles"]
    assert self_post["title"] == "Self & text"
    assert self_post["link"] == "https://www.reddit.com/r/python/comments/a1/self_&amp;_text/"
    assert self_post["content"] == "<p>Hello</p><p>World &lt;b&gt;</p>"
    assert self_post["source"] == "u/alice"
    assert self_post["reddit_post_id"] == "a1"
    assert self_post["reddit_subreddit"] == "python"
    assert self_post["image_url"] is None
    assert self_post["pub_date"] == 1736157600

    assert link_post["link"] == "https://example.com/story"
    assert link_post["description"] == "External link: https://example.com/story"
    assert "https://example.com/story" in link_post["content"]
    assert link_post["image_url"] == "https://thumbs.example/b2.jpg"

    assert empty_post["description"] == "Discussion post on Reddit"
    assert empty_post["content"] is None


def test_reddit_selftext_line_breaks():
    listing = reddit_listing(reddit_post("a1", "Lines", selftext="one\ntwo"))
    assert parse_reddit_listing(listing, "python")["articles"][0]["content"] == "<p>one<br>two</p>"


def test_empty_subreddit():
    with pytest.raises(EmptySubredditError):
        parse_reddit_listing(reddit_listing(), "ghosttown")


def test_subreddit_without_valid_posts():
    with pytest.raises(NoArticlesError):
        parse_reddit_listing(reddit_listing(reddit_post("x", "")), "python")


def test_parse_feed_dispatch():
    document = rss_document("Dispatch", [("One", "https://example.com/1")])
    assert parse_feed(FEED_TYPE_RSS, document)["title"] == "Dispatch"
    assert parse_feed(FEED_TYPE_GOOGLE_NEWS, document)["title"] == "Dispatch"
    listing = reddit_listing(reddit_post("a1", "Hi"))
    assert parse_feed(FEED_TYPE_REDDIT, listing, subreddit="python")["title"] == "r/python"

    with pytest.raises(ValueError):
        parse_feed(FEED_TYPE_REDDIT, listing)
    with pytest.raises(ValueError):
        parse_feed("gopher", document)
