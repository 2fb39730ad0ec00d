"""Shared factories for pipeline tests."""

from email.utils import format_datetime
from datetime import datetime, timedelta, timezone

import pytest

from market_newsletter.models.content import Annotation, AnnotatedItem, Item, Source, now_millis


HOUR_MS = 60 * 60 * 1000


def make_item(n, published=None, url=None, source="src-a", title=None, body="Body text"):
    return Item(
        id=f"item-{n}",
        title=title or f"Article {n}",
        url=url or f"https://example.com/{n}",
        body=body,
        published=now_millis() if published is None else published,
        source_title=f"Source {source}",
        source_id=source,
        categories=["general"],
    )


def make_annotated(n, importance=3, published=None, summary=None, title=None):
    return AnnotatedItem(
        item=make_item(n, published=published, title=title),
        annotation=Annotation(importance=importance, summary=summary),
    )


def make_source(n, category="general", enabled=True):
    url = f"https://feeds.example.com/{n}.xml"
    return Source(id=f"feed/{url}", url=url, title=f"Feed {n}", category=category, enabled=enabled)


def rss_document(entries, title="Example Feed"):
    """Minimal RSS 2.0 document. ``entries`` is a list of (title, link, published datetime)."""
    items = "".join(
        f"<item><title>{t}</title><link>{link}</link><guid>{link}</guid>"
        f"<pubDate>{format_datetime(published)}</pubDate>"
        f"<description>&lt;p&gt;About {t}&lt;/p&gt;</description></item>"
        for t, link, published in entries
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<rss version="2.0"><channel><title>{title}</title>'
        f'<link>https://example.com</link><description>test</description>{items}</channel></rss>'
    )


@pytest.fixture
def recent():
    """A timezone-aware timestamp one hour ago."""
    return datetime.now(timezone.utc) - timedelta(hours=1)
