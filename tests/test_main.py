"""Tests for the command line entry point."""

import asyncio
import json

import pytest

from market_newsletter import main as cli
from market_newsletter.main import PipelineConfig
from market_newsletter.services.email_service import EmailService
from market_newsletter.services.feedly import FeedlyClient
from market_newsletter.services.rss import RSSService
from market_newsletter.utils.error_monitoring import ConfigurationError

from conftest import rss_document


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    for name in ("GEMINI_API_KEY", "SMTP_USER", "SMTP_PASSWORD", "SMTP_PORT", "HOURS_BACK", "FETCH_CONCURRENCY",
                 "FEEDLY_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def feeds_path(tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text(json.dumps({"feeds": [
        {"url": "https://coins.example.com/rss", "title": "Coins", "category": "crypto"},
        {"url": "https://macro.example.com/rss", "title": "Macro", "category": "research_reports"},
    ]}), encoding="utf-8")
    return path


def test_config_defaults():
    config = PipelineConfig.from_env()
    assert config.hours_back == 24
    assert config.fetch_concurrency == 10
    assert config.feeds_path == "config/feeds.json"


def test_config_rejects_non_numeric_values(monkeypatch):
    monkeypatch.setenv("FETCH_CONCURRENCY", "ten")
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_env()


def test_list_genres(capsys):
    assert asyncio.run(cli.main(["--list-genres"])) == 0
    assert "investors" in capsys.readouterr().out


def test_add_and_remove_feed(tmp_path):
    path = tmp_path / "new" / "feeds.json"
    args = ["--feeds", str(path), "--add-feed", "https://x.example.com/rss", "--title", "X", "--category", "crypto"]

    assert asyncio.run(cli.main(args)) == 0
    assert json.loads(path.read_text(encoding="utf-8"))["feeds"][0]["title"] == "X"

    assert asyncio.run(cli.main(["--feeds", str(path), "--remove-feed", "https://x.example.com/rss"])) == 0
    assert json.loads(path.read_text(encoding="utf-8"))["feeds"] == []


def test_removing_unknown_feed_exits_with_error(feeds_path):
    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--remove-feed", "https://nope.example.com"])) == 1


def test_unknown_genre_exits_with_error(feeds_path):
    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--genres", "sports"])) == 1


def test_missing_catalog_exits_with_error(tmp_path):
    assert asyncio.run(cli.main(["--feeds", str(tmp_path / "none.json"), "--no-send"])) == 1


def test_batch_run_saves_one_newsletter_per_genre_with_items(monkeypatch, feeds_path, tmp_path, recent):
    async def fake_fetch(self, url, session):
        return rss_document([("Bitcoin climbs", "https://coins.example.com/btc", recent)])

    monkeypatch.setattr(RSSService, "_fetch_content", fake_fetch)
    output = tmp_path / "output"

    code = asyncio.run(cli.main([
        "--feeds", str(feeds_path), "--genres", "crypto,education", "--no-ai", "--no-send",
        "--output", str(output),
    ]))

    assert code == 0
    html_files = list(output.glob("newsletter-*-crypto.html"))
    assert len(html_files) == 1
    assert "Bitcoin climbs" in html_files[0].read_text(encoding="utf-8")
    # education has no feeds in the catalog, so nothing is written for it
    assert list(output.glob("*education*")) == []


def fetch_by_host(recent):
    async def fake_fetch(self, url, session):
        host = url.split("/")[2].split(".")[0]
        return rss_document([(f"{host.title()} headline", f"https://{host}.example.com/post", recent)])
    return fake_fetch


def test_category_option_builds_one_custom_newsletter(monkeypatch, feeds_path, tmp_path, recent):
    monkeypatch.setattr(RSSService, "_fetch_content", fetch_by_host(recent))
    output = tmp_path / "output"

    code = asyncio.run(cli.main([
        "--feeds", str(feeds_path), "--category", "crypto, research_reports", "--no-ai", "--no-send",
        "--output", str(output),
    ]))

    assert code == 0
    html_files = list(output.glob("newsletter-*.html"))
    assert [f.name.endswith("-custom.html") for f in html_files] == [True]
    html = html_files[0].read_text(encoding="utf-8")
    assert "Coins headline" in html
    assert "Macro headline" in html


def test_genres_and_category_together_are_rejected(feeds_path):
    args = ["--feeds", str(feeds_path), "--genres", "crypto", "--category", "crypto", "--no-send"]
    assert asyncio.run(cli.main(args)) == 1


def test_show_lists_feeds_of_one_category(feeds_path, capsys):
    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--show", "crypto"])) == 0
    out = capsys.readouterr().out
    assert "crypto (1)" in out
    assert "https://coins.example.com/rss" in out
    assert "Macro" not in out


def test_show_unknown_category_exits_with_error(feeds_path):
    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--show", "sports"])) == 1


def test_import_feedly_from_saved_subscriptions(feeds_path, tmp_path):
    export = tmp_path / "subscriptions.json"
    export.write_text(json.dumps([
        {"id": "feed/https://coins.example.com/rss", "title": "Coins"},
        {"id": "feed/https://yen.example.com/rss", "title": "Yen", "categories": [{"label": "nikkei"}]},
    ]), encoding="utf-8")

    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--import-feedly", str(export)])) == 0
    feeds = json.loads(feeds_path.read_text(encoding="utf-8"))["feeds"]
    assert [f["title"] for f in feeds] == ["Coins", "Macro", "Yen"]
    assert feeds[2]["category"] == "nikkei"


def test_import_feedly_from_api_uses_token(monkeypatch, tmp_path):
    async def fake_subscriptions(self):
        return [{"id": "feed/https://api.example.com/rss", "title": "From API"}]

    monkeypatch.setenv("FEEDLY_TOKEN", "token-123")
    monkeypatch.setattr(FeedlyClient, "get_subscriptions", fake_subscriptions)
    path = tmp_path / "feeds.json"

    assert asyncio.run(cli.main(["--feeds", str(path), "--import-feedly"])) == 0
    assert json.loads(path.read_text(encoding="utf-8"))["feeds"][0]["url"] == "https://api.example.com/rss"


def test_import_feedly_without_token_exits_with_error(tmp_path):
    assert asyncio.run(cli.main(["--feeds", str(tmp_path / "feeds.json"), "--import-feedly"])) == 1


def test_failed_smtp_check_skips_delivery_but_saves_files(monkeypatch, feeds_path, tmp_path, recent):
    sent = []

    async def refuse(self):
        return False

    async def record_send(self, subject, html_body, text_body, recipient=None):
        sent.append(subject)
        return True

    monkeypatch.setenv("SMTP_USER", "me@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    monkeypatch.setattr(EmailService, "test_connection", refuse)
    monkeypatch.setattr(EmailService, "send", record_send)
    monkeypatch.setattr(RSSService, "_fetch_content", fetch_by_host(recent))
    output = tmp_path / "output"

    code = asyncio.run(cli.main(["--feeds", str(feeds_path), "--genres", "crypto", "--no-ai",
                                 "--output", str(output)]))

    assert code == 0
    assert sent == []
    assert len(list(output.glob("newsletter-*-crypto.html"))) == 1


def test_invalid_smtp_port_exits_with_configuration_error(monkeypatch, feeds_path):
    monkeypatch.setenv("SMTP_USER", "me@example.com")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    monkeypatch.setenv("SMTP_PORT", "five-eight-seven")

    assert asyncio.run(cli.main(["--feeds", str(feeds_path), "--genres", "crypto", "--no-ai"])) == 1
