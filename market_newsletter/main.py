#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv

from market_newsletter.models.content import PipelineResult
from market_newsletter.pipeline.email_compiler import EmailCompiler
from market_newsletter.pipeline.genres import NEWSLETTER_GENRES, Genre, custom_genre, select_genres
from market_newsletter.pipeline.newsletter_pipeline import NewsletterPipeline
from market_newsletter.services.ai_service import AIService, AIServiceError
from market_newsletter.services.annotation_service import AnnotationService
from market_newsletter.services.digest_service import DigestService
from market_newsletter.services.email_service import EmailConfig, EmailService, EmailServiceError
from market_newsletter.services.feedly import FeedlyClient, FeedlyError, load_subscriptions_file
from market_newsletter.services.rss import RSSService
from market_newsletter.services.source_catalog import CatalogError, SourceCatalog
from market_newsletter.utils.error_monitoring import ConfigurationError, ErrorHandler
from market_newsletter.utils.logging_config import setup_logging


@dataclass
class PipelineConfig:
    """Pipeline configuration"""
    gemini_api_key: str = ""
    gemini_model: Optional[str] = None

    # Paths
    feeds_path: str = "config/feeds.json"
    prompts_path: str = "config/prompts.yaml"
    output_dir: str = "output"
    log_dir: str = "logs"
    log_level: str = "INFO"
    timezone: str = "UTC"

    # Fetch and annotation
    hours_back: float = 24
    fetch_concurrency: int = 10
    feed_timeout: float = 10.0
    annotation_batch_size: int = 20

    # Delivery
    send_delay_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables"""
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL") or None,
            feeds_path=os.getenv("FEEDS_PATH", "config/feeds.json"),
            prompts_path=os.getenv("PROMPTS_PATH", "config/prompts.yaml"),
            output_dir=os.getenv("OUTPUT_DIR", "output"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            timezone=os.getenv("NEWSLETTER_TIMEZONE", "UTC"),
            hours_back=_env_number("HOURS_BACK", 24, float),
            fetch_concurrency=_env_number("FETCH_CONCURRENCY", 10, int),
            feed_timeout=_env_number("FEED_TIMEOUT", 10.0, float),
            annotation_batch_size=_env_number("ANNOTATION_BATCH_SIZE", 20, int),
            send_delay_seconds=_env_number("SEND_DELAY_SECONDS", 2.0, float),
        )


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


class NewsletterApp:
    """
    Batch runner: one newsletter per genre, rendered, saved and optionally mailed.
    """

    def __init__(self, config: PipelineConfig, use_ai: bool = True, send: bool = True):
        self.config = config
        self.use_ai = use_ai
        self.send_enabled = send
        self.logger = logging.getLogger(__name__)

        self.error_handler = ErrorHandler()
        self.catalog = SourceCatalog(config.feeds_path)
        self.compiler = EmailCompiler(timezone=config.timezone)
        self.pipeline = NewsletterPipeline(
            RSSService(feed_timeout=config.feed_timeout, error_handler=self.error_handler),
            *self._build_ai_services(),
        )

    def _build_ai_services(self):
        if not self.use_ai:
            return None, None
        if not self.config.gemini_api_key:
            self.logger.warning("GEMINI_API_KEY not set, newsletters will not be ranked")
            return None, None
        try:
            ai = AIService(
                api_key=self.config.gemini_api_key,
                prompts_path=self.config.prompts_path,
                model=self.config.gemini_model,
            )
        except AIServiceError as e:
            raise ConfigurationError(str(e)) from e
        annotation = AnnotationService(
            ai, batch_size=self.config.annotation_batch_size, error_handler=self.error_handler,
        )
        digest = DigestService(ai, error_handler=self.error_handler)
        return annotation, digest

    async def run_genres(self, genres: List[Genre], hours: float, concurrency: int,
                         output_dir: str) -> int:
        """Returns the number of newsletters produced."""
        sources = self.catalog.load()
        email_service = await self._email_service()
        date = datetime.now()
        produced = 0

        self.logger.info(f"Generating {len(genres)} newsletters: {', '.join(g.id for g in genres)}")
        for genre in genres:
            label = f"[{genre.emoji} {genre.name}]"
            try:
                result = await self.pipeline.run(
                    sources,
                    time_window_hours=hours,
                    concurrency_limit=concurrency,
                    categories=genre.categories,
                    annotate=self.use_ai,
                )
                if not result.items:
                    self.logger.info(f"{label} No articles, skipping")
                    continue

                compiled = self.compiler.compile_newsletter(
                    result.items, date=date, digest=result.digest,
                    title=f"{genre.name} Newsletter", emoji=genre.emoji,
                )
                self.compiler.save(compiled, output_dir, date, suffix=genre.id)
                produced += 1
                self._log_summary(label, result)

                if email_service is not None:
                    if produced > 1 and self.config.send_delay_seconds:
                        await asyncio.sleep(self.config.send_delay_seconds)
                    await email_service.send(compiled.subject, compiled.html_content, compiled.plain_text)
            except ConfigurationError:
                raise
            except EmailServiceError as e:
                self.logger.error(f"{label} Send failed: {e}")
            except Exception as e:
                self.logger.exception(f"{label} Newsletter failed: {e}")

        stats = self.error_handler.get_error_statistics()
        if stats["total_errors"]:
            self.logger.info(f"Errors during run: {stats['by_kind']}")
        self.logger.info(f"Done: {produced}/{len(genres)} newsletters generated")
        return produced

    async def _email_service(self) -> Optional[EmailService]:
        if not self.send_enabled:
            self.logger.info("Sending disabled, newsletters are only saved to files")
            return None
        email_config = EmailConfig.from_env()
        if not email_config.has_credentials:
            self.logger.warning("SMTP credentials not set, skipping email delivery")
            return None
        service = EmailService(email_config)
        if not await service.test_connection():
            self.logger.warning("SMTP login check failed, newsletters are only saved to files")
            return None
        return service

    def _log_summary(self, label: str, result: PipelineResult) -> None:
        critical = sum(1 for entry in result.items if entry.importance == 1)
        important = sum(1 for entry in result.items if entry.importance == 2)
        self.logger.info(
            f"{label} {len(result.items)} articles ({critical} critical, {important} important), "
            f"{result.errored} feed errors, {result.chunks_failed} failed batches"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market newsletter generator")
    parser.add_argument('--genres', help='Comma-separated genre ids (default: all)')
    parser.add_argument('--category',
                        help='Comma-separated feed categories for a one-off newsletter '
                             '(with --add-feed: the new feed\'s category)')
    parser.add_argument('--hours', type=float, help='Look-back window in hours')
    parser.add_argument('--concurrency', type=int, help='Feeds fetched in parallel')
    parser.add_argument('--no-ai', action='store_true', help='Skip ranking and digest')
    parser.add_argument('--no-send', action='store_true', help='Save files without sending email')
    parser.add_argument('--output', help='Output directory for rendered newsletters')
    parser.add_argument('--feeds', help='Path to the feed catalog JSON')

    # Catalog management
    parser.add_argument('--list-genres', action='store_true', help='List available genres')
    parser.add_argument('--list-feeds', action='store_true', help='List feeds by category')
    parser.add_argument('--show', metavar='CATEGORY', help='List the feeds of one category')
    parser.add_argument('--add-feed', metavar='URL', help='Add a feed to the catalog')
    parser.add_argument('--title', help='Title for --add-feed')
    parser.add_argument('--remove-feed', metavar='URL', help='Remove a feed from the catalog')
    parser.add_argument('--import-feedly', nargs='?', const='', metavar='FILE',
                        help='Import Feedly subscriptions from the API (FEEDLY_TOKEN) '
                             'or from a saved subscriptions JSON file')
    return parser


async def handle_catalog_command(args, catalog: SourceCatalog) -> bool:
    """Runs a catalog command if one was requested. Returns True when handled."""
    if args.list_genres:
        print("Available genres:")
        for genre in NEWSLETTER_GENRES:
            print(f"  {genre.emoji} {genre.id:<12} {genre.name}: {genre.description}")
            print(f"      categories: {', '.join(genre.categories)}")
        return True

    if args.list_feeds:
        catalog.load()
        for category, info in sorted(catalog.categories().items()):
            print(f"{category} ({info['count']})")
            for title in info['feeds']:
                print(f"  - {title}")
        return True

    if args.show:
        catalog.load()
        by_category = catalog.feeds_by_category()
        if args.show not in by_category:
            known = ", ".join(sorted(by_category)) or "none"
            raise CatalogError(f"Category not found: {args.show} (available: {known})")
        feeds = by_category[args.show]
        print(f"{args.show} ({len(feeds)})")
        for source in feeds:
            print(f"  - {source.title}")
            print(f"    {source.url}")
        return True

    if args.add_feed:
        if not args.title:
            raise ConfigurationError("--add-feed requires --title")
        catalog.load(missing_ok=True)
        source = catalog.add_source(args.add_feed, args.title, args.category or "general")
        print(f"Added {source.title} ({source.url}) to {source.category}")
        return True

    if args.remove_feed:
        catalog.load()
        source = catalog.remove_source(args.remove_feed)
        print(f"Removed {source.title} ({source.url})")
        return True

    if args.import_feedly is not None:
        if args.import_feedly:
            subscriptions = load_subscriptions_file(args.import_feedly)
        else:
            token = os.getenv("FEEDLY_TOKEN", "")
            if not token:
                raise ConfigurationError("FEEDLY_TOKEN is required to import from the Feedly API")
            subscriptions = await FeedlyClient(token).get_subscriptions()
        catalog.load(missing_ok=True)
        added = catalog.import_subscriptions(subscriptions)
        print(f"Imported {added} new feeds ({len(subscriptions)} subscriptions)")
        return True

    return False


def resolve_genres(args) -> List[Genre]:
    if args.category:
        if args.genres:
            raise ConfigurationError("Use either --genres or --category, not both")
        return [custom_genre(args.category.split(','))]
    genre_ids = args.genres.split(',') if args.genres else None
    return select_genres(genre_ids)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = PipelineConfig.from_env()
        if args.feeds:
            config.feeds_path = args.feeds
        setup_logging(log_level=config.log_level, log_dir=config.log_dir)

        catalog = SourceCatalog(config.feeds_path)
        if await handle_catalog_command(args, catalog):
            return 0

        genres = resolve_genres(args)
        app = NewsletterApp(config, use_ai=not args.no_ai, send=not args.no_send)
        await app.run_genres(
            genres,
            hours=args.hours if args.hours is not None else config.hours_back,
            concurrency=args.concurrency if args.concurrency is not None else config.fetch_concurrency,
            output_dir=args.output or config.output_dir,
        )
        return 0
    except (ConfigurationError, CatalogError, FeedlyError) as e:
        logging.getLogger(__name__).error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 130


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
