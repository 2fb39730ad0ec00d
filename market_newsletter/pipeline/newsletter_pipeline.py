import logging
from typing import Iterable, List, Optional

from market_newsletter.models.content import PipelineResult, Source
from market_newsletter.pipeline.merge import merge_filter, since_timestamp
from market_newsletter.services.annotation_service import AnnotationService
from market_newsletter.services.digest_service import DigestService
from market_newsletter.services.rss import RSSService
from market_newsletter.utils.error_monitoring import ConfigurationError
from market_newsletter.utils.logging_config import PerformanceTracker, log_pipeline_metrics


class NewsletterPipeline:
    """
    Fetch, merge, annotate and digest for one newsletter run.

    Source, chunk and digest failures are absorbed into the result counts.
    Only configuration errors reach the caller.
    """

    def __init__(
        self,
        rss_service: RSSService,
        annotation_service: Optional[AnnotationService] = None,
        digest_service: Optional[DigestService] = None,
    ):
        self.rss = rss_service
        self.annotation = annotation_service
        self.digest = digest_service
        self.logger = logging.getLogger(__name__)

    async def run(
        self,
        sources: Iterable[Source],
        time_window_hours: float = 24,
        concurrency_limit: int = 10,
        categories: Optional[Iterable[str]] = None,
        annotate: bool = True,
    ) -> PipelineResult:
        self._validate(time_window_hours, concurrency_limit)
        sources = list(sources)
        category_filter: Optional[List[str]] = list(categories) if categories else None

        with PerformanceTracker("fetch", self.logger) as tracker:
            fetched = await self.rss.fetch_all(
                sources, time_window_hours, concurrency_limit, categories=category_filter,
            )
        log_pipeline_metrics(
            self.logger, "fetch", fetched.sources_total, len(fetched.items), tracker.duration_ms,
            sources_failed=fetched.error_count,
        )

        with PerformanceTracker("merge", self.logger) as tracker:
            merged = merge_filter(fetched.items, since_timestamp(time_window_hours))
        log_pipeline_metrics(
            self.logger, "merge", len(fetched.items), len(merged.items), tracker.duration_ms,
            duplicates_removed=merged.duplicates_removed, expired_removed=merged.expired_removed,
        )

        result = PipelineResult(
            fetched=len(fetched.items),
            deduped=merged.duplicates_removed,
            errored=fetched.error_count,
            expired=merged.expired_removed,
            source_errors=list(fetched.errors),
        )

        if annotate and self.annotation is not None:
            with PerformanceTracker("annotate", self.logger) as tracker:
                annotated = await self.annotation.annotate(merged.items)
            log_pipeline_metrics(
                self.logger, "annotate", len(merged.items), len(annotated.items), tracker.duration_ms,
                chunks_total=annotated.chunks_total, chunks_failed=annotated.chunks_failed,
            )
            result.items = annotated.items
            result.chunks_failed = annotated.chunks_failed
            result.annotated = True

            if self.digest is not None:
                result.digest = await self.digest.summarize(result.items)
        else:
            if annotate:
                self.logger.info("No annotation service configured, using neutral importance")
            result.items = AnnotationService.annotate_neutral(merged.items).items

        self.logger.info(
            f"Pipeline finished: {result.fetched} fetched, {result.deduped} duplicates, "
            f"{result.expired} expired, {result.errored} feed errors, {len(result.items)} in newsletter"
        )
        return result

    @staticmethod
    def _validate(time_window_hours: float, concurrency_limit: int) -> None:
        if not isinstance(concurrency_limit, int) or concurrency_limit < 1:
            raise ConfigurationError(f"concurrency_limit must be a positive integer, got {concurrency_limit!r}")
        if time_window_hours is None or time_window_hours <= 0:
            raise ConfigurationError(f"time_window_hours must be > 0, got {time_window_hours!r}")
