import logging
from typing import List, Optional

from market_newsletter.models.content import AnnotatedItem
from market_newsletter.utils.error_monitoring import ErrorHandler, ErrorKind


class DigestService:
    """
    Writes the short highlight block that opens the newsletter.

    One free-text call over the top-ranked items. Any failure yields None.
    """

    def __init__(self, ai_service, max_items: int = 15, max_importance: int = 2,
                 error_handler: Optional[ErrorHandler] = None):
        self.ai = ai_service
        self.max_items = max_items
        self.max_importance = max_importance
        self.max_tokens = 1024
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    def select_items(self, annotated: List[AnnotatedItem]) -> List[AnnotatedItem]:
        important = [entry for entry in annotated if entry.annotation.importance <= self.max_importance]
        return important[:self.max_items]

    async def summarize(self, annotated: List[AnnotatedItem]) -> Optional[str]:
        selected = self.select_items(annotated)
        if not selected:
            self.logger.info("No important articles, skipping daily digest")
            return None

        context = {"count": len(selected), "articles": self.build_articles_text(selected)}
        try:
            text = await self.ai.generate("daily_digest", context, max_tokens=self.max_tokens)
        except Exception as e:
            self.error_handler.handle_error(
                e, ErrorKind.DIGEST, service="digest", operation="summarize",
                context={"items": len(selected)},
            )
            return None

        text = (text or "").strip()
        return text or None

    @staticmethod
    def build_articles_text(entries: List[AnnotatedItem]) -> str:
        lines = []
        for idx, entry in enumerate(entries, start=1):
            key_points = ", ".join(entry.annotation.key_points) or "none"
            lines.append(
                f"{idx}. [{entry.item.source_title}] {entry.item.title}\n"
                f"   Summary: {entry.annotation.summary or 'none'}\n"
                f"   Key points: {key_points}"
            )
        return "\n\n".join(lines)
