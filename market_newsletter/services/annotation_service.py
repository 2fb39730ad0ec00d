import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from market_newsletter.models.content import (
    ANNOTATION_CATEGORIES,
    NEUTRAL_IMPORTANCE,
    AnnotatedItem,
    Annotation,
    AnnotationResult,
    Item,
    sort_annotated,
)
from market_newsletter.utils.error_monitoring import ErrorHandler, ErrorKind
from market_newsletter.utils.text import strip_html


DEFAULT_BATCH_SIZE = 20
MAX_BODY_CHARS = 2000


class ScoringResponseError(Exception):
    """The scoring service returned text without a usable JSON array."""
    pass


@dataclass
class Chunk:
    """A fixed-size, order-preserving slice of the merged item sequence."""
    index: int
    start_index: int
    items: List[Item]


def make_chunks(items: List[Item], batch_size: int = DEFAULT_BATCH_SIZE) -> List[Chunk]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [
        Chunk(index=n, start_index=start, items=items[start:start + batch_size])
        for n, start in enumerate(range(0, len(items), batch_size))
    ]


def parse_scoring_response(text: str) -> Dict[int, Annotation]:
    """
    Extract the JSON array from a free-text scoring response.

    Every ``[`` is tried as the start of a JSON value, so bracketed prose around the
    payload (``[Article 1]``, ``[Reuters]``) is skipped. The first decoded array that
    holds objects wins.

    Returns annotations keyed by their declared 1-based index. Raises
    ScoringResponseError when no well-formed array of objects can be recovered.
    """
    entries = _find_result_objects(text or "")

    annotations: Dict[int, Annotation] = {}
    for entry in entries:
        index = _as_int(entry.get("index"))
        if index is None or index in annotations:
            continue
        annotations[index] = _annotation_from_entry(entry)
    return annotations


def _find_result_objects(text: str) -> List[Dict[str, Any]]:
    decoder = json.JSONDecoder()
    last_error: Optional[json.JSONDecodeError] = None
    found_array = False

    pos = text.find("[")
    if pos == -1:
        raise ScoringResponseError("No JSON array found in response")
    while pos != -1:
        try:
            data, _ = decoder.raw_decode(text, pos)
        except json.JSONDecodeError as e:
            last_error = last_error or e
        else:
            if isinstance(data, list):
                found_array = True
                entries = [entry for entry in data if isinstance(entry, dict)]
                if entries:
                    return entries
        pos = text.find("[", pos + 1)

    if found_array:
        raise ScoringResponseError("JSON array contains no result objects")
    raise ScoringResponseError(f"Malformed JSON in response: {last_error}")


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _annotation_from_entry(entry: Dict[str, Any]) -> Annotation:
    importance = _as_int(entry.get("importance"))
    if importance is None or not 1 <= importance <= 5:
        importance = NEUTRAL_IMPORTANCE

    category = entry.get("category")
    if category not in ANNOTATION_CATEGORIES:
        category = None

    summary = entry.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = None
    else:
        summary = summary.strip()

    return Annotation(
        importance=importance,
        category=category,
        summary=summary,
        key_points=_string_list(entry.get("keyPoints")),
        tickers=_string_list(entry.get("tickers")),
    )


class AnnotationService:
    """
    Scores merged items in fixed-size chunks through the AI service.

    Chunks are scored one at a time in index order. A chunk whose call fails or whose
    response cannot be parsed gets the neutral annotation for every item; other
    chunks are unaffected.
    """

    def __init__(self, ai_service, batch_size: int = DEFAULT_BATCH_SIZE,
                 error_handler: Optional[ErrorHandler] = None):
        self.ai = ai_service
        self.batch_size = batch_size
        self.max_tokens = 4096
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    async def annotate(self, items: List[Item]) -> AnnotationResult:
        chunks = make_chunks(items, self.batch_size)
        result = AnnotationResult(chunks_total=len(chunks))
        if not chunks:
            return result

        self.logger.info(f"Analyzing {len(items)} articles in {len(chunks)} batches")
        annotated: List[AnnotatedItem] = []
        for chunk in chunks:
            self.logger.info(f"Processing batch {chunk.index + 1}/{len(chunks)}...")
            try:
                annotated.extend(await self._annotate_chunk(chunk))
            except Exception as e:
                result.chunks_failed += 1
                self.error_handler.handle_error(
                    e,
                    ErrorKind.CHUNK_ANNOTATION,
                    service="annotation",
                    operation="annotate_chunk",
                    context={"chunk": chunk.index + 1, "start_index": chunk.start_index, "size": len(chunk.items)},
                )
                annotated.extend(self._neutral(chunk.items))

        result.items = sort_annotated(annotated)
        self.logger.info(
            f"Annotation complete: {len(result.items)} items, "
            f"{result.chunks_failed}/{result.chunks_total} batches fell back to neutral"
        )
        return result

    @staticmethod
    def annotate_neutral(items: List[Item]) -> AnnotationResult:
        """Neutral annotation for every item, without calling the scoring service."""
        return AnnotationResult(items=sort_annotated(AnnotationService._neutral(items)))

    async def _annotate_chunk(self, chunk: Chunk) -> List[AnnotatedItem]:
        context = {
            "count": len(chunk.items),
            "articles": self.build_articles_text(chunk.items),
        }
        response_text = await self.ai.generate("article_scoring", context, max_tokens=self.max_tokens)
        annotations = parse_scoring_response(response_text)

        missing = [j + 1 for j in range(len(chunk.items)) if (j + 1) not in annotations]
        if missing:
            self.logger.warning(
                f"Batch {chunk.index + 1}: no result for positions {missing}, using neutral annotation"
            )

        return [
            AnnotatedItem(item=item, annotation=annotations.get(j + 1, Annotation.neutral()))
            for j, item in enumerate(chunk.items)
        ]

    @staticmethod
    def build_articles_text(items: List[Item]) -> str:
        blocks = []
        for idx, item in enumerate(items, start=1):
            content = strip_html(item.body)[:MAX_BODY_CHARS]
            blocks.append(
                f"[Article {idx}]\n"
                f"Title: {item.title}\n"
                f"Source: {item.source_title}\n"
                f"Content: {content}"
            )
        return "\n---\n".join(blocks)

    @staticmethod
    def _neutral(items: List[Item]) -> List[AnnotatedItem]:
        return [AnnotatedItem(item=item, annotation=Annotation.neutral()) for item in items]
