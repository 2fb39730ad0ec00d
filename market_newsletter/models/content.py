"""
Content models for the newsletter pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


NEUTRAL_IMPORTANCE = 3

IMPORTANCE_LABELS: Dict[int, str] = {
    1: "critical",
    2: "important",
    3: "reference",
    4: "low",
    5: "irrelevant",
}

ANNOTATION_CATEGORIES = (
    "value_stock",
    "macro",
    "think_tank",
    "real_estate",
    "crypto",
    "general",
)


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


@dataclass(frozen=True)
class Source:
    """A configured feed endpoint from the source catalog."""

    id: str
    url: str
    title: str
    category: str = "general"
    enabled: bool = True
    topics: List[str] = field(default_factory=list)

    @classmethod
    def from_descriptor(cls, descriptor: Dict[str, Any]) -> "Source":
        url = descriptor["url"]
        return cls(
            id=descriptor.get("id") or f"feed/{url}",
            url=url,
            title=descriptor.get("title") or url,
            category=descriptor.get("category") or "general",
            enabled=not bool(descriptor.get("disabled", False)),
            topics=list(descriptor.get("topics") or []),
        )

    def to_descriptor(self) -> Dict[str, Any]:
        descriptor: Dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "category": self.category,
        }
        if not self.enabled:
            descriptor["disabled"] = True
        if self.topics:
            descriptor["topics"] = list(self.topics)
        return descriptor


@dataclass(frozen=True)
class Item:
    """A single entry retrieved from a source. Deduplicated by ``url``."""

    id: str
    title: str
    url: str
    body: str
    published: int  # epoch millis
    source_title: str
    source_id: str
    categories: List[str] = field(default_factory=list)

    @property
    def published_at(self) -> datetime:
        return datetime.fromtimestamp(self.published / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Annotation:
    """Scoring-service metadata attached to an item."""

    importance: int = NEUTRAL_IMPORTANCE
    category: Optional[str] = None
    summary: Optional[str] = None
    key_points: List[str] = field(default_factory=list)
    tickers: List[str] = field(default_factory=list)

    @classmethod
    def neutral(cls) -> "Annotation":
        return cls()

    @property
    def is_neutral(self) -> bool:
        return self == Annotation.neutral()

    @property
    def label(self) -> str:
        return IMPORTANCE_LABELS.get(self.importance, IMPORTANCE_LABELS[NEUTRAL_IMPORTANCE])


@dataclass(frozen=True)
class AnnotatedItem:
    """An item paired with the single annotation merged onto it."""

    item: Item
    annotation: Annotation

    @property
    def importance(self) -> int:
        return self.annotation.importance


def annotation_order_key(entry: AnnotatedItem):
    """Sort key: importance ascending, then most recent first."""
    return (entry.annotation.importance, -entry.item.published)


def sort_annotated(entries: List[AnnotatedItem]) -> List[AnnotatedItem]:
    # sorted() is stable, so fully-equal keys keep their input order
    return sorted(entries, key=annotation_order_key)


@dataclass
class SourceError:
    """A source that failed during a fetch run."""

    source_id: str
    source_title: str
    reason: str


@dataclass
class FetchResult:
    """Accumulator returned by the fetch scheduler."""

    items: List[Item] = field(default_factory=list)
    sources_total: int = 0
    sources_completed: int = 0
    errors: List[SourceError] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def sources_succeeded(self) -> int:
        return self.sources_completed - self.error_count


@dataclass
class MergeResult:
    items: List[Item] = field(default_factory=list)
    duplicates_removed: int = 0
    expired_removed: int = 0


@dataclass
class AnnotationResult:
    items: List[AnnotatedItem] = field(default_factory=list)
    chunks_total: int = 0
    chunks_failed: int = 0


@dataclass
class PipelineResult:
    """Annotated sequence plus diagnostic counts for one run."""

    items: List[AnnotatedItem] = field(default_factory=list)
    fetched: int = 0
    deduped: int = 0
    errored: int = 0
    expired: int = 0
    chunks_failed: int = 0
    digest: Optional[str] = None
    annotated: bool = False
    source_errors: List[SourceError] = field(default_factory=list)
