import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from market_newsletter.models.content import Source
from market_newsletter.utils.error_monitoring import ConfigurationError


class CatalogError(Exception):
    """Invalid catalog operation (duplicate or unknown feed)."""
    pass


class SourceCatalog:
    """
    Flat JSON catalog of feed sources: ``{"feeds": [{id, url, title, category, ...}]}``.
    """

    def __init__(self, path: str = "config/feeds.json"):
        self.path = Path(path)
        self.sources: List[Source] = []
        # Extra keys (addedAt, notes, ...) are carried through save()
        self._extras: Dict[str, Dict[str, Any]] = {}
        self.logger = logging.getLogger(__name__)

    def load(self, missing_ok: bool = False) -> List[Source]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            if missing_ok:
                self.sources = []
                self._extras = {}
                return self.sources
            raise ConfigurationError(f"Feed catalog not found at {self.path}") from e
        except OSError as e:
            raise ConfigurationError(f"Feed catalog unreadable at {self.path}: {e}") from e

        try:
            descriptors = json.loads(raw).get("feeds") or []
        except (json.JSONDecodeError, AttributeError) as e:
            raise ConfigurationError(f"Feed catalog at {self.path} is not valid JSON: {e}") from e

        sources: List[Source] = []
        extras: Dict[str, Dict[str, Any]] = {}
        for position, descriptor in enumerate(descriptors):
            if not isinstance(descriptor, dict) or not descriptor.get("url"):
                raise ConfigurationError(f"Feed #{position + 1} in {self.path} has no url")
            source = Source.from_descriptor(descriptor)
            sources.append(source)
            known = {"id", "url", "title", "category", "disabled", "topics"}
            extras[source.url] = {k: v for k, v in descriptor.items() if k not in known}

        self.sources = sources
        self._extras = extras

        disabled_count = sum(1 for s in sources if not s.enabled)
        if disabled_count:
            self.logger.info(
                f"Loaded {len(sources)} feeds ({disabled_count} disabled, {len(sources) - disabled_count} active)"
            )
        else:
            self.logger.info(f"Loaded {len(sources)} feeds")
        return self.sources

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        feeds = []
        for source in self.sources:
            descriptor = source.to_descriptor()
            descriptor.update(self._extras.get(source.url, {}))
            feeds.append(descriptor)
        self.path.write_text(json.dumps({"feeds": feeds}, ensure_ascii=False, indent=2), encoding="utf-8")

    def add_source(self, url: str, title: str, category: str = "general") -> Source:
        if any(s.url == url for s in self.sources):
            raise CatalogError(f"Feed already exists: {url}")
        source = Source(id=f"feed/{url}", url=url, title=title, category=category)
        self.sources.append(source)
        self._extras[url] = {"addedAt": datetime.now(timezone.utc).isoformat()}
        self.save()
        return source

    def remove_source(self, url: str) -> Source:
        for position, source in enumerate(self.sources):
            if source.url == url:
                del self.sources[position]
                self._extras.pop(url, None)
                self.save()
                return source
        raise CatalogError(f"Feed not found: {url}")

    def import_subscriptions(self, subscriptions: Iterable[Dict[str, Any]]) -> int:
        """
        Add Feedly subscriptions (``{"id": "feed/<url>", "title", "categories", "topics"}``).

        Feeds whose url is already in the catalog are skipped. The category is the
        first subscription label. Returns the number of feeds added.
        """
        subscriptions = list(subscriptions)
        known_urls = {s.url for s in self.sources}
        imported_at = datetime.now(timezone.utc).isoformat()
        added = 0
        for sub in subscriptions:
            feed_id = sub.get("id") or ""
            url = feed_id[len("feed/"):] if feed_id.startswith("feed/") else feed_id
            if not url or url in known_urls:
                continue
            source = Source(
                id=feed_id,
                url=url,
                title=sub.get("title") or url,
                category=_first_label(sub.get("categories")) or "general",
                topics=list(sub.get("topics") or []),
            )
            self.sources.append(source)
            self._extras[url] = {"importedAt": imported_at}
            known_urls.add(url)
            added += 1

        self.save()
        self.logger.info(f"Imported {added} new feeds from {len(subscriptions)} subscriptions")
        return added

    def active_sources(self) -> List[Source]:
        return [s for s in self.sources if s.enabled]

    def feeds_by_category(self) -> Dict[str, List[Source]]:
        by_category: Dict[str, List[Source]] = {}
        for source in self.active_sources():
            by_category.setdefault(source.category or "general", []).append(source)
        return by_category

    def categories(self) -> Dict[str, Dict[str, Any]]:
        """Active feed counts and titles per category."""
        summary: Dict[str, Dict[str, Any]] = {}
        for source in self.active_sources():
            entry = summary.setdefault(source.category or "unknown", {"count": 0, "feeds": []})
            entry["count"] += 1
            entry["feeds"].append(source.title)
        return summary


def _first_label(labels: Any) -> Optional[str]:
    if not isinstance(labels, list) or not labels:
        return None
    first = labels[0]
    label = first.get("label") if isinstance(first, dict) else None
    return label if isinstance(label, str) and label.strip() else None
