import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import markdown2
import premailer
import pytz
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from market_newsletter.models.content import AnnotatedItem
from market_newsletter.utils.text import strip_html, truncate


DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
SNIPPET_LENGTH = 200


@dataclass
class CompiledEmail:
    """Complete compiled newsletter ready for saving and sending"""
    subject: str
    html_content: str
    plain_text: str
    preview_text: str

    # Metadata
    compile_time: datetime
    total_items: int
    critical_count: int = 0
    important_count: int = 0


@dataclass
class ImportanceGroup:
    """One importance band of the newsletter body"""
    key: str
    name: str
    icon: str
    importances: Tuple[int, ...]
    display_limit: int
    entries: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def hidden_count(self) -> int:
        return max(0, len(self.entries) - self.display_limit)

    @property
    def visible(self) -> List[Dict[str, Any]]:
        return self.entries[:self.display_limit]


class CompilationError(Exception):
    """Custom exception for compilation failures"""
    pass


class EmailCompiler:
    """
    Compiles annotated items into the HTML and plain text newsletter.

    Items are grouped by importance: critical (1), important (2), reference (3)
    and other (4-5). The "other" band only appears in the HTML version, and only
    when nothing critical or important was found.
    """

    def __init__(self, template_dir: Optional[str] = None, timezone: str = "UTC") -> None:
        self.template_dir = str(template_dir or DEFAULT_TEMPLATE_DIR)

        try:
            self.env = Environment(
                loader=FileSystemLoader(self.template_dir),
                autoescape=select_autoescape(enabled_extensions=("html", "html.j2")),
                trim_blocks=True,
                lstrip_blocks=True,
            )
        except Exception as e:  # noqa: BLE001
            raise CompilationError(f"Failed to initialize Jinja2 environment: {e}") from e

        self.env.filters["markdown"] = self._markdown_filter
        self.env.filters["timeformat"] = self._timeformat_filter

        try:
            self.timezone = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError as e:
            raise CompilationError(f"Unknown timezone: {timezone}") from e

        self.max_email_size_kb = 102  # Gmail clipping limit
        self.logger = logging.getLogger(__name__)

    def compile_newsletter(
        self,
        items: List[AnnotatedItem],
        date: Optional[datetime] = None,
        digest: Optional[str] = None,
        title: str = "Market Newsletter",
        emoji: str = "📈",
    ) -> CompiledEmail:
        """
        Compile the newsletter for one run. ``items`` are expected in annotation order.
        """
        compile_time = datetime.now(self.timezone)
        newsletter_date = date or compile_time
        date_str = newsletter_date.strftime("%A, %B %d, %Y")

        groups = self._group_by_importance(items)
        critical_count = len(groups["critical"].entries)
        important_count = len(groups["important"].entries)

        template_data = {
            "title": title,
            "emoji": emoji,
            "date_str": date_str,
            "digest": digest,
            "groups": list(groups.values()),
            "show_other": critical_count + important_count == 0,
            "critical_count": critical_count,
            "important_count": important_count,
            "total_items": len(items),
        }

        html = self._inline_css(self._render_template("newsletter.html.j2", template_data))
        plain_text = self._render_template("newsletter.txt.j2", template_data)

        if not self._check_email_size(html):
            self.logger.warning(
                "Compiled newsletter exceeds %dKB and may be clipped by mail clients",
                self.max_email_size_kb,
            )

        compiled = CompiledEmail(
            subject=f"{emoji} {title} - {date_str}",
            html_content=html,
            plain_text=plain_text,
            preview_text=self._generate_preview_text(items, digest),
            compile_time=compile_time,
            total_items=len(items),
            critical_count=critical_count,
            important_count=important_count,
        )
        self.logger.info(
            "Compiled newsletter '%s': %d items (%d critical, %d important)",
            compiled.subject, compiled.total_items, critical_count, important_count,
        )
        return compiled

    def save(self, compiled: CompiledEmail, output_dir: str, date: datetime,
             suffix: Optional[str] = None) -> Tuple[Path, Path]:
        """Write newsletter-YYYY-MM-DD[-suffix].html and .txt into output_dir."""
        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)

        stem = f"newsletter-{date.strftime('%Y-%m-%d')}"
        if suffix:
            stem = f"{stem}-{suffix}"

        html_path = directory / f"{stem}.html"
        text_path = directory / f"{stem}.txt"
        html_path.write_text(compiled.html_content, encoding="utf-8")
        text_path.write_text(compiled.plain_text, encoding="utf-8")

        self.logger.info("HTML saved: %s", html_path)
        self.logger.info("Text saved: %s", text_path)
        return html_path, text_path

    def _group_by_importance(self, items: List[AnnotatedItem]) -> Dict[str, ImportanceGroup]:
        groups = {
            "critical": ImportanceGroup("critical", "Critical: company analysis and earnings", "🔴", (1,), 20),
            "important": ImportanceGroup("important", "Important: macro and market trends", "🟠", (2,), 10),
            "reference": ImportanceGroup("reference", "Reference", "🔵", (3,), 10),
            "other": ImportanceGroup("other", "Other", "⚪", (4, 5), 10),
        }
        for entry in items:
            for group in groups.values():
                if entry.importance in group.importances:
                    group.entries.append(self._entry_view(entry))
                    break
        return groups

    def _entry_view(self, entry: AnnotatedItem) -> Dict[str, Any]:
        item = entry.item
        annotation = entry.annotation
        return {
            "title": item.title or "(untitled)",
            "url": item.url,
            "source_title": item.source_title,
            "published": item.published_at.astimezone(self.timezone),
            "snippet": truncate(strip_html(item.body), SNIPPET_LENGTH),
            "importance": annotation.importance,
            "label": annotation.label,
            "summary": annotation.summary,
            "key_points": annotation.key_points,
            "tickers": annotation.tickers,
        }

    def _generate_preview_text(self, items: List[AnnotatedItem], digest: Optional[str]) -> str:
        """Generate email preview text (shows in inbox). 150 chars max."""
        if digest:
            return strip_html(self._markdown_filter(digest))[:150]
        for entry in items:
            text = entry.annotation.summary or entry.item.title
            if text:
                return text[:150]
        return "Today's market reading list."

    def _render_template(self, name: str, template_data: Dict[str, Any]) -> str:
        try:
            template = self.env.get_template(name)
            return template.render(template_data)
        except TemplateError as e:
            self.logger.error("Template rendering failed for %s: %s", name, e, exc_info=True)
            raise CompilationError(f"Template error in {name}: {e}") from e

    def _inline_css(self, html: str) -> str:
        """Inline CSS for email client compatibility."""
        try:
            return premailer.transform(
                html,
                keep_style_tags=True,
                strip_important=False,
                cssutils_logging_level=logging.ERROR,
            )
        except Exception as e:  # noqa: BLE001
            self.logger.error("CSS inlining failed: %s", e, exc_info=True)
            raise CompilationError(f"CSS inlining error: {e}") from e

    def _check_email_size(self, html: str) -> bool:
        size_kb = len((html or "").encode("utf-8")) / 1024
        return size_kb <= self.max_email_size_kb

    # Jinja2 filters
    def _markdown_filter(self, text: Optional[str]) -> str:
        if text is None:
            return ""
        return markdown2.markdown(text, extras=["smarty", "cuddled-lists"])

    def _timeformat_filter(self, dt: datetime, format: str = "%Y-%m-%d %H:%M") -> str:  # noqa: A002
        if not isinstance(dt, datetime):
            return str(dt)
        return dt.strftime(format)

