from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from market_newsletter.utils.error_monitoring import ConfigurationError


@dataclass(frozen=True)
class Genre:
    """A newsletter edition: one send per genre, built from its feed categories."""
    id: str
    name: str
    categories: Tuple[str, ...]
    description: str
    emoji: str


NEWSLETTER_GENRES: Tuple[Genre, ...] = (
    Genre(
        id="investors",
        name="Individual Investors",
        categories=("top_investors",),
        description="Blogs of individual investors with a proven track record",
        emoji="👨‍💼",
    ),
    Genre(
        id="macro",
        name="Macro Economy",
        categories=("research_reports", "nikkei"),
        description="Think-tank reports and business news",
        emoji="📊",
    ),
    Genre(
        id="investment",
        name="Investing",
        categories=("investing", "earnings"),
        description="Stock investing blogs and earnings summaries",
        emoji="💹",
    ),
    Genre(
        id="crypto",
        name="Crypto",
        categories=("crypto",),
        description="Crypto asset news",
        emoji="₿",
    ),
    Genre(
        id="education",
        name="School Entrance Exams",
        categories=("exam_prep",),
        description="Junior high school entrance exam news",
        emoji="📚",
    ),
)


def get_genre(genre_id: str) -> Genre:
    for genre in NEWSLETTER_GENRES:
        if genre.id == genre_id:
            return genre
    known = ", ".join(g.id for g in NEWSLETTER_GENRES)
    raise ConfigurationError(f"Unknown genre '{genre_id}' (available: {known})")


def select_genres(ids: Optional[Iterable[str]] = None) -> List[Genre]:
    """
    Presets in declared order. ``None`` or an empty selection means every genre.
    """
    wanted = [i.strip() for i in (ids or []) if i and i.strip()]
    if not wanted:
        return list(NEWSLETTER_GENRES)
    for genre_id in wanted:
        get_genre(genre_id)
    return [g for g in NEWSLETTER_GENRES if g.id in wanted]


def custom_genre(categories: Iterable[str]) -> Genre:
    """One-off edition over an arbitrary set of feed categories."""
    wanted = tuple(dict.fromkeys(c.strip() for c in categories if c and c.strip()))
    if not wanted:
        raise ConfigurationError("At least one category is required")
    return Genre(
        id="custom",
        name=", ".join(wanted),
        categories=wanted,
        description="Ad-hoc category selection",
        emoji="📰",
    )
