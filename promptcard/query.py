"""
Card filtering and sorting.

filter_cards() is a pure function of the card list and a CardQuery. Stages
run in a fixed order, each narrowing the previous result:

  category -> search -> tags -> sort

The "recent" category sorts by last update and truncates; it replaces the
sort stage entirely.
"""
import locale
import unicodedata
from dataclasses import dataclass, field
from typing import List, Mapping, Any, Tuple

from .schema import Card, SortField, SortOrder

ALL = "all"
RECENT = "recent"
FAVORITES = "favorites"
VIRTUAL_CATEGORIES = (ALL, RECENT, FAVORITES)

RECENT_LIMIT = 20


def _split(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v)]
    return [part.strip() for part in str(value).split(",") if part.strip()]


@dataclass
class CardQuery:
    """The active view: which category, what search text, which tags, what order."""
    category: str = ALL
    search: str = ""
    models: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    sort_by: SortField = SortField.DATE
    sort_order: SortOrder = SortOrder.DESC
    recent_limit: int = RECENT_LIMIT

    @classmethod
    def from_args(cls, args: Mapping[str, Any], base: "CardQuery" = None) -> "CardQuery":
        """Build a query from request-style parameters, starting from `base`."""
        base = base or cls()
        return cls(
            category=str(args.get("category") or base.category),
            search=str(args["q"]) if args.get("q") is not None else base.search,
            models=_split(args["models"]) if "models" in args else list(base.models),
            platforms=_split(args["platforms"]) if "platforms" in args else list(base.platforms),
            sort_by=SortField.from_str(args["sort"]) if args.get("sort") else base.sort_by,
            sort_order=SortOrder.from_str(args["order"]) if args.get("order") else base.sort_order,
            recent_limit=base.recent_limit,
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "search": self.search,
            "selectedTags": {"models": list(self.models), "platforms": list(self.platforms)},
            "sortBy": self.sort_by.value,
            "sortOrder": self.sort_order.value,
        }


def recent_cards(cards: List[Card], limit: int = RECENT_LIMIT) -> List[Card]:
    """Most recently updated first, at most `limit`."""
    return sorted(cards, key=lambda c: c.updated_at, reverse=True)[:limit]


def matches_search(card: Card, needle: str) -> bool:
    """Case-insensitive substring match on any text field or tag name."""
    needle = needle.casefold()
    fields = [card.title, card.description, card.author]
    fields.extend(card.tags.models)
    fields.extend(card.tags.website_names())
    return any(needle in (value or "").casefold() for value in fields)


def fold_title(title: str) -> str:
    """Casefolded title with accents stripped ('Éclair' -> 'eclair')."""
    decomposed = unicodedata.normalize("NFKD", (title or "").casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _title_key(card: Card) -> Tuple[str, str]:
    # Primary key ignores accents; ties fall back to the casefolded title
    folded = fold_title(card.title)
    try:
        primary = locale.strxfrm(folded)
    except (ValueError, OSError):
        primary = folded
    return primary, (card.title or "").casefold()


def sort_cards(cards: List[Card], sort_by: SortField, order: SortOrder) -> List[Card]:
    """Stable sort; equal keys keep their input order in both directions."""
    reverse = order is SortOrder.DESC
    if sort_by is SortField.TITLE:
        return sorted(cards, key=_title_key, reverse=reverse)
    return sorted(cards, key=lambda c: c.created_at, reverse=reverse)


def filter_cards(cards: List[Card], query: CardQuery) -> List[Card]:
    """Compute the visible card list for a view."""
    result = list(cards)

    if query.category == RECENT:
        result = recent_cards(result, query.recent_limit)
    elif query.category == FAVORITES:
        result = [c for c in result if c.favorite]
    elif query.category != ALL:
        result = [c for c in result if c.category == query.category]

    if query.search:
        result = [c for c in result if matches_search(c, query.search)]

    if query.models:
        result = [c for c in result if c.tags.has_models(query.models)]
    if query.platforms:
        result = [c for c in result if c.tags.has_platforms(query.platforms)]

    if query.category != RECENT:
        result = sort_cards(result, query.sort_by, query.sort_order)

    return result
