"""
Prompt card schema.

Cards belong to exactly one folder; folders form a forest whose roots
include the six system folders. Optional fields get their defaults when a
record is built (from_dict / constructor), so nothing downstream has to
guess at missing keys.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable

UNCATEGORIZED = "uncategorized"
DOCUMENT_VERSION = "1.0.0"


def utc_now() -> datetime:
    """Current time, UTC, millisecond precision (matches the stored format)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; missing or unreadable values become now."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return utc_now()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utc_now()


def format_timestamp(value: datetime) -> str:
    """Serialize as `2025-01-31T12:00:00.000Z`."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ("" if value is None else str(value))


def as_bool(value: Any) -> bool:
    """JSON-ish truthiness: real booleans, 0/1, and "true"/"false" strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return False


def _unique(items: Iterable[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


class CardType(Enum):
    """What a card primarily holds."""
    TEXT = "text"
    IMAGE = "image"

    @classmethod
    def from_str(cls, value: Any) -> "CardType":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.TEXT


class TagKind(Enum):
    """The two independent tag vocabularies."""
    MODELS = "models"
    PLATFORMS = "platforms"

    @classmethod
    def from_str(cls, value: Any) -> Optional["TagKind"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class SortField(Enum):
    DATE = "date"
    TITLE = "title"

    @classmethod
    def from_str(cls, value: Any) -> "SortField":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.DATE


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def from_str(cls, value: Any) -> "SortOrder":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.DESC


class Reason(Enum):
    """Why an operation was rejected."""
    NOT_FOUND = "not_found"
    NOT_PERMITTED = "not_permitted"
    EMPTY_NAME = "empty_name"
    EMPTY_TITLE = "empty_title"
    PARENT_NOT_FOUND = "parent_not_found"
    INVALID_KIND = "invalid_kind"
    INVALID_DOCUMENT = "invalid_document"
    CANCELLED = "cancelled"
    SCREENSHOT_PATH_UNSET = "screenshot_path_unset"
    UNSUPPORTED_IMAGE = "unsupported_image"
    IMAGE_TOO_LARGE = "image_too_large"
    WRITE_FAILED = "write_failed"


@dataclass
class Outcome:
    """Result of an operation that can be refused. Truthy when it succeeded."""
    ok: bool
    value: Any = None
    reason: Optional[Reason] = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(ok=True, value=value)

    @classmethod
    def reject(cls, reason: Reason, detail: str = "") -> "Outcome":
        return cls(ok=False, reason=reason, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {
            "ok": self.ok,
            "value": value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Cards
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class Website:
    """A platform tag on a card: display name plus optional link."""
    name: str
    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "url": self.url}

    @classmethod
    def from_dict(cls, data: Any) -> "Website":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, dict):
            return cls(name=_str(data))
        return cls(name=_str(data.get("name")), url=_str(data.get("url")))


@dataclass
class CardImage:
    """An image attached to a card. `path` is a file path or a data URL."""
    path: str
    is_cover: bool = False
    name: str = ""
    size: int = 0
    uploaded_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "isCover": self.is_cover,
            "name": self.name,
            "size": self.size,
            "uploadedAt": format_timestamp(self.uploaded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardImage":
        try:
            size = int(data.get("size") or 0)
        except (TypeError, ValueError, OverflowError):
            size = 0
        return cls(
            path=_str(data.get("path")),
            is_cover=as_bool(data.get("isCover", False)),
            name=_str(data.get("name") or data.get("originalName")),
            size=size,
            uploaded_at=parse_timestamp(data.get("uploadedAt")),
        )


@dataclass
class CardTags:
    """Model names and platform links attached to a card."""
    models: List[str] = field(default_factory=list)
    websites: List[Website] = field(default_factory=list)

    def website_names(self) -> List[str]:
        return [w.name for w in self.websites]

    def has_models(self, selection: Iterable[str]) -> bool:
        return all(tag in self.models for tag in selection)

    def has_platforms(self, selection: Iterable[str]) -> bool:
        names = self.website_names()
        return all(tag in names for tag in selection)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "models": list(self.models),
            "websites": [w.to_dict() for w in self.websites],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CardTags":
        if not isinstance(data, dict):
            return cls()
        models = data.get("models") or []
        websites = data.get("websites") or []
        return cls(
            models=_unique(_str(m) for m in models if m) if isinstance(models, list) else [],
            websites=[Website.from_dict(w) for w in websites] if isinstance(websites, list) else [],
        )


@dataclass
class Card:
    """A single prompt record."""

    # Identity
    id: str
    type: CardType = CardType.TEXT

    # Content
    title: str = ""
    description: str = ""
    author: str = ""

    # Placement (folder id, always resolvable)
    category: str = UNCATEGORIZED

    tags: CardTags = field(default_factory=CardTags)
    images: List[CardImage] = field(default_factory=list)
    favorite: bool = False

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def cover_image(self) -> Optional[CardImage]:
        for image in self.images:
            if image.is_cover:
                return image
        return None

    def normalize_cover(self) -> None:
        """Keep exactly one cover while images exist."""
        covers = [i for i, image in enumerate(self.images) if image.is_cover]
        keep = covers[0] if covers else 0
        for i, image in enumerate(self.images):
            image.is_cover = i == keep

    def touch(self) -> None:
        self.updated_at = max(utc_now(), self.created_at)

    def apply_update(self, partial: Dict[str, Any]) -> None:
        """Shallow field replacement. Identity and creation time never change."""
        if "type" in partial:
            self.type = CardType.from_str(partial["type"])
        for key in ("title", "description", "author"):
            if key in partial:
                setattr(self, key, _str(partial[key]))
        if "category" in partial:
            self.category = _str(partial["category"]) or UNCATEGORIZED
        if "favorite" in partial:
            self.favorite = as_bool(partial["favorite"])
        if "tags" in partial and isinstance(partial["tags"], dict):
            self.tags = CardTags.from_dict(partial["tags"])
        # Flat fields as written by older clients
        if "models" in partial:
            self.tags.models = CardTags.from_dict({"models": partial["models"]}).models
        if "websites" in partial:
            self.tags.websites = CardTags.from_dict({"websites": partial["websites"]}).websites
        if "images" in partial and isinstance(partial["images"], list):
            self.images = [CardImage.from_dict(i) for i in partial["images"] if isinstance(i, dict)]
            self.normalize_cover()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "author": self.author,
            "category": self.category,
            "tags": self.tags.to_dict(),
            "images": [i.to_dict() for i in self.images],
            "favorite": self.favorite,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        """Deserialize from dict. Accepts the legacy flat models/websites layout."""
        tags_raw = data.get("tags")
        if isinstance(tags_raw, dict):
            tags = CardTags.from_dict(tags_raw)
        else:
            tags = CardTags.from_dict({
                "models": data.get("models") or [],
                "websites": data.get("websites") or [],
            })

        images_raw = data.get("images")
        if not isinstance(images_raw, list):
            images_raw = []
        images = [CardImage.from_dict(i) for i in images_raw if isinstance(i, dict)]

        created_at = parse_timestamp(data.get("createdAt"))
        updated_at = parse_timestamp(data.get("updatedAt") or data.get("createdAt"))

        card = cls(
            id=_str(data.get("id")),
            type=CardType.from_str(data.get("type", "text")),
            title=_str(data.get("title")),
            description=_str(data.get("description")),
            author=_str(data.get("author")),
            category=_str(data.get("category")) or UNCATEGORIZED,
            tags=tags,
            images=images,
            favorite=as_bool(data.get("favorite", False)),
            created_at=created_at,
            updated_at=max(updated_at, created_at),
        )
        card.normalize_cover()
        return card


@dataclass
class CardDraft:
    """
    A card still being composed in the UI.

    Unlike a Card it may have no category yet. Drafts never enter the store;
    PromptStore.commit_draft turns them into cards.
    """
    title: str = ""
    description: str = ""
    author: str = ""
    type: CardType = CardType.TEXT
    category: Optional[str] = None
    models: List[str] = field(default_factory=list)
    websites: List[Website] = field(default_factory=list)
    images: List[CardImage] = field(default_factory=list)

    def to_data(self, category: str) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title.strip(),
            "description": self.description.strip(),
            "author": self.author.strip(),
            "category": category,
            "tags": {
                "models": list(self.models),
                "websites": [w.to_dict() for w in self.websites],
            },
            "images": [i.to_dict() for i in self.images],
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Folders, tags, settings
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class Folder:
    """A node in the folder forest."""
    id: str
    name: str
    icon: str = "fas fa-folder"
    parent: Optional[str] = None
    children: List[str] = field(default_factory=list)
    order: int = 0
    is_custom: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "parent": self.parent,
            "children": list(self.children),
            "order": self.order,
            "isCustom": self.is_custom,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Folder":
        children = data.get("children") or []
        try:
            order = int(data.get("order") or 0)
        except (TypeError, ValueError, OverflowError):
            order = 0
        return cls(
            id=_str(data.get("id")),
            name=_str(data.get("name")),
            icon=_str(data.get("icon")) or "fas fa-folder",
            parent=_str(data.get("parent")) or None,
            children=[_str(c) for c in children] if isinstance(children, list) else [],
            order=order,
            is_custom=as_bool(data.get("isCustom", True)),
        )


@dataclass
class CustomTags:
    """User-entered tag names that are not presets."""
    models: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    platform_urls: Dict[str, str] = field(default_factory=dict)

    def for_kind(self, kind: TagKind) -> List[str]:
        return self.models if kind is TagKind.MODELS else self.platforms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "models": list(self.models),
            "platforms": list(self.platforms),
            "platformUrls": dict(self.platform_urls),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CustomTags":
        if not isinstance(data, dict):
            return cls()
        models = data.get("models") or []
        platforms = data.get("platforms") or []
        urls = data.get("platformUrls") or {}
        return cls(
            models=_unique(_str(m) for m in models if m) if isinstance(models, list) else [],
            platforms=_unique(_str(p) for p in platforms if p) if isinstance(platforms, list) else [],
            platform_urls={_str(k): _str(v) for k, v in urls.items()} if isinstance(urls, dict) else {},
        )


@dataclass
class TagSummary:
    """One entry of the tag cloud."""
    name: str
    count: int = 0
    is_preset: bool = False
    is_custom: bool = False
    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "isPreset": self.is_preset,
            "isCustom": self.is_custom,
            "url": self.url,
        }


@dataclass
class Settings:
    """Process-wide preferences persisted with the document."""
    data_directory: str = ""
    screenshot_path: str = ""
    default_category: str = UNCATEGORIZED
    extra: Dict[str, Any] = field(default_factory=dict)  # keys we don't interpret

    _KNOWN = ("dataDirectory", "screenshotPath", "defaultCategory")

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "dataDirectory": self.data_directory,
            "screenshotPath": self.screenshot_path,
            "defaultCategory": self.default_category,
        })
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Settings":
        if not isinstance(data, dict):
            return cls()
        return cls(
            data_directory=_str(data.get("dataDirectory")),
            screenshot_path=_str(data.get("screenshotPath")),
            default_category=_str(data.get("defaultCategory")) or UNCATEGORIZED,
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )


@dataclass
class Snapshot:
    """The whole persisted state."""
    cards: List[Card] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    custom_tags: CustomTags = field(default_factory=CustomTags)
    settings: Settings = field(default_factory=Settings)
    version: str = DOCUMENT_VERSION
    last_modified: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cards": [c.to_dict() for c in self.cards],
            "folders": [f.to_dict() for f in self.folders],
            "customTags": self.custom_tags.to_dict(),
            "settings": self.settings.to_dict(),
            "version": self.version,
            "lastModified": self.last_modified or format_timestamp(utc_now()),
        }
