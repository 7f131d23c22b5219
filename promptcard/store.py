"""
Prompt card store.

Holds cards, folders, custom tags and settings in memory and writes the
whole document through the gateway after every mutation. A failed write
never rolls back memory: the in-memory state stays authoritative, the error
is kept in `last_error` and announced to `persist_failed` subscribers.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Callable

from .gateway import (
    DocumentGateway, PersistenceError, snapshot_from_document, validate_document_shape,
)
from .presets import PRESET_MODELS, PRESET_PLATFORM_NAMES, preset_platform_url
from .query import CardQuery, filter_cards, recent_cards, VIRTUAL_CATEGORIES, ALL, RECENT, FAVORITES
from .schema import (
    Card, CardDraft, CardImage, Folder, CustomTags, Settings, Snapshot, TagKind,
    TagSummary, Outcome, Reason, SortField, SortOrder, UNCATEGORIZED,
    utc_now, format_timestamp, as_bool,
)

logger = logging.getLogger(__name__)


@dataclass
class FolderDeletion:
    """What a cascading folder delete touched."""
    folder_id: str
    removed_folders: List[str] = field(default_factory=list)
    reassigned_cards: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folderId": self.folder_id,
            "removedFolders": list(self.removed_folders),
            "reassignedCards": list(self.reassigned_cards),
        }


class PromptStore:
    """In-memory state with write-through JSON persistence."""

    def __init__(self, gateway: DocumentGateway, recent_limit: int = 20):
        """Initialize store and load (or create) the document."""
        self.gateway = gateway
        self.cards: List[Card] = []
        self.folders: Dict[str, Folder] = {}
        self.custom_tags = CustomTags()
        self.settings = Settings()
        self.view = CardQuery(recent_limit=recent_limit)
        self.last_error: Optional[PersistenceError] = None
        self.subscribers: Dict[str, list] = {}  # event -> callbacks
        self._last_id = 0
        self.load()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Events and persistence
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def subscribe(self, event: str, callback: Callable) -> None:
        """Register a callback for `changed` or `persist_failed`."""
        self.subscribers.setdefault(event, []).append(callback)

    def _emit(self, event: str, **kwargs) -> None:
        for callback in self.subscribers.get(event, []):
            try:
                callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in {event} callback: {e}")

    def load(self) -> bool:
        """Replace memory with the document on disk. False if recovery was needed."""
        result = self.gateway.load()
        self._apply(result.snapshot)
        self.last_error = result.error
        if result.error is not None:
            self._emit("persist_failed", error=result.error)
            return False
        return True

    def persist(self) -> bool:
        """Write the full document. Returns False (and keeps memory) on failure."""
        try:
            self.gateway.save(self.snapshot())
        except PersistenceError as e:
            logger.error(f"Persist failed: {e}")
            self.last_error = e
            self._emit("persist_failed", error=e)
            return False
        self.last_error = None
        return True

    def _commit(self) -> bool:
        ok = self.persist()
        self._emit("changed")
        return ok

    def snapshot(self) -> Snapshot:
        return Snapshot(
            cards=list(self.cards),
            folders=list(self.folders.values()),
            custom_tags=self.custom_tags,
            settings=self.settings,
        )

    def _apply(self, snapshot: Snapshot) -> None:
        self.cards = list(snapshot.cards)
        self.folders = {f.id: f for f in snapshot.folders}
        self.custom_tags = snapshot.custom_tags
        data_dir = self.settings.data_directory or str(self.gateway.data_dir)
        self.settings = snapshot.settings
        self.settings.data_directory = data_dir
        if self.view.category not in VIRTUAL_CATEGORIES and self.view.category not in self.folders:
            self.view.category = ALL

    def _fresh_id(self, taken) -> str:
        """Millisecond timestamp id, strictly increasing and never reused."""
        candidate = max(int(time.time() * 1000), self._last_id + 1)
        while str(candidate) in taken:
            candidate += 1
        self._last_id = candidate
        return str(candidate)

    def _resolve_category(self, category: Optional[str]) -> str:
        if category and category in self.folders:
            return category
        if self.settings.default_category in self.folders:
            return self.settings.default_category
        return UNCATEGORIZED

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Cards
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def get_card(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None

    def add_card(self, data: Dict[str, Any]) -> Card:
        """Create a card at the front of the list."""
        card = Card.from_dict({k: v for k, v in data.items() if k not in ("id", "createdAt", "updatedAt")})
        card.id = self._fresh_id({c.id for c in self.cards})
        card.category = self._resolve_category(data.get("category"))
        card.favorite = as_bool(data.get("favorite", False))
        now = utc_now()
        card.created_at = now
        card.updated_at = now
        self.cards.insert(0, card)
        self._commit()
        return card

    def commit_draft(self, draft: CardDraft) -> Outcome:
        """Turn a draft into a stored card; a missing category gets the default."""
        if not draft.title.strip():
            return Outcome.reject(Reason.EMPTY_TITLE, "A card needs a title")
        card = self.add_card(draft.to_data(draft.category or self.settings.default_category))
        return Outcome.success(card)

    def update_card(self, card_id: str, partial: Dict[str, Any]) -> Optional[Card]:
        """Merge fields into a card. None if the card does not exist."""
        card = self.get_card(card_id)
        if card is None:
            return None
        card.apply_update(partial)
        if "category" in partial:
            card.category = self._resolve_category(card.category)
        card.touch()
        self._commit()
        return card

    def delete_card(self, card_id: str) -> bool:
        card = self.get_card(card_id)
        if card is None:
            return False
        self.cards.remove(card)
        self._commit()
        return True

    def toggle_favorite(self, card_id: str) -> bool:
        """Flip favorite; returns the new state, or False for an unknown card."""
        card = self.get_card(card_id)
        if card is None:
            return False
        card.favorite = not card.favorite
        card.touch()
        self._commit()
        return card.favorite

    def add_image(self, card_id: str, image: CardImage) -> Optional[Card]:
        card = self.get_card(card_id)
        if card is None:
            return None
        image.is_cover = not card.images
        card.images.append(image)
        card.touch()
        self._commit()
        return card

    def set_cover_image(self, card_id: str, image_path: str) -> Outcome:
        card = self.get_card(card_id)
        if card is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Card {card_id} not found")
        if not any(i.path == image_path for i in card.images):
            return Outcome.reject(Reason.NOT_FOUND, "Image not on card")
        for image in card.images:
            image.is_cover = image.path == image_path
        card.touch()
        self._commit()
        return Outcome.success(card)

    def remove_image(self, card_id: str, image_path: str) -> Outcome:
        """Drop an image; if it was the cover, the first remaining image takes over."""
        card = self.get_card(card_id)
        if card is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Card {card_id} not found")
        remaining = [i for i in card.images if i.path != image_path]
        if len(remaining) == len(card.images):
            return Outcome.reject(Reason.NOT_FOUND, "Image not on card")
        card.images = remaining
        card.normalize_cover()
        card.touch()
        self._commit()
        return Outcome.success(card)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Folders
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        return self.folders.get(folder_id)

    def list_folders(self) -> List[Folder]:
        return list(self.folders.values())

    def _siblings(self, parent_id: Optional[str]) -> List[Folder]:
        return [f for f in self.folders.values() if f.parent == parent_id]

    def folder_tree(self) -> List[Dict[str, Any]]:
        """Nested folder view, siblings ordered by `order`."""
        def build(folder: Folder) -> Dict[str, Any]:
            node = folder.to_dict()
            kids = sorted(
                (self.folders[c] for c in folder.children if c in self.folders),
                key=lambda f: f.order,
            )
            node["children"] = [build(k) for k in kids]
            return node
        return [build(f) for f in sorted(self._siblings(None), key=lambda f: f.order)]

    def _next_folder_order(self, parent_id: Optional[str]) -> int:
        siblings = self._siblings(parent_id)
        return max(f.order for f in siblings) + 1 if siblings else 1

    def _creates_cycle(self, folder_id: str, parent_id: Optional[str]) -> bool:
        seen = set()
        current = parent_id
        while current is not None:
            if current == folder_id or current in seen:
                return True
            seen.add(current)
            parent = self.folders.get(current)
            current = parent.parent if parent else None
        return False

    def add_folder(self, data: Dict[str, Any]) -> Outcome:
        """Create a custom folder, optionally under a parent."""
        name = str(data.get("name") or "").strip()
        if not name:
            return Outcome.reject(Reason.EMPTY_NAME, "Folder name is required")
        parent_id = data.get("parent") or None
        if parent_id is not None and parent_id not in self.folders:
            return Outcome.reject(Reason.PARENT_NOT_FOUND, f"Folder {parent_id} not found")

        folder_id = self._fresh_id(set(self.folders))
        if self._creates_cycle(folder_id, parent_id):
            return Outcome.reject(Reason.NOT_PERMITTED, "Folder would be its own ancestor")

        folder = Folder(
            id=folder_id,
            name=name,
            icon=data.get("icon") or "fas fa-folder",
            parent=parent_id,
            children=[],
            order=self._next_folder_order(parent_id),
            is_custom=True,
        )
        self.folders[folder.id] = folder
        if parent_id is not None:
            self.folders[parent_id].children.append(folder.id)
        self._commit()
        return Outcome.success(folder)

    def rename_folder(self, folder_id: str, name: str) -> Outcome:
        folder = self.folders.get(folder_id)
        if folder is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Folder {folder_id} not found")
        if not folder.is_custom:
            return Outcome.reject(Reason.NOT_PERMITTED, "System folders cannot be renamed")
        name = (name or "").strip()
        if not name:
            return Outcome.reject(Reason.EMPTY_NAME, "Folder name is required")
        folder.name = name
        self._commit()
        return Outcome.success(folder)

    def delete_folder(self, folder_id: str) -> Outcome:
        """
        Irreversibly delete a custom folder and everything below it.

        Cards filed anywhere in the subtree move to `uncategorized`; they are
        never deleted. There is no undo.
        """
        folder = self.folders.get(folder_id)
        if folder is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Folder {folder_id} not found")
        if not folder.is_custom:
            return Outcome.reject(Reason.NOT_PERMITTED, "System folders cannot be deleted")

        # Depth-first, children before parents
        doomed: List[str] = []
        stack = [(folder_id, False)]
        visited = set()
        while stack:
            fid, expanded = stack.pop()
            if expanded:
                doomed.append(fid)
                continue
            node = self.folders.get(fid)
            if node is None or not node.is_custom or fid in visited:
                continue
            visited.add(fid)
            stack.append((fid, True))
            for child in reversed(node.children):
                stack.append((child, False))

        result = FolderDeletion(folder_id=folder_id, removed_folders=doomed)
        doomed_set = set(doomed)
        for card in self.cards:
            if card.category in doomed_set:
                card.category = UNCATEGORIZED
                result.reassigned_cards.append(card.id)

        parent = self.folders.get(folder.parent) if folder.parent else None
        if parent is not None:
            parent.children = [c for c in parent.children if c != folder_id]

        for fid in doomed:
            del self.folders[fid]

        if self.settings.default_category in doomed_set:
            self.settings.default_category = UNCATEGORIZED
        if self.view.category in doomed_set:
            self.view.category = ALL

        logger.info(
            f"Deleted folder {folder_id}: {len(doomed)} folders removed, "
            f"{len(result.reassigned_cards)} cards moved to {UNCATEGORIZED}"
        )
        self._commit()
        return Outcome.success(result)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Tags
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def add_custom_tag(self, kind, name: str, url: str = None) -> Outcome:
        """Add a custom tag once. Value is True when the tag was new."""
        tag_kind = TagKind.from_str(kind)
        if tag_kind is None:
            return Outcome.reject(Reason.INVALID_KIND, f"Unknown tag kind: {kind}")
        name = (name or "").strip()
        if not name:
            return Outcome.reject(Reason.EMPTY_NAME, "Tag name is required")

        tags = self.custom_tags.for_kind(tag_kind)
        added = name not in tags
        if added:
            tags.append(name)
        if tag_kind is TagKind.PLATFORMS and url:
            self.custom_tags.platform_urls[name] = url
        elif not added:
            return Outcome.success(False)
        self._commit()
        return Outcome.success(added)

    def remove_custom_tag(self, kind, name: str) -> Outcome:
        """Remove a custom tag (and a platform's stored URL)."""
        tag_kind = TagKind.from_str(kind)
        if tag_kind is None:
            return Outcome.reject(Reason.INVALID_KIND, f"Unknown tag kind: {kind}")
        tags = self.custom_tags.for_kind(tag_kind)
        has_url = tag_kind is TagKind.PLATFORMS and name in self.custom_tags.platform_urls
        if name not in tags and not has_url:
            return Outcome.reject(Reason.NOT_FOUND, f"Tag {name} not found")
        tags[:] = [t for t in tags if t != name]
        if tag_kind is TagKind.PLATFORMS:
            self.custom_tags.platform_urls.pop(name, None)
        if tag_kind is TagKind.MODELS and name in self.view.models:
            self.view.models.remove(name)
        if tag_kind is TagKind.PLATFORMS and name in self.view.platforms:
            self.view.platforms.remove(name)
        self._commit()
        return Outcome.success(True)

    def platform_url(self, name: str) -> str:
        """Link for a platform: preset, then custom, then any card that carries one."""
        url = preset_platform_url(name) or self.custom_tags.platform_urls.get(name, "")
        if url:
            return url
        for card in self.cards:
            for website in card.tags.websites:
                if website.name == name and website.url:
                    return website.url
        return ""

    def all_model_tags(self) -> List[TagSummary]:
        in_use = [m for c in self.cards for m in c.tags.models]
        names = list(dict.fromkeys(PRESET_MODELS + self.custom_tags.models + in_use))
        return [
            TagSummary(
                name=name,
                count=sum(1 for c in self.cards if name in c.tags.models),
                is_preset=name in PRESET_MODELS,
                is_custom=name in self.custom_tags.models,
            )
            for name in names
        ]

    def all_platform_tags(self) -> List[TagSummary]:
        in_use = [n for c in self.cards for n in c.tags.website_names()]
        names = list(dict.fromkeys(PRESET_PLATFORM_NAMES + self.custom_tags.platforms + in_use))
        return [
            TagSummary(
                name=name,
                count=sum(1 for c in self.cards if name in c.tags.website_names()),
                is_preset=name in PRESET_PLATFORM_NAMES,
                is_custom=name in self.custom_tags.platforms,
                url=self.platform_url(name),
            )
            for name in names
        ]

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # View state and queries
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def select_category(self, category: str) -> bool:
        if category not in VIRTUAL_CATEGORIES and category not in self.folders:
            return False
        self.view.category = category
        return True

    def set_search(self, text: str) -> None:
        self.view.search = text or ""

    def toggle_model_tag(self, name: str) -> bool:
        """Select or deselect a model tag; returns whether it is now selected."""
        return _toggle(self.view.models, name)

    def toggle_platform_tag(self, name: str) -> bool:
        return _toggle(self.view.platforms, name)

    def set_sort(self, sort_by, sort_order) -> None:
        self.view.sort_by = SortField.from_str(getattr(sort_by, "value", sort_by))
        self.view.sort_order = SortOrder.from_str(getattr(sort_order, "value", sort_order))

    def get_filtered_cards(self, query: CardQuery = None) -> List[Card]:
        return filter_cards(self.cards, query or self.view)

    def category_counts(self) -> Dict[str, int]:
        counts = {
            ALL: len(self.cards),
            RECENT: len(recent_cards(self.cards, self.view.recent_limit)),
            FAVORITES: sum(1 for c in self.cards if c.favorite),
        }
        for folder_id in self.folders:
            counts[folder_id] = 0
        for card in self.cards:
            if card.category in counts and card.category not in VIRTUAL_CATEGORIES:
                counts[card.category] += 1
        return counts

    def storage_stats(self) -> Dict[str, Any]:
        return {
            "cards": len(self.cards),
            "images": sum(len(c.images) for c in self.cards),
            "folders": len(self.folders),
            "bytes": self.gateway.size(),
            "path": str(self.gateway.path),
        }

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Settings
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def set_screenshot_path(self, path: str) -> bool:
        self.settings.screenshot_path = path or ""
        return self._commit()

    def set_default_category(self, folder_id: str) -> Outcome:
        if folder_id not in self.folders:
            return Outcome.reject(Reason.NOT_FOUND, f"Folder {folder_id} not found")
        self.settings.default_category = folder_id
        self._commit()
        return Outcome.success(self.settings)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Backup / restore
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def export_snapshot(self) -> Dict[str, Any]:
        """The full document as a plain dict, for backups."""
        data = self.snapshot().to_dict()
        data["exportedAt"] = format_timestamp(utc_now())
        return data

    def import_snapshot(self, raw: Any) -> Outcome:
        """Replace everything with a backup document. No merging."""
        ok, problem = validate_document_shape(raw)
        if not ok:
            return Outcome.reject(Reason.INVALID_DOCUMENT, problem or "")
        snapshot = snapshot_from_document(raw)
        self._apply(snapshot)
        self._last_id = max([self._last_id] + [int(c.id) for c in self.cards if c.id.isdecimal()])
        # An explicit restore may replace a document that could not be read
        self.gateway.protect_existing = False
        logger.info(f"Imported {len(self.cards)} cards and {len(self.folders)} folders")
        persisted = self._commit()
        return Outcome.success({"cards": len(self.cards), "folders": len(self.folders), "persisted": persisted})

    def clear_all(self) -> bool:
        """Drop all cards, custom folders and custom tags. System folders stay."""
        self.cards = []
        self.folders = {fid: f for fid, f in self.folders.items() if not f.is_custom}
        for folder in self.folders.values():
            folder.children = []
        self.custom_tags = CustomTags()
        if self.settings.default_category not in self.folders:
            self.settings.default_category = UNCATEGORIZED
        self.view = CardQuery(recent_limit=self.view.recent_limit)
        return self._commit()


def _toggle(selection: List[str], name: str) -> bool:
    if name in selection:
        selection.remove(name)
        return False
    selection.append(name)
    return True
