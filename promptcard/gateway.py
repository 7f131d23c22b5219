"""
Single-document JSON persistence.

The whole store lives in one file, `cards.json`, inside the data directory.
Every save rewrites the file in full. Loading repairs what it can (legacy
card layout, missing system folders, stale children lists) and falls back
to defaults when the document cannot be parsed.
"""
import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

from .presets import SYSTEM_FOLDER_IDS, default_folders, system_folder
from .schema import (
    Card, Folder, CustomTags, Settings, Snapshot,
    UNCATEGORIZED, DOCUMENT_VERSION, utc_now, format_timestamp,
)

logger = logging.getLogger(__name__)

DATA_FILENAME = "cards.json"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "promptcard"


class PersistenceError(Exception):
    """Raised when the document cannot be read or written."""
    pass


class MalformedDocumentError(PersistenceError):
    """Raised when the document exists but is not a valid store document."""
    pass


@dataclass
class LoadResult:
    snapshot: Snapshot
    created: bool = False                       # file did not exist before
    error: Optional[PersistenceError] = None    # recovered failure, if any


def validate_document_shape(obj: Any) -> Tuple[bool, Optional[str]]:
    """Check the top-level layout of a store document or backup."""
    if not isinstance(obj, dict):
        return False, "Root must be an object."
    for key in ("cards", "folders"):
        if key in obj and not isinstance(obj[key], list):
            return False, f"'{key}' must be a list."
    for key in ("customTags", "settings"):
        if key in obj and obj[key] is not None and not isinstance(obj[key], dict):
            return False, f"'{key}' must be an object."
    for i, card in enumerate(obj.get("cards") or []):
        if not isinstance(card, dict):
            return False, f"Card #{i + 1} must be an object."
    for i, folder in enumerate(obj.get("folders") or []):
        if not isinstance(folder, dict) or not folder.get("id"):
            return False, f"Folder #{i + 1} must be an object with an id."
    return True, None


def default_snapshot() -> Snapshot:
    return Snapshot(folders=default_folders())


def repair_folders(folders: List[Folder]) -> List[Folder]:
    """
    Restore the folder invariants.

    - system folders exist, are roots and are not custom
    - ids are unique (first occurrence wins)
    - parents that don't exist or would close a cycle are cleared
    - `children` lists mirror the parent pointers, keeping stored order
    """
    arena: Dict[str, Folder] = {}
    for folder in folders:
        if folder.id and folder.id not in arena:
            arena[folder.id] = folder

    for fid in SYSTEM_FOLDER_IDS:
        if fid not in arena:
            arena[fid] = system_folder(fid)
        else:
            arena[fid].is_custom = False
            arena[fid].parent = None

    for folder in arena.values():
        if folder.parent is not None and folder.parent not in arena:
            folder.parent = None

    # Break cycles by detaching the first folder found on one
    for folder in arena.values():
        seen = {folder.id}
        current = folder.parent
        while current is not None:
            if current in seen:
                logger.warning(f"Folder cycle through {folder.id}; moving it to the root")
                folder.parent = None
                break
            seen.add(current)
            current = arena[current].parent

    for folder in arena.values():
        actual = [f.id for f in arena.values() if f.parent == folder.id]
        kept = [c for c in folder.children if c in actual]
        folder.children = _dedupe(kept + [c for c in actual if c not in kept])

    return list(arena.values())


def _dedupe(ids: List[str]) -> List[str]:
    out = []
    for i in ids:
        if i not in out:
            out.append(i)
    return out


def snapshot_from_document(data: Dict[str, Any]) -> Snapshot:
    """Build a consistent snapshot from a parsed document (load or import)."""
    folders = repair_folders([Folder.from_dict(f) for f in data.get("folders") or []])
    folder_ids = {f.id for f in folders}

    cards: List[Card] = []
    seen_ids = set()
    for raw in data.get("cards") or []:
        card = Card.from_dict(raw)
        if not card.id or card.id in seen_ids:
            # Keep the record but give it an id of its own
            base = int(card.created_at.timestamp() * 1000)
            while str(base) in seen_ids:
                base += 1
            card.id = str(base)
        seen_ids.add(card.id)
        if card.category not in folder_ids:
            card.category = UNCATEGORIZED
        cards.append(card)

    settings = Settings.from_dict(data.get("settings"))
    if settings.default_category not in folder_ids:
        settings.default_category = UNCATEGORIZED

    return Snapshot(
        cards=cards,
        folders=folders,
        custom_tags=CustomTags.from_dict(data.get("customTags")),
        settings=settings,
        version=str(data.get("version") or DOCUMENT_VERSION),
        last_modified=data.get("lastModified"),
    )


class DocumentGateway:
    """Reads and writes the store document."""

    def __init__(self, data_dir: str = None):
        self.data_dir = Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR
        self.path = self.data_dir / DATA_FILENAME
        # Set when an existing document could not be read; save() then refuses
        # to replace it until a successful load or an explicit import.
        self.protect_existing = False

    def exists(self) -> bool:
        return self.path.exists()

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    def load(self) -> LoadResult:
        """Read the document, initializing or recovering with defaults."""
        if not self.path.exists():
            snapshot = default_snapshot()
            snapshot.settings.data_directory = str(self.data_dir)
            try:
                self.save(snapshot)
            except PersistenceError as e:
                return LoadResult(snapshot=snapshot, created=True, error=e)
            logger.info(f"Initialized new document at {self.path}")
            return LoadResult(snapshot=snapshot, created=True)

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._recover(MalformedDocumentError(f"{self.path}: {e}"))
        except OSError as e:
            self.protect_existing = True
            return self._recover(PersistenceError(f"Cannot read {self.path}: {e}"))

        ok, problem = validate_document_shape(data)
        if not ok:
            return self._recover(MalformedDocumentError(f"{self.path}: {problem}"))

        snapshot = snapshot_from_document(data)
        snapshot.settings.data_directory = str(self.data_dir)
        self.protect_existing = False
        logger.info(
            f"Loaded {len(snapshot.cards)} cards and {len(snapshot.folders)} folders from {self.path}"
        )
        return LoadResult(snapshot=snapshot)

    def _recover(self, error: PersistenceError) -> LoadResult:
        """Fall back to defaults; keep a copy of the unreadable file."""
        logger.error(f"Load failed, starting from defaults: {error}")
        if isinstance(error, MalformedDocumentError):
            backup = self.path.with_name(
                f"cards.corrupt-{utc_now().strftime('%Y%m%dT%H%M%S')}.json"
            )
            try:
                shutil.copy2(self.path, backup)
                logger.warning(f"Unreadable document preserved as {backup}")
            except OSError as e:
                logger.error(f"Could not preserve unreadable document: {e}")
                self.protect_existing = True
        snapshot = default_snapshot()
        snapshot.settings.data_directory = str(self.data_dir)
        return LoadResult(snapshot=snapshot, error=error)

    def save(self, snapshot: Snapshot) -> str:
        """Overwrite the document. Returns the lastModified stamp written."""
        stamp = format_timestamp(utc_now())
        snapshot.last_modified = stamp
        payload = json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)
        if self.protect_existing and self.path.exists():
            raise PersistenceError(f"Not overwriting {self.path}: it could not be read at startup")
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as cleanup:
                logger.warning(f"Could not remove {tmp}: {cleanup}")
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e
        return stamp
