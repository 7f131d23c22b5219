"""
Desktop collaborators: dialogs, screen capture, file writes, the shell.

The store never talks to the desktop directly. CardActions goes through a
DesktopBridge, so tests (and the HTTP server) can swap in their own.
"""
import logging
import os
import platform
import subprocess
import webbrowser
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, List, Tuple, Dict, Any

logger = logging.getLogger(__name__)

# (label, pattern) pairs, e.g. [("JSON files", "*.json")]
FileFilters = List[Tuple[str, str]]


@dataclass
class Bounds:
    """Screen rectangle in pixels."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bounds":
        return cls(
            x=int(data.get("x", 0)),
            y=int(data.get("y", 0)),
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
        )

    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass
class WriteResult:
    ok: bool
    path: str = ""
    error: str = ""


class DesktopBridge(ABC):
    """Everything the core needs from the host desktop."""

    @abstractmethod
    def select_directory(self) -> Optional[str]:
        """Ask for a directory. None when cancelled."""

    @abstractmethod
    def select_files(self, filters: FileFilters = None) -> List[str]:
        """Ask for one or more files. Empty list when cancelled."""

    @abstractmethod
    def show_save_dialog(self, options: Dict[str, Any]) -> Optional[str]:
        """Ask where to save. Options: title, default_name, filters."""

    @abstractmethod
    def capture_region(self, bounds: Bounds) -> Optional[bytes]:
        """PNG bytes of a screen region, or None if capture is unavailable."""

    def write_file(self, path: str, data: bytes) -> WriteResult:
        try:
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Write failed for {path}: {e}")
            return WriteResult(ok=False, path=str(path), error=str(e))
        return WriteResult(ok=True, path=str(path))

    @abstractmethod
    def show_item_in_folder(self, path: str) -> bool:
        """Reveal a file or directory in the system file manager."""

    @abstractmethod
    def open_external(self, url: str) -> bool:
        """Open a URL in the default browser."""


@contextmanager
def _hidden_root():
    """A withdrawn Tk root so dialogs have a parent but no window shows."""
    import tkinter as tk

    root = tk.Tk()
    root.withdraw()
    root.attributes("-topmost", True)
    try:
        yield root
    finally:
        root.destroy()


class SystemBridge(DesktopBridge):
    """Real desktop: tkinter dialogs, Pillow capture, OS file manager, browser."""

    def select_directory(self) -> Optional[str]:
        from tkinter import filedialog

        with _hidden_root() as root:
            folder = filedialog.askdirectory(parent=root, title="Select folder")
        return folder or None

    def select_files(self, filters: FileFilters = None) -> List[str]:
        from tkinter import filedialog

        with _hidden_root() as root:
            files = filedialog.askopenfilenames(
                parent=root,
                title="Select files",
                filetypes=filters or [("All files", "*")],
            )
        return list(files or [])

    def show_save_dialog(self, options: Dict[str, Any]) -> Optional[str]:
        from tkinter import filedialog

        filters = options.get("filters") or [("All files", "*")]
        with _hidden_root() as root:
            path = filedialog.asksaveasfilename(
                parent=root,
                title=options.get("title", "Save"),
                initialfile=options.get("default_name", ""),
                defaultextension=options.get("default_extension", ""),
                filetypes=filters,
            )
        return path or None

    def capture_region(self, bounds: Bounds) -> Optional[bytes]:
        from PIL import ImageGrab

        try:
            image = ImageGrab.grab(bbox=bounds.box())
        except OSError as e:
            logger.warning(f"Screen capture unavailable: {e}")
            return None
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    def show_item_in_folder(self, path: str) -> bool:
        target = os.path.abspath(path)
        system = platform.system()
        try:
            if system == "Windows":
                subprocess.run(["explorer", "/select,", target], check=False)
            elif system == "Darwin":
                subprocess.run(["open", "-R", target], check=False)
            else:
                folder = target if os.path.isdir(target) else os.path.dirname(target)
                subprocess.run(["xdg-open", folder], check=False)
        except OSError as e:
            logger.error(f"Could not reveal {target}: {e}")
            return False
        return True

    def open_external(self, url: str) -> bool:
        if not url.startswith(("http://", "https://")):
            logger.warning(f"Refusing to open non-web URL: {url}")
            return False
        return webbrowser.open(url)
