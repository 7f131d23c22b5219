"""
User workflows that need both the store and the desktop.

Each workflow returns an Outcome; cancelled dialogs come back as
Reason.CANCELLED rather than as errors.
"""
import base64
import binascii
import json
import logging
import time
from io import BytesIO
from pathlib import Path
from typing import Optional, List

from PIL import Image, UnidentifiedImageError

from .desktop import DesktopBridge, Bounds
from .schema import CardImage, Outcome, Reason, utc_now

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# Pillow format name -> MIME type
IMAGE_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
}

IMAGE_FILTERS = [("Images", "*.jpg *.jpeg *.png *.gif *.webp *.bmp")]
JSON_FILTERS = [("JSON files", "*.json")]


def backup_filename(day=None) -> str:
    day = day or utc_now()
    return f"promptcard-backup-{day.strftime('%Y-%m-%d')}.json"


def screenshot_filename(card_id: str) -> str:
    return f"card_{card_id}_{int(time.time() * 1000)}.png"


def sniff_image(data: bytes) -> Optional[str]:
    """Pillow format name if `data` is an image we accept, else None."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return fmt if fmt in IMAGE_FORMATS else None


def to_data_url(data: bytes, fmt: str) -> str:
    return f"data:{IMAGE_FORMATS[fmt]};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> Optional[bytes]:
    if not url.startswith("data:") or "," not in url:
        return None
    header, payload = url.split(",", 1)
    if not header.endswith(";base64"):
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


class CardActions:
    """Glue between PromptStore and a DesktopBridge."""

    def __init__(self, store, bridge: DesktopBridge, max_image_bytes: int = MAX_IMAGE_BYTES,
                 download_dir: str = None):
        self.store = store
        self.bridge = bridge
        self.max_image_bytes = max_image_bytes
        self.download_dir = Path(download_dir).expanduser() if download_dir else Path.home() / "Downloads"

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Backup / restore
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def export_to_file(self) -> Outcome:
        path = self.bridge.show_save_dialog({
            "title": "Export backup",
            "default_name": backup_filename(),
            "default_extension": ".json",
            "filters": JSON_FILTERS,
        })
        if not path:
            return Outcome.reject(Reason.CANCELLED)
        payload = json.dumps(self.store.export_snapshot(), indent=2, ensure_ascii=False)
        result = self.bridge.write_file(path, payload.encode("utf-8"))
        if not result.ok:
            return Outcome.reject(Reason.WRITE_FAILED, result.error)
        logger.info(f"Exported backup to {result.path}")
        return Outcome.success(result.path)

    def import_from_file(self) -> Outcome:
        """Replace all data with a backup file the user picks."""
        files = self.bridge.select_files(JSON_FILTERS)
        if not files:
            return Outcome.reject(Reason.CANCELLED)
        try:
            with open(files[0], "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Import failed for {files[0]}: {e}")
            return Outcome.reject(Reason.INVALID_DOCUMENT, str(e))
        return self.store.import_snapshot(raw)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Screenshots
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def choose_screenshot_dir(self) -> Outcome:
        folder = self.bridge.select_directory()
        if not folder:
            return Outcome.reject(Reason.CANCELLED)
        self.store.set_screenshot_path(folder)
        return Outcome.success(folder)

    def save_screenshot(self, card_id: str, png: bytes) -> Outcome:
        """Write PNG bytes for a card into the screenshot directory."""
        folder = self.store.settings.screenshot_path
        if not folder:
            return Outcome.reject(Reason.SCREENSHOT_PATH_UNSET, "Choose a screenshot folder first")
        if self.store.get_card(card_id) is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Card {card_id} not found")
        result = self.bridge.write_file(str(Path(folder) / screenshot_filename(card_id)), png)
        if not result.ok:
            return Outcome.reject(Reason.WRITE_FAILED, result.error)
        return Outcome.success(result.path)

    def capture_card_screenshot(self, card_id: str, bounds: Bounds) -> Outcome:
        if not self.store.settings.screenshot_path:
            return Outcome.reject(Reason.SCREENSHOT_PATH_UNSET, "Choose a screenshot folder first")
        png = self.bridge.capture_region(bounds)
        if png is None:
            return Outcome.reject(Reason.WRITE_FAILED, "Screen capture failed")
        return self.save_screenshot(card_id, png)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Images
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def image_from_bytes(self, data: bytes, name: str = "") -> Outcome:
        """Validate image bytes and wrap them as a data-URL CardImage."""
        if len(data) > self.max_image_bytes:
            return Outcome.reject(Reason.IMAGE_TOO_LARGE, f"{name or 'image'} is over {self.max_image_bytes} bytes")
        fmt = sniff_image(data)
        if fmt is None:
            return Outcome.reject(Reason.UNSUPPORTED_IMAGE, f"{name or 'file'} is not a supported image")
        return Outcome.success(CardImage(path=to_data_url(data, fmt), name=name, size=len(data)))

    def attach_images(self, card_id: str, paths: List[str] = None) -> Outcome:
        """
        Attach image files to a card.

        Files that fail validation are skipped and reported; the first image
        on a card without images becomes its cover.
        """
        if self.store.get_card(card_id) is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Card {card_id} not found")
        if paths is None:
            paths = self.bridge.select_files(IMAGE_FILTERS)
            if not paths:
                return Outcome.reject(Reason.CANCELLED)

        attached, skipped = [], []
        for path in paths:
            try:
                data = Path(path).read_bytes()
            except OSError as e:
                skipped.append({"name": str(path), "reason": Reason.NOT_FOUND.value, "detail": str(e)})
                continue
            outcome = self.image_from_bytes(data, Path(path).name)
            if not outcome:
                skipped.append({"name": str(path), "reason": outcome.reason.value, "detail": outcome.detail})
                continue
            self.store.add_image(card_id, outcome.value)
            attached.append(outcome.value.name)

        if skipped:
            logger.warning(f"Skipped {len(skipped)} image(s) for card {card_id}")
        if not attached and skipped:
            first = skipped[0]
            return Outcome.reject(Reason(first["reason"]), first["detail"])
        return Outcome.success({"attached": attached, "skipped": skipped})

    def download_image(self, card_id: str, image_path: str) -> Outcome:
        """Copy a card image into the download directory and reveal it."""
        card = self.store.get_card(card_id)
        if card is None:
            return Outcome.reject(Reason.NOT_FOUND, f"Card {card_id} not found")
        image = next((i for i in card.images if i.path == image_path), None)
        if image is None:
            return Outcome.reject(Reason.NOT_FOUND, "Image not on card")

        if image.path.startswith("data:"):
            data = decode_data_url(image.path)
            if data is None:
                return Outcome.reject(Reason.UNSUPPORTED_IMAGE, "Image data is not valid base64")
            name = image.name or f"image_{int(time.time() * 1000)}.png"
        else:
            try:
                data = Path(image.path).read_bytes()
            except OSError as e:
                return Outcome.reject(Reason.NOT_FOUND, str(e))
            name = image.name or Path(image.path).name

        result = self.bridge.write_file(str(self.download_dir / name), data)
        if not result.ok:
            return Outcome.reject(Reason.WRITE_FAILED, result.error)
        self.bridge.show_item_in_folder(result.path)
        return Outcome.success(result.path)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Shell
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def open_platform(self, name: str) -> Outcome:
        url = self.store.platform_url(name)
        if not url:
            return Outcome.reject(Reason.NOT_FOUND, f"No link for {name}")
        if not self.bridge.open_external(url):
            return Outcome.reject(Reason.NOT_PERMITTED, f"Could not open {url}")
        return Outcome.success(url)

    def open_data_directory(self) -> Outcome:
        folder = str(self.store.gateway.data_dir)
        if not self.bridge.show_item_in_folder(folder):
            return Outcome.reject(Reason.NOT_FOUND, folder)
        return Outcome.success(folder)
