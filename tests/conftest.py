"""Shared test fixtures for PromptCard tests."""

import sys
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from promptcard.desktop import DesktopBridge, WriteResult  # noqa: E402
from promptcard.gateway import DocumentGateway  # noqa: E402
from promptcard.store import PromptStore  # noqa: E402


class FakeBridge(DesktopBridge):
    """Scripted desktop: answers dialogs from attributes, records side effects."""

    def __init__(self):
        self.directory = None
        self.files = []
        self.save_path = None
        self.capture = None
        self.fail_writes = False
        self.written = {}
        self.revealed = []
        self.opened = []
        self.save_options = None

    def select_directory(self):
        return self.directory

    def select_files(self, filters=None):
        return list(self.files)

    def show_save_dialog(self, options):
        self.save_options = options
        return self.save_path

    def capture_region(self, bounds):
        return self.capture

    def write_file(self, path, data):
        if self.fail_writes:
            return WriteResult(ok=False, path=path, error="disk full")
        self.written[path] = data
        return super().write_file(path, data)

    def show_item_in_folder(self, path):
        self.revealed.append(path)
        return True

    def open_external(self, url):
        self.opened.append(url)
        return True


def make_image(fmt="PNG", size=(4, 4)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def gateway(data_dir):
    return DocumentGateway(str(data_dir))


@pytest.fixture
def store(gateway):
    return PromptStore(gateway)


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def png_bytes():
    return make_image("PNG")
