"""
Tests for the JSON document gateway: initialize, load, recover, migrate, save.
"""
import json

import pytest

from promptcard.gateway import (
    DocumentGateway, MalformedDocumentError, PersistenceError,
    repair_folders, snapshot_from_document, validate_document_shape,
)
from promptcard.presets import SYSTEM_FOLDER_IDS
from promptcard.schema import Card, Folder, Snapshot, UNCATEGORIZED


def write_doc(gateway, data):
    gateway.data_dir.mkdir(parents=True, exist_ok=True)
    gateway.path.write_text(json.dumps(data), encoding="utf-8")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Load
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_missing_file_is_initialized(gateway):
    result = gateway.load()
    assert result.created
    assert result.error is None
    assert gateway.exists()

    on_disk = json.loads(gateway.path.read_text(encoding="utf-8"))
    assert on_disk["cards"] == []
    assert [f["id"] for f in on_disk["folders"]] == SYSTEM_FOLDER_IDS
    assert on_disk["version"] == "1.0.0"
    assert on_disk["settings"]["dataDirectory"] == str(gateway.data_dir)


def test_malformed_json_falls_back_and_keeps_file(gateway):
    gateway.data_dir.mkdir(parents=True)
    gateway.path.write_text("{not json", encoding="utf-8")

    result = gateway.load()
    assert isinstance(result.error, MalformedDocumentError)
    assert result.snapshot.cards == []
    assert gateway.path.read_text(encoding="utf-8") == "{not json"
    assert list(gateway.data_dir.glob("cards.corrupt-*.json"))


def test_wrong_shape_is_malformed(gateway):
    write_doc(gateway, {"cards": "nope"})
    result = gateway.load()
    assert isinstance(result.error, MalformedDocumentError)


def test_invalid_utf8_is_malformed(gateway):
    gateway.data_dir.mkdir(parents=True)
    gateway.path.write_bytes(b'{"cards": [{"title": "\xff\xfe"}]}')

    result = gateway.load()
    assert isinstance(result.error, MalformedDocumentError)
    assert result.snapshot.cards == []
    assert list(gateway.data_dir.glob("cards.corrupt-*.json"))


def test_non_list_fields_load_as_empty(gateway):
    write_doc(gateway, {
        "cards": [{"id": "1", "title": "Odd", "images": 5, "tags": "x"}],
        "folders": [{"id": "f", "name": "F", "children": 7}],
    })
    result = gateway.load()
    assert result.error is None
    card = result.snapshot.cards[0]
    assert card.images == []
    assert card.tags.models == [] and card.tags.websites == []
    assert next(f for f in result.snapshot.folders if f.id == "f").children == []


def test_unreadable_file_is_not_overwritten(gateway, monkeypatch):
    write_doc(gateway, {"cards": [{"id": "1", "title": "Precious"}]})
    original = gateway.path.read_bytes()
    real_open = open

    def deny_reads(path, mode="r", *args, **kwargs):
        if "r" in mode:
            raise PermissionError(13, "Permission denied", str(path))
        return real_open(path, mode, *args, **kwargs)

    monkeypatch.setattr("promptcard.gateway.open", deny_reads, raising=False)
    result = gateway.load()
    assert isinstance(result.error, PersistenceError)
    assert gateway.protect_existing

    with pytest.raises(PersistenceError):
        gateway.save(result.snapshot)
    assert gateway.path.read_bytes() == original

    monkeypatch.undo()
    assert gateway.load().error is None
    assert not gateway.protect_existing


def test_load_migrates_legacy_document(gateway):
    write_doc(gateway, {
        "cards": [
            {"id": "10", "title": "Old", "category": "gone", "models": ["K2"]},
            {"id": "10", "title": "Duplicate id", "createdAt": "2025-01-01T00:00:00.000Z"},
        ],
        "folders": [
            {"id": "f1", "name": "Mine", "parent": "ai-art", "children": [], "order": 1},
        ],
    })
    result = gateway.load()
    assert result.error is None
    snap = result.snapshot

    assert {f.id for f in snap.folders} >= set(SYSTEM_FOLDER_IDS) | {"f1"}
    art = next(f for f in snap.folders if f.id == "ai-art")
    assert art.children == ["f1"]

    first, second = snap.cards
    assert first.category == UNCATEGORIZED
    assert first.tags.models == ["K2"]
    assert second.id != first.id


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Repair
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_repair_breaks_cycles_and_protects_system_folders():
    folders = [
        Folder(id="a", name="A", parent="b"),
        Folder(id="b", name="B", parent="a"),
        Folder(id="ai-chat", name="Chat", parent="a", is_custom=True),
    ]
    repaired = {f.id: f for f in repair_folders(folders)}

    chat = repaired["ai-chat"]
    assert chat.parent is None and chat.is_custom is False
    assert repaired["a"].parent is None
    assert repaired["b"].parent == "a"
    assert repaired["a"].children == ["b"]


def test_repair_drops_missing_parent():
    repaired = {f.id: f for f in repair_folders([Folder(id="x", name="X", parent="ghost")])}
    assert repaired["x"].parent is None


def test_validate_document_shape():
    assert validate_document_shape({})[0]
    assert not validate_document_shape([])[0]
    assert not validate_document_shape({"folders": [{"name": "no id"}]})[0]
    assert not validate_document_shape({"settings": []})[0]


def test_snapshot_resets_unknown_default_category():
    snap = snapshot_from_document({"settings": {"defaultCategory": "ghost"}})
    assert snap.settings.default_category == UNCATEGORIZED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Save
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_save_overwrites_whole_document(gateway):
    snap = Snapshot(cards=[Card(id="1", title="One")], folders=[])
    stamp = gateway.save(snap)

    data = json.loads(gateway.path.read_text(encoding="utf-8"))
    assert data["lastModified"] == stamp
    assert [c["id"] for c in data["cards"]] == ["1"]
    assert not gateway.path.with_name("cards.json.tmp").exists()


def test_save_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    gateway = DocumentGateway(str(blocker / "data"))
    with pytest.raises(PersistenceError):
        gateway.save(Snapshot())


def test_unicode_is_written_verbatim(gateway):
    gateway.save(Snapshot(cards=[Card(id="1", title="豆包 prompt")]))
    assert "豆包 prompt" in gateway.path.read_text(encoding="utf-8")


def test_failed_replace_removes_temp_file(gateway, monkeypatch):
    def broken_replace(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr("promptcard.gateway.os.replace", broken_replace)
    with pytest.raises(PersistenceError):
        gateway.save(Snapshot(cards=[Card(id="1", title="One")]))
    assert not gateway.path.with_name("cards.json.tmp").exists()
    assert not gateway.path.exists()
