"""
Tests for the local JSON API (Flask test client).
"""
import base64

import pytest

from promptcard.config import Config
from promptcard.gateway import PersistenceError
from promptcard_server import create_app

from conftest import FakeBridge


@pytest.fixture
def app(tmp_path):
    config = Config(data_dir=str(tmp_path / "data"))
    return create_app(config, bridge=FakeBridge())


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["promptcard.store"]


def create_card(client, **data):
    data.setdefault("title", "Card")
    resp = client.post("/api/cards", json=data)
    assert resp.status_code == 201
    return resp.get_json()["card"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# State & cards
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_state_lists_system_folders_and_presets(client):
    data = client.get("/api/state").get_json()
    assert [f["id"] for f in data["folders"]][0] == "uncategorized"
    assert any(t["name"] == "GPT-5" for t in data["modelTags"])
    assert data["counts"]["all"] == 0


def test_card_crud(client):
    card = create_card(client, title="Hello", category="ai-chat", models=["K2"])
    assert card["tags"]["models"] == ["K2"]

    listing = client.get("/api/cards").get_json()
    assert listing["count"] == 1

    resp = client.put(f"/api/cards/{card['id']}", json={"title": "Hi"})
    assert resp.get_json()["card"]["title"] == "Hi"
    assert resp.get_json()["persisted"] is True

    assert client.post(f"/api/cards/{card['id']}/favorite").get_json()["favorite"] is True
    assert client.delete(f"/api/cards/{card['id']}").status_code == 200
    assert client.get(f"/api/cards/{card['id']}").status_code == 404


def test_create_card_requires_title(client):
    resp = client.post("/api/cards", json={"description": "no title"})
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "empty_title"


def test_missing_card_is_404(client):
    assert client.put("/api/cards/nope", json={"title": "x"}).status_code == 404
    assert client.delete("/api/cards/nope").status_code == 404
    assert client.post("/api/cards/nope/favorite").status_code == 404


def test_card_filters_from_query_string(client):
    create_card(client, title="banana", models=["K2"])
    create_card(client, title="Apple", models=["K2", "GPT-5"])
    create_card(client, title="cherry", category="ai-art")

    data = client.get("/api/cards?models=K2&sort=title&order=asc").get_json()
    assert [c["title"] for c in data["cards"]] == ["Apple", "banana"]

    data = client.get("/api/cards?category=ai-art").get_json()
    assert [c["title"] for c in data["cards"]] == ["cherry"]

    data = client.get("/api/cards?q=BAN").get_json()
    assert [c["title"] for c in data["cards"]] == ["banana"]


def test_view_updates(client):
    create_card(client, title="b")
    create_card(client, title="a")
    data = client.put("/api/view", json={"sortBy": "title", "sortOrder": "asc"}).get_json()
    assert [c["title"] for c in data["cards"]] == ["a", "b"]
    assert data["view"]["sortBy"] == "title"
    assert client.put("/api/view", json={"category": "ghost"}).status_code == 404


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Images & screenshots
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_upload_image_json(client, png_bytes):
    card = create_card(client)
    payload = {"name": "shot.png", "data": base64.b64encode(png_bytes).decode()}
    resp = client.post(f"/api/cards/{card['id']}/images", json=payload)
    assert resp.status_code == 201
    images = resp.get_json()["card"]["images"]
    assert images[0]["isCover"] is True
    assert images[0]["path"].startswith("data:image/png;base64,")

    resp = client.delete(f"/api/cards/{card['id']}/images", json={"path": images[0]["path"]})
    assert resp.status_code == 200
    assert resp.get_json()["value"]["images"] == []


def test_upload_non_image_rejected(client):
    card = create_card(client)
    payload = {"name": "x.txt", "data": base64.b64encode(b"plain text").decode()}
    resp = client.post(f"/api/cards/{card['id']}/images", json=payload)
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "unsupported_image"


def test_screenshot_upload(client, tmp_path, png_bytes):
    card = create_card(client)
    url = f"/api/cards/{card['id']}/screenshot"

    resp = client.post(url, data=png_bytes, content_type="image/png")
    assert resp.get_json()["reason"] == "screenshot_path_unset"

    client.put("/api/settings", json={"screenshotPath": str(tmp_path / "shots")})
    resp = client.post(url, data=png_bytes, content_type="image/png")
    assert resp.status_code == 201
    assert (tmp_path / "shots").is_dir()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Folders & tags
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_folder_lifecycle(client):
    resp = client.post("/api/folders", json={"name": "Work", "parent": "ai-chat"})
    assert resp.status_code == 201
    folder = resp.get_json()["value"]
    card = create_card(client, category=folder["id"])

    resp = client.put(f"/api/folders/{folder['id']}", json={"name": "Job"})
    assert resp.get_json()["value"]["name"] == "Job"

    resp = client.delete(f"/api/folders/{folder['id']}")
    assert resp.get_json()["value"]["reassignedCards"] == [card["id"]]
    assert client.get(f"/api/cards/{card['id']}").get_json()["card"]["category"] == "uncategorized"


def test_system_folder_is_forbidden(client):
    assert client.put("/api/folders/ai-chat", json={"name": "x"}).status_code == 403
    assert client.delete("/api/folders/ai-chat").status_code == 403
    assert client.delete("/api/folders/ghost").status_code == 404


def test_custom_tags(client):
    assert client.post("/api/tags/models", json={"name": "Mine"}).status_code == 201
    resp = client.post("/api/tags/models", json={"name": "Mine"})
    assert resp.status_code == 200
    assert resp.get_json()["added"] is False
    assert client.post("/api/tags/colors", json={"name": "red"}).status_code == 400
    assert client.delete("/api/tags/models/Mine").status_code == 200
    assert client.get("/api/tags/colors").status_code == 400


def test_open_platform_uses_bridge(app, client):
    resp = client.post("/api/platforms/ChatGPT/open")
    assert resp.status_code == 200
    assert app.extensions["promptcard.actions"].bridge.opened == ["https://chatgpt.com/"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Settings, backup, clear
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_settings_reject_unknown_default_category(client):
    resp = client.put("/api/settings", json={"defaultCategory": "ghost"})
    assert resp.status_code == 404
    resp = client.put("/api/settings", json={"defaultCategory": "ai-art"})
    assert resp.get_json()["settings"]["defaultCategory"] == "ai-art"


def test_export_and_import(client):
    create_card(client, title="Keep me")
    exported = client.get("/api/export").get_json()
    assert "exportedAt" in exported

    client.post("/api/clear", json={"confirm": True})
    assert client.get("/api/cards").get_json()["count"] == 0

    resp = client.post("/api/import", json=exported)
    assert resp.status_code == 200
    assert resp.get_json()["value"]["cards"] == 1
    assert client.get("/api/cards").get_json()["cards"][0]["title"] == "Keep me"


def test_import_rejects_non_object(client):
    resp = client.post("/api/import", json=[1, 2, 3])
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "invalid_document"


def test_import_tolerates_odd_card_fields(client):
    payload = {"cards": [{"id": "\u00b2", "title": "Odd", "images": 5, "tags": "x", "favorite": "false"}]}
    resp = client.post("/api/import", json=payload)
    assert resp.status_code == 200
    card = client.get("/api/cards").get_json()["cards"][0]
    assert card["images"] == [] and card["favorite"] is False


def test_clear_requires_confirmation(client):
    create_card(client)
    assert client.post("/api/clear", json={}).status_code == 400
    assert client.get("/api/cards").get_json()["count"] == 1


def test_stats(client):
    create_card(client)
    data = client.get("/api/stats").get_json()
    assert data["counts"]["all"] == 1
    assert data["storage"]["cards"] == 1
    assert data["storage"]["bytes"] > 0


def test_failed_write_is_reported(client, store, monkeypatch):
    def broken_save(snapshot):
        raise PersistenceError("read-only filesystem")

    monkeypatch.setattr(store.gateway, "save", broken_save)
    resp = client.post("/api/cards", json={"title": "Unsaved"})
    assert resp.status_code == 201
    assert resp.get_json()["persisted"] is False
    assert client.get("/health").get_json()["persisted"] is False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_api_key_required_when_configured(tmp_path):
    config = Config(data_dir=str(tmp_path / "data"), api_secret="s3cret")
    client = create_app(config, bridge=FakeBridge()).test_client()

    assert client.post("/api/cards", json={"title": "x"}).status_code == 401
    assert client.post("/api/cards", json={"title": "x"}, headers={"X-API-Key": "wrong"}).status_code == 403
    ok = client.post("/api/cards", json={"title": "x"}, headers={"X-API-Key": "s3cret"})
    assert ok.status_code == 201
    assert client.get("/api/cards").status_code == 200
