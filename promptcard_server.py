#!/usr/bin/env python3
"""
PromptCard Server
-----------------
Local JSON API over a single PromptStore. The desktop UI (a web view)
talks to this; nothing else should.

Usage:
    python promptcard_server.py
    python promptcard_server.py --port 3001 --data-dir ~/prompts

API (all JSON):
    GET    /health
    GET    /api/state                    → folders, tags, settings, view, counts
    GET    /api/cards?category=&q=&models=&platforms=&sort=&order=
    POST   /api/cards                    → { card }
    GET    /api/cards/<id>
    PUT    /api/cards/<id>
    DELETE /api/cards/<id>
    POST   /api/cards/<id>/favorite
    PUT    /api/cards/<id>/cover         body: { path }
    POST   /api/cards/<id>/images        multipart "files" or { name, data }
    DELETE /api/cards/<id>/images        body: { path }
    POST   /api/cards/<id>/download      body: { path }
    POST   /api/cards/<id>/screenshot    raw PNG or { data } (base64)
    GET    /api/folders                  → nested tree
    POST   /api/folders                  body: { name, parent?, icon? }
    PUT    /api/folders/<id>             body: { name }
    DELETE /api/folders/<id>
    GET    /api/tags/<kind>              kind: models | platforms
    POST   /api/tags/<kind>              body: { name, url? }
    DELETE /api/tags/<kind>/<name>
    POST   /api/platforms/<name>/open
    PUT    /api/settings                 body: { screenshotPath?, defaultCategory? }
    POST   /api/settings/screenshot-dir  → native folder picker
    GET    /api/view / PUT /api/view
    GET    /api/stats
    GET    /api/export / POST /api/import
    POST   /api/export/file / POST /api/import/file   → native dialogs
    POST   /api/open-data-dir
    POST   /api/clear

Mutating routes require X-API-Key when PROMPTCARD_API_SECRET is set.
"""

import argparse
import base64
import binascii
import hmac
import locale
import logging
import sys
from functools import wraps
from pathlib import Path

from flask import Blueprint, Flask, current_app, jsonify, request

from promptcard.actions import CardActions
from promptcard.config import Config
from promptcard.desktop import Bounds, SystemBridge
from promptcard.gateway import DocumentGateway
from promptcard.query import CardQuery
from promptcard.schema import Reason, Outcome
from promptcard.store import PromptStore

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

REASON_STATUS = {
    Reason.NOT_FOUND: 404,
    Reason.NOT_PERMITTED: 403,
    Reason.CANCELLED: 409,
    Reason.IMAGE_TOO_LARGE: 413,
    Reason.WRITE_FAILED: 500,
}


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: when a secret is configured, require a matching X-API-Key."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if secret:
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────

def _store() -> PromptStore:
    return current_app.extensions["promptcard.store"]


def _actions() -> CardActions:
    return current_app.extensions["promptcard.actions"]


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _persisted() -> bool:
    return _store().last_error is None


def _reply(outcome: Outcome, status: int = 200):
    """Turn an Outcome into a JSON response."""
    if outcome:
        payload = outcome.to_dict()
        payload["persisted"] = _persisted()
        return jsonify(payload), status
    return jsonify({
        "ok": False,
        "error": outcome.detail or outcome.reason.value,
        "reason": outcome.reason.value,
    }), REASON_STATUS.get(outcome.reason, 400)


def _not_found(what: str):
    return jsonify({"ok": False, "error": f"{what} not found", "reason": Reason.NOT_FOUND.value}), 404


# ── State ────────────────────────────────────────────────────────────────────

@api.route("/health")
def health():
    store = _store()
    return jsonify({
        "status": "ok",
        "document": str(store.gateway.path),
        "persisted": _persisted(),
        "last_error": str(store.last_error) if store.last_error else None,
    })


@api.route("/api/state")
def api_state():
    store = _store()
    return jsonify({
        "folders": store.folder_tree(),
        "customTags": store.custom_tags.to_dict(),
        "modelTags": [t.to_dict() for t in store.all_model_tags()],
        "platformTags": [t.to_dict() for t in store.all_platform_tags()],
        "settings": store.settings.to_dict(),
        "view": store.view.to_dict(),
        "counts": store.category_counts(),
        "persisted": _persisted(),
    })


# ── Cards ────────────────────────────────────────────────────────────────────

@api.route("/api/cards", methods=["GET"])
def api_cards():
    store = _store()
    query = CardQuery.from_args(request.args, base=store.view)
    cards = store.get_filtered_cards(query)
    return jsonify({
        "cards": [c.to_dict() for c in cards],
        "count": len(cards),
        "query": query.to_dict(),
    })


@api.route("/api/cards", methods=["POST"])
@require_api_key
def api_create_card():
    """Create a card. Title is required; category falls back to the default."""
    data = _body()
    if not str(data.get("title") or "").strip():
        return _reply(Outcome.reject(Reason.EMPTY_TITLE, "title is required"))
    card = _store().add_card(data)
    return jsonify({"card": card.to_dict(), "id": card.id, "persisted": _persisted()}), 201


@api.route("/api/cards/<card_id>", methods=["GET"])
def api_get_card(card_id):
    card = _store().get_card(card_id)
    if card is None:
        return _not_found("Card")
    return jsonify({"card": card.to_dict()})


@api.route("/api/cards/<card_id>", methods=["PUT"])
@require_api_key
def api_update_card(card_id):
    card = _store().update_card(card_id, _body())
    if card is None:
        return _not_found("Card")
    return jsonify({"card": card.to_dict(), "persisted": _persisted()})


@api.route("/api/cards/<card_id>", methods=["DELETE"])
@require_api_key
def api_delete_card(card_id):
    if not _store().delete_card(card_id):
        return _not_found("Card")
    return jsonify({"deleted": card_id, "persisted": _persisted()})


@api.route("/api/cards/<card_id>/favorite", methods=["POST"])
@require_api_key
def api_toggle_favorite(card_id):
    store = _store()
    if store.get_card(card_id) is None:
        return _not_found("Card")
    return jsonify({"favorite": store.toggle_favorite(card_id), "persisted": _persisted()})


@api.route("/api/cards/<card_id>/cover", methods=["PUT"])
@require_api_key
def api_set_cover(card_id):
    return _reply(_store().set_cover_image(card_id, _body().get("path", "")))


@api.route("/api/cards/<card_id>/images", methods=["POST"])
@require_api_key
def api_add_images(card_id):
    """Attach uploaded images (multipart) or one base64 image (JSON)."""
    store = _store()
    actions = _actions()
    if store.get_card(card_id) is None:
        return _not_found("Card")

    uploads = [(f.filename or "", f.read()) for f in request.files.getlist("files")]
    if not uploads:
        data = _body()
        raw = str(data.get("data") or "")
        payload = raw.split(",", 1)[1] if raw.startswith("data:") and "," in raw else raw
        try:
            uploads = [(str(data.get("name") or ""), base64.b64decode(payload, validate=True))]
        except (binascii.Error, ValueError):
            return _reply(Outcome.reject(Reason.UNSUPPORTED_IMAGE, "data must be base64"))

    attached, skipped = [], []
    for name, blob in uploads:
        outcome = actions.image_from_bytes(blob, name)
        if not outcome:
            skipped.append({"name": name, "reason": outcome.reason.value, "detail": outcome.detail})
            continue
        store.add_image(card_id, outcome.value)
        attached.append(name)

    if not attached:
        first = skipped[0] if skipped else {"reason": Reason.UNSUPPORTED_IMAGE.value, "detail": "no image"}
        return _reply(Outcome.reject(Reason(first["reason"]), first["detail"]))
    card = store.get_card(card_id)
    return jsonify({
        "card": card.to_dict(),
        "attached": attached,
        "skipped": skipped,
        "persisted": _persisted(),
    }), 201


@api.route("/api/cards/<card_id>/images", methods=["DELETE"])
@require_api_key
def api_remove_image(card_id):
    return _reply(_store().remove_image(card_id, _body().get("path", "")))


@api.route("/api/cards/<card_id>/download", methods=["POST"])
@require_api_key
def api_download_image(card_id):
    return _reply(_actions().download_image(card_id, _body().get("path", "")))


@api.route("/api/cards/<card_id>/screenshot", methods=["POST"])
@require_api_key
def api_screenshot(card_id):
    """Save a card screenshot. Accepts PNG bytes, base64 JSON, or bounds to capture."""
    actions = _actions()
    if request.mimetype == "image/png":
        return _reply(actions.save_screenshot(card_id, request.get_data()), 201)
    data = _body()
    if "bounds" in data:
        try:
            bounds = Bounds.from_dict(data["bounds"])
        except (TypeError, ValueError, AttributeError):
            return _reply(Outcome.reject(Reason.INVALID_DOCUMENT, "bounds must be numbers"))
        return _reply(actions.capture_card_screenshot(card_id, bounds), 201)
    try:
        png = base64.b64decode(str(data.get("data") or ""), validate=True)
    except (binascii.Error, ValueError):
        return _reply(Outcome.reject(Reason.UNSUPPORTED_IMAGE, "data must be base64"))
    return _reply(actions.save_screenshot(card_id, png), 201)


# ── Folders ──────────────────────────────────────────────────────────────────

@api.route("/api/folders", methods=["GET"])
def api_folders():
    return jsonify({"folders": _store().folder_tree()})


@api.route("/api/folders", methods=["POST"])
@require_api_key
def api_create_folder():
    return _reply(_store().add_folder(_body()), 201)


@api.route("/api/folders/<folder_id>", methods=["PUT"])
@require_api_key
def api_rename_folder(folder_id):
    return _reply(_store().rename_folder(folder_id, _body().get("name", "")))


@api.route("/api/folders/<folder_id>", methods=["DELETE"])
@require_api_key
def api_delete_folder(folder_id):
    return _reply(_store().delete_folder(folder_id))


# ── Tags ─────────────────────────────────────────────────────────────────────

@api.route("/api/tags/<kind>", methods=["GET"])
def api_tags(kind):
    store = _store()
    if kind == "models":
        tags = store.all_model_tags()
    elif kind == "platforms":
        tags = store.all_platform_tags()
    else:
        return _reply(Outcome.reject(Reason.INVALID_KIND, f"Unknown tag kind: {kind}"))
    return jsonify({"tags": [t.to_dict() for t in tags]})


@api.route("/api/tags/<kind>", methods=["POST"])
@require_api_key
def api_add_tag(kind):
    data = _body()
    outcome = _store().add_custom_tag(kind, data.get("name", ""), data.get("url"))
    if outcome:
        return jsonify({"added": outcome.value, "persisted": _persisted()}), 201 if outcome.value else 200
    return _reply(outcome)


@api.route("/api/tags/<kind>/<path:name>", methods=["DELETE"])
@require_api_key
def api_remove_tag(kind, name):
    return _reply(_store().remove_custom_tag(kind, name))


@api.route("/api/platforms/<path:name>/open", methods=["POST"])
def api_open_platform(name):
    return _reply(_actions().open_platform(name))


# ── Settings & view ──────────────────────────────────────────────────────────

@api.route("/api/settings", methods=["GET"])
def api_settings():
    return jsonify({"settings": _store().settings.to_dict()})


@api.route("/api/settings", methods=["PUT"])
@require_api_key
def api_update_settings():
    store = _store()
    data = _body()
    if "defaultCategory" in data:
        outcome = store.set_default_category(str(data["defaultCategory"]))
        if not outcome:
            return _reply(outcome)
    if "screenshotPath" in data:
        store.set_screenshot_path(str(data["screenshotPath"] or ""))
    return jsonify({"settings": store.settings.to_dict(), "persisted": _persisted()})


@api.route("/api/settings/screenshot-dir", methods=["POST"])
@require_api_key
def api_choose_screenshot_dir():
    return _reply(_actions().choose_screenshot_dir())


@api.route("/api/view", methods=["GET"])
def api_view():
    return jsonify({"view": _store().view.to_dict()})


@api.route("/api/view", methods=["PUT"])
def api_set_view():
    """Update the active view; fields left out keep their value."""
    store = _store()
    data = _body()
    if "category" in data and not store.select_category(str(data["category"])):
        return _not_found("Category")
    if "search" in data:
        store.set_search(str(data["search"] or ""))
    if "toggleModel" in data:
        store.toggle_model_tag(str(data["toggleModel"]))
    if "togglePlatform" in data:
        store.toggle_platform_tag(str(data["togglePlatform"]))
    if "sortBy" in data or "sortOrder" in data:
        store.set_sort(data.get("sortBy", store.view.sort_by), data.get("sortOrder", store.view.sort_order))
    cards = store.get_filtered_cards()
    return jsonify({
        "view": store.view.to_dict(),
        "cards": [c.to_dict() for c in cards],
        "count": len(cards),
    })


@api.route("/api/stats")
def api_stats():
    store = _store()
    return jsonify({"counts": store.category_counts(), "storage": store.storage_stats()})


# ── Backup ───────────────────────────────────────────────────────────────────

@api.route("/api/export", methods=["GET"])
def api_export():
    return jsonify(_store().export_snapshot())


@api.route("/api/import", methods=["POST"])
@require_api_key
def api_import():
    """Replace all data with the posted document."""
    data = request.get_json(force=True, silent=True)
    return _reply(_store().import_snapshot(data))


@api.route("/api/export/file", methods=["POST"])
@require_api_key
def api_export_file():
    return _reply(_actions().export_to_file())


@api.route("/api/import/file", methods=["POST"])
@require_api_key
def api_import_file():
    return _reply(_actions().import_from_file())


@api.route("/api/open-data-dir", methods=["POST"])
def api_open_data_dir():
    return _reply(_actions().open_data_directory())


@api.route("/api/clear", methods=["POST"])
@require_api_key
def api_clear():
    """Delete all cards, custom folders and custom tags."""
    if not _body().get("confirm"):
        return jsonify({"ok": False, "error": "confirm must be true", "reason": Reason.CANCELLED.value}), 400
    persisted = _store().clear_all()
    return jsonify({"ok": True, "persisted": persisted})


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(config: Config = None, bridge=None, store: PromptStore = None) -> Flask:
    """Build the Flask app around one store instance."""
    config = config or Config.load()
    app = Flask(__name__)
    app.config["API_SECRET"] = config.api_secret
    app.json.ensure_ascii = False

    if store is None:
        store = PromptStore(DocumentGateway(config.data_dir), recent_limit=config.recent_limit)
    app.extensions["promptcard.store"] = store
    app.extensions["promptcard.actions"] = CardActions(
        store, bridge or SystemBridge(), max_image_bytes=config.max_image_bytes,
    )
    app.register_blueprint(api)
    logger.info(f"Serving {store.gateway.path} ({len(store.cards)} cards)")
    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="PromptCard Server")
    parser.add_argument("--config", help="Path to config.yaml (overrides PROMPTCARD_CONFIG)")
    parser.add_argument("--host", help="Bind address (default from config, 127.0.0.1)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--data-dir", help="Directory holding cards.json")
    args = parser.parse_args(argv)

    config = Config.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.data_dir:
        config.data_dir = str(Path(args.data_dir).expanduser())

    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s [promptcard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as e:
        logger.warning(f"Locale collation unavailable, falling back to accent-folded titles: {e}")

    app = create_app(config)
    store = app.extensions["promptcard.store"]

    print(f"""
╔═══════════════════════════════════════╗
║  PromptCard Server                    ║
╠═══════════════════════════════════════╣
║  URL:   http://{config.host}:{config.port:<18}║
║  Data:  {str(store.gateway.path):<30}║
║  Cards: {len(store.cards):<30}║
╚═══════════════════════════════════════╝
""")

    # One request at a time: the store assumes a single writer
    app.run(host=config.host, port=config.port, debug=False, threaded=False)


if __name__ == "__main__":
    main()
