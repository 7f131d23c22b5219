"""
Built-in folders and tags shipped with the app.
"""
from typing import List, Dict

from .schema import Folder, UNCATEGORIZED

# System folders: never renamed, deleted or moved
SYSTEM_FOLDERS: List[Dict] = [
    {"id": UNCATEGORIZED, "name": "Uncategorized", "icon": "fas fa-inbox"},
    {"id": "ai-chat", "name": "AI Chat", "icon": "fas fa-comments"},
    {"id": "ai-art", "name": "AI Art", "icon": "fas fa-palette"},
    {"id": "ai-video", "name": "AI Video", "icon": "fas fa-video"},
    {"id": "ai-coding", "name": "AI Coding", "icon": "fas fa-code"},
    {"id": "ai-agent", "name": "Agents", "icon": "fas fa-robot"},
]

SYSTEM_FOLDER_IDS = [f["id"] for f in SYSTEM_FOLDERS]

PRESET_MODELS: List[str] = ["Gemini 2.5 Pro", "GPT-5", "豆包", "K2"]

PRESET_PLATFORMS: List[Dict[str, str]] = [
    {"name": "Gemini", "url": "https://gemini.google.com/app"},
    {"name": "Google AI Studio", "url": "https://aistudio.google.com/prompts/new_chat?model=gemini-2.5-pro"},
    {"name": "ChatGPT", "url": "https://chatgpt.com/"},
    {"name": "lmarena", "url": "https://lmarena.ai/"},
    {"name": "Civitai", "url": "https://civitai.com/"},
]

PRESET_PLATFORM_NAMES = [p["name"] for p in PRESET_PLATFORMS]


def system_folder(folder_id: str) -> Folder:
    """Fresh record for one system folder."""
    index = SYSTEM_FOLDER_IDS.index(folder_id)
    entry = SYSTEM_FOLDERS[index]
    return Folder(
        id=entry["id"],
        name=entry["name"],
        icon=entry["icon"],
        parent=None,
        children=[],
        order=index,
        is_custom=False,
    )


def default_folders() -> List[Folder]:
    return [system_folder(fid) for fid in SYSTEM_FOLDER_IDS]


def preset_platform_url(name: str) -> str:
    for platform in PRESET_PLATFORMS:
        if platform["name"] == name:
            return platform["url"]
    return ""
