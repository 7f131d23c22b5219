# PromptCard: prompt cards organized in folders and tagged by model/platform
#
# Components:
#   schema.py  - Data model (Card, Folder, CustomTags, Settings, Outcome)
#   presets.py - System folders and built-in model/platform tags
#   gateway.py - Single-file JSON persistence (cards.json)
#   query.py   - Filtering and sorting of the visible card list
#   store.py   - In-memory state with write-through persistence
#   desktop.py - Dialogs, screen capture, file manager and browser access
#   actions.py - Workflows combining store and desktop (backup, images)
#   config.py  - YAML configuration
