"""KanDo: Obsidian cards synced with Vibe Kanban tasks."""
