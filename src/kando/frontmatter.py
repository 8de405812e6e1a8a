"""Card frontmatter read/write on top of the vault's markdown files.

Cards are addressed by vault-relative POSIX paths. Only the KanDo fields
are interpreted; every other header key and the body are preserved
verbatim on write. No locking happens here -- concurrent writers go
through ``FrontmatterUpdateQueue``.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Mapping, Optional

import yaml

from .models import FRONTMATTER_FIELDS, CardFrontmatter, TaskStatus

logger = logging.getLogger(__name__)

# Leading "---" block, closing fence on its own line; handles \r\n
_FRONTMATTER_RE = re.compile(r"^---\r?\n(?:(.*?)\r?\n)?---[ \t]*(?:\r?\n|$)", re.DOTALL)


def normalize_path(path: str | PurePosixPath) -> str:
    """Vault-relative POSIX form used as the identity of a card."""
    text = str(path).replace("\\", "/")
    text = re.sub(r"/+", "/", text).strip("/")
    return text


def split_frontmatter(content: str) -> tuple[Optional[dict], str]:
    """Split markdown text into (header mapping, body).

    The header is None when the document has no frontmatter block.
    Raises yaml.YAMLError for a block that is not valid YAML.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return None, content
    header = yaml.safe_load(match.group(1) or "") or {}
    if not isinstance(header, dict):
        raise yaml.YAMLError("frontmatter is not a mapping")
    return header, content[match.end():]


def join_frontmatter(header: dict, body: str) -> str:
    dumped = yaml.safe_dump(
        header, default_flow_style=False, sort_keys=False, allow_unicode=True
    )
    return f"---\n{dumped}---\n{body}"


def _scalar(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _yaml_value(value):
    if isinstance(value, Enum):
        return value.value
    return value


class FrontmatterStore:
    """Reads and merges KanDo fields in card files under a vault root."""

    def __init__(self, vault_path: Path) -> None:
        self.vault_path = Path(vault_path)
        self._write_listeners: list[Callable[[str, str], None]] = []

    def add_write_listener(self, listener: Callable[[str, str], None]) -> None:
        """Call ``listener(path, content)`` right before each header write.

        Runs on whichever thread performs the write.
        """
        self._write_listeners.append(listener)

    def resolve(self, path: str) -> Path:
        return self.vault_path / normalize_path(path)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_text(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def read(self, path: str) -> CardFrontmatter:
        """Read the recognized fields; unknown keys are ignored."""
        try:
            header, _ = split_frontmatter(self.read_text(path))
        except yaml.YAMLError as e:
            logger.warning("Unparseable frontmatter in %s: %s", path, e)
            header = None
        header = header or {}
        fields = {}
        for key in FRONTMATTER_FIELDS:
            value = _scalar(header.get(key))
            if value is None:
                continue
            if key == "vk_status":
                try:
                    value = TaskStatus(value)
                except ValueError:
                    logger.debug("Ignoring unknown vk_status %r in %s", value, path)
                    continue
            fields[key] = value
        return CardFrontmatter(**fields)

    def merge_update(self, path: str, updates: Mapping | CardFrontmatter) -> None:
        """Write only the provided non-None fields, keep everything else.

        Raises FileNotFoundError when the card no longer exists and
        yaml.YAMLError when its header cannot be parsed (the file is left
        untouched rather than overwritten).
        """
        if isinstance(updates, CardFrontmatter):
            updates = updates.updates()
        target = self.resolve(path)
        content = target.read_text(encoding="utf-8")
        header, body = split_frontmatter(content)
        header = header or {}
        changed = False
        for key, value in updates.items():
            if value is None:
                continue
            value = _yaml_value(value)
            if header.get(key) != value:
                header[key] = value
                changed = True
        if not changed:
            return
        new_content = join_frontmatter(header, body)
        for listener in self._write_listeners:
            listener(normalize_path(path), new_content)
        target.write_text(new_content, encoding="utf-8")

    def get_title(self, path: str) -> str:
        fm = self.read(path)
        return fm.title or PurePosixPath(normalize_path(path)).stem

    def get_description(self, path: str) -> str:
        """Body text without the frontmatter block, trimmed."""
        content = self.read_text(path)
        return _FRONTMATTER_RE.sub("", content, count=1).strip()

    def is_synced(self, path: str) -> bool:
        return bool(self.read(path).vk_task_id)

    def get_status(self, path: str) -> Optional[TaskStatus]:
        return self.read(path).vk_status

    def iter_markdown(self):
        """Yield vault-relative paths of every markdown file."""
        if not self.vault_path.is_dir():
            return
        for p in sorted(self.vault_path.rglob("*.md")):
            rel = p.relative_to(self.vault_path).as_posix()
            if rel.startswith(".") or "/." in rel:
                continue
            yield rel
