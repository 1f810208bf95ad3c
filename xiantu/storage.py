"""Single-slot JSON save storage.

A tiny key-value store: every key maps to one JSON file under a base
directory. There is no database; reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      {slug-of-key}.json    ← one value per key, overwritten on every set

Slug rules: key → Unicode normalize → strip non-ASCII → lowercase →
replace non-alnum runs with hyphen → strip leading/trailing hyphens.
"""

from __future__ import annotations

import json
import logging
import os
import re
import unicodedata
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class SaveError(Exception):
    """Base class for save-data failures."""


class NoSaveData(SaveError):
    """There is no saved session to continue."""


class CorruptSave(SaveError):
    """The saved session exists but cannot be read."""


class KeyValueStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any]) -> bool: ...

    def remove(self, key: str) -> bool: ...


def slugify(key: str) -> str:
    """Convert a key to a filesystem-safe slug.

    "@Xiantu Game Save" → "xiantu-game-save"
    """
    text = unicodedata.normalize("NFKD", key)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)  # strip apostrophes/quotes before hyphenation
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


class JsonFileStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._base / f"{slugify(key)}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        """Load the value for key; None if absent, CorruptSave if unreadable."""
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptSave(f"Cannot read {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise CorruptSave(f"{path.name} does not hold a JSON object")
        return data

    def set(self, key: str, value: dict[str, Any]) -> bool:
        """Overwrite the value for key. Returns False if the write failed."""
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(value, indent=2))
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Failed to write %s: %s", path, e)
            return False
        return True

    def remove(self, key: str) -> bool:
        """Delete the value for key. Returns False if nothing was deleted."""
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            return False
        return True
