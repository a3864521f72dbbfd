"""
Plugin Storage - persisted key/value state

Two scopes exist: document-scoped entries (layer configurations, integer
ranges, the Google Sheet snapshot) that travel with a design file, and
client-scoped entries (license fields) that belong to the user's machine.
Both are plain key/value stores whose values are JSON text under fixed
string keys.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_STORAGE_KEY = "layerConfigurations"
DETAILED_CONFIG_STORAGE_KEY = "detailedLayerConfigurations"
INTEGER_SETTINGS_KEY = "integerSettings"
SHEET_SYNC_KEY = "googleSheetSync"

CONFIG_FORMAT_VERSION = 2


class KeyValueStore:
    """In-memory store; values are kept as JSON text exactly as they would be persisted."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._values.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"⚠️ Discarding unreadable value stored under '{key}'")
            return default

    def set(self, key: str, value: Any) -> None:
        self._values[key] = json.dumps(value, ensure_ascii=False)
        self._flush()

    def delete(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def keys(self) -> List[str]:
        return list(self._values.keys())

    def raw(self) -> Dict[str, str]:
        return dict(self._values)

    def _flush(self) -> None:
        pass


class JsonFileStore(KeyValueStore):
    """Key/value store mirrored to a JSON file on every write."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        initial: Dict[str, str] = {}
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    initial = {str(k): v for k, v in loaded.items() if isinstance(v, str)}
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"⚠️ Could not read store {self.path}, starting empty: {e}")
        super().__init__(initial)

    def _flush(self) -> None:
        atomic_write_json(self.path, self._values)


def atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON through a temp file + rename so readers never see a partial file."""
    dir_path = path.parent
    dir_path.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=dir_path,
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as f:
            temp_path = Path(f.name)
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
        temp_path = None
    finally:
        if temp_path is not None and temp_path.exists():
            temp_path.unlink()


@dataclass
class SheetSnapshot:
    """Last synced Google Sheet: header row, data rows and layer → column mappings."""

    url: str
    headers: List[str]
    rows: List[List[str]] = field(default_factory=list)
    mappings: Dict[str, str] = field(default_factory=dict)
    synced_at: float = field(default_factory=time.time)

    def column(self, header: str) -> List[str]:
        if header not in self.headers:
            return []
        index = self.headers.index(header)
        return [row[index] if index < len(row) else "" for row in self.rows]


class ConfigurationStore:
    """
    Document-scoped configuration on top of a KeyValueStore.

    Layer configurations are persisted in a versioned envelope
    ({"version": 2, "entries": {...}}). Files written before versioning hold
    a bare {layer_name: data_type_id} object; those are migrated on read and
    rewritten in the current format on the next save.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # Layer configurations
    def load_saved(self) -> Dict[str, str]:
        return self._load_versioned(CONFIG_STORAGE_KEY)

    def load_detailed(self) -> Dict[str, Dict[str, Any]]:
        return self._load_versioned(DETAILED_CONFIG_STORAGE_KEY)

    def save(self, layer_name: str, data_type_id: str) -> None:
        configs = self.load_saved()
        configs[layer_name] = data_type_id
        self._save_versioned(CONFIG_STORAGE_KEY, configs)
        logger.info(f"💾 Saved configuration: {layer_name} → {data_type_id}")

    def save_detailed(self, layer_name: str, data_type_id: str, options: Optional[Dict[str, Any]] = None) -> None:
        detailed = self.load_detailed()
        detailed[layer_name] = {"data_type_id": data_type_id, "options": options or {}}
        self._save_versioned(DETAILED_CONFIG_STORAGE_KEY, detailed)
        self.save(layer_name, data_type_id)

    def options_for(self, layer_name: str) -> Dict[str, Any]:
        entry = self.load_detailed().get(layer_name) or {}
        options = entry.get("options") if isinstance(entry, dict) else None
        return dict(options or {})

    def remove(self, layer_name: str) -> bool:
        configs = self.load_saved()
        detailed = self.load_detailed()
        removed = configs.pop(layer_name, None) is not None
        removed = (detailed.pop(layer_name, None) is not None) or removed
        if removed:
            self._save_versioned(CONFIG_STORAGE_KEY, configs)
            self._save_versioned(DETAILED_CONFIG_STORAGE_KEY, detailed)
            logger.info(f"🗑️ Removed configuration: {layer_name}")
        return removed

    # Integer ranges
    def store_integer_settings(self, settings: Dict[str, Dict[str, int]]) -> None:
        self.store.set(INTEGER_SETTINGS_KEY, settings)
        logger.info("💾 Integer settings stored successfully")

    def load_integer_settings(self) -> Dict[str, Dict[str, int]]:
        settings = self.store.get(INTEGER_SETTINGS_KEY, {})
        return settings if isinstance(settings, dict) else {}

    # Google Sheet sync snapshot
    def save_sheet_snapshot(self, snapshot: SheetSnapshot) -> None:
        self.store.set(SHEET_SYNC_KEY, asdict(snapshot))

    def load_sheet_snapshot(self) -> Optional[SheetSnapshot]:
        raw = self.store.get(SHEET_SYNC_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return SheetSnapshot(**raw)
        except TypeError as e:
            logger.warning(f"⚠️ Ignoring malformed sheet snapshot: {e}")
            return None

    def clear_sheet_snapshot(self) -> None:
        self.store.delete(SHEET_SYNC_KEY)

    # Internal
    def _load_versioned(self, key: str) -> Dict[str, Any]:
        raw = self.store.get(key, {})
        if not isinstance(raw, dict):
            return {}
        if "version" in raw and isinstance(raw.get("entries"), dict):
            if raw["version"] > CONFIG_FORMAT_VERSION:
                logger.warning(f"⚠️ {key} was written by a newer version ({raw['version']}); reading best-effort")
            return dict(raw["entries"])
        # Legacy layout: the object itself is the map
        return {k: v for k, v in raw.items() if k != "version"}

    def _save_versioned(self, key: str, entries: Dict[str, Any]) -> None:
        self.store.set(key, {"version": CONFIG_FORMAT_VERSION, "entries": entries})
