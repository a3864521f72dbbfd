"""
Host Document - in-memory scene tree the Core Controller mutates

A document is loaded from a JSON export of the design file (pages of nested
nodes), mutated in place by the populator and written back. It also carries
the document-scoped plugin storage and the image store that IMAGE fills
reference by hash.
"""

import base64
import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from plugin_storage import KeyValueStore, atomic_write_json

logger = logging.getLogger(__name__)

TEXT = "TEXT"
FILL_CAPABLE_TYPES = frozenset({"RECTANGLE", "ELLIPSE", "POLYGON", "STAR", "VECTOR"})

DEFAULT_FONT = {"family": "Inter", "style": "Regular"}


class FontUnavailableError(Exception):
    pass


@dataclass
class SceneNode:
    id: str
    name: str
    type: str
    characters: Optional[str] = None
    font_name: Optional[Dict[str, str]] = None
    fills: List[Dict[str, Any]] = field(default_factory=list)
    children: List["SceneNode"] = field(default_factory=list)
    locked: bool = False

    @property
    def can_have_fills(self) -> bool:
        return self.type in FILL_CAPABLE_TYPES

    def walk(self) -> Iterator["SceneNode"]:
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def set_characters(self, value: str) -> None:
        if self.type != TEXT:
            raise TypeError(f"Node {self.id} is {self.type}, not TEXT")
        if self.locked:
            raise PermissionError(f"Node {self.id} is locked")
        self.characters = value

    def set_fills(self, fills: List[Dict[str, Any]]) -> None:
        if not self.can_have_fills:
            raise TypeError(f"Node {self.id} ({self.type}) cannot have fills")
        if self.locked:
            raise PermissionError(f"Node {self.id} is locked")
        self.fills = fills

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name, "type": self.type}
        if self.characters is not None:
            data["characters"] = self.characters
        if self.font_name is not None:
            data["font_name"] = self.font_name
        if self.fills:
            data["fills"] = self.fills
        if self.locked:
            data["locked"] = True
        if self.children:
            data["children"] = [c.to_dict() for c in self.children]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SceneNode":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            type=str(data.get("type", "FRAME")),
            characters=data.get("characters"),
            font_name=data.get("font_name") or (dict(DEFAULT_FONT) if data.get("type") == TEXT else None),
            fills=list(data.get("fills") or []),
            children=[cls.from_dict(c) for c in data.get("children") or []],
            locked=bool(data.get("locked", False)),
        )


class HostDocument:
    """A design file: pages, the current selection, plugin data and images."""

    def __init__(
        self,
        document_id: str,
        pages: Optional[List[SceneNode]] = None,
        plugin_data: Optional[KeyValueStore] = None,
        available_fonts: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        self.id = document_id
        self.pages: List[SceneNode] = pages or [SceneNode(id="0:1", name="Page 1", type="PAGE")]
        self.current_page: SceneNode = self.pages[0]
        self.selection: List[SceneNode] = []
        self.plugin_data = plugin_data if plugin_data is not None else KeyValueStore()
        self.images: Dict[str, bytes] = {}
        self.available_fonts = available_fonts

    def find_node(self, node_id: str) -> Optional[SceneNode]:
        for page in self.pages:
            for node in page.walk():
                if node.id == node_id:
                    return node
        return None

    def select(self, node_ids: List[str]) -> List[SceneNode]:
        selected = []
        for node_id in node_ids:
            node = self.find_node(node_id)
            if node is None:
                logger.warning(f"⚠️ Cannot select unknown node {node_id}")
                continue
            selected.append(node)
        self.selection = selected
        return selected

    async def load_font(self, font_name: Optional[Dict[str, str]]) -> None:
        """Text edits require the node's font; an explicit font list restricts what loads."""
        if self.available_fonts is None or font_name is None:
            return
        if font_name not in self.available_fonts:
            raise FontUnavailableError(f"Font {font_name.get('family')} {font_name.get('style')} is not available")

    def create_image(self, data: bytes) -> str:
        image_hash = hashlib.sha1(data).hexdigest()
        self.images[image_hash] = data
        return image_hash

    # Serialization
    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "pages": [p.to_dict() for p in self.pages],
            "selection": [n.id for n in self.selection],
            "plugin_data": self.plugin_data.raw(),
        }
        if self.images:
            data["images"] = {h: base64.b64encode(b).decode("ascii") for h, b in self.images.items()}
        if self.available_fonts is not None:
            data["available_fonts"] = self.available_fonts
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], plugin_data: Optional[KeyValueStore] = None) -> "HostDocument":
        pages = [SceneNode.from_dict(p) for p in data.get("pages") or []]
        store = plugin_data if plugin_data is not None else KeyValueStore(data.get("plugin_data") or {})
        document = cls(str(data.get("id", "document")), pages or None, store, data.get("available_fonts"))
        for image_hash, encoded in (data.get("images") or {}).items():
            try:
                document.images[image_hash] = base64.b64decode(encoded, validate=True)
            except (TypeError, ValueError) as e:
                logger.warning(f"⚠️ Dropping unreadable image {image_hash}: {e}")
        document.select(list(data.get("selection") or []))
        return document

    @classmethod
    def load(cls, path: Path) -> "HostDocument":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        document = cls.from_dict(data)
        logger.info(f"📄 Loaded document {document.id} from {path} ({len(document.pages)} page(s))")
        return document

    def save(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())
        logger.info(f"💾 Saved document {self.id} to {path}")
