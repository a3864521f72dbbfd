"""
Layer Scanner - group `%`-marked layers into mappings

Walks the selected subtrees, groups every node whose name starts with the
marker prefix by its exact name, and classifies each group by sampling the
member node types.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from host_document import TEXT, SceneNode

logger = logging.getLogger(__name__)

MARKER_PREFIX = "%"

LAYER_TYPE_TEXT = "TEXT"
LAYER_TYPE_MIXED = "MIXED"
LAYER_TYPE_OTHER = "OTHER"


@dataclass
class LayerMapping:
    key: str
    layers: List[SceneNode] = field(default_factory=list)
    data_type_id: Optional[str] = None
    layer_type: str = LAYER_TYPE_OTHER

    @property
    def target_count(self) -> int:
        return len(self.layers)

    def to_payload(self, saved: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return {
            "layer_name": self.key,
            "data_type_id": self.data_type_id,
            "count": self.target_count,
            "layer_type": self.layer_type,
            "is_pre_configured": bool(saved and self.key in saved),
        }


def is_marker(name: Optional[str]) -> bool:
    return bool(name) and name.startswith(MARKER_PREFIX)


def classify_layer_type(layers: List[SceneNode]) -> str:
    text_count = sum(1 for layer in layers if layer.type == TEXT)
    if layers and text_count == len(layers):
        return LAYER_TYPE_TEXT
    if text_count > 0:
        return LAYER_TYPE_MIXED
    return LAYER_TYPE_OTHER


def scan_selection(selection: List[SceneNode]) -> List[LayerMapping]:
    """Return one mapping per distinct marker name, in first-seen order."""
    found: Dict[str, LayerMapping] = {}
    seen_ids = set()

    for root in selection:
        for node in root.walk():
            if node.id in seen_ids:
                # Overlapping selections (a parent and its child) reach nodes twice
                continue
            seen_ids.add(node.id)
            if not is_marker(node.name):
                continue
            mapping = found.get(node.name)
            if mapping is None:
                mapping = found[node.name] = LayerMapping(key=node.name)
            mapping.layers.append(node)

    for mapping in found.values():
        mapping.layer_type = classify_layer_type(mapping.layers)

    logger.info(f"🔍 Found {len(found)} marker group(s) across {len(seen_ids)} node(s)")
    return list(found.values())


def count_markers(selection: List[SceneNode]) -> int:
    return len({node.id for root in selection for node in root.walk() if is_marker(node.name)})
