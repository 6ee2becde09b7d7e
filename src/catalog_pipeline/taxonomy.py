"""Taxonomy Mapper Module

Maps vendor collection handles and product types onto the internal category
tree. Resolution is first-match-wins over ordered, static data:

  1. walk top-level nodes in declaration order; a node matches when one of
     its configured collections is among the product's collections
     (returns ``parent``), otherwise its children are checked the same way
     (returns ``parent/child``)
  2. no collection match: look the product type up in ``PRODUCT_TYPE_MAP``
  3. nothing matched: ``DEFAULT_CATEGORY``

Only the first configured match is used even when a product sits in several
vendor collections, so a product never fans out to multiple categories.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import CategoryNode

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "accessories"


def _node(name: str, handle: str, collections=(), children=(), description=None) -> CategoryNode:
    return CategoryNode(
        name=name,
        handle=handle,
        description=description,
        collections=list(collections),
        children=[c.model_copy(update={"parent_handle": handle}) for c in children],
    )


DEFAULT_TAXONOMY: List[CategoryNode] = [
    _node(
        "3D Printers", "3d-printers", ["3d-printer-kits"],
        description="Complete 3D printer kits and systems",
    ),
    _node(
        "Filament", "filament", ["3d-consumable", "abs-asa-filament-1-75mm"],
        children=[
            _node("PLA", "pla"),
            _node("PETG", "petg"),
            _node("ABS & ASA", "abs-asa"),
            _node("TPU", "tpu"),
            _node("Specialty", "specialty"),
        ],
        description="3D printing filaments for all applications",
    ),
    _node(
        "Spare Parts", "spare-parts",
        ["3d-printer-parts", "3d-printer-extruder-spares", "3d-printer-wearing-parts"],
        children=[
            _node("Hotends", "hotends", ["3d-printer-hotend-accessories", "3d-printer-heat-breaks"]),
            _node("Nozzles", "nozzles", ["3d-printers-nozzles"]),
            _node("Extruders", "extruders", ["3d-printer-extruder"]),
            _node("Thermistors", "thermistors", ["3d-printer-thermistor"]),
            _node("Heater Cartridges", "heater-cartridges", ["3d-printer-heater-cartridge"]),
            _node("Beds", "beds", ["3d-printer-bed"]),
        ],
        description="Replacement and upgrade parts for 3D printers",
    ),
    _node(
        "Electronics", "electronics",
        ["3d-printer-electronics", "3d-printer-mainboard", "3d-printer-displays"],
        children=[
            _node("Mainboards", "mainboards"),
            _node("Displays", "displays"),
            _node("Stepper Drivers", "stepper-drivers"),
            _node("Power Supplies", "power-supplies"),
        ],
        description="Mainboards, displays, and electronic components",
    ),
    _node(
        "Motion", "motion", ["3d-printer-bearing-pom-wheels", "3d-printer-fans"],
        children=[
            _node("Linear Rails", "linear-rails"),
            _node("Belts", "belts"),
            _node("Bearings", "bearings"),
            _node("Motors", "motors"),
        ],
        description="Belts, rails, bearings, and motors",
    ),
    _node(
        "Build Plates", "build-plates", ["3d-printer-bed-surface-accessories"],
        description="PEI plates, flex plates, and build surfaces",
    ),
    _node(
        "Tools", "tools", ["3d-printer-tools-and-general-spares"],
        description="3D printing tools and accessories",
    ),
    _node(
        "Accessories", "accessories",
        [
            "3d-printer-accessories-and-consumable",
            "3d-printer-silicon-socks",
            "3d-printer-heater-block",
            "3d-printer-bed-probe",
            "3d-printer-toolheads",
        ],
        description="Miscellaneous 3D printing accessories",
    ),
]

# Secondary table, keyed by the vendor's free-text product type
PRODUCT_TYPE_MAP: Dict[str, str] = {
    "Spare Parts": "spare-parts",
    "Hotend Assembly": "spare-parts/hotends",
    "Hotend Kit": "spare-parts/hotends",
    "Nozzle": "spare-parts/nozzles",
    "Extruder": "spare-parts/extruders",
    "Direct Drive": "spare-parts/extruders",
    "Mainboard": "electronics/mainboards",
    "Stepper Motor": "motion",
    "Timing Belt": "motion",
    "Build Surface": "build-plates",
    "PEI Plate": "build-plates",
    "Linear Rail": "motion",
    "Fan": "spare-parts",
    "Thermistor": "spare-parts/thermistors",
    "Heater Cartridge": "spare-parts/heater-cartridges",
    "Tools": "tools",
    "Upgrade Kit": "accessories",
    "Project": "accessories",
    "Hardware": "accessories",
    "3D Printing Consumable": "accessories",
    "Filament Dryer": "accessories",
    "End Mill": "accessories",
}


class TaxonomyMapper:
    """Deterministic collection/product-type -> category path resolver."""

    def __init__(
        self,
        nodes: Optional[List[CategoryNode]] = None,
        product_types: Optional[Dict[str, str]] = None,
        default: str = DEFAULT_CATEGORY,
    ):
        self.nodes = list(nodes if nodes is not None else DEFAULT_TAXONOMY)
        self.product_types = {
            k.strip().lower(): v
            for k, v in (product_types if product_types is not None else PRODUCT_TYPE_MAP).items()
        }
        self.default = default
        self._by_path: Dict[str, List[CategoryNode]] = {}
        for node in self.nodes:
            self._by_path[node.handle] = [node]
            for child in node.children:
                self._by_path[f"{node.handle}/{child.handle}"] = [node, child]

        unknown = sorted(
            {p for p in self.product_types.values() if p not in self._by_path}
            | ({default} - set(self._by_path))
        )
        if unknown:
            logger.warning("Taxonomy references unknown category paths: %s", unknown)

    def map(self, collections: Iterable[str], product_type: str = "") -> str:
        handles = set(collections)

        for node in self.nodes:
            if handles.intersection(node.collections):
                return node.handle
            for child in node.children:
                if handles.intersection(child.collections):
                    return f"{node.handle}/{child.handle}"

        by_type = self.product_types.get((product_type or "").strip().lower())
        if by_type:
            return by_type

        return self.default

    def resolve(self, path: str) -> List[CategoryNode]:
        """Return the nodes along ``path`` (root first); unknown paths resolve to []."""
        return list(self._by_path.get(path, []))

    def names(self, path: str) -> List[str]:
        return [n.name for n in self.resolve(path)]

    def handles(self, path: str) -> List[str]:
        return [n.handle for n in self.resolve(path)]

    @classmethod
    def from_file(cls, path: Path | str) -> "TaxonomyMapper":
        """Load a taxonomy JSON file.

        Format::

            {
              "default": "accessories",
              "categories": [{"name": ..., "handle": ..., "collections": [...],
                              "children": [...]}],
              "product_types": {"Nozzle": "spare-parts/nozzles"}
            }
        """
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        nodes = [CategoryNode.model_validate(n) for n in data.get("categories", [])]
        for node in nodes:
            node.children = [c.model_copy(update={"parent_handle": node.handle}) for c in node.children]
        logger.info("Loaded taxonomy from %s (%d top-level categories)", path, len(nodes))
        return cls(
            nodes=nodes,
            product_types=data.get("product_types", {}),
            default=data.get("default", DEFAULT_CATEGORY),
        )


def category_path_parts(path: str) -> Tuple[str, Optional[str]]:
    parent, _, child = path.partition("/")
    return parent, child or None
