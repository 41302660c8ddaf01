"""
Attribute schema registry.

Defines the ordered set of attributes every image is extracted against.
The schema serves two purposes:
1. Prompt Generation: telling the vision model what to look for
2. Result Validation: every Job's attribute map is keyed by exactly this set
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InvalidSchemaError, UnknownKeyError

ATTRIBUTE_TYPES = ("text", "number", "select")


@dataclass(frozen=True)
class SchemaItem:
    """Specification for a single extracted attribute."""
    key: str
    label: str
    type: str = "text"
    allowed_values: Tuple[str, ...] = field(default_factory=tuple)
    required: bool = False
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "type": self.type,
            "allowed_values": list(self.allowed_values),
            "required": self.required,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaItem":
        return cls(
            key=str(data.get("key") or "").strip(),
            label=str(data.get("label") or data.get("key") or ""),
            type=str(data.get("type") or "text"),
            allowed_values=tuple(str(v) for v in data.get("allowed_values") or ()),
            required=bool(data.get("required", False)),
            description=data.get("description"),
        )


SchemaSnapshot = Tuple[SchemaItem, ...]


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return tuple(ordered)


def _select(key: str, label: str, values: Sequence[str], required: bool = False) -> SchemaItem:
    return SchemaItem(key=key, label=label, type="select", allowed_values=tuple(values), required=required)


_YARNS = ("Cotton", "Polyester", "Viscose", "Linen", "Wool", "Silk", "Modal", "Acrylic")

DEFAULT_SCHEMA: SchemaSnapshot = (
    _select("macro_mvgr", "MACRO MVGR", ("Apparel", "Accessories", "Footwear", "Home"), required=True),
    _select("micro_mvgr", "MICRO MVGR", ("Casual", "Formal", "Ethnic", "Sports", "Inner", "Occasion")),
    _select("fab_division", "FAB DIVISION", ("Woven", "Knit", "Non-Woven", "Denim")),
    _select("fab_yarn_01", "FAB YARN-01", _YARNS),
    _select("fab_yarn_02", "FAB YARN-02", _YARNS),
    _select("fab_main_mvgr", "FAB MAIN MVGR", ("Cotton", "Synthetic", "Blended", "Natural")),
    _select("fab_weave", "FAB WEAVE", ("Plain", "Twill", "Satin", "Rib", "Jersey", "Interlock")),
    _select("neck", "NECK", ("ROUND NECK", "V NECK", "POLO NECK", "HIGH NECK", "COLLAR")),
    _select("pattern", "PATTERN", ("SOLID", "STRIPES", "CHECKS", "PRINTED", "EMBROIDERED")),
    _select("color", "COLOR", ("BLACK", "WHITE", "RED", "BLUE", "GREEN", "YELLOW", "GREY", "NAVY")),
    SchemaItem(key="fab_composition", label="FAB COMPOSITION", type="text",
               description="Fabric composition as printed on the label, e.g. 60% cotton 40% polyester"),
    SchemaItem(key="fab_finish", label="FAB FINISH", type="text"),
    SchemaItem(key="gsm", label="GSM", type="number", description="Fabric weight in grams per square metre"),
)


def validate_schema(items: Sequence[SchemaItem]) -> SchemaSnapshot:
    """Check key uniqueness and types; return the snapshot with de-duplicated values."""
    seen = set()
    cleaned: List[SchemaItem] = []
    for item in items:
        if not item.key:
            raise InvalidSchemaError("Schema item key must not be empty")
        if item.key in seen:
            raise InvalidSchemaError(f"Duplicate schema key '{item.key}'")
        if item.type not in ATTRIBUTE_TYPES:
            raise InvalidSchemaError(f"Unknown attribute type '{item.type}' for '{item.key}'")
        seen.add(item.key)
        cleaned.append(replace(item, allowed_values=_dedupe(item.allowed_values)))
    return tuple(cleaned)


class SchemaRegistry:
    """Holds the active schema snapshot.

    Snapshots are immutable tuples, so callers may keep the result of ``get()``
    for the duration of a run while the registry moves on. ``allowed_values``
    only ever grow through ``add_allowed_value``; ``replace`` installs an
    entirely new snapshot.
    """

    def __init__(self, items: Optional[Sequence[SchemaItem]] = None) -> None:
        self._items: SchemaSnapshot = validate_schema(DEFAULT_SCHEMA if items is None else items)

    def get(self) -> SchemaSnapshot:
        return self._items

    def keys(self) -> List[str]:
        return [item.key for item in self._items]

    def find(self, key: str) -> Optional[SchemaItem]:
        for item in self._items:
            if item.key == key:
                return item
        return None

    def empty_attributes(self) -> Dict[str, None]:
        return empty_attributes(self._items)

    def replace(self, items: Sequence[SchemaItem]) -> SchemaSnapshot:
        self._items = validate_schema(items)
        return self._items

    def add_allowed_value(self, key: str, value: str) -> SchemaSnapshot:
        item = self.find(key)
        if item is None:
            raise UnknownKeyError(f"Schema key '{key}' does not exist")
        if item.type != "select":
            raise UnknownKeyError(f"Schema key '{key}' is not a select attribute")
        if value in item.allowed_values:
            return self._items
        updated = replace(item, allowed_values=item.allowed_values + (value,))
        self._items = tuple(updated if i.key == key else i for i in self._items)
        return self._items

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self._items]

    @classmethod
    def from_dicts(cls, data: Iterable[Dict[str, Any]]) -> "SchemaRegistry":
        return cls([SchemaItem.from_dict(entry) for entry in data])


def empty_attributes(schema: Sequence[SchemaItem]) -> Dict[str, None]:
    return {item.key: None for item in schema}
