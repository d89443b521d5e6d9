"""Per-import product snapshots and field-level diffs between imports.

A snapshot captures the mutable fields of one product as one import saw
them. The diff for an import compares it with the snapshot taken by the most
recent *completed* import of the same supplier. Snapshots and diffs are only
ever appended.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from .models import ImportDiff, Product
from .normalize import parse_numeric, same_number
from .store import CatalogStore

log = logging.getLogger("pim.diffs")

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"

TEXT_FIELDS = ("name_ru", "name_uk", "description_ru", "description_uk")
TEXT_PREVIEW = 100


@dataclass
class FieldDiff:
    external_id: str
    field_name: str
    old_value: str
    new_value: str
    change_type: str

    def to_dict(self) -> dict:
        return asdict(self)


def build_snapshot(product: Product, prices: Dict[str, float], stock: Dict[str, int]) -> dict:
    """JSON-ready snapshot of the fields an import can change."""
    return {
        "external_id": product.supplier_sku,
        "name_ru": product.name_ru or "",
        "name_uk": product.name_uk or "",
        "description_ru": product.description_ru or "",
        "description_uk": product.description_uk or "",
        "images": list(product.images or []),
        "total_stock": product.total_stock,
        "prices": dict(prices),
        "warehouse_balances": dict(stock),
    }


def _fmt(value) -> str:
    if value is None:
        return ""
    n = parse_numeric(value)
    if n is not None and float(n).is_integer():
        return str(int(n))
    return str(n if n is not None else value)


def _absent(value) -> bool:
    n = parse_numeric(value)
    return n is None or n == 0


def _numeric_diff(external_id: str, field_name: str, old, new) -> Optional[FieldDiff]:
    if same_number(old, new):
        return None
    change = ADDED if _absent(old) else MODIFIED
    return FieldDiff(external_id, field_name, _fmt(old if old is not None else 0), _fmt(new), change)


def diff(previous: Optional[dict], current: dict) -> List[FieldDiff]:
    """Field-level changes from ``previous`` to ``current``."""
    ext = current.get("external_id", "")
    if previous is None:
        return [FieldDiff(ext, "product", "", "New product", ADDED)]

    diffs: List[FieldDiff] = []

    for name in TEXT_FIELDS:
        old, new = previous.get(name) or "", current.get(name) or ""
        if old != new:
            change = MODIFIED if old else ADDED
            diffs.append(FieldDiff(ext, name, old[:TEXT_PREVIEW], new[:TEXT_PREVIEW], change))

    d = _numeric_diff(ext, "total_stock", previous.get("total_stock"), current.get("total_stock"))
    if d:
        diffs.append(d)

    old_prices = previous.get("prices") or {}
    for price_type, value in (current.get("prices") or {}).items():
        d = _numeric_diff(ext, f"price.{price_type}", old_prices.get(price_type), value)
        if d:
            diffs.append(d)

    old_stock = previous.get("warehouse_balances") or {}
    for code, qty in (current.get("warehouse_balances") or {}).items():
        d = _numeric_diff(ext, f"stock.{code}", old_stock.get(code), qty)
        if d:
            diffs.append(d)

    diffs.extend(_image_diffs(ext, previous.get("images") or [], current.get("images") or []))
    return diffs


def _image_diffs(ext: str, old: Sequence[str], new: Sequence[str]) -> List[FieldDiff]:
    old_set, new_set = set(old), set(new)
    out = []
    # one summarized entry per direction, not one per URL
    if new_set - old_set:
        out.append(FieldDiff(ext, "images", str(len(old)), str(len(new)), ADDED))
    if old_set - new_set:
        out.append(FieldDiff(ext, "images", str(len(old)), str(len(new)), REMOVED))
    return out


def record_snapshot(store: CatalogStore, import_id: int, previous_import_id: Optional[int],
                    product: Product, snapshot: dict) -> List[FieldDiff]:
    """Store this import's snapshot and the diffs against the previous completed import."""
    previous = None
    if previous_import_id is not None:
        previous = store.get_snapshot(previous_import_id, product.supplier_sku)

    changes = diff(previous, snapshot)
    store.add_snapshot(import_id, product.supplier_sku, product.id, snapshot)
    store.add_diffs(
        ImportDiff(import_id=import_id, product_id=product.id, **c.to_dict()) for c in changes
    )
    return changes
