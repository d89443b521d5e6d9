"""Supplier JSON feed: parsing, per-record validation and pre-scan.

Top-level shape::

    {"categories": {ref: {"name": {"ru", "uk"}, "parent_ref"}},
     "brands":     {ref: {"name", "image"}},
     "attributes": {ref: {"ru", "uk"}},
     "products":   {sku: {"main": {...}, "attributes": {...}, "images": {...}}}}

Only ``products`` is required. Sections are kept as raw dicts here and each
record is validated on its own, so one bad record never sinks the whole feed.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import FeedParseError
from .normalize import parse_numeric, to_int

log = logging.getLogger("pim.feed")

RawNumber = Union[int, float, str, None]

# dotted price type -> path inside main.prices
PRICE_PATHS = {
    "retail.current": ("retail", "current"),
    "retail.old": ("retail", "old"),
    "purchase.cash.current": ("purchase", "cash", "current"),
    "purchase.cash.old": ("purchase", "cash", "old"),
}


def _ref(v):
    if v is None or v == "":
        return None
    if isinstance(v, (int, str)) and not isinstance(v, bool):
        return str(v)
    raise ValueError("reference must be a string or integer")


class Localized(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ru: str = ""
    uk: str = ""

    @field_validator("ru", "uk", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v

    def first(self, *fallbacks: str) -> str:
        for value in (self.ru, self.uk, *fallbacks):
            if value:
                return value
        return ""


class FeedCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Localized = Field(default_factory=Localized)
    parent_ref: Optional[str] = None

    @field_validator("parent_ref", mode="before")
    @classmethod
    def _parent_ref(cls, v):
        return _ref(v)


class FeedBrand(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    image: Optional[str] = None


class FeedMain(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    sku: Optional[str] = None
    barcode: Optional[str] = None
    name: Localized = Field(default_factory=Localized)
    vendor_code: Optional[str] = Field(default=None, alias="vendorCode")
    description: Localized = Field(default_factory=Localized)
    brand: Optional[str] = None
    category: Optional[str] = None
    prices: Dict[str, Any] = Field(default_factory=dict)
    balance: RawNumber = 0
    warehouse_balances: Dict[str, RawNumber] = Field(default_factory=dict)

    @field_validator("sku", "brand", "barcode", "vendor_code", mode="before")
    @classmethod
    def _refs(cls, v):
        return _ref(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category_ref(cls, v):
        if isinstance(v, dict):
            v = v.get("ref")
        return _ref(v)

    @field_validator("prices", mode="before")
    @classmethod
    def _prices(cls, v):
        return v or {}

    @field_validator("warehouse_balances", mode="before")
    @classmethod
    def _balances(cls, v):
        # some feeds send [] for "no warehouses"
        if v is None or isinstance(v, list):
            return {}
        return v


class FeedImages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    main: Optional[str] = None
    additional: Dict[str, str] = Field(default_factory=dict)

    @field_validator("additional", mode="before")
    @classmethod
    def _additional(cls, v):
        if v is None:
            return {}
        if isinstance(v, list):
            return {str(i): url for i, url in enumerate(v)}
        return v


class FeedProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    main: FeedMain
    attributes: Dict[str, Localized] = Field(default_factory=dict)
    images: FeedImages = Field(default_factory=FeedImages)

    @field_validator("attributes", mode="before")
    @classmethod
    def _attributes(cls, v):
        if v is None or isinstance(v, list):
            return {}
        return v

    def price_points(self) -> Dict[str, float]:
        """Flatten main.prices into dotted price types, dropping unparseable values."""
        out: Dict[str, float] = {}
        for price_type, path in PRICE_PATHS.items():
            node: Any = self.main.prices
            for key in path:
                node = node.get(key) if isinstance(node, dict) else None
            value = parse_numeric(node)
            if value is not None:
                out[price_type] = float(value)
        return out

    def stock_points(self) -> Dict[str, int]:
        return {str(code): to_int(qty) for code, qty in self.main.warehouse_balances.items()}

    def total_stock(self) -> int:
        return to_int(self.main.balance)


@dataclass
class FeedDocument:
    products: Dict[str, Any]
    categories: Dict[str, Any] = field(default_factory=dict)
    brands: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)


def _section(data: dict, key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        log.warning("Ignoring feed section %r: expected an object, got %s", key, type(value).__name__)
        return {}
    return value


def parse_feed(text: Union[str, bytes]) -> FeedDocument:
    """Deserialize a feed. Raises FeedParseError on the one hard validation gate."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise FeedParseError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise FeedParseError("Invalid JSON structure: top level must be an object")
    products = data.get("products")
    if not isinstance(products, dict):
        raise FeedParseError("Invalid JSON structure: missing products object")

    return FeedDocument(
        products=products,
        categories=_section(data, "categories"),
        brands=_section(data, "brands"),
        attributes=_section(data, "attributes"),
    )


def attribute_names(raw: Dict[str, Any]) -> Dict[str, Localized]:
    """Attribute ref -> localized name; malformed entries are dropped."""
    names: Dict[str, Localized] = {}
    for ref, value in raw.items():
        try:
            names[str(ref)] = Localized.model_validate(value)
        except ValidationError:
            log.warning("Skipping malformed attribute name %r", ref)
    return names


def product_category_ref(raw_product: Any) -> Optional[str]:
    """Category ref of a raw product record without full validation."""
    main = raw_product.get("main") if isinstance(raw_product, dict) else None
    category = main.get("category") if isinstance(main, dict) else None
    if isinstance(category, dict):
        category = category.get("ref")
    if category is None or category == "" or isinstance(category, bool):
        return None
    return str(category) if isinstance(category, (str, int)) else None


# --- pre-scan -----------------------------------------------------------------

@dataclass
class ScanNode:
    ref: str
    name: str
    name_ru: str = ""
    name_uk: str = ""
    parent_ref: Optional[str] = None
    children: List["ScanNode"] = field(default_factory=list)
    product_count: int = 0
    total_product_count: int = 0

    def to_dict(self) -> dict:
        return {
            "ref": self.ref,
            "name": self.name,
            "name_ru": self.name_ru,
            "name_uk": self.name_uk,
            "parent_ref": self.parent_ref,
            "product_count": self.product_count,
            "total_product_count": self.total_product_count,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class PreScanResult:
    roots: List[ScanNode]
    nodes: Dict[str, ScanNode]
    total_products: int
    skipped_products: int = 0


def pre_scan(text: Union[str, bytes]) -> PreScanResult:
    """Category tree with product counts, for choosing what to import.

    Nothing is written. Without a ``categories`` section the tree is flat and
    built from the category refs products use.
    """
    doc = parse_feed(text)

    counts: Dict[str, int] = {}
    skipped = 0
    for raw in doc.products.values():
        ref = product_category_ref(raw)
        if ref is None:
            skipped += 1
            continue
        counts[ref] = counts.get(ref, 0) + 1
    if skipped:
        log.info("Pre-scan: %d products without category", skipped)

    if doc.categories:
        nodes = category_nodes(doc.categories, counts)
    else:
        nodes = {}
        for ref, count in counts.items():
            nodes[ref] = ScanNode(ref=ref, name=ref, name_ru=ref, name_uk=ref, product_count=count)

    roots = link_scan_nodes(nodes)
    for root in roots:
        _total_products(root)

    return PreScanResult(roots=roots, nodes=nodes, total_products=len(doc.products), skipped_products=skipped)


def category_nodes(raw_categories: Dict[str, Any], counts: Optional[Dict[str, int]] = None) -> Dict[str, ScanNode]:
    """Unlinked scan nodes for a feed's categories section; malformed entries are dropped."""
    counts = counts or {}
    nodes: Dict[str, ScanNode] = {}
    for ref, raw in raw_categories.items():
        ref = str(ref)
        try:
            cat = FeedCategory.model_validate(raw)
        except ValidationError:
            log.warning("Skipping malformed category %r", ref)
            continue
        nodes[ref] = ScanNode(
            ref=ref,
            name=cat.name.first(ref),
            name_ru=cat.name.ru,
            name_uk=cat.name.uk,
            parent_ref=cat.parent_ref,
            product_count=counts.get(ref, 0),
        )
    return nodes


def link_scan_nodes(nodes: Dict[str, ScanNode]) -> List[ScanNode]:
    """Attach children to parents; unresolved or cyclic parents become roots."""
    roots = []
    for node in nodes.values():
        parent = nodes.get(node.parent_ref) if node.parent_ref else None
        if parent is None or _is_ancestor(nodes, node.ref, parent.ref):
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def _is_ancestor(nodes: Dict[str, ScanNode], ref: str, of_ref: str) -> bool:
    seen: Set[str] = set()
    cur: Optional[str] = of_ref
    while cur is not None and cur not in seen:
        if cur == ref:
            return True
        seen.add(cur)
        node = nodes.get(cur)
        cur = node.parent_ref if node else None
    return False


def _total_products(root: ScanNode) -> int:
    # iterative post-order
    order, stack = [], [root]
    while stack:
        node = stack.pop()
        order.append(node)
        stack.extend(node.children)
    for node in reversed(order):
        node.total_product_count = node.product_count + sum(c.total_product_count for c in node.children)
    return root.total_product_count


def expand_selected_refs(nodes: Dict[str, ScanNode], selected: Iterable[str]) -> Set[str]:
    """Selected refs plus every descendant ref."""
    result: Set[str] = set()
    stack = [str(r) for r in selected]
    while stack:
        ref = stack.pop()
        if ref in result:
            continue
        result.add(ref)
        node = nodes.get(ref)
        if node:
            stack.extend(c.ref for c in node.children)
    return result
