"""Supplier category reconciliation, tree building and mapping operations.

Categories reference their parent by the supplier's external id. Feeds list
children before parents, point at parents that never arrive, and now and then
contain cycles, so reconciliation runs in two passes: upsert every category in
parent-first order, then link parents through the id map of this run only.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Set, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from .models import InternalCategory, SupplierCategory
from .progress import CancelToken
from .quality import recalculate_supplier_quality
from .similarity import Match, category_names, find_best_match
from .store import CatalogStore

log = logging.getLogger("pim.categories")

T = TypeVar("T")

COPY_WITH_PARENT = "with_parent"
COPY_CHILDREN_ONLY = "children_only"
COPY_PARENT_ONLY = "parent_only"
COPY_MODES = (COPY_WITH_PARENT, COPY_CHILDREN_ONLY, COPY_PARENT_ONLY)

_SLUG_STRIP_RE = re.compile(r"[^a-zа-яіїєґ0-9]+")


@dataclass
class IncomingCategory:
    external_id: str
    name_ru: str = ""
    name_uk: str = ""
    parent_ref: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name_uk or self.name_ru or ""


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    errors: int = 0
    cancelled: bool = False
    id_map: Dict[str, int] = field(default_factory=dict)


def order_parent_first(categories: Sequence[IncomingCategory]) -> List[IncomingCategory]:
    """Feed order rearranged so resolvable parents precede their children.

    Repeated scans pick up every category whose parent is absent or already
    placed. A scan without progress means the rest form cycles or wait on
    parents that never come; they are appended as-is so the loop always ends.
    """
    remaining = list(categories)
    placed: Set[str] = set()
    ordered: List[IncomingCategory] = []

    while remaining:
        pending = []
        for cat in remaining:
            if cat.parent_ref is None or cat.parent_ref in placed:
                ordered.append(cat)
                placed.add(cat.external_id)
            else:
                pending.append(cat)
        if len(pending) == len(remaining):
            log.warning("%d categories have unresolved or cyclic parents; treating them as roots", len(pending))
            ordered.extend(pending)
            break
        remaining = pending
    return ordered


def creates_cycle(parents: Dict[int, Optional[int]], child_id: int, parent_id: int) -> bool:
    """True when ``child_id`` is ``parent_id`` or one of its ancestors."""
    seen: Set[int] = set()
    cur: Optional[int] = parent_id
    while cur is not None and cur not in seen:
        if cur == child_id:
            return True
        seen.add(cur)
        cur = parents.get(cur)
    return False


def reconcile(store: CatalogStore, supplier_id: str, incoming: Sequence[IncomingCategory],
              cancel: Optional[CancelToken] = None,
              on_progress: Optional[Callable[[int, int], None]] = None) -> ReconcileResult:
    """Merge a flat category list into the store for one supplier."""
    result = ReconcileResult()
    ordered = order_parent_first(incoming)
    total = len(ordered)

    # pass 1: upsert by (supplier, external id)
    upserted: List[IncomingCategory] = []
    for i, cat in enumerate(ordered):
        if cancel is not None and cancel.cancelled:
            result.cancelled = True
            return result
        try:
            with store.savepoint():
                row, created = store.upsert_supplier_category(
                    supplier_id, cat.external_id, cat.display_name, cat.name_ru, cat.name_uk)
        except SQLAlchemyError as e:
            result.errors += 1
            log.warning("Category %s failed to upsert: %s", cat.external_id, e)
            continue
        result.id_map[cat.external_id] = row.id
        upserted.append(cat)
        if created:
            result.created += 1
        else:
            result.updated += 1
        if on_progress:
            on_progress(i + 1, total)

    # pass 2: link parents through this run's id map
    parents = store.supplier_category_parents(supplier_id)
    for cat in upserted:
        if cancel is not None and cancel.cancelled:
            result.cancelled = True
            return result
        child_id = result.id_map[cat.external_id]
        parent_id = result.id_map.get(cat.parent_ref) if cat.parent_ref else None
        if parent_id is not None and creates_cycle(parents, child_id, parent_id):
            log.warning("Category %s -> parent %s would form a cycle; kept as root",
                        cat.external_id, cat.parent_ref)
            parent_id = None
        parents[child_id] = parent_id
        store.set_category_parent(child_id, parent_id)

    return result


# --- trees ---------------------------------------------------------------------

@dataclass
class TreeNode(Generic[T]):
    item: T
    children: List["TreeNode[T]"] = field(default_factory=list)


def build_tree(items: Iterable[T], key: Callable[[T], Any] = lambda x: x.id,
               parent_key: Callable[[T], Any] = lambda x: x.parent_id) -> List[TreeNode[T]]:
    """Nest a flat list by parent id. Never raises on bad hierarchies.

    Nodes whose parent is missing, unknown, themselves or a descendant become
    roots, so every node is reachable from exactly one root.
    """
    items = list(items)
    nodes: Dict[Any, TreeNode[T]] = {}
    for item in items:
        nodes.setdefault(key(item), TreeNode(item))

    attached: Dict[Any, Any] = {}
    roots: List[TreeNode[T]] = []
    for item_key, node in nodes.items():
        parent = parent_key(node.item)
        if parent is None or parent not in nodes or _reaches(attached, parent, item_key):
            roots.append(node)
            continue
        attached[item_key] = parent
        nodes[parent].children.append(node)
    return roots


def _reaches(attached: Dict[Any, Any], start: Any, target: Any) -> bool:
    seen = set()
    cur = start
    while cur is not None and cur not in seen:
        if cur == target:
            return True
        seen.add(cur)
        cur = attached.get(cur)
    return False


def walk(roots: Iterable[TreeNode[T]]) -> List[TreeNode[T]]:
    """Pre-order flattening of a forest."""
    out: List[TreeNode[T]] = []
    stack = list(reversed(list(roots)))
    while stack:
        node = stack.pop()
        out.append(node)
        stack.extend(reversed(node.children))
    return out


def subtree_items(node: TreeNode[T]) -> List[T]:
    """The node's item followed by all descendants."""
    return [n.item for n in walk([node])]


def count_descendants(node: TreeNode[T]) -> int:
    return len(walk([node])) - 1


def find_node(roots: Iterable[TreeNode[T]], item_id: Any, key: Callable[[T], Any] = lambda x: x.id) -> Optional[TreeNode[T]]:
    for node in walk(roots):
        if key(node.item) == item_id:
            return node
    return None


def supplier_tree(store: CatalogStore, supplier_id: str) -> List[TreeNode[SupplierCategory]]:
    return build_tree(store.list_supplier_categories(supplier_id))


def internal_tree(store: CatalogStore) -> List[TreeNode[InternalCategory]]:
    return build_tree(store.list_internal_categories())


# --- mapping ---------------------------------------------------------------------

def map_category(store: CatalogStore, supplier_category_id: int, internal_category_id: Optional[int],
                 recalculate: bool = True) -> None:
    """Map one supplier category, or clear its mapping with None."""
    category = _require_supplier_category(store, supplier_category_id)
    store.set_mapping(supplier_category_id, internal_category_id)
    if recalculate:
        recalculate_supplier_quality(store, category.supplier_id)


def map_subtree(store: CatalogStore, supplier_category_id: int, internal_category_id: Optional[int]) -> int:
    """Apply one mapping to a category and all its descendants; returns how many."""
    category = _require_supplier_category(store, supplier_category_id)
    node = find_node(supplier_tree(store, category.supplier_id), supplier_category_id)
    items = subtree_items(node) if node else [category]
    for item in items:
        store.set_mapping(item.id, internal_category_id)
    recalculate_supplier_quality(store, category.supplier_id)
    log.info("Mapped %d categories under %s to %s", len(items), category.external_id, internal_category_id)
    return len(items)


def suggest_mapping(store: CatalogStore, category: SupplierCategory) -> Optional[Match]:
    return find_best_match(category_names(category), store.list_internal_categories())


# --- copying into the internal taxonomy ---------------------------------------

def slugify(name: str) -> str:
    slug = _SLUG_STRIP_RE.sub("-", (name or "").lower()).strip("-")
    return slug or "category"


def unique_slug(store: CatalogStore, name: str) -> str:
    """Slug of ``name``; collisions get -1, -2, ... appended."""
    base = slugify(name)
    slug, attempt = base, 1
    while store.slug_exists(slug):
        slug = f"{base}-{attempt}"
        attempt += 1
    return slug


def _copy_one(store: CatalogStore, category: SupplierCategory, parent_id: Optional[int]) -> InternalCategory:
    name = category.name_ru or category.name_uk or category.name
    description = " / ".join(n for n in (category.name_ru, category.name_uk) if n)
    internal = store.add_internal_category(InternalCategory(
        name=name,
        name_ru=category.name_ru or None,
        name_uk=category.name_uk or None,
        slug=unique_slug(store, name),
        description=description,
        parent_id=parent_id,
    ))
    store.set_mapping(category.id, internal.id)
    return internal


def _copy_nodes(store: CatalogStore, starts: Iterable[TreeNode[SupplierCategory]],
                parent_id: Optional[int], include_children: bool) -> int:
    copied = 0
    stack = [(node, parent_id) for node in reversed(list(starts))]
    while stack:
        node, parent = stack.pop()
        internal = _copy_one(store, node.item, parent)
        copied += 1
        if include_children:
            stack.extend((child, internal.id) for child in reversed(node.children))
    return copied


def copy_branch_to_internal(store: CatalogStore, supplier_category_id: int, mode: str = COPY_WITH_PARENT) -> int:
    """Mirror a supplier branch as internal categories and map each copy to its source."""
    if mode not in COPY_MODES:
        raise ValueError(f"Unknown copy mode: {mode}")
    category = _require_supplier_category(store, supplier_category_id)
    node = find_node(supplier_tree(store, category.supplier_id), supplier_category_id)

    if mode == COPY_WITH_PARENT:
        copied = _copy_nodes(store, [node], None, True)
    elif mode == COPY_CHILDREN_ONLY:
        copied = _copy_nodes(store, node.children, None, True)
    else:
        copied = _copy_nodes(store, [node], None, False)

    recalculate_supplier_quality(store, category.supplier_id)
    log.info("Copied %d categories from %s (%s)", copied, category.external_id, mode)
    return copied


def copy_tree_to_internal(store: CatalogStore, supplier_id: str) -> int:
    copied = _copy_nodes(store, supplier_tree(store, supplier_id), None, True)
    recalculate_supplier_quality(store, supplier_id)
    return copied


def _require_supplier_category(store: CatalogStore, category_id: int) -> SupplierCategory:
    category = store.get_supplier_category(category_id)
    if category is None:
        raise LookupError(f"Supplier category {category_id} not found")
    return category
