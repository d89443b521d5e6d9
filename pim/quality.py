"""Product readiness scoring against per-category quality templates.

Four checks always make up the score: selling price, images, category
mapping and required attributes. A template that does not require a selling
price turns that check into an automatic pass; it still counts toward the
four.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Set

from .models import Product, QualityChangeLog
from .normalize import parse_numeric
from .store import CatalogStore

log = logging.getLogger("pim.quality")

SELLING_PRICE_TYPE = "retail.current"
TOTAL_CHECKS = 4

TRIGGER_IMPORT = "import"
TRIGGER_MANUAL = "manual"
TRIGGER_AUTO = "auto_quality_check"


class BlockingReason(str, Enum):
    NO_SELLING_PRICE = "no_selling_price"
    NO_IMAGES = "no_images"
    NO_CATEGORY_MAPPING = "no_category_mapping"
    MISSING_REQUIRED_ATTRIBUTES = "missing_required_attributes"


REASON_LABELS = {
    BlockingReason.NO_SELLING_PRICE: "Missing selling price",
    BlockingReason.NO_IMAGES: "No images available",
    BlockingReason.NO_CATEGORY_MAPPING: "Category not mapped",
    BlockingReason.MISSING_REQUIRED_ATTRIBUTES: "Missing required attributes",
}


@dataclass
class TemplateRules:
    required_attributes: List[str] = field(default_factory=list)
    minimum_image_count: int = 1
    selling_price_required: bool = True


@dataclass
class QualityInput:
    prices: Mapping[str, object]
    image_count: int
    internal_category_id: Optional[int]
    attribute_names: Set[str]


@dataclass
class QualityScore:
    completeness: int
    reasons: List[BlockingReason]
    has_selling_price: bool
    has_images: bool
    has_category_mapping: bool
    has_required_attributes: bool

    @property
    def is_ready(self) -> bool:
        return self.completeness == 100 and not self.reasons

    def missing_labels(self) -> List[str]:
        return [REASON_LABELS[r] for r in self.reasons]


def score(item: QualityInput, rules: TemplateRules) -> QualityScore:
    selling_price = parse_numeric(item.prices.get(SELLING_PRICE_TYPE))
    has_selling_price = selling_price is not None and selling_price > 0
    has_images = item.image_count >= rules.minimum_image_count
    has_mapping = item.internal_category_id is not None
    # exact, case-sensitive keys
    has_attributes = all(name in item.attribute_names for name in rules.required_attributes)

    price_ok = has_selling_price or not rules.selling_price_required
    reasons = []
    if not price_ok:
        reasons.append(BlockingReason.NO_SELLING_PRICE)
    if not has_images:
        reasons.append(BlockingReason.NO_IMAGES)
    if not has_mapping:
        reasons.append(BlockingReason.NO_CATEGORY_MAPPING)
    if not has_attributes:
        reasons.append(BlockingReason.MISSING_REQUIRED_ATTRIBUTES)

    passed = sum([price_ok, has_images, has_mapping, has_attributes])
    return QualityScore(
        completeness=round(100 * passed / TOTAL_CHECKS),
        reasons=reasons,
        has_selling_price=has_selling_price,
        has_images=has_images,
        has_category_mapping=has_mapping,
        has_required_attributes=has_attributes,
    )


def rules_for(store: CatalogStore, internal_category_id: Optional[int]) -> TemplateRules:
    """Template of the internal category, or the defaults when there is none."""
    template = store.get_quality_template(internal_category_id)
    if template is None:
        return TemplateRules()
    return TemplateRules(
        required_attributes=list(template.required_attributes or []),
        minimum_image_count=template.minimum_image_count,
        selling_price_required=template.selling_price_required,
    )


def quality_input(store: CatalogStore, product: Product) -> QualityInput:
    prices = {p.price_type: p.value for p in store.list_prices(product.id)}
    names = set(product.attributes_ru or {}) | set(product.attributes_uk or {})
    return QualityInput(
        prices=prices,
        image_count=len(product.images or []),
        internal_category_id=store.internal_category_for(product.supplier_category_id),
        attribute_names=names,
    )


def readiness_reason(result: QualityScore) -> str:
    if result.is_ready:
        return "All quality checks passed"
    return "Failed checks: " + ", ".join(result.missing_labels())


def refresh_product_quality(store: CatalogStore, product: Product, triggered_by: str = TRIGGER_MANUAL) -> QualityScore:
    """Recompute and store a product's score; log readiness flips."""
    item = quality_input(store, product)
    result = score(item, rules_for(store, item.internal_category_id))

    was_ready = bool(product.is_ready)
    product.completeness_score = result.completeness
    product.not_ready_reasons = [r.value for r in result.reasons]
    product.is_ready = result.is_ready
    store.save_product(product)

    if was_ready != result.is_ready:
        store.add_quality_change(QualityChangeLog(
            product_id=product.id,
            change_type="readiness_status",
            old_value=str(was_ready).lower(),
            new_value=str(result.is_ready).lower(),
            reason=readiness_reason(result),
            triggered_by=triggered_by,
        ))
        log.info("Product %s readiness %s -> %s (%s)", product.id, was_ready, result.is_ready, triggered_by)
    return result


def recalculate_supplier_quality(store: CatalogStore, supplier_id: str, triggered_by: str = TRIGGER_AUTO) -> int:
    """Rescore every product of a supplier; returns how many changed readiness."""
    changed = 0
    for product in store.list_products(supplier_id=supplier_id):
        was_ready = product.is_ready
        if refresh_product_quality(store, product, triggered_by).is_ready != was_ready:
            changed += 1
    return changed


def category_average_quality(store: CatalogStore, internal_category_id: int) -> int:
    avg = store.average_completeness(internal_category_id)
    return round(avg) if avg is not None else 0
