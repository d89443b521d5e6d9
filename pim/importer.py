"""Import pipeline: feed -> categories -> brands -> products -> quality.

One run processes its product batches strictly in sequence. The store is
committed after the run record is created, after each stage and after each
batch, so a cancelled or failed run leaves every finished batch and its
counters durable.

Cancellation is cooperative. The token is polled before every category,
brand and product batch. A batch that has started is always prepared and
written in full; the run stops before the next one.
"""
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .categories import IncomingCategory, reconcile
from .diffs import build_snapshot, record_snapshot
from .exceptions import FeedParseError, ImportRunError
from .feed import (
    FeedBrand,
    FeedCategory,
    FeedProduct,
    Localized,
    attribute_names,
    category_nodes,
    expand_selected_refs,
    link_scan_nodes,
    parse_feed,
    product_category_ref,
)
from .models import IMPORT_CANCELLED, IMPORT_COMPLETED, IMPORT_FAILED, Product, utcnow
from .progress import (
    STAGE_BRANDS,
    STAGE_CATEGORIES,
    STAGE_COMPLETED,
    STAGE_PARSING,
    STAGE_PRODUCTS,
    STAGE_QUALITY,
    CancelToken,
    ProgressCallback,
    ProgressEvent,
)
from .quality import TRIGGER_IMPORT, refresh_product_quality
from .store import CatalogStore

log = logging.getLogger("pim.importer")

BATCH_SIZE = int(os.getenv("PIM_IMPORT_BATCH_SIZE", "50"))
BATCH_PAUSE_SEC = float(os.getenv("PIM_IMPORT_BATCH_PAUSE", "0.1"))
BATCH_DEADLINE_SEC = float(os.getenv("PIM_IMPORT_BATCH_DEADLINE", "0"))
DEFAULT_CURRENCY = "UAH"

MODE_CATEGORIES_ONLY = "categories_only"
MODE_CATEGORIES_AND_PRODUCTS = "categories_and_products"
IMPORT_MODES = (MODE_CATEGORIES_ONLY, MODE_CATEGORIES_AND_PRODUCTS)


@dataclass
class ImportStats:
    products_created: int = 0
    products_updated: int = 0
    products_skipped: int = 0
    categories_created: int = 0
    categories_updated: int = 0
    brands_created: int = 0
    brands_updated: int = 0
    prices_updated: int = 0
    stock_updated: int = 0
    images_count: int = 0
    errors_count: int = 0

    def add(self, other: "ImportStats") -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)

    def as_counters(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ImportResult:
    success: bool
    status: str
    import_id: Optional[int] = None
    stats: ImportStats = field(default_factory=ImportStats)
    error: Optional[str] = None
    touched_product_ids: List[int] = field(default_factory=list)

    @property
    def products_count(self) -> int:
        return self.stats.products_created + self.stats.products_updated

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "import_id": self.import_id,
            "error": self.error,
            "products_count": self.products_count,
            "stats": self.stats.as_counters(),
        }


@dataclass
class _Prepared:
    sku: str
    feed: FeedProduct
    fields: dict
    prices: Dict[str, float]
    stock: Dict[str, int]


class BatchDeadlineExceeded(Exception):
    pass


class ImportPipeline:
    def __init__(self, store: CatalogStore, batch_size: int = BATCH_SIZE,
                 batch_pause: float = BATCH_PAUSE_SEC, batch_deadline: float = BATCH_DEADLINE_SEC,
                 currency: str = DEFAULT_CURRENCY, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.batch_deadline = batch_deadline
        self.currency = currency
        self.sleep = sleep
        self.clock = clock

    def run(self, feed_text, supplier_id: str, user_id: Optional[str] = None,
            selected_category_refs: Optional[Sequence[str]] = None,
            import_mode: str = MODE_CATEGORIES_AND_PRODUCTS,
            progress: Optional[ProgressCallback] = None,
            cancel: Optional[CancelToken] = None,
            filename: str = "feed.json") -> ImportResult:
        if import_mode not in IMPORT_MODES:
            raise ValueError(f"Unknown import mode: {import_mode}")
        cancel = cancel or CancelToken()
        stats = ImportStats()
        selected = [str(r) for r in (selected_category_refs or [])]

        def emit(stage: str, current: int, total: int, step: Optional[str] = None):
            if progress is not None:
                progress(ProgressEvent(stage, current, total, import_id=run_id, step=step))

        run_id: Optional[int] = None
        emit(STAGE_PARSING, 0, 1)
        try:
            doc = parse_feed(feed_text)
        except FeedParseError as e:
            log.error("Feed rejected: %s", e)
            return ImportResult(success=False, status=IMPORT_FAILED, error=str(e), stats=stats)
        emit(STAGE_PARSING, 1, 1)

        try:
            run = self.store.create_import_run(supplier_id, filename, user_id, selected, import_mode)
            self.store.commit()
            run_id = run.id
        except SQLAlchemyError as e:
            self.store.rollback()
            log.exception("Failed to create import record for supplier %s", supplier_id)
            return ImportResult(success=False, status=IMPORT_FAILED,
                                error=f"Failed to create import record: {e}", stats=stats)

        log.info("Import %s started for supplier %s (%d products, mode=%s)",
                 run_id, supplier_id, len(doc.products), import_mode)

        status, error = IMPORT_COMPLETED, None
        touched: List[int] = []
        try:
            status = self._run_stages(doc, run_id, supplier_id, selected, import_mode,
                                      stats, touched, cancel, emit)
        except BatchDeadlineExceeded as e:
            status, error = IMPORT_FAILED, str(e)
            log.error("Import %s: %s", run_id, e)
        except Exception as e:
            self.store.rollback()
            status, error = IMPORT_FAILED, str(e) or type(e).__name__
            log.exception("Import %s failed", run_id)

        try:
            self._finalize(run_id, status, stats, error)
        except ImportRunError as e:
            return ImportResult(success=False, status=IMPORT_FAILED, import_id=run_id,
                                stats=stats, error=str(e), touched_product_ids=touched)

        if status == IMPORT_COMPLETED:
            emit(STAGE_COMPLETED, 1, 1)
        log.info("Import %s finished: %s %s", run_id, status, stats.as_counters())
        return ImportResult(
            success=status == IMPORT_COMPLETED,
            status=status,
            import_id=run_id,
            stats=stats,
            error=error or ("Cancelled" if status == IMPORT_CANCELLED else None),
            touched_product_ids=touched,
        )

    def _run_stages(self, doc, run_id, supplier_id, selected, import_mode, stats, touched, cancel, emit) -> str:
        if doc.categories:
            self._categories(doc.categories, supplier_id, stats, cancel, emit)
            if cancel.cancelled:
                return IMPORT_CANCELLED

        if doc.brands:
            self._brands(doc.brands, supplier_id, stats, cancel, emit)
            if cancel.cancelled:
                return IMPORT_CANCELLED

        if import_mode == MODE_CATEGORIES_AND_PRODUCTS:
            self._products(doc, run_id, supplier_id, selected, stats, touched, cancel, emit)
            if cancel.cancelled:
                return IMPORT_CANCELLED

            self._quality(touched, stats, cancel, emit)
            if cancel.cancelled:
                return IMPORT_CANCELLED

        return IMPORT_COMPLETED

    # --- stages ------------------------------------------------------------

    def _categories(self, raw: dict, supplier_id: str, stats: ImportStats, cancel: CancelToken, emit) -> None:
        total = len(raw)
        emit(STAGE_CATEGORIES, 0, total)
        incoming, errors = [], 0
        for ref, record in raw.items():
            if cancel.cancelled:
                return
            try:
                cat = FeedCategory.model_validate(record)
            except ValidationError as e:
                errors += 1
                log.warning("Skipping malformed category %s: %s", ref, _first_error(e))
                continue
            incoming.append(IncomingCategory(str(ref), cat.name.ru, cat.name.uk, cat.parent_ref))

        result = reconcile(self.store, supplier_id, incoming, cancel=cancel,
                           on_progress=lambda i, n: emit(STAGE_CATEGORIES, i, total))
        self.store.commit()
        stats.categories_created += result.created
        stats.categories_updated += result.updated
        stats.errors_count += errors + result.errors

    def _brands(self, raw: dict, supplier_id: str, stats: ImportStats, cancel: CancelToken, emit) -> None:
        total = len(raw)
        emit(STAGE_BRANDS, 0, total)
        done = ImportStats()
        for i, (ref, record) in enumerate(raw.items(), 1):
            if cancel.cancelled:
                break
            try:
                brand = FeedBrand.model_validate(record)
                with self.store.savepoint():
                    _, created = self.store.upsert_brand(supplier_id, str(ref), brand.name, brand.image or "")
            except ValidationError as e:
                done.errors_count += 1
                log.warning("Skipping malformed brand %s: %s", ref, _first_error(e))
                continue
            except SQLAlchemyError as e:
                done.errors_count += 1
                log.warning("Brand %s failed to upsert: %s", ref, e)
                continue
            if created:
                done.brands_created += 1
            else:
                done.brands_updated += 1
            emit(STAGE_BRANDS, i, total)
        self.store.commit()
        stats.add(done)

    def _products(self, doc, run_id, supplier_id, selected, stats, touched, cancel, emit) -> None:
        entries = [(str(sku), raw) for sku, raw in doc.products.items()]
        if selected:
            wanted = _selection(doc.categories, selected)
            entries = [(sku, raw) for sku, raw in entries if product_category_ref(raw) in wanted]

        names = attribute_names(doc.attributes)
        previous = self.store.last_completed_import(supplier_id, before_id=run_id)
        previous_id = previous.id if previous else None

        total = len(entries)
        emit(STAGE_PRODUCTS, 0, total)
        batches = [entries[i:i + self.batch_size] for i in range(0, total, self.batch_size)]
        for n, batch in enumerate(batches, 1):
            if cancel.cancelled:
                log.info("Import %s cancelled before batch %d/%d", run_id, n, len(batches))
                return
            started = self.clock()
            batch_stats, ids = self._process_batch(batch, (n - 1) * self.batch_size, total, run_id,
                                                   previous_id, supplier_id, names, emit)
            self.store.commit()
            stats.add(batch_stats)
            touched.extend(ids)

            elapsed = self.clock() - started
            if self.batch_deadline and elapsed > self.batch_deadline:
                raise BatchDeadlineExceeded(
                    f"Batch {n}/{len(batches)} took {elapsed:.1f}s, deadline is {self.batch_deadline:.1f}s")
            if self.batch_pause and n < len(batches):
                self.sleep(self.batch_pause)

    def _quality(self, product_ids: List[int], stats: ImportStats, cancel: CancelToken, emit) -> None:
        total = len(product_ids)
        emit(STAGE_QUALITY, 0, total)
        for i, product_id in enumerate(product_ids, 1):
            if cancel.cancelled:
                break
            product = self.store.get_product(product_id)
            if product is None:
                continue
            try:
                with self.store.savepoint():
                    refresh_product_quality(self.store, product, TRIGGER_IMPORT)
            except SQLAlchemyError as e:
                stats.errors_count += 1
                log.warning("Quality check failed for product %s: %s", product.supplier_sku, e)
            emit(STAGE_QUALITY, i, total)
        self.store.commit()

    # --- one batch -----------------------------------------------------------

    def _prepare(self, sku: str, raw, names: Dict[str, Localized]) -> _Prepared:
        item = FeedProduct.model_validate(raw)

        attributes_ru: Dict[str, str] = {}
        attributes_uk: Dict[str, str] = {}
        for ref, value in item.attributes.items():
            name = names.get(ref)
            if name is None:
                continue
            key = name.first(ref)
            attributes_ru[key] = value.ru
            attributes_uk[key] = value.uk

        images: List[str] = []
        if item.images.main:
            images.append(item.images.main)
        for url in item.images.additional.values():
            if url and url not in images:
                images.append(url)

        fields = {
            "barcode": item.main.barcode or "",
            "vendor_code": item.main.vendor_code or "",
            "brand_ref": item.main.brand,
            "name_ru": item.main.name.ru,
            "name_uk": item.main.name.uk,
            "description_ru": item.main.description.ru,
            "description_uk": item.main.description.uk,
            "attributes_ru": attributes_ru,
            "attributes_uk": attributes_uk,
            "images": images,
            "main_image": images[0] if images else "",
            "total_stock": item.total_stock(),
        }
        return _Prepared(sku, item, fields, item.price_points(), item.stock_points())

    def _process_batch(self, batch, offset, total, run_id, previous_id, supplier_id,
                       names, emit) -> Tuple[ImportStats, List[int]]:
        out = ImportStats()

        prepared: List[_Prepared] = []
        skipped: List[Tuple[str, str]] = []
        for sku, raw in batch:
            try:
                prepared.append(self._prepare(sku, raw, names))
            except ValidationError as e:
                reason = _first_error(e)
                skipped.append((sku, reason))
                log.warning("Skipping malformed product %s: %s", sku, reason)

        for sku, reason in skipped:
            out.products_skipped += 1
            out.errors_count += 1
            self.store.add_import_log(run_id, sku, "skipped", reason)

        existing = self.store.products_by_sku(supplier_id, [p.sku for p in prepared])
        category_ids = self.store.category_ids_by_external(
            supplier_id, [p.feed.main.category for p in prepared if p.feed.main.category])

        inserts: List[Tuple[_Prepared, dict]] = []
        updates: List[Tuple[_Prepared, dict, Product]] = []
        for p in prepared:
            values = dict(p.fields, supplier_category_id=category_ids.get(p.feed.main.category))
            row = existing.get(p.sku)
            if row is None:
                inserts.append((p, values))
            else:
                updates.append((p, values, row))

        written: List[Tuple[_Prepared, Product, str]] = []
        for p, row in self._insert_products(inserts, supplier_id, run_id, out):
            written.append((p, row, "created"))
        for p, row in self._update_products(updates, run_id, out):
            written.append((p, row, "updated"))

        ids = []
        for i, (p, row, action) in enumerate(written, 1):
            try:
                with self.store.savepoint():
                    n_prices = self.store.replace_prices(row.id, p.prices, currency=self.currency)
                    emit(STAGE_PRODUCTS, offset + i, total, step="prices")
                    n_stock = self.store.replace_stock(row.id, p.stock)
                    emit(STAGE_PRODUCTS, offset + i, total, step="stock")
                    record_snapshot(self.store, run_id, previous_id, row, build_snapshot(row, p.prices, p.stock))
                    self.store.add_import_log(run_id, p.sku, action,
                                              "New product created" if action == "created" else "Product updated")
            except SQLAlchemyError as e:
                out.errors_count += 1
                log.warning("Product %s: price/stock update failed: %s", p.sku, e)
                self._log_failure(run_id, p.sku, str(e))
                continue
            if action == "created":
                out.products_created += 1
            else:
                out.products_updated += 1
            out.prices_updated += n_prices
            out.stock_updated += n_stock
            out.images_count += len(row.images or [])
            ids.append(row.id)
            emit(STAGE_PRODUCTS, offset + i, total, step="images")
        return out, ids

    def _insert_products(self, pairs: List[Tuple[_Prepared, dict]], supplier_id: str, run_id: int,
                         out: ImportStats) -> List[Tuple[_Prepared, Product]]:
        """Bulk insert; on failure retry row by row so only bad rows are lost."""
        if not pairs:
            return []
        try:
            with self.store.savepoint():
                rows = [Product(supplier_id=supplier_id, supplier_sku=p.sku, **values) for p, values in pairs]
                self.store.save_products(rows)
            return [(p, row) for (p, _), row in zip(pairs, rows)]
        except SQLAlchemyError as e:
            log.warning("Bulk insert of %d products failed (%s); retrying one by one", len(pairs), e)

        ok = []
        for p, values in pairs:
            try:
                with self.store.savepoint():
                    row = Product(supplier_id=supplier_id, supplier_sku=p.sku, **values)
                    self.store.save_product(row)
            except SQLAlchemyError as e:
                out.errors_count += 1
                log.warning("Product %s failed to insert: %s", p.sku, e)
                self._log_failure(run_id, p.sku, str(e))
                continue
            ok.append((p, row))
        return ok

    def _update_products(self, items: List[Tuple[_Prepared, dict, Product]], run_id: int,
                         out: ImportStats) -> List[Tuple[_Prepared, Product]]:
        ok = []
        now = utcnow()
        for p, values, row in items:
            try:
                with self.store.savepoint():
                    for name, value in values.items():
                        setattr(row, name, value)
                    row.updated_at = now
                    self.store.save_product(row)
            except SQLAlchemyError as e:
                out.errors_count += 1
                log.warning("Product %s failed to update: %s", p.sku, e)
                self._log_failure(run_id, p.sku, str(e))
                continue
            ok.append((p, row))
        return ok

    def _log_failure(self, run_id: int, sku: str, message: str) -> None:
        with self.store.savepoint():
            self.store.add_import_log(run_id, sku, "failed", message[:500])

    def _finalize(self, run_id: int, status: str, stats: ImportStats, error: Optional[str]) -> None:
        """Write status and counters; runs on every path, cancelled and failed included."""
        try:
            run = self.store.get_import_run(run_id)
            if run is None:
                raise ImportRunError(f"Import record {run_id} disappeared", import_id=run_id)
            self.store.finish_import_run(run, status, stats.as_counters(), error)
            self.store.commit()
        except SQLAlchemyError as e:
            self.store.rollback()
            log.exception("Failed to finalize import %s", run_id)
            raise ImportRunError(f"Failed to update import record: {e}", import_id=run_id) from e


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    first = errors[0]
    loc = ".".join(str(x) for x in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}" if loc else first.get("msg", str(e))


def _selection(raw_categories: dict, selected: Sequence[str]) -> Set[str]:
    """Selected category refs closed over their descendants in the feed's tree."""
    nodes = category_nodes(raw_categories)
    link_scan_nodes(nodes)
    return expand_selected_refs(nodes, selected)
