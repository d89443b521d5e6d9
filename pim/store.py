"""Catalog store: every read and write the pipeline performs, over one Session.

Methods flush but never commit; transaction boundaries belong to the caller
(the importer commits per stage and per batch, the API per request).
"""
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func
from sqlmodel import Session, select

from .models import (
    FEED_PRICE_SOURCE,
    IMPORT_COMPLETED,
    Brand,
    CategoryMapping,
    ImportDiff,
    ImportLog,
    ImportRun,
    ImportSnapshot,
    InternalCategory,
    PriceRecord,
    Product,
    QualityChangeLog,
    QualityTemplate,
    SupplierCategory,
    WarehouseStock,
    utcnow,
)

log = logging.getLogger("pim.store")


class CatalogStore:
    def __init__(self, session: Session):
        self.session = session

    # --- transactions ----------------------------------------------------

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def refresh(self, row) -> None:
        self.session.refresh(row)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Isolate one record's writes; a failure rolls back only those."""
        with self.session.begin_nested():
            yield

    # --- import runs -----------------------------------------------------

    def create_import_run(self, supplier_id: str, filename: str, created_by: Optional[str],
                          selected_categories: Sequence[str], import_mode: str) -> ImportRun:
        run = ImportRun(
            supplier_id=supplier_id,
            filename=filename,
            created_by=created_by,
            selected_categories=list(selected_categories),
            import_mode=import_mode,
        )
        self.session.add(run)
        self.session.flush()
        return run

    def get_import_run(self, import_id: int) -> Optional[ImportRun]:
        return self.session.get(ImportRun, import_id)

    def finish_import_run(self, run: ImportRun, status: str, counters: Dict[str, int],
                          error_message: Optional[str] = None) -> ImportRun:
        run.status = status
        for name, value in counters.items():
            setattr(run, name, value)
        run.error_message = error_message
        run.completed_at = utcnow()
        self.session.add(run)
        self.session.flush()
        return run

    def list_import_runs(self, supplier_id: Optional[str] = None, limit: int = 50) -> List[ImportRun]:
        stmt = select(ImportRun)
        if supplier_id:
            stmt = stmt.where(ImportRun.supplier_id == supplier_id)
        stmt = stmt.order_by(ImportRun.id.desc()).limit(limit)
        return list(self.session.exec(stmt).all())

    def last_completed_import(self, supplier_id: str, before_id: Optional[int] = None) -> Optional[ImportRun]:
        stmt = select(ImportRun).where(
            ImportRun.supplier_id == supplier_id,
            ImportRun.status == IMPORT_COMPLETED,
        )
        if before_id is not None:
            stmt = stmt.where(ImportRun.id != before_id)
        stmt = stmt.order_by(ImportRun.completed_at.desc(), ImportRun.id.desc()).limit(1)
        return self.session.exec(stmt).first()

    def add_import_log(self, import_id: int, supplier_sku: str, action: str, message: str = "") -> None:
        self.session.add(ImportLog(import_id=import_id, supplier_sku=supplier_sku, action=action, message=message))

    def list_import_logs(self, import_id: int) -> List[ImportLog]:
        stmt = select(ImportLog).where(ImportLog.import_id == import_id).order_by(ImportLog.id)
        return list(self.session.exec(stmt).all())

    # --- snapshots & diffs -----------------------------------------------

    def add_snapshot(self, import_id: int, external_id: str, product_id: Optional[int], data: dict) -> None:
        self.session.add(ImportSnapshot(import_id=import_id, external_id=external_id,
                                        product_id=product_id, snapshot_data=data))

    def get_snapshot(self, import_id: int, external_id: str) -> Optional[dict]:
        stmt = select(ImportSnapshot).where(
            ImportSnapshot.import_id == import_id,
            ImportSnapshot.external_id == external_id,
        )
        row = self.session.exec(stmt).first()
        return row.snapshot_data if row else None

    def add_diffs(self, rows: Iterable[ImportDiff]) -> None:
        self.session.add_all(list(rows))

    def list_diffs(self, import_id: int, external_id: Optional[str] = None) -> List[ImportDiff]:
        stmt = select(ImportDiff).where(ImportDiff.import_id == import_id)
        if external_id is not None:
            stmt = stmt.where(ImportDiff.external_id == external_id)
        return list(self.session.exec(stmt.order_by(ImportDiff.id)).all())

    # --- supplier categories ---------------------------------------------

    def get_supplier_category(self, category_id: int) -> Optional[SupplierCategory]:
        return self.session.get(SupplierCategory, category_id)

    def upsert_supplier_category(self, supplier_id: str, external_id: str, name: str,
                                 name_ru: str, name_uk: str) -> Tuple[SupplierCategory, bool]:
        stmt = select(SupplierCategory).where(
            SupplierCategory.supplier_id == supplier_id,
            SupplierCategory.external_id == external_id,
        )
        row = self.session.exec(stmt).first()
        created = row is None
        if created:
            row = SupplierCategory(supplier_id=supplier_id, external_id=external_id)
        row.name = name
        row.name_ru = name_ru
        row.name_uk = name_uk
        row.updated_at = utcnow()
        self.session.add(row)
        self.session.flush()
        return row, created

    def set_category_parent(self, category_id: int, parent_id: Optional[int]) -> None:
        row = self.session.get(SupplierCategory, category_id)
        if row is not None and row.parent_id != parent_id:
            row.parent_id = parent_id
            self.session.add(row)

    def supplier_category_parents(self, supplier_id: str) -> Dict[int, Optional[int]]:
        stmt = select(SupplierCategory.id, SupplierCategory.parent_id).where(
            SupplierCategory.supplier_id == supplier_id)
        return {cid: pid for cid, pid in self.session.exec(stmt).all()}

    def list_supplier_categories(self, supplier_id: str) -> List[SupplierCategory]:
        stmt = select(SupplierCategory).where(SupplierCategory.supplier_id == supplier_id).order_by(SupplierCategory.id)
        return list(self.session.exec(stmt).all())

    def category_ids_by_external(self, supplier_id: str, external_ids: Iterable[str]) -> Dict[str, int]:
        refs = list(set(external_ids))
        if not refs:
            return {}
        stmt = select(SupplierCategory.external_id, SupplierCategory.id).where(
            SupplierCategory.supplier_id == supplier_id,
            SupplierCategory.external_id.in_(refs),
        )
        return {ext: cid for ext, cid in self.session.exec(stmt).all()}

    # --- internal categories & mappings ----------------------------------

    def get_internal_category(self, category_id: int) -> Optional[InternalCategory]:
        return self.session.get(InternalCategory, category_id)

    def list_internal_categories(self) -> List[InternalCategory]:
        return list(self.session.exec(select(InternalCategory).order_by(InternalCategory.id)).all())

    def slug_exists(self, slug: str) -> bool:
        stmt = select(InternalCategory.id).where(InternalCategory.slug == slug)
        return self.session.exec(stmt).first() is not None

    def add_internal_category(self, category: InternalCategory) -> InternalCategory:
        self.session.add(category)
        self.session.flush()
        return category

    def get_mapping(self, supplier_category_id: int) -> Optional[CategoryMapping]:
        stmt = select(CategoryMapping).where(CategoryMapping.supplier_category_id == supplier_category_id)
        return self.session.exec(stmt).first()

    def set_mapping(self, supplier_category_id: int, internal_category_id: Optional[int]) -> None:
        """Upsert the mapping, or delete it when ``internal_category_id`` is None."""
        row = self.get_mapping(supplier_category_id)
        if internal_category_id is None:
            if row is not None:
                self.session.delete(row)
            return
        if row is None:
            row = CategoryMapping(supplier_category_id=supplier_category_id,
                                  internal_category_id=internal_category_id)
        else:
            row.internal_category_id = internal_category_id
        self.session.add(row)
        self.session.flush()

    def internal_category_for(self, supplier_category_id: Optional[int]) -> Optional[int]:
        if supplier_category_id is None:
            return None
        row = self.get_mapping(supplier_category_id)
        return row.internal_category_id if row else None

    # --- brands ----------------------------------------------------------

    def upsert_brand(self, supplier_id: str, external_ref: str, name: str, logo_url: str) -> Tuple[Brand, bool]:
        stmt = select(Brand).where(Brand.supplier_id == supplier_id, Brand.external_ref == external_ref)
        row = self.session.exec(stmt).first()
        created = row is None
        if created:
            row = Brand(supplier_id=supplier_id, external_ref=external_ref)
        row.name = name
        row.logo_url = logo_url
        row.updated_at = utcnow()
        self.session.add(row)
        self.session.flush()
        return row, created

    # --- products --------------------------------------------------------

    def get_product(self, product_id: int) -> Optional[Product]:
        return self.session.get(Product, product_id)

    def products_by_sku(self, supplier_id: str, skus: Iterable[str]) -> Dict[str, Product]:
        skus = list(skus)
        if not skus:
            return {}
        stmt = select(Product).where(Product.supplier_id == supplier_id, Product.supplier_sku.in_(skus))
        return {p.supplier_sku: p for p in self.session.exec(stmt).all()}

    def list_products(self, supplier_id: Optional[str] = None,
                      supplier_category_ids: Optional[Iterable[int]] = None) -> List[Product]:
        stmt = select(Product)
        if supplier_id is not None:
            stmt = stmt.where(Product.supplier_id == supplier_id)
        if supplier_category_ids is not None:
            stmt = stmt.where(Product.supplier_category_id.in_(list(supplier_category_ids)))
        return list(self.session.exec(stmt.order_by(Product.id)).all())

    def save_products(self, products: Sequence[Product]) -> None:
        """Bulk write; rows get their ids on flush."""
        self.session.add_all(list(products))
        self.session.flush()

    def save_product(self, product: Product) -> None:
        self.session.add(product)
        self.session.flush()

    # --- prices & stock --------------------------------------------------

    def replace_prices(self, product_id: int, prices: Dict[str, float], currency: str = "UAH",
                       source: str = FEED_PRICE_SOURCE) -> int:
        self.session.exec(
            delete(PriceRecord).where(PriceRecord.product_id == product_id, PriceRecord.source == source)
        )
        self.session.add_all([
            PriceRecord(product_id=product_id, price_type=t, value=v, currency=currency, source=source)
            for t, v in prices.items()
        ])
        return len(prices)

    def list_prices(self, product_id: int) -> List[PriceRecord]:
        stmt = select(PriceRecord).where(PriceRecord.product_id == product_id).order_by(PriceRecord.id)
        return list(self.session.exec(stmt).all())

    def replace_stock(self, product_id: int, stock: Dict[str, int]) -> int:
        self.session.exec(delete(WarehouseStock).where(WarehouseStock.product_id == product_id))
        self.session.add_all([
            WarehouseStock(product_id=product_id, warehouse_code=code, quantity=qty)
            for code, qty in stock.items()
        ])
        return len(stock)

    def list_stock(self, product_id: int) -> List[WarehouseStock]:
        stmt = select(WarehouseStock).where(WarehouseStock.product_id == product_id).order_by(WarehouseStock.id)
        return list(self.session.exec(stmt).all())

    # --- quality ---------------------------------------------------------

    def get_quality_template(self, internal_category_id: Optional[int]) -> Optional[QualityTemplate]:
        if internal_category_id is None:
            return None
        stmt = select(QualityTemplate).where(QualityTemplate.internal_category_id == internal_category_id)
        return self.session.exec(stmt).first()

    def upsert_quality_template(self, internal_category_id: int, required_attributes: Sequence[str],
                                minimum_image_count: int, selling_price_required: bool) -> QualityTemplate:
        row = self.get_quality_template(internal_category_id)
        if row is None:
            row = QualityTemplate(internal_category_id=internal_category_id)
        row.required_attributes = list(required_attributes)
        row.minimum_image_count = minimum_image_count
        row.selling_price_required = selling_price_required
        row.updated_at = utcnow()
        self.session.add(row)
        self.session.flush()
        return row

    def add_quality_change(self, entry: QualityChangeLog) -> None:
        self.session.add(entry)

    def list_quality_changes(self, product_id: int) -> List[QualityChangeLog]:
        stmt = select(QualityChangeLog).where(QualityChangeLog.product_id == product_id).order_by(QualityChangeLog.id)
        return list(self.session.exec(stmt).all())

    def average_completeness(self, internal_category_id: int) -> Optional[float]:
        stmt = (
            select(func.avg(Product.completeness_score))
            .join(CategoryMapping, CategoryMapping.supplier_category_id == Product.supplier_category_id)
            .where(CategoryMapping.internal_category_id == internal_category_id)
        )
        return self.session.exec(stmt).one()
