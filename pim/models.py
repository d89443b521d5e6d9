"""SQLModel ORM models for the supplier catalog.

Supplier-side rows (categories, brands, products) are keyed by the supplier's
own identifiers; internal categories are the operator taxonomy they map onto.
Import runs, snapshots, diffs and quality change logs are append-only history.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Column, Field, JSON, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


FEED_PRICE_SOURCE = "feed-import"

IMPORT_PROCESSING = "processing"
IMPORT_COMPLETED = "completed"
IMPORT_CANCELLED = "cancelled"
IMPORT_FAILED = "failed"


class SupplierCategory(SQLModel, table=True):
    __tablename__ = "supplier_category"
    __table_args__ = (UniqueConstraint("supplier_id", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier_id: str = Field(index=True)
    external_id: str
    name: str = ""
    name_ru: str = ""
    name_uk: str = ""
    parent_id: Optional[int] = Field(default=None, foreign_key="supplier_category.id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class InternalCategory(SQLModel, table=True):
    __tablename__ = "internal_category"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    name_ru: Optional[str] = None
    name_uk: Optional[str] = None
    slug: str = Field(unique=True, index=True)
    description: str = ""
    parent_id: Optional[int] = Field(default=None, foreign_key="internal_category.id")
    created_at: datetime = Field(default_factory=utcnow)


class CategoryMapping(SQLModel, table=True):
    __tablename__ = "category_mapping"

    id: Optional[int] = Field(default=None, primary_key=True)
    # at most one active mapping per supplier category
    supplier_category_id: int = Field(foreign_key="supplier_category.id", unique=True)
    internal_category_id: int = Field(foreign_key="internal_category.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Brand(SQLModel, table=True):
    __tablename__ = "brand"
    __table_args__ = (UniqueConstraint("supplier_id", "external_ref"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier_id: str = Field(index=True)
    external_ref: str
    name: str = ""
    logo_url: str = ""
    updated_at: datetime = Field(default_factory=utcnow)


class Product(SQLModel, table=True):
    """Product row, updated in place on every import of the same SKU."""
    __tablename__ = "product"
    __table_args__ = (UniqueConstraint("supplier_id", "supplier_sku"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier_id: str = Field(index=True)
    supplier_sku: str
    barcode: str = ""
    vendor_code: str = ""
    brand_ref: Optional[str] = None
    supplier_category_id: Optional[int] = Field(default=None, foreign_key="supplier_category.id", index=True)
    name_ru: str = ""
    name_uk: str = ""
    description_ru: str = ""
    description_uk: str = ""
    attributes_ru: dict = Field(default_factory=dict, sa_column=Column(JSON))
    attributes_uk: dict = Field(default_factory=dict, sa_column=Column(JSON))
    images: list = Field(default_factory=list, sa_column=Column(JSON))
    main_image: str = ""
    total_stock: int = 0

    # derived by the quality engine
    is_ready: bool = False
    completeness_score: int = 0
    not_ready_reasons: list = Field(default_factory=list, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PriceRecord(SQLModel, table=True):
    __tablename__ = "product_price"

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    price_type: str  # dotted path, e.g. "retail.current"
    value: float
    currency: str = "UAH"
    source: str = FEED_PRICE_SOURCE


class WarehouseStock(SQLModel, table=True):
    __tablename__ = "warehouse_stock"

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    warehouse_code: str
    quantity: int = 0


class ImportRun(SQLModel, table=True):
    """One execution of the import pipeline. Terminal once status leaves 'processing'."""
    __tablename__ = "import_run"

    id: Optional[int] = Field(default=None, primary_key=True)
    supplier_id: str = Field(index=True)
    filename: str = ""
    status: str = Field(default=IMPORT_PROCESSING, index=True)
    import_mode: str = "categories_and_products"
    created_by: Optional[str] = None
    selected_categories: list = Field(default_factory=list, sa_column=Column(JSON))

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
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ImportLog(SQLModel, table=True):
    __tablename__ = "import_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    import_id: int = Field(foreign_key="import_run.id", index=True)
    supplier_sku: str
    action: str  # created | updated | skipped | failed
    message: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ImportSnapshot(SQLModel, table=True):
    __tablename__ = "import_snapshot"
    __table_args__ = (UniqueConstraint("import_id", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    import_id: int = Field(foreign_key="import_run.id", index=True)
    product_id: Optional[int] = Field(default=None, foreign_key="product.id")
    external_id: str = Field(index=True)
    snapshot_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


class ImportDiff(SQLModel, table=True):
    __tablename__ = "import_diff"

    id: Optional[int] = Field(default=None, primary_key=True)
    import_id: int = Field(foreign_key="import_run.id", index=True)
    product_id: Optional[int] = Field(default=None, foreign_key="product.id")
    external_id: str
    field_name: str
    old_value: str = ""
    new_value: str = ""
    change_type: str  # added | modified | removed
    created_at: datetime = Field(default_factory=utcnow)


class QualityTemplate(SQLModel, table=True):
    __tablename__ = "quality_template"

    id: Optional[int] = Field(default=None, primary_key=True)
    internal_category_id: int = Field(foreign_key="internal_category.id", unique=True)
    required_attributes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    minimum_image_count: int = 1
    selling_price_required: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class QualityChangeLog(SQLModel, table=True):
    __tablename__ = "quality_change_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    change_type: str = "readiness_status"
    old_value: str = ""
    new_value: str = ""
    reason: str = ""
    triggered_by: str = "manual"
    created_at: datetime = Field(default_factory=utcnow)
