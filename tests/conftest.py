"""Pytest configuration and fixtures."""

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from pim import models  # noqa: F401
from pim.db import enable_sqlite_savepoints
from pim.store import CatalogStore

# In-memory SQLite shared by every connection of one test
TEST_DATABASE_URL = "sqlite://"


@pytest.fixture(scope="function")
def test_engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    enable_sqlite_savepoints(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine):
    with Session(test_engine) as session:
        yield session


@pytest.fixture(scope="function")
def store(test_session) -> CatalogStore:
    return CatalogStore(test_session)


@pytest.fixture
def make_product():
    """Raw feed product record; keyword arguments override ``main`` fields."""

    def _make(sku, category="cat2", price="199,99", images=("https://img.example/1.jpg",),
              attributes=None, **main):
        record = {
            "main": {
                "sku": sku,
                "barcode": f"48200000{sku[-4:]}" if len(sku) >= 4 else "",
                "name": {"ru": f"Товар {sku}", "uk": f"Товар {sku} uk"},
                "vendorCode": f"VC-{sku}",
                "description": {"ru": "Описание", "uk": "Опис"},
                "brand": "b1",
                "category": category,
                "prices": {"retail": {"current": price}} if price is not None else {},
                "balance": 5,
                "warehouse_balances": {"kyiv": 3, "lviv": 2},
            },
            "images": {},
        }
        record["main"].update(main)
        if images:
            record["images"]["main"] = images[0]
            record["images"]["additional"] = {str(i): url for i, url in enumerate(images[1:], 1)}
        if attributes:
            record["attributes"] = attributes
        return record

    return _make


@pytest.fixture
def make_feed(make_product):
    """JSON feed text: cat1 (root) -> cat2, one brand, the given products."""

    def _make(products=None, categories=None, brands=None, attributes=None, as_text=True):
        if products is None:
            products = {"SKU-0001": make_product("SKU-0001")}
        data = {
            "categories": categories if categories is not None else {
                "cat1": {"name": {"ru": "Инструменты", "uk": "Інструменти"}},
                "cat2": {"name": {"ru": "Дрели", "uk": "Дрилі"}, "parent_ref": "cat1"},
            },
            "brands": brands if brands is not None else {"b1": {"name": "Bosch", "image": "https://img.example/bosch.png"}},
            "products": products,
        }
        if attributes is not None:
            data["attributes"] = attributes
        return json.dumps(data, ensure_ascii=False) if as_text else data

    return _make


# markers
def pytest_configure(config):
    config.addinivalue_line("markers", "unit: pure function tests (no database)")
    config.addinivalue_line("markers", "integration: tests against the in-memory catalog store")
