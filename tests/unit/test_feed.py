"""Feed parsing, record validation and pre-scan."""

import asyncio
import json

import pytest
from pydantic import ValidationError

from pim.exceptions import FeedParseError, UnsupportedFeedFormat
from pim.feed import (
    FeedProduct,
    attribute_names,
    expand_selected_refs,
    parse_feed,
    pre_scan,
    product_category_ref,
)
from pim import ingest
from pim.ingest import FeedPayload, feed_format, fetch_feed, from_upload


@pytest.mark.unit
class TestParseFeed:

    @pytest.mark.parametrize("text", ["", "{not json", "[1, 2]", '"products"', "{}", '{"products": []}'])
    def test_rejected(self, text):
        with pytest.raises(FeedParseError):
            parse_feed(text)

    def test_minimal(self):
        doc = parse_feed('{"products": {}}')
        assert doc.products == {}
        assert doc.categories == {} and doc.brands == {} and doc.attributes == {}

    def test_bad_optional_section_is_ignored(self):
        doc = parse_feed(json.dumps({"products": {}, "categories": ["x"], "brands": None, "date": "2024-05-01"}))
        assert doc.categories == {}
        assert doc.brands == {}

    def test_bytes(self):
        assert parse_feed(b'{"products": {"1": {}}}').products == {"1": {}}


@pytest.mark.unit
class TestFeedProduct:

    def test_full_record(self, make_product):
        raw = make_product("SKU-0001", price="1 499,00", images=("a.jpg", "b.jpg", "a.jpg"))
        raw["main"]["prices"] = {
            "retail": {"current": "199,99", "old": "249.00"},
            "purchase": {"cash": {"current": 150, "old": "n/a"}},
        }
        item = FeedProduct.model_validate(raw)
        assert item.main.sku == "SKU-0001"
        assert item.main.vendor_code == "VC-SKU-0001"
        assert item.main.category == "cat2"
        assert item.price_points() == {
            "retail.current": 199.99,
            "retail.old": 249.0,
            "purchase.cash.current": 150.0,
        }
        assert item.stock_points() == {"kyiv": 3, "lviv": 2}
        assert item.total_stock() == 5
        assert item.images.main == "a.jpg"
        assert list(item.images.additional.values()) == ["b.jpg", "a.jpg"]

    def test_category_object_and_numeric_refs(self):
        item = FeedProduct.model_validate({"main": {"sku": 15, "category": {"ref": 7}, "brand": 3}})
        assert item.main.sku == "15"
        assert item.main.category == "7"
        assert item.main.brand == "3"

    def test_lenient_shapes(self):
        item = FeedProduct.model_validate({
            "main": {"sku": "A", "name": {"ru": None, "uk": "Назва"}, "warehouse_balances": [], "prices": None},
            "images": {"main": None, "additional": ["x.jpg"]},
            "attributes": [],
        })
        assert item.main.name.ru == ""
        assert item.main.name.first() == "Назва"
        assert item.main.warehouse_balances == {}
        assert item.price_points() == {}
        assert item.images.additional == {"0": "x.jpg"}
        assert item.attributes == {}

    def test_unparseable_stock_falls_back_to_zero(self):
        item = FeedProduct.model_validate({"main": {"sku": "A", "balance": "lots", "warehouse_balances": {"k": "2,7"}}})
        assert item.total_stock() == 0
        assert item.stock_points() == {"k": 2}

    @pytest.mark.parametrize("raw", [
        "not an object",
        {"attributes": {}},
        {"main": "oops"},
        {"main": {"sku": ["a"]}},
    ])
    def test_malformed(self, raw):
        with pytest.raises(ValidationError):
            FeedProduct.model_validate(raw)

    def test_attribute_names(self):
        names = attribute_names({"a1": {"ru": "Цвет", "uk": "Колір"}, "a2": "broken", 3: {"uk": "Вага"}})
        assert set(names) == {"a1", "3"}
        assert names["3"].first("3") == "Вага"

    @pytest.mark.parametrize("raw, ref", [
        ({"main": {"category": "c1"}}, "c1"),
        ({"main": {"category": {"ref": 12}}}, "12"),
        ({"main": {"category": ""}}, None),
        ({"main": {}}, None),
        ("junk", None),
    ])
    def test_product_category_ref(self, raw, ref):
        assert product_category_ref(raw) == ref


@pytest.mark.unit
class TestPreScan:

    def test_tree_with_counts(self, make_feed, make_product):
        feed = make_feed(
            products={
                "1": make_product("SKU-0001", category="cat2"),
                "2": make_product("SKU-0002", category="cat2"),
                "3": make_product("SKU-0003", category="cat1"),
                "4": make_product("SKU-0004", category=None),
            },
            categories={
                "cat1": {"name": {"ru": "Инструменты", "uk": "Інструменти"}},
                "cat2": {"name": {"ru": "Дрели"}, "parent_ref": "cat1"},
                "cat3": {"name": {"uk": "Пили"}, "parent_ref": "cat2"},
            },
        )
        result = pre_scan(feed)
        assert result.total_products == 4
        assert result.skipped_products == 1
        assert [r.ref for r in result.roots] == ["cat1"]
        root = result.roots[0]
        assert (root.product_count, root.total_product_count) == (1, 3)
        cat2 = root.children[0]
        assert cat2.name == "Дрели"
        assert (cat2.product_count, cat2.total_product_count) == (2, 2)
        assert cat2.children[0].name == "Пили"

        d = root.to_dict()
        assert d["children"][0]["ref"] == "cat2"

    def test_flat_without_categories(self, make_product):
        feed = json.dumps({"products": {
            "1": make_product("SKU-0001", category="c9"),
            "2": make_product("SKU-0002", category={"ref": "c9"}),
            "3": make_product("SKU-0003", category="c8"),
        }})
        result = pre_scan(feed)
        assert {r.ref: r.total_product_count for r in result.roots} == {"c9": 2, "c8": 1}
        assert all(not r.children for r in result.roots)

    def test_cyclic_categories(self, make_feed):
        feed = make_feed(products={}, categories={
            "a": {"name": {"ru": "A"}, "parent_ref": "b"},
            "b": {"name": {"ru": "B"}, "parent_ref": "a"},
        })
        result = pre_scan(feed)
        assert sorted(r.ref for r in result.roots) == ["a", "b"]
        assert all(not r.children for r in result.roots)

    def test_expand_selected_refs(self, make_feed):
        feed = make_feed(products={}, categories={
            "r": {"name": {"ru": "R"}},
            "c1": {"name": {"ru": "C1"}, "parent_ref": "r"},
            "c2": {"name": {"ru": "C2"}, "parent_ref": "c1"},
            "o": {"name": {"ru": "O"}},
        })
        nodes = pre_scan(feed).nodes
        assert expand_selected_refs(nodes, ["c1"]) == {"c1", "c2"}
        assert expand_selected_refs(nodes, ["r", "o"]) == {"r", "c1", "c2", "o"}
        assert expand_selected_refs(nodes, ["missing"]) == {"missing"}


@pytest.mark.unit
class TestFeedSource:

    def test_feed_format(self):
        assert feed_format("export.JSON") == "json"
        with pytest.raises(UnsupportedFeedFormat) as exc:
            feed_format("export.xml")
        assert exc.value.format == "xml"
        with pytest.raises(UnsupportedFeedFormat):
            feed_format("export")

    def test_upload_strips_bom(self):
        payload = from_upload("\ufeff{}".encode("utf-8"), "feed.json")
        assert isinstance(payload, FeedPayload)
        assert payload.text() == "{}"

    def test_fetch_without_url(self, monkeypatch):
        monkeypatch.setattr(ingest, "FEED_URL", None)
        with pytest.raises(ValueError):
            asyncio.run(fetch_feed())

    def test_fetch_refuses_xml_before_download(self):
        with pytest.raises(UnsupportedFeedFormat):
            asyncio.run(fetch_feed("https://supplier.example/export/feed.xml"))
