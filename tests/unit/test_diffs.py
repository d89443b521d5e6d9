"""Field-level diffs between two product snapshots."""

import pytest

from pim.diffs import ADDED, MODIFIED, REMOVED, build_snapshot, diff
from pim.models import Product


def snapshot(**overrides):
    base = {
        "external_id": "SKU-1",
        "name_ru": "Дрель",
        "name_uk": "Дриль",
        "description_ru": "",
        "description_uk": "",
        "images": ["https://img/1.jpg"],
        "total_stock": 5,
        "prices": {"retail.current": 199.99},
        "warehouse_balances": {"kyiv": 5},
    }
    base.update(overrides)
    return base


def by_field(changes):
    return {(c.field_name, c.change_type): c for c in changes}


@pytest.mark.unit
class TestDiff:

    def test_new_product(self):
        changes = diff(None, snapshot())
        assert len(changes) == 1
        assert changes[0].field_name == "product"
        assert changes[0].change_type == ADDED

    def test_identical(self):
        assert diff(snapshot(), snapshot()) == []

    def test_numbers_compare_by_value(self):
        old = snapshot(prices={"retail.current": "199,99"}, total_stock="5")
        assert diff(old, snapshot()) == []

    def test_price_modified(self):
        changes = by_field(diff(snapshot(), snapshot(prices={"retail.current": 249.5})))
        c = changes[("price.retail.current", MODIFIED)]
        assert (c.old_value, c.new_value) == ("199.99", "249.5")

    def test_new_price_type_is_added(self):
        changes = by_field(diff(snapshot(), snapshot(prices={"retail.current": 199.99, "retail.old": 250})))
        c = changes[("price.retail.old", ADDED)]
        assert (c.old_value, c.new_value) == ("0", "250")

    def test_stock_from_zero_is_added(self):
        changes = by_field(diff(snapshot(total_stock=0), snapshot(total_stock=3)))
        assert ("total_stock", ADDED) in changes

    def test_warehouse_change(self):
        changes = by_field(diff(snapshot(), snapshot(warehouse_balances={"kyiv": 2, "lviv": 1})))
        assert changes[("stock.kyiv", MODIFIED)].new_value == "2"
        assert changes[("stock.lviv", ADDED)].new_value == "1"

    def test_removed_price_types_are_ignored(self):
        assert diff(snapshot(), snapshot(prices={})) == []

    def test_text_added_and_truncated(self):
        long = "x" * 250
        changes = by_field(diff(snapshot(), snapshot(description_ru=long, name_uk="Дриль нова")))
        added = changes[("description_ru", ADDED)]
        assert added.old_value == ""
        assert len(added.new_value) == 100
        assert ("name_uk", MODIFIED) in changes

    def test_images_summarized(self):
        old = snapshot(images=["a", "b", "c"])
        new = snapshot(images=["a", "d"])
        changes = [c for c in diff(old, new) if c.field_name == "images"]
        assert sorted(c.change_type for c in changes) == [ADDED, REMOVED]
        assert all((c.old_value, c.new_value) == ("3", "2") for c in changes)

    def test_image_reorder_is_no_change(self):
        assert diff(snapshot(images=["a", "b"]), snapshot(images=["b", "a"])) == []


@pytest.mark.unit
def test_build_snapshot():
    product = Product(supplier_id="s1", supplier_sku="SKU-1", name_ru="Дрель", images=["u"], total_stock=4)
    snap = build_snapshot(product, {"retail.current": 10.0}, {"kyiv": 4})
    assert snap["external_id"] == "SKU-1"
    assert snap["name_uk"] == ""
    assert snap["images"] == ["u"]
    assert snap["prices"] == {"retail.current": 10.0}
    assert snap["warehouse_balances"] == {"kyiv": 4}
