"""Reconciliation, mapping and copying of supplier categories."""

import pytest

from pim.categories import (
    COPY_CHILDREN_ONLY,
    COPY_PARENT_ONLY,
    COPY_WITH_PARENT,
    IncomingCategory,
    copy_branch_to_internal,
    copy_tree_to_internal,
    internal_tree,
    map_category,
    map_subtree,
    reconcile,
    suggest_mapping,
    supplier_tree,
    unique_slug,
)
from pim.models import InternalCategory, Product
from pim.progress import CancelToken
from pim.quality import category_average_quality, recalculate_supplier_quality


@pytest.fixture
def branch(store):
    """s1: tools -> drills -> cordless, plus a separate garden root."""
    reconcile(store, "s1", [
        IncomingCategory("tools", "Инструменты", "Інструменти"),
        IncomingCategory("drills", "Дрели", "Дрилі", parent_ref="tools"),
        IncomingCategory("cordless", "Аккумуляторные", "", parent_ref="drills"),
        IncomingCategory("garden", "", "Сад"),
    ])
    store.commit()
    return {c.external_id: c for c in store.list_supplier_categories("s1")}


def add_product(store, sku, category, **fields):
    values = dict(images=["https://img/1.jpg"], total_stock=1)
    values.update(fields)
    product = Product(supplier_id="s1", supplier_sku=sku, supplier_category_id=category.id, **values)
    store.save_product(product)
    store.replace_prices(product.id, {"retail.current": 100.0})
    return product


@pytest.mark.integration
class TestReconcile:

    def test_counts_and_ids(self, store):
        incoming = [IncomingCategory("b", "B", parent_ref="a"), IncomingCategory("a", "A")]
        result = reconcile(store, "s1", incoming)
        assert (result.created, result.updated, result.errors) == (2, 0, 0)
        assert set(result.id_map) == {"a", "b"}

        again = reconcile(store, "s1", incoming)
        assert (again.created, again.updated) == (0, 2)
        assert again.id_map == result.id_map

    def test_names_updated(self, store, branch):
        reconcile(store, "s1", [IncomingCategory("garden", "Сад и огород", "Сад і город")])
        garden = store.get_supplier_category(branch["garden"].id)
        assert garden.name == "Сад і город"
        assert garden.name_ru == "Сад и огород"

    def test_parent_from_previous_run_is_not_used(self, store, branch):
        # "tools" is not in this run, so "drills" cannot link to it
        reconcile(store, "s1", [IncomingCategory("drills", "Дрели", "Дрилі", parent_ref="tools")])
        assert store.get_supplier_category(branch["drills"].id).parent_id is None

    def test_progress_and_cancel(self, store):
        token = CancelToken()
        seen = []

        def on_progress(i, n):
            seen.append((i, n))
            token.cancel()

        incoming = [IncomingCategory("a", "A"), IncomingCategory("b", "B")]
        result = reconcile(store, "s1", incoming, cancel=token, on_progress=on_progress)
        assert result.cancelled
        assert seen == [(1, 2)]
        assert result.created == 1


@pytest.mark.integration
class TestTrees:

    def test_supplier_tree(self, store, branch):
        roots = supplier_tree(store, "s1")
        assert sorted(r.item.external_id for r in roots) == ["garden", "tools"]
        tools = next(r for r in roots if r.item.external_id == "tools")
        assert tools.children[0].item.external_id == "drills"
        assert tools.children[0].children[0].item.external_id == "cordless"


@pytest.mark.integration
class TestMapping:

    @pytest.fixture
    def internal(self, store):
        return store.add_internal_category(InternalCategory(name="Дрилі", name_ru="Дрели", slug="drills"))

    def test_map_and_clear(self, store, branch, internal):
        product = add_product(store, "P1", branch["drills"])
        map_category(store, branch["drills"].id, internal.id)
        assert store.internal_category_for(branch["drills"].id) == internal.id
        assert product.is_ready

        map_category(store, branch["drills"].id, None)
        assert store.get_mapping(branch["drills"].id) is None
        assert not product.is_ready
        assert product.not_ready_reasons == ["no_category_mapping"]
        assert [c.new_value for c in store.list_quality_changes(product.id)] == ["true", "false"]

    def test_remap_replaces(self, store, branch, internal):
        other = store.add_internal_category(InternalCategory(name="Інше", slug="other"))
        map_category(store, branch["drills"].id, internal.id)
        map_category(store, branch["drills"].id, other.id)
        assert store.internal_category_for(branch["drills"].id) == other.id

    def test_missing_supplier_category(self, store, internal):
        with pytest.raises(LookupError):
            map_category(store, 999, internal.id)

    def test_map_subtree(self, store, branch, internal):
        mapped = map_subtree(store, branch["drills"].id, internal.id)
        assert mapped == 2
        assert store.internal_category_for(branch["cordless"].id) == internal.id
        assert store.internal_category_for(branch["tools"].id) is None

        assert map_subtree(store, branch["tools"].id, None) == 3
        assert store.internal_category_for(branch["cordless"].id) is None

    def test_suggest_mapping(self, store, branch, internal):
        match = suggest_mapping(store, branch["drills"])
        assert match.category.id == internal.id
        assert match.score == 100
        assert suggest_mapping(store, branch["garden"]) is None


@pytest.mark.integration
class TestCopyToInternal:

    def test_with_parent(self, store, branch):
        assert copy_branch_to_internal(store, branch["drills"].id, COPY_WITH_PARENT) == 2
        roots = internal_tree(store)
        assert [r.item.name for r in roots] == ["Дрели"]
        assert roots[0].item.parent_id is None
        assert roots[0].item.slug == "дрели"
        assert roots[0].item.description == "Дрели / Дрилі"
        assert roots[0].children[0].item.name == "Аккумуляторные"
        assert store.internal_category_for(branch["cordless"].id) == roots[0].children[0].item.id

    def test_children_only(self, store, branch):
        assert copy_branch_to_internal(store, branch["tools"].id, COPY_CHILDREN_ONLY) == 2
        roots = internal_tree(store)
        assert [r.item.name for r in roots] == ["Дрели"]
        assert store.internal_category_for(branch["tools"].id) is None

    def test_parent_only(self, store, branch):
        assert copy_branch_to_internal(store, branch["tools"].id, COPY_PARENT_ONLY) == 1
        (only,) = store.list_internal_categories()
        assert only.name == "Инструменты"
        assert store.internal_category_for(branch["drills"].id) is None

    def test_slug_collisions(self, store, branch):
        copy_branch_to_internal(store, branch["drills"].id, COPY_PARENT_ONLY)
        copy_branch_to_internal(store, branch["drills"].id, COPY_PARENT_ONLY)
        copy_branch_to_internal(store, branch["drills"].id, COPY_PARENT_ONLY)
        assert [c.slug for c in store.list_internal_categories()] == ["дрели", "дрели-1", "дрели-2"]
        assert unique_slug(store, "Дрели") == "дрели-3"

    def test_uk_only_name(self, store, branch):
        copy_branch_to_internal(store, branch["garden"].id, COPY_PARENT_ONLY)
        (garden,) = store.list_internal_categories()
        assert (garden.name, garden.name_ru, garden.name_uk) == ("Сад", None, "Сад")
        assert garden.description == "Сад"

    def test_bad_mode(self, store, branch):
        with pytest.raises(ValueError):
            copy_branch_to_internal(store, branch["tools"].id, "everything")

    def test_copy_whole_tree(self, store, branch):
        product = add_product(store, "P1", branch["cordless"])
        assert copy_tree_to_internal(store, "s1") == 4
        assert len(internal_tree(store)) == 2
        assert all(store.internal_category_for(c.id) is not None for c in branch.values())
        assert product.is_ready


@pytest.mark.integration
class TestQualityAggregates:

    def test_category_average(self, store, branch):
        internal = store.add_internal_category(InternalCategory(name="Дрилі", slug="drills"))
        add_product(store, "P1", branch["drills"])
        add_product(store, "P2", branch["drills"], images=[])
        map_category(store, branch["drills"].id, internal.id)
        # 100 and 75
        assert category_average_quality(store, internal.id) == 88

    def test_empty_category_average(self, store):
        internal = store.add_internal_category(InternalCategory(name="Порожня", slug="empty"))
        assert category_average_quality(store, internal.id) == 0

    def test_recalculate_counts_flips(self, store, branch):
        internal = store.add_internal_category(InternalCategory(name="Дрилі", slug="drills"))
        add_product(store, "P1", branch["drills"])
        add_product(store, "P2", branch["drills"], images=[])
        store.set_mapping(branch["drills"].id, internal.id)
        assert recalculate_supplier_quality(store, "s1") == 1
        assert recalculate_supplier_quality(store, "s1") == 0

    def test_template_minimum_images(self, store, branch):
        internal = store.add_internal_category(InternalCategory(name="Дрилі", slug="drills"))
        store.upsert_quality_template(internal.id, [], minimum_image_count=2, selling_price_required=False)
        product = add_product(store, "P1", branch["drills"])
        map_category(store, branch["drills"].id, internal.id)
        assert product.not_ready_reasons == ["no_images"]
        assert product.completeness_score == 75
