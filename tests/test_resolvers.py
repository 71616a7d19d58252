"""Tests for dependency resolution."""

import asyncio

import pytest

from catalog_sync.lookups import LookupTable, LookupTables
from catalog_sync.models import ResolvedRecord, SkipKind, SkippedRecord
from catalog_sync.resolvers import DependencyResolver


@pytest.fixture
def tables():
    return LookupTables(
        categories=LookupTable("category", {"Shoes": 1, "Running": 2}),
        category_names={"C-SHOES": "Shoes", "C-RUN": "Running"},
        brands=LookupTable("brand", {"Acme": 10}),
        fields=LookupTable("field", {"2|Color": 7, "0|Weight:": 8}),
        field_values=LookupTable("field_value", {"7|Red": 70}),
    )


def _product_row(ref_id, brand="Acme", category="C-RUN"):
    return {
        "RefId": ref_id,
        "Name": f"Product {ref_id}",
        "CategoryUniqueIdentifier": category,
        "BrandName": brand,
        "IsActive": "true",
    }


class TestProductResolution:
    """Category and brand resolution for products."""

    @pytest.mark.asyncio
    async def test_resolves_category_and_brand(self, tables, make_entity):
        resolver = DependencyResolver(tables)
        result = await resolver.resolve(make_entity("product", _product_row("P1")))

        assert isinstance(result, ResolvedRecord)
        assert result.method == "POST"
        assert result.path == "catalog/pvt/product"
        assert result.body["CategoryId"] == 2
        assert result.body["BrandId"] == 10
        assert result.body["IsActive"] is True
        assert "BrandName" not in result.body

    @pytest.mark.asyncio
    async def test_unknown_brand_is_skipped(self, tables, make_entity):
        resolver = DependencyResolver(tables)
        result = await resolver.resolve(make_entity("product", _product_row("P1", brand="X")))

        assert isinstance(result, SkippedRecord)
        assert result.reason == "brand not found: X"
        assert result.kind == SkipKind.LOOKUP_MISS

    @pytest.mark.asyncio
    async def test_unknown_category_is_skipped(self, tables, make_entity):
        resolver = DependencyResolver(tables)
        result = await resolver.resolve(make_entity("product", _product_row("P1", category="C-NONE")))

        assert isinstance(result, SkippedRecord)
        assert result.reason == "category not found: C-NONE"

    @pytest.mark.asyncio
    async def test_category_id_in_row_wins(self, tables, make_entity):
        row = _product_row("P1", category="C-NONE")
        row["CategoryId"] = "99"
        result = await DependencyResolver(tables).resolve(make_entity("product", row))

        assert isinstance(result, ResolvedRecord)
        assert result.body["CategoryId"] == 99

    @pytest.mark.asyncio
    async def test_category_name_used_directly(self, tables, make_entity):
        """An identifier missing from the name map is tried as a category name."""
        result = await DependencyResolver(tables).resolve(make_entity("product", _product_row("P1", category="Shoes")))
        assert result.body["CategoryId"] == 1

    @pytest.mark.asyncio
    async def test_skip_category_lookup(self, tables, make_entity):
        resolver = DependencyResolver(tables, skip_category_lookup=True)
        row = _product_row("P1", category="")
        result = await resolver.resolve(make_entity("product", row))

        assert isinstance(result, ResolvedRecord)
        assert "CategoryId" not in result.body

    @pytest.mark.asyncio
    async def test_blank_required_reference_is_skipped(self, tables, make_entity):
        result = await DependencyResolver(tables).resolve(make_entity("product", _product_row("P1", brand=" ")))
        assert isinstance(result, SkippedRecord)
        assert result.reason == "BrandName is empty"

    @pytest.mark.asyncio
    async def test_update_resolves_own_id(self, tables, make_entity, fake_reader):
        reader = fake_reader(products={"P1": 900})
        resolver = DependencyResolver(tables, reader=reader)
        result = await resolver.resolve(make_entity("product", _product_row("P1")), action="update")

        assert result.method == "PUT"
        assert result.path == "catalog/pvt/product/900"
        assert result.body["Id"] == 900


class TestRefIdResolution:
    """Product and SKU ids by reference code."""

    @pytest.mark.asyncio
    async def test_one_remote_call_per_ref_id(self, tables, make_entity, fake_reader):
        """100 SKUs of one product trigger a single remote lookup."""
        reader = fake_reader(products={"P1": 55})
        resolver = DependencyResolver(tables, reader=reader)

        results = []
        for i in range(100):
            entity = make_entity("sku", {"RefId": f"S{i}", "ProductRefId": "P1", "Name": "x"})
            results.append(await resolver.resolve(entity))

        assert all(r.body["ProductId"] == 55 for r in results)
        assert reader.calls[("product", "P1")] == 1
        assert resolver.remote_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_call(self, tables, make_entity, fake_reader):
        reader = fake_reader(products={"P1": 55}, delay=0.01)
        resolver = DependencyResolver(tables, reader=reader)
        entities = [
            make_entity("sku", {"RefId": f"S{i}", "ProductRefId": "P1", "Name": "x"})
            for i in range(20)
        ]

        results = await asyncio.gather(*(resolver.resolve(e) for e in entities))

        assert all(isinstance(r, ResolvedRecord) for r in results)
        assert reader.calls[("product", "P1")] == 1

    @pytest.mark.asyncio
    async def test_misses_are_cached(self, tables, make_entity, fake_reader):
        reader = fake_reader()
        resolver = DependencyResolver(tables, reader=reader)

        for i in range(5):
            result = await resolver.resolve(make_entity("sku", {"RefId": f"S{i}", "ProductRefId": "GONE", "Name": "x"}))
            assert isinstance(result, SkippedRecord)
            assert result.kind == SkipKind.REMOTE_LOOKUP
            assert result.reason == "product not found: GONE"

        assert reader.calls[("product", "GONE")] == 1

    @pytest.mark.asyncio
    async def test_remote_failure_is_skipped_not_raised(self, tables, make_entity, fake_reader):
        reader = fake_reader(fail={("product", "P1")})
        resolver = DependencyResolver(tables, reader=reader)
        result = await resolver.resolve(make_entity("sku", {"RefId": "S1", "ProductRefId": "P1", "Name": "x"}))

        assert isinstance(result, SkippedRecord)
        assert result.kind == SkipKind.REMOTE_LOOKUP
        assert "lookup failed" in result.reason

    @pytest.mark.asyncio
    async def test_run_map_before_artifact_before_remote(self, tables, make_entity, fake_reader):
        reader = fake_reader(products={"P1": 1, "P2": 2, "P3": 3})
        tables.products = LookupTable("product", {"P1": 100, "P2": 200})
        resolver = DependencyResolver(tables, reader=reader)
        resolver.record_created("product", "P1", 1000)

        ids = []
        for ref in ("P1", "P2", "P3"):
            result = await resolver.resolve(make_entity("sku", {"RefId": f"S-{ref}", "ProductRefId": ref, "Name": "x"}))
            ids.append(result.body["ProductId"])

        assert ids == [1000, 200, 3]
        assert reader.calls[("product", "P1")] == 0
        assert reader.calls[("product", "P2")] == 0

    @pytest.mark.asyncio
    async def test_no_reader_means_lookup_miss(self, tables, make_entity):
        result = await DependencyResolver(tables).resolve(
            make_entity("sku", {"RefId": "S1", "ProductRefId": "P1", "Name": "x"})
        )
        assert result.kind == SkipKind.LOOKUP_MISS
        assert result.reason == "product not found: P1"


class TestPathsAndAssociations:
    """Path templates and specification associations."""

    @pytest.mark.asyncio
    async def test_price_uses_account_and_sku_id(self, tables, make_entity, fake_reader):
        resolver = DependencyResolver(tables, reader=fake_reader(skus={"SKU-1": 77}), context={"account_name": "acme"})
        result = await resolver.resolve(make_entity("price", {"refId": "SKU-1", "basePrice": "19.90", "listPrice": "25"}))

        assert result.method == "PUT"
        assert result.path == "https://api.vtex.com/acme/pricing/prices/77"
        assert result.body == {"basePrice": 19.9, "listPrice": 25.0}

    @pytest.mark.asyncio
    async def test_inventory_path(self, tables, make_entity):
        tables.skus = LookupTable("sku", {"SKU-1": 77})
        result = await DependencyResolver(tables).resolve(
            make_entity("inventory", {"refId": "SKU-1", "warehouseId": "1_1", "quantity": "5", "unlimitedQuantity": "false"})
        )
        assert result.path == "logistics/pvt/inventory/skus/77/warehouses/1_1"
        assert result.body["quantity"] == 5

    @pytest.mark.asyncio
    async def test_missing_path_value_is_skipped(self, tables, make_entity):
        tables.skus = LookupTable("sku", {"SKU-1": 77})
        result = await DependencyResolver(tables).resolve(make_entity("skuean", {"SkuRefId": "SKU-1", "EAN": ""}))

        assert isinstance(result, SkippedRecord)
        assert result.kind == SkipKind.INVALID
        assert result.reason == "missing value for EAN"

    @pytest.mark.asyncio
    async def test_unsupported_update_is_invalid(self, tables, make_entity):
        result = await DependencyResolver(tables).resolve(
            make_entity("skuean", {"SkuRefId": "SKU-1", "EAN": "123"}), action="update"
        )
        assert result.kind == SkipKind.INVALID

    @pytest.mark.asyncio
    async def test_product_specification(self, tables, make_entity):
        tables.products = LookupTable("product", {"P1": 55})
        row = {
            "ProductRefId": "P1",
            "CategoryUniqueIdentifier": "C-RUN",
            "FieldName": "Color",
            "FieldValue": "Red",
        }
        result = await DependencyResolver(tables).resolve(make_entity("productspecification", row))

        assert result.path == "catalog/pvt/product/55/specification"
        assert result.body == {"FieldId": 7, "FieldValueId": 70}

    @pytest.mark.asyncio
    async def test_free_text_specification_without_value_id(self, tables, make_entity):
        tables.products = LookupTable("product", {"P1": 55})
        row = {"ProductRefId": "P1", "FieldName": "Weight:", "FieldValue": "2 kg", "Text": "2 kg"}
        result = await DependencyResolver(tables).resolve(make_entity("productspecification", row))

        assert result.body == {"FieldId": 8, "Text": "2 kg"}

    @pytest.mark.asyncio
    async def test_sku_specification_needs_value(self, tables, make_entity):
        tables.skus = LookupTable("sku", {"S1": 5})
        row = {"SkuRefId": "S1", "CategoryUniqueIdentifier": "C-RUN", "FieldName": "Color", "FieldValue": "Blue"}
        result = await DependencyResolver(tables).resolve(make_entity("skuspecification", row))

        assert isinstance(result, SkippedRecord)
        assert result.reason == "field value not found: 7|Blue"


class TestCategoryResolution:
    """Categories and their parents."""

    @pytest.mark.asyncio
    async def test_parent_created_in_this_run(self, tables, make_entity):
        resolver = DependencyResolver(tables)
        resolver.record_created("category", "C-NEW", 300)
        row = {"UniqueIdentifier": "C-CHILD", "Name": "Trail", "ParentUniqueIdentifier": "C-NEW"}

        result = await resolver.resolve(make_entity("category", row))

        assert result.body["FatherCategoryId"] == 300
        assert result.body["AdWordsRemarketingCode"] == "C-CHILD"

    @pytest.mark.asyncio
    async def test_parent_from_lookup_tables(self, tables, make_entity):
        row = {"UniqueIdentifier": "C-TRAIL", "Name": "Trail", "ParentUniqueIdentifier": "C-SHOES"}
        result = await DependencyResolver(tables).resolve(make_entity("category", row))
        assert result.body["FatherCategoryId"] == 1

    @pytest.mark.asyncio
    async def test_root_category_has_no_parent(self, tables, make_entity):
        row = {"UniqueIdentifier": "C-TOP", "Name": "Top", "ParentUniqueIdentifier": ""}
        result = await DependencyResolver(tables).resolve(make_entity("category", row))

        assert isinstance(result, ResolvedRecord)
        assert "FatherCategoryId" not in result.body

    @pytest.mark.asyncio
    async def test_missing_parent_is_skipped(self, tables, make_entity):
        row = {"UniqueIdentifier": "C-X", "Name": "X", "ParentUniqueIdentifier": "C-GHOST"}
        result = await DependencyResolver(tables).resolve(make_entity("category", row))
        assert result.reason == "parent category not found: C-GHOST"

    @pytest.mark.asyncio
    async def test_category_update_finds_own_id(self, tables, make_entity):
        row = {"UniqueIdentifier": "C-RUN", "Name": "Running", "ParentUniqueIdentifier": "C-SHOES"}
        result = await DependencyResolver(tables).resolve(make_entity("category", row), action="update")
        assert result.path == "catalog/pvt/category/2"
