"""Shared fixtures for catalog_sync tests."""

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional

import pytest
from rich.console import Console

from catalog_sync.clients.base import APIError, NotFoundError
from catalog_sync.config import CatalogConfig, Config
from catalog_sync.csv_io import CSVProcessor
from catalog_sync.entities import get_entity_type
from catalog_sync.models import Entity


class FakeReader:
    """In-memory stand-in for CatalogClient's read methods."""

    def __init__(
        self,
        tree: Optional[List[Dict[str, Any]]] = None,
        brands: Optional[List[Dict[str, Any]]] = None,
        fields: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        field_values: Optional[Dict[int, List[Dict[str, Any]]]] = None,
        products: Optional[Dict[str, int]] = None,
        skus: Optional[Dict[str, int]] = None,
        fail: Optional[set] = None,
        delay: float = 0.0,
    ):
        self.tree = tree or []
        self.brands = brands or []
        self.fields = fields or {}
        self.field_values = field_values or {}
        self.products = products or {}
        self.skus = skus or {}
        self.fail = fail or set()
        self.delay = delay
        self.calls: Counter = Counter()

    async def _hit(self, key) -> None:
        self.calls[key] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.fail:
            raise APIError(f"boom: {key}", 500)

    async def get_category_tree(self, depth: int = 5):
        await self._hit("tree")
        return self.tree

    async def list_brands(self):
        await self._hit("brands")
        return self.brands

    async def list_fields(self, category_id: int):
        await self._hit(("fields", category_id))
        return self.fields.get(category_id, [])

    async def list_field_values(self, field_id: int):
        await self._hit(("values", field_id))
        return self.field_values.get(field_id, [])

    async def get_product_id_by_ref_id(self, ref_id: str) -> int:
        await self._hit(("product", ref_id))
        if ref_id not in self.products:
            raise NotFoundError(f"Product {ref_id} not found", 404)
        return self.products[ref_id]

    async def get_sku_id_by_ref_id(self, ref_id: str) -> int:
        await self._hit(("sku", ref_id))
        if ref_id not in self.skus:
            raise NotFoundError(f"SKU {ref_id} not found", 404)
        return self.skus[ref_id]


@pytest.fixture
def fake_reader():
    """Factory for FakeReader instances."""
    return FakeReader


@pytest.fixture
def make_entity():
    """Build an Entity the way the CSV reader would."""
    processor = CSVProcessor(Console(quiet=True))

    def _make(entity_type: str, row: Dict[str, str], row_number: int = 2) -> Entity:
        return processor.parse_row(row, row_number, get_entity_type(entity_type))

    return _make


@pytest.fixture
def catalog_config():
    return CatalogConfig(
        account_name="acme",
        environment="vtexcommercestable",
        app_key="test-key",
        app_token="test-token",
    )


@pytest.fixture
def config(catalog_config, tmp_path):
    return Config(
        catalog=catalog_config,
        output_dir=tmp_path / "out",
        concurrency=4,
        rate_limit=200,
        jitter_ms=0,
    )


@pytest.fixture
def quiet_console():
    return Console(quiet=True)
