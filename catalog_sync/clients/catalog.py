"""Catalog API client."""

import logging
from typing import Any, Dict, List
from urllib.parse import quote
import httpx

from ..models import ResolvedRecord
from .base import BaseClient, NotFoundError


logger = logging.getLogger(__name__)


class CatalogClient(BaseClient):
    """HTTP client for the VTEX-style catalog API."""

    @property
    def base_url(self) -> str:
        return self.config.base_url

    async def get_category_tree(self, depth: int = 5) -> List[Dict[str, Any]]:
        """Get the category tree down to ``depth`` levels."""
        response = await self.get_json(f"catalog_system/pub/category/tree/{depth}")
        return response or []

    async def list_brands(self) -> List[Dict[str, Any]]:
        """Get every brand."""
        response = await self.get_json("catalog_system/pvt/brand/list")
        return response or []

    async def list_fields(self, category_id: int) -> List[Dict[str, Any]]:
        """Get the specification fields defined for a category."""
        try:
            response = await self.get_json(
                f"catalog_system/pub/specification/field/listByCategoryId/{category_id}"
            )
        except NotFoundError:
            logger.warning("No specification fields for category %s (HTTP 404)", category_id)
            return []
        return response or []

    async def list_field_values(self, field_id: int) -> List[Dict[str, Any]]:
        """Get the allowed values of a specification field."""
        try:
            response = await self.get_json(f"catalog_system/pub/specification/fieldvalue/{field_id}")
        except NotFoundError:
            logger.warning("No values for specification field %s (HTTP 404)", field_id)
            return []
        return response or []

    async def get_product_id_by_ref_id(self, ref_id: str) -> int:
        """Find a product id by its reference code."""
        response = await self.get_once(
            f"catalog_system/pvt/products/productgetbyrefid/{quote(ref_id, safe='')}"
        )
        return self._extract_id(response, f"Product {ref_id} not found")

    async def get_sku_id_by_ref_id(self, ref_id: str) -> int:
        """Find a SKU id by its reference code."""
        response = await self.get_once(
            f"catalog_system/pvt/sku/stockkeepingunitidbyrefid/{quote(ref_id, safe='')}"
        )
        return self._extract_id(response, f"SKU {ref_id} not found")

    @staticmethod
    def _extract_id(response: Any, missing_message: str) -> int:
        # The API answers with a bare id, a quoted id, an object or null
        if isinstance(response, dict):
            response = response.get("Id", response.get("id"))
        if response is None or response == "":
            raise NotFoundError(missing_message, 404)
        if isinstance(response, str):
            response = response.strip().strip('"')
        try:
            return int(response)
        except (TypeError, ValueError):
            raise NotFoundError(f"{missing_message} (unexpected body: {response!r})", 404) from None

    async def submit(self, record: ResolvedRecord) -> httpx.Response:
        """Send a resolved record to its endpoint."""
        return await self.send(record.method, record.path, json_data=record.body)
