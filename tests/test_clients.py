"""Tests for the catalog HTTP client."""

import json
import logging

import httpx
import pytest
from tenacity import wait_none

from catalog_sync.clients import (
    APIError,
    AuthenticationError,
    CatalogClient,
    NotFoundError,
    RateLimitError,
)
from catalog_sync.clients.base import BaseClient
from catalog_sync.models import Entity, ResolvedRecord
from catalog_sync.ratelimit import TokenBucketLimiter


def _client(catalog_config, handler, **kwargs):
    return CatalogClient(catalog_config, transport=httpx.MockTransport(handler), **kwargs)


class TestRequests:
    """URL building and headers."""

    def test_base_url(self, catalog_config):
        client = _client(catalog_config, lambda request: httpx.Response(200))
        assert client.base_url == "https://acme.vtexcommercestable.com.br/api"
        assert client.build_url("/catalog/pvt/brand") == "https://acme.vtexcommercestable.com.br/api/catalog/pvt/brand"
        assert client.build_url("https://api.vtex.com/acme/pricing/prices/1") == "https://api.vtex.com/acme/pricing/prices/1"

    @pytest.mark.asyncio
    async def test_sends_app_key_headers(self, catalog_config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": 1, "name": "Acme"}])

        async with _client(catalog_config, handler) as client:
            brands = await client.list_brands()

        assert brands == [{"id": 1, "name": "Acme"}]
        request = seen[0]
        assert request.url.host == "acme.vtexcommercestable.com.br"
        assert request.url.path == "/api/catalog_system/pvt/brand/list"
        assert request.headers["X-VTEX-API-AppKey"] == "test-key"
        assert request.headers["X-VTEX-API-AppToken"] == "test-token"

    @pytest.mark.asyncio
    async def test_category_tree_depth_in_path(self, catalog_config):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json=[])

        async with _client(catalog_config, handler) as client:
            assert await client.get_category_tree(3) == []

        assert paths == ["/api/catalog_system/pub/category/tree/3"]

    @pytest.mark.asyncio
    async def test_reads_use_rate_limiter(self, catalog_config):
        limiter = TokenBucketLimiter(1000, max_jitter=0)
        async with _client(catalog_config, lambda r: httpx.Response(200, json=[]), rate_limiter=limiter) as client:
            await client.list_brands()
            await client.list_fields(3)

        assert limiter.acquired == 2


class TestRefIdLookups:
    """Product and SKU id lookups by reference code."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json=310),
        httpx.Response(200, text='"310"'),
        httpx.Response(200, json={"Id": 310, "Name": "Trail"}),
    ])
    async def test_id_shapes(self, catalog_config, response):
        async with _client(catalog_config, lambda request: response) as client:
            assert await client.get_sku_id_by_ref_id("S1") == 310

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, catalog_config):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(404)

        async with _client(catalog_config, handler) as client:
            with pytest.raises(NotFoundError):
                await client.get_product_id_by_ref_id("P1")

        assert calls == ["/api/catalog_system/pvt/products/productgetbyrefid/P1"]

    @pytest.mark.asyncio
    async def test_null_body_is_not_found(self, catalog_config):
        async with _client(catalog_config, lambda request: httpx.Response(200, text="null")) as client:
            with pytest.raises(NotFoundError):
                await client.get_sku_id_by_ref_id("S1")

    @pytest.mark.asyncio
    async def test_connection_failure_is_api_error(self, catalog_config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(catalog_config, handler) as client:
            with pytest.raises(APIError):
                await client.get_product_id_by_ref_id("P1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref_id, escaped", [
        ("ABC#1", b"ABC%231"),
        ("ABC/1", b"ABC%2F1"),
        ("ABC?x=1", b"ABC%3Fx%3D1"),
    ])
    async def test_ref_id_is_one_path_segment(self, catalog_config, ref_id, escaped):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json=99)

        async with _client(catalog_config, handler) as client:
            assert await client.get_product_id_by_ref_id(ref_id) == 99

        url = seen[0]
        assert url.raw_path == b"/api/catalog_system/pvt/products/productgetbyrefid/" + escaped
        assert url.query == b""
        assert url.fragment == ""


class TestErrors:
    """Status codes raised by read calls."""

    @pytest.mark.asyncio
    async def test_unauthorized(self, catalog_config):
        async with _client(catalog_config, lambda request: httpx.Response(401)) as client:
            with pytest.raises(AuthenticationError):
                await client.list_brands()

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, catalog_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="down")

        async with _client(catalog_config, handler) as client:
            with pytest.raises(APIError) as excinfo:
                await client.list_brands()

        assert excinfo.value.status_code == 500
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_fields_missing_category_is_empty_and_logged(self, catalog_config, caplog):
        caplog.set_level(logging.WARNING, logger="catalog_sync.clients.catalog")
        async with _client(catalog_config, lambda request: httpx.Response(404)) as client:
            assert await client.list_fields(99) == []
            assert await client.list_field_values(7) == []

        messages = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert "No specification fields for category 99 (HTTP 404)" in messages
        assert "No values for specification field 7 (HTTP 404)" in messages


class TestRetry:
    """The read retry policy."""

    @pytest.mark.asyncio
    async def test_retries_rate_limited_reads(self, catalog_config):
        responses = [httpx.Response(429), httpx.Response(429), httpx.Response(200, json=[])]

        async with _client(catalog_config, lambda request: responses.pop(0)) as client:
            fast = BaseClient._make_request.retry_with(wait=wait_none())
            result = await fast(client, "GET", "catalog_system/pvt/brand/list")

        assert result == []
        assert responses == []

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, catalog_config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "1"})

        async with _client(catalog_config, handler) as client:
            fast = BaseClient._make_request.retry_with(wait=wait_none())
            with pytest.raises(RateLimitError):
                await fast(client, "GET", "catalog_system/pvt/brand/list")

        assert len(calls) == 3


class TestSubmit:
    """Write requests return raw responses."""

    @pytest.mark.asyncio
    async def test_error_status_is_returned(self, catalog_config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(500, text="boom")

        record = ResolvedRecord(
            entity=Entity(entity_type="price", ref_id="S1", row_number=2),
            method="PUT",
            path="https://api.vtex.com/acme/pricing/prices/7",
            body={"basePrice": 10.0},
        )

        async with _client(catalog_config, handler) as client:
            response = await client.submit(record)

        assert response.status_code == 500
        assert seen[0].method == "PUT"
        assert str(seen[0].url) == "https://api.vtex.com/acme/pricing/prices/7"
        assert json.loads(seen[0].content) == {"basePrice": 10.0}


class TestReadPaths:
    """Retrying and single-shot reads share one request path."""

    @pytest.mark.asyncio
    async def test_retry_sees_connection_errors(self, catalog_config):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=[{"id": 1, "name": "Acme"}])

        async with _client(catalog_config, handler) as client:
            fast = BaseClient._make_request.retry_with(wait=wait_none())
            result = await fast(client, "GET", "catalog_system/pvt/brand/list")

        assert result == [{"id": 1, "name": "Acme"}]
        assert len(calls) == 3
        assert client.request_count == 3

    @pytest.mark.asyncio
    async def test_single_read_wraps_timeout(self, catalog_config):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(catalog_config, handler) as client:
            with pytest.raises(APIError, match="Request timed out: GET"):
                await client.get_sku_id_by_ref_id("S1")
