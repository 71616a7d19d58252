"""Base HTTP client with retry logic and rate limiting."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from ..config import CatalogConfig
from ..ratelimit import TokenBucketLimiter


logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base API error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(APIError):
    """Rate limit exceeded."""
    pass


class NotFoundError(APIError):
    """Resource not found."""
    pass


class AuthenticationError(APIError):
    """Authentication failed."""
    pass


class BaseClient(ABC):
    """Base HTTP client with retry logic and rate limiting."""

    def __init__(
        self,
        config: CatalogConfig,
        rate_limiter: Optional[TokenBucketLimiter] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter
        self.request_count = 0

        # Create HTTP client with reasonable defaults
        self.client = httpx.AsyncClient(
            headers=self._get_headers(),
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=30),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Base URL for the API."""
        pass

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests."""
        return {
            "X-VTEX-API-AppKey": self.config.app_key,
            "X-VTEX-API-AppToken": self.config.app_token,
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "Catalog-Sync/1.0.0"
        }

    def build_url(self, endpoint: str) -> str:
        """Join an endpoint to the base URL; absolute URLs are returned unchanged."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    async def _rate_limit_wait(self) -> None:
        """Wait for a permit from the shared limiter, if one is configured."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

    def _handle_response_errors(self, response: httpx.Response) -> None:
        """Handle common HTTP errors."""
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed ({status}) - check VTEX_API_APPKEY / VTEX_API_APPTOKEN",
                status,
            )
        elif status == 404:
            raise NotFoundError(f"Resource not found: {response.request.url}", status)
        elif status == 429:
            # Check for Retry-After header
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                raise RateLimitError(f"Rate limit exceeded. Retry after {retry_after} seconds", status)
            raise RateLimitError("Rate limit exceeded", status)
        elif status >= 500:
            raise APIError(f"Server error: {status} - {response.text}", status)
        elif not response.is_success:
            raise APIError(f"API error: {status} - {response.text}", status)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make a single rate-limited HTTP request and decode the response.

        Transport failures propagate as ``httpx`` exceptions so that the
        retry policy can see them.
        """
        await self._rate_limit_wait()

        url = self.build_url(endpoint)
        self.request_count += 1
        logger.debug("%s %s", method, url)

        response = await self.client.request(method=method, url=url, params=params)
        self._handle_response_errors(response)
        return self._decode(response)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((RateLimitError, httpx.TimeoutException, httpx.ConnectError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an HTTP request with retry logic."""
        return await self._request(method, endpoint, params=params)

    def _transport_error(self, error: httpx.TransportError, method: str, endpoint: str) -> APIError:
        url = self.build_url(endpoint)
        if isinstance(error, httpx.TimeoutException):
            return APIError(f"Request timed out: {method} {url}")
        return APIError(f"Connection failed: {method} {url}: {error}")

    async def get_json(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET a resource, retrying timeouts, connection errors and 429s."""
        try:
            return await self._make_request("GET", endpoint, params=params)
        except httpx.TransportError as e:
            raise self._transport_error(e, "GET", endpoint) from e

    async def get_once(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """GET a resource without retrying."""
        try:
            return await self._request("GET", endpoint, params=params)
        except httpx.TransportError as e:
            raise self._transport_error(e, "GET", endpoint) from e

    async def send(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        """Send a request and return the raw response without raising on status.

        Transport failures propagate as ``httpx.HTTPError``. Rate limiting is
        left to the caller.
        """
        url = self.build_url(endpoint)
        self.request_count += 1
        logger.debug("%s %s", method, url)
        return await self.client.request(method=method, url=url, json=json_data)
