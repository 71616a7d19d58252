"""HTTP clients for the catalog API."""

from .catalog import CatalogClient
from .base import APIError, AuthenticationError, RateLimitError, NotFoundError

__all__ = ["CatalogClient", "APIError", "AuthenticationError", "RateLimitError", "NotFoundError"]
