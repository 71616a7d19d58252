"""Error types raised while loading, resolving and dispatching records."""

from typing import Optional


class CatalogSyncError(Exception):
    """Base error for the catalog sync tool."""
    pass


class RowParseError(CatalogSyncError):
    """A CSV row could not be turned into an entity."""

    def __init__(self, row_number: int, message: str, ref_id: Optional[str] = None):
        self.row_number = row_number
        self.ref_id = ref_id
        super().__init__(f"Row {row_number}: {message}")


class LookupMissError(CatalogSyncError):
    """A dependency name or identifier is absent from a lookup table."""
    pass


class RemoteLookupError(CatalogSyncError):
    """A single-entity remote lookup returned 404 or failed."""
    pass


class SetupError(CatalogSyncError):
    """A foundational lookup table could not be built; the run cannot continue."""
    pass
