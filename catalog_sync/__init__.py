"""
Catalog Sync

A CLI tool that bulk loads catalog CSV files (categories, brands,
specifications, products, SKUs, prices, inventory and more) into a
VTEX-style catalog API:
- foreign keys are resolved from lookup tables built once per run
- submissions run under bounded concurrency and a shared rate limit
- every row ends up as a success, a skip with a reason, or an error

Ids created by one load can be written out and fed into the next.
"""

__version__ = "1.0.0"
__author__ = "Catalog Sync Tool"

from .config import Config, CatalogConfig

__all__ = ["Config", "CatalogConfig"]
