"""Lookup tables that map natural names to remote ids."""

import asyncio
import logging
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, IO, Iterable, Iterator, List,
    Mapping, Optional, Tuple, TypeVar, Union,
)
import pandas as pd

from .clients.base import APIError
from .errors import SetupError


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

CsvSource = Union[str, Path, IO[str]]


class LookupTable(Mapping[str, int]):
    """Read-only name -> id table, built once per run."""

    def __init__(self, name: str, entries: Optional[Mapping[str, int]] = None):
        self.name = name
        self._entries: Dict[str, int] = dict(entries or {})

    @classmethod
    def from_pairs(cls, name: str, pairs: Iterable[Tuple[str, int]]) -> "LookupTable":
        """Build a table from (key, id) pairs. Later duplicates win."""
        entries: Dict[str, int] = {}
        for key, value in pairs:
            if key in entries and entries[key] != value:
                logger.debug("%s: duplicate key %r, %s replaces %s", name, key, value, entries[key])
            entries[key] = value
        return cls(name, entries)

    def __getitem__(self, key: str) -> int:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"LookupTable({self.name!r}, {len(self)} entries)"

    def inverse(self) -> Dict[int, str]:
        """id -> name view of the table."""
        return {value: key for key, value in self._entries.items()}


def flatten_category_tree(nodes: List[Dict[str, Any]]) -> List[Tuple[str, int]]:
    """Walk a category tree depth-first, pre-order, at any depth.

    Returns (name, id) pairs in visit order.
    """
    pairs: List[Tuple[str, int]] = []
    stack = list(reversed(nodes or []))
    while stack:
        node = stack.pop()
        pairs.append((node["name"], int(node["id"])))
        children = node.get("children") or []
        stack.extend(reversed(children))
    return pairs


def field_key(category_id: int, field_name: str) -> str:
    return f"{category_id}|{field_name.strip()}"


def field_value_key(field_id: int, value: str) -> str:
    return f"{field_id}|{value.strip()}"


async def gather_bounded(
    items: Iterable[T],
    fetch: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> List[R]:
    """Run ``fetch`` for every item with at most ``concurrency`` in flight.

    The first failure cancels whatever is still running and is re-raised.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def run(item: T) -> R:
        async with semaphore:
            return await fetch(item)

    tasks = [asyncio.create_task(run(item)) for item in items]
    if not tasks:
        return []

    _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


class LookupTableBuilder:
    """Builds lookup tables from a remote reader.

    ``reader`` is any object with the read methods of ``CatalogClient``.
    Any failure while building a table raises ``SetupError``.
    """

    def __init__(self, reader: Any, concurrency: int = 4):
        self.reader = reader
        self.concurrency = max(1, concurrency)

    async def build_category_lookup(self, depth: int = 5) -> LookupTable:
        """Category name -> id, from one fetch of the category tree."""
        try:
            tree = await self.reader.get_category_tree(depth)
            table = LookupTable.from_pairs("category", flatten_category_tree(tree))
        except (APIError, KeyError, TypeError, ValueError) as e:
            raise SetupError(f"Could not fetch category tree: {e}") from e
        logger.info("Category lookup: %d entries", len(table))
        return table

    async def build_brand_lookup(self) -> LookupTable:
        """Brand name -> id."""
        try:
            brands = await self.reader.list_brands()
            table = LookupTable.from_pairs(
                "brand", ((brand["name"], int(brand["id"])) for brand in brands)
            )
        except (APIError, KeyError, TypeError, ValueError) as e:
            raise SetupError(f"Could not fetch brand list: {e}") from e
        logger.info("Brand lookup: %d entries", len(table))
        return table

    async def build_field_id_lookup(self, category_ids: Iterable[int]) -> LookupTable:
        """Field name -> field id keyed by category, one fetch per category."""
        category_ids = sorted(set(category_ids))

        async def fetch(category_id: int) -> List[Tuple[str, int]]:
            fields = await self.reader.list_fields(category_id)
            return [(field_key(category_id, f["Name"]), int(f["FieldId"])) for f in fields]

        try:
            results = await gather_bounded(category_ids, fetch, self.concurrency)
        except (APIError, KeyError, TypeError, ValueError) as e:
            raise SetupError(f"Could not fetch specification fields: {e}") from e

        table = LookupTable.from_pairs("field", (pair for pairs in results for pair in pairs))
        logger.info("Field lookup: %d entries from %d categories", len(table), len(category_ids))
        return table

    async def build_field_value_id_lookup(self, field_ids: Iterable[int]) -> LookupTable:
        """Field value -> field value id keyed by field, one fetch per field."""
        field_ids = sorted(set(field_ids))

        async def fetch(field_id: int) -> List[Tuple[str, int]]:
            values = await self.reader.list_field_values(field_id)
            return [
                (field_value_key(field_id, str(v["Value"])), int(v["FieldValueId"]))
                for v in values
            ]

        try:
            results = await gather_bounded(field_ids, fetch, self.concurrency)
        except (APIError, KeyError, TypeError, ValueError) as e:
            raise SetupError(f"Could not fetch specification field values: {e}") from e

        table = LookupTable.from_pairs("field_value", (pair for pairs in results for pair in pairs))
        logger.info("Field value lookup: %d entries from %d fields", len(table), len(field_ids))
        return table


def _read_csv(source: CsvSource) -> pd.DataFrame:
    return pd.read_csv(source, dtype=str, keep_default_na=False)


def load_category_name_lookup(
    source: CsvSource,
    key_column: str = "UniqueIdentifier",
    value_column: str = "Name",
) -> Dict[str, str]:
    """Category identifier -> category name, from a categories CSV."""
    try:
        df = _read_csv(source)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise SetupError(f"Could not read category file: {e}") from e

    missing = [c for c in (key_column, value_column) if c not in df.columns]
    if missing:
        raise SetupError(f"Category file is missing columns: {', '.join(missing)}")

    names: Dict[str, str] = {}
    for key, value in zip(df[key_column], df[value_column]):
        key = key.strip()
        if key:
            names[key] = value.strip()
    logger.info("Category name lookup: %d entries", len(names))
    return names


def load_lookup_artifact(source: CsvSource, name: Optional[str] = None) -> LookupTable:
    """Read a derived artifact: first column is the key, second the id."""
    try:
        df = _read_csv(source)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise SetupError(f"Could not read lookup file: {e}") from e

    if len(df.columns) < 2:
        raise SetupError("Lookup file needs a key column and an id column")

    key_col, id_col = df.columns[0], df.columns[1]
    pairs = []
    for row_number, (key, value) in enumerate(zip(df[key_col], df[id_col]), start=2):
        key, value = key.strip(), value.strip()
        if not key or not value:
            continue
        try:
            pairs.append((key, int(float(value))))
        except ValueError:
            raise SetupError(f"Lookup file row {row_number}: {id_col} is not an id: {value!r}") from None

    if name is None:
        name = str(source.name) if isinstance(source, Path) else str(id_col)
    return LookupTable.from_pairs(name, pairs)


class LookupTables:
    """The set of tables available to the resolver for one run."""

    def __init__(
        self,
        categories: Optional[Mapping[str, int]] = None,
        category_names: Optional[Mapping[str, str]] = None,
        brands: Optional[Mapping[str, int]] = None,
        fields: Optional[Mapping[str, int]] = None,
        field_values: Optional[Mapping[str, int]] = None,
        products: Optional[Mapping[str, int]] = None,
        skus: Optional[Mapping[str, int]] = None,
    ):
        self.categories = categories if categories is not None else LookupTable("category")
        self.category_names = dict(category_names or {})
        self.brands = brands if brands is not None else LookupTable("brand")
        self.fields = fields if fields is not None else LookupTable("field")
        self.field_values = field_values if field_values is not None else LookupTable("field_value")
        self.products = products if products is not None else LookupTable("product")
        self.skus = skus if skus is not None else LookupTable("sku")
