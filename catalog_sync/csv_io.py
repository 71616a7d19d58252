"""CSV input/output handling with validation and type coercion."""

import csv
import math
import logging
from pathlib import Path
from typing import Any, Dict, IO, List, Mapping, Optional, Tuple, Union
import pandas as pd
from rich.console import Console

from .entities import EntityType
from .errors import RowParseError
from .models import Entity


logger = logging.getLogger(__name__)

CsvSource = Union[Path, IO[str]]

_TRUE = {"true", "1", "yes", "y", "t"}
_FALSE = {"false", "0", "no", "n", "f"}


def coerce_value(value: str, kind: str) -> Any:
    """Convert a CSV cell to the declared type. Raises ValueError."""
    if kind in ("int", "float"):
        number = float(value)
        # JSON has no nan or infinity
        if not math.isfinite(number):
            raise ValueError(f"expected a finite number, got {value!r}")
        if kind == "float":
            return number
        if not number.is_integer():
            raise ValueError(f"expected a whole number, got {value!r}")
        return int(number)
    if kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"expected true/false, got {value!r}")
    return value


class CSVProcessor:
    """Handles CSV reading, validation, and normalization."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def read_csv(self, source: CsvSource, limit: Optional[int] = None) -> pd.DataFrame:
        """Read a CSV file with every cell as a string."""
        if isinstance(source, Path) and not source.exists():
            raise FileNotFoundError(f"CSV file not found: {source}")

        try:
            df = pd.read_csv(source, dtype=str, keep_default_na=False, encoding="utf-8")
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise ValueError(f"Failed to read CSV file: {e}") from e

        if limit:
            df = df.head(limit)
            self.console.print(f"[yellow]Limited to first {limit} rows for processing[/yellow]")

        logger.info("Loaded %d rows from %s", len(df), getattr(source, "name", source))
        return df

    def validate_required_columns(self, df: pd.DataFrame, required_columns: List[str]) -> None:
        """Validate that required columns exist."""
        missing_columns = [col for col in required_columns if col not in df.columns]

        if missing_columns:
            available_cols = list(df.columns)
            raise ValueError(
                f"Missing required columns: {missing_columns}. "
                f"Available columns: {available_cols}"
            )

    def read_entities(
        self,
        source: CsvSource,
        entity_type: EntityType,
        limit: Optional[int] = None,
    ) -> Tuple[List[Entity], List[RowParseError]]:
        """Turn every row into an Entity; bad rows are returned as errors."""
        df = self.read_csv(source, limit=limit)
        self.validate_required_columns(df, [entity_type.key_column])

        entities: List[Entity] = []
        errors: List[RowParseError] = []

        for idx, row in enumerate(df.to_dict(orient="records")):
            row_number = idx + 2  # Excel-style row numbering
            try:
                entities.append(self.parse_row(row, row_number, entity_type))
            except RowParseError as e:
                logger.warning("%s", e)
                errors.append(e)

        if errors:
            self.console.print(f"[yellow]Skipped {len(errors)} rows that could not be parsed[/yellow]")
        self.console.print(f"[green]Extracted {len(entities)} valid {entity_type.name} records[/green]")

        return entities, errors

    def parse_row(self, row: Mapping[str, str], row_number: int, entity_type: EntityType) -> Entity:
        """Build one Entity from a raw row."""
        ref_id = self._clean_string(row.get(entity_type.key_column, ""))
        if not ref_id:
            raise RowParseError(row_number, f"missing {entity_type.key_column}")

        reference_columns = set(entity_type.reference_columns)
        payload: Dict[str, Any] = {}
        references: Dict[str, str] = {}

        for column, raw in row.items():
            value = self._clean_string(raw)
            if column in reference_columns:
                references[column] = value
                continue
            if not value:
                continue
            kind = entity_type.column_types.get(column)
            if kind is None:
                payload[column] = value
                continue
            try:
                payload[column] = coerce_value(value, kind)
            except ValueError as e:
                raise RowParseError(row_number, f"column {column}: {e}", ref_id=ref_id) from e

        return Entity(
            entity_type=entity_type.name,
            ref_id=ref_id,
            row_number=row_number,
            payload=payload,
            references=references,
        )

    def _clean_string(self, value: Any) -> str:
        """Clean and normalize string values."""
        if value is None:
            return ""
        if not isinstance(value, str) and pd.isna(value):
            return ""

        # Convert to string and strip whitespace
        cleaned = str(value).strip()

        # Normalize line endings but preserve line breaks
        cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")

        return cleaned

    def write_failures_csv(self, failures: List[Dict[str, Any]], output_path: Path) -> None:
        """Write failures to CSV file."""
        if not failures:
            return

        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", newline="", encoding="utf-8") as f:
            fieldnames = ["ref_id", "row_number", "entity_type", "stage", "reason"]
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()

            for failure in failures:
                writer.writerow({name: failure.get(name, "") for name in fieldnames})

        self.console.print(f"[yellow]Wrote {len(failures)} failures to {output_path}[/yellow]")

    def write_lookup_artifact(
        self,
        entries: Mapping[str, int],
        headers: Tuple[str, str],
        output_path: Path,
    ) -> None:
        """Write a key -> id table that a later load can read back."""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(headers)
            for key, remote_id in entries.items():
                writer.writerow([key, remote_id])

        self.console.print(f"[green]Wrote {len(entries)} lookup entries to {output_path}[/green]")
