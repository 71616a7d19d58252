"""End-to-end load of one CSV file: read, look up, resolve, dispatch, report."""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel
from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from .clients import CatalogClient
from .config import Config
from .csv_io import CSVProcessor
from .dispatcher import ConcurrentDispatcher
from .entities import (
    BRAND, CATEGORY, FIELD, FIELD_VALUE, PARENT_CATEGORY, EntityType, get_entity_type,
)
from .lookups import (
    LookupTableBuilder, LookupTables, load_category_name_lookup, load_lookup_artifact,
)
from .models import DispatchOutcome, Entity, ResolvedRecord, SkipKind, SkippedRecord, Summary
from .ratelimit import TokenBucketLimiter
from .reporting import OutcomeAggregator, Reporter
from .resolvers import DependencyResolver


logger = logging.getLogger(__name__)


class LoadOptions(BaseModel):
    """What to load and where supporting lookups come from."""

    entity: str
    file: Path
    action: str = "import"
    skip_category_lookup: bool = False
    category_file: Optional[Path] = None
    product_lookup: Optional[Path] = None
    sku_lookup: Optional[Path] = None
    lookup_out: Optional[Path] = None
    limit: Optional[int] = None


class LoadResult:
    """Everything a caller may want after a load."""

    def __init__(
        self,
        aggregator: OutcomeAggregator,
        records: List[ResolvedRecord],
        artifact_path: Optional[Path] = None,
    ):
        self.aggregator = aggregator
        self.records = records
        self.artifact_path = artifact_path

    @property
    def summary(self) -> Summary:
        return self.aggregator.summary()


def plan_waves(entities: List[Entity], parent_column: str) -> Tuple[List[List[Entity]], List[Entity]]:
    """Group rows so that parents in the same file come before their children.

    Wave N holds rows whose chain of in-file parents is N long. Rows caught
    in a parent cycle are returned separately.
    """
    by_ref = {entity.ref_id: entity for entity in entities}
    depths: Dict[str, int] = {}
    cyclic: Dict[str, Entity] = {}

    for entity in entities:
        chain: List[str] = []
        current: Optional[Entity] = entity
        while current is not None and current.ref_id not in depths:
            if current.ref_id in chain:
                for ref in chain[chain.index(current.ref_id):]:
                    cyclic[ref] = by_ref[ref]
                break
            chain.append(current.ref_id)
            parent = current.reference(parent_column)
            current = by_ref.get(parent) if parent else None

        # Unwind the chain from the top ancestor down
        for ref in reversed(chain):
            if ref in cyclic or ref in depths:
                continue
            parent = by_ref[ref].reference(parent_column)
            if parent in cyclic:
                cyclic[ref] = by_ref[ref]
            elif parent in by_ref:
                depths[ref] = depths[parent] + 1
            else:
                depths[ref] = 0

    waves: List[List[Entity]] = []
    for entity in entities:
        if entity.ref_id in cyclic:
            continue
        depth = depths[entity.ref_id]
        while len(waves) <= depth:
            waves.append([])
        waves[depth].append(entity)

    return waves, [e for e in entities if e.ref_id in cyclic]


class LoadPipeline:
    """Runs one load of an entity file against the catalog API."""

    def __init__(
        self,
        config: Config,
        client: CatalogClient,
        console: Optional[Console] = None,
        rate_limiter: Optional[TokenBucketLimiter] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.client = client
        self.console = console or Console()
        self.rate_limiter = rate_limiter or TokenBucketLimiter(
            config.rate_limit, max_jitter=config.max_jitter
        )
        self.cancel_event = cancel_event
        self.csv_processor = CSVProcessor(self.console)

    async def run(self, options: LoadOptions) -> LoadResult:
        """Load a file. Raises SetupError if a lookup table cannot be built."""
        etype = get_entity_type(options.entity)
        etype.route(options.action)

        # Step 1: read rows
        self.console.print(f"[bold]Step 1: Loading {etype.name} rows[/bold]")
        entities, parse_errors = self.csv_processor.read_entities(options.file, etype, options.limit)
        aggregator = OutcomeAggregator(etype.name, total_rows=len(entities) + len(parse_errors))
        for error in parse_errors:
            aggregator.add_parse_error(error)

        # Step 2: lookup tables
        self.console.print("\n[bold]Step 2: Building lookup tables[/bold]")
        tables = await self.build_tables(etype, entities, options)
        resolver = DependencyResolver(
            tables,
            reader=self.client,
            context={"account_name": self.config.catalog.account_name},
            skip_category_lookup=options.skip_category_lookup,
        )

        # Step 3 and 4: resolve and dispatch, in waves when rows reference each other
        waves = [entities]
        parent = etype.parent_dependency
        if parent is not None and options.action == "import":
            waves, cyclic = plan_waves(entities, parent.column)
            for entity in cyclic:
                aggregator.add_skipped(SkippedRecord(
                    entity=entity,
                    reason=f"parent cycle through {entity.reference(parent.column)}",
                    kind=SkipKind.INVALID,
                ))
            if len(waves) > 1:
                logger.info("Loading %s in %d waves by parent depth", etype.name, len(waves))

        all_records: List[ResolvedRecord] = []
        for index, wave in enumerate(waves):
            if self._cancelled():
                for entity in wave:
                    aggregator.add_not_attempted(entity)
                continue

            records = await self._resolve_wave(resolver, wave, options.action, aggregator)
            all_records.extend(records)

            if self.config.dry_run:
                # Placeholder ids let rows whose parents are in this file resolve
                for record in records:
                    resolver.record_created(etype.name, record.ref_id, 0)
                continue

            label = f"wave {index + 1}/{len(waves)}" if len(waves) > 1 else etype.name
            await self._dispatch_wave(records, resolver, etype, aggregator, label)

        reporter = Reporter(aggregator, self.console)
        reporter.print_pre_processing_info(options.file, options.action, len(entities), len(all_records))
        if self.config.dry_run:
            self._print_dry_run_preview(all_records)

        # Step 5: outputs
        self.console.print("\n[bold]Step 5: Generating Reports[/bold]")
        out_dir = self.config.output_dir
        artifact_path = None
        created = aggregator.created_ids()
        if created:
            artifact_path = options.lookup_out or out_dir / f"{etype.name}_lookup.csv"
            self.csv_processor.write_lookup_artifact(created, etype.artifact_headers, artifact_path)

        failures = aggregator.failures()
        if failures:
            self.csv_processor.write_failures_csv(failures, out_dir / "failures.csv")
        reporter.generate_markdown_report(out_dir / f"{etype.name}_report.md", self.config.dry_run)

        self.console.print(f"\n{'='*60}")
        reporter.print_summary(self.config.dry_run)
        self.console.print(f"{'='*60}")

        return LoadResult(aggregator, all_records, artifact_path)

    async def build_tables(
        self,
        etype: EntityType,
        entities: List[Entity],
        options: LoadOptions,
    ) -> LookupTables:
        """Build only the tables this entity type needs."""
        kinds = set(etype.dependency_kinds())
        if options.action == "update" and etype.self_lookup:
            kinds.add(etype.self_lookup)
        if options.skip_category_lookup:
            kinds.discard(CATEGORY)

        builder = LookupTableBuilder(self.client, concurrency=self.config.concurrency)
        tables = LookupTables()

        if options.category_file is not None:
            tables.category_names = load_category_name_lookup(options.category_file)

        if kinds & {CATEGORY, PARENT_CATEGORY, FIELD}:
            tables.categories = await builder.build_category_lookup(self.config.category_tree_depth)
        if BRAND in kinds:
            tables.brands = await builder.build_brand_lookup()
        if FIELD in kinds:
            category_ids = self._category_ids(etype, entities, tables)
            tables.fields = await builder.build_field_id_lookup(category_ids)
            if FIELD_VALUE in kinds:
                tables.field_values = await builder.build_field_value_id_lookup(tables.fields.values())

        if options.product_lookup is not None:
            tables.products = load_lookup_artifact(options.product_lookup, "product")
            logger.info("Product lookup: %d entries from %s", len(tables.products), options.product_lookup)
        if options.sku_lookup is not None:
            tables.skus = load_lookup_artifact(options.sku_lookup, "sku")
            logger.info("SKU lookup: %d entries from %s", len(tables.skus), options.sku_lookup)

        return tables

    def _category_ids(self, etype: EntityType, entities: List[Entity], tables: LookupTables) -> List[int]:
        """Category ids whose specification fields the rows refer to."""
        column = next((d.column for d in etype.dependencies if d.kind == CATEGORY), None)
        ids = set()
        for entity in entities:
            category_id = entity.payload.get("CategoryId")
            if category_id is None and column:
                identifier = entity.reference(column)
                if identifier:
                    name = tables.category_names.get(identifier, identifier)
                    category_id = tables.categories.get(name)
                    if category_id is None:
                        # The resolver reports the miss for this row
                        continue
            ids.add(category_id if category_id is not None else 0)
        return sorted(ids)

    async def _resolve_wave(
        self,
        resolver: DependencyResolver,
        wave: List[Entity],
        action: str,
        aggregator: OutcomeAggregator,
    ) -> List[ResolvedRecord]:
        records: List[ResolvedRecord] = []
        for entity in wave:
            resolution = await resolver.resolve(entity, action)
            if isinstance(resolution, SkippedRecord):
                aggregator.add_skipped(resolution)
            else:
                records.append(resolution)
        logger.info("Resolved %d records, %d skipped so far", len(records), len(aggregator.skipped))
        return records

    async def _dispatch_wave(
        self,
        records: List[ResolvedRecord],
        resolver: DependencyResolver,
        etype: EntityType,
        aggregator: OutcomeAggregator,
        label: str,
    ) -> None:
        if not records:
            return

        dispatcher = ConcurrentDispatcher(
            self.config.concurrency,
            self.rate_limiter,
            honor_retry_after=self.config.honor_retry_after,
            max_retries=self.config.max_retries,
            cancel_event=self.cancel_event,
        )

        with Progress(console=self.console) as progress:
            task = progress.add_task(f"[cyan]Submitting {label}...", total=len(records))

            def on_outcome(outcome: DispatchOutcome) -> None:
                aggregator.add_outcome(outcome)
                created_id = outcome.created_id
                if created_id is not None:
                    resolver.record_created(etype.name, outcome.ref_id, created_id)
                progress.update(task, advance=1)

            await dispatcher.dispatch(records, self.client.submit, on_outcome=on_outcome)

        for record in dispatcher.not_attempted:
            aggregator.add_not_attempted(record.entity)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _print_dry_run_preview(self, records: List[ResolvedRecord], limit: int = 10) -> None:
        table = Table(title="Requests that would be sent", show_header=True, header_style="bold blue")
        table.add_column("Ref", style="yellow")
        table.add_column("Method", style="cyan")
        table.add_column("Path", style="green")

        for record in records[:limit]:
            table.add_row(record.ref_id, record.method, record.path)
        if len(records) > limit:
            table.add_row("...", "...", f"and {len(records) - limit} more")

        self.console.print(table)
