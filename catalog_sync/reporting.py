"""Outcome aggregation and reporting."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from .errors import RowParseError
from .models import DispatchOutcome, Entity, OutcomeKind, SkippedRecord, Summary


logger = logging.getLogger(__name__)


class OutcomeAggregator:
    """Folds parse errors, skips and dispatch outcomes into a summary.

    Adding results in any order gives the same counts.
    """

    def __init__(self, entity_type: str = "", total_rows: int = 0):
        self.entity_type = entity_type
        self.total_rows = total_rows
        self.parse_errors: List[RowParseError] = []
        self.skipped: List[SkippedRecord] = []
        self.outcomes: List[DispatchOutcome] = []
        self.not_attempted: List[Entity] = []

    def add_parse_error(self, error: RowParseError) -> None:
        self.parse_errors.append(error)

    def add_skipped(self, skipped: SkippedRecord) -> None:
        self.skipped.append(skipped)

    def add_outcome(self, outcome: DispatchOutcome) -> None:
        self.outcomes.append(outcome)

    def add_not_attempted(self, entity: Entity) -> None:
        self.not_attempted.append(entity)

    def summary(self) -> Summary:
        """Counts for the run so far."""
        kinds = [outcome.kind for outcome in self.outcomes]
        return Summary(
            total_rows=self.total_rows,
            parse_errors=len(self.parse_errors),
            submitted=len(self.outcomes),
            succeeded=kinds.count(OutcomeKind.SUCCESS),
            skipped=len(self.skipped),
            remote_errors=kinds.count(OutcomeKind.REMOTE_ERROR),
            transport_errors=kinds.count(OutcomeKind.TRANSPORT_ERROR),
            not_attempted=len(self.not_attempted),
        )

    def created_ids(self) -> Dict[str, int]:
        """Natural key -> id assigned by the API, for successful creates."""
        created: Dict[str, int] = {}
        for outcome in self.outcomes:
            remote_id = outcome.created_id
            if remote_id is not None:
                created[outcome.ref_id] = remote_id
        return created

    def failures(self) -> List[Dict[str, Any]]:
        """Every row that did not make it, with its natural key and reason."""
        rows: List[Dict[str, Any]] = []
        for error in self.parse_errors:
            rows.append({
                "ref_id": error.ref_id or "",
                "row_number": error.row_number,
                "entity_type": self.entity_type,
                "stage": "parse",
                "reason": str(error),
            })
        for skipped in self.skipped:
            rows.append({
                "ref_id": skipped.ref_id,
                "row_number": skipped.entity.row_number,
                "entity_type": skipped.entity.entity_type,
                "stage": skipped.kind.value,
                "reason": skipped.reason,
            })
        for outcome in self.outcomes:
            if outcome.is_success:
                continue
            rows.append({
                "ref_id": outcome.ref_id,
                "row_number": outcome.row_number or "",
                "entity_type": self.entity_type,
                "stage": outcome.kind.value,
                "reason": outcome.detail,
            })
        for entity in self.not_attempted:
            rows.append({
                "ref_id": entity.ref_id,
                "row_number": entity.row_number,
                "entity_type": entity.entity_type,
                "stage": "not_attempted",
                "reason": "run cancelled before submission",
            })
        return rows


class Reporter:
    """Handles reporting for load operations."""

    def __init__(self, aggregator: OutcomeAggregator, console: Optional[Console] = None):
        self.aggregator = aggregator
        self.console = console or Console()

    def print_pre_processing_info(self, file_path: Path, action: str, entities: int, records: int) -> None:
        """Print what is about to be sent."""
        info_panel = Panel.fit(
            f"[bold]{self.aggregator.entity_type} {action}[/bold]\n\n"
            f"File: {file_path}\n"
            f"Rows: {self.aggregator.total_rows}\n"
            f"Parsed: {entities}\n"
            f"Ready to submit: {records}\n"
            f"Skipped before submission: {len(self.aggregator.skipped)}",
            title="Load Plan",
            border_style="blue"
        )
        self.console.print(info_panel)

    def print_summary(self, dry_run: bool = False) -> None:
        """Print a summary of the processing results."""
        summary = self.aggregator.summary()
        title = "DRY RUN SUMMARY" if dry_run else "PROCESSING SUMMARY"

        table = Table(title=title, show_header=True, header_style="bold magenta")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Count", justify="right", style="green")

        table.add_row("Total Rows", str(summary.total_rows))
        table.add_row("Parse Errors", str(summary.parse_errors))
        table.add_row("Skipped", str(summary.skipped))
        table.add_row("Submitted", str(summary.submitted))
        table.add_row("Succeeded", str(summary.succeeded))
        table.add_row("Remote Errors", str(summary.remote_errors))
        table.add_row("Transport Errors", str(summary.transport_errors))
        if summary.not_attempted:
            table.add_row("Not Attempted", str(summary.not_attempted))

        self.console.print(table)

        failures = self.aggregator.failures()
        if failures:
            self.console.print(f"\n[red]Found {len(failures)} failures:[/red]")
            error_table = Table(show_header=True, header_style="bold red")
            error_table.add_column("Ref", style="yellow")
            error_table.add_column("Stage", style="cyan")
            error_table.add_column("Reason", style="red")

            for failure in failures[:10]:  # Show first 10 errors
                reason = failure["reason"]
                error_table.add_row(
                    failure["ref_id"],
                    failure["stage"],
                    reason[:80] + "..." if len(reason) > 80 else reason
                )

            if len(failures) > 10:
                error_table.add_row("...", "...", f"and {len(failures) - 10} more failures")

            self.console.print(error_table)

    def generate_markdown_report(self, output_path: Path, dry_run: bool = False) -> None:
        """Generate detailed markdown report."""
        report_content = self._build_markdown_report(dry_run)

        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            f.write(report_content)

        logger.info("Report written to %s", output_path)
        self.console.print(f"[green]Report written to {output_path}[/green]")

    def _build_markdown_report(self, dry_run: bool = False) -> str:
        """Build the markdown report content."""
        summary = self.aggregator.summary()
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        title = "Catalog Load Report (DRY RUN)" if dry_run else "Catalog Load Report"
        success_rate = summary.succeeded / max(1, summary.submitted) * 100

        content = f"""# {title}

**Entity:** {self.aggregator.entity_type}
**Generated:** {timestamp}

## Summary Statistics

| Metric | Count |
|--------|--------|
| Total Rows | {summary.total_rows} |
| Parse Errors | {summary.parse_errors} |
| Skipped | {summary.skipped} |
| Submitted | {summary.submitted} |
| Succeeded | {summary.succeeded} |
| Remote Errors | {summary.remote_errors} |
| Transport Errors | {summary.transport_errors} |
| Not Attempted | {summary.not_attempted} |

**Success rate of submitted records:** {success_rate:.1f}%

"""

        failures = self.aggregator.failures()
        if failures:
            content += "## Errors and Failures\n\n"
            content += "| Ref | Row | Stage | Reason |\n"
            content += "|-----|-----|-------|--------|\n"

            for failure in failures[:20]:  # Limit to first 20 errors
                reason = str(failure["reason"]).replace("|", "\\|").replace("\n", " ")[:100]
                content += f"| {failure['ref_id']} | {failure['row_number']} | {failure['stage']} | {reason} |\n"

            if len(failures) > 20:
                content += f"\n*... and {len(failures) - 20} more failures, see failures.csv*\n"

        content += "\n## Recommendations\n\n"

        if summary.skipped > 0:
            content += f"- **Missing dependencies:** {summary.skipped} rows were skipped. Load the referenced entities first, then re-run failures.csv.\n"

        rate_limited = sum(1 for o in self.aggregator.outcomes if o.status == 429)
        if rate_limited:
            content += f"- **Rate limited:** {rate_limited} requests got HTTP 429. Lower --rate-limit or --concurrency.\n"

        if summary.transport_errors > 0:
            content += f"- **Connection problems:** {summary.transport_errors} requests never got a response.\n"

        if summary.submitted and summary.succeeded == 0:
            content += "- **No Updates:** No record was accepted. Check credentials and the account name.\n"

        content += """
---
*Report generated by Catalog Sync v1.0.0*
"""

        return content
