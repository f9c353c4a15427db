"""Command Line Interface for the MCU Batch Engine.

Runs create and update batches from JSON payload files against the
configured store (MCU_DB_* environment variables).

Payload format:
    {
        "encounter": {"employeeId": "EMP-001", "mcuType": "Annual", "mcuDate": "2024-03-01"},
        "measurements": [{"labItemId": 1, "value": 35, "notes": "fasting"}]
    }

Exit codes:
    0: batch finished (possibly with isolated item failures)
    1: validation, lookup or storage error, or a compensated batch
    2: compensation failed; manual cleanup required
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from mcu_batch import __version__
from mcu_batch.domain.ports import BatchValidationError, CompensationFailureError, StorageError
from mcu_batch.domain.results import BatchResult
from mcu_batch.infrastructure.logging_config import setup_logging
from mcu_batch.infrastructure.settings import Settings
from mcu_batch.main import BatchEngine, create_engine

app = typer.Typer(
    name="mcu-batch",
    help="MCU batch engine: encounters and lab measurements with compensation",
    add_completion=False
)
console = Console()

EXIT_FAILURE = 1
EXIT_COMPENSATION_FAILED = 2


def create_engine_cli() -> BatchEngine:
    """Create the engine from the environment (CLI wrapper)."""
    try:
        return create_engine(Settings())
    except (ValueError, StorageError) as e:
        console.print(f"[red]✗[/red] Failed to create storage: {e}")
        raise typer.Exit(code=EXIT_FAILURE)


def _load_payload(path: Path) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    except json.JSONDecodeError as e:
        console.print(f"[red]✗[/red] Invalid JSON in {path}: {e}")
        raise typer.Exit(code=EXIT_FAILURE)
    if not isinstance(payload, dict):
        console.print("[red]✗[/red] Payload must be a JSON object with 'encounter' and 'measurements'")
        raise typer.Exit(code=EXIT_FAILURE)
    return payload


def _print_result(result: BatchResult, title: str) -> None:
    table = Table(title=title)
    table.add_column("Lab item", justify="right")
    table.add_column("Outcome")
    table.add_column("Value", justify="right")
    table.add_column("Status / Error")

    groups = (
        ("saved", result.saved),
        ("inserted", result.inserted),
        ("updated", result.updated),
        ("deleted", result.deleted),
    )
    for outcome, records in groups:
        for record in records:
            table.add_row(str(record.type_id), outcome, f"{record.value:g}", record.status_label.value)
    for failure in result.failed:
        table.add_row(str(failure.type_id), f"[red]{failure.operation.value} failed[/red]", "", failure.error)

    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")

    encounter_id = result.encounter.encounter_id if result.encounter else "-"
    if result.compensated:
        console.print(f"[red]✗[/red] Batch aborted, encounter {encounter_id} soft-deleted: {result.fatal_error}")
    elif not result.success:
        console.print(f"[red]✗[/red] Batch failed for encounter {encounter_id}: {result.fatal_error}")
    elif result.failed:
        console.print(f"[yellow]![/yellow] Encounter {encounter_id} saved with {len(result.failed)} failed item(s)")
    else:
        console.print(f"[green]✓[/green] Encounter {encounter_id} saved")


def _run_batch(engine: BatchEngine, run) -> BatchResult:
    try:
        return run()
    except BatchValidationError as e:
        console.print(f"[red]✗[/red] Validation failed: {e}")
        raise typer.Exit(code=EXIT_FAILURE)
    except CompensationFailureError as e:
        console.print(f"[bold red]✗ Compensation failed for encounter {e.encounter_id}[/bold red]")
        console.print(f"  Manual cleanup required. Original error: {e.original_error}")
        raise typer.Exit(code=EXIT_COMPENSATION_FAILED)
    except StorageError as e:
        console.print(f"[red]✗[/red] Storage error: {e}")
        raise typer.Exit(code=EXIT_FAILURE)
    finally:
        engine.close()


@app.command("init-db")
def init_db() -> None:
    """Create the encounters, measurements and change log tables."""
    engine = create_engine_cli()
    try:
        result = engine.store.initialize_schema()
    finally:
        engine.close()
    if result.is_failure():
        console.print(f"[red]✗[/red] {result.error}")
        raise typer.Exit(code=EXIT_FAILURE)
    console.print("[green]✓[/green] Schema initialized")


@app.command()
def create(
    payload_file: Path = typer.Argument(..., help="JSON payload with 'encounter' and 'measurements'", exists=True),
    actor: Optional[str] = typer.Option(None, "--actor", "-a", help="User recorded as creator"),
) -> None:
    """Create an encounter with its lab measurements."""
    payload = _load_payload(payload_file)
    engine = create_engine_cli()
    result = _run_batch(engine, lambda: engine.orchestrator.create_with_measurements(
        payload.get("encounter") or {},
        payload.get("measurements") or [],
        actor=actor,
    ))
    _print_result(result, "Create batch")
    if not result.success:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def update(
    encounter_id: str = typer.Argument(..., help="Encounter to revise"),
    payload_file: Path = typer.Argument(..., help="JSON payload with 'encounter' and 'measurements'", exists=True),
    actor: Optional[str] = typer.Option(None, "--actor", "-a", help="User recorded as editor"),
) -> None:
    """Revise an encounter and reconcile its lab measurements.

    Lab items left out of the "measurements" list are soft-deleted; a payload
    without a "measurements" key leaves the lab panel unchanged.
    """
    payload = _load_payload(payload_file)
    engine = create_engine_cli()
    result = _run_batch(engine, lambda: engine.orchestrator.update_with_measurements(
        encounter_id,
        payload.get("encounter") or {},
        payload.get("measurements"),
        actor=actor,
    ))
    _print_result(result, f"Update batch for {encounter_id}")
    if not result.success:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command("list")
def list_measurements(
    encounter_id: str = typer.Argument(..., help="Encounter to show"),
) -> None:
    """Show the active lab measurements of an encounter."""
    engine = create_engine_cli()
    try:
        encounter = engine.store_adapter.get_encounter(encounter_id)
        if encounter is None:
            console.print(f"[red]✗[/red] Encounter not found: {encounter_id}")
            raise typer.Exit(code=EXIT_FAILURE)
        measurements = engine.store_adapter.list_active_measurements(encounter_id)
    except StorageError as e:
        console.print(f"[red]✗[/red] Storage error: {e}")
        raise typer.Exit(code=EXIT_FAILURE)
    finally:
        engine.close()

    console.print(
        f"[bold blue]{encounter.encounter_id}[/bold blue] "
        f"{encounter.subject_id} {encounter.encounter_type} {encounter.encounter_date.isoformat()}"
    )
    table = Table()
    table.add_column("ID", justify="right")
    table.add_column("Lab item")
    table.add_column("Value", justify="right")
    table.add_column("Unit")
    table.add_column("Range")
    table.add_column("Status")
    for type_id, record in sorted(measurements.items()):
        entry = engine.registry.get(type_id)
        reference = (
            f"{record.min_reference:g}-{record.max_reference:g}"
            if record.min_reference is not None and record.max_reference is not None else "-"
        )
        table.add_row(
            str(type_id),
            entry.name if entry else "?",
            f"{record.value:g}",
            record.unit or "",
            reference,
            record.status_label.value,
        )
    console.print(table)


@app.command()
def whitelist() -> None:
    """Print the measurement-type whitelist."""
    engine = create_engine_cli()
    try:
        entries = list(engine.registry)
    finally:
        engine.close()

    table = Table(title="Lab items")
    table.add_column("ID", justify="right")
    table.add_column("Name")
    table.add_column("Unit")
    table.add_column("Min", justify="right")
    table.add_column("Max", justify="right")
    for entry in entries:
        table.add_row(
            str(entry.type_id),
            entry.name,
            entry.unit or "",
            "" if entry.min_value is None else f"{entry.min_value:g}",
            "" if entry.max_value is None else f"{entry.max_value:g}",
        )
    console.print(table)


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """MCU batch engine."""
    if version:
        console.print(f"mcu-batch v{__version__}")
        raise typer.Exit()
    settings = Settings()
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)


if __name__ == "__main__":
    app()
