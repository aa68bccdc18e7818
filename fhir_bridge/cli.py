"""Command Line Interface for FHIR-Bridge.

Commands for running the FHIR API, preparing the store and inspecting
the audit trail of stored resources.
"""

from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from fhir_bridge.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_bridge.domain.ports import FhirBridgeError
from fhir_bridge.domain.services.history import HistoryReconstructor
from fhir_bridge.infrastructure.settings import APP_VERSION, FHIR_VERSION, settings

app = typer.Typer(
    name="fhir-bridge",
    help="FHIR-Bridge: FHIR R4 API over a generic clinical observation store",
    add_completion=False
)
console = Console()


def create_storage_adapter_cli() -> DuckDBAdapter:
    """Create storage adapter from configuration (CLI wrapper)."""
    try:
        return DuckDBAdapter(db_config=settings.db_config)
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the FHIR API server."""
    import uvicorn

    console.print(f"[bold blue]{settings.app_name}[/bold blue] v{APP_VERSION} (FHIR {FHIR_VERSION})")
    uvicorn.run(
        "fhir_bridge.api.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower()
    )


@app.command("init-db")
def init_db() -> None:
    """Create the store schema in the configured database."""
    adapter = create_storage_adapter_cli()
    try:
        result = adapter.initialize_schema()
        if result.is_failure():
            console.print(f"[red]✗[/red] Schema initialization failed: {result.error}")
            raise typer.Exit(code=1)
        console.print(f"[green]✓[/green] Schema ready at {settings.get_db_path()}")
    finally:
        adapter.close()


@app.command("seed-concept")
def seed_concept(
    mappings: List[str] = typer.Argument(..., help="Terminology references, e.g. CIEL:984"),
    name: str = typer.Option(..., "--name", "-n", help="Concept display name"),
    concept_uuid: Optional[str] = typer.Option(None, "--uuid", help="Concept UUID (generated if omitted)"),
) -> None:
    """Add a concept and its terminology mappings to the dictionary.

    Examples:
        fhir-bridge seed-concept CIEL:984 --name "Immunizations"
    """
    adapter = create_storage_adapter_cli()
    try:
        result = adapter.seed_concept(*mappings, name=name, concept_uuid=concept_uuid)
        if result.is_failure():
            console.print(f"[red]✗[/red] Failed to add concept: {result.error}")
            raise typer.Exit(code=1)
        concept = result.value
        console.print(f"[green]✓[/green] {concept.name} ({concept.uuid}) mapped to {', '.join(mappings)}")
    finally:
        adapter.close()


@app.command()
def history(
    entity_id: str = typer.Argument(..., help="Identifier of the stored resource"),
    entity_type: Optional[str] = typer.Option(
        None, "--type", "-t", help="Entity kind recorded in the audit trail (practitioner, immunization)"
    ),
) -> None:
    """Show the revisions recorded for a resource."""
    adapter = create_storage_adapter_cli()
    try:
        revisions = HistoryReconstructor(adapter).history_for(entity_id, entity_type)
    except FhirBridgeError as e:
        console.print(f"[red]✗[/red] Failed to read history: {e.message}")
        raise typer.Exit(code=1)
    finally:
        adapter.close()

    if not revisions:
        console.print(f"[yellow]⚠[/yellow] No history recorded for {entity_id}")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Revision")
    table.add_column("Activity")
    table.add_column("Recorded")
    table.add_column("Agent")
    for revision in revisions:
        table.add_row(
            str(revision.ordinal),
            revision.revision_id,
            revision.activity.value,
            revision.recorded.isoformat(),
            revision.agent or "unknown",
        )
    console.print(table)


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    fhir = settings.fhir_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} v{APP_VERSION}")
    info_table.add_row("FHIR Version:", FHIR_VERSION)
    info_table.add_row("Database Type:", settings.db_config.db_type)
    info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Page Size:", f"{fhir.default_page_size} (max {fhir.maximum_page_size})")
    info_table.add_row("String Search:", fhir.string_search_mode)
    info_table.add_row("Administering Role:", fhir.administering_encounter_role_uuid or "[red]not set[/red]")
    info_table.add_row("Immunization Group:", fhir.immunization_concepts.grouping)
    info_table.add_row("Terminologies:", ", ".join(f"{k}={v}" for k, v in fhir.terminology_systems.items()))

    console.print(info_table)


@app.callback()
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """FHIR-Bridge: FHIR R4 API over a generic clinical observation store."""
    if version:
        console.print(f"FHIR-Bridge v{APP_VERSION}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
