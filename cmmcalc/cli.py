"""CMMCalc CLI.

Commands:
- init: Initialize database schema
- seed: Load default taxonomy, materials, rule set and building profiles
- taxonomy: Show the trade taxonomy
- rulesets: List rule set versions
- promote: Make a rule set version current
- run: Submit work items (YAML/JSON file) and show the material breakdown
- show-run: Show a stored calculation run
- cancel: Cancel a pending or running run
- runs: List recent calculation runs
- estimate: Estimate quantities from a building profile
- convert: Convert a material quantity between units
- web serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table
from rich.tree import Tree
from sqlalchemy import select

from cmmcalc.calculation.orchestrator import CalculationOrchestrator
from cmmcalc.calculation.pricing import HttpPriceProvider, MaterialMasterPriceProvider
from cmmcalc.config import get_config
from cmmcalc.core.logging import configure_logging
from cmmcalc.db.connection import close_db, get_engine, get_session
from cmmcalc.db.models import Base, MaterialMasterModel
from cmmcalc.errors import CMMError, IncompatibleUnits, ProfileNotFoundError, UnknownMaterial
from cmmcalc.estimator.profiles import BuildingProfileEstimator
from cmmcalc.models import (
    BuildingUsage,
    CalculationRequest,
    CalculationRun,
    RunStatus,
    StructureType,
)
from cmmcalc.rules.registry import RuleSetRegistry
from cmmcalc.seed import load_seed_file, seed_reference_data
from cmmcalc.taxonomy.tree import load_taxonomy
from cmmcalc.units.converter import load_converter

app = typer.Typer(
    name="cmmcalc",
    help="CMMCalc - Construction material quantity derivation",
    no_args_is_help=True,
)

web_cli = typer.Typer(help="HTTP API")
app.add_typer(web_cli, name="web")

console = Console()

_STATUS_STYLE = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL: "yellow",
    RunStatus.FAILED: "red",
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "cyan",
}


def _run(coro):
    """Run ``coro`` and dispose the engine afterwards; CMMError exits with code 1."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except CMMError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)


def _print_run(run: CalculationRun) -> None:
    style = _STATUS_STYLE.get(run.status, "white")
    console.print(
        f"[bold]Run[/bold] {run.run_id}  [{style}]{run.status.value}[/{style}]"
        + (f" ({run.failure_reason.value})" if run.failure_reason else "")
    )
    console.print(
        f"  rule set {run.rule_set_version}, trade {run.category_l1}, "
        f"{run.duration_ms if run.duration_ms is not None else '-'}ms"
    )

    if run.lines:
        table = Table(title="Material Breakdown")
        table.add_column("Item", style="cyan")
        table.add_column("Material")
        table.add_column("Base", justify="right")
        table.add_column("Waste", justify="right")
        table.add_column("Final", justify="right", style="green")
        table.add_column("Unit")
        table.add_column("Packages", justify="right")
        table.add_column("Subtotal", justify="right")
        for line in run.lines:
            packages = (
                f"{line.packaging_quantity} {line.packaging_unit}"
                if line.packaging_quantity is not None
                else ""
            )
            table.add_row(
                line.source_work_item_code,
                line.material_name,
                str(line.base_quantity),
                f"{line.waste_factor * 100:.2f}%",
                str(line.final_quantity),
                line.unit,
                packages,
                str(line.subtotal) if line.subtotal is not None else "",
            )
        console.print(table)

    if run.result_summary and run.result_summary.total_cost is not None:
        console.print(f"  Total cost: {run.result_summary.total_cost:,}")

    if run.error_log:
        console.print(f"[yellow]⚠[/yellow] {len(run.error_log)} item errors")
        for error in run.error_log:
            console.print(f"  {error.item_code}: {error.error_type.value} {error.message}", style="dim")


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = get_engine()
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)

    _run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def seed(
    seed_file: Path | None = typer.Option(None, "--file", "-f", help="Seed YAML (default: bundled)"),
):
    """Load reference data into an empty database."""
    path = seed_file or get_config().seed_file_path
    console.print(f"[bold]Seeding reference data:[/bold] {path}")

    try:
        data = load_seed_file(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    async def _seed():
        async with get_session() as session:
            return await seed_reference_data(session, data)

    counts = _run(_seed())
    if not any(counts.values()):
        console.print("[yellow]Reference data already present, nothing to do[/yellow]")
        return

    table = Table(title="Seeded")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right", style="green")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)
    console.print("[bold green]✓[/bold green] Reference data loaded")


@app.command()
def taxonomy(
    l1_code: str | None = typer.Argument(None, help="Only this trade (e.g. CON)"),
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive categories"),
):
    """Show the trade taxonomy."""

    async def _load():
        async with get_session() as session:
            return await load_taxonomy(session)

    tax = _run(_load())
    try:
        roots = tax.as_tree(l1=l1_code, include_inactive=include_inactive)
    except CMMError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    tree = Tree("[bold]Taxonomy[/bold]")

    def add(branch: Tree, node: dict) -> None:
        label = f"[cyan]{node['code']}[/cyan] {node['name']}"
        if node.get("default_unit"):
            label += f" [dim]({node['default_unit']})[/dim]"
        if node.get("default_materials"):
            label += f" [dim]→ {', '.join(node['default_materials'])}[/dim]"
        child = branch.add(label)
        for sub in node.get("children", []):
            add(child, sub)

    for root in roots:
        add(tree, root)
    console.print(tree)


@app.command()
def rulesets():
    """List rule set versions."""

    async def _list():
        return await RuleSetRegistry().list_versions()

    versions = _run(_list())
    if not versions:
        console.print("[yellow]No rule sets found[/yellow]")
        return

    table = Table(title="Rule Sets")
    table.add_column("Version", style="cyan")
    table.add_column("Name")
    table.add_column("Current", justify="center")
    table.add_column("Editable", justify="center")
    table.add_column("Effective From")
    table.add_column("Effective To")
    for rs in versions:
        table.add_row(
            rs.version,
            rs.name,
            "[green]✓[/green]" if rs.is_current else "",
            "✓" if rs.is_editable else "",
            rs.effective_from.date().isoformat(),
            rs.effective_to.date().isoformat() if rs.effective_to else "",
        )
    console.print(table)


@app.command()
def promote(version: str = typer.Argument(..., help="Rule set version")):
    """Make a rule set version current (locks it against edits)."""

    async def _promote():
        return await RuleSetRegistry().promote(version)

    promoted = _run(_promote())
    console.print(f"[bold green]✓[/bold green] Rule set {promoted.version} is now current")


@app.command()
def run(
    request_file: Path = typer.Argument(..., help="Calculation request (YAML or JSON)"),
    as_json: bool = typer.Option(False, "--json", help="Print the run as JSON"),
):
    """Submit work items and show the derived material breakdown."""
    if not request_file.exists():
        console.print(f"[red]✗[/red] File not found: {request_file}")
        raise typer.Exit(code=1)

    try:
        with open(request_file, encoding="utf-8") as f:
            request = CalculationRequest.model_validate(yaml.safe_load(f))
    except (yaml.YAMLError, PydanticValidationError) as e:
        console.print(f"[red]✗[/red] Invalid request: {e}")
        raise typer.Exit(code=1)

    pricing = get_config().pricing

    async def _submit():
        provider = (
            HttpPriceProvider.from_config(pricing) if pricing.enabled else MaterialMasterPriceProvider()
        )
        try:
            return await CalculationOrchestrator(price_provider=provider).submit_run(request)
        finally:
            if isinstance(provider, HttpPriceProvider):
                await provider.client.close()

    result = _run(_submit())
    if as_json:
        typer.echo(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    else:
        _print_run(result)


@app.command(name="show-run")
def show_run(
    run_id: str = typer.Argument(..., help="Run ID"),
    as_json: bool = typer.Option(False, "--json", help="Print the run as JSON"),
):
    """Show a stored calculation run."""
    try:
        parsed = UUID(run_id)
    except ValueError:
        console.print(f"[red]✗[/red] Not a run ID: {run_id}")
        raise typer.Exit(code=1)

    async def _show():
        return await CalculationOrchestrator().get_run(parsed)

    result = _run(_show())
    if as_json:
        typer.echo(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    else:
        _print_run(result)


@app.command()
def cancel(run_id: str = typer.Argument(..., help="Run ID")):
    """Cancel a pending or running calculation run."""
    try:
        parsed = UUID(run_id)
    except ValueError:
        console.print(f"[red]✗[/red] Not a run ID: {run_id}")
        raise typer.Exit(code=1)

    async def _cancel():
        return await CalculationOrchestrator().cancel_run(parsed)

    result = _run(_cancel())
    console.print(f"[green]✓[/green] Run {result.run_id} cancelled")


@app.command()
def runs(
    project_id: str | None = typer.Option(None, "--project", help="Project ID"),
    status: RunStatus | None = typer.Option(None, "--status", help="Run status"),
    limit: int = typer.Option(20, "--limit", help="Maximum runs to show"),
):
    """List recent calculation runs."""

    async def _list():
        return await CalculationOrchestrator().list_runs(
            project_id=project_id, status=status, limit=limit
        )

    found = _run(_list())
    if not found:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(title="Calculation Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Project")
    table.add_column("Trade")
    table.add_column("Rule Set")
    table.add_column("Status")
    table.add_column("Lines", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Created")
    for r in found:
        style = _STATUS_STYLE.get(r.status, "white")
        table.add_row(
            str(r.run_id),
            r.project_id or "",
            r.category_l1,
            r.rule_set_version,
            f"[{style}]{r.status.value}[/{style}]",
            str(r.result_summary.line_count) if r.result_summary else "",
            str(len(r.error_log)),
            r.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def estimate(
    structure_type: StructureType = typer.Option(..., "--structure", help="RC, SRC, SC, RB or W"),
    usage: BuildingUsage = typer.Option(BuildingUsage.RESIDENTIAL, "--usage", help="Building usage"),
    floors: int = typer.Option(..., "--floors", help="Number of floors"),
    gross_floor_area: Decimal = typer.Option(..., "--gfa", help="Gross floor area (m2)", parser=Decimal),
    profile_code: str | None = typer.Option(None, "--profile", help="Use this profile"),
):
    """Estimate material quantities from a building profile."""

    async def _load():
        async with get_session() as session:
            return await BuildingProfileEstimator.from_session(session)

    estimator = _run(_load())
    try:
        result = estimator.estimate(structure_type, usage, floors, gross_floor_area, profile_code)
    except (ProfileNotFoundError, ValueError) as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold]Profile:[/bold] {result.profile_code} {result.profile_name} "
        f"({result.structure_type.value}/{result.usage.value})"
    )
    console.print(
        f"  {result.floors} floors, {result.gross_floor_area} m² ({result.gross_floor_area_ping} 坪)"
    )

    table = Table(title="Estimated Quantities")
    table.add_column("Quantity", style="cyan")
    table.add_column("Factor", justify="right")
    table.add_column("Amount", justify="right", style="green")
    table.add_column("Unit")
    for detail in result.details:
        table.add_row(
            detail.quantity_type,
            f"{detail.factor} {detail.factor_unit}",
            f"{detail.amount:,}",
            detail.unit,
        )
    console.print(table)


@app.command()
def convert(
    material_code: str = typer.Argument(..., help="Material code"),
    quantity: Decimal = typer.Argument(..., help="Quantity", parser=Decimal),
    from_unit: str = typer.Argument(..., help="Unit of the quantity"),
    to_unit: str | None = typer.Argument(None, help="Target unit (default: material base unit)"),
):
    """Convert a material quantity between units."""

    async def _load():
        async with get_session() as session:
            row = (
                await session.execute(
                    select(MaterialMasterModel).where(MaterialMasterModel.code == material_code)
                )
            ).scalar_one_or_none()
            if row is None or row.deleted_at is not None:
                raise UnknownMaterial(material_code)
            return row.base_unit, await load_converter(session, [material_code])

    base_unit, converter = _run(_load())
    target = to_unit or base_unit
    try:
        factor = converter.factor_for(from_unit, target, material_code)
    except (IncompatibleUnits, ValueError) as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    result = converter.convert(quantity, from_unit, target, factor=factor)
    console.print(f"{quantity} {from_unit} = [bold green]{result}[/bold green] {target} (× {factor})")


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI HTTP API."""
    import uvicorn

    typer.echo(f"Starting CMMCalc API on http://{host}:{port}")
    uvicorn.run("cmmcalc.web.app:app", host=host, port=port, reload=reload, workers=1)


def main():
    """Entry point for CLI."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
