"""
PanelFlow - Main Entry Point

CLI for inspecting plant configurations and dry-running panels through
the workflow engine. The engine itself is a library; this is the operator
and developer console around it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from panelflow.config.loader import list_available_plants, load_plant_config
from panelflow.config.schema import PlantConfig
from panelflow.criteria.registry import CriteriaRegistry
from panelflow.exceptions import ConfigurationError, PanelFlowError
from panelflow.observability.logging_config import configure_logging
from panelflow.workflow.events import EventDispatcher
from panelflow.workflow.orchestrator import WorkflowOrchestrator
from panelflow.workflow.states import Decision

# Load environment (.env values take precedence)
root_env = Path(__file__).parent / ".env"
if root_env.exists():
    load_dotenv(root_env, override=True)
else:
    load_dotenv(override=True)

app = typer.Typer(
    name="panelflow",
    help="PanelFlow - Production Workflow & Quality Validation Engine",
)
console = Console()
logger = logging.getLogger("panelflow")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Configure logging from PANELFLOW_ENV before any command runs."""
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING)


def _get_config(plant: str) -> PlantConfig:
    """Load and return a plant config, with friendly error on failure."""
    try:
        return load_plant_config(plant)
    except ConfigurationError as e:
        available = list_available_plants()
        available_list = ", ".join(available) if available else "none found"
        console.print(Panel(
            f"[red]{e.message}[/]\n\n"
            f"Available plants: [cyan]{available_list}[/]\n\n"
            f"To create a new plant:\n"
            f"  [dim]mkdir -p plants/{plant}[/]\n"
            f"  [dim]# Add config.yaml based on plants/default[/]",
            title="⚠ Configuration Error",
            border_style="red",
        ))
        raise typer.Exit(code=1)


# =========================================================================
# Commands
# =========================================================================


@app.command()
def info():
    """Show available plants and their lines."""
    plants = list_available_plants()

    if not plants:
        console.print("[yellow]No plants found. Create one in plants/[/]")
        return

    table = Table(title="PanelFlow - Available Plants")
    table.add_column("Plant ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Lines", style="green")
    table.add_column("Stations", style="yellow")
    table.add_column("Panel Types", style="magenta")

    for p in plants:
        try:
            cfg = load_plant_config(p)
            table.add_row(
                cfg.plant_id,
                cfg.plant_name,
                ", ".join(line.id for line in cfg.lines),
                str(len(cfg.stations)),
                ", ".join(sorted(cfg.panel_types, key=lambda t: (len(t), t))),
            )
        except ConfigurationError as e:
            table.add_row(p, f"[red]Error: {e.message}[/]", "", "", "")

    console.print(table)


@app.command()
def validate(
    plant: str = typer.Argument("default", help="Plant ID (e.g., 'default')"),
):
    """Validate a plant's configuration."""
    config = _get_config(plant)
    registry = CriteriaRegistry.from_config(config)

    lines = []
    for line in config.lines:
        summary = registry.configuration_summary(line.id)
        fail_total = sum(s["fail_criteria_count"] for s in summary.values())
        lines.append(
            f"{line.id}: {len(line.stations)} stations, {fail_total} fail criteria"
        )

    console.print(Panel(
        f"[green]Configuration valid![/]\n\n"
        f"Plant: {config.plant_name}\n"
        f"Stations: {len(config.stations)}\n"
        f"Panel types: {len(config.panel_types)}\n"
        f"Max rework attempts: {config.engine.max_rework_attempts} "
        f"({'enforced' if config.engine.enforce_rework_limit else 'advisory'})\n"
        + "\n".join(lines),
        title=f"Config: {plant}",
    ))


@app.command()
def criteria(
    station: str = typer.Argument(..., help="Station ID (e.g., 'STATION_1')"),
    line: str = typer.Option("LINE_1", help="Line ID"),
    plant: str = typer.Option("default", help="Plant ID"),
):
    """Show the pass/fail criteria of a station as seen from a line."""
    config = _get_config(plant)
    registry = CriteriaRegistry.from_config(config)
    try:
        criteria_set = registry.get_criteria_set(station, line)
    except PanelFlowError as e:
        console.print(f"[red]{e.message}[/]")
        raise typer.Exit(1)

    table = Table(title=f"{criteria_set.station_name} ({station} on {line})")
    table.add_column("Polarity", style="cyan")
    table.add_column("ID", style="white")
    table.add_column("Label", style="white")
    table.add_column("Required", justify="center")
    table.add_column("Notes", justify="center")
    table.add_column("Penalty", justify="right", style="yellow")

    for c in criteria_set.pass_criteria + criteria_set.fail_criteria:
        label = f"{c.label} [dim](line)[/]" if c.line_specific else c.label
        table.add_row(
            c.polarity.value,
            c.id,
            label,
            "✓" if c.required else "",
            "✓" if c.notes_required else "",
            str(c.severity_penalty) if c.polarity.value == "fail" else "",
        )
    console.print(table)

    if criteria_set.thresholds:
        thresholds = Table(title="Quality Thresholds")
        thresholds.add_column("Measurement", style="cyan")
        thresholds.add_column("Min", justify="right")
        thresholds.add_column("Max", justify="right")
        for t in criteria_set.thresholds:
            thresholds.add_row(
                t.name,
                "" if t.min_value is None else str(t.min_value),
                "" if t.max_value is None else str(t.max_value),
            )
        console.print(thresholds)


@app.command()
def simulate(
    panel_type: str = typer.Argument("60", help="Panel type (e.g., '60', '144')"),
    plant: str = typer.Option("default", help="Plant ID"),
    fail_at: Optional[str] = typer.Option(
        None, help="Fail once at this station, then rework and pass"
    ),
    criterion: Optional[str] = typer.Option(
        None, help="Fail criterion (id or label) used with --fail-at"
    ),
    panel_id: str = typer.Option("SIM-0001", help="Panel ID"),
):
    """Dry-run one panel through every station of its line."""
    config = _get_config(plant)
    dispatcher = EventDispatcher(synchronous=True)
    orchestrator = WorkflowOrchestrator(config, dispatcher=dispatcher)

    try:
        panel = orchestrator.initialize_panel(panel_id, f"BC-{panel_id}", panel_type)
        failed_once = False
        while True:
            station = panel.current_station or panel.station_sequence[0]
            if station == fail_at and not failed_once:
                failed_once = True
                fail_with = criterion or orchestrator.registry.get_criteria_set(
                    station, panel.line
                ).fail_criteria[0].id
                result = orchestrator.submit_station_decision(
                    panel_id, station, Decision.FAIL,
                    selected_criteria=[fail_with],
                    notes="Simulated failure",
                    operator_id="simulator",
                )
                console.print(
                    f"[red]✗ {station}[/] failed "
                    f"(score {result.outcome.quality_score}): "
                    + "; ".join(result.next_actions)
                )
                result = orchestrator.submit_station_decision(
                    panel_id, station, Decision.REWORK,
                    reason="Simulated rework",
                    operator_id="simulator",
                )
                console.print(f"[yellow]↺ {station}[/] sent to rework")

            result = orchestrator.submit_station_decision(
                panel_id, station, Decision.PASS, operator_id="simulator",
            )
            console.print(f"[green]✓ {station}[/] passed")
            panel = result.workflow
            if result.completed:
                break
    except PanelFlowError as e:
        console.print(f"[red]Simulation failed:[/] [{e.code}] {e.message}")
        raise typer.Exit(1)

    table = Table(title=f"Transition history: {panel_id}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("From", style="cyan")
    table.add_column("To", style="green")
    table.add_column("Reason", style="white")
    for i, entry in enumerate(orchestrator.get_transition_history(panel_id), 1):
        table.add_row(
            str(i),
            entry.from_state.value if entry.from_state else "-",
            entry.to_state.value,
            entry.reason,
        )
    console.print(table)

    stats = orchestrator.get_validation_statistics()
    console.print(Panel(
        f"Lifecycle: {orchestrator.get_lifecycle(panel_id).value}\n"
        f"Rework count: {panel.rework_count}\n"
        f"Validations: {stats['total_validations']}\n"
        f"Average quality score: {stats['average_quality_score']}",
        title="Summary",
        border_style="green",
    ))


if __name__ == "__main__":
    app()
