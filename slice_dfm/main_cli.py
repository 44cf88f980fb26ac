# main_cli.py

import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import List, Optional, Set

import typer
from rich.console import Console
from rich.panel import Panel
from rich.pretty import pretty_repr
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from slice_dfm.config import settings, setup_logging
from slice_dfm.core.common_types import AggregateIssue, DFMLevel, DFMStatus, IssueType, determine_status, sort_issues
from slice_dfm.core.configuration import IssuesDetectionConfiguration, load_detection_configuration
from slice_dfm.core.exceptions import SliceDFMError
from slice_dfm.core.layers import LayerStack
from slice_dfm.core.progress import OperationProgress
from slice_dfm.core.utils import format_time
from slice_dfm.processes.detector import IssueDetector

# Initialize logging
setup_logging()
logger = logging.getLogger(__name__)

# --- Typer App Initialization ---
app = typer.Typer(help="Printability checks for sliced resin print layer stacks")
console = Console()

LEVEL_COLORS = {
    DFMLevel.CRITICAL: "bold red",
    DFMLevel.ERROR: "red",
    DFMLevel.WARN: "yellow",
    DFMLevel.INFO: "blue",
}
STATUS_COLORS = {DFMStatus.PASS: "green", DFMStatus.WARNING: "yellow", DFMStatus.FAIL: "red"}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")):
    if verbose:
        setup_logging("DEBUG")

# --- Helpers ---

def load_stack(input_path: Path, layer_height: Optional[float], pixel_size: Optional[float],
               machine_z: Optional[float]) -> LayerStack:
    try:
        stack = LayerStack.from_file(
            input_path,
            layer_height=layer_height or settings.layer_height_mm,
            pixel_size_mm=pixel_size or settings.pixel_size_mm,
            machine_z=machine_z if machine_z is not None else settings.machine_z_mm,
            exposure_time=settings.exposure_time_sec,
        )
    except SliceDFMError as e:
        console.print(f"[bold red]Error loading layers from {input_path}: {e}[/]")
        raise typer.Exit(code=1)
    console.print(f"Loaded [cyan]{stack.count}[/] layers ({stack.resolution[0]}x{stack.resolution[1]} px) from [cyan]{input_path}[/]")
    return stack


def load_configuration(config_path: Optional[Path]) -> IssuesDetectionConfiguration:
    path = config_path or (Path(settings.detection_config_path) if settings.detection_config_path else None)
    if path is None:
        return IssuesDetectionConfiguration()
    try:
        return load_detection_configuration(path)
    except SliceDFMError as e:
        console.print(f"[bold red]{e}[/]")
        raise typer.Exit(code=1)


def apply_detector_flags(config: IssuesDetectionConfiguration, islands: bool, overhangs: bool, resin_traps: bool,
                         suction_cups: bool, touching_bounds: bool, print_height: bool,
                         empty_layers: bool) -> Optional[Set[IssueType]]:
    """
    When any detector flag is given only the flagged detectors run.

    Returns:
        The issue types to report, or None to report everything.
    """
    flags = {
        IssueType.ISLAND: islands,
        IssueType.OVERHANG: overhangs,
        IssueType.RESIN_TRAP: resin_traps,
        IssueType.SUCTION_CUP: suction_cups,
        IssueType.TOUCHING_BOUND: touching_bounds,
        IssueType.PRINT_HEIGHT: print_height,
        IssueType.EMPTY_LAYER: empty_layers,
    }
    if not any(flags.values()):
        return None
    config.disable_all()
    config.island.enabled = islands
    config.overhang.enabled = overhangs
    # Suction cups come out of the resin trap passes
    config.resin_trap.enabled = resin_traps or suction_cups
    config.resin_trap.detect_suction_cups = suction_cups
    config.touching_bound.enabled = touching_bounds
    config.print_height.enabled = print_height
    config.empty_layer.enabled = empty_layers
    return {issue_type for issue_type, flag in flags.items() if flag}


def run_detection(detector: IssueDetector, config: IssuesDetectionConfiguration,
                  max_workers: Optional[int]) -> List[AggregateIssue]:
    """Runs detection with a progress bar. Ctrl-C cancels and keeps the partial result."""
    with Progress(TextColumn("[progress.description]{task.description}"), BarColumn(),
                  TextColumn("{task.completed}/{task.total}"), TimeElapsedColumn(),
                  console=console, transient=True) as bar:
        task_id = bar.add_task("Starting", total=1)

        def on_change(progress: OperationProgress):
            bar.update(task_id, description=progress.item_name, completed=progress.processed_items,
                       total=max(progress.item_count, 1))

        progress = OperationProgress(on_change=on_change)
        with ThreadPoolExecutor(max_workers=1) as runner:
            future = runner.submit(detector.detect, config, progress, max_workers)
            while True:
                try:
                    return future.result(timeout=0.2)
                except FutureTimeoutError:
                    continue
                except KeyboardInterrupt:
                    console.print("[yellow]Cancelling, waiting for running layers to finish...[/]")
                    progress.cancel()


def print_issues(issues: List[AggregateIssue], title: str) -> None:
    if not issues:
        console.print("[green]No issues found.[/]")
        return
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Type")
    table.add_column("Level")
    table.add_column("Layers", justify="right")
    table.add_column("Area (px²)", justify="right")
    table.add_column("Height (mm)", justify="right")
    table.add_column("Bounds")
    for issue in issues:
        color = LEVEL_COLORS.get(issue.level, "white")
        table.add_row(
            issue.issue_type.value,
            f"[{color}]{issue.level.value}[/]",
            issue.layers,
            f"{issue.area:g}",
            f"{issue.total_height:g}",
            str(issue.bounding_rectangle),
        )
    console.print(table)

# --- CLI Commands ---

@app.command()
def detect(
    input_path: Path = typer.Argument(..., exists=True, help="Layer image directory, .npy or .npz volume."),
    islands: bool = typer.Option(False, "--islands", "-i", help="Detect islands."),
    overhangs: bool = typer.Option(False, "--overhangs", "-o", help="Detect overhangs."),
    resin_traps: bool = typer.Option(False, "--resin-traps", "-r", help="Detect resin traps."),
    suction_cups: bool = typer.Option(False, "--suction-cups", "-s", help="Detect suction cups."),
    touching_bounds: bool = typer.Option(False, "--touching-bounds", "-t", help="Detect touching bounds."),
    print_height: bool = typer.Option(False, "--print-height", "-p", help="Detect print height overflow."),
    empty_layers: bool = typer.Option(False, "--empty-layers", "-e", help="Detect empty layers."),
    sort_area: bool = typer.Option(False, "--sort-area", help="Sort by area, largest first."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False,
                                               help="Detection settings JSON."),
    output_json: Optional[Path] = typer.Option(None, "--output", help="Save the report as a JSON file."),
    layer_height: Optional[float] = typer.Option(None, "--layer-height", help="Layer height in mm."),
    pixel_size: Optional[float] = typer.Option(None, "--pixel-size", help="Pixel size in mm."),
    machine_z: Optional[float] = typer.Option(None, "--machine-z", help="Machine printable height in mm."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Detection threads."),
):
    """Detects printability issues on a layer stack. Without detector flags every detector runs."""
    stack = load_stack(input_path, layer_height, pixel_size, machine_z)
    config = load_configuration(config_path)
    requested = apply_detector_flags(config, islands, overhangs, resin_traps, suction_cups,
                                     touching_bounds, print_height, empty_layers)
    for message in config.validate_settings(stack.count):
        console.print(f"[yellow]Note:[/] {message}")

    detector = IssueDetector(stack, config)
    try:
        issues = run_detection(detector, config, workers or settings.max_workers)
    except SliceDFMError as e:
        console.print(f"\n[bold red]Issue detection failed: {e}[/]")
        raise typer.Exit(code=1)

    if requested is not None:
        issues = [issue for issue in issues if issue.issue_type in requested]
    issues = sort_issues(issues, by_area=sort_area)

    report = detector.build_report().model_copy(update={"issues": issues, "status": determine_status(issues)})
    if report.cancelled:
        console.print("[yellow]Detection was cancelled, the results are partial.[/]")
    print_issues(issues, f"Issues in {input_path.name}")
    console.print(f"Analysis Time: {format_time(report.analysis_time_sec)}")
    if issues:
        console.print(f"[dim]Counts:[/dim] {pretty_repr({t.value: n for t, n in report.count_by_type().items()})}")
    color = STATUS_COLORS[report.status]
    console.print(Panel(f"[bold {color}]{report.status.value}[/]", title="Printability", expand=False))

    if output_json:
        try:
            output_json.parent.mkdir(parents=True, exist_ok=True)
            output_json.write_text(report.model_dump_json(indent=2))
            console.print(f"\n[green]Report saved to: {output_json}[/]")
        except OSError as e:
            console.print(f"\n[bold red]Error saving JSON output to {output_json}: {e}[/]")
            raise typer.Exit(code=1)

    if report.status == DFMStatus.FAIL:
        raise typer.Exit(code=2)


@app.command()
def info(
    input_path: Path = typer.Argument(..., exists=True, help="Layer image directory, .npy or .npz volume."),
    layer_height: Optional[float] = typer.Option(None, "--layer-height", help="Layer height in mm."),
    pixel_size: Optional[float] = typer.Option(None, "--pixel-size", help="Pixel size in mm."),
    machine_z: Optional[float] = typer.Option(None, "--machine-z", help="Machine printable height in mm."),
):
    """Shows a summary of a layer stack."""
    stack = load_stack(input_path, layer_height, pixel_size, machine_z)
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column()
    table.add_column(justify="right")
    table.add_row("Layers:", str(stack.count))
    table.add_row("Resolution:", f"{stack.resolution[0]} x {stack.resolution[1]} px")
    table.add_row("Pixel Size:", f"{stack.pixel_size_mm:g} mm")
    table.add_row("Print Height:", f"{stack.print_height:g} mm")
    table.add_row("Machine Z:", f"{stack.machine_z:g} mm" if stack.machine_z > 0 else "unknown")
    table.add_row("Model Bounds:", str(stack.bounding_rectangle))
    table.add_row("Empty Layers:", str(sum(1 for layer in stack if layer.is_empty)))
    table.add_row("Dummy Layers:", str(sum(1 for layer in stack if layer.is_dummy and not layer.is_empty)))
    console.print(table)


@app.command()
def drill(
    input_path: Path = typer.Argument(..., exists=True, help="Layer image directory, .npy or .npz volume."),
    output_dir: Path = typer.Option(..., "--output-dir", help="Directory for the drilled layer images."),
    vent_diameter: Optional[int] = typer.Option(None, "--vent-diameter", min=1, help="Vent diameter in pixels."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False,
                                               help="Detection settings JSON."),
    layer_height: Optional[float] = typer.Option(None, "--layer-height", help="Layer height in mm."),
    pixel_size: Optional[float] = typer.Option(None, "--pixel-size", help="Pixel size in mm."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Detection threads."),
):
    """Detects suction cups and drills a vent hole under each one that has room for it."""
    stack = load_stack(input_path, layer_height, pixel_size, None)
    config = load_configuration(config_path)
    apply_detector_flags(config, False, False, False, True, False, False, False)
    diameter = vent_diameter or settings.vent_hole_diameter_px

    detector = IssueDetector(stack, config)
    try:
        issues = run_detection(detector, config, workers or settings.max_workers)
        cups = [issue for issue in issues if issue.issue_type == IssueType.SUCTION_CUP]
        start_time = time.time()
        drilled = detector.drill_suction_cups(cups, diameter)
        paths = stack.save_directory(output_dir)
    except SliceDFMError as e:
        console.print(f"\n[bold red]Drilling failed: {e}[/]")
        raise typer.Exit(code=1)

    console.print(f"Suction cups found: [cyan]{len(cups)}[/], drilled: [green]{len(drilled)}[/] "
                  f"({format_time(time.time() - start_time)})")
    for issue in cups:
        if issue not in drilled:
            console.print(f"  [yellow]No room for a {diameter}px vent:[/] layers {issue.layers} {issue.bounding_rectangle}")
    console.print(f"[green]{len(paths)} layer images written to: {output_dir}[/]")


@app.command("validate-config")
def validate_config(
    config_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Detection settings JSON."),
    layer_count: Optional[int] = typer.Option(None, "--layers", min=1, help="Check layer indices against this count."),
):
    """Checks a detection settings file and lists settings that look off."""
    config = load_configuration(config_path)
    messages = config.validate_settings(layer_count)
    if not messages:
        console.print("[green]Detection settings look fine.[/]")
        return
    for message in messages:
        console.print(f"- [yellow]{message}[/]")


# --- Main Execution ---
if __name__ == "__main__":
    app()
