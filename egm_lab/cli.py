"""
cli.py - Rich Command Line Interface for EGM Lab

A CLI for fitting Exploratory Graph Models and inspecting their fit.

Usage:
    egm-lab --help
    egm-lab fit data.csv --output egm.npz
    egm-lab fit data.csv --model standard --communities 3 --p-in 0.95 --p-out 0.8
    egm-lab fit data.csv --model standard --search --p-in 0.9 --communities 3 --jobs 4
    egm-lab fit correlations.csv --n 500 --model ega --search --opt BIC
    egm-lab tefi data.csv --structure 1,1,1,2,2,2
    egm-lab info egm.npz
"""

from __future__ import annotations

import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from egm_lab.types import DEFAULT_SEED

# Initialize Typer app and Rich console
app = typer.Typer(
    name="egm-lab",
    help="🕸️  EGM Lab: Exploratory Graph Models with Constrained Loadings",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()


# =============================================================================
# ENUMS FOR CLI OPTIONS
# =============================================================================

class ModelChoice(str, Enum):
    """Base EGM procedures."""
    ega = "ega"
    standard = "standard"


class CriterionChoice(str, Enum):
    """Selection criteria."""
    AIC = "AIC"
    BIC = "BIC"
    logLik = "logLik"
    SRMR = "SRMR"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def load_table(path: Path) -> Tuple[np.ndarray, List[str]]:
    """Load a comma-separated table with a header row of variable names."""
    if not path.exists():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)

    with open(path, "r") as f:
        header = f.readline().strip()
    names = [name.strip().strip('"') for name in header.split(",")]

    try:
        values = np.loadtxt(path, delimiter=",", skiprows=1, ndmin=2)
    except ValueError as e:
        console.print(f"[red]Error:[/red] Could not parse {path}: {e}")
        raise typer.Exit(1)

    if values.shape[1] != len(names):
        console.print(
            f"[red]Error:[/red] Header has {len(names)} names but rows have {values.shape[1]} values"
        )
        raise typer.Exit(1)

    return values, names


def parse_probability(value: Optional[str]):
    """'0.9' -> 0.9 and '0.9,0.8' -> (0.9, 0.8)."""
    if value is None:
        return None
    parts = [float(part) for part in value.split(",")]
    return parts[0] if len(parts) == 1 else tuple(parts)


def configure_logging(verbose: bool) -> None:
    """Route library logs to stderr at DEBUG (verbose) or WARNING."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def print_structure(result) -> None:
    """Print the community assignment of every variable."""
    table = Table(title="Communities", box=box.ROUNDED, title_style="bold cyan")
    table.add_column("Variable", style="cyan")
    table.add_column("Community", justify="right")
    table.add_column("Assigned Loading", justify="right")

    loadings = result.optimized.loadings
    for i, name in enumerate(result.variable_names):
        community = int(result.structure[i])
        table.add_row(name, str(community), f"{loadings[i, community - 1]:+.3f}")

    console.print(table)


def print_fit_comparison(result) -> None:
    """Print standard and optimized fit statistics side by side."""
    standard = result.standard.fit.to_dict()
    optimized = result.optimized.fit.to_dict()

    table = Table(title="Model Fit", box=box.ROUNDED, title_style="bold cyan")
    table.add_column("Statistic", style="dim")
    table.add_column("Standard", justify="right")
    table.add_column("Optimized", justify="right", style="bold green")

    for name, value in standard.items():
        table.add_row(name, f"{value:.4f}", f"{optimized[name]:.4f}")

    console.print(table)


def print_result_summary(result) -> None:
    """Print model metadata and the winning search parameters."""
    summary = Table.grid(padding=(0, 2))
    summary.add_column(style="dim")
    summary.add_column(style="bold")
    summary.add_row("Model", result.metadata.model)
    summary.add_row("Variables (p)", str(result.p))
    summary.add_row("Sample size (n)", str(result.n))
    summary.add_row("Communities (k)", str(result.k))
    summary.add_row("TEFI (empirical)", f"{result.tefi:.4f}")
    if result.metadata.lambda_ is not None:
        summary.add_row("Lambda", f"{result.metadata.lambda_:.4g}")
    if result.metadata.p_in is not None:
        summary.add_row("p_in / p_out", f"{result.metadata.p_in} / {result.metadata.p_out}")
    if result.search is not None:
        parameters = ", ".join(f"{k}={v:.4g}" for k, v in result.search.parameters.items())
        summary.add_row("Search winner", parameters)
        summary.add_row(result.search.criterion, f"{result.search.value:.4f}")
        summary.add_row("Points (failed)", f"{result.search.evaluated} ({result.search.failed})")

    console.print(Panel(summary, title="📊 EGM Summary", border_style="green"))


# =============================================================================
# COMMANDS
# =============================================================================

@app.command()
def fit(
    input_file: Path = typer.Argument(..., help="CSV file with raw data (rows=observations) or a correlation matrix"),
    model: ModelChoice = typer.Option(ModelChoice.ega, "--model", "-m", help="Base procedure"),
    search: bool = typer.Option(False, "--search", help="Search sparsity grid (standard) or lambda path (ega)"),
    communities: Optional[int] = typer.Option(None, "--communities", "-k", help="Number of communities"),
    structure: Optional[str] = typer.Option(None, "--structure", help="Known partition, e.g. 1,1,2,2"),
    p_in: Optional[str] = typer.Option(None, "--p-in", help="Within-community edge probability (or one per community)"),
    p_out: Optional[str] = typer.Option(None, "--p-out", help="Between-community edge probability (or one per community)"),
    opt: CriterionChoice = typer.Option(CriterionChoice.logLik, "--opt", help="Criterion to optimize"),
    constrain_structure: bool = typer.Option(True, "--constrain-structure/--free-structure", help="Assigned loadings dominate cross-loadings"),
    constrain_zeros: bool = typer.Option(True, "--constrain-zeros/--free-zeros", help="Keep zero loadings at zero"),
    n: Optional[int] = typer.Option(None, "--n", help="Sample size (required for correlation matrix input)"),
    nlambda: int = typer.Option(100, "--nlambda", help="Number of lambdas on the graphical lasso path"),
    jobs: int = typer.Option(1, "--jobs", "-j", help="Worker threads for searches"),
    seed: int = typer.Option(DEFAULT_SEED, "--seed", help="Community detection seed"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save the fitted model (.npz or .json)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show library logs"),
):
    """
    Fit an Exploratory Graph Model.

    Example:
        egm-lab fit data.csv --model standard --communities 3 --p-in 0.95 --p-out 0.8
        egm-lab fit data.csv --search --opt BIC --output egm.npz
    """
    from egm_lab import EGM, EGMConfig, save_result
    from egm_lab.io import ResultFormat

    configure_logging(verbose)
    console.print(Panel.fit("🕸️  [bold]Exploratory Graph Model[/bold]", border_style="blue"))

    with console.status("[bold blue]Loading data..."):
        data, names = load_table(input_file)
    console.print(f"  Loaded: [cyan]{data.shape[0]}[/cyan] rows × [cyan]{data.shape[1]}[/cyan] variables")

    try:
        config = EGMConfig(
            model=model.value,
            search=search,
            communities=communities,
            structure=None if structure is None else tuple(structure.split(",")),
            p_in=parse_probability(p_in),
            p_out=parse_probability(p_out),
            opt=opt.value,
            constrain_structure=constrain_structure,
            constrain_zeros=constrain_zeros,
            nlambda=nlambda,
            n_jobs=jobs,
            seed=seed,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    ) as progress:
        progress.add_task(f"Fitting {config.resolved_kind.value} model...", total=None)
        try:
            result = EGM(data, config, n=n, variable_names=names)
        except (ValueError, TypeError, RuntimeError) as e:
            progress.stop()
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    console.print("  [green]✓[/green] Model fitted successfully\n")

    print_result_summary(result)
    print_structure(result)
    print_fit_comparison(result)

    if output is not None:
        format = ResultFormat.JSON if output.suffix == ".json" else ResultFormat.NPZ
        save_result(result, output, format)
        console.print(f"\n  💾 Saved to: [bold]{output}[/bold]")


@app.command()
def tefi(
    input_file: Path = typer.Argument(..., help="CSV file with raw data or a correlation matrix"),
    structure: str = typer.Option(..., "--structure", "-s", help="Partition, e.g. 1,1,1,2,2,2"),
):
    """
    Compute the entropy fit index of a partition.

    Example:
        egm-lab tefi data.csv --structure 1,1,1,2,2,2
    """
    from egm_lab import tefi as entropy_fit

    data, _ = load_table(input_file)
    labels = structure.split(",")

    try:
        measures = entropy_fit(data, labels)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Entropy Fit", box=box.ROUNDED, show_header=False, title_style="bold cyan")
    table.add_column("Measure", style="dim")
    table.add_column("Value", style="bold")
    table.add_row("VN.Entropy.Fit", f"{measures.vn_entropy_fit:.4f}")
    table.add_row("Total.Correlation", f"{measures.total_correlation:.4f}")
    table.add_row("Average.Entropy", f"{measures.average_entropy:.4f}")
    console.print(table)


@app.command()
def info(
    result_file: Path = typer.Argument(..., help="Saved EGM result (.npz or .json)"),
    detailed: bool = typer.Option(False, "--detailed", "-d", help="Show loadings"),
):
    """
    Display a saved EGM result.

    Example:
        egm-lab info egm.npz --detailed
    """
    from egm_lab import load_result

    console.print(Panel.fit("ℹ️  [bold]EGM Result[/bold]", border_style="blue"))

    try:
        result = load_result(result_file)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"  File: [bold]{result_file}[/bold]\n")
    print_result_summary(result)
    print_fit_comparison(result)

    if detailed:
        loadings_table = Table(title="Optimized Loadings", box=box.SIMPLE)
        loadings_table.add_column("Variable", style="cyan")
        for c in range(result.k):
            loadings_table.add_column(f"C{c + 1}", justify="right")
        for i, name in enumerate(result.variable_names):
            loadings_table.add_row(name, *[f"{v:.3f}" for v in result.optimized.loadings[i]])
        console.print(loadings_table)


@app.command()
def version():
    """Show version information."""
    from egm_lab import __version__

    console.print(Panel(
        f"[bold cyan]EGM Lab[/bold cyan] v{__version__}\n\n"
        "Exploratory Graph Models: communities, sparse networks\n"
        "and constrained network loadings.",
        border_style="cyan"
    ))


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
