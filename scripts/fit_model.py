#!/usr/bin/env python
"""
Fit a MIRT model to item response data and save the fit summary.
"""

from pathlib import Path

import numpy as np
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mirt_analysis.core.data import load_csv_to_response_matrix
from mirt_analysis.core.errors import MirtError
from mirt_analysis.core.parallel import ThreadPoolParallelExecutor
from mirt_analysis.irt.diagnostics import compute_response_prob_comparison
from mirt_analysis.irt.estimation import (
    ConvergedModel,
    ModelSpecification,
    fit_mirt,
    fscores,
    load_estimation_config,
)

BACKEND_DIR = Path(__file__).parent.parent.absolute()
DEFAULT_OUTPUT_DIR = BACKEND_DIR / "data" / "fitted-models"

console = Console(force_terminal=True, legacy_windows=True)
app = typer.Typer()


def save_model(model: ConvergedModel, output_path: Path) -> None:
    """Save the fit summary to a json file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        f.write(model.summary().model_dump_json(indent=4))


def print_fit(model: ConvergedModel) -> None:
    table = Table(title="Model fit")
    table.add_column("Statistic")
    table.add_column("Value", justify="right")
    table.add_row("Log-likelihood", f"{model.log_likelihood:.3f}")
    stats = model.fit_statistics
    if stats is not None:
        for name in ("aic", "bic", "sabic", "g2", "rmsea", "tli", "cfi"):
            value = getattr(stats, name)
            if value is not None:
                table.add_row(name.upper(), f"{value:.4f}")
    console.print(table)


@app.command()
def main(
    input_path: Path = typer.Argument(
        ...,
        help="Path to CSV file with one column per item",
    ),
    output_dir: Path = typer.Option(
        DEFAULT_OUTPUT_DIR,
        "-o",
        "--output-dir",
        help="Output directory for the fit summary and scores",
    ),
    config_path: Path | None = typer.Option(
        None,
        "-c",
        "--config",
        help="YAML estimation config",
    ),
    n_factors: int = typer.Option(
        1,
        "-f",
        "--factors",
        help="Number of latent dimensions",
    ),
    itemtype: str | None = typer.Option(
        None,
        "-t",
        "--itemtype",
        help="Itemtype for every item (default: 2PL/graded)",
    ),
    id_column: str | None = typer.Option(
        None,
        "--id-column",
        help="Column holding respondent ids",
    ),
    group_column: str | None = typer.Option(
        None,
        "--group-column",
        help="Column holding group labels for a multi-group fit",
    ),
    scores: str | None = typer.Option(
        None,
        "--scores",
        help="Also write factor scores using this method (EAP, MAP, ...)",
    ),
    workers: int = typer.Option(
        1,
        "-w",
        "--workers",
        help="Worker threads for independent estimation tasks",
    ),
) -> None:
    """Fit a MIRT model to response data and save the summary as JSON."""

    # Validate input
    if not input_path.exists():
        console.print(f"[red]File not found: {input_path}[/red]")
        raise typer.Exit(1)
    if input_path.suffix != ".csv":
        console.print("[red]Only .csv files are supported[/red]")
        raise typer.Exit(1)

    # Load data and config
    console.print("[dim]Loading data...[/dim]")
    try:
        respondent_ids, data = load_csv_to_response_matrix(
            input_path, id_column=id_column, group_column=group_column
        )
        config = load_estimation_config(config_path)
        spec = ModelSpecification(n_factors=n_factors, itemtypes=itemtype)
    except (MirtError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error loading input: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(
        Panel(
            f"[bold]Fit MIRT Model[/bold]\n\n"
            f"Input: [cyan]{input_path}[/cyan]\n"
            f"Respondents: [cyan]{data.n_respondents}[/cyan]\n"
            f"Items: [cyan]{data.n_items}[/cyan]\n"
            f"Groups: [cyan]{data.n_groups}[/cyan]\n"
            f"Factors: [cyan]{n_factors}[/cyan]\n"
            f"Method: [cyan]{config.method.value}[/cyan]",
            title="Configuration",
        )
    )

    # Fit model
    console.print("[dim]Fitting model...[/dim]")
    try:
        with ThreadPoolParallelExecutor(max_workers=workers) as executor:
            model = fit_mirt(data, spec, config, executor=executor)
            factor_scores = (
                None
                if scores is None
                else fscores(model, scores, reliability=True, executor=executor)
            )
    except MirtError as e:
        console.print(f"[red]Fit failed: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(
        f"  {model.status.value} "
        f"({model.n_iterations} iterations, LL={model.log_likelihood:.2f})"
    )
    for message in model.warnings:
        console.print(f"  [yellow]{message}[/yellow]")
    print_fit(model)

    # Run diagnostics
    console.print("[dim]Running diagnostics...[/dim]")
    eap = fscores(model, "EAP", return_se=False)
    prob_comparison = compute_response_prob_comparison(
        data, model.item_set.items, eap.scores
    )
    abs_diff = np.abs(prob_comparison.difference)
    console.print("Model Diagnostics:")
    console.print(
        f"  Mean diff = {float(np.mean(prob_comparison.difference)):.4f}"
    )
    for p in [10, 25, 50, 75, 90]:
        console.print(
            f"  {p}th percentile |diff| = "
            f"{float(np.quantile(abs_diff, q=p / 100)):.4f}"
        )
    console.print(f"  Max |diff| = {float(np.max(abs_diff)):.4f}")

    # Save outputs
    output_path = output_dir / f"{input_path.stem}.json"
    save_model(model, output_path)
    outputs = f"Output: [cyan]{output_path}[/cyan]"
    if factor_scores is not None:
        scores_path = output_dir / f"{input_path.stem}_scores.csv"
        frame = factor_scores.to_frame()
        frame.insert(0, "respondent", respondent_ids)
        frame.to_csv(scores_path, index=False)
        outputs += f"\nScores: [cyan]{scores_path}[/cyan]"
        if factor_scores.reliability is not None:
            rxx = ", ".join(f"{r:.3f}" for r in factor_scores.reliability)
            outputs += f"\nReliability: [cyan]{rxx}[/cyan]"

    console.print(
        Panel(
            f"[bold green]Model saved[/bold green]\n\n{outputs}",
            title="Done",
        )
    )


if __name__ == "__main__":
    app()
