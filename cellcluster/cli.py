"""
Command line interface for cellcluster.

Commands:
    run              Run the full pipeline and write marker and cell tables
    qc               Print QC metric distributions to help choose thresholds
    config-template  Write a default pipeline configuration file
"""

import json
from pathlib import Path
from typing import Optional

import pandas as pd
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cellcluster.config.pipeline_config import PipelineConfig
from cellcluster.config.settings import get_settings
from cellcluster.core.exceptions import CellClusterError
from cellcluster.core.loader import load_counts
from cellcluster.core.pipeline import AnalysisPipeline
from cellcluster.tools.quality_service import QualityService
from cellcluster.utils.logger import get_logger, setup_rich_logging
from cellcluster.version import __version__

logger = get_logger(__name__)

console = Console()

app = typer.Typer(
    name="cellcluster",
    help="Unsupervised clustering and marker discovery for single-cell count matrices",
    add_completion=False,
    rich_markup_mode="rich",
)


def _fail(message: str) -> None:
    console.print(Panel.fit(f"[bold red]{message}[/bold red]", title="Error", border_style="red"))
    raise typer.Exit(code=1)


def _load_config(config_path: Optional[Path]) -> PipelineConfig:
    if config_path is None:
        return PipelineConfig()
    try:
        return PipelineConfig.load(config_path)
    except FileNotFoundError as e:
        _fail(str(e))
    except (ValidationError, json.JSONDecodeError) as e:
        _fail(f"Invalid pipeline config {config_path}:\n{e}")


def _cell_table(pipeline: AnalysisPipeline) -> pd.DataFrame:
    """Per-cell report: QC metrics, cluster label, PCA and t-SNE coordinates."""
    view = pipeline.dataset.report_view()
    table = view.cell_metrics.copy()
    if view.clusters is not None:
        table["cluster"] = view.clusters
    if view.pca is not None:
        for i in range(view.pca.shape[1]):
            table[f"PC{i + 1}"] = view.pca[:, i]
    if view.tsne is not None:
        table["tSNE_1"] = view.tsne[:, 0]
        table["tSNE_2"] = view.tsne[:, 1]
    table.index.name = "barcode"
    return table


def _summary_table(results) -> Table:
    table = Table(title="Pipeline summary")
    table.add_column("Stage", style="bold")
    table.add_column("Result")
    stats = results["stats"]
    if "filter" in stats:
        s = stats["filter"]
        table.add_row(
            "Quality filter",
            f"{s['initial_cells']} → {s['final_cells']} cells, "
            f"{s['initial_genes']} → {s['final_genes']} genes",
        )
    if "select_features" in stats:
        table.add_row("Variable genes", str(stats["select_features"]["n_features_selected"]))
    if "pca" in stats:
        s = stats["pca"]
        table.add_row(
            "PCA",
            f"{s['n_components']} components, {s['cumulative_variance'] * 100:.1f}% variance",
        )
    if "cluster" in stats:
        s = stats["cluster"]
        table.add_row(
            "Clustering",
            f"{s['n_clusters']} clusters at resolution {s['resolution']} (seed {s['seed']})",
        )
    if "tsne" in stats:
        table.add_row("t-SNE", f"KL divergence {stats['tsne']['kl_divergence']:.3f}")
    table.add_row("Markers", str(len(results["markers"])))
    return table


@app.command()
def run(
    input_path: Path = typer.Argument(..., help="10X directory, .h5ad file or count table"),
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Pipeline configuration JSON"
    ),
    output_dir: Path = typer.Option(
        Path("cellcluster_output"), "--output", "-o", help="Directory for result tables"
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for randomized stages"),
    resolution: Optional[float] = typer.Option(
        None, "--resolution", "-r", help="Clustering resolution"
    ),
    transpose: bool = typer.Option(
        False, "--transpose", help="Count table has genes as rows"
    ),
):
    """Run the full clustering and marker pipeline."""
    settings = get_settings()
    setup_rich_logging(settings.LOG_LEVEL, console=console)

    config = _load_config(config_path)
    if seed is not None:
        config.seed = seed
    elif config.seed is None:
        config.seed = settings.DEFAULT_SEED
    if resolution is not None:
        config.clustering.resolution = resolution
    elif config_path is None:
        config.clustering.resolution = settings.DEFAULT_CLUSTER_RESOLUTION

    console.print(
        Panel.fit(
            f"[bold]cellcluster {__version__}[/bold]\nInput: {input_path}",
            border_style="cyan",
        )
    )
    try:
        load_kwargs = {"transpose": True} if transpose else {}
        pipeline = AnalysisPipeline.from_path(input_path, config, **load_kwargs)
        results = pipeline.run_all()
    except CellClusterError as e:
        _fail(f"{type(e).__name__}: {e.message}")

    output_dir.mkdir(parents=True, exist_ok=True)
    markers_path = output_dir / "markers.csv"
    cells_path = output_dir / "cells.csv"
    stats_path = output_dir / "stats.json"
    results["markers"].to_csv(markers_path, index=False)
    _cell_table(pipeline).to_csv(cells_path)
    stats_path.write_text(json.dumps(results["stats"], indent=2, default=str))
    config.save(output_dir / "config.json")

    console.print(_summary_table(results))
    console.print(f"[green]Wrote[/green] {markers_path}, {cells_path}, {stats_path}")


@app.command()
def qc(
    input_path: Path = typer.Argument(..., help="10X directory, .h5ad file or count table"),
    mito_prefix: Optional[str] = typer.Option(
        "MT-", "--mito-prefix", help="Mitochondrial gene prefix, empty to skip"
    ),
    transpose: bool = typer.Option(False, "--transpose", help="Count table has genes as rows"),
):
    """Print QC metric distributions before choosing filter thresholds."""
    settings = get_settings()
    setup_rich_logging(settings.LOG_LEVEL, console=console)
    try:
        load_kwargs = {"transpose": True} if transpose else {}
        dataset = load_counts(input_path, **load_kwargs)
        summary = QualityService().summarize_qc(dataset, mito_prefix=mito_prefix or None)
    except CellClusterError as e:
        _fail(f"{type(e).__name__}: {e.message}")

    table = Table(title=f"QC metrics ({summary['n_cells']} cells × {summary['n_genes']} genes)")
    table.add_column("Metric", style="bold")
    for column in ("min", "median", "mean", "max"):
        table.add_column(column, justify="right")
    for metric in ("total_counts", "n_genes_by_counts", "mito_fraction"):
        if metric in summary:
            values = summary[metric]
            table.add_row(metric, *(f"{values[k]:.4g}" for k in ("min", "median", "mean", "max")))
    console.print(table)
    console.print(f"Genes detected in no cell: {summary['genes_not_detected']}")


@app.command("config-template")
def config_template(
    output: Path = typer.Argument(Path("cellcluster_config.json"), help="Destination file"),
):
    """Write the default pipeline configuration as JSON."""
    PipelineConfig().save(output)
    console.print(f"[green]Wrote default configuration to[/green] {output}")


if __name__ == "__main__":
    app()
