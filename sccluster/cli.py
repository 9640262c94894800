"""
Command line interface for sccluster.

Runs the clustering workflow into a workspace, inspects checkpoints, and
revisits the two interactive decisions (number of components, active
resolution) without recomputing upstream stages.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sccluster.config.pipeline_config import CONFIG_FILE_NAME, PipelineConfig
from sccluster.config.settings import get_settings
from sccluster.core.analysis_ir import get_provenance
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.pipeline import ClusteringPipeline
from sccluster.core.snapshot import FINAL, load_snapshot, save_snapshot, snapshot_info
from sccluster.tools.clustering_service import ClusteringService
from sccluster.tools.component_selection_service import (
    UNDEFINED,
    ComponentSelectionService,
)
from sccluster.tools.embedding_service import EmbeddingService
from sccluster.tools.visualization_service import VisualizationService
from sccluster.utils.logger import setup_logging
from sccluster.version import __version__

console = Console()

app = typer.Typer(
    name="sccluster",
    help="Graph-based clustering of single-cell expression data",
    add_completion=False,
    rich_markup_mode="rich",
)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, get_settings().LOG_LEVEL, logging.INFO)
    setup_logging(level=level)


def _fail(error: Exception) -> None:
    console.print(
        Panel(
            f"[bold red]{type(error).__name__}[/bold red]\n{error}",
            title="sccluster failed",
            border_style="red",
        )
    )
    raise typer.Exit(code=1)


def _metric(value) -> str:
    return "undefined" if value is None or int(value) == UNDEFINED else str(int(value))


def _derived_path(snapshot: Path, suffix: str) -> Path:
    return snapshot.with_name(f"{snapshot.stem}_{suffix}.h5ad")


def _recompute_downstream(adata, previous):
    """Rebuild graph, clusters and t-SNE with the parameters of an earlier run."""
    graph = previous.uns.get("snn_graph") or {}
    clustering = previous.uns.get("clustering") or {}
    embedding = previous.uns.get("embedding") or {}
    if clustering:
        adata, _, _ = ClusteringService().cluster(
            adata,
            n_neighbors=int(graph.get("n_neighbors", 20)),
            prune_snn=float(graph.get("prune_snn", 1 / 15)),
            resolutions=[float(r) for r in clustering["resolutions"]],
            method=str(clustering["method"]),
            random_state=int(clustering["random_state"]),
            active_resolution=float(clustering["active_resolution"]),
            n_jobs=get_settings().N_JOBS,
        )
    if embedding:
        adata, _, _ = EmbeddingService().run_tsne(
            adata,
            perplexity=float(embedding["perplexity"]),
            random_state=int(embedding["random_state"]),
        )
    return adata


@app.callback(invoke_without_command=True)
def default_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """Show help when invoked without a subcommand."""
    if version:
        console.print(f"sccluster {__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


@app.command()
def run(
    counts: Path = typer.Argument(..., help="Count matrix (.h5ad, .csv, .tsv or 10x directory)"),
    metadata: Optional[Path] = typer.Option(
        None, "--metadata", "-m", help="Per-cell metadata table (first column is the cell id)"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Pipeline configuration JSON"
    ),
    workspace: Optional[Path] = typer.Option(
        None, "--workspace", "-w", help="Directory for checkpoints (default: SCCLUSTER_WORKSPACE)"
    ),
    resume: bool = typer.Option(
        True, "--resume/--no-resume", help="Reuse checkpoints that match the configuration"
    ),
    plots: bool = typer.Option(False, "--plots", help="Write HTML plots into the workspace"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the full clustering workflow."""
    _configure_logging(verbose)
    try:
        pipeline_config = PipelineConfig.load(config) if config else None
        pipeline = ClusteringPipeline(pipeline_config, workspace=workspace)
        result = pipeline.run(counts_path=counts, metadata_path=metadata, resume=resume)
    except SCClusterCoreError as e:
        _fail(e)

    adata = result.adata
    selection = adata.uns["component_selection"]
    clustering = adata.uns["clustering"]

    table = Table(title="Run Summary", box=box.ROUNDED)
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Cells x genes", f"{adata.n_obs} x {adata.n_vars}")
    table.add_row("Resumed from", result.resumed_from or "[dim]fresh run[/dim]")
    table.add_row("Variable genes", str(int(adata.var["highly_variable"].sum())))
    table.add_row(
        "Components",
        f"{int(selection['n_pcs'])} (A={_metric(selection['metric_a'])}, "
        f"B={_metric(selection['metric_b'])}, {selection['source']})",
    )
    for res, n in zip(clustering["resolutions"], clustering["n_clusters"]):
        active = float(res) == float(clustering["active_resolution"])
        marker = " [green](active)[/green]" if active else ""
        table.add_row(f"Clusters @ {float(res):g}", f"{int(n)}{marker}")
    for name, path in result.checkpoints.items():
        table.add_row(f"Checkpoint {name}", path)
    console.print(table)

    if "embedding" in adata.uns:
        console.print(f"[dim]{adata.uns['embedding']['distance_warning']}[/dim]")

    if plots:
        viz = VisualizationService()
        figures = {"elbow": viz.create_elbow_plot(adata)}
        if "X_tsne" in adata.obsm:
            figures["tsne_clusters"] = viz.create_embedding_plot(adata)
        saved = viz.save_plots(figures, pipeline.workspace / "plots")
        console.print(f"Wrote {len(saved)} plots to {pipeline.workspace / 'plots'}")


@app.command("select-pcs")
def select_pcs(
    snapshot: Path = typer.Argument(..., help="Snapshot with PCA results"),
    cumulative_threshold: float = typer.Option(90.0, help="Cumulative % for metric A"),
    pct_threshold: float = typer.Option(5.0, help="Per-component % for metric A"),
    delta_threshold: float = typer.Option(0.1, help="Minimum drop for metric B"),
    fallback: Optional[int] = typer.Option(
        None, "--fallback", help="Components to use if both metrics are undefined"
    ),
    n_pcs: Optional[int] = typer.Option(None, "--n-pcs", help="Manual override"),
    show: int = typer.Option(20, help="Number of components listed"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the snapshot with the new selection"
    ),
    recluster: bool = typer.Option(
        True,
        "--recluster/--no-recluster",
        help="Recompute clusters and t-SNE when the saved selection changes",
    ),
):
    """Report the elbow metrics of a snapshot and optionally store a new choice."""
    _configure_logging(False)
    try:
        previous = load_snapshot(snapshot)
        adata, stats, _ = ComponentSelectionService().select_components(
            previous,
            cumulative_threshold=cumulative_threshold,
            pct_threshold=pct_threshold,
            delta_threshold=delta_threshold,
            fallback_n_pcs=fallback,
            n_pcs_override=n_pcs,
        )
    except SCClusterCoreError as e:
        _fail(e)

    selection = adata.uns["component_selection"]
    pct = np.asarray(selection["pct"])
    cumulative = np.asarray(selection["cumulative_pct"])

    table = Table(title="Variation per component", box=box.SIMPLE)
    table.add_column("PC", justify="right", style="cyan")
    table.add_column("% variation", justify="right")
    table.add_column("Cumulative %", justify="right")
    for i in range(min(show, pct.size)):
        style = "bold green" if i + 1 == stats["n_pcs"] else None
        table.add_row(str(i + 1), f"{pct[i]:.2f}", f"{cumulative[i]:.2f}", style=style)
    console.print(table)
    console.print(
        f"Metric A: {_metric(stats['metric_a'])}  Metric B: {_metric(stats['metric_b'])}  "
        f"Selected: [bold]{stats['n_pcs']}[/bold] ({stats['source']})"
    )

    if output is None:
        return
    try:
        if stats["invalidated"] and recluster:
            console.print(f"Recomputing clusters and t-SNE on {stats['n_pcs']} components")
            adata = _recompute_downstream(adata, previous)
        elif stats["invalidated"]:
            console.print(
                "[yellow]Clusters and t-SNE were built on another number of components "
                "and were left out of the saved snapshot[/yellow]"
            )
        save_snapshot(adata, output, name=output.stem)
    except SCClusterCoreError as e:
        _fail(e)
    console.print(f"Saved snapshot to {output}")


@app.command("set-resolution")
def set_resolution(
    snapshot: Path = typer.Argument(..., help="Clustered snapshot"),
    resolution: float = typer.Argument(..., help="One of the computed resolutions"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Target file (default: <snapshot>_res<r>.h5ad)"
    ),
):
    """Make another computed resolution the active clustering."""
    _configure_logging(False)
    target = output or _derived_path(snapshot, f"res{resolution:g}")
    try:
        adata = load_snapshot(snapshot)
        adata, stats, _ = ClusteringService().set_active_resolution(adata, resolution)
        save_snapshot(
            adata,
            target,
            name=snapshot_info(adata).get("name", FINAL),
        )
    except SCClusterCoreError as e:
        _fail(e)

    console.print(
        f"Active clustering is now {stats['active_key']} with "
        f"{stats['n_clusters']} clusters; saved to {target}"
    )


@app.command()
def inspect(
    snapshot: Path = typer.Argument(..., help="Snapshot to describe"),
    provenance: bool = typer.Option(True, "--provenance/--no-provenance"),
):
    """Describe a snapshot: header, metadata columns, clusters and provenance."""
    _configure_logging(False)
    try:
        adata = load_snapshot(snapshot)
        steps = get_provenance(adata)
    except SCClusterCoreError as e:
        _fail(e)

    info = snapshot_info(adata)
    header = Table(box=box.SIMPLE, show_header=False)
    header.add_column("Key", style="cyan", no_wrap=True)
    header.add_column("Value")
    header.add_row("Shape", f"{adata.n_obs} cells x {adata.n_vars} genes")
    for key in ("name", "created_at", "sccluster_version", "fingerprint"):
        if key in info:
            header.add_row(key, str(info[key]))
    header.add_row("Cell metadata", ", ".join(map(str, adata.obs.columns)) or "-")
    header.add_row("Layers", ", ".join(adata.layers.keys()) or "-")
    console.print(Panel(header, title=str(snapshot), border_style="cyan"))

    if "cluster" in adata.obs:
        sizes = adata.obs["cluster"].value_counts(sort=False)
        clusters = Table(title="Active clusters", box=box.SIMPLE)
        clusters.add_column("Cluster", style="cyan")
        clusters.add_column("Cells", justify="right")
        for label, size in sizes.items():
            clusters.add_row(str(label), str(int(size)))
        console.print(clusters)

    if provenance and steps:
        table = Table(title="Provenance", box=box.SIMPLE)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Operation", style="cyan")
        table.add_column("Parameters")
        for i, step in enumerate(steps, 1):
            table.add_row(str(i), step.operation, json.dumps(step.parameters, default=str))
        console.print(table)


@app.command("config-template")
def config_template(
    output: Path = typer.Argument(
        Path(CONFIG_FILE_NAME), help="Where to write the default configuration"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write the default pipeline configuration as JSON."""
    if output.exists() and not output.is_dir() and not force:
        console.print(f"[red]{output} exists; use --force to overwrite[/red]")
        raise typer.Exit(code=1)
    PipelineConfig.seeded(get_settings().RANDOM_STATE).save(output)
    console.print(f"Wrote default configuration to {output}")


if __name__ == "__main__":
    app()
