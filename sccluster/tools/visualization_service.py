"""
Visualization service for clustering results.

Interactive Plotly figures for the decision points of the workflow (elbow
plot, cluster layout, marker expression) plus marker-gene expression
tables that downstream consumers key by gene identifier.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import anndata
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import plotly.io as pio
from scipy.sparse import issparse

from sccluster.core.exceptions import SCClusterCoreError
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)


class VisualizationError(SCClusterCoreError):
    """Base exception for visualization operations."""

    pass


class VisualizationService:
    """
    Plotly figures and marker views for clustered snapshots.

    Marker expression is read from ``layers["lognorm"]`` (log-normalized
    values before regression) when present, so consumers see biological
    expression rather than scaled residuals.
    """

    def __init__(self):
        logger.debug("Initializing VisualizationService")
        self.cluster_colors = px.colors.qualitative.Set1 + px.colors.qualitative.Set3
        self.continuous_colors = px.colors.sequential.Viridis
        self.default_width = 800
        self.default_height = 600

    def _point_size(self, n_cells: int) -> int:
        if n_cells < 1000:
            return 8
        if n_cells < 10000:
            return 5
        return 3

    def _present_genes(self, adata: anndata.AnnData, genes: Sequence[str]) -> List[str]:
        present = [g for g in genes if g in adata.var_names]
        missing = [g for g in genes if g not in adata.var_names]
        if missing:
            logger.warning(f"Genes not found and skipped: {missing}")
        return present

    def get_feature_expression(
        self,
        adata: anndata.AnnData,
        genes: Sequence[str],
        layer: Optional[str] = "lognorm",
    ) -> pd.DataFrame:
        """
        Expression of marker genes per cell.

        Args:
            adata: Snapshot
            genes: Gene identifiers; unknown genes are skipped with a warning
            layer: Layer to read (falls back to X when absent)

        Returns:
            pd.DataFrame: Cells x genes expression table
        """
        genes = self._present_genes(adata, genes)
        source = adata.layers[layer] if layer and layer in adata.layers else adata.X
        idx = adata.var_names.get_indexer(genes)
        values = source[:, idx]
        values = values.toarray() if issparse(values) else np.asarray(values)
        return pd.DataFrame(values, index=adata.obs_names, columns=genes)

    def cluster_average_expression(
        self,
        adata: anndata.AnnData,
        genes: Sequence[str],
        cluster_key: str = "cluster",
        layer: Optional[str] = "lognorm",
    ) -> pd.DataFrame:
        """
        Mean marker expression per cluster.

        Returns:
            pd.DataFrame: Clusters x genes table of mean expression
        """
        if cluster_key not in adata.obs.columns:
            raise VisualizationError(f"Cluster column '{cluster_key}' not found")
        expression = self.get_feature_expression(adata, genes, layer=layer)
        return expression.groupby(adata.obs[cluster_key].to_numpy()).mean()

    def create_elbow_plot(
        self, adata: anndata.AnnData, title: Optional[str] = None
    ) -> go.Figure:
        """
        Standard deviation of each principal component, with the selected
        number of components marked when available.
        """
        try:
            if "pca" not in adata.uns or "stdev" not in adata.uns["pca"]:
                raise VisualizationError("PCA standard deviations not found. Run PCA first.")

            stdev = np.asarray(adata.uns["pca"]["stdev"])
            components = list(range(1, stdev.size + 1))

            fig = go.Figure(
                go.Scatter(
                    x=components,
                    y=stdev,
                    mode="markers",
                    name="Standard deviation",
                    marker=dict(size=7),
                )
            )

            selection = adata.uns.get("component_selection")
            if selection:
                n_pcs = int(selection["n_pcs"])
                fig.add_vline(
                    x=n_pcs + 0.5,
                    line_dash="dash",
                    line_color="red",
                    annotation_text=f"{n_pcs} PCs ({selection['source']})",
                )

            fig.update_layout(
                title=title or "Elbow Plot",
                xaxis_title="Principal Component",
                yaxis_title="Standard Deviation",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
                xaxis=dict(showgrid=True, gridcolor="lightgray"),
                yaxis=dict(showgrid=True, gridcolor="lightgray"),
            )
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating elbow plot: {e}")
            raise VisualizationError(f"Failed to create elbow plot: {str(e)}")

    def create_embedding_plot(
        self,
        adata: anndata.AnnData,
        color_by: str = "cluster",
        basis: str = "X_tsne",
        title: Optional[str] = None,
    ) -> go.Figure:
        """
        Cells on the 2D embedding colored by a metadata column.

        Raises:
            VisualizationError: If the embedding or the column is missing
        """
        try:
            if basis not in adata.obsm:
                raise VisualizationError(f"Embedding '{basis}' not found. Run t-SNE first.")
            if color_by not in adata.obs.columns:
                raise VisualizationError(f"'{color_by}' not found in cell metadata")

            coords = adata.obsm[basis]
            label = basis.replace("X_", "").upper()
            color_data = adata.obs[color_by]
            categorical = not pd.api.types.is_numeric_dtype(color_data)

            fig = px.scatter(
                x=coords[:, 0],
                y=coords[:, 1],
                color=color_data.astype(str) if categorical else color_data,
                hover_name=adata.obs_names,
                title=title or f"{label} colored by {color_by}",
                labels={"x": f"{label} 1", "y": f"{label} 2", "color": color_by},
                width=self.default_width,
                height=self.default_height,
                color_discrete_sequence=self.cluster_colors,
                color_continuous_scale=self.continuous_colors,
                category_orders=(
                    {"color": [str(c) for c in color_data.cat.categories]}
                    if isinstance(color_data.dtype, pd.CategoricalDtype)
                    else None
                ),
            )
            fig.update_traces(marker=dict(size=self._point_size(adata.n_obs), opacity=0.8))
            fig.update_layout(plot_bgcolor="white", hovermode="closest")
            return fig

        except VisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating embedding plot: {e}")
            raise VisualizationError(f"Failed to create embedding plot: {str(e)}")

    def create_feature_plot(
        self,
        adata: anndata.AnnData,
        gene: str,
        basis: str = "X_tsne",
        layer: Optional[str] = "lognorm",
    ) -> go.Figure:
        """Expression of one gene on the 2D embedding."""
        if basis not in adata.obsm:
            raise VisualizationError(f"Embedding '{basis}' not found. Run t-SNE first.")
        if gene not in adata.var_names:
            raise VisualizationError(f"Gene '{gene}' not found")

        expression = self.get_feature_expression(adata, [gene], layer=layer)[gene]
        coords = adata.obsm[basis]
        label = basis.replace("X_", "").upper()
        order = np.argsort(expression.to_numpy(), kind="mergesort")

        fig = px.scatter(
            x=coords[order, 0],
            y=coords[order, 1],
            color=expression.to_numpy()[order],
            title=f"{gene} expression",
            labels={"x": f"{label} 1", "y": f"{label} 2", "color": gene},
            width=self.default_width,
            height=self.default_height,
            color_continuous_scale=self.continuous_colors,
        )
        fig.update_traces(marker=dict(size=self._point_size(adata.n_obs), opacity=0.8))
        fig.update_layout(plot_bgcolor="white")
        return fig

    def save_plots(
        self, plots: Dict[str, go.Figure], output_dir: Union[str, Path]
    ) -> List[str]:
        """
        Save figures as standalone HTML files.

        Returns:
            List[str]: Paths to saved files
        """
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        saved_files = []
        for name, fig in plots.items():
            html_path = output_path / f"{name}.html"
            pio.write_html(fig, html_path)
            saved_files.append(str(html_path))
            logger.info(f"Saved HTML: {html_path}")
        return saved_files
