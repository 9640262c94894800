"""
Two-dimensional embedding for visual inspection of clusters.

t-SNE is computed on the selected principal components. The layout is for
looking at the data only: distances in the embedding do not reflect
distances between cells and must not drive any analysis decision.
"""

from typing import Any, Callable, Dict, Optional, Tuple

import anndata
import numpy as np
import scanpy as sc

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.utils.logger import get_logger
from sccluster.utils.progress_wrapper import with_periodic_progress

logger = get_logger(__name__)

EMBEDDING_DISTANCE_WARNING = (
    "t-SNE preserves local neighborhoods only. Distances between points and "
    "between clusters in the embedding are not meaningful and must not be used "
    "for quantitative comparisons or clustering decisions."
)


class EmbeddingError(SCClusterCoreError):
    """Base exception for embedding operations."""

    pass


class EmbeddingService:
    """Stateless service computing t-SNE layouts."""

    def __init__(self, progress_callback: Optional[Callable[[str], None]] = None):
        logger.debug("Initializing stateless EmbeddingService")
        self.progress_callback = progress_callback

    def run_tsne(
        self,
        adata: anndata.AnnData,
        n_pcs: Optional[int] = None,
        perplexity: float = 30.0,
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Compute a seeded t-SNE layout from principal components.

        Args:
            adata: Snapshot with obsm["X_pca"]; not modified
            n_pcs: Components to use (default: selected number, else all)
            perplexity: t-SNE perplexity, lowered when there are few cells
            random_state: Seed of the layout

        Returns:
            Tuple of (snapshot with obsm["X_tsne"] and uns["embedding"],
            stats, step)
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="embedding")
            if "X_pca" not in adata.obsm:
                raise EmbeddingError("No PCA embedding found; run run_pca first")
            available = adata.obsm["X_pca"].shape[1]
            if n_pcs is None:
                selection = adata.uns.get("component_selection")
                n_pcs = int(selection["n_pcs"]) if selection else available
            if not 1 <= n_pcs <= available:
                raise EmbeddingError(f"n_pcs={n_pcs} outside 1..{available}")
            if adata.n_obs < 4:
                raise EmbeddingError("t-SNE needs at least four cells")

            max_perplexity = (adata.n_obs - 1) / 3.0
            if perplexity > max_perplexity:
                logger.warning(
                    f"Perplexity {perplexity:g} too large for {adata.n_obs} cells; "
                    f"using {max_perplexity:.1f}"
                )
                perplexity = max_perplexity

            logger.info(
                f"Computing t-SNE on {n_pcs} components (perplexity={perplexity:g}, "
                f"random_state={random_state})"
            )
            adata_emb = adata.copy()
            with with_periodic_progress("Computing t-SNE", self.progress_callback):
                sc.tl.tsne(
                    adata_emb,
                    n_pcs=n_pcs,
                    use_rep="X_pca",
                    perplexity=perplexity,
                    random_state=random_state,
                )
            adata_emb.uns.pop("tsne", None)
            adata_emb.uns["embedding"] = {
                "method": "tsne",
                "n_pcs": int(n_pcs),
                "perplexity": float(perplexity),
                "random_state": int(random_state),
                "distance_warning": EMBEDDING_DISTANCE_WARNING,
            }

            coords = adata_emb.obsm["X_tsne"]
            stats = {
                "n_pcs": int(n_pcs),
                "perplexity": float(perplexity),
                "random_state": int(random_state),
                "extent": [float(np.ptp(coords[:, 0])), float(np.ptp(coords[:, 1]))],
                "warning": EMBEDDING_DISTANCE_WARNING,
            }

            step = AnalysisStep(
                operation="scanpy.tl.tsne",
                tool_name="run_tsne",
                description="Seeded t-SNE layout for visualization only",
                library="scanpy",
                parameters={
                    "n_pcs": int(n_pcs),
                    "perplexity": float(perplexity),
                    "random_state": int(random_state),
                },
            )
            record_step(adata_emb, step)

            logger.info("t-SNE completed")
            logger.warning(EMBEDDING_DISTANCE_WARNING)
            return adata_emb, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in t-SNE: {e}")
            raise EmbeddingError(f"t-SNE failed: {str(e)}")
