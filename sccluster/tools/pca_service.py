"""
Principal component analysis service for single-cell RNA-seq data.

PCA is fitted on the scaled expression of the variable gene set; every
gene (variable or not) is then projected onto the components so that
loadings can be inspected for the whole transcriptome.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import scipy.sparse as spr
from sklearn.decomposition import PCA

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.tools.feature_selection_service import VARIABLE_GENES_KEY
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)


class PCAError(SCClusterCoreError):
    """Base exception for dimensionality reduction."""

    pass


def _dense(X) -> np.ndarray:
    return X.toarray() if spr.issparse(X) else np.asarray(X, dtype=np.float64)


def project_genes(X: np.ndarray, embeddings: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """
    Loadings of every gene on fitted components.

    For genes used in the fit this reproduces the fitted loadings exactly;
    for the other genes it gives their covariance with each component
    scaled the same way.

    Args:
        X: Cells x genes matrix
        embeddings: Cells x components scores
        variance: Variance of each component's scores

    Returns:
        np.ndarray: Genes x components loadings
    """
    n_cells = X.shape[0]
    centered = X - X.mean(axis=0)
    denom = (n_cells - 1) * variance
    safe = np.where(denom > 0, denom, 1.0)
    projected = centered.T @ embeddings / safe
    projected[:, denom <= 0] = 0.0
    return projected


class PCAService:
    """Stateless service for PCA on the variable gene set."""

    def __init__(self):
        logger.debug("Initializing stateless PCAService")

    def run_pca(
        self,
        adata: anndata.AnnData,
        n_comps: int = 50,
        genes: Optional[Sequence[str]] = None,
        svd_solver: str = "auto",
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Fit PCA on the variable genes and project all genes.

        Args:
            adata: Scaled snapshot; not modified
            n_comps: Number of components (clamped to the data rank bound)
            genes: Genes to fit on (default: uns["variable_genes"])
            svd_solver: Solver passed to sklearn PCA
            random_state: Seed for randomized/arpack solvers

        Returns:
            Tuple of (snapshot with obsm["X_pca"], varm["PCs"],
            varm["PCs_projected"] and uns["pca"]; stats; step)

        Raises:
            PCAError: If no genes are available or the fit fails
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="pca")
            if genes is None:
                if VARIABLE_GENES_KEY not in adata.uns:
                    raise PCAError("No variable genes found; run find_variable_genes first")
                genes = [str(g) for g in adata.uns[VARIABLE_GENES_KEY]]
            genes = list(genes)
            if not genes:
                raise PCAError("PCA needs at least one gene")

            missing = [g for g in genes if g not in adata.var_names]
            if missing:
                raise PCAError(
                    f"{len(missing)} PCA genes are not in the matrix (e.g. {missing[:5]})"
                )

            max_comps = min(adata.n_obs, len(genes))
            if n_comps > max_comps:
                logger.warning(
                    f"Requested {n_comps} components but only {max_comps} are "
                    f"possible; using {max_comps}"
                )
                n_comps = max_comps
            solver = svd_solver
            if solver == "arpack" and n_comps >= max_comps:
                solver = "full"

            logger.info(
                f"Running PCA with {n_comps} components on {len(genes)} genes "
                f"(svd_solver={solver})"
            )

            adata_pca = adata.copy()
            X_all = _dense(adata_pca.X)
            gene_idx = adata_pca.var_names.get_indexer(genes)
            X_fit = X_all[:, gene_idx]

            pca = PCA(n_components=n_comps, svd_solver=solver, random_state=random_state)
            embeddings = pca.fit_transform(X_fit)
            variance = pca.explained_variance_
            stdev = np.sqrt(variance)

            loadings = np.zeros((adata_pca.n_vars, n_comps))
            loadings[gene_idx, :] = pca.components_.T

            adata_pca.obsm["X_pca"] = embeddings
            adata_pca.varm["PCs"] = loadings
            adata_pca.varm["PCs_projected"] = project_genes(X_all, embeddings, variance)
            adata_pca.uns["pca"] = {
                "stdev": stdev,
                "variance": variance,
                "variance_ratio": pca.explained_variance_ratio_,
                "genes_used": np.array(genes, dtype=object),
                "mean": pca.mean_,
                "n_comps": int(n_comps),
                "svd_solver": solver,
                "random_state": int(random_state),
            }

            stats = {
                "n_comps": int(n_comps),
                "n_genes_used": len(genes),
                "stdev": stdev.tolist(),
                "total_variance_explained": float(pca.explained_variance_ratio_.sum() * 100),
            }

            step = AnalysisStep(
                operation="sklearn.decomposition.PCA",
                tool_name="run_pca",
                description="PCA on variable genes with projection of all genes",
                library="sklearn",
                parameters={
                    "n_comps": int(n_comps),
                    "svd_solver": solver,
                    "random_state": int(random_state),
                    "n_genes": len(genes),
                },
            )
            record_step(adata_pca, step)

            logger.info(
                f"PCA completed: {stats['total_variance_explained']:.1f}% variance explained"
            )
            return adata_pca, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in PCA: {e}")
            raise PCAError(f"PCA failed: {str(e)}")


def reconstruct(adata: anndata.AnnData, n_comps: Optional[int] = None) -> np.ndarray:
    """
    Rebuild the fitted expression from the first n_comps components.

    With all components of a full-rank fit this returns the PCA input
    (cells x genes_used) up to numerical precision.
    """
    if "X_pca" not in adata.obsm or "pca" not in adata.uns:
        raise PCAError("Snapshot has no PCA results")
    genes = [str(g) for g in adata.uns["pca"]["genes_used"]]
    idx = adata.var_names.get_indexer(genes)
    k = n_comps or adata.obsm["X_pca"].shape[1]
    components = adata.varm["PCs"][idx, :k]
    return adata.obsm["X_pca"][:, :k] @ components.T + np.asarray(adata.uns["pca"]["mean"])


def top_loading_genes(
    adata: anndata.AnnData, pc: int, n: int = 10, projected: bool = True
) -> Dict[str, List[str]]:
    """
    Genes with the strongest positive and negative loadings on a component.

    Args:
        adata: Snapshot with PCA results
        pc: 1-based component number
        n: Genes per direction
        projected: Use loadings of all genes rather than only fitted genes

    Returns:
        Dict with "positive" and "negative" gene lists, strongest first
    """
    key = "PCs_projected" if projected else "PCs"
    if key not in adata.varm:
        raise PCAError("Snapshot has no PCA loadings")
    n_comps = adata.varm[key].shape[1]
    if not 1 <= pc <= n_comps:
        raise PCAError(f"Component {pc} out of range 1..{n_comps}")

    weights = adata.varm[key][:, pc - 1]
    order = np.argsort(weights, kind="mergesort")
    names = adata.var_names
    return {
        "positive": [str(names[i]) for i in order[::-1][:n] if weights[i] > 0],
        "negative": [str(names[i]) for i in order[:n] if weights[i] < 0],
    }
