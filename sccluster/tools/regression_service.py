"""
Unwanted-variation regression and scaling for single-cell RNA-seq data.

Per gene, an ordinary least squares fit against cell-level covariates
(sequencing depth, mitochondrial ratio, cell-cycle scores) is removed from
the expression vector. The residual matrix is then centered and scaled
per gene, with clipping, before PCA.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError, SchemaValidationError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_COVARIATES = ["n_counts", "mito_ratio", "s_score", "g2m_score"]


class RegressionError(SCClusterCoreError):
    """Base exception for covariate regression and scaling."""

    pass


def regress_residuals(
    X: np.ndarray, covariates: np.ndarray, chunk_size: int = 1000
) -> np.ndarray:
    """
    Remove the OLS fit of covariates from every column of X.

    The model includes an intercept, and only the covariate effect is
    subtracted, so each gene keeps its mean.

    Args:
        X: Dense cells x genes matrix
        covariates: Cells x covariates matrix (no constant columns)
        chunk_size: Number of genes fitted per block

    Returns:
        np.ndarray: Residual matrix with the original gene means
    """
    X = np.array(X, dtype=np.float64)
    design = covariates - covariates.mean(axis=0)
    gene_means = X.mean(axis=0)

    for start in range(0, X.shape[1], chunk_size):
        block = slice(start, start + chunk_size)
        centered = X[:, block] - gene_means[block]
        beta, *_ = np.linalg.lstsq(design, centered, rcond=None)
        X[:, block] -= design @ beta

    return X


class RegressionService:
    """
    Stateless service for regressing out covariates and scaling genes.

    Which covariates to regress is a caller decision; the service only
    requires that they exist and are numeric.
    """

    def __init__(self):
        logger.debug("Initializing stateless RegressionService")

    def _covariate_matrix(
        self, adata: anndata.AnnData, covariates: Sequence[str]
    ) -> Tuple[np.ndarray, List[str], List[str]]:
        non_numeric = [
            name
            for name in covariates
            if not pd.api.types.is_numeric_dtype(adata.obs[name])
            or pd.api.types.is_bool_dtype(adata.obs[name])
        ]
        if non_numeric:
            raise SchemaValidationError(
                f"Covariates must be numeric: {non_numeric}",
                details={"errors": [f"'{n}' is not numeric" for n in non_numeric]},
            )

        matrix = adata.obs[list(covariates)].to_numpy(dtype=np.float64)
        if not np.all(np.isfinite(matrix)):
            raise SchemaValidationError("Covariates contain missing or infinite values")

        spread = matrix.std(axis=0) if matrix.size else np.array([])
        keep = spread > 1e-12 * np.maximum(1.0, np.abs(matrix).max(axis=0))
        used = [c for c, k in zip(covariates, keep) if k]
        dropped = [c for c, k in zip(covariates, keep) if not k]
        return matrix[:, keep], used, dropped

    def regress_out(
        self,
        adata: anndata.AnnData,
        covariates: Optional[Sequence[str]] = None,
        chunk_size: int = 1000,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Regress cell-level covariates out of every gene.

        Constant covariates carry no information and are skipped with a
        warning; if nothing remains, the matrix is returned unchanged.

        Args:
            adata: Log-normalized snapshot; not modified
            covariates: Numeric metadata fields (default: depth, mito ratio
                and both cell-cycle scores)
            chunk_size: Genes fitted per block

        Returns:
            Tuple of (residual snapshot, stats, provenance step)

        Raises:
            SchemaValidationError: If a covariate is missing or non-numeric
            RegressionError: If the regression itself fails
        """
        covariates = list(DEFAULT_COVARIATES if covariates is None else covariates)
        try:
            ensure_cell_metadata(adata, required=covariates, stage="regression")
            logger.info(
                f"Regressing out {covariates} from {adata.n_vars} genes "
                f"(chunk_size={chunk_size})"
            )

            matrix, used, dropped = self._covariate_matrix(adata, covariates)
            if dropped:
                logger.warning(f"Covariates with zero variance are ignored: {dropped}")

            adata_reg = adata.copy()
            if used:
                X = adata_reg.X.toarray() if spr.issparse(adata_reg.X) else adata_reg.X
                adata_reg.X = regress_residuals(X, matrix, chunk_size=chunk_size)
            else:
                logger.warning("No informative covariates; matrix left unchanged")

            adata_reg.uns["regression"] = {
                "covariates": np.array(used, dtype=object),
                "dropped_covariates": np.array(dropped, dtype=object),
                "model": "ols",
            }

            stats = {
                "covariates_requested": covariates,
                "covariates_used": used,
                "covariates_dropped": dropped,
                "n_genes": int(adata_reg.n_vars),
            }

            step = AnalysisStep(
                operation="numpy.linalg.lstsq",
                tool_name="regress_out",
                description="Per-gene OLS removal of cell-level covariates",
                library="numpy",
                parameters={"covariates": covariates, "chunk_size": int(chunk_size)},
            )
            record_step(adata_reg, step)

            logger.info(f"Regression completed using {len(used)} covariates")
            return adata_reg, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in covariate regression: {e}")
            raise RegressionError(f"Covariate regression failed: {str(e)}")

    def scale(
        self,
        adata: anndata.AnnData,
        max_value: Optional[float] = 10.0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Center every gene to zero mean, scale to unit variance and clip.

        Args:
            adata: Snapshot to scale; not modified
            max_value: Clip to [-max_value, max_value] (None disables clipping)

        Returns:
            Tuple of (scaled snapshot, stats, provenance step)
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="scaling")
            logger.info(f"Scaling {adata.n_vars} genes (max_value={max_value})")
            adata_scaled = adata.copy()
            if spr.issparse(adata_scaled.X):
                adata_scaled.X = adata_scaled.X.toarray()
            adata_scaled.X = np.asarray(adata_scaled.X, dtype=np.float64)
            X = adata_scaled.X
            constant = np.ptp(X, axis=0) <= 1e-12 * np.maximum(1.0, np.abs(X).max(axis=0))
            n_constant = int(constant.sum())
            if n_constant:
                logger.warning(f"{n_constant} genes have zero variance and scale to 0")

            sc.pp.scale(adata_scaled, zero_center=True, max_value=max_value)
            adata_scaled.X[:, constant] = 0.0

            n_clipped = (
                int((np.abs(adata_scaled.X) >= max_value).sum()) if max_value else 0
            )
            stats = {
                "max_value": -1.0 if max_value is None else float(max_value),
                "n_constant_genes": n_constant,
                "n_clipped_values": n_clipped,
            }

            step = AnalysisStep(
                operation="scanpy.pp.scale",
                tool_name="scale",
                description="Per-gene centering and unit-variance scaling with clipping",
                library="scanpy",
                parameters={"max_value": stats["max_value"], "zero_center": True},
            )
            record_step(adata_scaled, step)

            logger.info(f"Scaling completed ({n_clipped} values clipped)")
            return adata_scaled, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in scaling: {e}")
            raise RegressionError(f"Scaling failed: {str(e)}")

    def regress_and_scale(
        self,
        adata: anndata.AnnData,
        covariates: Optional[Sequence[str]] = None,
        max_value: Optional[float] = 10.0,
        chunk_size: int = 1000,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """Regress out covariates, then scale. Returns the scaling step."""
        adata_reg, reg_stats, _ = self.regress_out(
            adata, covariates=covariates, chunk_size=chunk_size
        )
        adata_scaled, scale_stats, step = self.scale(adata_reg, max_value=max_value)
        return adata_scaled, {"regression": reg_stats, "scaling": scale_stats}, step
