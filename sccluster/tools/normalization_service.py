"""
Count normalization service for single-cell RNA-seq data.

Library-size normalization followed by a natural-log transform, so that
cells sequenced at different depths become comparable.
"""

from typing import Any, Dict, Tuple

import anndata
import numpy as np
import scanpy as sc
import scipy.sparse as spr

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)


class NormalizationError(SCClusterCoreError):
    """Base exception for normalization operations."""

    pass


def _dense_values(X) -> np.ndarray:
    return X.data if spr.issparse(X) else np.asarray(X)


class NormalizationService:
    """
    Stateless service for count normalization.

    Each cell's counts are divided by the cell total, multiplied by a scale
    factor and log1p transformed. Raw counts are kept in ``layers["counts"]``
    and the log-normalized matrix in ``layers["lognorm"]``.
    """

    def __init__(self):
        logger.debug("Initializing stateless NormalizationService")

    def compute_qc_covariates(
        self, adata: anndata.AnnData, mito_prefix: str = "MT-"
    ) -> anndata.AnnData:
        """
        Add per-cell depth, detected genes and mitochondrial ratio.

        Computed from raw counts; fields the caller already supplied are
        left untouched.

        Args:
            adata: Count matrix (not modified)
            mito_prefix: Case-insensitive prefix of mitochondrial gene identifiers

        Returns:
            anndata.AnnData: New snapshot with n_counts, n_genes, mito_ratio
        """
        adata = adata.copy()
        X = adata.X
        n_counts = np.asarray(X.sum(axis=1)).ravel().astype(np.float64)

        if "n_counts" not in adata.obs.columns:
            adata.obs["n_counts"] = n_counts
        if "n_genes" not in adata.obs.columns:
            adata.obs["n_genes"] = np.asarray((X > 0).sum(axis=1)).ravel().astype(np.int64)
        if "mito_ratio" not in adata.obs.columns:
            is_mito = np.asarray(
                adata.var_names.str.upper().str.startswith(mito_prefix.upper()), dtype=bool
            )
            adata.var["mito"] = is_mito
            if is_mito.any():
                mito_counts = np.asarray(X[:, is_mito].sum(axis=1)).ravel()
                with np.errstate(divide="ignore", invalid="ignore"):
                    ratio = np.where(n_counts > 0, mito_counts / n_counts, 0.0)
            else:
                logger.warning(
                    f"No genes with prefix '{mito_prefix}' found; mito_ratio set to 0"
                )
                ratio = np.zeros(adata.n_obs)
            adata.obs["mito_ratio"] = ratio.astype(np.float64)

        return adata

    def normalize(
        self,
        adata: anndata.AnnData,
        scale_factor: float = 1e4,
        mito_prefix: str = "MT-",
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Library-size normalize and log-transform a count matrix.

        For every cell: x_norm = log1p(x / total * scale_factor). Cells
        with zero total stay zero.

        Args:
            adata: Count matrix (cells x genes); not modified
            scale_factor: Target total per cell before the log transform
            mito_prefix: Prefix used to compute mito_ratio when absent

        Returns:
            Tuple of (normalized snapshot, stats, provenance step)

        Raises:
            NormalizationError: On non-numeric, non-finite or negative input
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="normalization")
            logger.info(
                f"Normalizing {adata.n_obs} cells x {adata.n_vars} genes "
                f"(scale_factor={scale_factor:g})"
            )
            if scale_factor <= 0:
                raise NormalizationError(f"scale_factor must be positive, got {scale_factor}")

            values = _dense_values(adata.X)
            if not np.issubdtype(values.dtype, np.number):
                raise NormalizationError(
                    f"Count matrix must be numeric, found dtype {values.dtype}"
                )
            if values.size and not np.all(np.isfinite(values)):
                raise NormalizationError("Count matrix contains NaN or infinite values")
            if values.size and values.min() < 0:
                raise NormalizationError("Count matrix contains negative values")

            adata_norm = self.compute_qc_covariates(adata, mito_prefix=mito_prefix)
            adata_norm.X = (
                adata_norm.X.astype(np.float64)
                if spr.issparse(adata_norm.X)
                else np.asarray(adata_norm.X, dtype=np.float64)
            )
            adata_norm.layers["counts"] = adata_norm.X.copy()

            totals = np.asarray(adata_norm.X.sum(axis=1)).ravel()
            n_empty = int((totals == 0).sum())
            if n_empty:
                logger.warning(f"{n_empty} cells have zero total counts and stay zero")

            sc.pp.normalize_total(adata_norm, target_sum=scale_factor)
            sc.pp.log1p(adata_norm)
            adata_norm.uns.pop("log1p", None)
            adata_norm.layers["lognorm"] = adata_norm.X.copy()

            stats = {
                "n_cells": int(adata_norm.n_obs),
                "n_genes": int(adata_norm.n_vars),
                "scale_factor": float(scale_factor),
                "n_empty_cells": n_empty,
                "median_counts": float(np.median(totals)) if totals.size else 0.0,
                "mean_mito_ratio": float(adata_norm.obs["mito_ratio"].mean()),
            }

            step = AnalysisStep(
                operation="scanpy.pp.normalize_total+log1p",
                tool_name="normalize",
                description="Library-size normalization to scale_factor followed by log1p",
                library="scanpy",
                parameters={"scale_factor": float(scale_factor), "mito_prefix": mito_prefix},
            )
            record_step(adata_norm, step)

            logger.info(
                f"Normalization completed (median depth {stats['median_counts']:.0f})"
            )
            return adata_norm, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in normalization: {e}")
            raise NormalizationError(f"Normalization failed: {str(e)}")
