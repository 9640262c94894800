"""
Variable feature selection for single-cell RNA-seq data.

Genes are placed in a mean-expression vs dispersion plot, binned by mean
expression, and their dispersion is z-scored within each bin. Genes whose
mean and normalized dispersion exceed the cutoffs are kept as the
variable gene set that drives PCA.
"""

from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

VARIABLE_GENES_KEY = "variable_genes"
BIN_METHODS = ["equal_frequency", "equal_width"]


class FeatureSelectionError(SCClusterCoreError):
    """Base exception for variable feature selection."""

    pass


def gene_mean_dispersion(X) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-gene mean and dispersion of log-normalized data.

    Both are computed on the linear scale (expm1 of the input):
    mean is reported as log1p(mean), dispersion as log(variance / mean).
    Genes with zero mean or zero variance get a NaN dispersion.

    Args:
        X: Log-normalized cells x genes matrix (dense or sparse)

    Returns:
        Tuple of (log mean, log dispersion) arrays, one entry per gene
    """
    n_cells = X.shape[0]
    if spr.issparse(X):
        linear = X.tocsc(copy=True)
        linear.data = np.expm1(linear.data)
        mean = np.asarray(linear.mean(axis=0)).ravel()
        mean_sq = np.asarray(linear.multiply(linear).mean(axis=0)).ravel()
        var = (mean_sq - mean**2) * (n_cells / max(n_cells - 1, 1))
    else:
        linear = np.expm1(np.asarray(X, dtype=np.float64))
        mean = linear.mean(axis=0)
        var = linear.var(axis=0, ddof=1) if n_cells > 1 else np.zeros_like(mean)

    var = np.clip(var, 0.0, None)
    dispersion = np.full(mean.shape, np.nan)
    informative = (mean > 0) & (var > 0)
    dispersion[informative] = np.log(var[informative] / mean[informative])
    return np.log1p(mean), dispersion


def assign_mean_bins(means: pd.Series, n_bins: int, bin_method: str) -> pd.Series:
    """
    Assign each gene to a mean-expression bin (integer codes).

    equal_frequency puts the same number of genes in every bin;
    equal_width splits the mean range into bins of equal width.
    """
    if bin_method not in BIN_METHODS:
        raise FeatureSelectionError(
            f"Invalid bin_method: '{bin_method}'. Must be one of: {', '.join(BIN_METHODS)}"
        )
    n_bins = max(1, min(n_bins, len(means)))
    if n_bins == 1 or means.nunique() == 1:
        return pd.Series(0, index=means.index, dtype=np.int64)
    if bin_method == "equal_width":
        codes = pd.cut(means, bins=n_bins, labels=False)
    else:
        codes = pd.qcut(
            means.rank(method="first"), q=n_bins, labels=False, duplicates="drop"
        )
    return codes.astype(np.int64)


def binned_zscores(dispersions: pd.Series, bins: pd.Series) -> pd.Series:
    """
    Z-score dispersions within each bin.

    Bins with fewer than two informative genes or no spread give 0;
    genes without a dispersion stay NaN.
    """
    grouped = dispersions.groupby(bins)
    bin_mean = grouped.transform("mean")
    bin_std = grouped.transform("std")
    z = (dispersions - bin_mean) / bin_std
    flat = ~np.isfinite(bin_std) | (bin_std == 0)
    z[flat & dispersions.notna()] = 0.0
    return z


def seurat_dispersion_table(
    adata: anndata.AnnData,
    n_bins: int,
    min_mean: float,
    max_mean: float,
    min_disp: float,
    max_disp: Optional[float],
) -> pd.DataFrame:
    """
    Mean, dispersion and normalized dispersion from scanpy's seurat flavor.

    scanpy bins the means into equal-width intervals; the bin codes are
    reproduced here with the same pd.cut call.
    """
    scratch = anndata.AnnData(
        X=adata.X.copy(),
        obs=pd.DataFrame(index=adata.obs_names),
        var=pd.DataFrame(index=adata.var_names),
    )
    sc.pp.highly_variable_genes(
        scratch,
        flavor="seurat",
        n_bins=n_bins,
        min_mean=min_mean,
        max_mean=max_mean,
        min_disp=min_disp,
        max_disp=np.inf if max_disp is None else max_disp,
    )
    table = scratch.var[["means", "dispersions", "dispersions_norm"]].astype(np.float64)
    table["mean_bin"] = assign_mean_bins(table["means"], n_bins, "equal_width")
    return table


class FeatureSelectionService:
    """
    Stateless service selecting highly variable genes.

    Selection is deterministic: identical input and parameters always give
    the identical ordered gene list (descending normalized dispersion,
    ties kept in original gene order).
    """

    def __init__(self):
        logger.debug("Initializing stateless FeatureSelectionService")

    def find_variable_genes(
        self,
        adata: anndata.AnnData,
        n_bins: int = 20,
        min_mean: float = 0.0125,
        max_mean: float = 3.0,
        min_disp: float = 0.5,
        max_disp: Optional[float] = None,
        n_top_genes: Optional[int] = None,
        bin_method: str = "equal_frequency",
        expected_range: Tuple[int, int] = (500, 4000),
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Select variable genes from log-normalized expression.

        A gene is selected when min_mean < mean < max_mean and
        min_disp < normalized dispersion < max_disp.

        Args:
            adata: Log-normalized snapshot; not modified
            n_bins: Number of mean-expression bins
            min_mean: Lower mean cutoff
            max_mean: Upper mean cutoff
            min_disp: Lower normalized dispersion cutoff
            max_disp: Upper normalized dispersion cutoff (None = unbounded)
            n_top_genes: Keep at most this many of the selected genes
            bin_method: equal_frequency or equal_width
            expected_range: Yield range outside of which a warning is logged

        Returns:
            Tuple of (snapshot with var statistics and uns["variable_genes"],
            stats, provenance step)

        Raises:
            FeatureSelectionError: If inputs are invalid or selection fails
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="feature_selection")
            logger.info(
                f"Selecting variable genes among {adata.n_vars} genes "
                f"({n_bins} {bin_method} bins)"
            )
            if adata.n_obs < 2:
                raise FeatureSelectionError("At least two cells are required")
            if min_mean >= max_mean:
                raise FeatureSelectionError("min_mean must be smaller than max_mean")

            adata_hvg = adata.copy()
            if bin_method == "equal_width":
                table = seurat_dispersion_table(
                    adata_hvg, n_bins, min_mean, max_mean, min_disp, max_disp
                )
            else:
                means, dispersions = gene_mean_dispersion(adata_hvg.X)
                table = pd.DataFrame(
                    {"means": means, "dispersions": dispersions},
                    index=adata_hvg.var_names,
                )
                # scanpy only bins by equal-width intervals
                table["mean_bin"] = assign_mean_bins(table["means"], n_bins, bin_method)
                table["dispersions_norm"] = binned_zscores(
                    table["dispersions"], table["mean_bin"]
                )

            upper_disp = np.inf if max_disp is None else max_disp
            z = table["dispersions_norm"].to_numpy()
            selectable = (
                np.isfinite(z)
                & (table["means"].to_numpy() > min_mean)
                & (table["means"].to_numpy() < max_mean)
                & (z > min_disp)
                & (z < upper_disp)
            )

            candidates = np.flatnonzero(selectable)
            order = candidates[np.argsort(-z[candidates], kind="mergesort")]
            if n_top_genes is not None:
                order = order[:n_top_genes]
            variable_genes: List[str] = adata_hvg.var_names[order].tolist()

            for column in ["means", "dispersions", "dispersions_norm", "mean_bin"]:
                adata_hvg.var[column] = table[column].to_numpy()
            adata_hvg.var["highly_variable"] = adata_hvg.var_names.isin(variable_genes)
            adata_hvg.uns[VARIABLE_GENES_KEY] = np.array(variable_genes, dtype=object)

            n_selected = len(variable_genes)
            low, high = expected_range
            within_range = low <= n_selected <= high
            if not within_range:
                logger.warning(
                    f"Selected {n_selected} variable genes, outside the expected "
                    f"range [{low}, {high}]; consider adjusting the cutoffs"
                )

            parameters = {
                "n_bins": int(n_bins),
                "bin_method": bin_method,
                "min_mean": float(min_mean),
                "max_mean": float(max_mean),
                "min_disp": float(min_disp),
                "max_disp": -1.0 if max_disp is None else float(max_disp),
                "n_top_genes": -1 if n_top_genes is None else int(n_top_genes),
            }
            adata_hvg.uns["feature_selection"] = parameters

            stats = {
                "n_genes_tested": int(adata_hvg.n_vars),
                "n_variable_genes": n_selected,
                "n_undefined_dispersion": int(table["dispersions"].isna().sum()),
                "expected_range": [int(low), int(high)],
                "within_expected_range": within_range,
                "top_genes": variable_genes[:10],
            }

            seurat = bin_method == "equal_width"
            step = AnalysisStep(
                operation=(
                    "scanpy.pp.highly_variable_genes" if seurat else "sccluster.find_variable_genes"
                ),
                tool_name="find_variable_genes",
                description="Binned mean/dispersion variable gene selection",
                library="scanpy" if seurat else "pandas",
                parameters=parameters,
            )
            record_step(adata_hvg, step)

            logger.info(f"Selected {n_selected} variable genes")
            return adata_hvg, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in variable gene selection: {e}")
            raise FeatureSelectionError(f"Variable gene selection failed: {str(e)}")


def get_variable_genes(adata: anndata.AnnData) -> List[str]:
    """
    Ordered variable gene set of a snapshot.

    Raises:
        FeatureSelectionError: If variable genes have not been selected yet
    """
    if VARIABLE_GENES_KEY not in adata.uns:
        raise FeatureSelectionError(
            "No variable genes found; run find_variable_genes first"
        )
    return [str(g) for g in adata.uns[VARIABLE_GENES_KEY]]
