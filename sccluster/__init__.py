"""
sccluster - graph-based clustering of single-cell RNA-seq data.

Implements the classic Seurat clustering workflow (normalization, variable
gene selection, cell-cycle scoring, covariate regression, PCA, principal
component selection, shared-nearest-neighbor clustering and t-SNE) as
stateless services operating on AnnData snapshots.
"""

from sccluster.version import __version__

__all__ = ["__version__"]
