"""
Input loading for clustering runs.

Reads the QC-filtered count matrix, joins the per-cell metadata table and
parses the cell-cycle reference table. All identifier and dimension
checks that must hold before any computation happens live here.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as spr

from sccluster.core import DataLoadingError
from sccluster.core.exceptions import ConfigurationError
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

GENE_COLUMN_CANDIDATES = ["gene", "gene_id", "geneID", "gene_name", "geneName", "symbol"]
PHASE_COLUMN_CANDIDATES = ["phase", "Phase", "cell_cycle_phase"]
S_PHASE_LABELS = {"S"}
G2M_PHASE_LABELS = {"G2/M", "G2M", "G2-M"}


@dataclass
class CellCycleGenes:
    """Marker genes of the S and G2/M phases."""

    s_genes: List[str] = field(default_factory=list)
    g2m_genes: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.s_genes and not self.g2m_genes

    def overlap(self) -> List[str]:
        """Genes listed for both phases."""
        g2m = set(self.g2m_genes)
        return [g for g in self.s_genes if g in g2m]


def detect_format(path: Union[str, Path]) -> str:
    """Infer the count matrix format from its path."""
    path = Path(path)
    if path.is_dir():
        return "10x"
    name = path.name.lower()
    if name.endswith(".gz"):
        name = name[:-3]
    if name.endswith(".h5ad"):
        return "h5ad"
    if name.endswith(".mtx"):
        return "10x"
    if name.endswith(".csv"):
        return "csv"
    if name.endswith((".tsv", ".txt")):
        return "tsv"
    raise DataLoadingError(
        f"Unsupported count matrix format: {path}",
        details={"path": str(path), "supported": ["h5ad", "10x", "csv", "tsv"]},
    )


def check_unique_identifiers(adata: anndata.AnnData) -> None:
    """
    Ensure cell and gene identifiers are unique.

    Raises:
        ConfigurationError: If either axis has duplicates
    """
    for axis, index in (("cell", adata.obs_names), ("gene", adata.var_names)):
        if not index.is_unique:
            duplicates = index[index.duplicated()].unique().tolist()
            raise ConfigurationError(
                f"Count matrix has {len(duplicates)} duplicated {axis} identifiers "
                f"(e.g. {duplicates[:5]})",
                details={"axis": axis, "duplicates": duplicates[:20]},
            )


def load_count_matrix(
    path: Union[str, Path], genes_as_rows: bool = True
) -> anndata.AnnData:
    """
    Load a QC-filtered count matrix as a cells x genes AnnData.

    Args:
        path: .h5ad file, 10x directory (or matrix.mtx inside one), or a
            CSV/TSV table with identifiers in the first column
        genes_as_rows: For delimited text, whether rows are genes (the
            usual layout of exported count tables)

    Returns:
        anndata.AnnData: Counts with unique cell and gene identifiers

    Raises:
        DataLoadingError: If the file is missing or cannot be parsed
        ConfigurationError: If identifiers are duplicated or counts are invalid
    """
    path = Path(path)
    if not path.exists():
        raise DataLoadingError(f"Count matrix not found: {path}", details={"path": str(path)})

    format_type = detect_format(path)
    logger.info(f"Loading count matrix from {path} (format: {format_type})")

    try:
        if format_type == "h5ad":
            adata = anndata.read_h5ad(path)
        elif format_type == "10x":
            directory = path if path.is_dir() else path.parent
            adata = sc.read_10x_mtx(directory, var_names="gene_symbols", make_unique=True)
        else:
            sep = "," if format_type == "csv" else "\t"
            df = pd.read_csv(path, sep=sep, index_col=0)
            if genes_as_rows:
                df = df.T
            adata = anndata.AnnData(
                X=df.to_numpy(dtype=np.float64),
                obs=pd.DataFrame(index=df.index.astype(str)),
                var=pd.DataFrame(index=df.columns.astype(str)),
            )
    except Exception as e:
        raise DataLoadingError(
            f"Failed to load count matrix {path}: {e}", details={"path": str(path)}
        ) from e

    check_unique_identifiers(adata)

    values = adata.X.data if spr.issparse(adata.X) else np.asarray(adata.X)
    if values.size and (not np.all(np.isfinite(values)) or values.min() < 0):
        raise ConfigurationError(
            "Count matrix contains negative or non-finite values",
            details={"path": str(path)},
        )

    logger.info(f"Loaded {adata.n_obs} cells x {adata.n_vars} genes")
    return adata


def read_metadata_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a per-cell metadata table indexed by cell identifier."""
    path = Path(path)
    if not path.exists():
        raise DataLoadingError(f"Metadata table not found: {path}", details={"path": str(path)})
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    try:
        metadata = pd.read_csv(path, sep=sep, index_col=0)
    except Exception as e:
        raise DataLoadingError(
            f"Failed to read metadata table {path}: {e}", details={"path": str(path)}
        ) from e
    metadata.index = metadata.index.astype(str)
    return metadata


def attach_cell_metadata(
    adata: anndata.AnnData, metadata: Union[str, Path, pd.DataFrame]
) -> anndata.AnnData:
    """
    Join a per-cell metadata table onto a count matrix.

    Rows are aligned by cell identifier. Columns already present in the
    snapshot are overwritten by the table.

    Args:
        adata: Count matrix
        metadata: Table (or path to one) with one row per cell

    Returns:
        anndata.AnnData: New snapshot with the metadata attached

    Raises:
        ConfigurationError: If row counts or cell identifiers disagree
    """
    if not isinstance(metadata, pd.DataFrame):
        metadata = read_metadata_table(metadata)

    if metadata.shape[0] != adata.n_obs:
        raise ConfigurationError(
            f"Metadata has {metadata.shape[0]} rows but the count matrix has "
            f"{adata.n_obs} cells",
            details={
                "n_metadata_rows": int(metadata.shape[0]),
                "n_matrix_cells": int(adata.n_obs),
            },
        )
    if not metadata.index.is_unique:
        raise ConfigurationError("Metadata table has duplicated cell identifiers")

    missing = adata.obs_names.difference(metadata.index)
    if len(missing) > 0:
        raise ConfigurationError(
            f"{len(missing)} cells of the count matrix are absent from the metadata "
            f"(e.g. {missing[:5].tolist()})",
            details={"missing_cells": missing[:20].tolist()},
        )

    result = adata.copy()
    aligned = metadata.loc[result.obs_names]
    for column in aligned.columns:
        result.obs[column] = aligned[column].to_numpy()

    logger.info(f"Attached {aligned.shape[1]} metadata columns to {result.n_obs} cells")
    return result


def _pick_column(columns: pd.Index, candidates: List[str]) -> Optional[str]:
    lowered = {str(c).lower(): c for c in columns}
    for candidate in candidates:
        if candidate.lower() in lowered:
            return lowered[candidate.lower()]
    return None


def load_cell_cycle_reference(path: Union[str, Path]) -> CellCycleGenes:
    """
    Parse a table mapping gene identifiers to cell-cycle phase.

    The gene column is detected among common names (gene, gene_id,
    geneID, gene_name, ...); the phase column must hold "S" or "G2/M"
    (G2M is accepted). Rows with other phases are ignored.

    Raises:
        DataLoadingError: If the table cannot be read or lacks the columns
    """
    path = Path(path)
    if not path.exists():
        raise DataLoadingError(
            f"Cell-cycle reference not found: {path}", details={"path": str(path)}
        )
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    try:
        table = pd.read_csv(path, sep=sep)
    except Exception as e:
        raise DataLoadingError(f"Failed to read cell-cycle reference {path}: {e}") from e

    gene_col = _pick_column(table.columns, GENE_COLUMN_CANDIDATES)
    phase_col = _pick_column(table.columns, PHASE_COLUMN_CANDIDATES)
    if gene_col is None or phase_col is None:
        raise DataLoadingError(
            f"Cell-cycle reference {path} needs a gene and a phase column, "
            f"found {list(table.columns)}",
            details={"columns": [str(c) for c in table.columns]},
        )

    phases = table[phase_col].astype(str).str.strip()
    genes = table[gene_col].astype(str).str.strip()
    s_genes = list(dict.fromkeys(genes[phases.isin(S_PHASE_LABELS)]))
    g2m_genes = list(dict.fromkeys(genes[phases.isin(G2M_PHASE_LABELS)]))

    ignored = int((~phases.isin(S_PHASE_LABELS | G2M_PHASE_LABELS)).sum())
    if ignored:
        logger.warning(f"Ignored {ignored} reference rows with unknown phase labels")

    logger.info(
        f"Loaded cell-cycle reference: {len(s_genes)} S genes, {len(g2m_genes)} G2/M genes"
    )
    return CellCycleGenes(s_genes=s_genes, g2m_genes=g2m_genes)
