"""
Cell metadata schema for clustering snapshots.

Every stage reads and writes a well-known subset of per-cell fields in
``adata.obs``. This module declares those fields, validates them at stage
boundaries and exposes a typed per-cell record.
"""

from typing import Any, Dict, Optional, Sequence

import anndata
import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, field_validator

from sccluster.core.interfaces.validator import IValidator, ValidationResult
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

VALID_PHASES = ["G1", "S", "G2M"]

# obs: one row per cell. Example after the final stage:
#                n_counts  n_genes  mito_ratio  s_score  g2m_score phase cluster
# AAACATACAACCAC   2421.0      781       0.030    -0.04      -0.07    G1       1
# AAACATTGAGCTAC   4903.0     1352       0.038     0.12       0.02     S       3
# AAACATTGATCAGC   3149.0     1131       0.009    -0.01       0.21   G2M       1
CELL_METADATA_FIELDS: Dict[str, Dict[str, Any]] = {
    "n_counts": {
        "type": "numeric",
        "min": 0.0,
        "description": "Total counts per cell (sequencing depth)",
    },
    "n_genes": {
        "type": "integer",
        "min": 0,
        "description": "Number of genes with non-zero counts",
    },
    "mito_ratio": {
        "type": "numeric",
        "min": 0.0,
        "max": 1.0,
        "description": "Fraction of counts from mitochondrial genes",
    },
    "s_score": {"type": "numeric", "description": "S-phase module score"},
    "g2m_score": {"type": "numeric", "description": "G2/M-phase module score"},
    "phase": {
        "type": "categorical",
        "allowed": VALID_PHASES,
        "description": "Inferred cell-cycle phase",
    },
    "cluster": {"type": "string", "description": "Active cluster assignment"},
}


class CellMetadataRecord(BaseModel):
    """Typed view of one cell's metadata row."""

    cell_id: str = Field(..., description="Cell identifier (obs_names entry)")
    n_counts: Optional[float] = Field(None, ge=0)
    n_genes: Optional[int] = Field(None, ge=0)
    mito_ratio: Optional[float] = Field(None, ge=0.0, le=1.0)
    s_score: Optional[float] = None
    g2m_score: Optional[float] = None
    phase: Optional[str] = None
    cluster: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("phase")
    @classmethod
    def validate_phase(cls, v):
        """Validate phase is one of G1, S or G2M."""
        if v is not None and v not in VALID_PHASES:
            raise ValueError(
                f"Invalid phase: '{v}'. Must be one of: {', '.join(VALID_PHASES)}"
            )
        return v


class CellMetadataValidator(IValidator):
    """
    Validator for the per-cell metadata of a snapshot.

    Fields outside CELL_METADATA_FIELDS are allowed and ignored. Declared
    fields are type- and range-checked whenever they are present; fields
    listed in ``required`` must also exist.
    """

    def __init__(self, fields: Optional[Dict[str, Dict[str, Any]]] = None):
        self.fields = fields or CELL_METADATA_FIELDS

    def validate(
        self,
        adata: anndata.AnnData,
        required: Optional[Sequence[str]] = None,
        strict: bool = False,
        stage: str = "",
    ) -> ValidationResult:
        obs = adata.obs
        result = ValidationResult(stage=stage, n_cells=int(adata.n_obs))

        if obs.shape[0] != adata.n_obs:
            result.add_error(
                f"Metadata has {obs.shape[0]} rows but matrix has {adata.n_obs} cells"
            )
        if not obs.index.is_unique:
            result.add_error("Cell identifiers in metadata are not unique")

        for name in required or []:
            if name not in obs.columns:
                result.add_error(f"Required metadata field '{name}' is missing", name)

        for name, spec in self.fields.items():
            if name in obs.columns:
                result.fields_checked.append(name)
                self._check_column(name, obs[name], spec, result)

        if strict:
            result.promote_warnings()
        return result

    def _check_column(
        self,
        name: str,
        column: pd.Series,
        spec: Dict[str, Any],
        result: ValidationResult,
    ) -> None:
        field_type = spec["type"]

        if field_type in ("numeric", "integer"):
            if not pd.api.types.is_numeric_dtype(column) or pd.api.types.is_bool_dtype(
                column
            ):
                result.add_error(
                    f"Field '{name}' must be numeric, found dtype {column.dtype}", name
                )
                return
            values = column.to_numpy(dtype=float)
            n_missing = int(np.isnan(values).sum())
            if n_missing:
                result.add_error(f"Field '{name}' has {n_missing} missing values", name)
            finite = values[np.isfinite(values)]
            if not finite.size:
                return
            if field_type == "integer" and not np.all(np.mod(finite, 1) == 0):
                result.add_error(f"Field '{name}' must contain integer values", name)
            if "min" in spec and finite.min() < spec["min"]:
                result.add_error(
                    f"Field '{name}' has values below {spec['min']} (min={finite.min():.4g})",
                    name,
                )
            if "max" in spec and finite.max() > spec["max"]:
                result.add_error(
                    f"Field '{name}' has values above {spec['max']} (max={finite.max():.4g})",
                    name,
                )
            return

        if field_type == "categorical":
            observed = set(column.dropna().astype(str).unique())
            unknown = observed - set(spec.get("allowed", observed))
            if unknown:
                result.add_error(
                    f"Field '{name}' has unexpected values: {sorted(unknown)}", name
                )
        if column.isna().any():
            result.add_warning(f"Field '{name}' has missing values")


def ensure_cell_metadata(
    adata: anndata.AnnData, required: Sequence[str], stage: str
) -> ValidationResult:
    """
    Validate the metadata a stage consumes, raising on failure.

    Args:
        adata: Snapshot entering the stage
        required: Metadata fields the stage reads
        stage: Stage name used in messages

    Returns:
        ValidationResult: The (passing) validation result

    Raises:
        SchemaValidationError: If any required field is missing or malformed
    """
    result = CellMetadataValidator().validate(adata, required=required, stage=stage)
    for warning in result.warnings:
        logger.warning(f"[{stage}] {warning}")
    result.raise_if_invalid()
    return result


def get_cell_record(adata: anndata.AnnData, cell_id: str) -> CellMetadataRecord:
    """
    Return the typed metadata record of a single cell.

    Raises:
        KeyError: If the cell identifier is unknown
    """
    if cell_id not in adata.obs_names:
        raise KeyError(f"Unknown cell identifier: {cell_id}")

    row = adata.obs.loc[cell_id]
    known: Dict[str, Any] = {"cell_id": str(cell_id)}
    extra: Dict[str, Any] = {}
    for column, value in row.items():
        if isinstance(value, float) and np.isnan(value):
            value = None
        elif isinstance(value, np.generic):
            value = value.item()
        if column in CELL_METADATA_FIELDS:
            known[column] = str(value) if column == "cluster" and value is not None else value
        else:
            extra[str(column)] = value
    return CellMetadataRecord(**known, extra=extra)
