"""
Core exceptions for the sccluster pipeline.

This module provides the exception hierarchy shared by the data loading,
snapshot persistence and analysis stages of the clustering workflow.
"""

from typing import Any, Dict, Optional


class SCClusterCoreError(Exception):
    """Base exception for all sccluster errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class ConfigurationError(SCClusterCoreError):
    """
    Raised when the inputs or parameters of a run cannot be reconciled.

    This is always fatal: the run has to be restarted with corrected inputs.
    Typical causes:
    - The metadata table and the count matrix disagree on the number of cells
    - Duplicate cell or gene identifiers in the count matrix
    - A pipeline configuration file that fails validation

    Attributes:
        message: Human-readable error message
        details: Contains (where applicable):
            - n_matrix_cells / n_metadata_rows: Conflicting dimensions
            - duplicates: Sample of duplicated identifiers
            - path: Offending input file

    Example:
        try:
            adata = attach_cell_metadata(adata, "metadata.csv")
        except ConfigurationError as e:
            print(f"Cannot start run: {e.message}")
            print(e.details.get("n_metadata_rows"))
    """

    pass


class SchemaValidationError(SCClusterCoreError):
    """
    Raised when cell metadata does not satisfy a stage's schema requirements.

    Each stage checks the metadata fields it consumes at entry. The details
    dictionary carries the full list of validation errors:
        - errors: List of error messages
        - warnings: List of non-fatal findings
        - stage: Name of the stage that rejected the snapshot
    """

    pass


class SnapshotError(SCClusterCoreError):
    """Raised when a snapshot cannot be written or read back."""

    pass


class ProvenanceError(SCClusterCoreError):
    """Raised when provenance records stored in a snapshot are unreadable."""

    pass
