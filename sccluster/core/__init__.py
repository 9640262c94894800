"""
sccluster core module with exception hierarchy and shared data structures.

This module provides the core exception hierarchy used by all pipeline
stages, following a structured approach to error handling.
"""

from sccluster.core.exceptions import (
    ConfigurationError,
    ProvenanceError,
    SCClusterCoreError,
    SchemaValidationError,
    SnapshotError,
)


class DataLoadingError(SCClusterCoreError):
    """Exception raised when an input file cannot be parsed."""

    pass


class PipelineError(SCClusterCoreError):
    """Exception raised when the pipeline orchestration fails."""

    pass


__all__ = [
    "SCClusterCoreError",
    "ConfigurationError",
    "SchemaValidationError",
    "SnapshotError",
    "ProvenanceError",
    "DataLoadingError",
    "PipelineError",
]
