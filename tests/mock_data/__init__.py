"""
Mock data generation utilities for the sccluster test suite.

Synthetic count matrices keep the statistical shape of real data (negative
binomial counts, varying depth, marker genes) while being completely
reproducible for testing purposes.
"""

from .factories import (
    SingleCellDataFactory,
    CellCycleReferenceFactory,
    metadata_table,
)

from .base import (
    MockDataConfig,
    SMALL_DATASET_CONFIG,
    TINY_DATASET_CONFIG,
    MEDIUM_DATASET_CONFIG,
    NOISE_ONLY_CONFIG,
)

__all__ = [
    # Factories
    "SingleCellDataFactory",
    "CellCycleReferenceFactory",
    "metadata_table",

    # Configuration
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "TINY_DATASET_CONFIG",
    "MEDIUM_DATASET_CONFIG",
    "NOISE_ONLY_CONFIG",
]
