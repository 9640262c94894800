"""
Pytest configuration and fixtures for the sccluster test suite.

This module provides the shared fixtures, synthetic datasets and
configuration objects needed to test the clustering workflow.
"""

import shutil
import tempfile
import logging
from pathlib import Path
from typing import Dict, Any, Generator

import numpy as np
import pandas as pd
import anndata as ad

import pytest
from faker import Faker

from sccluster.config import settings as settings_module
from sccluster.config.pipeline_config import PipelineConfig
from sccluster.core.data_loader import CellCycleGenes
from sccluster.tools.normalization_service import NormalizationService

from tests.mock_data.base import SMALL_DATASET_CONFIG, TINY_DATASET_CONFIG
from tests.mock_data.factories import (
    CellCycleReferenceFactory,
    SingleCellDataFactory,
    metadata_table,
)

# Suppress warnings during testing
logging.getLogger("scanpy").setLevel(logging.ERROR)
logging.getLogger("anndata").setLevel(logging.ERROR)
logging.getLogger("numba").setLevel(logging.ERROR)

# Initialize faker for generating test data
fake = Faker()
Faker.seed(42)

# Test constants
TEST_WORKSPACE_PREFIX = "sccluster_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers",
        "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as an integration test"
    )


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Auto-mark based on test path
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================

@pytest.fixture(scope="session")
def test_config() -> Dict[str, Any]:
    """Global test configuration."""
    return {
        "workspace_prefix": TEST_WORKSPACE_PREFIX,
        "cleanup_workspaces": True,
        "synthetic_data_seed": 42,
    }


@pytest.fixture(scope="function")
def temp_workspace(test_config: Dict[str, Any]) -> Generator[Path, None, None]:
    """Create isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=test_config["workspace_prefix"]))
    try:
        yield workspace_path
    finally:
        if test_config["cleanup_workspaces"] and workspace_path.exists():
            shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(scope="function")
def isolated_environment(temp_workspace: Path, monkeypatch):
    """Working directory, environment and settings singleton all isolated."""
    monkeypatch.chdir(temp_workspace)
    monkeypatch.setenv("SCCLUSTER_WORKSPACE", str(temp_workspace / "workspace"))
    monkeypatch.setenv("SCCLUSTER_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("SCCLUSTER_RANDOM_STATE", "0")
    monkeypatch.setenv("SCCLUSTER_N_JOBS", "1")
    monkeypatch.setattr(settings_module, "_settings", None)

    yield temp_workspace

    settings_module._settings = None


# ==============================================================================
# Mock Data Generation Fixtures
# ==============================================================================

@pytest.fixture(scope="function")
def synthetic_counts() -> ad.AnnData:
    """Raw counts with three cell types, cell-cycle signal and MT- genes."""
    return SingleCellDataFactory(config=SMALL_DATASET_CONFIG)


@pytest.fixture(scope="function")
def tiny_counts() -> ad.AnnData:
    """Small raw count matrix for fast checks."""
    return SingleCellDataFactory(config=TINY_DATASET_CONFIG)


@pytest.fixture(scope="function")
def cell_cycle_table() -> pd.DataFrame:
    """Reference table matching the synthetic cell-cycle genes."""
    return CellCycleReferenceFactory()


@pytest.fixture(scope="function")
def cell_cycle_genes(cell_cycle_table: pd.DataFrame) -> CellCycleGenes:
    phases = cell_cycle_table["phase"]
    return CellCycleGenes(
        s_genes=cell_cycle_table.loc[phases == "S", "gene"].tolist(),
        g2m_genes=cell_cycle_table.loc[phases == "G2/M", "gene"].tolist(),
    )


@pytest.fixture(scope="function")
def normalized_data(synthetic_counts: ad.AnnData) -> ad.AnnData:
    """Log-normalized synthetic data with QC covariates."""
    adata, _, _ = NormalizationService().normalize(synthetic_counts)
    return adata


@pytest.fixture(scope="session")
def hvg_params() -> Dict[str, Any]:
    """Variable gene cutoffs suited to a few hundred synthetic genes."""
    return {"max_mean": 10.0, "expected_range": (10, 400)}


@pytest.fixture(scope="function")
def blob_pca_data() -> ad.AnnData:
    """Cells in three well-separated Gaussian blobs in PC space."""
    rng = np.random.RandomState(0)
    n_per_blob, n_dims = 60, 10
    centers = np.zeros((3, n_dims))
    centers[1, 0] = 25.0
    centers[2, 1] = 25.0
    coords = np.vstack([
        center + rng.normal(scale=1.0, size=(n_per_blob, n_dims)) for center in centers
    ])
    adata = ad.AnnData(
        X=np.zeros((coords.shape[0], 5)),
        obs=pd.DataFrame(index=[f"cell_{i:03d}" for i in range(coords.shape[0])]),
        var=pd.DataFrame(index=[f"gene_{i}" for i in range(5)]),
    )
    adata.obs["blob"] = np.repeat(["a", "b", "c"], n_per_blob)
    adata.obsm["X_pca"] = coords
    return adata


@pytest.fixture(scope="function")
def small_pipeline_config() -> PipelineConfig:
    """Pipeline configuration scaled down to the synthetic datasets."""
    config = PipelineConfig()
    config.feature_selection.max_mean = 10.0
    config.feature_selection.expected_min = 10
    config.feature_selection.expected_max = 400
    config.pca.n_comps = 20
    config.component_selection.fallback_n_pcs = 10
    config.clustering.n_neighbors = 15
    config.clustering.resolutions = [0.4, 0.8, 1.2]
    config.clustering.active_resolution = 0.8
    config.embedding.perplexity = 20.0
    return config


# ==============================================================================
# File Fixtures
# ==============================================================================

@pytest.fixture(scope="function")
def counts_file(temp_workspace: Path, synthetic_counts: ad.AnnData) -> Path:
    """Synthetic counts written as .h5ad (ground-truth columns dropped)."""
    path = temp_workspace / "counts.h5ad"
    ad.AnnData(
        X=synthetic_counts.X.copy(),
        obs=pd.DataFrame(index=synthetic_counts.obs_names),
        var=pd.DataFrame(index=synthetic_counts.var_names),
    ).write_h5ad(path)
    return path


@pytest.fixture(scope="function")
def metadata_file(temp_workspace: Path, synthetic_counts: ad.AnnData) -> Path:
    path = temp_workspace / "cells.csv"
    metadata_table(synthetic_counts).to_csv(path)
    return path


@pytest.fixture(scope="function")
def reference_file(temp_workspace: Path, cell_cycle_table: pd.DataFrame) -> Path:
    path = temp_workspace / "cell_cycle_genes.csv"
    cell_cycle_table.to_csv(path, index=False)
    return path
