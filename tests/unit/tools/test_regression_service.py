"""
Unit tests for covariate regression and scaling.
"""

import pytest
import numpy as np
import pandas as pd
import anndata as ad

from sccluster.core.analysis_ir import get_provenance
from sccluster.core.exceptions import SchemaValidationError
from sccluster.tools.regression_service import RegressionService, regress_residuals


@pytest.fixture
def service():
    return RegressionService()


@pytest.fixture
def confounded_data():
    """Expression driven partly by a depth-like covariate."""
    rng = np.random.RandomState(3)
    n_cells, n_genes = 120, 12
    depth = rng.normal(1000, 200, n_cells)
    mito = rng.uniform(0.0, 0.2, n_cells)
    effects = rng.normal(0, 0.01, n_genes)
    X = 5.0 + np.outer(depth, effects) + rng.normal(0, 0.5, (n_cells, n_genes))
    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame(index=[f"c{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=[f"g{i}" for i in range(n_genes)]),
    )
    adata.obs["n_counts"] = depth
    adata.obs["mito_ratio"] = mito
    return adata


# ===============================================================================
# Residuals
# ===============================================================================

class TestRegressResiduals:
    """Test the OLS residual computation."""

    def test_residuals_uncorrelated_with_covariate(self, confounded_data):
        cov = confounded_data.obs[["n_counts"]].to_numpy()

        residuals = regress_residuals(confounded_data.X, cov)

        for j in range(residuals.shape[1]):
            r = np.corrcoef(residuals[:, j], cov[:, 0])[0, 1]
            assert abs(r) < 1e-8

    def test_gene_means_kept(self, confounded_data):
        cov = confounded_data.obs[["n_counts", "mito_ratio"]].to_numpy()

        residuals = regress_residuals(confounded_data.X, cov)

        np.testing.assert_allclose(residuals.mean(axis=0), confounded_data.X.mean(axis=0))

    def test_chunking_does_not_change_result(self, confounded_data):
        cov = confounded_data.obs[["n_counts", "mito_ratio"]].to_numpy()

        whole = regress_residuals(confounded_data.X, cov, chunk_size=1000)
        chunked = regress_residuals(confounded_data.X, cov, chunk_size=5)

        np.testing.assert_allclose(whole, chunked)


# ===============================================================================
# Service
# ===============================================================================

class TestRegressOut:
    """Test the regression service method."""

    def test_removes_covariate_effect(self, service, confounded_data):
        adata, stats, _ = service.regress_out(confounded_data, covariates=["n_counts"])

        depth = confounded_data.obs["n_counts"].to_numpy()
        before = abs(np.corrcoef(confounded_data.X[:, 0], depth)[0, 1])
        after = abs(np.corrcoef(adata.X[:, 0], depth)[0, 1])
        assert after < 1e-8 < before
        assert stats["covariates_used"] == ["n_counts"]

    def test_constant_covariate_leaves_matrix_unchanged(self, service, confounded_data):
        confounded_data.obs["constant"] = 7.0

        adata, stats, _ = service.regress_out(confounded_data, covariates=["constant"])

        np.testing.assert_array_equal(adata.X, confounded_data.X)
        assert stats["covariates_dropped"] == ["constant"]
        assert stats["covariates_used"] == []

    def test_missing_covariate_rejected(self, service, confounded_data):
        with pytest.raises(SchemaValidationError, match="s_score"):
            service.regress_out(confounded_data)

    def test_non_numeric_covariate_rejected(self, service, confounded_data):
        confounded_data.obs["batch"] = ["a", "b"] * 60

        with pytest.raises(SchemaValidationError, match="numeric"):
            service.regress_out(confounded_data, covariates=["batch"])

    def test_input_not_modified(self, service, confounded_data):
        original = confounded_data.X.copy()

        service.regress_out(confounded_data, covariates=["n_counts", "mito_ratio"])

        np.testing.assert_array_equal(confounded_data.X, original)


class TestScale:
    """Test centering, scaling and clipping."""

    def test_zero_mean_unit_variance(self, service, confounded_data):
        adata, _, _ = service.scale(confounded_data, max_value=None)

        np.testing.assert_allclose(adata.X.mean(axis=0), 0.0, atol=1e-10)
        np.testing.assert_allclose(adata.X.std(axis=0), 1.0, rtol=1e-2)

    def test_clipping(self, service, confounded_data):
        confounded_data.X[0, 0] = 1e4

        adata, stats, _ = service.scale(confounded_data, max_value=2.0)

        assert adata.X.max() <= 2.0
        assert adata.X.min() >= -2.0
        assert stats["n_clipped_values"] >= 1

    def test_constant_gene_scales_to_zero(self, service, confounded_data):
        confounded_data.X[:, 3] = 4.2

        adata, stats, _ = service.scale(confounded_data)

        assert stats["n_constant_genes"] == 1
        assert np.all(adata.X[:, 3] == 0)

    def test_constant_gene_after_regression(self, service, confounded_data):
        confounded_data.X[:, 3] = 4.2
        residuals, _, _ = service.regress_out(
            confounded_data, covariates=["n_counts", "mito_ratio"]
        )

        adata, stats, _ = service.scale(residuals)

        assert stats["n_constant_genes"] == 1
        assert np.all(adata.X[:, 3] == 0)
        assert np.all(np.isfinite(adata.X))

    def test_invalid_metadata_rejected(self, service, confounded_data):
        confounded_data.obs["mito_ratio"] = -0.5

        with pytest.raises(SchemaValidationError, match="mito_ratio"):
            service.scale(confounded_data)

    def test_regress_and_scale(self, service, confounded_data):
        adata, stats, step = service.regress_and_scale(
            confounded_data, covariates=["n_counts", "mito_ratio"], max_value=10
        )

        assert set(stats) == {"regression", "scaling"}
        assert step.tool_name == "scale"
        assert [s.tool_name for s in get_provenance(adata)] == ["regress_out", "scale"]
