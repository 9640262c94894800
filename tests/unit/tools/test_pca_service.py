"""
Unit tests for PCA on variable genes, gene projection and reconstruction.
"""

import pytest
import numpy as np
import pandas as pd
import anndata as ad

from sccluster.core.exceptions import SchemaValidationError
from sccluster.tools.pca_service import (
    PCAError,
    PCAService,
    project_genes,
    reconstruct,
    top_loading_genes,
)


@pytest.fixture
def service():
    return PCAService()


@pytest.fixture
def scaled_data():
    """Scaled matrix where the first eight genes are the variable genes."""
    rng = np.random.RandomState(5)
    n_cells, n_genes = 80, 20
    latent = rng.normal(size=(n_cells, 2))
    X = rng.normal(scale=0.3, size=(n_cells, n_genes))
    X[:, :4] += latent[:, [0]] * 2.0
    X[:, 4:8] -= latent[:, [1]] * 1.5
    X = (X - X.mean(axis=0)) / X.std(axis=0)
    adata = ad.AnnData(
        X=X,
        obs=pd.DataFrame(index=[f"c{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=[f"g{i:02d}" for i in range(n_genes)]),
    )
    adata.uns["variable_genes"] = np.array([f"g{i:02d}" for i in range(8)], dtype=object)
    return adata


class TestRunPCA:
    """Test the PCA fit on the variable gene set."""

    def test_outputs(self, service, scaled_data):
        adata, stats, _ = service.run_pca(scaled_data, n_comps=5)

        assert adata.obsm["X_pca"].shape == (80, 5)
        assert adata.varm["PCs"].shape == (20, 5)
        assert adata.varm["PCs_projected"].shape == (20, 5)
        assert len(adata.uns["pca"]["stdev"]) == 5
        assert stats["n_genes_used"] == 8

    def test_stdev_decreasing(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=6)

        assert np.all(np.diff(adata.uns["pca"]["stdev"]) <= 0)

    def test_only_variable_genes_in_fit(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=5)

        np.testing.assert_array_equal(adata.varm["PCs"][8:], 0.0)

    def test_projection_matches_fit_for_fitted_genes(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=5)

        np.testing.assert_allclose(
            adata.varm["PCs_projected"][:8], adata.varm["PCs"][:8], atol=1e-8
        )

    def test_non_variable_genes_get_projected_loadings(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=5)

        assert np.abs(adata.varm["PCs_projected"][8:]).sum() > 0

    def test_n_comps_clamped(self, service, scaled_data):
        adata, stats, _ = service.run_pca(scaled_data, n_comps=50)

        assert stats["n_comps"] == 8

    def test_explicit_gene_list(self, service, scaled_data):
        genes = list(scaled_data.var_names[:12])

        adata, stats, _ = service.run_pca(scaled_data, n_comps=4, genes=genes)

        assert stats["n_genes_used"] == 12
        assert list(adata.uns["pca"]["genes_used"]) == genes

    def test_requires_variable_genes(self, service, scaled_data):
        del scaled_data.uns["variable_genes"]

        with pytest.raises(PCAError, match="variable genes"):
            service.run_pca(scaled_data)

    def test_unknown_genes_rejected(self, service, scaled_data):
        with pytest.raises(PCAError, match="not in the matrix"):
            service.run_pca(scaled_data, genes=["g00", "nope"])

    def test_invalid_metadata_rejected(self, service, scaled_data):
        scaled_data.obs["mito_ratio"] = 1.5

        with pytest.raises(SchemaValidationError, match="mito_ratio"):
            service.run_pca(scaled_data)


class TestReconstruction:
    """With all components of a full-rank fit, PCA is lossless."""

    def test_full_rank_round_trip(self, service, scaled_data):
        genes = list(scaled_data.var_names)
        adata, _, _ = service.run_pca(scaled_data, n_comps=20, genes=genes)

        np.testing.assert_allclose(reconstruct(adata), scaled_data.X, atol=1e-8)

    def test_truncated_reconstruction_is_lossy(self, service, scaled_data):
        genes = list(scaled_data.var_names)
        adata, _, _ = service.run_pca(scaled_data, n_comps=20, genes=genes)

        error = np.abs(reconstruct(adata, n_comps=2) - scaled_data.X).max()
        assert error > 1e-3


class TestHelpers:
    """Test projection and loading helpers."""

    def test_project_genes_zero_variance_component(self):
        X = np.random.RandomState(0).normal(size=(10, 3))
        embeddings = np.zeros((10, 2))

        projected = project_genes(X, embeddings, np.array([0.0, 0.0]))

        assert np.all(projected == 0)

    def test_top_loading_genes(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=3)

        top = top_loading_genes(adata, pc=1, n=4)

        weights = np.abs(adata.varm["PCs_projected"][:, 0])
        strongest = adata.var_names[int(np.argmax(weights))]
        assert strongest in top["positive"] + top["negative"]
        assert strongest in {f"g{i:02d}" for i in range(8)}

    def test_top_loading_genes_out_of_range(self, service, scaled_data):
        adata, _, _ = service.run_pca(scaled_data, n_comps=3)

        with pytest.raises(PCAError, match="out of range"):
            top_loading_genes(adata, pc=4)
