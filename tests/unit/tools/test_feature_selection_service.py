"""
Unit tests for variable feature selection.

Covers mean/dispersion statistics, binning, within-bin z-scores, cutoffs,
deterministic ordering and the yield sanity check.
"""

import pytest
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from sccluster.tools.feature_selection_service import (
    FeatureSelectionError,
    FeatureSelectionService,
    assign_mean_bins,
    binned_zscores,
    gene_mean_dispersion,
    get_variable_genes,
)


@pytest.fixture
def service():
    return FeatureSelectionService()


# ===============================================================================
# Statistics helpers
# ===============================================================================

class TestGeneMeanDispersion:
    """Test per-gene mean and dispersion on the linear scale."""

    def test_values(self):
        linear = np.array([[1.0, 0.0], [3.0, 0.0], [2.0, 0.0]])
        means, dispersions = gene_mean_dispersion(np.log1p(linear))

        assert means[0] == pytest.approx(np.log1p(2.0))
        assert dispersions[0] == pytest.approx(np.log(1.0 / 2.0))
        assert means[1] == 0.0
        assert np.isnan(dispersions[1])

    def test_sparse_matches_dense(self):
        rng = np.random.RandomState(1)
        X = np.log1p(rng.poisson(2.0, size=(50, 8)).astype(float))

        dense = gene_mean_dispersion(X)
        sparse = gene_mean_dispersion(sp.csr_matrix(X))

        np.testing.assert_allclose(sparse[0], dense[0])
        np.testing.assert_allclose(sparse[1], dense[1], equal_nan=True)


class TestBinning:
    """Test assignment of genes to mean-expression bins."""

    def test_equal_frequency_balanced(self):
        means = pd.Series(np.linspace(0, 5, 100))

        bins = assign_mean_bins(means, n_bins=10, bin_method="equal_frequency")

        assert bins.value_counts().tolist() == [10] * 10

    def test_equal_frequency_with_ties(self):
        means = pd.Series([0.0] * 50 + list(np.linspace(1, 2, 50)))

        bins = assign_mean_bins(means, n_bins=5, bin_method="equal_frequency")

        assert bins.nunique() == 5

    def test_equal_width(self):
        means = pd.Series([0.0, 0.1, 0.2, 9.8, 10.0])

        bins = assign_mean_bins(means, n_bins=2, bin_method="equal_width")

        assert bins.tolist() == [0, 0, 0, 1, 1]

    def test_invalid_method(self):
        with pytest.raises(FeatureSelectionError, match="bin_method"):
            assign_mean_bins(pd.Series([1.0, 2.0]), n_bins=2, bin_method="quantile")

    def test_single_bin_for_constant_means(self):
        bins = assign_mean_bins(pd.Series([1.0] * 5), n_bins=3, bin_method="equal_width")

        assert (bins == 0).all()


class TestBinnedZscores:
    """Test dispersion normalization within bins."""

    def test_zscores_per_bin(self):
        dispersions = pd.Series([1.0, 2.0, 3.0, 10.0, 20.0, 30.0])
        bins = pd.Series([0, 0, 0, 1, 1, 1])

        z = binned_zscores(dispersions, bins)

        np.testing.assert_allclose(z, [-1.0, 0.0, 1.0, -1.0, 0.0, 1.0])

    def test_flat_and_singleton_bins_give_zero(self):
        dispersions = pd.Series([2.0, 2.0, 5.0, np.nan])
        bins = pd.Series([0, 0, 1, 1])

        z = binned_zscores(dispersions, bins)

        assert z.tolist()[:3] == [0.0, 0.0, 0.0]
        assert np.isnan(z.iloc[3])


# ===============================================================================
# Service
# ===============================================================================

class TestFindVariableGenes:
    """Test variable gene selection on synthetic data."""

    def test_selects_marker_genes(self, service, normalized_data, hvg_params):
        adata, stats, _ = service.find_variable_genes(normalized_data, **hvg_params)

        genes = get_variable_genes(adata)
        markers = {f"Gene_{i:04d}" for i in range(60)}
        assert stats["n_variable_genes"] == len(genes) > 0
        assert len(markers.intersection(genes)) >= 20

    def test_var_columns_written(self, service, normalized_data, hvg_params):
        adata, _, _ = service.find_variable_genes(normalized_data, **hvg_params)

        for column in ["means", "dispersions", "dispersions_norm", "mean_bin", "highly_variable"]:
            assert column in adata.var.columns
        assert adata.var["highly_variable"].sum() == len(get_variable_genes(adata))

    def test_cutoffs_respected(self, service, normalized_data):
        adata, _, _ = service.find_variable_genes(
            normalized_data, min_mean=0.5, max_mean=6.0, min_disp=1.0, max_disp=4.0,
            expected_range=(0, 10000),
        )

        selected = adata.var.loc[get_variable_genes(adata)]
        assert (selected["means"] > 0.5).all()
        assert (selected["means"] < 6.0).all()
        assert (selected["dispersions_norm"] > 1.0).all()
        assert (selected["dispersions_norm"] < 4.0).all()

    def test_ordered_by_normalized_dispersion(self, service, normalized_data, hvg_params):
        adata, _, _ = service.find_variable_genes(normalized_data, **hvg_params)

        z = adata.var.loc[get_variable_genes(adata), "dispersions_norm"].to_numpy()
        assert np.all(np.diff(z) <= 0)

    def test_deterministic(self, service, normalized_data, hvg_params):
        first, _, _ = service.find_variable_genes(normalized_data, **hvg_params)
        second, _, _ = service.find_variable_genes(normalized_data, **hvg_params)

        assert get_variable_genes(first) == get_variable_genes(second)

    def test_n_top_genes(self, service, normalized_data, hvg_params):
        full, _, _ = service.find_variable_genes(normalized_data, **hvg_params)
        top, stats, _ = service.find_variable_genes(
            normalized_data, n_top_genes=5, **hvg_params
        )

        assert get_variable_genes(top) == get_variable_genes(full)[:5]
        assert stats["n_variable_genes"] == 5

    def test_out_of_range_yield_warns(self, service, normalized_data):
        _, stats, _ = service.find_variable_genes(
            normalized_data, max_mean=10.0, expected_range=(500, 4000)
        )

        assert stats["within_expected_range"] is False

    def test_equal_width_binning(self, service, normalized_data, hvg_params):
        adata, _, step = service.find_variable_genes(
            normalized_data, bin_method="equal_width", **hvg_params
        )

        assert step.parameters["bin_method"] == "equal_width"
        assert adata.uns["feature_selection"]["bin_method"] == "equal_width"

    def test_equal_width_matches_scanpy_seurat(self, service, normalized_data, hvg_params):
        adata, stats, step = service.find_variable_genes(
            normalized_data, bin_method="equal_width", **hvg_params
        )
        reference = normalized_data.copy()
        sc.pp.highly_variable_genes(
            reference, flavor="seurat", n_bins=20, min_mean=0.0125, max_mean=10.0, min_disp=0.5
        )

        expected = set(reference.var_names[reference.var["highly_variable"].to_numpy()])
        assert set(get_variable_genes(adata)) == expected
        np.testing.assert_allclose(
            adata.var["dispersions_norm"], reference.var["dispersions_norm"], rtol=1e-5
        )
        assert step.library == "scanpy"
        assert stats["n_variable_genes"] == len(expected)

    def test_invalid_mean_cutoffs(self, service, normalized_data):
        with pytest.raises(FeatureSelectionError, match="min_mean"):
            service.find_variable_genes(normalized_data, min_mean=3.0, max_mean=1.0)

    def test_get_variable_genes_requires_selection(self, normalized_data):
        with pytest.raises(FeatureSelectionError, match="No variable genes"):
            get_variable_genes(normalized_data)
