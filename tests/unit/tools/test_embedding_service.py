"""
Unit tests for the t-SNE layout.
"""

import pytest
import numpy as np

from sccluster.core.exceptions import SchemaValidationError
from sccluster.tools.embedding_service import (
    EMBEDDING_DISTANCE_WARNING,
    EmbeddingError,
    EmbeddingService,
)


@pytest.fixture
def service():
    return EmbeddingService()


class TestRunTSNE:
    """Test the seeded t-SNE layout."""

    def test_layout_written(self, service, blob_pca_data):
        adata, stats, _ = service.run_tsne(blob_pca_data, perplexity=20)

        assert adata.obsm["X_tsne"].shape == (180, 2)
        assert adata.uns["embedding"]["distance_warning"] == EMBEDDING_DISTANCE_WARNING
        assert "tsne" not in adata.uns
        assert stats["n_pcs"] == 10
        assert "X_tsne" not in blob_pca_data.obsm

    def test_seeded_layout_reproducible(self, service, blob_pca_data):
        first, _, _ = service.run_tsne(blob_pca_data, perplexity=20, random_state=1)
        second, _, _ = service.run_tsne(blob_pca_data, perplexity=20, random_state=1)

        np.testing.assert_allclose(first.obsm["X_tsne"], second.obsm["X_tsne"])

    def test_uses_selected_components(self, service, blob_pca_data):
        blob_pca_data.uns["component_selection"] = {"n_pcs": 3}

        _, stats, _ = service.run_tsne(blob_pca_data, perplexity=20)

        assert stats["n_pcs"] == 3

    def test_perplexity_lowered_for_few_cells(self, service, blob_pca_data):
        subset = blob_pca_data[:10].copy()

        _, stats, step = service.run_tsne(subset, perplexity=30)

        assert stats["perplexity"] == pytest.approx(3.0)
        assert step.parameters["perplexity"] == pytest.approx(3.0)

    def test_too_few_cells(self, service, blob_pca_data):
        with pytest.raises(EmbeddingError, match="at least four"):
            service.run_tsne(blob_pca_data[:3].copy())

    def test_requires_pca(self, service, blob_pca_data):
        del blob_pca_data.obsm["X_pca"]

        with pytest.raises(EmbeddingError, match="No PCA embedding"):
            service.run_tsne(blob_pca_data)

    def test_invalid_metadata_rejected(self, service, blob_pca_data):
        blob_pca_data.obs["phase"] = "M"

        with pytest.raises(SchemaValidationError, match="phase"):
            service.run_tsne(blob_pca_data, perplexity=20)

    def test_progress_callback_receives_messages(self, blob_pca_data):
        messages = []

        EmbeddingService(progress_callback=messages.append).run_tsne(
            blob_pca_data, perplexity=20
        )

        assert messages[0] == "Computing t-SNE started"
        assert messages[-1].startswith("Computing t-SNE finished in")
