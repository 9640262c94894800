"""
Unit tests for cell-cycle scoring and phase assignment.
"""

import pytest
import numpy as np

from sccluster.core.data_loader import CellCycleGenes
from sccluster.core.schemas.cell_metadata import VALID_PHASES
from sccluster.tools.cell_cycle_service import CellCycleService, classify_phase


@pytest.fixture
def service():
    return CellCycleService()


# ===============================================================================
# Phase rule
# ===============================================================================

class TestClassifyPhase:
    """Test the phase decision rule."""

    def test_both_below_baseline_is_g1(self):
        assert classify_phase([-0.2], [-0.1]).tolist() == ["G1"]

    def test_higher_score_wins(self):
        phases = classify_phase([0.5, 0.1, -0.3], [0.2, 0.4, 0.1])

        assert phases.tolist() == ["S", "G2M", "G2M"]

    def test_tie_goes_to_s(self):
        assert classify_phase([0.3], [0.3]).tolist() == ["S"]

    def test_custom_baseline(self):
        phases = classify_phase([0.05, 0.2], [0.08, 0.1], baseline=0.1)

        assert phases.tolist() == ["G1", "S"]


# ===============================================================================
# Service
# ===============================================================================

class TestScoreCellCycle:
    """Test scoring on synthetic data with a known phase per cell."""

    def test_metadata_written(self, service, normalized_data, cell_cycle_genes):
        adata, _, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)

        for column in ["s_score", "g2m_score", "phase"]:
            assert column in adata.obs.columns
        assert set(adata.obs["phase"].cat.categories) == set(VALID_PHASES)
        assert "s_score" not in normalized_data.obs.columns

    def test_phase_follows_rule(self, service, normalized_data, cell_cycle_genes):
        adata, _, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)

        expected = classify_phase(adata.obs["s_score"], adata.obs["g2m_score"])
        assert adata.obs["phase"].astype(str).tolist() == expected.tolist()

    def test_recovers_true_phase(self, service, normalized_data, cell_cycle_genes):
        adata, _, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)

        obs = adata.obs
        for phase in ["S", "G2M"]:
            cells = obs["true_phase"] == phase
            agreement = (obs.loc[cells, "phase"].astype(str) == phase).mean()
            assert agreement > 0.7

    def test_deterministic(self, service, normalized_data, cell_cycle_genes):
        first, _, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)
        second, _, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)

        np.testing.assert_array_equal(first.obs["s_score"], second.obs["s_score"])

    def test_stats(self, service, normalized_data, cell_cycle_genes):
        _, stats, _ = service.score_cell_cycle(normalized_data, cell_cycle_genes)

        assert stats["n_s_genes_used"] == 15
        assert stats["n_g2m_genes_used"] == 15
        assert stats["reduced_confidence"] is False
        assert sum(stats["phase_counts"].values()) == normalized_data.n_obs


class TestMissingMarkers:
    """Missing marker genes warn but never fail."""

    def test_absent_genes_reported(self, service, normalized_data, cell_cycle_genes):
        genes = CellCycleGenes(
            s_genes=cell_cycle_genes.s_genes + ["NOT_A_GENE"],
            g2m_genes=cell_cycle_genes.g2m_genes,
        )

        _, stats, _ = service.score_cell_cycle(normalized_data, genes)

        assert stats["missing_s_genes"] == ["NOT_A_GENE"]
        assert stats["n_s_genes_used"] == 15

    def test_all_markers_missing_for_one_phase(self, service, normalized_data, cell_cycle_genes):
        genes = CellCycleGenes(
            s_genes=["ABSENT_1", "ABSENT_2"], g2m_genes=cell_cycle_genes.g2m_genes
        )

        adata, stats, _ = service.score_cell_cycle(normalized_data, genes)

        assert stats["reduced_confidence"] is True
        assert (adata.obs["s_score"] == 0).all()
        assert bool(adata.uns["cell_cycle"]["reduced_confidence"]) is True

    def test_overlapping_genes_removed(self, service, normalized_data, cell_cycle_genes):
        shared = cell_cycle_genes.s_genes[0]
        genes = CellCycleGenes(
            s_genes=cell_cycle_genes.s_genes,
            g2m_genes=cell_cycle_genes.g2m_genes + [shared],
        )

        adata, stats, _ = service.score_cell_cycle(normalized_data, genes)

        assert stats["overlapping_genes"] == [shared]
        assert shared not in list(adata.uns["cell_cycle"]["s_genes_used"])
        assert shared not in list(adata.uns["cell_cycle"]["g2m_genes_used"])
