"""
Cell-cycle scoring service for single-cell RNA-seq data.

Each cell receives an S-phase and a G2/M-phase score (average expression
of the phase markers minus that of expression-matched control genes) and
is assigned to G1, S or G2M.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.data_loader import CellCycleGenes
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import VALID_PHASES, ensure_cell_metadata
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)


class CellCycleError(SCClusterCoreError):
    """Base exception for cell-cycle scoring."""

    pass


def classify_phase(
    s_score: np.ndarray, g2m_score: np.ndarray, baseline: float = 0.0
) -> np.ndarray:
    """
    Assign a phase per cell from its two scores.

    Both scores below baseline gives G1; otherwise the phase with the
    higher score wins, S on ties.
    """
    s_score = np.asarray(s_score, dtype=float)
    g2m_score = np.asarray(g2m_score, dtype=float)
    phase = np.where(g2m_score > s_score, "G2M", "S").astype(object)
    phase[(s_score < baseline) & (g2m_score < baseline)] = "G1"
    return phase


class CellCycleService:
    """Stateless service for cell-cycle scoring and phase assignment."""

    def __init__(self):
        logger.debug("Initializing stateless CellCycleService")

    def _present_genes(
        self, adata: anndata.AnnData, genes: Sequence[str], label: str
    ) -> Tuple[List[str], List[str]]:
        present = [g for g in genes if g in adata.var_names]
        missing = [g for g in genes if g not in adata.var_names]
        if missing:
            logger.warning(
                f"{len(missing)} of {len(genes)} {label} marker genes are absent "
                f"from the expression matrix (e.g. {missing[:5]})"
            )
        return present, missing

    def _score(
        self,
        adata: anndata.AnnData,
        genes: List[str],
        score_name: str,
        ctrl_size: int,
        n_bins: int,
        random_state: int,
    ) -> np.ndarray:
        if not genes:
            logger.warning(f"No {score_name} genes available; score set to 0 for all cells")
            return np.zeros(adata.n_obs)
        scored = sc.tl.score_genes(
            adata,
            gene_list=genes,
            ctrl_size=ctrl_size,
            n_bins=n_bins,
            score_name=score_name,
            random_state=random_state,
            use_raw=False,
            copy=True,
        )
        return scored.obs[score_name].to_numpy(dtype=np.float64)

    def score_cell_cycle(
        self,
        adata: anndata.AnnData,
        cell_cycle_genes: CellCycleGenes,
        baseline: float = 0.0,
        n_bins: int = 25,
        ctrl_size: Optional[int] = None,
        random_state: int = 0,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Score S and G2/M activity and assign a phase to every cell.

        Missing marker genes only produce a warning; a phase whose markers
        are all absent scores 0 and the result is flagged as reduced
        confidence. Genes listed for both phases are dropped from both.

        Args:
            adata: Log-normalized snapshot; not modified
            cell_cycle_genes: S and G2/M marker genes
            baseline: Cells with both scores below this are called G1
            n_bins: Expression bins used to draw control genes
            ctrl_size: Control genes per bin (default: size of the smaller set)
            random_state: Seed for control gene sampling

        Returns:
            Tuple of (snapshot with s_score, g2m_score, phase; stats; step)
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="cell_cycle")
            logger.info(
                f"Scoring cell cycle with {len(cell_cycle_genes.s_genes)} S and "
                f"{len(cell_cycle_genes.g2m_genes)} G2/M reference genes"
            )

            overlap = set(cell_cycle_genes.overlap())
            if overlap:
                logger.warning(
                    f"{len(overlap)} genes are listed for both S and G2/M and are "
                    f"ignored: {sorted(overlap)[:5]}"
                )
            s_ref = [g for g in cell_cycle_genes.s_genes if g not in overlap]
            g2m_ref = [g for g in cell_cycle_genes.g2m_genes if g not in overlap]

            s_genes, s_missing = self._present_genes(adata, s_ref, "S-phase")
            g2m_genes, g2m_missing = self._present_genes(adata, g2m_ref, "G2/M-phase")

            reduced_confidence = not s_genes or not g2m_genes
            if reduced_confidence:
                logger.warning(
                    "At least one phase has no usable marker genes; phase calls "
                    "have reduced confidence"
                )

            if ctrl_size is None:
                sizes = [len(g) for g in (s_genes, g2m_genes) if g]
                ctrl_size = min(sizes) if sizes else 1

            adata_cc = adata.copy()
            s_score = self._score(adata_cc, s_genes, "s_score", ctrl_size, n_bins, random_state)
            g2m_score = self._score(
                adata_cc, g2m_genes, "g2m_score", ctrl_size, n_bins, random_state
            )
            phase = classify_phase(s_score, g2m_score, baseline=baseline)

            adata_cc.obs["s_score"] = s_score
            adata_cc.obs["g2m_score"] = g2m_score
            adata_cc.obs["phase"] = pd.Categorical(phase, categories=VALID_PHASES)

            counts = adata_cc.obs["phase"].value_counts()
            phase_counts = {p: int(counts.get(p, 0)) for p in VALID_PHASES}

            parameters = {
                "baseline": float(baseline),
                "n_bins": int(n_bins),
                "ctrl_size": int(ctrl_size),
                "random_state": int(random_state),
            }
            adata_cc.uns["cell_cycle"] = {
                **parameters,
                "s_genes_used": np.array(s_genes, dtype=object),
                "g2m_genes_used": np.array(g2m_genes, dtype=object),
                "reduced_confidence": bool(reduced_confidence),
            }

            stats = {
                "n_s_genes_used": len(s_genes),
                "n_g2m_genes_used": len(g2m_genes),
                "missing_s_genes": s_missing,
                "missing_g2m_genes": g2m_missing,
                "overlapping_genes": sorted(overlap),
                "reduced_confidence": reduced_confidence,
                "phase_counts": phase_counts,
            }

            step = AnalysisStep(
                operation="scanpy.tl.score_genes",
                tool_name="score_cell_cycle",
                description="S and G2/M module scores with phase assignment",
                library="scanpy",
                parameters=parameters,
            )
            record_step(adata_cc, step)

            logger.info(
                "Cell-cycle phases: "
                + ", ".join(f"{p}={n}" for p, n in phase_counts.items())
            )
            return adata_cc, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in cell-cycle scoring: {e}")
            raise CellCycleError(f"Cell-cycle scoring failed: {str(e)}")
