"""
End-to-end orchestration of the clustering workflow.

The pipeline chains the stage services, writes the pre-regression and
final checkpoints into a workspace, and on a later run reuses whichever
checkpoint is still valid for the current configuration and inputs.
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as spr

from sccluster.config.pipeline_config import PRE_REGRESSION_STAGES, PipelineConfig
from sccluster.config.settings import get_settings
from sccluster.core import DataLoadingError, PipelineError
from sccluster.core.analysis_ir import AnalysisStep, get_provenance
from sccluster.core.data_loader import (
    CellCycleGenes,
    attach_cell_metadata,
    load_cell_cycle_reference,
    load_count_matrix,
)
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.snapshot import (
    FINAL,
    PRE_REGRESSION,
    load_snapshot,
    save_snapshot,
    snapshot_info,
    snapshot_path,
)
from sccluster.tools.cell_cycle_service import CellCycleService
from sccluster.tools.clustering_service import ClusteringService
from sccluster.tools.component_selection_service import ComponentSelectionService
from sccluster.tools.embedding_service import EmbeddingService
from sccluster.tools.feature_selection_service import FeatureSelectionService
from sccluster.tools.normalization_service import NormalizationService
from sccluster.tools.pca_service import PCAService
from sccluster.tools.regression_service import RegressionService
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

CELL_CYCLE_COVARIATES = ["s_score", "g2m_score"]


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""

    adata: anndata.AnnData
    stats: Dict[str, Any] = field(default_factory=dict)
    resumed_from: Optional[str] = None
    checkpoints: Dict[str, str] = field(default_factory=dict)

    @property
    def steps(self) -> List[AnalysisStep]:
        return get_provenance(self.adata)


def _file_signature(path: Optional[Union[str, Path]]) -> Optional[Dict[str, Any]]:
    if path is None:
        return None
    path = Path(path).resolve()
    if not path.exists():
        raise DataLoadingError(f"Input not found: {path}", details={"path": str(path)})
    stat = path.stat()
    return {"path": str(path), "size": stat.st_size, "mtime": int(stat.st_mtime)}


def _data_signature(adata: anndata.AnnData) -> Dict[str, Any]:
    digest = hashlib.sha256()
    for name in list(adata.obs_names) + list(adata.var_names):
        digest.update(name.encode("utf-8"))

    X = adata.X
    digest.update(str(X.dtype).encode("utf-8"))
    if spr.issparse(X):
        X = spr.csr_matrix(X, copy=True)
        X.sort_indices()
        parts = [X.data, X.indices, X.indptr]
    else:
        parts = [np.asarray(X)]
    for part in parts:
        digest.update(np.ascontiguousarray(part).tobytes())

    for column in adata.obs.columns:
        digest.update(str(column).encode("utf-8"))
        digest.update(
            pd.util.hash_pandas_object(adata.obs[column], index=False).values.tobytes()
        )
    return {"shape": [int(adata.n_obs), int(adata.n_vars)], "content": digest.hexdigest()}


class ClusteringPipeline:
    """
    Runs the eight stages in order on immutable snapshots.

    Example:
        >>> pipeline = ClusteringPipeline(PipelineConfig(), workspace="run1")
        >>> result = pipeline.run(counts_path="counts.h5ad", metadata_path="meta.csv")
        >>> result.adata.obs["cluster"].value_counts()
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        workspace: Optional[Union[str, Path]] = None,
        n_jobs: Optional[int] = None,
    ):
        settings = get_settings()
        self.config = config or PipelineConfig.seeded(settings.RANDOM_STATE)
        self.workspace = Path(workspace) if workspace is not None else settings.WORKSPACE
        self.n_jobs = settings.N_JOBS if n_jobs is None else n_jobs

        self.normalization = NormalizationService()
        self.feature_selection = FeatureSelectionService()
        self.cell_cycle = CellCycleService()
        self.regression = RegressionService()
        self.pca = PCAService()
        self.component_selection = ComponentSelectionService()
        self.clustering = ClusteringService()
        self.embedding = EmbeddingService()

    def load_inputs(
        self,
        counts_path: Union[str, Path],
        metadata_path: Optional[Union[str, Path]] = None,
    ) -> anndata.AnnData:
        """Load the count matrix and attach the metadata table if given."""
        adata = load_count_matrix(counts_path)
        if metadata_path is not None:
            adata = attach_cell_metadata(adata, metadata_path)
        return adata

    def load_cell_cycle_genes(self) -> Optional[CellCycleGenes]:
        """Reference marker genes from the configuration, if configured."""
        reference = self.config.cell_cycle.reference_path
        if not reference:
            return None
        return load_cell_cycle_reference(reference)

    def run_preprocessing(
        self,
        adata: anndata.AnnData,
        cell_cycle_genes: Optional[CellCycleGenes],
        stats: Dict[str, Any],
    ) -> anndata.AnnData:
        """Normalization, variable genes and cell-cycle scoring."""
        cfg = self.config

        adata, stats["normalization"], _ = self.normalization.normalize(
            adata,
            scale_factor=cfg.normalization.scale_factor,
            mito_prefix=cfg.normalization.mito_prefix,
        )

        fs = cfg.feature_selection
        adata, stats["feature_selection"], _ = self.feature_selection.find_variable_genes(
            adata,
            n_bins=fs.n_bins,
            min_mean=fs.min_mean,
            max_mean=fs.max_mean,
            min_disp=fs.min_disp,
            max_disp=fs.max_disp,
            n_top_genes=fs.n_top_genes,
            bin_method=fs.bin_method,
            expected_range=(fs.expected_min, fs.expected_max),
        )

        if cell_cycle_genes is None or cell_cycle_genes.is_empty:
            logger.warning(
                "No cell-cycle reference configured; skipping cell-cycle scoring"
            )
            stats["cell_cycle"] = {"skipped": True}
        else:
            cc = cfg.cell_cycle
            adata, stats["cell_cycle"], _ = self.cell_cycle.score_cell_cycle(
                adata,
                cell_cycle_genes,
                baseline=cc.baseline,
                n_bins=cc.n_bins,
                ctrl_size=cc.ctrl_size,
                random_state=cc.random_state,
            )
        return adata

    def run_downstream(self, adata: anndata.AnnData, stats: Dict[str, Any]) -> anndata.AnnData:
        """Regression and scaling, PCA, component selection, clustering, t-SNE."""
        cfg = self.config

        covariates = list(cfg.regression.covariates)
        absent = [c for c in CELL_CYCLE_COVARIATES if c in covariates and c not in adata.obs]
        if absent:
            logger.warning(
                f"Cell-cycle scores were not computed; not regressing {absent}"
            )
            covariates = [c for c in covariates if c not in absent]

        adata, stats["regression"], _ = self.regression.regress_and_scale(
            adata,
            covariates=covariates,
            max_value=cfg.regression.max_value,
            chunk_size=cfg.regression.chunk_size,
        )

        adata, stats["pca"], _ = self.pca.run_pca(
            adata,
            n_comps=cfg.pca.n_comps,
            svd_solver=cfg.pca.svd_solver,
            random_state=cfg.pca.random_state,
        )

        cs = cfg.component_selection
        adata, stats["component_selection"], _ = self.component_selection.select_components(
            adata,
            cumulative_threshold=cs.cumulative_threshold,
            pct_threshold=cs.pct_threshold,
            delta_threshold=cs.delta_threshold,
            fallback_n_pcs=cs.fallback_n_pcs,
            n_pcs_override=cs.n_pcs_override,
        )

        cl = cfg.clustering
        adata, stats["clustering"], _ = self.clustering.cluster(
            adata,
            n_neighbors=cl.n_neighbors,
            prune_snn=cl.prune_snn,
            resolutions=cl.resolutions,
            method=cl.method,
            random_state=cl.random_state,
            active_resolution=cl.active_resolution,
            n_jobs=self.n_jobs,
        )

        if cfg.embedding.enabled:
            adata, stats["embedding"], _ = self.embedding.run_tsne(
                adata,
                perplexity=cfg.embedding.perplexity,
                random_state=cfg.embedding.random_state,
            )
        return adata

    def _matching_checkpoint(self, name: str, fingerprint: str) -> Optional[anndata.AnnData]:
        path = snapshot_path(self.workspace, name)
        if not path.exists():
            return None
        adata = load_snapshot(path)
        if snapshot_info(adata).get("fingerprint") != fingerprint:
            logger.info(f"Checkpoint '{name}' is stale for this configuration")
            return None
        return adata

    def run(
        self,
        counts_path: Optional[Union[str, Path]] = None,
        metadata_path: Optional[Union[str, Path]] = None,
        adata: Optional[anndata.AnnData] = None,
        resume: bool = True,
    ) -> PipelineResult:
        """
        Run the workflow and write both checkpoints.

        Args:
            counts_path: Count matrix to load (ignored when adata is given)
            metadata_path: Per-cell metadata table to attach
            adata: In-memory count matrix instead of a file
            resume: Reuse valid checkpoints from the workspace

        Returns:
            PipelineResult with the final snapshot and per-stage stats

        Raises:
            PipelineError: If neither input is given
            SCClusterCoreError: Any stage failure, unchanged
        """
        if adata is None and counts_path is None:
            raise PipelineError("Either counts_path or adata is required")

        if adata is not None:
            if metadata_path is not None:
                adata = attach_cell_metadata(adata, metadata_path)
            inputs = {"data": _data_signature(adata)}
        else:
            inputs = {
                "counts": _file_signature(counts_path),
                "metadata": _file_signature(metadata_path),
            }
        reference = self.config.cell_cycle.reference_path
        inputs["cell_cycle_reference"] = _file_signature(reference) if reference else None

        upstream_fp = self.config.fingerprint(PRE_REGRESSION_STAGES, extra=inputs)
        final_fp = self.config.fingerprint(extra=inputs)

        self.workspace.mkdir(parents=True, exist_ok=True)
        self.config.save(self.workspace)
        checkpoints = {
            PRE_REGRESSION: str(snapshot_path(self.workspace, PRE_REGRESSION)),
            FINAL: str(snapshot_path(self.workspace, FINAL)),
        }
        stats: Dict[str, Any] = {}

        try:
            if resume:
                final = self._matching_checkpoint(FINAL, final_fp)
                if final is not None:
                    logger.info("Final checkpoint matches configuration; nothing to do")
                    return PipelineResult(
                        adata=final, stats=stats, resumed_from=FINAL, checkpoints=checkpoints
                    )

            pre = self._matching_checkpoint(PRE_REGRESSION, upstream_fp) if resume else None
            resumed_from = None
            if pre is not None:
                logger.info("Resuming from pre-regression checkpoint")
                resumed_from = PRE_REGRESSION
            else:
                if adata is None:
                    adata = self.load_inputs(counts_path, metadata_path)
                pre = self.run_preprocessing(adata, self.load_cell_cycle_genes(), stats)
                save_snapshot(
                    pre,
                    checkpoints[PRE_REGRESSION],
                    name=PRE_REGRESSION,
                    fingerprint=upstream_fp,
                )

            final = self.run_downstream(pre, stats)
            save_snapshot(final, checkpoints[FINAL], name=FINAL, fingerprint=final_fp)

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Pipeline failed: {e}")
            raise PipelineError(f"Pipeline failed: {str(e)}")

        clustering = final.uns["clustering"]
        logger.info(
            f"Pipeline completed: {int(final.uns['component_selection']['n_pcs'])} PCs, "
            f"{final.obs['cluster'].nunique()} clusters at resolution "
            f"{clustering['active_resolution']:g}"
        )
        return PipelineResult(
            adata=final, stats=stats, resumed_from=resumed_from, checkpoints=checkpoints
        )
