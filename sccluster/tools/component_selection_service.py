"""
Principal component selection for graph clustering.

Two elbow metrics are computed from the component standard deviations:

* magnitude: the first component where cumulative variation exceeds 90%
  while the component itself contributes less than 5%;
* delta: the last component after which consecutive contributions still
  differ by more than 0.1 percentage points, plus one.

The number of components used downstream is the smaller of the two.
"""

from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.tools.clustering_service import ACTIVE_CLUSTER_KEY, CLUSTER_KEY_PREFIX
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

UNDEFINED = -1


class ComponentSelectionError(SCClusterCoreError):
    """Raised when the number of components cannot be determined."""

    pass


def percent_variation(stdev) -> np.ndarray:
    """Each component's standard deviation as a percentage of their sum."""
    stdev = np.asarray(stdev, dtype=np.float64)
    total = stdev.sum()
    if stdev.size == 0 or total <= 0:
        raise ComponentSelectionError("Standard deviations must be non-empty and positive")
    return stdev / total * 100


def elbow_by_magnitude(
    pct, cumulative_threshold: float = 90.0, pct_threshold: float = 5.0
) -> Optional[int]:
    """
    First 1-based component with cumulative % above cumulative_threshold
    and own % below pct_threshold; None if no component qualifies.
    """
    pct = np.asarray(pct, dtype=np.float64)
    cumulative = np.cumsum(pct)
    hits = np.flatnonzero((cumulative > cumulative_threshold) & (pct < pct_threshold))
    return int(hits[0]) + 1 if hits.size else None


def elbow_by_delta(pct, delta_threshold: float = 0.1) -> Optional[int]:
    """
    Last component whose drop to the next one exceeds delta_threshold,
    reported as a 1-based count that includes the next component; None if
    no drop is large enough.
    """
    pct = np.asarray(pct, dtype=np.float64)
    drops = np.flatnonzero(pct[:-1] - pct[1:] > delta_threshold)
    return int(drops[-1]) + 2 if drops.size else None


def choose_n_components(
    pct,
    cumulative_threshold: float = 90.0,
    pct_threshold: float = 5.0,
    delta_threshold: float = 0.1,
    fallback_n_pcs: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Combine both elbow metrics into one decision.

    Both defined gives their minimum. If only one is defined it is used
    on its own. If neither is, fallback_n_pcs is used when given.

    Returns:
        Dict with metric_a, metric_b (None when undefined), n_pcs and source

    Raises:
        ComponentSelectionError: If neither metric is defined and no fallback is given
    """
    metric_a = elbow_by_magnitude(pct, cumulative_threshold, pct_threshold)
    metric_b = elbow_by_delta(pct, delta_threshold)

    if metric_a is not None and metric_b is not None:
        n_pcs, source = min(metric_a, metric_b), "min"
    elif metric_a is not None:
        logger.warning("Delta elbow metric is undefined; using the magnitude metric alone")
        n_pcs, source = metric_a, "magnitude"
    elif metric_b is not None:
        logger.warning("Magnitude elbow metric is undefined; using the delta metric alone")
        n_pcs, source = metric_b, "delta"
    elif fallback_n_pcs is not None:
        logger.warning(
            f"Both elbow metrics are undefined; using fallback of {fallback_n_pcs} components"
        )
        n_pcs, source = int(fallback_n_pcs), "fallback"
    else:
        raise ComponentSelectionError(
            "Neither elbow metric is defined for these components; "
            "compute more components or pass fallback_n_pcs",
            details={"pct": np.asarray(pct).tolist()},
        )

    return {"metric_a": metric_a, "metric_b": metric_b, "n_pcs": n_pcs, "source": source}


def get_selected_n_pcs(adata: anndata.AnnData) -> int:
    """Number of components chosen for a snapshot."""
    selection = adata.uns.get("component_selection")
    if not selection:
        raise ComponentSelectionError(
            "No component selection found; run select_components first"
        )
    return int(selection["n_pcs"])


def clear_downstream_results(adata: anndata.AnnData) -> List[str]:
    """
    Remove the SNN graph, cluster assignments and t-SNE layout in place.

    Returns:
        List[str]: Locations that were removed
    """
    removed = []
    for key in ("snn", "knn_distances"):
        if key in adata.obsp:
            del adata.obsp[key]
            removed.append(f"obsp['{key}']")
    columns = [
        c
        for c in adata.obs.columns
        if c == ACTIVE_CLUSTER_KEY or str(c).startswith(CLUSTER_KEY_PREFIX)
    ]
    if columns:
        adata.obs = adata.obs.drop(columns=columns)
        removed.extend(f"obs['{c}']" for c in columns)
    for key in ("snn_graph", "clustering", "embedding"):
        if key in adata.uns:
            del adata.uns[key]
            removed.append(f"uns['{key}']")
    if "X_tsne" in adata.obsm:
        del adata.obsm["X_tsne"]
        removed.append("obsm['X_tsne']")
    return removed


def _built_on_other_selection(adata: anndata.AnnData, n_pcs: int) -> bool:
    for key in ("snn_graph", "embedding"):
        entry = adata.uns.get(key)
        if entry and "n_pcs" in entry and int(entry["n_pcs"]) != n_pcs:
            return True
    return False


class ComponentSelectionService:
    """Stateless service choosing how many components feed clustering."""

    def __init__(self):
        logger.debug("Initializing stateless ComponentSelectionService")

    def select_components(
        self,
        adata: anndata.AnnData,
        cumulative_threshold: float = 90.0,
        pct_threshold: float = 5.0,
        delta_threshold: float = 0.1,
        fallback_n_pcs: Optional[int] = None,
        n_pcs_override: Optional[int] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Choose the number of principal components from their stdev vector.

        Args:
            adata: Snapshot with PCA results; not modified
            cumulative_threshold: Cumulative % for the magnitude metric
            pct_threshold: Per-component % for the magnitude metric
            delta_threshold: Minimum drop for the delta metric
            fallback_n_pcs: Used when both metrics are undefined
            n_pcs_override: Manual choice; metrics are still reported

        Returns:
            Tuple of (snapshot with uns["component_selection"], stats, step)
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="component_selection")
            if "pca" not in adata.uns or "stdev" not in adata.uns["pca"]:
                raise ComponentSelectionError("No PCA results found; run run_pca first")

            stdev = np.asarray(adata.uns["pca"]["stdev"], dtype=np.float64)
            pct = percent_variation(stdev)
            decision = choose_n_components(
                pct,
                cumulative_threshold=cumulative_threshold,
                pct_threshold=pct_threshold,
                delta_threshold=delta_threshold,
                fallback_n_pcs=fallback_n_pcs if n_pcs_override is None else 1,
            )
            if n_pcs_override is not None:
                logger.info(f"Using manually chosen {n_pcs_override} components")
                decision["n_pcs"], decision["source"] = int(n_pcs_override), "override"

            n_pcs = decision["n_pcs"]
            if not 1 <= n_pcs <= stdev.size:
                raise ComponentSelectionError(
                    f"Selected {n_pcs} components but only {stdev.size} were computed"
                )

            adata_sel = adata.copy()
            invalidated = []
            if _built_on_other_selection(adata_sel, n_pcs):
                invalidated = clear_downstream_results(adata_sel)
                logger.warning(
                    f"Graph, clusters and t-SNE were built on a different number of "
                    f"components and were removed; rerun clustering and t-SNE on {n_pcs}"
                )
            adata_sel.uns["pca"] = {**adata_sel.uns["pca"], "selected_n_pcs": n_pcs}
            adata_sel.uns["component_selection"] = {
                "metric_a": UNDEFINED if decision["metric_a"] is None else decision["metric_a"],
                "metric_b": UNDEFINED if decision["metric_b"] is None else decision["metric_b"],
                "n_pcs": n_pcs,
                "source": decision["source"],
                "pct": pct,
                "cumulative_pct": np.cumsum(pct),
                "cumulative_threshold": float(cumulative_threshold),
                "pct_threshold": float(pct_threshold),
                "delta_threshold": float(delta_threshold),
            }

            stats = {
                "metric_a": decision["metric_a"],
                "metric_b": decision["metric_b"],
                "n_pcs": n_pcs,
                "source": decision["source"],
                "n_comps_available": int(stdev.size),
                "invalidated": invalidated,
            }

            step = AnalysisStep(
                operation="sccluster.select_components",
                tool_name="select_components",
                description="Elbow-based choice of principal components",
                library="numpy",
                parameters={
                    "cumulative_threshold": float(cumulative_threshold),
                    "pct_threshold": float(pct_threshold),
                    "delta_threshold": float(delta_threshold),
                    "fallback_n_pcs": -1 if fallback_n_pcs is None else int(fallback_n_pcs),
                    "n_pcs_override": -1 if n_pcs_override is None else int(n_pcs_override),
                },
            )
            record_step(adata_sel, step)

            logger.info(
                f"Selected {n_pcs} components (metric A={decision['metric_a']}, "
                f"metric B={decision['metric_b']}, source={decision['source']})"
            )
            return adata_sel, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in component selection: {e}")
            raise ComponentSelectionError(f"Component selection failed: {str(e)}")
