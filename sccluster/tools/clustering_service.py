"""
Graph-based clustering service for single-cell RNA-seq data.

Cells are connected through a shared-nearest-neighbor (SNN) graph built in
principal component space, and communities are found by modularity
optimization at one or more resolutions. Every resolution's assignment is
kept; one of them is the active clustering.
"""

import random
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import anndata
import igraph as ig
import leidenalg
import numpy as np
import pandas as pd
import scipy.sparse as spr
from sklearn.neighbors import NearestNeighbors

from sccluster.core.analysis_ir import AnalysisStep, record_step
from sccluster.core.exceptions import SCClusterCoreError
from sccluster.core.schemas.cell_metadata import ensure_cell_metadata
from sccluster.utils.logger import get_logger
from sccluster.utils.progress_wrapper import with_periodic_progress

logger = get_logger(__name__)

CLUSTER_METHODS = ["louvain", "leiden"]
ACTIVE_CLUSTER_KEY = "cluster"
CLUSTER_KEY_PREFIX = "snn_res."


class ClusteringError(SCClusterCoreError):
    """Base exception for clustering operations."""

    pass


def resolution_key(resolution: float) -> str:
    """Metadata column holding the assignment at a resolution."""
    return f"{CLUSTER_KEY_PREFIX}{resolution:g}"


def jaccard_snn(neighbors: np.ndarray, prune: float = 1 / 15) -> spr.csr_matrix:
    """
    Shared-nearest-neighbor graph from kNN index lists.

    Each row of ``neighbors`` is a cell's neighbor set (including itself).
    Edge weights are the Jaccard index of the two neighbor sets; weights
    below ``prune`` and self-loops are removed.

    Args:
        neighbors: Cells x k neighbor indices
        prune: Minimum Jaccard index kept

    Returns:
        scipy.sparse.csr_matrix: Symmetric weighted adjacency matrix
    """
    n_cells, k = neighbors.shape
    rows = np.repeat(np.arange(n_cells), k)
    membership = spr.csr_matrix(
        (np.ones(rows.size), (rows, neighbors.ravel())), shape=(n_cells, n_cells)
    )
    membership.data[:] = 1.0

    shared = (membership @ membership.T).tocsr()
    shared.data = shared.data / (2 * k - shared.data)
    shared.data[shared.data < prune] = 0.0
    shared.setdiag(0.0)
    shared.eliminate_zeros()
    return shared


def relabel_by_size(membership: Sequence[int]) -> np.ndarray:
    """Renumber communities so that 0 is the largest (ties by first label)."""
    membership = np.asarray(membership)
    sizes = np.bincount(membership)
    order = np.argsort(-sizes, kind="mergesort")
    rank = np.empty_like(order)
    rank[order] = np.arange(order.size)
    return rank[membership]


def graph_from_adjacency(adjacency: spr.spmatrix) -> ig.Graph:
    """Undirected weighted igraph graph from a symmetric sparse matrix."""
    upper = spr.triu(adjacency, k=1).tocoo()
    edges = list(zip(upper.row.tolist(), upper.col.tolist()))
    graph = ig.Graph(n=adjacency.shape[0], edges=edges, directed=False)
    graph.es["weight"] = upper.data.tolist()
    return graph


class ClusteringService:
    """
    Stateless service for SNN graph construction and community detection.

    Resolution trades off granularity: on a fixed graph, higher values give
    at least as many clusters.
    """

    def __init__(self, progress_callback: Optional[Callable[[str], None]] = None):
        logger.debug("Initializing stateless ClusteringService")
        self.progress_callback = progress_callback

    def _resolve_n_pcs(self, adata: anndata.AnnData, n_pcs: Optional[int]) -> int:
        if "X_pca" not in adata.obsm:
            raise ClusteringError("No PCA embedding found; run run_pca first")
        available = adata.obsm["X_pca"].shape[1]
        if n_pcs is None:
            selection = adata.uns.get("component_selection")
            n_pcs = int(selection["n_pcs"]) if selection else available
        if not 1 <= n_pcs <= available:
            raise ClusteringError(f"n_pcs={n_pcs} outside 1..{available}")
        return n_pcs

    def build_snn_graph(
        self,
        adata: anndata.AnnData,
        n_pcs: Optional[int] = None,
        n_neighbors: int = 20,
        prune_snn: float = 1 / 15,
        n_jobs: int = 1,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Build the shared-nearest-neighbor graph in PC space.

        Args:
            adata: Snapshot with obsm["X_pca"]; not modified
            n_pcs: Components to use (default: selected number, else all)
            n_neighbors: Neighborhood size k, the cell itself included
            prune_snn: Jaccard weights below this are removed
            n_jobs: Parallel jobs for the neighbor search

        Returns:
            Tuple of (snapshot with obsp["snn"] and obsp["knn_distances"],
            stats, step)
        """
        try:
            ensure_cell_metadata(adata, required=[], stage="snn_graph")
            n_pcs = self._resolve_n_pcs(adata, n_pcs)
            if adata.n_obs < 2:
                raise ClusteringError("At least two cells are required to build a graph")
            k = min(n_neighbors, adata.n_obs)
            if k < n_neighbors:
                logger.warning(f"n_neighbors reduced from {n_neighbors} to {k} (cell count)")

            logger.info(
                f"Building SNN graph on {n_pcs} components (k={k}, prune={prune_snn:.4f})"
            )
            rep = np.asarray(adata.obsm["X_pca"][:, :n_pcs], dtype=np.float64)

            nn = NearestNeighbors(n_neighbors=k, n_jobs=n_jobs).fit(rep)
            if k > 1:
                distances, indices = nn.kneighbors(n_neighbors=k - 1)
            else:
                distances = np.zeros((adata.n_obs, 0))
                indices = np.zeros((adata.n_obs, 0), dtype=np.int64)
            self_idx = np.arange(adata.n_obs)[:, None]
            neighbors = np.hstack([self_idx, indices])

            snn = jaccard_snn(neighbors, prune=prune_snn)
            knn_rows = np.repeat(np.arange(adata.n_obs), indices.shape[1])
            knn_distances = spr.csr_matrix(
                (distances.ravel(), (knn_rows, indices.ravel())),
                shape=(adata.n_obs, adata.n_obs),
            )

            adata_graph = adata.copy()
            adata_graph.obsp["snn"] = snn
            adata_graph.obsp["knn_distances"] = knn_distances
            n_edges = int(spr.triu(snn, k=1).nnz)
            adata_graph.uns["snn_graph"] = {
                "n_neighbors": int(k),
                "prune_snn": float(prune_snn),
                "n_pcs": int(n_pcs),
                "n_edges": n_edges,
            }

            degrees = np.diff(snn.indptr)
            stats = {
                "n_pcs": int(n_pcs),
                "n_neighbors": int(k),
                "n_edges": n_edges,
                "n_isolated_cells": int((degrees == 0).sum()),
                "mean_degree": float(degrees.mean()),
            }
            if stats["n_isolated_cells"]:
                logger.warning(
                    f"{stats['n_isolated_cells']} cells lost all SNN edges after pruning"
                )

            step = AnalysisStep(
                operation="sklearn.neighbors.NearestNeighbors+jaccard",
                tool_name="build_snn_graph",
                description="kNN in PC space with Jaccard shared-neighbor weights",
                library="sklearn",
                parameters={
                    "n_pcs": int(n_pcs),
                    "n_neighbors": int(k),
                    "prune_snn": float(prune_snn),
                },
            )
            record_step(adata_graph, step)

            logger.info(f"SNN graph built with {n_edges} edges")
            return adata_graph, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error building SNN graph: {e}")
            raise ClusteringError(f"SNN graph construction failed: {str(e)}")

    def _partition(
        self, graph: ig.Graph, resolution: float, method: str, random_state: int
    ) -> List[int]:
        if method == "leiden":
            partition = leidenalg.find_partition(
                graph,
                leidenalg.RBConfigurationVertexPartition,
                weights="weight",
                resolution_parameter=resolution,
                n_iterations=-1,
                seed=random_state,
            )
            return list(partition.membership)
        # igraph draws from Python's random module
        random.seed(random_state)
        return list(graph.community_multilevel(weights="weight", resolution=resolution).membership)

    def find_clusters(
        self,
        adata: anndata.AnnData,
        resolutions: Sequence[float] = (0.4, 0.6, 0.8, 1.0, 1.4),
        method: str = "louvain",
        random_state: int = 0,
        active_resolution: Optional[float] = None,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Modularity-based community detection at several resolutions.

        Args:
            adata: Snapshot with obsp["snn"]; not modified
            resolutions: Resolution parameters to evaluate
            method: louvain (igraph multilevel) or leiden (leidenalg)
            random_state: Seed for the optimizer
            active_resolution: Resolution copied to obs["cluster"]
                (default: the middle of the sorted resolutions)

        Returns:
            Tuple of (snapshot with one obs column per resolution plus
            obs["cluster"] and uns["clustering"]; stats; step)
        """
        try:
            if "snn" not in adata.obsp:
                raise ClusteringError("No SNN graph found; run build_snn_graph first")
            if method not in CLUSTER_METHODS:
                raise ClusteringError(
                    f"Invalid method: '{method}'. Must be one of: {', '.join(CLUSTER_METHODS)}"
                )
            resolutions = sorted(float(r) for r in resolutions)
            if not resolutions or any(r <= 0 for r in resolutions):
                raise ClusteringError(f"Resolutions must be positive, got {resolutions}")
            if active_resolution is None:
                active_resolution = resolutions[len(resolutions) // 2]
            if float(active_resolution) not in resolutions:
                raise ClusteringError(
                    f"Active resolution {active_resolution} is not among {resolutions}"
                )

            graph = graph_from_adjacency(adata.obsp["snn"])
            logger.info(
                f"Clustering {graph.vcount()} cells ({graph.ecount()} edges) with "
                f"{method} at resolutions {resolutions}"
            )

            adata_clustered = adata.copy()
            keys, n_clusters, modularity = [], [], []
            with with_periodic_progress(
                f"Running {method} community detection", self.progress_callback
            ):
                for resolution in resolutions:
                    membership = relabel_by_size(
                        self._partition(graph, resolution, method, random_state)
                    )
                    k = int(membership.max()) + 1 if membership.size else 0
                    key = resolution_key(resolution)
                    adata_clustered.obs[key] = pd.Categorical(
                        membership.astype(str), categories=[str(i) for i in range(k)]
                    )
                    keys.append(key)
                    n_clusters.append(k)
                    modularity.append(
                        float(
                            graph.modularity(
                                membership.tolist(), weights="weight", resolution=resolution
                            )
                        )
                    )
                    logger.info(f"Resolution {resolution:g}: {k} clusters")

            active_key = resolution_key(float(active_resolution))
            adata_clustered.obs[ACTIVE_CLUSTER_KEY] = adata_clustered.obs[active_key].copy()
            adata_clustered.uns["clustering"] = {
                "method": method,
                "resolutions": np.array(resolutions),
                "keys": np.array(keys, dtype=object),
                "n_clusters": np.array(n_clusters),
                "modularity": np.array(modularity),
                "active_resolution": float(active_resolution),
                "active_key": active_key,
                "random_state": int(random_state),
            }
            ensure_cell_metadata(adata_clustered, required=[ACTIVE_CLUSTER_KEY], stage="clustering")

            stats = {
                "method": method,
                "resolutions": resolutions,
                "n_clusters": dict(zip(keys, n_clusters)),
                "modularity": dict(zip(keys, modularity)),
                "active_key": active_key,
                "active_n_clusters": n_clusters[resolutions.index(float(active_resolution))],
                "cluster_sizes": {
                    str(c): int(n)
                    for c, n in adata_clustered.obs[ACTIVE_CLUSTER_KEY].value_counts(sort=False).items()
                },
            }

            step = AnalysisStep(
                operation="igraph.community_multilevel"
                if method == "louvain"
                else "leidenalg.find_partition",
                tool_name="find_clusters",
                description="Modularity optimization on the SNN graph at several resolutions",
                library="igraph" if method == "louvain" else "leidenalg",
                parameters={
                    "resolutions": resolutions,
                    "method": method,
                    "random_state": int(random_state),
                    "active_resolution": float(active_resolution),
                },
            )
            record_step(adata_clustered, step)

            return adata_clustered, stats, step

        except SCClusterCoreError:
            raise
        except Exception as e:
            logger.exception(f"Error in clustering: {e}")
            raise ClusteringError(f"Clustering failed: {str(e)}")

    def cluster(
        self,
        adata: anndata.AnnData,
        n_pcs: Optional[int] = None,
        n_neighbors: int = 20,
        prune_snn: float = 1 / 15,
        resolutions: Sequence[float] = (0.4, 0.6, 0.8, 1.0, 1.4),
        method: str = "louvain",
        random_state: int = 0,
        active_resolution: Optional[float] = None,
        n_jobs: int = 1,
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """Build the SNN graph and cluster it in one call."""
        adata_graph, graph_stats, _ = self.build_snn_graph(
            adata,
            n_pcs=n_pcs,
            n_neighbors=n_neighbors,
            prune_snn=prune_snn,
            n_jobs=n_jobs,
        )
        adata_clustered, cluster_stats, step = self.find_clusters(
            adata_graph,
            resolutions=resolutions,
            method=method,
            random_state=random_state,
            active_resolution=active_resolution,
        )
        return adata_clustered, {"graph": graph_stats, **cluster_stats}, step

    def set_active_resolution(
        self, adata: anndata.AnnData, resolution: float
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Make a previously computed resolution the active clustering.

        Raises:
            ClusteringError: If the resolution was not computed
        """
        clustering = adata.uns.get("clustering")
        if not clustering:
            raise ClusteringError("No clustering found; run find_clusters first")
        key = resolution_key(float(resolution))
        if key not in adata.obs.columns:
            available = [float(r) for r in clustering["resolutions"]]
            raise ClusteringError(
                f"Resolution {resolution} was not computed; available: {available}"
            )

        adata_active = adata.copy()
        adata_active.obs[ACTIVE_CLUSTER_KEY] = adata_active.obs[key].copy()
        adata_active.uns["clustering"] = {
            **adata_active.uns["clustering"],
            "active_resolution": float(resolution),
            "active_key": key,
        }

        stats = {
            "active_key": key,
            "n_clusters": int(adata_active.obs[key].cat.categories.size),
        }
        step = AnalysisStep(
            operation="sccluster.set_active_resolution",
            tool_name="set_active_resolution",
            description="Switch the active cluster assignment",
            library="pandas",
            parameters={"resolution": float(resolution)},
        )
        record_step(adata_active, step)
        logger.info(f"Active clustering set to {key} ({stats['n_clusters']} clusters)")
        return adata_active, stats, step
