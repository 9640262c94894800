"""
Analysis services for the sccluster workflow.

One stateless service per stage:
- Normalization service for library-size normalization and log transform
- Feature selection service for variable gene detection
- Cell-cycle service for S/G2M scoring and phase assignment
- Regression service for covariate regression and scaling
- PCA service for dimensionality reduction
- Component selection service for choosing the number of PCs
- Clustering service for SNN graph construction and community detection
- Embedding service for t-SNE layouts
- Visualization service for plots and marker views
"""

from sccluster.tools.cell_cycle_service import CellCycleService
from sccluster.tools.clustering_service import ClusteringService
from sccluster.tools.component_selection_service import ComponentSelectionService
from sccluster.tools.embedding_service import EmbeddingService
from sccluster.tools.feature_selection_service import FeatureSelectionService
from sccluster.tools.normalization_service import NormalizationService
from sccluster.tools.pca_service import PCAService
from sccluster.tools.regression_service import RegressionService
from sccluster.tools.visualization_service import VisualizationService

__all__ = [
    "NormalizationService",
    "FeatureSelectionService",
    "CellCycleService",
    "RegressionService",
    "PCAService",
    "ComponentSelectionService",
    "ClusteringService",
    "EmbeddingService",
    "VisualizationService",
]
