"""
Pipeline configuration with Pydantic validation.

One model per stage, nested in PipelineConfig. A run's configuration is
saved next to its checkpoints so a later run can tell which checkpoints
are still valid (via stage fingerprints).

Storage Location: <workspace>/pipeline_config.json

Example:
    >>> from sccluster.config.pipeline_config import PipelineConfig
    >>> config = PipelineConfig()
    >>> config.clustering.resolutions = [0.4, 0.8, 1.2]
    >>> config.clustering.active_resolution = 0.8
    >>> config.save(Path("run.json"))
    >>> PipelineConfig.load(Path("run.json")).clustering.resolutions
    [0.4, 0.8, 1.2]
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from sccluster.core.exceptions import ConfigurationError
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

CONFIG_FILE_NAME = "pipeline_config.json"

STAGE_ORDER = [
    "normalization",
    "feature_selection",
    "cell_cycle",
    "regression",
    "pca",
    "component_selection",
    "clustering",
    "embedding",
]

# Stages whose output is contained in the pre-regression checkpoint
PRE_REGRESSION_STAGES = STAGE_ORDER[:3]


class NormalizationConfig(BaseModel):
    scale_factor: float = Field(
        1e4, gt=0, description="Target total per cell before log1p"
    )
    mito_prefix: str = Field(
        "MT-", description="Gene identifier prefix of mitochondrial genes"
    )


class FeatureSelectionConfig(BaseModel):
    n_bins: int = Field(20, ge=1, description="Number of mean-expression bins")
    bin_method: str = Field(
        "equal_frequency", description="equal_frequency | equal_width"
    )
    min_mean: float = Field(0.0125, description="Lower mean cutoff (exclusive)")
    max_mean: float = Field(3.0, description="Upper mean cutoff (exclusive)")
    min_disp: float = Field(0.5, description="Lower normalized dispersion cutoff")
    max_disp: Optional[float] = Field(
        None, description="Upper normalized dispersion cutoff (None = unbounded)"
    )
    n_top_genes: Optional[int] = Field(
        None, ge=1, description="Keep at most this many genes after cutoffs"
    )
    expected_min: int = Field(500, ge=0)
    expected_max: int = Field(4000, ge=0)

    @field_validator("bin_method")
    @classmethod
    def validate_bin_method(cls, v):
        """Validate binning method."""
        if v not in ["equal_frequency", "equal_width"]:
            raise ValueError(
                f"Invalid bin_method: '{v}'. Must be one of: equal_frequency, equal_width"
            )
        return v

    @model_validator(mode="after")
    def check_ranges(self):
        if self.min_mean >= self.max_mean:
            raise ValueError("min_mean must be smaller than max_mean")
        if self.max_disp is not None and self.min_disp >= self.max_disp:
            raise ValueError("min_disp must be smaller than max_disp")
        if self.expected_min > self.expected_max:
            raise ValueError("expected_min must not exceed expected_max")
        return self


class CellCycleConfig(BaseModel):
    reference_path: Optional[str] = Field(
        None, description="Table mapping genes to S or G2/M phase"
    )
    baseline: float = Field(
        0.0, description="Cells with both scores below this are called G1"
    )
    n_bins: int = Field(25, ge=1, description="Expression bins for control genes")
    ctrl_size: Optional[int] = Field(
        None, ge=1, description="Control genes per bin (None = smaller set size)"
    )
    random_state: int = 0


class RegressionConfig(BaseModel):
    covariates: List[str] = Field(
        default_factory=lambda: ["n_counts", "mito_ratio", "s_score", "g2m_score"],
        description="Continuous metadata fields to regress out",
    )
    max_value: Optional[float] = Field(
        10.0, gt=0, description="Clip scaled values to [-max_value, max_value]"
    )
    chunk_size: int = Field(1000, ge=1, description="Genes per regression block")


class PCAConfig(BaseModel):
    n_comps: int = Field(50, ge=1)
    svd_solver: str = Field("auto", description="auto | full | arpack | randomized")
    random_state: int = 0

    @field_validator("svd_solver")
    @classmethod
    def validate_solver(cls, v):
        """Validate SVD solver name."""
        valid = ["auto", "full", "arpack", "randomized"]
        if v not in valid:
            raise ValueError(f"Invalid svd_solver: '{v}'. Must be one of: {', '.join(valid)}")
        return v


class ComponentSelectionConfig(BaseModel):
    cumulative_threshold: float = Field(90.0, gt=0, le=100)
    pct_threshold: float = Field(5.0, gt=0, le=100)
    delta_threshold: float = Field(0.1, ge=0)
    fallback_n_pcs: Optional[int] = Field(
        None, ge=1, description="Used when neither elbow metric is defined"
    )
    n_pcs_override: Optional[int] = Field(
        None, ge=1, description="Skip the metrics and use this many components"
    )


class ClusteringConfig(BaseModel):
    n_neighbors: int = Field(20, ge=2)
    prune_snn: float = Field(1 / 15, ge=0, lt=1)
    resolutions: List[float] = Field(
        default_factory=lambda: [0.4, 0.6, 0.8, 1.0, 1.4]
    )
    active_resolution: float = 0.8
    method: str = Field("louvain", description="louvain | leiden")
    random_state: int = 0

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        """Validate community detection method."""
        if v not in ["louvain", "leiden"]:
            raise ValueError(f"Invalid method: '{v}'. Must be one of: louvain, leiden")
        return v

    @field_validator("resolutions")
    @classmethod
    def validate_resolutions(cls, v):
        """Validate resolutions are positive and unique."""
        if not v:
            raise ValueError("At least one resolution is required")
        if any(r <= 0 for r in v):
            raise ValueError(f"Resolutions must be positive, got {v}")
        if len(set(v)) != len(v):
            raise ValueError(f"Resolutions must be unique, got {v}")
        return sorted(v)

    @model_validator(mode="after")
    def check_active_resolution(self):
        if self.active_resolution not in self.resolutions:
            raise ValueError(
                f"active_resolution {self.active_resolution} is not one of "
                f"the configured resolutions {self.resolutions}"
            )
        return self


class EmbeddingConfig(BaseModel):
    enabled: bool = True
    perplexity: float = Field(30.0, gt=0)
    random_state: int = 0


class PipelineConfig(BaseModel):
    """Complete configuration of a clustering run."""

    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    feature_selection: FeatureSelectionConfig = Field(
        default_factory=FeatureSelectionConfig
    )
    cell_cycle: CellCycleConfig = Field(default_factory=CellCycleConfig)
    regression: RegressionConfig = Field(default_factory=RegressionConfig)
    pca: PCAConfig = Field(default_factory=PCAConfig)
    component_selection: ComponentSelectionConfig = Field(
        default_factory=ComponentSelectionConfig
    )
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    @classmethod
    def seeded(cls, random_state: int) -> "PipelineConfig":
        """Default configuration with every stochastic stage seeded alike."""
        config = cls()
        for stage in (config.cell_cycle, config.pca, config.clustering, config.embedding):
            stage.random_state = int(random_state)
        return config

    def fingerprint(
        self, stages: Optional[Sequence[str]] = None, extra: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Hash the configuration of the given stages.

        Two runs whose fingerprints match for a set of stages produce the
        same output for those stages (given the same inputs, passed via
        ``extra``).

        Args:
            stages: Stage names (default: all stages)
            extra: Additional values to include (e.g., input file paths)

        Returns:
            str: Hex sha256 digest
        """
        stages = list(stages or STAGE_ORDER)
        unknown = [s for s in stages if s not in STAGE_ORDER]
        if unknown:
            raise ValueError(f"Unknown stages: {unknown}")

        dumped = self.model_dump(mode="json")
        subset: Dict[str, Any] = {stage: dumped[stage] for stage in stages}
        if extra:
            subset["_extra"] = extra
        payload = json.dumps(subset, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def save(self, path: Path) -> None:
        """
        Save configuration as indented JSON.

        Args:
            path: File path, or a directory (CONFIG_FILE_NAME is appended)
        """
        path = Path(path)
        if path.is_dir():
            path = path / CONFIG_FILE_NAME
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))
        logger.info(f"Saved pipeline config to {path}")

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        """
        Load configuration from JSON.

        Raises:
            ConfigurationError: If the file is missing, not JSON, or fails validation
        """
        path = Path(path)
        if path.is_dir():
            path = path / CONFIG_FILE_NAME
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}", details={"path": str(path)}
            )

        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Configuration file {path} is not valid JSON: {e}",
                details={"path": str(path)},
            ) from e

        try:
            config = cls(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid pipeline configuration in {path}: {e}",
                details={"path": str(path), "errors": e.errors()},
            ) from e

        logger.info(f"Loaded pipeline config from {path}")
        return config
