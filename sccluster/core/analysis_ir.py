"""
Provenance records for pipeline operations.

Every service operation emits an AnalysisStep describing what was run and
with which parameters. Steps are appended to the snapshot they produced,
so a saved snapshot carries the full history of how it was derived.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List

import anndata
import numpy as np

from sccluster.core.exceptions import ProvenanceError
from sccluster.utils.logger import get_logger

logger = get_logger(__name__)

PROVENANCE_KEY = "provenance"


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, float) and not np.isfinite(value):
        return str(value)
    return value


@dataclass
class AnalysisStep:
    """
    Record of one executed analysis operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "scanpy.pp.normalize_total")
        tool_name: Service method that ran (e.g., "normalize")
        description: Human-readable description
        library: Main library doing the work (e.g., "scanpy", "sklearn")
        parameters: Actual parameter values used in this execution
        input_entities: Input data references
        output_entities: Output data references
        execution_context: Random seeds, timestamps, etc.

    Example:
        >>> step = AnalysisStep(
        ...     operation="scanpy.pp.normalize_total",
        ...     tool_name="normalize",
        ...     description="Library-size normalization followed by log1p",
        ...     library="scanpy",
        ...     parameters={"scale_factor": 1e4},
        ... )
    """

    operation: str
    tool_name: str
    description: str
    library: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    input_entities: List[str] = field(default_factory=lambda: ["adata"])
    output_entities: List[str] = field(default_factory=lambda: ["adata"])
    execution_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.execution_context.setdefault("timestamp", datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return _to_jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = ["operation", "tool_name", "description", "library"]
        missing = [name for name in required_fields if name not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def record_step(adata: anndata.AnnData, step: AnalysisStep) -> None:
    """Append a step to the provenance log stored in ``adata.uns``."""
    history = get_provenance(adata)
    history.append(step)
    adata.uns[PROVENANCE_KEY] = json.dumps([s.to_dict() for s in history])
    logger.debug(f"Recorded provenance step: {step.operation}")


def get_provenance(adata: anndata.AnnData) -> List[AnalysisStep]:
    """
    Read the provenance log of a snapshot.

    Raises:
        ProvenanceError: If the stored log cannot be parsed
    """
    raw = adata.uns.get(PROVENANCE_KEY)
    if raw is None:
        return []
    try:
        return [AnalysisStep.from_dict(item) for item in json.loads(str(raw))]
    except (ValueError, TypeError) as e:
        raise ProvenanceError(f"Unreadable provenance log: {e}") from e
