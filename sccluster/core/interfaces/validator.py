"""
Validation interface for snapshots entering a pipeline stage.

A stage checks the cell metadata it consumes before doing any work.
Errors stop the stage; warnings are logged and the stage continues.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import anndata

from sccluster.core.exceptions import SchemaValidationError


@dataclass
class ValidationResult:
    """
    Findings of one metadata check.

    Attributes:
        stage: Stage that requested the check (empty for ad hoc checks)
        errors: Problems that make the snapshot unusable for the stage
        warnings: Problems the stage can live with
        field_errors: Errors grouped by metadata field
        fields_checked: Declared fields found in the snapshot
        n_cells: Number of cells inspected
    """

    stage: str = ""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    field_errors: Dict[str, List[str]] = field(default_factory=dict)
    fields_checked: List[str] = field(default_factory=list)
    n_cells: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def add_error(self, message: str, field_name: Optional[str] = None) -> None:
        self.errors.append(message)
        if field_name is not None:
            self.field_errors.setdefault(field_name, []).append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def promote_warnings(self) -> None:
        """Turn every warning into an error (strict mode)."""
        self.errors.extend(self.warnings)
        self.warnings = []

    def summary(self) -> str:
        label = self.stage or "metadata check"
        if self.is_valid and not self.has_warnings:
            return f"{label}: {self.n_cells} cells passed"
        return (
            f"{label}: {len(self.errors)} error(s), {len(self.warnings)} warning(s) "
            f"over {self.n_cells} cells"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "field_errors": {k: list(v) for k, v in self.field_errors.items()},
            "fields_checked": list(self.fields_checked),
            "n_cells": self.n_cells,
            "is_valid": self.is_valid,
        }

    def raise_if_invalid(self) -> None:
        """
        Raises:
            SchemaValidationError: If any error was recorded
        """
        if self.is_valid:
            return
        raise SchemaValidationError(
            f"Cell metadata rejected by {self.stage or 'validation'}: "
            f"{'; '.join(self.errors)}",
            details={
                "errors": list(self.errors),
                "warnings": list(self.warnings),
                "field_errors": {k: list(v) for k, v in self.field_errors.items()},
                "stage": self.stage,
            },
        )


class IValidator(ABC):
    """Inspects a snapshot without modifying it."""

    @abstractmethod
    def validate(
        self,
        adata: anndata.AnnData,
        required: Optional[Sequence[str]] = None,
        strict: bool = False,
        stage: str = "",
    ) -> ValidationResult:
        """
        Check an AnnData snapshot.

        Args:
            adata: Snapshot to check
            required: Fields the calling stage reads
            strict: Treat warnings as errors
            stage: Calling stage, used in messages

        Returns:
            ValidationResult: Findings of the check
        """
        pass
