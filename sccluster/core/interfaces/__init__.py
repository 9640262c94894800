"""Interface definitions shared by sccluster components."""

from sccluster.core.interfaces.validator import ValidationResult

__all__ = ["ValidationResult"]
