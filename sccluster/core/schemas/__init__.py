"""
Metadata schemas for sccluster snapshots.
"""

from sccluster.core.schemas.cell_metadata import (
    CELL_METADATA_FIELDS,
    CellMetadataRecord,
    CellMetadataValidator,
    ensure_cell_metadata,
    get_cell_record,
)

__all__ = [
    "CELL_METADATA_FIELDS",
    "CellMetadataRecord",
    "CellMetadataValidator",
    "ensure_cell_metadata",
    "get_cell_record",
]
