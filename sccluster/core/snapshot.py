"""
Whole-object snapshot persistence in H5AD format.

A snapshot bundles the expression matrix, cell metadata, gene lists,
component selection, cluster assignments and provenance of one point in
the pipeline. Snapshots are written and read as a whole; there is no
partial update.
"""

import collections
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import anndata
import numpy as np
import pandas as pd

from sccluster.core.exceptions import SnapshotError
from sccluster.utils.logger import get_logger
from sccluster.version import __version__

logger = get_logger(__name__)

SNAPSHOT_INFO_KEY = "snapshot"
PRE_REGRESSION = "pre_regression"
FINAL = "final"


def sanitize_value(obj: Any) -> Any:
    """
    Convert a value into something the H5AD writer accepts.

    Returns None for values that cannot be stored (None, pandas NA); callers
    drop those entries.
    """
    if obj is None:
        return None
    if isinstance(obj, (dict, collections.OrderedDict)):
        return sanitize_dict(obj)
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (datetime, pd.Timestamp)):
        return obj.isoformat()
    if isinstance(obj, (tuple, set, frozenset)):
        obj = list(obj)
    if isinstance(obj, list):
        items = [sanitize_value(v) for v in obj]
        items = [v for v in items if v is not None]
        if not items:
            return np.array([], dtype=float)
        if all(isinstance(v, str) for v in items):
            return np.array(items, dtype=object)
        try:
            return np.asarray(items)
        except ValueError:
            return np.array([str(v) for v in items], dtype=object)
    if isinstance(obj, np.generic):
        return obj.item()
    if obj is pd.NA or obj is pd.NaT:
        return None
    return obj


def sanitize_dict(data: Dict[Any, Any]) -> Dict[str, Any]:
    """Recursively sanitize a mapping, dropping unstorable values."""
    clean: Dict[str, Any] = {}
    for key, value in data.items():
        key = str(key).replace("/", "__")
        value = sanitize_value(value)
        if value is None:
            logger.debug(f"Dropping unstorable uns entry '{key}'")
            continue
        clean[key] = value
    return clean


def snapshot_path(workspace: Union[str, Path], name: str) -> Path:
    """Location of a named checkpoint inside a workspace."""
    return Path(workspace) / f"{name}.h5ad"


def save_snapshot(
    adata: anndata.AnnData,
    path: Union[str, Path],
    name: Optional[str] = None,
    fingerprint: Optional[str] = None,
    compression: Optional[str] = "gzip",
) -> Path:
    """
    Write a snapshot to disk.

    The input object is not modified; a sanitized copy is written.

    Args:
        adata: Snapshot to persist
        path: Target .h5ad file
        name: Checkpoint name stored in the snapshot header
        fingerprint: Configuration fingerprint of the run that produced it
        compression: H5AD compression ("gzip", "lzf" or None)

    Returns:
        Path: The written file

    Raises:
        SnapshotError: If writing fails
    """
    path = Path(path)
    to_write = adata.copy()
    to_write.uns[SNAPSHOT_INFO_KEY] = {
        "name": name or path.stem,
        "fingerprint": fingerprint or "",
        "created_at": datetime.now().isoformat(),
        "sccluster_version": __version__,
        "n_cells": int(adata.n_obs),
        "n_genes": int(adata.n_vars),
    }
    to_write.uns = sanitize_dict(dict(to_write.uns))

    if not to_write.obs.index.name:
        to_write.obs.index.name = "cell_id"
    if not to_write.var.index.name:
        to_write.var.index.name = "gene_id"

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        to_write.write_h5ad(path, compression=compression)
    except Exception as e:
        if path.exists():
            path.unlink()
        raise SnapshotError(
            f"Failed to save snapshot {path}: {e}", details={"path": str(path)}
        ) from e

    logger.info(
        f"Saved snapshot '{name or path.stem}' ({adata.n_obs} cells x "
        f"{adata.n_vars} genes) to {path}"
    )
    return path


def load_snapshot(path: Union[str, Path]) -> anndata.AnnData:
    """
    Read a snapshot written by save_snapshot.

    Raises:
        SnapshotError: If the file is missing or unreadable
    """
    path = Path(path)
    if not path.exists():
        raise SnapshotError(f"Snapshot not found: {path}", details={"path": str(path)})
    try:
        adata = anndata.read_h5ad(path)
    except Exception as e:
        raise SnapshotError(
            f"Failed to read snapshot {path}: {e}", details={"path": str(path)}
        ) from e

    logger.info(f"Loaded snapshot {path} ({adata.n_obs} cells x {adata.n_vars} genes)")
    return adata


def snapshot_info(adata: anndata.AnnData) -> Dict[str, Any]:
    """Header written by save_snapshot, or an empty dict for unsaved objects."""
    return dict(adata.uns.get(SNAPSHOT_INFO_KEY, {}))
