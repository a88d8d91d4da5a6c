"""
io.py - Result Serialization and Deserialization

This module handles saving and loading fitted EGMResult objects.
Supported formats:
- NPZ: NumPy archive; matrices as arrays, records as an embedded JSON string
- JSON: Human-readable, everything as nested lists and objects

Both formats round-trip the partition, network and metadata, the empirical
correlations, the standard and optimized solutions (loadings, community
correlations, implied matrices, scores, fit records) and the search
selection.

Example Usage:
-------------
    >>> from egm_lab.io import save_result, load_result, ResultFormat
    >>>
    >>> save_result(result, "egm.npz")
    >>> save_result(result, "egm.json", format=ResultFormat.JSON)
    >>> loaded = load_result("egm.npz")
"""

from __future__ import annotations

import json
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
from loguru import logger

from .types import (
    EGMResult,
    FitRecord,
    LoadingSolution,
    NetworkMetadata,
    SearchSelection,
)

SOLUTION_ARRAYS = ("loadings", "correlations", "implied_R", "implied_P", "scores")


class ResultFormat(str, Enum):
    """Supported result file formats."""
    NPZ = "npz"
    JSON = "json"


def save_result(
    result: EGMResult,
    path: Union[str, Path],
    format: ResultFormat = ResultFormat.NPZ
) -> None:
    """
    Save a fitted model to disk.

    Parameters
    ----------
    result : EGMResult
        The fitted model to save.
    path : str or Path
        Destination file path.
    format : ResultFormat, default=ResultFormat.NPZ
        Output format.

    Examples
    --------
    >>> save_result(result, "egm.npz")
    >>> save_result(result, "egm.json", format=ResultFormat.JSON)
    """
    path = Path(path)
    format = ResultFormat(format)

    if format == ResultFormat.NPZ:
        _save_npz(result, path)
    elif format == ResultFormat.JSON:
        _save_json(result, path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.debug(f"Saved EGM result to {path} ({format.value})")


def load_result(path: Union[str, Path]) -> EGMResult:
    """
    Load a fitted model from disk.

    Parameters
    ----------
    path : str or Path
        Source file path. Format is inferred from extension.

    Returns
    -------
    EGMResult

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file format is not recognized.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Result file not found: {path}")

    if path.suffix == ".npz":
        return _load_npz(path)
    elif path.suffix == ".json":
        return _load_json(path)
    else:
        raise ValueError(f"Unknown result format: {path.suffix}")


# =============================================================================
# RECORDS
# =============================================================================

def _records(result: EGMResult) -> Dict[str, Any]:
    """Scalar and metadata part of a result (JSON-serializable)."""
    metadata = asdict(result.metadata)
    for name in ("p_in", "p_out"):
        if metadata[name] is not None and not np.isscalar(metadata[name]):
            metadata[name] = [float(v) for v in metadata[name]]

    return {
        "n": int(result.n),
        "variable_names": list(result.variable_names),
        "tefi": float(result.tefi),
        "metadata": metadata,
        "standard_fit": result.standard.fit.to_dict(),
        "optimized_fit": result.optimized.fit.to_dict(),
        "search": None if result.search is None else asdict(result.search),
    }


def _metadata(values: Dict[str, Any]) -> NetworkMetadata:
    values = dict(values)
    for name in ("p_in", "p_out"):
        if isinstance(values.get(name), list):
            values[name] = tuple(values[name])
    return NetworkMetadata(**values)


def _build_result(records: Dict[str, Any], arrays: Dict[str, Optional[np.ndarray]]) -> EGMResult:
    def solution(prefix: str) -> LoadingSolution:
        return LoadingSolution(
            loadings=arrays[f"{prefix}_loadings"],
            correlations=arrays[f"{prefix}_correlations"],
            fit=FitRecord.from_dict(records[f"{prefix}_fit"]),
            implied_R=arrays[f"{prefix}_implied_R"],
            implied_P=arrays[f"{prefix}_implied_P"],
            scores=arrays.get(f"{prefix}_scores"),
        )

    search = records.get("search")
    return EGMResult(
        network=arrays["network"],
        metadata=_metadata(records["metadata"]),
        structure=np.asarray(arrays["structure"], dtype=int),
        correlation=arrays["correlation"],
        n=int(records["n"]),
        variable_names=tuple(records["variable_names"]),
        tefi=float(records["tefi"]),
        standard=solution("standard"),
        optimized=solution("optimized"),
        search=None if search is None else SearchSelection(**search),
    )


def _arrays(result: EGMResult) -> Dict[str, np.ndarray]:
    arrays = {
        "network": result.network,
        "structure": result.structure,
        "correlation": result.correlation,
    }
    for prefix, solution in (("standard", result.standard), ("optimized", result.optimized)):
        for name in SOLUTION_ARRAYS:
            value = getattr(solution, name)
            if value is not None:
                arrays[f"{prefix}_{name}"] = np.asarray(value)
    return arrays


# =============================================================================
# FORMATS
# =============================================================================

def _save_npz(result: EGMResult, path: Path) -> None:
    """Save result to NPZ format."""
    np.savez(path, records=np.array(json.dumps(_records(result))), **_arrays(result))


def _load_npz(path: Path) -> EGMResult:
    """Load result from NPZ format."""
    with np.load(path) as data:
        records = json.loads(str(data["records"]))
        arrays = {key: data[key] for key in data.files if key != "records"}
    return _build_result(records, arrays)


def _save_json(result: EGMResult, path: Path) -> None:
    """Save result to JSON format."""
    data = _records(result)
    data["arrays"] = {key: value.tolist() for key, value in _arrays(result).items()}

    with open(path, 'w') as f:
        json.dump(data, f, indent=2)


def _load_json(path: Path) -> EGMResult:
    """Load result from JSON format."""
    with open(path, 'r') as f:
        data = json.load(f)

    arrays = {key: np.array(value, dtype=float) for key, value in data.pop("arrays").items()}
    return _build_result(data, arrays)
