"""
structure.py - Community Partitions and Block-Sparse Networks
=============================================================

Provides the partition helpers and the builder that thins a partial
correlation matrix so that its within- and between-community edge
densities approach target retention probabilities (p_in, p_out).
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from loguru import logger

from .types import Probability


# =============================================================================
# PARTITIONS
# =============================================================================

def reindex_structure(labels: Sequence) -> np.ndarray:
    """
    Map arbitrary community labels onto dense integers 1..K.

    Labels are ordered by their sorted value, so an already dense 1..K
    partition is returned unchanged.

    Examples
    --------
    >>> reindex_structure([3, 3, 7, 7, 1])
    array([2, 2, 3, 3, 1])
    >>> reindex_structure(["b", "a", "b"])
    array([2, 1, 2])
    """
    labels = np.asarray(labels)
    if labels.ndim != 1 or labels.size == 0:
        raise ValueError(f"Structure must be a non-empty 1D sequence, got shape {labels.shape}")
    _, inverse = np.unique(labels, return_inverse=True)
    return inverse.reshape(-1).astype(int) + 1


def community_masks(structure: np.ndarray) -> List[np.ndarray]:
    """Boolean membership mask for each community 1..K."""
    structure = np.asarray(structure)
    return [structure == community for community in range(1, int(structure.max()) + 1)]


def assignment_matrix(structure: np.ndarray) -> np.ndarray:
    """Boolean (p, K) matrix with True at each variable's community."""
    structure = np.asarray(structure)
    K = int(structure.max())
    return structure[:, None] == np.arange(1, K + 1)[None, :]


def _broadcast(value: Probability, communities: int, name: str) -> np.ndarray:
    values = np.atleast_1d(np.asarray(value, dtype=float))
    if values.size == 1:
        return np.repeat(values, communities)
    if values.size != communities:
        raise ValueError(
            f"'{name}' must have length 1 or {communities} (communities), got {values.size}"
        )
    return values


# =============================================================================
# DENSITY
# =============================================================================

def compute_density(block: np.ndarray) -> float:
    """
    Proportion of non-zero edges in a block.

    Square blocks are treated as within-community blocks: the diagonal
    (stored as NaN) is excluded and each undirected edge counts once.
    Rectangular blocks count every entry.

    Parameters
    ----------
    block : ndarray
        Network block; NaN entries are ignored.

    Returns
    -------
    float
        Edge density in [0, 1].
    """
    rows, cols = block.shape
    edges = rows * cols
    zeros = np.sum(block == 0)

    if rows == cols:
        total_possible = (edges - cols) / 2
        if total_possible == 0:
            return 0.0
        return float((total_possible - zeros / 2) / total_possible)

    if edges == 0:
        return 0.0
    return float((edges - zeros) / edges)


# =============================================================================
# COMMUNITY STRUCTURE
# =============================================================================

def build_community_structure(
    P: np.ndarray,
    structure: np.ndarray,
    p_in: Probability,
    p_out: Probability,
) -> np.ndarray:
    """
    Thin a partial correlation matrix toward target edge densities.

    For each community, if its within block is denser than ``p_in`` the
    entries below the ``1 - p_in`` quantile of its absolute lower-triangle
    values are set to zero. Likewise, if the edges between the community
    and all other variables are denser than ``p_out``, entries below the
    ``1 - p_out`` quantile are zeroed on both symmetric sides. Blocks that
    are already sparse enough are left untouched.

    Parameters
    ----------
    P : ndarray (p, p)
        Empirical partial correlation matrix.
    structure : ndarray (p,)
        Community labels 1..K.
    p_in : float or sequence of float
        Within-community retention probability (scalar or one per community).
    p_out : float or sequence of float
        Between-community retention probability.

    Returns
    -------
    ndarray (p, p)
        Symmetric network with a zero diagonal.
    """
    structure = np.asarray(structure)
    masks = community_masks(structure)
    communities = len(masks)

    p_in = _broadcast(p_in, communities, "p_in")
    p_out = _broadcast(p_out, communities, "p_out")

    network = np.array(P, dtype=float, copy=True)
    np.fill_diagonal(network, np.nan)

    for i, members in enumerate(masks):
        inside = np.flatnonzero(members)
        outside = np.flatnonzero(~members)

        # Within-community block
        block = network[np.ix_(inside, inside)]
        if block.shape[0] > 1 and compute_density(block) > p_in[i]:
            lower = np.abs(block[np.tril_indices(block.shape[0], k=-1)])
            threshold = np.nanquantile(lower, 1 - p_in[i])
            block[np.abs(block) < threshold] = 0.0
            network[np.ix_(inside, inside)] = block

        # Edges to every other variable
        if outside.size == 0:
            continue

        block = network[np.ix_(inside, outside)]
        if compute_density(block) > p_out[i]:
            threshold = np.nanquantile(np.abs(block), 1 - p_out[i])
            block[np.abs(block) < threshold] = 0.0
            network[np.ix_(inside, outside)] = block

            other_side = network[np.ix_(outside, inside)]
            other_side[np.abs(other_side) < threshold] = 0.0
            network[np.ix_(outside, inside)] = other_side

    np.fill_diagonal(network, 0.0)

    logger.debug(
        f"Community structure built: {communities} communities, "
        f"{int(np.count_nonzero(np.triu(network, 1)))} edges retained"
    )
    return network
