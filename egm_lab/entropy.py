"""
entropy.py - Von Neumann Entropy Fit Index (TEFI)
=================================================

Scores how well a partition compresses a correlation structure using the
von Neumann entropy of density matrices (correlation matrices rescaled to
unit trace). Lower values indicate better fit.

Reference: Golino, H., Moulder, R. G., Shi, D., et al. (2020). Entropy fit
indices: New fit measures for assessing the structure and dimensionality
of multiple latent variables. Multivariate Behavioral Research.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import scipy.linalg

from .correlation import correlate
from .structure import community_masks, reindex_structure
from .types import EntropyFit


def entropy_of_eigenvalues(values: np.ndarray) -> float:
    """
    -sum(v * log(v)) over strictly positive values.

    Zero and negative eigenvalues contribute nothing (0 * log 0 := 0).
    """
    values = np.asarray(values, dtype=float)
    positive = values[values > 0]
    return float(-np.sum(positive * np.log(positive)))


def density_eigenvalues(matrix: np.ndarray) -> np.ndarray:
    """Eigenvalues of |matrix| divided by its number of columns."""
    density = np.abs(matrix) / matrix.shape[1]
    return scipy.linalg.eigvalsh(density)


def vn_entropy(matrix: np.ndarray) -> float:
    """Von Neumann entropy of a correlation matrix rescaled to unit trace."""
    return entropy_of_eigenvalues(density_eigenvalues(matrix))


def tefi(data: np.ndarray, structure: Sequence) -> EntropyFit:
    """
    Entropy fit index of a partition.

    Parameters
    ----------
    data : ndarray
        Correlation matrix (p, p) or raw data (n, p). Raw data are
        correlated first.
    structure : sequence
        Community label of each variable.

    Returns
    -------
    EntropyFit
        ``vn_entropy_fit = (mean(H_f) - H_joint) - ((H - mean(H_f)) - mean(H_f) * sqrt(K))``
        together with the total correlation and the average entropy.

    Notes
    -----
    H is the entropy of the whole matrix, H_f the entropy of each
    community block (rescaled by its own size) and H_joint the entropy of
    the Kronecker product of the community eigenvalue spectra.
    """
    data = np.asarray(data, dtype=float)
    if data.shape[0] != data.shape[1]:
        data, _ = correlate(data)

    structure = reindex_structure(structure)
    if structure.size != data.shape[0]:
        raise ValueError(
            f"Structure length ({structure.size}) does not match the number "
            f"of variables ({data.shape[0]})"
        )

    masks = community_masks(structure)
    communities = len(masks)

    h_total = vn_entropy(data)

    spectra = [density_eigenvalues(data[np.ix_(mask, mask)]) for mask in masks]
    h_communities = np.array([entropy_of_eigenvalues(values) for values in spectra])

    joint = spectra[0]
    for values in spectra[1:]:
        joint = np.kron(joint, values)
    h_joint = entropy_of_eigenvalues(joint)

    mean_h = float(np.mean(h_communities))
    h_difference = h_total - mean_h

    return EntropyFit(
        vn_entropy_fit=(mean_h - h_joint) - (h_difference - mean_h * np.sqrt(communities)),
        total_correlation=float(np.sum(h_communities) - h_joint),
        average_entropy=mean_h - h_joint,
    )
