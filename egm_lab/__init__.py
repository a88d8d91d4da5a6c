"""
egm_lab - Exploratory Graph Models in Python
"""

__version__ = "1.0.0"

# =============================================================================
# CORE TYPES
# =============================================================================
from .types import (
    Criterion,
    ModelKind,
    EGMConfig,
    EntropyFit,
    FitRecord,
    KnownGraphResult,
    LoadingOptimizationResult,
    RegularizationPath,
    PreparedData,
    NetworkMetadata,
    LoadingSolution,
    SearchSelection,
    EGMResult,
    PointOutcome,
)

# =============================================================================
# MATRICES AND STRUCTURE
# =============================================================================
from .correlation import (
    MissingSampleSizeError,
    correlate,
    cor2pcor,
    cov2cor,
    implied_correlation,
    implied_partial,
)
from .structure import (
    build_community_structure,
    compute_density,
    reindex_structure,
)
from .covariance_selection import known_graph

# =============================================================================
# FIT
# =============================================================================
from .entropy import tefi, vn_entropy
from .fit import compute_fit, rmsea_ci

# =============================================================================
# NETWORKS AND OPTIMIZATION
# =============================================================================
from .network import (
    Services,
    GraphicalLassoPath,
    regularization_path,
    ebic_select,
    detect_communities,
    network_loadings,
)
from .optimization import LoadingOptimizer, LoadingOptimizationError

# =============================================================================
# MODELS AND SEARCH
# =============================================================================
from .search import sparsity_grid, select_best, grid_search, path_search
from .model import EGM

# =============================================================================
# I/O
# =============================================================================
from .io import (
    save_result,
    load_result,
    ResultFormat,
)

# PUBLIC API
# =============================================================================
__all__ = [
    "__version__",
    "Criterion",
    "ModelKind",
    "EGMConfig",
    "EntropyFit",
    "FitRecord",
    "KnownGraphResult",
    "LoadingOptimizationResult",
    "RegularizationPath",
    "PreparedData",
    "NetworkMetadata",
    "LoadingSolution",
    "SearchSelection",
    "EGMResult",
    "PointOutcome",
    "MissingSampleSizeError",
    "correlate",
    "cor2pcor",
    "cov2cor",
    "implied_correlation",
    "implied_partial",
    "build_community_structure",
    "compute_density",
    "reindex_structure",
    "known_graph",
    "tefi",
    "vn_entropy",
    "compute_fit",
    "rmsea_ci",
    "Services",
    "GraphicalLassoPath",
    "regularization_path",
    "ebic_select",
    "detect_communities",
    "network_loadings",
    "LoadingOptimizer",
    "LoadingOptimizationError",
    "sparsity_grid",
    "select_best",
    "grid_search",
    "path_search",
    "EGM",
    "save_result",
    "load_result",
    "ResultFormat",
]
