# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy.sparse import issparse
from scipy.stats import median_abs_deviation, norm
from sklearn.neighbors import NearestNeighbors

from .exceptions import InvalidInputError, InsufficientDataError

logger = logging.getLogger("dbldensitypy")

EPS = 1e-8
DEFAULT_MIN_SIM = 10000
DEFAULT_N_NEIGHBORS = 50
# largest log score whose exp() is still a finite float64
_MAX_LOG_SCORE = float(np.log(np.finfo(np.float64).max)) - 1.0


def _to_dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.asarray(X)


def _get_counts(adata: AnnData, var_names: pd.Index, layer: str | None = None):
    """
    Returns the counts of ``var_names`` genes (in that order) as a [cells, genes] matrix,
    sparse matrices are kept sparse (csr).
    """
    if len(var_names) == 0:
        raise InvalidInputError("Feature subset is empty.")

    missing = ~pd.Index(var_names).isin(adata.var_names)
    if missing.any():
        raise InvalidInputError(
            f"{missing.sum()} out of {len(var_names)} genes of the feature subset "
            f"are missing in adata.var_names (e.g. '{pd.Index(var_names)[missing][0]}')."
        )

    if layer is not None:
        assert layer in adata.layers, f"Layer `{layer}` not found in adata.layers"

    X = adata[:, var_names].X if layer is None else adata[:, var_names].layers[layer]
    return X.tocsr() if issparse(X) else np.asarray(X)


def _check_counts(X) -> None:
    values = X.data if issparse(X) else np.asarray(X)
    if values.size == 0:
        return
    if not np.all(np.isfinite(values)):
        raise InvalidInputError("Expression matrix contains NaN or infinite values.")
    if values.min() < 0:
        raise InvalidInputError("Expression matrix contains negative values.")
    if not np.all(np.equal(np.mod(values, 1), 0)):
        warnings.warn(
            "Expression matrix contains non-integer values. "
            "Doublets are simulated by summing raw counts, "
            "log-transformed or scaled values give meaningless doublet profiles."
        )


def _normalize_log1p(X, target_sum: float):
    """
    Library size normalization of each cell to ``target_sum`` followed by log1p.
    Cells with zero total counts are left as zeros, sparse matrices stay sparse.
    """
    adata = AnnData(
        X=X.astype(np.float64),
        obs=pd.DataFrame(index=[str(i) for i in range(X.shape[0])]),
        var=pd.DataFrame(index=[str(j) for j in range(X.shape[1])]),
    )
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    return adata.X


def _draw_pairs(
    n_cells: int,
    n_sim: int,
    rng: np.random.Generator,
    allow_self_pairs: bool = False,
    clusters: np.ndarray | None = None,
) -> np.ndarray:
    if n_cells < 2:
        raise InvalidInputError(
            f"At least 2 cells are needed to simulate doublets, got {n_cells}."
        )
    if n_sim < 1:
        raise InvalidInputError(
            f"Number of simulated doublets must be positive, got {n_sim}."
        )

    # [S]
    first = rng.integers(0, n_cells, size=n_sim)

    if clusters is not None:
        codes = pd.Categorical(np.asarray(clusters)).codes
        assert codes.shape[0] == n_cells, "clusters must have one label per cell"
        if np.unique(codes).size < 2:
            raise InvalidInputError(
                "Cross-cluster doublets need at least 2 distinct cluster labels."
            )
        second = np.empty(n_sim, dtype=np.int64)
        for code in np.unique(codes[first]):
            # second parent is uniform over the cells of all other clusters
            outside = np.flatnonzero(codes != code)
            where = np.flatnonzero(codes[first] == code)
            second[where] = outside[rng.integers(0, outside.size, size=where.size)]
    elif allow_self_pairs:
        second = rng.integers(0, n_cells, size=n_sim)
    else:
        # uniform over the other n_cells - 1 cells
        second = rng.integers(0, n_cells - 1, size=n_sim)
        second[second >= first] += 1

    # [S, 2]
    return np.stack([first, second], axis=1)


def _sum_pairs(X, pairs: np.ndarray):
    # [S, genes] = [S, genes] + [S, genes]
    return X[pairs[:, 0]] + X[pairs[:, 1]]


def _kth_neighbor_distance(
    reference: np.ndarray,
    query: np.ndarray | None,
    n_neighbors: int,
    n_jobs: int | None = None,
) -> np.ndarray:
    """
    Distance from every query point to its ``n_neighbors``-th nearest point of ``reference``.
    If ``query`` is None, reference points are queried against the others
    (each point is excluded from its own neighbors by index, not by distance).
    """
    nn = NearestNeighbors(
        n_neighbors=n_neighbors, algorithm="brute", n_jobs=n_jobs
    ).fit(reference)
    if query is None:
        dist, _ = nn.kneighbors(n_neighbors=n_neighbors)
    else:
        dist, _ = nn.kneighbors(query, n_neighbors=n_neighbors)

    # [N]
    return dist[:, -1]


def _log_density_ratio(
    r_real: np.ndarray,
    r_sim: np.ndarray,
    n_dims: int,
    n_real_ref: int,
    n_sim_ref: int,
    eps: float = EPS,
) -> np.ndarray:
    # density = d / r^k / n_ref for both neighbor sets, d cancels out
    r_real = np.maximum(r_real, eps)
    r_sim = np.maximum(r_sim, eps)

    log_score = (
        n_dims * (np.log(r_real) - np.log(r_sim))
        + np.log(n_real_ref)
        - np.log(n_sim_ref)
    )
    return np.exp(np.minimum(log_score, _MAX_LOG_SCORE))


def _density_scores(
    X_real: np.ndarray,
    X_sim: np.ndarray,
    n_neighbors: int,
    n_jobs: int | None = None,
    eps: float = EPS,
) -> np.ndarray:
    # [N, k], [S, k]
    X_real = np.asarray(X_real, dtype=np.float64)
    X_sim = np.asarray(X_sim, dtype=np.float64)

    if X_real.ndim != 2 or X_sim.ndim != 2 or X_real.shape[1] != X_sim.shape[1]:
        raise InvalidInputError(
            "Real and simulated embeddings must be 2D with the same number of dimensions, "
            f"got {X_real.shape} and {X_sim.shape}."
        )

    N, k = X_real.shape
    S = X_sim.shape[0]

    if n_neighbors < 1:
        raise InvalidInputError(f"n_neighbors must be positive, got {n_neighbors}.")
    if n_neighbors >= N:
        raise InvalidInputError(
            f"n_neighbors ({n_neighbors}) must be smaller than the number of cells ({N})."
        )
    if n_neighbors >= S:
        raise InvalidInputError(
            f"n_neighbors ({n_neighbors}) must be smaller than "
            f"the number of simulated doublets ({S})."
        )

    r_real = _kth_neighbor_distance(X_real, None, n_neighbors, n_jobs=n_jobs)
    r_sim = _kth_neighbor_distance(X_sim, X_real, n_neighbors, n_jobs=n_jobs)

    return _log_density_ratio(r_real, r_sim, k, N - 1, S, eps=eps)


def _mad_threshold(
    scores: np.ndarray,
    nmads: float = 3.0,
    min_cells: int = 10,
) -> tuple[np.ndarray, np.ndarray, dict]:
    """
    One-sided upper outlier calling on log scores:
    doublet if log(score) > median + nmads * MAD.
    """
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size < max(min_cells, 1):
        raise InsufficientDataError(
            f"{scores.size} cells found, at least {min_cells} are needed "
            "to estimate the MAD of doublet scores."
        )

    log_scores = np.log(np.maximum(scores, np.finfo(np.float64).tiny))
    median = float(np.median(log_scores))
    # scaled to be consistent with the normal standard deviation
    mad = float(median_abs_deviation(log_scores, scale="normal"))
    threshold = median + nmads * mad

    if mad > 0:
        pvalues = norm.sf(log_scores, loc=median, scale=mad)
    else:
        logger.warning(
            "MAD of log doublet scores is zero, cells above the median are called doublets"
        )
        pvalues = np.full(scores.size, np.nan)

    stats = {"median": median, "mad": mad, "threshold": threshold}
    return log_scores > threshold, pvalues, stats


def _sample_groups(obs: pd.DataFrame, sample_key: str | None) -> list:
    if sample_key is None:
        return [("all", np.arange(obs.shape[0]))]

    assert sample_key in obs, f"Column `{sample_key}` not found in adata.obs"
    if obs[sample_key].isna().any():
        raise InvalidInputError(f"adata.obs['{sample_key}'] contains missing values.")

    samples = pd.Categorical(obs[sample_key])
    return [
        (sample, np.flatnonzero(samples.codes == i))
        for i, sample in enumerate(samples.categories)
        if (samples.codes == i).any()
    ]


def _spawn_rngs(seed: int, n: int) -> list[np.random.Generator]:
    # independent sub-streams, so a sample's draws don't depend on the others
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(n)]
