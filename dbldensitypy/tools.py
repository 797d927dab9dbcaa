# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData

from ._utils import (
    DEFAULT_MIN_SIM,
    DEFAULT_N_NEIGHBORS,
    EPS,
    _check_counts,
    _density_scores,
    _draw_pairs,
    _get_counts,
    _mad_threshold,
    _sample_groups,
    _spawn_rngs,
    _sum_pairs,
)
from .exceptions import InsufficientDataError, InvalidInputError
from .preprocessing import EmbeddingProjector


logger = logging.getLogger("dbldensitypy")


def simulate_doublets(
    adata: AnnData,
    var_names: Sequence[str] | None = None,
    n_sim: int | None = None,
    seed: int = 0,
    allow_self_pairs: bool = False,
    clusters_key: str | None = None,
    layer: str | None = None,
) -> AnnData:
    """Simulates doublets by summing the raw counts of random pairs of cells.
    Counts are summed without downscaling.

    :param adata: AnnData object with raw counts
    :type adata: AnnData
    :param var_names: genes (feature subset) to keep in simulated profiles. If None, all genes are used, defaults to None
    :type var_names: Sequence[str] | None, optional
    :param n_sim: number of doublets to simulate. If None, ``max(10000, n_cells)``, defaults to None
    :type n_sim: int | None, optional
    :param seed: random seed, defaults to 0
    :type seed: int, optional
    :param allow_self_pairs: if to allow a cell to be paired with itself, defaults to False
    :type allow_self_pairs: bool, optional
    :param clusters_key: if set, only cells with different ``adata.obs[clusters_key]`` labels are paired, defaults to None
    :type clusters_key: str | None, optional
    :param layer: use ``adata.layers[layer]`` instead of ``adata.X``, defaults to None
    :type layer: str | None, optional
    :return: AnnData object of simulated profiles with parents' names in ``.obs["parent_1"]`` and ``.obs["parent_2"]``
    :rtype: AnnData
    """
    var_names = adata.var_names if var_names is None else pd.Index(var_names)

    X = _get_counts(adata, var_names, layer)
    _check_counts(X)

    if clusters_key is not None:
        assert clusters_key in adata.obs, f"Column `{clusters_key}` not found in adata.obs"
        clusters = adata.obs[clusters_key].to_numpy()
    else:
        clusters = None

    n_sim = max(DEFAULT_MIN_SIM, adata.n_obs) if n_sim is None else int(n_sim)
    X_sim, pairs = _simulate(
        X, n_sim, np.random.default_rng(seed), allow_self_pairs, clusters
    )

    obs = pd.DataFrame(
        {
            "parent_1": adata.obs_names[pairs[:, 0]],
            "parent_2": adata.obs_names[pairs[:, 1]],
        },
        index=[f"sim_{i}" for i in range(n_sim)],
    )
    return AnnData(X=X_sim, obs=obs, var=pd.DataFrame(index=var_names))


def _simulate(X, n_sim, rng, allow_self_pairs, clusters):
    pairs = _draw_pairs(
        X.shape[0],
        n_sim,
        rng,
        allow_self_pairs=allow_self_pairs,
        clusters=clusters,
    )
    return _sum_pairs(X, pairs), pairs


def _resolve_embedding(
    adata: AnnData,
    projector: EmbeddingProjector,
    embedding: np.ndarray | str | None,
    X,
) -> np.ndarray:
    if embedding is None:
        return projector.transform(X)

    if isinstance(embedding, str):
        assert (
            embedding in adata.obsm
        ), f"Embedding `{embedding}` not found in adata.obsm"
        embedding = adata.obsm[embedding]

    embedding = np.asarray(embedding, dtype=np.float64)
    if embedding.ndim != 2 or embedding.shape[0] != adata.n_obs:
        raise InvalidInputError(
            f"Embedding must have shape [{adata.n_obs}, n_comps], got {embedding.shape}."
        )
    if embedding.shape[1] != projector.n_comps:
        raise InvalidInputError(
            f"Embedding has {embedding.shape[1]} dimensions while the projector "
            f"maps to {projector.n_comps}. Both must come from the same projection."
        )
    return embedding


def doublet_density(
    adata: AnnData,
    projector: EmbeddingProjector,
    embedding: np.ndarray | str | None = None,
    n_sim: int | None = None,
    n_neighbors: int | None = None,
    dims: int | None = None,
    sample_key: str | None = None,
    clusters_key: str | None = None,
    allow_self_pairs: bool = False,
    seed: int = 0,
    layer: str | None = None,
    n_jobs: int | None = None,
    eps: float = EPS,
    key_added: str = "doublet_score",
    copy: bool = False,
) -> AnnData | None:
    """Scores every cell by the density of simulated doublets
    relative to the density of real cells in its embedding neighborhood.

    For a cell with distance ``r_sim`` to its ``d``-th nearest simulated doublet
    and ``r_real`` to its ``d``-th nearest other real cell in a ``k``-dimensional embedding,
    densities are ``d / r_sim^k / S`` and ``d / r_real^k / (N - 1)``,
    and the score is their ratio. Score 1 means no enrichment for doublets.

    Saves scores to ``adata.obs[key_added]`` and run parameters to ``adata.uns["doublet_density"]``.
    With ``sample_key``, samples too small for the neighborhood size are skipped:
    their scores are left NaN and they are listed in ``adata.uns["doublet_density"]["failed"]``.

    :param adata: AnnData object with raw counts
    :type adata: AnnData
    :param projector: projection of counts to the embedding, e.g. returned by ``pp.pca``. Simulated doublets are mapped with it
    :type projector: EmbeddingProjector
    :param embedding: real cells' embedding as an array or a key of ``adata.obsm``. It must be produced by ``projector``. If None, ``projector`` is applied to the counts, defaults to None
    :type embedding: np.ndarray | str | None, optional
    :param n_sim: number of doublets to simulate per sample. If None, ``max(10000, n_cells)``, defaults to None
    :type n_sim: int | None, optional
    :param n_neighbors: neighborhood size ``d``. If None, ``min(50, n_cells - 1, n_sim - 1)``, defaults to None
    :type n_neighbors: int | None, optional
    :param dims: if set, only the first ``dims`` embedding dimensions are used, defaults to None
    :type dims: int | None, optional
    :param sample_key: if set, doublets are simulated and cells are scored within each ``adata.obs[sample_key]`` sample separately, defaults to None
    :type sample_key: str | None, optional
    :param clusters_key: if set, only cells with different ``adata.obs[clusters_key]`` labels are paired, defaults to None
    :type clusters_key: str | None, optional
    :param allow_self_pairs: if to allow a cell to be paired with itself, defaults to False
    :type allow_self_pairs: bool, optional
    :param seed: random seed; each sample draws from its own stream derived from it, defaults to 0
    :type seed: int, optional
    :param layer: use ``adata.layers[layer]`` instead of ``adata.X``, defaults to None
    :type layer: str | None, optional
    :param n_jobs: number of parallel jobs for neighbors search, defaults to None
    :type n_jobs: int | None, optional
    :param eps: smallest distance used in density estimation, defaults to 1e-8
    :type eps: float, optional
    :param key_added: scores are saved to ``adata.obs[key_added]``, defaults to "doublet_score"
    :type key_added: str, optional
    :param copy: if to return a copy of ``adata`` instead of writing to it, defaults to False
    :type copy: bool, optional
    """
    adata = adata.copy() if copy else adata

    X = _get_counts(adata, projector.var_names, layer)
    _check_counts(X)

    # [N, k]
    X_emb = _resolve_embedding(adata, projector, embedding, X)
    if dims is not None:
        if not 1 <= dims <= X_emb.shape[1]:
            raise InvalidInputError(
                f"dims must be between 1 and {X_emb.shape[1]}, got {dims}."
            )
        X_emb = X_emb[:, :dims]

    if clusters_key is not None:
        assert clusters_key in adata.obs, f"Column `{clusters_key}` not found in adata.obs"
        clusters = adata.obs[clusters_key].to_numpy()
    else:
        clusters = None

    if n_sim is not None and n_sim < 1:
        raise InvalidInputError(
            f"Number of simulated doublets must be positive, got {n_sim}."
        )
    groups = _sample_groups(adata.obs, sample_key)
    rngs = _spawn_rngs(seed, len(groups))

    scores = np.full(adata.n_obs, np.nan)
    samples = {}
    failed = {}
    for (sample, idx), rng in zip(groups, rngs):
        n_cells = idx.size
        S = max(DEFAULT_MIN_SIM, n_cells) if n_sim is None else int(n_sim)
        d = (
            min(DEFAULT_N_NEIGHBORS, n_cells - 1, S - 1)
            if n_neighbors is None
            else int(n_neighbors)
        )

        # too small to score, reported under "failed"
        if sample_key is not None and (n_cells < 2 or d >= n_cells or d >= S):
            reason = (
                f"{n_cells} cells and {S} simulated doublets, "
                f"more than {max(d, 1)} of each are needed to score cells."
            )
            logger.warning("Sample %s is excluded from doublet scoring: %s", sample, reason)
            failed[str(sample)] = reason
            continue

        X_sim, _ = _simulate(
            X[idx],
            S,
            rng,
            allow_self_pairs,
            None if clusters is None else clusters[idx],
        )
        # [S, k]
        X_sim_emb = projector.transform(X_sim)[:, : X_emb.shape[1]]

        logger.info(
            "Sample %s: %i cells, %i simulated doublets, %i neighbors",
            sample,
            n_cells,
            S,
            d,
        )
        scores[idx] = _density_scores(X_emb[idx], X_sim_emb, d, n_jobs=n_jobs, eps=eps)
        samples[str(sample)] = {"n_cells": n_cells, "n_sim": S, "n_neighbors": d}

    adata.obs[key_added] = scores
    adata.uns["doublet_density"] = {
        "params": {
            "seed": seed,
            "n_dims": X_emb.shape[1],
            "sample_key": "" if sample_key is None else sample_key,
            "clusters_key": "" if clusters_key is None else clusters_key,
            "allow_self_pairs": allow_self_pairs,
            "eps": eps,
        },
        "samples": samples,
        "failed": failed,
    }

    return adata if copy else None


def call_doublets(
    adata: AnnData,
    sample_key: str | None = None,
    score_key: str = "doublet_score",
    nmads: float = 3.0,
    min_cells: int = 10,
    key_added: str = "doublet_call",
    pvalue_key: str | None = "doublet_pvalue",
) -> dict[str, str]:
    """Calls doublets as upper outliers of log doublet scores within each sample:
    a cell is a doublet if its log score exceeds the sample's median by more than ``nmads`` MADs.
    Thresholds are never shared between samples.

    Samples with fewer than ``min_cells`` cells or with missing (NaN) scores are skipped,
    their calls are left missing (``<NA>``).
    Calls are saved to ``adata.obs[key_added]`` (nullable boolean),
    per-sample thresholds and failures to ``adata.uns["doublet_calls"]``.

    :param adata: AnnData object with doublet scores
    :type adata: AnnData
    :param sample_key: ``adata.obs[sample_key]`` defines samples. If None, all cells form one sample, defaults to None
    :type sample_key: str | None, optional
    :param score_key: ``adata.obs[score_key]`` holds doublet scores, defaults to "doublet_score"
    :type score_key: str, optional
    :param nmads: number of MADs above the median, defaults to 3.0
    :type nmads: float, optional
    :param min_cells: minimal number of cells in a sample to estimate the threshold, defaults to 10
    :type min_cells: int, optional
    :param key_added: calls are saved to ``adata.obs[key_added]``, defaults to "doublet_call"
    :type key_added: str, optional
    :param pvalue_key: if not None, upper-tail p-values of log scores are saved to ``adata.obs[pvalue_key]``, defaults to "doublet_pvalue"
    :type pvalue_key: str | None, optional
    :return: samples that could not be thresholded, mapped to the reason
    :rtype: dict[str, str]
    """
    assert (
        score_key in adata.obs
    ), f"Doublet scores not found in adata.obs['{score_key}']. First, run tl.doublet_density."

    scores = adata.obs[score_key].to_numpy(dtype=np.float64)
    # NaN marks cells of samples excluded from scoring
    scored = scores[~np.isnan(scores)]
    if np.isinf(scored).any() or (scored < 0).any():
        raise InvalidInputError("Doublet scores must be finite and non-negative.")

    calls = pd.array([pd.NA] * adata.n_obs, dtype="boolean")
    pvalues = np.full(adata.n_obs, np.nan)
    thresholds = {}
    failed = {}

    for sample, idx in _sample_groups(adata.obs, sample_key):
        n_missing = int(np.isnan(scores[idx]).sum())
        if n_missing > 0:
            reason = f"{n_missing} out of {idx.size} cells have no doublet score."
            logger.warning("Sample %s is excluded from doublet calling: %s", sample, reason)
            failed[str(sample)] = reason
            continue

        try:
            is_doublet, sample_pvalues, stats = _mad_threshold(
                scores[idx], nmads=nmads, min_cells=min_cells
            )
        except InsufficientDataError as exc:
            logger.warning("Sample %s is excluded from doublet calling: %s", sample, exc)
            failed[str(sample)] = str(exc)
            continue

        calls[idx] = is_doublet
        pvalues[idx] = sample_pvalues
        thresholds[str(sample)] = stats
        logger.info(
            "Sample %s: %i of %i cells called doublets",
            sample,
            int(is_doublet.sum()),
            idx.size,
        )

    adata.obs[key_added] = calls
    if pvalue_key is not None:
        adata.obs[pvalue_key] = pvalues
    adata.uns["doublet_calls"] = {
        "params": {
            "sample_key": "" if sample_key is None else sample_key,
            "score_key": score_key,
            "nmads": nmads,
            "min_cells": min_cells,
        },
        "thresholds": thresholds,
        "failed": failed,
    }

    return failed
