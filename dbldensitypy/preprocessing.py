# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from sklearn.decomposition import PCA

from ._utils import _check_counts, _get_counts, _normalize_log1p, _to_dense
from .exceptions import InvalidInputError


logger = logging.getLogger("dbldensitypy")


class EmbeddingProjector:
    """
    Linear projection of raw counts into a PCA embedding fitted on real cells:
    library size normalization to ``target_sum``, log1p,
    scaling with the reference genes' means and stds (clipped at ``max_value`` if set),
    multiplication by the PCA gene loadings.

    The same projection is applied to real cells and to simulated doublets,
    so both land in the identical coordinate system.

    :param var_names: genes (feature subset) the projection is defined on
    :type var_names: pd.Index | list[str]
    :param loadings: [genes, n_comps] PCA gene loadings
    :type loadings: np.ndarray
    :param mean: [genes] means of the log-normalized reference expression
    :type mean: np.ndarray
    :param std: [genes] stds of the log-normalized reference expression, zeros are replaced by ones
    :type std: np.ndarray
    :param target_sum: total counts each cell is normalized to, defaults to 1e4
    :type target_sum: float, optional
    :param max_value: clip scaled values to ``[-max_value, max_value]``, defaults to None
    :type max_value: float | None, optional
    """

    def __init__(
        self,
        var_names,
        loadings: np.ndarray,
        mean: np.ndarray,
        std: np.ndarray,
        target_sum: float = 1e4,
        max_value: float | None = None,
    ) -> None:
        self.var_names = pd.Index(var_names)
        if len(self.var_names) == 0:
            raise InvalidInputError("Feature subset is empty.")

        self.loadings = np.asarray(loadings, dtype=np.float64)
        self.mean = np.asarray(mean, dtype=np.float64)
        std = np.asarray(std, dtype=np.float64)
        self.std = np.where(std == 0, 1.0, std)
        self.target_sum = float(target_sum)
        self.max_value = max_value
        self.variance_ratio = None

        n_genes = len(self.var_names)
        assert (
            self.loadings.ndim == 2 and self.loadings.shape[0] == n_genes
        ), f"loadings must have shape [{n_genes}, n_comps], got {self.loadings.shape}"
        assert (
            self.mean.shape == (n_genes,) and self.std.shape == (n_genes,)
        ), "mean and std must have one value per gene"

    @property
    def n_comps(self) -> int:
        return self.loadings.shape[1]

    @classmethod
    def fit(
        cls,
        X,
        var_names,
        n_comps: int = 10,
        target_sum: float = 1e4,
        max_value: float | None = None,
    ) -> EmbeddingProjector:
        """Fits the projection on a [cells, genes] counts matrix of real cells."""
        n_cells, n_genes = X.shape
        if n_cells < 2:
            raise InvalidInputError(f"At least 2 cells are needed for PCA, got {n_cells}.")
        if not 1 <= n_comps <= min(n_cells, n_genes):
            raise InvalidInputError(
                f"n_comps must be between 1 and min(n_cells, n_genes) = {min(n_cells, n_genes)}, "
                f"got {n_comps}."
            )

        adata_fit = AnnData(
            X=_to_dense(_normalize_log1p(X, target_sum)),
            obs=pd.DataFrame(index=[str(i) for i in range(n_cells)]),
            var=pd.DataFrame(index=pd.Index(var_names).astype(str)),
        )
        # saves adata_fit.var["mean"] and adata_fit.var["std"]
        sc.pp.scale(adata_fit, zero_center=True, max_value=max_value)
        if max_value is not None:
            adata_fit.X[adata_fit.X < -max_value] = -max_value

        pca = PCA(n_components=n_comps, svd_solver="full")
        pca.fit(adata_fit.X)

        projector = cls(
            var_names,
            pca.components_.T,
            adata_fit.var["mean"].to_numpy(),
            adata_fit.var["std"].to_numpy(),
            target_sum=target_sum,
            max_value=max_value,
        )
        projector.variance_ratio = pca.explained_variance_ratio_
        return projector

    def transform(self, X, chunk_size: int = 10000) -> np.ndarray:
        """Projects a [cells, genes] counts matrix (genes ordered as ``var_names``)."""
        if X.shape[1] != len(self.var_names):
            raise InvalidInputError(
                f"Expected {len(self.var_names)} genes, got a matrix with {X.shape[1]} columns."
            )

        n_cells = X.shape[0]
        X_proj = np.empty((n_cells, self.n_comps), dtype=np.float64)

        for start in range(0, n_cells, chunk_size):
            stop = min(start + chunk_size, n_cells)
            chunk = _to_dense(_normalize_log1p(X[start:stop], self.target_sum))
            chunk = (chunk - self.mean) / self.std
            if self.max_value is not None:
                chunk = np.clip(chunk, -self.max_value, self.max_value)

            # [cells, n_comps] = [cells, genes] x [genes, n_comps]
            X_proj[start:stop] = chunk @ self.loadings

        return X_proj

    def transform_adata(self, adata: AnnData, layer: str | None = None) -> np.ndarray:
        return self.transform(_get_counts(adata, self.var_names, layer))

    @classmethod
    def from_adata(
        cls,
        adata: AnnData,
        loadings_key: str = "PCs",
        uns_key: str = "pca",
    ) -> EmbeddingProjector:
        """
        Rebuilds the projector saved by :func:`pca`.

        :param adata: AnnData object processed with ``pp.pca``
        :type adata: AnnData
        :param loadings_key: ``adata.varm[loadings_key]`` holds gene loadings, defaults to "PCs"
        :type loadings_key: str, optional
        :param uns_key: ``adata.uns[uns_key]`` holds projection parameters, defaults to "pca"
        :type uns_key: str, optional
        """
        assert (
            "mean" in adata.var
        ), "Gene expression means are expected to be saved in adata.var"
        assert (
            "std" in adata.var
        ), "Gene expression stds are expected to be saved in adata.var"
        assert (
            "pca_feature" in adata.var
        ), "Projection features are expected to be marked in adata.var['pca_feature']"
        assert (
            uns_key in adata.uns
        ), f"Projection parameters not found in adata.uns['{uns_key}']. First, run pp.pca."

        params = adata.uns[uns_key]["params"]
        mask = adata.var["pca_feature"].to_numpy(dtype=bool)
        max_value = params.get("max_value")

        projector = cls(
            adata.var_names[mask],
            np.asarray(adata.varm[loadings_key])[mask],
            adata.var["mean"].to_numpy()[mask],
            adata.var["std"].to_numpy()[mask],
            target_sum=params["target_sum"],
            max_value=None if max_value is None or np.isnan(max_value) else max_value,
        )
        projector.variance_ratio = adata.uns[uns_key].get("variance_ratio")
        return projector


def pca(
    adata: AnnData,
    n_comps: int = 10,
    use_genes_column: str | None = "highly_variable",
    n_top_genes: int = 2000,
    layer: str | None = None,
    target_sum: float = 1e4,
    max_value: float | None = None,
    key_added: str = "X_pca",
) -> EmbeddingProjector:
    """
    Fits the embedding projection on the cells of ``adata`` and
    saves the embedding to ``adata.obsm[key_added]``, gene loadings to ``adata.varm["PCs"]``,
    scaling means and stds to ``adata.var["mean"]`` and ``adata.var["std"]``,
    and parameters to ``adata.uns["pca"]``.

    :param adata: AnnData object with raw counts in ``adata.X`` (or in ``adata.layers[layer]``)
    :type adata: AnnData
    :param n_comps: number of principal components, defaults to 10
    :type n_comps: int, optional
    :param use_genes_column: ``adata.var[use_genes_column]`` genes will be used as the feature subset. If it is "highly_variable" and absent, highly variable genes are computed first. If None, all genes are used, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param n_top_genes: number of highly variable genes to select if they have to be computed, defaults to 2000
    :type n_top_genes: int, optional
    :param layer: use ``adata.layers[layer]`` instead of ``adata.X``, defaults to None
    :type layer: str | None, optional
    :param target_sum: total counts each cell is normalized to, defaults to 1e4
    :type target_sum: float, optional
    :param max_value: clip scaled values to ``[-max_value, max_value]``, defaults to None
    :type max_value: float | None, optional
    :param key_added: embedding is saved to ``adata.obsm[key_added]``, defaults to "X_pca"
    :type key_added: str, optional
    :return: fitted projector, to be passed to ``tl.doublet_density``
    :rtype: EmbeddingProjector
    """
    if use_genes_column is None:
        var_names = adata.var_names
    else:
        if use_genes_column not in adata.var:
            assert (
                use_genes_column == "highly_variable"
            ), f"Column `{use_genes_column}` not found in adata.var. Set `use_genes_column` parameter properly"
            _highly_variable_genes(adata, n_top_genes, layer, target_sum)

        var_names = adata.var_names[adata.var[use_genes_column].to_numpy(dtype=bool)]

    X = _get_counts(adata, var_names, layer)
    _check_counts(X)

    logger.info("Fitting %i components on %i genes", n_comps, len(var_names))
    projector = EmbeddingProjector.fit(
        X, var_names, n_comps=n_comps, target_sum=target_sum, max_value=max_value
    )

    mask = adata.var_names.isin(var_names)
    # rows of the projector follow var_names order, not adata.var_names order
    order = pd.Index(var_names).get_indexer(adata.var_names[mask])

    loadings = np.zeros((adata.n_vars, n_comps))
    loadings[mask] = projector.loadings[order]
    mean = np.full(adata.n_vars, np.nan)
    mean[mask] = projector.mean[order]
    std = np.full(adata.n_vars, np.nan)
    std[mask] = projector.std[order]

    adata.obsm[key_added] = projector.transform(X)
    adata.varm["PCs"] = loadings
    adata.var["mean"] = mean
    adata.var["std"] = std
    adata.var["pca_feature"] = mask
    adata.uns["pca"] = {
        "params": {
            "n_comps": n_comps,
            "target_sum": target_sum,
            "max_value": np.nan if max_value is None else max_value,
            "use_genes_column": "" if use_genes_column is None else use_genes_column,
        },
        "variance_ratio": projector.variance_ratio,
    }

    return projector


def _highly_variable_genes(
    adata: AnnData, n_top_genes: int, layer: str | None, target_sum: float
) -> None:
    logger.info("Computing %i highly variable genes", n_top_genes)

    X = _get_counts(adata, adata.var_names, layer)
    adata_norm = AnnData(
        X=_normalize_log1p(X, target_sum),
        obs=pd.DataFrame(index=adata.obs_names),
        var=pd.DataFrame(index=adata.var_names),
    )
    sc.pp.highly_variable_genes(
        adata_norm, n_top_genes=min(n_top_genes, adata.n_vars), flavor="seurat"
    )
    adata.var["highly_variable"] = adata_norm.var["highly_variable"].to_numpy()
