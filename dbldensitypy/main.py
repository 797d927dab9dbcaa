# pylint: disable=W0621, C0116, W0511

from __future__ import annotations

import logging

from anndata import AnnData

import dbldensitypy as dd


def run_doublet_density(
    adata: AnnData,
    sample_key: str | None,
    n_comps: int,
    n_neighbors: int | None,
    n_sim: int | None,
    nmads: float,
    use_genes_column: str | None,
    seed: int,
) -> dict[str, str]:
    """
    This function is supposed to be used mostly for debugging
    1. projection
        - pp.pca(adata) -> adata.obsm["X_pca"], projector
    2. scoring
        - simulate doublets, project them with the same projector
        - density ratio -> adata.obs["doublet_score"]
    3. calling
        - per-sample MAD threshold -> adata.obs["doublet_call"]
    """
    projector = dd.pp.pca(
        adata,
        n_comps=n_comps,
        use_genes_column=use_genes_column,
    )

    dd.tl.doublet_density(
        adata,
        projector,
        embedding="X_pca",
        n_sim=n_sim,
        n_neighbors=n_neighbors,
        sample_key=sample_key,
        seed=seed,
    )

    return dd.tl.call_doublets(adata, sample_key=sample_key, nmads=nmads)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    adata = dd.datasets.two_populations(n_singlets=1000, n_doublets=100, n_samples=2)
    # a sample too small to be thresholded
    adata.obs["sample"] = adata.obs["sample"].cat.add_categories("tiny")
    adata.obs.loc[adata.obs_names[:5], "sample"] = "tiny"

    failed = run_doublet_density(
        adata,
        sample_key="sample",
        n_comps=2,
        n_neighbors=None,
        n_sim=None,
        nmads=3.0,
        use_genes_column=None,
        seed=42,
    )

    print(adata.obs.groupby("group", observed=True)["doublet_score"].median())
    print(adata.obs.groupby("group", observed=True)["doublet_call"].mean())
    print(failed)
