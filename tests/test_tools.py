import numpy as np
import pytest

from scipy.stats import rankdata

import dbldensitypy as dd
from dbldensitypy._utils import _density_scores, _draw_pairs, _kth_neighbor_distance


class TestSimulation:
    n_sim = 200

    def test_simulate_doublets(self):
        adata = dd.datasets.two_populations()
        adata_sim = dd.tl.simulate_doublets(adata, n_sim=self.n_sim, seed=1)

        assert adata_sim.shape == (self.n_sim, adata.n_vars)
        assert list(adata_sim.var_names) == list(adata.var_names)

        X = adata.X
        parents_1 = adata.obs_names.get_indexer(adata_sim.obs["parent_1"])
        parents_2 = adata.obs_names.get_indexer(adata_sim.obs["parent_2"])
        # raw sums, no downscaling
        np.testing.assert_array_equal(adata_sim.X, X[parents_1] + X[parents_2])
        assert (parents_1 != parents_2).all()

    def test_reproducible(self):
        adata = dd.datasets.two_populations()
        first = dd.tl.simulate_doublets(adata, n_sim=self.n_sim, seed=7)
        second = dd.tl.simulate_doublets(adata, n_sim=self.n_sim, seed=7)
        other = dd.tl.simulate_doublets(adata, n_sim=self.n_sim, seed=8)

        np.testing.assert_array_equal(first.X, second.X)
        assert (first.obs["parent_1"] == second.obs["parent_1"]).all()
        assert not (first.obs["parent_1"] == other.obs["parent_1"]).all()

    def test_default_n_sim(self):
        adata = dd.datasets.toy_doublets()
        adata_sim = dd.tl.simulate_doublets(adata)

        assert adata_sim.n_obs == 10000

    def test_feature_subset(self):
        adata = dd.datasets.two_populations()
        adata_sim = dd.tl.simulate_doublets(adata, var_names=["gene_2"], n_sim=10)

        assert list(adata_sim.var_names) == ["gene_2"]

    def test_cross_cluster_pairs(self):
        adata = dd.datasets.toy_doublets()
        adata_sim = dd.tl.simulate_doublets(
            adata, n_sim=self.n_sim, clusters_key="cell_type"
        )

        cell_type = adata.obs["cell_type"]
        assert (
            cell_type.loc[adata_sim.obs["parent_1"]].to_numpy()
            != cell_type.loc[adata_sim.obs["parent_2"]].to_numpy()
        ).all()

    def test_self_pairs(self):
        pairs = _draw_pairs(2, 1000, np.random.default_rng(0), allow_self_pairs=True)
        assert (pairs[:, 0] == pairs[:, 1]).any()

        pairs = _draw_pairs(2, 1000, np.random.default_rng(0))
        assert (pairs[:, 0] != pairs[:, 1]).all()

    def test_single_cell(self):
        adata = dd.datasets.toy_doublets()[:1].copy()

        with pytest.raises(dd.InvalidInputError):
            dd.tl.simulate_doublets(adata, n_sim=10)

    def test_single_cluster(self):
        adata = dd.datasets.toy_doublets()
        adata.obs["one"] = "x"

        with pytest.raises(dd.InvalidInputError):
            dd.tl.simulate_doublets(adata, n_sim=10, clusters_key="one")

    def test_empty_feature_subset(self):
        adata = dd.datasets.toy_doublets()

        with pytest.raises(dd.InvalidInputError):
            dd.tl.simulate_doublets(adata, var_names=[], n_sim=10)


class TestDoubletDensity:
    n_comps = 2

    def prepare(self, **kwargs):
        adata = dd.datasets.two_populations(**kwargs)
        projector = dd.pp.pca(adata, n_comps=self.n_comps, use_genes_column=None)
        return adata, projector

    def test_doublet_density(self):
        adata, projector = self.prepare()
        obs_names = adata.obs_names.copy()
        dd.tl.doublet_density(adata, projector, embedding="X_pca", n_sim=2000)

        scores = adata.obs["doublet_score"].to_numpy()
        assert scores.shape == (adata.n_obs,)
        assert (adata.obs_names == obs_names).all()
        assert np.isfinite(scores).all()
        assert (scores >= 0).all()

        assert "doublet_density" in adata.uns
        assert adata.uns["doublet_density"]["samples"]["all"] == {
            "n_cells": adata.n_obs,
            "n_sim": 2000,
            "n_neighbors": 50,
        }

    def test_deterministic(self):
        adata, projector = self.prepare()
        first = dd.tl.doublet_density(adata, projector, seed=3, n_sim=2000, copy=True)
        second = dd.tl.doublet_density(
            adata, projector, seed=3, n_sim=2000, n_jobs=2, copy=True
        )

        assert "doublet_score" not in adata.obs
        np.testing.assert_array_equal(
            first.obs["doublet_score"].to_numpy(), second.obs["doublet_score"].to_numpy()
        )

    def test_synthetic_doublets_score_high(self):
        adata, projector = self.prepare(n_singlets=500, n_doublets=50, seed=0)
        dd.tl.doublet_density(adata, projector, seed=0)

        scores = adata.obs["doublet_score"].to_numpy()
        is_doublet = adata.obs["is_doublet"].to_numpy()
        ranks = rankdata(scores)

        assert ranks[is_doublet].mean() > ranks[~is_doublet].mean()
        assert np.median(scores[is_doublet]) >= np.quantile(scores, 0.75)

    def test_toy_cross_pairs(self):
        adata = dd.datasets.toy_doublets()
        projector = dd.pp.pca(adata, n_comps=2, use_genes_column=None)

        # 20 doublets, each pairing a (10, 0) cell with a (0, 10) cell
        rng = np.random.default_rng(0)
        X = adata.X
        X_sim = X[rng.integers(0, 3, size=20)] + X[rng.integers(3, 6, size=20)]

        scores = _density_scores(
            projector.transform(X), projector.transform(X_sim), n_neighbors=4
        )

        assert np.isfinite(scores).all()
        assert ((scores[:6] > 0.2) & (scores[:6] < 2)).all()
        assert scores[6] > 10

    def test_toy_duplicates_clamped(self):
        adata = dd.datasets.toy_doublets()
        projector = dd.pp.pca(adata, n_comps=2, use_genes_column=None)

        rng = np.random.default_rng(0)
        X = adata.X
        X_sim = X[rng.integers(0, 3, size=20)] + X[rng.integers(3, 6, size=20)]

        # 2nd neighbor of a pure cell is its identical twin at distance 0
        scores = _density_scores(
            projector.transform(X), projector.transform(X_sim), n_neighbors=2
        )

        assert (scores[:6] < 1e-10).all()
        assert scores[6] > 10

    def test_toy_cross_clusters(self):
        adata = dd.datasets.toy_doublets()
        projector = dd.pp.pca(adata, n_comps=2, use_genes_column=None)
        dd.tl.doublet_density(
            adata, projector, n_sim=20, n_neighbors=4, clusters_key="cell_type"
        )

        scores = adata.obs["doublet_score"].to_numpy()
        assert np.argmax(scores) == 6
        assert ((scores[:6] > 0.2) & (scores[:6] < 2)).all()
        assert scores[6] > 10

    def test_zero_distances(self):
        # identical cells and doublets: every distance is clamped
        scores = _density_scores(np.zeros((10, 2)), np.zeros((30, 2)), n_neighbors=3)

        np.testing.assert_allclose(scores, 9 / 30)

    def test_exact_neighbor_distances(self):
        rng = np.random.default_rng(0)
        reference = rng.normal(size=(40, 3))
        query = rng.normal(size=(15, 3))

        # [15, 40]
        dist = np.linalg.norm(query[:, np.newaxis] - reference[np.newaxis], axis=-1)
        np.testing.assert_allclose(
            _kth_neighbor_distance(reference, query, 5),
            np.sort(dist, axis=1)[:, 4],
            rtol=1e-6,
        )

        # self is excluded by index, so duplicates of a point still count
        reference[1] = reference[0]
        dist = np.linalg.norm(reference[:, np.newaxis] - reference[np.newaxis], axis=-1)
        np.fill_diagonal(dist, np.inf)
        np.testing.assert_allclose(
            _kth_neighbor_distance(reference, None, 5),
            np.sort(dist, axis=1)[:, 4],
            rtol=1e-6,
        )

    def test_per_sample(self):
        adata, projector = self.prepare(n_samples=2)
        dd.tl.doublet_density(adata, projector, n_sim=1000, sample_key="sample")

        samples = adata.uns["doublet_density"]["samples"]
        assert set(samples) == {"sample_0", "sample_1"}
        assert sum(s["n_cells"] for s in samples.values()) == adata.n_obs
        assert np.isfinite(adata.obs["doublet_score"]).all()
        assert adata.uns["doublet_density"]["failed"] == {}

    def test_small_sample_skipped(self):
        adata, projector = self.prepare(n_singlets=200, n_doublets=20, n_samples=2)
        adata.obs["sample"] = adata.obs["sample"].astype(str)
        adata.obs.loc["cell_0", "sample"] = "lonely"
        adata.obs.loc[["cell_1", "cell_2", "cell_3"], "sample"] = "few"

        dd.tl.doublet_density(
            adata, projector, n_sim=500, n_neighbors=5, sample_key="sample"
        )

        scores = adata.obs["doublet_score"]
        assert set(adata.uns["doublet_density"]["failed"]) == {"lonely", "few"}
        assert set(adata.uns["doublet_density"]["samples"]) == {"sample_0", "sample_1"}
        assert scores[["cell_0", "cell_1", "cell_2", "cell_3"]].isna().all()
        assert np.isfinite(scores.iloc[4:]).all()

        # without samples, too few cells is still an error
        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(adata[:1].copy(), projector, n_sim=500)

    def test_dims(self):
        adata, projector = self.prepare()
        dd.tl.doublet_density(adata, projector, n_sim=1000, dims=1)

        assert adata.uns["doublet_density"]["params"]["n_dims"] == 1
        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(adata, projector, n_sim=1000, dims=3)

    def test_too_many_neighbors(self):
        adata = dd.datasets.toy_doublets()
        projector = dd.pp.pca(adata, n_comps=2, use_genes_column=None)

        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(adata, projector, n_sim=100, n_neighbors=7)
        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(adata, projector, n_sim=5, n_neighbors=5)

    def test_embedding_mismatch(self):
        adata, projector = self.prepare()

        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(
                adata, projector, embedding=np.zeros((adata.n_obs, 3)), n_sim=100
            )
        with pytest.raises(dd.InvalidInputError):
            dd.tl.doublet_density(
                adata, projector, embedding=np.zeros((10, 2)), n_sim=100
            )
