from __future__ import annotations

import numpy as np
import pandas as pd

from anndata import AnnData


def two_populations(
    n_singlets: int = 500,
    n_doublets: int = 50,
    n_samples: int = 1,
    seed: int = 0,
) -> AnnData:
    """
    Poisson counts of two marker genes for two cell populations
    (A: means 10 and 1, B: means 1 and 10), split evenly,
    plus ``n_doublets`` cells that are exact sums of one A and one B cell.
    Cells are assigned round-robin to ``n_samples`` samples (``obs["sample"]``).
    """
    rng = np.random.default_rng(seed)

    n_a = n_singlets // 2
    n_b = n_singlets - n_a
    X_a = rng.poisson([10, 1], size=(n_a, 2))
    X_b = rng.poisson([1, 10], size=(n_b, 2))

    # [n_doublets, 2] = [n_doublets, 2] + [n_doublets, 2]
    X_dbl = X_a[rng.integers(0, n_a, size=n_doublets)] + X_b[
        rng.integers(0, n_b, size=n_doublets)
    ]

    n_cells = n_singlets + n_doublets
    obs = pd.DataFrame(
        {
            "group": pd.Categorical(
                ["A"] * n_a + ["B"] * n_b + ["doublet"] * n_doublets
            ),
            "is_doublet": np.arange(n_cells) >= n_singlets,
            "sample": pd.Categorical(
                [f"sample_{i % n_samples}" for i in range(n_cells)]
            ),
        },
        index=[f"cell_{i}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=["gene_1", "gene_2"])

    return AnnData(
        X=np.vstack([X_a, X_b, X_dbl]).astype(np.float32), obs=obs, var=var
    )


def toy_doublets() -> AnnData:
    """
    Two genes, three cells expressing (10, 0), three expressing (0, 10)
    and one cell expressing (10, 10), which mimics a real doublet.
    """
    X = np.array(
        [[10, 0], [10, 0], [10, 0], [0, 10], [0, 10], [0, 10], [10, 10]],
        dtype=np.float32,
    )
    obs = pd.DataFrame(
        {"cell_type": pd.Categorical(["A"] * 3 + ["B"] * 3 + ["AB"])},
        index=[f"cell_{i + 1}" for i in range(X.shape[0])],
    )
    return AnnData(X=X, obs=obs, var=pd.DataFrame(index=["gene_1", "gene_2"]))
