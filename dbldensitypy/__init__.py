"""
Doublet detection by simulated doublet density:

1. Projection:
    - log(CP10K + 1) library size normalization of the cells
    - subset by the feature genes (by default highly variable)
    - scaling of the genes to have mean 0 and variance 1 (saving μ and σ for each gene)
    - PCA (by default, d=10) to embed the real cells
        in a low-dimensional space, saving the gene loadings (U)
    savings:
        - gene means (μ) and standard deviations (σ) used to scale the genes
        - PCA gene loadings

2. Doublet simulation
    - sum raw counts of S random pairs of cells (S = max(10000, N) by default),
        without downscaling
    - map simulated doublets to the real cells' embedding with the same μ, σ and U

3. Density scoring
    - distance to the d-th nearest simulated doublet (r_sim)
        and to the d-th nearest other real cell (r_real), d = 50 by default
    - kNN density d / r^k / n_ref for both sets (k -- embedding dimensionality)
    - score = simulated doublets' density / real cells' density, 1 means no enrichment

4. Calling
    - per sample, log scores above median + 3 MADs are doublets
    - samples with too few cells are skipped and reported
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from .exceptions import InsufficientDataError, InvalidInputError
