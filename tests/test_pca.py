import numpy as np
import pandas as pd
import pytest

from conftest import two_populations
from kinscan.kinship import additive_matrix
from kinscan.pca import kinship_pcs, marker_pca


def test_first_component_separates_populations():
    geno = two_populations()
    result = marker_pca(geno, n_pc=3)
    pc1 = result.scores["PC1"]
    a = pc1[pc1.index.str.startswith("a")]
    b = pc1[pc1.index.str.startswith("b")]
    assert (np.sign(a).nunique(), np.sign(b).nunique()) == (1, 1)
    assert np.sign(a.iloc[0]) != np.sign(b.iloc[0])
    assert result.explained[0] > 0.2


def test_explained_variance_is_sorted(geno):
    result = marker_pca(geno, n_pc=5)
    assert list(result.scores.columns) == ["PC1", "PC2", "PC3", "PC4", "PC5"]
    assert np.all(np.diff(result.explained) <= 1e-12)
    assert result.explained.sum() == pytest.approx(1.0)
    summary = result.summary()
    assert summary["cumulative"].iloc[-1] <= 1.0
    assert summary["eigenvalue"].tolist() == pytest.approx(result.eigenvalues[:5].tolist())


def test_scores_are_uncorrelated(geno):
    scores = marker_pca(geno, n_pc=4).scores.to_numpy()
    gram = scores.T @ scores
    off = gram[~np.eye(4, dtype=bool)]
    assert np.abs(off).max() < 1e-8 * np.abs(np.diag(gram)).max()


def test_components_capped_at_matrix_rank():
    geno = pd.DataFrame(
        [[-1, 0, 1], [0, 1, -1], [1, -1, 0], [0, 0, 1], [-1, 1, 0]],
        index=list("abcde"),
        columns=["m1", "m2", "m3"],
        dtype=float,
    )
    result = marker_pca(geno, n_pc=10)
    assert result.scores.shape == (5, 3)
    assert list(result.loadings.index) == ["m1", "m2", "m3"]


def test_missing_calls_are_tolerated(geno):
    gappy = geno.copy()
    gappy.iloc[::7, ::5] = np.nan
    result = marker_pca(gappy, n_pc=2)
    assert not result.scores.isna().any().any()


def test_kinship_pcs_are_orthonormal(geno):
    K = additive_matrix(geno)
    pcs = kinship_pcs(K, 3)
    assert list(pcs.index) == list(K.index)
    np.testing.assert_allclose(pcs.to_numpy().T @ pcs.to_numpy(), np.eye(3), atol=1e-8)
    with pytest.raises(ValueError):
        kinship_pcs(K, K.shape[0] + 1)
    with pytest.raises(ValueError):
        kinship_pcs(K, 0)
