import numpy as np
import pandas as pd
import pytest

from conftest import simulate_markers, two_populations
from kinscan.kinship import additive_matrix, impute_markers, read_kinship, write_kinship


def vanraden(M):
    """Reference relationship matrix from 0/1/2 allele counts."""
    p = M.mean(axis=0) / 2
    Z = M - 2 * p
    return Z @ Z.T / (2 * np.sum(p * (1 - p)))


def test_additive_matrix_matches_vanraden(geno):
    A = additive_matrix(geno)
    assert list(A.index) == list(geno.index)
    np.testing.assert_allclose(A.to_numpy(), vanraden(geno.to_numpy() + 1), atol=1e-10)
    np.testing.assert_allclose(A.to_numpy(), A.to_numpy().T)


def test_additive_matrix_filters_markers():
    geno = simulate_markers(n=30, m=40, seed=5)
    geno["mono"] = 1.0
    A, imputed = additive_matrix(geno, return_imputed=True)
    assert "mono" not in imputed.columns
    np.testing.assert_allclose(A.to_numpy(), vanraden(geno.drop(columns="mono").to_numpy() + 1), atol=1e-10)


def test_mean_imputation():
    geno = simulate_markers(n=40, m=60, seed=11, missing_rate=0.1)
    imputed = impute_markers(geno, method="mean", max_missing=1.0)
    assert not imputed.isna().any().any()
    col = imputed.columns[0]
    observed = geno[col].dropna()
    missing_rows = geno.index[geno[col].isna()]
    for row in missing_rows:
        assert imputed.loc[row, col] == pytest.approx(observed.mean())
    observed_rows = geno.index[geno[col].notna()]
    np.testing.assert_array_equal(imputed.loc[observed_rows, col], geno.loc[observed_rows, col])


def test_max_missing_drops_markers():
    geno = simulate_markers(n=20, m=10, seed=2)
    geno.iloc[:15, 0] = np.nan
    _, imputed = additive_matrix(geno, max_missing=0.5, return_imputed=True)
    assert geno.columns[0] not in imputed.columns


def test_em_imputation_beats_mean_under_structure():
    truth = two_populations(n_per_pop=20, m=200, seed=3)
    rng = np.random.default_rng(4)
    mask = rng.random(truth.shape) < 0.03
    mask[:, (mask.sum(axis=0) > 3)] = False
    masked = truth.mask(mask)

    em = impute_markers(masked, method="EM", max_missing=1.0, min_maf=0.0)
    mean = impute_markers(masked, method="mean", max_missing=1.0, min_maf=0.0)
    cols = em.columns
    keep = mask[:, truth.columns.get_indexer(cols)]
    err_em = np.abs(em.to_numpy()[keep] - truth[cols].to_numpy()[keep]).mean()
    err_mean = np.abs(mean.to_numpy()[keep] - truth[cols].to_numpy()[keep]).mean()
    assert err_em < err_mean
    assert em.to_numpy().min() >= -1 and em.to_numpy().max() <= 1
    observed = ~keep
    np.testing.assert_array_equal(em.to_numpy()[observed], truth[cols].to_numpy()[observed])


def test_em_without_missing_equals_mean(geno):
    np.testing.assert_allclose(
        additive_matrix(geno, impute="EM").to_numpy(),
        additive_matrix(geno, impute="mean").to_numpy(),
    )


def test_shrinkage_keeps_mean_diagonal(geno):
    A = additive_matrix(geno).to_numpy()
    A_shrunk = additive_matrix(geno, shrink=True).to_numpy()
    assert np.mean(np.diag(A_shrunk)) == pytest.approx(np.mean(np.diag(A)))
    off = ~np.eye(A.shape[0], dtype=bool)
    assert np.abs(A_shrunk[off]).sum() <= np.abs(A[off]).sum() + 1e-9


def test_additive_matrix_errors(geno):
    with pytest.raises(ValueError, match="Invalid impute method"):
        additive_matrix(geno, impute="knn")
    mono = pd.DataFrame(np.ones((5, 4)), index=list("abcde"))
    with pytest.raises(ValueError, match="No markers passed QC"):
        additive_matrix(mono)
    with pytest.raises(ValueError, match="At least 2 individuals"):
        additive_matrix(geno.iloc[:1])


def test_kinship_file_roundtrip(tmp_path, geno):
    A = additive_matrix(geno)
    path = str(tmp_path / "k.tsv")
    write_kinship(A, path)
    loaded = read_kinship(path)
    assert list(loaded.index) == list(A.index)
    np.testing.assert_allclose(loaded.to_numpy(), A.to_numpy(), rtol=1e-5, atol=1e-6)


def test_read_kinship_rejects_non_square(tmp_path):
    path = tmp_path / "k.tsv"
    path.write_text("sample\ta\tb\na\t1\t0\n")
    with pytest.raises(ValueError, match="square"):
        read_kinship(str(path))


def test_em_non_convergence_is_a_warning(log_records):
    geno = simulate_markers(n=30, m=50, seed=8, missing_rate=0.05)
    A = additive_matrix(geno, impute="EM", max_iter=1, tol=0)
    assert A.shape == (30, 30)
    warnings = [r for r in log_records.records if r.levelname == "WARNING"]
    assert any("did not converge within 1 iterations" in r.getMessage() for r in warnings)
