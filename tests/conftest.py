import logging

import numpy as np
import pandas as pd
import pytest


def simulate_markers(n=80, m=150, seed=1, missing_rate=0.0, freqs=None):
    """Random -1/0/1 genotype matrix drawn under Hardy-Weinberg proportions."""
    rng = np.random.default_rng(seed)
    if freqs is None:
        freqs = rng.uniform(0.15, 0.85, size=m)
    X = rng.binomial(2, freqs, size=(n, m)).astype(float) - 1
    if missing_rate:
        X[rng.random((n, m)) < missing_rate] = np.nan
    ids = [f"ind{i + 1}" for i in range(n)]
    markers = [f"snp{j + 1}" for j in range(m)]
    return pd.DataFrame(X, index=pd.Index(ids, name="sample"), columns=pd.Index(markers, name="marker"))


def two_populations(n_per_pop=20, m=200, seed=3):
    """Two groups with strongly diverged allele frequencies."""
    rng = np.random.default_rng(seed)
    p1 = rng.uniform(0.05, 0.25, size=m)
    p2 = 1 - p1
    X1 = rng.binomial(2, p1, size=(n_per_pop, m))
    X2 = rng.binomial(2, p2, size=(n_per_pop, m))
    X = np.vstack([X1, X2]).astype(float) - 1
    ids = [f"a{i + 1}" for i in range(n_per_pop)] + [f"b{i + 1}" for i in range(n_per_pop)]
    return pd.DataFrame(X, index=ids, columns=[f"snp{j + 1}" for j in range(m)])


@pytest.fixture
def geno():
    return simulate_markers()


@pytest.fixture
def marker_map(geno):
    m = geno.shape[1]
    chroms = ["1"] * (m // 3) + ["2"] * (m // 3) + ["10"] * (m - 2 * (m // 3))
    pos = []
    for chrom in ("1", "2", "10"):
        count = chroms.count(chrom)
        pos.extend(range(1000, 1000 + 5000 * count, 5000))
    return pd.DataFrame({"marker": geno.columns, "chrom": chroms, "pos": pos})


@pytest.fixture
def pheno(geno):
    """Two traits and a group column; 'yield' is driven by snp10."""
    rng = np.random.default_rng(7)
    n = geno.shape[0]
    causal = geno["snp10"].to_numpy()
    background = geno.iloc[:, 50:150].to_numpy().sum(axis=1) * 0.02
    y1 = 10 + 1.5 * causal + background + rng.normal(0, 0.5, size=n)
    y2 = 0.6 * y1 + rng.normal(0, 0.5, size=n)
    y2[:3] = np.nan
    return pd.DataFrame({
        "gid": geno.index.tolist(),
        "yield": y1,
        "height": y2,
        "group": ["north" if i % 2 else "south" for i in range(n)],
    })


@pytest.fixture
def pheno_file(tmp_path, pheno):
    path = tmp_path / "pheno.txt"
    pheno.to_csv(path, sep="\t", index=False)
    return str(path)


@pytest.fixture
def geno_file(tmp_path, geno):
    path = tmp_path / "markers.npz"
    np.savez_compressed(
        path,
        X=geno.to_numpy(),
        ids=np.asarray(geno.index, dtype=str),
        markers=np.asarray(geno.columns, dtype=str),
    )
    return str(path)


@pytest.fixture
def map_file(tmp_path, marker_map):
    path = tmp_path / "map.csv"
    marker_map.to_csv(path, index=False)
    return str(path)


@pytest.fixture
def log_records(caplog):
    """Capture records of the package logger, which does not propagate to the root logger."""
    from kinscan.log import logger

    logger.addHandler(caplog.handler)
    caplog.set_level(logging.INFO, logger=logger.name)
    yield caplog
    logger.removeHandler(caplog.handler)
