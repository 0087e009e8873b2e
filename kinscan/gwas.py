import os
from multiprocessing import Pool, cpu_count
from typing import List, NamedTuple, Optional

import numpy as np
import pandas as pd
from scipy import stats as sstats
from scipy.optimize import minimize_scalar

from kinscan.geno import align_samples, align_to_map, marker_qc
from kinscan.kinship import additive_matrix, mean_impute
from kinscan.log import logger
from kinscan.pca import kinship_pcs
from kinscan.phe import numeric_columns, trait_columns


# search range for the ratio delta = Ve / Vu
LOG_DELTA_BOUNDS = (np.log(1e-5), np.log(1e5))
LOG_DELTA_GRID = 100


class MixedModelFit(NamedTuple):
    vu: float
    ve: float
    beta: np.ndarray
    delta: float
    loglik: float

    @property
    def h2(self) -> float:
        total = self.vu + self.ve
        return self.vu / total if total > 0 else float("nan")


def _as_design(X, n: int) -> np.ndarray:
    if X is None:
        return np.ones((n, 1))
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.shape[0] != n:
        raise ValueError(f"Design matrix has {X.shape[0]} rows, expected {n}")
    return X


def mixed_solve(y, X=None, K=None) -> MixedModelFit:
    """
    REML fit of ``y = X b + u + e`` with ``u ~ N(0, Vu K)`` and ``e ~ N(0, Ve I)``.

    The restricted likelihood is profiled on ``delta = Ve / Vu`` using the spectral
    decomposition of ``S K S`` (``S`` projects out the fixed effects); ``log(delta)`` is
    located on a grid and refined with a bounded scalar search.

    :param y: Response vector without missing values
    :param X: Fixed-effect design matrix (default: intercept only)
    :param K: Relationship matrix among the n observations (None gives ordinary least squares)
    """
    y = np.asarray(y, dtype=float).ravel()
    n = len(y)
    if np.isnan(y).any():
        raise ValueError("Response contains missing values")
    X = _as_design(X, n)
    p = X.shape[1]
    if np.linalg.matrix_rank(X) < p:
        raise ValueError("Fixed-effect design matrix is rank deficient")
    r = n - p
    if r < 1:
        raise ValueError(f"Not enough observations ({n}) for {p} fixed effects")

    if K is None:
        beta, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ beta
        ve = float(resid @ resid) / r
        loglik = -0.5 * (r * np.log(2 * np.pi * ve) + r)
        return MixedModelFit(vu=0.0, ve=ve, beta=beta, delta=float("inf"), loglik=float(loglik))

    K = np.asarray(K, dtype=float)
    if K.shape != (n, n):
        raise ValueError(f"Kinship matrix has shape {K.shape}, expected {(n, n)}")

    # eigenvectors of S (K + offset I) S with the n - p non-null eigenvalues
    offset = np.sqrt(n)
    S = np.eye(n) - X @ np.linalg.solve(X.T @ X, X.T)
    values, vectors = np.linalg.eigh(S @ (K + offset * np.eye(n)) @ S)
    order = np.argsort(values)[::-1][:r]
    xi = values[order] - offset
    eta_sq = (vectors[:, order].T @ y) ** 2

    def neg_reml(log_delta: float) -> float:
        lam = xi + np.exp(log_delta)
        if np.any(lam <= 0):
            return np.inf
        return 0.5 * (r * np.log(np.sum(eta_sq / lam)) + np.sum(np.log(lam)))

    grid = np.linspace(*LOG_DELTA_BOUNDS, LOG_DELTA_GRID)
    costs = np.array([neg_reml(g) for g in grid])
    best = int(np.argmin(costs))
    lo = grid[max(best - 1, 0)]
    hi = grid[min(best + 1, len(grid) - 1)]
    res = minimize_scalar(neg_reml, bounds=(lo, hi), method="bounded")
    log_delta = float(res.x) if res.fun <= costs[best] else float(grid[best])
    delta = float(np.exp(log_delta))

    lam = xi + delta
    vu = float(np.sum(eta_sq / lam)) / r
    ve = delta * vu
    loglik = 0.5 * (r * np.log(r / (2 * np.pi)) - r) - neg_reml(log_delta)

    H = K + delta * np.eye(n)
    Hinv_X = np.linalg.solve(H, X)
    beta = np.linalg.solve(X.T @ Hinv_X, Hinv_X.T @ y)
    return MixedModelFit(vu=vu, ve=ve, beta=beta, delta=delta, loglik=float(loglik))


def _rotation(k_values: np.ndarray, k_vectors: np.ndarray, delta: float) -> np.ndarray:
    """Matrix R with ``R' R = (K + delta I)^-1``."""
    return k_vectors.T / np.sqrt(np.clip(k_values, 0, None) + delta)[:, None]


def _f_test(y: np.ndarray, X: np.ndarray, G: np.ndarray, R: np.ndarray) -> np.ndarray:
    """
    Generalised least squares F test of each marker column of G given fixed effects X.

    All markers share the covariance encoded in R; the residual variance is re-estimated per marker
    on ``n - p - 1`` degrees of freedom.
    """
    ys = R @ y
    Xs = R @ X
    Gs = R @ G
    Q, _ = np.linalg.qr(Xs)
    y_r = ys - Q @ (Q.T @ ys)
    G_r = Gs - Q @ (Q.T @ Gs)

    gg = np.sum(G_r ** 2, axis=0)
    gy = G_r.T @ y_r
    df = len(y) - X.shape[1] - 1
    yy = float(y_r @ y_r)

    pvalues = np.full(G.shape[1], np.nan)
    ok = gg > 1e-10 * max(float(np.sum(Gs ** 2, axis=0).max(initial=0.0)), 1.0)
    if df < 1 or not ok.any():
        return pvalues
    explained = gy[ok] ** 2 / gg[ok]
    s2 = (yy - explained) / df
    fstat = np.where(s2 > 0, explained / np.where(s2 > 0, s2, 1.0), np.inf)
    pvalues[ok] = sstats.f.sf(fstat, 1, df)
    return pvalues


def _score_chunk(task) -> np.ndarray:
    """Worker: p-values for a block of markers, with or without per-marker variance refits."""
    y, X, G, K, k_values, k_vectors, delta, p3d = task
    if p3d:
        return _f_test(y, X, G, _rotation(k_values, k_vectors, delta))
    pvalues = np.full(G.shape[1], np.nan)
    for j in range(G.shape[1]):
        g = G[:, [j]]
        if np.ptp(g) == 0:
            continue
        try:
            fit = mixed_solve(y, np.hstack([X, g]), K)
        except ValueError:
            continue
        pvalues[j] = _f_test(y, X, g, _rotation(k_values, k_vectors, fit.delta))[0]
    return pvalues


def genomic_inflation(pvalues) -> float:
    """Genomic control lambda: median 1-df chi-square statistic over its expected value."""
    p = np.asarray(pvalues, dtype=float)
    p = p[~np.isnan(p)]
    if p.size == 0:
        return float("nan")
    chi2 = sstats.chi2.isf(p, 1)
    return float(np.median(chi2) / sstats.chi2.ppf(0.5, 1))


def _fixed_design(phe: pd.DataFrame, fixed: Optional[List[str]]) -> pd.DataFrame:
    """Numeric covariates as-is, categorical ones as treatment dummies."""
    if not fixed:
        return pd.DataFrame(index=phe.index)
    missing_cols = [c for c in fixed if c not in phe.columns]
    if missing_cols:
        raise ValueError(f"Fixed-effect columns not found in phenotype table: {missing_cols}")
    parts = []
    for col in fixed:
        if pd.api.types.is_numeric_dtype(phe[col]):
            parts.append(phe[[col]].astype(float))
        else:
            dummies = pd.get_dummies(phe[col].astype("category"), prefix=col, drop_first=True, dtype=float)
            dummies.loc[phe[col].isna().to_numpy()] = np.nan
            parts.append(dummies)
    return pd.concat(parts, axis=1)


def gwas(
    pheno: pd.DataFrame,
    geno: pd.DataFrame,
    map_df: Optional[pd.DataFrame] = None,
    K: Optional[pd.DataFrame] = None,
    traits: Optional[List[str]] = None,
    fixed: Optional[List[str]] = None,
    n_pc: int = 0,
    min_maf: float = 0.05,
    p3d: bool = True,
    n_core: int = 1,
    sample_col: Optional[str] = None,
) -> pd.DataFrame:
    """
    Genome-wide association with a kinship-corrected mixed model.

    :param pheno: Phenotype table (sample id column + traits and covariates)
    :param geno: Genotype matrix, individuals x markers coded -1/0/1
    :param map_df: Linkage map (marker, chrom, pos); markers are ordered by it
    :param K: Kinship matrix; built from the markers with mean imputation when None
    :param traits: Trait columns to test (default: all numeric non-fixed columns)
    :param fixed: Phenotype columns used as fixed-effect covariates
    :param n_pc: Number of kinship eigenvectors added as fixed effects
    :param min_maf: Markers below this minor allele frequency are not tested
    :param p3d: Estimate variance components once per trait instead of once per marker
    :param n_core: Number of worker processes
    :param sample_col: Sample id column of the phenotype table (default: first column)
    :return: DataFrame with marker, chrom, pos and one -log10(p) column per trait
    """
    sample_col = sample_col or pheno.columns[0]
    if sample_col not in pheno.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in phenotype table")
    fixed = list(fixed or [])
    if n_pc < 0:
        raise ValueError("n_pc must be >= 0")
    if n_core < 1:
        raise ValueError("n_core must be >= 1")

    if traits is None:
        traits = [
            c for c in trait_columns(pheno, sample_col)
            if c not in fixed and pd.api.types.is_numeric_dtype(pheno[c])
        ]
    if not traits:
        raise ValueError("No trait columns selected for GWAS")
    numeric_columns(pheno, list(traits))

    if map_df is not None:
        geno, map_df = align_to_map(geno, map_df)
    else:
        logger.info("No map provided; markers are placed on a single chromosome in input order.")
        map_df = pd.DataFrame({"marker": geno.columns, "chrom": "1", "pos": np.arange(1, geno.shape[1] + 1)})

    phe_sub, geno_sub = align_samples(pheno, geno, sample_col)
    ids = list(geno_sub.index)

    if K is None:
        K = additive_matrix(geno_sub, impute="mean")
    else:
        absent = [s for s in ids if s not in K.index]
        if absent:
            raise ValueError(f"Individuals missing from the kinship matrix: {absent[:10]}")
        K = K.loc[ids, ids]
    K_all = K.to_numpy(dtype=float)

    qc = marker_qc(geno_sub, min_maf=min_maf, max_missing=1.0)
    keep = qc["keep"].to_numpy()
    keep_idx = np.where(keep)[0]
    markers = geno_sub.columns[keep]
    G_all = mean_impute(geno_sub.loc[:, markers].to_numpy(dtype=float), qc.loc[markers, "freq"].to_numpy(dtype=float))
    logger.info(f"Testing {len(markers)} markers (min MAF {min_maf}); {int((~keep).sum())} markers are not tested.")

    covariates = _fixed_design(phe_sub, fixed)
    if n_pc > 0:
        pcs = kinship_pcs(K, n_pc)
        covariates = pd.concat([covariates, pcs.set_axis(covariates.index, axis=0)], axis=1)
        logger.info(f"Added {n_pc} principal components of the kinship matrix as fixed effects.")

    result = map_df[["marker", "chrom", "pos"]].reset_index(drop=True).copy()
    n_workers = min(n_core, cpu_count())

    for trait in traits:
        y_all = phe_sub[trait].to_numpy(dtype=float)
        obs = ~np.isnan(y_all)
        if covariates.shape[1]:
            obs &= ~covariates.isna().any(axis=1).to_numpy()
        n = int(obs.sum())
        logger.info(f"Trait '{trait}': {n} individuals with observations.")

        y = y_all[obs]
        if n == 0 or np.ptp(y) == 0:
            logger.warning(f"Trait '{trait}' does not vary among its {n} observations; it is not tested.")
            result[trait] = np.nan
            continue
        cov_obs = covariates[obs]
        cov_obs = cov_obs.loc[:, (cov_obs.nunique() > 1).to_numpy()]
        X = np.hstack([np.ones((n, 1)), cov_obs.to_numpy(dtype=float)])
        if n - X.shape[1] - 1 < 1:
            logger.warning(f"Trait '{trait}' has too few observations ({n}) for {X.shape[1]} fixed effects; it is not tested.")
            result[trait] = np.nan
            continue
        K_t = K_all[np.ix_(obs, obs)]
        G_t = G_all[obs]

        try:
            fit = mixed_solve(y, X, K_t)
        except ValueError as e:
            logger.warning(f"Trait '{trait}': null model could not be fitted ({e}); it is not tested.")
            result[trait] = np.nan
            continue
        logger.info(
            f"Trait '{trait}': Vu={fit.vu:.4g}, Ve={fit.ve:.4g}, h2={fit.h2:.3f}"
            + ("" if p3d else " (null model; components refitted per marker)")
        )
        k_values, k_vectors = np.linalg.eigh(K_t)

        chunks = [c for c in np.array_split(np.arange(G_t.shape[1]), max(n_workers, 1)) if len(c)]
        tasks = [(y, X, G_t[:, c], K_t, k_values, k_vectors, fit.delta, p3d) for c in chunks]
        if n_workers > 1 and len(tasks) > 1:
            with Pool(processes=n_workers) as pool:
                parts = pool.map(_score_chunk, tasks)
        else:
            parts = [_score_chunk(task) for task in tasks]
        pvalues = np.concatenate(parts) if parts else np.array([])

        scores = np.full(geno_sub.shape[1], np.nan)
        scores[keep_idx] = -np.log10(np.clip(pvalues, np.finfo(float).tiny, None))
        result[trait] = scores

        lam = genomic_inflation(pvalues)
        logger.info(f"Trait '{trait}': genomic inflation lambda = {lam:.3f}")

    logger.info("GWAS completed.")
    return result


def top_markers(result: pd.DataFrame, trait: str, n: int = 10) -> pd.DataFrame:
    """Markers with the highest scores for a trait."""
    if trait not in result.columns:
        raise ValueError(f"Trait '{trait}' not found in GWAS result")
    return result[["marker", "chrom", "pos", trait]].dropna().nlargest(n, trait).reset_index(drop=True)


def read_gwas(path: str) -> pd.DataFrame:
    """Read a GWAS result table and check the map columns exist."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"GWAS result file not found: {path}")
    logger.info("Loading GWAS data...")
    df = pd.read_csv(path, sep="\t", dtype={"marker": str, "chrom": str})
    required_columns = {"marker", "chrom", "pos"}
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise ValueError(
            f"The GWAS file is missing the following required columns: {missing_columns}. "
            f"Please ensure the file contains columns: {required_columns}."
        )
    logger.info(f"Loaded {len(df)} GWAS markers.")
    return df


def save_gwas(result: pd.DataFrame, out_dir: str = ".", out_name: str = "gwas") -> str:
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, f"{out_name}.gwas.tsv")
    result.to_csv(path, sep="\t", index=False, na_rep="NA", float_format="%.6g")
    logger.info(f"GWAS results saved to: {path}")
    return path
