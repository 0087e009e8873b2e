import os
from collections import defaultdict
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd

from kinscan.geno import marker_qc
from kinscan.log import logger


IMPUTE_METHODS = ("mean", "EM")


def mean_impute(X: np.ndarray, freq: np.ndarray) -> np.ndarray:
    """Replace missing calls by the marker mean, 2p - 1 on the -1/0/1 scale."""
    X_imp = X.copy()
    rows, cols = np.where(np.isnan(X))
    X_imp[rows, cols] = 2 * freq[cols] - 1
    return X_imp


def _em_impute(
    X: np.ndarray,
    X_imp: np.ndarray,
    freq: np.ndarray,
    var_a: float,
    A: np.ndarray,
    tol: float,
    max_iter: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Iteratively impute missing calls by their conditional expectation given the relationship matrix.

    Each marker is treated as multivariate normal across individuals with covariance proportional to A,
    so missing calls become ``mu + A_mo A_oo^-1 (x_o - mu)``. Markers sharing a missing pattern
    share one solve. A is rebuilt after every sweep until its relative change drops below ``tol``.
    """
    missing = np.isnan(X)
    mu = 2 * freq - 1

    patterns = defaultdict(list)
    for j in np.where(missing.any(axis=0))[0]:
        patterns[missing[:, j].tobytes()].append(j)
    logger.info(f"EM imputation over {sum(len(v) for v in patterns.values())} markers in {len(patterns)} missing patterns.")

    converged = False
    for iteration in range(1, max_iter + 1):
        ridge = 1e-3 * float(np.mean(np.diag(A)))
        X_new = X_imp.copy()
        for cols in patterns.values():
            m = missing[:, cols[0]]
            o = ~m
            A_oo = A[np.ix_(o, o)] + ridge * np.eye(int(o.sum()))
            A_mo = A[np.ix_(m, o)]
            resid = X[np.ix_(o, cols)] - mu[cols]
            coef = np.linalg.solve(A_oo, resid)
            X_new[np.ix_(m, cols)] = mu[cols] + A_mo @ coef
        np.clip(X_new, -1.0, 1.0, out=X_new)

        W = X_new + 1 - 2 * freq
        A_new = W @ W.T / var_a
        change = float(np.linalg.norm(A_new - A) / np.linalg.norm(A))
        X_imp, A = X_new, A_new
        logger.info(f"EM iteration {iteration}: relative change in A = {change:.4g}")
        if change < tol:
            converged = True
            break

    if not converged:
        logger.warning(f"EM imputation did not converge within {max_iter} iterations (tol={tol}).")
    return A, X_imp


def _shrink(W: np.ndarray, A: np.ndarray, var_a: float) -> Tuple[np.ndarray, float]:
    """Ledoit-Wolf shrinkage of A toward its mean diagonal."""
    n, m = W.shape
    # A is the mean over markers of S_k = m * w_k w_k' / var_a
    col_ss = np.sum(W ** 2, axis=0)
    sum_sq = float(np.sum((m * col_ss / var_a) ** 2))
    numer = (sum_sq - m * float(np.sum(A ** 2))) / m ** 2
    target = float(np.mean(np.diag(A))) * np.eye(n)
    denom = float(np.sum((A - target) ** 2))
    delta = 1.0 if denom <= 0 else float(np.clip(numer / denom, 0.0, 1.0))
    return delta * target + (1 - delta) * A, delta


def additive_matrix(
    geno: pd.DataFrame,
    min_maf: Optional[float] = None,
    max_missing: Optional[float] = None,
    impute: str = "mean",
    tol: float = 0.02,
    max_iter: int = 100,
    shrink: bool = False,
    return_imputed: bool = False,
) -> Union[pd.DataFrame, Tuple[pd.DataFrame, pd.DataFrame]]:
    """
    Additive relationship (co-ancestry) matrix from markers coded -1/0/1.

    ``A = W W' / (2 sum p(1-p))`` with ``W = X + 1 - 2p``, computed on markers passing
    the MAF and missing-rate filters. Missing calls are imputed by the marker mean or by EM.

    :param geno: Genotype matrix, individuals x markers, NaN for missing calls
    :param min_maf: Minimum minor allele frequency (default 1/(2n))
    :param max_missing: Maximum fraction of missing calls per marker (default 1)
    :param impute: "mean" or "EM"
    :param tol: EM convergence tolerance on the relative change of A
    :param max_iter: Maximum number of EM iterations
    :param shrink: Whether to shrink A toward its mean diagonal
    :param return_imputed: Also return the imputed marker matrix
    :return: A as a labelled DataFrame, and the imputed matrix when requested
    """
    method = (impute or "mean").lower()
    if method not in {"mean", "em"}:
        raise ValueError(f"Invalid impute method: {impute}. Choose from {list(IMPUTE_METHODS)}")
    if geno.shape[0] < 2:
        raise ValueError("At least 2 individuals are required to build a relationship matrix")

    logger.info(f"Building additive relationship matrix ({geno.shape[0]} individuals, impute={impute})...")
    qc = marker_qc(geno, min_maf=min_maf, max_missing=max_missing)
    keep = qc["keep"].to_numpy()
    if not keep.any():
        raise ValueError("No markers passed QC; try a lower min_maf or a higher max_missing")

    markers = geno.columns[keep]
    X = geno.loc[:, markers].to_numpy(dtype=float)
    freq = qc.loc[markers, "freq"].to_numpy(dtype=float)
    var_a = 2 * float(np.sum(freq * (1 - freq)))
    if var_a <= 0:
        raise ValueError("All retained markers are monomorphic; relationship matrix is undefined")

    X_imp = mean_impute(X, freq)
    W = X_imp + 1 - 2 * freq
    A = W @ W.T / var_a

    if method == "em" and np.isnan(X).any():
        A, X_imp = _em_impute(X, X_imp, freq, var_a, A, tol=tol, max_iter=max_iter)
        W = X_imp + 1 - 2 * freq

    if shrink:
        A, delta = _shrink(W, A, var_a)
        logger.info(f"Shrinkage intensity: {delta:.4f}")

    ids = geno.index
    A_df = pd.DataFrame(A, index=ids, columns=ids)
    logger.info(
        f"Relationship matrix built from {len(markers)} markers; "
        f"mean diagonal {np.mean(np.diag(A)):.4f}, mean off-diagonal {A[~np.eye(len(ids), dtype=bool)].mean():.4f}."
    )
    if return_imputed:
        return A_df, pd.DataFrame(X_imp, index=ids, columns=markers)
    return A_df


def impute_markers(geno: pd.DataFrame, method: str = "mean", **kwargs) -> pd.DataFrame:
    """Impute missing calls and return the QC-passing marker matrix."""
    _, imputed = additive_matrix(geno, impute=method, return_imputed=True, **kwargs)
    return imputed


def read_kinship(path: str) -> pd.DataFrame:
    """Read a square, tab-delimited kinship matrix labelled by individual in header and first column."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Kinship file not found: {path}")
    K = pd.read_csv(path, sep="\t", index_col=0)
    K.index = K.index.astype(str)
    K.columns = K.columns.astype(str)
    if K.shape[0] != K.shape[1] or list(K.index) != list(K.columns):
        raise ValueError(f"Kinship matrix must be square with matching row and column labels: {path}")
    logger.info(f"Loaded {K.shape[0]}x{K.shape[1]} kinship matrix from {path}")
    return K.astype(float)


def write_kinship(K: pd.DataFrame, path: str):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    K.to_csv(path, sep="\t", index=True, float_format="%.6g")
    logger.info(f"Kinship matrix saved to: {path}")
