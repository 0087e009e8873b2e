from typing import NamedTuple, Optional

import numpy as np
import pandas as pd

from kinscan.geno import marker_qc
from kinscan.kinship import mean_impute
from kinscan.log import logger


class PCAResult(NamedTuple):
    scores: pd.DataFrame
    eigenvalues: np.ndarray
    explained: np.ndarray
    loadings: pd.DataFrame

    def summary(self) -> pd.DataFrame:
        """Eigenvalue, explained and cumulative variance ratio per retained component."""
        k = self.scores.shape[1]
        return pd.DataFrame({
            "pc": self.scores.columns,
            "eigenvalue": self.eigenvalues[:k],
            "explained": self.explained[:k],
            "cumulative": np.cumsum(self.explained)[:k],
        })


def _fix_signs(vectors: np.ndarray) -> np.ndarray:
    """Flip each column so its largest-magnitude entry is positive."""
    idx = np.argmax(np.abs(vectors), axis=0)
    signs = np.sign(vectors[idx, np.arange(vectors.shape[1])])
    signs[signs == 0] = 1
    return signs


def marker_pca(
    geno: pd.DataFrame,
    n_pc: int = 10,
    min_maf: Optional[float] = None,
    max_missing: Optional[float] = None,
) -> PCAResult:
    """
    Principal component analysis of a marker matrix.

    Markers passing QC are mean-imputed and centred; components come from the SVD of the centred matrix.

    :param geno: Genotype matrix, individuals x markers
    :param n_pc: Number of components to keep (capped at min(n, m))
    """
    if n_pc < 1:
        raise ValueError("n_pc must be >= 1")
    qc = marker_qc(geno, min_maf=min_maf, max_missing=max_missing)
    markers = geno.columns[qc["keep"].to_numpy()]
    if len(markers) == 0:
        raise ValueError("No markers passed QC for PCA")

    X = mean_impute(geno.loc[:, markers].to_numpy(dtype=float), qc.loc[markers, "freq"].to_numpy(dtype=float))
    W = X - X.mean(axis=0)
    n = W.shape[0]

    logger.info(f"Running PCA on {n} individuals x {len(markers)} markers...")
    U, s, Vt = np.linalg.svd(W, full_matrices=False)
    eigenvalues = s ** 2 / max(n - 1, 1)
    total = eigenvalues.sum()
    explained = eigenvalues / total if total > 0 else np.zeros_like(eigenvalues)

    k = min(n_pc, len(s))
    if k < n_pc:
        logger.warning(f"Requested {n_pc} components but only {k} are available.")
    signs = _fix_signs(Vt[:k].T)
    columns = [f"PC{i + 1}" for i in range(k)]
    scores = pd.DataFrame(U[:, :k] * s[:k] * signs, index=geno.index, columns=columns)
    loadings = pd.DataFrame(Vt[:k].T * signs, index=markers, columns=columns)

    logger.info(
        "Variance explained: "
        + ", ".join(f"{c} {v:.2%}" for c, v in zip(columns, explained[:k]))
    )
    return PCAResult(scores=scores, eigenvalues=eigenvalues, explained=explained, loadings=loadings)


def kinship_pcs(K: pd.DataFrame, n_pc: int) -> pd.DataFrame:
    """Leading eigenvectors of a kinship matrix, labelled by individual."""
    n = K.shape[0]
    if n_pc < 1 or n_pc > n:
        raise ValueError(f"n_pc must be between 1 and {n}, got {n_pc}")
    values, vectors = np.linalg.eigh(K.to_numpy(dtype=float))
    order = np.argsort(values)[::-1][:n_pc]
    vectors = vectors[:, order]
    vectors = vectors * _fix_signs(vectors)
    return pd.DataFrame(vectors, index=K.index, columns=[f"PC{i + 1}" for i in range(n_pc)])
