import os
import re
import importlib
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from kinscan.log import logger


# tokens read as missing genotype calls in delimited tables
MISSING_TOKENS = ["NA", "NaN", "nan", ".", "-9", "N", "./."]

# accepted coding -> (lowest, highest) value and offset to reach -1/0/1
CODINGS = {
    "-101": (-1.0, 1.0, 0.0),
    "012": (0.0, 2.0, -1.0),
}

# columns of a markers-in-rows table that carry map information, not calls
_MAP_COLUMNS = {"chrom", "chr", "chromosome", "pos", "ps", "position", "bp"}


def natural_key(value) -> list:
    """Sort key ordering chromosome names as 1, 2, ..., 10 rather than 1, 10, 2."""
    return [int(tok) if tok.isdigit() else tok.lower() for tok in re.split(r"(\d+)", str(value))]


def _infer_sep(path: str) -> str:
    return "," if path.lower().endswith(".csv") else "\t"


def _encode(geno: pd.DataFrame, coding: str) -> pd.DataFrame:
    """Validate calls against the coding and shift them to -1/0/1."""
    if coding not in CODINGS:
        raise ValueError(f"Invalid coding: {coding}. Choose from {list(CODINGS)}")
    lo, hi, offset = CODINGS[coding]
    try:
        geno = geno.astype(float)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Genotype matrix contains non-numeric calls ({e})") from e
    values = geno.to_numpy()
    observed = values[~np.isnan(values)]
    if observed.size and (observed.min() < lo or observed.max() > hi):
        raise ValueError(
            f"Genotype values must lie in [{lo:g}, {hi:g}] for coding '{coding}', "
            f"found range [{observed.min():g}, {observed.max():g}]"
        )
    if offset:
        geno = geno + offset
    return geno


def read_genotypes(
    path: str,
    sep: Optional[str] = "auto",
    coding: str = "-101",
    markers_in_rows: bool = False,
    id_col: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load a numeric genotype matrix.

    Supported inputs:
        - ``.npz`` archive with arrays ``X`` (individuals x markers), ``ids`` and ``markers``
        - pandas pickle (``.pkl``/``.pickle``) holding a DataFrame
        - delimited table with individual ids in the first column (or ``id_col``)

    :param path: Path to the genotype file
    :param sep: Column separator for delimited tables ("auto" infers from the extension)
    :param coding: "-101" (rrBLUP style) or "012" (allele counts, shifted to -1/0/1)
    :param markers_in_rows: Whether markers are stored in rows; the matrix is transposed
    :param id_col: Identifier column of a delimited table
    :return: DataFrame, index = individuals, columns = markers, NaN for missing calls
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Genotype file not found: {path}")
    logger.info(f"Loading genotype matrix: {path}")

    lower = path.lower()
    if lower.endswith(".npz"):
        with np.load(path, allow_pickle=False) as data:
            if "X" not in data:
                raise ValueError(f"NPZ archive must contain an 'X' array: {path}")
            X = np.asarray(data["X"], dtype=float)
            if X.ndim != 2:
                raise ValueError(f"Genotype array must be 2-dimensional, got shape {X.shape}")
            n_rows, n_cols = X.shape
            ids = data["ids"].astype(str) if "ids" in data else np.array([f"ind{i + 1}" for i in range(n_rows)])
            markers = data["markers"].astype(str) if "markers" in data else np.array([f"m{j + 1}" for j in range(n_cols)])
        if markers_in_rows:
            geno = pd.DataFrame(X, index=markers, columns=ids).T
        else:
            geno = pd.DataFrame(X, index=ids, columns=markers)
    elif lower.endswith((".pkl", ".pickle")):
        geno = pd.read_pickle(path)
        if not isinstance(geno, pd.DataFrame):
            raise ValueError(f"Pickled object must be a pandas DataFrame, got {type(geno).__name__}")
        if markers_in_rows:
            geno = geno.T
    else:
        use_sep = _infer_sep(path) if sep in (None, "auto") else sep
        df = pd.read_csv(path, sep=use_sep, na_values=MISSING_TOKENS)
        key = id_col or df.columns[0]
        if key not in df.columns:
            raise ValueError(f"Identifier column '{key}' not found in {path}")
        df = df.set_index(key)
        if markers_in_rows:
            map_cols = [c for c in df.columns if str(c).lower() in _MAP_COLUMNS]
            if map_cols:
                logger.info(f"Ignoring map columns in genotype table: {map_cols}")
                df = df.drop(columns=map_cols)
            df = df.T
        geno = df

    geno.index = geno.index.astype(str)
    geno.columns = geno.columns.astype(str)
    geno.index.name = "sample"
    geno.columns.name = "marker"
    if geno.index.duplicated().any():
        raise ValueError(f"Duplicated individual identifiers: {geno.index[geno.index.duplicated()].unique().tolist()[:10]}")
    if geno.columns.duplicated().any():
        raise ValueError(f"Duplicated marker names: {geno.columns[geno.columns.duplicated()].unique().tolist()[:10]}")

    geno = _encode(geno, coding)
    n_miss = int(geno.isna().to_numpy().sum())
    logger.info(
        f"Loaded {geno.shape[0]} individuals x {geno.shape[1]} markers "
        f"({n_miss} missing calls, {n_miss / max(geno.size, 1):.2%})."
    )
    return geno


def write_genotypes(geno: pd.DataFrame, path: str):
    """Write a genotype matrix as ``.npz``, pickle or delimited table, chosen by extension."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    lower = path.lower()
    if lower.endswith(".npz"):
        np.savez_compressed(
            path,
            X=geno.to_numpy(dtype=float),
            ids=np.asarray(geno.index, dtype=str),
            markers=np.asarray(geno.columns, dtype=str),
        )
    elif lower.endswith((".pkl", ".pickle")):
        geno.to_pickle(path)
    else:
        geno.to_csv(path, sep=_infer_sep(path), index=True, index_label="sample", na_rep="NA")
    logger.info(f"Genotype matrix saved to: {path}")


def read_map(path: str, sep: str = ",") -> pd.DataFrame:
    """
    Read a linkage map with marker name, chromosome and position columns.

    Columns named marker/chrom/pos are used when present; otherwise the first three columns are taken in that order.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Map file not found: {path}")
    logger.info(f"Loading linkage map: {path}")
    df = pd.read_csv(path, sep=sep)
    if df.shape[1] < 3:
        raise ValueError("Map file must contain at least 3 columns: marker, chrom, pos")

    lowered = {str(c).lower(): c for c in df.columns}
    if {"marker", "chrom", "pos"}.issubset(lowered):
        map_df = df[[lowered["marker"], lowered["chrom"], lowered["pos"]]].copy()
    else:
        map_df = df.iloc[:, :3].copy()
    map_df.columns = ["marker", "chrom", "pos"]

    map_df["marker"] = map_df["marker"].astype(str)
    map_df["chrom"] = map_df["chrom"].astype(str)
    try:
        map_df["pos"] = pd.to_numeric(map_df["pos"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Map positions must be numeric ({e})") from e

    if map_df["marker"].duplicated().any():
        dups = map_df.loc[map_df["marker"].duplicated(), "marker"].unique().tolist()
        raise ValueError(f"Duplicated marker names in map: {dups[:10]}")
    logger.info(f"Loaded {len(map_df)} markers on {map_df['chrom'].nunique()} chromosomes.")
    return map_df


def sort_map(map_df: pd.DataFrame) -> pd.DataFrame:
    """Order a map by chromosome (natural order) and position."""
    chroms = map_df["chrom"].tolist()
    positions = map_df["pos"].tolist()
    order = sorted(range(len(map_df)), key=lambda i: (natural_key(chroms[i]), positions[i]))
    return map_df.iloc[order].reset_index(drop=True)


def align_to_map(geno: pd.DataFrame, map_df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Subset markers to those present in the map, ordered by chromosome and position.

    :return: (genotype matrix with reordered columns, map restricted to those markers)
    """
    in_geno = set(geno.columns)
    map_sorted = sort_map(map_df)
    map_sorted = map_sorted[map_sorted["marker"].isin(in_geno)].reset_index(drop=True)
    if map_sorted.empty:
        raise ValueError("No markers shared between the genotype matrix and the map")

    n_unmapped = len(in_geno) - len(map_sorted)
    if n_unmapped:
        logger.warning(f"{n_unmapped} markers without map position were dropped.")
    n_unused = len(map_df) - len(map_sorted)
    if n_unused:
        logger.info(f"{n_unused} map markers are absent from the genotype matrix.")
    return geno.loc[:, map_sorted["marker"].tolist()], map_sorted


def marker_qc(geno: pd.DataFrame, min_maf: Optional[float] = None, max_missing: Optional[float] = None) -> pd.DataFrame:
    """
    Per-marker allele frequency, minor allele frequency and missing rate.

    Frequencies are computed from observed calls coded -1/0/1 as ``mean(x + 1) / 2``.

    :param min_maf: Minimum minor allele frequency (default 1/(2n))
    :param max_missing: Maximum fraction of missing calls (default 1)
    :return: DataFrame indexed by marker with columns freq, maf, missing_rate, keep
    """
    X = geno.to_numpy(dtype=float)
    n = X.shape[0]
    if min_maf is None:
        min_maf = 1.0 / (2 * n)
    if max_missing is None:
        max_missing = 1.0

    observed = ~np.isnan(X)
    n_obs = observed.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        freq = np.where(n_obs > 0, np.nansum(X + 1, axis=0) / (2 * np.maximum(n_obs, 1)), np.nan)
    maf = np.minimum(freq, 1 - freq)
    missing_rate = 1 - n_obs / n
    keep = (n_obs > 0) & (np.nan_to_num(maf, nan=-1.0) >= min_maf) & (missing_rate <= max_missing)

    qc = pd.DataFrame(
        {"freq": freq, "maf": maf, "missing_rate": missing_rate, "keep": keep},
        index=geno.columns,
    )
    logger.info(
        f"Marker QC (min MAF {min_maf:.3g}, max missing {max_missing:.3g}): "
        f"{int(keep.sum())}/{len(keep)} markers kept."
    )
    return qc


def align_samples(phe: pd.DataFrame, geno: pd.DataFrame, sample_col: str) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Restrict phenotype and genotype tables to shared individuals, in phenotype order."""
    ids = phe[sample_col].astype(str)
    in_geno = set(geno.index)
    shared = [s for s in ids if s in in_geno]
    if not shared:
        raise ValueError("No individuals shared between the phenotype and genotype tables")
    dropped_phe = len(ids) - len(shared)
    dropped_geno = len(in_geno) - len(shared)
    if dropped_phe or dropped_geno:
        logger.warning(
            f"Sample alignment dropped {dropped_phe} phenotyped and {dropped_geno} genotyped individuals."
        )
    phe_sub = phe[ids.isin(in_geno).to_numpy()].reset_index(drop=True)
    geno_sub = geno.loc[shared]
    logger.info(f"{len(shared)} individuals shared between phenotypes and genotypes.")
    return phe_sub, geno_sub


def _encode_gt_tuple(gt) -> float:
    if gt is None:
        return np.nan
    if any(a is None for a in gt):
        return np.nan
    alle = list(gt)
    if len(alle) == 0:
        return np.nan
    if all(a == 0 for a in alle):
        return -1.0
    if len(set(alle)) == 1:
        return 1.0
    return 0.0


def read_vcf(path: str, samples: Optional[List[str]] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Read biallelic GT calls from a VCF into a -1/0/1 matrix and a linkage map.

    Requires pysam.
    """
    try:
        pysam = importlib.import_module('pysam')
    except ImportError as e:
        raise RuntimeError("pysam is required to read VCF; please install pysam") from e
    if not os.path.exists(path):
        raise FileNotFoundError(f"VCF file not found: {path}")

    logger.info(f"Reading VCF: {path}")
    with pysam.VariantFile(path) as vf:
        vcf_samples = list(vf.header.samples)
        use_samples = samples or vcf_samples
        missing = [s for s in use_samples if s not in vcf_samples]
        if missing:
            raise ValueError(f"Samples not found in VCF: {missing[:10]}")

        cols = []
        rows = []
        for rec in vf:
            if rec.alts is None or len(rec.alts) != 1:
                continue
            rid = rec.id or f"{rec.chrom}_{rec.pos}_{rec.ref}_{rec.alts[0]}"
            cols.append([_encode_gt_tuple(rec.samples[s].get("GT", None)) for s in use_samples])
            rows.append((rid, str(rec.chrom), int(rec.pos)))

    if not rows:
        raise ValueError(f"No biallelic variants found in {path}")
    geno = pd.DataFrame(np.array(cols, dtype=float).T, index=use_samples, columns=[r[0] for r in rows])
    geno.index.name = "sample"
    geno.columns.name = "marker"
    map_df = pd.DataFrame(rows, columns=["marker", "chrom", "pos"])
    logger.info(f"Loaded {geno.shape[1]} biallelic variants for {geno.shape[0]} samples from VCF.")
    return geno, map_df
