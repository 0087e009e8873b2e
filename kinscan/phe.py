import os
import re
import math
import pandas as pd
import numpy as np
from typing import List, Optional

from kinscan.log import logger
from kinscan.viz import Visualizer
from scipy import stats as sstats


# ------------------------
# Helpers
# ------------------------

def _infer_sep_from_ext(path: str) -> str:
	lower = (path or "").lower()
	if lower.endswith(".csv"):
		return ","
	# default treat .tsv/.txt as tab
	return "\t"


def _normalize_sep(sep: Optional[str], path: Optional[str]) -> str:
	if sep in (None, "auto"):
		return _infer_sep_from_ext(path or "")
	if sep.lower() in {"csv", ","}:
		return ","
	if sep.lower() in {"tsv", "tab", "\t"}:
		return "\t"
	# allow custom single-char
	return sep


def _read_table(path: str, sep: Optional[str] = None, header: bool = True, encoding: str = "utf-8", **kwargs) -> pd.DataFrame:
	use_sep = _normalize_sep(sep, path)
	try:
		df = pd.read_csv(path, sep=use_sep, header=0 if header else None, encoding=encoding, **kwargs)
	except Exception as e:
		raise ValueError(f"Failed to read table: {path} ({e})") from e
	return df


def _write_table(df: pd.DataFrame, path: str, sep: Optional[str] = None, header: bool = True, index: bool = False, encoding: str = "utf-8"):
	os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
	use_sep = _normalize_sep(sep, path)
	df.to_csv(path, sep=use_sep, header=header, index=index, encoding=encoding)


def trait_columns(df: pd.DataFrame, sample_col: Optional[str] = None, pattern: Optional[str] = None) -> List[str]:
	"""Trait columns of a phenotype table: every column but the sample id, optionally filtered by regex."""
	cols = [c for c in df.columns if c != sample_col]
	if pattern:
		pat = re.compile(pattern)
		cols = [c for c in cols if pat.search(str(c))]
	return cols


def numeric_columns(df: pd.DataFrame, columns: Optional[List[str]]) -> List[str]:
	"""Resolve the columns used for covariance/correlation.

	Explicit columns must all be numeric; otherwise non-numeric columns are skipped.
	"""
	if columns is None:
		numeric = [c for c in df.columns if pd.api.types.is_numeric_dtype(df[c])]
		skipped = [c for c in df.columns if c not in numeric]
		if skipped:
			logger.info(f"Skipping non-numeric columns: {skipped}")
		if not numeric:
			raise ValueError("No numeric columns found in phenotype table")
		return numeric

	missing_cols = [c for c in columns if c not in df.columns]
	if missing_cols:
		raise ValueError(f"Columns not found in phenotype table: {missing_cols}")
	bad = [c for c in columns if not pd.api.types.is_numeric_dtype(df[c])]
	if bad:
		raise TypeError(f"columns must be numeric: {bad} ({', '.join(str(df[c].dtype) for c in bad)})")
	return list(columns)


# ------------------------
# loading / structure
# ------------------------

def read_phenotype(path: str, sep: Optional[str] = "auto", sample_col: Optional[str] = None, encoding: str = "utf-8"):
	"""Read a phenotype table with a header row.

	The first column (or ``sample_col``) holds individual identifiers and is kept as strings;
	every other column is a trait. Returns ``(df, sample_col)``.
	"""
	if not os.path.isfile(path):
		raise FileNotFoundError(f"Phenotype file not found: {path}")
	df = _read_table(path, sep=sep, header=True, encoding=encoding)
	if df.shape[1] < 2:
		raise ValueError("Phenotype file must contain at least 2 columns (sample + trait columns)")
	sample_col = sample_col or df.columns[0]
	if sample_col not in df.columns:
		raise ValueError(f"Sample column '{sample_col}' not found in columns: {list(df.columns)}")
	df[sample_col] = df[sample_col].astype(str)
	if df[sample_col].duplicated().any():
		dups = df.loc[df[sample_col].duplicated(), sample_col].unique().tolist()
		raise ValueError(f"Duplicated sample identifiers in phenotype file: {dups[:10]}")
	logger.info(f"Loaded phenotypes for {df.shape[0]} individuals and {df.shape[1] - 1} traits from {path}")
	return df, sample_col


def describe_table(df: pd.DataFrame, n_values: int = 5) -> pd.DataFrame:
	"""Structure summary of a table: dtype, missing count and leading values per column."""
	rows = []
	for col in df.columns:
		s = df[col]
		head = ", ".join(str(v) for v in s.head(n_values).tolist())
		rows.append({
			"column": col,
			"dtype": str(s.dtype),
			"non_missing": int(s.notna().sum()),
			"missing": int(s.isna().sum()),
			"unique": int(s.nunique(dropna=True)),
			"values": head,
		})
	logger.info(f"Table dimensions: {df.shape[0]} rows x {df.shape[1]} columns")
	return pd.DataFrame(rows)


# ------------------------
# stat
# ------------------------

def _summarize_series(s: pd.Series) -> dict:
	"""Descriptive statistics of one trait; non-numeric entries count as missing."""
	values = pd.to_numeric(s, errors="coerce")
	obs = values.dropna()
	n, k = len(values), len(obs)
	nan = float("nan")

	stats = {
		"count": n,
		"non_missing": k,
		"missing": n - k,
		"missing_rate": (n - k) / n if n else nan,
		"mean": float(obs.mean()) if k else nan,
		"std": float(obs.std()) if k > 1 else nan,
		"min": float(obs.min()) if k else nan,
		"q1": float(obs.quantile(0.25)) if k else nan,
		"median": float(obs.median()) if k else nan,
		"q3": float(obs.quantile(0.75)) if k else nan,
		"max": float(obs.max()) if k else nan,
		"mad": float((obs - obs.median()).abs().median()) if k else nan,
		"skew": float(obs.skew()) if k > 2 else nan,
		"kurtosis": float(obs.kurt()) if k > 3 else nan,
	}
	stats["iqr"] = stats["q3"] - stats["q1"] if k > 1 else nan
	mean, std = stats["mean"], stats["std"]
	stats["cv"] = std / abs(mean) if not (math.isnan(std) or math.isnan(mean)) and abs(mean) > 1e-12 else nan

	varies = obs.nunique() > 1
	# D'Agostino's K^2 needs n >= 8, Shapiro-Wilk is reliable up to 5000
	stats["normaltest_p"] = float(sstats.normaltest(obs.to_numpy())[1]) if k >= 8 and varies else nan
	stats["shapiro_p"] = float(sstats.shapiro(obs.to_numpy())[1]) if 3 <= k <= 5000 and varies else nan
	return stats


def summarize_traits(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
	rows = []
	for col in columns:
		rows.append({"trait": col, **_summarize_series(df[col])})
	return pd.DataFrame(rows)


def phenotype_cov(df: pd.DataFrame, columns: Optional[List[str]] = None) -> pd.DataFrame:
	"""Phenotypic covariance matrix using pairwise-complete observations."""
	cols = numeric_columns(df, columns)
	cov = df[cols].cov()
	logger.info(f"Computed {len(cols)}x{len(cols)} phenotypic covariance matrix")
	return cov


def phenotype_cor(df: pd.DataFrame, columns: Optional[List[str]] = None, method: str = "pearson") -> pd.DataFrame:
	"""Phenotypic correlation matrix (pearson, spearman or kendall), pairwise-complete."""
	if method not in {"pearson", "spearman", "kendall"}:
		raise ValueError(f"Invalid correlation method: {method}. Choose from 'pearson', 'spearman', 'kendall'")
	cols = numeric_columns(df, columns)
	cor = df[cols].corr(method=method)
	logger.info(f"Computed {len(cols)}x{len(cols)} phenotypic {method} correlation matrix")
	return cor


# ------------------------
# CLI handlers
# ------------------------

def _split_names(value: Optional[str]) -> Optional[List[str]]:
	if not value:
		return None
	return [v.strip() for v in value.split(",") if v.strip()]


def phe_stat(args):
	df, sample_col = read_phenotype(args.input, sep=args.sep, sample_col=args.sample_col, encoding=args.encoding)

	trait_cols = trait_columns(df, sample_col, args.columns)
	if not trait_cols:
		raise ValueError("No trait columns selected for statistics")

	out_dir = args.out_dir or "."
	os.makedirs(out_dir, exist_ok=True)
	out_name = args.out_name or "phe_stat"

	structure_path = os.path.join(out_dir, f"{out_name}.structure.tsv")
	_write_table(describe_table(df), structure_path, sep="\t")
	logger.info(f"Phenotype structure saved to: {structure_path}")

	stat_df = summarize_traits(df, trait_cols)
	stats_path = args.stats_file or os.path.join(out_dir, f"{out_name}.stats.tsv")
	_write_table(stat_df, stats_path, sep="\t", header=True)
	logger.info(f"Phenotype statistics saved to: {stats_path}")

	# plot
	try:
		viz = Visualizer()
		import matplotlib.pyplot as plt
		numeric_cols = [c for c in trait_cols if pd.api.types.is_numeric_dtype(df[c])]
		fig = plt.figure(figsize=(args.width, args.height))
		ax = fig.add_subplot(111)
		viz.plot_hist(
			df,
			columns=numeric_cols,
			colors=args.colors,
			alpha=args.alpha,
			bins=args.bins,
			density=args.density,
			fit_curve=args.fit_curve,
			xlabel=args.xlabel,
			ylabel=args.ylabel,
			ax=ax,
		)
		fig_path = os.path.join(out_dir, f"{out_name}.{args.format}")
		plt.tight_layout()
		plt.savefig(fig_path, dpi=300, bbox_inches="tight")
		plt.close()
		logger.info(f"Phenotype distribution figure saved to: {fig_path}")
	except Exception as e:
		logger.warning(f"Plotting failed: {e}")


def phe_cor(args):
	df, sample_col = read_phenotype(args.input, sep=args.sep, sample_col=args.sample_col, encoding=args.encoding)
	columns = _split_names(args.columns)
	if columns is None:
		columns = [c for c in trait_columns(df, sample_col) if pd.api.types.is_numeric_dtype(df[c])]

	cov = phenotype_cov(df, columns)
	cor = phenotype_cor(df, columns, method=args.method)

	out_dir = args.out_dir or "."
	cov_path = os.path.join(out_dir, f"{args.out_name}.cov.tsv")
	cor_path = os.path.join(out_dir, f"{args.out_name}.cor.tsv")
	_write_table(cov, cov_path, sep="\t", index=True)
	_write_table(cor, cor_path, sep="\t", index=True)
	logger.info(f"Covariance matrix saved to: {cov_path}")
	logger.info(f"Correlation matrix saved to: {cor_path}")

	import matplotlib.pyplot as plt
	viz = Visualizer()
	fig = plt.figure(figsize=(args.width, args.height))
	ax = fig.add_subplot(111)
	viz.plot_corr_heatmap(cor, cmap=args.cmap, plot_value=args.plot_value, ax=ax)
	fig_path = os.path.join(out_dir, f"{args.out_name}.cor.{args.format}")
	plt.tight_layout()
	plt.savefig(fig_path, dpi=300, bbox_inches="tight")
	plt.close()
	logger.info(f"Correlation heatmap saved to: {fig_path}")


def phe_scatter(args):
	df, _ = read_phenotype(args.input, sep=args.sep, sample_col=args.sample_col, encoding=args.encoding)
	numeric_columns(df, [args.x, args.y])

	import matplotlib.pyplot as plt
	viz = Visualizer()
	fig = plt.figure(figsize=(args.width, args.height))
	ax = fig.add_subplot(111)
	viz.plot_scatter(df, args.x, args.y, point_size=args.point_size, color=args.color, alpha=args.alpha, ax=ax)
	fig_path = os.path.join(args.out_dir, f"{args.out_name}.{args.format}")
	plt.tight_layout()
	plt.savefig(fig_path, dpi=300, bbox_inches="tight")
	plt.close()
	logger.info(f"Scatter plot saved to: {fig_path}")
