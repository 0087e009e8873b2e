from kinscan import __version__
from kinscan.geno import read_genotypes, read_map, align_to_map, read_vcf, write_genotypes
from kinscan.gwas import gwas, read_gwas, save_gwas, top_markers
from kinscan.kinship import IMPUTE_METHODS, additive_matrix, impute_markers, read_kinship, write_kinship
from kinscan.log import logger, set_console_level
from kinscan.pca import marker_pca
from kinscan.phe import phe_stat, phe_cor, phe_scatter, read_phenotype
from kinscan.viz import Visualizer

import argparse
import logging
import os
from multiprocessing import cpu_count

import pandas as pd
import matplotlib.pyplot as plt
from typing import List, Optional


def parse_names(raw: Optional[str]) -> Optional[List[str]]:
    """Comma-separated names, or one name per line when ``raw`` is a file."""
    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    if os.path.isfile(os.path.expanduser(candidate)):
        with open(os.path.expanduser(candidate), "r", encoding="utf-8") as reader:
            names = [line.strip() for line in reader if line.strip()]
    else:
        names = [item.strip() for item in candidate.split(",") if item.strip()]
    return names or None


def load_markers(args):
    """Load the genotype matrix (table/npz/pickle or VCF) and align it to the map when given."""
    if getattr(args, "vcf", None):
        geno, map_df = read_vcf(args.vcf)
    elif getattr(args, "geno", None):
        geno = read_genotypes(args.geno, sep=args.geno_sep, coding=args.coding, markers_in_rows=args.markers_in_rows)
        map_df = None
    else:
        raise ValueError("Either --geno or --vcf must be provided.")

    if getattr(args, "map", None):
        map_df = read_map(args.map, sep=args.map_sep)
    if map_df is not None:
        geno, map_df = align_to_map(geno, map_df)
    return geno, map_df


def add_marker_args(parser):
    parser.add_argument("--geno", type=str, help="Genotype matrix: TSV/CSV table, .npz archive or pandas pickle")
    parser.add_argument("--vcf", type=str, help="VCF genotype file (alternative to --geno, requires pysam)")
    parser.add_argument("--geno_sep", type=str, default="auto", help="Separator of a genotype table (default: %(default)s)")
    parser.add_argument("--coding", type=str, default="-101", choices=["-101", "012"], help="Genotype coding (default: %(default)s)")
    parser.add_argument("--markers_in_rows", action="store_true", help="Markers are stored in rows and individuals in columns")
    parser.add_argument("--map", type=str, help="Linkage map file with marker, chrom, pos columns")
    parser.add_argument("--map_sep", type=str, default=",", help="Separator of the map file (default: %(default)s)")


def add_figure_args(parser, width, height):
    parser.add_argument("--width", type=float, default=width, help="Figure width (default: %(default)s)")
    parser.add_argument("--height", type=float, default=height, help="Figure height (default: %(default)s)")
    parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")


def add_output_args(parser, out_name):
    parser.add_argument("--out_dir", "--out-dir", dest="out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    parser.add_argument("--out_name", "--out-name", dest="out_name", type=str, default=out_name, help="Output file name prefix (default: %(default)s)")


def run_kinship(args):
    """Build the additive relationship matrix."""
    logger.info("Initializing kinship analysis...")
    geno, _ = load_markers(args)

    A, imputed = additive_matrix(
        geno,
        min_maf=args.min_maf,
        max_missing=args.max_missing,
        impute=args.impute,
        tol=args.tol,
        max_iter=args.max_iter,
        shrink=args.shrink,
        return_imputed=True,
    )
    write_kinship(A, os.path.join(args.out_dir, f"{args.out_name}.kinship.tsv"))
    if args.save_imputed:
        write_genotypes(imputed, os.path.join(args.out_dir, f"{args.out_name}.imputed.{args.imputed_format}"))

    visualizer = Visualizer()
    fig = plt.figure(figsize=(args.width, args.height))
    ax = fig.add_subplot(111)
    visualizer.plot_kinship(A, cmap=args.cmap, ax=ax)
    plt.tight_layout()
    plt.savefig(os.path.join(args.out_dir, f"{args.out_name}.kinship.{args.format}"), dpi=300, bbox_inches="tight")
    plt.close()
    logger.info("Kinship analysis completed!")


def run_impute(args):
    """Impute missing marker calls."""
    logger.info("Initializing marker imputation...")
    geno, _ = load_markers(args)
    imputed = impute_markers(
        geno,
        method=args.impute,
        min_maf=args.min_maf,
        max_missing=args.max_missing,
        tol=args.tol,
        max_iter=args.max_iter,
    )
    write_genotypes(imputed, os.path.join(args.out_dir, f"{args.out_name}.imputed.{args.imputed_format}"))
    logger.info("Imputation completed!")


def run_pca(args):
    """Principal components of the marker matrix."""
    logger.info("Initializing PCA...")
    geno, _ = load_markers(args)
    result = marker_pca(geno, n_pc=args.n_pc, min_maf=args.min_maf, max_missing=args.max_missing)

    scores_path = os.path.join(args.out_dir, f"{args.out_name}.pca.tsv")
    result.scores.to_csv(scores_path, sep="\t", index=True, index_label="sample", float_format="%.6g")
    summary_path = os.path.join(args.out_dir, f"{args.out_name}.pca_variance.tsv")
    result.summary().to_csv(summary_path, sep="\t", index=False, float_format="%.6g")
    logger.info(f"PC scores saved to: {scores_path}")
    logger.info(f"Explained variance saved to: {summary_path}")

    groups = None
    if args.samples_file:
        samples_df = pd.read_csv(args.samples_file, sep=None, engine="python", dtype=str)
        if samples_df.shape[1] < 2:
            raise ValueError("--samples_file must contain 2 columns: sample, group")
        groups = samples_df.set_index(samples_df.columns[0])[samples_df.columns[1]]

    visualizer = Visualizer()
    fig = plt.figure(figsize=(args.width, args.height))
    spec = fig.add_gridspec(1, 3)
    ax_pca = fig.add_subplot(spec[0, :2])
    ax_scree = fig.add_subplot(spec[0, 2])
    pcs = ("PC1", "PC2") if result.scores.shape[1] >= 2 else ("PC1", "PC1")
    visualizer.plot_pca(result.scores, explained=result.explained, pcs=pcs, groups=groups,
                        point_size=args.point_size, ax=ax_pca)
    visualizer.plot_scree(result.explained, n=args.n_pc, ax=ax_scree)
    plt.tight_layout()
    plt.savefig(os.path.join(args.out_dir, f"{args.out_name}.pca.{args.format}"), dpi=300, bbox_inches="tight")
    plt.close()
    logger.info("PCA completed!")


def _plot_gwas_trait(visualizer, gwas_df, trait, args, out_path, qq=True):
    fig = plt.figure(figsize=(args.width, args.height))
    if qq:
        spec = fig.add_gridspec(1, 5)
        ax1 = fig.add_subplot(spec[0, :4])
        ax2 = fig.add_subplot(spec[0, 4])
        visualizer.plot_manhattan(gwas_df, trait, chr_unit=args.chr_unit, chr_colors=args.chr_colors,
                                  sig_threshold=args.sig_threshold, point_size=args.point_size, ax=ax1)
        visualizer.plot_qq(gwas_df, trait, point_size=args.point_size, ax=ax2)
    else:
        ax = fig.add_subplot(111)
        visualizer.plot_manhattan(gwas_df, trait, chr_unit=args.chr_unit, chr_colors=args.chr_colors,
                                  sig_threshold=args.sig_threshold, point_size=args.point_size, ax=ax)
    plt.tight_layout()
    plt.savefig(out_path, dpi=300, bbox_inches="tight")
    plt.close()
    logger.info(f"Figure saved to: {out_path}")


def run_gwas(args):
    """Mixed-model GWAS of one or more traits."""
    logger.info("Initializing GWAS analysis...")
    pheno, sample_col = read_phenotype(args.phe, sep=args.phe_sep, sample_col=args.sample_col)
    geno, map_df = load_markers(args)

    K = read_kinship(args.kinship) if args.kinship else None
    n_core = args.n_core if args.n_core > 0 else cpu_count()

    result = gwas(
        pheno,
        geno,
        map_df=map_df,
        K=K,
        traits=parse_names(args.traits),
        fixed=parse_names(args.fixed),
        n_pc=args.n_pc,
        min_maf=args.min_maf,
        p3d=not args.no_p3d,
        n_core=n_core,
        sample_col=sample_col,
    )
    save_gwas(result, out_dir=args.out_dir, out_name=args.out_name)

    visualizer = Visualizer()
    traits = [c for c in result.columns if c not in ("marker", "chrom", "pos")]
    for trait in traits:
        top = top_markers(result, trait, n=args.top_n)
        logger.info(f"Top markers for '{trait}':\n{top.to_string(index=False)}")
        if args.no_plot or result[trait].notna().sum() == 0:
            continue
        out_path = os.path.join(args.out_dir, f"{args.out_name}.{trait}.{args.format}")
        _plot_gwas_trait(visualizer, result, trait, args, out_path, qq=True)

    logger.info("GWAS analysis completed!")


def _plot_traits(args):
    gwas_df = read_gwas(args.summary)
    traits = parse_names(args.trait) or [c for c in gwas_df.columns if c not in ("marker", "chrom", "pos")]
    missing = [t for t in traits if t not in gwas_df.columns]
    if missing:
        raise ValueError(f"Traits not found in GWAS file: {missing}")
    return gwas_df, traits


def plot_manhattan(args):
    """Manhattan plot"""
    logger.info("Starting plot subcommand...")
    visualizer = Visualizer()
    gwas_df, traits = _plot_traits(args)
    for trait in traits:
        out_path = os.path.join(args.out_dir, f"{args.out_name}.{trait}.{args.format}")
        _plot_gwas_trait(visualizer, gwas_df, trait, args, out_path, qq=args.qq)
    logger.info("Plotting completed!")


def plot_qq(args):
    """QQ plot"""
    logger.info("Starting plot subcommand...")
    visualizer = Visualizer()
    gwas_df, traits = _plot_traits(args)
    for trait in traits:
        fig = plt.figure(figsize=(args.width, args.height))
        ax = fig.add_subplot(111)
        visualizer.plot_qq(gwas_df, trait, point_size=args.point_size, ax=ax)
        plt.tight_layout()
        plt.savefig(os.path.join(args.out_dir, f"{args.out_name}.{trait}.qq.{args.format}"), dpi=300, bbox_inches="tight")
        plt.close()
    logger.info("Plotting completed!")


def build_parser():
    description = """
    kinscan: phenotype summaries, additive relationship matrices, marker imputation,
    population structure and mixed-model GWAS.
    """

    epilog = """
    Example usage:
    kinscan phe stat --input pheno.txt --out-dir results
    kinscan kinship --geno markers.npz --map map.csv --impute EM --out_dir results
    kinscan gwas --phe pheno.txt --geno markers.npz --map map.csv --n_pc 3 --n_core 4 --out_dir results
    """

    parser = argparse.ArgumentParser(
        prog="kinscan",
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter  # Preserve formatting
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--quiet", action="store_true", help="Only print warnings and errors to the console (the log file keeps everything)")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # phe subcommand group
    phe_parser = subparsers.add_parser("phe", help="Phenotype utilities: stat, cor, scatter")
    phe_subparsers = phe_parser.add_subparsers(dest="phe_command", help="phe subcommands")

    def add_phe_input(p):
        p.add_argument("--input", type=str, required=True, help="Input phenotype file with header (tab-delimited by default)")
        p.add_argument("--sep", type=str, default="auto", help="Input separator: auto/csv/tsv/tab/','/'\\t'")
        p.add_argument("--sample-col", "--sample_col", dest="sample_col", type=str, default=None, help="Sample ID column name (default: first column)")
        p.add_argument("--encoding", type=str, default="utf-8", help="File encoding")
        p.add_argument("--out-dir", "--out_dir", dest="out_dir", type=str, default=".", help="Output directory")

    phe_stat_p = phe_subparsers.add_parser("stat", help="Compute phenotype statistics and plot histograms")
    add_phe_input(phe_stat_p)
    phe_stat_p.add_argument("--columns", type=str, default=None, help="Regex to select traits (default: all non-sample columns)")
    phe_stat_p.add_argument("--out-name", "--out_name", dest="out_name", type=str, default="phe_stat", help="Output name prefix")
    phe_stat_p.add_argument("--stats-file", type=str, default=None, help="Custom path for stats table (default: <out_dir>/<out_name>.stats.tsv)")
    phe_stat_p.add_argument("--bins", type=int, default=30, help="Histogram bins")
    phe_stat_p.add_argument("--density", action="store_true", help="Histogram as density")
    phe_stat_p.add_argument("--fit-curve", action="store_true", help="Add fitted normal curve")
    phe_stat_p.add_argument("--colors", type=str, nargs="+", help="Colors for plots")
    phe_stat_p.add_argument("--alpha", type=float, default=0.7, help="Transparency for plots")
    phe_stat_p.add_argument("--xlabel", type=str, default=None, help="X label")
    phe_stat_p.add_argument("--ylabel", type=str, default=None, help="Y label")
    add_figure_args(phe_stat_p, 8, 6)
    phe_stat_p.set_defaults(func=phe_stat)

    phe_cor_p = phe_subparsers.add_parser("cor", help="Phenotypic covariance and correlation matrices")
    add_phe_input(phe_cor_p)
    phe_cor_p.add_argument("--columns", type=str, default=None, help="Comma-separated trait columns (default: all numeric traits)")
    phe_cor_p.add_argument("--method", type=str, default="pearson", choices=["pearson", "spearman", "kendall"], help="Correlation method (default: %(default)s)")
    phe_cor_p.add_argument("--cmap", type=str, default="RdBu_r", help="Colormap for the heatmap (default: %(default)s)")
    phe_cor_p.add_argument("--plot-value", action="store_true", help="Print correlation values in the heatmap")
    phe_cor_p.add_argument("--out-name", "--out_name", dest="out_name", type=str, default="phe", help="Output name prefix")
    add_figure_args(phe_cor_p, 6, 5)
    phe_cor_p.set_defaults(func=phe_cor)

    phe_scatter_p = phe_subparsers.add_parser("scatter", help="Scatter plot of two traits")
    add_phe_input(phe_scatter_p)
    phe_scatter_p.add_argument("--x", type=str, required=True, help="Trait on the x-axis")
    phe_scatter_p.add_argument("--y", type=str, required=True, help="Trait on the y-axis")
    phe_scatter_p.add_argument("--point-size", type=float, default=15, help="Point size")
    phe_scatter_p.add_argument("--color", type=str, default="#4C72B0", help="Point color")
    phe_scatter_p.add_argument("--alpha", type=float, default=0.7, help="Transparency")
    phe_scatter_p.add_argument("--out-name", "--out_name", dest="out_name", type=str, default="phe_scatter", help="Output name prefix")
    add_figure_args(phe_scatter_p, 5, 5)
    phe_scatter_p.set_defaults(func=phe_scatter)

    # kinship subcommand
    kinship_parser = subparsers.add_parser("kinship", help="Additive relationship matrix from markers")
    add_marker_args(kinship_parser)
    kinship_parser.add_argument("--min_maf", type=float, default=None, help="Minimum minor allele frequency (default: 1/(2n))")
    kinship_parser.add_argument("--max_missing", type=float, default=None, help="Maximum missing rate per marker (default: 1)")
    kinship_parser.add_argument("--impute", type=str, default="mean", choices=list(IMPUTE_METHODS), help="Imputation method (default: %(default)s)")
    kinship_parser.add_argument("--tol", type=float, default=0.02, help="EM convergence tolerance (default: %(default)s)")
    kinship_parser.add_argument("--max_iter", type=int, default=100, help="Maximum EM iterations (default: %(default)s)")
    kinship_parser.add_argument("--shrink", action="store_true", help="Shrink the matrix toward its mean diagonal")
    kinship_parser.add_argument("--save_imputed", action="store_true", help="Also write the imputed marker matrix")
    kinship_parser.add_argument("--imputed_format", type=str, default="npz", choices=["npz", "tsv", "csv", "pkl"], help="Format of the imputed matrix (default: %(default)s)")
    kinship_parser.add_argument("--cmap", type=str, default="viridis", help="Colormap for the heatmap (default: %(default)s)")
    add_figure_args(kinship_parser, 8, 7)
    add_output_args(kinship_parser, "output")
    kinship_parser.set_defaults(func=run_kinship)

    # impute subcommand
    impute_parser = subparsers.add_parser("impute", help="Impute missing marker calls")
    add_marker_args(impute_parser)
    impute_parser.add_argument("--min_maf", type=float, default=None, help="Minimum minor allele frequency (default: 1/(2n))")
    impute_parser.add_argument("--max_missing", type=float, default=None, help="Maximum missing rate per marker (default: 1)")
    impute_parser.add_argument("--impute", type=str, default="mean", choices=list(IMPUTE_METHODS), help="Imputation method (default: %(default)s)")
    impute_parser.add_argument("--tol", type=float, default=0.02, help="EM convergence tolerance (default: %(default)s)")
    impute_parser.add_argument("--max_iter", type=int, default=100, help="Maximum EM iterations (default: %(default)s)")
    impute_parser.add_argument("--imputed_format", type=str, default="npz", choices=["npz", "tsv", "csv", "pkl"], help="Output format (default: %(default)s)")
    add_output_args(impute_parser, "output")
    impute_parser.set_defaults(func=run_impute)

    # pca subcommand
    pca_parser = subparsers.add_parser("pca", help="Principal component analysis of markers")
    add_marker_args(pca_parser)
    pca_parser.add_argument("--n_pc", type=int, default=10, help="Number of components to keep (default: %(default)s)")
    pca_parser.add_argument("--min_maf", type=float, default=None, help="Minimum minor allele frequency (default: 1/(2n))")
    pca_parser.add_argument("--max_missing", type=float, default=None, help="Maximum missing rate per marker (default: 1)")
    pca_parser.add_argument("--samples_file", type=str, help="Path to samples file (2 columns: sample, group) used to color points")
    pca_parser.add_argument("--point_size", type=float, default=15, help="Point size (default: %(default)s)")
    add_figure_args(pca_parser, 10, 4)
    add_output_args(pca_parser, "output")
    pca_parser.set_defaults(func=run_pca)

    # gwas subcommand
    gwas_parser = subparsers.add_parser("gwas", help="Mixed-model genome-wide association")
    gwas_parser.add_argument("--phe", type=str, required=True, help="Phenotype file with header (first column: sample ID)")
    gwas_parser.add_argument("--phe_sep", type=str, default="auto", help="Phenotype separator (default: %(default)s)")
    gwas_parser.add_argument("--sample_col", "--sample-col", dest="sample_col", type=str, default=None, help="Sample ID column (default: first column)")
    add_marker_args(gwas_parser)
    gwas_parser.add_argument("--kinship", type=str, help="Precomputed kinship matrix (default: built from markers)")
    gwas_parser.add_argument("--traits", type=str, help="Comma-separated traits or a file with one trait per line (default: all numeric traits)")
    gwas_parser.add_argument("--fixed", type=str, help="Comma-separated phenotype columns used as fixed effects")
    gwas_parser.add_argument("--n_pc", type=int, default=0, help="Number of kinship principal components as fixed effects (default: %(default)s)")
    gwas_parser.add_argument("--min_maf", type=float, default=0.05, help="Minimum minor allele frequency of tested markers (default: %(default)s)")
    gwas_parser.add_argument("--no_p3d", action="store_true", help="Re-estimate variance components for every marker")
    gwas_parser.add_argument("--n_core", type=int, default=1, help="Number of worker processes, 0 for all cores (default: %(default)s)")
    gwas_parser.add_argument("--top_n", type=int, default=10, help="Number of top markers to report per trait (default: %(default)s)")
    gwas_parser.add_argument("--no_plot", action="store_true", help="Skip Manhattan/QQ figures")
    gwas_parser.add_argument("--chr_unit", type=str, default="mb", help="Unit for x-axis (default: %(default)s)")
    gwas_parser.add_argument("--chr_colors", type=str, nargs="+", help="Colors for chromosomes")
    gwas_parser.add_argument("--sig_threshold", type=float, help="Significance p-value threshold line")
    gwas_parser.add_argument("--point_size", type=float, default=5, help="Point size (default: %(default)s)")
    add_figure_args(gwas_parser, 12, 3)
    add_output_args(gwas_parser, "output")
    gwas_parser.set_defaults(func=run_gwas)

    # plot subcommand
    plot_parser = subparsers.add_parser("plot", help="Visualize GWAS results")
    plot_subparsers = plot_parser.add_subparsers(dest="plot_type", help="Plot types")

    manhattan_parser = plot_subparsers.add_parser("manhattan", help="Generate Manhattan (and QQ) plots")
    manhattan_parser.add_argument("--summary", type=str, required=True, help="Path to a GWAS result table")
    manhattan_parser.add_argument("--trait", type=str, help="Comma-separated trait columns (default: all)")
    manhattan_parser.add_argument("--chr_unit", type=str, default="mb", help="Unit for x-axis (default: %(default)s)")
    manhattan_parser.add_argument("--chr_colors", type=str, nargs="+", help="Colors for chromosomes")
    manhattan_parser.add_argument("--sig_threshold", type=float, help="Significance p-value threshold line")
    manhattan_parser.add_argument("--point_size", type=float, default=5, help="Point size (default: %(default)s)")
    manhattan_parser.add_argument("--qq", action="store_true", help="Whether to add a QQ plot (default: %(default)s)")
    add_figure_args(manhattan_parser, 10, 3)
    add_output_args(manhattan_parser, "output")
    manhattan_parser.set_defaults(plot_func=plot_manhattan)

    qq_parser = plot_subparsers.add_parser("qq", help="Generate QQ plots")
    qq_parser.add_argument("--summary", type=str, required=True, help="Path to a GWAS result table")
    qq_parser.add_argument("--trait", type=str, help="Comma-separated trait columns (default: all)")
    qq_parser.add_argument("--point_size", type=float, default=5, help="Point size (default: %(default)s)")
    add_figure_args(qq_parser, 4, 4)
    add_output_args(qq_parser, "output")
    qq_parser.set_defaults(plot_func=plot_qq)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.quiet:
        set_console_level(logging.WARNING)
    if args.command and (hasattr(args, "func") or hasattr(args, "plot_func")):
        # Create output directory if it doesn't exist
        os.makedirs(args.out_dir, exist_ok=True)
        if hasattr(args, 'plot_func'):
            args.plot_func(args)
        else:
            args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
