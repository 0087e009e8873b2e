import numpy as np
import pandas as pd
from scipy.stats import norm, pearsonr
import matplotlib as mpl
mpl.use('Agg')

from kinscan.geno import natural_key
from kinscan.log import logger
from typing import Optional


class Visualizer:
    def __init__(self):
        pass

    @staticmethod
    def _check_ax(ax):
        if ax is None:
            raise ValueError("Please provide a valid Matplotlib Axes object for plotting.")

    def plot_hist(self, df, columns=None, colors=None, alpha=0.7, bins=30,
                  density=False, fit_curve=False, fit_bins=100,
                  xlabel=None, ylabel=None, ax=None):
        """
        Plot histograms of phenotype columns on one Axes.

        :param df: DataFrame containing the traits
        :param columns: Columns to plot. If None, use all numeric columns
        :param colors: List of colors for each column. If None, use default matplotlib colors
        :param alpha: Transparency level (0-1)
        :param bins: Number of bins
        :param density: Show density instead of counts
        :param fit_curve: Overlay a fitted normal curve per column
        :param fit_bins: Number of points for the fitted curve
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting histogram...")
        self._check_ax(ax)

        if columns is None:
            columns = df.select_dtypes(include=[np.number]).columns.tolist()
        else:
            missing_cols = [col for col in columns if col not in df.columns]
            if missing_cols:
                raise ValueError(f"Columns not found in DataFrame: {missing_cols}")
        if not columns:
            raise ValueError("No numeric columns found in DataFrame")

        if colors is None:
            colors = [f"C{i}" for i in range(len(columns))]
        elif len(colors) < len(columns):
            # Cycle colors if not enough provided
            colors = (colors * ((len(columns) // len(colors)) + 1))[:len(columns)]

        for col, color in zip(columns, colors):
            col_data = df[col].dropna().to_numpy(dtype=float)
            if len(col_data) == 0:
                logger.warning(f"Column '{col}' has no observations; skipped.")
                continue
            _, bins_edges, _ = ax.hist(col_data, bins=bins, density=density, alpha=alpha,
                                       color=color, label=col, edgecolor='white')
            if fit_curve and len(col_data) >= 2:
                mu, sigma = norm.fit(col_data)
                x = np.linspace(col_data.min(), col_data.max(), fit_bins)
                y = norm.pdf(x, mu, sigma)
                if not density:
                    y = y * len(col_data) * (bins_edges[1] - bins_edges[0])
                ax.plot(x, y, '--', linewidth=2, color=color, zorder=10)

        ax.set_xlabel(xlabel if xlabel is not None else (columns[0] if len(columns) == 1 else "Value"))
        ax.set_ylabel(ylabel if ylabel is not None else ("Density" if density else "Count"))
        ax.set_title("Histogram")
        ax.spines[['top', 'right']].set_visible(False)
        if len(columns) > 1:
            ax.legend(frameon=False)

    def plot_scatter(self, df, x, y, point_size=15, color="#4C72B0", alpha=0.7, ax=None):
        """Scatter plot of two traits, with the Pearson correlation in the title."""
        logger.info(f"Plotting scatter of {y} against {x}...")
        self._check_ax(ax)
        pair = df[[x, y]].dropna()
        ax.scatter(pair[x], pair[y], s=point_size, color=color, alpha=alpha, edgecolors='none')
        ax.set_xlabel(x)
        ax.set_ylabel(y)
        title = f"{y} vs {x}"
        if len(pair) >= 3 and pair[x].nunique() > 1 and pair[y].nunique() > 1:
            r, pval = pearsonr(pair[x], pair[y])
            title += f" (r = {r:.3f}, p = {pval:.2g})"
        ax.set_title(title)
        ax.spines[['top', 'right']].set_visible(False)

    def _plot_matrix(self, matrix: pd.DataFrame, cmap, vmin, vmax, label, plot_value, ax):
        values = matrix.to_numpy(dtype=float)
        im = ax.imshow(values, cmap=cmap, vmin=vmin, vmax=vmax, interpolation='nearest')
        ax.figure.colorbar(im, ax=ax, shrink=0.8, label=label)
        n = values.shape[0]
        # individual labels become unreadable beyond a few dozen rows
        if n <= 50:
            ax.set_xticks(range(n), [str(c) for c in matrix.columns], rotation=90)
            ax.set_yticks(range(n), [str(i) for i in matrix.index])
        else:
            ax.set_xticks([])
            ax.set_yticks([])
        if plot_value and n <= 30:
            threshold = (np.nanmax(np.abs(values)) if np.isfinite(values).any() else 1) / 2
            for i in range(n):
                for j in range(values.shape[1]):
                    ax.text(j, i, f"{values[i, j]:.2f}", ha="center", va="center",
                            color="white" if abs(values[i, j]) > threshold else "black", fontsize=8)

    def plot_corr_heatmap(self, cor: pd.DataFrame, cmap="RdBu_r", plot_value=False, ax=None):
        """Heatmap of a correlation matrix on a fixed [-1, 1] scale."""
        logger.info("Plotting correlation heatmap...")
        self._check_ax(ax)
        self._plot_matrix(cor, cmap or "RdBu_r", -1, 1, "Correlation", plot_value, ax)
        ax.set_title("Phenotypic correlation")

    def plot_kinship(self, K: pd.DataFrame, cmap="viridis", order=True, ax=None):
        """
        Heatmap of a kinship matrix.

        :param order: Reorder individuals by the leading eigenvector so related groups form blocks
        """
        logger.info("Plotting kinship heatmap...")
        self._check_ax(ax)
        if order and K.shape[0] > 2:
            values, vectors = np.linalg.eigh(K.to_numpy(dtype=float))
            idx = np.argsort(vectors[:, np.argmax(values)])
            K = K.iloc[idx, idx]
        self._plot_matrix(K, cmap or "viridis", None, None, "Relationship", False, ax)
        ax.set_title("Additive relationship matrix")

    def plot_pca(self, scores: pd.DataFrame, explained=None, pcs=("PC1", "PC2"),
                 groups: Optional[pd.Series] = None, point_size=15, alpha=0.8, ax=None):
        """
        Scatter plot of two principal components.

        :param scores: PC scores indexed by individual
        :param explained: Explained variance ratios, used in the axis labels
        :param groups: Optional group label per individual (indexed like scores) used for colors
        """
        logger.info("Plotting PCA...")
        self._check_ax(ax)
        x_pc, y_pc = pcs
        for pc in pcs:
            if pc not in scores.columns:
                raise ValueError(f"Component '{pc}' not found in PCA scores")

        if groups is None:
            ax.scatter(scores[x_pc], scores[y_pc], s=point_size, alpha=alpha, color="#4C72B0", edgecolors='none')
        else:
            labels = groups.reindex(scores.index).fillna("NA").astype(str)
            for i, group in enumerate(sorted(labels.unique(), key=natural_key)):
                mask = (labels == group).to_numpy()
                ax.scatter(scores.loc[mask, x_pc], scores.loc[mask, y_pc], s=point_size, alpha=alpha,
                           color=f"C{i % 10}", label=group, edgecolors='none')
            ax.legend(frameon=False, title=groups.name)

        def _label(pc):
            if explained is None:
                return pc
            k = int(pc[2:]) - 1
            return f"{pc} ({explained[k]:.1%})"

        ax.set_xlabel(_label(x_pc))
        ax.set_ylabel(_label(y_pc))
        ax.set_title("Principal component analysis")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_scree(self, explained, n=None, ax=None):
        """Bar plot of explained variance with the cumulative curve."""
        self._check_ax(ax)
        explained = np.asarray(explained, dtype=float)
        n = min(n or len(explained), len(explained))
        x = np.arange(1, n + 1)
        ax.bar(x, explained[:n], color="#B8B0C3")
        ax.plot(x, np.cumsum(explained)[:n], marker='o', color="gray", linewidth=1)
        ax.set_xlabel("Principal component")
        ax.set_ylabel("Explained variance ratio")
        ax.set_title("Scree plot")
        ax.spines[['top', 'right']].set_visible(False)

    def plot_manhattan(self, df, score_col, point_size=5,
                       chr_unit='mb', chr_gap=0, chr_colors=None,
                       sig_threshold=None, sig_line_style=None,
                       xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot Manhattan plot for GWAS scores.

        :param df: DataFrame with columns chrom, pos and the score column (-log10 p)
        :param score_col: Name of the score column to plot
        :param point_size: Point size for Manhattan plot
        :param chr_unit: Position unit, one of ['mb', 'kb', 'bp']
        :param chr_gap: Gap between chromosomes in the unit specified
        :param chr_colors: List of colors for chromosomes, cycled when shorter than the number of chromosomes
        :param sig_threshold: Significance threshold p-value, a float or a list of floats
        :param sig_line_style: Style of the significance line
        :param ax: Matplotlib Axes object for plotting
        """
        logger.info("Plotting Manhattan plot...")
        self._check_ax(ax)
        if score_col not in df.columns:
            raise ValueError(f"Score column '{score_col}' not found in GWAS data")

        unit_factors = {'mb': 1e-6, 'kb': 1e-3, 'bp': 1}
        factor = unit_factors.get(chr_unit.lower(), 1e-6)

        data = df[["chrom", "pos", score_col]].dropna().copy()
        data["chrom"] = data["chrom"].astype(str)
        data["pos"] = data["pos"] * factor
        chroms = sorted(data["chrom"].unique(), key=natural_key)

        if chr_colors is None:
            chr_colors = ["#B8B0C3", "#D0E2DF"]

        # Calculate cumulative positions for each chromosome
        chrom_center = {}
        current_pos = 0
        for i, chrom in enumerate(chroms):
            group = data[data["chrom"] == chrom]
            length = group["pos"].max()
            ax.scatter(group["pos"] + current_pos, group[score_col],
                       color=chr_colors[i % len(chr_colors)], s=point_size)
            chrom_center[chrom] = current_pos + length / 2
            current_pos += length + chr_gap

        default_sig_params = {
            'color': 'gray',
            'linestyle': '--',
            'linewidth': 1,
        }
        if sig_line_style:
            default_sig_params.update(sig_line_style)

        if sig_threshold is not None:
            thresholds = sig_threshold if isinstance(sig_threshold, (list, tuple)) else [sig_threshold]
            for threshold in thresholds:
                ax.axhline(-np.log10(threshold), **default_sig_params, label=f"Threshold {threshold:.2e}")
            ax.legend(loc="upper right", frameon=False)
        else:
            logger.info("No significance threshold provided; skipping threshold line.")

        ax.set_xticks(list(chrom_center.values()), list(chrom_center.keys()))
        ax.tick_params(axis='x', which='major', rotation=90)
        ax.spines[['top', 'right']].set_visible(False)
        ax.set_xlabel(xlabel if xlabel is not None else f"Chromosome Position ({chr_unit.upper()})")
        ax.set_ylabel(ylabel if ylabel is not None else r"$-\log_{10}(p)$")
        ax.set_xlim(0, max(current_pos, 1e-9))
        ax.set_ylim(0, ax.get_ylim()[1])
        ax.set_title(title if title is not None else f"Manhattan Plot: {score_col}")

    def plot_qq(self, df, score_col, point_size=5, xlabel=None, ylabel=None, title=None, ax=None):
        """
        Plot QQ plot of GWAS scores against the uniform expectation.

        :param df: DataFrame containing the score column (-log10 p)
        :param score_col: Name of the score column
        """
        logger.info("Plotting QQ plot...")
        self._check_ax(ax)
        scores = df[score_col].dropna().to_numpy(dtype=float)
        if len(scores) == 0:
            raise ValueError(f"No scores to plot for '{score_col}'")
        observed = np.sort(scores)[::-1]
        expected = -np.log10(np.arange(1, len(scores) + 1) / (len(scores) + 1))

        ax.scatter(expected, observed, s=point_size, color="#B8B0C3")
        ax.plot([0, max(expected)], [0, max(expected)], color="gray", linestyle="--", linewidth=1)

        ax.set_xlabel(xlabel if xlabel is not None else r"Expected $-\log_{10}(p)$")
        ax.set_ylabel(ylabel if ylabel is not None else r"Observed $-\log_{10}(p)$")
        ax.set_title(title if title is not None else f"QQ Plot: {score_col}")
        ax.spines[['top', 'right']].set_visible(False)
