import numpy as np
import pandas as pd
import pytest

from kinscan.viz import Visualizer
import matplotlib.pyplot as plt


@pytest.fixture
def gwas_table():
    rng = np.random.default_rng(2)
    return pd.DataFrame({
        "marker": [f"m{i}" for i in range(30)],
        "chrom": ["1"] * 10 + ["2"] * 10 + ["10"] * 10,
        "pos": list(range(1000, 11000, 1000)) * 3,
        "yield": -np.log10(rng.uniform(size=30)),
    })


def calls(pheno, gwas_table):
    K = pd.DataFrame(np.eye(3), index=list("abc"), columns=list("abc"))
    scores = pd.DataFrame({"PC1": [1.0, -1.0, 0.5], "PC2": [0.2, 0.1, -0.3]}, index=list("abc"))
    return {
        "plot_hist": lambda v, ax: v.plot_hist(pheno, columns=["yield"], ax=ax),
        "plot_scatter": lambda v, ax: v.plot_scatter(pheno, "yield", "height", ax=ax),
        "plot_corr_heatmap": lambda v, ax: v.plot_corr_heatmap(pheno[["yield", "height"]].corr(), ax=ax),
        "plot_kinship": lambda v, ax: v.plot_kinship(K, ax=ax),
        "plot_pca": lambda v, ax: v.plot_pca(scores, explained=np.array([0.6, 0.3]), ax=ax),
        "plot_scree": lambda v, ax: v.plot_scree([0.6, 0.3, 0.1], ax=ax),
        "plot_manhattan": lambda v, ax: v.plot_manhattan(gwas_table, "yield", sig_threshold=1e-3, ax=ax),
        "plot_qq": lambda v, ax: v.plot_qq(gwas_table, "yield", ax=ax),
    }


PLOTS = ["plot_hist", "plot_scatter", "plot_corr_heatmap", "plot_kinship",
         "plot_pca", "plot_scree", "plot_manhattan", "plot_qq"]


@pytest.mark.parametrize("name", PLOTS)
def test_plot_requires_axes(name, pheno, gwas_table):
    with pytest.raises(ValueError, match="valid Matplotlib Axes"):
        calls(pheno, gwas_table)[name](Visualizer(), None)


@pytest.mark.parametrize("name", PLOTS)
def test_plot_draws_on_axes(name, pheno, gwas_table):
    fig, ax = plt.subplots()
    try:
        calls(pheno, gwas_table)[name](Visualizer(), ax)
        assert ax.has_data() or ax.images
    finally:
        plt.close(fig)


def test_manhattan_orders_chromosomes_naturally(gwas_table):
    fig, ax = plt.subplots()
    try:
        Visualizer().plot_manhattan(gwas_table.iloc[::-1], "yield", ax=ax)
        assert [t.get_text() for t in ax.get_xticklabels()] == ["1", "2", "10"]
    finally:
        plt.close(fig)
