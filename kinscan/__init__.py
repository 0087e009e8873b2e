"""kinscan package

Core modules:
- kinscan.phe: phenotype loading, descriptive statistics, covariance/correlation
- kinscan.geno: genotype matrix and linkage map I/O, marker QC
- kinscan.kinship: additive relationship matrix and marker imputation
- kinscan.pca: principal components of markers and kinship
- kinscan.gwas: mixed-model genome-wide association
- kinscan.viz: Visualization utilities
- kinscan.kinscan: CLI entry point (main)
"""

__version__ = "1.0.0"

__all__ = [
    "phe",
    "geno",
    "kinship",
    "pca",
    "gwas",
    "viz",
    "kinscan",
]
