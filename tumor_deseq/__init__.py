"""
Tumor-vs-normal differential expression and sample clustering for RNA-seq
count data.

Main Classes:
    CountDataSet : Validated counts plus sample design
    AnalysisConfig : Every threshold and setting of a run

Main Functions:
    run_deseq : Size factors, dispersions, NB GLM, shrinkage, FDR
    run_clustering : Variance stabilization, PCA, k-means and elbow sweep
    run_analysis : Both of the above, joined by sample

References:
    Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
    and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

# Core pipeline
from .pipeline import (
    run_deseq,
    run_clustering,
    run_analysis,
    sample_table,
    write_outputs,
)
from .dataset import CountDataSet
from .config import AnalysisConfig, load_json_config
from .exceptions import PreconditionError

# Size factors
from .size_factors import estimate_size_factors

# Dispersions
from .dispersion import (
    DispersionTrend,
    DispersionTable,
    estimate_dispersions,
    fit_dispersion_trend,
)

# Statistical tests
from .nbinom_glm import fit_nbinom_glm, wald_pvalue

# LFC shrinkage
from .lfc_shrinkage import lfc_shrink

# Multiple testing
from .multiple_testing import (
    PadjStatus,
    benjamini_hochberg,
    find_optimal_threshold,
    independent_filtering,
)

# Transformations
from .transformations import vst, norm_transform, stabilize

# Sample projection and clustering
from .pca import PCAResult, pca
from .kmeans import ClusterAssignment, kmeans, elbow

# Results
from .results import classify_regulation, summary, write_deg_table

# Annotation
from .annotation import resolve_symbols, annotate_gene_names, join_gene_roles

# Design matrices
from .design import create_design_matrix

# Utilities
from .utils import normalize_counts, filter_low_counts

__version__ = "0.1.0"

__all__ = [
    # Core
    'CountDataSet',
    'AnalysisConfig',
    'load_json_config',
    'PreconditionError',
    'run_deseq',
    'run_clustering',
    'run_analysis',
    'sample_table',
    'write_outputs',

    # Size factors
    'estimate_size_factors',

    # Dispersions
    'DispersionTrend',
    'DispersionTable',
    'estimate_dispersions',
    'fit_dispersion_trend',

    # Tests
    'fit_nbinom_glm',
    'wald_pvalue',

    # LFC shrinkage
    'lfc_shrink',

    # Multiple testing
    'PadjStatus',
    'benjamini_hochberg',
    'find_optimal_threshold',
    'independent_filtering',

    # Transformations
    'vst',
    'norm_transform',
    'stabilize',

    # Projection and clustering
    'PCAResult',
    'pca',
    'ClusterAssignment',
    'kmeans',
    'elbow',

    # Results
    'classify_regulation',
    'summary',
    'write_deg_table',

    # Annotation
    'resolve_symbols',
    'annotate_gene_names',
    'join_gene_roles',

    # Design
    'create_design_matrix',

    # Utilities
    'normalize_counts',
    'filter_low_counts',
]
