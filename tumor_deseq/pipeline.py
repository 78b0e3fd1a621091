"""
End-to-end tumor-vs-normal analysis.

Two branches share one validated :class:`CountDataSet`:

- differential expression: size factors -> dispersions -> NB GLM Wald test
  -> LFC shrinkage -> independent filtering + BH -> DEG table;
- clustering: variance-stabilizing transform -> PCA -> k-means and an
  elbow sweep.

Their sample-level outputs are joined by sample identifier in
:func:`sample_table`.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .annotation import MappingResolver, annotate_gene_names, resolve_symbols
from .config import AnalysisConfig
from .dispersion import DispersionTable, estimate_dispersions
from .exceptions import PreconditionError
from .kmeans import ClusterAssignment, elbow, kmeans
from .lfc_shrinkage import lfc_shrink
from .multiple_testing import FilterResult, independent_filtering
from .nbinom_glm import fit_nbinom_glm
from .pca import PCAResult, pca
from .results import (ExclusionSummary, build_deg_table, build_results_table,
                      summary, write_deg_table)
from .size_factors import estimate_size_factors
from .transformations import stabilize
from .utils import filter_low_counts

logger = logging.getLogger(__name__)


@dataclass
class DESeqResult:
    """Everything the differential expression branch produces."""

    deg: pd.DataFrame
    full: pd.DataFrame
    dispersions: DispersionTable
    size_factors: pd.Series
    excluded: ExclusionSummary
    filtering: FilterResult
    summary: dict


@dataclass
class ClusteringResult:
    """Everything the clustering branch produces."""

    stabilized: pd.DataFrame
    pca: PCAResult
    clusters: ClusterAssignment
    elbow: pd.DataFrame


@dataclass
class AnalysisResult:
    de: DESeqResult
    clustering: ClusteringResult
    samples: pd.DataFrame


def _control_mask(dataset, control_genes):
    if control_genes is None:
        return None
    wanted = pd.Index([str(g) for g in control_genes])
    missing = wanted.difference(dataset.counts.index)
    if len(missing):
        raise PreconditionError(
            f"control genes not in the count matrix: {', '.join(sorted(missing)[:5])}"
        )
    return dataset.counts.index.isin(wanted)


def compute_size_factors(dataset, config=None, control_genes=None):
    """Size factors of a data set as a sample-indexed Series."""
    config = config or AnalysisConfig()
    sf = estimate_size_factors(dataset.counts_array(), type=config.size_factor_type,
                               control_genes=_control_mask(dataset, control_genes))
    return pd.Series(sf, index=dataset.counts.columns, name="sizeFactor")


def run_deseq(dataset, config=None, covariates=(), control_genes=None):
    """
    Differential expression of treatment vs reference.

    Parameters
    ----------
    dataset : CountDataSet
        Validated counts and sample design.
    config : AnalysisConfig, optional
        Defaults to ``AnalysisConfig()``.
    covariates : sequence of str
        Extra categorical coldata columns to adjust for.
    control_genes : sequence of str, optional
        Accessions used alone for the size-factor ratios (housekeeping
        genes). Needed for very small matrices: with only a handful of
        genes the median of ratios is pulled by the changing genes themselves
        (two genes, one of them up, makes the flat one look down).

    Returns
    -------
    DESeqResult

    Raises
    ------
    PreconditionError
        On a malformed design or when size factors cannot be computed.
    """
    config = config or AnalysisConfig()
    start = time.time()

    if config.min_count > 0:
        keep = filter_low_counts(dataset.counts_array(), min_count=config.min_count,
                                 groups=dataset.condition.to_numpy())
        logger.info("Pre-filter: keeping %d of %d genes with >= %d reads",
                    int(keep.sum()), dataset.n_genes, config.min_count)
        dataset = dataset.filter_genes(keep)

    logger.info("Running differential expression on %r", dataset)
    counts = dataset.counts_array()

    size_factors = compute_size_factors(dataset, config, control_genes)
    sf = size_factors.to_numpy()
    X, names, coef = dataset.design_matrix(covariates)
    logger.info("Design columns: %s (testing %s)", names, names[coef])

    disp = estimate_dispersions(
        counts, sf, X, groups=dataset.condition.to_numpy(),
        fit_type=config.fit_type, min_disp=config.min_disp,
        max_disp=config.max_disp, outlier_level=config.outlier_level,
        n_jobs=config.n_jobs, gene_ids=dataset.counts.index)

    glm = fit_nbinom_glm(
        counts, sf, disp.dispersions, X, coef_index=coef,
        ridge_lambda=config.ridge_lambda, max_iter=config.glm_max_iter,
        tol=config.glm_tol, n_jobs=config.n_jobs, gene_ids=dataset.counts.index)

    shrunk = lfc_shrink(glm["log2FoldChange"].to_numpy(), glm["lfcSE"].to_numpy(),
                        dispersions=disp.dispersions, type=config.shrinkage,
                        index=dataset.counts.index)

    # failed fits take no part in the FDR correction
    usable = disp.table["defined"].to_numpy() & glm["converged"].to_numpy()
    pvalues = np.where(usable, shrunk["pvalue"].to_numpy(), np.nan)
    filtering = independent_filtering(
        disp.table["baseMean"].to_numpy(), pvalues,
        alpha=config.effective_filter_alpha, n_quantiles=config.filter_quantiles,
        max_quantile=config.filter_max_quantile,
        enabled=config.independent_filtering)

    full = build_results_table(dataset.counts.index, disp, glm, shrunk, filtering,
                               lfc_threshold=config.lfc_threshold, alpha=config.alpha)
    if len(dataset.gene_names):
        resolution = resolve_symbols(full.index, MappingResolver(dataset.gene_names))
        full = annotate_gene_names(full, resolution)

    deg, excluded = build_deg_table(full)
    stats = summary(deg, excluded, alpha=config.alpha, lfc_threshold=config.lfc_threshold)
    logger.info("Differential expression done in %.1f seconds", time.time() - start)

    return DESeqResult(deg=deg, full=full, dispersions=disp,
                       size_factors=size_factors, excluded=excluded,
                       filtering=filtering, summary=stats)


def run_clustering(dataset, config=None, trend=None, size_factors=None):
    """
    Stabilize, project and cluster the samples.

    Clustering works on the stabilized values of the genes selected for the
    PCA (the ``n_top_genes`` most variable), one row per sample.

    Parameters
    ----------
    dataset : CountDataSet
    config : AnalysisConfig, optional
    trend : DispersionTrend, optional
        Trend for the vst. None fits one blind to the conditions.
    size_factors : array-like, optional
        Estimated from the counts when None.

    Returns
    -------
    ClusteringResult
    """
    config = config or AnalysisConfig()
    if size_factors is None:
        size_factors = compute_size_factors(dataset, config)
    sf = np.asarray(size_factors, dtype=float)

    stabilized = stabilize(dataset, sf, method=config.vst_method, trend=trend,
                           fit_type=config.fit_type, pseudocount=config.pseudocount,
                           size_factor_type=config.size_factor_type,
                           n_jobs=config.n_jobs)

    projection = pca(stabilized, n_top=config.n_top_genes, scale=config.scale_genes)
    for label in projection.axis_labels(config.percent_decimals)[:2]:
        logger.info(label)

    points = stabilized.loc[projection.genes].T
    clusters = kmeans(points, config.k, restarts=config.restarts, seed=config.seed,
                      max_iter=config.kmeans_max_iter, n_jobs=config.n_jobs)
    curve = elbow(points, config.k_max, restarts=config.restarts, seed=config.seed,
                  max_iter=config.kmeans_max_iter, n_jobs=config.n_jobs)

    return ClusteringResult(stabilized=stabilized, pca=projection,
                            clusters=clusters, elbow=curve)


def sample_table(dataset, clustering, n_components=2):
    """PCA scores, cluster label and sample metadata, joined by sample id."""
    frame = clustering.pca.to_frame(dataset.coldata, n_components=n_components)
    return frame.join(clustering.clusters.labels, how="left")


def run_analysis(dataset, config=None, covariates=(), control_genes=None):
    """
    Both branches on one data set.

    With ``config.blind`` False the vst reuses the dispersion trend of the
    differential expression fit.
    """
    config = config or AnalysisConfig()
    de = run_deseq(dataset, config, covariates=covariates, control_genes=control_genes)
    trend = None if config.blind else de.dispersions.trend
    clustering = run_clustering(dataset, config, trend=trend,
                                size_factors=de.size_factors.reindex(dataset.counts.columns))
    return AnalysisResult(de=de, clustering=clustering,
                          samples=sample_table(dataset, clustering))


def write_outputs(result, outdir, percent_decimals=1):
    """
    Persist an AnalysisResult as CSV tables.

    Files: ``deg_results.csv`` (seven DEG columns), ``pca_scores.csv`` and
    ``clusters.csv`` (sample-indexed), ``pca_variance.csv`` and
    ``elbow.csv``.

    Returns
    -------
    dict
        File name -> path.
    """
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    paths = {name: outdir / name for name in (
        "deg_results.csv", "pca_scores.csv", "pca_variance.csv",
        "clusters.csv", "elbow.csv")}

    write_deg_table(result.de.deg, paths["deg_results.csv"])
    result.samples.to_csv(paths["pca_scores.csv"])

    projection = result.clustering.pca
    pd.DataFrame({
        "component": projection.scores.columns,
        "percent_variance": np.round(projection.percent_variance, percent_decimals),
        "label": projection.axis_labels(percent_decimals),
    }).to_csv(paths["pca_variance.csv"], index=False)

    result.clustering.clusters.to_frame().to_csv(paths["clusters.csv"])
    result.clustering.elbow.to_csv(paths["elbow.csv"], index=False)
    logger.info("Wrote results to %s", outdir)
    return paths
