"""
Differential expression result tables.

The per-gene table keeps every gene of the data set with its flags. The
DEG table is the ranked view: it drops genes with baseMean 0 and genes whose
fit failed (undefined dispersion, GLM non-convergence) and counts every
exclusion in an :class:`ExclusionSummary`.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import logging
from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from .multiple_testing import PadjStatus, status_mask

logger = logging.getLogger(__name__)

UPREGULATED = "Upregulated"
DOWNREGULATED = "Downregulated"
NON_SIGNIFICANT = "Non-significant"

DEG_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "pvalue", "padj", "regulation"]


@dataclass
class ExclusionSummary:
    """
    Genes left out of the DEG table, by reason.

    ``all_zero``, ``undefined_dispersion`` and ``glm_not_converged`` are
    disjoint and together make up the excluded genes. ``dispersion_outliers``
    (kept their gene-wise dispersion) and ``filtered`` (q-value not
    applicable) stay in the table and are counted for information.
    """

    all_zero: int = 0
    undefined_dispersion: int = 0
    glm_not_converged: int = 0
    dispersion_outliers: int = 0
    filtered: int = 0

    @property
    def total_excluded(self):
        return self.all_zero + self.undefined_dispersion + self.glm_not_converged

    def to_dict(self):
        d = asdict(self)
        d["total_excluded"] = self.total_excluded
        return d


def classify_regulation(lfc, padj, status, lfc_threshold=1.0, alpha=0.01):
    """
    Three-level call per gene.

    A gene is up- or downregulated when its q-value was computed
    (``PadjStatus.TESTED``), is below ``alpha`` and ``|lfc| > lfc_threshold``.
    Filtered and untested genes are always non-significant, whatever the
    numeric column holds.

    Returns
    -------
    np.ndarray of str
    """
    lfc = np.asarray(lfc, dtype=float)
    padj = np.asarray(padj, dtype=float)
    tested = status_mask(status, PadjStatus.TESTED)

    with np.errstate(invalid="ignore"):
        significant = tested & np.isfinite(padj) & (padj < alpha)
        up = significant & (lfc > lfc_threshold)
        down = significant & (lfc < -lfc_threshold)

    labels = np.full(len(lfc), NON_SIGNIFICANT, dtype=object)
    labels[up] = UPREGULATED
    labels[down] = DOWNREGULATED
    return labels


def build_results_table(gene_ids, dispersion_table, glm, shrunk, filter_result,
                        lfc_threshold=1.0, alpha=0.01):
    """
    Per-gene table covering every gene, with flags.

    Parameters
    ----------
    gene_ids : array-like
        Gene accessions, row order of every input.
    dispersion_table : DispersionTable
        Output of ``estimate_dispersions``.
    glm : pd.DataFrame
        Output of ``fit_nbinom_glm``.
    shrunk : pd.DataFrame
        Output of ``lfc_shrink``.
    filter_result : FilterResult
        Output of ``independent_filtering``.

    Returns
    -------
    pd.DataFrame
        Indexed by ``gene_id`` with the DEG columns plus ``stat``,
        ``padjStatus``, ``lfcMLE``, ``lfcSE_MLE``, ``dispersion``,
        ``dispOutlier``, ``converged``, ``allZero`` and ``exclusion``
        (empty when the gene is reported).
    """
    disp = dispersion_table.table
    index = pd.Index(np.asarray(gene_ids).astype(str), name="gene_id")

    all_zero = disp["allZero"].to_numpy()
    defined = disp["defined"].to_numpy()
    converged = glm["converged"].to_numpy()

    exclusion = np.full(len(index), "", dtype=object)
    exclusion[~converged] = "glm_not_converged"
    exclusion[~defined] = "undefined_dispersion"
    exclusion[all_zero] = "all_zero"

    status = filter_result.status
    regulation = classify_regulation(shrunk["log2FoldChange"], filter_result.padj,
                                     status, lfc_threshold, alpha)

    return pd.DataFrame({
        "baseMean": disp["baseMean"].to_numpy(),
        "log2FoldChange": shrunk["log2FoldChange"].to_numpy(),
        "lfcSE": shrunk["lfcSE"].to_numpy(),
        "stat": shrunk["stat"].to_numpy(),
        "pvalue": shrunk["pvalue"].to_numpy(),
        "padj": filter_result.padj,
        "padjStatus": [PadjStatus(s).value for s in status],
        "regulation": regulation,
        "lfcMLE": glm["log2FoldChange"].to_numpy(),
        "lfcSE_MLE": glm["lfcSE"].to_numpy(),
        "dispersion": disp["dispersion"].to_numpy(),
        "dispOutlier": disp["dispOutlier"].to_numpy(),
        "converged": converged,
        "allZero": all_zero,
        "exclusion": exclusion,
    }, index=index)


def build_deg_table(full):
    """
    Ranked DEG table from the per-gene table.

    Genes with an exclusion reason are dropped; the rest are sorted by
    q-value then p-value (missing values last, ties in input order).

    Returns
    -------
    pd.DataFrame
        Reported genes.
    ExclusionSummary
        What was dropped and why.
    """
    reason = full["exclusion"]
    excluded = ExclusionSummary(
        all_zero=int((reason == "all_zero").sum()),
        undefined_dispersion=int((reason == "undefined_dispersion").sum()),
        glm_not_converged=int((reason == "glm_not_converged").sum()),
        dispersion_outliers=int(full["dispOutlier"].sum()),
        filtered=int((full["padjStatus"] == PadjStatus.FILTERED.value).sum()),
    )

    deg = full.loc[reason == ""]
    deg = deg.sort_values(["padj", "pvalue"], na_position="last", kind="mergesort")
    return deg, excluded


def summary(deg, excluded, alpha=0.01, lfc_threshold=1.0):
    """
    Counts of the DEG table, logged at INFO.

    Returns
    -------
    dict
    """
    counts = deg["regulation"].value_counts()
    summary_dict = {
        "reported_genes": int(len(deg)),
        "tested": int((deg["padjStatus"] == PadjStatus.TESTED.value).sum()),
        "upregulated": int(counts.get(UPREGULATED, 0)),
        "downregulated": int(counts.get(DOWNREGULATED, 0)),
        "non_significant": int(counts.get(NON_SIGNIFICANT, 0)),
        "alpha": alpha,
        "lfc_threshold": lfc_threshold,
    }
    summary_dict.update({f"excluded_{k}": v for k, v in excluded.to_dict().items()})

    logger.info("DEG summary (padj < %s, |log2FC| > %s): %d reported, %d up, "
                "%d down", alpha, lfc_threshold, summary_dict["reported_genes"],
                summary_dict["upregulated"], summary_dict["downregulated"])
    logger.info("Excluded genes: %d all-zero, %d undefined dispersion, "
                "%d not converged; %d filtered, %d dispersion outliers",
                excluded.all_zero, excluded.undefined_dispersion,
                excluded.glm_not_converged, excluded.filtered,
                excluded.dispersion_outliers)
    return summary_dict


def write_deg_table(deg, path):
    """
    Write the seven DEG columns to CSV.

    Filtered genes have no q-value and are written as ``NA``.
    """
    out = deg[DEG_COLUMNS].copy()
    out.index.name = "gene_id"
    out.to_csv(path, na_rep="NA")
    logger.info("Wrote %d genes to %s", len(out), path)
    return path
