"""
Expression filtering and reshaping ahead of projection and DE.

Steps (in order):
1. Keep genes expressed (count >= min_count) in more than min_fraction
   of samples
2. Library-size normalize to log2(CPM + prior)
3. Rank retained genes by variance across samples
4. Keep the n highest-variance genes for UMAP / t-SNE
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..config import FilterConfig
from ..data.model import Cohort

logger = logging.getLogger(__name__)


@dataclass
class FilteredExpression:
    """Outputs of the filtering stage for one cohort."""

    counts: pd.DataFrame  # retained genes, raw counts
    log_expr: pd.DataFrame  # retained genes, log2(CPM + prior)
    variance: pd.Series  # per retained gene, decreasing
    top_variance: pd.DataFrame  # log_expr rows of the highest-variance genes

    @property
    def n_retained(self) -> int:
        return len(self.counts)


def expressed_fraction(counts: pd.DataFrame, min_count: float = 1.0) -> pd.Series:
    """Fraction of samples in which each gene reaches min_count."""
    return (counts >= min_count).mean(axis=1)


def prevalence_filter(
    counts: pd.DataFrame,
    min_count: float = 1.0,
    min_fraction: float = 0.5,
) -> pd.DataFrame:
    """Keep genes whose fraction of samples with count >= min_count exceeds min_fraction."""
    fraction = expressed_fraction(counts, min_count)
    keep = fraction > min_fraction
    n_removed = int((~keep).sum())
    if n_removed > 0:
        logger.info(
            "Prevalence filter: removed %d of %d genes (expressed in <= %.0f%% of samples)",
            n_removed, len(counts), min_fraction * 100,
        )
    return counts.loc[keep]


def log_cpm(counts: pd.DataFrame, prior: float = 1.0) -> pd.DataFrame:
    """Normalize: CPM + log2."""
    lib_sizes = counts.sum(axis=0)
    if (lib_sizes <= 0).any():
        empty = list(lib_sizes[lib_sizes <= 0].index)
        raise ValueError(f"Samples with zero library size: {empty}")
    cpm = counts.div(lib_sizes, axis=1) * 1e6
    return np.log2(cpm + prior)


def gene_variance(expr: pd.DataFrame) -> pd.Series:
    """Per-gene sample variance, sorted from highest to lowest."""
    return expr.var(axis=1, ddof=1).sort_values(ascending=False, kind="mergesort")


def top_variance_genes(
    expr: pd.DataFrame,
    n: int = 500,
    variance: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Return the rows of the n highest-variance genes.

    Rows are ordered by decreasing variance. When fewer than n genes are
    available all of them are returned.
    """
    if n < 1:
        raise ValueError(f"n must be positive, got {n}")
    if variance is None:
        variance = gene_variance(expr)
    if len(variance) < n:
        logger.warning("Only %d genes available for a top-%d variance subset", len(variance), n)
    return expr.loc[variance.index[:n]]


def gene_count_range(
    n_available: int,
    preferred: int,
    minimum: int = 50,
) -> Optional[Tuple[int, int, int, int]]:
    """
    Bounds for a top-variance gene-count selector.

    Returns (min, max, value, step), or None when no more than ``minimum``
    genes are available and the whole retained set is used as is.
    """
    if n_available <= minimum:
        return None
    step = 10 if n_available - minimum >= 100 else 1
    return minimum, n_available, min(max(preferred, minimum), n_available), step


def filter_cohort(cohort: Cohort, config: Optional[FilterConfig] = None) -> FilteredExpression:
    """Run the filtering stage on a loaded cohort."""
    config = config or FilterConfig()
    cohort.check_alignment()

    counts = prevalence_filter(cohort.counts, config.min_count, config.min_fraction)
    if counts.empty:
        raise ValueError("No genes passed the prevalence filter")

    log_expr = log_cpm(counts, prior=config.log_prior)
    variance = gene_variance(log_expr)
    top = top_variance_genes(log_expr, config.n_top_variance, variance=variance)

    logger.info(
        "Filtering complete: %d genes retained, %d in top-variance subset",
        len(counts), len(top),
    )
    return FilteredExpression(
        counts=counts,
        log_expr=log_expr,
        variance=variance,
        top_variance=top,
    )
