"""
Associations between principal components and sample metadata.

Two complementary views:
- Spearman rank correlation between each PC and each one-hot encoded
  metadata level
- Non-parametric group-difference tests per PC and factor (Mann-Whitney U
  for two groups, Kruskal-Wallis for more)

P-values are Benjamini-Hochberg adjusted across all tests of a table.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)


def _bh_adjust(pvalues: pd.Series) -> np.ndarray:
    valid = pvalues.notna()
    adjusted = np.full(len(pvalues), np.nan)
    if valid.any():
        _, padj, _, _ = multipletests(pvalues[valid].to_numpy(), method="fdr_bh")
        adjusted[valid.to_numpy()] = padj
    return adjusted


def _usable_factors(metadata: pd.DataFrame, columns: Sequence[str]) -> List[str]:
    usable = []
    for col in columns:
        if col not in metadata.columns:
            raise ValueError(f"Metadata has no column {col!r}")
        n_levels = metadata[col].dropna().nunique()
        if n_levels < 2:
            logger.warning("Skipping factor %r: only %d level(s)", col, n_levels)
            continue
        usable.append(col)
    return usable


def design_matrix(metadata: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """
    One-hot encode metadata factors.

    Every level is kept (no reference level dropped) so each column can be
    read on its own in a correlation heatmap. Columns are named
    ``<factor>_<level>``.
    """
    factors = _usable_factors(metadata, columns)
    if not factors:
        return pd.DataFrame(index=metadata.index)
    frame = metadata[factors].astype("string")
    return pd.get_dummies(frame, prefix=factors, prefix_sep="_", dtype=int)


def _pc_columns(scores: pd.DataFrame, n_pcs: Optional[int]) -> List[str]:
    cols = list(scores.columns)
    return cols if n_pcs is None else cols[:n_pcs]


def pc_correlations(
    scores: pd.DataFrame,
    design: pd.DataFrame,
    n_pcs: Optional[int] = None,
) -> pd.DataFrame:
    """
    Spearman correlation of each PC with each design column.

    Returns:
        Long table with columns pc, variable, rho, pvalue, padj
    """
    if not scores.index.equals(design.index):
        design = design.reindex(scores.index)

    rows = []
    for pc in _pc_columns(scores, n_pcs):
        for var in design.columns:
            values = design[var]
            if values.nunique(dropna=True) < 2:
                rho, pvalue = np.nan, np.nan
            else:
                rho, pvalue = stats.spearmanr(scores[pc], values, nan_policy="omit")
            rows.append({"pc": pc, "variable": var, "rho": float(rho), "pvalue": float(pvalue)})

    table = pd.DataFrame(rows, columns=["pc", "variable", "rho", "pvalue"])
    table["padj"] = _bh_adjust(table["pvalue"]) if len(table) else []
    return table


def pc_group_tests(
    scores: pd.DataFrame,
    metadata: pd.DataFrame,
    columns: Sequence[str],
    n_pcs: Optional[int] = None,
) -> pd.DataFrame:
    """
    Test whether PC scores differ between metadata groups.

    Uses Mann-Whitney U for two-level factors and Kruskal-Wallis otherwise.

    Returns:
        Long table with columns pc, factor, test, n_groups, statistic,
        pvalue, padj
    """
    metadata = metadata.reindex(scores.index)
    rows = []
    for factor in _usable_factors(metadata, columns):
        labels = metadata[factor]
        levels = [lvl for lvl in labels.dropna().unique()]
        for pc in _pc_columns(scores, n_pcs):
            groups = [scores.loc[labels == lvl, pc].to_numpy() for lvl in levels]
            if len(groups) == 2:
                test = "mann_whitney_u"
                try:
                    statistic, pvalue = stats.mannwhitneyu(*groups, alternative="two-sided")
                except ValueError:
                    statistic, pvalue = np.nan, np.nan
            else:
                test = "kruskal"
                try:
                    statistic, pvalue = stats.kruskal(*groups)
                except ValueError:
                    statistic, pvalue = np.nan, np.nan
            rows.append({
                "pc": pc,
                "factor": factor,
                "test": test,
                "n_groups": len(groups),
                "statistic": float(statistic),
                "pvalue": float(pvalue),
            })

    table = pd.DataFrame(rows, columns=["pc", "factor", "test", "n_groups", "statistic", "pvalue"])
    table["padj"] = _bh_adjust(table["pvalue"]) if len(table) else []
    return table


def correlation_matrix(table: pd.DataFrame, value: str = "rho") -> pd.DataFrame:
    """Pivot a pc_correlations table into variable x PC form for heatmaps."""
    if table.empty:
        return pd.DataFrame()
    matrix = table.pivot(index="variable", columns="pc", values=value)
    pcs = list(dict.fromkeys(table["pc"]))
    variables = list(dict.fromkeys(table["variable"]))
    return matrix.loc[variables, pcs]
