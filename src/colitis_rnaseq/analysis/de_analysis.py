"""
Differential expression analysis engine.

Two independent count-based models compare inflamed against non-inflamed
biopsies:

- ``deseq2``: PyDESeq2 (Python implementation of DESeq2). Median-of-ratios
  normalization, negative binomial GLM with per-gene shrunken dispersions,
  Wald test, Benjamini-Hochberg correction.
- ``edger``: edgeR via inmoose edgepy. TMM normalization factors (conorm),
  a Cox-Reid common negative binomial dispersion, GLM fit and a
  likelihood-ratio test on the condition coefficient, BH correction.

Both models use the patient as a blocking factor when every patient
carries both conditions. Raw integer counts should be passed directly.
"""

import logging
import re
from typing import Dict, Literal, Optional, Tuple

import conorm
import numpy as np
import pandas as pd
from inmoose.edgepy import DGEList, glmLRT
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from scipy import stats
from statsmodels.stats.multitest import multipletests

from ..config import DEConfig
from .de_result import DE_COLUMNS, DEProvenance, DEResult, MethodComparison

logger = logging.getLogger(__name__)

DEMethod = Literal["deseq2", "edger"]

DE_METHODS = ("deseq2", "edger")


def _factor_code(value: str) -> str:
    """Strip a factor level down to alphanumerics; design formulas choke on the rest."""
    code = re.sub(r"[^0-9A-Za-z]", "", str(value))
    if not code:
        raise ValueError(f"Factor level {value!r} has no alphanumeric characters")
    if code[0].isdigit():
        code = f"L{code}"
    return code


def build_design(metadata: pd.DataFrame, config: DEConfig) -> Tuple[pd.DataFrame, bool]:
    """Build the sample design table for one DE run.

    Samples whose condition is neither the test nor the reference level are
    dropped. The returned frame has a ``condition`` column (alphanumeric
    level codes) and, for paired designs, a ``block`` column.

    Returns:
        Tuple of (design frame indexed by sample, whether the design is paired)
    """
    if config.condition not in metadata.columns:
        raise ValueError(f"Metadata has no condition column {config.condition!r}")

    levels = {config.test_level, config.reference_level}
    condition = metadata[config.condition]
    keep = condition.isin(levels)
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.warning(
            "Dropping %d samples with %s outside %s",
            n_dropped, config.condition, sorted(levels),
        )

    test_code = _factor_code(config.test_level)
    ref_code = _factor_code(config.reference_level)
    if test_code == ref_code:
        raise ValueError(
            f"Condition levels {config.test_level!r} and {config.reference_level!r} collide"
        )

    design = pd.DataFrame(index=metadata.index[keep])
    design["condition"] = condition[keep].map(
        {config.test_level: test_code, config.reference_level: ref_code}
    )
    for code, label in ((test_code, config.test_level), (ref_code, config.reference_level)):
        if not (design["condition"] == code).any():
            raise ValueError(f"No samples with {config.condition} = {label!r}")

    paired = False
    if config.paired and config.block in metadata.columns:
        block = metadata.loc[design.index, config.block]
        per_block = design.groupby(block.to_numpy())["condition"].nunique()
        if block.notna().all() and (per_block == 2).all():
            design["block"] = block.map(_factor_code)
            paired = True
        else:
            logger.warning(
                "Not every %s carries both conditions; falling back to an unpaired design",
                config.block,
            )
    return design, paired


def _prefilter(counts: pd.DataFrame, min_total_count: int) -> pd.DataFrame:
    total = counts.sum(axis=1)
    keep = total >= min_total_count
    n_removed = int((~keep).sum())
    if n_removed > 0:
        logger.info(
            "Low-count filter: removed %d genes (total count < %d)", n_removed, min_total_count
        )
    return counts.loc[keep]


def _attach_symbols(table: pd.DataFrame, symbols: Optional[pd.Series]) -> pd.DataFrame:
    if symbols is None:
        table["symbol"] = table.index.astype(str)
    else:
        mapped = symbols.reindex(table.index).astype("object")
        table["symbol"] = mapped.where(mapped.notna(), pd.Series(table.index, index=table.index))
    return table


def tmm_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Trimmed mean of M-values normalization factors (edgeR ``calcNormFactors``).

    Computed by conorm; factors are scaled to a geometric mean of one.
    """
    lib = counts.sum(axis=0)
    empty = list(lib.index[lib <= 0])
    if empty:
        raise ValueError(f"Cannot compute TMM factors for samples with zero library size: {empty}")
    factors = np.asarray(conorm.tmm_norm_factors(counts), dtype=float).ravel()
    return pd.Series(factors, index=counts.columns, name="norm_factor")


class DifferentialExpressionAnalyzer:
    """
    Performs differential expression analysis between inflamed and
    non-inflamed samples.

    Example:
        analyzer = DifferentialExpressionAnalyzer()
        result = analyzer.run(counts, metadata, method="deseq2", symbols=symbols)
        print(result.top())
    """

    def __init__(self, config: Optional[DEConfig] = None):
        """
        Initialize the analyzer.

        Args:
            config: Analysis configuration (uses defaults if None)
        """
        self.config = config or DEConfig()

    def run(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        method: DEMethod = "deseq2",
        symbols: Optional[pd.Series] = None,
    ) -> DEResult:
        """
        Run one DE model.

        Args:
            counts: Raw count matrix (genes x samples), columns aligned to metadata
            metadata: Sample metadata indexed by sample name
            method: "deseq2" or "edger"
            symbols: Optional Series mapping gene id -> symbol

        Returns:
            DEResult with one row per tested gene
        """
        if method not in DE_METHODS:
            raise ValueError(f"Unknown DE method {method!r}; expected one of {DE_METHODS}")
        if list(counts.columns) != list(metadata.index):
            raise ValueError("Count columns must be aligned with metadata rows before DE")

        design, paired = build_design(metadata, self.config)
        counts = counts[design.index]
        counts = _prefilter(counts, self.config.min_total_count)

        n_test = int((design["condition"] == _factor_code(self.config.test_level)).sum())
        n_control = len(design) - n_test
        logger.info(
            "Running %s (%d %s vs %d %s, %s design, %d genes)",
            method, n_test, self.config.test_level, n_control,
            self.config.reference_level, "paired" if paired else "unpaired", len(counts),
        )

        if method == "deseq2":
            table = self._run_deseq2(counts, design, paired)
            normalization, fdr_method = "median_of_ratios", "fdr_bh"
        else:
            table = self._run_edger(counts, design, paired)
            normalization, fdr_method = "tmm", "fdr_bh"

        table = _attach_symbols(table, symbols)[DE_COLUMNS]

        provenance = DEProvenance(
            method=method,
            design="~block + condition" if paired else "~condition",
            contrast=[self.config.condition, self.config.test_level, self.config.reference_level],
            n_test_samples=n_test,
            n_control_samples=n_control,
            normalization_method=normalization,
            fdr_method=fdr_method,
            thresholds={
                "fdr": self.config.fdr_threshold,
                "log2fc": self.config.log2fc_threshold,
                "top_n": self.config.top_n,
            },
        )
        result = DEResult(provenance=provenance, table=table)
        logger.info("%s complete: %r", method, result)
        return result

    def run_both(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        symbols: Optional[pd.Series] = None,
    ) -> Dict[str, DEResult]:
        """Run every DE method on the same inputs."""
        return {m: self.run(counts, metadata, method=m, symbols=symbols) for m in DE_METHODS}

    def _run_deseq2(self, counts: pd.DataFrame, design: pd.DataFrame, paired: bool) -> pd.DataFrame:
        """Run DESeq2 analysis via PyDESeq2.

        Expects raw integer counts (genes x samples). DESeq2 handles
        normalization (median-of-ratios), dispersion estimation, and
        Wald test internally.
        """
        # DESeq2 needs integer counts
        counts = counts.round().astype(int)

        formula = "~block + condition" if paired else "~condition"
        # PyDESeq2 expects (samples x genes)
        dds = DeseqDataSet(
            counts=counts.T,
            metadata=design,
            design=formula,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(
            dds,
            contrast=[
                "condition",
                _factor_code(self.config.test_level),
                _factor_code(self.config.reference_level),
            ],
            quiet=True,
        )
        stat_res.summary()
        results_df = stat_res.results_df

        return results_df[["baseMean", "log2FoldChange", "pvalue", "padj"]].copy()

    def _run_edger(self, counts: pd.DataFrame, design: pd.DataFrame, paired: bool) -> pd.DataFrame:
        """Run edgeR through inmoose edgepy: TMM factors, Cox-Reid common dispersion, GLM LRT."""
        counts = counts.round().astype(int)
        factors = tmm_factors(counts)
        lib_size = counts.sum(axis=0)

        test_code = _factor_code(self.config.test_level)
        condition = (design["condition"] == test_code).astype(float).rename("condition")
        intercept = pd.DataFrame({"const": np.ones(len(design))}, index=design.index)
        if paired:
            blocks = pd.get_dummies(design["block"], prefix="block", drop_first=True, dtype=float)
            intercept = pd.concat([intercept, blocks], axis=1)
        # condition stays the last coefficient; glmLRT tests it by default
        model = pd.concat([intercept, condition], axis=1).to_numpy()

        dge = DGEList(
            counts=counts.to_numpy(),
            lib_size=lib_size.to_numpy(dtype=float),
            norm_factors=factors.to_numpy(),
        )
        dge.estimateGLMCommonDisp(design=model)
        dispersion = float(np.asarray(dge.common_dispersion).ravel()[0])
        logger.info("edgeR: common dispersion %.4f (BCV %.3f)", dispersion, np.sqrt(dispersion))

        fit = dge.glmFit(design=model)
        lrt = glmLRT(fit)
        lrt_table = lrt.table

        effective_lib = lib_size * factors
        normalized = counts.div(effective_lib, axis=1) * effective_lib.mean()
        table = pd.DataFrame(
            {
                "baseMean": normalized.mean(axis=1).to_numpy(),
                "log2FoldChange": np.asarray(lrt_table["logFC"], dtype=float),
                "pvalue": np.asarray(lrt_table["PValue"], dtype=float),
            },
            index=counts.index,
        )

        valid = table["pvalue"].notna()
        table["padj"] = np.nan
        if valid.any():
            _, adjusted, _, _ = multipletests(table.loc[valid, "pvalue"], method="fdr_bh")
            table.loc[valid, "padj"] = adjusted
        return table[["baseMean", "log2FoldChange", "pvalue", "padj"]]


def compare_methods(
    result_a: DEResult,
    result_b: DEResult,
    top_n: Optional[int] = None,
) -> MethodComparison:
    """
    Compare the top-gene lists of two DE results.

    Args:
        result_a: First DE result
        result_b: Second DE result
        top_n: Size of each top list (defaults to each result's configured top_n)

    Returns:
        MethodComparison with shared / exclusive gene ids, the merged
        statistics of genes tested by both, and the Spearman correlation
        of their log2 fold changes
    """
    top_a = list(result_a.top(top_n).index)
    top_b = list(result_b.top(top_n).index)
    set_b = set(top_b)
    set_a = set(top_a)

    common = result_a.table.index.intersection(result_b.table.index)
    merged = result_a.table.loc[common, ["symbol", "log2FoldChange", "padj"]].join(
        result_b.table.loc[common, ["log2FoldChange", "padj"]],
        lsuffix=f"_{result_a.method}",
        rsuffix=f"_{result_b.method}",
    )
    merged["in_top_" + result_a.method] = merged.index.isin(set_a)
    merged["in_top_" + result_b.method] = merged.index.isin(set_b)

    lfc = merged[[f"log2FoldChange_{result_a.method}", f"log2FoldChange_{result_b.method}"]].dropna()
    if len(lfc) >= 3:
        rho, _ = stats.spearmanr(lfc.iloc[:, 0], lfc.iloc[:, 1])
        rho = float(rho)
    else:
        rho = float("nan")

    return MethodComparison(
        method_a=result_a.method,
        method_b=result_b.method,
        shared=[g for g in top_a if g in set_b],
        only_a=[g for g in top_a if g not in set_b],
        only_b=[g for g in top_b if g not in set_a],
        merged=merged,
        log2fc_spearman=rho,
    )
