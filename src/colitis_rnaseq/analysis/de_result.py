"""
Result dataclasses for differential expression and enrichment.

Gene-level and term-level statistics are kept as pandas tables so they
can be bound directly to report widgets; the dataclasses add provenance
and the threshold-based views used across the report.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

# Column layout shared by every DE method
DE_COLUMNS = ["symbol", "baseMean", "log2FoldChange", "pvalue", "padj"]

# Column layout shared by every enrichment backend
ENRICHMENT_COLUMNS = [
    "term_id", "term_name", "source", "score", "pvalue", "padj",
    "set_size", "overlap_size", "overlap_genes",
]


def significant_genes(
    table: pd.DataFrame,
    fdr_threshold: float,
    log2fc_threshold: float,
) -> pd.DataFrame:
    """
    Genes with padj < fdr_threshold and |log2FC| > log2fc_threshold.

    Genes with a missing padj are never significant. The result is sorted
    by padj ascending, ties broken by larger |log2FC|.
    """
    mask = (table["padj"] < fdr_threshold) & (table["log2FoldChange"].abs() > log2fc_threshold)
    hits = table.loc[mask].copy()
    hits["_abs_lfc"] = hits["log2FoldChange"].abs()
    hits = hits.sort_values(["padj", "_abs_lfc"], ascending=[True, False], kind="mergesort")
    return hits.drop(columns="_abs_lfc")


@dataclass
class DEProvenance:
    """Parameters needed to reproduce one DE run."""

    method: str
    design: str
    contrast: List[str]
    n_test_samples: int
    n_control_samples: int
    normalization_method: str
    fdr_method: str
    thresholds: Dict[str, float]
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "method": self.method,
            "design": self.design,
            "contrast": self.contrast,
            "samples": {
                "n_test": self.n_test_samples,
                "n_control": self.n_control_samples,
            },
            "methods": {
                "normalization": self.normalization_method,
                "fdr": self.fdr_method,
            },
            "thresholds": self.thresholds,
            "timestamp": self.timestamp,
        }


@dataclass
class DEResult:
    """
    Complete differential expression result for one method.

    ``table`` holds every tested gene (index = gene id) with the
    DE_COLUMNS layout.
    """

    provenance: DEProvenance
    table: pd.DataFrame

    @property
    def method(self) -> str:
        return self.provenance.method

    @property
    def genes_tested(self) -> int:
        return len(self.table)

    @property
    def significant(self) -> pd.DataFrame:
        """Genes passing the provenance thresholds, sorted by padj."""
        return significant_genes(
            self.table,
            self.provenance.thresholds["fdr"],
            self.provenance.thresholds["log2fc"],
        )

    @property
    def upregulated(self) -> pd.DataFrame:
        sig = self.significant
        return sig[sig["log2FoldChange"] > 0]

    @property
    def downregulated(self) -> pd.DataFrame:
        sig = self.significant
        return sig[sig["log2FoldChange"] < 0]

    @property
    def n_upregulated(self) -> int:
        return len(self.upregulated)

    @property
    def n_downregulated(self) -> int:
        return len(self.downregulated)

    def top(self, n: Optional[int] = None) -> pd.DataFrame:
        """Top n significant genes by padj (n defaults to the configured top_n)."""
        if n is None:
            n = int(self.provenance.thresholds.get("top_n", 20))
        return self.significant.head(n)

    def get_gene(self, symbol: str) -> Optional[pd.Series]:
        """Get the result row for a gene symbol or gene id."""
        if symbol in self.table.index:
            return self.table.loc[symbol]
        hits = self.table[self.table["symbol"] == symbol]
        if hits.empty:
            return None
        return hits.iloc[0]

    def __repr__(self) -> str:
        return (
            f"DEResult(method={self.method}, genes_tested={self.genes_tested}, "
            f"up={self.n_upregulated}, down={self.n_downregulated})"
        )


@dataclass
class MethodComparison:
    """Agreement between the top-gene lists of two DE methods."""

    method_a: str
    method_b: str
    shared: List[str]
    only_a: List[str]
    only_b: List[str]
    merged: pd.DataFrame  # common genes, both methods' statistics side by side
    log2fc_spearman: float

    @property
    def jaccard(self) -> float:
        union = len(self.shared) + len(self.only_a) + len(self.only_b)
        return len(self.shared) / union if union else 0.0

    def __repr__(self) -> str:
        return (
            f"MethodComparison({self.method_a} vs {self.method_b}: "
            f"shared={len(self.shared)}, only_a={len(self.only_a)}, "
            f"only_b={len(self.only_b)}, rho={self.log2fc_spearman:.2f})"
        )


@dataclass
class EnrichmentProvenance:
    """
    Provenance record for enrichment analysis.

    Captures all parameters needed to reproduce the analysis.
    """

    backend: str  # "gprofiler" | "enrichr" | "gsea_prerank"
    organism: str
    sources: List[str]
    significance_threshold: float
    input_genes: List[str] = field(default_factory=list)
    unmapped_genes: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "backend": self.backend,
            "organism": self.organism,
            "sources": self.sources,
            "significance_threshold": self.significance_threshold,
            "input_genes": len(self.input_genes),
            "unmapped_genes": self.unmapped_genes,
            "timestamp": self.timestamp,
        }


@dataclass
class EnrichmentResult:
    """Term-level enrichment table ranked by effect magnitude."""

    provenance: EnrichmentProvenance
    table: pd.DataFrame

    @property
    def n_terms(self) -> int:
        return len(self.table)

    def get_top_terms(self, n: int = 10, source: Optional[str] = None) -> pd.DataFrame:
        """Top n terms by |score|, optionally restricted to one source."""
        terms = self.table
        if source:
            terms = terms[terms["source"] == source]
        return terms.head(n)

    def __repr__(self) -> str:
        return f"EnrichmentResult(backend={self.provenance.backend}, terms={self.n_terms})"
