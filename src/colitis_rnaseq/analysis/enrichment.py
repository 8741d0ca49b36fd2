"""
Pathway enrichment for the inflamed vs non-inflamed DE results.

Over-representation analysis (ORA) submits a short list of strongly
changed genes to an external service:
- g:Profiler (gprofiler-official), queried with NCBI Gene IDs resolved
  through the HGNC mapper
- Enrichr (gseapy), queried with gene symbols

Preranked GSEA (gseapy) scores every tested gene by
``-log10(pvalue) * sign(log2FC)``.

Every backend returns a table in the ENRICHMENT_COLUMNS layout, ranked by
effect magnitude (|score|).

Example:
    analyzer = EnrichmentAnalyzer(config=EnrichmentConfig())
    result = analyzer.over_representation(de_result.table, backend="gprofiler")
"""

import logging
from typing import Dict, List, Optional, Protocol

import gseapy as gp
import numpy as np
import pandas as pd
from gprofiler import GProfiler

from ..config import EnrichmentConfig
from .de_result import (
    ENRICHMENT_COLUMNS,
    EnrichmentProvenance,
    EnrichmentResult,
    significant_genes,
)
from .gene_mapper import GeneMapper

logger = logging.getLogger(__name__)

ORA_BACKENDS = ("gprofiler", "enrichr")


def select_enrichment_genes(
    table: pd.DataFrame,
    fdr_threshold: float = 0.1,
    log2fc_threshold: float = 1.5,
    max_genes: int = 40,
) -> pd.DataFrame:
    """Strongest DE genes for ORA: padj < fdr, |log2FC| > cutoff, best padj first, capped."""
    return significant_genes(table, fdr_threshold, log2fc_threshold).head(max_genes)


def _rank_by_score(df: pd.DataFrame) -> pd.DataFrame:
    df = df.reindex(columns=ENRICHMENT_COLUMNS)
    order = df["score"].abs().sort_values(ascending=False, kind="mergesort").index
    return df.loc[order].reset_index(drop=True)


def _empty_table() -> pd.DataFrame:
    return pd.DataFrame(columns=ENRICHMENT_COLUMNS)


class EnrichmentBackend(Protocol):
    """Protocol for over-representation backends."""

    name: str
    id_type: str  # "symbol" | "entrez"

    def analyze(self, genes: List[str], config: EnrichmentConfig) -> pd.DataFrame:
        """
        Run enrichment analysis on a gene list.

        Args:
            genes: Gene identifiers of the backend's id_type
            config: Enrichment configuration

        Returns:
            Table in the ENRICHMENT_COLUMNS layout
        """
        ...


class GProfilerBackend:
    """
    Enrichment analysis using g:Profiler API.

    Uses the gprofiler-official package for server-side computation.
    Queries with NCBI Gene IDs (ENTREZGENE_ACC namespace).
    """

    name = "gprofiler"
    id_type = "entrez"

    def __init__(self, client: Optional[GProfiler] = None):
        self._gp = client

    def _get_client(self) -> GProfiler:
        """Lazy initialization of g:Profiler client."""
        if self._gp is None:
            self._gp = GProfiler(return_dataframe=False)
        return self._gp

    def analyze(self, genes: List[str], config: EnrichmentConfig) -> pd.DataFrame:
        if not genes:
            return _empty_table()

        result = self._get_client().profile(
            organism=config.organism,
            query=genes,
            sources=config.sources,
            user_threshold=config.significance_threshold,
            significance_threshold_method="g_SCS",
            numeric_namespace="ENTREZGENE_ACC",
            no_evidences=False,  # include intersections
        )
        if not result:
            return _empty_table()

        rows = []
        for r in result:
            domain = r.get("effective_domain_size") or 0
            expected = r["query_size"] * r["term_size"] / domain if domain else np.nan
            fold = r["intersection_size"] / expected if expected else np.nan
            rows.append({
                "term_id": r["native"],
                "term_name": r["name"],
                "source": r["source"],
                "score": float(np.log2(fold)) if fold and fold > 0 else np.nan,
                "pvalue": r["p_value"],
                # g:Profiler returns adjusted p-values
                "padj": r["p_value"],
                "set_size": r["term_size"],
                "overlap_size": r["intersection_size"],
                "overlap_genes": _gprofiler_intersections(genes, r.get("intersections", [])),
            })
        return pd.DataFrame(rows)


def _gprofiler_intersections(query: List[str], intersections: List) -> List[str]:
    """Pick the query genes flagged by g:Profiler's per-gene evidence list."""
    if len(intersections) != len(query):
        return []
    return [gene for gene, evidence in zip(query, intersections) if evidence]


class EnrichrBackend:
    """Enrichment analysis using the Enrichr service through gseapy."""

    name = "enrichr"
    id_type = "symbol"

    def analyze(self, genes: List[str], config: EnrichmentConfig) -> pd.DataFrame:
        if not genes:
            return _empty_table()

        enr = gp.enrichr(
            gene_list=genes,
            gene_sets=config.enrichr_libraries,
            organism="human",
            outdir=None,
            cutoff=config.significance_threshold,
        )
        res = enr.results
        if res is None or res.empty:
            return _empty_table()

        res = res[res["Adjusted P-value"] < config.significance_threshold]
        if res.empty:
            return _empty_table()
        overlap = res["Overlap"].str.split("/", expand=True).astype(int)
        return pd.DataFrame({
            "term_id": res["Term"],
            "term_name": res["Term"],
            "source": res["Gene_set"],
            "score": res["Combined Score"].astype(float),
            "pvalue": res["P-value"].astype(float),
            "padj": res["Adjusted P-value"].astype(float),
            "set_size": overlap[1],
            "overlap_size": overlap[0],
            "overlap_genes": res["Genes"].str.split(";"),
        })


def gsea_ranking(table: pd.DataFrame) -> pd.Series:
    """
    Signed significance score per gene symbol for preranked GSEA.

    score = -log10(pvalue) * sign(log2FC). Zero p-values are clipped to
    the smallest positive p-value; duplicated symbols keep the entry with
    the largest |score|.
    """
    df = table.dropna(subset=["pvalue", "log2FoldChange"])
    if df.empty:
        return pd.Series(dtype=float)
    pvalues = df["pvalue"].astype(float)
    positive = pvalues[pvalues > 0]
    floor = positive.min() if not positive.empty else 1e-300
    score = -np.log10(pvalues.clip(lower=floor)) * np.sign(df["log2FoldChange"])

    ranked = pd.DataFrame({"symbol": df["symbol"].astype(str).str.upper(), "score": score})
    ranked["_abs"] = ranked["score"].abs()
    ranked = ranked.sort_values("_abs", ascending=False).drop_duplicates("symbol")
    return ranked.set_index("symbol")["score"].sort_values(ascending=False)


class EnrichmentAnalyzer:
    """
    Gene set enrichment analyzer.

    Example:
        analyzer = EnrichmentAnalyzer(config=EnrichmentConfig())
        ora = analyzer.over_representation(de_table, backend="enrichr")
        gsea = analyzer.gsea(de_table)
    """

    def __init__(
        self,
        config: Optional[EnrichmentConfig] = None,
        mapper: Optional[GeneMapper] = None,
        backends: Optional[Dict[str, EnrichmentBackend]] = None,
    ):
        """
        Initialize enrichment analyzer.

        Args:
            config: Analysis configuration
            mapper: Symbol -> NCBI Gene ID mapper (default: GeneMapper())
            backends: ORA backends by name (default: g:Profiler and Enrichr)
        """
        self.config = config or EnrichmentConfig()
        self.mapper = mapper or GeneMapper()
        self.backends: Dict[str, EnrichmentBackend] = backends or {
            "gprofiler": GProfilerBackend(),
            "enrichr": EnrichrBackend(),
        }

    def input_genes(self, table: pd.DataFrame) -> List[str]:
        """Gene symbols submitted to ORA services."""
        selected = select_enrichment_genes(
            table,
            self.config.fdr_threshold,
            self.config.log2fc_threshold,
            self.config.max_genes,
        )
        return [str(s) for s in dict.fromkeys(selected["symbol"])]

    def over_representation(self, table: pd.DataFrame, backend: str = "gprofiler") -> EnrichmentResult:
        """
        Run ORA on the strongest DE genes of one result table.

        Args:
            table: DE table (DE_COLUMNS layout)
            backend: Name of a registered backend

        Returns:
            EnrichmentResult ranked by |score|
        """
        if backend not in self.backends:
            raise ValueError(f"Unknown enrichment backend {backend!r}; expected one of {sorted(self.backends)}")
        service = self.backends[backend]

        genes = self.input_genes(table)
        unmapped: List[str] = []
        query = genes
        back_to_symbol: Dict[str, str] = {}
        if service.id_type == "entrez" and genes:
            resolved = self.mapper.resolve_symbols(genes)
            unmapped = [s for s, gid in resolved.items() if gid is None]
            back_to_symbol = {gid: s for s, gid in resolved.items() if gid is not None}
            query = list(back_to_symbol)

        provenance = EnrichmentProvenance(
            backend=service.name,
            organism=self.config.organism,
            sources=self.config.sources if service.name == "gprofiler" else self.config.enrichr_libraries,
            significance_threshold=self.config.significance_threshold,
            input_genes=genes,
            unmapped_genes=unmapped,
        )

        if len(query) < self.config.min_genes:
            logger.warning(
                "Only %d genes available for %s (minimum %d); skipping query",
                len(query), service.name, self.config.min_genes,
            )
            return EnrichmentResult(provenance=provenance, table=_empty_table())

        logger.info("Submitting %d genes to %s", len(query), service.name)
        df = service.analyze(query, self.config)
        if back_to_symbol and not df.empty:
            df["overlap_genes"] = df["overlap_genes"].map(
                lambda ids: [back_to_symbol.get(i, i) for i in ids]
            )
        table_out = _rank_by_score(df) if not df.empty else _empty_table()
        logger.info("%s returned %d significant terms", service.name, len(table_out))
        return EnrichmentResult(provenance=provenance, table=table_out)

    def gsea(self, table: pd.DataFrame, seed: int = 42) -> EnrichmentResult:
        """Preranked GSEA over every tested gene."""
        ranking = gsea_ranking(table)
        provenance = EnrichmentProvenance(
            backend="gsea_prerank",
            organism=self.config.organism,
            sources=[self.config.gsea_gene_sets],
            significance_threshold=self.config.significance_threshold,
            input_genes=list(ranking.index),
        )
        if len(ranking) < self.config.gsea_min_size:
            logger.warning("Only %d ranked genes; skipping GSEA", len(ranking))
            return EnrichmentResult(provenance=provenance, table=_empty_table())

        logger.info("Running preranked GSEA on %d genes against %s", len(ranking), self.config.gsea_gene_sets)
        pre = gp.prerank(
            rnk=ranking,
            gene_sets=self.config.gsea_gene_sets,
            permutation_num=self.config.gsea_permutations,
            min_size=self.config.gsea_min_size,
            max_size=self.config.gsea_max_size,
            seed=seed,
            outdir=None,
            verbose=False,
        )
        res = pre.res2d
        if res is None or res.empty:
            return EnrichmentResult(provenance=provenance, table=_empty_table())

        set_size = res["Tag %"].astype(str).str.split("/").str[1].astype(int)
        overlap = res["Tag %"].astype(str).str.split("/").str[0].astype(int)
        df = pd.DataFrame({
            "term_id": res["Term"],
            "term_name": res["Term"],
            "source": self.config.gsea_gene_sets,
            "score": res["NES"].astype(float),
            "pvalue": res["NOM p-val"].astype(float),
            "padj": res["FDR q-val"].astype(float),
            "set_size": set_size,
            "overlap_size": overlap,
            "overlap_genes": res["Lead_genes"].astype(str).str.split(";"),
        })
        return EnrichmentResult(provenance=provenance, table=_rank_by_score(df))
