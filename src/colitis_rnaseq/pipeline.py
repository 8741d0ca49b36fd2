"""
Report pipeline: lazily computed stages over one cohort.

Each stage is computed on first access and memoized for the lifetime of
the pipeline object. Stages parameterized by a widget value (embedding
method, gene count, PC count, enrichment service) are memoized per
parameter combination.
"""

import logging
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .analysis.association import design_matrix, pc_correlations, pc_group_tests
from .analysis.de_analysis import DE_METHODS, DifferentialExpressionAnalyzer, compare_methods
from .analysis.de_result import DEResult, EnrichmentResult, MethodComparison
from .analysis.enrichment import ORA_BACKENDS, EnrichmentAnalyzer
from .analysis.filtering import FilteredExpression, filter_cohort, top_variance_genes
from .analysis.gene_mapper import GeneMapper
from .analysis.projection import PCAResult, compute_embedding, compute_pca, embedding_frame
from .analysis.replicates import check_replicate_structure, inflammation_ratios
from .config import METADATA_FIELDS, ReportConfig
from .data.loader import load_cohort
from .data.model import Cohort

logger = logging.getLogger(__name__)

ENRICHMENT_SERVICES = ORA_BACKENDS + ("gsea",)


class ReportPipeline:
    """
    Orchestrates the report stages for one configuration.

    Example:
        pipeline = ReportPipeline(load_config())
        frame = pipeline.embedding("umap", n_genes=500, n_components=3)
        top = pipeline.de_results()["deseq2"].top()
    """

    def __init__(self, config: ReportConfig, cohort: Optional[Cohort] = None):
        self.config = config
        self._cohort = cohort
        self._filtered: Optional[FilteredExpression] = None
        self._pca: Optional[PCAResult] = None
        self._embeddings: Dict[Tuple[str, int, int], pd.DataFrame] = {}
        self._de: Optional[Dict[str, DEResult]] = None
        self._enrichment: Dict[Tuple[str, str], EnrichmentResult] = {}
        self._enrichment_analyzer: Optional[EnrichmentAnalyzer] = None

    # -----------------------------------------------------------------
    # Data
    # -----------------------------------------------------------------

    @property
    def cohort(self) -> Cohort:
        if self._cohort is None:
            counts_path, metadata_path = self.config.require_inputs()
            self._cohort = load_cohort(counts_path, metadata_path)
        return self._cohort

    @property
    def filtered(self) -> FilteredExpression:
        if self._filtered is None:
            self._filtered = filter_cohort(self.cohort, self.config.filter)
        return self._filtered

    def metadata_fields(self) -> List[str]:
        """Metadata columns available for colouring and association tests."""
        present = [f for f in METADATA_FIELDS if f in self.cohort.metadata.columns]
        others = [
            c for c in self.cohort.metadata.columns
            if c not in present and c not in ("accession", "title")
        ]
        return present + others

    # -----------------------------------------------------------------
    # Projection and association
    # -----------------------------------------------------------------

    @property
    def pca(self) -> PCAResult:
        if self._pca is None:
            self._pca = compute_pca(self.filtered.log_expr, n_components=self.config.projection.n_pcs)
        return self._pca

    def embedding(self, method: str = "pca", n_genes: Optional[int] = None, n_components: int = 2) -> pd.DataFrame:
        """Embedding coordinates joined to metadata for one widget setting."""
        n_genes = n_genes or self.config.filter.n_top_variance
        key = (method, n_genes, n_components)
        if key not in self._embeddings:
            filtered = self.filtered
            expr = top_variance_genes(filtered.log_expr, n_genes, variance=filtered.variance)
            proj = self.config.projection
            coords = compute_embedding(
                expr,
                method=method,
                n_components=n_components,
                random_state=proj.random_state,
                n_neighbors=proj.umap_n_neighbors,
                min_dist=proj.umap_min_dist,
                perplexity=proj.tsne_perplexity,
            )
            self._embeddings[key] = embedding_frame(coords, self.cohort.metadata)
        return self._embeddings[key]

    def associations(self, n_pcs: Optional[int] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """(Spearman correlations, group tests) between PCs and metadata."""
        fields = [f for f in self.metadata_fields() if f in METADATA_FIELDS]
        design = design_matrix(self.cohort.metadata, fields)
        correlations = pc_correlations(self.pca.scores, design, n_pcs)
        group_tests = pc_group_tests(self.pca.scores, self.cohort.metadata, fields, n_pcs)
        return correlations, group_tests

    # -----------------------------------------------------------------
    # Differential expression
    # -----------------------------------------------------------------

    def de_results(self) -> Dict[str, DEResult]:
        if self._de is None:
            cohort = self.cohort
            analyzer = DifferentialExpressionAnalyzer(self.config.de)
            self._de = analyzer.run_both(
                cohort.counts, cohort.metadata, symbols=cohort.genes.get("symbol")
            )
        return self._de

    def comparison(self, top_n: Optional[int] = None) -> MethodComparison:
        results = self.de_results()
        first, second = DE_METHODS
        return compare_methods(results[first], results[second], top_n)

    def ratios(self, method: str = "deseq2", top_n: Optional[int] = None) -> pd.DataFrame:
        """Per-patient inflamed / non-inflamed ratios of one method's top genes, on CPM."""
        cohort = self.cohort
        check_replicate_structure(cohort.metadata)
        genes = list(self.de_results()[method].top(top_n).index)
        counts = cohort.counts
        cpm = counts.div(counts.sum(axis=0), axis=1) * 1e6
        table = inflammation_ratios(cpm, cohort.metadata, genes=genes)
        table.insert(1, "symbol", cohort.symbols(table["gene_id"]))
        return table

    # -----------------------------------------------------------------
    # Enrichment
    # -----------------------------------------------------------------

    @property
    def enrichment_analyzer(self) -> EnrichmentAnalyzer:
        if self._enrichment_analyzer is None:
            self._enrichment_analyzer = EnrichmentAnalyzer(
                self.config.enrichment,
                mapper=GeneMapper(self.config.hgnc_cache_path),
            )
        return self._enrichment_analyzer

    def enrichment(self, service: str = "gprofiler", method: str = "deseq2") -> EnrichmentResult:
        if service not in ENRICHMENT_SERVICES:
            raise ValueError(f"Unknown enrichment service {service!r}; expected one of {ENRICHMENT_SERVICES}")
        key = (service, method)
        if key not in self._enrichment:
            table = self.de_results()[method].table
            analyzer = self.enrichment_analyzer
            if service == "gsea":
                result = analyzer.gsea(table, seed=self.config.projection.random_state)
            else:
                result = analyzer.over_representation(table, backend=service)
            self._enrichment[key] = result
        return self._enrichment[key]
