"""Filtering, projection, association, DE, replicate and enrichment stages."""

from colitis_rnaseq.analysis.de_analysis import DifferentialExpressionAnalyzer, compare_methods
from colitis_rnaseq.analysis.de_result import DEResult, EnrichmentResult, MethodComparison
from colitis_rnaseq.analysis.enrichment import EnrichmentAnalyzer
from colitis_rnaseq.analysis.filtering import FilteredExpression, filter_cohort
from colitis_rnaseq.analysis.gene_mapper import GeneMapper
from colitis_rnaseq.analysis.projection import PCAResult, compute_embedding, compute_pca

__all__ = [
    "DEResult",
    "DifferentialExpressionAnalyzer",
    "EnrichmentAnalyzer",
    "EnrichmentResult",
    "FilteredExpression",
    "GeneMapper",
    "MethodComparison",
    "PCAResult",
    "compare_methods",
    "compute_embedding",
    "compute_pca",
    "filter_cohort",
]
