"""
Shared configuration for the colitis RNA-Seq report.

Loads environment variables from .env and provides the reporting
parameters used by every stage of the pipeline.

Usage:
    from colitis_rnaseq.config import load_config

    cfg = load_config()
    counts_path = cfg.counts_path
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Canonical labels for the inflammation factor after metadata normalization
INFLAMED = "inflamed"
NON_INFLAMED = "non-inflamed"

# Metadata fields exposed to widgets and association tests
METADATA_FIELDS = ("inflammation", "hospital", "patient", "location")


@dataclass
class FilterConfig:
    """Expression filtering before projection.

    Attributes:
        min_count: Expression units a sample needs for a gene to count as
            expressed in that sample.
        min_fraction: A gene is kept when the fraction of expressing
            samples is strictly greater than this value.
        n_top_variance: Size of the highest-variance subset fed to
            UMAP / t-SNE.
        log_prior: Pseudocount added before the log2(CPM) transform.
    """

    min_count: float = 1.0
    min_fraction: float = 0.5
    n_top_variance: int = 500
    log_prior: float = 1.0

    def __post_init__(self):
        if not 0.0 <= self.min_fraction < 1.0:
            raise ValueError(f"min_fraction must be in [0, 1), got {self.min_fraction}")
        if self.n_top_variance < 1:
            raise ValueError(f"n_top_variance must be positive, got {self.n_top_variance}")


@dataclass
class ProjectionConfig:
    """Defaults for PCA / UMAP / t-SNE embeddings."""

    n_pcs: int = 10
    n_components: int = 3
    random_state: int = 42
    umap_n_neighbors: int = 15
    umap_min_dist: float = 0.1
    tsne_perplexity: float = 30.0


@dataclass
class DEConfig:
    """Configuration for differential expression reporting.

    Both DE models compare ``test_level`` against ``reference_level`` of
    the ``condition`` metadata column. When ``paired`` is True and every
    patient carries both conditions the patient is added as a blocking
    factor.
    """

    condition: str = "inflammation"
    test_level: str = INFLAMED
    reference_level: str = NON_INFLAMED
    block: str = "patient"
    paired: bool = True

    # Significance thresholds for the reported top list
    fdr_threshold: float = 0.07
    log2fc_threshold: float = 1.0
    top_n: int = 20

    # Genes whose summed raw counts fall below this are not tested
    min_total_count: int = 10


@dataclass
class EnrichmentConfig:
    """
    Configuration for enrichment analysis.

    Attributes:
        fdr_threshold: Adjusted p-value cutoff for input genes
        log2fc_threshold: Minimum |log2FC| for input genes
        max_genes: Cap on the number of genes submitted
        min_genes: Minimum genes required to query a service
        organism: g:Profiler organism identifier
        sources: g:Profiler data sources
        enrichr_libraries: Enrichr gene-set libraries
        gsea_gene_sets: Gene-set library for preranked GSEA
        significance_threshold: Term-level significance threshold
        gsea_permutations: Permutations for preranked GSEA
    """

    fdr_threshold: float = 0.1
    log2fc_threshold: float = 1.5
    max_genes: int = 40
    min_genes: int = 3
    organism: str = "hsapiens"
    sources: List[str] = field(default_factory=lambda: ["GO:BP", "KEGG", "REAC"])
    enrichr_libraries: List[str] = field(
        default_factory=lambda: ["KEGG_2021_Human", "Reactome_2022"]
    )
    gsea_gene_sets: str = "KEGG_2021_Human"
    significance_threshold: float = 0.05
    gsea_permutations: int = 1000
    gsea_min_size: int = 10
    gsea_max_size: int = 500


@dataclass
class ReportConfig:
    """Top-level configuration for one report session."""

    counts_path: Optional[Path] = None
    metadata_path: Optional[Path] = None
    hgnc_cache_path: Optional[Path] = None
    filter: FilterConfig = field(default_factory=FilterConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    de: DEConfig = field(default_factory=DEConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def require_inputs(self) -> Tuple[Path, Path]:
        """Return both input paths, failing when either is unset or missing."""
        missing = []
        for name, path in (("counts", self.counts_path), ("metadata", self.metadata_path)):
            if path is None:
                missing.append(f"{name} path is not configured")
            elif not Path(path).exists():
                missing.append(f"{name} file not found: {path}")
        if missing:
            raise ValueError("; ".join(missing))
        return Path(self.counts_path), Path(self.metadata_path)


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else None


def load_config() -> ReportConfig:
    """
    Load .env and return the report configuration.

    Environment variables:
        COLITIS_COUNTS_PATH: gzipped TSV raw-count matrix
        COLITIS_METADATA_PATH: GEO series-matrix metadata file
        COLITIS_HGNC_CACHE: cache file for HGNC symbol mappings
        COLITIS_RANDOM_STATE: seed for UMAP / t-SNE
    """
    load_dotenv()

    projection = ProjectionConfig()
    seed = os.environ.get("COLITIS_RANDOM_STATE")
    if seed:
        projection.random_state = int(seed)

    return ReportConfig(
        counts_path=_env_path("COLITIS_COUNTS_PATH"),
        metadata_path=_env_path("COLITIS_METADATA_PATH"),
        hgnc_cache_path=_env_path("COLITIS_HGNC_CACHE"),
        projection=projection,
    )
