"""Count matrix and GEO series-matrix loading.

Usage::

    from colitis_rnaseq.data import load_cohort

    cohort = load_cohort("counts.tsv.gz", "GSE_series_matrix.txt.gz")
"""

from colitis_rnaseq.data.loader import (
    align_samples,
    build_sample_metadata,
    load_cohort,
    parse_series_matrix,
    read_count_matrix,
)
from colitis_rnaseq.data.model import Cohort

__all__ = [
    "Cohort",
    "align_samples",
    "build_sample_metadata",
    "load_cohort",
    "parse_series_matrix",
    "read_count_matrix",
]
