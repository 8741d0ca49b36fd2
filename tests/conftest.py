"""Shared synthetic cohort for the test suite."""

import numpy as np
import pandas as pd
import pytest

from colitis_rnaseq.analysis.de_result import DEProvenance, DEResult
from colitis_rnaseq.config import INFLAMED, NON_INFLAMED
from colitis_rnaseq.data.model import Cohort

N_DE_GENES = 20


def make_metadata(n_patients=4):
    """Two inflamed and two non-inflamed biopsies per patient."""
    rows = []
    for p in range(n_patients):
        for status in (INFLAMED, INFLAMED, NON_INFLAMED, NON_INFLAMED):
            rows.append({
                "accession": f"GSM{1000 + len(rows)}",
                "title": f"S{len(rows) + 1:02d}",
                "inflammation": status,
                "hospital": "H1" if p % 2 == 0 else "H2",
                "patient": f"P{p + 1}",
                "location": "sigmoid" if len(rows) % 2 == 0 else "rectum",
            })
    metadata = pd.DataFrame(rows)
    metadata.index = pd.Index(metadata["title"], name="sample")
    return metadata


def make_counts(metadata, n_genes=300, n_sparse=30, fold=8.0, seed=42):
    """
    Negative binomial counts (genes x samples).

    The first N_DE_GENES genes are raised ``fold``-times in inflamed
    samples; the last ``n_sparse`` genes are zero in most samples.
    """
    rng = np.random.RandomState(seed)
    n_samples = len(metadata)
    base = rng.lognormal(mean=5.0, sigma=1.0, size=n_genes)
    inflamed = (metadata["inflammation"] == INFLAMED).to_numpy()

    mu = np.tile(base[:, None], (1, n_samples))
    mu[:N_DE_GENES, inflamed] *= fold
    dispersion = 0.05
    p = 1.0 / (1.0 + mu * dispersion)
    counts = rng.negative_binomial(1.0 / dispersion, p).astype(float)

    if n_sparse:
        counts[-n_sparse:, :] = 0
        counts[-n_sparse:, :2] = 4

    gene_ids = [f"ENSG{i:011d}" for i in range(n_genes)]
    return pd.DataFrame(counts, index=pd.Index(gene_ids, name="gene_id"), columns=metadata.index)


def make_cohort(n_patients=4, n_genes=300, seed=42):
    metadata = make_metadata(n_patients)
    counts = make_counts(metadata, n_genes=n_genes, seed=seed)
    genes = pd.DataFrame(
        {"symbol": [f"GENE{i}" for i in range(n_genes)]},
        index=counts.index,
    )
    return Cohort(counts=counts, genes=genes, metadata=metadata)


@pytest.fixture
def cohort():
    return make_cohort()


def make_de_result(method="deseq2", rows=None, fdr=0.07, lfc=1.0, top_n=20):
    """DEResult from (gene_id, symbol, log2FoldChange, pvalue, padj) tuples."""
    if rows is None:
        rows = [
            ("G1", "CXCL8", 4.0, 1e-10, 1e-8),
            ("G2", "S100A8", 3.0, 1e-8, 1e-6),
            ("G3", "REG1A", -2.5, 1e-6, 1e-4),
            ("G4", "AQP8", -1.2, 1e-4, 0.01),
            ("G5", "ACTB", 0.1, 0.5, 0.8),
            ("G6", "LOWFC", 0.9, 1e-9, 1e-7),
            ("G7", "NOPADJ", 5.0, 0.2, np.nan),
        ]
    table = pd.DataFrame(rows, columns=["gene_id", "symbol", "log2FoldChange", "pvalue", "padj"])
    table = table.set_index("gene_id")
    table.insert(1, "baseMean", 100.0)
    provenance = DEProvenance(
        method=method,
        design="~block + condition",
        contrast=["inflammation", "inflamed", "non-inflamed"],
        n_test_samples=8,
        n_control_samples=8,
        normalization_method="median_of_ratios",
        fdr_method="fdr_bh",
        thresholds={"fdr": fdr, "log2fc": lfc, "top_n": top_n},
    )
    return DEResult(provenance=provenance, table=table)
