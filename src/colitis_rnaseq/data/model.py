"""Data classes shared by the loader and the analysis stages."""

from dataclasses import dataclass
from typing import Iterable, List

import pandas as pd


@dataclass
class Cohort:
    """
    Raw counts, gene annotation and sample metadata for one cohort.

    ``counts`` is genes x samples with the gene id as index. ``genes`` is
    indexed by the same gene ids and carries ``symbol`` and ``biotype``.
    ``metadata`` has one row per sample, indexed by the sample name used
    in the count matrix header.
    """

    counts: pd.DataFrame
    genes: pd.DataFrame
    metadata: pd.DataFrame

    @property
    def sample_names(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    def check_alignment(self) -> None:
        """Raise ValueError unless count columns match metadata rows in order."""
        columns = list(self.counts.columns)
        rows = list(self.metadata.index)
        if columns == rows:
            return
        if len(columns) != len(rows):
            raise ValueError(
                f"Count matrix has {len(columns)} samples but metadata has {len(rows)}"
            )
        mismatched = [
            f"{col}!={row}" for col, row in zip(columns, rows) if col != row
        ]
        raise ValueError(
            "Sample columns are not aligned with metadata rows: "
            + ", ".join(mismatched[:5])
            + (" ..." if len(mismatched) > 5 else "")
        )

    def symbols(self, gene_ids: Iterable[str]) -> List[str]:
        """Map gene ids to symbols, keeping the id where no symbol is known."""
        if "symbol" not in self.genes.columns:
            return [str(g) for g in gene_ids]
        lookup = self.genes["symbol"]
        result = []
        for gene_id in gene_ids:
            symbol = lookup.get(gene_id)
            result.append(str(symbol) if isinstance(symbol, str) and symbol else str(gene_id))
        return result

    def subset_genes(self, gene_ids: Iterable[str]) -> "Cohort":
        """Return a new Cohort restricted to the given genes."""
        keep = [g for g in gene_ids if g in self.counts.index]
        return Cohort(
            counts=self.counts.loc[keep],
            genes=self.genes.reindex(keep),
            metadata=self.metadata,
        )

    def __repr__(self) -> str:
        return f"Cohort(genes={self.n_genes}, samples={self.n_samples})"
