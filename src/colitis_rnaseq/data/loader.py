"""
Input file parsers for the colitis cohort.

Reads the two flat inputs of the report:
- a gzip-compressed tab-separated raw-count matrix (genes x samples,
  leading annotation columns for identifier / symbol / biotype)
- a GEO series-matrix metadata file made of ``!key<TAB>value...`` lines

Sample characteristics are identified by their ``field: value`` prefix
rather than by line position, so reordering or adding characteristic
lines in the metadata file does not shift fields.
"""

import gzip
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from ..config import INFLAMED, NON_INFLAMED
from .model import Cohort

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CHARACTERISTICS_KEY = "Sample_characteristics_ch1"
CHARACTERISTICS_PREFIX = "characteristics:"
TABLE_BEGIN = "series_matrix_table_begin"
TABLE_END = "series_matrix_table_end"

# Annotation column names recognized in the count matrix header
SYMBOL_COLUMNS = ("gene_name", "gene_symbol", "symbol", "genesymbol", "hgnc_symbol")
BIOTYPE_COLUMNS = ("gene_biotype", "gene_type", "biotype")

# Raw characteristic field names (lowercased) -> canonical metadata column
FIELD_ALIASES: Dict[str, str] = {
    "inflammation": "inflammation",
    "inflammation status": "inflammation",
    "inflammation_status": "inflammation",
    "inflamed": "inflammation",
    "hospital": "hospital",
    "center": "hospital",
    "site": "hospital",
    "patient": "patient",
    "patient id": "patient",
    "patient_id": "patient",
    "individual": "patient",
    "subject": "patient",
    "donor": "patient",
    "location": "location",
    "colon location": "location",
    "tissue location": "location",
    "anatomical location": "location",
    "colonic segment": "location",
}

_NON_INFLAMED_VALUES = {
    "non-inflamed", "non inflamed", "noninflamed", "non_inflamed",
    "uninflamed", "not inflamed", "no", "false", "0",
}
_INFLAMED_VALUES = {"inflamed", "inflammation", "yes", "true", "1"}


def _open_text(path: PathLike):
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    return value.strip()


def _canonical_field(name: str) -> str:
    key = name.strip().lower()
    if key in FIELD_ALIASES:
        return FIELD_ALIASES[key]
    return re.sub(r"[^0-9a-z]+", "_", key).strip("_")


def normalize_inflammation(value: Optional[str]) -> Optional[str]:
    """Map free-text inflammation values onto the two canonical labels."""
    if value is None or pd.isna(value):
        return None
    text = str(value).strip().lower()
    if text in _NON_INFLAMED_VALUES:
        return NON_INFLAMED
    if text in _INFLAMED_VALUES:
        return INFLAMED
    return text


def read_count_matrix(path: PathLike) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Read a tab-separated raw-count matrix.

    The leading non-numeric columns are treated as gene annotation; the
    first of them is the gene identifier and becomes the index. Every
    remaining column is one sample.

    Args:
        path: Path to the (optionally gzipped) TSV file

    Returns:
        Tuple of (counts, genes): counts is genes x samples, genes holds
        the ``symbol`` / ``biotype`` annotation indexed by gene id
    """
    df = pd.read_csv(path, sep="\t", compression="infer")
    if df.empty:
        raise ValueError(f"Count matrix is empty: {path}")

    n_annot = 0
    for col in df.columns:
        if pd.api.types.is_numeric_dtype(df[col]) and n_annot > 0:
            break
        n_annot += 1

    annot_cols = list(df.columns[:n_annot])
    sample_cols = list(df.columns[n_annot:])
    if not sample_cols:
        raise ValueError(f"No numeric sample columns found in {path}")

    gene_col = annot_cols[0]
    if df[gene_col].duplicated().any():
        dups = df.loc[df[gene_col].duplicated(), gene_col].head(5).tolist()
        raise ValueError(f"Duplicated gene identifiers in count matrix: {dups}")

    df = df.set_index(gene_col)
    df.index = df.index.astype(str)
    df.index.name = "gene_id"

    counts = df[sample_cols].astype(float)
    if (counts.values < 0).any():
        raise ValueError("Count matrix contains negative values")

    genes = pd.DataFrame(index=counts.index)
    for col in annot_cols[1:]:
        lowered = col.lower()
        if lowered in SYMBOL_COLUMNS:
            genes["symbol"] = df[col].astype("string")
        elif lowered in BIOTYPE_COLUMNS:
            genes["biotype"] = df[col].astype("string")
        else:
            genes[col] = df[col]
    if "symbol" not in genes.columns:
        genes["symbol"] = pd.Series(counts.index, index=counts.index, dtype="string")

    logger.info(
        "Loaded count matrix: %d genes x %d samples (%d annotation columns)",
        counts.shape[0], counts.shape[1], len(annot_cols),
    )
    return counts, genes


def parse_series_matrix(path: PathLike) -> Dict[str, List[Optional[str]]]:
    """
    Parse a GEO series-matrix metadata file into a key -> values mapping.

    Each ``!key<TAB>v1<TAB>v2...`` line maps ``key`` (without the leading
    ``!``) to its unquoted values. ``!Sample_characteristics_ch1`` lines
    are split cell by cell on the ``field: value`` prefix and stored under
    ``characteristics:<field>``; a sample lacking a field gets ``None``.
    Other repeated keys keep their first occurrence.

    Args:
        path: Path to the (optionally gzipped) series-matrix file

    Returns:
        Dictionary with parsed metadata lists
    """
    series: Dict[str, List[Optional[str]]] = {}
    characteristics: Dict[str, List[Optional[str]]] = {}
    in_table = False

    with _open_text(path) as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line.startswith("!"):
                continue

            parts = line.split("\t")
            key = parts[0][1:].strip()
            values = [_unquote(p) for p in parts[1:]]

            if key == TABLE_BEGIN:
                in_table = True
                continue
            if key == TABLE_END:
                in_table = False
                continue
            if in_table:
                continue

            if key == CHARACTERISTICS_KEY:
                for i, cell in enumerate(values):
                    if ":" not in cell:
                        continue
                    field, value = cell.split(":", 1)
                    column = characteristics.setdefault(
                        _canonical_field(field), [None] * len(values)
                    )
                    if len(column) < len(values):
                        column.extend([None] * (len(values) - len(column)))
                    column[i] = value.strip()
            elif key not in series:
                series[key] = values

    for field, column in characteristics.items():
        series[f"{CHARACTERISTICS_PREFIX}{field}"] = column

    logger.info(
        "Parsed series matrix %s: %d keys, %d characteristic fields",
        Path(path).name, len(series), len(characteristics),
    )
    return series


def build_sample_metadata(
    series: Dict[str, List[Optional[str]]],
    index_field: str = "title",
) -> pd.DataFrame:
    """
    Build a one-row-per-sample metadata table from a parsed series matrix.

    Args:
        series: Output of parse_series_matrix
        index_field: Column used as the sample index ("title" or "accession")

    Returns:
        DataFrame with ``accession``, ``title`` and one column per
        characteristic field, inflammation values normalized
    """
    columns: Dict[str, List[Optional[str]]] = {}
    if "Sample_geo_accession" in series:
        columns["accession"] = series["Sample_geo_accession"]
    if "Sample_title" in series:
        columns["title"] = series["Sample_title"]
    for key, values in series.items():
        if key.startswith(CHARACTERISTICS_PREFIX):
            columns[key[len(CHARACTERISTICS_PREFIX):]] = values

    if not columns:
        raise ValueError("Series matrix contains no sample-level fields")

    lengths = {name: len(values) for name, values in columns.items()}
    if len(set(lengths.values())) != 1:
        raise ValueError(f"Inconsistent sample counts across metadata fields: {lengths}")

    metadata = pd.DataFrame(columns)
    if index_field not in metadata.columns:
        raise ValueError(
            f"Index field {index_field!r} not present; available: {list(metadata.columns)}"
        )
    if metadata[index_field].duplicated().any():
        dups = metadata.loc[metadata[index_field].duplicated(), index_field].tolist()
        raise ValueError(f"Duplicated sample names in metadata: {dups}")

    if "inflammation" in metadata.columns:
        metadata["inflammation"] = metadata["inflammation"].map(normalize_inflammation)

    metadata = metadata.set_index(index_field, drop=False)
    metadata.index.name = "sample"
    return metadata


def align_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Reorder count columns to follow metadata row order.

    Count column names are matched against the metadata index first, then
    against the ``accession`` and ``title`` columns. The returned matrix
    uses the metadata index as its column labels.

    Raises:
        ValueError: if any metadata sample has no count column
    """
    columns = set(counts.columns)
    candidates = [pd.Series(metadata.index, index=metadata.index)]
    for field in ("accession", "title"):
        if field in metadata.columns:
            candidates.append(metadata[field])

    for names in candidates:
        names = names.astype(str)
        if set(names) <= columns:
            aligned = counts[list(names)].copy()
            aligned.columns = list(metadata.index)
            extra = columns - set(names)
            if extra:
                logger.warning(
                    "Dropping %d count columns without metadata: %s",
                    len(extra), sorted(extra)[:5],
                )
            return aligned

    missing = sorted(set(metadata.index.astype(str)) - columns)
    raise ValueError(
        f"{len(missing)} metadata samples have no matching count column: {missing[:5]}"
    )


def load_cohort(
    counts_path: PathLike,
    metadata_path: PathLike,
    index_field: str = "title",
) -> Cohort:
    """Load both input files and return an aligned Cohort."""
    counts, genes = read_count_matrix(counts_path)
    series = parse_series_matrix(metadata_path)
    metadata = build_sample_metadata(series, index_field=index_field)
    counts = align_samples(counts, metadata)

    cohort = Cohort(counts=counts, genes=genes, metadata=metadata)
    cohort.check_alignment()
    logger.info("Cohort ready: %r", cohort)
    return cohort
