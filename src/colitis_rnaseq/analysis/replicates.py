"""
Per-patient replicate pairing.

Every patient contributes two inflamed and two non-inflamed biopsies.
The replicate pairs are averaged into one value per patient and
condition, and the inflamed / non-inflamed ratio is reported per gene.
"""

import logging
from typing import Iterable, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import INFLAMED, NON_INFLAMED

logger = logging.getLogger(__name__)


def check_replicate_structure(
    metadata: pd.DataFrame,
    patient_col: str = "patient",
    condition_col: str = "inflammation",
    per_condition: int = 2,
) -> None:
    """
    Verify that each patient has per_condition inflamed and non-inflamed samples.

    Raises:
        ValueError: naming every patient with a different layout
    """
    for col in (patient_col, condition_col):
        if col not in metadata.columns:
            raise ValueError(f"Metadata has no column {col!r}")

    counts = pd.crosstab(metadata[patient_col], metadata[condition_col])
    for level in (INFLAMED, NON_INFLAMED):
        if level not in counts.columns:
            counts[level] = 0

    other = counts.drop(columns=[INFLAMED, NON_INFLAMED]).sum(axis=1)
    bad = counts[
        (counts[INFLAMED] != per_condition)
        | (counts[NON_INFLAMED] != per_condition)
        | (other > 0)
    ]

    if not bad.empty:
        details = [
            f"{patient} ({int(row[INFLAMED])} {INFLAMED}, {int(row[NON_INFLAMED])} {NON_INFLAMED})"
            for patient, row in bad.iterrows()
        ]
        raise ValueError(
            f"Expected {per_condition} {INFLAMED} + {per_condition} {NON_INFLAMED} samples "
            f"per patient; offending patients: {', '.join(details)}"
        )


def paired_condition_means(
    expr: pd.DataFrame,
    metadata: pd.DataFrame,
    patient_col: str = "patient",
    condition_col: str = "inflammation",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Average the replicate pair of each patient and condition.

    Args:
        expr: Expression matrix (genes x samples), columns in metadata
        metadata: Sample metadata indexed by sample name

    Returns:
        Tuple of (inflamed means, non-inflamed means), each genes x patients
    """
    check_replicate_structure(metadata, patient_col, condition_col)
    missing = set(metadata.index) - set(expr.columns)
    if missing:
        raise ValueError(f"Expression matrix lacks samples: {sorted(missing)[:5]}")

    means = {}
    for level in (INFLAMED, NON_INFLAMED):
        samples = metadata.index[metadata[condition_col] == level]
        patients = metadata.loc[samples, patient_col]
        means[level] = expr[samples].T.groupby(patients.to_numpy()).mean().T
    patients = sorted(means[INFLAMED].columns)
    return means[INFLAMED][patients], means[NON_INFLAMED][patients]


def inflammation_ratios(
    expr: pd.DataFrame,
    metadata: pd.DataFrame,
    genes: Optional[Iterable[str]] = None,
    pseudocount: float = 0.0,
    patient_col: str = "patient",
    condition_col: str = "inflammation",
) -> pd.DataFrame:
    """
    Per-patient ratio of inflamed to non-inflamed mean expression.

    ratio = mean(inflamed) / mean(non-inflamed) after adding pseudocount
    to both means. Zero denominators give NaN rather than infinity.

    Returns:
        Long table with columns gene_id, patient, mean_inflamed,
        mean_non_inflamed, ratio, log2_ratio
    """
    if genes is not None:
        genes = [g for g in genes if g in expr.index]
        expr = expr.loc[genes]

    inflamed, control = paired_condition_means(expr, metadata, patient_col, condition_col)
    num = inflamed + pseudocount
    den = control + pseudocount
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = (num / den).replace([np.inf, -np.inf], np.nan)
        log2_ratio = np.log2(ratio).replace([np.inf, -np.inf], np.nan)

    def _long(frame: pd.DataFrame, name: str) -> pd.Series:
        melted = frame.rename_axis(index="gene_id", columns="patient").reset_index().melt(
            id_vars="gene_id", var_name="patient", value_name=name
        )
        return melted.set_index(["gene_id", "patient"])[name]

    table = pd.concat(
        [
            _long(inflamed, "mean_inflamed"),
            _long(control, "mean_non_inflamed"),
            _long(ratio, "ratio"),
            _long(log2_ratio, "log2_ratio"),
        ],
        axis=1,
    )
    logger.debug("Computed inflammation ratios for %d genes x %d patients", len(expr), inflamed.shape[1])
    return table.reset_index()


def ratio_matrix(ratios: pd.DataFrame, value: str = "log2_ratio") -> pd.DataFrame:
    """Pivot an inflammation_ratios table into genes x patients."""
    return ratios.pivot(index="gene_id", columns="patient", values=value)
