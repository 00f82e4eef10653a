"""
Wide-to-long reshape of expression matrices.

Turns a probe-by-sample matrix (two identifier columns followed by one
numeric column per sample) into tidy records with one row per
(probe, sample) cell.
"""

import logging
from typing import List

import pandas as pd

from .config import GENE_COLUMN, PROBE_COLUMN, SAMPLE_COLUMN, VALUE_COLUMN

logger = logging.getLogger(__name__)


def sample_columns(
    matrix: pd.DataFrame,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
) -> List[str]:
    """Return the sample columns of an expression matrix (everything but the identifiers)."""
    return [c for c in matrix.columns if c not in (probe_column, gene_column)]


def validate_matrix(
    matrix: pd.DataFrame,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    value_column: str = VALUE_COLUMN,
) -> List[str]:
    """
    Check that a matrix can be melted without losing or merging cells.

    Args:
        matrix: Wide expression matrix
        probe_column: Probe identifier column
        gene_column: Gene symbol column
        sample_column: Name the melted sample column will get
        value_column: Name the melted value column will get

    Returns:
        The sample column names, in matrix order

    Raises:
        ValueError: If the matrix is malformed
    """
    missing = [c for c in (probe_column, gene_column) if c not in matrix.columns]
    if missing:
        raise ValueError(
            f"Expression matrix is missing identifier column(s): {', '.join(missing)}. "
            f"Found columns: {', '.join(map(str, matrix.columns[:5]))}"
        )

    if matrix.columns.duplicated().any():
        dupes = sorted(set(map(str, matrix.columns[matrix.columns.duplicated()])))
        raise ValueError(f"Expression matrix has duplicate columns: {', '.join(dupes)}")

    samples = sample_columns(matrix, probe_column, gene_column)
    if not samples:
        raise ValueError("Expression matrix has no sample columns")

    collisions = [c for c in samples if c in (sample_column, value_column)]
    if collisions:
        raise ValueError(
            f"Sample column(s) {', '.join(collisions)} collide with the tidy "
            f"output columns ({sample_column}, {value_column})"
        )

    if matrix[probe_column].isna().any():
        raise ValueError(f"Expression matrix has missing values in {probe_column}")
    if not matrix[probe_column].is_unique:
        dupes = matrix.loc[matrix[probe_column].duplicated(), probe_column].unique()
        raise ValueError(
            f"Probe identifiers must be unique; duplicated: {', '.join(map(str, dupes[:10]))}"
        )

    return samples


def _coerce_numeric(matrix: pd.DataFrame, samples: List[str]) -> pd.DataFrame:
    """Convert sample columns to floats; unparseable cells become NaN."""
    out = matrix.copy()
    for col in samples:
        if pd.api.types.is_numeric_dtype(out[col]):
            out[col] = out[col].astype(float)
            continue
        converted = pd.to_numeric(out[col], errors="coerce")
        # A column with readings that are all unparseable is a shape problem,
        # usually a metadata column mistaken for a sample.
        if converted.isna().all() and out[col].notna().any():
            raise ValueError(f"Sample column {col!r} contains no numeric values")
        n_bad = int((converted.isna() & out[col].notna()).sum())
        if n_bad:
            logger.warning("Sample %s: %d non-numeric value(s) set to missing", col, n_bad)
        out[col] = converted.astype(float)
    return out


def melt_expression(
    matrix: pd.DataFrame,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    value_column: str = VALUE_COLUMN,
) -> pd.DataFrame:
    """
    Reshape a wide expression matrix into tidy records.

    Every (probe, sample) cell maps to exactly one output row, missing
    readings included, so an R x N matrix gives R * N records.

    Args:
        matrix: Wide matrix with probe and gene identifier columns
        probe_column: Probe identifier column
        gene_column: Gene symbol column
        sample_column: Output column holding the sample identifier
        value_column: Output column holding the reading

    Returns:
        DataFrame with columns [probe_column, gene_column, sample_column, value_column]
    """
    samples = validate_matrix(matrix, probe_column, gene_column, sample_column, value_column)
    numeric = _coerce_numeric(matrix, samples)

    tidy = numeric.melt(
        id_vars=[probe_column, gene_column],
        value_vars=samples,
        var_name=sample_column,
        value_name=value_column,
    )
    tidy[sample_column] = tidy[sample_column].astype(str)

    logger.debug(
        "Melted %d probes x %d samples into %d tidy records",
        len(matrix), len(samples), len(tidy),
    )
    return tidy[[probe_column, gene_column, sample_column, value_column]]
