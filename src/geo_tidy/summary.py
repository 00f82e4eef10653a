"""
Grouped summary statistics.

Aggregations are declared up front as ``Aggregation`` records (output
column, input column, reduction) instead of ad hoc verb chains, so the
output schema of every summary is known before it runs.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import CHROMOSOME_COLUMN, DISEASE_COLUMN, GENE_COLUMN, MEAN_VALUE_COLUMN

logger = logging.getLogger(__name__)

SUPPORTED_FUNCTIONS = frozenset({
    "mean", "median", "count", "size", "sum", "min", "max", "std", "nunique",
})


@dataclass(frozen=True)
class Aggregation:
    """One output column of a grouped summary.

    Attributes:
        name: Output column name
        column: Input column the reduction runs over
        func: Reduction, one of SUPPORTED_FUNCTIONS. ``count`` counts
            non-missing values, ``size`` counts rows.
    """

    name: str
    column: str
    func: str

    def __post_init__(self):
        if self.func not in SUPPORTED_FUNCTIONS:
            raise ValueError(
                f"Unsupported aggregation {self.func!r} for {self.name!r}; "
                f"expected one of: {', '.join(sorted(SUPPORTED_FUNCTIONS))}"
            )


def summarize(
    df: pd.DataFrame,
    by: Union[str, Sequence[str]],
    aggregations: Sequence[Aggregation],
) -> pd.DataFrame:
    """
    Group ``df`` by one or more keys and apply declared aggregations.

    Missing keys form their own group. The result is sorted by the keys,
    so it does not depend on the input row order.

    Args:
        df: Input table
        by: Grouping column(s)
        aggregations: Output columns to compute

    Returns:
        DataFrame with the key columns followed by one column per aggregation
    """
    keys = [by] if isinstance(by, str) else list(by)
    if not aggregations:
        raise ValueError("At least one aggregation is required")

    needed = set(keys) | {a.column for a in aggregations}
    missing = sorted(c for c in needed if c not in df.columns)
    if missing:
        raise ValueError(f"Cannot summarize, missing column(s): {', '.join(missing)}")

    names = [a.name for a in aggregations]
    if len(set(names)) != len(names) or set(names) & set(keys):
        raise ValueError(f"Aggregation names must be unique and differ from keys: {names}")

    grouped = df.groupby(keys, dropna=False, sort=True)
    result = grouped.agg(**{a.name: (a.column, a.func) for a in aggregations}).reset_index()
    logger.debug("Summarized %d rows into %d groups by %s", len(df), len(result), keys)
    return result[keys + names]


def summarize_by_disease(
    enriched: pd.DataFrame,
    disease_column: str = DISEASE_COLUMN,
    value_column: str = MEAN_VALUE_COLUMN,
) -> pd.DataFrame:
    """Mean expression, record count and gene count per disease label."""
    return summarize(
        enriched,
        by=disease_column,
        aggregations=[
            Aggregation("mean_expression", value_column, "mean"),
            Aggregation("n_records", value_column, "size"),
            Aggregation("n_genes", GENE_COLUMN, "nunique"),
        ],
    )


def summarize_by_chromosome(
    enriched: pd.DataFrame,
    chromosome_column: str = CHROMOSOME_COLUMN,
    value_column: str = MEAN_VALUE_COLUMN,
) -> pd.DataFrame:
    """Gene count and mean expression per chromosome."""
    return summarize(
        enriched,
        by=chromosome_column,
        aggregations=[
            Aggregation("n_genes", GENE_COLUMN, "nunique"),
            Aggregation("mean_expression", value_column, "mean"),
        ],
    )


def sample_genes(
    df: pd.DataFrame,
    n: int,
    seed: Optional[int] = 42,
    gene_column: str = GENE_COLUMN,
) -> List[str]:
    """
    Draw a reproducible random subset of gene names.

    The candidates are sorted before sampling, so the same seed gives the
    same genes regardless of row order.

    Args:
        df: Table with a gene column
        n: Number of genes; capped at the number available
        seed: Random seed
        gene_column: Gene column name

    Returns:
        Sorted list of sampled gene names
    """
    if n < 0:
        raise ValueError("n must be non-negative")
    genes = sorted(df[gene_column].dropna().astype(str).unique())
    if n >= len(genes):
        return genes
    rng = np.random.RandomState(seed)
    picked = rng.choice(len(genes), size=n, replace=False)
    return sorted(genes[i] for i in picked)
