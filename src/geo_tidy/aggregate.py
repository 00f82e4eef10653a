"""
Duplicate-probe aggregation.

Microarray platforms often carry several probes for the same gene. These
functions collapse tidy records to one value per (sample, gene) using an
explicit resolution policy, and report how much the probes disagree.
"""

import logging
from typing import List

import pandas as pd

from .config import (
    AGGREGATION_POLICIES,
    GENE_COLUMN,
    MEAN_VALUE_COLUMN,
    NA_POLICIES,
    PROBE_COLUMN,
    SAMPLE_COLUMN,
    VALUE_COLUMN,
)

logger = logging.getLogger(__name__)


def _drop_unnamed_genes(tidy: pd.DataFrame, gene_column: str) -> pd.DataFrame:
    unnamed = tidy[gene_column].isna() | (tidy[gene_column].astype(str).str.strip() == "")
    n_unnamed = int(unnamed.sum())
    if n_unnamed:
        logger.info("Dropping %d tidy records without a gene name", n_unnamed)
        return tidy.loc[~unnamed]
    return tidy


def _reduce(
    tidy: pd.DataFrame,
    func: str,
    na_policy: str,
    keys: List[str],
    value_column: str,
) -> pd.Series:
    """Group-wise mean/median honouring the missing-value policy."""
    grouped = tidy.groupby(keys, sort=False)[value_column]
    reduced = grouped.agg(func)
    if na_policy == "propagate":
        has_na = tidy[value_column].isna().groupby(
            [tidy[k] for k in keys], sort=False
        ).any()
        reduced = reduced.mask(has_na.reindex(reduced.index, fill_value=False))
    return reduced


def select_max_probes(
    tidy: pd.DataFrame,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
    value_column: str = VALUE_COLUMN,
) -> pd.DataFrame:
    """
    Pick one representative probe per gene: the one with the highest
    average expression across all samples.

    Ties are broken by probe identifier; genes whose probes have no
    readings at all keep their first probe.

    Returns:
        DataFrame with columns [gene_column, probe_column, "probe_mean"]
    """
    scores = (
        tidy.groupby([gene_column, probe_column], sort=False)[value_column]
        .mean()
        .rename("probe_mean")
        .reset_index()
    )
    scores = scores.sort_values(
        [gene_column, "probe_mean", probe_column],
        ascending=[True, False, True],
        na_position="last",
        kind="mergesort",
    )
    return scores.drop_duplicates(subset=gene_column, keep="first").reset_index(drop=True)


def collapse_probes(
    tidy: pd.DataFrame,
    policy: str = "mean",
    na_policy: str = "skip",
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    value_column: str = VALUE_COLUMN,
    output_column: str = MEAN_VALUE_COLUMN,
) -> pd.DataFrame:
    """
    Collapse tidy records to one value per (sample, gene).

    Args:
        tidy: Tidy records from ``melt_expression``
        policy: "mean" (default), "median" or "max_probe"
        na_policy: "skip" ignores missing readings; "propagate" makes any
            group containing a missing reading missing
        probe_column: Probe identifier column
        gene_column: Gene symbol column
        sample_column: Sample identifier column
        value_column: Reading column
        output_column: Name of the aggregated value column

    Returns:
        DataFrame with columns [sample_column, gene_column, output_column],
        sorted by gene then sample
    """
    if policy not in AGGREGATION_POLICIES:
        raise ValueError(f"Unknown aggregation policy: {policy!r}")
    if na_policy not in NA_POLICIES:
        raise ValueError(f"Unknown missing-value policy: {na_policy!r}")

    missing = [
        c for c in (probe_column, gene_column, sample_column, value_column)
        if c not in tidy.columns
    ]
    if missing:
        raise ValueError(f"Tidy records are missing column(s): {', '.join(missing)}")

    tidy = _drop_unnamed_genes(tidy, gene_column)
    keys = [sample_column, gene_column]

    if policy == "max_probe":
        chosen = select_max_probes(tidy, probe_column, gene_column, value_column)
        subset = tidy.merge(chosen[[gene_column, probe_column]], on=[gene_column, probe_column])
        collapsed = subset[keys + [value_column]].rename(columns={value_column: output_column})
    else:
        reduced = _reduce(tidy, policy, na_policy, keys, value_column)
        collapsed = reduced.rename(output_column).reset_index()

    collapsed = collapsed.sort_values([gene_column, sample_column], kind="mergesort")
    collapsed = collapsed.reset_index(drop=True)[keys + [output_column]]

    logger.info(
        "Collapsed %d tidy records to %d (sample, gene) values using %s",
        len(tidy), len(collapsed), policy,
    )
    return collapsed


def probe_dispersion(
    tidy: pd.DataFrame,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    value_column: str = VALUE_COLUMN,
) -> pd.DataFrame:
    """
    Spread of probe readings per (sample, gene).

    Returns:
        DataFrame with columns [sample_column, gene_column, "n_probes",
        "probe_sd"]; probe_sd is NaN for single-probe genes
    """
    tidy = _drop_unnamed_genes(tidy, gene_column)
    grouped = tidy.groupby([sample_column, gene_column])[value_column]
    out = pd.DataFrame({
        "n_probes": grouped.size(),
        "probe_sd": grouped.std(ddof=1),
    }).reset_index()
    return out.sort_values([gene_column, sample_column], kind="mergesort").reset_index(drop=True)


def discordant_genes(
    tidy: pd.DataFrame,
    max_sd: float,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    value_column: str = VALUE_COLUMN,
) -> List[str]:
    """Genes whose probes disagree by more than ``max_sd`` in any sample."""
    spread = probe_dispersion(tidy, gene_column, sample_column, value_column)
    flagged = spread.loc[spread["probe_sd"] > max_sd, gene_column]
    return sorted(flagged.unique().tolist())
