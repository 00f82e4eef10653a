"""
Per-gene two-sample tests.

Compares a value column between two disease labels, one gene at a time.
A gene that cannot be tested (too few observations, no variance) is
reported as a failure for that gene only; the rest of the run goes on.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .config import (
    DISEASE_COLUMN,
    FAILURE_POLICIES,
    GENE_COLUMN,
    MEAN_VALUE_COLUMN,
    TEST_METHODS,
)

logger = logging.getLogger(__name__)

MIN_OBSERVATIONS = 2

FAILURE_COLUMNS = [GENE_COLUMN, "reason"]


@dataclass
class GeneTestFailure:
    """A gene the test could not be run for."""

    gene_name: str
    reason: str


@dataclass
class GeneTestReport:
    """
    Outcome of a per-gene test run.

    ``results`` has one row per tested gene (failed genes included with a
    NaN p-value under the "missing" policy), sorted by p-value with NaN
    last. ``failures`` lists every gene that could not be tested.
    """

    results: pd.DataFrame
    failures: List[GeneTestFailure] = field(default_factory=list)
    groups: Tuple[str, str] = ("", "")
    method: str = "welch"

    @property
    def failed_genes(self) -> List[str]:
        return [f.gene_name for f in self.failures]

    def failures_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(f.gene_name, f.reason) for f in self.failures], columns=FAILURE_COLUMNS
        )

    def significant(self, alpha: float = 0.05, adjusted: bool = False) -> pd.DataFrame:
        """Genes with p-value (or adjusted p-value) below ``alpha``."""
        column = "p_value_adjusted" if adjusted else "p_value"
        return self.results[self.results[column] < alpha].reset_index(drop=True)

    def top_gene(self) -> Optional[str]:
        """Gene with the smallest p-value, or None if nothing was tested."""
        tested = self.results.dropna(subset=["p_value"])
        if tested.empty:
            return None
        return str(tested.iloc[0][GENE_COLUMN])


def group_label(value) -> str:
    """Text form of a disease label; integer-valued floats lose the ".0"."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def resolve_groups(
    labels: pd.Series,
    groups: Optional[Sequence[str]] = None,
) -> Tuple[str, str]:
    """
    Pick the (test, reference) labels to compare.

    Labels are compared as text after ``group_label``, so a 0/1 column read
    as float (because of a missing value) still matches groups "0" and "1".

    Args:
        labels: Disease label column
        groups: Explicit pair; must be distinct and both present in ``labels``

    Returns:
        Tuple of two labels

    Raises:
        ValueError: If the labels do not give exactly two groups
    """
    present = sorted(labels.dropna().map(group_label).unique())
    if groups is not None:
        groups = tuple(group_label(g) for g in groups)
        if len(groups) != 2 or groups[0] == groups[1]:
            raise ValueError(f"Expected two distinct groups, got {groups!r}")
        absent = [g for g in groups if g not in present]
        if absent:
            raise ValueError(
                f"Group label(s) {', '.join(absent)} not found; present: {', '.join(present)}"
            )
        return groups
    if len(present) != 2:
        raise ValueError(
            f"Expected exactly two groups in the disease column, found {len(present)}: "
            f"{', '.join(present)}. Pass the pair to compare explicitly."
        )
    return present[0], present[1]


def _check_testable(
    test_values: np.ndarray,
    reference_values: np.ndarray,
    groups: Tuple[str, str],
    method: str,
) -> Optional[str]:
    """Reason the gene cannot be tested, or None."""
    for label, values in zip(groups, (test_values, reference_values)):
        if len(values) < MIN_OBSERVATIONS:
            return f"fewer than {MIN_OBSERVATIONS} observations in group {label!r} ({len(values)})"
    if method == "mann_whitney_u":
        return None
    for label, values in zip(groups, (test_values, reference_values)):
        if np.ptp(values) == 0:
            return f"zero variance within group {label!r}"
    return None


def _run_test(test_values: np.ndarray, reference_values: np.ndarray, method: str):
    if method == "welch":
        return stats.ttest_ind(test_values, reference_values, equal_var=False)
    if method == "student":
        return stats.ttest_ind(test_values, reference_values, equal_var=True)
    return stats.mannwhitneyu(test_values, reference_values, alternative="two-sided")


def run_gene_tests(
    enriched: pd.DataFrame,
    group_column: str = DISEASE_COLUMN,
    value_column: str = MEAN_VALUE_COLUMN,
    groups: Optional[Sequence[str]] = None,
    method: str = "welch",
    failure_policy: str = "missing",
    gene_column: str = GENE_COLUMN,
    alpha: float = 0.05,
) -> GeneTestReport:
    """
    Run a two-sample test for every gene.

    Args:
        enriched: Enriched records (one row per sample and gene)
        group_column: Disease/condition label column
        value_column: Column compared between the groups
        groups: (test, reference) labels; inferred when exactly two exist
        method: "welch", "student" or "mann_whitney_u"
        failure_policy: "missing" keeps untestable genes with NaN p-values,
            "skip" leaves them out of ``results``
        gene_column: Gene column name
        alpha: Significance threshold used for the logged count

    Returns:
        GeneTestReport with results and per-gene failures
    """
    if method not in TEST_METHODS:
        raise ValueError(f"Unknown test method: {method!r}")
    if failure_policy not in FAILURE_POLICIES:
        raise ValueError(f"Unknown failure policy: {failure_policy!r}")
    missing = [c for c in (gene_column, group_column, value_column) if c not in enriched.columns]
    if missing:
        raise ValueError(f"Cannot run gene tests, missing column(s): {', '.join(missing)}")

    test_label, reference_label = resolve_groups(enriched[group_column], groups)
    labels = enriched[group_column].map(group_label).where(enriched[group_column].notna())
    data = enriched.assign(_group=labels)
    data = data[data["_group"].isin([test_label, reference_label])]

    rows = []
    failures: List[GeneTestFailure] = []

    for gene, gene_df in data.groupby(gene_column, sort=True):
        values = gene_df[value_column].astype(float)
        test_values = values[gene_df["_group"] == test_label].dropna().to_numpy()
        reference_values = values[gene_df["_group"] == reference_label].dropna().to_numpy()

        row = {
            gene_column: gene,
            "statistic": np.nan,
            "p_value": np.nan,
            f"mean_{test_label}": np.mean(test_values) if len(test_values) else np.nan,
            f"mean_{reference_label}": np.mean(reference_values) if len(reference_values) else np.nan,
            f"n_{test_label}": len(test_values),
            f"n_{reference_label}": len(reference_values),
        }

        reason = _check_testable(test_values, reference_values, (test_label, reference_label), method)
        if reason is None:
            statistic, pvalue = _run_test(test_values, reference_values, method)
            if np.isfinite(pvalue):
                row["statistic"] = float(statistic)
                row["p_value"] = float(pvalue)
            else:
                reason = "test statistic is undefined"

        if reason is not None:
            failures.append(GeneTestFailure(gene_name=str(gene), reason=reason))
            if failure_policy == "skip":
                continue
        rows.append(row)

    columns = [
        gene_column, "statistic", "p_value", "p_value_adjusted",
        f"mean_{test_label}", f"mean_{reference_label}",
        f"n_{test_label}", f"n_{reference_label}",
    ]
    results = pd.DataFrame(rows, columns=[c for c in columns if c != "p_value_adjusted"])
    results["p_value_adjusted"] = np.nan

    tested = results["p_value"].notna()
    if tested.any():
        _, adjusted, _, _ = multipletests(results.loc[tested, "p_value"], method="fdr_bh")
        results.loc[tested, "p_value_adjusted"] = adjusted

    results = results[columns].sort_values(
        ["p_value", gene_column], na_position="last", kind="mergesort"
    ).reset_index(drop=True)

    if failures:
        logger.warning(
            "%d gene(s) could not be tested (%s)",
            len(failures),
            "; ".join(f"{f.gene_name}: {f.reason}" for f in failures[:5]),
        )
    logger.info(
        "Tested %d genes (%s vs %s, %s): %d with p < %g",
        int(tested.sum()), test_label, reference_label, method,
        int((results["p_value"] < alpha).sum()), alpha,
    )

    return GeneTestReport(
        results=results,
        failures=failures,
        groups=(test_label, reference_label),
        method=method,
    )

