"""
Tidy expression pipeline orchestrator.

Runs reshape -> probe aggregation -> annotation lookup -> join ->
chromosome filter -> summaries -> per-gene tests over in-memory tables.
"""

import logging
from typing import Dict, List, Optional

import pandas as pd

from .aggregate import collapse_probes
from .annotation import AnnotationClient
from .config import (
    ANNOTATION_COLUMNS,
    CHROMOSOME_COLUMN,
    GENE_COLUMN,
    MEAN_VALUE_COLUMN,
    SAMPLE_COLUMN,
    VALUE_COLUMN,
    PipelineConfig,
)
from .join import enrich, filter_chromosomes
from .reshape import melt_expression
from .stats import GeneTestReport, run_gene_tests
from .summary import summarize_by_chromosome, summarize_by_disease

logger = logging.getLogger(__name__)


class PipelineResult:
    """Container for every table a pipeline run produces."""

    def __init__(self):
        self.tidy: Optional[pd.DataFrame] = None
        self.aggregated: Optional[pd.DataFrame] = None
        self.annotation: Optional[pd.DataFrame] = None
        self.enriched: Optional[pd.DataFrame] = None
        self.filtered: Optional[pd.DataFrame] = None
        self.summaries: Dict[str, pd.DataFrame] = {}
        self.gene_tests: Optional[GeneTestReport] = None
        self.warnings: List[str] = []

    def add_summary(self, name: str, df: pd.DataFrame):
        self.summaries[name] = df

    def get_stats(self) -> Dict[str, int]:
        stats = {}
        for name in ("tidy", "aggregated", "annotation", "enriched", "filtered"):
            df = getattr(self, name)
            if df is not None:
                stats[f"rows_{name}"] = len(df)
        if self.aggregated is not None:
            stats["genes"] = int(self.aggregated[GENE_COLUMN].nunique())
            stats["samples"] = int(self.aggregated[SAMPLE_COLUMN].nunique())
        if self.enriched is not None:
            stats["genes_unannotated"] = int(
                self.enriched.loc[self.enriched[CHROMOSOME_COLUMN].isna(), GENE_COLUMN].nunique()
            )
        if self.gene_tests is not None:
            stats["genes_tested"] = int(self.gene_tests.results["p_value"].notna().sum())
            stats["genes_failed"] = len(self.gene_tests.failures)
        return stats


def run_pipeline(
    matrix: pd.DataFrame,
    sample_metadata: pd.DataFrame,
    annotation_client: AnnotationClient,
    config: Optional[PipelineConfig] = None,
) -> PipelineResult:
    """
    Run the full tidy pipeline on an expression matrix.

    Malformed input (missing identifier columns, duplicate probes, a
    disease column without two groups) raises ``ValueError``. Join misses
    and untestable genes are recorded on the result instead.

    Args:
        matrix: Wide expression matrix
        sample_metadata: One row per sample with the disease label
        annotation_client: Source of gene annotation. Opened and closed
            here unless the caller already opened it.
        config: Run settings (defaults if None)

    Returns:
        PipelineResult with all intermediate and final tables
    """
    config = config or PipelineConfig()
    result = PipelineResult()

    if config.disease_column not in sample_metadata.columns:
        raise ValueError(
            f"Sample metadata has no {config.disease_column!r} column. "
            f"Found columns: {', '.join(map(str, sample_metadata.columns))}"
        )

    logger.info("Reshaping expression matrix (%d probes)", len(matrix))
    result.tidy = melt_expression(
        matrix,
        probe_column=config.probe_column,
        gene_column=config.gene_column,
        sample_column=SAMPLE_COLUMN,
        value_column=VALUE_COLUMN,
    )
    tidy = result.tidy.rename(columns={config.gene_column: GENE_COLUMN})

    logger.info("Collapsing duplicate probes (%s, missing values: %s)",
                config.aggregation, config.na_policy)
    result.aggregated = collapse_probes(
        tidy,
        policy=config.aggregation,
        na_policy=config.na_policy,
        probe_column=config.probe_column,
    )

    genes = result.aggregated[GENE_COLUMN].unique().tolist()
    logger.info("Looking up annotation for %d genes", len(genes))
    opened_here = not annotation_client.is_open
    if opened_here:
        annotation_client.open()
    try:
        result.annotation = annotation_client.lookup(genes)
    finally:
        if opened_here:
            annotation_client.close()
    if result.annotation.empty:
        result.warnings.append("Annotation lookup matched no genes")
        result.annotation = pd.DataFrame(columns=ANNOTATION_COLUMNS)

    result.enriched = enrich(
        result.aggregated,
        result.annotation,
        sample_metadata,
        ambiguity=config.ambiguity,
        whitelist=config.chromosomes,
        metadata_sample_column=config.sample_column,
    )
    result.filtered = filter_chromosomes(result.enriched, config.chromosomes)

    n_unannotated = result.enriched.loc[result.enriched[CHROMOSOME_COLUMN].isna(), GENE_COLUMN].nunique()
    if n_unannotated:
        result.warnings.append(f"{n_unannotated} gene(s) without chromosome annotation")
    missing_labels = result.enriched[config.disease_column].isna()
    if missing_labels.any():
        n_samples = result.enriched.loc[missing_labels, SAMPLE_COLUMN].nunique()
        result.warnings.append(f"{n_samples} sample(s) without a {config.disease_column} label")

    result.add_summary(
        "by_disease",
        summarize_by_disease(result.filtered, config.disease_column, MEAN_VALUE_COLUMN),
    )
    result.add_summary(
        "by_chromosome",
        summarize_by_chromosome(result.filtered, CHROMOSOME_COLUMN, MEAN_VALUE_COLUMN),
    )

    result.gene_tests = run_gene_tests(
        result.enriched,
        group_column=config.disease_column,
        value_column=config.value_column,
        groups=config.test_groups,
        method=config.test_method,
        failure_policy=config.failure_policy,
        alpha=config.alpha,
    )
    if result.gene_tests.failures:
        result.warnings.append(
            f"{len(result.gene_tests.failures)} gene(s) could not be tested"
        )

    stats = result.get_stats()
    logger.info("Pipeline results:")
    for key, count in sorted(stats.items()):
        logger.info("  %s: %s", key, count)

    return result
