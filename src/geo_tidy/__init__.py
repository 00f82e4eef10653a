"""Tidy reshaping, aggregation and per-gene testing of GEO expression data.

Converts a wide probe-by-sample expression matrix into tidy records,
collapses duplicate probes per gene, joins gene annotation and sample
metadata, and runs grouped summaries and a per-gene two-sample test.

Usage::

    from geo_tidy import PipelineConfig, TableAnnotationClient, run_pipeline

    result = run_pipeline(
        matrix,
        sample_metadata,
        TableAnnotationClient("annotation.tsv"),
        PipelineConfig(aggregation="mean", test_method="welch"),
    )
    result.gene_tests.significant(0.05)
"""

from geo_tidy.aggregate import collapse_probes, probe_dispersion
from geo_tidy.annotation import (
    AnnotationClient,
    BiomartAnnotationClient,
    TableAnnotationClient,
)
from geo_tidy.config import STANDARD_CHROMOSOMES, PipelineConfig
from geo_tidy.join import enrich, filter_chromosomes
from geo_tidy.pipeline import PipelineResult, run_pipeline
from geo_tidy.reshape import melt_expression
from geo_tidy.stats import GeneTestReport, run_gene_tests
from geo_tidy.summary import Aggregation, sample_genes, summarize

__all__ = [
    "PipelineConfig",
    "STANDARD_CHROMOSOMES",
    "melt_expression",
    "collapse_probes",
    "probe_dispersion",
    "AnnotationClient",
    "TableAnnotationClient",
    "BiomartAnnotationClient",
    "enrich",
    "filter_chromosomes",
    "Aggregation",
    "summarize",
    "sample_genes",
    "GeneTestReport",
    "run_gene_tests",
    "PipelineResult",
    "run_pipeline",
]
