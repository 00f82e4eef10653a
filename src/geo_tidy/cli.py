from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import click
import pandas as pd
import requests

from geo_tidy.annotation import AnnotationClient, BiomartAnnotationClient, TableAnnotationClient
from geo_tidy.config import (
    AGGREGATION_POLICIES,
    AMBIGUITY_POLICIES,
    DEFAULT_BIOMART_DATASET,
    DISEASE_COLUMN,
    FAILURE_POLICIES,
    GENE_COLUMN,
    NA_POLICIES,
    PROBE_COLUMN,
    SAMPLE_COLUMN,
    TEST_METHODS,
    PipelineConfig,
)
from geo_tidy.io import (
    attach_gene_names,
    find_disease_column,
    read_expression_matrix,
    read_platform_table,
    read_sample_metadata,
    read_series_matrix,
    write_table,
)
from geo_tidy.pipeline import PipelineResult, run_pipeline
from geo_tidy.reshape import melt_expression
from geo_tidy.summary import sample_genes

EXISTING_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)


def load_inputs(
    matrix_path: Optional[Path],
    series_matrix_path: Optional[Path],
    platform_path: Optional[Path],
    metadata_path: Optional[Path],
    probe_column: str,
    gene_column: str,
    sample_column: str,
    symbol_column: str,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Read the expression matrix and sample metadata from the chosen sources."""
    if bool(matrix_path) == bool(series_matrix_path):
        raise click.UsageError("Give exactly one of --matrix or --series-matrix.")

    series_metadata = None
    if series_matrix_path:
        if not platform_path:
            raise click.UsageError("--series-matrix needs --platform to map probes to genes.")
        click.echo(f"Reading series matrix {series_matrix_path}")
        table, series_metadata = read_series_matrix(series_matrix_path)
        platform = read_platform_table(platform_path, symbol_column=symbol_column)
        matrix = attach_gene_names(table, platform, probe_column, gene_column)
    else:
        click.echo(f"Reading expression matrix {matrix_path}")
        matrix = read_expression_matrix(matrix_path, probe_column, gene_column)

    if metadata_path:
        metadata = read_sample_metadata(metadata_path, sample_column)
    elif series_metadata is not None:
        metadata = series_metadata.rename(columns={SAMPLE_COLUMN: sample_column})
    else:
        raise click.UsageError("--metadata is required with --matrix.")
    return matrix, metadata


def build_annotation_client(
    annotation_path: Optional[Path],
    biomart: bool,
    biomart_dataset: str,
) -> AnnotationClient:
    if bool(annotation_path) == biomart:
        raise click.UsageError("Give exactly one of --annotation or --biomart.")
    if biomart:
        return BiomartAnnotationClient(dataset=biomart_dataset)
    return TableAnnotationClient(annotation_path)


def write_outputs(result: PipelineResult, config: PipelineConfig, output_dir: Path) -> Path:
    """Write every result table plus a JSON run summary; returns the summary path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    write_table(result.tidy, output_dir / "tidy.tsv")
    write_table(result.aggregated, output_dir / "aggregated.tsv")
    write_table(result.enriched, output_dir / "enriched.tsv")
    write_table(result.filtered, output_dir / "enriched_filtered.tsv")
    for name, df in result.summaries.items():
        write_table(df, output_dir / f"summary_{name}.tsv")
    write_table(result.gene_tests.results, output_dir / "gene_tests.tsv")
    write_table(result.gene_tests.failures_frame(), output_dir / "gene_test_failures.tsv")

    significant = result.gene_tests.significant(config.alpha)
    summary = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "aggregation": config.aggregation,
        "na_policy": config.na_policy,
        "ambiguity": config.ambiguity,
        "test_method": config.test_method,
        "groups": list(result.gene_tests.groups),
        "alpha": config.alpha,
        "stats": result.get_stats(),
        "significant_genes": significant[GENE_COLUMN].tolist(),
        "top_gene": result.gene_tests.top_gene(),
        "failed_genes": result.gene_tests.failed_genes,
        "seed": config.seed,
        "sampled_genes": sample_genes(result.enriched, 10, seed=config.seed),
        "warnings": result.warnings,
    }
    summary_file = output_dir / "run_summary.json"
    with summary_file.open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2)
    return summary_file


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Tidy reshaping and per-gene testing of GEO expression datasets."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@click.option("--matrix", "matrix_path", type=EXISTING_FILE,
              help="Wide expression matrix (probe id, gene name, one column per sample).")
@click.option("--series-matrix", "series_matrix_path", type=EXISTING_FILE,
              help="GEO series-matrix file (used with --platform).")
@click.option("--platform", "platform_path", type=EXISTING_FILE,
              help="GPL platform annotation table mapping probes to gene symbols.")
@click.option("--symbol-column", default="Gene Symbol", show_default=True,
              help="Gene symbol column in the platform table.")
@click.option("--metadata", "metadata_path", type=EXISTING_FILE,
              help="Sample metadata table (defaults to the series-matrix characteristics).")
@click.option("--annotation", "annotation_path", type=EXISTING_FILE,
              help="Gene annotation table (gene_name, chromosome_name, transcript_length).")
@click.option("--biomart", is_flag=True, help="Look up gene annotation in Ensembl BioMart.")
@click.option("--biomart-dataset", default=DEFAULT_BIOMART_DATASET, show_default=True)
@click.option("--probe-column", default=PROBE_COLUMN, show_default=True)
@click.option("--gene-column", default=GENE_COLUMN, show_default=True)
@click.option("--sample-column", default=SAMPLE_COLUMN, show_default=True,
              help="Sample id column in the metadata table.")
@click.option("--disease-column", default=None,
              help=f"Condition label column [default: {DISEASE_COLUMN} or a detected GEO characteristic].")
@click.option("--aggregation", type=click.Choice(AGGREGATION_POLICIES), default="mean", show_default=True,
              help="How duplicate probes of a gene are combined.")
@click.option("--na-policy", type=click.Choice(NA_POLICIES), default="skip", show_default=True,
              help="Skip missing readings or let them make the aggregate missing.")
@click.option("--ambiguity", type=click.Choice(AMBIGUITY_POLICIES), default="first", show_default=True,
              help="Handling of genes annotated on several chromosomes.")
@click.option("--groups", nargs=2, default=None, metavar="TEST REFERENCE",
              help="Disease labels to compare.")
@click.option("--test-method", type=click.Choice(TEST_METHODS), default="welch", show_default=True)
@click.option("--failure-policy", type=click.Choice(FAILURE_POLICIES), default="missing", show_default=True,
              help="Keep untestable genes with a missing p-value, or skip them.")
@click.option("--alpha", type=click.FloatRange(0, 1, min_open=True, max_open=True),
              default=0.05, show_default=True)
@click.option("--seed", type=int, default=42, show_default=True,
              help="Seed for the gene sample listed in run_summary.json.")
@click.option("--output-dir", type=click.Path(file_okay=False, path_type=Path),
              default=Path("results"), show_default=True)
def run_command(
    matrix_path: Optional[Path],
    series_matrix_path: Optional[Path],
    platform_path: Optional[Path],
    symbol_column: str,
    metadata_path: Optional[Path],
    annotation_path: Optional[Path],
    biomart: bool,
    biomart_dataset: str,
    probe_column: str,
    gene_column: str,
    sample_column: str,
    disease_column: Optional[str],
    aggregation: str,
    na_policy: str,
    ambiguity: str,
    groups: Optional[Tuple[str, str]],
    test_method: str,
    failure_policy: str,
    alpha: float,
    seed: int,
    output_dir: Path,
) -> None:
    """Run the full reshape / aggregate / join / test pipeline."""
    try:
        matrix, metadata = load_inputs(
            matrix_path, series_matrix_path, platform_path, metadata_path,
            probe_column, gene_column, sample_column, symbol_column,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    client = build_annotation_client(annotation_path, biomart, biomart_dataset)

    try:
        disease_column = disease_column or find_disease_column(metadata)
    except ValueError as exc:
        raise click.UsageError(f"{exc}. Use --disease-column.") from exc

    try:
        config = PipelineConfig(
            probe_column=probe_column,
            gene_column=gene_column,
            sample_column=sample_column,
            disease_column=disease_column,
            aggregation=aggregation,
            na_policy=na_policy,
            ambiguity=ambiguity,
            test_groups=tuple(groups) if groups else None,
            test_method=test_method,
            failure_policy=failure_policy,
            alpha=alpha,
            seed=seed,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    try:
        result = run_pipeline(matrix, metadata, client, config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    except requests.RequestException as exc:
        raise click.ClickException(f"Annotation lookup failed: {exc}") from exc

    summary_file = write_outputs(result, config, output_dir)
    report = result.gene_tests
    significant = report.significant(config.alpha)

    click.echo("\n" + "=" * 60)
    click.echo("PIPELINE SUMMARY")
    click.echo("=" * 60)
    for key, count in sorted(result.get_stats().items()):
        click.echo(f"  {key}: {count}")
    click.echo(f"Comparison: {report.groups[0]} vs {report.groups[1]} ({report.method})")
    click.echo(f"Genes with p < {config.alpha}: {len(significant)}")
    top = report.top_gene()
    if top is not None:
        click.echo(f"Top gene: {top} (p = {report.results.iloc[0]['p_value']:.3g})")
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    click.echo(f"\nResults written to {output_dir} (summary: {summary_file})")
    click.echo("=" * 60)


@cli.command("melt")
@click.argument("matrix_path", type=EXISTING_FILE)
@click.argument("output_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--probe-column", default=PROBE_COLUMN, show_default=True)
@click.option("--gene-column", default=GENE_COLUMN, show_default=True)
def melt_command(matrix_path: Path, output_path: Path, probe_column: str, gene_column: str) -> None:
    """Reshape a wide expression matrix into a tidy table."""
    try:
        matrix = read_expression_matrix(matrix_path, probe_column, gene_column)
        tidy = melt_expression(matrix, probe_column=probe_column, gene_column=gene_column)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    write_table(tidy, output_path)
    click.echo(f"Wrote {len(tidy)} tidy records to {output_path}")


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
