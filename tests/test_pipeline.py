"""End-to-end tests for the pipeline orchestrator."""

import pandas as pd
import pytest

from geo_tidy.annotation import AnnotationClient, TableAnnotationClient
from geo_tidy.config import PipelineConfig
from geo_tidy.pipeline import PipelineResult, run_pipeline


class _FailingClient(AnnotationClient):
    def _lookup(self, gene_names):
        raise RuntimeError("annotation service unavailable")


class TestRunPipeline:

    def test_stage_sizes(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        stats = result.get_stats()
        assert stats["rows_tidy"] == 5 * 4
        assert stats["rows_aggregated"] == 4 * 4
        assert stats["rows_enriched"] == stats["rows_aggregated"]
        assert stats["rows_filtered"] == 2 * 4
        assert stats["genes"] == 4
        assert stats["samples"] == 4
        assert stats["genes_unannotated"] == 1
        assert stats["genes_tested"] == 3
        assert stats["genes_failed"] == 1

    def test_aggregated_values(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        agg = result.aggregated.set_index(["sample_id", "gene_name"])["mean_value"]
        assert agg[("S1", "GENE_A")] == pytest.approx(2.0)
        assert agg[("S4", "GENE_A")] == pytest.approx(10.5)

    def test_filtered_view_is_standard_chromosomes(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        assert set(result.filtered["chromosome_name"]) == {"1", "X"}
        assert result.enriched["chromosome_name"].isna().any()

    def test_summaries(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        assert set(result.summaries) == {"by_disease", "by_chromosome"}
        by_disease = result.summaries["by_disease"].set_index("disease")
        assert by_disease.loc["control", "mean_expression"] == pytest.approx(6.5)
        assert by_disease.loc["IBD", "mean_expression"] == pytest.approx(10.375)

    def test_gene_tests(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        report = result.gene_tests
        assert report.groups == ("IBD", "control")
        assert report.top_gene() == "GENE_A"
        assert report.failed_genes == ["GENE_C"]

    def test_warnings(self, matrix, sample_metadata, annotation):
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation))
        assert "1 gene(s) without chromosome annotation" in result.warnings
        assert "1 gene(s) could not be tested" in result.warnings

    def test_config_policies_applied(self, matrix, sample_metadata, annotation):
        config = PipelineConfig(aggregation="max_probe", test_groups=("control", "IBD"),
                                failure_policy="skip")
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(annotation), config)
        agg = result.aggregated.set_index(["sample_id", "gene_name"])["mean_value"]
        assert agg[("S1", "GENE_A")] == pytest.approx(3.0)
        assert result.gene_tests.groups == ("control", "IBD")
        assert "GENE_C" not in set(result.gene_tests.results["gene_name"])

    def test_custom_column_names(self, matrix, sample_metadata, annotation):
        renamed = matrix.rename(columns={"probe_id": "ID", "gene_name": "symbol"})
        meta = sample_metadata.rename(columns={"sample_id": "geo_accession", "disease": "condition"})
        config = PipelineConfig(probe_column="ID", gene_column="symbol",
                                sample_column="geo_accession", disease_column="condition")
        result = run_pipeline(renamed, meta, TableAnnotationClient(annotation), config)
        assert len(result.enriched) == 16
        assert result.enriched["condition"].notna().all()

    def test_samples_without_labels_warned(self, matrix, sample_metadata, annotation):
        partial = sample_metadata.copy()
        partial.loc[partial["sample_id"] == "S4", "disease"] = None
        result = run_pipeline(matrix, partial, TableAnnotationClient(annotation))
        assert "1 sample(s) without a disease label" in result.warnings


class TestClientLifecycle:

    def test_client_opened_and_closed(self, matrix, sample_metadata, annotation):
        client = TableAnnotationClient(annotation)
        run_pipeline(matrix, sample_metadata, client)
        assert not client.is_open

    def test_open_client_left_open(self, matrix, sample_metadata, annotation):
        client = TableAnnotationClient(annotation)
        client.open()
        run_pipeline(matrix, sample_metadata, client)
        assert client.is_open
        client.close()

    def test_client_closed_on_error(self, matrix, sample_metadata):
        client = _FailingClient()
        with pytest.raises(RuntimeError, match="unavailable"):
            run_pipeline(matrix, sample_metadata, client)
        assert not client.is_open

    def test_empty_annotation_warns(self, matrix, sample_metadata):
        empty = pd.DataFrame(columns=["gene_name", "chromosome_name", "transcript_length"])
        result = run_pipeline(matrix, sample_metadata, TableAnnotationClient(empty))
        assert "Annotation lookup matched no genes" in result.warnings
        assert result.filtered.empty
        assert len(result.enriched) == 16


class TestMalformedInput:

    def test_duplicate_probe_ids(self, matrix, sample_metadata, annotation):
        bad = matrix.copy()
        bad.loc[1, "probe_id"] = "p1"
        with pytest.raises(ValueError, match="unique"):
            run_pipeline(bad, sample_metadata, TableAnnotationClient(annotation))

    def test_missing_identifier_column(self, matrix, sample_metadata, annotation):
        with pytest.raises(ValueError, match="gene_name"):
            run_pipeline(matrix.drop(columns="gene_name"), sample_metadata,
                         TableAnnotationClient(annotation))

    def test_missing_disease_column(self, matrix, sample_metadata, annotation):
        with pytest.raises(ValueError, match="disease"):
            run_pipeline(matrix, sample_metadata.drop(columns="disease"),
                         TableAnnotationClient(annotation))

    def test_more_than_two_groups(self, matrix, sample_metadata, annotation):
        meta = sample_metadata.copy()
        meta.loc[meta["sample_id"] == "S4", "disease"] = "UC"
        with pytest.raises(ValueError, match="two groups"):
            run_pipeline(matrix, meta, TableAnnotationClient(annotation))


class TestPipelineResult:

    def test_empty_stats(self):
        assert PipelineResult().get_stats() == {}

    def test_add_summary(self):
        result = PipelineResult()
        result.add_summary("x", pd.DataFrame({"a": [1]}))
        assert list(result.summaries) == ["x"]
