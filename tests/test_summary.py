"""Unit tests for grouped summaries and gene sampling."""

import pandas as pd
import pytest

from geo_tidy.aggregate import collapse_probes
from geo_tidy.join import enrich
from geo_tidy.reshape import melt_expression
from geo_tidy.summary import (
    Aggregation,
    sample_genes,
    summarize,
    summarize_by_chromosome,
    summarize_by_disease,
)


@pytest.fixture
def enriched(matrix, annotation, sample_metadata):
    return enrich(collapse_probes(melt_expression(matrix)), annotation, sample_metadata)


class TestAggregation:

    def test_unsupported_function(self):
        with pytest.raises(ValueError, match="Unsupported aggregation"):
            Aggregation("x", "mean_value", "mode")


class TestSummarize:

    def test_declared_columns(self):
        df = pd.DataFrame({"k": ["a", "b", "a"], "v": [1.0, 2.0, 3.0]})
        result = summarize(df, "k", [
            Aggregation("total", "v", "sum"),
            Aggregation("n", "v", "size"),
        ])
        assert list(result.columns) == ["k", "total", "n"]
        assert result["k"].tolist() == ["a", "b"]
        assert result["total"].tolist() == [4.0, 2.0]
        assert result["n"].tolist() == [2, 1]

    def test_count_vs_size(self):
        df = pd.DataFrame({"k": ["a", "a"], "v": [1.0, None]})
        result = summarize(df, "k", [
            Aggregation("n_values", "v", "count"),
            Aggregation("n_rows", "v", "size"),
        ])
        assert result.iloc[0]["n_values"] == 1
        assert result.iloc[0]["n_rows"] == 2

    def test_missing_key_forms_group(self):
        df = pd.DataFrame({"k": ["a", None], "v": [1.0, 2.0]})
        result = summarize(df, "k", [Aggregation("n", "v", "size")])
        assert len(result) == 2
        assert result["n"].sum() == 2

    def test_multiple_keys(self):
        df = pd.DataFrame({"k1": ["a", "a", "b"], "k2": ["x", "y", "x"], "v": [1, 2, 3]})
        result = summarize(df, ["k1", "k2"], [Aggregation("v_max", "v", "max")])
        assert len(result) == 3

    def test_order_independent(self, enriched):
        aggs = [Aggregation("m", "mean_value", "mean")]
        shuffled = enriched.sample(frac=1.0, random_state=11)
        pd.testing.assert_frame_equal(
            summarize(enriched, "disease", aggs), summarize(shuffled, "disease", aggs)
        )

    def test_missing_column(self):
        df = pd.DataFrame({"k": ["a"], "v": [1.0]})
        with pytest.raises(ValueError, match="missing column"):
            summarize(df, "k", [Aggregation("m", "other", "mean")])

    def test_duplicate_names(self):
        df = pd.DataFrame({"k": ["a"], "v": [1.0]})
        with pytest.raises(ValueError, match="unique"):
            summarize(df, "k", [Aggregation("m", "v", "mean"), Aggregation("m", "v", "max")])

    def test_requires_aggregation(self):
        with pytest.raises(ValueError):
            summarize(pd.DataFrame({"k": ["a"]}), "k", [])


class TestStandardSummaries:

    def test_by_disease(self, enriched):
        result = summarize_by_disease(enriched).set_index("disease")
        assert result.loc["control", "mean_expression"] == pytest.approx(51 / 8)
        assert result.loc["IBD", "mean_expression"] == pytest.approx(67.5 / 8)
        assert result.loc["control", "n_records"] == 8
        assert result.loc["IBD", "n_genes"] == 4

    def test_by_chromosome_keeps_unannotated_group(self, enriched):
        result = summarize_by_chromosome(enriched)
        assert len(result) == 4
        assert result["chromosome_name"].isna().sum() == 1
        assert (result["n_genes"] == 1).all()

    def test_by_chromosome_on_filtered_view(self, enriched):
        from geo_tidy.join import filter_chromosomes

        result = summarize_by_chromosome(filter_chromosomes(enriched))
        assert result["chromosome_name"].tolist() == ["1", "X"]


class TestSampleGenes:

    def test_reproducible(self, enriched):
        assert sample_genes(enriched, 2, seed=7) == sample_genes(enriched, 2, seed=7)

    def test_row_order_irrelevant(self, enriched):
        shuffled = enriched.sample(frac=1.0, random_state=5)
        assert sample_genes(enriched, 3, seed=1) == sample_genes(shuffled, 3, seed=1)

    def test_subset_of_genes(self, enriched):
        picked = sample_genes(enriched, 2)
        assert len(picked) == 2
        assert set(picked) <= set(enriched["gene_name"])
        assert picked == sorted(picked)

    def test_n_larger_than_available(self, enriched):
        assert sample_genes(enriched, 100) == ["GENE_A", "GENE_B", "GENE_C", "NOPE"]

    def test_negative_n(self, enriched):
        with pytest.raises(ValueError):
            sample_genes(enriched, -1)
