"""Unit tests for pipeline configuration."""

import pytest

from geo_tidy.config import STANDARD_CHROMOSOMES, PipelineConfig, get_biomart_url


class TestPipelineConfig:

    def test_defaults(self):
        config = PipelineConfig()
        assert config.aggregation == "mean"
        assert config.na_policy == "skip"
        assert config.ambiguity == "first"
        assert config.test_method == "welch"
        assert config.value_column == "mean_value"
        assert config.chromosomes == STANDARD_CHROMOSOMES

    @pytest.mark.parametrize("field,value", [
        ("aggregation", "sum"),
        ("na_policy", "drop"),
        ("ambiguity", "all"),
        ("test_method", "anova"),
        ("failure_policy", "raise"),
    ])
    def test_unknown_choice(self, field, value):
        with pytest.raises(ValueError, match=field):
            PipelineConfig(**{field: value})

    def test_identifier_columns_must_differ(self):
        with pytest.raises(ValueError, match="must differ"):
            PipelineConfig(probe_column="id", gene_column="id")

    @pytest.mark.parametrize("field,value", [
        ("probe_column", "gene_name"),
        ("probe_column", "sample_id"),
        ("gene_column", "value"),
    ])
    def test_identifier_column_clashes_with_output(self, field, value):
        kwargs = {"probe_column": "ID_REF", "gene_column": "symbol", field: value}
        with pytest.raises(ValueError, match="collides"):
            PipelineConfig(**kwargs)

    def test_gene_column_may_keep_default_name(self):
        config = PipelineConfig(probe_column="ID_REF", gene_column="gene_name")
        assert config.gene_column == "gene_name"

    @pytest.mark.parametrize("alpha", [0.0, 1.0, -0.1])
    def test_alpha_range(self, alpha):
        with pytest.raises(ValueError, match="alpha"):
            PipelineConfig(alpha=alpha)

    def test_groups_normalised_to_tuple(self):
        assert PipelineConfig(test_groups=["IBD", "control"]).test_groups == ("IBD", "control")

    @pytest.mark.parametrize("groups", [("IBD",), ("IBD", "IBD"), ("a", "b", "c")])
    def test_invalid_groups(self, groups):
        with pytest.raises(ValueError, match="test_groups"):
            PipelineConfig(test_groups=groups)

    def test_chromosomes_normalised_to_strings(self):
        config = PipelineConfig(chromosomes=[1, 2, "X"])
        assert config.chromosomes == frozenset({"1", "2", "X"})


class TestStandardChromosomes:

    def test_contents(self):
        assert "1" in STANDARD_CHROMOSOMES
        assert "23" in STANDARD_CHROMOSOMES
        assert {"X", "Y"} <= STANDARD_CHROMOSOMES
        assert "MT" not in STANDARD_CHROMOSOMES
        assert len(STANDARD_CHROMOSOMES) == 25


class TestBiomartUrl:

    def test_default(self, monkeypatch):
        monkeypatch.delenv("GEO_TIDY_BIOMART_URL", raising=False)
        assert get_biomart_url() == "https://www.ensembl.org/biomart/martservice"

    def test_override(self, monkeypatch):
        monkeypatch.setenv("GEO_TIDY_BIOMART_URL", "http://localhost:9000/martservice")
        assert get_biomart_url() == "http://localhost:9000/martservice"
