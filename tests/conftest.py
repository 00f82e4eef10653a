"""Shared fixtures: a small expression dataset with two disease groups."""

import pandas as pd
import pytest


@pytest.fixture
def matrix():
    """Five probes over four samples; GENE_A has two probes, NOPE has no annotation."""
    return pd.DataFrame({
        "probe_id": ["p1", "p2", "p3", "p4", "p5"],
        "gene_name": ["GENE_A", "GENE_A", "GENE_B", "GENE_C", "NOPE"],
        "S1": [1.0, 3.0, 10.0, 5.0, 7.0],
        "S2": [2.0, 4.0, 11.0, 5.0, 8.0],
        "S3": [8.0, 10.0, 10.5, 5.0, 7.5],
        "S4": [9.0, 12.0, 11.5, 5.0, 8.5],
    })


@pytest.fixture
def sample_metadata():
    return pd.DataFrame({
        "sample_id": ["S1", "S2", "S3", "S4"],
        "disease": ["control", "control", "IBD", "IBD"],
        "age": [34, 51, 29, 44],
    })


@pytest.fixture
def annotation():
    """GENE_A has two transcripts on chr 1, GENE_C sits on a scaffold."""
    return pd.DataFrame({
        "gene_name": ["GENE_A", "GENE_A", "GENE_B", "GENE_C"],
        "chromosome_name": ["1", "1", "X", "CHR_HSCHR6_MHC_COX_CTG1"],
        "transcript_length": [1200, 2400, 800, 500],
    })


@pytest.fixture
def series_matrix_text():
    """A three-sample GEO series matrix with two characteristic rows."""
    return "\n".join([
        '!Series_title\t"Colon biopsies from IBD patients"',
        '!Series_geo_accession\t"GSE0001"',
        '!Sample_title\t"biopsy 1"\t"biopsy 2"\t"biopsy 3"',
        '!Sample_geo_accession\t"GSM1"\t"GSM2"\t"GSM3"',
        '!Sample_source_name_ch1\t"colon"\t"colon"\t"colon"',
        '!Sample_characteristics_ch1\t"disease state: IBD"\t"disease state: control"\t"disease state: IBD"',
        '!Sample_characteristics_ch1\t"age: 30"\t"age: 41"\t"age: 52"',
        '!series_matrix_table_begin',
        '"ID_REF"\t"GSM1"\t"GSM2"\t"GSM3"',
        '"1007_s_at"\t5.1\t6.2\t5.9',
        '"1053_at"\t7.0\t7.4\t6.8',
        '"999_at"\t3.3\t3.1\t3.0',
        '!series_matrix_table_end',
    ]) + "\n"


@pytest.fixture
def platform_text():
    """SOFT platform table; 117_at has no symbol, 1007_s_at maps to two."""
    return "\n".join([
        "^PLATFORM = GPL570",
        "!Platform_title = [HG-U133_Plus_2] Affymetrix Human Genome U133 Plus 2.0 Array",
        "!platform_table_begin",
        "ID\tGB_ACC\tGene Symbol",
        "1007_s_at\tU48705\tDDR1 /// MIR4640",
        "1053_at\tM87338\tRFC2",
        "117_at\tX51757\t",
        "!platform_table_end",
    ]) + "\n"
