"""Configuration for the tidy expression pipeline.

Column names, resolution policies and test settings used by every stage.
The defaults reproduce the classic walkthrough: mean of probes per gene,
missing readings skipped, Welch t-test between two disease labels.
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

# =============================================================================
# Column names
# =============================================================================

PROBE_COLUMN = "probe_id"
GENE_COLUMN = "gene_name"
SAMPLE_COLUMN = "sample_id"
VALUE_COLUMN = "value"
MEAN_VALUE_COLUMN = "mean_value"
CHROMOSOME_COLUMN = "chromosome_name"
TRANSCRIPT_LENGTH_COLUMN = "transcript_length"
AMBIGUOUS_COLUMN = "annotation_ambiguous"
DISEASE_COLUMN = "disease"

ANNOTATION_COLUMNS = [GENE_COLUMN, CHROMOSOME_COLUMN, TRANSCRIPT_LENGTH_COLUMN]

# =============================================================================
# Policies
# =============================================================================

AGGREGATION_POLICIES = ("mean", "median", "max_probe")
NA_POLICIES = ("skip", "propagate")
AMBIGUITY_POLICIES = ("first", "null")
TEST_METHODS = ("welch", "student", "mann_whitney_u")
FAILURE_POLICIES = ("missing", "skip")

# Autosomes 1-22 plus "23" (some annotation sources label X as 23), X and Y.
# Unplaced scaffolds, patches and MT fall outside.
STANDARD_CHROMOSOMES: FrozenSet[str] = frozenset(
    [str(i) for i in range(1, 24)] + ["X", "Y"]
)

# =============================================================================
# Annotation service
# =============================================================================

DEFAULT_BIOMART_URL = "https://www.ensembl.org/biomart/martservice"
DEFAULT_BIOMART_DATASET = "hsapiens_gene_ensembl"
DEFAULT_BIOMART_BATCH_SIZE = 500


def get_biomart_url() -> str:
    """BioMart endpoint, overridable via ``GEO_TIDY_BIOMART_URL``."""
    return os.environ.get("GEO_TIDY_BIOMART_URL") or DEFAULT_BIOMART_URL


@dataclass
class PipelineConfig:
    """Settings for a single pipeline run.

    Attributes:
        probe_column: Name of the probe identifier column in the matrix.
        gene_column: Name of the gene symbol column in the matrix.
        sample_column: Name of the sample identifier column in the
            sample metadata table.
        disease_column: Categorical column in the sample metadata holding
            the disease/condition label.
        aggregation: How duplicate probes of a gene are combined
            ("mean", "median" or "max_probe").
        na_policy: "skip" excludes missing readings from the aggregate,
            "propagate" makes the whole (sample, gene) value missing.
        ambiguity: How genes annotated on several chromosomes are joined.
            "first" keeps one match (standard chromosomes preferred),
            "null" leaves the annotation empty. Both flag the row.
        chromosomes: Whitelist used by the filtered view.
        test_groups: (test, reference) disease labels for the per-gene
            test. None uses the two labels present, in sorted order.
        test_method: "welch", "student" or "mann_whitney_u".
        value_column: Column compared by the per-gene test.
        failure_policy: "missing" keeps failed genes with a NaN p-value,
            "skip" drops them from the results table.
        alpha: Significance threshold for reporting.
        seed: Seed for any random gene sampling.
    """

    probe_column: str = PROBE_COLUMN
    gene_column: str = GENE_COLUMN
    sample_column: str = SAMPLE_COLUMN
    disease_column: str = DISEASE_COLUMN

    aggregation: str = "mean"
    na_policy: str = "skip"
    ambiguity: str = "first"
    chromosomes: FrozenSet[str] = field(default_factory=lambda: STANDARD_CHROMOSOMES)

    test_groups: Optional[Tuple[str, str]] = None
    test_method: str = "welch"
    value_column: str = MEAN_VALUE_COLUMN
    failure_policy: str = "missing"
    alpha: float = 0.05

    seed: int = 42

    def __post_init__(self):
        """Validate configuration."""
        _check_choice("aggregation", self.aggregation, AGGREGATION_POLICIES)
        _check_choice("na_policy", self.na_policy, NA_POLICIES)
        _check_choice("ambiguity", self.ambiguity, AMBIGUITY_POLICIES)
        _check_choice("test_method", self.test_method, TEST_METHODS)
        _check_choice("failure_policy", self.failure_policy, FAILURE_POLICIES)

        if self.probe_column == self.gene_column:
            raise ValueError("probe_column and gene_column must differ")
        # The gene column is renamed to gene_name after reshaping
        reserved = {
            "probe_column": (GENE_COLUMN, SAMPLE_COLUMN, VALUE_COLUMN),
            "gene_column": (SAMPLE_COLUMN, VALUE_COLUMN),
        }
        for name, taken in reserved.items():
            value = getattr(self, name)
            if value in taken:
                raise ValueError(
                    f"{name} {value!r} collides with the tidy output columns "
                    f"({', '.join(taken)})"
                )
        if not 0.0 < self.alpha < 1.0:
            raise ValueError(f"alpha must be between 0 and 1, got {self.alpha}")
        if self.test_groups is not None:
            self.test_groups = tuple(self.test_groups)
            if len(self.test_groups) != 2 or self.test_groups[0] == self.test_groups[1]:
                raise ValueError(
                    f"test_groups must be two distinct labels, got {self.test_groups!r}"
                )
        self.chromosomes = frozenset(str(c) for c in self.chromosomes)


def _check_choice(name: str, value: str, allowed: Tuple[str, ...]) -> None:
    if value not in allowed:
        raise ValueError(
            f"Unknown {name} {value!r}; expected one of: {', '.join(allowed)}"
        )
