"""
Metadata join.

Left-joins gene annotation and sample metadata onto aggregated
expression values, and provides the standard-chromosome filtered view.
"""

import logging
from typing import FrozenSet, Iterable, List, Optional

import pandas as pd

from .annotation import normalize_annotation, normalize_chromosome
from .config import (
    AMBIGUITY_POLICIES,
    AMBIGUOUS_COLUMN,
    CHROMOSOME_COLUMN,
    GENE_COLUMN,
    SAMPLE_COLUMN,
    STANDARD_CHROMOSOMES,
    TRANSCRIPT_LENGTH_COLUMN,
)

logger = logging.getLogger(__name__)

_SEX_CHROMOSOME_RANK = {"X": 24, "Y": 25}


def _chromosome_rank(label: str, whitelist: FrozenSet[str]) -> tuple:
    """Sort key: whitelisted labels first in karyotype order, then the rest by name."""
    if label in whitelist:
        if label.isdigit():
            return (0, int(label), label)
        return (0, _SEX_CHROMOSOME_RANK.get(label, 99), label)
    return (1, 0, label)


def resolve_annotation(
    annotation: pd.DataFrame,
    ambiguity: str = "first",
    whitelist: Iterable[str] = STANDARD_CHROMOSOMES,
) -> pd.DataFrame:
    """
    Reduce an annotation table to at most one row per gene.

    Transcripts on the same chromosome collapse to the longest one. A gene
    placed on more than one chromosome is flagged as ambiguous and either
    keeps its best-ranked placement ("first") or loses its annotation
    ("null").

    Args:
        annotation: Annotation rows, possibly several per gene
        ambiguity: "first" or "null"
        whitelist: Chromosome labels preferred when picking a placement

    Returns:
        DataFrame with columns [gene_name, chromosome_name,
        transcript_length, annotation_ambiguous], one row per gene
    """
    if ambiguity not in AMBIGUITY_POLICIES:
        raise ValueError(f"Unknown ambiguity policy: {ambiguity!r}")
    whitelist = frozenset(str(c) for c in whitelist)

    table = normalize_annotation(annotation)
    placed = table[table[CHROMOSOME_COLUMN].notna()]
    unplaced = table[
        table[CHROMOSOME_COLUMN].isna() & ~table[GENE_COLUMN].isin(placed[GENE_COLUMN])
    ]

    # Longest transcript per (gene, chromosome)
    per_chrom = (
        placed.groupby([GENE_COLUMN, CHROMOSOME_COLUMN], sort=False)[TRANSCRIPT_LENGTH_COLUMN]
        .max()
        .reset_index()
    )
    n_placements = per_chrom.groupby(GENE_COLUMN)[CHROMOSOME_COLUMN].transform("count")
    per_chrom[AMBIGUOUS_COLUMN] = n_placements > 1

    per_chrom["_rank"] = per_chrom[CHROMOSOME_COLUMN].map(
        lambda c: _chromosome_rank(c, whitelist)
    )
    per_chrom = per_chrom.sort_values([GENE_COLUMN, "_rank"], kind="mergesort")
    resolved = per_chrom.drop_duplicates(subset=GENE_COLUMN, keep="first").drop(columns="_rank")

    ambiguous: List[str] = sorted(resolved.loc[resolved[AMBIGUOUS_COLUMN], GENE_COLUMN])
    if ambiguous:
        logger.warning(
            "%d gene(s) map to more than one chromosome (%s%s); policy: %s",
            len(ambiguous),
            ", ".join(ambiguous[:10]),
            "..." if len(ambiguous) > 10 else "",
            ambiguity,
        )
        if ambiguity == "null":
            mask = resolved[AMBIGUOUS_COLUMN]
            resolved.loc[mask, CHROMOSOME_COLUMN] = None
            resolved.loc[mask, TRANSCRIPT_LENGTH_COLUMN] = float("nan")

    if not unplaced.empty:
        unplaced = (
            unplaced.groupby(GENE_COLUMN, sort=False)[TRANSCRIPT_LENGTH_COLUMN]
            .max()
            .reset_index()
        )
        unplaced[CHROMOSOME_COLUMN] = None
        unplaced[AMBIGUOUS_COLUMN] = False
        resolved = pd.concat([resolved, unplaced], ignore_index=True)

    columns = [GENE_COLUMN, CHROMOSOME_COLUMN, TRANSCRIPT_LENGTH_COLUMN, AMBIGUOUS_COLUMN]
    resolved = resolved[columns].sort_values(GENE_COLUMN, kind="mergesort")
    resolved[AMBIGUOUS_COLUMN] = resolved[AMBIGUOUS_COLUMN].astype(bool)
    return resolved.reset_index(drop=True)


def _prepare_metadata(
    sample_metadata: pd.DataFrame,
    metadata_sample_column: str,
    sample_column: str,
    reserved: Iterable[str],
    metadata_columns: Optional[List[str]],
) -> pd.DataFrame:
    if metadata_sample_column not in sample_metadata.columns:
        raise ValueError(
            f"Sample metadata has no {metadata_sample_column!r} column. "
            f"Found columns: {', '.join(map(str, sample_metadata.columns))}"
        )
    meta = sample_metadata.copy()
    meta[metadata_sample_column] = meta[metadata_sample_column].astype(str)
    if not meta[metadata_sample_column].is_unique:
        dupes = meta.loc[meta[metadata_sample_column].duplicated(), metadata_sample_column]
        raise ValueError(
            f"Sample metadata has duplicate sample ids: {', '.join(dupes.unique()[:10])}"
        )
    meta = meta.rename(columns={metadata_sample_column: sample_column})

    if metadata_columns is not None:
        unknown = [c for c in metadata_columns if c not in meta.columns]
        if unknown:
            raise ValueError(f"Sample metadata has no column(s): {', '.join(unknown)}")
        meta = meta[[sample_column] + [c for c in metadata_columns if c != sample_column]]

    clashes = [c for c in meta.columns if c != sample_column and c in set(reserved)]
    if clashes:
        logger.warning("Ignoring sample metadata column(s) that clash: %s", ", ".join(clashes))
        meta = meta.drop(columns=clashes)
    return meta


def enrich(
    aggregated: pd.DataFrame,
    annotation: pd.DataFrame,
    sample_metadata: pd.DataFrame,
    ambiguity: str = "first",
    whitelist: Iterable[str] = STANDARD_CHROMOSOMES,
    gene_column: str = GENE_COLUMN,
    sample_column: str = SAMPLE_COLUMN,
    metadata_sample_column: Optional[str] = None,
    metadata_columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Left-join annotation (by gene) and sample metadata (by sample).

    Every aggregated row is kept exactly once; genes or samples without a
    match get null fields.

    Args:
        aggregated: Output of ``collapse_probes``
        annotation: Annotation rows (any number per gene)
        sample_metadata: One row per sample
        ambiguity: Policy for genes on several chromosomes
        whitelist: Chromosomes preferred when resolving ambiguity
        gene_column: Gene column in ``aggregated``
        sample_column: Sample column in ``aggregated``
        metadata_sample_column: Sample column in ``sample_metadata``
            (defaults to ``sample_column``)
        metadata_columns: Restrict the metadata columns joined in

    Returns:
        Enriched DataFrame with the same number of rows as ``aggregated``
    """
    resolved = resolve_annotation(annotation, ambiguity=ambiguity, whitelist=whitelist)
    if gene_column != GENE_COLUMN:
        resolved = resolved.rename(columns={GENE_COLUMN: gene_column})

    meta = _prepare_metadata(
        sample_metadata,
        metadata_sample_column or sample_column,
        sample_column,
        reserved=list(aggregated.columns) + list(resolved.columns),
        metadata_columns=metadata_columns,
    )

    enriched = aggregated.merge(resolved, on=gene_column, how="left", validate="many_to_one")
    enriched[AMBIGUOUS_COLUMN] = enriched[AMBIGUOUS_COLUMN].eq(True)

    left = enriched.assign(**{sample_column: enriched[sample_column].astype(str)})
    enriched = left.merge(meta, on=sample_column, how="left", validate="many_to_one")

    n_unannotated = enriched.loc[enriched[CHROMOSOME_COLUMN].isna(), gene_column].nunique()
    if n_unannotated:
        logger.info("%d gene(s) have no chromosome annotation", n_unannotated)
    unmatched = sorted(set(aggregated[sample_column].astype(str)) - set(meta[sample_column]))
    if unmatched:
        logger.warning(
            "%d sample(s) have no metadata: %s", len(unmatched), ", ".join(unmatched[:10])
        )

    return enriched


def filter_chromosomes(
    enriched: pd.DataFrame,
    whitelist: Iterable[str] = STANDARD_CHROMOSOMES,
    chromosome_column: str = CHROMOSOME_COLUMN,
) -> pd.DataFrame:
    """
    Rows placed on a whitelisted chromosome.

    Labels are compared after normalisation, so 1, "1.0" and "chr1" all
    match "1". Rows without annotation are excluded. The input is left
    untouched.
    """
    whitelist = frozenset(str(c) for c in whitelist)
    labels = enriched[chromosome_column].map(normalize_chromosome)
    filtered = enriched.loc[labels.isin(whitelist)].copy()
    logger.info(
        "Chromosome filter kept %d of %d rows", len(filtered), len(enriched)
    )
    return filtered.reset_index(drop=True)
