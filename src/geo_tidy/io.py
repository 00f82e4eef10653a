"""
Readers and writers for expression data files.

Handles the formats a GEO walkthrough meets:
- plain expression matrices (TSV/CSV: probe id, gene name, one column per sample)
- sample metadata tables
- GEO series-matrix files (``GSExxxx_series_matrix.txt[.gz]``)
- GPL platform annotation tables (probe -> gene symbol)
"""

import gzip
import logging
from io import StringIO
from pathlib import Path
from typing import Dict, List, Tuple, Union

import pandas as pd

from .config import DISEASE_COLUMN, GENE_COLUMN, PROBE_COLUMN, SAMPLE_COLUMN

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SERIES_TABLE_BEGIN = "!series_matrix_table_begin"
SERIES_TABLE_END = "!series_matrix_table_end"
PLATFORM_TABLE_BEGIN = "!platform_table_begin"
PLATFORM_TABLE_END = "!platform_table_end"

# Characteristic keys GEO submitters use for the condition label
DISEASE_KEYS = ("disease state", "disease", "disease status", "condition", "diagnosis")


def _separator(path: Path) -> str:
    return "," if ".csv" in [s.lower() for s in path.suffixes] else "\t"


def _open_text(path: Path):
    if path.suffix.lower() == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def read_expression_matrix(
    path: PathLike,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
) -> pd.DataFrame:
    """
    Read a wide expression matrix.

    The first two columns are taken as the probe and gene identifiers and
    renamed to ``probe_column``/``gene_column`` when the header differs.

    Args:
        path: TSV or CSV file (optionally gzipped)
        probe_column: Name to give the probe identifier column
        gene_column: Name to give the gene symbol column

    Returns:
        DataFrame with identifier columns first, then one column per sample
    """
    path = Path(path)
    df = pd.read_csv(path, sep=_separator(path), low_memory=False)
    if df.shape[1] < 3:
        raise ValueError(
            f"{path} has {df.shape[1]} column(s); expected probe id, gene name "
            "and at least one sample column"
        )

    first, second = df.columns[0], df.columns[1]
    if (first, second) != (probe_column, gene_column):
        logger.info(
            "Using columns %r and %r of %s as %s and %s",
            first, second, path.name, probe_column, gene_column,
        )
        df = df.rename(columns={first: probe_column, second: gene_column})

    for col in (probe_column, gene_column):
        df[col] = df[col].where(df[col].isna(), df[col].astype(str))
    df.columns = [str(c) for c in df.columns]
    logger.info("Read %d probes x %d samples from %s", len(df), df.shape[1] - 2, path.name)
    return df


def read_sample_metadata(path: PathLike, sample_column: str = SAMPLE_COLUMN) -> pd.DataFrame:
    """Read a sample metadata table keyed by ``sample_column``."""
    path = Path(path)
    df = pd.read_csv(path, sep=_separator(path))
    if sample_column not in df.columns:
        raise ValueError(
            f"Sample metadata {path} has no {sample_column!r} column. "
            f"Found columns: {', '.join(map(str, df.columns))}"
        )
    df[sample_column] = df[sample_column].astype(str)
    return df


def parse_characteristics(values: List[str]) -> Tuple[str, List[str]]:
    """
    Split one ``!Sample_characteristics_ch1`` row into key and values.

    GEO stores characteristics as "key: value" per sample; the key is taken
    from the first non-empty entry.
    """
    key = ""
    parsed = []
    for value in values:
        if ":" in value:
            k, v = value.split(":", 1)
            key = key or k.strip()
            parsed.append(v.strip())
        else:
            parsed.append(value.strip())
    return key, parsed


def read_series_matrix(path: PathLike) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Parse a GEO series-matrix file.

    Args:
        path: ``*_series_matrix.txt`` or ``.txt.gz``

    Returns:
        Tuple of (matrix with an ``ID_REF`` column and one column per
        GSM accession, sample metadata with ``sample_id``, ``title``,
        ``source_name`` and one column per characteristic key)
    """
    path = Path(path)
    sample_fields: Dict[str, List[str]] = {}
    characteristics: Dict[str, List[str]] = {}
    table_lines: List[str] = []
    in_table = False

    with _open_text(path) as fh:
        for line in fh:
            line = line.rstrip("\n")
            if line.startswith(SERIES_TABLE_BEGIN):
                in_table = True
                continue
            if line.startswith(SERIES_TABLE_END):
                in_table = False
                continue
            if in_table:
                table_lines.append(line)
                continue
            if not line.startswith("!Sample_"):
                continue

            parts = line.split("\t")
            key = parts[0][len("!Sample_"):]
            values = [_unquote(p) for p in parts[1:]]
            if key.startswith("characteristics"):
                char_key, parsed = parse_characteristics(values)
                char_key = char_key or key
                # Repeated keys (e.g. two "treatment" rows) get a suffix
                while char_key in characteristics:
                    char_key += "_"
                characteristics[char_key] = parsed
            elif key not in sample_fields:
                sample_fields[key] = values

    if not table_lines:
        raise ValueError(f"No expression table found in {path}")

    matrix = pd.read_csv(StringIO("\n".join(table_lines)), sep="\t", low_memory=False)
    matrix.columns = [_unquote(str(c)) for c in matrix.columns]
    if "ID_REF" not in matrix.columns:
        raise ValueError(f"Series matrix table in {path} has no ID_REF column")
    matrix["ID_REF"] = matrix["ID_REF"].astype(str)

    accessions = sample_fields.get("geo_accession") or [c for c in matrix.columns if c != "ID_REF"]
    metadata = pd.DataFrame({SAMPLE_COLUMN: accessions})
    for field_name, column in (("title", "title"), ("source_name_ch1", "source_name")):
        if field_name in sample_fields:
            metadata[column] = sample_fields[field_name]
    for key, values in characteristics.items():
        if len(values) == len(accessions):
            metadata[key] = values
        else:
            logger.warning("Skipping characteristic %r: %d values for %d samples",
                           key, len(values), len(accessions))

    logger.info(
        "Read series matrix %s: %d probes, %d samples",
        path.name, len(matrix), len(accessions),
    )
    return matrix, metadata


def find_disease_column(metadata: pd.DataFrame) -> str:
    """
    Name of the metadata column holding the condition label.

    Raises:
        ValueError: If no known disease/condition column exists
    """
    if DISEASE_COLUMN in metadata.columns:
        return DISEASE_COLUMN
    lowered = {str(c).lower(): c for c in metadata.columns}
    for key in DISEASE_KEYS:
        if key in lowered:
            return lowered[key]
    raise ValueError(
        f"No disease/condition column among: {', '.join(map(str, metadata.columns))}"
    )


def read_platform_table(
    path: PathLike,
    id_column: str = "ID",
    symbol_column: str = "Gene Symbol",
) -> pd.DataFrame:
    """
    Read a GPL platform annotation table.

    Works on SOFT/annot files (table between ``!platform_table_begin`` and
    ``!platform_table_end``) and on plain tables with ``#`` comment lines.
    Multi-gene entries such as ``"HLA-DRB1 /// HLA-DRB4"`` keep the first
    symbol.

    Returns:
        DataFrame with columns [probe_id, gene_name]
    """
    path = Path(path)
    with _open_text(path) as fh:
        lines = [line.rstrip("\n") for line in fh]

    if any(line.startswith(PLATFORM_TABLE_BEGIN) for line in lines):
        start = next(i for i, l in enumerate(lines) if l.startswith(PLATFORM_TABLE_BEGIN)) + 1
        end = next(
            (i for i, l in enumerate(lines) if l.startswith(PLATFORM_TABLE_END)), len(lines)
        )
        lines = lines[start:end]
    else:
        lines = [l for l in lines if l and not l.startswith(("#", "!", "^"))]

    table = pd.read_csv(StringIO("\n".join(lines)), sep="\t", dtype=str, low_memory=False)
    missing = [c for c in (id_column, symbol_column) if c not in table.columns]
    if missing:
        raise ValueError(
            f"Platform table {path} is missing column(s): {', '.join(missing)}"
        )

    symbols = table[symbol_column].str.split("///").str[0].str.strip()
    platform = pd.DataFrame({
        PROBE_COLUMN: table[id_column].astype(str),
        GENE_COLUMN: symbols.where(symbols != ""),
    })
    return platform.drop_duplicates(subset=PROBE_COLUMN).reset_index(drop=True)


def attach_gene_names(
    series_matrix: pd.DataFrame,
    platform: pd.DataFrame,
    probe_column: str = PROBE_COLUMN,
    gene_column: str = GENE_COLUMN,
) -> pd.DataFrame:
    """
    Build an expression matrix from a series-matrix table and a platform table.

    Probes missing from the platform keep a null gene name.

    Returns:
        DataFrame with [probe_column, gene_column] followed by the sample columns
    """
    matrix = series_matrix.rename(columns={"ID_REF": probe_column})
    lookup = platform.rename(columns={PROBE_COLUMN: probe_column, GENE_COLUMN: gene_column})
    merged = matrix.merge(
        lookup[[probe_column, gene_column]], on=probe_column, how="left", validate="one_to_one"
    )
    n_unmapped = int(merged[gene_column].isna().sum())
    if n_unmapped:
        logger.info("%d of %d probes have no gene symbol", n_unmapped, len(merged))
    samples = [c for c in matrix.columns if c != probe_column]
    return merged[[probe_column, gene_column] + samples]


def write_table(df: pd.DataFrame, path: PathLike) -> Path:
    """Write a table as TSV (or CSV for ``.csv`` paths), creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep=_separator(path), index=False)
    return path
