"""Gene annotation clients.

Resolve gene symbols to chromosome and transcript length. A client is an
explicit object handed to the pipeline; its connection is opened and
closed around a run instead of living in module state.

Usage::

    from geo_tidy.annotation import BiomartAnnotationClient

    with BiomartAnnotationClient() as client:
        annotation = client.lookup(["TP53", "BRCA1"])
"""

import logging
import xml.etree.ElementTree as ET
from io import StringIO
from pathlib import Path
from typing import Iterable, List, Optional, Union

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import (
    ANNOTATION_COLUMNS,
    CHROMOSOME_COLUMN,
    DEFAULT_BIOMART_BATCH_SIZE,
    DEFAULT_BIOMART_DATASET,
    GENE_COLUMN,
    TRANSCRIPT_LENGTH_COLUMN,
    get_biomart_url,
)

logger = logging.getLogger(__name__)

# Column spellings seen in BioMart exports and hand-made annotation sheets
COLUMN_ALIASES = {
    "hgnc_symbol": GENE_COLUMN,
    "external_gene_name": GENE_COLUMN,
    "symbol": GENE_COLUMN,
    "gene": GENE_COLUMN,
    "chromosome": CHROMOSOME_COLUMN,
    "chr": CHROMOSOME_COLUMN,
    "chrom": CHROMOSOME_COLUMN,
    "length": TRANSCRIPT_LENGTH_COLUMN,
}


# Statuses worth retrying against martservice: rate limiting and gateway errors
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 0.5,
    user_agent: str = "geo-tidy/0.1",
) -> requests.Session:
    """
    Session for BioMart calls.

    Retries follow ``Retry-After`` when the server sends one. martservice
    queries are form posts, so POST is retried too. Once retries run out
    the last response is handed back, and ``raise_for_status`` in the
    client turns it into ``requests.HTTPError``.
    """
    policy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset({"GET", "POST"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    session = requests.Session()
    session.headers["User-Agent"] = user_agent
    adapter = HTTPAdapter(max_retries=policy)
    for prefix in ("https://", "http://"):
        session.mount(prefix, adapter)
    return session


def normalize_chromosome(label) -> Optional[str]:
    """Canonical chromosome label: "chr1", 1 and 1.0 all become "1"."""
    if label is None or pd.isna(label):
        return None
    text = str(label).strip()
    if not text or text.lower() in ("nan", "none"):
        return None
    suffix = text[3:]
    if text.lower().startswith("chr") and (suffix.isdigit() or suffix.upper() in ("X", "Y", "M", "MT")):
        text = suffix
    try:
        number = float(text)
    except ValueError:
        return text.upper() if text.upper() in ("X", "Y", "MT") else text
    if number.is_integer():
        return str(int(number))
    return text


def normalize_annotation(table: pd.DataFrame) -> pd.DataFrame:
    """
    Bring an annotation table to the standard columns.

    Accepts the usual aliases (``hgnc_symbol``, ``chromosome``...). A
    missing transcript length column is added as all-missing.

    Returns:
        DataFrame with columns [gene_name, chromosome_name, transcript_length]

    Raises:
        ValueError: If no gene or chromosome column can be found
    """
    renamed = table.rename(
        columns={c: COLUMN_ALIASES.get(str(c).strip().lower(), c) for c in table.columns}
    )
    missing = [c for c in (GENE_COLUMN, CHROMOSOME_COLUMN) if c not in renamed.columns]
    if missing:
        raise ValueError(f"Annotation table is missing column(s): {', '.join(missing)}")

    out = renamed.copy()
    if TRANSCRIPT_LENGTH_COLUMN not in out.columns:
        out[TRANSCRIPT_LENGTH_COLUMN] = float("nan")

    out = out[ANNOTATION_COLUMNS]
    out = out[out[GENE_COLUMN].notna() & (out[GENE_COLUMN].astype(str).str.strip() != "")].copy()
    out[GENE_COLUMN] = out[GENE_COLUMN].astype(str).str.strip()
    out[CHROMOSOME_COLUMN] = out[CHROMOSOME_COLUMN].map(normalize_chromosome)
    out[TRANSCRIPT_LENGTH_COLUMN] = pd.to_numeric(out[TRANSCRIPT_LENGTH_COLUMN], errors="coerce").astype(float)
    return out.drop_duplicates().reset_index(drop=True)


class AnnotationClient:
    """Base class for gene annotation sources.

    Subclasses implement ``_lookup``; ``open``/``close`` bracket any
    connection the source needs.
    """

    def __init__(self) -> None:
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> None:
        self._is_open = True

    def close(self) -> None:
        self._is_open = False

    def __enter__(self) -> "AnnotationClient":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def lookup(self, gene_names: Iterable[str]) -> pd.DataFrame:
        """
        Annotate a set of gene symbols.

        Args:
            gene_names: Gene symbols to resolve

        Returns:
            Zero or more rows per gene with columns [gene_name,
            chromosome_name, transcript_length]
        """
        if not self._is_open:
            raise RuntimeError(f"{type(self).__name__} is not open")
        genes = sorted({str(g) for g in gene_names if pd.notna(g) and str(g).strip()})
        if not genes:
            return pd.DataFrame(columns=ANNOTATION_COLUMNS)
        result = normalize_annotation(self._lookup(genes))
        n_found = result[GENE_COLUMN].nunique()
        logger.info("Annotation matched %d of %d genes", n_found, len(genes))
        return result

    def _lookup(self, gene_names: List[str]) -> pd.DataFrame:
        raise NotImplementedError


class TableAnnotationClient(AnnotationClient):
    """Serves annotation from a local table or TSV/CSV file."""

    def __init__(self, source: Union[pd.DataFrame, str, Path]) -> None:
        super().__init__()
        self._source = source
        self._table: Optional[pd.DataFrame] = None

    def open(self) -> None:
        if isinstance(self._source, pd.DataFrame):
            table = self._source
        else:
            path = Path(self._source)
            sep = "," if ".csv" in path.suffixes else "\t"
            logger.info("Loading gene annotation from %s", path)
            table = pd.read_csv(path, sep=sep, dtype=str)
        self._table = normalize_annotation(table)
        super().open()

    def close(self) -> None:
        self._table = None
        super().close()

    def _lookup(self, gene_names: List[str]) -> pd.DataFrame:
        return self._table[self._table[GENE_COLUMN].isin(gene_names)]


def build_biomart_query(
    gene_names: List[str],
    dataset: str = DEFAULT_BIOMART_DATASET,
    symbol_attribute: str = "hgnc_symbol",
) -> str:
    """Build the BioMart XML query for symbol, chromosome and transcript length."""
    query = ET.Element("Query", {
        "virtualSchemaName": "default",
        "formatter": "TSV",
        "header": "0",
        "uniqueRows": "1",
        "datasetConfigVersion": "0.6",
    })
    ds = ET.SubElement(query, "Dataset", {"name": dataset, "interface": "default"})
    ET.SubElement(ds, "Filter", {"name": symbol_attribute, "value": ",".join(gene_names)})
    for attribute in (symbol_attribute, "chromosome_name", "transcript_length"):
        ET.SubElement(ds, "Attribute", {"name": attribute})
    return '<?xml version="1.0" encoding="UTF-8"?><!DOCTYPE Query>' + ET.tostring(
        query, encoding="unicode"
    )


class BiomartAnnotationClient(AnnotationClient):
    """Looks up genes in the Ensembl BioMart REST service.

    Returns one row per transcript, so a gene usually comes back several
    times; the join stage resolves the duplicates.

    Args:
        dataset: BioMart dataset name
        url: martservice endpoint. Defaults to ``GEO_TIDY_BIOMART_URL``
            or the public Ensembl mirror.
        batch_size: Symbols per request
        timeout: Per-request timeout in seconds
        session: Pre-built session (mainly for tests)
    """

    def __init__(
        self,
        dataset: str = DEFAULT_BIOMART_DATASET,
        url: Optional[str] = None,
        batch_size: int = DEFAULT_BIOMART_BATCH_SIZE,
        timeout: int = 120,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__()
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.dataset = dataset
        self.url = url or get_biomart_url()
        self.batch_size = batch_size
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def open(self) -> None:
        if self._session is None:
            self._session = create_session()
        super().open()

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        super().close()

    def _lookup(self, gene_names: List[str]) -> pd.DataFrame:
        frames = []
        for start in range(0, len(gene_names), self.batch_size):
            batch = gene_names[start:start + self.batch_size]
            logger.debug("BioMart request for %d symbols (offset %d)", len(batch), start)
            frames.append(self._query(batch))
        return pd.concat(frames, ignore_index=True)

    def _query(self, batch: List[str]) -> pd.DataFrame:
        response = self._session.post(
            self.url,
            data={"query": build_biomart_query(batch, self.dataset)},
            timeout=self.timeout,
        )
        response.raise_for_status()
        text = response.text
        # BioMart reports query problems in the body of a 200 response
        if text.lstrip().startswith("Query ERROR"):
            raise RuntimeError(f"BioMart query failed: {text.strip()[:200]}")
        if not text.strip():
            return pd.DataFrame(columns=ANNOTATION_COLUMNS)
        return pd.read_csv(
            StringIO(text),
            sep="\t",
            header=None,
            names=ANNOTATION_COLUMNS,
            dtype={GENE_COLUMN: str, CHROMOSOME_COLUMN: str},
        )
