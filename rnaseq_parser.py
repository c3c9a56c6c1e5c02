from __future__ import annotations

"""
RNA-seq input parser module.

Handles count matrix (CSV/TSV) and sample metadata (CSV/TSV/Excel) ingestion:
- Delimiter detection from the header line
- Per-cell numeric coercion with zero-fill for partially numeric rows
- Duplicate identifier summing
- Identifier namespace detection (see gene_identifiers)

Canonical output: CountMatrix (genes × samples) and SampleMetadata.
"""

from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from typing import IO, List, Optional, Union
import io
import logging
import pandas as pd
import numpy as np
from analysis_errors import ParseError
from count_data import CountMatrix, SampleMetadata
from gene_identifiers import detect_identifier_type

logger = logging.getLogger(__name__)

Source = Union[str, "PathLike[str]", IO[str], IO[bytes]]

EXCEL_SUFFIXES = (".xlsx", ".xls")
INTEGER_TOLERANCE = 0.001


@dataclass
class CountParseResult:
    """Result from parsing a count matrix file."""

    matrix: CountMatrix  # genes × samples, identifier_type = detected namespace
    warnings: List[str] = field(default_factory=list)  # e.g. "3 duplicate gene identifiers summed"
    dropped_rows: List[str] = field(default_factory=list)  # Entirely unparsable rows


def detect_delimiter(header_line: str) -> str:
    """Tab if the header contains one, otherwise comma."""
    return "\t" if "\t" in header_line else ","


def _read_text(source: Source) -> str:
    """Read a path or file-like object into text."""
    if isinstance(source, (str, PathLike)):
        path = Path(source)
        if not path.exists():
            raise ParseError(
                f"File not found: {path}. "
                f"Suggestion: Check the file path is correct and the file exists."
            )
        return path.read_text(encoding="utf-8-sig")

    content = source.read()
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig")
    return content


def _read_delimited(text: str, what: str) -> pd.DataFrame:
    """Parse delimited text with every cell kept as a string."""
    text = text.strip()
    lines = text.splitlines()
    if len(lines) < 2:
        raise ParseError(
            f"{what} file is empty after the header row. "
            f"Ensure the file contains a header and at least one data row."
        )
    delimiter = detect_delimiter(lines[0])
    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            dtype=str,
            keep_default_na=False,
            skipinitialspace=True,
        )
    except pd.errors.ParserError as e:
        raise ParseError(
            f"Failed to parse {what} file: {str(e)}. "
            f"Suggestion: Verify the file format is valid CSV/TSV."
        )
    df.columns = [str(c).strip().strip('"') for c in df.columns]
    return df


def _coerce_counts(values: pd.DataFrame) -> pd.DataFrame:
    """Convert string cells to floats; non-numeric cells become NaN."""
    return values.apply(lambda col: pd.to_numeric(col.str.strip(), errors="coerce"))


def validate_counts(numeric: pd.DataFrame) -> None:
    """
    Validate that values are raw counts.

    Raises:
        ParseError: on negative or non-integer values (normalized data is not supported)
    """
    values = numeric.values
    finite = values[~np.isnan(values)]
    if (finite < 0).any():
        negative_count = int((finite < 0).sum())
        raise ParseError(
            f"Count matrices cannot contain negative values. Found {negative_count} negative values. "
            f"Suggestion: Check if your data has been log-transformed or normalized. "
            f"Differential expression requires raw count data (non-negative integers).",
            details={"negative_count": negative_count},
        )
    off_integer = np.abs(finite - np.round(finite)) > INTEGER_TOLERANCE
    if off_integer.any():
        raise ParseError(
            f"Count matrix contains {int(off_integer.sum())} non-integer values. "
            f"Suggestion: Upload raw counts; normalized expression (TPM/FPKM/CPM) is not supported.",
            details={"non_integer_count": int(off_integer.sum())},
        )


def parse_count_matrix(source: Source) -> CountParseResult:
    """
    Parse a CSV/TSV count matrix.

    Layout: first column = gene identifier, header row = sample names,
    remaining cells = non-negative integer counts.

    Rules:
    1. Non-numeric cells are treated as absent and zero-filled when the row
       has at least one numeric value
    2. Rows with no numeric value at all are dropped
    3. Rows with an empty identifier are skipped
    4. Duplicate identifiers are summed per sample

    Raises:
        ParseError: if the file is empty, has no sample columns, or holds
            negative/non-integer values
    """
    df = _read_delimited(_read_text(source), "Count matrix")
    if len(df.columns) < 2:
        raise ParseError(
            f"Count matrix must have at least 2 columns (genes + samples), but found {len(df.columns)}. "
            f"Suggestion: Check if your file uses the correct delimiter (comma for CSV, tab for TSV).",
            details={"columns": len(df.columns)},
        )

    gene_col = df.columns[0]
    genes = df[gene_col].fillna("").str.strip().str.strip('"')
    df = df.loc[genes != ""].copy()
    df.index = genes.loc[genes != ""]
    df = df.drop(columns=[gene_col])

    numeric = _coerce_counts(df)
    unparsable = numeric.isna().all(axis=1)
    dropped_rows = numeric.index[unparsable].tolist()
    numeric = numeric.loc[~unparsable]
    if numeric.empty:
        raise ParseError(
            "Count matrix contains no rows with numeric counts. "
            "Ensure it's a valid CSV/TSV with a gene identifier column and sample columns."
        )

    validate_counts(numeric)
    counts = numeric.fillna(0).round().astype(np.int64)

    warnings = []
    if dropped_rows:
        warnings.append(f"{len(dropped_rows)} rows without any numeric count dropped")
        logger.warning(f"Dropped {len(dropped_rows)} unparsable count rows")

    if counts.index.duplicated().any():
        n_dups = int(counts.index.duplicated().sum())
        counts = counts.groupby(level=0, sort=False).sum()
        warnings.append(f"{n_dups} duplicate gene identifiers summed")

    counts.index.name = "gene"
    identifier_type = detect_identifier_type(counts.index.tolist())
    logger.info(
        f"Parsed count matrix: {counts.shape[0]} genes × {counts.shape[1]} samples, "
        f"identifiers look like {identifier_type.value}"
    )
    return CountParseResult(
        matrix=CountMatrix(counts, identifier_type),
        warnings=warnings,
        dropped_rows=dropped_rows,
    )


def _find_column(headers: List[str], token: str) -> Optional[int]:
    for i, header in enumerate(headers):
        if token in header.strip().lower():
            return i
    return None


def _metadata_from_frame(df: pd.DataFrame) -> SampleMetadata:
    headers = [str(c) for c in df.columns]
    sample_idx = _find_column(headers, "sample")
    condition_idx = _find_column(headers, "condition")
    if sample_idx is None or condition_idx is None:
        raise ParseError(
            f"Metadata file must contain 'sample' and 'condition' headers. "
            f"Found columns: {', '.join(headers[:10])}.",
            details={"available": headers},
        )

    sample_conditions = {}
    for _, row in df.iterrows():
        sample = str(row.iloc[sample_idx]).strip().strip('"')
        condition = str(row.iloc[condition_idx]).strip().strip('"')
        if sample and condition and sample.lower() != "nan" and condition.lower() != "nan":
            sample_conditions[sample] = condition

    if not sample_conditions:
        raise ParseError(
            "Failed to parse metadata. Ensure it's a valid file with 'sample' and "
            "'condition' columns and at least one data row."
        )
    return SampleMetadata(sample_conditions)


def parse_metadata(source: Source, filename: Optional[str] = None) -> SampleMetadata:
    """
    Parse sample metadata from CSV/TSV or Excel (first sheet).

    Columns are located by case-insensitive substring match on "sample" and
    "condition". Rows with a blank sample or condition are skipped.

    Args:
        source: Path or file-like object
        filename: Name used to pick the format when ``source`` is file-like

    Raises:
        ParseError: on missing columns or no usable rows
    """
    name = filename or (str(source) if isinstance(source, (str, PathLike)) else "")
    if name.lower().endswith(EXCEL_SUFFIXES):
        try:
            df = pd.read_excel(source, sheet_name=0, dtype=str)
        except FileNotFoundError:
            raise ParseError(f"File not found: {name}.")
        except (ValueError, ImportError) as e:
            raise ParseError(
                f"Error reading Excel metadata: {str(e)}. "
                f"Suggestion: Ensure the file is a valid Excel workbook."
            )
        if df.empty:
            raise ParseError("Metadata sheet is empty after the header row.")
        return _metadata_from_frame(df)

    df = _read_delimited(_read_text(source), "Metadata")
    return _metadata_from_frame(df)
