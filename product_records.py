#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Product records: spreadsheet ingestion, column normalization and CSV export.

Rows are read with pandas (CSV, or the first sheet of an Excel workbook) and
mapped onto canonical records that always carry an ``sku`` key and a ``name``.
Every other column is passed through untouched and in its original order.
"""

import io
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import pandas as pd

from seo_utils import cell_to_str, get_logger

logger = get_logger("records")

KEY_FIELD = "sku"
NAME_FIELD = "name"
KEY_ALIASES = {"sku", "skus", "article number"}
NAME_ALIASES = {"name", "product name"}

BILINGUAL_COLUMNS = ("Meta Title EN", "Meta Description EN", "Meta Title AR", "Meta Description AR")
ENGLISH_COLUMNS = ("Meta Title", "Meta Description")
GENERATED_COLUMNS = frozenset(BILINGUAL_COLUMNS + ENGLISH_COLUMNS)

EXPORT_PREFIX = "processed_"

Source = Union[str, os.PathLike, bytes, BinaryIO]

# ---------- Errors ----------
class RecordError(Exception):
    """Base class for anything that stops a file from becoming records."""

class ParseError(RecordError):
    """The file could not be read as a spreadsheet."""

class RecordValidationError(RecordError):
    """The file was read but does not have the shape we need."""

class MissingColumns(RecordValidationError):
    pass

class MissingRequiredValue(RecordValidationError):
    pass

# ---------- Records ----------
@dataclass
class Record:
    """One canonical product row. ``fields`` keeps every column in file order."""
    fields: Dict[str, str]

    @property
    def key(self) -> str:
        return self.fields.get(KEY_FIELD, "")

    @property
    def name(self) -> str:
        return self.fields.get(NAME_FIELD, "")

    @property
    def extra(self) -> Dict[str, str]:
        return {k: v for k, v in self.fields.items() if k not in (KEY_FIELD, NAME_FIELD)}

    def to_dict(self) -> Dict[str, str]:
        return dict(self.fields)

    @classmethod
    def from_dict(cls, row: Mapping[str, Any]) -> "Record":
        return cls({str(k): cell_to_str(v) for k, v in row.items()})


@dataclass
class ProcessedRecord:
    """A record plus its generated meta fields."""
    record: Record
    generated: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.record.key

    def to_row(self) -> Dict[str, str]:
        row = dict(self.record.fields)
        row.update(self.generated)
        return row

    def with_generated(self, values: Mapping[str, str]) -> "ProcessedRecord":
        generated = dict(self.generated)
        generated.update(values)
        return ProcessedRecord(self.record, generated)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProcessedRecord":
        fields = {str(k): cell_to_str(v) for k, v in row.items() if k not in GENERATED_COLUMNS}
        generated = {k: cell_to_str(v) for k, v in row.items() if k in GENERATED_COLUMNS}
        return cls(Record(fields), generated)


def strip_generated(record: Union[Record, ProcessedRecord]) -> Dict[str, str]:
    """Payload for the text service: the record without any generated columns."""
    base = record.record if isinstance(record, ProcessedRecord) else record
    return {k: v for k, v in base.fields.items() if k not in GENERATED_COLUMNS}

# ---------- Normalization ----------
def canonical_column(column: Any) -> str:
    """Map a header onto the canonical key/name field, or keep it as-is."""
    original = str(column)
    lowered = original.lower().strip()
    if lowered in KEY_ALIASES:
        return KEY_FIELD
    if lowered in NAME_ALIASES:
        return NAME_FIELD
    return original

def normalize_rows(rows: Iterable[Mapping[str, Any]]) -> List[Record]:
    """
    Normalize raw rows into records.

    Only the first row is validated: it must have both canonical columns and a
    value in each. Later rows with an empty key are kept; they simply never match.
    """
    records = []
    for row in rows:
        fields: Dict[str, str] = {}
        for column, value in row.items():
            fields[canonical_column(column)] = cell_to_str(value)
        records.append(Record(fields))

    if records:
        first = records[0].fields
        if KEY_FIELD not in first or NAME_FIELD not in first:
            raise MissingColumns(
                "Upload failed: Your file must contain 'sku' (or 'skus', 'Article Number') and 'name' columns.")
        if not first[KEY_FIELD]:
            raise MissingRequiredValue(
                "Data validation failed: The first product is missing a value in the 'sku' column. "
                "SKUs are required for all products.")
        if not first[NAME_FIELD]:
            raise MissingRequiredValue(
                "Data validation failed: The first product is missing a value in the 'name' column. "
                "Product names are required.")
    return records

# ---------- I/O Functions ----------
def _as_buffer(source: Source) -> Union[str, os.PathLike, BinaryIO]:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(source)
    return source

def _table_rows(table: pd.DataFrame) -> List[Dict[str, Any]]:
    """
    Turn a header-less frame into dict rows keyed by its first row.

    Columns with a blank header and no values (trailing delimiters) are dropped.
    """
    if table.empty:
        return []
    header = [cell_to_str(c) for c in table.iloc[0]]
    body = table.iloc[1:]
    keep = [i for i, name in enumerate(header)
            if name.strip() or any(cell_to_str(v).strip() for v in body.iloc[:, i])]
    columns = [header[i] if header[i].strip() else f"Unnamed: {i}" for i in keep]
    return [dict(zip(columns, (row[i] for i in keep))) for row in body.itertuples(index=False, name=None)]

def _read_csv_table(buf) -> pd.DataFrame:
    # Header is read as data so pandas never infers an index from long rows.
    overflow: List[List[str]] = []

    def _note_long_row(cells: List[str]) -> List[str]:
        overflow.append(cells)
        return cells

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", pd.errors.ParserWarning)
        table = pd.read_csv(buf, header=None, dtype=str, keep_default_na=False,
                            skip_blank_lines=True, encoding="utf-8-sig",
                            engine="python", on_bad_lines=_note_long_row)

    width = table.shape[1]
    for cells in overflow:
        if any(str(c).strip() for c in cells[width:]):
            raise ParseError(f"Error parsing file: Too many fields: expected {width} fields "
                             f"but parsed {len(cells)}.")
    return table

def read_rows(source: Source, file_name: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read CSV or the first sheet of an .xlsx workbook into a list of dict rows."""
    name = file_name or (str(source) if isinstance(source, (str, os.PathLike)) else "")
    suf = Path(name).suffix.lower()
    if suf not in {".csv", ".xlsx"}:
        raise ParseError("Unsupported file type. Please upload a CSV or XLSX file.")
    buf = _as_buffer(source)
    try:
        if suf == ".csv":
            table = _read_csv_table(buf)
        else:
            table = pd.read_excel(buf, sheet_name=0, header=None, dtype=str, engine="openpyxl")
    except ParseError:
        raise
    except Exception as e:
        # openpyxl, zipfile and the tokenizer each raise their own types
        raise ParseError(f"Error parsing file: {e}") from e

    rows = _table_rows(table)
    logger.info(f"Loaded {len(rows)} rows from {name or 'upload'}")
    return rows

def parse_and_normalize(source: Source, file_name: Optional[str] = None) -> List[Record]:
    """Read a spreadsheet and return canonical records."""
    return normalize_rows(read_rows(source, file_name))

def export_filename(file_name: Optional[str]) -> str:
    """'catalog.xlsx' -> 'processed_catalog.csv'."""
    base = (file_name or "").split(".")[0] or "products"
    return f"{EXPORT_PREFIX}{base}.csv"

def export_csv(processed: Sequence[ProcessedRecord], path: Optional[Union[str, os.PathLike]] = None) -> str:
    """
    Write processed records as CSV, one row per record in the given order.

    Returns the CSV text. When ``path`` is given the file is written too.
    """
    if not processed:
        raise ValueError("No processed data to download.")
    df = pd.DataFrame([p.to_row() for p in processed]).fillna("")
    text = df.to_csv(index=False)
    if path is not None:
        df.to_csv(path, index=False, encoding="utf-8-sig")
        logger.info(f"Exported {len(df)} rows -> {path}")
    return text
