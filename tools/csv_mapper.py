import io
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import polars as pl
from loguru import logger

from tools.errors import EmptyInputError, MalformedInputError, UnmappedFieldError

REQUIRED_FIELDS = ["first_name", "last_name", "company", "title", "email"]
OPTIONAL_FIELDS = ["linkedin_url"]
SAMPLE_ROW_LIMIT = 3
SEPARATORS = [",", ";", "\t", "|"]
UNMAPPED = ("", "none")


@dataclass
class CsvPreview:
    headers: List[str]
    row_count: int
    sample_rows: List[Dict[str, Any]]
    suggested_mapping: Dict[str, str] = field(default_factory=dict)


def detect_separator(text: str) -> str:
    """Pick the delimiter that occurs most across the first few non-blank lines."""
    lines = [ln for ln in text[:8192].splitlines()[:5] if ln.strip()]
    if not lines:
        return ","
    scores = {}
    for sep in SEPARATORS:
        counts = [line.count(sep) for line in lines]
        scores[sep] = (sum(counts), max(counts))
    best = max(SEPARATORS, key=lambda sep: scores[sep])
    return best if scores[best][0] > 0 else ","


def _decode(raw: bytes) -> str:
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedInputError(f"File is not valid UTF-8 text: {e}") from e
    if "\x00" in text:
        raise MalformedInputError("File contains binary data")
    if not text.strip():
        raise EmptyInputError("CSV file is empty")
    return text


def load_frame(raw: bytes, has_headers: bool = True) -> pl.DataFrame:
    """Parse uploaded bytes into an all-string frame."""
    text = _decode(raw)
    try:
        df = pl.read_csv(
            io.BytesIO(text.encode("utf-8")),
            separator=detect_separator(text),
            has_header=has_headers,
            infer_schema_length=0,
        )
    except pl.exceptions.NoDataError as e:
        raise EmptyInputError("CSV file is empty") from e
    except pl.exceptions.PolarsError as e:
        raise MalformedInputError(f"Unable to parse CSV: {e}") from e

    if not has_headers:
        df = df.rename({name: f"Column {i}" for i, name in enumerate(df.columns, start=1)})
    if df.height == 0:
        raise EmptyInputError("CSV file has no data rows")
    return df


def preview_csv(raw: bytes, has_headers: bool = True) -> CsvPreview:
    df = load_frame(raw, has_headers=has_headers)
    headers = list(df.columns)
    logger.info(f"CSV preview: {df.height} rows, headers={headers}")
    return CsvPreview(
        headers=headers,
        row_count=df.height,
        sample_rows=df.head(SAMPLE_ROW_LIMIT).to_dicts(),
        suggested_mapping=propose_mapping(headers),
    )


def _field_for_header(header: str) -> Optional[str]:
    lower = header.lower()
    if "first" in lower and "name" in lower:
        return "first_name"
    elif "last" in lower and "name" in lower:
        return "last_name"
    elif "company" in lower or "organization" in lower:
        return "company"
    elif "title" in lower or "position" in lower:
        return "title"
    elif "email" in lower:
        return "email"
    elif "linkedin" in lower:
        return "linkedin_url"
    return None


def propose_mapping(headers: List[str]) -> Dict[str, str]:
    """Suggest a header for each logical field; the first matching header wins."""
    mapping: Dict[str, str] = {}
    for header in headers:
        target = _field_for_header(header)
        if target and target not in mapping:
            mapping[target] = header
    return mapping


def validate_mapping(mapping: Dict[str, Optional[str]], headers: List[str]) -> Dict[str, str]:
    """Check every required field points at a real header; return the usable mapping."""
    missing = [f for f in REQUIRED_FIELDS if mapping.get(f) not in headers]
    if missing:
        raise UnmappedFieldError(missing)

    resolved = {f: mapping[f] for f in REQUIRED_FIELDS}
    for f in OPTIONAL_FIELDS:
        column = mapping.get(f)
        if column is None or str(column).strip().lower() in UNMAPPED:
            continue
        if column not in headers:
            raise UnmappedFieldError([f])
        resolved[f] = column
    return resolved


def read_rows(raw: bytes, mapping: Dict[str, Optional[str]], start_row: int = 1,
              max_rows: Optional[int] = None, has_headers: bool = True) -> List[Dict[str, str]]:
    """
    Apply a confirmed mapping to an uploaded file.

    Args:
        raw: File bytes
        mapping: Logical field -> header name
        start_row: 1-based first data row to keep
        max_rows: Keep at most this many rows (None or <= 0 keeps all)
        has_headers: Whether the first line holds column names

    Returns:
        Rows keyed by logical field, in file order
    """
    df = load_frame(raw, has_headers=has_headers)
    resolved = validate_mapping(mapping, list(df.columns))

    start_index = max(start_row, 1) - 1
    if start_index:
        df = df.slice(start_index)
    if max_rows and max_rows > 0:
        df = df.head(max_rows)
    if df.height == 0:
        raise EmptyInputError("Selected row range contains no rows")

    rows = []
    for record in df.select(list(dict.fromkeys(resolved.values()))).to_dicts():
        rows.append({
            logical: (record.get(column) or "").strip()
            for logical, column in resolved.items()
        })
    return rows
