"""
Row normalization: one loosely-typed row -> one CanonicalRecord.

normalize_row() is total. Any row shape produces a record; fields that cannot
be recovered degrade to "" / 0 and the record is dropped later by the dataset
cleaner rather than here.
"""

from __future__ import annotations

import math
import numbers
import re
import uuid
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional

import pandas as pd

from .columns import ColumnMapping, resolve_columns

MIN_YEAR = 1900

RECORD_COLUMNS = ["id", "region", "year", "loss_amount", "gain_amount", "net_change"]

_NUMERIC_LITERAL = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_LEADING_FLOAT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
# Thousands separators like "2,403.72"
_THOUSANDS_SEP = re.compile(r"(?<=\d),(?=\d{3}(\D|$))")
_YEAR_TOKEN = re.compile(r"\b(19|20)\d{2}\b")


def current_year() -> int:
    return datetime.now().year


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class CanonicalRecord:
    """One normalized region-year observation (hectares)."""

    region: str
    year: int
    loss_amount: float
    gain_amount: float
    id: str = field(default_factory=_new_id)

    @property
    def net_change(self) -> float:
        return self.gain_amount - self.loss_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "region": self.region,
            "year": self.year,
            "loss_amount": self.loss_amount,
            "gain_amount": self.gain_amount,
            "net_change": self.net_change,
        }


def _is_real_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def is_numeric(value: Any) -> bool:
    """True for finite real numbers and for strings holding a plain numeric literal."""
    if _is_real_number(value):
        return math.isfinite(float(value))
    if isinstance(value, str):
        return bool(_NUMERIC_LITERAL.match(value.strip()))
    return False


def parse_amount(value: Any) -> float:
    """
    Parse a hectare amount permissively.

    Numbers pass through; strings are read up to the first non-numeric
    character ("120.5 ha" -> 120.5). Anything unparseable is 0.0.
    """
    if _is_real_number(value):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    if isinstance(value, str):
        text = _THOUSANDS_SEP.sub("", value.strip())
        match = _LEADING_FLOAT.match(text)
        if match:
            number = float(match.group(0))
            return number if math.isfinite(number) else 0.0
    return 0.0


def parse_year(value: Any) -> int:
    """
    Parse a calendar year from a number, a date string, or free text.

    Order: numeric -> floor; date/datetime values (spreadsheet date cells
    arrive as pd.Timestamp) or full date parse -> its year; embedded
    19xx/20xx token; otherwise 0.
    """
    if isinstance(value, (datetime, date)):
        # pd.NaT is a datetime subclass
        return 0 if pd.isna(value) else int(value.year)
    if _is_real_number(value):
        number = float(value)
        return math.floor(number) if math.isfinite(number) else 0
    if not isinstance(value, str):
        return 0

    text = value.strip()
    if not text:
        return 0
    if is_numeric(text):
        number = float(text)
        return math.floor(number) if math.isfinite(number) else 0

    parsed = pd.NaT
    # pandas resolves these against the clock
    if text.lower() not in ("now", "today"):
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", UserWarning)
                parsed = pd.to_datetime(text, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            parsed = pd.NaT
    if parsed is not None and not pd.isna(parsed):
        return int(parsed.year)

    match = _YEAR_TOKEN.search(text)
    if match:
        return int(match.group(0))
    return 0


def _fallback_region(row: Mapping[Any, Any]) -> str:
    for value in row.values():
        if isinstance(value, str) and not is_numeric(value):
            return value.strip()
    return ""


def _fallback_year(row: Mapping[Any, Any], reference_year: int) -> tuple[int, Optional[Any]]:
    for key, value in row.items():
        if is_numeric(value):
            number = float(value)
            if MIN_YEAR <= number <= reference_year:
                return math.floor(number), key
    return 0, None


def _first_unclaimed_numeric(row: Mapping[Any, Any], claimed: set) -> Optional[Any]:
    for key, value in row.items():
        if key in claimed:
            continue
        if is_numeric(value):
            return key
    return None


def normalize_row(
    row: Mapping[Any, Any],
    mapping: Optional[ColumnMapping] = None,
    reference_year: Optional[int] = None,
) -> CanonicalRecord:
    """
    Convert one raw row into a CanonicalRecord. Never raises.

    Args:
        row: key -> scalar mapping from a decoder
        mapping: column resolution for this row; resolved from the row when None
        reference_year: upper bound used by the positional year fallback
    """
    if not isinstance(row, Mapping):
        row = {}
    if mapping is None:
        mapping = resolve_columns(row)
    if reference_year is None:
        reference_year = current_year()

    # Keys already spoken for cannot be reused by positional fallbacks
    claimed = set(mapping.resolved_keys())

    if mapping.region.resolved:
        raw_region = row.get(mapping.region.key)
        region = "" if raw_region is None else str(raw_region).strip()
    else:
        region = _fallback_region(row)

    if mapping.year.resolved:
        year = parse_year(row.get(mapping.year.key))
    else:
        year, year_key = _fallback_year(row, reference_year)
        if year_key is not None:
            claimed.add(year_key)

    if mapping.loss.resolved:
        loss = parse_amount(row.get(mapping.loss.key))
    else:
        loss_key = _first_unclaimed_numeric(row, claimed)
        loss = parse_amount(row[loss_key]) if loss_key is not None else 0.0
        if loss_key is not None:
            claimed.add(loss_key)

    if mapping.gain.resolved:
        gain = parse_amount(row.get(mapping.gain.key))
    else:
        gain_key = _first_unclaimed_numeric(row, claimed)
        gain = parse_amount(row[gain_key]) if gain_key is not None else 0.0

    return CanonicalRecord(
        region=region, year=int(year), loss_amount=loss, gain_amount=gain
    )


def records_to_frame(records: Iterable[CanonicalRecord]) -> pd.DataFrame:
    """Build the canonical record frame; net_change is derived per record."""
    df = pd.DataFrame([r.to_dict() for r in records], columns=RECORD_COLUMNS)
    return df.astype(
        {
            "id": "object",
            "region": "object",
            "year": "int64",
            "loss_amount": "float64",
            "gain_amount": "float64",
            "net_change": "float64",
        }
    )


def frame_to_records(df: pd.DataFrame) -> list[CanonicalRecord]:
    """Inverse of records_to_frame; net_change is re-derived, not read."""
    return [
        CanonicalRecord(
            id=str(row.id),
            region=str(row.region),
            year=int(row.year),
            loss_amount=float(row.loss_amount),
            gain_amount=float(row.gain_amount),
        )
        for row in df.itertuples(index=False)
    ]
