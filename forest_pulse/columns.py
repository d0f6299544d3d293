"""
Column resolution for loosely-structured forest-change rows.

Input files come from arbitrary third-party spreadsheets, so there is no
header contract. Each canonical field is matched against an ordered list of
candidate substrings; a key matches when its lowercased form *contains* a
candidate (so "forest_loss_ha" resolves to loss). The first matching key in
row iteration order wins.

Substring matching will occasionally claim an unrelated column. That is the
accepted cost of tolerating prefixed and suffixed header variants.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class CanonicalField(Enum):
    REGION = "region"
    YEAR = "year"
    LOSS = "loss"
    GAIN = "gain"


FIELD_CANDIDATES: dict[CanonicalField, tuple[str, ...]] = {
    CanonicalField.REGION: (
        "state",
        "region",
        "area",
        "province",
        "district",
        "location",
        "territory",
    ),
    CanonicalField.YEAR: ("year", "date", "period", "time", "yr"),
    CanonicalField.LOSS: (
        "deforestation",
        "forest_loss",
        "treeloss",
        "tree_loss",
        "loss",
        "forest_decrease",
        "logging",
    ),
    CanonicalField.GAIN: (
        "reforestation",
        "forest_gain",
        "treegain",
        "tree_gain",
        "gain",
        "forest_increase",
        "planting",
    ),
}


@dataclass(frozen=True)
class FieldResolution:
    """Outcome of resolving one canonical field: resolved to `key`, or unresolved."""

    field: CanonicalField
    key: Optional[Any] = None

    @property
    def resolved(self) -> bool:
        return self.key is not None


@dataclass(frozen=True)
class ColumnMapping:
    region: FieldResolution
    year: FieldResolution
    loss: FieldResolution
    gain: FieldResolution

    def resolved_keys(self) -> list[Any]:
        """Original row keys claimed by resolved fields, in field order."""
        return [
            r.key for r in (self.region, self.year, self.loss, self.gain) if r.resolved
        ]

    def describe(self) -> dict[str, Optional[str]]:
        return {
            r.field.value: (str(r.key) if r.resolved else None)
            for r in (self.region, self.year, self.loss, self.gain)
        }


def _normalize_key(key: Any) -> str:
    return str(key).strip().lower()


def validate_header_map(header_map: Optional[Mapping[str, str]]) -> dict[str, CanonicalField]:
    """
    Validate a user-provided mapping of input column -> canonical field name.

    Returns a lookup keyed by the normalized (trimmed, lowercased) column name.

    Raises:
        ValueError: on an unknown target field or when two columns map to the
            same field.
    """
    if not header_map:
        return {}

    valid_targets = {f.value: f for f in CanonicalField}
    lookup: dict[str, CanonicalField] = {}
    target_to_keys: dict[CanonicalField, list[str]] = {}
    for column, target in header_map.items():
        target_norm = str(target).strip().lower()
        if target_norm not in valid_targets:
            raise ValueError(
                f"Unknown header-map target '{target}' for column '{column}'. "
                f"Expected one of: {', '.join(valid_targets)}"
            )
        field = valid_targets[target_norm]
        lookup[_normalize_key(column)] = field
        target_to_keys.setdefault(field, []).append(str(column))

    duplicates = {f: keys for f, keys in target_to_keys.items() if len(keys) > 1}
    if duplicates:
        parts = [f"field '{f.value}' specified by columns {keys}" for f, keys in duplicates.items()]
        raise ValueError(
            "Conflicting header-map targets (multiple columns map to the same field): "
            + "; ".join(parts)
        )
    return lookup


def _match_candidates(keys: list[Any], candidates: tuple[str, ...]) -> Optional[Any]:
    for key in keys:
        normalized = _normalize_key(key)
        if any(candidate in normalized for candidate in candidates):
            return key
    return None


def resolve_columns(
    row: Mapping[Any, Any], header_map: Optional[Mapping[str, str]] = None
) -> ColumnMapping:
    """
    Determine which key of `row` holds each canonical field.

    Explicit `header_map` entries take precedence over substring matching;
    fields they do not cover fall back to the candidate lists.
    """
    keys = list(row.keys())
    overrides = validate_header_map(header_map)

    explicit: dict[CanonicalField, Any] = {}
    if overrides:
        for key in keys:
            field = overrides.get(_normalize_key(key))
            if field is not None and field not in explicit:
                explicit[field] = key

    resolutions: dict[CanonicalField, FieldResolution] = {}
    for field, candidates in FIELD_CANDIDATES.items():
        if field in explicit:
            key = explicit[field]
        else:
            key = _match_candidates(keys, candidates)
        resolutions[field] = FieldResolution(field=field, key=key)

    return ColumnMapping(
        region=resolutions[CanonicalField.REGION],
        year=resolutions[CanonicalField.YEAR],
        loss=resolutions[CanonicalField.LOSS],
        gain=resolutions[CanonicalField.GAIN],
    )
