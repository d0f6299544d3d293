import pytest

from forest_pulse.columns import (
    CanonicalField,
    resolve_columns,
    validate_header_map,
)


def test_resolves_typical_headers():
    row = {
        "State": "Pará",
        "Year": 2020,
        "Deforestation_ha": 10.0,
        "Reforestation_ha": 5.0,
    }
    mapping = resolve_columns(row)
    assert mapping.region.key == "State"
    assert mapping.year.key == "Year"
    assert mapping.loss.key == "Deforestation_ha"
    assert mapping.gain.key == "Reforestation_ha"
    assert mapping.describe() == {
        "region": "State",
        "year": "Year",
        "loss": "Deforestation_ha",
        "gain": "Reforestation_ha",
    }


def test_substring_match_tolerates_prefixes_and_suffixes():
    row = {"admin_district": "Acre", "obs_date": "2019-01-01", "tree_loss_ha": 1, "tree_gain_ha": 2}
    mapping = resolve_columns(row)
    assert mapping.region.key == "admin_district"
    assert mapping.year.key == "obs_date"
    assert mapping.loss.key == "tree_loss_ha"
    assert mapping.gain.key == "tree_gain_ha"


def test_first_key_in_row_order_wins():
    # "loss_area" contains the region candidate "area" and precedes "region"
    row = {"loss_area": 3.0, "region": "Rondônia"}
    mapping = resolve_columns(row)
    assert mapping.region.key == "loss_area"
    assert mapping.loss.key == "loss_area"


def test_unmatched_fields_are_unresolved():
    mapping = resolve_columns({"foo": 1, "bar": "x"})
    for resolution in (mapping.region, mapping.year, mapping.loss, mapping.gain):
        assert not resolution.resolved
        assert resolution.key is None
    assert mapping.resolved_keys() == []


def test_header_map_takes_precedence_and_is_case_insensitive():
    row = {"Provincia": "Pará", "Ano": 2020, "Area_loss": 3.0, "gain": 4.0}
    mapping = resolve_columns(row, {"provincia": "region", "ANO": "Year"})
    assert mapping.region.key == "Provincia"
    assert mapping.year.key == "Ano"
    # Unmapped fields still use substring matching
    assert mapping.loss.key == "Area_loss"
    assert mapping.gain.key == "gain"


def test_validate_header_map_rejects_unknown_target():
    with pytest.raises(ValueError, match="Unknown header-map target"):
        validate_header_map({"col": "hectares"})


def test_validate_header_map_rejects_duplicate_targets():
    with pytest.raises(ValueError, match="Conflicting header-map targets"):
        validate_header_map({"a": "loss", "b": "LOSS"})


def test_validate_header_map_lookup():
    lookup = validate_header_map({" Estado ": "region"})
    assert lookup == {"estado": CanonicalField.REGION}
    assert validate_header_map(None) == {}
