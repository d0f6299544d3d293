import pandas as pd
import pytest

from forest_pulse.main import FilterCriteria, clean_dataset, filter_records, ingest_rows
from forest_pulse.normalize import CanonicalRecord, records_to_frame


def _frame(rows):
    return records_to_frame(
        [
            CanonicalRecord(region=r, year=y, loss_amount=loss, gain_amount=gain)
            for r, y, loss, gain in rows
        ]
    )


@pytest.fixture
def sample_df():
    return _frame(
        [
            ("Pará", 2018, 100.0, 50.0),
            ("Acre", 2018, 20.0, 5.0),
            ("Pará", 2019, 80.0, 70.0),
            ("Acre", 2020, 10.0, 15.0),
        ]
    )


def test_clean_drops_invalid_rows_and_clamps_amounts():
    df = _frame(
        [
            ("Pará", 2019, -5.0, 10.0),
            ("", 2019, 1.0, 1.0),
            ("   ", 2019, 1.0, 1.0),
            ("Acre", 1900, 1.0, 1.0),
            ("Acre", 0, 1.0, 1.0),
            ("Acre", 2031, 1.0, 1.0),
            ("Acre", 2024, 2.0, 1.0),
        ]
    )
    cleaned = clean_dataset(df, reference_year=2024)
    assert cleaned["region"].tolist() == ["Pará", "Acre"]
    assert cleaned["year"].tolist() == [2019, 2024]
    assert cleaned.loc[0, "loss_amount"] == 0.0
    assert cleaned.loc[0, "net_change"] == 10.0
    assert (cleaned["loss_amount"] >= 0).all()
    assert (cleaned["gain_amount"] >= 0).all()
    assert list(cleaned.index) == [0, 1]


def test_clean_is_idempotent(sample_df):
    once = clean_dataset(sample_df, reference_year=2024)
    twice = clean_dataset(once, reference_year=2024)
    pd.testing.assert_frame_equal(once, twice)


def test_clean_is_idempotent_on_dirty_input():
    dirty = _frame(
        [
            ("Pará", 2019, -5.0, 10.0),
            ("", 2019, 1.0, 1.0),
            ("   ", 2019, 1.0, 1.0),
            ("Acre", 1900, 1.0, 1.0),
            ("Acre", 0, 1.0, 1.0),
            ("Acre", 2031, 1.0, 1.0),
            ("Acre", 2024, 2.0, -3.0),
        ]
    )
    once = clean_dataset(dirty, reference_year=2024)
    twice = clean_dataset(once, reference_year=2024)
    pd.testing.assert_frame_equal(once, twice)


def test_ingested_net_change_matches_gain_minus_loss():
    rows = [
        {"region": "Pará", "year": "2019", "loss": "120.5 ha", "gain": "40"},
        {"region": "Acre", "year": 2020, "loss": -7, "gain": "1,250.25"},
        {"region": "Amapá", "year": "2021-03-01", "loss": "n/a", "gain": 3.5},
        {"state": "Rondônia", "period": 2018, "deforestation": 9, "reforestation": 9},
    ]
    df = ingest_rows(rows, reference_year=2024)
    assert len(df) == 4
    assert (df["net_change"] == df["gain_amount"] - df["loss_amount"]).all()
    assert df.loc[df["region"] == "Acre", "net_change"].tolist() == [1250.25]


def test_clean_uses_env_reference_year(sample_df, monkeypatch):
    monkeypatch.setenv("FOREST_PULSE_REFERENCE_YEAR", "2018")
    cleaned = clean_dataset(sample_df)
    assert cleaned["year"].unique().tolist() == [2018]


def test_clean_requires_record_columns():
    with pytest.raises(ValueError, match="Missing required columns"):
        clean_dataset(pd.DataFrame({"region": ["x"]}), reference_year=2024)


def test_filter_without_criteria_returns_input(sample_df):
    assert filter_records(sample_df, None) is sample_df
    assert filter_records(sample_df, FilterCriteria()) is sample_df


def test_filter_by_region_is_exact(sample_df):
    out = filter_records(sample_df, FilterCriteria(region="Pará"))
    assert out["region"].unique().tolist() == ["Pará"]
    assert filter_records(sample_df, FilterCriteria(region="pará")).empty


def test_filter_by_year_and_range(sample_df):
    assert filter_records(sample_df, FilterCriteria(year=2018))["year"].tolist() == [2018, 2018]
    ranged = filter_records(sample_df, FilterCriteria(year_range=(2019, 2020)))
    assert ranged["year"].tolist() == [2019, 2020]


def test_filter_criteria_are_conjunctive(sample_df):
    out = filter_records(
        sample_df, FilterCriteria(region="Acre", year_range=(2019, 2020))
    )
    assert len(out) == 1
    assert out.iloc[0]["year"] == 2020


def test_inverted_range_yields_empty(sample_df):
    assert filter_records(sample_df, FilterCriteria(year_range=(2020, 2018))).empty


def test_filter_returns_independent_copy(sample_df):
    filtered = filter_records(sample_df, FilterCriteria(region="Pará"))
    filtered["new_col"] = 1
    filtered.loc[filtered.index[0], "loss_amount"] = -1.0
    assert "new_col" not in sample_df.columns
    assert sample_df.loc[0, "loss_amount"] == 100.0
