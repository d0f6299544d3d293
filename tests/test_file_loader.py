import json
from datetime import datetime
from pathlib import Path

import pandas as pd
import pytest

from forest_pulse.file_loader import (
    EmptyDatasetError,
    FileAccessError,
    ForestFileLoader,
    UnsupportedFormatError,
)
from forest_pulse.main import LoadParams, ingest_rows, load_forest_data
from forest_pulse.normalize import normalize_row


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_csv_rows_have_lowercased_headers(tmp_path: Path):
    path = _write(
        tmp_path,
        "data.csv",
        "State,Year,Deforestation,Reforestation\nPará,2019,100,40\nAcre,2020,,5\n",
    )
    rows = ForestFileLoader(path).read_rows()
    assert len(rows) == 2
    assert set(rows[0]) == {"state", "year", "deforestation", "reforestation"}
    assert rows[0]["state"] == "Pará"
    assert rows[1]["deforestation"] is None


def test_json_array_rows(tmp_path: Path):
    payload = [
        {"region": "Pará", "year": 2019, "loss": 1.5, "gain": 2},
        "not an object",
        {"region": "Acre", "year": 2020, "loss": 3, "gain": 0},
    ]
    path = _write(tmp_path, "data.json", json.dumps(payload))
    rows = ForestFileLoader(path).read_rows()
    assert [r["region"] for r in rows] == ["Pará", "Acre"]


def test_json_non_array_root_yields_no_rows(tmp_path: Path):
    path = _write(tmp_path, "data.json", json.dumps({"region": "Pará"}))
    assert ForestFileLoader(path).read_rows() == []


def test_invalid_json_raises(tmp_path: Path):
    path = _write(tmp_path, "data.json", "{not json")
    with pytest.raises(FileAccessError, match="Invalid JSON format"):
        ForestFileLoader(path).read_rows()


@pytest.mark.parametrize(
    "text",
    [
        "Region\tYear\tLoss\tGain\nPará\t2019\t10\t4\n",
        "Region;Year;Loss;Gain\nPará;2019;10;4\n",
        "Region,Year,Loss,Gain\nPará,2019,10,4\n",
    ],
)
def test_txt_delimiter_detection(tmp_path: Path, text: str):
    path = _write(tmp_path, "data.txt", text)
    rows = ForestFileLoader(path).read_rows()
    assert rows == [{"region": "Pará", "year": "2019", "loss": "10", "gain": "4"}]


def test_txt_short_lines_are_padded(tmp_path: Path):
    path = _write(tmp_path, "data.txt", "region;year;loss;gain\nAcre;2020\n\n")
    rows = ForestFileLoader(path).read_rows()
    assert rows == [{"region": "Acre", "year": "2020", "loss": None, "gain": None}]


def test_txt_quoted_fields_keep_embedded_delimiters(tmp_path: Path):
    path = _write(
        tmp_path,
        "data.txt",
        'State,Year,Loss,Gain\n"Mato Grosso, BR",2019,10,5\n',
    )
    rows = ForestFileLoader(path).read_rows()
    assert rows == [
        {"state": "Mato Grosso, BR", "year": "2019", "loss": "10", "gain": "5"}
    ]

    df = ingest_rows(rows, reference_year=2024)
    assert df["region"].tolist() == ["Mato Grosso, BR"]
    assert df["year"].tolist() == [2019]
    assert df["loss_amount"].tolist() == [10.0]
    assert df["gain_amount"].tolist() == [5.0]


def test_excel_first_sheet(tmp_path: Path):
    path = tmp_path / "data.xlsx"
    pd.DataFrame(
        {"State": ["Pará"], "Year": [2019], "Loss": [12.0], "Gain": [3.0]}
    ).to_excel(path, index=False)
    rows = ForestFileLoader(path).read_rows()
    assert rows[0]["state"] == "Pará"
    assert rows[0]["loss"] == 12.0


def test_excel_date_cells_resolve_to_their_year(tmp_path: Path):
    path = tmp_path / "data.xlsx"
    pd.DataFrame(
        {
            "State": ["Pará", "Acre"],
            "Date": [datetime(2019, 1, 1), datetime(2020, 6, 1)],
            "Loss": [12.0, 4.0],
            "Gain": [3.0, 1.0],
        }
    ).to_excel(path, index=False)

    rows = ForestFileLoader(path).read_rows()
    assert normalize_row(rows[0], reference_year=2024).year == 2019

    df = load_forest_data(LoadParams(input_path=path), reference_year=2024)
    assert df["region"].tolist() == ["Pará", "Acre"]
    assert df["year"].tolist() == [2019, 2020]


def test_unsupported_extension(tmp_path: Path):
    path = _write(tmp_path, "data.pdf", "x")
    with pytest.raises(UnsupportedFormatError) as excinfo:
        ForestFileLoader(path)
    assert str(excinfo.value) == (
        "Unsupported file format. Please upload a CSV, Excel, JSON, or TXT file."
    )


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        ForestFileLoader(tmp_path / "missing.csv")


def test_file_info(tmp_path: Path):
    path = _write(tmp_path, "data.csv", "region,year,loss,gain\nAcre,2020,1,2\n")
    with ForestFileLoader(path) as loader:
        info = loader.get_file_info()
    assert info["format"] == "csv"
    assert info["total_rows"] == 1
    assert info["columns"] == ["region", "year", "loss", "gain"]


def test_empty_csv_is_an_empty_dataset(tmp_path: Path):
    path = _write(tmp_path, "empty.csv", "")
    assert ForestFileLoader(path).read_rows() == []
    with pytest.raises(EmptyDatasetError, match="No data found"):
        load_forest_data(LoadParams(input_path=path), reference_year=2024)


def test_all_rows_invalid_is_an_empty_dataset(tmp_path: Path):
    path = _write(tmp_path, "data.csv", "region,year,loss,gain\n,2019,1,2\nAcre,1850,1,2\n")
    with pytest.raises(EmptyDatasetError):
        load_forest_data(LoadParams(input_path=path), reference_year=2024)
