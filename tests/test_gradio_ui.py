import os
import shutil
import time
from pathlib import Path

import matplotlib.pyplot as plt
import pytest

from forest_pulse import gradio_ui
from forest_pulse.gradio_ui import (
    ALL_REGIONS,
    ALL_YEARS,
    _load_dataset,
    _prune_old_runs,
    _run_dashboard,
    build_criteria,
    parse_header_map_text,
)
from forest_pulse.main import FilterCriteria

CSV_TEXT = (
    "region,year,loss,gain\n"
    "Pará,2018,100,50\n"
    "Pará,2019,80,70\n"
    "Acre,2019,10,30\n"
)


def create_run_dirs(root: Path, count: int, base_time: float = None):
    if base_time is None:
        base_time = time.time()
    dirs = []
    for i in range(count):
        d = root / f"run_{i:03d}"
        d.mkdir(parents=True, exist_ok=True)
        # set mtime spaced by i seconds so higher i -> newer
        mtime = base_time + i
        os.utime(d, (mtime, mtime))
        dirs.append(d)
    return dirs


def test_prune_keeps_newest(tmp_path):
    root = tmp_path / "gradio_runs"
    root.mkdir()
    dirs = create_run_dirs(root, 5)
    _prune_old_runs(root, keep=2)
    remaining = sorted([p.name for p in root.iterdir() if p.is_dir()])
    assert set(remaining) == {dirs[-1].name, dirs[-2].name}


def test_prune_prefers_timestamp_names(tmp_path):
    root = tmp_path / "gradio_runs"
    root.mkdir()
    names = ["20240101T000000", "20240301T000000", "20240201T000000"]
    for n in names:
        (root / n).mkdir()
    _prune_old_runs(root, keep=1)
    assert [p.name for p in root.iterdir()] == ["20240301T000000"]


def test_prune_env_var_override_and_disable(tmp_path, monkeypatch):
    root = tmp_path / "gradio_runs"
    root.mkdir()
    dirs = create_run_dirs(root, 6)
    monkeypatch.setenv("FOREST_PULSE_RETENTION_KEEP", "3")
    _prune_old_runs(root)
    remaining = sorted([p.name for p in root.iterdir() if p.is_dir()])
    assert set(remaining) == {d.name for d in dirs[-3:]}

    for p in list(root.iterdir()):
        shutil.rmtree(p)
    create_run_dirs(root, 4)
    monkeypatch.setenv("FOREST_PULSE_RETENTION_KEEP", "0")
    _prune_old_runs(root)
    assert len([p for p in root.iterdir() if p.is_dir()]) == 4


def test_parse_header_map_text():
    assert parse_header_map_text(None) == {}
    assert parse_header_map_text("Provincia:region\n Ano : year ,") == {
        "Provincia": "region",
        "Ano": "year",
    }
    with pytest.raises(ValueError, match="Invalid header map entry"):
        parse_header_map_text("Provincia")


def test_build_criteria():
    assert build_criteria(ALL_REGIONS, ALL_YEARS, None, None) == FilterCriteria()
    assert build_criteria("Acre", "2019", 2000, 2010) == FilterCriteria(region="Acre", year=2019)
    assert build_criteria(None, ALL_YEARS, 2018.0, 2019.0) == FilterCriteria(year_range=(2018, 2019))
    half_open = build_criteria(None, None, 2019, None)
    assert half_open.year_range[0] == 2019
    assert half_open.year_range[1] > 3000


def test_load_dataset_reports_errors(tmp_path):
    df, message, regions, years = _load_dataset(None, "", None)
    assert df is None
    assert regions == [ALL_REGIONS]

    bad = tmp_path / "data.pdf"
    bad.write_text("x", encoding="utf-8")
    df, message, _, _ = _load_dataset(str(bad), "", None)
    assert df is None
    assert message.startswith("Error: Unsupported file format")


def test_load_dataset_populates_choices(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    df, message, regions, years = _load_dataset(str(path), "", 2024)
    assert len(df) == 3
    assert "Loaded 3 records" in message
    assert regions == [ALL_REGIONS, "Acre", "Pará"]
    assert years == [ALL_YEARS, "2018", "2019"]


def test_run_dashboard_without_data():
    metrics_md, fig, bench, proj, report, zip_path = _run_dashboard(
        None, ALL_REGIONS, ALL_YEARS, None, None, "bar", "year"
    )
    assert metrics_md == "No data loaded."
    assert fig is None
    assert bench.empty and proj.empty
    assert zip_path is None


def test_run_dashboard_filters_and_exports(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(gradio_ui, "RUN_ROOT", tmp_path / "output_gradio")
    path = tmp_path / "data.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    df, _, _, _ = _load_dataset(str(path), "", 2024)

    metrics_md, fig, bench, proj, report, zip_path = _run_dashboard(
        df, "Pará", ALL_YEARS, None, None, "pie", "region", export=True
    )
    try:
        assert "| 2 |" in metrics_md
        assert "180.00 ha" in metrics_md
        assert "Best Performing Region" in bench["name"].tolist()
        assert not proj.empty
        assert "Projections:" in report
        assert zip_path is not None and Path(zip_path).exists()
    finally:
        plt.close(fig)

    # The retained frame is untouched by filtering
    assert len(df) == 3


def test_run_dashboard_does_not_accumulate_figures(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    df, _, _, _ = _load_dataset(str(path), "", 2024)

    open_before = len(plt.get_fignums())
    for chart in ["bar", "line", "pie"] * 9:
        _, fig, _, _, _, _ = _run_dashboard(
            df, ALL_REGIONS, ALL_YEARS, None, None, chart, "year"
        )
        assert fig is not None
    assert len(plt.get_fignums()) == open_before
