"""Gradio dashboard for the forest_pulse pipeline.

Upload a forest-change file, narrow it with region/year filters and inspect
totals, charts, benchmarks and projections. Every interaction recomputes from
the originally loaded dataset held in gr.State.
"""

import logging
import os
import shutil
import time
import zipfile
from pathlib import Path
from typing import Any, List, Optional, Tuple

import gradio as gr
import matplotlib.pyplot as plt  # backend is forced to Agg in forest_pulse.main
import pandas as pd

from .file_loader import ForestDataError
from .main import (
    AnalysisOutputs,
    ChartKind,
    Dimension,
    FilterCriteria,
    LoadParams,
    PlotParams,
    TransformParams,
    assemble_text_report,
    benchmarks_to_frame,
    build_run_identity,
    buckets_for,
    format_hectares,
    get_default_params,
    load_forest_data,
    projections_to_frame,
    render_chart,
    render_plots,
    summarize_and_analyze,
    transform_pipeline,
)

logger = logging.getLogger(__name__)

ALL_REGIONS = "All regions"
ALL_YEARS = "All years"
RETENTION_ENV = "FOREST_PULSE_RETENTION_KEEP"
RUN_ROOT = Path("output_gradio")


def _parse_optional_int(val: Any) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, str):
        val = val.strip()
        if val == "":
            return None
    try:
        # Gradio Number components hand back floats
        return int(float(val))
    except (TypeError, ValueError):
        return None


def parse_header_map_text(raw: Optional[str]) -> dict[str, str]:
    """
    Parse 'COLUMN:FIELD' entries separated by newlines or commas.

    Raises ValueError naming the offending entry.
    """
    header_map: dict[str, str] = {}
    if raw is None:
        return header_map
    for item in str(raw).replace(",", "\n").splitlines():
        item = item.strip()
        if not item:
            continue
        if ":" not in item:
            raise ValueError(f"Invalid header map entry: '{item}'. Expected COLUMN:FIELD")
        column, target = item.split(":", 1)
        if not column.strip() or not target.strip():
            raise ValueError(f"Invalid header map entry: '{item}'. COLUMN and FIELD must be non-empty")
        header_map[column.strip()] = target.strip()
    return header_map


def build_criteria(
    region: Optional[str],
    year: Any,
    year_min: Any,
    year_max: Any,
) -> FilterCriteria:
    """
    Translate dashboard control values into FilterCriteria.

    An exact year wins over the range controls. A half-open range is closed
    with the other bound left unbounded.
    """
    region_val = None if region in (None, "", ALL_REGIONS) else str(region)
    year_val = None if year in (None, "", ALL_YEARS) else _parse_optional_int(year)
    if year_val is not None:
        return FilterCriteria(region=region_val, year=year_val)

    lo = _parse_optional_int(year_min)
    hi = _parse_optional_int(year_max)
    year_range = None
    if lo is not None or hi is not None:
        year_range = (
            lo if lo is not None else -(10**9),
            hi if hi is not None else 10**9,
        )
    return FilterCriteria(region=region_val, year_range=year_range)


def format_metrics_markdown(analysis: AnalysisOutputs, record_count: int) -> str:
    m = analysis.metrics
    net_label = "Net gain" if m.net_change >= 0 else "Net loss"
    return (
        f"| Records | Deforestation | Reforestation | {net_label} |\n"
        "|---:|---:|---:|---:|\n"
        f"| {record_count} | {format_hectares(m.total_loss)} | "
        f"{format_hectares(m.total_gain)} | {format_hectares(m.net_change)} |"
    )


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Retention helper: keep only the newest `keep` subdirectories under `run_root`.

    Timestamped names (YYYYmmddTHHMMSS) are ordered by name, anything else by
    mtime. Deletion failures are logged and retried on a later run.
    """
    if keep is None:
        try:
            keep = int(os.getenv(RETENTION_ENV, "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return

    if not run_root.exists() or not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]
    if not subdirs:
        return

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    run_root_resolved = run_root.resolve()
    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        resolved = d.resolve()
        if os.path.commonpath([str(run_root_resolved), str(resolved)]) != str(
            run_root_resolved
        ):
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def _file_path_from_upload(file_obj: Any) -> Optional[str]:
    # gr.File returns a path string, a dict or a tempfile wrapper depending on version
    if file_obj is None:
        return None
    if isinstance(file_obj, str):
        return file_obj
    if isinstance(file_obj, dict):
        return file_obj.get("path") or file_obj.get("name") or file_obj.get("tmp_path")
    return getattr(file_obj, "name", None)


def _load_dataset(
    uploaded_file_path: Optional[str],
    header_map_raw: Optional[str],
    reference_year: Any,
) -> Tuple[Optional[pd.DataFrame], str, List[str], List[str]]:
    """
    Load a file for the dashboard.

    Returns (df, status_message, region_choices, year_choices). df is None on
    failure and the message explains why.
    """
    if not uploaded_file_path:
        return None, "Upload a CSV, Excel, JSON or TXT file to begin.", [ALL_REGIONS], [ALL_YEARS]

    try:
        load = LoadParams(
            input_path=Path(uploaded_file_path).resolve(),
            header_map=parse_header_map_text(header_map_raw),
        )
        df = load_forest_data(load, reference_year=_parse_optional_int(reference_year))
    except (ForestDataError, FileNotFoundError, ValueError) as e:
        logger.info(f"Dashboard load failed: {e}")
        return None, f"Error: {e}", [ALL_REGIONS], [ALL_YEARS]

    options = summarize_and_analyze(df).filter_options
    status = (
        f"Loaded {len(df)} records from {Path(uploaded_file_path).name} "
        f"({len(options.regions)} regions, {options.min_year}-{options.max_year})."
    )
    return (
        df,
        status,
        [ALL_REGIONS] + options.regions,
        [ALL_YEARS] + [str(y) for y in options.years],
    )


def _write_exports(
    run_dir: Path,
    short_hash: str,
    report_text: str,
    analysis: AnalysisOutputs,
    plot_params: List[PlotParams],
) -> str:
    """Write report and chart SVGs into run_dir and bundle them into a zip."""
    report_path = run_dir / f"report-{short_hash}.txt"
    report_path.write_text(report_text, encoding="utf-8")
    svg_paths = render_plots(plot_params, analysis, short_hash, output_dir=str(run_dir))

    zip_path = run_dir / f"forest-pulse-{short_hash}.zip"
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(report_path, arcname=report_path.name)
        for svg in svg_paths:
            zf.write(svg, arcname=Path(svg).name)
    return str(zip_path)


def _run_dashboard(
    df: Optional[pd.DataFrame],
    region: Optional[str],
    year: Any,
    year_min: Any,
    year_max: Any,
    chart: str,
    dimension: str,
    preprocess: bool = False,
    verbose_filtering: bool = False,
    reference_year: Any = None,
    export: bool = False,
):
    """
    Recompute every dashboard output from the retained dataset.

    Returns (metrics_md, figure, benchmarks_df, projections_df, report_text,
    zip_path). With no dataset loaded, empty placeholders are returned.
    """
    t0 = time.time()
    empty_bench = benchmarks_to_frame([])
    empty_proj = projections_to_frame([])
    if df is None:
        return "No data loaded.", None, empty_bench, empty_proj, "", None

    _, _, d_plots = get_default_params()
    trans = TransformParams(
        reference_year=_parse_optional_int(reference_year),
        criteria=build_criteria(region, year, year_min, year_max),
        preprocess=bool(preprocess),
        verbose_filtering=bool(verbose_filtering),
    )

    transformed = transform_pipeline(df, trans)
    analysis = summarize_and_analyze(transformed.df_filtered)

    chart_kind = ChartKind(str(chart).lower())
    dim = Dimension(str(dimension).lower())
    pp = PlotParams(chart=chart_kind, dimension=dim)
    fig = render_chart(buckets_for(analysis, dim), pp)
    # Detach from pyplot's registry; gr.Plot only needs the Figure object
    plt.close(fig)

    report_text = assemble_text_report(df, transformed, analysis)

    zip_path = None
    if export:
        load = LoadParams(input_path=None)
        _, short_hash, _, _ = build_run_identity(load, trans)
        run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
        run_dir = RUN_ROOT / run_ts
        run_dir.mkdir(parents=True, exist_ok=True)
        try:
            zip_path = _write_exports(run_dir, short_hash, report_text, analysis, [pp] + d_plots)
        except OSError as e:
            logger.warning(f"Export failed: {e}")
        _prune_old_runs(RUN_ROOT)

    logger.info(
        f"_run_dashboard complete: {len(transformed.df_filtered)} records "
        f"(duration_ms={(time.time() - t0) * 1000:.1f})"
    )
    return (
        format_metrics_markdown(analysis, len(transformed.df_filtered)),
        fig,
        benchmarks_to_frame(analysis.benchmarks),
        projections_to_frame(analysis.projections),
        report_text,
        zip_path,
    )


def _build_ui():
    with gr.Blocks(title="Forest Pulse") as demo:
        _, d_trans, _ = get_default_params()
        gr.Markdown("### Forest Pulse - forest change dashboard")
        gr.HTML("""
<style>
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
  }
</style>
""")
        data_state = gr.State(None)

        with gr.Row():
            file_input = gr.File(
                label="Upload data file",
                file_types=[".csv", ".xlsx", ".xls", ".json", ".txt"],
            )
            with gr.Column():
                header_map = gr.Textbox(
                    label="Header map (optional) - COLUMN:FIELD per line",
                    placeholder="Provincia:region\nAno:year",
                    lines=3,
                )
                reference_year = gr.Number(
                    label="Reference year (optional)",
                    value=d_trans.reference_year,
                    precision=0,
                )
        status = gr.Markdown("Upload a CSV, Excel, JSON or TXT file to begin.")

        with gr.Row():
            region = gr.Dropdown(label="Region", choices=[ALL_REGIONS], value=ALL_REGIONS)
            year = gr.Dropdown(label="Year", choices=[ALL_YEARS], value=ALL_YEARS)
            year_min = gr.Number(label="From year", precision=0)
            year_max = gr.Number(label="To year", precision=0)
        with gr.Row():
            chart = gr.Radio(
                label="Visualization",
                choices=[c.value for c in ChartKind],
                value=ChartKind.BAR.value,
            )
            dimension = gr.Radio(
                label="Group by",
                choices=[d.value for d in Dimension],
                value=Dimension.YEAR.value,
            )
            verbose = gr.Checkbox(label="verbose_filtering", value=False)
        with gr.Row():
            reset_button = gr.Button("Reset filters")
            preprocess_button = gr.Button("Preprocess data")
            export_button = gr.Button("Export report")

        metrics_md = gr.Markdown()
        plot = gr.Plot(label="Chart")
        with gr.Row():
            benchmarks_table = gr.Dataframe(label="Benchmarks", interactive=False)
            projections_table = gr.Dataframe(label="Projections", interactive=False)
        report_box = gr.Textbox(
            value="", lines=20, interactive=False, elem_id="report_box", label="Report"
        )
        export_file = gr.File(label="Download report")

        filter_inputs = [data_state, region, year, year_min, year_max, chart, dimension]
        outputs = [
            metrics_md,
            plot,
            benchmarks_table,
            projections_table,
            report_box,
            export_file,
        ]

        def _on_upload(file_obj, header_map_raw, ref_year):
            df, message, region_choices, year_choices = _load_dataset(
                _file_path_from_upload(file_obj), header_map_raw, ref_year
            )
            return (
                df,
                message,
                gr.update(choices=region_choices, value=ALL_REGIONS),
                gr.update(choices=year_choices, value=ALL_YEARS),
                gr.update(value=None, visible=True),
                gr.update(value=None, visible=True),
            )

        def _refresh(df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v, verbose_v, ref_year):
            return _run_dashboard(
                df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v,
                verbose_filtering=verbose_v, reference_year=ref_year,
            )

        def _preprocess(df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v, verbose_v, ref_year):
            return _run_dashboard(
                df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v,
                preprocess=True, verbose_filtering=verbose_v, reference_year=ref_year,
            )

        def _export(df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v, verbose_v, ref_year):
            return _run_dashboard(
                df, region_v, year_v, ymin_v, ymax_v, chart_v, dim_v,
                verbose_filtering=verbose_v, reference_year=ref_year, export=True,
            )

        def _toggle_range(year_v):
            # An exact year makes the range controls meaningless
            show = year_v in (None, "", ALL_YEARS)
            return gr.update(visible=show), gr.update(visible=show)

        def _reset():
            return ALL_REGIONS, ALL_YEARS, None, None

        run_inputs = filter_inputs + [verbose, reference_year]

        file_input.change(
            _on_upload,
            inputs=[file_input, header_map, reference_year],
            outputs=[data_state, status, region, year, year_min, year_max],
        ).then(_refresh, inputs=run_inputs, outputs=outputs)

        year.change(_toggle_range, inputs=[year], outputs=[year_min, year_max])
        for control in (region, year, year_min, year_max, chart, dimension):
            control.change(_refresh, inputs=run_inputs, outputs=outputs)

        reset_button.click(_reset, outputs=[region, year, year_min, year_max])
        preprocess_button.click(_preprocess, inputs=run_inputs, outputs=outputs)
        export_button.click(_export, inputs=run_inputs, outputs=outputs)

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
