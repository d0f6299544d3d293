#!/usr/bin/env python3
"""
Forest Pulse - forest-change analytics pipeline.

This module exposes the pipeline as explicit functional units:
- load_forest_data() / ingest_rows()
- clean_dataset() and filter_records()
- transform_pipeline()
- summarize_and_analyze()
- render_plots() and assemble_text_report()

Each function takes explicit inputs and returns explicit outputs. The reference
year used for validity bounds is always a parameter, never read implicitly
inside the cleaning logic. Logging is kept for diagnostics only.
"""

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

# Select a non-interactive backend before pyplot is imported anywhere so chart
# rendering works in headless environments.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .analytics import (
    AggregatedMetrics,
    Benchmark,
    DimensionBucket,
    FilterOptions,
    Projection,
    aggregate_by_region,
    aggregate_by_year,
    calculate_benchmarks,
    calculate_metrics,
    calculate_projections,
    extract_filter_options,
)
from .columns import resolve_columns, validate_header_map
from .file_loader import (
    NO_DATA_MESSAGE,
    EmptyDatasetError,
    FileAccessError,
    ForestDataError,
    ForestFileLoader,
)
from .normalize import (
    MIN_YEAR,
    RECORD_COLUMNS,
    current_year,
    normalize_row,
    records_to_frame,
)
from .utils import (
    build_effective_parameters,
    canonical_json_hash,
    ensure_run_dir,
    normalize_abs_posix,
    to_jsonable,
    utc_timestamp_seconds,
    write_manifest,
    write_text_report,
)

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

REFERENCE_YEAR_ENV = "FOREST_PULSE_REFERENCE_YEAR"
DEBUG_ENV = "FOREST_PULSE_DEBUG"

LOSS_COLOR = "#c0392b"
GAIN_COLOR = "#2e7d32"
NET_COLOR = "#1f77b4"


class FilterResult:
    """Container for pipeline step results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        self.label: Optional[str] = label

        # Row counters
        self.original_rows: int = 0
        self.filtered_rows: int = 0
        self.excluded_rows: int = 0

        # Diagnostics
        self.warnings: list[str] = []
        self.events: list[str] = []
        self.metrics: dict[str, int | float | str] = {}
        self.skipped_reason: Optional[str] = None

        # Timing
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    def start(self) -> None:
        import time

        self.started_at = time.perf_counter()

    def stop(self) -> None:
        import time

        self.finished_at = time.perf_counter()
        if self.started_at is not None:
            self.elapsed_ms = (self.finished_at - self.started_at) * 1000.0

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning(message)

    def add_event(self, message: str) -> None:
        """Add an info-level event message."""
        self.events.append(message)
        logger.info(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        """Attach a named metric."""
        self.metrics[name] = value

    def set_skipped(self, reason: str, verbose: bool = False) -> None:
        """Mark the step as skipped with a reason."""
        self.skipped_reason = reason
        if verbose:
            self.add_event(f"Step skipped: {reason}")

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.filtered_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.skipped_reason:
            parts.append(f"skipped={self.skipped_reason}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


class ChartKind(Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"


class Dimension(Enum):
    YEAR = "year"
    REGION = "region"


METRIC_LABELS = {
    "loss_amount": "Deforestation",
    "gain_amount": "Reforestation",
    "net_change": "Net change",
}
METRIC_ALIASES = {
    "loss": "loss_amount",
    "deforestation": "loss_amount",
    "gain": "gain_amount",
    "reforestation": "gain_amount",
    "net": "net_change",
}


@dataclass(frozen=True)
class FilterCriteria:
    """
    User-selected record predicates. Every non-None criterion is applied.

    year and year_range are exclusive in the dashboard, but nothing here
    assumes so.
    """

    region: Optional[str] = None
    year: Optional[int] = None
    year_range: Optional[Tuple[int, int]] = None

    def is_empty(self) -> bool:
        return self.region is None and self.year is None and self.year_range is None


@dataclass
class LoadParams:
    """
    Parameters used when loading an input file.

    Attributes:
        input_path: Path to a .csv/.xlsx/.xls/.json/.txt file.
        header_map: Optional mapping of input column name -> canonical field
            (region, year, loss, gain).
            - Populated from the CLI via repeatable --header-map COLUMN:FIELD flags.
            - Matching is case-insensitive; mapped fields bypass substring matching.
            - Unknown fields or two columns mapped to one field raise ValueError.
    """

    input_path: Optional[Path]
    header_map: dict[str, str] = field(default_factory=dict)


@dataclass
class TransformParams:
    # None -> FOREST_PULSE_REFERENCE_YEAR or the current calendar year
    reference_year: Optional[int] = None
    criteria: FilterCriteria = field(default_factory=FilterCriteria)
    # Re-run the cleaner on the filtered frame (dashboard "Preprocess data")
    preprocess: bool = False
    verbose_filtering: bool = False


@dataclass
class PlotParams:
    """
    Chart controls.

    metric is only used by pie charts, which show one metric's share per label.
    y_min/y_max are optional axis bounds for bar and line charts.
    """

    chart: ChartKind = ChartKind.BAR
    dimension: Dimension = Dimension.YEAR
    metric: str = "loss_amount"
    y_min: Optional[float] = None
    y_max: Optional[float] = None


@dataclass
class TransformOutputs:
    df_filtered: pd.DataFrame
    criteria: FilterCriteria


@dataclass
class AnalysisOutputs:
    metrics: AggregatedMetrics
    region_buckets: List[DimensionBucket]
    year_buckets: List[DimensionBucket]
    benchmarks: List[Benchmark]
    projections: List[Projection]
    filter_options: FilterOptions


def resolve_reference_year(reference_year: Optional[int] = None) -> int:
    """Explicit value, else FOREST_PULSE_REFERENCE_YEAR, else the current year."""
    if reference_year is not None:
        return int(reference_year)
    raw = os.environ.get(REFERENCE_YEAR_ENV, "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid {REFERENCE_YEAR_ENV}={raw!r}")
    return current_year()


def clean_dataset(
    df: pd.DataFrame, reference_year: Optional[int] = None, verbose: bool = False
) -> pd.DataFrame:
    """
    Drop records violating the dataset invariants and clamp amounts.

    Dropped: empty region, non-numeric year, year outside (1900, reference_year].
    Kept rows get loss/gain clamped to >= 0 and net_change recomputed.
    Idempotent. Returns a new frame with a fresh index.
    """
    result = FilterResult(label="clean_dataset")
    result.start()
    result.original_rows = len(df)
    ref_year = resolve_reference_year(reference_year)
    result.add_metric("reference_year", ref_year)

    if df.empty:
        result.set_skipped("empty dataframe")
        result.stop()
        if verbose:
            logger.info(result.summarize())
        return df.copy()

    required_cols = ["region", "year", "loss_amount", "gain_amount"]
    missing = [c for c in required_cols if c not in df.columns]
    if missing:
        raise ValueError(
            f"Missing required columns: {', '.join(missing)}. Found columns: {list(df.columns)}"
        )

    region_text = df["region"].map(lambda v: "" if v is None or pd.isna(v) else str(v))
    mask_region = region_text.str.strip() != ""
    year_num = pd.to_numeric(df["year"], errors="coerce")
    mask_year = year_num.notna() & (year_num > MIN_YEAR) & (year_num <= ref_year)

    result.add_metric("dropped_empty_region", int((~mask_region).sum()))
    result.add_metric("dropped_invalid_year", int((mask_region & ~mask_year).sum()))

    cleaned = df.loc[mask_region & mask_year].copy()
    cleaned["year"] = np.floor(year_num[mask_region & mask_year]).astype("int64")

    clamped = 0
    for col in ("loss_amount", "gain_amount"):
        values = pd.to_numeric(cleaned[col], errors="coerce").fillna(0.0).astype(float)
        clamped += int((values < 0).sum())
        cleaned[col] = values.clip(lower=0.0)
    result.add_metric("clamped_amounts", clamped)
    cleaned["net_change"] = cleaned["gain_amount"] - cleaned["loss_amount"]

    if "id" not in cleaned.columns:
        cleaned.insert(0, "id", [uuid.uuid4().hex for _ in range(len(cleaned))])
    cleaned = cleaned.reset_index(drop=True)

    result.filtered_rows = len(cleaned)
    result.excluded_rows = result.original_rows - result.filtered_rows
    result.stop()
    if verbose:
        logger.info(result.summarize())
    return cleaned


def filter_records(
    df: pd.DataFrame, criteria: Optional[FilterCriteria] = None, verbose: bool = False
) -> pd.DataFrame:
    """
    Keep rows satisfying every non-None criterion.

    Region matching is exact and case-sensitive; year_range is inclusive.
    With no criteria the input frame is returned as-is. Otherwise the result
    is an independent copy.
    """
    result = FilterResult(label="filter_records")
    result.start()
    result.original_rows = len(df)

    if criteria is None or criteria.is_empty():
        result.set_skipped("no filter criteria provided", verbose=verbose)
        result.filtered_rows = len(df)
        result.stop()
        if verbose:
            logger.info(result.summarize())
        return df

    if df.empty:
        result.set_skipped("empty dataframe - no filtering performed")
        result.filtered_rows = len(df)
        result.stop()
        if verbose:
            logger.info(result.summarize())
        return df

    mask = pd.Series(True, index=df.index)
    if criteria.region is not None:
        mask &= df["region"] == criteria.region
        result.add_metric("region", criteria.region)
    if criteria.year is not None:
        mask &= df["year"] == int(criteria.year)
        result.add_metric("year", int(criteria.year))
    if criteria.year_range is not None:
        lo, hi = (int(v) for v in criteria.year_range)
        if lo > hi:
            result.add_warning(f"Year range {lo}-{hi} is empty (start > end)")
        mask &= (df["year"] >= lo) & (df["year"] <= hi)
        result.add_metric("year_range", f"{lo}-{hi}")

    filtered_df = df.loc[mask].copy()
    result.filtered_rows = len(filtered_df)
    result.excluded_rows = result.original_rows - result.filtered_rows
    result.stop()
    if verbose:
        logger.info(result.summarize())
    return filtered_df


def ingest_rows(
    rows: Iterable[Mapping[Any, Any]],
    header_map: Optional[Mapping[str, str]] = None,
    reference_year: Optional[int] = None,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Normalize decoded rows and clean them into a record frame.

    Columns are resolved per row, so rows with differing keys (JSON input)
    each get their own mapping.

    Raises:
        ValueError: if header_map is invalid
        EmptyDatasetError: if there are no rows, or none survive cleaning
    """
    validate_header_map(header_map)
    ref_year = resolve_reference_year(reference_year)

    records = [
        normalize_row(
            row, resolve_columns(row, header_map), reference_year=ref_year
        )
        for row in rows
    ]
    if not records:
        raise EmptyDatasetError(NO_DATA_MESSAGE)

    df = records_to_frame(records)
    cleaned = clean_dataset(df, reference_year=ref_year, verbose=verbose)
    if cleaned.empty:
        raise EmptyDatasetError(NO_DATA_MESSAGE)
    logger.info(f"Ingested {len(cleaned)} of {len(df)} rows")
    return cleaned


def load_forest_data(
    params: LoadParams, reference_year: Optional[int] = None, verbose: bool = False
) -> pd.DataFrame:
    """
    Load, normalize and clean a forest-change file.
    No prints; raises exceptions on error.
    """
    if params.input_path is None:
        raise FileAccessError("No input file provided")
    with ForestFileLoader(params.input_path) as loader:
        rows = loader.read_rows()
    return ingest_rows(
        rows,
        header_map=params.header_map,
        reference_year=reference_year,
        verbose=verbose,
    )


def transform_pipeline(df: pd.DataFrame, params: TransformParams) -> TransformOutputs:
    """
    Apply the user's filter criteria (and optional re-cleaning) to the
    retained dataset. Always recomputed from the original frame.
    """
    df_filtered = filter_records(
        df, params.criteria, verbose=params.verbose_filtering
    )
    if params.preprocess:
        df_filtered = clean_dataset(
            df_filtered,
            reference_year=params.reference_year,
            verbose=params.verbose_filtering,
        )
    if df_filtered.empty:
        logger.warning("No records match the current filter criteria")
    return TransformOutputs(df_filtered=df_filtered, criteria=params.criteria)


def summarize_and_analyze(df: pd.DataFrame) -> AnalysisOutputs:
    """Compute every display-ready output from a (filtered) record frame."""
    return AnalysisOutputs(
        metrics=calculate_metrics(df),
        region_buckets=aggregate_by_region(df),
        year_buckets=aggregate_by_year(df),
        benchmarks=calculate_benchmarks(df),
        projections=calculate_projections(df),
        filter_options=extract_filter_options(df),
    )


# -------------------------
# Reporting
# -------------------------
def format_hectares(value: float) -> str:
    return f"{value:,.2f} ha"


def format_benchmark_value(benchmark: Benchmark) -> str:
    if not benchmark.available:
        return "n/a"
    if benchmark.unit == "% change":
        return f"{benchmark.value:+.1f}%"
    if benchmark.unit == "ratio":
        return f"{benchmark.value:.2f}"
    return f"{benchmark.value:,.2f}"


def buckets_to_frame(buckets: List[DimensionBucket]) -> pd.DataFrame:
    return pd.DataFrame(
        [asdict(b) for b in buckets],
        columns=["label", "loss_amount", "gain_amount", "net_change"],
    )


def benchmarks_to_frame(benchmarks: List[Benchmark]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "kind": b.kind.value,
                "name": b.name,
                "value": format_benchmark_value(b),
                "unit": b.unit,
                "context": b.region or b.period or "",
            }
            for b in benchmarks
        ],
        columns=["kind", "name", "value", "unit", "context"],
    )


def projections_to_frame(projections: List[Projection]) -> pd.DataFrame:
    return pd.DataFrame(
        [asdict(p) for p in projections],
        columns=[
            "year",
            "loss_amount",
            "gain_amount",
            "net_change",
            "description",
            "is_equilibrium",
        ],
    )


def assemble_text_report(
    input_df: pd.DataFrame,
    transformed: TransformOutputs,
    analysis: AnalysisOutputs,
) -> str:
    """
    Create a concise, readable report of the filtered dataset and every
    derived output.
    """
    parts: list[str] = []
    parts.append("\n")

    def _fmt_head(df: pd.DataFrame, n: int = 5) -> str:
        if df.empty:
            return "(no rows)"
        cols = [c for c in RECORD_COLUMNS if c in df.columns and c != "id"]
        return df[cols].head(n).to_string(index=False)

    def _fmt_table(df: pd.DataFrame) -> str:
        if df.empty:
            return "(none)"
        with pd.option_context("display.max_rows", None, "display.max_columns", None):
            return df.to_string(index=False)

    parts.append(f"Input data ({len(input_df)} rows, head):\n{_fmt_head(input_df)}")
    parts.append("\n")

    criteria = transformed.criteria
    active = {k: v for k, v in asdict(criteria).items() if v is not None}
    parts.append(f"Filters: {active if active else 'none'}")
    parts.append(
        f"Filtered data ({len(transformed.df_filtered)} rows, head):\n"
        f"{_fmt_head(transformed.df_filtered)}"
    )
    parts.append("\n")

    m = analysis.metrics
    parts.append(
        "Totals:\n"
        f"  Deforestation: {format_hectares(m.total_loss)}\n"
        f"  Reforestation: {format_hectares(m.total_gain)}\n"
        f"  Net change:    {format_hectares(m.net_change)}"
    )
    parts.append("\n")
    parts.append(f"By region:\n{_fmt_table(buckets_to_frame(analysis.region_buckets))}")
    parts.append("\n")
    parts.append(f"By year:\n{_fmt_table(buckets_to_frame(analysis.year_buckets))}")
    parts.append("\n")
    parts.append(f"Benchmarks:\n{_fmt_table(benchmarks_to_frame(analysis.benchmarks))}")
    parts.append("\n")
    parts.append(
        f"Projections:\n{_fmt_table(projections_to_frame(analysis.projections))}"
    )
    parts.append("\n")

    return "\n".join(parts)


# -------------------------
# Charts
# -------------------------
def _plot_suffix(pp: PlotParams) -> str:
    suffix = f"{pp.chart.value}-{pp.dimension.value}"
    if pp.chart is ChartKind.PIE:
        suffix += f"-{pp.metric}"
    return suffix


def _default_title(pp: PlotParams) -> str:
    if pp.chart is ChartKind.PIE:
        return f"{METRIC_LABELS[pp.metric]} Distribution by {pp.dimension.value.title()}"
    if pp.chart is ChartKind.LINE:
        return f"{'Yearly' if pp.dimension is Dimension.YEAR else 'Regional'} Forest Change Trends"
    return f"{pp.dimension.value.title()}-wise Forest Change"


def render_chart(
    buckets: List[DimensionBucket], pp: PlotParams, title: Optional[str] = None
) -> "plt.Figure":
    """
    Render one chart of dimension buckets and return the matplotlib Figure.

    The caller owns the figure and should close it.
    """
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.set_title(title or _default_title(pp))

    labels = [b.label for b in buckets]
    if not buckets:
        ax.text(0.5, 0.5, "No data", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
        return fig

    if pp.chart is ChartKind.PIE:
        pairs = [
            (b.label, getattr(b, pp.metric)) for b in buckets if getattr(b, pp.metric) > 0
        ]
        if not pairs:
            ax.text(
                0.5,
                0.5,
                f"No positive {METRIC_LABELS[pp.metric].lower()} values",
                ha="center",
                va="center",
                transform=ax.transAxes,
            )
            ax.set_axis_off()
            return fig
        ax.pie(
            [v for _, v in pairs],
            labels=[lbl for lbl, _ in pairs],
            autopct="%1.1f%%",
            startangle=90,
        )
        ax.axis("equal")
        return fig

    losses = [b.loss_amount for b in buckets]
    gains = [b.gain_amount for b in buckets]
    nets = [b.net_change for b in buckets]
    x = np.arange(len(labels))

    if pp.chart is ChartKind.BAR:
        width = 0.27
        ax.bar(x - width, losses, width, label="Deforestation", color=LOSS_COLOR)
        ax.bar(x, gains, width, label="Reforestation", color=GAIN_COLOR)
        ax.bar(x + width, nets, width, label="Net change", color=NET_COLOR)
    else:
        ax.plot(x, losses, marker="o", label="Deforestation", color=LOSS_COLOR)
        ax.plot(x, gains, marker="o", label="Reforestation", color=GAIN_COLOR)
        ax.plot(x, nets, marker="o", linestyle="--", label="Net change", color=NET_COLOR)

    ax.axhline(0, color="#888888", linewidth=0.8)
    ax.set_xticks(x)
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_xlabel(pp.dimension.value.title())
    ax.set_ylabel("Hectares")
    if pp.y_min is not None or pp.y_max is not None:
        ax.set_ylim(bottom=pp.y_min, top=pp.y_max)
    ax.grid(True, axis="y", alpha=0.3)
    ax.legend()
    fig.tight_layout()
    return fig


def buckets_for(analysis: AnalysisOutputs, dimension: Dimension) -> List[DimensionBucket]:
    if dimension is Dimension.REGION:
        return analysis.region_buckets
    return analysis.year_buckets


def render_plots(
    list_plot_params: list[PlotParams],
    analysis: AnalysisOutputs,
    short_hash: str,
    output_dir: str | None = None,
) -> list[str]:
    """
    Render one SVG per PlotParams. Returns artifact paths.

    Filenames: plot-{short_hash}-{ii}-{chart}-{dimension}[-{metric}].svg where
    ii is the zero-based, zero-padded index.
    """
    n = len(list_plot_params)
    pad = max(2, len(str(max(0, n - 1)))) if n > 0 else 2

    artifact_paths: list[str] = []
    for idx, pp in enumerate(list_plot_params):
        filename = f"plot-{short_hash}-{idx:0{pad}}-{_plot_suffix(pp)}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        fig = render_chart(buckets_for(analysis, pp.dimension), pp)
        try:
            fig.savefig(output_path, format="svg")
        finally:
            plt.close(fig)
        artifact_paths.append(str(output_path))
    return artifact_paths


# -------------------------
# Parameters, identity, manifest
# -------------------------
def get_default_params() -> tuple[LoadParams, TransformParams, List[PlotParams]]:
    """
    Build default LoadParams, TransformParams, and the canonical list of PlotParams.

    The default plots mirror the dashboard: year and region bar charts, the
    yearly trend line, and loss/gain distribution pies by region.
    """
    load = LoadParams(input_path=None, header_map={})
    trans = TransformParams(
        reference_year=None,
        criteria=FilterCriteria(),
        preprocess=False,
        verbose_filtering=False,
    )
    plot_defaults: List[PlotParams] = [
        PlotParams(chart=ChartKind.BAR, dimension=Dimension.YEAR),
        PlotParams(chart=ChartKind.BAR, dimension=Dimension.REGION),
        PlotParams(chart=ChartKind.LINE, dimension=Dimension.YEAR),
        PlotParams(chart=ChartKind.PIE, dimension=Dimension.REGION, metric="loss_amount"),
        PlotParams(chart=ChartKind.PIE, dimension=Dimension.REGION, metric="gain_amount"),
    ]
    return load, trans, plot_defaults


def build_run_identity(
    load: LoadParams, trans: TransformParams
) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    abs_input_posix = normalize_abs_posix(load.input_path) if load.input_path else ""
    effective_params = build_effective_parameters(load, trans)
    canonical_payload = {
        "absolute_input_path": abs_input_posix,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "total_records": int(counts.get("total_records", 0)),
        "filtered_records": int(counts.get("filtered_records", 0)),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": {"plot_svgs": artifact_paths},
    }


def analysis_to_dict(analysis: AnalysisOutputs) -> Dict[str, Any]:
    return to_jsonable(analysis)


def _orchestrate(
    params_load: LoadParams,
    params_transform: TransformParams,
    list_plot_params: List[PlotParams],
    output_dir: str | Path = "output",
    as_json: bool = False,
) -> Path:
    """
    Orchestrate the full pipeline given explicit parameter objects.
    Split from main() so the CLI can remain thin and tests can call this directly.
    Returns the run output directory.
    """
    run_output_dir = ensure_run_dir(base=Path(output_dir).parent, prefix=Path(output_dir).name)

    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_transform
    )

    df = load_forest_data(
        params_load,
        reference_year=params_transform.reference_year,
        verbose=params_transform.verbose_filtering,
    )
    transformed = transform_pipeline(df, params_transform)
    analysis = summarize_and_analyze(transformed.df_filtered)

    artifact_paths = render_plots(
        list_plot_params, analysis, short_hash, output_dir=str(run_output_dir)
    )

    counts = {
        "total_records": int(len(df)),
        "filtered_records": int(len(transformed.df_filtered)),
    }
    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        counts=counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=artifact_paths,
    )
    write_manifest(str(run_output_dir / f"manifest-{short_hash}.json"), manifest)

    report = assemble_text_report(df, transformed, analysis)
    write_text_report(report, run_output_dir, short_hash)

    if as_json:
        print(json.dumps(analysis_to_dict(analysis), indent=2))
    else:
        print(report)
    return run_output_dir


# -------------------------
# CLI
# -------------------------
def parse_plot_spec(spec: str, default: Optional[PlotParams] = None) -> PlotParams:
    """
    Parse a plot specification: either key=value[,key=value...] or a JSON object.

    Keys: chart (bar|line|pie), dimension (year|region), metric
    (loss|gain|net or the column name), y_min, y_max.
    """
    base = default or PlotParams()
    params = PlotParams(
        chart=base.chart,
        dimension=base.dimension,
        metric=base.metric,
        y_min=base.y_min,
        y_max=base.y_max,
    )

    spec = spec.strip()
    if spec.startswith("{"):
        try:
            items = json.loads(spec)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in plot spec: {e}") from e
        if not isinstance(items, dict):
            raise ValueError(f"JSON plot spec must be an object, got {type(items)}")
        pairs = [(str(k), v) for k, v in items.items()]
    else:
        pairs = []
        for kv in spec.split(","):
            if not kv.strip():
                continue
            if "=" not in kv:
                raise ValueError(f"Invalid key=value pair in plot spec: {kv!r}")
            key, value = kv.split("=", 1)
            pairs.append((key.strip(), value.strip()))

    for key, value in pairs:
        if key == "chart":
            try:
                params.chart = ChartKind(str(value).strip().lower())
            except ValueError:
                raise ValueError(f"Unknown chart kind in plot spec: {value!r}")
        elif key == "dimension":
            try:
                params.dimension = Dimension(str(value).strip().lower())
            except ValueError:
                raise ValueError(f"Unknown dimension in plot spec: {value!r}")
        elif key == "metric":
            metric = str(value).strip().lower()
            metric = METRIC_ALIASES.get(metric, metric)
            if metric not in METRIC_LABELS:
                raise ValueError(f"Unknown metric in plot spec: {value!r}")
            params.metric = metric
        elif key == "y_min":
            params.y_min = None if value is None else float(value)
        elif key == "y_max":
            params.y_max = None if value is None else float(value)
        else:
            raise ValueError(f"Unknown key in plot spec: {key}")
    return params


def parse_year_range(raw: str) -> Tuple[int, int]:
    """Parse 'MIN:MAX' (or 'MIN-MAX') into an inclusive year range."""
    text = raw.strip()
    sep = ":" if ":" in text else "-"
    try:
        lo, hi = text.split(sep, 1)
        return int(lo.strip()), int(hi.strip())
    except ValueError:
        raise ValueError(f"Invalid --year-range value: '{raw}'. Expected MIN:MAX")


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="forest-pulse",
        description="Forest change analytics (load -> clean -> filter -> analyze -> report).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help=f"Show full tracebacks for debugging (also {DEBUG_ENV}=1).",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument(
        "--input",
        type=str,
        required=True,
        help="Path to a CSV, Excel, JSON or TXT data file (required).",
    )
    g_load.add_argument(
        "--header-map",
        action="append",
        metavar="COLUMN:FIELD",
        help="Map input COLUMN to canonical FIELD (region, year, loss, gain). Repeatable.",
    )

    g_tr = parser.add_argument_group("TransformParams")
    g_tr.add_argument(
        "--reference-year",
        type=int,
        help=f"Latest valid year (default: ${REFERENCE_YEAR_ENV} or the current year).",
    )
    g_tr.add_argument("--region", type=str, help="Keep only this region (exact match).")
    g_tr.add_argument("--year", type=int, help="Keep only this year.")
    g_tr.add_argument(
        "--year-range", type=str, metavar="MIN:MAX", help="Inclusive year range."
    )
    g_tr.add_argument(
        "--preprocess",
        action="store_true",
        help="Re-run dataset cleaning on the filtered records.",
    )
    g_tr.add_argument(
        "--verbose-filtering",
        action="store_true",
        help="Log per-step filtering diagnostics.",
    )

    g_out = parser.add_argument_group("Output")
    g_out.add_argument(
        "--plot-spec",
        action="append",
        metavar="SPEC",
        help="Chart spec, e.g. 'chart=bar,dimension=year' or JSON. Repeatable.",
    )
    g_out.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Base directory for per-run output folders.",
    )
    g_out.add_argument(
        "--json",
        action="store_true",
        help="Print analysis results as JSON instead of the text report.",
    )
    return parser


def _args_to_params(args) -> tuple[LoadParams, TransformParams, List[PlotParams]]:
    """
    Merge CLI args over defaults to build parameter objects.
    Only override values explicitly provided by user; otherwise keep defaults.
    """
    d_load, d_trans, d_plots = get_default_params()

    input_path = (
        Path(args.input).resolve() if getattr(args, "input", None) else d_load.input_path
    )

    header_map: dict[str, str] = {}
    if getattr(args, "header_map", None):
        for item in args.header_map:
            try:
                old, new = item.split(":", 1)
            except ValueError:
                raise ValueError(
                    f"Invalid --header-map value: '{item}'. Expected COLUMN:FIELD"
                )
            old = old.strip()
            new = new.strip()
            if not old or not new:
                raise ValueError(
                    f"Invalid --header-map value: '{item}'. COLUMN and FIELD must be non-empty"
                )
            header_map[old] = new
    validate_header_map(header_map)

    year_range = None
    if getattr(args, "year_range", None):
        year_range = parse_year_range(args.year_range)

    criteria = FilterCriteria(
        region=getattr(args, "region", None),
        year=getattr(args, "year", None),
        year_range=year_range,
    )

    trans = TransformParams(
        reference_year=(
            args.reference_year
            if getattr(args, "reference_year", None) is not None
            else d_trans.reference_year
        ),
        criteria=criteria,
        preprocess=bool(getattr(args, "preprocess", False)),
        verbose_filtering=bool(getattr(args, "verbose_filtering", False)),
    )

    plot_specs = getattr(args, "plot_spec", None)
    if plot_specs:
        plots = [parse_plot_spec(s, d_plots[0]) for s in plot_specs]
    else:
        plots = d_plots

    return LoadParams(input_path=input_path, header_map=header_map), trans, plots


def main() -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import sys

    argv = sys.argv[1:]

    if "--print-defaults" in argv:
        d_load, d_trans, d_plots = get_default_params()
        payload = {
            "LoadParams": {
                "input_path": None,
                "header_map": d_load.header_map,
            },
            "TransformParams": {
                "reference_year": resolve_reference_year(d_trans.reference_year),
                "criteria": asdict(d_trans.criteria),
                "preprocess": d_trans.preprocess,
                "verbose_filtering": d_trans.verbose_filtering,
            },
            "PlotParams": [
                {
                    "chart": pp.chart.value,
                    "dimension": pp.dimension.value,
                    "metric": pp.metric,
                    "y_min": pp.y_min,
                    "y_max": pp.y_max,
                }
                for pp in d_plots
            ],
        }
        print(json.dumps(payload, indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(getattr(args, "debug", False) or os.getenv(DEBUG_ENV, "") == "1")
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        params_load, params_transform, plot_params_list = _args_to_params(args)
        _orchestrate(
            params_load,
            params_transform,
            plot_params_list,
            output_dir=args.output_dir,
            as_json=args.json,
        )
    except (ForestDataError, FileNotFoundError, ValueError) as e:
        # Concise, user-facing errors for user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                f"Run with --debug or set {DEBUG_ENV}=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
