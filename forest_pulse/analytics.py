"""
Aggregation, benchmarks and trend projections over canonical record frames.

All functions are pure reductions of a record frame (see
normalize.RECORD_COLUMNS) and return plain frozen dataclasses that the
report, chart and dashboard layers render without further computation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import numpy as np
import pandas as pd

AMOUNT_COLUMNS = ["loss_amount", "gain_amount", "net_change"]

PROJECTION_HORIZONS = (1, 3, 5)
# Equilibrium estimates further out than this are not reported
EQUILIBRIUM_MAX_YEARS = 30


@dataclass(frozen=True)
class AggregatedMetrics:
    total_loss: float
    total_gain: float
    net_change: float


@dataclass(frozen=True)
class DimensionBucket:
    label: str
    loss_amount: float
    gain_amount: float
    net_change: float


class BenchmarkKind(Enum):
    OVERALL = "overall"
    STATE = "state"
    TREND = "trend"


@dataclass(frozen=True)
class Benchmark:
    """
    A single named statistic.

    value is None when the statistic is undefined for the data (for example a
    percentage trend whose base year total is zero).
    """

    kind: BenchmarkKind
    name: str
    value: Optional[float]
    unit: str
    region: Optional[str] = None
    period: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class Projection:
    year: int
    loss_amount: float
    gain_amount: float
    net_change: float
    description: str
    is_equilibrium: bool = False


@dataclass(frozen=True)
class FilterOptions:
    regions: List[str]
    years: List[int]
    min_year: Optional[int] = None
    max_year: Optional[int] = None


@dataclass(frozen=True)
class YearlyTotal:
    year: int
    loss: float
    gain: float


def calculate_metrics(df: pd.DataFrame) -> AggregatedMetrics:
    """Whole-frame totals. An empty frame gives all zeros."""
    if df.empty:
        return AggregatedMetrics(total_loss=0.0, total_gain=0.0, net_change=0.0)
    total_loss = float(df["loss_amount"].sum())
    total_gain = float(df["gain_amount"].sum())
    return AggregatedMetrics(
        total_loss=total_loss, total_gain=total_gain, net_change=total_gain - total_loss
    )


def _buckets_from_grouped(grouped: pd.DataFrame) -> list[DimensionBucket]:
    return [
        DimensionBucket(
            label=str(label),
            loss_amount=float(row["loss_amount"]),
            gain_amount=float(row["gain_amount"]),
            net_change=float(row["net_change"]),
        )
        for label, row in grouped.iterrows()
    ]


def aggregate_by_region(df: pd.DataFrame) -> list[DimensionBucket]:
    """One bucket per region, in order of first appearance."""
    if df.empty:
        return []
    grouped = df.groupby("region", sort=False)[AMOUNT_COLUMNS].sum()
    return _buckets_from_grouped(grouped)


def aggregate_by_year(df: pd.DataFrame) -> list[DimensionBucket]:
    """One bucket per year, ascending. Time-series consumers rely on the order."""
    if df.empty:
        return []
    grouped = df.groupby("year", sort=False)[AMOUNT_COLUMNS].sum().sort_index()
    grouped.index = grouped.index.map(lambda y: str(int(y)))
    return _buckets_from_grouped(grouped)


def extract_filter_options(df: pd.DataFrame) -> FilterOptions:
    if df.empty:
        return FilterOptions(regions=[], years=[])
    regions = sorted({str(r) for r in df["region"]})
    years = sorted({int(y) for y in df["year"]})
    return FilterOptions(
        regions=regions, years=years, min_year=years[0], max_year=years[-1]
    )


def yearly_totals(df: pd.DataFrame) -> list[YearlyTotal]:
    """Loss/gain totals per distinct year, ascending."""
    if df.empty:
        return []
    grouped = df.groupby("year")[["loss_amount", "gain_amount"]].sum().sort_index()
    return [
        YearlyTotal(
            year=int(year),
            loss=float(row["loss_amount"]),
            gain=float(row["gain_amount"]),
        )
        for year, row in grouped.iterrows()
    ]


def _percent_change(first: float, last: float) -> Optional[float]:
    if first == 0:
        return None
    change = (last - first) / first * 100.0
    return change if math.isfinite(change) else None


def calculate_benchmarks(df: pd.DataFrame) -> list[Benchmark]:
    """
    Derive overall rates, best/worst region and first-to-last-year trends.

    Returns [] for an empty frame. Trend benchmarks need at least two
    distinct years.
    """
    if df.empty:
        return []

    sorted_df = df.sort_values("year", kind="stable")
    benchmarks: list[Benchmark] = []

    total_loss = float(sorted_df["loss_amount"].sum())
    total_gain = float(sorted_df["gain_amount"].sum())
    year_count = int(sorted_df["year"].nunique())

    benchmarks.append(
        Benchmark(
            kind=BenchmarkKind.OVERALL,
            name="Average Annual Deforestation",
            value=total_loss / year_count if year_count > 0 else 0.0,
            unit="ha/year",
        )
    )
    benchmarks.append(
        Benchmark(
            kind=BenchmarkKind.OVERALL,
            name="Average Annual Reforestation",
            value=total_gain / year_count if year_count > 0 else 0.0,
            unit="ha/year",
        )
    )
    benchmarks.append(
        Benchmark(
            kind=BenchmarkKind.OVERALL,
            name="Reforestation to Deforestation Ratio",
            value=total_gain / total_loss if total_loss > 0 else 0.0,
            unit="ratio",
        )
    )

    per_region = sorted_df.groupby("region", sort=False)[
        ["loss_amount", "gain_amount"]
    ].sum()
    performance = [
        (str(region), float(row["gain_amount"]) - float(row["loss_amount"]))
        for region, row in per_region.iterrows()
    ]
    performance.sort(key=lambda item: item[1], reverse=True)
    if performance:
        best_region, best_net = performance[0]
        worst_region, worst_net = performance[-1]
        benchmarks.append(
            Benchmark(
                kind=BenchmarkKind.STATE,
                name="Best Performing Region",
                value=best_net,
                unit="ha net gain",
                region=best_region,
            )
        )
        benchmarks.append(
            Benchmark(
                kind=BenchmarkKind.STATE,
                name="Most Challenged Region",
                value=worst_net,
                unit="ha net change",
                region=worst_region,
            )
        )

    totals = yearly_totals(sorted_df)
    if len(totals) >= 2:
        first, last = totals[0], totals[-1]
        period = f"{first.year}-{last.year}"
        benchmarks.append(
            Benchmark(
                kind=BenchmarkKind.TREND,
                name="Deforestation Trend",
                value=_percent_change(first.loss, last.loss),
                unit="% change",
                period=period,
            )
        )
        benchmarks.append(
            Benchmark(
                kind=BenchmarkKind.TREND,
                name="Reforestation Trend",
                value=_percent_change(first.gain, last.gain),
                unit="% change",
                period=period,
            )
        )

    return benchmarks


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_projections(df: pd.DataFrame) -> list[Projection]:
    """
    Extrapolate yearly totals with the mean year-over-year change.

    Emits one projection per horizon in PROJECTION_HORIZONS after the last
    observed year, plus an equilibrium projection when the loss and gain
    trends cross within EQUILIBRIUM_MAX_YEARS. Needs at least two distinct
    years; returns [] otherwise.
    """
    totals = yearly_totals(df)
    if len(totals) < 2:
        return []

    losses = np.array([t.loss for t in totals], dtype=float)
    gains = np.array([t.gain for t in totals], dtype=float)
    avg_loss_delta = float(np.mean(np.diff(losses)))
    avg_gain_delta = float(np.mean(np.diff(gains)))

    first_year = totals[0].year
    last_year = totals[-1].year
    last_loss = float(losses[-1])
    last_gain = float(gains[-1])

    projections: list[Projection] = []
    for horizon in PROJECTION_HORIZONS:
        projected_year = last_year + horizon
        projected_loss = max(0.0, last_loss + avg_loss_delta * horizon)
        projected_gain = max(0.0, last_gain + avg_gain_delta * horizon)
        projections.append(
            Projection(
                year=projected_year,
                loss_amount=projected_loss,
                gain_amount=projected_gain,
                net_change=projected_gain - projected_loss,
                description=(
                    f"Projected for {projected_year} based on "
                    f"{first_year}-{last_year} trends"
                ),
            )
        )

    if avg_loss_delta != avg_gain_delta:
        years_to_balance = (last_loss - last_gain) / (avg_gain_delta - avg_loss_delta)
        if 0 < years_to_balance < EQUILIBRIUM_MAX_YEARS:
            projections.append(
                Projection(
                    year=_round_half_up(last_year + years_to_balance),
                    loss_amount=max(0.0, last_loss + avg_loss_delta * years_to_balance),
                    gain_amount=max(0.0, last_gain + avg_gain_delta * years_to_balance),
                    net_change=0.0,
                    description="Projected equilibrium year (reforestation = deforestation)",
                    is_equilibrium=True,
                )
            )

    return projections
