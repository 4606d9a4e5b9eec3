"""
Period returns and CAGR for a scheme's NAV history.

For every named lookback the anchor is the quote nearest to
`as_of_date - lookback` (ties go to the earlier date). A period is absent,
never zero, when history does not reach back to the anchor date.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

import pandas as pd

from .core import bg_logger, DataQualityError
from .models import NavPoint, ReturnsSnapshot

DAYS_PER_YEAR = 365
SINCE_INCEPTION = "since_inception"


@dataclass(frozen=True)
class Period:
    key: str
    label: str
    days: int

    @property
    def annualized(self) -> bool:
        return self.days >= DAYS_PER_YEAR


PERIODS = (
    Period("1w", "1 Week", 7),
    Period("1m", "1 Month", 30),
    Period("3m", "3 Months", 91),
    Period("6m", "6 Months", 182),
    Period("1y", "1 Year", 365),
    Period("2y", "2 Years", 730),
    Period("3y", "3 Years", 1095),
    Period("5y", "5 Years", 1825),
    Period("7y", "7 Years", 2555),
    Period("10y", "10 Years", 3650),
)


def simple_return(start_value: float, end_value: float) -> float:
    """Percentage change from start_value to end_value."""
    if start_value <= 0:
        raise DataQualityError(f"non-positive anchor NAV {start_value}")
    return (end_value - start_value) / start_value * 100


def cagr(start_value: float, end_value: float, days: int) -> float:
    """Compound annual growth rate in percent over a span of days."""
    if start_value <= 0:
        raise DataQualityError(f"non-positive anchor NAV {start_value}")
    if days <= 0:
        raise ValueError("CAGR needs a positive span")
    return ((end_value / start_value) ** (DAYS_PER_YEAR / days) - 1) * 100


def to_series(history: Iterable[NavPoint]) -> pd.Series:
    """NAV values indexed by date, ascending; a repeated date keeps its last value."""
    points = list(history)
    if not points:
        return pd.Series(dtype=float, index=pd.DatetimeIndex([]))

    series = pd.Series(
        [p.value for p in points],
        index=pd.DatetimeIndex([pd.Timestamp(p.date) for p in points]),
        dtype=float,
    )
    series = series[~series.index.duplicated(keep="last")]
    return series.sort_index()


def nearest_anchor(series: pd.Series, target: pd.Timestamp) -> Optional[pd.Timestamp]:
    """
    Date in series closest to target, preferring the earlier date on a tie.

    None when the series starts after target: history does not cover the window.
    """
    index = series.index
    if index.empty or index[0] > target:
        return None

    pos = index.searchsorted(target)
    if pos >= len(index):
        return index[-1]

    after = index[pos]
    if pos == 0 or after == target:
        return after

    before = index[pos - 1]
    if (target - before) <= (after - target):
        return before
    return after


def compute_returns(
    scheme_code: str,
    history: Iterable[NavPoint],
    as_of_date: date,
    inception: NavPoint | None = None,
) -> ReturnsSnapshot:
    """
    Build the returns snapshot for one scheme as of a reference date.

    Args:
        scheme_code: Scheme the history belongs to.
        history: NAV points in any order; points after as_of_date are ignored.
        as_of_date: Reference date; the latest quote on or before it is the end value.
        inception: Earliest point ever recorded, when history is a bounded window.

    Returns:
        ReturnsSnapshot; empty when there is nothing to compare against.
    """
    as_of = pd.Timestamp(as_of_date)
    series = to_series(history)
    series = series[series.index <= as_of]

    snapshot = ReturnsSnapshot(scheme_code=scheme_code)
    if series.empty:
        return snapshot

    latest_date = series.index[-1]
    latest_value = float(series.iloc[-1])
    snapshot.as_of_date = latest_date.date()
    snapshot.latest_nav = latest_value

    if latest_value <= 0:
        _record_anomaly(snapshot, f"non-positive latest NAV {latest_value} on {latest_date.date()}")
        return snapshot

    for period in PERIODS:
        anchor_date = nearest_anchor(series, as_of - pd.Timedelta(days=period.days))
        if anchor_date is None or anchor_date >= latest_date:
            continue

        anchor_value = float(series[anchor_date])
        try:
            snapshot.period_returns[period.key] = simple_return(anchor_value, latest_value)
            if period.annualized:
                snapshot.cagrs[period.key] = cagr(anchor_value, latest_value, period.days)
        except DataQualityError as e:
            _record_anomaly(snapshot, f"{period.key}: {e} on {anchor_date.date()}")

    _add_since_inception(snapshot, series, latest_date, latest_value, inception)
    return snapshot


def _add_since_inception(
    snapshot: ReturnsSnapshot,
    series: pd.Series,
    latest_date: pd.Timestamp,
    latest_value: float,
    inception: NavPoint | None,
) -> None:
    if inception is not None and pd.Timestamp(inception.date) <= series.index[0]:
        start_date, start_value = pd.Timestamp(inception.date), inception.value
    else:
        start_date, start_value = series.index[0], float(series.iloc[0])

    if start_date >= latest_date:
        return

    span_days = (latest_date - start_date).days
    try:
        snapshot.period_returns[SINCE_INCEPTION] = simple_return(start_value, latest_value)
        if span_days >= DAYS_PER_YEAR:
            snapshot.cagrs[SINCE_INCEPTION] = cagr(start_value, latest_value, span_days)
    except DataQualityError as e:
        _record_anomaly(snapshot, f"{SINCE_INCEPTION}: {e} on {start_date.date()}")


def _record_anomaly(snapshot: ReturnsSnapshot, message: str) -> None:
    snapshot.anomalies.append(message)
    bg_logger.warning(f"Data quality issue for scheme {snapshot.scheme_code}: {message}")
