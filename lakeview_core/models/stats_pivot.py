"""
WATER-QUALITY STATISTICS PIVOT & COMPLIANCE ENGINE
Station x month pivot of sample results with yearly summaries.

Per parameter (and depth, when recorded) the engine keeps the most recently
sampled value for each calendar month, then summarizes the monthly series:
- Average: arithmetic mean, or geometric mean when the IQR test flags
  outliers and every value is positive
- Median
- Compliance: percent of months whose value lies within the threshold
"""

import math
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from dateutil import parser as date_parser
from scipy.stats import gmean

from lakeview_core.config.settings import (
    MONTH_NAMES, TIME_BUCKETS, OUTLIER_MIN_SAMPLES, OUTLIER_IQR_MULTIPLIER,
    COMPLIANCE_EMPTY_LABEL
)

logger = logging.getLogger(__name__)


@dataclass
class PivotCell:
    sampled_at: datetime
    value: Any
    unit: str = ''
    threshold: Optional[Dict[str, Any]] = None


@dataclass
class PivotRow:
    name: str
    key: str
    cells: List[Optional[PivotCell]]
    unit: str = ''
    threshold: Optional[Dict[str, Any]] = None
    has_depth_explicit: bool = False
    depth: Optional[float] = None
    show_depth: bool = False

    @property
    def label(self) -> str:
        if self.show_depth:
            return f"{self.name} ({self.depth:g} m)"
        return self.name

    def numeric_values(self) -> List[float]:
        return [v for v in (_to_number(c.value) for c in self.cells if c is not None) if v is not None]


@dataclass
class MonthlyPivot:
    months: List[int]
    rows: List[PivotRow] = field(default_factory=list)

    @property
    def month_labels(self) -> List[str]:
        return [MONTH_NAMES[m] for m in self.months]

    @property
    def is_empty(self) -> bool:
        return not self.rows


@dataclass
class ParameterSummary:
    name: str
    label: str
    unit: str
    count: int
    has_outliers: bool
    average: Optional[float]
    average_method: str
    median: Optional[float]
    meet: int
    total: int
    compliance_percent: Optional[float]

    @property
    def compliance_label(self) -> str:
        if self.compliance_percent is None:
            return COMPLIANCE_EMPTY_LABEL
        return f"{self.compliance_percent:.1f}%"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parameter': self.label,
            'unit': self.unit,
            'count': self.count,
            'average': self.average,
            'average_method': self.average_method,
            'median': self.median,
            'has_outliers': self.has_outliers,
            'meet': self.meet,
            'total': self.total,
            'compliance': self.compliance_label,
        }


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def _parse_date(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return date_parser.isoparse(str(raw))
    except (ValueError, OverflowError):
        try:
            return date_parser.parse(str(raw))
        except (ValueError, OverflowError):
            logger.debug(f"Skipping unparsable sampled_at: {raw!r}")
            return None


def _station_of(event: Dict[str, Any]) -> Tuple[Optional[str], str]:
    station = event.get('station') or {}
    station_id = str(station['id']) if station.get('id') is not None else None
    name = station.get('name') or event.get('station_name') or ''
    return station_id, name


def _parameter_name(result: Dict[str, Any]) -> str:
    param = result.get('parameter') or {}
    return param.get('name') or param.get('code') or str(result.get('parameter_id') or '')


def _unit_of(result: Dict[str, Any]) -> str:
    return (result.get('parameter') or {}).get('unit') or result.get('unit') or ''


def has_threshold(threshold: Optional[Dict[str, Any]]) -> bool:
    return bool(threshold) and (threshold.get('min_value') is not None or threshold.get('max_value') is not None)


def within_threshold(value: float, threshold: Dict[str, Any]) -> bool:
    """Inclusive [min, max] check; a missing bound is open"""
    lo = _to_number(threshold.get('min_value'))
    hi = _to_number(threshold.get('max_value'))
    if lo is not None and value < lo:
        return False
    if hi is not None and value > hi:
        return False
    return True


class StatisticsPivotModel:
    """Sample events -> flat rows, monthly pivots and yearly summaries"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------ statistics

    @staticmethod
    def has_outliers(values: Iterable[float]) -> bool:
        """IQR test with linear-interpolated quartiles; needs at least 4 values"""
        arr = np.asarray([v for v in values if v is not None], dtype=float)
        if len(arr) < OUTLIER_MIN_SAMPLES:
            return False
        q1, q3 = np.percentile(arr, [25, 75])
        iqr = q3 - q1
        lower = q1 - OUTLIER_IQR_MULTIPLIER * iqr
        upper = q3 + OUTLIER_IQR_MULTIPLIER * iqr
        return bool(np.any((arr < lower) | (arr > upper)))

    @staticmethod
    def arithmetic_mean(values: Iterable[float]) -> Optional[float]:
        arr = np.asarray(list(values), dtype=float)
        return float(arr.mean()) if len(arr) else None

    @staticmethod
    def geometric_mean(values: Iterable[float]) -> Optional[float]:
        arr = np.asarray(list(values), dtype=float)
        if not len(arr) or np.any(arr <= 0):
            return None
        return float(gmean(arr))

    @staticmethod
    def median(values: Iterable[float]) -> Optional[float]:
        arr = np.asarray(list(values), dtype=float)
        return float(np.median(arr)) if len(arr) else None

    @staticmethod
    def compliance(cells: Iterable[Optional[PivotCell]],
                   fallback_threshold: Optional[Dict[str, Any]] = None) -> Tuple[int, int, Optional[float]]:
        """
        Months meeting their threshold

        Returns (meet, total, percent). ``total`` counts only months with a
        numeric value and a resolvable threshold; percent is None when it is 0.
        """
        meet = total = 0
        for cell in cells:
            if cell is None:
                continue
            value = _to_number(cell.value)
            if value is None:
                continue
            threshold = cell.threshold if has_threshold(cell.threshold) else fallback_threshold
            if not has_threshold(threshold):
                continue
            total += 1
            if within_threshold(value, threshold):
                meet += 1
        percent = 100.0 * meet / total if total else None
        return meet, total, percent

    # ------------------------------------------------------------------ filters

    @staticmethod
    def _matches(event: Dict[str, Any], station: Optional[str], year: Optional[Any]) -> bool:
        if station not in (None, ''):
            station_id, name = _station_of(event)
            if str(station) not in (station_id, name):
                return False
        if year not in (None, ''):
            sampled = _parse_date(event.get('sampled_at'))
            if sampled is None or str(sampled.year) != str(year):
                return False
        return True

    def flatten_rows(self, events: List[Dict[str, Any]], station: Optional[str] = None,
                     year: Optional[Any] = None) -> List[Dict[str, Any]]:
        """One row per result, for the flat table and CSV export"""
        rows = []
        for ev in events or []:
            if not self._matches(ev, station, year):
                continue
            sampled = _parse_date(ev.get('sampled_at'))
            _, station_name = _station_of(ev)
            for r in ev.get('results') or []:
                rows.append({
                    'id': f"{ev.get('id')}-{r.get('parameter_id')}",
                    'station': station_name,
                    'date': sampled.strftime('%Y-%m-%d') if sampled else '',
                    'parameter': _parameter_name(r),
                    'value': r.get('value'),
                    'unit': _unit_of(r),
                    'threshold': r.get('threshold') or None,
                    'org': ev.get('organization_name') or '',
                })
        return rows

    @staticmethod
    def station_options(events: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Distinct stations in first-seen order, keyed by id when available"""
        seen: Dict[str, str] = {}
        for ev in events or []:
            station_id, name = _station_of(ev)
            if station_id is not None:
                seen.setdefault(station_id, name or station_id)
            elif name:
                seen.setdefault(name, name)
        return [{'id': k, 'name': v} for k, v in seen.items()]

    @staticmethod
    def year_options(events: List[Dict[str, Any]]) -> List[str]:
        years = {d.year for d in (_parse_date(ev.get('sampled_at')) for ev in events or []) if d}
        return [str(y) for y in sorted(years, reverse=True)]

    @staticmethod
    def latest_year(events: List[Dict[str, Any]], station: str) -> Optional[str]:
        """Most recent sampling year for a station, used as the default year"""
        years = [
            d.year for d in (
                _parse_date(ev.get('sampled_at')) for ev in events or []
                if StatisticsPivotModel._matches(ev, station, None)
            ) if d
        ]
        return str(max(years)) if years else None

    # ------------------------------------------------------------------ pivot

    def monthly_pivot(self, events: List[Dict[str, Any]], station: str,
                      year: Optional[Any] = None) -> MonthlyPivot:
        """Parameter (x depth) by month pivot for one station"""
        month_set = set()
        groups: Dict[str, Dict[str, Any]] = {}

        for ev in events or []:
            if not self._matches(ev, station, year):
                continue
            sampled = _parse_date(ev.get('sampled_at'))
            if sampled is None:
                continue
            month = sampled.month - 1
            month_set.add(month)

            for r in ev.get('results') or []:
                name = _parameter_name(r)
                explicit = 'depth_m' in r
                depth = (0 if r['depth_m'] is None else r['depth_m']) if explicit else None
                key = f"{name}::depth:{depth}" if explicit else name
                unit = _unit_of(r)
                threshold = r.get('threshold') or None

                entry = groups.get(key)
                if entry is None:
                    entry = groups[key] = {
                        'name': name,
                        'explicit': explicit,
                        'depth': depth,
                        'depth_was_null': explicit and r['depth_m'] is None,
                        'threshold': None,
                        'unit': unit,
                        'cells': {},
                    }

                prev = entry['cells'].get(month)
                if prev is None or _later(sampled, prev.sampled_at):
                    entry['cells'][month] = PivotCell(sampled, r.get('value'), unit, threshold)
                if threshold and not entry['threshold']:
                    entry['threshold'] = threshold
                if not entry['unit'] and unit:
                    entry['unit'] = unit

        months = sorted(month_set)

        explicit_counts: Dict[str, int] = {}
        for entry in groups.values():
            if entry['explicit']:
                explicit_counts[entry['name']] = explicit_counts.get(entry['name'], 0) + 1

        rows = []
        for key, entry in groups.items():
            show_depth = False
            if entry['explicit']:
                only_null = entry['depth_was_null'] and explicit_counts.get(entry['name']) == 1
                show_depth = not only_null
            rows.append(PivotRow(
                name=entry['name'],
                key=key,
                cells=[entry['cells'].get(m) for m in months],
                unit=entry['unit'],
                threshold=entry['threshold'],
                has_depth_explicit=entry['explicit'],
                depth=_to_number(entry['depth']) if entry['explicit'] else None,
                show_depth=show_depth,
            ))

        self.logger.info(f"Pivot for station {station!r} year {year or 'all'}: "
                         f"{len(rows)} parameter rows x {len(months)} months")
        return MonthlyPivot(months=months, rows=rows)

    def yearly_summary(self, pivot: MonthlyPivot,
                       parameter_thresholds: Optional[Dict[str, Dict[str, Any]]] = None,
                       detect_outliers: bool = True) -> List[ParameterSummary]:
        """Average / median / compliance per pivot row"""
        summaries = []
        for row in pivot.rows:
            values = row.numeric_values()
            outliers = detect_outliers and self.has_outliers(values)

            if outliers and values and all(v > 0 for v in values):
                average, method = self.geometric_mean(values), 'geometric'
            else:
                average, method = self.arithmetic_mean(values), 'arithmetic'

            fallback = (parameter_thresholds or {}).get(row.name) or row.threshold
            meet, total, percent = self.compliance(row.cells, fallback)

            summaries.append(ParameterSummary(
                name=row.name,
                label=row.label,
                unit=row.unit,
                count=len(values),
                has_outliers=outliers,
                average=average,
                average_method=method,
                median=self.median(values),
                meet=meet,
                total=total,
                compliance_percent=percent,
            ))
        return summaries

    # ------------------------------------------------------------------ time buckets

    @staticmethod
    def bucket_key(sampled: datetime, bucket: str) -> str:
        if bucket == 'month':
            return f"{sampled.year}-{sampled.month:02d}"
        if bucket == 'quarter':
            return f"{sampled.year}-Q{(sampled.month - 1) // 3 + 1}"
        if bucket == 'year':
            return str(sampled.year)
        raise ValueError(f"Unknown bucket {bucket!r}; expected one of {', '.join(TIME_BUCKETS)}")

    def bucket_series(self, events: List[Dict[str, Any]], parameter: str,
                      bucket: str = 'month', station: Optional[str] = None) -> List[Dict[str, Any]]:
        """Mean value of one parameter per month / quarter / year"""
        if bucket not in TIME_BUCKETS:
            raise ValueError(f"Unknown bucket {bucket!r}; expected one of {', '.join(TIME_BUCKETS)}")

        records = []
        for ev in events or []:
            if not self._matches(ev, station, None):
                continue
            sampled = _parse_date(ev.get('sampled_at'))
            if sampled is None:
                continue
            for r in ev.get('results') or []:
                param = r.get('parameter') or {}
                ids = {_parameter_name(r), param.get('code'), str(r.get('parameter_id'))}
                if str(parameter) not in ids:
                    continue
                value = _to_number(r.get('value'))
                if value is not None:
                    records.append({'bucket': self.bucket_key(sampled, bucket), 'value': value})

        if not records:
            return []

        df = pd.DataFrame(records)
        grouped = df.groupby('bucket')['value'].agg(['mean', 'count']).sort_index()
        return [
            {'bucket': key, 'value': float(row['mean']), 'count': int(row['count'])}
            for key, row in grouped.iterrows()
        ]

    # ------------------------------------------------------------------ export shapes

    @staticmethod
    def pivot_to_csv_rows(pivot: MonthlyPivot) -> List[Dict[str, Any]]:
        out = []
        for row in pivot.rows:
            for month, cell in zip(pivot.months, row.cells):
                out.append({
                    'parameter': row.name,
                    'month': MONTH_NAMES[month],
                    'value': cell.value if cell is not None else '',
                })
        return out

    @staticmethod
    def pivot_to_frame(pivot: MonthlyPivot) -> pd.DataFrame:
        """Wide table: one row per parameter label, one column per month"""
        frame = pd.DataFrame(
            [[cell.value if cell is not None else None for cell in row.cells] for row in pivot.rows],
            index=pd.Index([row.label for row in pivot.rows], name='parameter'),
            columns=pivot.month_labels,
        )
        return frame

    @staticmethod
    def summary_to_frame(summaries: List[ParameterSummary]) -> pd.DataFrame:
        return pd.DataFrame([s.to_dict() for s in summaries])


def _later(a: datetime, b: datetime) -> bool:
    """a > b, tolerating a mix of naive and aware datetimes"""
    try:
        return a > b
    except TypeError:
        return a.replace(tzinfo=None) > b.replace(tzinfo=None)
