"""
TEST FILE: WATER-QUALITY DATA SUMMARY
Monthly pivot, yearly averages (arithmetic / geometric), median and
threshold compliance for a single monitoring station
"""

import pandas as pd
import pytest

from lakeview_core.models.stats_pivot import StatisticsPivotModel, PivotCell

PH_THRESHOLD = {'min_value': 6.5, 'max_value': 8.5}
STATION = {'id': 1, 'name': 'Station A'}


def _event(event_id, sampled_at, results, station=STATION, org='LLDA'):
    return {
        'id': event_id,
        'sampled_at': sampled_at,
        'station': station,
        'organization_name': org,
        'results': results,
    }


def _result(name, value, parameter_id=1, unit='mg/L', threshold=None, **extra):
    result = {
        'parameter_id': parameter_id,
        'parameter': {'name': name, 'code': name.upper(), 'unit': unit},
        'value': value,
        'threshold': threshold,
    }
    result.update(extra)
    return result


@pytest.fixture
def model():
    return StatisticsPivotModel()


@pytest.fixture
def iqr_events():
    return [
        _event(1, '2024-01-15T08:00:00', [_result('Fecal Coliform', 5)]),
        _event(2, '2024-02-15T08:00:00', [_result('Fecal Coliform', 7)]),
        _event(3, '2024-03-15T08:00:00', [_result('Fecal Coliform', 6)]),
        _event(4, '2024-04-15T08:00:00', [_result('Fecal Coliform', 100)]),
    ]


def test_has_outliers_needs_four_values(model):
    assert model.has_outliers([1, 2, 1000]) is False
    assert model.has_outliers([1, 2, 3, 1000]) is True
    assert model.has_outliers([5, 6, 7, 8]) is False


def test_iqr_example_switches_to_geometric_mean(model, iqr_events):
    pivot = model.monthly_pivot(iqr_events, station='1', year='2024')
    assert pivot.months == [0, 1, 2, 3]

    [summary] = model.yearly_summary(pivot)
    assert summary.has_outliers
    assert summary.average_method == 'geometric'
    assert summary.average == pytest.approx((5 * 7 * 6 * 100) ** 0.25)
    assert summary.median == pytest.approx(6.5)


def test_outlier_detection_can_be_disabled(model, iqr_events):
    pivot = model.monthly_pivot(iqr_events, station='1')
    [summary] = model.yearly_summary(pivot, detect_outliers=False)
    assert summary.average_method == 'arithmetic'
    assert summary.average == pytest.approx(29.5)


def test_geometric_mean_requires_positive_values(model):
    events = [
        _event(i, f'2024-{m:02d}-10', [_result('Turbidity', v)])
        for i, (m, v) in enumerate([(1, 0), (2, 6), (3, 7), (4, 100)], start=1)
    ]
    [summary] = model.yearly_summary(model.monthly_pivot(events, station='Station A'))
    assert summary.has_outliers
    assert summary.average_method == 'arithmetic'
    assert summary.average == pytest.approx(28.25)


def test_latest_sample_wins_within_a_month(model):
    events = [
        _event(2, '2024-01-20T10:00:00', [_result('pH', 9.0)]),
        _event(1, '2024-01-05T10:00:00', [_result('pH', 5.0)]),
        _event(3, '2024-01-20T10:00:00', [_result('pH', 1.0)]),  # same instant, not later
    ]
    pivot = model.monthly_pivot(events, station='1')
    [row] = pivot.rows
    assert [c.value for c in row.cells] == [9.0]


def test_compliance_counts_only_months_with_threshold(model):
    events = [
        _event(1, '2024-01-10', [_result('pH', 7.0, threshold=PH_THRESHOLD)]),
        _event(2, '2024-02-10', [_result('pH', 9.0, threshold=PH_THRESHOLD)]),
        _event(3, '2024-03-10', [_result('pH', 8.5, threshold=PH_THRESHOLD)]),
        _event(4, '2024-04-10', [_result('Color', 3.0)]),
    ]
    summaries = {s.name: s for s in model.yearly_summary(model.monthly_pivot(events, station='1'))}

    ph = summaries['pH']
    assert (ph.meet, ph.total) == (2, 3)
    assert ph.compliance_percent == pytest.approx(100 * 2 / 3)
    assert ph.compliance_label == '66.7%'

    color = summaries['Color']
    assert color.total == 0
    assert color.compliance_percent is None
    assert color.compliance_label == '—'


def test_parameter_threshold_fallback_and_cell_precedence(model):
    events = [
        _event(1, '2024-01-10', [_result('DO', 4.0)]),
        _event(2, '2024-02-10', [_result('DO', 6.0)]),
        _event(3, '2024-03-10', [_result('DO', 4.5, threshold={'min_value': 4.0, 'max_value': None})]),
    ]
    pivot = model.monthly_pivot(events, station='1')

    # the March cell keeps its own threshold; other months use the fallback (min 5)
    [summary] = model.yearly_summary(pivot, parameter_thresholds={'DO': {'min_value': 5, 'max_value': None}})
    assert (summary.meet, summary.total) == (2, 3)

    # without an explicit fallback the row's representative threshold (min 4) applies
    [summary] = model.yearly_summary(pivot)
    assert (summary.meet, summary.total) == (3, 3)


def test_compliance_helper_is_inclusive():
    cells = [PivotCell(None, v) for v in (6.5, 8.5, 6.4, 'n/a')] + [None]
    meet, total, percent = StatisticsPivotModel.compliance(cells, PH_THRESHOLD)
    assert (meet, total) == (2, 3)
    assert percent == pytest.approx(100 * meet / total)


def test_depth_rows_and_show_depth(model):
    events = [
        _event(1, '2024-05-01', [
            _result('Temperature', 29.1, depth_m=0.5),
            _result('Temperature', 27.3, depth_m=5),
            _result('Chlorophyll', 12.0, parameter_id=2, depth_m=None),
            _result('Nitrate', 0.4, parameter_id=3),
        ]),
    ]
    rows = {r.key: r for r in model.monthly_pivot(events, station='1').rows}

    assert set(rows) == {'Temperature::depth:0.5', 'Temperature::depth:5', 'Chlorophyll::depth:0', 'Nitrate'}
    assert rows['Temperature::depth:0.5'].show_depth
    assert rows['Temperature::depth:0.5'].label == 'Temperature (0.5 m)'
    assert not rows['Chlorophyll::depth:0'].show_depth
    assert rows['Chlorophyll::depth:0'].label == 'Chlorophyll'
    assert not rows['Nitrate'].has_depth_explicit


def test_representative_threshold_and_unit_are_first_seen(model):
    events = [
        _event(1, '2024-01-10', [_result('BOD', 2.0, unit='', threshold=None)]),
        _event(2, '2024-02-10', [_result('BOD', 3.0, unit='mg/L', threshold={'min_value': None, 'max_value': 5})]),
        _event(3, '2024-03-10', [_result('BOD', 4.0, unit='ppm', threshold={'min_value': None, 'max_value': 7})]),
    ]
    [row] = model.monthly_pivot(events, station='1').rows
    assert row.threshold == {'min_value': None, 'max_value': 5}
    assert row.unit == 'mg/L'


def test_station_and_year_filters(model):
    other = {'id': 2, 'name': 'Station B'}
    events = [
        _event(1, '2023-06-01', [_result('pH', 7.1)]),
        _event(2, '2024-06-01', [_result('pH', 7.2)]),
        _event(3, '2024-07-01', [_result('pH', 7.3)], station=other),
    ]
    assert model.station_options(events) == [{'id': '1', 'name': 'Station A'}, {'id': '2', 'name': 'Station B'}]
    assert model.year_options(events) == ['2024', '2023']
    assert model.latest_year(events, 'Station A') == '2024'

    pivot = model.monthly_pivot(events, station='Station A', year=2024)
    assert pivot.month_labels == ['Jun']
    assert [c.value for c in pivot.rows[0].cells] == [7.2]


def test_station_options_fall_back_to_station_name():
    events = [{'id': 1, 'sampled_at': '2024-01-01', 'station_name': 'Pier', 'results': []}]
    assert StatisticsPivotModel.station_options(events) == [{'id': 'Pier', 'name': 'Pier'}]


def test_flatten_rows(model):
    events = [
        _event(10, '2024-03-04T23:00:00', [_result('pH', 7.0, parameter_id=5, threshold=PH_THRESHOLD)]),
        _event(11, '2023-03-04', [_result('pH', 6.0, parameter_id=5)]),
    ]
    rows = model.flatten_rows(events, year='2024')
    assert rows == [{
        'id': '10-5',
        'station': 'Station A',
        'date': '2024-03-04',
        'parameter': 'pH',
        'value': 7.0,
        'unit': 'mg/L',
        'threshold': PH_THRESHOLD,
        'org': 'LLDA',
    }]


def test_bucket_series(model):
    events = [
        _event(1, '2024-01-10', [_result('pH', 7.0)]),
        _event(2, '2024-02-10', [_result('pH', 8.0)]),
        _event(3, '2024-04-10', [_result('pH', 6.0)]),
        _event(4, '2023-12-10', [_result('pH', 'n/a')]),
    ]
    assert model.bucket_series(events, 'pH', 'quarter') == [
        {'bucket': '2024-Q1', 'value': 7.5, 'count': 2},
        {'bucket': '2024-Q2', 'value': 6.0, 'count': 1},
    ]
    assert [b['bucket'] for b in model.bucket_series(events, 'PH', 'month')] == ['2024-01', '2024-02', '2024-04']
    assert model.bucket_series(events, 'pH', 'year') == [{'bucket': '2024', 'value': 7.0, 'count': 3}]

    with pytest.raises(ValueError):
        model.bucket_series(events, 'pH', 'week')


def test_pivot_to_csv_rows_and_frame(model):
    events = [
        _event(1, '2024-01-10', [_result('pH', 7.0)]),
        _event(2, '2024-03-10', [_result('pH', 7.5), _result('DO', 5.0, parameter_id=2)]),
    ]
    pivot = model.monthly_pivot(events, station='1')
    assert model.pivot_to_csv_rows(pivot) == [
        {'parameter': 'pH', 'month': 'Jan', 'value': 7.0},
        {'parameter': 'pH', 'month': 'Mar', 'value': 7.5},
        {'parameter': 'DO', 'month': 'Jan', 'value': ''},
        {'parameter': 'DO', 'month': 'Mar', 'value': 5.0},
    ]

    frame = model.pivot_to_frame(pivot)
    assert list(frame.columns) == ['Jan', 'Mar']
    assert frame.loc['DO', 'Mar'] == 5.0
    assert pd.isna(frame.loc["DO", "Jan"])
