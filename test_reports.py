"""
TEST FILE: REPORTS, EXPORTS AND CLI
Data summary HTML, heatmap / preview maps, layer downloads and the
lakeview command line
"""

import json

import folium
import pandas as pd
import pytest
from shapely.geometry import box, mapping

from lakeview_core import __main__ as cli
from lakeview_core.models.population_heatmap import PopulationHeatmapModel
from lakeview_core.models.spatial_upload import SpatialFileParser
from lakeview_core.models.stats_pivot import StatisticsPivotModel
from lakeview_core.reports.html_generator import MapReportGenerator, DataSummaryReportGenerator
from lakeview_core.utils.core import ReportExporter

PH_THRESHOLD = {'min_value': 6.5, 'max_value': 8.5}
LAKE = mapping(box(121.20, 14.30, 121.22, 14.32))

EVENTS = [
    {'id': 1, 'sampled_at': '2024-01-10T09:00:00', 'station': {'id': 1, 'name': 'Station A'},
     'results': [
         {'parameter_id': 1, 'parameter': {'name': 'pH', 'unit': ''}, 'value': 9.1, 'threshold': PH_THRESHOLD},
         {'parameter_id': 2, 'parameter': {'name': 'Color', 'unit': 'TCU'}, 'value': 'trace'},
     ]},
    {'id': 2, 'sampled_at': '2024-02-10T09:00:00', 'station': {'id': 1, 'name': 'Station A'},
     'results': [
         {'parameter_id': 1, 'parameter': {'name': 'pH', 'unit': ''}, 'value': 7.4, 'threshold': PH_THRESHOLD},
     ]},
]


@pytest.fixture
def pivot():
    return StatisticsPivotModel().monthly_pivot(EVENTS, station='1', year='2024')


def test_summary_html_highlights_thresholds(pivot):
    summaries = StatisticsPivotModel().yearly_summary(pivot)
    html = DataSummaryReportGenerator().render_html(pivot, summaries, {'lake_name': 'Taal <Lake>'})

    assert 'ds-cell-exceed">9.10<' in html
    assert 'ds-cell-ok">7.40<' in html
    assert '>trace<' in html
    assert 'Taal &lt;Lake&gt;' in html
    assert '50.0%' in html
    assert '—' in html
    assert 'width: 100%;' in html


def test_summary_html_empty_selection():
    pivot = StatisticsPivotModel().monthly_pivot(EVENTS, station='1', year='2019')
    html = DataSummaryReportGenerator().render_html(pivot, [])
    assert 'No samples for this selection.' in html


def test_heatmap_map_layers():
    points = pd.DataFrame([[121.21, 14.329, 120], [121.21, 14.333, 80]], columns=['X', 'Y', 'Z'])
    result = PopulationHeatmapModel().compute(points, LAKE, 2)

    m = MapReportGenerator().heatmap_map(result, LAKE, 'Test Lake')
    assert isinstance(m, folium.Map)
    html = m.get_root().render()
    assert 'Population within 2 km: 200' in html
    assert 'Population: 120' in html


def test_layer_preview_map_saved(tmp_path):
    generator = MapReportGenerator()
    m = generator.layer_preview_map(LAKE, 'Preview', body_type='watershed')
    path = generator.save(m, 'preview.html', tmp_path / 'maps')
    assert path.exists()
    assert 'Preview' in path.read_text(encoding='utf-8')


def test_layer_downloads():
    layer = {'id': 5, 'name': 'Taal & shore', 'notes': None, 'is_downloadable': True,
             'geom_geojson': json.dumps({'type': 'MultiPolygon', 'coordinates': [LAKE['coordinates']]})}

    geojson = json.loads(ReportExporter.layer_to_geojson(layer))
    assert geojson['features'][0]['properties'] == {'id': 5, 'name': 'Taal & shore'}

    kml = ReportExporter.layer_to_kml(layer)
    assert '<name>Taal &amp; shore</name>' in kml
    parsed = SpatialFileParser().parse(kml.encode('utf-8'), 'taal.kml')
    assert parsed.source_epsg == 4326
    assert len(parsed.features) == 1


def test_layer_kml_rejects_points():
    with pytest.raises(ValueError):
        ReportExporter.layer_to_kml({'id': 1, 'geometry': {'type': 'Point', 'coordinates': [121, 14]}}, admin=True)
    with pytest.raises(ValueError):
        ReportExporter.layer_to_geojson({'id': 2}, admin=True)


def test_layer_download_requires_flag_unless_admin():
    layer = {'id': 3, 'name': 'Private', 'is_downloadable': False, 'geometry': LAKE}
    with pytest.raises(PermissionError):
        ReportExporter.layer_to_geojson(layer)
    feature = json.loads(ReportExporter.layer_to_geojson(layer, admin=True))['features'][0]
    assert feature['geometry']['type'] == 'Polygon'


def test_cli_summary_writes_reports(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, 'REPORTS_DIR', tmp_path)
    events_file = tmp_path / 'events.json'
    events_file.write_text(json.dumps({'data': EVENTS}), encoding='utf-8')

    assert cli.main(['summary', '--events', str(events_file), '--station', '1', '--excel']) == 0

    out = capsys.readouterr().out
    assert 'compliance=50.0%' in out
    csv = pd.read_csv(tmp_path / 'data_summary_Station_A_2024.csv')
    assert list(csv.columns) == ['parameter', 'month', 'value']
    assert (tmp_path / 'data_summary_Station_A_2024.html').exists()
    assert set(pd.read_excel(tmp_path / 'data_summary_Station_A_2024.xlsx', sheet_name=None)) == {
        'Monthly', 'Summary'
    }


def test_cli_normalize(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli, 'EXPORTS_DIR', tmp_path)
    layer_file = tmp_path / 'lake.geojson'
    layer_file.write_text(json.dumps({
        'type': 'FeatureCollection',
        'features': [{'type': 'Feature', 'properties': {'name': 'Square Lake'}, 'geometry': LAKE}],
    }), encoding='utf-8')

    assert cli.main(['normalize', '--file', str(layer_file)]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert printed['name'] == 'Square Lake'
    assert printed['geometry']['type'] == 'MultiPolygon'
    assert (tmp_path / 'lake_4326.geojson').exists()
    assert (tmp_path / 'lake_preview.html').exists()


def test_cli_reports_errors(tmp_path):
    bad = tmp_path / 'notes.txt'
    bad.write_text('hello', encoding='utf-8')
    assert cli.main(['normalize', '--file', str(bad)]) == 1
