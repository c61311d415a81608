"""
TEST FILE: LAYER UPLOAD WIZARD & SPATIAL FILE NORMALIZATION
Polygons around Taal Lake, Batangas (~121.0°E, 14.0°N; UTM zone 51N)

Covers:
- GeoJSON / KML / zipped Shapefile / GeoPackage parsing
- CRS detection and reprojection to EPSG:4326 (round trip)
- Polygon -> MultiPolygon coercion
- Wizard step validation, payload and publishing
"""

import json
import zipfile
from unittest.mock import Mock

import geopandas as gpd
import pytest
from shapely.geometry import box, mapping, shape

from lakeview_core.models import spatial_upload
from lakeview_core.models.spatial_upload import (
    SpatialFileParser, LayerUploadWizard, guess_feature_label, UNSUPPORTED_FILE_MESSAGE
)
from lakeview_core.utils.core import ApiError, SpatialFileError, WizardValidationError
from lakeview_core.utils.geo_processor import GeoProcessor

TAAL = box(120.95, 13.95, 121.05, 14.05)
VOLCANO_ISLAND = box(120.98, 13.99, 121.01, 14.02)


def _feature(geom, **props):
    return {'type': 'Feature', 'properties': props, 'geometry': mapping(geom)}


def _collection(*features, crs=None):
    fc = {'type': 'FeatureCollection', 'features': list(features)}
    if crs:
        fc['crs'] = {'type': 'name', 'properties': {'name': crs}}
    return fc


def _bytes(obj):
    return json.dumps(obj).encode('utf-8')


KML = b"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2"><Document>
  <Placemark><name>Taal Lake</name>
    <Polygon>
      <outerBoundaryIs><LinearRing><coordinates>
        120.95,13.95,0 121.05,13.95,0 121.05,14.05,0 120.95,14.05,0 120.95,13.95,0
      </coordinates></LinearRing></outerBoundaryIs>
      <innerBoundaryIs><LinearRing><coordinates>
        120.98,13.99 121.01,13.99 121.01,14.02 120.98,14.02 120.98,13.99
      </coordinates></LinearRing></innerBoundaryIs>
    </Polygon>
  </Placemark>
  <Placemark><name>Twin lakes</name>
    <MultiGeometry>
      <Polygon><outerBoundaryIs><LinearRing><coordinates>
        121.1,14.1 121.2,14.1 121.2,14.2 121.1,14.1
      </coordinates></LinearRing></outerBoundaryIs></Polygon>
      <Polygon><outerBoundaryIs><LinearRing><coordinates>
        121.3,14.1 121.4,14.1 121.4,14.2 121.3,14.1
      </coordinates></LinearRing></outerBoundaryIs></Polygon>
    </MultiGeometry>
  </Placemark>
  <Placemark><name>Station</name><Point><coordinates>121.0,14.0</coordinates></Point></Placemark>
</Document></kml>
"""


# ---------------------------------------------------------------- CRS detection

@pytest.mark.parametrize('declared, expected', [
    ('EPSG:32651', 32651),
    ('EPSG::32651', 32651),
    ('urn:ogc:def:crs:EPSG::32651', 32651),
    ('urn:ogc:def:crs:OGC:1.3:CRS84', 4326),
    ('OGC:CRS84', 4326),
    (3123, 3123),
    ('4326', 4326),
    ({'type': 'name', 'properties': {'name': 'EPSG:3857'}}, 3857),
    ({'crs': {'type': 'name', 'properties': {'name': 'EPSG:32651'}}}, 32651),
    (None, None),
    ('', None),
])
def test_detect_epsg(declared, expected):
    assert GeoProcessor.detect_epsg(declared) == expected


def test_detect_epsg_from_wkt():
    from pyproj import CRS
    assert GeoProcessor.detect_epsg(CRS.from_epsg(32651).to_wkt()) == 32651


def test_detect_epsg_unknown_declaration_returns_none():
    assert GeoProcessor.detect_epsg('definitely not a crs') is None


# ---------------------------------------------------------------- parsing

def test_unsupported_extension():
    with pytest.raises(SpatialFileError) as exc:
        SpatialFileParser().parse(b'a,b', 'lake.csv')
    assert str(exc.value) == UNSUPPORTED_FILE_MESSAGE


def test_geojson_keeps_only_polygons():
    gj = _collection(_feature(TAAL, name='Taal'), {'type': 'Feature', 'properties': {},
                                                   'geometry': {'type': 'Point', 'coordinates': [121, 14]}})
    parsed = SpatialFileParser().parse(_bytes(gj), 'taal.geojson')
    assert parsed.source_epsg == 4326
    assert parsed.format == 'geojson'
    assert len(parsed.features) == 1


def test_geojson_bare_geometry_is_wrapped():
    parsed = SpatialFileParser().parse(_bytes(mapping(TAAL)), 'taal.json')
    assert parsed.features[0]['type'] == 'Feature'
    assert parsed.format == 'json'


def test_geojson_without_polygons_is_rejected():
    gj = {'type': 'Point', 'coordinates': [121, 14]}
    with pytest.raises(SpatialFileError):
        SpatialFileParser().parse(_bytes(gj), 'station.geojson')


def test_invalid_json_is_rejected():
    with pytest.raises(SpatialFileError, match='Invalid JSON'):
        SpatialFileParser().parse(b'{not json', 'broken.geojson')


def test_kml_polygons_with_holes_and_multigeometry():
    parsed = SpatialFileParser().parse(KML, 'lakes.kml')
    assert parsed.source_epsg == 4326
    assert [f['properties']['name'] for f in parsed.features] == ['Taal Lake', 'Twin lakes']

    taal = shape(parsed.features[0]['geometry'])
    assert taal.geom_type == 'Polygon'
    assert len(taal.interiors) == 1
    assert taal.area == pytest.approx(TAAL.area - VOLCANO_ISLAND.area)
    assert parsed.features[1]['geometry']['type'] == 'MultiPolygon'


def test_zipped_shapefile_reads_prj(tmp_path):
    utm = GeoProcessor.reproject(TAAL, 4326, 32651)
    gdf = gpd.GeoDataFrame({'NAME': ['Taal']}, geometry=[utm], crs='EPSG:32651')
    shp_dir = tmp_path / 'shp'
    shp_dir.mkdir()
    gdf.to_file(shp_dir / 'taal.shp')

    archive = tmp_path / 'taal.zip'
    with zipfile.ZipFile(archive, 'w') as zf:
        for part in shp_dir.iterdir():
            zf.write(part, part.name)

    parsed = SpatialFileParser().parse(archive)
    assert parsed.format == 'shp'
    assert parsed.source_epsg == 32651
    assert parsed.features[0]['properties']['NAME'] == 'Taal'


def test_geopackage_and_size_cap(tmp_path, monkeypatch):
    path = tmp_path / 'taal.gpkg'
    gpd.GeoDataFrame({'name': ['Taal']}, geometry=[TAAL], crs='EPSG:4326').to_file(path, driver='GPKG')

    parsed = SpatialFileParser().parse(path)
    assert parsed.format == 'gpkg'
    assert parsed.source_epsg == 4326

    monkeypatch.setattr(spatial_upload, 'GPKG_MAX_SIZE_BYTES', 10)
    with pytest.raises(SpatialFileError, match='too large'):
        SpatialFileParser().parse(path)


# ---------------------------------------------------------------- normalization

def test_projected_polygon_round_trip():
    utm = GeoProcessor.reproject(TAAL, 4326, 32651)
    gj = _collection(_feature(utm, name='Taal'), crs='urn:ogc:def:crs:EPSG::32651')

    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(gj), 'taal_utm.geojson')
    assert wizard.source_srid == 32651

    preview = shape(wizard.preview_geometry)
    assert preview.geom_type == 'MultiPolygon'
    assert preview.geoms[0].equals_exact(TAAL, 1e-6)

    back = GeoProcessor.reproject(preview, 4326, 32651)
    assert back.geoms[0].equals_exact(utm, 0.01)


def test_to_multipolygon_rejects_lines():
    with pytest.raises(ValueError):
        GeoProcessor.to_multipolygon({'type': 'LineString', 'coordinates': [[0, 0], [1, 1]]})


# ---------------------------------------------------------------- wizard

def test_feature_labels():
    assert guess_feature_label({'properties': {'lake_name': 'Taal'}}, 0) == 'Taal'
    assert guess_feature_label({'properties': {'NAME': '', 'ID': 7}}, 0) == '7'
    assert guess_feature_label({'properties': {}}, 2) == 'Feature 3'


def test_multiple_polygons_require_a_choice():
    gj = _collection(_feature(TAAL, name='Taal'), _feature(VOLCANO_ISLAND))
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(gj), 'lakes.geojson')

    assert wizard.steps == ['upload', 'choose', 'crs', 'link', 'metadata', 'publish']
    assert wizard.feature_labels() == ['Taal', 'Feature 2']
    assert wizard.current_step == 'choose'
    assert not wizard.can_advance('choose')

    with pytest.raises(WizardValidationError):
        wizard.choose_feature(5)
    assert wizard.error

    wizard.choose_feature(1)
    assert wizard.error is None
    assert wizard.can_advance('crs')
    assert shape(wizard.preview_geometry).geoms[0].equals_exact(VOLCANO_ISLAND, 1e-9)


def test_single_polygon_skips_choose_step():
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(_collection(_feature(TAAL, name='Taal Lake'))), 'taal.geojson')
    assert 'choose' not in wizard.steps
    assert wizard.name == 'Taal Lake'
    assert wizard.current_step == 'link'


def test_unknown_crs_blocks_until_srid_is_set():
    utm = GeoProcessor.reproject(TAAL, 4326, 32651)
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(_collection(_feature(utm))), 'taal.geojson')

    assert wizard.source_srid is None
    assert wizard.current_step == 'crs'
    with pytest.raises(WizardValidationError, match='SRID'):
        wizard.validate_step('crs')

    wizard.set_source_srid('EPSG:32651')
    wizard.validate_step('crs')
    assert shape(wizard.preview_geometry).geoms[0].equals_exact(TAAL, 1e-6)


def test_load_failure_is_recorded():
    wizard = LayerUploadWizard()
    with pytest.raises(WizardValidationError):
        wizard.load_file(b'', 'notes.txt')
    assert wizard.error == UNSUPPORTED_FILE_MESSAGE
    assert wizard.current_step == 'upload'


def test_bad_kml_coordinates_block_upload():
    bad = KML.replace(b"121.1,14.1", b"abc,14.1", 1)
    assert bad != KML

    with pytest.raises(SpatialFileError, match="Invalid KML coordinates"):
        SpatialFileParser().parse(bad, 'bad.kml')

    wizard = LayerUploadWizard()
    with pytest.raises(WizardValidationError):
        wizard.load_file(bad, 'bad.kml')
    assert "abc,14.1" in wizard.error
    assert wizard.current_step == 'upload'


def test_target_and_metadata_validation():
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(mapping(TAAL)), 'taal.geojson')

    with pytest.raises(WizardValidationError):
        wizard.set_target('river', 1)
    with pytest.raises(WizardValidationError):
        wizard.set_target('lake', None)
    wizard.set_target('lake', 3)

    with pytest.raises(WizardValidationError):
        wizard.set_metadata('   ')
    with pytest.raises(WizardValidationError):
        wizard.set_metadata('Taal', visibility='organization')
    wizard.set_metadata(' Taal outline ', category='Hydrology', visibility='admin', is_downloadable=True)
    assert wizard.current_step == 'publish'


def test_build_payload():
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(mapping(TAAL)), 'taal.geojson')
    wizard.set_target('watershed', 9)
    wizard.set_metadata('Taal basin', notes='from survey', is_downloadable=True)

    payload = wizard.build_payload()
    geom = json.loads(payload.pop('geom_geojson'))
    assert payload == {
        'body_type': 'watershed',
        'body_id': 9,
        'name': 'Taal basin',
        'type': 'base',
        'category': None,
        'srid': 4326,
        'source_srid': 4326,
        'visibility': 'public',
        'is_downloadable': True,
        'status': 'ready',
        'notes': 'from survey',
        'source_type': 'geojson',
    }
    assert geom['type'] == 'MultiPolygon'
    assert shape(geom).geoms[0].equals_exact(TAAL, 1e-9)


def test_publish_posts_layer_and_records_errors():
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(mapping(TAAL)), 'taal.geojson')
    wizard.set_target('lake', 3)
    wizard.set_metadata('Taal')

    client = Mock()
    client.create_layer.return_value = {'data': {'id': 42, 'name': 'Taal'}}
    assert wizard.publish(client) == {'id': 42, 'name': 'Taal'}
    assert client.create_layer.call_args[0][0]['name'] == 'Taal'

    client.create_layer.side_effect = ApiError(422, {'message': 'The name has already been taken.'})
    with pytest.raises(ApiError):
        wizard.publish(client)
    assert wizard.error == 'The name has already been taken.'


def test_build_payload_requires_complete_steps():
    wizard = LayerUploadWizard()
    wizard.load_file(_bytes(mapping(TAAL)), 'taal.geojson')
    with pytest.raises(WizardValidationError):
        wizard.build_payload()
