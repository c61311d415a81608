"""
SPATIAL FILE NORMALIZATION & LAYER UPLOAD WIZARD
Turns uploaded GeoJSON / KML / zipped Shapefile / GeoPackage files into a
single EPSG:4326 MultiPolygon ready to be published as a lake or watershed
layer.

Wizard steps:
    upload -> choose (several polygons only) -> crs -> link -> metadata -> publish
"""

import json
import os
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import geopandas as gpd
from pyproj.exceptions import CRSError
from shapely.geometry import mapping, Polygon, MultiPolygon

from lakeview_core.config.settings import (
    ACCEPTED_UPLOAD_EXTENSIONS, GPKG_MAX_SIZE_BYTES, DEFAULT_SRID,
    LAYER_BODY_TYPES, LAYER_VISIBILITY_OPTIONS, FEATURE_LABEL_KEYS, KML_NAMESPACE
)
from lakeview_core.utils.core import ApiError, SpatialFileError, WizardValidationError
from lakeview_core.utils.geo_processor import GeoProcessor, polygon_features

logger = logging.getLogger(__name__)

UNSUPPORTED_FILE_MESSAGE = "Only .geojson, .json, .kml, .zip (shapefile), or .gpkg are supported."

WIZARD_STEPS = ('upload', 'choose', 'crs', 'link', 'metadata', 'publish')


@dataclass
class ParsedSpatialFile:
    """Parsed upload: polygon features in the file's own CRS"""
    feature_collection: Dict[str, Any]
    source_epsg: Optional[int]
    filename: str
    format: str

    @property
    def features(self) -> List[Dict[str, Any]]:
        return self.feature_collection.get('features', [])


def guess_feature_label(feature: Dict[str, Any], idx: int) -> str:
    props = (feature or {}).get('properties') or {}
    for key in FEATURE_LABEL_KEYS:
        value = props.get(key)
        if value not in (None, ''):
            return str(value)
    return f"Feature {idx + 1}"


def _looks_geographic(geojson: Dict[str, Any]) -> bool:
    """True when every coordinate fits lon/lat ranges"""
    try:
        shapes = [GeoProcessor.to_shape(f) for f in polygon_features(geojson)]
    except (ValueError, TypeError):
        return True
    for geom in shapes:
        minx, miny, maxx, maxy = geom.bounds
        if minx < -180 or maxx > 180 or miny < -90 or maxy > 90:
            return False
    return True


class SpatialFileParser:
    """Reads supported spatial formats into GeoJSON polygon features"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def detect_format(filename: str) -> str:
        ext = Path(str(filename)).suffix.lower()
        if ext not in ACCEPTED_UPLOAD_EXTENSIONS:
            raise SpatialFileError(UNSUPPORTED_FILE_MESSAGE)
        return {'.geojson': 'geojson', '.json': 'json', '.kml': 'kml',
                '.zip': 'shp', '.gpkg': 'gpkg'}[ext]

    def parse(self, source: Union[str, Path, bytes], filename: Optional[str] = None) -> ParsedSpatialFile:
        """
        Parse a path or raw bytes into a ParsedSpatialFile

        Raises:
            SpatialFileError: unsupported extension, unreadable content or no
                polygon features
        """
        if filename is None:
            if isinstance(source, (bytes, bytearray)):
                raise SpatialFileError("A filename is required when parsing raw bytes")
            filename = Path(source).name
        fmt = self.detect_format(filename)

        if fmt in ('geojson', 'json'):
            geojson, epsg = self._parse_geojson(self._read_bytes(source))
        elif fmt == 'kml':
            geojson, epsg = self._parse_kml(self._read_bytes(source))
        else:
            geojson, epsg = self._parse_with_geopandas(source, fmt)

        try:
            polygons = polygon_features(geojson)
        except ValueError as e:
            raise SpatialFileError(str(e)) from e
        if not polygons:
            raise SpatialFileError("No Polygon or MultiPolygon features found in file")

        self.logger.info(f"Parsed {filename}: {len(polygons)} polygon feature(s), EPSG={epsg}")
        return ParsedSpatialFile(
            feature_collection={'type': 'FeatureCollection', 'features': polygons},
            source_epsg=epsg,
            filename=filename,
            format=fmt,
        )

    @staticmethod
    def _read_bytes(source: Union[str, Path, bytes]) -> bytes:
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)
        with open(source, 'rb') as f:
            return f.read()

    def _parse_geojson(self, raw: bytes):
        try:
            geojson = json.loads(raw.decode('utf-8-sig'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SpatialFileError(f"Invalid JSON: {e}") from e
        if not isinstance(geojson, dict):
            raise SpatialFileError("GeoJSON content must be an object")

        if 'crs' in geojson:
            return geojson, GeoProcessor.detect_epsg(geojson)
        if _looks_geographic(geojson):
            return geojson, DEFAULT_SRID
        self.logger.warning("GeoJSON has projected coordinates but no crs member; source CRS unknown")
        return geojson, None

    @staticmethod
    def _parse_kml(raw: bytes):
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as e:
            raise SpatialFileError(f"Invalid KML: {e}") from e

        features = []
        for pm in root.iter(f"{{{KML_NAMESPACE['kml']}}}Placemark"):
            name = pm.findtext('kml:name', default='', namespaces=KML_NAMESPACE).strip()
            polygons = []
            for poly in pm.findall('.//kml:Polygon', KML_NAMESPACE):
                outer = poly.find('kml:outerBoundaryIs/kml:LinearRing/kml:coordinates', KML_NAMESPACE)
                shell = _parse_kml_coordinates(outer.text if outer is not None else '')
                if len(shell) < 4:
                    continue
                holes = [
                    ring for ring in (
                        _parse_kml_coordinates(inner.text or '')
                        for inner in poly.findall('kml:innerBoundaryIs/kml:LinearRing/kml:coordinates',
                                                  KML_NAMESPACE)
                    ) if len(ring) >= 4
                ]
                polygons.append(Polygon(shell, holes))
            if not polygons:
                continue
            geometry = polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)
            properties = {'name': name} if name else {}
            features.append({'type': 'Feature', 'properties': properties, 'geometry': mapping(geometry)})

        return {'type': 'FeatureCollection', 'features': features}, DEFAULT_SRID

    def _parse_with_geopandas(self, source: Union[str, Path, bytes], fmt: str):
        suffix = '.zip' if fmt == 'shp' else '.gpkg'
        tmp_path = None
        if isinstance(source, (bytes, bytearray)):
            size = len(source)
            fd, tmp_path = tempfile.mkstemp(suffix=suffix)
            with os.fdopen(fd, 'wb') as f:
                f.write(source)
            path = tmp_path
        else:
            path = str(source)
            size = os.path.getsize(path)

        try:
            if fmt == 'gpkg' and size > GPKG_MAX_SIZE_BYTES:
                mb = round(GPKG_MAX_SIZE_BYTES / (1024 * 1024))
                raise SpatialFileError(f"GeoPackage too large (max ~{mb}MB).")

            try:
                gdf = gpd.read_file(f"zip://{path}" if fmt == 'shp' else path)
            except (OSError, RuntimeError, ValueError) as e:
                raise SpatialFileError(f"Could not read {'shapefile' if fmt == 'shp' else 'GeoPackage'}: {e}") from e
        finally:
            if tmp_path:
                os.unlink(tmp_path)

        epsg = None
        if gdf.crs is not None:
            try:
                epsg = gdf.crs.to_epsg()
            except CRSError as e:
                self.logger.warning(f"Unrecognized CRS in {fmt} file: {e}")
        elif fmt == 'shp':
            self.logger.warning("Shapefile has no .prj; source CRS unknown")

        return json.loads(gdf.to_json()), epsg


def _parse_kml_coordinates(text: str) -> List[tuple]:
    coords = []
    for token in (text or '').split():
        parts = token.split(',')
        if len(parts) < 2:
            continue
        try:
            coords.append((float(parts[0]), float(parts[1])))
        except ValueError as e:
            raise SpatialFileError(f"Invalid KML coordinates: {token!r}") from e
    return coords


def normalize_geometry(feature: Dict[str, Any], source_epsg: int) -> Dict[str, Any]:
    """Polygon feature in ``source_epsg`` -> EPSG:4326 MultiPolygon GeoJSON geometry"""
    try:
        multipolygon = GeoProcessor.to_multipolygon(feature)
        projected = GeoProcessor.reproject(multipolygon, source_epsg, DEFAULT_SRID)
    except (CRSError, ValueError) as e:
        raise SpatialFileError(f"Could not reproject from EPSG:{source_epsg}: {e}") from e
    return mapping(GeoProcessor.to_multipolygon(projected))


class LayerUploadWizard:
    """
    State machine behind the layer upload wizard

    Each setter validates its own step; an invalid step records ``error``
    and raises WizardValidationError so the caller cannot advance.
    """

    def __init__(self, visibility_options=LAYER_VISIBILITY_OPTIONS,
                 parser: Optional[SpatialFileParser] = None):
        self.logger = logging.getLogger(__name__)
        self.visibility_options = tuple(visibility_options) or LAYER_VISIBILITY_OPTIONS
        self.parser = parser or SpatialFileParser()
        self.reset()

    def reset(self) -> None:
        self.parsed: Optional[ParsedSpatialFile] = None
        self.selected_index: Optional[int] = None
        self.source_srid: Optional[int] = None
        self.preview_geometry: Optional[Dict[str, Any]] = None
        self.body_type: Optional[str] = None
        self.body_id: Any = None
        self.name = ''
        self.category = ''
        self.notes = ''
        self.visibility = self.visibility_options[0]
        self.is_downloadable = False
        self.error: Optional[str] = None
        self.created_layer: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------ helpers

    def _fail(self, message: str, cause: Optional[Exception] = None):
        self.error = message
        self.logger.warning(f"Layer wizard: {message}")
        raise WizardValidationError(message) from cause

    @property
    def features(self) -> List[Dict[str, Any]]:
        return self.parsed.features if self.parsed else []

    @property
    def needs_choice(self) -> bool:
        return len(self.features) > 1

    @property
    def steps(self) -> List[str]:
        return [s for s in WIZARD_STEPS if s != 'choose' or self.needs_choice]

    def feature_labels(self) -> List[str]:
        return [guess_feature_label(f, i) for i, f in enumerate(self.features)]

    @property
    def selected_feature(self) -> Optional[Dict[str, Any]]:
        if self.selected_index is None:
            return None
        return self.features[self.selected_index]

    def _refresh_preview(self) -> None:
        self.preview_geometry = None
        feature = self.selected_feature
        if feature is None or self.source_srid is None:
            return
        try:
            self.preview_geometry = normalize_geometry(feature, self.source_srid)
        except SpatialFileError as e:
            self._fail(str(e), e)

    # ------------------------------------------------------------------ steps

    def load_file(self, source: Union[str, Path, bytes], filename: Optional[str] = None) -> ParsedSpatialFile:
        self.reset()
        try:
            self.parsed = self.parser.parse(source, filename)
        except SpatialFileError as e:
            self._fail(str(e), e)

        self.source_srid = self.parsed.source_epsg
        if not self.needs_choice:
            self.selected_index = 0
        self._refresh_preview()

        self.name = Path(self.parsed.filename).stem
        if not self.needs_choice:
            label = guess_feature_label(self.features[0], 0)
            if label != 'Feature 1':
                self.name = label
        return self.parsed

    def choose_feature(self, idx: int) -> Dict[str, Any]:
        if not self.features:
            self._fail("Upload a file first")
        if not isinstance(idx, int) or not (0 <= idx < len(self.features)):
            self._fail(f"Feature index {idx} out of range (0-{len(self.features) - 1})")
        self.selected_index = idx
        self.error = None
        self._refresh_preview()
        return self.features[idx]

    def set_source_srid(self, srid: Any) -> int:
        epsg = GeoProcessor.detect_epsg(srid)
        if not epsg or epsg <= 0:
            self._fail(f"Invalid SRID: {srid!r}")
        self.source_srid = epsg
        self.error = None
        self._refresh_preview()
        return epsg

    def set_target(self, body_type: str, body_id: Any) -> None:
        if body_type not in LAYER_BODY_TYPES:
            self._fail(f"Body type must be one of {', '.join(LAYER_BODY_TYPES)}")
        if body_id in (None, ''):
            self._fail(f"Select a {body_type} to attach the layer to")
        self.body_type = body_type
        self.body_id = body_id
        self.error = None

    def set_metadata(self, name: str, category: str = '', notes: str = '',
                     visibility: Optional[str] = None, is_downloadable: bool = False) -> None:
        name = (name or '').strip()
        if not name:
            self._fail("Layer name is required")
        visibility = visibility or self.visibility_options[0]
        if visibility not in self.visibility_options:
            self._fail(f"Visibility must be one of {', '.join(self.visibility_options)}")
        self.name = name
        self.category = (category or '').strip()
        self.notes = (notes or '').strip()
        self.visibility = visibility
        self.is_downloadable = bool(is_downloadable)
        self.error = None

    def step_problem(self, step: str) -> Optional[str]:
        """Why ``step`` (and every step before it) is incomplete, or None"""
        if step not in WIZARD_STEPS:
            raise ValueError(f"Unknown wizard step: {step!r}")
        order = WIZARD_STEPS.index(step)

        if self.parsed is None:
            return "Upload a .geojson, .json, .kml, .zip or .gpkg file"
        if order >= 1 and self.selected_index is None:
            return "Choose which polygon to publish"
        if order >= 2:
            if self.source_srid is None:
                return "Source CRS could not be detected; set the SRID manually"
            if self.preview_geometry is None:
                return "Geometry could not be reprojected to EPSG:4326"
        if order >= 3 and (self.body_type not in LAYER_BODY_TYPES or self.body_id in (None, '')):
            return "Select the lake or watershed this layer belongs to"
        if order >= 4:
            if not self.name:
                return "Layer name is required"
            if self.visibility not in self.visibility_options:
                return f"Visibility must be one of {', '.join(self.visibility_options)}"
        return None

    def validate_step(self, step: str) -> None:
        """Raise WizardValidationError if ``step`` is not complete"""
        problem = self.step_problem(step)
        if problem:
            self._fail(problem)

    def can_advance(self, step: str) -> bool:
        return self.step_problem(step) is None

    @property
    def current_step(self) -> str:
        for step in self.steps:
            if step != 'publish' and not self.can_advance(step):
                return step
        return 'publish'

    def build_payload(self) -> Dict[str, Any]:
        self.validate_step('publish')
        return {
            'body_type': self.body_type,
            'body_id': self.body_id,
            'name': self.name,
            'type': 'base',
            'category': self.category or None,
            'srid': DEFAULT_SRID,
            'source_srid': self.source_srid,
            'visibility': self.visibility,
            'is_downloadable': self.is_downloadable,
            'status': 'ready',
            'notes': self.notes or None,
            'source_type': self.parsed.format,
            'geom_geojson': json.dumps(self.preview_geometry),
        }

    def publish(self, client) -> Dict[str, Any]:
        """POST the layer through a LakeViewApiClient and return the created row"""
        payload = self.build_payload()
        try:
            res = client.create_layer(payload)
        except ApiError as e:
            self.error = str(e)
            self.logger.error(f"Publishing layer {self.name!r} failed: {e}")
            raise
        self.created_layer = res.get('data', res) if isinstance(res, dict) else res
        self.error = None
        self.logger.info(f"Published layer {self.name!r} to {self.body_type} {self.body_id}")
        return self.created_layer
