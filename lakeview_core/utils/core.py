"""
Core utility functions for the LakeView geospatial data core
"""

import json
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Dict, List, Tuple, Optional, Any
from dataclasses import dataclass, asdict, field
from datetime import datetime
from xml.sax.saxutils import escape
import logging

from lakeview_core.config.settings import PHILIPPINES_BOUNDS, HEATMAP_MAX_DISTANCE_KM

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    """Raised when the REST backend or a third-party service answers with an error"""

    def __init__(self, status: Optional[int], data: Any = None):
        self.status = status
        self.data = data if data is not None else {}
        message = self.data.get('message') if isinstance(self.data, dict) else None
        super().__init__(message or f"HTTP {status}")


class SpatialFileError(ValueError):
    """Raised when an uploaded spatial file cannot be parsed or normalized"""


class WizardValidationError(ValueError):
    """Raised when the current wizard step cannot be completed"""


@dataclass
class AnalysisResult:
    """Standard result container for all analyses"""
    analysis_type: str
    location: Dict[str, float]  # {'latitude': float, 'longitude': float}
    timestamp: str
    key_findings: Dict[str, Any]
    methodology: str
    data_sources: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate result before serialization"""
        errors = []

        if not self.analysis_type:
            errors.append("Missing analysis_type")

        if not self.location or 'latitude' not in self.location or 'longitude' not in self.location:
            errors.append("Missing or invalid location coordinates")

        if not self.key_findings:
            errors.append("Empty key_findings")

        try:
            datetime.fromisoformat(self.timestamp)
        except ValueError:
            errors.append(f"Invalid timestamp format: {self.timestamp}")

        return (len(errors) == 0, errors)


class DataValidator:
    """Validates user-supplied inputs before they reach the models"""

    @staticmethod
    def validate_coordinates(latitude: float, longitude: float,
                             strict: bool = True) -> Tuple[bool, str]:
        """Validate geographic coordinates, optionally against Philippine bounds"""
        try:
            latitude = float(latitude)
            longitude = float(longitude)
        except (TypeError, ValueError) as e:
            return False, f"Invalid coordinate type: {e}"

        if not (-90 <= latitude <= 90):
            return False, f"Latitude {latitude}° outside global range [-90°, 90°]"

        if not (-180 <= longitude <= 180):
            return False, f"Longitude {longitude}° outside global range [-180°, 180°]"

        if strict:
            b = PHILIPPINES_BOUNDS
            if not (b['lat_min'] <= latitude <= b['lat_max']):
                return False, f"Latitude {latitude}° outside Philippine bounds [{b['lat_min']}°, {b['lat_max']}°]"
            if not (b['lon_min'] <= longitude <= b['lon_max']):
                return False, f"Longitude {longitude}° outside Philippine bounds [{b['lon_min']}°, {b['lon_max']}°]"

        return True, "Valid coordinates"

    @staticmethod
    def validate_distance(distance_km: float) -> Tuple[bool, str]:
        """Validate heatmap buffer distance"""
        try:
            distance_km = float(distance_km)
        except (TypeError, ValueError):
            return False, f"Invalid distance type: {type(distance_km).__name__}"

        if not np.isfinite(distance_km) or not (0 < distance_km <= HEATMAP_MAX_DISTANCE_KM):
            return False, f"Distance {distance_km}km outside valid range (0-{HEATMAP_MAX_DISTANCE_KM}km]"

        return True, "Valid distance"

    @staticmethod
    def validate_year(year: Any) -> Tuple[bool, str]:
        """Validate a sampling / raster year"""
        try:
            year = int(year)
        except (TypeError, ValueError):
            return False, f"Invalid year: {year!r}"

        if not (1900 <= year <= 2100):
            return False, f"Year {year} outside valid range [1900-2100]"

        return True, "Valid year"


class ReportExporter:
    """Export analysis results and layers in multiple formats"""

    @staticmethod
    def to_json(result: AnalysisResult, output_path: Path) -> None:
        """Export result to JSON"""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(result.to_json())

        logger.info(f"JSON report exported to {output_path}")

    @staticmethod
    def to_csv(data: pd.DataFrame, output_path: Path) -> None:
        """Export DataFrame to CSV"""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        data.to_csv(output_path, index=False)
        logger.info(f"CSV report exported to {output_path}")

    @staticmethod
    def to_excel(sheets: Dict[str, pd.DataFrame], output_path: Path) -> None:
        """Export one or more DataFrames to an .xlsx workbook (one sheet each)"""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
            for sheet_name, frame in sheets.items():
                frame.to_excel(writer, sheet_name=sheet_name[:31])

        logger.info(f"Excel workbook exported to {output_path}")

    @staticmethod
    def to_geojson(features: List[Dict], output_path: Path) -> None:
        """Export features to GeoJSON format"""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(ReportExporter.features_to_geojson(features))

        logger.info(f"GeoJSON exported to {output_path}")

    @staticmethod
    def features_to_geojson(features: List[Dict]) -> str:
        geojson = {
            "type": "FeatureCollection",
            "features": features
        }
        return json.dumps(geojson, indent=2, default=str)

    @staticmethod
    def layer_to_geojson(layer: Dict, admin: bool = False) -> str:
        """GeoJSON download for a published layer"""
        return ReportExporter.features_to_geojson([_layer_feature(layer, admin)])

    @staticmethod
    def layer_to_kml(layer: Dict, admin: bool = False) -> str:
        """
        KML 2.2 download for a published layer

        Polygon and MultiPolygon geometries become Placemarks with
        outer/inner boundary rings; other geometry types are rejected.
        """
        feature = _layer_feature(layer, admin)
        name = escape(str(layer.get('name') or 'Layer'))
        geometry = feature['geometry']

        if geometry['type'] == 'Polygon':
            polygons = [geometry['coordinates']]
        elif geometry['type'] == 'MultiPolygon':
            polygons = geometry['coordinates']
        else:
            raise ValueError(f"KML export supports polygons only, got {geometry['type']}")

        polygon_xml = ''.join(_kml_polygon(rings) for rings in polygons)
        if len(polygons) > 1:
            polygon_xml = f"<MultiGeometry>{polygon_xml}</MultiGeometry>"

        description = escape(str(layer.get('notes') or ''))
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<kml xmlns="http://www.opengis.net/kml/2.2"><Document>'
            f'<name>{name}</name>'
            f'<Placemark><name>{name}</name><description>{description}</description>'
            f'{polygon_xml}</Placemark>'
            '</Document></kml>\n'
        )


def _layer_feature(layer: Dict, admin: bool = False) -> Dict:
    if not admin and not layer.get('is_downloadable'):
        raise PermissionError(f"Layer {layer.get('id')} is not downloadable")
    geometry = layer.get('geom_geojson') or layer.get('geometry')
    if isinstance(geometry, str):
        geometry = json.loads(geometry)
    if not geometry:
        raise ValueError(f"Layer {layer.get('id')} has no geometry to export")
    if geometry.get('type') == 'Feature':
        geometry = geometry['geometry']

    properties = {
        key: layer.get(key)
        for key in ('id', 'name', 'category', 'body_type', 'body_id', 'notes')
        if layer.get(key) is not None
    }
    return {"type": "Feature", "properties": properties, "geometry": geometry}


def _kml_ring(coords: List[List[float]]) -> str:
    text = ' '.join(f"{pt[0]},{pt[1]}" for pt in coords)
    return f"<LinearRing><coordinates>{text}</coordinates></LinearRing>"


def _kml_polygon(rings: List[List[List[float]]]) -> str:
    outer = f"<outerBoundaryIs>{_kml_ring(rings[0])}</outerBoundaryIs>"
    inner = ''.join(f"<innerBoundaryIs>{_kml_ring(r)}</innerBoundaryIs>" for r in rings[1:])
    return f"<Polygon>{outer}{inner}</Polygon>"


def get_timestamp() -> str:
    """Get current timestamp in ISO format"""
    return datetime.now().isoformat()
