"""
Geographic Processing Utilities
CRS detection, reprojection, metric buffering and polygon normalization
for lake and watershed geometries
"""

import re
import numpy as np
from typing import Any, Dict, List, Optional, Union
import logging

import shapely
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError
from shapely.geometry import shape, mapping, MultiPolygon, Polygon, GeometryCollection
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from lakeview_core.config.settings import DEFAULT_SRID

logger = logging.getLogger(__name__)

GeometryLike = Union[Dict[str, Any], BaseGeometry]

_EPSG_PATTERN = re.compile(r'EPSG:(?:[\d.]*:)?(\d+)', re.IGNORECASE)
_CRS84_PATTERN = re.compile(r'CRS:?84', re.IGNORECASE)


class GeoProcessor:
    """Geographic calculations and geometry normalization"""

    @staticmethod
    def detect_epsg(crs_like: Any) -> Optional[int]:
        """
        Detect an EPSG code from the many ways spatial files declare a CRS

        Accepts integers, 'EPSG:32651', 'EPSG::32651',
        'urn:ogc:def:crs:EPSG::32651', CRS84 variants (returned as 4326),
        GeoJSON ``crs`` members, objects holding a ``crs`` member, and WKT
        (e.g. the contents of a shapefile .prj).

        Returns None when nothing usable is declared.
        """
        if crs_like is None or isinstance(crs_like, bool):
            return None

        if isinstance(crs_like, (int, np.integer)):
            return int(crs_like)

        if isinstance(crs_like, CRS):
            return crs_like.to_epsg()

        if isinstance(crs_like, dict):
            if 'crs' in crs_like:
                return GeoProcessor.detect_epsg(crs_like['crs'])
            props = crs_like.get('properties') or {}
            return GeoProcessor.detect_epsg(props.get('name') or props.get('code'))

        text = str(crs_like).strip()
        if not text:
            return None
        if _CRS84_PATTERN.search(text) and 'PROJCS' not in text.upper():
            return DEFAULT_SRID
        if text.isdigit():
            return int(text)

        match = _EPSG_PATTERN.search(text)
        if match and not text.upper().startswith(('PROJCS', 'GEOGCS', 'PROJCRS', 'GEOGCRS')):
            return int(match.group(1))

        try:
            return CRS.from_user_input(text).to_epsg()
        except CRSError:
            logger.warning(f"Could not detect EPSG code from CRS declaration: {text[:80]!r}")
            return None

    @staticmethod
    def to_shape(geometry: GeometryLike) -> BaseGeometry:
        if isinstance(geometry, BaseGeometry):
            return geometry
        if not isinstance(geometry, dict):
            raise ValueError(f"Unsupported geometry value: {type(geometry).__name__}")
        if geometry.get('type') == 'Feature':
            geometry = geometry.get('geometry')
            if not geometry:
                raise ValueError("Feature has no geometry")
        return shape(geometry)

    @staticmethod
    def to_multipolygon(geometry: GeometryLike) -> MultiPolygon:
        """Coerce Polygon / MultiPolygon / polygon collections into a MultiPolygon"""
        geom = GeoProcessor.to_shape(geometry)

        if isinstance(geom, MultiPolygon):
            return geom
        if isinstance(geom, Polygon):
            return MultiPolygon([geom])
        if isinstance(geom, GeometryCollection):
            polygons: List[Polygon] = []
            for part in geom.geoms:
                if isinstance(part, Polygon):
                    polygons.append(part)
                elif isinstance(part, MultiPolygon):
                    polygons.extend(part.geoms)
            if polygons:
                return MultiPolygon(polygons)

        raise ValueError(f"Expected a Polygon or MultiPolygon geometry, got {geom.geom_type}")

    @staticmethod
    def reproject(geometry: GeometryLike, source_epsg: int,
                  target_epsg: int = DEFAULT_SRID) -> GeometryLike:
        """
        Reproject a geometry between EPSG codes (x=lon/easting, y=lat/northing)

        Returns the same kind of value it was given: a shapely geometry for
        shapely input, a GeoJSON geometry dict for dict input.
        """
        as_dict = not isinstance(geometry, BaseGeometry)
        geom = GeoProcessor.to_shape(geometry)

        if int(source_epsg) == int(target_epsg):
            return mapping(geom) if as_dict else geom

        transformer = Transformer.from_crs(
            CRS.from_epsg(int(source_epsg)), CRS.from_epsg(int(target_epsg)), always_xy=True
        )
        projected = shapely.transform(geom, transformer.transform, interleaved=False)
        if projected.is_empty or not np.all(np.isfinite(projected.bounds)):
            raise ValueError(
                f"Reprojection from EPSG:{source_epsg} to EPSG:{target_epsg} produced invalid coordinates"
            )
        return mapping(projected) if as_dict else projected

    @staticmethod
    def buffer_km(geometry: GeometryLike, distance_km: float) -> BaseGeometry:
        """
        Buffer a WGS84 geometry by a distance in kilometers

        The buffer is computed in an azimuthal equidistant projection centred
        on the geometry so the distance is metric in every direction.
        """
        if distance_km <= 0:
            raise ValueError(f"Buffer distance must be positive, got {distance_km}")

        geom = GeoProcessor.to_shape(geometry)
        centre = geom.centroid
        local_crs = CRS.from_proj4(
            f"+proj=aeqd +lat_0={centre.y} +lon_0={centre.x} +datum=WGS84 +units=m +no_defs"
        )
        wgs84 = CRS.from_epsg(DEFAULT_SRID)
        to_metric = Transformer.from_crs(wgs84, local_crs, always_xy=True)
        to_wgs84 = Transformer.from_crs(local_crs, wgs84, always_xy=True)

        metric = shapely.transform(geom, to_metric.transform, interleaved=False)
        buffered = metric.buffer(distance_km * 1000.0, quad_segs=16)
        return shapely.transform(buffered, to_wgs84.transform, interleaved=False)

    @staticmethod
    def union(geometries: List[GeometryLike]) -> BaseGeometry:
        return unary_union([GeoProcessor.to_shape(g) for g in geometries])

    @staticmethod
    def bounds_from_geom(geometry: GeometryLike) -> List[List[float]]:
        """Return [[south, west], [north, east]] bounds suitable for map fitting"""
        geom = GeoProcessor.to_shape(geometry)
        if geom.is_empty:
            raise ValueError("Cannot compute bounds of an empty geometry")
        minx, miny, maxx, maxy = geom.bounds
        return [[miny, minx], [maxy, maxx]]


def polygon_features(geojson: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract polygon features from a FeatureCollection, Feature or bare geometry

    Non-polygon features are dropped; bare geometries are wrapped as features
    with empty properties.
    """
    if not isinstance(geojson, dict):
        raise ValueError("GeoJSON content must be an object")

    kind = geojson.get('type')
    if kind == 'FeatureCollection':
        features = geojson.get('features') or []
    elif kind == 'Feature':
        features = [geojson]
    elif kind in ('Polygon', 'MultiPolygon', 'GeometryCollection'):
        features = [{'type': 'Feature', 'properties': {}, 'geometry': geojson}]
    else:
        raise ValueError(f"Unsupported GeoJSON type: {kind!r}")

    polygons = []
    for feat in features:
        geometry = (feat or {}).get('geometry') or {}
        gtype = geometry.get('type')
        if gtype in ('Polygon', 'MultiPolygon'):
            polygons.append(feat)
        elif gtype == 'GeometryCollection':
            try:
                mp = GeoProcessor.to_multipolygon(geometry)
            except ValueError:
                continue
            polygons.append({**feat, 'geometry': mapping(mp)})
    return polygons
