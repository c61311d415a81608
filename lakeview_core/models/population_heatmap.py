"""
POPULATION HEATMAP MODEL
Aggregates point population values around a lake into normalized heat points
and a population total for the annulus between the shoreline and a buffer.

Inputs:
- CSV of point population values (X = longitude, Y = latitude, Z = count)
- Lake geometry in EPSG:4326
- Buffer distance in kilometres

Intensity is capped at the 95th percentile so a few dense cells do not wash
out the rest of the map.
"""

import math
import numpy as np
import pandas as pd
import shapely
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, IO, List, Optional, Union
import logging

from shapely.errors import ShapelyError
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from lakeview_core.config.settings import (
    HEATMAP_CAP_PERCENTILE, HEATMAP_DEFAULT_DISTANCE_KM
)
from lakeview_core.utils.core import AnalysisResult, DataValidator, get_timestamp
from lakeview_core.utils.geo_processor import GeoProcessor


@dataclass
class HeatmapResult:
    """Heat points ready for rendering plus the exposure totals"""
    heat_points: List[List[float]]          # [lat, lon, intensity 0..1]
    population_total: int
    cap: float
    points_total: int
    points_kept: int
    distance_km: float
    filter_geometry: Optional[BaseGeometry] = None
    used_fallback_buffer: bool = False
    raw_values: List[float] = field(default_factory=list, repr=False)

    def markers(self) -> List[Dict[str, Any]]:
        """Tooltip markers, one per kept point"""
        return [
            {'lat': lat, 'lon': lon, 'tooltip': f"Population: {round(z):,}"}
            for (lat, lon, _), z in zip(self.heat_points, self.raw_values)
        ]


class PopulationHeatmapModel:
    """Population exposure around a lake from point population samples"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def load_points(source: Union[str, Path, IO, pd.DataFrame]) -> pd.DataFrame:
        """
        Load X/Y/Z points from a CSV path, buffer or DataFrame

        Headers are matched case-insensitively. Rows with a missing,
        non-numeric or zero X, Y or Z are dropped.
        """
        df = source.copy() if isinstance(source, pd.DataFrame) else pd.read_csv(source)

        columns = {}
        for col in df.columns:
            key = str(col).strip().upper()
            if key in ('X', 'Y', 'Z') and key not in columns:
                columns[key] = col
        missing = [k for k in ('X', 'Y', 'Z') if k not in columns]
        if missing:
            raise ValueError(f"Population CSV is missing column(s): {', '.join(missing)}")

        points = pd.DataFrame({
            'lon': pd.to_numeric(df[columns['X']], errors='coerce'),
            'lat': pd.to_numeric(df[columns['Y']], errors='coerce'),
            'value': pd.to_numeric(df[columns['Z']], errors='coerce'),
        })
        points = points.dropna()
        points = points[(points['lon'] != 0) & (points['lat'] != 0) & (points['value'] != 0)]
        return points.reset_index(drop=True)

    @staticmethod
    def compute_cap(values, percentile: float = HEATMAP_CAP_PERCENTILE) -> float:
        """Value at floor(n * percentile) of the sorted values; 1 when empty or zero"""
        ordered = np.sort(np.asarray(values, dtype=float))
        n = len(ordered)
        if n == 0:
            return 1.0
        cap = float(ordered[min(int(math.floor(n * percentile)), n - 1)])
        return cap if cap else 1.0

    def build_filter_geometry(self, lake_geometry: Any, distance_km: float):
        """
        Annulus between the lake shoreline and a buffer of ``distance_km``

        Returns (geometry, used_fallback). The geometry is None when the
        buffer cannot be built, in which case no spatial filter applies.
        """
        if lake_geometry is None:
            return None, False

        try:
            lake = GeoProcessor.to_shape(lake_geometry)
            buffer = GeoProcessor.buffer_km(lake, distance_km)
        except (ValueError, TypeError, ShapelyError) as e:
            self.logger.warning(f"Buffer around lake failed, skipping spatial filter: {e}")
            return None, False

        try:
            annulus = buffer.difference(lake)
        except ShapelyError as e:
            self.logger.warning(f"Removing lake from buffer failed, using buffer only: {e}")
            return buffer, True

        if annulus.is_empty:
            self.logger.warning("Buffer minus lake is empty, using buffer only")
            return buffer, True
        return annulus, False

    def compute(self, points: Union[str, Path, IO, pd.DataFrame],
                lake_geometry: Any = None,
                distance_km: float = HEATMAP_DEFAULT_DISTANCE_KM) -> HeatmapResult:
        """Aggregate points around the lake into a HeatmapResult"""
        ok, msg = DataValidator.validate_distance(distance_km)
        if not ok:
            raise ValueError(msg)

        df = self.load_points(points)
        points_total = len(df)
        cap = self.compute_cap(df['value'].to_numpy())
        self.logger.info(f"Loaded {points_total} population points (cap={cap:g})")

        filter_geometry, used_fallback = self.build_filter_geometry(lake_geometry, distance_km)
        if filter_geometry is not None and points_total:
            inside = shapely.contains_xy(filter_geometry, df['lon'].to_numpy(), df['lat'].to_numpy())
            df = df[inside]
        self.logger.info(f"{len(df)} of {points_total} points kept within {distance_km}km")

        values = df['value'].to_numpy(dtype=float)
        intensity = np.minimum(values, cap) / cap
        heat_points = [
            [float(lat), float(lon), float(w)]
            for lat, lon, w in zip(df['lat'].to_numpy(), df['lon'].to_numpy(), intensity)
        ]

        return HeatmapResult(
            heat_points=heat_points,
            population_total=int(round(float(values.sum()))) if len(values) else 0,
            cap=cap,
            points_total=points_total,
            points_kept=len(heat_points),
            distance_km=float(distance_km),
            filter_geometry=filter_geometry,
            used_fallback_buffer=used_fallback,
            raw_values=[float(v) for v in values],
        )

    def analyze(self, points, lake_geometry: Any = None,
                distance_km: float = HEATMAP_DEFAULT_DISTANCE_KM,
                lake_name: str = '') -> AnalysisResult:
        """Run compute() and wrap the totals in an AnalysisResult"""
        result = self.compute(points, lake_geometry, distance_km)
        return self.to_analysis_result(result, lake_geometry, lake_name)

    def to_analysis_result(self, result: HeatmapResult, lake_geometry: Any = None,
                           lake_name: str = '') -> AnalysisResult:
        location = {'latitude': 0.0, 'longitude': 0.0}
        if lake_geometry is not None:
            centre = GeoProcessor.to_shape(lake_geometry).centroid
            location = {'latitude': round(centre.y, 6), 'longitude': round(centre.x, 6)}

        warnings = []
        if result.used_fallback_buffer:
            warnings.append("Lake could not be removed from the buffer; totals include the lake area")
        if lake_geometry is not None and result.filter_geometry is None:
            warnings.append("Buffer could not be computed; totals cover every point in the file")

        key_findings = {
            'lake_name': lake_name,
            'distance_km': result.distance_km,
            'population_total': result.population_total,
            'intensity_cap': result.cap,
            'points_total': result.points_total,
            'points_kept': result.points_kept,
        }
        if result.filter_geometry is not None:
            key_findings['filter_geometry'] = mapping(result.filter_geometry)

        return AnalysisResult(
            analysis_type='population_heatmap',
            location=location,
            timestamp=get_timestamp(),
            key_findings=key_findings,
            methodology=(
                f"Points within {result.distance_km}km of the shoreline (lake excluded); "
                f"intensity = min(value, P{int(HEATMAP_CAP_PERCENTILE * 100)}) / P{int(HEATMAP_CAP_PERCENTILE * 100)}"
            ),
            data_sources=['Population point CSV (X/Y/Z)'],
            warnings=warnings,
        )
