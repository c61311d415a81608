"""
Configuration settings for the LakeView PH data core
Lake water-quality, spatial layer and population-exposure tooling for the Philippines

This module contains ONLY configuration constants.
Deployment-specific values are read from environment variables:
- LAKEVIEW_API_BASE: REST backend root (lakes, layers, sample events, rasters)
- LAKEVIEW_API_TOKEN: bearer token used when no session token is supplied
- LAKEVIEW_OUTPUT_DIR: where reports, maps and exports are written
"""

from pathlib import Path
import os

# Output directories
OUTPUT_DIR = Path(os.getenv('LAKEVIEW_OUTPUT_DIR', Path.cwd() / 'lakeview_outputs'))
REPORTS_DIR = OUTPUT_DIR / 'reports'
MAPS_DIR = OUTPUT_DIR / 'maps'
EXPORTS_DIR = OUTPUT_DIR / 'exports'

# REST backend
API_BASE = os.getenv('LAKEVIEW_API_BASE', 'http://localhost:8000/api').rstrip('/')
API_TOKEN = os.getenv('LAKEVIEW_API_TOKEN') or None
API_TIMEOUT_SECONDS = (10, 30)  # (connect_timeout, read_timeout)
API_MAX_RETRIES = 3
API_RETRY_BACKOFF_FACTOR = 1.0
API_RETRY_STATUS_CODES = [429, 500, 502, 503, 504]
API_SAMPLE_EVENTS_LIMIT = 5000

# HTTP GET cache
HTTP_CACHE_DEFAULT_TTL_SECONDS = 5 * 60     # 5 minutes
HTTP_CACHE_OPTIONS_TTL_SECONDS = 10 * 60    # lake/watershed dropdowns

# Population raster status polling
RASTER_STATUSES = ('uploaded', 'ingesting', 'ready', 'error')
RASTER_FINAL_STATUSES = ('ready', 'error')
RASTER_POLL_INTERVAL_SECONDS = 5.0
RASTER_POLL_TIMEOUT_SECONDS = 30 * 60       # matches the backend job timeout

# Third-party geometry services
NOMINATIM_SEARCH_URL = "https://nominatim.openstreetmap.org/search"
NOMINATIM_CACHE_TTL_SECONDS = 24 * 60 * 60  # 24h
NOMINATIM_COUNTRY_CODES = 'ph'
NOMINATIM_COUNTRY_HINT = 'Philippines'
NOMINATIM_USER_AGENT = os.getenv('LAKEVIEW_USER_AGENT', 'lakeview-core/1.0')

GLOBAL_WATERSHEDS_BASES = {
    'watershed': 'https://mghydro.com/app/watershed_api',
    'rivers': 'https://mghydro.com/app/upstream_rivers_api',
    'flowpath': 'https://mghydro.com/app/flowpath_api',
}
GLOBAL_WATERSHEDS_HIGH_PRECISION_ZOOM = 9

# ======================== GEOGRAPHIC CONSTANTS ========================

DEFAULT_SRID = 4326                         # WGS84 - storage and display CRS
PHILIPPINES_BOUNDS = {
    'lat_min': 4.6,                         # Tawi-Tawi
    'lat_max': 21.1,                        # Batanes
    'lon_min': 116.4,                       # Palawan
    'lon_max': 126.6,                       # Eastern Samar / Davao Oriental
}

# ======================== LAYER UPLOAD ========================

ACCEPTED_UPLOAD_EXTENSIONS = ('.geojson', '.json', '.kml', '.zip', '.gpkg')
GPKG_MAX_SIZE_BYTES = 50 * 1024 * 1024      # 50MB
LAYER_BODY_TYPES = ('lake', 'watershed')
LAYER_VISIBILITY_OPTIONS = ('public', 'admin')
LAYER_LEGACY_VISIBILITY = {
    'organization': 'admin',
    'organization_admin': 'admin',
}
FEATURE_LABEL_KEYS = ['name', 'NAME', 'Name', 'title', 'lake', 'lake_name', 'Lake', 'LName', 'id', 'ID']
KML_NAMESPACE = {'kml': 'http://www.opengis.net/kml/2.2'}

# ======================== POPULATION HEATMAP ========================

HEATMAP_CAP_PERCENTILE = 0.95               # intensity cap suppresses outliers
HEATMAP_DEFAULT_DISTANCE_KM = 2.0
HEATMAP_MAX_DISTANCE_KM = 50.0
HEATMAP_RADIUS = 45
HEATMAP_BLUR = 30
HEATMAP_MAX_ZOOM = 15
HEATMAP_GRADIENT = {
    0.2: 'blue',
    0.4: 'lime',
    0.6: 'yellow',
    0.8: 'orange',
    1.0: 'red',
}

# ======================== STATISTICS ========================

MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']
TIME_BUCKETS = ('month', 'quarter', 'year')
OUTLIER_MIN_SAMPLES = 4                     # IQR test needs at least 4 values
OUTLIER_IQR_MULTIPLIER = 1.5
COMPLIANCE_EMPTY_LABEL = '—'           # shown when no month has a threshold

# Evaluation type synonyms (normalized to max / min / range)
EVALUATION_SYMBOLS = {'<': 'max', '<=': 'max', '>': 'min', '>=': 'min'}
EVALUATION_UPPER_BOUND = [
    'max', 'maximum', 'upper', 'upperlimit', 'lessthan', 'lessthanorequal', 'lt', 'lte', 'below', 'under'
]
EVALUATION_LOWER_BOUND = [
    'min', 'minimum', 'lower', 'lowerlimit', 'greaterthan', 'greaterthanorequal', 'gt', 'gte', 'above', 'over'
]
EVALUATION_RANGE = ['range', 'between']

# ======================== ROLES ========================

ROLES = ('superadmin', 'org_admin', 'contributor')
DISPLAY_NAME_FALLBACK = 'Unknown user'

# ======================== MAPS & REPORTS ========================

MAP_CENTER_DEFAULT = [12.8797, 121.7740]    # Philippines centroid
MAP_DEFAULT_ZOOM = 11
MAP_TILE_PROVIDER = 'OpenStreetMap'
LAKE_OUTLINE_COLOR = '#2563eb'
WATERSHED_OUTLINE_COLOR = '#16a34a'

COLOR_SCHEME = {
    'ok': '#10b981',            # Green - meets threshold
    'exceed': '#ef4444',        # Red - fails threshold
    'neutral': '#95a5a6',       # Grey - no threshold
}
