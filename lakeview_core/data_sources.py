"""
EXTERNAL DATA SOURCE INTEGRATIONS
REST backend client (lakes, layers, sample events, population rasters),
Nominatim lake geometry search and the Global Watersheds hydrology API
"""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlencode
import logging
import time

from lakeview_core.config.settings import (
    API_BASE, API_TIMEOUT_SECONDS, API_MAX_RETRIES, API_RETRY_BACKOFF_FACTOR,
    API_RETRY_STATUS_CODES, API_SAMPLE_EVENTS_LIMIT,
    HTTP_CACHE_DEFAULT_TTL_SECONDS, HTTP_CACHE_OPTIONS_TTL_SECONDS,
    RASTER_STATUSES, RASTER_FINAL_STATUSES, RASTER_POLL_INTERVAL_SECONDS, RASTER_POLL_TIMEOUT_SECONDS,
    NOMINATIM_SEARCH_URL, NOMINATIM_CACHE_TTL_SECONDS, NOMINATIM_COUNTRY_CODES,
    NOMINATIM_COUNTRY_HINT, NOMINATIM_USER_AGENT,
    GLOBAL_WATERSHEDS_BASES, GLOBAL_WATERSHEDS_HIGH_PRECISION_ZOOM,
    LAYER_VISIBILITY_OPTIONS, LAYER_LEGACY_VISIBILITY, DISPLAY_NAME_FALLBACK
)
from lakeview_core.session import AuthSession
from lakeview_core.utils.core import ApiError, DataValidator

logger = logging.getLogger(__name__)


def create_session_with_retries(allowed_methods: Iterable[str] = ("GET", "HEAD", "PUT", "DELETE")) -> requests.Session:
    """Create requests session with exponential backoff retry strategy"""
    session = requests.Session()

    retry_strategy = Retry(
        total=API_MAX_RETRIES,
        backoff_factor=API_RETRY_BACKOFF_FACTOR,
        status_forcelist=API_RETRY_STATUS_CODES,
        allowed_methods=list(allowed_methods),
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


def pluck(response: Any) -> List[Dict]:
    """Normalize array responses: array | {data: array} | {data: {data: array}}"""
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        data = response.get('data')
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get('data'), list):
            return data['data']
    return []


def canonical_query(params: Optional[Dict[str, Any]] = None) -> str:
    """Stable query string: empty values dropped, keys and values sorted"""
    entries: List[Tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None or value == '':
            continue
        if isinstance(value, (list, tuple)):
            entries.extend((key, str(v)) for v in value)
        else:
            entries.append((key, str(value)))
    entries.sort()
    if not entries:
        return ''
    return '?' + urlencode(entries)


def compute_next_visibility(current: Optional[str], allowed: Optional[Iterable[str]] = None) -> str:
    """Cycle a layer's visibility through the allowed options"""
    options = [str(v) for v in (allowed or []) if v] or list(LAYER_VISIBILITY_OPTIONS)
    current = LAYER_LEGACY_VISIBILITY.get(current, current)
    if current not in options:
        return options[0]
    return options[(options.index(current) + 1) % len(options)]


class HttpCache:
    """
    TTL cache for GET responses

    Keys combine method, URL, canonical query and whether the request was
    authenticated, so public and authed responses never collide. Entries are
    dropped by URL prefix after mutations.
    """

    def __init__(self, default_ttl: float = HTTP_CACHE_DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, float, Any]] = {}

    @staticmethod
    def make_key(method: str, url: str, params: Optional[Dict] = None, authed: bool = True) -> str:
        return f"{method.upper()}:{url}{canonical_query(params)}:{'a' if authed else 'p'}"

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, ttl, value = entry
        if ttl > 0 and self._clock() - stored_at >= ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = (self._clock(), self.default_ttl if ttl is None else ttl, value)

    def invalidate(self, prefixes: Union[str, Iterable[str]]) -> int:
        """Drop cached GETs whose URL starts with any of the prefixes"""
        if isinstance(prefixes, str):
            prefixes = [prefixes]
        marks = tuple(f"GET:{p}" for p in prefixes if p)
        if not marks:
            return 0
        doomed = [k for k in self._entries if k.startswith(marks)]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cached responses for {list(prefixes)}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class LakeViewApiClient:
    """
    JSON client for the LakeView REST backend

    Public, admin, organization and contributor endpoints all live under the
    same base URL; role checks happen server-side.
    """

    def __init__(self,
                 session: Optional[AuthSession] = None,
                 base_url: str = API_BASE,
                 cache: Optional[HttpCache] = None,
                 http: Optional[requests.Session] = None):
        self.logger = logging.getLogger(__name__)
        self.session = session or AuthSession.from_env()
        self.base_url = base_url.rstrip('/')
        self.cache = cache or HttpCache()
        self.http = http or create_session_with_retries()

    # ------------------------------------------------------------------ core

    def build_url(self, url: str) -> str:
        if url.startswith(('http://', 'https://')):
            return url
        return f"{self.base_url}{url}"

    @staticmethod
    def _encode_params(params: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
        encoded = []
        for key, value in (params or {}).items():
            if value is None or value == '':
                continue
            if isinstance(value, (list, tuple)):
                encoded.extend((f"{key}[]", str(v)) for v in value)
            else:
                encoded.append((key, str(value)))
        return encoded

    @staticmethod
    def _parse_response(res: requests.Response) -> Any:
        if res.status_code == 204:
            return {}
        content_type = res.headers.get('content-type', '')
        if 'application/json' in content_type:
            try:
                return res.json()
            except ValueError:
                logger.warning(f"Malformed JSON body (HTTP {res.status_code})")
                return {'message': res.text or res.reason}
        return {'message': res.text or res.reason}

    def request(self, method: str, url: str,
                params: Optional[Dict[str, Any]] = None,
                body: Any = None,
                files: Optional[Dict[str, Any]] = None,
                headers: Optional[Dict[str, str]] = None,
                auth: bool = True,
                raw: bool = False) -> Any:
        """
        Perform a request and return the decoded body

        Raises:
            ApiError: on network failures (status None) and non-2xx answers.
                A 401 received while a token was set clears the session.
        """
        token = self.session.token
        final_headers = {'Accept': 'application/json'}
        if auth and token:
            final_headers['Authorization'] = f"Bearer {token}"
        final_headers.update(headers or {})

        kwargs: Dict[str, Any] = {
            'params': self._encode_params(params),
            'headers': final_headers,
            'timeout': API_TIMEOUT_SECONDS,
        }
        if files:
            kwargs['files'] = files
            kwargs['data'] = body
        elif body is not None:
            kwargs['json'] = body

        try:
            res = self.http.request(method.upper(), self.build_url(url), **kwargs)
        except requests.RequestException as e:
            self.logger.warning(f"{method.upper()} {url} failed: {e}")
            raise ApiError(None, {'message': 'Network error'}) from e

        if raw:
            return res

        data = self._parse_response(res)
        if not res.ok:
            if res.status_code == 401 and token:
                self.logger.info("Received 401 with a token set; clearing session")
                self.session.clear()
            raise ApiError(res.status_code, data)
        return data

    def get(self, url: str, **kwargs) -> Any:
        return self.request('GET', url, **kwargs)

    def post(self, url: str, body: Any = None, **kwargs) -> Any:
        return self.request('POST', url, body=body, **kwargs)

    def patch(self, url: str, body: Any = None, **kwargs) -> Any:
        return self.request('PATCH', url, body=body, **kwargs)

    def put(self, url: str, body: Any = None, **kwargs) -> Any:
        return self.request('PUT', url, body=body, **kwargs)

    def delete(self, url: str, **kwargs) -> Any:
        return self.request('DELETE', url, **kwargs)

    def cached_get(self, url: str, params: Optional[Dict[str, Any]] = None,
                   ttl: Optional[float] = None, auth: bool = True) -> Any:
        """GET served from the TTL cache when fresh"""
        key = HttpCache.make_key('GET', url, params, authed=auth)
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        data = self.get(url, params=params, auth=auth)
        self.cache.set(key, data, ttl)
        return data

    def invalidate(self, *prefixes: str) -> int:
        return self.cache.invalidate(prefixes)

    # ------------------------------------------------------------------ auth

    def login(self, email: str, password: str, remember: bool = False) -> Dict:
        res = self.post('/auth/login', {'email': email, 'password': password, 'remember': remember})
        if isinstance(res, dict) and res.get('token'):
            self.session.set_token(res['token'])
        return res

    def logout(self) -> None:
        try:
            self.post('/auth/logout')
        finally:
            self.session.clear()

    def me(self) -> Optional[Dict]:
        """Fetch /auth/me; None when signed out or the token was rejected"""
        if not self.session.token:
            return None
        try:
            res = self.get('/auth/me')
        except ApiError as e:
            if e.status == 401:
                return None
            raise
        user = res.get('data', res) if isinstance(res, dict) else None
        self.session.set_user(user)
        return user

    def current_user(self) -> Optional[Dict]:
        """Cached user, refreshed from the backend only when stale"""
        if self.session.user is not None and not self.session.stale:
            return self.session.user
        return self.me()

    def display_name(self, user_id: Any, fallback: str = DISPLAY_NAME_FALLBACK) -> str:
        """Resolve a user's display name; failures fall back to a label"""
        if user_id in (None, ''):
            return fallback
        try:
            res = self.cached_get(f"/admin/users/{user_id}")
        except ApiError as e:
            self.logger.debug(f"Display name lookup for user {user_id} failed: {e}")
            return fallback
        user = res.get('data', res) if isinstance(res, dict) else {}
        return (user or {}).get('name') or fallback

    # ------------------------------------------------------------------ lakes / watersheds

    def _options(self, kind: str, q: str = '') -> List[Dict]:
        params = {'q': q} if q else None
        for url in (f"/options/{kind}", f"/{kind}"):
            try:
                res = self.cached_get(url, params=params, ttl=HTTP_CACHE_OPTIONS_TTL_SECONDS)
            except ApiError as e:
                self.logger.debug(f"{url} unavailable ({e}); trying next source")
                continue
            return [{'id': row.get('id'), 'name': row.get('name')} for row in pluck(res)]
        return []

    def lake_options(self, q: str = '') -> List[Dict]:
        return self._options('lakes', q)

    def watershed_options(self, q: str = '') -> List[Dict]:
        return self._options('watersheds', q)

    def fetch_lake(self, lake_id: Any) -> Dict:
        res = self.cached_get(f"/lakes/{lake_id}", auth=False)
        return res.get('data', res) if isinstance(res, dict) else res

    def body_name(self, body_type: str, body_id: Any) -> str:
        """Name of a lake or watershed for headers; empty string when unknown"""
        try:
            if body_type == 'lake':
                return self.fetch_lake(body_id).get('name') or ''
            for row in pluck(self.cached_get('/watersheds')):
                if str(row.get('id')) == str(body_id):
                    return row.get('name') or ''
        except ApiError as e:
            self.logger.debug(f"Body name lookup failed for {body_type} {body_id}: {e}")
        return ''

    # ------------------------------------------------------------------ layers

    def layers_for_body(self, body_type: str, body_id: Any) -> List[Dict]:
        if not body_type or not body_id:
            return []
        res = self.get('/layers', params={'body_type': body_type, 'body_id': body_id, 'include': 'geom,bounds'})
        return pluck(res)

    def public_layers(self, body_type: str, body_id: Any) -> List[Dict]:
        res = self.cached_get('/public/layers', params={'body_type': body_type, 'body_id': body_id}, auth=False)
        return pluck(res)

    def create_layer(self, payload: Dict) -> Dict:
        res = self.post('/layers', payload)
        self.invalidate('/layers', '/public/layers')
        return res

    def update_layer(self, layer_id: Any, payload: Dict) -> Dict:
        res = self.patch(f"/layers/{layer_id}", payload)
        self.invalidate('/layers', '/public/layers')
        return res

    def delete_layer(self, layer_id: Any) -> Dict:
        res = self.delete(f"/layers/{layer_id}")
        self.invalidate('/layers', '/public/layers')
        return res

    def set_layer_default(self, layer_id: Any, is_active: bool) -> Dict:
        res = self.patch(f"/layers/{layer_id}/default", {'is_active': bool(is_active)})
        self.invalidate('/layers', '/public/layers')
        return res

    def toggle_layer_visibility(self, row: Dict, allowed: Optional[Iterable[str]] = None) -> Dict:
        if not row or not row.get('id'):
            raise ValueError("Layer row is required")
        nxt = compute_next_visibility(row.get('visibility'), allowed)
        if nxt == row.get('visibility'):
            return row
        return self.update_layer(row['id'], {'visibility': nxt})

    # ------------------------------------------------------------------ sample events

    def sample_events(self, lake_id: Any, organization_id: Any = None,
                      sampled_from: Optional[str] = None, sampled_to: Optional[str] = None,
                      limit: int = API_SAMPLE_EVENTS_LIMIT) -> List[Dict]:
        """Public sample events for a lake (optionally one dataset source)"""
        if not lake_id:
            return []
        params = {
            'lake_id': lake_id,
            'organization_id': organization_id,
            'sampled_from': sampled_from,
            'sampled_to': sampled_to,
            'limit': limit,
        }
        res = self.cached_get('/public/sample-events', params=params, auth=False)
        events = pluck(res)
        self.logger.info(f"Loaded {len(events)} sample events for lake {lake_id}")
        return events

    # ------------------------------------------------------------------ population rasters

    def population_rasters(self, params: Optional[Dict[str, Any]] = None, fresh: bool = False) -> List[Dict]:
        if fresh:
            return pluck(self.get('/admin/population-rasters', params=params))
        return pluck(self.cached_get('/admin/population-rasters', params=params))

    def upload_population_raster(self, path, year: int, notes: str = '', link: str = '') -> Dict:
        ok, msg = DataValidator.validate_year(year)
        if not ok:
            raise ValueError(msg)
        with open(path, 'rb') as fh:
            res = self.request(
                'POST', '/admin/population-rasters',
                body={'year': int(year), 'notes': notes, 'link': link},
                files={'file': fh},
            )
        self.invalidate('/admin/population-rasters')
        return res

    def process_population_raster(self, raster_id: Any, make_default: bool = False) -> Dict:
        params = {'make_default': 1} if make_default else None
        res = self.post(f"/admin/population-rasters/{raster_id}/process", params=params)
        self.invalidate('/admin/population-rasters')
        return res

    def make_default_raster(self, raster_id: Any) -> Dict:
        res = self.post(f"/admin/population-rasters/{raster_id}/make-default")
        self.invalidate('/admin/population-rasters')
        return res

    def wait_for_raster(self, raster_id: Any,
                        poll_interval: float = RASTER_POLL_INTERVAL_SECONDS,
                        timeout: float = RASTER_POLL_TIMEOUT_SECONDS,
                        sleep: Callable[[float], None] = time.sleep,
                        clock: Callable[[], float] = time.monotonic) -> Dict:
        """
        Poll a raster until ingestion finishes

        Returns the raster row once its status is 'ready' or 'error'.

        Raises:
            TimeoutError: if ingestion has not finished within ``timeout``
            LookupError: if the raster disappears from the listing
        """
        deadline = clock() + timeout
        while True:
            rows = self.population_rasters(fresh=True)
            raster = next((r for r in rows if str(r.get('id')) == str(raster_id)), None)
            if raster is None:
                raise LookupError(f"Population raster {raster_id} not found")

            status = raster.get('status')
            self.logger.info(f"Raster {raster_id}: status={status} step={raster.get('ingestion_step')}")
            if status not in RASTER_STATUSES:
                self.logger.warning(f"Raster {raster_id} reports unknown status {status!r}")
            if status in RASTER_FINAL_STATUSES:
                return raster
            if clock() >= deadline:
                raise TimeoutError(f"Raster {raster_id} still '{status}' after {timeout:.0f}s")
            sleep(poll_interval)


class NominatimClient:
    """
    Nominatim lake geometry search (GeoJSON polygons)

    Low-volume use only: responses, including misses, are cached for 24h.
    """

    def __init__(self, http: Optional[requests.Session] = None,
                 cache_ttl: float = NOMINATIM_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.logger = logging.getLogger(__name__)
        self.http = http or create_session_with_retries(allowed_methods=("GET",))
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Optional[Dict]]] = {}

    def _cache_get(self, key: str) -> Tuple[bool, Optional[Dict]]:
        entry = self._cache.get(key)
        if entry is None:
            return False, None
        stored_at, data = entry
        if self._clock() - stored_at > self.cache_ttl:
            del self._cache[key]
            return False, None
        return True, data

    def _cache_set(self, key: str, data: Optional[Dict]) -> None:
        self._cache[key] = (self._clock(), data)

    @staticmethod
    def is_water_feature(props: Dict) -> bool:
        cls = str(props.get('class') or props.get('category') or '').lower()
        typ = str(props.get('type') or '').lower()
        if cls in ('water', 'natural', 'landuse'):
            if any(token in typ for token in ('lake', 'reservoir', 'water', 'riverbank')):
                return True
        extratags = props.get('extratags') or {}
        if extratags.get('water') or extratags.get('waterway'):
            return True
        cat = f"{cls}:{typ}"
        return any(token in cat for token in ('water', 'lake', 'reservoir', 'river'))

    @staticmethod
    def pick_best_feature(features: List[Dict], wanted_name: str = '') -> Optional[Dict]:
        """Score polygon candidates by name match, water-ness and vertex count"""
        polys = [f for f in features or []
                 if f and 'Polygon' in str((f.get('geometry') or {}).get('type', ''))]
        if not polys:
            return None

        wanted = wanted_name.lower()

        def score(feat: Dict) -> float:
            props = feat.get('properties') or {}
            name = str(props.get('display_name') or props.get('name') or '').lower()
            name_score = 10 if wanted and wanted in name else 0
            water_score = 5 if NominatimClient.is_water_feature(props) else 0
            geometry = feat['geometry']
            if geometry['type'] == 'Polygon':
                vertices = len((geometry.get('coordinates') or [[]])[0])
            else:
                vertices = sum(len(poly[0]) for poly in geometry.get('coordinates') or [] if poly)
            return name_score + water_score + vertices / 100

        return max(polys, key=score)

    def search_lake_geometry(self, name: str,
                             country_hint: str = NOMINATIM_COUNTRY_HINT,
                             country_codes: str = NOMINATIM_COUNTRY_CODES,
                             limit: int = 5) -> Optional[Dict]:
        """Return the best GeoJSON polygon Feature for a lake name, or None"""
        clean = str(name or '').strip()
        if not clean:
            return None

        for q in (f"{clean}, {country_hint}".strip(', '), clean):
            key = f"search:{q}|cc={country_codes}|lim={limit}"
            found, cached = self._cache_get(key)
            if found:
                if cached is None:
                    continue
                return cached

            params = {
                'format': 'geojson',
                'polygon_geojson': 1,
                'addressdetails': 1,
                'namedetails': 1,
                'q': q,
                'limit': limit,
            }
            if country_codes:
                params['countrycodes'] = country_codes

            try:
                res = self.http.get(
                    NOMINATIM_SEARCH_URL, params=params,
                    headers={'Accept-Language': 'en', 'User-Agent': NOMINATIM_USER_AGENT},
                    timeout=API_TIMEOUT_SECONDS
                )
                if not res.ok:
                    self.logger.warning(f"Nominatim returned HTTP {res.status_code} for {q!r}")
                    self._cache_set(key, None)
                    continue
                data = res.json()
            except (requests.RequestException, ValueError) as e:
                self.logger.warning(f"Nominatim search failed for {q!r}: {e}")
                self._cache_set(key, None)
                continue

            feature = self.pick_best_feature(data.get('features') or [], clean)
            self._cache_set(key, feature)
            if feature:
                return feature
        return None


class GlobalWatershedsClient:
    """Watershed, upstream rivers and flowpath lookups by lat/lng/zoom"""

    def __init__(self, http: Optional[requests.Session] = None,
                 bases: Optional[Dict[str, str]] = None):
        self.logger = logging.getLogger(__name__)
        self.http = http or create_session_with_retries(allowed_methods=("GET",))
        self.bases = bases or dict(GLOBAL_WATERSHEDS_BASES)

    @staticmethod
    def precision_for_zoom(zoom: Optional[float]) -> str:
        if isinstance(zoom, (int, float)) and zoom >= GLOBAL_WATERSHEDS_HIGH_PRECISION_ZOOM:
            return 'high'
        return 'low'

    @staticmethod
    def build_params(lat: float, lng: float, zoom: Optional[float]) -> Dict[str, str]:
        ok, msg = DataValidator.validate_coordinates(lat, lng, strict=False)
        if not ok:
            raise ValueError(msg)
        precision = GlobalWatershedsClient.precision_for_zoom(zoom)
        params = {
            'lat': f"{float(lat):.6f}",
            'lng': f"{float(lng):.6f}",
            'precision': precision,
        }
        if precision == 'high':
            params['beautify'] = 'true'
        return params

    def _fetch_json(self, kind: str, params: Dict[str, str]) -> Dict:
        try:
            res = self.http.get(self.bases[kind], params=params,
                                headers={'Accept': 'application/json'},
                                timeout=API_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            raise ApiError(None, {'message': f"{kind} request failed: {e}"}) from e
        if not res.ok:
            raise ApiError(res.status_code, {'message': res.text or f"{res.status_code} {res.reason}"})
        return res.json()

    def get_flowpath(self, lat: float, lng: float, zoom: Optional[float] = None) -> Dict:
        return self._fetch_json('flowpath', self.build_params(lat, lng, zoom))

    def get_watershed(self, lat: float, lng: float, zoom: Optional[float] = None,
                      include_rivers: bool = True) -> Dict[str, Optional[Dict]]:
        """
        Watershed polygon plus (optionally) its upstream rivers

        A failed rivers lookup is tolerated and reported as None; a failed
        watershed lookup raises ApiError.
        """
        params = self.build_params(lat, lng, zoom)
        watershed = self._fetch_json('watershed', params)
        rivers = None
        if include_rivers:
            try:
                rivers = self._fetch_json('rivers', params)
            except ApiError as e:
                self.logger.warning(f"Upstream rivers unavailable at ({lat}, {lng}): {e}")
        return {'watershed': watershed, 'rivers': rivers}
