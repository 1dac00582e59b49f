"""
Source adapters and the multi-source fetch orchestrator.

Every external dataset the analysis needs (parcel boundaries, the OSM road
network, official traffic counts, reverse geocoding, real-time flow) is
available from several independent public services of very different
reliability.  Each service is wrapped in a SourceAdapter that translates
its raw response into the shared model in site_types, and the adapters for
one lookup type are tried in priority order by a SourceChain:

  - region-gated adapters are skipped, not called, outside their box
  - timeouts, HTTP errors, unparseable bodies, and empty payloads decline
    the source and advance to the next one; nothing is retried
  - the first adapter with data wins and its label is reported
  - all declined -> LookupResult.no_data(), which callers treat as a
    normal "unavailable" outcome, never an error

Each attempt is recorded once in the request trace and in the passive
health monitor.

Parcel sources, in priority order:
  City of Auburn GIS > Lee County AL > state parcel services (AL/FL/GA/TX)
  > ArcGIS USA parcels > Regrid > OSM building footprint > Nominatim

Cancellation: when a chain is given a CancelToken, each fetch runs on a
worker thread and the chain waits on it or on the token, whichever fires
first.  A cancel raises LookupCancelled immediately, even mid-request,
instead of advancing to the next source.
"""

import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

import requests

from geometry import bounding_envelope, centroid, close_ring, distance_m, polygon_area_sq_ft
from overpass_http import (
    OverpassQueryError,
    OverpassRateLimitError,
    OverpassTimeoutError,
    configured_mirrors,
    overpass_query,
)
from sc_trace import get_trace
from site_config import (
    CITY_OF_AUBURN_BOX,
    FRC_ROAD_TYPES,
    LEE_COUNTY_AL_BOX,
    PUBLIC_HIGHWAY_CLASSES,
    SITE_CONFIG,
    STATE_BOXES,
    BoundingBox,
    FetchConfig,
    state_for,
)
from site_types import (
    FlowReading,
    ParcelRecord,
    ReverseGeocode,
    RoadSegment,
    TrafficCount,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

LOOKUP_PARCEL = "parcel"
LOOKUP_ROAD_NETWORK = "road_network"
LOOKUP_TRAFFIC_COUNTS = "traffic_counts"
LOOKUP_REVERSE_GEOCODE = "reverse_geocode"
LOOKUP_FLOW = "flow"

NO_SOURCE = "none"

SQ_FT_PER_ACRE = 43560

_AUBURN_URL = "https://gis.auburnalabama.org/public/rest/services/Main/COABasemap/MapServer/6/query"
_LEE_COUNTY_URL = "https://gisservices.alabama.gov/arcgis/rest/services/Parcels/LeeCounty_Parcels/MapServer/0/query"
_STATE_PARCEL_SERVICES = {
    "AL": ("Alabama Statewide Parcels",
           "https://gisservices.alabama.gov/arcgis/rest/services/Parcels/Statewide_Parcels/MapServer/0/query"),
    "FL": ("Florida DOT Parcels",
           "https://gis.fdot.gov/arcgis/rest/services/Parcels/FeatureServer/0/query"),
    "GA": ("Georgia Parcels",
           "https://services1.arcgis.com/2iUE8l8JKrP2tygQ/arcgis/rest/services/Georgia_Parcels/FeatureServer/0/query"),
    "TX": ("Texas Parcels",
           "https://services.arcgis.com/KTcxiTD9dsQw4r7Z/arcgis/rest/services/Texas_Parcels/FeatureServer/0/query"),
}
_USA_PARCELS_URLS = (
    ("ArcGIS USA Parcels",
     "https://services2.arcgis.com/FiaPA4ga0iQKduv3/ArcGIS/rest/services/USA_Parcels_SubDivision/FeatureServer/0/query"),
    ("ArcGIS USA Parcels (county)",
     "https://services.arcgis.com/P3ePLMYs2RVChkJx/ArcGIS/rest/services/USA_Parcels/FeatureServer/0/query"),
)
_REGRID_URL = "https://tiles.regrid.com/api/v1/parcel"
_NOMINATIM_REVERSE_URL = "https://nominatim.openstreetmap.org/reverse"
_GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

_FDOT_AADT_URL = (
    "https://services1.arcgis.com/O1JpcwDW8sjYuddV/arcgis/rest/services/"
    "AADT_On_Florida_State_Highway_System/FeatureServer/0/query"
)
_HPMS_BASE_URL = "https://geo.dot.gov/server/rest/services/Hosted"
_HPMS_YEAR = 2018
# geo.dot.gov uses full state names for its 2018_PR services
_HPMS_SERVICE_NAMES = {
    "AL": "Alabama", "FL": "Florida", "GA": "Georgia", "TX": "Texas",
}

_TOMTOM_FLOW_URL = "https://api.tomtom.com/traffic/services/4/flowSegmentData/relative0/10/json"

# Used when every parcel source declines: ~200 x 300 ft commercial lot.
_APPROX_HALF_LAT_DEG = 0.00135
_APPROX_HALF_LNG_DEG = 0.0009
_APPROX_ACRES = 1.4
_APPROX_SQFT = 60984
APPROXIMATE_PARCEL_SOURCE = "Estimated (typical commercial lot)"

# Field-name fallbacks across county/state parcel schemas.
_ACRES_FIELDS = ("ACRES", "ACREAGE", "GIS_ACRES", "CALCACRES", "ll_gisacre", "DEEDACRES")
_APN_FIELDS = ("PARCELID", "PIN", "APN", "PARCEL_ID", "PARCELNO", "parcelnumb")
_OWNER_FIELDS = ("OWNER", "OWNERNAME", "OWNER_NAME", "OWNER1")
_ADDRESS_FIELDS = ("SITEADDR", "ADDRESS", "PROP_ADDR", "PROPADDR", "SITUS", "address")
_ZONING_FIELDS = ("ZONING", "ZONE_CODE", "ZONE")
_LAND_USE_FIELDS = ("LANDUSE", "LAND_USE", "PROPCLASS", "USE_CODE", "USEDESC")

_DEFAULT_USER_AGENT = "SiteCheck/1.0 (site access analysis)"


def user_agent() -> str:
    return os.environ.get("SITECHECK_USER_AGENT", _DEFAULT_USER_AGENT)


# =============================================================================
# ERRORS & RESULT TYPES
# =============================================================================

class SourceDeclined(Exception):
    """A source answered but cannot serve this lookup (error body, missing
    key, unusable payload).  The chain moves on to the next source."""

    pass


class LookupCancelled(Exception):
    """The caller cancelled the analysis while a lookup was in flight."""

    pass


class CancelToken:
    """Shared cancellation flag for the chains of one analysis.

    cancel() wakes every chain waiting on a fetch, which then raises
    LookupCancelled at once without waiting for the HTTP call.  The
    abandoned call's session is closed and its worker thread ends on the
    adapter's own timeout.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._sessions: Set[requests.Session] = set()
        self._waiters: Set[threading.Event] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            sessions = list(self._sessions)
            waiters = list(self._waiters)
            self._sessions.clear()
            self._waiters.clear()
        for waiter in waiters:
            waiter.set()
        for session in sessions:
            try:
                session.close()
            except Exception:
                logger.debug("Error closing session during cancel", exc_info=True)

    def register(self, session: requests.Session,
                 waiter: Optional[threading.Event] = None) -> None:
        with self._lock:
            self._sessions.add(session)
            if waiter is not None:
                self._waiters.add(waiter)
        if self.cancelled:
            if waiter is not None:
                waiter.set()
            session.close()

    def unregister(self, session: requests.Session,
                   waiter: Optional[threading.Event] = None) -> None:
        with self._lock:
            self._sessions.discard(session)
            if waiter is not None:
                self._waiters.discard(waiter)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise LookupCancelled("analysis cancelled")


@dataclass
class LookupResult:
    """Outcome of one chain: the winning payload and the label of the
    source that produced it (``"none"`` when every source declined)."""
    data: Any
    source_label: str
    declined: List[str] = field(default_factory=list)

    @classmethod
    def no_data(cls, declined: Optional[List[str]] = None) -> "LookupResult":
        return cls(data=None, source_label=NO_SOURCE, declined=list(declined or []))

    @property
    def has_data(self) -> bool:
        return self.data is not None


# =============================================================================
# HELPERS
# =============================================================================

def _attr(attrs: Dict[str, Any], *keys: str, default=None):
    """Get attribute case-insensitively. Tries exact match then uppercase."""
    for k in keys:
        if k in attrs and attrs[k] not in (None, ""):
            return attrs[k]
        uk = k.upper()
        for key, val in attrs.items():
            if key.upper() == uk and val not in (None, ""):
                return val
    return default


def _safe_int(val) -> Optional[int]:
    if val is None or val == "":
        return None
    try:
        v = int(float(val))
        return v if v >= 0 else None
    except (TypeError, ValueError):
        return None


def _safe_float(val) -> Optional[float]:
    if val is None or val == "":
        return None
    try:
        v = float(val)
        return v if v > 0 else None
    except (TypeError, ValueError):
        return None


def _text(val) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    return s or None


def _is_empty(data: Any) -> bool:
    if data is None:
        return True
    if isinstance(data, (list, tuple, dict)) and not data:
        return True
    return False


def _read_json(resp: requests.Response) -> Any:
    """2xx JSON body, or SourceDeclined."""
    if not resp.ok:
        raise SourceDeclined(f"HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError:
        raise SourceDeclined(f"non-JSON response (HTTP {resp.status_code})")
    if isinstance(data, dict) and "error" in data:
        err = data["error"]
        msg = err.get("message", err) if isinstance(err, dict) else err
        raise SourceDeclined(f"service error: {msg}")
    return data


def _ring_from_xy(coords: Sequence[Sequence[float]]) -> List:
    """[x, y] / [lng, lat] pairs -> (lat, lng) ring."""
    return [(float(c[1]), float(c[0])) for c in coords if len(c) >= 2]


def fill_parcel_area(record: ParcelRecord) -> ParcelRecord:
    """Derive missing acreage/square footage from the boundary."""
    if record.acres is None and record.sqft is None and len(record.boundary) >= 3:
        sqft = polygon_area_sq_ft(record.boundary)
        if sqft > 0:
            record.sqft = int(round(sqft))
            record.acres = round(sqft / SQ_FT_PER_ACRE, 3)
    elif record.acres is None and record.sqft:
        record.acres = round(record.sqft / SQ_FT_PER_ACRE, 3)
    elif record.sqft is None and record.acres:
        record.sqft = int(round(record.acres * SQ_FT_PER_ACRE))
    return record


def approximate_parcel(lat: float, lng: float) -> ParcelRecord:
    """A typical commercial lot centered on the point, marked estimated."""
    boundary = close_ring([
        (lat - _APPROX_HALF_LAT_DEG, lng - _APPROX_HALF_LNG_DEG),
        (lat - _APPROX_HALF_LAT_DEG, lng + _APPROX_HALF_LNG_DEG),
        (lat + _APPROX_HALF_LAT_DEG, lng + _APPROX_HALF_LNG_DEG),
        (lat + _APPROX_HALF_LAT_DEG, lng - _APPROX_HALF_LNG_DEG),
    ])
    return ParcelRecord(
        boundary=boundary,
        source=APPROXIMATE_PARCEL_SOURCE,
        acres=_APPROX_ACRES,
        sqft=_APPROX_SQFT,
        estimated=True,
    )


# =============================================================================
# ADAPTER BASE
# =============================================================================

class SourceAdapter:
    """One external service for one lookup type.

    Subclasses implement fetch(); it returns the translated payload, or
    None / an empty collection when the service has nothing for the point,
    and may raise SourceDeclined or any requests exception.
    """

    lookup_type: str = ""

    def __init__(self, label: str, timeout: int, region: Optional[BoundingBox] = None,
                 state: Optional[str] = None):
        self.label = label
        self.timeout = timeout
        self.region = region
        self.state = state

    def covers(self, lat: float, lng: float) -> bool:
        """Inside the region box and, for a state service, in that state.

        State boxes overlap along borders, so a state service also requires
        state_for() to pick its state; exactly one state service is tried.
        """
        if self.region is not None and not self.region.contains(lat, lng):
            return False
        return self.state is None or state_for(lat, lng) == self.state

    def fetch(self, lat: float, lng: float, session: requests.Session) -> Any:
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} {self.label!r}>"


# =============================================================================
# PARCEL ADAPTERS
# =============================================================================

class ArcGISParcelSource(SourceAdapter):
    """Point-in-parcel query against an ArcGIS REST parcel layer."""

    lookup_type = LOOKUP_PARCEL

    def __init__(self, label: str, url: str, timeout: int = SITE_CONFIG.fetch.parcel_timeout,
                 region: Optional[BoundingBox] = None, state: Optional[str] = None):
        super().__init__(label, timeout, region, state)
        self.url = url

    def fetch(self, lat, lng, session):
        params = {
            "where": "1=1",
            "geometry": f"{lng},{lat}",
            "geometryType": "esriGeometryPoint",
            "inSR": "4326",
            "spatialRel": "esriSpatialRelIntersects",
            "outFields": "*",
            "returnGeometry": "true",
            "outSR": "4326",
            "f": "json",
        }
        resp = session.get(self.url, params=params, timeout=self.timeout)
        data = _read_json(resp)

        features = data.get("features") or []
        if not features:
            return None
        feature = features[0]
        rings = (feature.get("geometry") or {}).get("rings") or []
        if not rings or len(rings[0]) < 3:
            return None

        attrs = feature.get("attributes") or {}
        record = ParcelRecord(
            boundary=close_ring(_ring_from_xy(rings[0])),
            source=self.label,
            apn=_text(_attr(attrs, *_APN_FIELDS)),
            owner=_text(_attr(attrs, *_OWNER_FIELDS)),
            address=_text(_attr(attrs, *_ADDRESS_FIELDS)),
            acres=_safe_float(_attr(attrs, *_ACRES_FIELDS)),
            land_use=_text(_attr(attrs, *_LAND_USE_FIELDS)),
            zoning=_text(_attr(attrs, *_ZONING_FIELDS)),
        )
        return fill_parcel_area(record)


class RegridParcelSource(SourceAdapter):
    lookup_type = LOOKUP_PARCEL

    def __init__(self, timeout: int = SITE_CONFIG.fetch.parcel_timeout):
        super().__init__("Regrid", timeout)

    def fetch(self, lat, lng, session):
        params = {"lat": lat, "lon": lng, "token": "public"}
        resp = session.get(_REGRID_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)

        results = data.get("results") or []
        if not results:
            return None
        parcel = results[0]
        coords = ((parcel.get("geometry") or {}).get("coordinates") or [[]])[0]
        if len(coords) < 3:
            return None

        props = parcel.get("properties") or {}
        record = ParcelRecord(
            boundary=close_ring(_ring_from_xy(coords)),
            source=self.label,
            apn=_text(props.get("parcelnumb")),
            owner=_text(props.get("owner")),
            address=_text(props.get("address")),
            acres=_safe_float(props.get("ll_gisacre")),
            sqft=_safe_int(props.get("ll_gissqft")),
            land_use=_text(props.get("usedesc")),
            zoning=_text(props.get("zoning")),
        )
        return fill_parcel_area(record)


class OverpassFootprintSource(SourceAdapter):
    """Closest OSM building / landuse / amenity outline to the point.

    Usually a building footprint rather than a lot; the detector buffers
    small outlines before using them.
    """

    lookup_type = LOOKUP_PARCEL

    def __init__(self, base_url: str, radius_m: int = SITE_CONFIG.fetch.footprint_radius_m,
                 timeout: int = SITE_CONFIG.fetch.overpass_timeout):
        super().__init__("OpenStreetMap Building", timeout)
        self.base_url = base_url
        self.radius_m = radius_m

    def fetch(self, lat, lng, session):
        around = f"(around:{self.radius_m},{lat},{lng})"
        query = f"""
        [out:json][timeout:{self.timeout}];
        (
          way["building"]{around};
          way["landuse"]{around};
          way["amenity"]{around};
        );
        out tags geom;
        """
        data = overpass_query(
            query, base_url=self.base_url, caller="parcel_footprint",
            timeout=self.timeout, session=session,
        )

        best = None
        best_dist = float("inf")
        for el in data.get("elements", []):
            if el.get("type") != "way":
                continue
            coords = [
                (g["lat"], g["lon"]) for g in el.get("geometry") or []
                if g and "lat" in g and "lon" in g
            ]
            if len(coords) < 3:
                continue
            center = centroid(coords)
            dist = distance_m((lat, lng), center)
            if dist < best_dist:
                best_dist = dist
                best = (coords, el.get("tags") or {})

        if best is None:
            return None

        coords, tags = best
        land_use = tags.get("building") or tags.get("landuse") or tags.get("amenity")
        if land_use == "yes":
            land_use = "Building"
        return fill_parcel_area(ParcelRecord(
            boundary=close_ring(coords),
            source=self.label,
            address=_text(" ".join(
                p for p in (tags.get("addr:housenumber"), tags.get("addr:street")) if p
            )),
            land_use=land_use,
        ))


class NominatimBoundarySource(SourceAdapter):
    """Polygon of the OSM object Nominatim reverse-geocodes the point to."""

    lookup_type = LOOKUP_PARCEL

    def __init__(self, timeout: int = SITE_CONFIG.fetch.geocode_timeout):
        super().__init__("OpenStreetMap (Nominatim)", timeout)

    def fetch(self, lat, lng, session):
        params = {
            "lat": lat, "lon": lng, "format": "json",
            "polygon_geojson": 1, "zoom": 18,
        }
        resp = session.get(_NOMINATIM_REVERSE_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)

        geojson = data.get("geojson") or {}
        coords = geojson.get("coordinates")
        if not coords:
            return None
        if geojson.get("type") == "Polygon":
            ring = coords[0]
        elif geojson.get("type") == "MultiPolygon":
            ring = coords[0][0]
        else:
            return None
        if len(ring) < 3:
            return None

        return fill_parcel_area(ParcelRecord(
            boundary=close_ring(_ring_from_xy(ring)),
            source=self.label,
            address=_text(data.get("display_name")),
        ))


# =============================================================================
# ROAD NETWORK ADAPTER
# =============================================================================

def road_network_query(lat: float, lng: float, radius_m: int, timeout: int) -> str:
    classes = "|".join(PUBLIC_HIGHWAY_CLASSES)
    around = f"(around:{radius_m},{lat},{lng})"
    return f"""
    [out:json][timeout:{timeout}];
    (
      way["highway"~"^({classes})$"]{around};
      way["highway"="service"]{around};
    );
    out body geom;
    """


def parse_road_network(data: Dict[str, Any]) -> List[RoadSegment]:
    """Overpass ``out body geom`` ways -> RoadSegments with node identity."""
    segments: List[RoadSegment] = []
    for el in data.get("elements", []):
        if el.get("type") != "way":
            continue
        geometry = el.get("geometry") or []
        node_ids = el.get("nodes") or []
        nodes = []
        ids = []
        for idx, g in enumerate(geometry):
            if not g or "lat" not in g or "lon" not in g:
                continue
            nodes.append((float(g["lat"]), float(g["lon"])))
            if len(node_ids) == len(geometry):
                ids.append(int(node_ids[idx]))
        if len(nodes) < 2:
            continue
        tags = el.get("tags") or {}
        segments.append(RoadSegment(
            name=tags.get("name", ""),
            nodes=nodes,
            road_class=tags.get("highway", ""),
            ref=tags.get("ref", ""),
            node_ids=tuple(ids) if len(ids) == len(nodes) else (),
        ))
    return segments


class OverpassRoadNetworkSource(SourceAdapter):
    lookup_type = LOOKUP_ROAD_NETWORK

    def __init__(self, base_url: str, radius_m: int = SITE_CONFIG.fetch.road_radius_m,
                 timeout: int = SITE_CONFIG.fetch.overpass_timeout):
        host = base_url.split("://", 1)[-1].split("/", 1)[0]
        super().__init__(f"Overpass ({host})", timeout)
        self.base_url = base_url
        self.radius_m = radius_m

    def fetch(self, lat, lng, session):
        data = overpass_query(
            road_network_query(lat, lng, self.radius_m, self.timeout),
            base_url=self.base_url, caller="road_network",
            timeout=self.timeout, session=session,
        )
        return parse_road_network(data)


# =============================================================================
# TRAFFIC COUNT ADAPTERS
# =============================================================================

def _envelope_params(lat: float, lng: float, half_deg: float, out_fields: str) -> Dict[str, str]:
    box = bounding_envelope(lat, lng, half_deg)
    envelope = {
        "xmin": box.min_lng, "ymin": box.min_lat,
        "xmax": box.max_lng, "ymax": box.max_lat,
        "spatialReference": {"wkid": 4326},
    }
    return {
        "where": "1=1",
        "geometry": json.dumps(envelope),
        "geometryType": "esriGeometryEnvelope",
        "inSR": "4326",
        "spatialRel": "esriSpatialRelIntersects",
        "outFields": out_fields,
        "returnGeometry": "true",
        "outSR": "4326",
        "f": "json",
    }


def _feature_nodes(geometry: Dict[str, Any]) -> List:
    """Polyline paths or a single x/y point, as (lat, lng) nodes."""
    if not geometry:
        return []
    nodes = []
    for path in geometry.get("paths") or []:
        nodes.extend(_ring_from_xy(path))
    if not nodes and "x" in geometry and "y" in geometry:
        nodes.append((float(geometry["y"]), float(geometry["x"])))
    return nodes


class FdotAadtSource(SourceAdapter):
    """FDOT annual average daily traffic on the Florida State Highway System."""

    lookup_type = LOOKUP_TRAFFIC_COUNTS

    def __init__(self, envelope_deg: float = SITE_CONFIG.fetch.traffic_envelope_deg,
                 timeout: int = SITE_CONFIG.fetch.traffic_timeout):
        super().__init__("FDOT AADT", timeout, region=STATE_BOXES["FL"])
        self.envelope_deg = envelope_deg

    def fetch(self, lat, lng, session):
        params = _envelope_params(
            lat, lng, self.envelope_deg,
            "AADT,AADTYEAR,ROADWAY,COUNTY,BEGINDESC,ENDDESC",
        )
        resp = session.get(_FDOT_AADT_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)

        segments = []
        for feature in data.get("features") or []:
            attrs = feature.get("attributes") or {}
            aadt = _safe_int(_attr(attrs, "AADT"))
            if not aadt:
                continue
            year = _safe_int(_attr(attrs, "AADTYEAR")) or 0
            descriptions = tuple(
                d for d in (_text(_attr(attrs, "BEGINDESC")), _text(_attr(attrs, "ENDDESC"))) if d
            )
            segments.append(RoadSegment(
                name="",
                nodes=_feature_nodes(feature.get("geometry") or {}),
                route_id=_text(_attr(attrs, "ROADWAY")),
                descriptions=descriptions,
                traffic_count=TrafficCount(aadt, year, self.label),
            ))
        return segments


class HpmsTrafficSource(SourceAdapter):
    """FHWA HPMS road segments with AADT, per-state service."""

    lookup_type = LOOKUP_TRAFFIC_COUNTS

    def __init__(self, state: str, envelope_deg: float = SITE_CONFIG.fetch.traffic_envelope_deg,
                 timeout: int = SITE_CONFIG.fetch.traffic_timeout):
        super().__init__(f"FHWA HPMS ({state})", timeout,
                         region=STATE_BOXES.get(state), state=state)
        self.envelope_deg = envelope_deg
        service = _HPMS_SERVICE_NAMES.get(state, state)
        self.url = f"{_HPMS_BASE_URL}/{service}_{_HPMS_YEAR}_PR/FeatureServer/0/query"

    def fetch(self, lat, lng, session):
        params = _envelope_params(lat, lng, self.envelope_deg, "*")
        resp = session.get(self.url, params=params, timeout=self.timeout)
        data = _read_json(resp)

        segments = []
        for feature in data.get("features") or []:
            attrs = feature.get("attributes") or {}
            aadt = _safe_int(_attr(attrs, "AADT"))
            if not aadt:
                continue
            year = _safe_int(_attr(attrs, "YEAR_RECORD", "DATA_YEAR")) or _HPMS_YEAR
            segments.append(RoadSegment(
                name=_text(_attr(attrs, "ROUTE_NAME", "ROUTE_COMMON_NAME")) or "",
                nodes=_feature_nodes(feature.get("geometry") or {}),
                route_id=_text(_attr(attrs, "ROUTE_ID")),
                ref=_text(_attr(attrs, "ROUTE_NUMBER")) or "",
                traffic_count=TrafficCount(aadt, year, self.label),
            ))
        return segments


# =============================================================================
# REVERSE GEOCODE ADAPTERS
# =============================================================================

class NominatimReverseSource(SourceAdapter):
    lookup_type = LOOKUP_REVERSE_GEOCODE

    def __init__(self, timeout: int = SITE_CONFIG.fetch.geocode_timeout):
        super().__init__("Nominatim", timeout)

    def fetch(self, lat, lng, session):
        params = {"lat": lat, "lon": lng, "format": "json", "zoom": 17, "addressdetails": 1}
        resp = session.get(_NOMINATIM_REVERSE_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)
        road = _text((data.get("address") or {}).get("road"))
        if not road:
            return None
        return ReverseGeocode(road=road, address=_text(data.get("display_name")))


class GoogleReverseSource(SourceAdapter):
    lookup_type = LOOKUP_REVERSE_GEOCODE

    def __init__(self, api_key: Optional[str] = None,
                 timeout: int = SITE_CONFIG.fetch.geocode_timeout):
        super().__init__("Google Geocoding", timeout)
        self.api_key = api_key or os.environ.get("GOOGLE_MAPS_API_KEY")

    def fetch(self, lat, lng, session):
        if not self.api_key:
            raise SourceDeclined("GOOGLE_MAPS_API_KEY not set")
        params = {"latlng": f"{lat},{lng}", "key": self.api_key}
        resp = session.get(_GOOGLE_GEOCODE_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK":
            raise SourceDeclined(f"Geocoding API status {status}")

        for result in data.get("results", []):
            for comp in result.get("address_components", []):
                if "route" in comp.get("types", []):
                    return ReverseGeocode(
                        road=comp.get("long_name"),
                        address=result.get("formatted_address"),
                    )
        return None


# =============================================================================
# FLOW ADAPTER
# =============================================================================

def congestion_level(congestion_percent: int) -> str:
    if congestion_percent > 50:
        return "Heavy"
    if congestion_percent > 25:
        return "Moderate"
    if congestion_percent > 10:
        return "Light"
    return "Free Flow"


class TomTomFlowSource(SourceAdapter):
    lookup_type = LOOKUP_FLOW

    def __init__(self, api_key: Optional[str] = None,
                 timeout: int = SITE_CONFIG.fetch.flow_timeout):
        super().__init__("TomTom Traffic", timeout)
        self.api_key = api_key or os.environ.get("TOMTOM_API_KEY")

    def fetch(self, lat, lng, session):
        if not self.api_key:
            raise SourceDeclined("TOMTOM_API_KEY not set")
        params = {
            "point": f"{lat},{lng}", "unit": "MPH",
            "thickness": 1, "key": self.api_key,
        }
        resp = session.get(_TOMTOM_FLOW_URL, params=params, timeout=self.timeout)
        data = _read_json(resp)

        flow = data.get("flowSegmentData")
        if not flow:
            return None

        current = float(flow.get("currentSpeed") or 0)
        free = float(flow.get("freeFlowSpeed") or 0)
        congestion = int(round((1 - current / free) * 100)) if free > 0 else 0
        congestion = max(0, congestion)
        road_type, road_class = FRC_ROAD_TYPES.get(flow.get("frc"), ("Road", None))

        return FlowReading(
            current_speed=int(round(current)),
            free_flow_speed=int(round(free)),
            current_travel_time=int(flow.get("currentTravelTime") or 0),
            free_flow_travel_time=int(flow.get("freeFlowTravelTime") or 0),
            confidence=float(flow.get("confidence") or 0),
            road_type=road_type,
            road_class=road_class,
            congestion_percent=congestion,
            traffic_level=congestion_level(congestion),
            source=self.label,
        )


# =============================================================================
# SOURCE CHAIN
# =============================================================================

def _record_attempt(adapter: SourceAdapter, t0: float, status_code: int,
                    outcome: str, note: str = "") -> None:
    """Record one attempt to trace and health monitor."""
    elapsed_ms = int((time.time() - t0) * 1000)
    trace = get_trace()
    if trace:
        trace.record_api_call(
            service=adapter.label,
            endpoint=adapter.lookup_type,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            outcome=outcome,
        )
    try:
        from health_monitor import record_call
        record_call(adapter.label, outcome, elapsed_ms, note or None)
    except Exception:
        pass


# Fetches run here when the chain has a CancelToken, so the chain thread
# can stop waiting the moment the token fires.
_FETCH_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="source-fetch")


class SourceChain:
    """Ordered fallback across the adapters of one lookup type."""

    def __init__(self, lookup_type: str, adapters: Sequence[SourceAdapter]):
        self.lookup_type = lookup_type
        self.adapters = list(adapters)

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.trust_env = False
        session.headers["User-Agent"] = user_agent()
        return session

    def _fetch(self, adapter: SourceAdapter, lat: float, lng: float,
               session: requests.Session, cancel: Optional[CancelToken]) -> Any:
        """adapter.fetch(), abandoned with LookupCancelled if the token fires."""
        if cancel is None:
            return adapter.fetch(lat, lng, session)

        wake = threading.Event()
        future = _FETCH_POOL.submit(adapter.fetch, lat, lng, session)
        future.add_done_callback(lambda _f: wake.set())
        cancel.register(session, wake)
        try:
            wake.wait()
        finally:
            cancel.unregister(session, wake)
        if cancel.cancelled:
            logger.info("%s: abandoning %s on cancel", self.lookup_type, adapter.label)
            raise LookupCancelled("analysis cancelled")
        return future.result()

    def resolve(self, lat: float, lng: float,
                cancel: Optional[CancelToken] = None) -> LookupResult:
        """First adapter with data wins.  Never raises except on cancel."""
        declined: List[str] = []

        for adapter in self.adapters:
            if cancel:
                cancel.raise_if_cancelled()
            if not adapter.covers(lat, lng):
                logger.debug("%s: %s skipped outside its region", self.lookup_type, adapter.label)
                continue

            session = self._new_session()
            t0 = time.time()
            data = None
            try:
                data = self._fetch(adapter, lat, lng, session, cancel)
            except LookupCancelled:
                raise
            except SourceDeclined as e:
                _record_attempt(adapter, t0, 0, "declined", str(e))
                logger.info("%s: %s declined (%s)", self.lookup_type, adapter.label, e)
            except (requests.Timeout, OverpassTimeoutError):
                _record_attempt(adapter, t0, 0, "timeout")
                logger.warning("%s: %s timed out after %ds",
                               self.lookup_type, adapter.label, adapter.timeout)
            except (OverpassRateLimitError, OverpassQueryError) as e:
                _record_attempt(adapter, t0, 0, "error", str(e))
                logger.warning("%s: %s failed: %s", self.lookup_type, adapter.label, e)
            except Exception as e:
                _record_attempt(adapter, t0, 0, "error", type(e).__name__)
                logger.warning("%s: %s failed", self.lookup_type, adapter.label,
                               exc_info=True)
            else:
                if _is_empty(data):
                    _record_attempt(adapter, t0, 200, "empty")
                    logger.info("%s: %s returned no data", self.lookup_type, adapter.label)
                    data = None
                else:
                    _record_attempt(adapter, t0, 200, "ok")
            finally:
                session.close()

            if cancel:
                cancel.raise_if_cancelled()
            if data is not None:
                logger.info("%s: using %s", self.lookup_type, adapter.label)
                return LookupResult(data=data, source_label=adapter.label, declined=declined)
            declined.append(adapter.label)

        logger.info("%s: no source had data (%d declined)", self.lookup_type, len(declined))
        return LookupResult.no_data(declined)


# =============================================================================
# DEFAULT CHAINS
# =============================================================================

def build_default_chains(fetch: FetchConfig = SITE_CONFIG.fetch) -> Dict[str, SourceChain]:
    """Priority-ordered chains for every lookup type."""
    mirrors = configured_mirrors()

    parcel: List[SourceAdapter] = [
        ArcGISParcelSource("City of Auburn GIS", _AUBURN_URL,
                           fetch.parcel_timeout, CITY_OF_AUBURN_BOX),
        ArcGISParcelSource("Lee County AL GIS", _LEE_COUNTY_URL,
                           fetch.parcel_timeout, LEE_COUNTY_AL_BOX),
    ]
    for state, (label, url) in _STATE_PARCEL_SERVICES.items():
        parcel.append(ArcGISParcelSource(label, url, fetch.parcel_timeout,
                                         STATE_BOXES[state], state=state))
    for label, url in _USA_PARCELS_URLS:
        parcel.append(ArcGISParcelSource(label, url, fetch.parcel_timeout))
    parcel.extend([
        RegridParcelSource(fetch.parcel_timeout),
        OverpassFootprintSource(mirrors[0], fetch.footprint_radius_m, fetch.overpass_timeout),
        NominatimBoundarySource(fetch.geocode_timeout),
    ])

    roads = [
        OverpassRoadNetworkSource(url, fetch.road_radius_m, fetch.overpass_timeout)
        for url in mirrors
    ]

    traffic: List[SourceAdapter] = [
        FdotAadtSource(fetch.traffic_envelope_deg, fetch.traffic_timeout),
    ]
    traffic.extend(
        HpmsTrafficSource(state, fetch.traffic_envelope_deg, fetch.traffic_timeout)
        for state in _HPMS_SERVICE_NAMES
    )

    geocode: List[SourceAdapter] = []
    if os.environ.get("GOOGLE_MAPS_API_KEY"):
        geocode.append(GoogleReverseSource(timeout=fetch.geocode_timeout))
    geocode.append(NominatimReverseSource(fetch.geocode_timeout))

    flow: List[SourceAdapter] = []
    if os.environ.get("TOMTOM_API_KEY"):
        flow.append(TomTomFlowSource(timeout=fetch.flow_timeout))

    return {
        LOOKUP_PARCEL: SourceChain(LOOKUP_PARCEL, parcel),
        LOOKUP_ROAD_NETWORK: SourceChain(LOOKUP_ROAD_NETWORK, roads),
        LOOKUP_TRAFFIC_COUNTS: SourceChain(LOOKUP_TRAFFIC_COUNTS, traffic),
        LOOKUP_REVERSE_GEOCODE: SourceChain(LOOKUP_REVERSE_GEOCODE, geocode),
        LOOKUP_FLOW: SourceChain(LOOKUP_FLOW, flow),
    }
