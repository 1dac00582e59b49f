"""
Shared data model for site access analysis.

Every entity here is created fresh for one analysis request and discarded
with it.  Source adapters translate their raw GIS responses into these
shapes so the detector and resolver never branch on source-specific
field names.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from geometry import LatLng
from site_config import UNNAMED_ROAD


CONNECTION_EXACT = "exact"
CONNECTION_PROXIMITY = "proximity"
CONNECTION_NEAREST = "nearest-fallback"

CONFIDENCE_OFFICIAL = "official"
CONFIDENCE_ESTIMATED = "estimated"


def _is_blank(value: Optional[str]) -> bool:
    return not value or not value.strip() or value.strip().upper() == "N/A"


@dataclass(frozen=True)
class TrafficCount:
    """One year-stamped count (AADT) attached to a road segment."""
    value: int
    year: int
    source_label: str = ""


@dataclass
class RoadSegment:
    """A polyline plus the attributes the detector and resolver need.

    Segments sharing a ``route_id`` are one physical road split at
    intersections; ``descriptions`` carries the per-segment descriptive
    labels (e.g. begin/end descriptions on DOT count segments).
    """
    name: str
    nodes: List[LatLng]
    route_id: Optional[str] = None
    road_class: str = ""              # OSM highway value, or DOT class
    ref: str = ""                     # e.g. "SR 61"
    node_ids: Tuple[int, ...] = ()    # network node identity, OSM only
    descriptions: Tuple[str, ...] = ()
    traffic_count: Optional[TrafficCount] = None

    def display_name(self) -> str:
        if not _is_blank(self.name):
            return self.name
        if not _is_blank(self.ref):
            return self.ref
        return UNNAMED_ROAD

    def descriptive_names(self) -> List[str]:
        names = [self.name, self.ref, *self.descriptions]
        return [n for n in names if not _is_blank(n)]

    def is_service(self) -> bool:
        return self.road_class == "service"


@dataclass(frozen=True)
class AccessPoint:
    lat: float
    lng: float
    road_name: str
    connection_type: str              # CONNECTION_EXACT | _PROXIMITY | _NEAREST
    road_class: Optional[str] = None

    def coord_key(self, decimals: int = 5) -> str:
        return coord_key(self.lat, self.lng, decimals)


def coord_key(lat: float, lng: float, decimals: int = 5) -> str:
    """Rounded-coordinate key; 5 decimals is ~1.1 m."""
    return f"{lat:.{decimals}f},{lng:.{decimals}f}"


@dataclass(frozen=True)
class AttributedRoad:
    """A traffic count bound to the road fronting a parcel."""
    road_name: str                    # display form, original source spelling
    count: int                        # vehicles per day
    year: int
    confidence: str                   # CONFIDENCE_OFFICIAL | CONFIDENCE_ESTIMATED
    route_id: Optional[str]
    source_label: str = ""


@dataclass
class ParcelRecord:
    """Parcel boundary ring plus whatever descriptive fields the source had."""
    boundary: List[LatLng]
    source: str
    apn: Optional[str] = None
    owner: Optional[str] = None
    address: Optional[str] = None
    acres: Optional[float] = None
    sqft: Optional[int] = None
    land_use: Optional[str] = None
    zoning: Optional[str] = None
    estimated: bool = False


@dataclass
class FlowReading:
    """Real-time flow for the road segment nearest the coordinate."""
    current_speed: int
    free_flow_speed: int
    current_travel_time: int
    free_flow_travel_time: int
    confidence: float
    road_type: str                    # display form of the FRC
    road_class: Optional[str]         # OSM-equivalent class for VPD estimates
    congestion_percent: int
    traffic_level: str                # "Free Flow" | "Light" | "Moderate" | "Heavy"
    source: str = ""


@dataclass
class ReverseGeocode:
    """Street-level reverse geocode: the road the coordinate sits on."""
    road: Optional[str]
    address: Optional[str] = None
