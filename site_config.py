"""
Site access configuration for SiteCheck.

Owns every numeric constant that affects access-point detection, road-name
matching, and source fetching.  Reference tables (road aliases, region
bounding boxes, road-class VPD estimates) are module-level dicts.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class BoundingBox:
    """A lat/lng rectangle used to gate region-specific sources."""
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return (
            self.min_lat <= lat <= self.max_lat
            and self.min_lng <= lng <= self.max_lng
        )


@dataclass(frozen=True)
class DetectionThresholds:
    """Distances (meters) and limits for the access point detector."""
    service_touch_m: float = 2.0       # driveway mapped just off the boundary
    proximity_m: float = 5.0           # service-road endpoint to public road
    nearest_max_m: float = 50.0        # nearest-public-road cutoff
    nearest_max_points: int = 3
    min_parcel_area_sq_m: float = 1000.0  # below this it's likely a footprint
    footprint_buffer_m: float = 30.0
    dedupe_decimals: int = 5           # ~1.1 m


@dataclass(frozen=True)
class MatchThresholds:
    """Road-name containment thresholds.

    Tuned against Florida DOT descriptive labels; see DESIGN.md before
    changing either value.
    """
    min_match_length: int = 3
    containment_ratio: float = 0.6


@dataclass(frozen=True)
class FetchConfig:
    """Search extents and per-source timeouts (seconds)."""
    road_radius_m: int = 100
    footprint_radius_m: int = 50
    traffic_envelope_deg: float = 0.015  # ~1 mile
    parcel_timeout: int = 8
    overpass_timeout: int = 12
    traffic_timeout: int = 15
    geocode_timeout: int = 10
    flow_timeout: int = 10
    max_workers: int = 5


@dataclass(frozen=True)
class SiteConfig:
    detection: DetectionThresholds = field(default_factory=DetectionThresholds)
    matching: MatchThresholds = field(default_factory=MatchThresholds)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    version: str = "2026.10"


# =============================================================================
# Reference data
# =============================================================================

# Local road name -> official route-number variants.  Keys and values are
# raw strings; road_names normalizes both sides when building its index.
ROAD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "Thomasville": ("SR-61", "US-319"),
    "Apalachee": ("US-27", "SR-20"),
    "Tennessee": ("US-90", "SR-10"),
    "Monroe": ("SR-63",),
    "Capital Circle": ("SR-263", "SR-261"),
    "Centerville": ("CR-151",),
    "Meridian": ("CR-155",),
    "Bannerman": ("CR-342",),
}

# Rough state boxes used by region-gated parcel and traffic sources.
STATE_BOXES: Dict[str, BoundingBox] = {
    "AL": BoundingBox(30.2, 35.0, -88.5, -84.9),
    "FL": BoundingBox(24.5, 31.0, -87.6, -80.0),
    "GA": BoundingBox(30.4, 35.0, -85.6, -80.8),
    "TX": BoundingBox(25.8, 36.5, -106.6, -93.5),
}

CITY_OF_AUBURN_BOX = BoundingBox(32.53, 32.68, -85.58, -85.38)
LEE_COUNTY_AL_BOX = BoundingBox(32.37, 32.85, -85.61, -85.13)

# Heuristic vehicles-per-day by OSM highway class, used only when no
# official count can be attributed.  Always reported as "estimated".
ROAD_CLASS_VPD: Dict[str, int] = {
    "motorway": 60000,
    "trunk": 35000,
    "primary": 25000,
    "secondary": 15000,
    "tertiary": 8000,
    "unclassified": 3000,
    "residential": 1500,
    "service": 500,
}

# TomTom Functional Road Class -> (display type, OSM-equivalent class).
FRC_ROAD_TYPES: Dict[str, Tuple[str, str]] = {
    "FRC0": ("Motorway/Freeway", "motorway"),
    "FRC1": ("Major Road", "trunk"),
    "FRC2": ("Other Major Road", "primary"),
    "FRC3": ("Secondary Road", "secondary"),
    "FRC4": ("Local Connecting Road", "tertiary"),
    "FRC5": ("Local Road High Importance", "unclassified"),
    "FRC6": ("Local Road", "residential"),
}

# OSM highway values treated as public roads; everything tagged "service"
# (driveways, parking aisles) is handled separately by the detector.
PUBLIC_HIGHWAY_CLASSES = (
    "motorway", "trunk", "primary", "secondary", "tertiary",
    "residential", "unclassified",
)

UNNAMED_ROAD = "Unnamed Road"


def state_for(lat: float, lng: float) -> Optional[str]:
    """First state whose rough box contains the point (boxes overlap)."""
    for state, box in STATE_BOXES.items():
        if box.contains(lat, lng):
            return state
    return None


def estimate_vpd(road_class: Optional[str]) -> Optional[int]:
    if not road_class:
        return None
    return ROAD_CLASS_VPD.get(road_class)


# =============================================================================
# Default instance
# =============================================================================

SITE_CONFIG = SiteConfig()

