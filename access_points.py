"""
Access Point Detector: where a parcel physically reaches the public road.

Given a parcel boundary and the nearby OpenStreetMap road network, finds
the coordinates where the parcel has vehicular access to a public road.

Strategies (evaluated in order; the first that yields points wins):
  1. exact             : a driveway/service road touching the parcel shares
                         a network node with a public road
  2. proximity         : a touching service road ends within 5 m of a
                         public road without a shared node
  3. nearest-fallback  : no driveway evidence at all; up to 3 closest
                         points on public roads within 50 m of the boundary

Before any strategy runs, service roads are filtered down to the ones that
touch the parcel: they cross the boundary, have a vertex inside it, or pass
within 2 m of it (driveways are often mapped slightly off the lot line).

Limitations:
  - Parcels under 1,000 m² are usually building footprints returned by a
    fallback boundary source.  They are buffered ~30 m outward before
    detection, and the result says so.
  - OSM driveway coverage is uneven; the nearest-fallback tier is a
    best-effort guess, not a survey.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from geometry import (
    LatLng,
    buffer_polygon,
    close_ring,
    distinct_vertex_count,
    nearest_point_on_polyline,
    point_in_polygon,
    point_to_polyline_distance_m,
    polygon_area_sq_m,
    polyline_intersections,
)
from site_config import SITE_CONFIG, DetectionThresholds
from site_types import (
    CONNECTION_EXACT,
    CONNECTION_NEAREST,
    CONNECTION_PROXIMITY,
    AccessPoint,
    RoadSegment,
    coord_key,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class AccessDetection:
    """Result of access point detection for one parcel."""
    access_points: List[AccessPoint]
    strategy: Optional[str]           # connection type of the winning tier
    parcel_area_sq_m: float           # area of the boundary as given
    parcel_buffered: bool             # True if a footprint was grown to a lot
    effective_boundary: List[LatLng]  # boundary the strategies actually used
    touching_service_roads: int


@dataclass
class _DetectionContext:
    boundary: List[LatLng]
    public_roads: List[RoadSegment]
    touching: List[RoadSegment]
    thresholds: DetectionThresholds
    seen: Set[str] = field(default_factory=set)

    def claim(self, lat: float, lng: float) -> bool:
        """Reserve a rounded coordinate; False if an earlier point has it."""
        key = coord_key(lat, lng, self.thresholds.dedupe_decimals)
        if key in self.seen:
            return False
        self.seen.add(key)
        return True


# =============================================================================
# ROAD CLASSIFICATION & TOUCH TEST
# =============================================================================

def partition_roads(
    segments: Iterable[RoadSegment],
) -> Tuple[List[RoadSegment], List[RoadSegment]]:
    """Split road-network segments into (public, service)."""
    public: List[RoadSegment] = []
    service: List[RoadSegment] = []
    for segment in segments:
        if segment.is_service():
            service.append(segment)
        elif segment.road_class:
            public.append(segment)
    return public, service


def service_road_touches_parcel(
    road: RoadSegment,
    ring: Sequence[LatLng],
    touch_m: float = SITE_CONFIG.detection.service_touch_m,
) -> bool:
    """Crosses the boundary, has a vertex inside, or passes within touch_m."""
    if len(road.nodes) < 2:
        return False
    if polyline_intersections(road.nodes, ring):
        return True
    if any(point_in_polygon(node, ring) for node in road.nodes):
        return True
    return any(
        point_to_polyline_distance_m(node, ring) < touch_m
        for node in road.nodes
    )


# =============================================================================
# STRATEGIES
# =============================================================================

def _exact_connections(ctx: _DetectionContext) -> List[AccessPoint]:
    """Service-road nodes that are also public-road nodes."""
    public_by_node: Dict[int, RoadSegment] = {}
    for road in ctx.public_roads:
        for node_id in road.node_ids:
            public_by_node.setdefault(node_id, road)

    points: List[AccessPoint] = []
    for service in ctx.touching:
        for idx, node_id in enumerate(service.node_ids):
            road = public_by_node.get(node_id)
            if road is None or idx >= len(service.nodes):
                continue
            lat, lng = service.nodes[idx]
            if not ctx.claim(lat, lng):
                continue
            points.append(AccessPoint(
                lat=lat,
                lng=lng,
                road_name=road.display_name(),
                connection_type=CONNECTION_EXACT,
                road_class=road.road_class or None,
            ))
            logger.info(
                "Access point at %.5f,%.5f -> %s", lat, lng, road.display_name(),
            )
    return points


def _proximity_connections(ctx: _DetectionContext) -> List[AccessPoint]:
    """Service-road endpoints lying within proximity_m of a public road."""
    points: List[AccessPoint] = []
    for service in ctx.touching:
        if not service.nodes:
            continue
        endpoints = [service.nodes[0]]
        if len(service.nodes) > 1:
            endpoints.append(service.nodes[-1])

        for end in endpoints:
            for road in ctx.public_roads:
                if len(road.nodes) < 2:
                    continue
                if point_to_polyline_distance_m(end, road.nodes) >= ctx.thresholds.proximity_m:
                    continue
                if ctx.claim(end[0], end[1]):
                    points.append(AccessPoint(
                        lat=end[0],
                        lng=end[1],
                        road_name=road.display_name(),
                        connection_type=CONNECTION_PROXIMITY,
                        road_class=road.road_class or None,
                    ))
                    logger.info("Proximity access point -> %s", road.display_name())
                break
    return points


def _nearest_public_road(ctx: _DetectionContext) -> List[AccessPoint]:
    """Closest points on public roads to the parcel boundary."""
    candidates: List[Tuple[float, RoadSegment, LatLng]] = []
    for road in ctx.public_roads:
        if len(road.nodes) < 2:
            continue
        best_point: Optional[LatLng] = None
        best_dist = float("inf")
        for vertex in ctx.boundary:
            point, dist = nearest_point_on_polyline(vertex, road.nodes)
            if dist < best_dist:
                best_dist = dist
                best_point = point
        if best_point is not None and best_dist < ctx.thresholds.nearest_max_m:
            candidates.append((best_dist, road, best_point))

    candidates.sort(key=lambda c: c[0])

    points: List[AccessPoint] = []
    used_names: Set[str] = set()
    for dist, road, (lat, lng) in candidates:
        name = road.display_name()
        if name in used_names:
            continue
        used_names.add(name)
        if not ctx.claim(lat, lng):
            continue
        points.append(AccessPoint(
            lat=lat,
            lng=lng,
            road_name=name,
            connection_type=CONNECTION_NEAREST,
            road_class=road.road_class or None,
        ))
        logger.info("Fallback access point on %s (%dm from parcel)", name, round(dist))
        if len(points) >= ctx.thresholds.nearest_max_points:
            break
    return points


# Ordered tiers.  Each returns its points, or an empty list for "no match".
ACCESS_STRATEGIES: Tuple[Tuple[str, Callable[[_DetectionContext], List[AccessPoint]]], ...] = (
    (CONNECTION_EXACT, _exact_connections),
    (CONNECTION_PROXIMITY, _proximity_connections),
    (CONNECTION_NEAREST, _nearest_public_road),
)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def detect_access_points(
    boundary: Sequence[Sequence[float]],
    public_roads: Sequence[RoadSegment],
    service_roads: Sequence[RoadSegment],
    thresholds: DetectionThresholds = SITE_CONFIG.detection,
) -> AccessDetection:
    """Find where the parcel connects to the public road network.

    Returns an AccessDetection whose access_points may be empty; an
    undeterminable access is a valid answer, not an error.
    """
    ring = close_ring(boundary)
    area = polygon_area_sq_m(ring)

    if distinct_vertex_count(ring) < 3:
        logger.warning("Degenerate parcel boundary (%d vertices); no access detection", len(ring))
        return AccessDetection([], None, area, False, ring, 0)

    effective = ring
    buffered = False
    if area < thresholds.min_parcel_area_sq_m:
        logger.info(
            "Very small parcel (%d sq m), buffering %dm to approximate lot",
            round(area), round(thresholds.footprint_buffer_m),
        )
        grown = buffer_polygon(ring, thresholds.footprint_buffer_m)
        if len(grown) >= 4:
            effective = grown
            buffered = True

    touching = [
        road for road in service_roads
        if service_road_touches_parcel(road, effective, thresholds.service_touch_m)
    ]
    logger.info(
        "Found %d public roads, %d service roads (%d touch the parcel)",
        len(public_roads), len(service_roads), len(touching),
    )

    ctx = _DetectionContext(
        boundary=effective,
        public_roads=list(public_roads),
        touching=touching,
        thresholds=thresholds,
    )
    for name, strategy in ACCESS_STRATEGIES:
        points = strategy(ctx)
        if points:
            return AccessDetection(points, name, area, buffered, effective, len(touching))

    logger.info("No access points determinable for parcel")
    return AccessDetection([], None, area, buffered, effective, len(touching))
