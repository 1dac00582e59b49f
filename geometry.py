"""
Geometry kernel for parcel and road-network analysis.

Pure functions over (lat, lng) sequences.  Nothing here performs I/O or
raises on degenerate input: short rings and empty polylines produce zero,
empty, or ``None`` results instead.

Polygon work (area, containment, crossings, buffering) goes through
shapely in a local planar frame: meters east/north of an origin vertex,
with longitude scaled by cos(latitude).  At parcel scale (tens to hundreds
of meters) the projection error is negligible; it grows with extent, so
these helpers are not suitable for county-sized polygons.  Point-to-line
distances stay in plain math on the same frame.
"""

import math
from typing import List, Optional, Sequence, Tuple

from shapely.geometry import LineString, MultiPoint, Point, Polygon
from shapely.geometry.base import BaseGeometry

from site_config import BoundingBox

LatLng = Tuple[float, float]

METERS_PER_DEGREE = 111320.0
SQ_FT_PER_SQ_M = 10.7639
_RING_EPS = 1e-12


# =============================================================================
# LOCAL PROJECTION
# =============================================================================

class _LocalFrame:
    """Equirectangular projection anchored at one origin point."""

    def __init__(self, origin: LatLng, ref_lat: Optional[float] = None):
        self.origin_lat, self.origin_lng = origin
        lat = origin[0] if ref_lat is None else ref_lat
        self.m_per_deg_lng = METERS_PER_DEGREE * math.cos(math.radians(lat))

    @classmethod
    def around(cls, points: Sequence[Sequence[float]]) -> "_LocalFrame":
        return cls((points[0][0], points[0][1]), ref_lat=_mean_lat(points))

    def to_xy(self, point: Sequence[float]) -> Tuple[float, float]:
        return (
            (point[1] - self.origin_lng) * self.m_per_deg_lng,
            (point[0] - self.origin_lat) * METERS_PER_DEGREE,
        )

    def to_latlng(self, x: float, y: float) -> LatLng:
        lng = self.origin_lng + (x / self.m_per_deg_lng if self.m_per_deg_lng else 0.0)
        return (self.origin_lat + y / METERS_PER_DEGREE, lng)

    def polygon(self, closed: Sequence[Sequence[float]]) -> Polygon:
        return Polygon([self.to_xy(p) for p in closed])

    def line(self, points: Sequence[Sequence[float]]) -> LineString:
        return LineString([self.to_xy(p) for p in points])


def _mean_lat(points: Sequence[Sequence[float]]) -> float:
    return sum(p[0] for p in points) / len(points)


def _points_of(geom: BaseGeometry) -> List[Point]:
    """Point members of an intersection result; line overlaps are dropped."""
    if geom.is_empty:
        return []
    if geom.geom_type == "Point":
        return [geom]
    if hasattr(geom, "geoms"):
        return [p for part in geom.geoms for p in _points_of(part)]
    return []


# =============================================================================
# RINGS & POLYGONS
# =============================================================================

def _same_point(a: Sequence[float], b: Sequence[float]) -> bool:
    return abs(a[0] - b[0]) <= _RING_EPS and abs(a[1] - b[1]) <= _RING_EPS


def close_ring(points: Sequence[Sequence[float]]) -> List[LatLng]:
    """Return the ring with its first vertex repeated at the end, if needed."""
    ring = [(float(p[0]), float(p[1])) for p in points]
    if ring and not _same_point(ring[0], ring[-1]):
        ring.append(ring[0])
    return ring


def distinct_vertex_count(points: Sequence[Sequence[float]]) -> int:
    seen = set()
    for p in points:
        seen.add((round(float(p[0]), 9), round(float(p[1]), 9)))
    return len(seen)


def polygon_area_sq_m(ring: Sequence[Sequence[float]]) -> float:
    """Planar area in square meters; 0 for fewer than 3 points."""
    if len(ring) < 3:
        return 0.0
    closed = close_ring(ring)
    if len(closed) < 4:
        return 0.0
    return _LocalFrame.around(closed[:-1]).polygon(closed).area


def polygon_area_sq_ft(ring: Sequence[Sequence[float]]) -> float:
    return polygon_area_sq_m(ring) * SQ_FT_PER_SQ_M


def point_in_polygon(point: Sequence[float], ring: Sequence[Sequence[float]]) -> bool:
    """Strict containment; points on the boundary are outside."""
    closed = close_ring(ring)
    if len(closed) < 4:
        return False
    frame = _LocalFrame.around(closed[:-1])
    polygon = frame.polygon(closed)
    if not polygon.is_valid:
        polygon = polygon.buffer(0)
    return polygon.contains(Point(frame.to_xy(point)))


def centroid(ring: Sequence[Sequence[float]]) -> Optional[LatLng]:
    """Area-weighted centroid, or the vertex mean for degenerate rings."""
    if not ring:
        return None
    closed = close_ring(ring)
    vertices = closed[:-1] if len(closed) > 1 else closed
    mean = (
        sum(p[0] for p in vertices) / len(vertices),
        sum(p[1] for p in vertices) / len(vertices),
    )
    if len(closed) < 4:
        return mean

    frame = _LocalFrame.around(vertices)
    polygon = frame.polygon(closed)
    if polygon.area < 1e-9:
        return mean
    c = polygon.centroid
    return frame.to_latlng(c.x, c.y)


def buffer_polygon(
    ring: Sequence[Sequence[float]],
    distance_m: float,
    quad_segs: int = 8,
) -> List[LatLng]:
    """Expand a ring outward by ``distance_m``, with rounded corners.

    Concave notches stay concave beyond the buffer distance.  A
    self-intersecting ring is repaired first; a degenerate one (collinear
    or fewer than three vertices) is buffered as its hull line or point.
    Intended only for blowing up a building footprint into an approximate
    lot.
    """
    closed = close_ring(ring)
    vertices = closed[:-1] if len(closed) > 1 else closed
    if not vertices:
        return []
    if distance_m <= 0:
        return closed

    frame = _LocalFrame.around(vertices)
    shape: BaseGeometry = Polygon()
    if len(vertices) >= 3:
        shape = frame.polygon(closed)
        if not shape.is_valid:
            shape = shape.buffer(0)
    if shape.is_empty:
        shape = MultiPoint([frame.to_xy(p) for p in vertices]).convex_hull

    grown = shape.buffer(distance_m, quad_segs=quad_segs)
    if grown.geom_type == "MultiPolygon":
        grown = max(grown.geoms, key=lambda g: g.area)
    return close_ring([frame.to_latlng(x, y) for x, y in grown.exterior.coords])


def bounding_envelope(lat: float, lng: float, half_size_deg: float) -> BoundingBox:
    return BoundingBox(
        min_lat=lat - half_size_deg,
        max_lat=lat + half_size_deg,
        min_lng=lng - half_size_deg,
        max_lng=lng + half_size_deg,
    )


# =============================================================================
# LINES
# =============================================================================

def segment_intersection(
    a1: Sequence[float], a2: Sequence[float],
    b1: Sequence[float], b2: Sequence[float],
) -> Optional[LatLng]:
    """Intersection point of segments A and B, or None.

    Parallel and collinear segments report no intersection, even when
    they overlap.  Endpoint contact counts as an intersection.
    """
    if _same_point(a1, a2) or _same_point(b1, b2):
        return None
    frame = _LocalFrame((a1[0], a1[1]))
    hits = _points_of(frame.line([a1, a2]).intersection(frame.line([b1, b2])))
    if len(hits) != 1:
        return None
    return frame.to_latlng(hits[0].x, hits[0].y)


def segments_intersect(
    a1: Sequence[float], a2: Sequence[float],
    b1: Sequence[float], b2: Sequence[float],
) -> bool:
    return segment_intersection(a1, a2, b1, b2) is not None


def polyline_intersections(
    line: Sequence[Sequence[float]], ring: Sequence[Sequence[float]]
) -> List[LatLng]:
    """Every point where ``line`` crosses the boundary of ``ring``."""
    closed = close_ring(ring)
    if len(line) < 2 or len(closed) < 4:
        return []
    frame = _LocalFrame.around(closed[:-1])
    boundary = LineString([frame.to_xy(p) for p in closed])
    crossings = frame.line(line).intersection(boundary)
    return [frame.to_latlng(p.x, p.y) for p in _points_of(crossings)]


def _nearest_point_on_segment(
    px: float, py: float,
    ax: float, ay: float,
    bx: float, by: float,
) -> Tuple[float, float]:
    """Return the closest point on segment A->B to point P (planar)."""
    abx = bx - ax
    aby = by - ay
    apx = px - ax
    apy = py - ay

    ab_dot_ab = abx * abx + aby * aby
    if ab_dot_ab == 0:
        # Degenerate segment (A == B)
        return (ax, ay)

    t = (apx * abx + apy * aby) / ab_dot_ab
    t = max(0.0, min(1.0, t))

    return (ax + t * abx, ay + t * aby)


def point_to_segment_distance_m(
    point: Sequence[float], a: Sequence[float], b: Sequence[float]
) -> float:
    frame = _LocalFrame((point[0], point[1]))
    ax, ay = frame.to_xy(a)
    bx, by = frame.to_xy(b)
    nx, ny = _nearest_point_on_segment(0.0, 0.0, ax, ay, bx, by)
    return math.hypot(nx, ny)


def nearest_point_on_polyline(
    point: Sequence[float], polyline: Sequence[Sequence[float]]
) -> Tuple[Optional[LatLng], float]:
    """Closest point on any segment of ``polyline`` and its distance (m)."""
    if not polyline:
        return None, math.inf

    frame = _LocalFrame((point[0], point[1]))
    local = [frame.to_xy(p) for p in polyline]
    if len(local) == 1:
        return (float(polyline[0][0]), float(polyline[0][1])), math.hypot(*local[0])

    best: Optional[Tuple[float, float]] = None
    best_dist = math.inf
    for (ax, ay), (bx, by) in zip(local, local[1:]):
        nx, ny = _nearest_point_on_segment(0.0, 0.0, ax, ay, bx, by)
        dist = math.hypot(nx, ny)
        if dist < best_dist:
            best_dist = dist
            best = (nx, ny)

    return frame.to_latlng(*best), best_dist


def point_to_polyline_distance_m(
    point: Sequence[float], polyline: Sequence[Sequence[float]]
) -> float:
    return nearest_point_on_polyline(point, polyline)[1]


def distance_m(a: Sequence[float], b: Sequence[float]) -> float:
    frame = _LocalFrame((a[0], a[1]))
    return math.hypot(*frame.to_xy(b))
