"""Unit tests for geometry.py — planar parcel and road-network geometry."""

import math

import pytest

from geometry import (
    METERS_PER_DEGREE,
    buffer_polygon,
    bounding_envelope,
    centroid,
    close_ring,
    distance_m,
    distinct_vertex_count,
    nearest_point_on_polyline,
    point_in_polygon,
    point_to_polyline_distance_m,
    point_to_segment_distance_m,
    polygon_area_sq_ft,
    polygon_area_sq_m,
    polyline_intersections,
    segment_intersection,
    segments_intersect,
)

SIDE_M = 0.001 * METERS_PER_DEGREE


# =========================================================================
# Rings
# =========================================================================

class TestCloseRing:
    def test_appends_first_vertex(self, square_parcel):
        ring = close_ring(square_parcel)
        assert len(ring) == 5
        assert ring[0] == ring[-1]

    def test_idempotent(self, square_parcel):
        once = close_ring(square_parcel)
        assert close_ring(once) == once

    def test_empty(self):
        assert close_ring([]) == []

    def test_distinct_vertex_count_ignores_closure(self, square_parcel):
        assert distinct_vertex_count(close_ring(square_parcel)) == 4
        assert distinct_vertex_count([(1, 1), (1, 1), (2, 2)]) == 2


# =========================================================================
# Area
# =========================================================================

class TestPolygonArea:
    def test_square_area(self, square_parcel):
        assert polygon_area_sq_m(square_parcel) == pytest.approx(SIDE_M ** 2, rel=1e-3)

    def test_square_feet(self, square_parcel):
        assert polygon_area_sq_ft(square_parcel) == pytest.approx(
            polygon_area_sq_m(square_parcel) * 10.7639
        )

    def test_orientation_does_not_matter(self, square_parcel):
        assert polygon_area_sq_m(list(reversed(square_parcel))) == pytest.approx(
            polygon_area_sq_m(square_parcel)
        )

    def test_translation_along_longitude(self, square_parcel):
        shifted = [(lat, lng + 10.0) for lat, lng in square_parcel]
        assert polygon_area_sq_m(shifted) == pytest.approx(
            polygon_area_sq_m(square_parcel), rel=1e-9
        )

    @pytest.mark.parametrize("d_lat, d_lng", [(1e-6, 0.0), (0.0, 1e-6), (-1e-6, 1e-6)])
    def test_small_translation(self, square_parcel, d_lat, d_lng):
        shifted = [(lat + d_lat, lng + d_lng) for lat, lng in square_parcel]
        assert polygon_area_sq_ft(shifted) == pytest.approx(
            polygon_area_sq_ft(square_parcel), rel=1e-6
        )

    def test_higher_latitude_shrinks_longitude(self):
        at_60 = [(60.0, 0.0), (60.0, 0.001), (60.001, 0.001), (60.001, 0.0)]
        assert polygon_area_sq_m(at_60) == pytest.approx(SIDE_M ** 2 * 0.5, rel=1e-2)

    def test_degenerate_is_zero(self):
        assert polygon_area_sq_m([]) == 0.0
        assert polygon_area_sq_m([(0, 0), (0, 1)]) == 0.0
        assert polygon_area_sq_m([(0, 0), (0, 0.001), (0, 0.002)]) == 0.0


# =========================================================================
# Point in polygon / centroid
# =========================================================================

class TestPointInPolygon:
    def test_inside(self, square_parcel):
        assert point_in_polygon((0.0005, 0.0005), square_parcel)

    def test_outside(self, square_parcel):
        assert not point_in_polygon((0.002, 0.0005), square_parcel)
        assert not point_in_polygon((0.0005, -0.0001), square_parcel)

    def test_too_few_points(self):
        assert not point_in_polygon((0, 0), [(0, 0), (1, 1)])


class TestCentroid:
    def test_square(self, square_parcel):
        lat, lng = centroid(square_parcel)
        assert lat == pytest.approx(0.0005)
        assert lng == pytest.approx(0.0005)

    def test_collinear_falls_back_to_mean(self):
        lat, lng = centroid([(0, 0), (0, 1), (0, 2)])
        assert lat == pytest.approx(0)
        assert lng == pytest.approx(1)

    def test_empty(self):
        assert centroid([]) is None


# =========================================================================
# Buffer / envelope
# =========================================================================

class TestBufferPolygon:
    def test_grows_area_and_contains_original(self, square_parcel):
        grown = buffer_polygon(square_parcel, 30.0)
        assert grown[0] == grown[-1]
        assert polygon_area_sq_m(grown) > polygon_area_sq_m(square_parcel)
        for vertex in square_parcel:
            assert point_in_polygon(vertex, grown)

    def test_offset_is_roughly_distance(self, square_parcel):
        grown = buffer_polygon(square_parcel, 30.0)
        # midpoint of the south edge, 30 m further south, should be just inside
        assert point_in_polygon((-28.0 / METERS_PER_DEGREE, 0.0005), grown)
        assert not point_in_polygon((-32.0 / METERS_PER_DEGREE, 0.0005), grown)

    def test_concave_notch_not_filled(self):
        m = 1.0 / METERS_PER_DEGREE
        l_shape = [
            (0, 0), (0, 100 * m), (5 * m, 100 * m),
            (5 * m, 5 * m), (100 * m, 5 * m), (100 * m, 0),
        ]
        grown = buffer_polygon(l_shape, 30.0)
        assert point_in_polygon((30 * m, 30 * m), grown)
        assert not point_in_polygon((50 * m, 50 * m), grown)

    def test_collinear_ring_still_grows(self):
        grown = buffer_polygon([(0, 0), (0, 0.001), (0, 0.002)], 10.0)
        assert polygon_area_sq_m(grown) > 0

    def test_zero_distance_returns_ring(self, square_parcel):
        assert buffer_polygon(square_parcel, 0) == close_ring(square_parcel)

    def test_empty(self):
        assert buffer_polygon([], 10) == []


class TestBoundingEnvelope:
    def test_symmetric(self):
        box = bounding_envelope(30.0, -84.0, 0.015)
        assert box.min_lat == pytest.approx(29.985)
        assert box.max_lng == pytest.approx(-83.985)
        assert box.contains(30.01, -84.01)
        assert not box.contains(30.02, -84.0)


# =========================================================================
# Lines
# =========================================================================

class TestSegmentIntersection:
    def test_crossing(self):
        point = segment_intersection((0, 0), (1, 1), (0, 1), (1, 0))
        assert point == pytest.approx((0.5, 0.5))

    def test_parallel_is_none(self):
        assert segment_intersection((0, 0), (0, 1), (1, 0), (1, 1)) is None

    def test_collinear_overlap_is_none(self):
        assert segment_intersection((0, 0), (0, 2), (0, 1), (0, 3)) is None

    def test_endpoint_contact_counts(self):
        assert segments_intersect((0, 0), (1, 0), (1, 0), (1, 1))

    def test_disjoint(self):
        assert not segments_intersect((0, 0), (1, 0), (2, 1), (3, 1))

    def test_polyline_crosses_ring_twice(self, square_parcel):
        line = [(-0.0005, 0.0005), (0.0015, 0.0005)]
        assert len(polyline_intersections(line, square_parcel)) == 2


class TestDistances:
    def test_point_to_segment(self):
        d = point_to_segment_distance_m((0.0001, 0.0005), (0, 0), (0, 0.001))
        assert d == pytest.approx(0.0001 * METERS_PER_DEGREE, rel=1e-3)

    def test_point_beyond_segment_end(self):
        d = point_to_segment_distance_m((0, 0.002), (0, 0), (0, 0.001))
        assert d == pytest.approx(0.001 * METERS_PER_DEGREE, rel=1e-3)

    def test_nearest_point_on_polyline(self):
        point, dist = nearest_point_on_polyline(
            (0.0001, 0.0005), [(0, 0), (0, 0.001), (0.001, 0.001)]
        )
        assert point == pytest.approx((0.0, 0.0005), abs=1e-9)
        assert dist == pytest.approx(0.0001 * METERS_PER_DEGREE, rel=1e-3)

    def test_empty_polyline(self):
        point, dist = nearest_point_on_polyline((0, 0), [])
        assert point is None
        assert math.isinf(dist)

    def test_single_point_polyline(self):
        assert point_to_polyline_distance_m((0, 0), [(0.001, 0)]) == pytest.approx(
            SIDE_M, rel=1e-3
        )

    def test_distance_m(self):
        assert distance_m((0, 0), (0.001, 0)) == pytest.approx(SIDE_M, rel=1e-6)
