"""Tests for site_evaluator.py — end-to-end evaluation over stubbed chains.

No network: each lookup type is served by a FakeChain that returns a
canned LookupResult (or raises), so these exercise the merge order,
degradation, and result assembly.
"""

import json
import math

import pytest

from sc_trace import TraceContext, set_trace
from site_evaluator import (
    InvalidSiteInput,
    evaluate_site,
    result_to_dict,
    validate_site_input,
)
from site_types import FlowReading, ParcelRecord, ReverseGeocode, RoadSegment, TrafficCount
from sources import (
    APPROXIMATE_PARCEL_SOURCE,
    LOOKUP_FLOW,
    LOOKUP_PARCEL,
    LOOKUP_REVERSE_GEOCODE,
    LOOKUP_ROAD_NETWORK,
    LOOKUP_TRAFFIC_COUNTS,
    CancelToken,
    LookupCancelled,
    LookupResult,
)

ADDRESS = "1234 Thomasville Rd, Tallahassee, FL 32308"
SOUTH_LAT = -0.0002


class FakeChain:
    def __init__(self, data=None, label="fake", error=None):
        self.adapters = [object()]
        self.data = data
        self.label = label
        self.error = error
        self.calls = 0

    def resolve(self, lat, lng, cancel=None):
        self.calls += 1
        if self.error:
            raise self.error
        if self.data is None:
            return LookupResult.no_data([self.label])
        return LookupResult(self.data, self.label)


def _thomasville(lat=SOUTH_LAT):
    return RoadSegment(
        name="Thomasville Road",
        nodes=[(lat, -0.002), (lat, 0.0005), (lat, 0.003)],
        road_class="primary",
        ref="SR 61",
        node_ids=(1, 100, 2),
    )


def _driveway():
    return RoadSegment(
        name="", nodes=[(SOUTH_LAT, 0.0005), (0.0005, 0.0005)],
        road_class="service", node_ids=(100, 200),
    )


def _counts():
    return [
        RoadSegment(name="", nodes=[], route_id="55010000",
                    descriptions=("SR-61/THOMASVILLE RD",),
                    traffic_count=TrafficCount(30000, 2023, "FDOT AADT")),
        RoadSegment(name="", nodes=[], route_id="55020000",
                    descriptions=("US-90/TENNESSEE ST",),
                    traffic_count=TrafficCount(45000, 2023, "FDOT AADT")),
    ]


# =========================================================================
# Input validation
# =========================================================================

class TestValidateSiteInput:
    @pytest.mark.parametrize("lat, lng", [
        (91.0, 0.0),
        (0.0, -180.5),
        (math.nan, 0.0),
        (0.0, math.inf),
        (True, 0.0),
        ("30.4", -84.2),
        (None, None),
    ])
    def test_bad_coordinates(self, lat, lng):
        with pytest.raises(InvalidSiteInput):
            validate_site_input(lat, lng)

    def test_boundary_needs_three_distinct_vertices(self):
        with pytest.raises(InvalidSiteInput):
            validate_site_input(0.0, 0.0, [(0, 0), (0, 0.001), (0, 0)])

    def test_boundary_non_numeric(self):
        with pytest.raises(InvalidSiteInput):
            validate_site_input(0.0, 0.0, [(0, 0), (0, "x"), (1, 1)])

    def test_boundary_not_pairs(self):
        with pytest.raises(InvalidSiteInput):
            validate_site_input(0.0, 0.0, [1, 2, 3])

    def test_returns_closed_ring(self, square_parcel):
        ring = validate_site_input(0.0, 0.0, square_parcel)
        assert ring[0] == ring[-1]
        assert len(ring) == 5

    def test_no_boundary(self):
        assert validate_site_input(30.4865, -84.2357) is None

    def test_invalid_input_makes_no_lookups(self):
        chain = FakeChain([_thomasville()])
        with pytest.raises(InvalidSiteInput):
            evaluate_site(100.0, 0.0, chains={LOOKUP_ROAD_NETWORK: chain})
        assert chain.calls == 0


# =========================================================================
# Full evaluation
# =========================================================================

class TestEvaluateSite:
    def test_driveway_and_official_count(self, square_parcel):
        geocode = FakeChain(error=AssertionError("address already names the street"))
        chains = {
            LOOKUP_ROAD_NETWORK: FakeChain([_thomasville(), _driveway()], "Overpass (overpass-api.de)"),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
            LOOKUP_REVERSE_GEOCODE: geocode,
        }
        result = evaluate_site(
            0.0005, 0.0005, address=ADDRESS, parcel_boundary=square_parcel, chains=chains,
        )

        assert geocode.calls == 0
        assert result.target_road == "Thomasville Rd"
        assert result.access_strategy == "exact"
        assert [(p.lat, p.lng, p.road_name) for p in result.access_points] == [
            (SOUTH_LAT, 0.0005, "Thomasville Road"),
        ]

        assert len(result.attributed_roads) == 1
        road = result.attributed_roads[0]
        assert road.road_name == "SR-61/THOMASVILLE RD"
        assert road.count == 30000
        assert road.confidence == "official"
        assert road.route_id == "55010000"
        assert result.estimated_vpd is None

        assert result.sources_used == {
            LOOKUP_PARCEL: "provided",
            LOOKUP_ROAD_NETWORK: "Overpass (overpass-api.de)",
            LOOKUP_TRAFFIC_COUNTS: "FDOT AADT",
        }
        assert result.parcel.source == "provided"
        assert result.parcel.acres > 0
        assert result.parcel_estimated is False
        assert result.notes == []

    def test_parcel_from_chain(self, square_parcel):
        parcel = ParcelRecord(boundary=square_parcel + [square_parcel[0]],
                              source="Florida DOT Parcels", acres=3.06)
        result = evaluate_site(
            0.0005, 0.0005,
            chains={LOOKUP_PARCEL: FakeChain(parcel, "Florida DOT Parcels")},
        )
        assert result.parcel is parcel
        assert result.sources_used[LOOKUP_PARCEL] == "Florida DOT Parcels"
        assert result.parcel_area_sq_m > 10000

    def test_no_parcel_uses_estimated_lot(self):
        # Primary road ~28 m south of the approximate lot's southern edge
        road = RoadSegment(
            name="Apalachee Pkwy", nodes=[(-0.0016, -0.003), (-0.0016, 0.003)],
            road_class="primary",
        )
        result = evaluate_site(0.0, 0.0, chains={LOOKUP_ROAD_NETWORK: FakeChain([road], "Overpass")})

        assert result.parcel_estimated is True
        assert result.parcel.source == APPROXIMATE_PARCEL_SOURCE
        assert result.sources_used[LOOKUP_PARCEL] == "none"
        assert result.access_strategy == "nearest-fallback"
        assert result.access_points[0].road_name == "Apalachee Pkwy"

        assert result.attributed_roads == []
        assert result.estimated_vpd == 25000
        assert result.vpd_source == "estimated"
        assert any("estimated commercial lot" in n for n in result.notes)
        assert any("VPD estimated" in n for n in result.notes)

    def test_target_from_reverse_geocode(self, square_parcel):
        chains = {
            LOOKUP_REVERSE_GEOCODE: FakeChain(ReverseGeocode(road="Thomasville Road"), "Nominatim"),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
        }
        result = evaluate_site(0.0005, 0.0005, parcel_boundary=square_parcel, chains=chains)

        assert result.target_road == "Thomasville Road"
        assert result.sources_used[LOOKUP_REVERSE_GEOCODE] == "Nominatim"
        assert [r.route_id for r in result.attributed_roads] == ["55010000"]
        assert any("Road network unavailable" in n for n in result.notes)

    def test_target_from_access_point(self, square_parcel):
        chains = {
            LOOKUP_ROAD_NETWORK: FakeChain([_thomasville()], "Overpass"),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
            LOOKUP_REVERSE_GEOCODE: FakeChain(None, "Nominatim"),
        }
        result = evaluate_site(0.0005, 0.0005, parcel_boundary=square_parcel, chains=chains)

        assert result.target_road == "Thomasville Road"
        assert result.access_strategy == "nearest-fallback"
        assert result.attributed_roads[0].confidence == "official"

    def test_unmatched_count_is_estimated(self, square_parcel):
        chains = {
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts()[1:], "FDOT AADT"),
        }
        result = evaluate_site(
            0.0005, 0.0005, address="500 Ocala Rd, Tallahassee",
            parcel_boundary=square_parcel, chains=chains,
        )
        assert result.attributed_roads[0].confidence == "estimated"
        assert result.attributed_roads[0].count == 45000
        assert any("busiest nearby road" in n for n in result.notes)

    def test_failing_lookup_degrades(self, square_parcel):
        chains = {
            LOOKUP_ROAD_NETWORK: FakeChain(error=RuntimeError("boom")),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
        }
        result = evaluate_site(
            0.0005, 0.0005, address=ADDRESS, parcel_boundary=square_parcel, chains=chains,
        )
        assert result.access_points == []
        assert result.sources_used[LOOKUP_ROAD_NETWORK] == "none"
        assert result.attributed_roads[0].route_id == "55010000"

    def test_flow_attached_and_used_for_estimate(self, square_parcel):
        flow = FlowReading(40, 50, 120, 96, 0.9, "Secondary Road", "secondary", 20, "Light",
                           "TomTom Traffic")
        result = evaluate_site(
            0.0005, 0.0005, parcel_boundary=square_parcel,
            chains={LOOKUP_FLOW: FakeChain(flow, "TomTom Traffic")},
        )
        assert result.flow is flow
        assert result.estimated_vpd == 15000
        assert result.sources_used[LOOKUP_FLOW] == "TomTom Traffic"

    def test_records_trace_stages(self, square_parcel):
        trace = TraceContext(trace_id="site-1")
        set_trace(trace)
        chains = {
            LOOKUP_ROAD_NETWORK: FakeChain([_thomasville(), _driveway()], "Overpass"),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
        }
        evaluate_site(0.0005, 0.0005, address=ADDRESS, parcel_boundary=square_parcel, chains=chains)

        names = {s.stage_name for s in trace.stages}
        assert {"road_network", "traffic_counts", "access_detection", "road_attribution"} <= names
        assert trace.config_version == "2026.10"


# =========================================================================
# Cancellation
# =========================================================================

class TestCancellation:
    def test_cancelled_before_start(self, square_parcel):
        token = CancelToken()
        token.cancel()
        chain = FakeChain([_thomasville()])
        with pytest.raises(LookupCancelled):
            evaluate_site(0.0005, 0.0005, parcel_boundary=square_parcel,
                          chains={LOOKUP_ROAD_NETWORK: chain}, cancel=token)
        assert chain.calls == 0

    def test_cancel_in_lookup_propagates(self, square_parcel):
        token = CancelToken()
        chains = {LOOKUP_ROAD_NETWORK: FakeChain(error=LookupCancelled("analysis cancelled"))}
        with pytest.raises(LookupCancelled):
            evaluate_site(0.0005, 0.0005, parcel_boundary=square_parcel,
                          chains=chains, cancel=token)
        assert token.cancelled


# =========================================================================
# Serialisation
# =========================================================================

class TestResultToDict:
    def test_json_serializable(self, square_parcel):
        chains = {
            LOOKUP_ROAD_NETWORK: FakeChain([_thomasville(), _driveway()], "Overpass"),
            LOOKUP_TRAFFIC_COUNTS: FakeChain(_counts(), "FDOT AADT"),
        }
        result = evaluate_site(0.0005, 0.0005, address=ADDRESS,
                               parcel_boundary=square_parcel, chains=chains)
        data = json.loads(json.dumps(result_to_dict(result)))

        assert data["access_points"][0]["connection_type"] == "exact"
        assert data["attributed_roads"][0]["count"] == 30000
        assert data["parcel"]["boundary"][0] == [0.0, 0.0]
        assert data["parcel_acres"] == result.parcel.acres
        assert data["config_version"] == "2026.10"


# =========================================================================
# Building-footprint parcels
# =========================================================================

FOOTPRINT_SIDE = 0.000254  # ~28.3 m, ~800 sq m


def _footprint():
    s = FOOTPRINT_SIDE
    return [(0.0, 0.0), (0.0, s), (s, s), (s, 0.0)]


class TestFootprintParcel:
    def test_small_parcel_is_buffered_and_flagged(self):
        # ~67 m south: out of reach of the footprint, within reach once buffered
        road = RoadSegment(
            name="Tennessee St", nodes=[(-0.0006, -0.002), (-0.0006, 0.002)],
            road_class="primary",
        )
        result = evaluate_site(
            0.0001, 0.0001, parcel_boundary=_footprint(),
            chains={LOOKUP_ROAD_NETWORK: FakeChain([road], "Overpass")},
        )

        assert 780 < result.parcel_area_sq_m < 820
        assert result.parcel_buffered is True
        assert any("building footprint" in n for n in result.notes)
        assert [p.road_name for p in result.access_points] == ["Tennessee St"]

    def test_buffering_reported_without_road_network(self):
        result = evaluate_site(0.0001, 0.0001, parcel_boundary=_footprint(), chains={})

        assert result.parcel_buffered is True
        assert result.access_points == []
        assert any("building footprint" in n for n in result.notes)
        assert any("Road network unavailable" in n for n in result.notes)
