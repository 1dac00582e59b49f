"""
Site access evaluation: where a commercial parcel meets the road, and how
much traffic passes it.

Given a coordinate (and optionally a street address and/or a known parcel
boundary), runs the independent lookups concurrently:

  parcel ─┐
  roads  ─┴─> access point detection ─┐
  traffic counts ─────────────────────┼─> road attribution ─> result
  reverse geocode (target road) ──────┤
  real-time flow ─────────────────────┘

Every lookup degrades independently.  A missing parcel becomes an
approximate commercial lot, missing roads mean no access points, missing
counts mean an estimated VPD from road class.  Only invalid input raises.

CLI:
    python site_evaluator.py 30.4865 -84.2357 --address "1234 Thomasville Rd, Tallahassee, FL"
"""

import argparse
import json
import logging
import math
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from dotenv import load_dotenv

from access_points import detect_access_points, partition_roads
from geometry import LatLng, close_ring, distinct_vertex_count, polygon_area_sq_m
from road_attribution import resolve_road_attribution
from road_names import is_matchable, street_from_address
from sc_trace import TraceContext, clear_trace, get_trace, set_trace
from site_config import SITE_CONFIG, UNNAMED_ROAD, SiteConfig, estimate_vpd
from site_types import (
    AccessPoint,
    AttributedRoad,
    FlowReading,
    ParcelRecord,
)
from sources import (
    LOOKUP_FLOW,
    LOOKUP_PARCEL,
    LOOKUP_REVERSE_GEOCODE,
    LOOKUP_ROAD_NETWORK,
    LOOKUP_TRAFFIC_COUNTS,
    CancelToken,
    LookupCancelled,
    LookupResult,
    SourceChain,
    approximate_parcel,
    build_default_chains,
    fill_parcel_area,
)

logger = logging.getLogger(__name__)

load_dotenv()

PROVIDED_PARCEL_SOURCE = "provided"


class InvalidSiteInput(ValueError):
    """Coordinates or parcel boundary are unusable; raised before any
    network call."""

    pass


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class SiteAccessResult:
    lat: float
    lng: float
    address: Optional[str] = None
    access_points: List[AccessPoint] = field(default_factory=list)
    attributed_roads: List[AttributedRoad] = field(default_factory=list)
    sources_used: Dict[str, str] = field(default_factory=dict)

    parcel: Optional[ParcelRecord] = None
    parcel_area_sq_m: float = 0.0
    parcel_estimated: bool = False
    parcel_buffered: bool = False
    access_strategy: Optional[str] = None

    target_road: Optional[str] = None
    # Heuristic from road class; only set when no count was attributed
    estimated_vpd: Optional[int] = None
    vpd_source: Optional[str] = None

    flow: Optional[FlowReading] = None
    notes: List[str] = field(default_factory=list)
    config_version: str = ""


# =============================================================================
# VALIDATION
# =============================================================================

def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_site_input(
    lat, lng, parcel_boundary: Optional[Sequence[Sequence[float]]] = None,
) -> Optional[List[LatLng]]:
    """Check inputs; return the closed boundary ring (or None).

    Raises InvalidSiteInput for out-of-range or non-numeric coordinates and
    for boundaries with fewer than 3 distinct vertices.
    """
    if not _is_number(lat) or not _is_number(lng):
        raise InvalidSiteInput(f"coordinates must be finite numbers, got {lat!r}, {lng!r}")
    if not -90 <= lat <= 90:
        raise InvalidSiteInput(f"latitude {lat} out of range")
    if not -180 <= lng <= 180:
        raise InvalidSiteInput(f"longitude {lng} out of range")

    if parcel_boundary is None:
        return None
    try:
        points = [(p[0], p[1]) for p in parcel_boundary]
    except (TypeError, IndexError, KeyError):
        raise InvalidSiteInput("parcel boundary must be a sequence of (lat, lng) pairs")
    if not all(_is_number(a) and _is_number(b) for a, b in points):
        raise InvalidSiteInput("parcel boundary contains non-numeric vertices")
    if distinct_vertex_count(points) < 3:
        raise InvalidSiteInput("parcel boundary needs at least 3 distinct vertices")
    return close_ring(points)


# =============================================================================
# STAGES
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a child thread with trace propagation."""
    set_trace(parent_trace)
    try:
        return _timed_stage(stage_name, fn, *args, **kwargs)
    finally:
        clear_trace()


def _collect(futures: Dict[str, Any], stage_name: str) -> LookupResult:
    """Future result, degrading anything but cancellation to no data."""
    if stage_name not in futures:
        return LookupResult.no_data()
    try:
        return futures[stage_name].result()
    except LookupCancelled:
        raise
    except Exception:
        logger.warning("Lookup %s failed; continuing without it", stage_name, exc_info=True)
        return LookupResult.no_data()


def _choose_target_road(
    address: Optional[str],
    geocode: Optional[LookupResult],
    access_points: Sequence[AccessPoint],
    config: SiteConfig,
) -> Optional[str]:
    """Street from the address, else reverse geocode, else the primary
    access point's road."""
    street = street_from_address(address)
    if is_matchable(street, config.matching):
        return street
    if geocode is not None and geocode.has_data:
        road = geocode.data.road
        if is_matchable(road, config.matching):
            return road
    for point in access_points:
        if point.road_name != UNNAMED_ROAD and is_matchable(point.road_name, config.matching):
            return point.road_name
    return None


def _fallback_vpd(access_points: Sequence[AccessPoint], flow: Optional[FlowReading]):
    """(vpd, basis) from the access road's class, else the flow road class."""
    for point in access_points:
        vpd = estimate_vpd(point.road_class)
        if vpd:
            return vpd, point.road_class
    if flow is not None:
        vpd = estimate_vpd(flow.road_class)
        if vpd:
            return vpd, flow.road_class
    return None, None


# =============================================================================
# MAIN EVALUATION
# =============================================================================

def evaluate_site(
    lat: float,
    lng: float,
    address: Optional[str] = None,
    parcel_boundary: Optional[Sequence[Sequence[float]]] = None,
    chains: Optional[Dict[str, SourceChain]] = None,
    config: SiteConfig = SITE_CONFIG,
    cancel: Optional[CancelToken] = None,
) -> SiteAccessResult:
    """Determine access points and attributed traffic for one site.

    ``chains`` maps lookup type to SourceChain; missing entries are simply
    not looked up.  Defaults to build_default_chains().

    Raises InvalidSiteInput for bad input and LookupCancelled when
    ``cancel`` fires.  Source failures never raise.
    """
    ring = validate_site_input(lat, lng, parcel_boundary)
    if cancel:
        cancel.raise_if_cancelled()
    if chains is None:
        chains = build_default_chains(config.fetch)

    result = SiteAccessResult(lat=lat, lng=lng, address=address,
                              config_version=config.version)

    parent_trace = get_trace()
    if parent_trace:
        parent_trace.config_version = config.version

    lookups = [LOOKUP_ROAD_NETWORK, LOOKUP_TRAFFIC_COUNTS, LOOKUP_FLOW]
    if ring is None:
        lookups.append(LOOKUP_PARCEL)
    if not is_matchable(street_from_address(address), config.matching):
        lookups.append(LOOKUP_REVERSE_GEOCODE)

    futures: Dict[str, Any] = {}
    with ThreadPoolExecutor(max_workers=config.fetch.max_workers) as pool:
        for lookup in lookups:
            chain = chains.get(lookup)
            if chain is None or not chain.adapters:
                continue
            futures[lookup] = pool.submit(
                _timed_stage_in_thread, parent_trace,
                lookup, chain.resolve, lat, lng, cancel,
            )

        try:
            lookup_results = _merge(result, ring, futures, config, cancel)
        except LookupCancelled:
            if cancel:
                cancel.cancel()
            raise

    for lookup, outcome in lookup_results.items():
        result.sources_used[lookup] = outcome.source_label

    logger.info(
        "Site %.5f,%.5f: %d access point(s) [%s], %d attributed road(s), target=%s",
        lat, lng, len(result.access_points), result.access_strategy or "-",
        len(result.attributed_roads), result.target_road,
    )
    return result


def _merge(
    result: SiteAccessResult,
    ring: Optional[List[LatLng]],
    futures: Dict[str, Any],
    config: SiteConfig,
    cancel: Optional[CancelToken],
) -> Dict[str, LookupResult]:
    """Consume lookup futures in dependency order and fill ``result``."""
    outcomes: Dict[str, LookupResult] = {}

    # --- Parcel ---
    if ring is not None:
        result.parcel = fill_parcel_area(
            ParcelRecord(boundary=ring, source=PROVIDED_PARCEL_SOURCE)
        )
        result.sources_used[LOOKUP_PARCEL] = PROVIDED_PARCEL_SOURCE
    else:
        parcel = _collect(futures, LOOKUP_PARCEL)
        outcomes[LOOKUP_PARCEL] = parcel
        if parcel.has_data:
            result.parcel = parcel.data
        else:
            result.parcel = approximate_parcel(result.lat, result.lng)
            result.parcel_estimated = True
            result.notes.append(
                "No parcel boundary found; using an estimated commercial lot."
            )

    result.parcel_area_sq_m = polygon_area_sq_m(result.parcel.boundary)

    # --- Road network + detection ---
    roads = _collect(futures, LOOKUP_ROAD_NETWORK)
    outcomes[LOOKUP_ROAD_NETWORK] = roads
    if cancel:
        cancel.raise_if_cancelled()

    # Detection also runs without a road network, so a footprint-sized
    # parcel is still buffered and flagged.
    public, service = partition_roads(roads.data) if roads.has_data else ([], [])
    detection = _timed_stage(
        "access_detection", detect_access_points,
        result.parcel.boundary, public, service, config.detection,
    )
    result.access_points = detection.access_points
    result.access_strategy = detection.strategy
    result.parcel_area_sq_m = detection.parcel_area_sq_m
    result.parcel_buffered = detection.parcel_buffered
    if detection.parcel_buffered:
        result.notes.append(
            "Parcel boundary looks like a building footprint; "
            "buffered %dm for access detection." % round(config.detection.footprint_buffer_m)
        )
    if not roads.has_data:
        result.notes.append("Road network unavailable; access points not determined.")
    elif detection.strategy and detection.strategy != "exact":
        result.notes.append(
            "Access points are inferred (%s), not confirmed by a mapped driveway."
            % detection.strategy
        )

    # --- Target road ---
    geocode = None
    if LOOKUP_REVERSE_GEOCODE in futures:
        geocode = _collect(futures, LOOKUP_REVERSE_GEOCODE)
        outcomes[LOOKUP_REVERSE_GEOCODE] = geocode
    result.target_road = _choose_target_road(
        result.address, geocode, result.access_points, config,
    )

    # --- Flow ---
    if LOOKUP_FLOW in futures:
        flow = _collect(futures, LOOKUP_FLOW)
        outcomes[LOOKUP_FLOW] = flow
        if flow.has_data:
            result.flow = flow.data

    # --- Traffic counts + attribution ---
    counts = _collect(futures, LOOKUP_TRAFFIC_COUNTS)
    outcomes[LOOKUP_TRAFFIC_COUNTS] = counts
    if cancel:
        cancel.raise_if_cancelled()

    extra_targets = []
    for point in result.access_points:
        if point.road_name != UNNAMED_ROAD and point.road_name not in extra_targets:
            extra_targets.append(point.road_name)

    if counts.has_data:
        result.attributed_roads = _timed_stage(
            "road_attribution", resolve_road_attribution,
            result.target_road, counts.data,
            property_road=result.target_road,
            extra_targets=extra_targets,
            thresholds=config.matching,
        )

    if not result.attributed_roads:
        vpd, basis = _fallback_vpd(result.access_points, result.flow)
        if vpd:
            result.estimated_vpd = vpd
            result.vpd_source = "estimated"
            result.notes.append(
                "No official traffic count; VPD estimated from road class (%s)." % basis
            )
    elif all(r.confidence == "estimated" for r in result.attributed_roads):
        result.notes.append(
            "Traffic count is from the busiest nearby road, not a confirmed match."
        )

    return outcomes


# =============================================================================
# SERIALISATION
# =============================================================================

def result_to_dict(result: SiteAccessResult) -> Dict[str, Any]:
    """JSON-ready dict of the result."""
    data = asdict(result)
    if result.parcel is not None:
        data["parcel"]["boundary"] = [list(p) for p in result.parcel.boundary]
        data["parcel_acres"] = result.parcel.acres
    data["parcel_area_sq_m"] = round(result.parcel_area_sq_m, 1)
    return data


def _print_result(result: SiteAccessResult):
    print(f"\nSite {result.lat:.5f}, {result.lng:.5f}")
    if result.address:
        print(f"  Address:      {result.address}")
    parcel = result.parcel
    if parcel:
        est = " (estimated)" if result.parcel_estimated else ""
        acres = f"{parcel.acres:.2f} ac" if parcel.acres else "? ac"
        print(f"  Parcel:       {acres} from {parcel.source}{est}")
    print(f"  Target road:  {result.target_road or '-'}")

    print(f"\n  Access points ({result.access_strategy or 'none'}):")
    for p in result.access_points:
        print(f"    {p.lat:.6f}, {p.lng:.6f}  {p.road_name}  [{p.connection_type}]")
    if not result.access_points:
        print("    none determined")

    print("\n  Traffic:")
    for r in result.attributed_roads:
        print(f"    {r.road_name}: {r.count:,} VPD ({r.year}, {r.confidence})")
    if result.estimated_vpd:
        print(f"    ~{result.estimated_vpd:,} VPD (estimated from road class)")
    if result.flow:
        f = result.flow
        print(f"    Live: {f.current_speed}/{f.free_flow_speed} mph, {f.traffic_level}")

    if result.notes:
        print("\n  Notes:")
        for note in result.notes:
            print(f"    - {note}")
    print("\n  Sources: " + ", ".join(f"{k}={v}" for k, v in result.sources_used.items()))


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Find where a site meets the road and how much traffic passes it"
    )
    parser.add_argument("lat", type=float, help="Site latitude")
    parser.add_argument("lng", type=float, help="Site longitude")
    parser.add_argument(
        "--address",
        help="Street address of the site (used to pick the fronting road)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every stage and outbound call"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    trace = TraceContext(trace_id=uuid.uuid4().hex[:8])
    set_trace(trace)
    try:
        result = evaluate_site(args.lat, args.lng, address=args.address)
    except InvalidSiteInput as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        trace.log_summary()
        clear_trace()

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2))
    else:
        _print_result(result)


if __name__ == "__main__":
    main()
