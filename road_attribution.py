"""
Road Attribution Resolver: binds official traffic counts to the road
fronting a parcel.

Traffic-count layers (FDOT AADT, FHWA HPMS) describe one physical road as
many segments split at intersections, each labelled differently
("SR-61/THOMASVILLE RD", "THOMASVILLE RD/I-10", ...).  The only stable
identity is the route identifier, so matching works on route groups:

  1. group segments by route_id (no id -> its own group)
  2. a group matches the target road if any member's descriptive name
     matches it (road_names.names_match)
  3. per matched group, the best segment wins: newest year, then highest
     count
  4. nothing matched (or no usable target) -> the group holding the
     busiest count in the envelope, labelled "estimated"

Corner lots legitimately front more than one road, so every matched group
is returned as a ranked list rather than collapsed to one number.
"""

import logging
from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence, Tuple

from road_names import is_matchable, names_match
from site_config import SITE_CONFIG, MatchThresholds
from site_types import (
    CONFIDENCE_ESTIMATED,
    CONFIDENCE_OFFICIAL,
    AttributedRoad,
    RoadSegment,
)

logger = logging.getLogger(__name__)


def group_by_route(segments: Iterable[RoadSegment]) -> "OrderedDict[str, List[RoadSegment]]":
    """Group segments by route_id, preserving first-seen order."""
    groups: "OrderedDict[str, List[RoadSegment]]" = OrderedDict()
    for idx, segment in enumerate(segments):
        key = segment.route_id if segment.route_id else f"_segment_{idx}"
        groups.setdefault(key, []).append(segment)
    return groups


def _sort_key(segment: RoadSegment):
    count = segment.traffic_count
    return (count.year, count.value)


def select_best_segment(segments: Sequence[RoadSegment]) -> Optional[RoadSegment]:
    """Newest year wins; on equal year, the highest count."""
    counted = [s for s in segments if s.traffic_count is not None]
    if not counted:
        return None
    return max(counted, key=_sort_key)


def _group_names(group: Sequence[RoadSegment]) -> List[str]:
    names: List[str] = []
    for segment in group:
        for name in segment.descriptive_names():
            if name not in names:
                names.append(name)
    return names


def _display_name(group: Sequence[RoadSegment], best: RoadSegment, preferred: Sequence[str],
                  thresholds: MatchThresholds) -> str:
    """The source label to show: the first name matching a preferred road,
    checking the best segment's own labels before the rest of the group.

    ``preferred`` is tried one road at a time, so a group that carries both
    the property road and a cross street is labelled with the property road.
    """
    candidates = best.descriptive_names() + _group_names(group)
    for target in preferred:
        for name in candidates:
            if names_match(name, target, thresholds):
                return name
    if candidates:
        return candidates[0]
    return best.route_id or best.display_name()


def _attribute(group: Sequence[RoadSegment], best: RoadSegment, confidence: str,
               preferred: Sequence[str], thresholds: MatchThresholds) -> AttributedRoad:
    count = best.traffic_count
    return AttributedRoad(
        road_name=_display_name(group, best, preferred, thresholds),
        count=count.value,
        year=count.year,
        confidence=confidence,
        route_id=best.route_id,
        source_label=count.source_label,
    )


def _rank(entries: Sequence[Tuple[bool, AttributedRoad]]) -> List[AttributedRoad]:
    """Property-road entries first, each side by count descending."""
    ordered = sorted(entries, key=lambda e: (not e[0], -e[1].count))
    return [road for _, road in ordered]


def rank_attributed_roads(
    roads: Sequence[AttributedRoad],
    property_road: Optional[str] = None,
    thresholds: MatchThresholds = SITE_CONFIG.matching,
) -> List[AttributedRoad]:
    """Count descending, except that the property's own road comes first."""
    usable = bool(property_road) and is_matchable(property_road, thresholds)
    return _rank([
        (usable and names_match(road.road_name, property_road, thresholds), road)
        for road in roads
    ])


def resolve_road_attribution(
    target_road_name: Optional[str],
    segments: Sequence[RoadSegment],
    property_road: Optional[str] = None,
    extra_targets: Sequence[str] = (),
    thresholds: MatchThresholds = SITE_CONFIG.matching,
) -> List[AttributedRoad]:
    """Rank the traffic counts that describe the target road(s).

    ``extra_targets`` carries additional road names known to front the
    parcel (e.g. access point roads on a corner lot).  A route group counts
    as the property road when any of its names matches ``property_road``
    (default: the target road), and those groups rank first.  Returns an
    empty list when there are no counted segments; never raises.
    """
    counted = [s for s in segments if s.traffic_count is not None]
    if not counted:
        return []

    targets = [
        t for t in [target_road_name, *extra_targets]
        if is_matchable(t, thresholds)
    ]
    groups = group_by_route(counted)

    if targets:
        own_road = property_road or target_road_name
        if not is_matchable(own_road, thresholds):
            own_road = None
        preferred = ([own_road] if own_road else []) + targets

        entries: List[Tuple[bool, AttributedRoad]] = []
        for key, group in groups.items():
            names = _group_names(group)
            if not any(names_match(name, t, thresholds) for name in names for t in targets):
                continue
            is_own = bool(own_road) and any(
                names_match(name, own_road, thresholds) for name in names
            )
            best = select_best_segment(group)
            entries.append((
                is_own,
                _attribute(group, best, CONFIDENCE_OFFICIAL, preferred, thresholds),
            ))

        if entries:
            logger.info(
                "Matched %d of %d route groups to %s",
                len(entries), len(groups), ", ".join(targets),
            )
            return _rank(entries)

        logger.info(
            "No route group matched %s; falling back to busiest nearby road",
            ", ".join(targets),
        )
    else:
        logger.info("No usable target road; falling back to busiest nearby road")

    busiest_key = max(
        groups,
        key=lambda k: max(s.traffic_count.value for s in groups[k]),
    )
    group = groups[busiest_key]
    best = select_best_segment(group)
    return [_attribute(group, best, CONFIDENCE_ESTIMATED, targets, thresholds)]
