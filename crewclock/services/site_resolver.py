"""
Site resolution: which job sites a device position falls inside.
"""
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from .geofence import Coordinate, haversine_distance, is_inside, effective_radius, to_coordinate


@dataclass(frozen=True)
class SiteMatch:
    site: Any
    distance_m: float


@dataclass(frozen=True)
class SiteSelection:
    """
    Outcome of the auto-select policy.

    match is None when nothing is in range (caller prompts for a manual choice).
    ambiguous is set when more than one site contains the position; match is
    then the closest.
    """
    match: Optional[SiteMatch]
    candidates: List[SiteMatch] = field(default_factory=list)
    ambiguous: bool = False


def resolve_sites(position: Coordinate, sites: Iterable[Any]) -> List[SiteMatch]:
    """
    Sites whose geofence contains `position`, closest first.

    Sites are any objects exposing lat, lng and geo_radius_m (a Project row
    works). Sites without usable coordinates are ignored.
    """
    if position is None or not position.is_finite():
        return []

    matches: List[SiteMatch] = []
    for site in sites:
        center = to_coordinate(getattr(site, "lat", None), getattr(site, "lng", None))
        if center is None:
            continue
        distance = haversine_distance(position, center)
        if is_inside(distance, effective_radius(getattr(site, "geo_radius_m", None))):
            matches.append(SiteMatch(site=site, distance_m=distance))

    matches.sort(key=lambda m: m.distance_m)
    return matches


def select_site(position: Coordinate, sites: Iterable[Any]) -> SiteSelection:
    matches = resolve_sites(position, sites)
    if not matches:
        return SiteSelection(match=None, candidates=[], ambiguous=False)
    return SiteSelection(match=matches[0], candidates=matches, ambiguous=len(matches) > 1)
