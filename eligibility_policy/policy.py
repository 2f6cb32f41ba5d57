from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from contracts.errors import PolicyDenied
from contracts.schemas import EligibilityResult, GeoPoint, Geofence, Location, ReasonCode, as_utc, utc_now
from eligibility_policy.distance import MEAN_EARTH_RADIUS_METERS, haversine_meters


class Lockable(Protocol):
    unlock_timestamp: datetime
    geofence: Optional[Geofence]


@dataclass(frozen=True)
class EligibilityPolicy:
    """
    Time-lock and geofence evaluation:
      - time is satisfied once now >= unlock_timestamp
      - no geofence => geo satisfied
      - geofence without a location => geo not satisfied (cannot prove location)
      - geofence with a location => distance <= radius (inclusive)

    Advisory only: the ledger re-derives eligibility on its own.
    """

    earth_radius_meters: float = MEAN_EARTH_RADIUS_METERS

    def distance(self, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        return haversine_meters(lat1, lon1, lat2, lon2, radius=self.earth_radius_meters)

    def distance_between(self, a: GeoPoint, b: GeoPoint) -> float:
        return self.distance(a.latitude, a.longitude, b.latitude, b.longitude)

    def evaluate(
        self,
        capsule: Lockable,
        now: Optional[datetime] = None,
        location: Optional[Location] = None,
    ) -> EligibilityResult:
        now = as_utc(now) if now is not None else utc_now()
        unlock_at = as_utc(capsule.unlock_timestamp)

        time_ok = now >= unlock_at
        remaining = 0.0 if time_ok else (unlock_at - now).total_seconds()

        fence = capsule.geofence
        distance: Optional[float] = None
        if fence is None:
            geo_ok = True
        elif location is None:
            geo_ok = False
        else:
            distance = self.distance_between(location.point, fence.center)
            geo_ok = distance <= fence.radius_meters

        return EligibilityResult(
            time_satisfied=time_ok,
            geo_satisfied=geo_ok,
            reason=_reason(time_ok, geo_ok),
            distance_meters=distance,
            seconds_remaining=remaining,
        )


def _reason(time_ok: bool, geo_ok: bool) -> ReasonCode:
    if time_ok and geo_ok:
        return ReasonCode.ELIGIBLE
    if not time_ok and not geo_ok:
        return ReasonCode.BOTH_PENDING
    if not time_ok:
        return ReasonCode.TIME_PENDING
    return ReasonCode.LOCATION_PENDING


DEFAULT_POLICY = EligibilityPolicy()


def evaluate_eligibility(
    capsule: Lockable,
    now: Optional[datetime] = None,
    location: Optional[Location] = None,
    policy: EligibilityPolicy = DEFAULT_POLICY,
) -> EligibilityResult:
    return policy.evaluate(capsule, now=now, location=location)


def enforce_eligibility(
    capsule: Lockable,
    now: Optional[datetime] = None,
    location: Optional[Location] = None,
    policy: EligibilityPolicy = DEFAULT_POLICY,
) -> EligibilityResult:
    result = evaluate_eligibility(capsule, now=now, location=location, policy=policy)
    if not result.eligible:
        raise PolicyDenied("eligibility denied: " + result.reason.value)
    return result
