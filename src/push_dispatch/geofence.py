"""Geofence candidate resolution.

The spatial index is an external service; this module defines its query
contract, ships an in-memory reference index, and wraps lookups with radius
clamping, per-user radius checks, the category pre-filter and a timeout.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, runtime_checkable

from src.push_dispatch.config import DEFAULT_DISPATCH_CONFIG, DispatchConfig, NotificationCategory
from src.push_dispatch.exceptions import ResolutionUnavailable
from src.push_dispatch.models import GeoPoint
from src.push_dispatch.preferences import PreferenceStore, load_preferences

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0


@dataclass(frozen=True)
class NearbyUser:
    """One geofence index hit."""

    user_id: str
    distance_km: float


@runtime_checkable
class GeofenceIndex(Protocol):
    """External spatial index."""

    async def find_nearby_users(self, point: GeoPoint, radius_km: float) -> list[NearbyUser]:
        ...


class InMemoryGeofenceIndex:
    """Reference index over last-known user locations.

    Bounding-box prefilter followed by an exact haversine check.
    """

    def __init__(self):
        self._locations: dict[str, GeoPoint] = {}

    def update_location(self, user_id: str, point: GeoPoint) -> None:
        self._locations[user_id] = point

    def remove_user(self, user_id: str) -> bool:
        return self._locations.pop(user_id, None) is not None

    async def find_nearby_users(self, point: GeoPoint, radius_km: float) -> list[NearbyUser]:
        lat_delta = radius_km / KM_PER_DEGREE
        cos_lat = math.cos(math.radians(point.latitude))
        lng_delta = radius_km / (KM_PER_DEGREE * cos_lat) if cos_lat > 1e-9 else 180.0

        hits = []
        for user_id, location in self._locations.items():
            if abs(location.latitude - point.latitude) > lat_delta:
                continue
            if abs(location.longitude - point.longitude) > lng_delta:
                continue
            distance = point.distance_km(location)
            if distance <= radius_km:
                hits.append(NearbyUser(user_id=user_id, distance_km=distance))

        hits.sort(key=lambda h: h.distance_km)
        return hits


class GeofenceResolver:
    """Resolves location-scoped events to candidate user IDs."""

    def __init__(
        self,
        index: GeofenceIndex,
        preference_store: PreferenceStore,
        config: Optional[DispatchConfig] = None,
    ):
        self.index = index
        self.preference_store = preference_store
        self.config = config or DEFAULT_DISPATCH_CONFIG

    async def find_nearby_users(
        self,
        point: GeoPoint,
        radius_km: float,
        category_filter: Optional[NotificationCategory] = None,
        exclude: Iterable[str] = (),
    ) -> set[str]:
        """Return users within range who have not disabled ``category_filter``.

        The category check here only trims the candidate set; the
        eligibility filter stays authoritative.

        Raises:
            ResolutionUnavailable: index error or timeout.
        """
        radius = self.config.clamp_radius(radius_km)

        try:
            hits = await asyncio.wait_for(
                self.index.find_nearby_users(point, radius),
                timeout=self.config.geofence_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Geofence lookup timed out after %.1fs", self.config.geofence_timeout_seconds)
            raise ResolutionUnavailable("Geofence lookup timed out", cause=e) from e
        except Exception as e:
            logger.warning("Geofence lookup failed: %s", e)
            raise ResolutionUnavailable(f"Geofence lookup failed: {e}", cause=e) from e

        excluded = set(exclude)
        users: set[str] = set()
        for hit in hits:
            if hit.user_id in excluded:
                continue
            try:
                prefs = await load_preferences(self.preference_store, hit.user_id)
            except Exception as e:
                # Kept as a candidate; eligibility evaluation reports the failure.
                logger.warning("Preference lookup failed for nearby user %s: %s", hit.user_id, e)
                users.add(hit.user_id)
                continue
            if hit.distance_km > self.config.clamp_radius(prefs.geofence_radius_km):
                continue
            if category_filter is not None and not prefs.is_category_enabled(category_filter):
                continue
            users.add(hit.user_id)

        logger.debug(
            "Geofence resolved %d of %d hits within %.1fkm",
            len(users),
            len(hits),
            radius,
        )
        return users
