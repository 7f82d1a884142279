# Overview: Nearest-driver matching by great-circle distance.

from __future__ import annotations

import math
from dataclasses import dataclass

from flask import current_app

from ..errors import LocationUnavailable
from ..models import Address, User
from .directory_service import find_store, list_drivers
from .geo_service import Coordinates, get_geo_provider


EARTH_RADIUS_KM = 6371.0


@dataclass
class DriverMatch:
    driver: User
    distance_km: float


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def resolve_address(address: Address | None) -> Coordinates | None:
    """Stored coordinates if present, otherwise geocode the address text."""
    if address is None:
        return None
    if address.has_coordinates():
        return Coordinates(latitude=address.latitude, longitude=address.longitude)
    return get_geo_provider().geocode(address.location_text())


def store_coordinates(store_id: int) -> Coordinates:
    store = find_store(store_id)
    if store.address is None:
        raise LocationUnavailable(f"No address found for store {store_id}", details={"store_id": store_id})
    coords = resolve_address(store.address)
    if coords is None:
        raise LocationUnavailable(
            f"Cannot get coordinates for store {store_id}",
            details={"store_id": store_id},
        )
    return coords


def find_best_driver_for_store(store_id: int) -> DriverMatch | None:
    """
    Closest active driver to the store, or None.

    Drivers whose base location can't be resolved are skipped. Ties keep
    the earlier driver in id order.
    """
    origin = store_coordinates(store_id)

    best: DriverMatch | None = None
    for driver in list_drivers():
        coords = resolve_address(driver.driver_address())
        if coords is None:
            current_app.logger.warning("Skipping driver %s: location unavailable", driver.id)
            continue
        distance = haversine_km(origin, coords)
        if best is None or distance < best.distance_km:
            best = DriverMatch(driver=driver, distance_km=distance)
    return best
