import math

import pytest

from marketplace.errors import LocationUnavailable, MarketplaceError
from marketplace.models.directory import RoleCapabilityError
from marketplace.services.geo_service import Coordinates
from marketplace.services.matching_service import find_best_driver_for_store, haversine_km


def test_haversine_one_degree_at_equator():
    a = Coordinates(latitude=0, longitude=0)
    b = Coordinates(latitude=0, longitude=1)

    assert haversine_km(a, b) == pytest.approx(6371 * math.pi / 180, rel=1e-9)
    assert haversine_km(a, a) == 0


def test_haversine_is_symmetric():
    a = Coordinates(latitude=-1.2921, longitude=36.8219)
    b = Coordinates(latitude=-4.0435, longitude=39.6682)

    assert haversine_km(a, b) == pytest.approx(haversine_km(b, a))
    assert haversine_km(a, b) == pytest.approx(440, abs=15)


def test_nearest_driver_wins(build, store, geo):
    far = build.driver("far@example.com", 0.0, 5.0)
    near = build.driver("near@example.com", 0.0, 1.0)

    match = find_best_driver_for_store(store.id)

    assert match.driver.id == near.id
    assert match.driver.id != far.id
    assert match.distance_km == pytest.approx(111.19, abs=0.01)


def test_ties_keep_id_order(build, store, geo):
    first = build.driver("first@example.com", 1.0, 0.0)
    build.driver("second@example.com", -1.0, 0.0)

    assert find_best_driver_for_store(store.id).driver.id == first.id


def test_inactive_and_non_drivers_are_ignored(build, store, geo):
    build.user("customer-nearby@example.com", lat=0.0, lon=0.01)
    build.driver("retired@example.com", 0.0, 0.02, is_active=False)
    active = build.driver("active@example.com", 0.0, 3.0)

    assert find_best_driver_for_store(store.id).driver.id == active.id


def test_unresolvable_drivers_are_skipped(build, store, geo):
    build.driver("nowhere@example.com", None, None, area="Unmapped")
    build.driver("homeless@example.com", None, None, with_address=False)
    mapped = build.driver("mapped@example.com", None, None, area="Kilimani")
    geo.locations["Kilimani, Nairobi, Nairobi, Kenya"] = Coordinates(latitude=0.0, longitude=2.0)

    match = find_best_driver_for_store(store.id)

    assert match.driver.id == mapped.id
    assert "Unmapped, Nairobi, Nairobi, Kenya" in geo.geocode_calls


def test_no_candidates_returns_none(store, geo):
    assert find_best_driver_for_store(store.id) is None


def test_store_without_location(build, geo, driver):
    shop = build.store(name="Ghost", lat=None, lon=None)

    with pytest.raises(LocationUnavailable):
        find_best_driver_for_store(shop.id)


def test_driver_address_is_refused_for_other_roles(customer, driver):
    assert driver.driver_address().latitude == 0.0

    with pytest.raises(MarketplaceError) as exc:
        customer.driver_address()

    assert isinstance(exc.value, RoleCapabilityError)
    assert exc.value.to_dict()["error"] == "role_capability_error"
