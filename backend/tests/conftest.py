"""
Pytest fixtures for marketplace backend tests.

Provides an in-memory application, per-test table wipe, a fake geo
provider and small builders for stores, users, products and inventory.
"""

import pytest

from marketplace import create_app
from marketplace.extensions import db
from marketplace.models import Address, InventoryRecord, Product, Profile, Store, User
from marketplace.models.directory import ROLE_CUSTOMER, ROLE_DRIVER
from marketplace.services.geo_service import RouteInfo


class FakeGeoProvider:
    """In-process stand-in for the geocoding/routing client."""

    def __init__(self):
        self.locations = {}
        self.route_info = RouteInfo(
            distance_m=5230,
            duration_s=610,
            coordinates=[[36.8219, -1.2921], [36.8300, -1.3000]],
            summary={"distance": 5230, "duration": 610},
        )
        self.geocode_calls = []
        self.route_calls = []

    def geocode(self, text):
        self.geocode_calls.append(text)
        return self.locations.get(text)

    def route(self, origin, destination):
        self.route_calls.append((origin, destination))
        return self.route_info


class Builders:
    """Row builders bound to the test session."""

    def __init__(self, session):
        self.session = session

    @staticmethod
    def address(lat=None, lon=None, town="Nairobi", area=None, is_default=True):
        return Address(
            area=area,
            town=town,
            county="Nairobi",
            country="Kenya",
            latitude=lat,
            longitude=lon,
            is_default=is_default,
        )

    def store(self, name="Corner Shop", lat=0.0, lon=0.0, delivery_fee_cents=0, area=None):
        address = self.address(lat, lon, town="Store Town", area=area)
        self.session.add(address)
        self.session.flush()
        store = Store(name=name, delivery_fee_cents=delivery_fee_cents, address_id=address.id)
        self.session.add(store)
        self.session.commit()
        return store

    def user(self, email, role=ROLE_CUSTOMER, lat=None, lon=None, with_address=True, area=None,
             first_name=None, phone_number="+254700000000", is_active=True):
        profile = Profile(
            first_name=first_name or email.split("@")[0].title(),
            last_name="Test",
            phone_number=phone_number,
        )
        if with_address:
            profile.addresses.append(self.address(lat, lon, area=area))
        user = User(email=email, role=role, is_active=is_active, profile=profile)
        self.session.add(user)
        self.session.commit()
        return user

    def driver(self, email, lat, lon, **kwargs):
        return self.user(email, role=ROLE_DRIVER, lat=lat, lon=lon, **kwargs)

    def product(self, name="Product", price_cents=1000):
        product = Product(name=name, price_cents=price_cents)
        self.session.add(product)
        self.session.commit()
        return product

    def inventory(self, store, products, available, reserved=0, reorder_level=5,
                  cost_price_cents=None, name=None):
        record = InventoryRecord(
            store_id=store.id,
            name=name or f"Stock {available}",
            available_quantity=available,
            reserved_quantity=reserved,
            reorder_level=reorder_level,
            cost_price_cents=cost_price_cents,
        )
        record.products = list(products)
        self.session.add(record)
        self.session.commit()
        return record


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDER_TAX_RATE_BPS': 1600,
        'DB_RETRY_BACKOFF_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def geo(app):
    """Fresh fake geo provider for each test."""
    original = app.extensions['geo_provider']
    fake = FakeGeoProvider()
    app.extensions['geo_provider'] = fake
    yield fake
    app.extensions['geo_provider'] = original


@pytest.fixture(scope='function')
def build(db_session):
    return Builders(db_session)


@pytest.fixture(scope='function')
def store(build):
    """Store at (0, 0) with no delivery fee."""
    return build.store()


@pytest.fixture(scope='function')
def customer(build):
    return build.user("customer@example.com", lat=0.05, lon=0.05, first_name="Carol")


@pytest.fixture(scope='function')
def driver(build):
    return build.driver("driver@example.com", 0.0, 1.0, first_name="Dan", phone_number="+254711111111")


@pytest.fixture(scope='function')
def product(build):
    return build.product("Maize Flour 2kg", 10000)


@pytest.fixture(scope='function')
def second_product(build):
    return build.product("Cooking Oil 1L", 2500)
