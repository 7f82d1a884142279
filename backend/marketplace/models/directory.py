from __future__ import annotations

from ..extensions import db
from marketplace.errors import ValidationError
from marketplace.time_utils import to_utc_z


ROLE_CUSTOMER = "customer"
ROLE_DRIVER = "driver"
ROLE_STORE_OWNER = "store_owner"
ROLE_ADMIN = "admin"

VALID_ROLES = [ROLE_CUSTOMER, ROLE_DRIVER, ROLE_STORE_OWNER, ROLE_ADMIN]


class RoleCapabilityError(ValidationError):
    """Raised when a role-specific association is requested from the wrong role."""
    kind = "role_capability_error"


class Address(db.Model):
    """
    Postal address with optional stored coordinates.

    Belongs either to a profile (customers, drivers) or to a store.
    When latitude/longitude are missing the address is geocoded on demand
    from area, town, county and country.
    """
    __tablename__ = "addresses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True, index=True)

    street = db.Column(db.String(100), nullable=True)
    area = db.Column(db.String(100), nullable=True)
    town = db.Column(db.String(100), nullable=False)
    county = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    country = db.Column(db.String(100), nullable=False, default="Kenya")

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def location_text(self) -> str:
        parts = [self.area, self.town, self.county, self.country]
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "profile_id": self.profile_id,
            "street": self.street,
            "area": self.area,
            "town": self.town,
            "county": self.county,
            "postal_code": self.postal_code,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_default": self.is_default,
        }


class Profile(db.Model):
    __tablename__ = "profiles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(255), nullable=False)
    last_name = db.Column(db.String(255), nullable=False)
    phone_number = db.Column(db.String(20), nullable=True)

    addresses = db.relationship(
        "Address",
        backref=db.backref("profile", lazy=True),
        lazy=True,
        order_by="Address.id",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def default_address(self) -> Address | None:
        """Default address, falling back to the first one on file."""
        if not self.addresses:
            return None
        for address in self.addresses:
            if address.is_default:
                return address
        return self.addresses[0]


class User(db.Model):
    """
    Marketplace account.

    One table for every role. Role-specific associations are reached through
    capability-checked accessors (require_role, driver_address) so a customer
    record is never silently treated as a driver.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role_active", "role", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True, unique=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    role = db.Column(db.String(32), nullable=False, default=ROLE_CUSTOMER, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Carried from the directory; not consulted by driver matching
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    profile = db.relationship("Profile", backref=db.backref("user", uselist=False, lazy=True))

    @property
    def is_driver(self) -> bool:
        return self.role == ROLE_DRIVER

    def require_role(self, role: str) -> "User":
        if self.role != role:
            raise RoleCapabilityError(f"User {self.id} has role {self.role}, not {role}")
        return self

    def default_address(self) -> Address | None:
        if self.profile is None:
            return None
        return self.profile.default_address()

    def driver_address(self) -> Address | None:
        """Base location of a driver (their default address)."""
        self.require_role(ROLE_DRIVER)
        return self.default_address()

    def contact_info(self) -> dict:
        return {
            "id": self.id,
            "name": self.profile.full_name if self.profile else None,
            "phone": self.profile.phone_number if self.profile else None,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "profile_id": self.profile_id,
            "created_at": to_utc_z(self.created_at),
        }


class Store(db.Model):
    """Storefront within the marketplace; owns inventory and receives orders."""
    __tablename__ = "stores"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(50), nullable=True, unique=True)

    # Flat fee charged on non-pickup orders
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    owner = db.relationship("User", backref=db.backref("stores", lazy=True))
    address = db.relationship("Address", foreign_keys=[address_id])

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "code": self.code,
            "delivery_fee_cents": self.delivery_fee_cents,
            "address_id": self.address_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
