# Overview: Lookup contracts for the directory and catalog collaborators.

"""
The fulfillment core never edits users, stores or products. It reaches them
through these find-by-id / list-by-key helpers, which raise NotFound instead
of returning None so callers can't forget the check.
"""

from __future__ import annotations

from ..errors import NotFound
from ..extensions import db
from ..models import Address, Product, Store, User
from ..models.directory import ROLE_DRIVER


def find_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound("User not found", details={"user_id": user_id})
    return user


def find_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store:
        raise NotFound("Store not found", details={"store_id": store_id})
    return store


def find_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFound("Product not found", details={"product_id": product_id})
    return product


def find_default_address(user_id: int) -> Address | None:
    return find_user(user_id).default_address()


def list_drivers() -> list[User]:
    """
    Active users with the driver role, in id order.

    Deactivated accounts are left out on purpose. Availability and current
    workload are not consulted: a busy driver is still a candidate.
    """
    return (
        db.session.query(User)
        .filter(User.role == ROLE_DRIVER, User.is_active.is_(True))
        .order_by(User.id.asc())
        .all()
    )
