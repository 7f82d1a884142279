from __future__ import annotations

import json

from ..extensions import db
from marketplace.time_utils import to_utc_z


DELIVERY_PENDING = "pending"
DELIVERY_ASSIGNED = "assigned"
DELIVERY_PICKED_UP = "picked_up"
DELIVERY_IN_TRANSIT = "in_transit"
DELIVERY_DELIVERED = "delivered"
DELIVERY_CANCELLED = "cancelled"

VALID_DELIVERY_STATUSES = [
    DELIVERY_PENDING,
    DELIVERY_ASSIGNED,
    DELIVERY_PICKED_UP,
    DELIVERY_IN_TRANSIT,
    DELIVERY_DELIVERED,
    DELIVERY_CANCELLED,
]


class Delivery(db.Model):
    """
    Fulfillment run for one order.

    order_id is unique: the dispatch workflow is idempotent per order and a
    racing second insert fails on the constraint instead of duplicating.
    """
    __tablename__ = "deliveries"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_deliveries_order_id"),
        db.Index("ix_deliveries_driver_status", "driver_id", "delivery_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    driver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)

    delivery_address = db.Column(db.String(500), nullable=False)
    delivery_status = db.Column(db.String(20), nullable=False, default=DELIVERY_PENDING, index=True)

    estimated_delivery_time = db.Column(db.DateTime(timezone=True), nullable=True)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)

    route_distance_m = db.Column(db.Integer, nullable=True)
    route_duration_s = db.Column(db.Integer, nullable=True)
    # JSON list of [lon, lat] points
    route_coordinates = db.Column(db.Text, nullable=True)

    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    order = db.relationship("Order", backref=db.backref("delivery", uselist=False, lazy=True))
    driver = db.relationship("User", foreign_keys=[driver_id])
    user = db.relationship("User", foreign_keys=[user_id])
    store = db.relationship("Store")

    def route_points(self) -> list | None:
        if not self.route_coordinates:
            return None
        return json.loads(self.route_coordinates)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "driver_id": self.driver_id,
            "user_id": self.user_id,
            "store_id": self.store_id,
            "delivery_address": self.delivery_address,
            "delivery_status": self.delivery_status,
            "estimated_delivery_time": to_utc_z(self.estimated_delivery_time),
            "delivery_fee_cents": self.delivery_fee_cents,
            "route_distance_m": self.route_distance_m,
            "route_duration_s": self.route_duration_s,
            "delivered_at": to_utc_z(self.delivered_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
