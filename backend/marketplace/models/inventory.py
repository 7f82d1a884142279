from __future__ import annotations

from ..extensions import db
from marketplace.time_utils import to_utc_z


ACTION_RESTOCK = "restock"
ACTION_SALE = "sale"
ACTION_ADJUSTMENT = "adjustment"
ACTION_EXPIRED = "expired"
ACTION_DAMAGED = "damaged"

VALID_ACTIONS = [ACTION_RESTOCK, ACTION_SALE, ACTION_ADJUSTMENT, ACTION_EXPIRED, ACTION_DAMAGED]

ALLOCATION_RESERVED = "reserved"
ALLOCATION_COMMITTED = "committed"
ALLOCATION_RELEASED = "released"
ALLOCATION_RETURNED = "returned"


inventory_products = db.Table(
    "inventory_products",
    db.Column("inventory_id", db.Integer, db.ForeignKey("inventory_records.id"), primary_key=True),
    db.Column("product_id", db.Integer, db.ForeignKey("products.id"), primary_key=True),
)


class InventoryRecord(db.Model):
    """
    Per-store stock pool shared by one or more products.

    Counters are only mutated through conditional UPDATE statements in
    inventory_service; never read-modify-write them through the ORM.

    INVARIANTS:
    - available_quantity >= 0 and reserved_quantity >= 0 (enforced by CHECK)
    - available + reserved only decreases through sale, expiry or damage
    """
    __tablename__ = "inventory_records"
    __table_args__ = (
        db.CheckConstraint("available_quantity >= 0", name="ck_inventory_available_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_nonneg"),
        db.Index("ix_inventory_store_available", "store_id", "available_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)

    available_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    reorder_level = db.Column(db.Integer, nullable=False, default=5)
    max_stock_level = db.Column(db.Integer, nullable=False, default=100)
    cost_price_cents = db.Column(db.Integer, nullable=True)

    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_action = db.Column(db.String(16), nullable=False, default=ACTION_RESTOCK)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("inventories", lazy=True))
    products = db.relationship(
        "Product",
        secondary=inventory_products,
        backref=db.backref("inventories", lazy=True),
        lazy=True,
    )

    @property
    def total_quantity(self) -> int:
        return self.available_quantity + self.reserved_quantity

    @property
    def is_low_stock(self) -> bool:
        return self.available_quantity <= self.reorder_level

    @property
    def is_out_of_stock(self) -> bool:
        return self.available_quantity == 0

    def __repr__(self) -> str:
        return (
            f"<InventoryRecord id={self.id} store_id={self.store_id} "
            f"available={self.available_quantity} reserved={self.reserved_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "available_quantity": self.available_quantity,
            "reserved_quantity": self.reserved_quantity,
            "total_quantity": self.total_quantity,
            "reorder_level": self.reorder_level,
            "max_stock_level": self.max_stock_level,
            "cost_price_cents": self.cost_price_cents,
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "last_action": self.last_action,
            "is_low_stock": self.is_low_stock,
            "is_out_of_stock": self.is_out_of_stock,
            "product_ids": [p.id for p in self.products],
            "created_at": to_utc_z(self.created_at),
        }


class StockAllocation(db.Model):
    """
    Slice of an order item's quantity held against one inventory record.

    WHY: Greedy reservation can spread one line item over several records.
    Releasing or confirming must touch exactly the records that were
    reserved from, so each slice is remembered here.
    """
    __tablename__ = "stock_allocations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_allocation_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory_records.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ALLOCATION_RESERVED, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    inventory = db.relationship("InventoryRecord")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "inventory_id": self.inventory_id,
            "quantity": self.quantity,
            "status": self.status,
        }
