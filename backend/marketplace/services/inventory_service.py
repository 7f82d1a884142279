# Overview: Inventory ledger; reserve/release/confirm stock and manage per-store stock pools.

"""
Inventory ledger invariants (authoritative)

Counters:
- available_quantity and reserved_quantity are never negative (CHECK constraints).
- available + reserved only decreases through a confirmed sale, expiry or damage.

Mutation rules:
- Every counter change is ONE conditional UPDATE ... WHERE statement.
  A rowcount of zero is the failure signal; the row is then re-read only
  to tell a missing record (NotFound) from a failed precondition.
- Never read a counter, modify it in Python and write it back. Two workers
  doing that both pass the check and oversell.

Transactions:
- Functions taking commit=True commit their own work (with retry).
- Order workflows pass commit=False so the ledger writes share the
  order's transaction and roll back with it.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, update

from ..errors import InsufficientStock, InvalidConfirm, InvalidRelease, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import InventoryRecord, Product, StockAllocation
from ..models.inventory import (
    ACTION_ADJUSTMENT,
    ACTION_DAMAGED,
    ACTION_EXPIRED,
    ACTION_RESTOCK,
    ACTION_SALE,
    VALID_ACTIONS,
)
from marketplace.time_utils import utcnow
from .concurrency import run_with_retry
from .directory_service import find_product, find_store


@dataclass
class Reservation:
    """One slice reserved from one inventory record."""
    inventory_id: int
    quantity: int


def _require_positive(value, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", details={field: value})
    return value


def _require_non_negative(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer", details={field: value})
    return value


def _reload(inventory_id: int) -> InventoryRecord:
    """Fetch the record, overwriting any stale identity-map copy."""
    record = db.session.get(InventoryRecord, inventory_id, populate_existing=True)
    if not record:
        raise NotFound("Inventory not found", details={"inventory_id": inventory_id})
    return record


def _apply(stmt, *, commit: bool):
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if commit:
        if result.rowcount:
            db.session.commit()
        else:
            db.session.rollback()
    return result.rowcount


def _run(op, commit: bool):
    return run_with_retry(op) if commit else op()


# =============================================================================
# Reservation primitives
# =============================================================================

def reserve(inventory_id: int, quantity: int, *, commit: bool = True) -> InventoryRecord:
    """Move quantity from available to reserved, or raise InsufficientStock."""
    _require_positive(quantity)

    def _op():
        stmt = (
            update(InventoryRecord)
            .where(
                InventoryRecord.id == inventory_id,
                InventoryRecord.available_quantity >= quantity,
            )
            .values(
                available_quantity=InventoryRecord.available_quantity - quantity,
                reserved_quantity=InventoryRecord.reserved_quantity + quantity,
            )
        )
        if not _apply(stmt, commit=commit):
            record = _reload(inventory_id)
            raise InsufficientStock(
                f"Insufficient stock. Available: {record.available_quantity}, Requested: {quantity}",
                details={
                    "inventory_id": inventory_id,
                    "available": record.available_quantity,
                    "requested": quantity,
                },
            )
        return _reload(inventory_id)

    return _run(_op, commit)


def release(inventory_id: int, quantity: int, *, commit: bool = True) -> InventoryRecord:
    """Return reserved quantity to available, or raise InvalidRelease."""
    _require_positive(quantity)

    def _op():
        stmt = (
            update(InventoryRecord)
            .where(
                InventoryRecord.id == inventory_id,
                InventoryRecord.reserved_quantity >= quantity,
            )
            .values(
                available_quantity=InventoryRecord.available_quantity + quantity,
                reserved_quantity=InventoryRecord.reserved_quantity - quantity,
            )
        )
        if not _apply(stmt, commit=commit):
            record = _reload(inventory_id)
            raise InvalidRelease(
                "Cannot release more than reserved quantity",
                details={
                    "inventory_id": inventory_id,
                    "reserved": record.reserved_quantity,
                    "requested": quantity,
                },
            )
        return _reload(inventory_id)

    return _run(_op, commit)


def confirm_sale(inventory_id: int, quantity: int, *, commit: bool = True) -> InventoryRecord:
    """Consume reserved quantity as a sale, or raise InvalidConfirm."""
    _require_positive(quantity)

    def _op():
        stmt = (
            update(InventoryRecord)
            .where(
                InventoryRecord.id == inventory_id,
                InventoryRecord.reserved_quantity >= quantity,
            )
            .values(
                reserved_quantity=InventoryRecord.reserved_quantity - quantity,
                last_action=ACTION_SALE,
            )
        )
        if not _apply(stmt, commit=commit):
            record = _reload(inventory_id)
            raise InvalidConfirm(
                "Cannot confirm more than reserved quantity",
                details={
                    "inventory_id": inventory_id,
                    "reserved": record.reserved_quantity,
                    "requested": quantity,
                },
            )
        return _reload(inventory_id)

    return _run(_op, commit)


def return_to_stock(inventory_id: int, quantity: int, *, commit: bool = True) -> InventoryRecord:
    """Put previously sold units back on the shelf (cancelled confirmed orders)."""
    _require_positive(quantity)

    def _op():
        stmt = (
            update(InventoryRecord)
            .where(InventoryRecord.id == inventory_id)
            .values(
                available_quantity=InventoryRecord.available_quantity + quantity,
                last_action=ACTION_RESTOCK,
            )
        )
        if not _apply(stmt, commit=commit):
            _reload(inventory_id)
        return _reload(inventory_id)

    return _run(_op, commit)


def reserve_for_product(
    product_id: int,
    quantity: int,
    store_id: int,
    *,
    commit: bool = True,
) -> list[Reservation]:
    """
    Reserve quantity of a product across the store's inventory records.

    Greedy in listing (id) order: each record gives what it has until the
    request is covered. A slice that fails against a stale listing is
    resized from the record's current counters rather than skipped. If the records run out first, every slice reserved
    by this call is released again and InsufficientStock is raised.
    """
    _require_positive(quantity)

    def _op():
        records = find_inventories_for_product(product_id, store_id)
        remaining = quantity
        slices: list[Reservation] = []

        for record in records:
            if remaining <= 0:
                break
            take = min(remaining, record.available_quantity)
            while take > 0:
                try:
                    reserve(record.id, take, commit=False)
                except InsufficientStock:
                    # Listing read is stale; size the slice from the current row
                    take = min(remaining, _reload(record.id).available_quantity)
                    continue
                slices.append(Reservation(inventory_id=record.id, quantity=take))
                remaining -= take
                break

        if remaining > 0:
            for s in slices:
                release(s.inventory_id, s.quantity, commit=False)
            if commit:
                db.session.commit()
            raise InsufficientStock(
                "Could not reserve enough stock for product",
                details={
                    "product_id": product_id,
                    "store_id": store_id,
                    "requested": quantity,
                    "reserved_before_exhaustion": quantity - remaining,
                },
            )

        if commit:
            db.session.commit()
        return slices

    return _run(_op, commit)


# =============================================================================
# Queries
# =============================================================================

def get_inventory(inventory_id: int) -> InventoryRecord:
    record = db.session.get(InventoryRecord, inventory_id)
    if not record:
        raise NotFound("Inventory not found", details={"inventory_id": inventory_id})
    return record


def list_inventories(store_id: int | None = None) -> list[InventoryRecord]:
    query = db.session.query(InventoryRecord)
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)
    return query.order_by(InventoryRecord.id.asc()).all()


def find_inventories_for_product(product_id: int, store_id: int | None = None) -> list[InventoryRecord]:
    """Inventory records listing the product, in id order."""
    query = db.session.query(InventoryRecord).filter(
        InventoryRecord.products.any(Product.id == product_id)
    )
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)
    return query.order_by(InventoryRecord.id.asc()).all()


def available_for_product(product_id: int, store_id: int) -> int:
    """Total available quantity of a product across the store's records."""
    return sum(r.available_quantity for r in find_inventories_for_product(product_id, store_id))


def find_low_stock(store_id: int | None = None) -> list[InventoryRecord]:
    query = db.session.query(InventoryRecord).filter(
        InventoryRecord.available_quantity <= InventoryRecord.reorder_level
    )
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)
    return query.order_by(InventoryRecord.available_quantity.asc(), InventoryRecord.id.asc()).all()


def find_out_of_stock(store_id: int | None = None) -> list[InventoryRecord]:
    query = db.session.query(InventoryRecord).filter(InventoryRecord.available_quantity == 0)
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)
    return query.order_by(InventoryRecord.id.asc()).all()


def get_inventory_stats(store_id: int | None = None) -> dict:
    query = db.session.query(InventoryRecord)
    if store_id is not None:
        query = query.filter(InventoryRecord.store_id == store_id)

    total_items = query.count()
    low_stock_items = query.filter(
        InventoryRecord.available_quantity <= InventoryRecord.reorder_level
    ).count()
    out_of_stock_items = query.filter(InventoryRecord.available_quantity == 0).count()

    value_query = db.session.query(
        func.coalesce(
            func.sum(InventoryRecord.available_quantity * func.coalesce(InventoryRecord.cost_price_cents, 0)),
            0,
        )
    )
    if store_id is not None:
        value_query = value_query.filter(InventoryRecord.store_id == store_id)

    return {
        "total_items": total_items,
        "low_stock_items": low_stock_items,
        "out_of_stock_items": out_of_stock_items,
        "in_stock_items": total_items - out_of_stock_items,
        "total_inventory_value_cents": int(value_query.scalar() or 0),
    }


# =============================================================================
# Record management
# =============================================================================

def create_inventory(
    *,
    store_id: int,
    name: str,
    available_quantity: int = 0,
    reorder_level: int = 5,
    max_stock_level: int = 100,
    cost_price_cents: int | None = None,
    product_ids: list[int] | None = None,
) -> InventoryRecord:
    if not name or not name.strip():
        raise ValidationError("name is required")
    _require_non_negative(available_quantity, "available_quantity")
    _require_non_negative(reorder_level, "reorder_level")
    _require_non_negative(max_stock_level, "max_stock_level")
    if cost_price_cents is not None:
        _require_non_negative(cost_price_cents, "cost_price_cents")

    find_store(store_id)
    products = [find_product(pid) for pid in (product_ids or [])]

    record = InventoryRecord(
        store_id=store_id,
        name=name.strip(),
        available_quantity=available_quantity,
        reserved_quantity=0,
        reorder_level=reorder_level,
        max_stock_level=max_stock_level,
        cost_price_cents=cost_price_cents,
        last_action=ACTION_RESTOCK,
        last_restocked_at=utcnow() if available_quantity else None,
    )
    record.products = products
    db.session.add(record)
    db.session.commit()
    return record


def add_product_to_inventory(inventory_id: int, product_id: int) -> InventoryRecord:
    """List a product in an inventory record (no-op if already listed)."""
    record = get_inventory(inventory_id)
    product = find_product(product_id)
    if product not in record.products:
        record.products.append(product)
        db.session.commit()
    return record


def remove_product_from_inventory(inventory_id: int, product_id: int) -> InventoryRecord:
    record = get_inventory(inventory_id)
    product = find_product(product_id)
    if product not in record.products:
        raise ValidationError(
            "Product is not listed in this inventory",
            details={"inventory_id": inventory_id, "product_id": product_id},
        )
    record.products.remove(product)
    db.session.commit()
    return record


def update_stock(
    inventory_id: int,
    action: str,
    quantity_change: int,
    cost_price_cents: int | None = None,
) -> InventoryRecord:
    """
    Apply a manual stock movement to available quantity.

    - restock: adds |change|, stamps last_restocked_at
    - sale / expired / damaged: subtracts |change|; may not go below zero
    - adjustment: applies the signed change; may not go below zero
    """
    if action not in VALID_ACTIONS:
        raise ValidationError(
            f"Invalid action '{action}'. Must be one of: {', '.join(VALID_ACTIONS)}",
            details={"action": action},
        )
    if isinstance(quantity_change, bool) or not isinstance(quantity_change, int) or quantity_change == 0:
        raise ValidationError("quantity_change must be a non-zero integer", details={"quantity_change": quantity_change})
    if cost_price_cents is not None:
        _require_non_negative(cost_price_cents, "cost_price_cents")

    magnitude = abs(quantity_change)
    if action == ACTION_RESTOCK:
        delta = magnitude
    elif action in (ACTION_SALE, ACTION_EXPIRED, ACTION_DAMAGED):
        delta = -magnitude
    else:
        delta = quantity_change

    def _op():
        values = {
            "available_quantity": InventoryRecord.available_quantity + delta,
            "last_action": action,
        }
        if action == ACTION_RESTOCK:
            values["last_restocked_at"] = utcnow()
        if cost_price_cents is not None:
            values["cost_price_cents"] = cost_price_cents

        stmt = update(InventoryRecord).where(InventoryRecord.id == inventory_id)
        if delta < 0:
            stmt = stmt.where(InventoryRecord.available_quantity >= -delta)
        stmt = stmt.values(**values)

        if not _apply(stmt, commit=True):
            record = _reload(inventory_id)
            message = {
                ACTION_SALE: "Insufficient stock for this sale",
                ACTION_ADJUSTMENT: "Adjustment would make stock negative",
            }.get(action, "Cannot remove more items than available")
            raise InsufficientStock(
                message,
                details={
                    "inventory_id": inventory_id,
                    "available": record.available_quantity,
                    "requested": magnitude,
                },
            )
        return _reload(inventory_id)

    return run_with_retry(_op)


def remove_inventory(inventory_id: int) -> None:
    """
    Delete an inventory record.

    Refused while stock is reserved or while order allocations still point
    at the record, so order history always resolves.
    """
    record = get_inventory(inventory_id)
    if record.reserved_quantity > 0:
        raise InvalidState(
            "Cannot remove inventory with reserved stock",
            details={"inventory_id": inventory_id, "reserved": record.reserved_quantity},
        )
    has_allocations = (
        db.session.query(StockAllocation.id)
        .filter(StockAllocation.inventory_id == inventory_id)
        .first()
    )
    if has_allocations:
        raise InvalidState(
            "Cannot remove inventory referenced by orders",
            details={"inventory_id": inventory_id},
        )
    record.products = []
    db.session.delete(record)
    db.session.commit()
