from __future__ import annotations

from ..extensions import db
from marketplace.time_utils import to_utc_z


PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"


class Payment(db.Model):
    """
    Payment record as seen by the fulfillment core.

    The gateway conversation itself is out of scope; this row only holds the
    outcome (status + reference) and the delivery fields written back once
    dispatch has run.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("reference", name="uq_payments_reference"),
        db.Index("ix_payments_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    reference = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="KES")

    status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING, index=True)
    failure_reason = db.Column(db.Text, nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Written back after the delivery workflow runs
    delivery_initiated = db.Column(db.Boolean, nullable=False, default=False)
    delivery_reference = db.Column(db.Integer, nullable=True)
    delivery_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    order = db.relationship("Order", backref=db.backref("payments", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "reference": self.reference,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "verified_at": to_utc_z(self.verified_at),
            "delivery_initiated": self.delivery_initiated,
            "delivery_reference": self.delivery_reference,
            "delivery_error": self.delivery_error,
            "created_at": to_utc_z(self.created_at),
        }
