# Overview: Payment records and the payment-verified -> order-confirmed bridge.

"""
Payment confirmation bridge

The gateway conversation happens elsewhere; this module only sees its
outcome (success/failure + reference). A verified payment confirms the
order exactly once:

- handle_payment_verified locks the order and confirms it only while it
  is still PENDING. Repeat or late signals are logged no-ops.
- verify_payment commits the payment status first. A bridge failure is
  reported in the result but never rolls the payment record back.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import MarketplaceError, NotFound, ValidationError, wrap_database_error
from ..extensions import db
from ..models import Payment
from ..models.orders import ORDER_PENDING
from ..models.payments import PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_PENDING
from marketplace.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .order_service import lock_order, apply_confirmation, get_order


@dataclass
class VerificationResult:
    payment: Payment
    order_confirmed: bool = False
    error: dict | None = None


def create_payment(
    *,
    order_id: int,
    amount_cents: int,
    reference: str,
    user_id: int | None = None,
    currency: str = "KES",
) -> Payment:
    """Record a pending payment for an order."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", details={"amount_cents": amount_cents})
    if not reference or not reference.strip():
        raise ValidationError("reference is required")

    order = get_order(order_id)
    payment = Payment(
        order_id=order.id,
        user_id=user_id if user_id is not None else order.user_id,
        reference=reference.strip(),
        amount_cents=amount_cents,
        currency=currency,
        status=PAYMENT_PENDING,
    )
    db.session.add(payment)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationError(
            "Payment reference already exists",
            details={"reference": reference},
        ) from exc
    return payment


def has_completed_payment(order_id: int) -> bool:
    return (
        db.session.query(Payment.id)
        .filter(Payment.order_id == order_id, Payment.status == PAYMENT_COMPLETED)
        .first()
        is not None
    )


def handle_payment_verified(order_id: int) -> bool:
    """
    Confirm the order behind a verified payment.

    Returns True when this call confirmed the order, False when it was
    already past PENDING.
    """
    def _op() -> bool:
        order = lock_order(order_id)
        if order.status != ORDER_PENDING:
            db.session.rollback()
            current_app.logger.warning(
                "Payment verified for order %s in status %s; nothing to confirm",
                order_id, order.status,
            )
            return False
        apply_confirmation(order)
        db.session.commit()
        current_app.logger.info("Order %s confirmed by payment", order.order_number)
        return True

    try:
        return run_with_retry(_op)
    except MarketplaceError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise wrap_database_error(exc, "confirm order from payment") from exc


def verify_payment(reference: str, success: bool, failure_reason: str | None = None) -> VerificationResult:
    """Apply a gateway verification outcome and run the bridge on success."""
    def _op() -> Payment:
        payment = lock_for_update(db.session.query(Payment).filter_by(reference=reference)).first()
        if not payment:
            raise NotFound("Payment not found", details={"reference": reference})

        if payment.status == PAYMENT_COMPLETED:
            if not success:
                current_app.logger.warning(
                    "Ignoring failed verification for completed payment %s", reference
                )
            return payment

        if success:
            payment.status = PAYMENT_COMPLETED
            payment.failure_reason = None
            payment.verified_at = utcnow()
        else:
            payment.status = PAYMENT_FAILED
            payment.failure_reason = failure_reason
        db.session.commit()
        return payment

    try:
        payment = run_with_retry(_op)
    except MarketplaceError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise wrap_database_error(exc, "verify payment") from exc

    result = VerificationResult(payment=payment)
    if payment.status != PAYMENT_COMPLETED:
        current_app.logger.info("Payment %s failed: %s", reference, failure_reason)
        return result

    try:
        result.order_confirmed = handle_payment_verified(payment.order_id)
    except MarketplaceError as exc:
        current_app.logger.error(
            "Payment %s verified but order %s could not be confirmed: %s",
            reference, payment.order_id, exc.message,
        )
        result.error = exc.to_dict()
    return result


def record_delivery_outcome(order_id: int, delivery_id: int | None = None, error: str | None = None) -> int:
    """
    Write the dispatch outcome onto the order's completed payments.

    Returns the number of payment rows updated.
    """
    payments = (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id, Payment.status == PAYMENT_COMPLETED)
        .all()
    )
    for payment in payments:
        if delivery_id is not None:
            payment.delivery_initiated = True
            payment.delivery_reference = delivery_id
            payment.delivery_error = None
        else:
            payment.delivery_initiated = False
            payment.delivery_error = error
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise wrap_database_error(exc, "record delivery outcome") from exc
    return len(payments)
