"""
Payment ledger: every fee payment state change goes through here.

A payment starts ``pending`` and reaches one of ``completed``, ``failed`` or
``rejected``. Receipt number and paid date are derived from status by
``rules.derive_payment_fields`` right before each commit, and every
transition queues one student notification in the same commit.

Payments carry a version counter; a concurrent writer that loses the race
gets a ``ConflictError`` instead of silently overwriting the winner.
"""
import secrets
from dataclasses import dataclass
from datetime import timedelta, date
from decimal import Decimal

from flask import current_app
from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, DataError
from sqlalchemy.orm.exc import StaleDataError

from .. import db, cache
from ..models import Payment, Notification, PAYMENT_TYPES, PAYMENT_STATUSES, utc_now
from ..errors import ValidationError, NotFoundError, ConflictError, PermissionDenied, UpstreamGatewayError
from ..decorators import FINANCE_ROLES, user_role
from ..accounts.services import get_student, ensure_student_access
from ..notifications.services import record_payment_notification
from .rules import derive_payment_fields, format_receipt, format_amount, parse_amount, epoch_ms

STATS_CACHE_KEY = "payment_stats"
CUSTOM_METHODS = ("custom_upi", "custom_qr")
MANUAL_METHODS = ("cash", "cheque", "online")
SETTABLE_STATUSES = ("pending", "completed", "failed")
DELETE_ROLES = ("head_admin", "finance_department")
DEFAULT_REJECTION = "Payment rejected by finance department"
# Column bounds of payments.amount (Numeric(12, 2)) and payments.transaction_id
MAX_AMOUNT = Decimal("9999999999.99")
MAX_TRANSACTION_ID = 64


@dataclass
class Reconciliation:
    payment: Payment
    status: str
    already_processed: bool = False

    def to_dict(self):
        return {
            "status": self.status,
            "alreadyProcessed": self.already_processed,
            "payment": self.payment.to_dict() if self.payment is not None else None,
        }


def _require_role(actor, roles):
    if actor is not None and user_role(actor) not in roles:
        raise PermissionDenied("You do not have permission to perform this payment operation.")


def _type_label(payment):
    return f"{payment.payment_type} fee"


class PaymentLedger:
    def __init__(self, config, gateways=None, custom_payment_ttl=timedelta(minutes=5), clock=None):
        self.config = config
        self.gateways = dict(gateways or {})
        self.custom_payment_ttl = custom_payment_ttl
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _gateway(self, name):
        gateway = self.gateways.get((name or "").strip().lower())
        if gateway is None:
            raise ValidationError(f"Unknown payment gateway: {name}")
        return gateway

    def _get(self, payment_id):
        if payment_id is None or payment_id == "":
            raise ValidationError("Payment ID is required")
        if isinstance(payment_id, bool):
            raise ValidationError("Payment ID must be an integer")
        try:
            payment_id = int(payment_id)
        except (TypeError, ValueError):
            raise ValidationError("Payment ID must be an integer")
        payment = db.session.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    def _mint_receipt(self, now):
        issued = db.session.scalar(
            select(func.count(Payment.payment_id)).where(Payment.receipt_number.is_not(None))
        ) or 0
        return format_receipt(now, issued)

    def _derive(self, payment, now):
        for field, value in derive_payment_fields(
            payment.status, payment.receipt_number, payment.paid_date, now, self._mint_receipt
        ).items():
            setattr(payment, field, value)
        if payment.status != "rejected":
            payment.rejection_reason = None

    def _write(self, step):
        try:
            step()
        except IntegrityError as e:
            db.session.rollback()
            raise ConflictError("A payment with the same transaction, order or receipt number already exists") from e
        except StaleDataError as e:
            db.session.rollback()
            raise ConflictError("Payment was modified by another request; reload and retry") from e
        except DataError as e:
            db.session.rollback()
            raise ValidationError("A payment field is too long or out of range") from e

    def _flush(self):
        self._write(db.session.flush)

    def _commit(self):
        self._write(db.session.commit)
        cache.delete(STATS_CACHE_KEY)

    def _validated_fields(self, amount, payment_type):
        value = parse_amount(amount)
        if value is None:
            raise ValidationError("Amount must be a positive number")
        if value > MAX_AMOUNT:
            raise ValidationError("Amount is too large")
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("Payment type must be one of academic, hostel, other")
        return value

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def submit_custom_payment(self, student_id, amount, payment_type, payment_method, transaction_id,
                              actor=None, description=None, semester=None, academic_year=None):
        """Record a student's self-reported UPI/QR transfer for later review."""
        transaction_id = (transaction_id or "").strip()
        if not student_id or amount in (None, "") or not payment_type or not payment_method or not transaction_id:
            raise ValidationError("All fields are required")
        if len(transaction_id) > MAX_TRANSACTION_ID:
            raise ValidationError(f"Transaction ID must be at most {MAX_TRANSACTION_ID} characters")
        value = self._validated_fields(amount, payment_type)
        if payment_method not in CUSTOM_METHODS:
            raise ValidationError("Payment method must be custom_upi or custom_qr")

        student = get_student(student_id)
        ensure_student_access(actor, student.regd_no, FINANCE_ROLES)

        # Fast path; the unique index on transaction_id settles races
        clash = db.session.execute(select(Payment.payment_id).filter_by(transaction_id=transaction_id)).first()
        if clash is not None:
            raise ConflictError("Transaction ID already exists")

        now = self.clock()
        payment = Payment(
            regd_no=student.regd_no,
            amount=value,
            payment_type=payment_type,
            payment_method=payment_method,
            transaction_id=transaction_id,
            status="pending",
            payment_date=now,
            submitted_at=now,
            semester=semester or student.semester,
            academic_year=academic_year or str(now.year),
            description=description,
            auto_delete_at=now + self.custom_payment_ttl,
        )
        self._derive(payment, now)
        db.session.add(payment)
        self._flush()
        record_payment_notification(
            payment,
            "Payment Submitted",
            f"Your payment of ₹{format_amount(value)} for {_type_label(payment)} has been submitted "
            f"and is awaiting verification by the finance department.",
        )
        self._commit()
        current_app.logger.info("Custom payment %s submitted by %s (txn %s)", payment.payment_id, student.regd_no, transaction_id)
        return payment

    def create_manual_payment(self, actor, student_id, amount, payment_type, payment_method="cash",
                              due_date=None, semester=None, academic_year=None, description=None):
        """Finance staff raise a charge against a student."""
        _require_role(actor, FINANCE_ROLES)
        if not student_id or amount in (None, "") or not payment_type:
            raise ValidationError("Student, amount and payment type are required")
        value = self._validated_fields(amount, payment_type)
        payment_method = payment_method or "cash"
        if payment_method not in MANUAL_METHODS:
            raise ValidationError("Payment method must be one of cash, cheque, online")
        if due_date is not None and not isinstance(due_date, date):
            try:
                due_date = date.fromisoformat(str(due_date)[:10])
            except ValueError:
                raise ValidationError("Due date must be YYYY-MM-DD")

        student = get_student(student_id)
        now = self.clock()
        payment = Payment(
            regd_no=student.regd_no,
            amount=value,
            payment_type=payment_type,
            payment_method=payment_method,
            transaction_id=f"MAN{epoch_ms(now)}{secrets.token_hex(3).upper()}",
            status="pending",
            payment_date=now,
            due_date=due_date,
            semester=semester or student.semester,
            academic_year=academic_year or str(now.year),
            description=description,
        )
        self._derive(payment, now)
        db.session.add(payment)
        self._flush()
        due = f" Due date: {due_date.isoformat()}." if due_date else ""
        record_payment_notification(
            payment,
            "New Payment Due",
            f"A new {_type_label(payment)} of ₹{format_amount(value)} has been added to your account.{due}",
            priority="high",
            kind="payment_reminder",
        )
        self._commit()
        current_app.logger.info("Manual payment %s created for %s by %s", payment.payment_id, student.regd_no, actor.user_id)
        return payment

    def create_gateway_order(self, actor, student_id, amount, payment_type, gateway="cashfree",
                             semester=None, academic_year=None, description=None):
        """Open an order with a gateway and store it as a pending payment."""
        if not student_id or amount in (None, "") or not payment_type:
            raise ValidationError("Student, amount and payment type are required")
        value = self._validated_fields(amount, payment_type)
        client = self._gateway(gateway)
        student = get_student(student_id)
        ensure_student_access(actor, student.regd_no, FINANCE_ROLES)

        now = self.clock()
        local_ref = f"{'CF_ORDER' if client.name == 'cashfree' else 'RZP'}_{epoch_ms(now)}_{secrets.token_hex(4)}"
        order = client.create_order(local_ref, value, {
            "id": student.regd_no,
            "name": student.full_name,
            "email": student.email,
            "phone": student.mobile,
            "payment_type": payment_type,
        })

        payment = Payment(
            regd_no=student.regd_no,
            amount=value,
            payment_type=payment_type,
            payment_method=client.name,
            gateway=client.name,
            gateway_order_id=order.order_id,
            gateway_order_token=order.token,
            status="pending",
            payment_date=now,
            semester=semester or student.semester,
            academic_year=academic_year or str(now.year),
            description=description,
        )
        self._derive(payment, now)
        db.session.add(payment)
        self._commit()
        current_app.logger.info("%s order %s opened for %s", client.name, order.order_id, student.regd_no)
        return payment

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def _apply_outcome(self, payment, outcome):
        """Apply a gateway verdict. Completed payments are never touched again."""
        if payment.status == "completed":
            return Reconciliation(payment, "completed", already_processed=True)
        if payment.status == "rejected":
            raise ConflictError("Payment has already been processed")

        now = self.clock()
        if outcome.succeeded:
            payment.status = "completed"
            if outcome.transaction_id:
                payment.transaction_id = outcome.transaction_id
            if outcome.gateway_payment_id:
                payment.gateway_payment_id = outcome.gateway_payment_id
            payment.auto_delete_at = None
            self._derive(payment, now)
            record_payment_notification(
                payment,
                "Payment Successful",
                f"Your payment of ₹{format_amount(payment.amount)} for {_type_label(payment)} has been completed "
                f"successfully. Receipt number: {payment.receipt_number}",
                priority="high",
            )
        elif outcome.failed and payment.status == "pending":
            payment.status = "failed"
            if outcome.gateway_payment_id:
                payment.gateway_payment_id = outcome.gateway_payment_id
            self._derive(payment, now)
            record_payment_notification(
                payment,
                "Payment Failed",
                f"Your payment of ₹{format_amount(payment.amount)} for {_type_label(payment)} has failed. "
                f"Please try again or contact the finance department.",
                priority="high",
            )
        else:
            return Reconciliation(payment, payment.status)

        payment_id = payment.payment_id
        try:
            self._commit()
        except ConflictError:
            # Lost a race with another verify/webhook; report what the winner stored
            fresh = db.session.get(Payment, payment_id)
            if fresh is not None and fresh.status == "completed":
                return Reconciliation(fresh, "completed", already_processed=True)
            raise
        current_app.logger.info("Payment %s -> %s via %s", payment.payment_id, payment.status, payment.gateway)
        return Reconciliation(payment, payment.status)

    def verify_gateway_payment(self, order_id=None, gateway_payment_id=None, signature=None,
                               payment_id=None, actor=None):
        """Poll the gateway for the authoritative outcome of an order."""
        if not order_id and not payment_id:
            raise ValidationError("Order ID is required")
        if payment_id:
            payment = self._get(payment_id)
            if order_id and payment.gateway_order_id != order_id:
                raise ValidationError("Order ID does not match payment")
        else:
            payment = db.session.execute(select(Payment).filter_by(gateway_order_id=order_id)).scalars().first()
            if payment is None:
                raise NotFoundError("Payment not found")
        ensure_student_access(actor, payment.regd_no, FINANCE_ROLES)

        if payment.status == "completed":
            return Reconciliation(payment, "completed", already_processed=True)
        if payment.status == "rejected":
            raise ConflictError("Payment has already been processed")
        if not payment.gateway or not payment.gateway_order_id:
            raise ValidationError("Payment was not made through a gateway")

        client = self._gateway(payment.gateway)
        try:
            outcome = client.fetch_outcome(payment.gateway_order_id, gateway_payment_id, signature)
        except UpstreamGatewayError:
            current_app.logger.exception("Gateway verification failed for order %s", payment.gateway_order_id)
            raise
        return self._apply_outcome(payment, outcome)

    def handle_webhook(self, gateway, raw_body, headers):
        """Signature-checked push from a gateway; same effects as verify."""
        client = self._gateway(gateway)
        if not client.verify_webhook(raw_body, headers):
            current_app.logger.warning("Rejected %s webhook with invalid signature", client.name)
            raise PermissionDenied("Invalid webhook signature", code="invalid_signature", status=401)

        outcome = client.parse_webhook(raw_body)
        if outcome is None:
            return None
        payment = db.session.execute(select(Payment).filter_by(gateway_order_id=outcome.order_id)).scalars().first()
        if payment is None:
            raise NotFoundError("Payment not found")
        return self._apply_outcome(payment, outcome)

    def review_custom_payment(self, actor, payment_id, action, notes=None):
        """Finance approval or rejection of a pending manual submission."""
        _require_role(actor, FINANCE_ROLES)
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be approve or reject")
        payment = self._get(payment_id)
        if payment.status != "pending":
            raise ConflictError("Payment has already been processed")

        now = self.clock()
        payment.verified_by_user_id_fk = actor.user_id if actor is not None else None
        payment.verified_at = now
        payment.notes = notes
        payment.auto_delete_at = None
        amount = format_amount(payment.amount)
        if action == "approve":
            payment.status = "completed"
            self._derive(payment, now)
            title = "Payment Approved"
            message = (f"Your payment of ₹{amount} for {_type_label(payment)} has been approved. "
                       f"Receipt number: {payment.receipt_number}")
        else:
            payment.status = "rejected"
            payment.rejection_reason = (notes or "").strip() or DEFAULT_REJECTION
            self._derive(payment, now)
            title = "Payment Rejected"
            message = (f"Your payment of ₹{amount} for {_type_label(payment)} has been rejected. "
                       f"Reason: {payment.rejection_reason}")

        record_payment_notification(payment, title, message, priority="high")
        self._commit()
        current_app.logger.info("Payment %s %sd by %s", payment.payment_id, action, payment.verified_by_user_id_fk)
        return payment

    def update_status(self, actor, payment_id, status):
        """Administrative override; receipt and paid date follow the new status."""
        _require_role(actor, FINANCE_ROLES)
        if status not in SETTABLE_STATUSES:
            raise ValidationError("Status must be one of pending, completed, failed")
        payment = self._get(payment_id)
        if payment.status == status:
            return payment

        previous = payment.status
        payment.status = status
        self._derive(payment, self.clock())
        amount = format_amount(payment.amount)
        if status == "completed":
            payment.auto_delete_at = None
            title, priority = "Payment Completed", "high"
            message = (f"Your payment of ₹{amount} for {_type_label(payment)} has been completed successfully. "
                       f"Receipt: {payment.receipt_number}")
        elif status == "failed":
            title, priority = "Payment Failed", "high"
            message = (f"Your payment of ₹{amount} for {_type_label(payment)} has failed. "
                       f"Please try again or contact the finance department.")
        else:
            title, priority = "Payment Pending", "medium"
            message = f"Your payment of ₹{amount} for {_type_label(payment)} is pending verification."

        record_payment_notification(payment, title, message, priority=priority)
        self._commit()
        current_app.logger.info("Payment %s status %s -> %s", payment.payment_id, previous, status)
        return payment

    def sweep_expired_payments(self, now=None):
        """Delete abandoned pending/failed payments past their expiry. Returns the count."""
        now = now or self.clock()
        result = db.session.execute(
            delete(Payment).where(
                Payment.auto_delete_at.is_not(None),
                Payment.auto_delete_at <= now,
                Payment.status.in_(("pending", "failed")),
            )
        )
        self._commit()
        removed = result.rowcount or 0
        if removed:
            current_app.logger.info("Swept %d expired payment(s)", removed)
        return removed

    def delete_payment(self, actor, payment_id):
        _require_role(actor, DELETE_ROLES)
        payment = self._get(payment_id)
        regd_no, payment_type, amount = payment.regd_no, payment.payment_type, payment.amount

        db.session.execute(delete(Notification).where(Notification.payment_id_ref == payment.payment_id))
        db.session.delete(payment)
        db.session.add(Notification(
            regd_no=regd_no,
            kind="general",
            title="Payment Record Deleted",
            message=f"Your {payment_type} fee payment record of ₹{format_amount(amount)} has been removed by the finance department.",
            amount=amount,
            payment_type=payment_type,
            priority="medium",
        ))
        self._commit()
        current_app.logger.info("Payment %s deleted by %s", payment_id, getattr(actor, "user_id", None))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list_payments(self, filters=None, page=1, limit=10):
        filters = filters or {}
        q = Payment.query
        for column in ("status", "payment_type", "payment_method", "gateway", "regd_no", "academic_year"):
            if filters.get(column):
                q = q.filter(getattr(Payment, column) == filters[column])
        total = q.count()
        items = (
            q.order_by(Payment.created_at.desc(), Payment.payment_id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def student_payments(self, student_id, actor=None):
        student = get_student(student_id)
        ensure_student_access(actor, student.regd_no, FINANCE_ROLES)
        return (
            Payment.query.filter_by(regd_no=student.regd_no)
            .order_by(Payment.created_at.desc(), Payment.payment_id.desc())
            .all()
        )

    def payment_by_order(self, order_id, actor=None):
        payment = db.session.execute(select(Payment).filter_by(gateway_order_id=order_id)).scalars().first()
        if payment is None:
            raise NotFoundError("Payment not found")
        ensure_student_access(actor, payment.regd_no, FINANCE_ROLES)
        return payment

    def payment_stats(self):
        stats = cache.get(STATS_CACHE_KEY)
        if stats is not None:
            return stats

        rows = db.session.execute(
            select(Payment.status, func.count(Payment.payment_id), func.coalesce(func.sum(Payment.amount), 0))
            .group_by(Payment.status)
        ).all()
        by_status = {status: {"count": 0, "amount": 0.0} for status in PAYMENT_STATUSES}
        for status, count, amount in rows:
            by_status[status] = {"count": count, "amount": float(amount or 0)}

        by_type = {}
        for payment_type, amount in db.session.execute(
            select(Payment.payment_type, func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.status == "completed")
            .group_by(Payment.payment_type)
        ).all():
            by_type[payment_type] = float(amount or 0)

        stats = {
            "totalPayments": sum(v["count"] for v in by_status.values()),
            "totalCollected": by_status["completed"]["amount"],
            "pendingAmount": by_status["pending"]["amount"],
            "byStatus": by_status,
            "collectedByType": by_type,
        }
        cache.set(STATS_CACHE_KEY, stats, timeout=60)
        return stats
